"""
ActionEngine - wires validation, risk, approval, execution, rollback,
batching and audit around one repository and one commerce backend.
"""

from contextlib import nullcontext
from datetime import datetime
from typing import Callable, List, Optional

from .approval import ApprovalGate
from .audit import AuditLedger
from .batch import BatchOrchestrator
from .commerce import ICommerceSystem, ISKUStore
from .config import get_risk_policy, get_validation_defaults
from .errors import ActionNotFoundError
from .executor import Executor
from .locks import SKULockRegistry
from .pipeline import ActionPipeline, SubmissionResult
from .repository import ActionRepository
from .risk import RiskClassifier, RiskPolicy
from .rollback import RollbackManager
from .schema import (
    ActionBatch,
    ActionRecord,
    ActionRequest,
    ActionStatus,
    ApprovalRecord,
    AuditEntry,
    BatchConfig,
)
from .validation import ValidationDefaults, ValidationEngine
from ..util.logging import StructuredLogger


class ActionEngine:
    """Facade used by the HTTP layer, the heartbeat sweep and scripts."""

    def __init__(self, repository: ActionRepository, commerce: ICommerceSystem,
                 sku_store: Optional[ISKUStore] = None,
                 risk_policy: Optional[RiskPolicy] = None,
                 validation_defaults: Optional[ValidationDefaults] = None,
                 event_logger: Optional[StructuredLogger] = None,
                 execution_timeout_sec: Optional[float] = None,
                 approval_ttl_sec: Optional[int] = None,
                 locks: Optional[SKULockRegistry] = None,
                 clock: Callable[[], datetime] = datetime.now):
        # The in-memory backend is both reader and mutator
        sku_store = sku_store or commerce

        self.repository = repository
        self.commerce = commerce
        self.sku_store = sku_store
        self.audit = AuditLedger(repository, event_logger)
        self.validation = ValidationEngine(repository, sku_store, validation_defaults or get_validation_defaults())
        self.classifier = RiskClassifier(risk_policy or get_risk_policy())
        self.gate = ApprovalGate(repository, self.audit, ttl_sec=approval_ttl_sec, clock=clock)
        self.executor = Executor(repository, commerce, sku_store, self.audit, locks=locks,
                                 timeout_sec=execution_timeout_sec)
        self.rollback_manager = RollbackManager(repository, commerce, sku_store, self.audit, locks=locks)
        self.pipeline = ActionPipeline(repository, self.validation, self.classifier, self.gate,
                                       self.executor, self.audit)
        self.batches = BatchOrchestrator(repository, self.pipeline, self.audit)

        # Denied and expired batch members must still reach the batch counters
        self.gate.add_listener(self.batches.on_member_resolved)

    def submit(self, request: ActionRequest, user_id: str, initiated_by: Optional[str] = None) -> SubmissionResult:
        return self.pipeline.run(request, user_id, initiated_by)

    def resolve_approval(self, approval_id: str, decision: str, approver: str,
                         notes: Optional[str] = None) -> SubmissionResult:
        """Resolve an approval; an approved action is executed right away."""
        action = self.gate.resolve(approval_id, decision, approver, notes)
        approval = self.repository.get_approval(approval_id)

        if action.status != ActionStatus.APPROVED:
            return SubmissionResult(status="rejected", action=action, approval=approval)

        slot = self.batches.member_slot(action.batch_id) if action.batch_id else nullcontext()
        with slot:
            execution = self.executor.execute(action.id, approver)
        self.batches.on_member_resolved(execution.action)
        return SubmissionResult(
            status="completed" if execution.success else "failed",
            action=execution.action,
            approval=approval,
            execution=execution,
        )

    def rollback(self, action_id: str, reason: str, initiator: str, user_id: Optional[str] = None) -> ActionRecord:
        return self.rollback_manager.rollback(action_id, reason, initiator, user_id)

    def run_batch(self, config: BatchConfig, requests: List[ActionRequest], user_id: str,
                  initiated_by: Optional[str] = None) -> ActionBatch:
        return self.batches.run_batch(config, requests, user_id, initiated_by)

    def expire_approvals(self, now: Optional[datetime] = None) -> int:
        return self.gate.expire_stale(now)

    def send_reminders(self, now: Optional[datetime] = None) -> int:
        return self.gate.send_reminders(now)

    def get_action(self, action_id: str) -> ActionRecord:
        action = self.repository.get_action(action_id)
        if action is None:
            raise ActionNotFoundError(action_id)
        return action

    def list_actions(self, user_id: str, limit: int = 50) -> List[ActionRecord]:
        return self.repository.list_actions(user_id, limit)

    def get_batch(self, batch_id: str) -> ActionBatch:
        return self.batches.get_batch(batch_id)

    def list_pending_approvals(self, user_id: Optional[str] = None) -> List[ApprovalRecord]:
        return self.gate.list_pending(user_id)

    def history(self, action_id: str) -> List[AuditEntry]:
        self.get_action(action_id)
        return self.audit.history(action_id)

    def shutdown(self):
        self.executor.shutdown()
