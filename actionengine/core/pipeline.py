"""
Single-action pipeline: validate -> persist -> classify -> gate -> execute.
Used directly by the engine and by every batch worker.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from .approval import ApprovalGate
from .audit import AuditLedger
from .errors import PayloadError, StateConflictError
from .executor import ExecutionResult, Executor
from .payloads import EmptySnapshot, decode_payload
from .repository import ActionRepository
from .risk import RiskAssessment, RiskClassifier
from .schema import (
    AFFECTED_SYSTEMS,
    ActionRecord,
    ActionRequest,
    ActionStatus,
    ActionType,
    ApprovalRecord,
)
from .validation import ValidationEngine, ValidationResult
from ..util.logging import logger

# Statuses the pipeline may force to 'failed' when something unexpected breaks mid-way
_RECOVERABLE = (ActionStatus.PENDING, ActionStatus.VALIDATED, ActionStatus.APPROVED, ActionStatus.EXECUTING)


@dataclass
class SubmissionResult:
    status: str  # completed | failed | requires_approval | rejected
    action: ActionRecord
    approval: Optional[ApprovalRecord] = None
    execution: Optional[ExecutionResult] = None
    assessment: Optional[RiskAssessment] = None
    warnings: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.status == "completed"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "action": self.action.to_dict(),
            "approval": self.approval.to_dict() if self.approval else None,
            "execution": self.execution.to_dict() if self.execution else None,
            "assessment": self.assessment.to_dict() if self.assessment else None,
            "warnings": list(self.warnings),
        }


def _as_float(value) -> Optional[float]:
    try:
        return float(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def _targets(payload):
    skus = payload.skus()
    if len(skus) == 1 and payload.kind != ActionType.LAUNCH_CAMPAIGN.value:
        return skus[0], None
    return None, skus


class ActionPipeline:

    def __init__(self, repository: ActionRepository, validation: ValidationEngine, classifier: RiskClassifier,
                 gate: ApprovalGate, executor: Executor, audit: AuditLedger):
        self.repository = repository
        self.validation = validation
        self.classifier = classifier
        self.gate = gate
        self.executor = executor
        self.audit = audit

    def run(self, request: ActionRequest, user_id: str, initiated_by: Optional[str] = None,
            batch_id: Optional[str] = None) -> SubmissionResult:
        """Run a request to a terminal status or to awaiting_approval. ValidationError persists nothing."""
        initiated_by = initiated_by or user_id
        result = self.validation.validate(request, user_id)

        action = self._persist(request, result, user_id, initiated_by, batch_id)
        try:
            return self._gate_and_execute(request, result, action, initiated_by)
        except StateConflictError:
            raise
        except Exception as e:
            self._fail_unexpected(action.id, e, initiated_by)
            raise

    def _persist(self, request: ActionRequest, result: ValidationResult, user_id: str, initiated_by: str,
                 batch_id: Optional[str]) -> ActionRecord:
        action_type = ActionType(request.action_type)
        target_sku, target_skus = _targets(result.payload)
        record = ActionRecord(
            id=str(uuid.uuid4()),
            user_id=user_id,
            action_type=action_type,
            payload=result.payload,
            reason=request.reason,
            initiated_by=initiated_by,
            target_sku=target_sku,
            target_skus=target_skus,
            expected_impact=result.expected_impact,
            confidence_score=_as_float(request.confidence_score),
            affected_systems=list(AFFECTED_SYSTEMS[action_type]),
            batch_id=batch_id,
        )
        created = self.repository.create_action(record)
        if batch_id:
            self.repository.attach_batch_action(batch_id, created.id)
        self.audit.transition(None, created, initiated_by, {"request": request.to_dict()})

        validated = self.repository.transition_action(
            created.id,
            [ActionStatus.PENDING],
            ActionStatus.VALIDATED,
            validated_at=datetime.now(),
        )
        self.audit.transition(created, validated, "validation",
                              {"warnings": result.warnings, "expected_impact": result.expected_impact})
        return validated

    def _gate_and_execute(self, request: ActionRequest, result: ValidationResult, action: ActionRecord,
                          initiated_by: str) -> SubmissionResult:
        assessment = self.classifier.classify(request, result)
        approval = None

        if assessment.requires_approval:
            approval = self.gate.submit_for_approval(action, assessment)
            if not approval.auto_approved:
                # A human decision may already be executing it on another thread
                return SubmissionResult(status="requires_approval", action=self.repository.get_action(action.id),
                                        approval=approval,
                                        assessment=assessment, warnings=result.warnings)

        execution = self.executor.execute(action.id, initiated_by)
        return SubmissionResult(
            status="completed" if execution.success else "failed",
            action=execution.action,
            approval=approval,
            execution=execution,
            assessment=assessment,
            warnings=result.warnings,
        )

    def _fail_unexpected(self, action_id: str, error: Exception, actor: str):
        """Write a terminal status for an action the pipeline could not finish."""
        current = self.repository.get_action(action_id)
        if current is None or current.status not in _RECOVERABLE:
            return
        fields = {"error_message": f"internal error: {error}", "completed_at": datetime.now()}
        if current.rollback_data is None:
            fields["rollback_data"] = EmptySnapshot(reason="pipeline_error")
        try:
            failed = self.repository.transition_action(action_id, [current.status], ActionStatus.FAILED, **fields)
            self.audit.transition(current, failed, actor, {"error": str(error)})
        except Exception as e:
            logger.error(f"Could not mark action {action_id} failed after {error!r}: {e}")

    def record_skipped(self, request: ActionRequest, user_id: str, initiated_by: Optional[str], batch_id: str,
                       reason: str) -> Optional[ActionRecord]:
        """
        Persist a batch request that was never attempted. Returns None when the
        request cannot even be decoded; the skip is then only in the audit ledger.
        """
        initiated_by = initiated_by or user_id
        params = dict(request.params or {})
        if request.target_sku and not (params.get("sku") or params.get("sku_code")):
            params["sku_code"] = request.target_sku
        if request.target_skus and not params.get("target_skus"):
            params["target_skus"] = list(request.target_skus)
        try:
            payload = decode_payload(request.action_type, params)
        except PayloadError:
            self.audit.record("batch.member_skipped", batch_id=batch_id, to_status=ActionStatus.SKIPPED,
                              actor=initiated_by, details={"request": request.to_dict(), "reason": reason})
            return None

        action_type = ActionType(request.action_type)
        target_sku, target_skus = _targets(payload)
        created = self.repository.create_action(ActionRecord(
            id=str(uuid.uuid4()),
            user_id=user_id,
            action_type=action_type,
            payload=payload,
            reason=request.reason,
            initiated_by=initiated_by,
            target_sku=target_sku,
            target_skus=target_skus,
            expected_impact=_as_float(request.expected_impact),
            confidence_score=_as_float(request.confidence_score),
            affected_systems=list(AFFECTED_SYSTEMS[action_type]),
            batch_id=batch_id,
        ))
        self.repository.attach_batch_action(batch_id, created.id)
        self.audit.transition(None, created, initiated_by)

        skipped = self.repository.transition_action(
            created.id,
            [ActionStatus.PENDING],
            ActionStatus.SKIPPED,
            rollback_data=EmptySnapshot(reason="skipped"),
            completed_at=datetime.now(),
            error_message=reason,
        )
        self.audit.transition(created, skipped, "batch", {"reason": reason})
        return skipped
