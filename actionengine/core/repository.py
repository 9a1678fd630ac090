"""
Repository interface over the four action tables and the audit ledger.

Every status change is a conditional write: the caller names the statuses
it expects, and the write is rejected with StateConflictError when the
stored record has moved on. Two concurrent executors or rollbacks of the
same action therefore cannot both succeed.
"""

import copy
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from .errors import (
    ActionNotFoundError,
    AlreadyResolvedError,
    AlreadyRolledBackError,
    ApprovalNotFoundError,
    BatchNotFoundError,
    InvalidStateError,
    StateConflictError,
)
from .schema import (
    ActionBatch,
    ActionRecord,
    ActionStatus,
    ApprovalRecord,
    ApprovalStatus,
    AuditEntry,
    ValidationRule,
)

# Fields a transition may write alongside the new status.
TRANSITION_FIELDS = frozenset({
    "validated_at", "executed_at", "completed_at", "requires_approval", "approved_by",
    "approved_at", "actual_impact", "success_metrics", "error_message", "rollback_data",
    "external_refs", "sync_status", "batch_id",
})

BATCH_OUTCOMES = ("completed", "failed", "skipped")


def check_transition_fields(fields: Dict) -> None:
    unknown = set(fields) - TRANSITION_FIELDS
    if unknown:
        raise ValueError(f"Fields cannot be written by a transition: {sorted(unknown)}")


def compute_batch_aggregates(rows: Iterable[Tuple[str, Optional[float], Optional[float]]]):
    """
    Aggregate (status, expected_impact, actual_impact) rows of member actions.

    Returns (total_expected_impact, total_actual_impact, success_rate) where
    success_rate is the share of completed actions whose measured impact met
    the expectation. None when nothing has completed yet.
    """
    total_expected = 0.0
    total_actual = 0.0
    completed = 0
    hits = 0
    for status, expected, actual in rows:
        if expected is not None:
            total_expected += expected
        if status != ActionStatus.COMPLETED.value:
            continue
        completed += 1
        if actual is not None:
            total_actual += actual
            if actual >= (expected or 0.0):
                hits += 1
    success_rate = round(hits / completed, 4) if completed else None
    return round(total_expected, 2), round(total_actual, 2), success_rate


def apply_outcome_counters(batch: ActionBatch, outcome: str, from_pending: bool = True) -> None:
    if outcome not in BATCH_OUTCOMES:
        raise ValueError(f"Unknown batch outcome: {outcome}")
    if from_pending:
        if batch.pending <= 0:
            raise ValueError(f"Batch {batch.id} has no pending member left to resolve")
        batch.pending -= 1
    setattr(batch, outcome, getattr(batch, outcome) + 1)


class ActionRepository(ABC):
    """Abstract interface for action storage."""

    # Actions
    @abstractmethod
    def create_action(self, record: ActionRecord) -> ActionRecord:
        pass

    @abstractmethod
    def get_action(self, action_id: str) -> Optional[ActionRecord]:
        pass

    @abstractmethod
    def list_actions(self, user_id: str, limit: int = 50) -> List[ActionRecord]:
        pass

    @abstractmethod
    def list_batch_actions(self, batch_id: str) -> List[ActionRecord]:
        pass

    @abstractmethod
    def count_actions(self) -> int:
        pass

    @abstractmethod
    def transition_action(self, action_id: str, expected: Iterable[ActionStatus],
                          new_status: ActionStatus, **fields) -> ActionRecord:
        """Move an action to `new_status` only if its current status is in `expected`."""
        pass

    @abstractmethod
    def mark_rolled_back(self, action_id: str, rolled_back_by: str, rolled_back_at: datetime,
                         reason: str) -> ActionRecord:
        """Annotate a completed, not yet rolled back action as rolled back."""
        pass

    # Approvals
    @abstractmethod
    def create_approval(self, approval: ApprovalRecord) -> ApprovalRecord:
        pass

    @abstractmethod
    def get_approval(self, approval_id: str) -> Optional[ApprovalRecord]:
        pass

    @abstractmethod
    def get_approval_for_action(self, action_id: str) -> Optional[ApprovalRecord]:
        pass

    @abstractmethod
    def resolve_approval(self, approval_id: str, status: ApprovalStatus, approver_id: Optional[str],
                         reviewed_at: datetime, review_notes: Optional[str] = None,
                         auto_approved: bool = False) -> ApprovalRecord:
        """Resolve a pending approval; any other current status raises AlreadyResolvedError."""
        pass

    @abstractmethod
    def list_pending_approvals(self, user_id: Optional[str] = None) -> List[ApprovalRecord]:
        pass

    @abstractmethod
    def record_reminder(self, approval_id: str, sent_at: datetime) -> ApprovalRecord:
        pass

    # Validation rules
    @abstractmethod
    def add_rule(self, rule: ValidationRule) -> ValidationRule:
        pass

    @abstractmethod
    def list_rules(self, user_id: str, action_type: str, enabled_only: bool = True) -> List[ValidationRule]:
        """Rules for a tenant and action type, highest priority first."""
        pass

    # Batches
    @abstractmethod
    def create_batch(self, batch: ActionBatch) -> ActionBatch:
        pass

    @abstractmethod
    def get_batch(self, batch_id: str) -> Optional[ActionBatch]:
        pass

    @abstractmethod
    def attach_batch_action(self, batch_id: str, action_id: str) -> None:
        pass

    @abstractmethod
    def update_batch(self, batch_id: str, **fields) -> ActionBatch:
        pass

    @abstractmethod
    def apply_batch_outcome(self, batch_id: str, outcome: str, from_pending: bool = True) -> ActionBatch:
        """Count one member's terminal outcome and recompute aggregates in one transaction."""
        pass

    # Audit ledger (append-only)
    @abstractmethod
    def append_audit(self, entry: AuditEntry) -> AuditEntry:
        pass

    @abstractmethod
    def list_audit(self, action_id: Optional[str] = None, batch_id: Optional[str] = None) -> List[AuditEntry]:
        pass


class InMemoryActionRepository(ActionRepository):
    """In-memory implementation for unit tests and local experiments."""

    def __init__(self):
        self._lock = threading.RLock()
        self._actions: Dict[str, ActionRecord] = {}
        self._approvals: Dict[str, ApprovalRecord] = {}
        self._rules: Dict[str, ValidationRule] = {}
        self._batches: Dict[str, ActionBatch] = {}
        self._audit: List[AuditEntry] = []

    # Actions
    def create_action(self, record: ActionRecord) -> ActionRecord:
        with self._lock:
            if record.id in self._actions:
                raise ValueError(f"Action {record.id} already exists")
            self._actions[record.id] = copy.deepcopy(record)
            return copy.deepcopy(record)

    def get_action(self, action_id: str) -> Optional[ActionRecord]:
        with self._lock:
            record = self._actions.get(action_id)
            return copy.deepcopy(record) if record else None

    def list_actions(self, user_id: str, limit: int = 50) -> List[ActionRecord]:
        with self._lock:
            records = [r for r in self._actions.values() if r.user_id == user_id]
            records.sort(key=lambda r: r.initiated_at, reverse=True)
            return [copy.deepcopy(r) for r in records[:limit]]

    def list_batch_actions(self, batch_id: str) -> List[ActionRecord]:
        with self._lock:
            return [copy.deepcopy(r) for r in self._actions.values() if r.batch_id == batch_id]

    def count_actions(self) -> int:
        with self._lock:
            return len(self._actions)

    def transition_action(self, action_id: str, expected: Iterable[ActionStatus],
                          new_status: ActionStatus, **fields) -> ActionRecord:
        check_transition_fields(fields)
        expected = set(expected)
        with self._lock:
            record = self._actions.get(action_id)
            if record is None:
                raise ActionNotFoundError(action_id)
            if record.status not in expected:
                raise StateConflictError(action_id, [s.value for s in expected], record.status.value)
            if "rollback_data" in fields and record.rollback_data is not None:
                raise StateConflictError(action_id, [s.value for s in expected], record.status.value,
                                         f"Action {action_id} already has rollback data")
            record.status = new_status
            for name, value in fields.items():
                setattr(record, name, copy.deepcopy(value))
            return copy.deepcopy(record)

    def mark_rolled_back(self, action_id: str, rolled_back_by: str, rolled_back_at: datetime,
                         reason: str) -> ActionRecord:
        with self._lock:
            record = self._actions.get(action_id)
            if record is None:
                raise ActionNotFoundError(action_id)
            if record.rolled_back:
                raise AlreadyRolledBackError(action_id)
            if record.status != ActionStatus.COMPLETED:
                raise InvalidStateError(action_id, [ActionStatus.COMPLETED.value], record.status.value)
            record.rolled_back = True
            record.rolled_back_by = rolled_back_by
            record.rolled_back_at = rolled_back_at
            record.rollback_reason = reason
            return copy.deepcopy(record)

    # Approvals
    def create_approval(self, approval: ApprovalRecord) -> ApprovalRecord:
        with self._lock:
            if any(a.action_id == approval.action_id for a in self._approvals.values()):
                raise ValueError(f"Action {approval.action_id} already has an approval")
            self._approvals[approval.id] = copy.deepcopy(approval)
            return copy.deepcopy(approval)

    def get_approval(self, approval_id: str) -> Optional[ApprovalRecord]:
        with self._lock:
            approval = self._approvals.get(approval_id)
            return copy.deepcopy(approval) if approval else None

    def get_approval_for_action(self, action_id: str) -> Optional[ApprovalRecord]:
        with self._lock:
            for approval in self._approvals.values():
                if approval.action_id == action_id:
                    return copy.deepcopy(approval)
            return None

    def resolve_approval(self, approval_id: str, status: ApprovalStatus, approver_id: Optional[str],
                         reviewed_at: datetime, review_notes: Optional[str] = None,
                         auto_approved: bool = False) -> ApprovalRecord:
        with self._lock:
            approval = self._approvals.get(approval_id)
            if approval is None:
                raise ApprovalNotFoundError(approval_id)
            if approval.approval_status != ApprovalStatus.PENDING:
                raise AlreadyResolvedError(approval_id, approval.approval_status.value)
            approval.approval_status = status
            approval.approver_id = approver_id
            approval.reviewed_at = reviewed_at
            approval.review_notes = review_notes
            approval.auto_approved = auto_approved
            return copy.deepcopy(approval)

    def list_pending_approvals(self, user_id: Optional[str] = None) -> List[ApprovalRecord]:
        with self._lock:
            pending = [a for a in self._approvals.values()
                       if a.approval_status == ApprovalStatus.PENDING
                       and (user_id is None or a.requester_id == user_id)]
            pending.sort(key=lambda a: a.requested_at)
            return [copy.deepcopy(a) for a in pending]

    def record_reminder(self, approval_id: str, sent_at: datetime) -> ApprovalRecord:
        with self._lock:
            approval = self._approvals.get(approval_id)
            if approval is None:
                raise ApprovalNotFoundError(approval_id)
            if approval.approval_status != ApprovalStatus.PENDING:
                raise AlreadyResolvedError(approval_id, approval.approval_status.value)
            approval.reminder_count += 1
            approval.last_reminder = sent_at
            return copy.deepcopy(approval)

    # Validation rules
    def add_rule(self, rule: ValidationRule) -> ValidationRule:
        with self._lock:
            self._rules[rule.id] = copy.deepcopy(rule)
            return copy.deepcopy(rule)

    def list_rules(self, user_id: str, action_type: str, enabled_only: bool = True) -> List[ValidationRule]:
        with self._lock:
            rules = [r for r in self._rules.values()
                     if r.user_id == user_id and r.action_type == action_type
                     and (r.enabled or not enabled_only)]
            rules.sort(key=lambda r: r.priority, reverse=True)
            return [copy.deepcopy(r) for r in rules]

    # Batches
    def create_batch(self, batch: ActionBatch) -> ActionBatch:
        with self._lock:
            self._batches[batch.id] = copy.deepcopy(batch)
            return copy.deepcopy(batch)

    def get_batch(self, batch_id: str) -> Optional[ActionBatch]:
        with self._lock:
            batch = self._batches.get(batch_id)
            return copy.deepcopy(batch) if batch else None

    def attach_batch_action(self, batch_id: str, action_id: str) -> None:
        with self._lock:
            batch = self._require_batch(batch_id)
            if action_id not in batch.action_ids:
                batch.action_ids.append(action_id)

    def update_batch(self, batch_id: str, **fields) -> ActionBatch:
        with self._lock:
            batch = self._require_batch(batch_id)
            for name, value in fields.items():
                if not hasattr(batch, name):
                    raise ValueError(f"Unknown batch field: {name}")
                setattr(batch, name, value)
            return copy.deepcopy(batch)

    def apply_batch_outcome(self, batch_id: str, outcome: str, from_pending: bool = True) -> ActionBatch:
        with self._lock:
            batch = self._require_batch(batch_id)
            apply_outcome_counters(batch, outcome, from_pending)
            rows = [(r.status.value, r.expected_impact, r.actual_impact)
                    for r in self._actions.values() if r.batch_id == batch_id]
            (batch.total_expected_impact,
             batch.total_actual_impact,
             batch.success_rate) = compute_batch_aggregates(rows)
            return copy.deepcopy(batch)

    def _require_batch(self, batch_id: str) -> ActionBatch:
        batch = self._batches.get(batch_id)
        if batch is None:
            raise BatchNotFoundError(batch_id)
        return batch

    # Audit ledger
    def append_audit(self, entry: AuditEntry) -> AuditEntry:
        with self._lock:
            stored = copy.deepcopy(entry)
            stored.id = len(self._audit) + 1
            self._audit.append(stored)
            return copy.deepcopy(stored)

    def list_audit(self, action_id: Optional[str] = None, batch_id: Optional[str] = None) -> List[AuditEntry]:
        with self._lock:
            return [copy.deepcopy(e) for e in self._audit
                    if (action_id is None or e.action_id == action_id)
                    and (batch_id is None or e.batch_id == batch_id)]
