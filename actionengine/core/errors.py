"""
Error taxonomy for the action engine.
Components raise these; the HTTP layer maps them to status codes.
"""

from dataclasses import dataclass, asdict
from typing import Dict, Iterable, List, Optional


class ActionEngineError(Exception):
    """Base class for every engine error."""


@dataclass
class RuleViolation:
    rule: str
    message: str

    def to_dict(self) -> Dict:
        return asdict(self)


class PayloadError(ActionEngineError):
    """A payload or snapshot could not be decoded."""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class ValidationError(ActionEngineError):
    """Request rejected before anything was persisted. Always caller-fixable."""

    def __init__(self, violations: List[RuleViolation]):
        self.violations = list(violations)
        summary = "; ".join(f"{v.rule}: {v.message}" for v in self.violations)
        super().__init__(summary or "validation failed")

    @property
    def rule(self) -> Optional[str]:
        return self.violations[0].rule if self.violations else None

    def to_list(self) -> List[Dict]:
        return [v.to_dict() for v in self.violations]


class ApprovalRequiredError(ActionEngineError):
    """Not a failure: the action is parked until a human resolves its approval."""

    def __init__(self, action, approval):
        super().__init__(f"Action {action.id} requires approval ({approval.risk_level})")
        self.action = action
        self.approval = approval


class ActionNotFoundError(ActionEngineError):
    def __init__(self, action_id: str):
        super().__init__(f"Action {action_id} not found")
        self.action_id = action_id


class ApprovalNotFoundError(ActionEngineError):
    def __init__(self, approval_id: str):
        super().__init__(f"Approval {approval_id} not found")
        self.approval_id = approval_id


class BatchNotFoundError(ActionEngineError):
    def __init__(self, batch_id: str):
        super().__init__(f"Batch {batch_id} not found")
        self.batch_id = batch_id


class UnauthorizedActionError(ActionEngineError):
    """The caller does not own the action it is trying to change."""


class StateConflictError(ActionEngineError):
    """A status precondition did not hold; the transition was rejected, not overwritten."""

    def __init__(self, action_id: str, expected: Iterable[str], actual: Optional[str], message: str = ""):
        self.action_id = action_id
        self.expected = sorted(str(e) for e in expected)
        self.actual = actual
        super().__init__(message or f"Action {action_id} is '{actual}', expected one of {self.expected}")


class InvalidStateError(StateConflictError):
    pass


class AlreadyRolledBackError(StateConflictError):
    def __init__(self, action_id: str):
        super().__init__(action_id, ["completed"], "completed", f"Action {action_id} already rolled back")


class ApprovalConflictError(StateConflictError):
    """An approval was resolved by someone else first."""

    def __init__(self, approval_id: str, actual: Optional[str], message: str = ""):
        self.approval_id = approval_id
        super().__init__(approval_id, ["pending"], actual,
                         message or f"Approval {approval_id} already resolved ({actual})")


class AlreadyResolvedError(ApprovalConflictError):
    pass


class ApprovalExpiredError(ApprovalConflictError):
    def __init__(self, approval_id: str):
        super().__init__(approval_id, "expired", f"Approval {approval_id} expired before it was resolved")


class ExecutionError(ActionEngineError):
    """Terminates a single action. Never retried in place: rollback data must be recaptured."""

    kind = "permanent"

    @property
    def retryable(self) -> bool:
        return self.kind == "transient"


class TransientExecutionError(ExecutionError):
    kind = "transient"


class PermanentExecutionError(ExecutionError):
    kind = "permanent"


class ExecutionTimeoutError(TransientExecutionError):
    def __init__(self, timeout_sec: float):
        super().__init__(f"execution timed out after {timeout_sec:g}s")
        self.timeout_sec = timeout_sec


class SKUNotFoundError(PermanentExecutionError):
    def __init__(self, sku: str):
        super().__init__(f"SKU {sku} not found")
        self.sku = sku


class CommerceUnavailableError(TransientExecutionError):
    """The pricing/inventory system could not be reached."""


class RollbackError(ActionEngineError):
    """Compensating mutation failed; the action stays completed and not rolled back."""

    def __init__(self, action_id: str, message: str):
        super().__init__(f"Rollback of {action_id} failed: {message}")
        self.action_id = action_id
