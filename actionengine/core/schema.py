"""
Records persisted by the action engine and the request that creates them.
Column names mirror the four durable tables and the audit ledger.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from .payloads import ActionPayload, RollbackSnapshot


class ActionType(str, Enum):
    PRICE_UPDATE = "price_update"
    REORDER_STOCK = "reorder_stock"
    LAUNCH_CAMPAIGN = "launch_campaign"
    BULK_UPDATE = "bulk_update"


class ActionStatus(str, Enum):
    PENDING = "pending"
    VALIDATED = "validated"
    AWAITING_APPROVAL = "awaiting_approval"
    APPROVED = "approved"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"
    REJECTED = "rejected"
    SKIPPED = "skipped"


TERMINAL_STATUSES = frozenset({
    ActionStatus.COMPLETED,
    ActionStatus.FAILED,
    ActionStatus.REJECTED,
    ActionStatus.SKIPPED,
})

EXECUTABLE_STATUSES = frozenset({ActionStatus.VALIDATED, ActionStatus.APPROVED})


class ApprovalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"
    EXPIRED = "expired"


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _RISK_ORDER.index(self)

    def __ge__(self, other):
        if isinstance(other, RiskLevel):
            return self.rank >= other.rank
        return NotImplemented

    def __gt__(self, other):
        if isinstance(other, RiskLevel):
            return self.rank > other.rank
        return NotImplemented

    def __le__(self, other):
        if isinstance(other, RiskLevel):
            return self.rank <= other.rank
        return NotImplemented

    def __lt__(self, other):
        if isinstance(other, RiskLevel):
            return self.rank < other.rank
        return NotImplemented


_RISK_ORDER = [RiskLevel.LOW, RiskLevel.MEDIUM, RiskLevel.HIGH, RiskLevel.CRITICAL]


class BatchStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    AWAITING_APPROVAL = "awaiting_approval"
    COMPLETED = "completed"
    COMPLETED_WITH_ERRORS = "completed_with_errors"
    STOPPED = "stopped"


class SyncState(str, Enum):
    PENDING = "pending"
    SYNCED = "synced"
    FAILED = "failed"
    UNKNOWN = "unknown"  # deadline passed before the external system answered


# Systems touched per action type. Fan-out is best-effort: each system keeps its own sync status.
AFFECTED_SYSTEMS = {
    ActionType.PRICE_UPDATE: ["pricing"],
    ActionType.REORDER_STOCK: ["inventory"],
    ActionType.LAUNCH_CAMPAIGN: ["pricing", "marketing"],
    ActionType.BULK_UPDATE: ["pricing", "inventory"],
}


@dataclass
class ActionRequest:
    """Caller-supplied, never persisted as-is."""
    action_type: str
    params: Dict[str, Any]
    reason: str = ""
    target_sku: Optional[str] = None
    target_skus: Optional[List[str]] = None
    expected_impact: Optional[float] = None
    confidence_score: Optional[float] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ActionRequest':
        """Build from the wire shape `{type, sku_code, sku_codes, params, reason, expected_impact, confidence}`."""
        params = dict(data.get("params") or {})
        target_sku = data.get("sku_code") or data.get("target_sku") or params.get("sku_code") or params.get("sku")
        target_skus = data.get("sku_codes") or data.get("target_skus") or params.get("target_skus")
        return cls(
            action_type=data.get("type") or data.get("action_type") or "",
            params=params,
            reason=data.get("reason") or "",
            target_sku=target_sku,
            target_skus=list(target_skus) if target_skus else None,
            expected_impact=data.get("expected_impact"),
            confidence_score=data.get("confidence", data.get("confidence_score")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.action_type,
            "sku_code": self.target_sku,
            "sku_codes": self.target_skus,
            "params": self.params,
            "reason": self.reason,
            "expected_impact": self.expected_impact,
            "confidence": self.confidence_score,
        }


@dataclass
class ActionRecord:
    """System of record for one action."""
    id: str
    user_id: str
    action_type: ActionType
    payload: ActionPayload
    reason: str
    initiated_by: str
    status: ActionStatus = ActionStatus.PENDING
    target_sku: Optional[str] = None
    target_skus: Optional[List[str]] = None
    expected_impact: Optional[float] = None
    confidence_score: Optional[float] = None
    initiated_at: datetime = field(default_factory=datetime.now)
    validated_at: Optional[datetime] = None
    executed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    requires_approval: bool = False
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    actual_impact: Optional[float] = None
    success_metrics: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None
    rollback_data: Optional[RollbackSnapshot] = None
    rolled_back: bool = False
    rolled_back_at: Optional[datetime] = None
    rolled_back_by: Optional[str] = None
    rollback_reason: Optional[str] = None
    external_refs: Optional[Dict[str, Any]] = None
    affected_systems: List[str] = field(default_factory=list)
    sync_status: Dict[str, str] = field(default_factory=dict)
    batch_id: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def skus(self) -> List[str]:
        """Every SKU this action touches, used for per-SKU locking."""
        return self.payload.skus()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "action_type": self.action_type.value,
            "target_sku": self.target_sku,
            "target_skus": self.target_skus,
            "action_payload": self.payload.to_dict(),
            "reason": self.reason,
            "expected_impact": self.expected_impact,
            "confidence_score": self.confidence_score,
            "status": self.status.value,
            "initiated_by": self.initiated_by,
            "initiated_at": _iso(self.initiated_at),
            "validated_at": _iso(self.validated_at),
            "executed_at": _iso(self.executed_at),
            "completed_at": _iso(self.completed_at),
            "requires_approval": self.requires_approval,
            "approved_by": self.approved_by,
            "approved_at": _iso(self.approved_at),
            "actual_impact": self.actual_impact,
            "success_metrics": self.success_metrics,
            "error_message": self.error_message,
            "rollback_data": self.rollback_data.to_dict() if self.rollback_data else None,
            "rolled_back": self.rolled_back,
            "rolled_back_at": _iso(self.rolled_back_at),
            "rolled_back_by": self.rolled_back_by,
            "rollback_reason": self.rollback_reason,
            "external_refs": self.external_refs,
            "affected_systems": list(self.affected_systems),
            "sync_status": dict(self.sync_status),
            "batch_id": self.batch_id,
        }


@dataclass
class ApprovalRecord:
    """One-to-one with an action that requires approval."""
    id: str
    action_id: str
    requester_id: str
    approval_reason: str
    risk_level: RiskLevel
    approval_status: ApprovalStatus = ApprovalStatus.PENDING
    approver_id: Optional[str] = None
    estimated_impact: Optional[float] = None
    requested_at: datetime = field(default_factory=datetime.now)
    reviewed_at: Optional[datetime] = None
    review_notes: Optional[str] = None
    auto_approved: bool = False
    notification_sent: bool = False
    notification_sent_at: Optional[datetime] = None
    reminder_count: int = 0
    last_reminder: Optional[datetime] = None
    created_at: datetime = field(default_factory=datetime.now)
    expires_at: Optional[datetime] = None

    def is_overdue(self, now: datetime) -> bool:
        return (self.approval_status == ApprovalStatus.PENDING
                and self.expires_at is not None and now >= self.expires_at)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "action_id": self.action_id,
            "requester_id": self.requester_id,
            "approver_id": self.approver_id,
            "approval_status": self.approval_status.value,
            "approval_reason": self.approval_reason,
            "risk_level": self.risk_level.value,
            "estimated_impact": self.estimated_impact,
            "requested_at": _iso(self.requested_at),
            "reviewed_at": _iso(self.reviewed_at),
            "review_notes": self.review_notes,
            "auto_approved": self.auto_approved,
            "notification_sent": self.notification_sent,
            "notification_sent_at": _iso(self.notification_sent_at),
            "reminder_count": self.reminder_count,
            "last_reminder": _iso(self.last_reminder),
            "created_at": _iso(self.created_at),
            "expires_at": _iso(self.expires_at),
        }


@dataclass
class BatchConfig:
    batch_name: str
    batch_type: str = "manual"
    execute_parallel: bool = False
    max_concurrent: int = 5
    stop_on_error: bool = False

    @property
    def concurrency_bound(self) -> int:
        return self.max_concurrent if self.execute_parallel else 1

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'BatchConfig':
        return cls(
            batch_name=data.get("batch_name") or "batch",
            batch_type=data.get("batch_type") or "manual",
            execute_parallel=bool(data.get("execute_parallel", False)),
            max_concurrent=int(data.get("max_concurrent", 5)),
            stop_on_error=bool(data.get("stop_on_error", False)),
        )


@dataclass
class ActionBatch:
    """Invariant: completed + failed + pending + skipped == total_actions."""
    id: str
    user_id: str
    batch_name: str
    batch_type: str
    total_actions: int
    pending: int
    completed: int = 0
    failed: int = 0
    skipped: int = 0
    action_ids: List[str] = field(default_factory=list)
    status: BatchStatus = BatchStatus.PENDING
    execute_parallel: bool = False
    max_concurrent: int = 5
    stop_on_error: bool = False
    estimated_duration: Optional[float] = None
    actual_duration: Optional[float] = None
    total_expected_impact: Optional[float] = None
    total_actual_impact: Optional[float] = None
    success_rate: Optional[float] = None
    created_at: datetime = field(default_factory=datetime.now)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def accounted(self) -> int:
        return self.completed + self.failed + self.pending + self.skipped

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "batch_name": self.batch_name,
            "batch_type": self.batch_type,
            "action_ids": list(self.action_ids),
            "total_actions": self.total_actions,
            "completed": self.completed,
            "failed": self.failed,
            "pending": self.pending,
            "skipped": self.skipped,
            "status": self.status.value,
            "execute_parallel": self.execute_parallel,
            "max_concurrent": self.max_concurrent,
            "stop_on_error": self.stop_on_error,
            "estimated_duration": self.estimated_duration,
            "actual_duration": self.actual_duration,
            "total_expected_impact": self.total_expected_impact,
            "total_actual_impact": self.total_actual_impact,
            "success_rate": self.success_rate,
            "created_at": _iso(self.created_at),
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
        }


@dataclass
class ValidationRule:
    id: str
    user_id: str
    action_type: str
    rule_type: str
    rule_config: Dict[str, Any] = field(default_factory=dict)
    enabled: bool = True
    priority: int = 0
    created_by: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)


@dataclass
class AuditEntry:
    event_type: str
    action_id: Optional[str] = None
    batch_id: Optional[str] = None
    from_status: Optional[str] = None
    to_status: Optional[str] = None
    actor: str = "system"
    details: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=datetime.now)
    id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "event_type": self.event_type,
            "action_id": self.action_id,
            "batch_id": self.batch_id,
            "from_status": self.from_status,
            "to_status": self.to_status,
            "actor": self.actor,
            "details": self.details,
            "created_at": _iso(self.created_at),
        }


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None
