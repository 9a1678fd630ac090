"""
Approval gate - human oversight for high-risk actions.

Approvals are persisted one-to-one with their action. Resolution is a
conditional write on approval_status = 'pending', so a second resolver
gets AlreadyResolvedError instead of silently overwriting the first
decision. Overdue approvals are expired lazily whenever the pending list
is read or a decision arrives, and the heartbeat sweep catches the rest
when it is enabled. Reminders only go out through the sweep.
"""

import uuid
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from .audit import AuditLedger
from .config import APPROVAL_MAX_REMINDERS, APPROVAL_REMINDER_SEC, APPROVAL_TTL_SEC
from .errors import (
    AlreadyResolvedError,
    ApprovalExpiredError,
    ApprovalNotFoundError,
)
from .repository import ActionRepository
from .risk import RiskAssessment
from .schema import ActionRecord, ActionStatus, ApprovalRecord, ApprovalStatus
from ..util.logging import logger

DECISIONS = {
    "approve": ApprovalStatus.APPROVED,
    "approved": ApprovalStatus.APPROVED,
    "deny": ApprovalStatus.DENIED,
    "denied": ApprovalStatus.DENIED,
    "reject": ApprovalStatus.DENIED,
}

SYSTEM_APPROVER = "system"


class ApprovalGate:
    """Creates, resolves, expires and reminds approval requests."""

    def __init__(self, repository: ActionRepository, audit: AuditLedger,
                 ttl_sec: Optional[int] = None, reminder_sec: Optional[int] = None,
                 max_reminders: Optional[int] = None, clock: Callable[[], datetime] = datetime.now):
        self.repository = repository
        self.audit = audit
        self.ttl = timedelta(seconds=ttl_sec if ttl_sec is not None else APPROVAL_TTL_SEC)
        self.reminder_interval = timedelta(seconds=reminder_sec if reminder_sec is not None else APPROVAL_REMINDER_SEC)
        self.max_reminders = max_reminders if max_reminders is not None else APPROVAL_MAX_REMINDERS
        self.clock = clock
        # Called with the action whenever the gate moves it to a terminal status (denied or expired)
        self._listeners: List[Callable[[ActionRecord], None]] = []

    def add_listener(self, listener: Callable[[ActionRecord], None]):
        self._listeners.append(listener)

    def submit_for_approval(self, action: ActionRecord, assessment: RiskAssessment) -> ApprovalRecord:
        """Park a validated action behind a pending approval."""
        now = self.clock()
        approval = ApprovalRecord(
            id=str(uuid.uuid4()),
            action_id=action.id,
            requester_id=action.user_id,
            approval_reason="; ".join(assessment.reasons) or "Action requires review",
            risk_level=assessment.risk_level,
            estimated_impact=action.expected_impact,
            requested_at=now,
            notification_sent=True,
            notification_sent_at=now,
            created_at=now,
            expires_at=now + self.ttl,
        )
        approval = self.repository.create_approval(approval)

        awaiting = self.repository.transition_action(
            action.id,
            [ActionStatus.VALIDATED],
            ActionStatus.AWAITING_APPROVAL,
            requires_approval=True,
        )
        self.audit.transition(action, awaiting, action.initiated_by,
                              {"approval_id": approval.id, "risk_level": approval.risk_level.value})
        self.audit.record("approval.requested", action_id=action.id, batch_id=action.batch_id,
                          to_status=ApprovalStatus.PENDING, actor=action.initiated_by,
                          details={"approval_id": approval.id, "reason": approval.approval_reason,
                                   "expires_at": approval.expires_at.isoformat()})
        logger.log_approval_request(approval.id, action.id, approval.risk_level.value, approval.requester_id)

        if assessment.auto_approvable:
            self._decide(approval, ApprovalStatus.APPROVED, SYSTEM_APPROVER,
                         f"Auto-approved at risk level {assessment.risk_level.value}", auto_approved=True)
            approval = self.repository.get_approval(approval.id)

        return approval

    def resolve(self, approval_id: str, decision: str, approver: str, notes: Optional[str] = None) -> ActionRecord:
        """Approve or deny a pending approval. The first decision sticks."""
        status = DECISIONS.get((decision or "").lower())
        if status is None:
            raise ValueError(f"Unknown decision '{decision}'. Use 'approve' or 'deny'")

        approval = self.repository.get_approval(approval_id)
        if approval is None:
            raise ApprovalNotFoundError(approval_id)

        now = self.clock()
        if approval.is_overdue(now):
            self._expire(approval, now)
            raise ApprovalExpiredError(approval_id)
        if approval.approval_status != ApprovalStatus.PENDING:
            raise AlreadyResolvedError(approval_id, approval.approval_status.value)

        return self._decide(approval, status, approver, notes)

    def _decide(self, approval: ApprovalRecord, status: ApprovalStatus, approver: str,
                notes: Optional[str], auto_approved: bool = False) -> ActionRecord:
        now = self.clock()
        resolved = self.repository.resolve_approval(approval.id, status, approver, now, notes, auto_approved)
        before = self.repository.get_action(approval.action_id)

        if status == ApprovalStatus.APPROVED:
            action = self.repository.transition_action(
                approval.action_id,
                [ActionStatus.AWAITING_APPROVAL],
                ActionStatus.APPROVED,
                approved_by=approver,
                approved_at=now,
            )
        else:
            action = self.repository.transition_action(
                approval.action_id,
                [ActionStatus.AWAITING_APPROVAL],
                ActionStatus.REJECTED,
                completed_at=now,
                error_message=f"Denied by {approver}" + (f": {notes}" if notes else ""),
            )

        self.audit.record("approval.resolved", action_id=action.id, batch_id=action.batch_id,
                          from_status=ApprovalStatus.PENDING, to_status=resolved.approval_status,
                          actor=approver, details={"approval_id": approval.id, "notes": notes or "",
                                                   "auto_approved": auto_approved})
        self.audit.transition(before, action, approver)
        logger.log_approval_decision(approval.id, resolved.approval_status.value, approver, notes or "")

        if action.status == ActionStatus.REJECTED:
            self._notify(action)
        return action

    def _expire(self, approval: ApprovalRecord, now: datetime) -> ActionRecord:
        self.repository.resolve_approval(approval.id, ApprovalStatus.EXPIRED, None, now, "expired")
        before = self.repository.get_action(approval.action_id)
        action = self.repository.transition_action(
            approval.action_id,
            [ActionStatus.AWAITING_APPROVAL],
            ActionStatus.REJECTED,
            completed_at=now,
            error_message="approval expired",
        )
        self.audit.record("approval.expired", action_id=action.id, batch_id=action.batch_id,
                          from_status=ApprovalStatus.PENDING, to_status=ApprovalStatus.EXPIRED,
                          details={"approval_id": approval.id,
                                   "expires_at": approval.expires_at.isoformat() if approval.expires_at else None})
        self.audit.transition(before, action, SYSTEM_APPROVER, {"reason": "approval expired"})
        self._notify(action)
        return action

    def expire_stale(self, now: Optional[datetime] = None) -> int:
        """Expire every pending approval past its expires_at. Returns how many were expired."""
        now = now or self.clock()
        expired = 0
        for approval in self.repository.list_pending_approvals():
            if not approval.is_overdue(now):
                continue
            try:
                self._expire(approval, now)
                expired += 1
            except AlreadyResolvedError:
                # Resolved by a human between the listing and the write
                logger.info(f"Approval {approval.id} resolved before it could expire")
        return expired

    def send_reminders(self, now: Optional[datetime] = None) -> int:
        """Re-notify approvers about pending approvals, up to the reminder cap."""
        now = now or self.clock()
        sent = 0
        for approval in self.repository.list_pending_approvals():
            if approval.reminder_count >= self.max_reminders or approval.is_overdue(now):
                continue
            last = approval.last_reminder or approval.notification_sent_at or approval.requested_at
            if now - last < self.reminder_interval:
                continue
            try:
                updated = self.repository.record_reminder(approval.id, now)
            except AlreadyResolvedError:
                continue
            logger.log_approval_reminder(approval.id, updated.reminder_count)
            self.audit.record("approval.reminder", action_id=approval.action_id,
                              details={"approval_id": approval.id, "reminder_count": updated.reminder_count})
            sent += 1
        return sent

    def list_pending(self, user_id: Optional[str] = None) -> List[ApprovalRecord]:
        """Pending approvals still inside their TTL; overdue ones are expired on the way."""
        self.expire_stale()
        return self.repository.list_pending_approvals(user_id)

    def _notify(self, action: ActionRecord):
        for listener in self._listeners:
            listener(action)
