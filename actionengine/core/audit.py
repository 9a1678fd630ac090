"""
Append-only audit ledger. Every state transition of an action, approval or
batch is written here independently of the mutable action record, and
mirrored to the structured logger. The ledger keeps details in full; only
the log line is redacted and truncated.
"""

from typing import Any, Dict, List, Optional

from .repository import ActionRepository
from .schema import ActionRecord, AuditEntry
from ..util.logging import StructuredLogger, logger as default_logger, sanitize_payload


class AuditLedger:
    """Writes audit entries through the repository; there is no update or delete path."""

    def __init__(self, repository: ActionRepository, event_logger: Optional[StructuredLogger] = None):
        self.repository = repository
        self.logger = event_logger or default_logger

    def record(self, event_type: str, action_id: Optional[str] = None, batch_id: Optional[str] = None,
               from_status: Optional[str] = None, to_status: Optional[str] = None, actor: str = "system",
               details: Optional[Dict[str, Any]] = None) -> AuditEntry:
        entry = self.repository.append_audit(AuditEntry(
            event_type=event_type,
            action_id=action_id,
            batch_id=batch_id,
            from_status=_value(from_status),
            to_status=_value(to_status),
            actor=actor or "system",
            details=dict(details or {}),
        ))

        if event_type == "action.transition":
            self.logger.log_transition(action_id, entry.from_status, entry.to_status, entry.actor, entry.details)
        else:
            log_details = {"action_id": action_id, "batch_id": batch_id, "actor": entry.actor}
            log_details.update(sanitize_payload(entry.details))
            self.logger.log_operation(event_type, entry.to_status or "recorded", log_details)
        return entry

    def transition(self, before: Optional[ActionRecord], after: ActionRecord, actor: str = "system",
                   details: Optional[Dict[str, Any]] = None) -> AuditEntry:
        """Record an action moving from `before.status` to `after.status`."""
        return self.record(
            "action.transition",
            action_id=after.id,
            batch_id=after.batch_id,
            from_status=before.status if before is not None else None,
            to_status=after.status,
            actor=actor,
            details=details,
        )

    def history(self, action_id: str) -> List[AuditEntry]:
        return self.repository.list_audit(action_id=action_id)

    def batch_history(self, batch_id: str) -> List[AuditEntry]:
        return self.repository.list_audit(batch_id=batch_id)


def _value(status) -> Optional[str]:
    if status is None:
        return None
    return getattr(status, "value", status)
