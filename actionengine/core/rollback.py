"""
Rollback of completed actions.
The compensating mutation uses only the stored rollback snapshot. Status stays
'completed'; the rollback is recorded as an annotation on the record.
"""

from datetime import datetime
from typing import Optional

from .audit import AuditLedger
from .commerce import ICommerceSystem, ISKUStore
from .errors import (
    ActionNotFoundError,
    AlreadyRolledBackError,
    InvalidStateError,
    RollbackError,
    UnauthorizedActionError,
)
from .handlers import get_handler
from .locks import SKULockRegistry, sku_locks
from .repository import ActionRepository
from .schema import ActionRecord, ActionStatus
from ..util.logging import logger


class RollbackManager:

    def __init__(self, repository: ActionRepository, commerce: ICommerceSystem, sku_store: ISKUStore,
                 audit: AuditLedger, locks: Optional[SKULockRegistry] = None,
                 lock_timeout_sec: Optional[float] = None):
        self.repository = repository
        self.commerce = commerce
        self.sku_store = sku_store
        self.audit = audit
        self.locks = locks or sku_locks
        self.lock_timeout_sec = lock_timeout_sec

    def rollback(self, action_id: str, reason: str, initiator: str, user_id: Optional[str] = None) -> ActionRecord:
        action = self._check(action_id, user_id)

        held = self.locks.acquire(action.skus, timeout=self.lock_timeout_sec)
        if held is None:
            raise RollbackError(action_id, "timed out waiting for an in-flight action on the same SKU")

        try:
            # Re-check under the lock; a concurrent rollback may have won
            action = self._check(action_id, user_id)

            snapshot = action.rollback_data
            if snapshot is None or not snapshot.captured:
                raise RollbackError(action_id, "no rollback data was captured")

            handler = get_handler(action.action_type)
            try:
                outcome = handler.revert(self.commerce, self.sku_store, snapshot, f"Rollback: {reason}")
            except Exception as e:
                logger.log_rollback(action_id, initiator, "failed", {"error": str(e)})
                self.audit.record("rollback.failed", action_id=action_id, batch_id=action.batch_id,
                                  actor=initiator, details={"reason": reason, "error": str(e)})
                raise RollbackError(action_id, str(e)) from e

            record = self.repository.mark_rolled_back(action_id, initiator, datetime.now(), reason)
        finally:
            self.locks.release(held)

        logger.log_rollback(action_id, initiator, "success", {"reason": reason})
        self.audit.record(
            "action.rolled_back",
            action_id=action_id,
            batch_id=record.batch_id,
            from_status=ActionStatus.COMPLETED,
            to_status=ActionStatus.COMPLETED,
            actor=initiator,
            details={"reason": reason, "snapshot": snapshot.to_dict(), "result": outcome.data},
        )
        return record

    def _check(self, action_id: str, user_id: Optional[str]) -> ActionRecord:
        action = self.repository.get_action(action_id)
        if action is None:
            raise ActionNotFoundError(action_id)
        if user_id is not None and action.user_id != user_id:
            raise UnauthorizedActionError(f"User {user_id} does not own action {action_id}")
        if action.rolled_back:
            raise AlreadyRolledBackError(action_id)
        if action.status != ActionStatus.COMPLETED:
            raise InvalidStateError(action_id, [ActionStatus.COMPLETED.value], action.status.value,
                                    f"Only completed actions can be rolled back (action is {action.status.value})")
        return action
