"""
Executor - performs the mutation for a validated or approved action.

Order of operations, all under the per-SKU locks:
    1. re-read the target state and capture a rollback snapshot
    2. persist the snapshot together with the move to 'executing'
    3. call the external system, bounded by its own execution deadline
    4. move to 'completed' (with actual impact when measurable) or 'failed'

A crash between 2 and 3 leaves a recoverable snapshot and no mutation.
Waiting for the locks and running the call are timed separately, each
with timeout_sec, so a long queue behind another action on the same SKU
fails before anything is sent rather than cutting the call short.
"""

import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

from .audit import AuditLedger
from .commerce import ICommerceSystem, ISKUStore
from .config import EXECUTION_TIMEOUT_SEC, EXECUTOR_IO_WORKERS
from .errors import (
    ActionNotFoundError,
    ExecutionError,
    ExecutionTimeoutError,
    InvalidStateError,
    PermanentExecutionError,
)
from .handlers import get_handler
from .locks import SKULockRegistry, sku_locks
from .payloads import EmptySnapshot
from .repository import ActionRepository
from .schema import (
    AFFECTED_SYSTEMS,
    EXECUTABLE_STATUSES,
    ActionRecord,
    ActionStatus,
    ApprovalStatus,
    SyncState,
)
from ..util.logging import logger


@dataclass
class ExecutionResult:
    success: bool
    action: ActionRecord
    message: str
    data: Dict[str, Any] = field(default_factory=dict)
    actual_impact: Optional[float] = None
    error: Optional[ExecutionError] = None

    @property
    def error_kind(self) -> Optional[str]:
        return self.error.kind if self.error is not None else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "action_id": self.action.id,
            "status": self.action.status.value,
            "message": self.message,
            "data": self.data,
            "actual_impact": self.actual_impact,
            "error": str(self.error) if self.error else None,
            "error_kind": self.error_kind,
        }


def _sync_map(action: ActionRecord, state: SyncState) -> Dict[str, str]:
    systems = action.affected_systems or AFFECTED_SYSTEMS[action.action_type]
    return {system: state.value for system in systems}


class Executor:
    """Runs one action to a terminal state. Never retries in place."""

    def __init__(self, repository: ActionRepository, commerce: ICommerceSystem, sku_store: ISKUStore,
                 audit: AuditLedger, locks: Optional[SKULockRegistry] = None,
                 timeout_sec: Optional[float] = None, io_pool: Optional[ThreadPoolExecutor] = None):
        self.repository = repository
        self.commerce = commerce
        self.sku_store = sku_store
        self.audit = audit
        self.locks = locks or sku_locks
        self.timeout_sec = timeout_sec if timeout_sec is not None else EXECUTION_TIMEOUT_SEC
        self._owns_pool = io_pool is None
        self.io_pool = io_pool or ThreadPoolExecutor(max_workers=EXECUTOR_IO_WORKERS,
                                                     thread_name_prefix="action-io")

    def shutdown(self):
        if self._owns_pool:
            self.io_pool.shutdown(wait=False)

    def execute(self, action_id: str, actor: str = "system") -> ExecutionResult:
        """Execute a validated or approved action. Raises InvalidStateError on a bad precondition."""
        action = self._load_executable(action_id)

        held = self.locks.acquire(action.skus, timeout=self.timeout_sec)
        if held is None:
            return self._fail(action, EmptySnapshot(reason="lock_timeout"),
                              ExecutionTimeoutError(self.timeout_sec), actor, sync=SyncState.PENDING)

        release_now = True
        try:
            # Another caller may have moved the action while we waited for the locks
            action = self._load_executable(action_id)
            handler = get_handler(action.action_type)

            try:
                snapshot = handler.capture(self.sku_store, action.payload)
            except ExecutionError as e:
                return self._fail(action, EmptySnapshot(reason="capture_failed"), e, actor,
                                  sync=SyncState.PENDING)
            except Exception as e:
                error = PermanentExecutionError(f"{type(e).__name__}: {e}")
                return self._fail(action, EmptySnapshot(reason="capture_failed"), error, actor,
                                  sync=SyncState.PENDING)

            executing = self.repository.transition_action(
                action.id,
                [action.status],
                ActionStatus.EXECUTING,
                rollback_data=snapshot,
                executed_at=datetime.now(),
                sync_status=_sync_map(action, SyncState.PENDING),
            )
            self.audit.transition(action, executing, actor, {"snapshot": snapshot.to_dict()})

            started = time.monotonic()
            future = self.io_pool.submit(handler.apply, self.commerce, action.payload, snapshot, action.reason)
            try:
                outcome = future.result(timeout=self.timeout_sec)
            except FutureTimeout:
                error = ExecutionTimeoutError(self.timeout_sec)
                result = self._finish_failed(executing, error, actor, SyncState.UNKNOWN, started)
                # The call is still running against the external system; keep the SKUs locked until it returns
                release_now = False
                future.add_done_callback(lambda f: self._late_result(executing, f, held))
                return result
            except ExecutionError as e:
                return self._finish_failed(executing, e, actor, SyncState.FAILED, started)
            except Exception as e:
                error = PermanentExecutionError(f"{type(e).__name__}: {e}")
                return self._finish_failed(executing, error, actor, SyncState.FAILED, started)

            duration_ms = (time.monotonic() - started) * 1000
            metrics = {
                "duration_ms": round(duration_ms, 1),
                "expected_impact": action.expected_impact,
                "actual_impact": outcome.actual_impact,
            }
            if outcome.actual_impact is not None and action.expected_impact is not None:
                metrics["impact_delta"] = round(outcome.actual_impact - action.expected_impact, 2)

            completed = self.repository.transition_action(
                action.id,
                [ActionStatus.EXECUTING],
                ActionStatus.COMPLETED,
                completed_at=datetime.now(),
                actual_impact=outcome.actual_impact,
                success_metrics=metrics,
                external_refs=outcome.external_refs or None,
                sync_status=_sync_map(action, SyncState.SYNCED),
            )
            self.audit.transition(executing, completed, actor, {"actual_impact": outcome.actual_impact})
            logger.log_execution(action.id, action.action_type.value, True, duration_ms,
                                 {"actual_impact": outcome.actual_impact})

            return ExecutionResult(
                success=True,
                action=completed,
                message=outcome.message,
                data=outcome.data,
                actual_impact=outcome.actual_impact,
            )
        finally:
            if release_now:
                self.locks.release(held)

    def _load_executable(self, action_id: str) -> ActionRecord:
        action = self.repository.get_action(action_id)
        if action is None:
            raise ActionNotFoundError(action_id)

        if action.status not in EXECUTABLE_STATUSES:
            raise InvalidStateError(action_id, [s.value for s in EXECUTABLE_STATUSES], action.status.value)

        if action.requires_approval:
            approval = self.repository.get_approval_for_action(action_id)
            if approval is None or approval.approval_status != ApprovalStatus.APPROVED:
                actual = approval.approval_status.value if approval else "missing"
                raise InvalidStateError(action_id, [ApprovalStatus.APPROVED.value], actual,
                                        f"Action {action_id} cannot execute: approval is {actual}")
        return action

    def _fail(self, action: ActionRecord, snapshot: EmptySnapshot, error: ExecutionError, actor: str,
              sync: SyncState) -> ExecutionResult:
        """Fail an action that never reached the external system."""
        failed = self.repository.transition_action(
            action.id,
            [action.status],
            ActionStatus.FAILED,
            rollback_data=snapshot,
            completed_at=datetime.now(),
            error_message=str(error),
            sync_status=_sync_map(action, sync),
        )
        self.audit.transition(action, failed, actor, {"error": str(error), "error_kind": error.kind,
                                                      "mutated": False})
        logger.log_execution(action.id, action.action_type.value, False, 0.0,
                             {"error": str(error), "stage": snapshot.reason})
        return ExecutionResult(success=False, action=failed, message=str(error), error=error)

    def _finish_failed(self, executing: ActionRecord, error: ExecutionError, actor: str, sync: SyncState,
                       started: float) -> ExecutionResult:
        duration_ms = (time.monotonic() - started) * 1000
        failed = self.repository.transition_action(
            executing.id,
            [ActionStatus.EXECUTING],
            ActionStatus.FAILED,
            completed_at=datetime.now(),
            error_message=str(error),
            success_metrics={"duration_ms": round(duration_ms, 1)},
            sync_status=_sync_map(executing, sync),
        )
        self.audit.transition(executing, failed, actor, {"error": str(error), "error_kind": error.kind,
                                                         "retryable": error.retryable})
        logger.log_execution(executing.id, executing.action_type.value, False, duration_ms,
                             {"error": str(error), "error_kind": error.kind})
        return ExecutionResult(success=False, action=failed, message=str(error), error=error)

    def _late_result(self, action: ActionRecord, future, held):
        """Runs when a timed-out call finally returns. The action stays failed; this only records the outcome."""
        try:
            error = future.exception()
            details = {"late_success": error is None}
            if error is None:
                details["actual_impact"] = future.result().actual_impact
                logger.warning(f"Action {action.id} mutated its target after the deadline; needs reconciliation")
            else:
                details["error"] = str(error)
            self.audit.record("execution.late_result", action_id=action.id, batch_id=action.batch_id,
                              details=details)
        finally:
            self.locks.release(held)
