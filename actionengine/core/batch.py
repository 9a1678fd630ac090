"""
Batch orchestrator - runs many action pipelines under one concurrency and
error policy.

Each batch owns a bounded set of execution slots (max_concurrent, or 1 when
execute_parallel is false). Pool workers hold a slot while they run a
member, and an approved member takes one before it executes, so approvals
landing mid-batch never push the batch past its bound. Actions parked
behind an approval return their slot immediately and stay counted as
pending until on_member_resolved() sees them finish.
"""

import math
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, List, Optional

from .audit import AuditLedger
from .config import BATCH_ACTION_ESTIMATE_SEC
from .errors import BatchNotFoundError, ValidationError
from .pipeline import ActionPipeline
from .repository import ActionRepository
from .schema import (
    ActionBatch,
    ActionRecord,
    ActionRequest,
    ActionStatus,
    BatchConfig,
    BatchStatus,
)
from ..util.logging import logger

SKIP_REASON = "skipped: batch stopped after a failed action"


def outcome_for(status: ActionStatus) -> Optional[str]:
    """Batch counter bucket for a member's status; None while it is not terminal."""
    if status == ActionStatus.COMPLETED:
        return "completed"
    if status in (ActionStatus.FAILED, ActionStatus.REJECTED):
        return "failed"
    if status == ActionStatus.SKIPPED:
        return "skipped"
    return None


def derive_status(batch: ActionBatch) -> BatchStatus:
    if batch.pending > 0:
        return BatchStatus.AWAITING_APPROVAL
    if batch.skipped > 0:
        return BatchStatus.STOPPED
    if batch.failed > 0:
        return BatchStatus.COMPLETED_WITH_ERRORS
    return BatchStatus.COMPLETED


class BatchOrchestrator:

    def __init__(self, repository: ActionRepository, pipeline: ActionPipeline, audit: AuditLedger,
                 action_estimate_sec: Optional[float] = None):
        self.repository = repository
        self.pipeline = pipeline
        self.audit = audit
        self.action_estimate_sec = (action_estimate_sec if action_estimate_sec is not None
                                    else BATCH_ACTION_ESTIMATE_SEC)
        # Serialises the final status write between the batch runner and late approval outcomes
        self._finalize_lock = threading.Lock()
        self._slots_lock = threading.Lock()
        self._slots: Dict[str, threading.BoundedSemaphore] = {}

    def run_batch(self, config: BatchConfig, requests: List[ActionRequest], user_id: str,
                  initiated_by: Optional[str] = None) -> ActionBatch:
        """Run every request through the pipeline and return the batch with final counters."""
        total = len(requests)
        bound = max(1, config.concurrency_bound)

        batch = self.repository.create_batch(ActionBatch(
            id=str(uuid.uuid4()),
            user_id=user_id,
            batch_name=config.batch_name,
            batch_type=config.batch_type,
            total_actions=total,
            pending=total,
            execute_parallel=config.execute_parallel,
            max_concurrent=config.max_concurrent,
            stop_on_error=config.stop_on_error,
            estimated_duration=math.ceil(total / bound) * self.action_estimate_sec,
        ))
        self.audit.record("batch.created", batch_id=batch.id, to_status=BatchStatus.PENDING,
                          actor=initiated_by or user_id,
                          details={"batch_name": batch.batch_name, "total_actions": total, "bound": bound,
                                   "stop_on_error": config.stop_on_error})

        started = time.monotonic()
        self.repository.update_batch(batch.id, status=BatchStatus.RUNNING, started_at=datetime.now())
        stop_event = threading.Event()
        with self._slots_lock:
            self._slots[batch.id] = threading.BoundedSemaphore(bound)

        if total:
            with ThreadPoolExecutor(max_workers=bound, thread_name_prefix=f"batch-{batch.id[:8]}") as pool:
                futures = [
                    pool.submit(self._run_member, batch.id, index, request, user_id, initiated_by, config,
                                stop_event)
                    for index, request in enumerate(requests)
                ]
                for future in futures:
                    future.result()

        return self._finalize(batch.id, time.monotonic() - started)

    def _run_member(self, batch_id: str, index: int, request: ActionRequest, user_id: str,
                    initiated_by: Optional[str], config: BatchConfig, stop_event: threading.Event):
        if config.stop_on_error and stop_event.is_set():
            self.pipeline.record_skipped(request, user_id, initiated_by, batch_id, SKIP_REASON)
            self._count(batch_id, "skipped")
            return

        try:
            with self.member_slot(batch_id):
                submission = self.pipeline.run(request, user_id, initiated_by, batch_id=batch_id)
        except ValidationError as e:
            self.audit.record("batch.member_rejected", batch_id=batch_id, actor=initiated_by or user_id,
                              details={"index": index, "violations": e.to_list()})
            self._failed(batch_id, config, stop_event)
            return
        except Exception as e:
            logger.error(f"Batch {batch_id} member {index} failed unexpectedly: {e}")
            self.audit.record("batch.member_error", batch_id=batch_id, actor=initiated_by or user_id,
                              details={"index": index, "error": str(e)})
            self._failed(batch_id, config, stop_event)
            return

        if submission.status == "requires_approval":
            # Parked behind an approval; on_member_resolved counts it, even if an approver already has
            return

        outcome = outcome_for(submission.action.status)
        if outcome is None:
            return
        if outcome == "failed":
            self._failed(batch_id, config, stop_event)
        else:
            self._count(batch_id, outcome)

    @contextmanager
    def member_slot(self, batch_id: str):
        """Hold one of the batch's execution slots for the duration of the block."""
        slot = self._slot(batch_id)
        slot.acquire()
        try:
            yield
        finally:
            slot.release()

    def _slot(self, batch_id: str) -> threading.BoundedSemaphore:
        with self._slots_lock:
            slot = self._slots.get(batch_id)
            if slot is None:
                # Batch started by another process or before a restart
                batch = self.get_batch(batch_id)
                bound = batch.max_concurrent if batch.execute_parallel else 1
                slot = threading.BoundedSemaphore(max(1, bound))
                self._slots[batch_id] = slot
            return slot

    def _failed(self, batch_id: str, config: BatchConfig, stop_event: threading.Event):
        if config.stop_on_error:
            stop_event.set()
        self._count(batch_id, "failed")

    def _count(self, batch_id: str, outcome: str) -> ActionBatch:
        batch = self.repository.apply_batch_outcome(batch_id, outcome)
        logger.log_batch_progress(batch.id, batch.completed, batch.failed, batch.pending, batch.skipped,
                                  batch.total_actions, batch.status.value)
        return batch

    def on_member_resolved(self, action: ActionRecord):
        """Count a batch member that left awaiting_approval and reached a terminal status."""
        if not action.batch_id:
            return
        outcome = outcome_for(action.status)
        if outcome is None:
            return

        batch = self._count(action.batch_id, outcome)
        self.audit.record("batch.member_resolved", action_id=action.id, batch_id=action.batch_id,
                          to_status=action.status, details={"outcome": outcome})

        with self._finalize_lock:
            current = self.repository.get_batch(action.batch_id)
            if current.status == BatchStatus.AWAITING_APPROVAL and batch.pending == 0:
                self._write_final_status(current)

    def _finalize(self, batch_id: str, elapsed: float) -> ActionBatch:
        with self._finalize_lock:
            batch = self.repository.update_batch(batch_id, actual_duration=round(elapsed, 3))
            return self._write_final_status(batch)

    def _write_final_status(self, batch: ActionBatch) -> ActionBatch:
        status = derive_status(batch)
        fields = {"status": status}
        if status != BatchStatus.AWAITING_APPROVAL:
            now = datetime.now()
            fields["completed_at"] = now
            if batch.actual_duration is None or batch.status == BatchStatus.AWAITING_APPROVAL:
                if batch.started_at is not None:
                    fields["actual_duration"] = round((now - batch.started_at).total_seconds(), 3)
        updated = self.repository.update_batch(batch.id, **fields)
        if status != BatchStatus.AWAITING_APPROVAL:
            with self._slots_lock:
                self._slots.pop(batch.id, None)

        self.audit.record("batch.finished" if status != BatchStatus.AWAITING_APPROVAL else "batch.parked",
                          batch_id=batch.id, to_status=status,
                          details={"completed": updated.completed, "failed": updated.failed,
                                   "pending": updated.pending, "skipped": updated.skipped,
                                   "total_expected_impact": updated.total_expected_impact,
                                   "total_actual_impact": updated.total_actual_impact,
                                   "success_rate": updated.success_rate})
        logger.log_batch_progress(updated.id, updated.completed, updated.failed, updated.pending,
                                  updated.skipped, updated.total_actions, status.value)
        return updated

    def get_batch(self, batch_id: str) -> ActionBatch:
        batch = self.repository.get_batch(batch_id)
        if batch is None:
            raise BatchNotFoundError(batch_id)
        return batch
