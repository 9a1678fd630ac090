"""
Executor: snapshot before mutation, deadlines, per-SKU serialization.
"""

import threading
import uuid

import pytest

from actionengine.core.audit import AuditLedger
from actionengine.core.commerce import InMemoryCommerce
from actionengine.core.errors import InvalidStateError, TransientExecutionError
from actionengine.core.executor import Executor
from actionengine.core.locks import SKULockRegistry
from actionengine.core.payloads import EmptySnapshot, PriceSnapshot, PriceUpdatePayload
from actionengine.core.schema import ActionRecord, ActionStatus, ActionType

from conftest import USER, RecordingCommerce, make_catalog, price_request, wait_for


class BlockingCommerce(InMemoryCommerce):
    """Price changes wait for `gate` before reaching the catalog."""

    def __init__(self, skus):
        super().__init__(skus)
        self.gate = threading.Event()

    def apply_price_change(self, sku, new_price, reason=""):
        self.gate.wait(5)
        return super().apply_price_change(sku, new_price, reason)


class UnavailableCommerce(InMemoryCommerce):

    def apply_price_change(self, sku, new_price, reason=""):
        raise TransientExecutionError("pricing service unavailable")


class TestSuccessfulExecution:

    def test_price_update_completes_immediately(self, engine, commerce):
        # 28.50 -> 27.99 is a 1.8% drop
        submission = engine.submit(price_request(new_price=27.99), USER)
        action = submission.action

        assert submission.status == "completed"
        assert action.status == ActionStatus.COMPLETED
        assert action.rollback_data == PriceSnapshot(sku="GIN-001", old_price=28.50)
        assert action.executed_at is not None and action.completed_at is not None
        assert action.sync_status == {"pricing": "synced"}
        assert action.actual_impact == pytest.approx(-51.0)
        assert "duration_ms" in action.success_metrics
        assert commerce.get_sku("GIN-001").price == 27.99
        assert commerce.price_history[-1]["change_reason"] == "competitor price match"

    def test_result_carries_commerce_data(self, engine):
        execution = engine.submit(price_request(new_price=27.99), USER).execution

        assert execution.success
        assert execution.data["old_price"] == 28.50
        assert execution.data["new_price"] == 27.99
        assert execution.message == "Price updated from 28.50 to 27.99"

    def test_reorder_adds_to_stock(self, engine, commerce):
        request = price_request()
        request.action_type = "reorder_stock"
        request.params = {"quantity": 24, "cost_per_unit": 14, "supplier": "Acme Spirits"}

        submission = engine.submit(request, USER)

        assert submission.status == "completed"
        assert commerce.get_sku("GIN-001").quantity == 124
        assert submission.action.sync_status == {"inventory": "synced"}
        assert submission.execution.data["total_cost"] == 336

    def test_campaign_records_external_reference(self, engine, commerce):
        request = price_request()
        request.action_type = "launch_campaign"
        request.target_sku = None
        request.params = {"campaign_name": "Gin Week", "target_skus": ["GIN-001", "RUM-003"],
                          "discount_percentage": 15, "budget": 400, "channels": ["email"]}

        submission = engine.submit(request, USER)
        campaign_ref = submission.action.external_refs["campaign_id"]

        assert submission.status == "completed"
        assert submission.action.rollback_data.campaign_ref == campaign_ref
        assert commerce.campaign(campaign_ref)["status"] == "active"
        assert submission.action.sync_status == {"pricing": "synced", "marketing": "synced"}

    def test_completed_action_cannot_run_again(self, engine):
        submission = engine.submit(price_request(new_price=27.99), USER)
        with pytest.raises(InvalidStateError):
            engine.executor.execute(submission.action.id)


class TestFailures:

    def test_execution_failure_is_terminal(self, make_engine):
        engine = make_engine(RecordingCommerce(make_catalog(), failing_skus=["GIN-001"]))

        submission = engine.submit(price_request(new_price=27.99), USER)

        assert submission.status == "failed"
        assert submission.action.status == ActionStatus.FAILED
        assert submission.execution.error_kind == "permanent"
        assert "rejected GIN-001" in submission.action.error_message
        assert submission.action.sync_status == {"pricing": "failed"}
        # the snapshot taken before the call is kept
        assert submission.action.rollback_data == PriceSnapshot(sku="GIN-001", old_price=28.50)

    def test_transient_failure_is_marked_retryable(self, make_engine):
        engine = make_engine(UnavailableCommerce(make_catalog()))

        submission = engine.submit(price_request(new_price=27.99), USER)

        assert submission.status == "failed"
        assert submission.execution.error_kind == "transient"
        assert submission.execution.error.retryable

    def test_capture_failure_never_mutates(self, repository):
        commerce = InMemoryCommerce(make_catalog())
        executor = Executor(repository, commerce, commerce, AuditLedger(repository), locks=SKULockRegistry(),
                            timeout_sec=2)
        action = repository.create_action(ActionRecord(
            id=str(uuid.uuid4()),
            user_id=USER,
            action_type=ActionType.PRICE_UPDATE,
            payload=PriceUpdatePayload(sku="GONE-404", new_price=10.0),
            reason="sku deleted after validation",
            initiated_by=USER,
            status=ActionStatus.VALIDATED,
            affected_systems=["pricing"],
        ))

        try:
            result = executor.execute(action.id)
        finally:
            executor.shutdown()

        assert not result.success
        assert result.action.status == ActionStatus.FAILED
        assert result.action.rollback_data == EmptySnapshot(reason="capture_failed")
        assert result.action.executed_at is None
        assert commerce.price_history == []


class TestDeadline:

    def test_timeout_fails_and_records_late_result(self, make_engine):
        commerce = BlockingCommerce(make_catalog())
        locks = SKULockRegistry()
        engine = make_engine(commerce, locks=locks, execution_timeout_sec=0.2)

        submission = engine.submit(price_request(new_price=27.99), USER)
        action = submission.action

        assert submission.status == "failed"
        assert action.status == ActionStatus.FAILED
        assert action.sync_status == {"pricing": "unknown"}
        assert submission.execution.error_kind == "transient"
        assert "timed out" in action.error_message
        # the call is still in flight, so the SKU stays locked
        assert locks.is_locked("GIN-001")

        commerce.gate.set()

        def late_result_recorded():
            return any(e.event_type == "execution.late_result" for e in engine.history(action.id))

        assert wait_for(late_result_recorded)
        assert wait_for(lambda: not locks.is_locked("GIN-001"))
        late = [e for e in engine.history(action.id) if e.event_type == "execution.late_result"][0]
        assert late.details["late_success"] is True
        # the action stays failed even though the mutation landed
        assert engine.get_action(action.id).status == ActionStatus.FAILED

    def test_lock_timeout_fails_without_snapshot(self, make_engine):
        locks = SKULockRegistry()
        engine = make_engine(locks=locks, execution_timeout_sec=0.1)
        held = locks.acquire(["GIN-001"])
        try:
            submission = engine.submit(price_request(new_price=27.99), USER)
        finally:
            locks.release(held)

        assert submission.status == "failed"
        assert submission.action.rollback_data == EmptySnapshot(reason="lock_timeout")
        assert submission.action.sync_status == {"pricing": "pending"}

    def test_lock_wait_does_not_shorten_the_call(self, make_engine):
        # the second update waits about 0.6s for the SKU lock, then needs 0.6s of its own
        commerce = RecordingCommerce(make_catalog(), delay=0.6)
        engine = make_engine(commerce, execution_timeout_sec=1.0)
        results = []

        def submit(price):
            results.append(engine.submit(price_request(new_price=price), USER))

        threads = [threading.Thread(target=submit, args=(price,)) for price in (27.99, 28.40)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert sorted(r.status for r in results) == ["completed", "completed"]
        assert commerce.get_sku("GIN-001").price in (27.99, 28.40)
        assert len(commerce.price_history) == 2


class TestSerialization:

    def test_same_sku_never_mutates_concurrently(self, make_engine):
        commerce = RecordingCommerce(make_catalog(), delay=0.05)
        engine = make_engine(commerce)
        prices = [28.40, 28.30, 28.60, 28.45, 28.55]
        results = []

        def submit(price):
            results.append(engine.submit(price_request(new_price=price), USER))

        threads = [threading.Thread(target=submit, args=(price,)) for price in prices]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(results) == len(prices)
        assert all(r.status == "completed" for r in results)
        assert commerce.max_in_flight_by_sku["GIN-001"] == 1

    def test_different_skus_run_in_parallel(self, make_engine):
        commerce = RecordingCommerce(make_catalog(), delay=0.2)
        engine = make_engine(commerce)
        requests = [price_request(sku="GIN-001", new_price=28.40), price_request(sku="RUM-003", new_price=21.90)]

        threads = [threading.Thread(target=engine.submit, args=(r, USER)) for r in requests]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert commerce.max_in_flight == 2

    def test_one_action_executed_from_two_threads_runs_once(self, make_engine):
        commerce = RecordingCommerce(make_catalog(), delay=0.1)
        engine = make_engine(commerce)
        # park it behind an approval, then approve without executing
        submission = engine.submit(price_request(new_price=24.99, expected_impact=150), USER)
        engine.gate.resolve(submission.approval.id, "approve", "manager-7")
        start = threading.Barrier(2)
        results, errors = [], []

        def execute():
            start.wait()
            try:
                results.append(engine.executor.execute(submission.action.id, "manager-7"))
            except InvalidStateError as e:
                errors.append(e)

        threads = [threading.Thread(target=execute) for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(results) == 1
        assert results[0].success
        assert len(errors) == 1
        assert len(commerce.price_history) == 1
        assert engine.get_action(submission.action.id).status == ActionStatus.COMPLETED
