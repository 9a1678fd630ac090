"""
SQLite repository: same contract as the in-memory one, plus durability.
"""

import sqlite3
import uuid
from datetime import datetime

import pytest

from actionengine.core.dao import SQLiteActionRepository
from actionengine.core.db import get_db, health_check, init_db, REQUIRED_TABLES
from actionengine.core.errors import (
    AlreadyResolvedError,
    AlreadyRolledBackError,
    StateConflictError,
)
from actionengine.core.payloads import EmptySnapshot, PriceSnapshot, PriceUpdatePayload
from actionengine.core.schema import (
    ActionBatch,
    ActionRecord,
    ActionStatus,
    ActionType,
    ApprovalRecord,
    ApprovalStatus,
    BatchConfig,
    BatchStatus,
    RiskLevel,
    ValidationRule,
)

from conftest import USER, price_request


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "actions.db")


@pytest.fixture
def sqlite_repo(db_path):
    return SQLiteActionRepository(db_path)


def new_action(**overrides):
    fields = dict(
        id=str(uuid.uuid4()),
        user_id=USER,
        action_type=ActionType.PRICE_UPDATE,
        payload=PriceUpdatePayload(sku="GIN-001", new_price=27.99),
        reason="test",
        initiated_by=USER,
        target_sku="GIN-001",
        expected_impact=-51.0,
        affected_systems=["pricing"],
    )
    fields.update(overrides)
    return ActionRecord(**fields)


class TestSchema:

    def test_init_creates_tables(self, db_path):
        init_db(db_path)
        assert health_check(db_path) is True

    def test_missing_database_is_unhealthy(self, tmp_path):
        empty = str(tmp_path / "empty.db")
        with get_db(empty):
            pass
        assert health_check(empty) is False

    def test_batch_counters_are_checked(self, sqlite_repo, db_path):
        with get_db(db_path) as conn:
            with pytest.raises(sqlite3.IntegrityError):
                conn.execute(
                    "INSERT INTO action_batches (id, user_id, batch_name, batch_type, total_actions, completed, "
                    "failed, pending, skipped, created_at) VALUES ('b', 'u', 'n', 'manual', 3, 1, 0, 0, 0, "
                    "'2026-01-01T00:00:00')"
                )

    def test_required_tables(self):
        assert "action_audit_log" in REQUIRED_TABLES


class TestActions:

    def test_round_trip(self, sqlite_repo):
        action = sqlite_repo.create_action(new_action())
        loaded = sqlite_repo.get_action(action.id)

        assert loaded.status == ActionStatus.PENDING
        assert loaded.payload == PriceUpdatePayload(sku="GIN-001", new_price=27.99)
        assert loaded.rollback_data is None
        assert loaded.affected_systems == ["pricing"]
        assert loaded.expected_impact == -51.0
        assert sqlite_repo.count_actions() == 1

    def test_transition_writes_fields(self, sqlite_repo):
        action = sqlite_repo.create_action(new_action(status=ActionStatus.VALIDATED))
        now = datetime.now()

        executing = sqlite_repo.transition_action(
            action.id, [ActionStatus.VALIDATED], ActionStatus.EXECUTING,
            rollback_data=PriceSnapshot(sku="GIN-001", old_price=28.50),
            executed_at=now,
            sync_status={"pricing": "pending"},
        )

        assert executing.status == ActionStatus.EXECUTING
        assert executing.rollback_data == PriceSnapshot(sku="GIN-001", old_price=28.50)
        assert executing.executed_at == now
        assert executing.sync_status == {"pricing": "pending"}

    def test_transition_from_wrong_status_conflicts(self, sqlite_repo):
        action = sqlite_repo.create_action(new_action())

        with pytest.raises(StateConflictError) as exc_info:
            sqlite_repo.transition_action(action.id, [ActionStatus.VALIDATED], ActionStatus.EXECUTING)
        assert exc_info.value.actual == "pending"

    def test_rollback_data_is_written_once(self, sqlite_repo):
        action = sqlite_repo.create_action(new_action(status=ActionStatus.VALIDATED))
        sqlite_repo.transition_action(action.id, [ActionStatus.VALIDATED], ActionStatus.EXECUTING,
                                      rollback_data=PriceSnapshot(sku="GIN-001", old_price=28.50))

        with pytest.raises(StateConflictError):
            sqlite_repo.transition_action(action.id, [ActionStatus.EXECUTING], ActionStatus.FAILED,
                                          rollback_data=EmptySnapshot(reason="again"))

    def test_unknown_transition_field(self, sqlite_repo):
        action = sqlite_repo.create_action(new_action())
        with pytest.raises(ValueError, match="cannot be written"):
            sqlite_repo.transition_action(action.id, [ActionStatus.PENDING], ActionStatus.VALIDATED,
                                          user_id="someone-else")

    def test_mark_rolled_back_once(self, sqlite_repo):
        action = sqlite_repo.create_action(new_action(status=ActionStatus.COMPLETED))
        record = sqlite_repo.mark_rolled_back(action.id, USER, datetime.now(), "undo")

        assert record.rolled_back
        assert record.rollback_reason == "undo"
        with pytest.raises(AlreadyRolledBackError):
            sqlite_repo.mark_rolled_back(action.id, USER, datetime.now(), "undo again")

    def test_list_actions_is_scoped_by_user(self, sqlite_repo):
        sqlite_repo.create_action(new_action())
        sqlite_repo.create_action(new_action(user_id="other"))

        assert len(sqlite_repo.list_actions(USER)) == 1
        assert sqlite_repo.list_actions("nobody") == []


class TestApprovalsAndRules:

    def test_first_resolution_wins(self, sqlite_repo):
        action = sqlite_repo.create_action(new_action())
        approval = sqlite_repo.create_approval(ApprovalRecord(
            id="appr-1", action_id=action.id, requester_id=USER, approval_reason="big drop",
            risk_level=RiskLevel.HIGH, estimated_impact=150.0,
        ))

        resolved = sqlite_repo.resolve_approval(approval.id, ApprovalStatus.APPROVED, "manager-7", datetime.now())
        assert resolved.approval_status == ApprovalStatus.APPROVED
        assert resolved.risk_level == RiskLevel.HIGH

        with pytest.raises(AlreadyResolvedError):
            sqlite_repo.resolve_approval(approval.id, ApprovalStatus.DENIED, "manager-8", datetime.now())
        assert sqlite_repo.list_pending_approvals() == []

    def test_reminders_count_up(self, sqlite_repo):
        action = sqlite_repo.create_action(new_action())
        sqlite_repo.create_approval(ApprovalRecord(id="appr-2", action_id=action.id, requester_id=USER,
                                                   approval_reason="x", risk_level=RiskLevel.HIGH))

        sqlite_repo.record_reminder("appr-2", datetime.now())
        updated = sqlite_repo.record_reminder("appr-2", datetime.now())
        assert updated.reminder_count == 2

    def test_rules_by_priority(self, sqlite_repo):
        for rule_id, priority in (("low", 1), ("high", 10)):
            sqlite_repo.add_rule(ValidationRule(id=rule_id, user_id=USER, action_type="price_update",
                                                rule_type="change_limit", rule_config={"max_change_percent": 20},
                                                priority=priority))

        rules = sqlite_repo.list_rules(USER, "price_update")
        assert [r.id for r in rules] == ["high", "low"]
        assert rules[0].rule_config == {"max_change_percent": 20}


class TestBatches:

    def test_outcomes_keep_the_invariant(self, sqlite_repo):
        batch = sqlite_repo.create_batch(ActionBatch(id="batch-1", user_id=USER, batch_name="n",
                                                     batch_type="manual", total_actions=2, pending=2))

        sqlite_repo.apply_batch_outcome(batch.id, "completed")
        updated = sqlite_repo.apply_batch_outcome(batch.id, "skipped")

        assert (updated.completed, updated.skipped, updated.pending) == (1, 1, 0)
        with pytest.raises(ValueError):
            sqlite_repo.apply_batch_outcome(batch.id, "failed")

    def test_update_batch_status(self, sqlite_repo):
        sqlite_repo.create_batch(ActionBatch(id="batch-2", user_id=USER, batch_name="n", batch_type="manual",
                                             total_actions=0, pending=0))
        updated = sqlite_repo.update_batch("batch-2", status=BatchStatus.RUNNING, started_at=datetime.now())
        assert updated.status == BatchStatus.RUNNING


class TestEngineOnSQLite:
    """The whole lifecycle against a real database file."""

    def test_execute_and_rollback_survive_reopen(self, make_engine, db_path, commerce):
        engine = make_engine(commerce, repository=SQLiteActionRepository(db_path))

        submission = engine.submit(price_request(new_price=27.99), USER)
        engine.rollback(submission.action.id, "undo", initiator=USER)

        reopened = SQLiteActionRepository(db_path, initialize=False)
        action = reopened.get_action(submission.action.id)
        assert action.status == ActionStatus.COMPLETED
        assert action.rolled_back
        assert action.rollback_data == PriceSnapshot(sku="GIN-001", old_price=28.50)
        assert [e.event_type for e in reopened.list_audit(action_id=action.id)][-1] == "action.rolled_back"

    def test_batch_on_sqlite(self, make_engine, db_path, commerce):
        engine = make_engine(commerce, repository=SQLiteActionRepository(db_path))
        requests = [price_request(sku="GIN-001", new_price=28.40), price_request(sku="RUM-003", new_price=-2)]

        batch = engine.run_batch(BatchConfig(batch_name="sqlite", stop_on_error=True), requests, USER)

        assert batch.completed == 1
        assert batch.failed == 1
        assert batch.status == BatchStatus.COMPLETED_WITH_ERRORS
        assert engine.get_batch(batch.id).action_ids == batch.action_ids
