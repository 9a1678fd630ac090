"""
Audit ledger: every transition is recorded, oldest first, independent of the action row.
"""

from unittest.mock import MagicMock

import pytest

from actionengine.core.audit import AuditLedger
from actionengine.core.errors import ActionNotFoundError
from actionengine.core.schema import ActionStatus

from conftest import USER, price_request


class TestAuditTrail:

    def test_completed_action_history(self, engine):
        submission = engine.submit(price_request(new_price=27.99), USER)

        transitions = [(e.from_status, e.to_status) for e in engine.history(submission.action.id)
                       if e.event_type == "action.transition"]
        assert transitions == [
            (None, "pending"),
            ("pending", "validated"),
            ("validated", "executing"),
            ("executing", "completed"),
        ]

    def test_entries_are_ordered_by_id(self, engine):
        submission = engine.submit(price_request(new_price=27.99), USER)
        ids = [e.id for e in engine.history(submission.action.id)]
        assert ids == sorted(ids)

    def test_approval_path_history(self, engine):
        submission = engine.submit(price_request(new_price=24.99), USER)
        engine.resolve_approval(submission.approval.id, "approve", "manager-7")

        events = [(e.event_type, e.to_status) for e in engine.history(submission.action.id)]
        assert ("approval.requested", "pending") in events
        assert ("approval.resolved", "approved") in events
        assert ("action.transition", "awaiting_approval") in events
        assert events[-1] == ("action.transition", "completed")

    def test_actor_is_recorded(self, engine):
        submission = engine.submit(price_request(new_price=27.99), USER, initiated_by="pricing-bot")
        first = engine.history(submission.action.id)[0]
        assert first.actor == "pricing-bot"

    def test_history_of_unknown_action(self, engine):
        with pytest.raises(ActionNotFoundError):
            engine.history("missing")


class TestLedger:

    def test_details_are_stored_in_full_and_logged_sanitized(self, repository):
        event_logger = MagicMock()
        ledger = AuditLedger(repository, event_logger=event_logger)
        note = "x" * 150
        entry = ledger.record("integration.call", details={"api_key": "sk-live-123", "note": note})

        stored = repository.list_audit()[-1]
        assert stored.details == {"api_key": "sk-live-123", "note": note}
        assert entry.details["note"] == note

        logged = event_logger.log_operation.call_args[0][2]
        assert logged["api_key"] == "[REDACTED]"
        assert len(logged["note"]) == 103

    def test_long_rollback_reason_survives_in_ledger(self, engine):
        reason = "customer complaints about the new shelf price " * 4
        submission = engine.submit(price_request(new_price=27.99), USER)

        engine.rollback(submission.action.id, reason, initiator=USER)

        entry = [e for e in engine.history(submission.action.id) if e.event_type == "action.rolled_back"][0]
        assert entry.details["reason"] == reason

    def test_transition_is_mirrored_to_logger(self, repository, engine):
        event_logger = MagicMock()
        ledger = AuditLedger(repository, event_logger=event_logger)
        submission = engine.submit(price_request(new_price=27.99), USER)
        action = submission.action

        ledger.transition(None, action, "auditor")

        event_logger.log_transition.assert_called_once_with(action.id, None, ActionStatus.COMPLETED.value,
                                                            "auditor", {})

    def test_other_events_use_log_operation(self, repository):
        event_logger = MagicMock()
        ledger = AuditLedger(repository, event_logger=event_logger)

        ledger.record("batch.created", batch_id="b-1", to_status="pending", actor=USER)

        event_logger.log_operation.assert_called_once()
        assert event_logger.log_operation.call_args[0][0] == "batch.created"

    def test_batch_history_filters_by_batch(self, repository):
        ledger = AuditLedger(repository, event_logger=MagicMock())
        ledger.record("batch.created", batch_id="b-1")
        ledger.record("batch.created", batch_id="b-2")

        assert [e.batch_id for e in ledger.batch_history("b-1")] == ["b-1"]
