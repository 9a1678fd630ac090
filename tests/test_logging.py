"""
Structured logging: lifecycle events and payload sanitization.
"""

import logging

import pytest

from actionengine.util.logging import StructuredLogger, sanitize_payload


@pytest.fixture
def structured():
    return StructuredLogger("action_engine.test")


class TestStructuredLogger:

    def test_transition_message(self, structured, caplog):
        with caplog.at_level(logging.INFO, logger="action_engine.test"):
            structured.log_transition("a-1", "validated", "executing", "owner-1")

        assert "Operation: action.transition, Status: executing" in caplog.text
        assert "'action_id': 'a-1'" in caplog.text

    def test_failures_log_as_warnings(self, structured, caplog):
        with caplog.at_level(logging.INFO, logger="action_engine.test"):
            structured.log_execution("a-1", "price_update", False, 12.34, {"error": "pricing down"})

        record = caplog.records[-1]
        assert record.levelno == logging.WARNING
        assert "'duration_ms': 12.3" in record.getMessage()

    def test_validation_error_truncates_messages(self, structured, caplog):
        violations = [{"rule": "margin_minimum", "message": "x" * 300}]
        with caplog.at_level(logging.INFO, logger="action_engine.test"):
            structured.log_validation_error("price_update", "owner-1", violations)

        assert "'violation_count': 1" in caplog.text
        assert "x" * 101 not in caplog.text

    def test_transition_details_are_sanitized(self, structured, caplog):
        with caplog.at_level(logging.INFO, logger="action_engine.test"):
            structured.log_transition("a-1", None, "pending", details={"token": "abc"})

        assert "abc" not in caplog.text
        assert "[REDACTED]" in caplog.text

    def test_approval_decision_status(self, structured, caplog):
        with caplog.at_level(logging.INFO, logger="action_engine.test"):
            structured.log_approval_decision("appr-1", "denied", "manager-7", "too steep")

        assert "Operation: approval.decision, Status: rejected" in caplog.text


class TestSanitizePayload:

    def test_sensitive_keys_redacted(self):
        sanitized = sanitize_payload({"password": "hunter2", "sku": "GIN-001"})
        assert sanitized == {"password": "[REDACTED]", "sku": "GIN-001"}

    def test_nested_structures(self):
        sanitized = sanitize_payload({"items": [{"api_key": "k", "price": 1.5}]})
        assert sanitized["items"][0] == {"api_key": "[REDACTED]", "price": 1.5}

    def test_reveal_sensitive(self):
        assert sanitize_payload({"secret": "s"}, reveal_sensitive=True) == {"secret": "s"}

    def test_long_strings_truncated(self):
        assert sanitize_payload("y" * 120) == "y" * 100 + "..."
