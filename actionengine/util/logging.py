"""
Structured logging for the action engine.
Every transition, approval decision, execution and rollback goes through here;
the audit ledger uses the same logger as its event sink.
"""

import logging
from typing import Any, Dict, List


class StructuredLogger:
    """Structured logger for action lifecycle operations."""

    def __init__(self, name: str = "action_engine"):
        self.logger = logging.getLogger(name)
        self.logger.setLevel(logging.INFO)

        # Create handler if not already set
        if not self.logger.handlers:
            handler = logging.StreamHandler()
            formatter = logging.Formatter(
                '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
            )
            handler.setFormatter(formatter)
            self.logger.addHandler(handler)

    def log_operation(self, operation: str, status: str, details: Dict[str, Any] = None):
        """Log a structured operation."""
        message = f"Operation: {operation}, Status: {status}"
        if details:
            message += f", Details: {details}"

        if status in ("failed", "rejected", "error"):
            self.logger.warning(message)
        else:
            self.logger.info(message)

    def log_transition(self, action_id: str, from_status: str, to_status: str, actor: str = "system",
                       details: Dict[str, Any] = None):
        """Log an action status transition."""
        log_details = {
            "action_id": action_id,
            "from": from_status,
            "to": to_status,
            "actor": actor
        }
        if details:
            log_details.update(sanitize_payload(details))

        self.log_operation("action.transition", to_status or "unknown", log_details)

    def log_validation_error(self, action_type: str, user_id: str, violations: List[Dict[str, Any]]):
        """Log a rejected submission. Nothing was persisted."""
        log_details = {
            "action_type": action_type,
            "user_id": user_id,
            "violations": [f"{v.get('rule')}: {str(v.get('message'))[:100]}" for v in violations],
            "violation_count": len(violations)
        }
        self.log_operation("validation.error", "rejected", log_details)

    def log_execution(self, action_id: str, action_type: str, success: bool, duration_ms: float,
                      details: Dict[str, Any] = None):
        """Log the outcome of a mutating call."""
        log_details = {
            "action_id": action_id,
            "action_type": action_type,
            "duration_ms": round(duration_ms, 1)
        }
        if details:
            log_details.update(details)

        self.log_operation("executor.execute", "success" if success else "failed", log_details)

    # Approval workflow audit logging
    def log_approval_request(self, request_id: str, action_id: str, risk_level: str, requester: str):
        """Log approval request creation."""
        log_details = {
            "request_id": request_id,
            "action_id": action_id,
            "risk_level": risk_level,
            "requester": requester
        }
        self.log_operation("approval.request_created", "pending", log_details)

    def log_approval_decision(self, request_id: str, decision: str, approver: str, reason: str = ""):
        """Log approval decision."""
        log_details = {
            "request_id": request_id,
            "decision": decision,
            "approver": approver,
            "reason": reason[:100] if reason else ""  # Limit reason length
        }
        status = "approved" if decision == "approved" else "rejected"
        self.log_operation("approval.decision", status, log_details)

    def log_approval_reminder(self, request_id: str, reminder_count: int):
        """Log a reminder sent for a pending approval."""
        self.log_operation("approval.reminder", "sent", {
            "request_id": request_id,
            "reminder_count": reminder_count
        })

    def log_rollback(self, action_id: str, initiator: str, status: str = "success", details: Dict[str, Any] = None):
        """Log a rollback attempt."""
        log_details = {"action_id": action_id, "initiator": initiator}
        if details:
            log_details.update(details)

        self.log_operation("rollback", status, log_details)

    def log_batch_progress(self, batch_id: str, completed: int, failed: int, pending: int, skipped: int,
                           total: int, status: str = "running"):
        """Log batch counters after a member reaches a terminal state."""
        self.log_operation("batch.progress", status, {
            "batch_id": batch_id,
            "completed": completed,
            "failed": failed,
            "pending": pending,
            "skipped": skipped,
            "total": total
        })

    def log_sweep(self, task_name: str, start_time: float, end_time: float, status: str = "success",
                  details: Dict[str, Any] = None):
        """Log a scheduled sweep execution."""
        duration_ms = round((end_time - start_time) * 1000, 2)
        log_details = {"duration_ms": duration_ms}
        if details:
            log_details.update(details)

        self.log_operation(f"heartbeat.{task_name}", status, log_details)

    # Standard logging methods for compatibility
    def info(self, message: str) -> None:
        """Log an info message."""
        self.logger.info(message)

    def warning(self, message: str) -> None:
        """Log a warning message."""
        self.logger.warning(message)

    def error(self, message: str) -> None:
        """Log an error message."""
        self.logger.error(message)

    def debug(self, message: str) -> None:
        """Log a debug message."""
        self.logger.debug(message)


# Global logger instance
logger = StructuredLogger()


def sanitize_payload(payload: Any, reveal_sensitive: bool = False, sensitive_fields: List[str] = None) -> Any:
    """Sanitize payloads for audit logging."""
    if sensitive_fields is None:
        sensitive_fields = ['secret', 'password', 'token', 'api_key']

    if isinstance(payload, dict):
        sanitized = {}
        for k, v in payload.items():
            if reveal_sensitive or k not in sensitive_fields:
                sanitized[k] = sanitize_payload(v, reveal_sensitive, sensitive_fields)
            else:
                sanitized[k] = "[REDACTED]"
        return sanitized
    elif isinstance(payload, str):
        # Truncate long strings
        return payload[:100] + "..." if len(payload) > 100 else payload
    elif isinstance(payload, list):
        return [sanitize_payload(item, reveal_sensitive, sensitive_fields) for item in payload]
    else:
        return payload
