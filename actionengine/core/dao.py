"""
SQLite implementation of the action repository.
Status transitions are single conditional UPDATEs; batch outcomes run in one
immediate transaction so counters and aggregates never drift apart.
"""

import json
import sqlite3
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from .db import get_db, init_db, transaction
from .errors import (
    ActionNotFoundError,
    AlreadyResolvedError,
    AlreadyRolledBackError,
    ApprovalNotFoundError,
    BatchNotFoundError,
    InvalidStateError,
    StateConflictError,
)
from .payloads import RollbackSnapshot, decode_payload, decode_snapshot
from .repository import (
    ActionRepository,
    apply_outcome_counters,
    check_transition_fields,
    compute_batch_aggregates,
)
from .schema import (
    ActionBatch,
    ActionRecord,
    ActionStatus,
    ActionType,
    ApprovalRecord,
    ApprovalStatus,
    AuditEntry,
    BatchStatus,
    RiskLevel,
    ValidationRule,
)

ACTION_COLUMNS = [
    "id", "user_id", "action_type", "target_sku", "target_skus", "action_payload", "reason",
    "expected_impact", "confidence_score", "status", "initiated_by", "initiated_at", "validated_at",
    "executed_at", "completed_at", "requires_approval", "approved_by", "approved_at", "actual_impact",
    "success_metrics", "error_message", "rollback_data", "rolled_back", "rolled_back_at",
    "rolled_back_by", "rollback_reason", "external_refs", "affected_systems", "sync_status", "batch_id",
]

APPROVAL_COLUMNS = [
    "id", "action_id", "requester_id", "approver_id", "approval_status", "approval_reason",
    "risk_level", "estimated_impact", "requested_at", "reviewed_at", "review_notes", "auto_approved",
    "notification_sent", "notification_sent_at", "reminder_count", "last_reminder", "created_at",
    "expires_at",
]

BATCH_COLUMNS = [
    "id", "user_id", "batch_name", "batch_type", "action_ids", "total_actions", "completed", "failed",
    "pending", "skipped", "status", "execute_parallel", "max_concurrent", "stop_on_error",
    "estimated_duration", "actual_duration", "total_expected_impact", "total_actual_impact",
    "success_rate", "created_at", "started_at", "completed_at",
]

RULE_COLUMNS = [
    "id", "user_id", "action_type", "rule_type", "rule_config", "enabled", "priority", "created_by",
    "created_at", "updated_at",
]

JSON_ACTION_FIELDS = {"target_skus", "success_metrics", "external_refs", "affected_systems", "sync_status"}
TIMESTAMP_ACTION_FIELDS = {"validated_at", "executed_at", "completed_at", "approved_at"}


def _dumps(value: Any) -> Optional[str]:
    return json.dumps(value) if value is not None else None


def _loads(value: Optional[str]) -> Any:
    return json.loads(value) if value else None


def _ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _encode_snapshot(snapshot: Optional[RollbackSnapshot]) -> str:
    return json.dumps(snapshot.to_dict()) if snapshot is not None else "{}"


def _row_to_action(row: sqlite3.Row) -> ActionRecord:
    action_type = ActionType(row["action_type"])
    payload_data = json.loads(row["action_payload"])
    return ActionRecord(
        id=row["id"],
        user_id=row["user_id"],
        action_type=action_type,
        payload=decode_payload(action_type.value, payload_data),
        reason=row["reason"],
        initiated_by=row["initiated_by"],
        status=ActionStatus(row["status"]),
        target_sku=row["target_sku"],
        target_skus=_loads(row["target_skus"]),
        expected_impact=row["expected_impact"],
        confidence_score=row["confidence_score"],
        initiated_at=_parse_ts(row["initiated_at"]),
        validated_at=_parse_ts(row["validated_at"]),
        executed_at=_parse_ts(row["executed_at"]),
        completed_at=_parse_ts(row["completed_at"]),
        requires_approval=bool(row["requires_approval"]),
        approved_by=row["approved_by"],
        approved_at=_parse_ts(row["approved_at"]),
        actual_impact=row["actual_impact"],
        success_metrics=_loads(row["success_metrics"]),
        error_message=row["error_message"],
        rollback_data=decode_snapshot(_loads(row["rollback_data"])),
        rolled_back=bool(row["rolled_back"]),
        rolled_back_at=_parse_ts(row["rolled_back_at"]),
        rolled_back_by=row["rolled_back_by"],
        rollback_reason=row["rollback_reason"],
        external_refs=_loads(row["external_refs"]),
        affected_systems=_loads(row["affected_systems"]) or [],
        sync_status=_loads(row["sync_status"]) or {},
        batch_id=row["batch_id"],
    )


def _row_to_approval(row: sqlite3.Row) -> ApprovalRecord:
    return ApprovalRecord(
        id=row["id"],
        action_id=row["action_id"],
        requester_id=row["requester_id"],
        approver_id=row["approver_id"],
        approval_status=ApprovalStatus(row["approval_status"]),
        approval_reason=row["approval_reason"],
        risk_level=RiskLevel(row["risk_level"]),
        estimated_impact=row["estimated_impact"],
        requested_at=_parse_ts(row["requested_at"]),
        reviewed_at=_parse_ts(row["reviewed_at"]),
        review_notes=row["review_notes"],
        auto_approved=bool(row["auto_approved"]),
        notification_sent=bool(row["notification_sent"]),
        notification_sent_at=_parse_ts(row["notification_sent_at"]),
        reminder_count=row["reminder_count"],
        last_reminder=_parse_ts(row["last_reminder"]),
        created_at=_parse_ts(row["created_at"]),
        expires_at=_parse_ts(row["expires_at"]),
    )


def _row_to_batch(row: sqlite3.Row) -> ActionBatch:
    return ActionBatch(
        id=row["id"],
        user_id=row["user_id"],
        batch_name=row["batch_name"],
        batch_type=row["batch_type"],
        action_ids=_loads(row["action_ids"]) or [],
        total_actions=row["total_actions"],
        completed=row["completed"],
        failed=row["failed"],
        pending=row["pending"],
        skipped=row["skipped"],
        status=BatchStatus(row["status"]),
        execute_parallel=bool(row["execute_parallel"]),
        max_concurrent=row["max_concurrent"],
        stop_on_error=bool(row["stop_on_error"]),
        estimated_duration=row["estimated_duration"],
        actual_duration=row["actual_duration"],
        total_expected_impact=row["total_expected_impact"],
        total_actual_impact=row["total_actual_impact"],
        success_rate=row["success_rate"],
        created_at=_parse_ts(row["created_at"]),
        started_at=_parse_ts(row["started_at"]),
        completed_at=_parse_ts(row["completed_at"]),
    )


def _row_to_rule(row: sqlite3.Row) -> ValidationRule:
    return ValidationRule(
        id=row["id"],
        user_id=row["user_id"],
        action_type=row["action_type"],
        rule_type=row["rule_type"],
        rule_config=_loads(row["rule_config"]) or {},
        enabled=bool(row["enabled"]),
        priority=row["priority"],
        created_by=row["created_by"],
        created_at=_parse_ts(row["created_at"]),
        updated_at=_parse_ts(row["updated_at"]),
    )


def _encode_batch_field(name: str, value: Any) -> Any:
    if name == "action_ids":
        return json.dumps(value)
    if name == "status":
        return BatchStatus(value).value
    if isinstance(value, datetime):
        return value.isoformat()
    return value


class SQLiteActionRepository(ActionRepository):
    """Repository backed by the SQLite database at `db_path` (defaults to DB_PATH)."""

    def __init__(self, db_path: Optional[str] = None, initialize: bool = True):
        self.db_path = db_path
        if initialize:
            init_db(db_path)

    def _connect(self):
        return get_db(self.db_path)

    def _fetch_one(self, sql: str, params: Iterable[Any]) -> Optional[sqlite3.Row]:
        with self._connect() as conn:
            conn.row_factory = sqlite3.Row
            return conn.execute(sql, tuple(params)).fetchone()

    def _fetch_all(self, sql: str, params: Iterable[Any]) -> List[sqlite3.Row]:
        with self._connect() as conn:
            conn.row_factory = sqlite3.Row
            return conn.execute(sql, tuple(params)).fetchall()

    # Actions
    def create_action(self, record: ActionRecord) -> ActionRecord:
        values = {
            "id": record.id,
            "user_id": record.user_id,
            "action_type": record.action_type.value,
            "target_sku": record.target_sku,
            "target_skus": _dumps(record.target_skus),
            "action_payload": json.dumps(record.payload.to_dict()),
            "reason": record.reason,
            "expected_impact": record.expected_impact,
            "confidence_score": record.confidence_score,
            "status": record.status.value,
            "initiated_by": record.initiated_by,
            "initiated_at": _ts(record.initiated_at),
            "validated_at": _ts(record.validated_at),
            "executed_at": _ts(record.executed_at),
            "completed_at": _ts(record.completed_at),
            "requires_approval": record.requires_approval,
            "approved_by": record.approved_by,
            "approved_at": _ts(record.approved_at),
            "actual_impact": record.actual_impact,
            "success_metrics": _dumps(record.success_metrics),
            "error_message": record.error_message,
            "rollback_data": _encode_snapshot(record.rollback_data),
            "rolled_back": record.rolled_back,
            "rolled_back_at": _ts(record.rolled_back_at),
            "rolled_back_by": record.rolled_back_by,
            "rollback_reason": record.rollback_reason,
            "external_refs": _dumps(record.external_refs),
            "affected_systems": _dumps(record.affected_systems),
            "sync_status": _dumps(record.sync_status),
            "batch_id": record.batch_id,
        }
        placeholders = ", ".join("?" for _ in ACTION_COLUMNS)
        with self._connect() as conn:
            conn.execute(
                f"INSERT INTO actions ({', '.join(ACTION_COLUMNS)}) VALUES ({placeholders})",
                tuple(values[c] for c in ACTION_COLUMNS)
            )
        return record

    def get_action(self, action_id: str) -> Optional[ActionRecord]:
        row = self._fetch_one("SELECT * FROM actions WHERE id = ?", (action_id,))
        return _row_to_action(row) if row else None

    def list_actions(self, user_id: str, limit: int = 50) -> List[ActionRecord]:
        rows = self._fetch_all(
            "SELECT * FROM actions WHERE user_id = ? ORDER BY initiated_at DESC LIMIT ?",
            (user_id, limit)
        )
        return [_row_to_action(r) for r in rows]

    def list_batch_actions(self, batch_id: str) -> List[ActionRecord]:
        rows = self._fetch_all("SELECT * FROM actions WHERE batch_id = ? ORDER BY initiated_at", (batch_id,))
        return [_row_to_action(r) for r in rows]

    def count_actions(self) -> int:
        with self._connect() as conn:
            return conn.execute("SELECT COUNT(*) FROM actions").fetchone()[0]

    def transition_action(self, action_id: str, expected: Iterable[ActionStatus],
                          new_status: ActionStatus, **fields) -> ActionRecord:
        check_transition_fields(fields)
        expected = [ActionStatus(s).value for s in expected]

        assignments = ["status = ?"]
        params: List[Any] = [ActionStatus(new_status).value]
        for name, value in fields.items():
            assignments.append(f"{name} = ?")
            if name == "rollback_data":
                params.append(_encode_snapshot(value))
            elif name in JSON_ACTION_FIELDS:
                params.append(_dumps(value))
            elif name in TIMESTAMP_ACTION_FIELDS:
                params.append(_ts(value))
            else:
                params.append(value)

        where = f"id = ? AND status IN ({', '.join('?' for _ in expected)})"
        where_params = [action_id] + expected
        if "rollback_data" in fields:
            # Rollback data is written once, never replaced
            where += " AND rollback_data = '{}'"

        with self._connect() as conn:
            cursor = conn.execute(
                f"UPDATE actions SET {', '.join(assignments)} WHERE {where}",
                tuple(params + where_params)
            )
            updated = cursor.rowcount

        if updated == 0:
            current = self.get_action(action_id)
            if current is None:
                raise ActionNotFoundError(action_id)
            raise StateConflictError(action_id, expected, current.status.value)

        return self.get_action(action_id)

    def mark_rolled_back(self, action_id: str, rolled_back_by: str, rolled_back_at: datetime,
                         reason: str) -> ActionRecord:
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE actions SET rolled_back = 1, rolled_back_by = ?, rolled_back_at = ?, rollback_reason = ? "
                "WHERE id = ? AND status = ? AND rolled_back = 0",
                (rolled_back_by, _ts(rolled_back_at), reason, action_id, ActionStatus.COMPLETED.value)
            )
            updated = cursor.rowcount

        current = self.get_action(action_id)
        if current is None:
            raise ActionNotFoundError(action_id)
        if updated == 0:
            if current.rolled_back:
                raise AlreadyRolledBackError(action_id)
            raise InvalidStateError(action_id, [ActionStatus.COMPLETED.value], current.status.value)
        return current

    # Approvals
    def create_approval(self, approval: ApprovalRecord) -> ApprovalRecord:
        values = approval.to_dict()
        values["auto_approved"] = approval.auto_approved
        values["notification_sent"] = approval.notification_sent
        placeholders = ", ".join("?" for _ in APPROVAL_COLUMNS)
        with self._connect() as conn:
            conn.execute(
                f"INSERT INTO action_approvals ({', '.join(APPROVAL_COLUMNS)}) VALUES ({placeholders})",
                tuple(values[c] for c in APPROVAL_COLUMNS)
            )
        return approval

    def get_approval(self, approval_id: str) -> Optional[ApprovalRecord]:
        row = self._fetch_one("SELECT * FROM action_approvals WHERE id = ?", (approval_id,))
        return _row_to_approval(row) if row else None

    def get_approval_for_action(self, action_id: str) -> Optional[ApprovalRecord]:
        row = self._fetch_one("SELECT * FROM action_approvals WHERE action_id = ?", (action_id,))
        return _row_to_approval(row) if row else None

    def resolve_approval(self, approval_id: str, status: ApprovalStatus, approver_id: Optional[str],
                         reviewed_at: datetime, review_notes: Optional[str] = None,
                         auto_approved: bool = False) -> ApprovalRecord:
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE action_approvals SET approval_status = ?, approver_id = ?, reviewed_at = ?, "
                "review_notes = ?, auto_approved = ? WHERE id = ? AND approval_status = ?",
                (ApprovalStatus(status).value, approver_id, _ts(reviewed_at), review_notes,
                 auto_approved, approval_id, ApprovalStatus.PENDING.value)
            )
            updated = cursor.rowcount

        current = self.get_approval(approval_id)
        if current is None:
            raise ApprovalNotFoundError(approval_id)
        if updated == 0:
            raise AlreadyResolvedError(approval_id, current.approval_status.value)
        return current

    def list_pending_approvals(self, user_id: Optional[str] = None) -> List[ApprovalRecord]:
        if user_id is None:
            rows = self._fetch_all(
                "SELECT * FROM action_approvals WHERE approval_status = ? ORDER BY requested_at",
                (ApprovalStatus.PENDING.value,)
            )
        else:
            rows = self._fetch_all(
                "SELECT * FROM action_approvals WHERE approval_status = ? AND requester_id = ? "
                "ORDER BY requested_at",
                (ApprovalStatus.PENDING.value, user_id)
            )
        return [_row_to_approval(r) for r in rows]

    def record_reminder(self, approval_id: str, sent_at: datetime) -> ApprovalRecord:
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE action_approvals SET reminder_count = reminder_count + 1, last_reminder = ? "
                "WHERE id = ? AND approval_status = ?",
                (_ts(sent_at), approval_id, ApprovalStatus.PENDING.value)
            )
            updated = cursor.rowcount

        current = self.get_approval(approval_id)
        if current is None:
            raise ApprovalNotFoundError(approval_id)
        if updated == 0:
            raise AlreadyResolvedError(approval_id, current.approval_status.value)
        return current

    # Validation rules
    def add_rule(self, rule: ValidationRule) -> ValidationRule:
        values = {
            "id": rule.id,
            "user_id": rule.user_id,
            "action_type": rule.action_type,
            "rule_type": rule.rule_type,
            "rule_config": json.dumps(rule.rule_config),
            "enabled": rule.enabled,
            "priority": rule.priority,
            "created_by": rule.created_by,
            "created_at": _ts(rule.created_at),
            "updated_at": _ts(rule.updated_at),
        }
        placeholders = ", ".join("?" for _ in RULE_COLUMNS)
        with self._connect() as conn:
            conn.execute(
                f"INSERT OR REPLACE INTO action_validation_rules ({', '.join(RULE_COLUMNS)}) VALUES ({placeholders})",
                tuple(values[c] for c in RULE_COLUMNS)
            )
        return rule

    def list_rules(self, user_id: str, action_type: str, enabled_only: bool = True) -> List[ValidationRule]:
        sql = "SELECT * FROM action_validation_rules WHERE user_id = ? AND action_type = ?"
        if enabled_only:
            sql += " AND enabled = 1"
        sql += " ORDER BY priority DESC"
        return [_row_to_rule(r) for r in self._fetch_all(sql, (user_id, action_type))]

    # Batches
    def create_batch(self, batch: ActionBatch) -> ActionBatch:
        values = batch.to_dict()
        values["action_ids"] = json.dumps(batch.action_ids)
        placeholders = ", ".join("?" for _ in BATCH_COLUMNS)
        with self._connect() as conn:
            conn.execute(
                f"INSERT INTO action_batches ({', '.join(BATCH_COLUMNS)}) VALUES ({placeholders})",
                tuple(values[c] for c in BATCH_COLUMNS)
            )
        return batch

    def get_batch(self, batch_id: str) -> Optional[ActionBatch]:
        row = self._fetch_one("SELECT * FROM action_batches WHERE id = ?", (batch_id,))
        return _row_to_batch(row) if row else None

    def attach_batch_action(self, batch_id: str, action_id: str) -> None:
        with transaction(self.db_path) as conn:
            row = conn.execute("SELECT action_ids FROM action_batches WHERE id = ?", (batch_id,)).fetchone()
            if row is None:
                raise BatchNotFoundError(batch_id)
            action_ids = _loads(row[0]) or []
            if action_id not in action_ids:
                action_ids.append(action_id)
                conn.execute("UPDATE action_batches SET action_ids = ? WHERE id = ?",
                             (json.dumps(action_ids), batch_id))

    def update_batch(self, batch_id: str, **fields) -> ActionBatch:
        unknown = set(fields) - set(BATCH_COLUMNS)
        if unknown or "id" in fields:
            raise ValueError(f"Unknown batch field(s): {sorted(unknown)}")
        if fields:
            assignments = ", ".join(f"{name} = ?" for name in fields)
            params = [_encode_batch_field(name, value) for name, value in fields.items()]
            with self._connect() as conn:
                conn.execute(f"UPDATE action_batches SET {assignments} WHERE id = ?", tuple(params + [batch_id]))
        batch = self.get_batch(batch_id)
        if batch is None:
            raise BatchNotFoundError(batch_id)
        return batch

    def apply_batch_outcome(self, batch_id: str, outcome: str, from_pending: bool = True) -> ActionBatch:
        with transaction(self.db_path) as conn:
            conn.row_factory = sqlite3.Row
            row = conn.execute("SELECT * FROM action_batches WHERE id = ?", (batch_id,)).fetchone()
            if row is None:
                raise BatchNotFoundError(batch_id)
            batch = _row_to_batch(row)
            apply_outcome_counters(batch, outcome, from_pending)

            members = conn.execute(
                "SELECT status, expected_impact, actual_impact FROM actions WHERE batch_id = ?", (batch_id,)
            ).fetchall()
            (batch.total_expected_impact,
             batch.total_actual_impact,
             batch.success_rate) = compute_batch_aggregates(
                (m["status"], m["expected_impact"], m["actual_impact"]) for m in members)

            conn.execute(
                "UPDATE action_batches SET completed = ?, failed = ?, pending = ?, skipped = ?, "
                "total_expected_impact = ?, total_actual_impact = ?, success_rate = ? WHERE id = ?",
                (batch.completed, batch.failed, batch.pending, batch.skipped, batch.total_expected_impact,
                 batch.total_actual_impact, batch.success_rate, batch_id)
            )
        return batch

    # Audit ledger
    def append_audit(self, entry: AuditEntry) -> AuditEntry:
        with self._connect() as conn:
            cursor = conn.execute(
                "INSERT INTO action_audit_log (action_id, batch_id, event_type, from_status, to_status, actor, "
                "details, created_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (entry.action_id, entry.batch_id, entry.event_type, entry.from_status, entry.to_status,
                 entry.actor, json.dumps(entry.details, default=str), _ts(entry.created_at))
            )
            entry.id = cursor.lastrowid
        return entry

    def list_audit(self, action_id: Optional[str] = None, batch_id: Optional[str] = None) -> List[AuditEntry]:
        clauses = []
        params: List[Any] = []
        if action_id is not None:
            clauses.append("action_id = ?")
            params.append(action_id)
        if batch_id is not None:
            clauses.append("batch_id = ?")
            params.append(batch_id)
        sql = "SELECT * FROM action_audit_log"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY id"
        return [
            AuditEntry(
                id=r["id"],
                event_type=r["event_type"],
                action_id=r["action_id"],
                batch_id=r["batch_id"],
                from_status=r["from_status"],
                to_status=r["to_status"],
                actor=r["actor"],
                details=_loads(r["details"]) or {},
                created_at=_parse_ts(r["created_at"]),
            )
            for r in self._fetch_all(sql, params)
        ]
