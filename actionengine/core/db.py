"""
SQLite storage for actions, validation rules, batches, approvals and the audit ledger.
JSON columns hold JSON text; array columns hold JSON arrays.
"""

import sqlite3
from contextlib import contextmanager
from typing import Generator, Optional

from .config import get_db_path, ensure_db_directory

REQUIRED_TABLES = ['actions', 'action_validation_rules', 'action_batches', 'action_approvals', 'action_audit_log']


@contextmanager
def get_db(db_path: Optional[str] = None) -> Generator[sqlite3.Connection, None, None]:
    """Get a SQLite database connection."""
    conn = sqlite3.connect(db_path or get_db_path(), timeout=30, isolation_level=None)
    try:
        conn.execute("PRAGMA foreign_keys = ON")
        yield conn
    finally:
        conn.close()


@contextmanager
def transaction(db_path: Optional[str] = None) -> Generator[sqlite3.Connection, None, None]:
    """Connection with an immediate write transaction, committed on success."""
    with get_db(db_path) as conn:
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
        except Exception:
            conn.execute("ROLLBACK")
            raise
        conn.execute("COMMIT")


def init_db(db_path: Optional[str] = None):
    """Initialize the database with required tables."""
    if db_path is None:
        ensure_db_directory()

    with get_db(db_path) as conn:
        cursor = conn.cursor()

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS action_batches (
                id TEXT NOT NULL PRIMARY KEY,
                user_id TEXT NOT NULL,
                batch_name TEXT NOT NULL,
                batch_type TEXT NOT NULL,
                action_ids TEXT NOT NULL DEFAULT '[]',   -- JSON array
                total_actions INTEGER NOT NULL,
                completed INTEGER NOT NULL DEFAULT 0,
                failed INTEGER NOT NULL DEFAULT 0,
                pending INTEGER NOT NULL,
                skipped INTEGER NOT NULL DEFAULT 0,
                status TEXT NOT NULL DEFAULT 'pending',
                execute_parallel BOOLEAN NOT NULL DEFAULT FALSE,
                max_concurrent INTEGER NOT NULL DEFAULT 5,
                stop_on_error BOOLEAN NOT NULL DEFAULT FALSE,
                estimated_duration REAL,
                actual_duration REAL,
                total_expected_impact REAL,
                total_actual_impact REAL,
                success_rate REAL,
                created_at TIMESTAMP NOT NULL,
                started_at TIMESTAMP,
                completed_at TIMESTAMP,
                CHECK (completed + failed + pending + skipped = total_actions)
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS actions (
                id TEXT NOT NULL PRIMARY KEY,
                user_id TEXT NOT NULL,
                action_type TEXT NOT NULL,
                target_sku TEXT,
                target_skus TEXT,                         -- JSON array
                action_payload TEXT NOT NULL,             -- JSON
                reason TEXT NOT NULL,
                expected_impact REAL,
                confidence_score REAL,
                status TEXT NOT NULL DEFAULT 'pending',
                initiated_by TEXT NOT NULL,
                initiated_at TIMESTAMP NOT NULL,
                validated_at TIMESTAMP,
                executed_at TIMESTAMP,
                completed_at TIMESTAMP,
                requires_approval BOOLEAN NOT NULL DEFAULT FALSE,
                approved_by TEXT,
                approved_at TIMESTAMP,
                actual_impact REAL,
                success_metrics TEXT,                     -- JSON
                error_message TEXT,
                rollback_data TEXT NOT NULL DEFAULT '{}', -- JSON, '{}' until captured
                rolled_back BOOLEAN NOT NULL DEFAULT FALSE,
                rolled_back_at TIMESTAMP,
                rolled_back_by TEXT,
                rollback_reason TEXT,
                external_refs TEXT,                       -- JSON
                affected_systems TEXT,                    -- JSON array
                sync_status TEXT,                         -- JSON
                batch_id TEXT REFERENCES action_batches(id) ON DELETE SET NULL
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS action_validation_rules (
                id TEXT NOT NULL PRIMARY KEY,
                user_id TEXT NOT NULL,
                action_type TEXT NOT NULL,
                rule_type TEXT NOT NULL,
                rule_config TEXT NOT NULL,                -- JSON
                enabled BOOLEAN NOT NULL DEFAULT TRUE,
                priority INTEGER NOT NULL DEFAULT 0,
                created_by TEXT,
                created_at TIMESTAMP NOT NULL,
                updated_at TIMESTAMP NOT NULL
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS action_approvals (
                id TEXT NOT NULL PRIMARY KEY,
                action_id TEXT NOT NULL UNIQUE REFERENCES actions(id),
                requester_id TEXT NOT NULL,
                approver_id TEXT,
                approval_status TEXT NOT NULL DEFAULT 'pending',
                approval_reason TEXT NOT NULL,
                risk_level TEXT NOT NULL,
                estimated_impact REAL,
                requested_at TIMESTAMP NOT NULL,
                reviewed_at TIMESTAMP,
                review_notes TEXT,
                auto_approved BOOLEAN NOT NULL DEFAULT FALSE,
                notification_sent BOOLEAN NOT NULL DEFAULT FALSE,
                notification_sent_at TIMESTAMP,
                reminder_count INTEGER NOT NULL DEFAULT 0,
                last_reminder TIMESTAMP,
                created_at TIMESTAMP NOT NULL,
                expires_at TIMESTAMP
            )
        ''')

        # Append-only ledger: no code path updates or deletes rows here
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS action_audit_log (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                action_id TEXT,
                batch_id TEXT,
                event_type TEXT NOT NULL,
                from_status TEXT,
                to_status TEXT,
                actor TEXT NOT NULL,
                details TEXT,                             -- JSON
                created_at TIMESTAMP NOT NULL
            )
        ''')

        # Indexes for performance
        cursor.execute('CREATE INDEX IF NOT EXISTS actions_user_id_idx ON actions(user_id)')
        cursor.execute('CREATE INDEX IF NOT EXISTS actions_status_idx ON actions(status)')
        cursor.execute('CREATE INDEX IF NOT EXISTS actions_action_type_idx ON actions(action_type)')
        cursor.execute('CREATE INDEX IF NOT EXISTS actions_initiated_at_idx ON actions(initiated_at)')
        cursor.execute('CREATE INDEX IF NOT EXISTS actions_batch_id_idx ON actions(batch_id)')
        cursor.execute('CREATE INDEX IF NOT EXISTS action_validation_rules_user_type_idx '
                       'ON action_validation_rules(user_id, action_type)')
        cursor.execute('CREATE INDEX IF NOT EXISTS action_batches_user_id_idx ON action_batches(user_id)')
        cursor.execute('CREATE INDEX IF NOT EXISTS action_approvals_status_idx ON action_approvals(approval_status)')
        cursor.execute('CREATE INDEX IF NOT EXISTS action_audit_log_action_idx ON action_audit_log(action_id, id)')
        cursor.execute('CREATE INDEX IF NOT EXISTS action_audit_log_batch_idx ON action_audit_log(batch_id, id)')


def health_check(db_path: Optional[str] = None):
    """Check database health."""
    try:
        with get_db(db_path) as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT name FROM sqlite_master WHERE type='table';")
            table_names = [table[0] for table in cursor.fetchall()]
            return all(table in table_names for table in REQUIRED_TABLES)
    except sqlite3.Error:
        return False
