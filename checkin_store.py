#!/usr/bin/env python3
"""
Policy & Record Store and Audit Log
SQLite persistence for liveness records, notification history and
inheritance release events, with per-user serialization.
"""

import json
import sqlite3
import logging
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import List, Optional

from checkin_models import (
    DeliveryStatus, DuplicateTriggerAttempt, EscalationPolicy,
    InheritanceReleaseEvent, LivenessRecord, MessageKind, NotificationRecord,
    RecordStatus, StaleRecordError, parse_timestamp, utcnow,
)

logger = logging.getLogger(__name__)


class CheckinStore:
    """Manages SQLite database operations"""

    def __init__(self, db_path: str = "checkin.db"):
        self.db_path = db_path
        self._locks = {}
        self._locks_guard = threading.Lock()
        self.init_database()

    @contextmanager
    def _connection(self):
        conn = sqlite3.connect(self.db_path, timeout=30)
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def init_database(self):
        """Initialize the database with required tables"""
        with self._connection() as conn:
            cursor = conn.cursor()

            cursor.execute('''
                CREATE TABLE IF NOT EXISTS liveness_records (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL UNIQUE,
                    last_checkin_at TEXT NOT NULL,
                    next_due_at TEXT NOT NULL,
                    status TEXT NOT NULL CHECK (status IN ('active', 'overdue', 'triggered')),
                    reminders_sent INTEGER NOT NULL DEFAULT 0,
                    max_reminders INTEGER NOT NULL DEFAULT 4,
                    grace_period_days INTEGER NOT NULL DEFAULT 30,
                    is_active BOOLEAN NOT NULL DEFAULT TRUE,
                    policy TEXT NOT NULL DEFAULT '{}',
                    version INTEGER NOT NULL DEFAULT 0,
                    updated_at TEXT NOT NULL,
                    CHECK (reminders_sent BETWEEN 0 AND max_reminders)
                )
            ''')

            # Audit log, append-only
            cursor.execute('''
                CREATE TABLE IF NOT EXISTS notifications (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    id TEXT NOT NULL UNIQUE,
                    user_id TEXT NOT NULL,
                    recipient_id TEXT NOT NULL,
                    recipient_class TEXT NOT NULL,
                    kind TEXT NOT NULL,
                    sent_at TEXT NOT NULL,
                    due_at TEXT NOT NULL,
                    requires_action BOOLEAN NOT NULL DEFAULT FALSE,
                    triggered_inheritance BOOLEAN NOT NULL DEFAULT FALSE,
                    privacy_respected BOOLEAN NOT NULL DEFAULT FALSE,
                    delivery_status TEXT NOT NULL,
                    error TEXT
                )
            ''')

            cursor.execute('''
                CREATE TABLE IF NOT EXISTS release_events (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    asset_id TEXT NOT NULL,
                    beneficiary_id TEXT NOT NULL,
                    triggered_at TEXT NOT NULL,
                    reason TEXT NOT NULL,
                    status TEXT NOT NULL,
                    UNIQUE (user_id, asset_id, beneficiary_id)
                )
            ''')

            cursor.execute("CREATE INDEX IF NOT EXISTS idx_records_active ON liveness_records(is_active)")
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_notifications_user ON notifications(user_id, sent_at)")

    @contextmanager
    def user_lock(self, user_id: str):
        """Serialize read-decide-write sequences for one user"""
        with self._locks_guard:
            lock = self._locks.setdefault(user_id, threading.Lock())
        with lock:
            yield

    # Liveness records

    @staticmethod
    def _row_to_record(row) -> LivenessRecord:
        return LivenessRecord(
            id=row[0],
            user_id=row[1],
            last_checkin_at=parse_timestamp(row[2]),
            next_due_at=parse_timestamp(row[3]),
            status=row[4],
            reminders_sent=row[5],
            max_reminders=row[6],
            grace_period_days=row[7],
            is_active=bool(row[8]),
            policy=EscalationPolicy.from_dict(json.loads(row[9])),
            version=row[10],
        )

    _RECORD_COLUMNS = '''id, user_id, last_checkin_at, next_due_at, status, reminders_sent,
                         max_reminders, grace_period_days, is_active, policy, version'''

    def get(self, user_id: str) -> Optional[LivenessRecord]:
        with self._connection() as conn:
            row = conn.execute(
                f"SELECT {self._RECORD_COLUMNS} FROM liveness_records WHERE user_id = ?",
                (user_id,)
            ).fetchone()
        return self._row_to_record(row) if row else None

    def list_active(self) -> List[LivenessRecord]:
        with self._connection() as conn:
            rows = conn.execute(
                f"SELECT {self._RECORD_COLUMNS} FROM liveness_records WHERE is_active = 1 ORDER BY user_id"
            ).fetchall()
        return [self._row_to_record(row) for row in rows]

    def create(self, record: LivenessRecord) -> LivenessRecord:
        with self._connection() as conn:
            conn.execute(
                f"INSERT INTO liveness_records ({self._RECORD_COLUMNS}, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (record.id, record.user_id, record.last_checkin_at.isoformat(),
                 record.next_due_at.isoformat(), record.status.value, record.reminders_sent,
                 record.max_reminders, record.grace_period_days, record.is_active,
                 json.dumps(record.policy.to_dict()), record.version, utcnow().isoformat())
            )
        logger.info(f"Liveness record created for user {record.user_id}")
        return record

    def put(self, record: LivenessRecord) -> LivenessRecord:
        """Write back a record read earlier; fails if someone else wrote in between"""
        with self._connection() as conn:
            cursor = conn.execute('''
                UPDATE liveness_records
                SET last_checkin_at = ?, next_due_at = ?, status = ?, reminders_sent = ?,
                    max_reminders = ?, grace_period_days = ?, is_active = ?, policy = ?,
                    version = version + 1, updated_at = ?
                WHERE user_id = ? AND version = ?
            ''', (record.last_checkin_at.isoformat(), record.next_due_at.isoformat(),
                  record.status.value, record.reminders_sent, record.max_reminders,
                  record.grace_period_days, record.is_active,
                  json.dumps(record.policy.to_dict()), utcnow().isoformat(),
                  record.user_id, record.version))
            if cursor.rowcount != 1:
                raise StaleRecordError(
                    f"Liveness record for user {record.user_id} changed since version {record.version}"
                )
        record.version += 1
        return record

    def mark_triggered(self, user_id: str, expected_version: int, events: List[InheritanceReleaseEvent]):
        """Compare-and-set 'overdue' -> 'triggered' on the version read by the caller.

        Release events are recorded in the same transaction. Zero matched rows
        means the record was triggered already or changed since it was read
        (a check-in from another process, for instance); nothing is written.
        """
        with self._connection() as conn:
            cursor = conn.execute('''
                UPDATE liveness_records
                SET status = 'triggered', is_active = 0, version = version + 1, updated_at = ?
                WHERE user_id = ? AND status = 'overdue' AND version = ?
            ''', (utcnow().isoformat(), user_id, expected_version))
            if cursor.rowcount != 1:
                row = conn.execute(
                    "SELECT status FROM liveness_records WHERE user_id = ?", (user_id,)
                ).fetchone()
                if row is not None and row[0] == RecordStatus.TRIGGERED.value:
                    raise DuplicateTriggerAttempt(f"Liveness record for user {user_id} already triggered")
                raise StaleRecordError(
                    f"Liveness record for user {user_id} is no longer overdue at version {expected_version}"
                )
            for event in events:
                self._insert_release_event(conn, event)
        logger.info(f"Liveness record for user {user_id} marked triggered with {len(events)} release event(s)")

    # Audit log

    def append_notification(self, record: NotificationRecord):
        with self._connection() as conn:
            conn.execute('''
                INSERT INTO notifications (id, user_id, recipient_id, recipient_class, kind, sent_at,
                    due_at, requires_action, triggered_inheritance, privacy_respected,
                    delivery_status, error)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ''', (record.id, record.user_id, record.recipient_id, record.recipient_class.value,
                  record.kind.value, record.sent_at.isoformat(), record.due_at.isoformat(),
                  record.requires_action, record.triggered_inheritance, record.privacy_respected,
                  record.delivery_status.value, record.error))

    def list_notifications(self, user_id: str) -> List[NotificationRecord]:
        """Notification history, most recent first"""
        with self._connection() as conn:
            rows = conn.execute('''
                SELECT id, user_id, recipient_id, recipient_class, kind, sent_at, due_at,
                       requires_action, triggered_inheritance, privacy_respected,
                       delivery_status, error
                FROM notifications WHERE user_id = ?
                ORDER BY sent_at DESC, seq DESC
            ''', (user_id,)).fetchall()
        return [
            NotificationRecord(
                id=row[0], user_id=row[1], recipient_id=row[2], recipient_class=row[3],
                kind=row[4], sent_at=parse_timestamp(row[5]), due_at=parse_timestamp(row[6]),
                requires_action=bool(row[7]), triggered_inheritance=bool(row[8]),
                privacy_respected=bool(row[9]), delivery_status=row[10], error=row[11],
            )
            for row in rows
        ]

    def was_delivered(self, user_id: str, recipient_id: str, kind: MessageKind,
                      due_at: datetime, day: str) -> bool:
        """Idempotency check on (user, recipient, kind, due date, calendar day)"""
        with self._connection() as conn:
            row = conn.execute('''
                SELECT 1 FROM notifications
                WHERE user_id = ? AND recipient_id = ? AND kind = ? AND due_at = ?
                  AND substr(sent_at, 1, 10) = ? AND delivery_status = ?
                LIMIT 1
            ''', (user_id, recipient_id, kind.value, due_at.isoformat(), day,
                  DeliveryStatus.SENT.value)).fetchone()
        return row is not None

    # Release events

    @staticmethod
    def _insert_release_event(conn, event: InheritanceReleaseEvent):
        data = event.to_dict()
        conn.execute('''
            INSERT INTO release_events (id, user_id, asset_id, beneficiary_id, triggered_at, reason, status)
            VALUES (?, ?, ?, ?, ?, ?, ?)
        ''', (data['id'], data['user_id'], data['asset_id'], data['beneficiary_id'],
              data['triggered_at'], data['reason'], data['status']))

    def append_release_event(self, event: InheritanceReleaseEvent):
        with self._connection() as conn:
            self._insert_release_event(conn, event)

    def list_release_events(self, user_id: str) -> List[InheritanceReleaseEvent]:
        with self._connection() as conn:
            rows = conn.execute('''
                SELECT id, user_id, asset_id, beneficiary_id, triggered_at, reason, status
                FROM release_events WHERE user_id = ? ORDER BY asset_id, beneficiary_id
            ''', (user_id,)).fetchall()
        return [
            InheritanceReleaseEvent(
                id=row[0], user_id=row[1], asset_id=row[2], beneficiary_id=row[3],
                triggered_at=parse_timestamp(row[4]), reason=row[5], status=row[6],
            )
            for row in rows
        ]
