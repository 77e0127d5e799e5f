"""Shared fixtures for the check-in engine tests."""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone

import pytest

from checkin_models import (
    Contact, DeliveryResult, DeliveryStatus, EscalationPolicy, LivenessRecord,
    RecordStatus, add_months,
)
from checkin_store import CheckinStore
from checkin_system import CheckinSystem

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)
USER = "u1"

DIRECTORY = {
    USER: {
        "owner": {"id": USER, "name": "Alex Owner", "email": "alex@example.com"},
        "family": [
            {"id": "f1", "name": "Jane Owner", "email": "jane@example.com", "relationship": "spouse"},
            {"id": "f2", "name": "Tom Owner", "email": "tom@example.com", "relationship": "son"},
        ],
        "professional": [
            {"id": "p1", "name": "Sam Counsel", "email": "sam@lawfirm.example", "relationship": "attorney"},
        ],
        "assets": [
            {"id": "a1", "beneficiaries": ["f1", "f2"]},
            {"id": "a2", "beneficiaries": ["f2", "p1"]},
        ],
    },
    "u2": {
        "owner": {"id": "u2", "name": "Blair Second", "email": "blair@example.com"},
        "family": [
            {"id": "g1", "name": "Casey Second", "email": "casey@example.com", "relationship": "sister"},
        ],
        "professional": [],
        "assets": [],
    },
}


class FixedClock:
    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class RecordingDispatcher:
    """Stands in for the email/push transport."""

    def __init__(self):
        self.sent = []
        self.fail_for = set()
        self.raise_for = set()

    def send(self, recipient: Contact, kind, context) -> DeliveryResult:
        if recipient.id in self.raise_for:
            raise RuntimeError("transport exploded")
        self.sent.append((recipient.id, kind, context))
        if recipient.id in self.fail_for:
            return DeliveryResult(status=DeliveryStatus.FAILED, error="mailbox full")
        return DeliveryResult(status=DeliveryStatus.SENT, provider="test")


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture
def config(tmp_path):
    return {
        "db_path": str(tmp_path / "checkin.db"),
        "providers": {},
        "directory": DIRECTORY,
        "defaults": {"max_reminders": 4, "grace_period_days": 14},
    }


@pytest.fixture
def system(config, dispatcher, clock) -> CheckinSystem:
    return CheckinSystem(config, dispatcher=dispatcher, clock=clock)


@pytest.fixture
def store(system) -> CheckinStore:
    return system.store


@pytest.fixture
def seed(store):
    """Insert a record whose due date sits `days_past_due` days before NOW."""

    def _seed(user_id: str = USER, days_past_due: int = 0, reminders_sent: int = 0,
              max_reminders: int = 4, grace_period_days: int = 14,
              status: RecordStatus = RecordStatus.ACTIVE,
              policy: EscalationPolicy | None = None) -> LivenessRecord:
        next_due_at = NOW - timedelta(days=days_past_due)
        record = LivenessRecord(
            id=str(uuid.uuid4()),
            user_id=user_id,
            last_checkin_at=add_months(next_due_at, -6),
            next_due_at=next_due_at,
            status=status,
            reminders_sent=reminders_sent,
            max_reminders=max_reminders,
            grace_period_days=grace_period_days,
            policy=policy or EscalationPolicy(),
        )
        return store.create(record)

    return _seed
