#!/usr/bin/env python3
"""
Data model for the liveness check-in engine
Records, escalation policy, audit entries and the error taxonomy
"""

import math
from dataclasses import dataclass, field, asdict, fields
from datetime import datetime, timezone
from enum import Enum
from typing import List, Dict, Optional

from dateutil.relativedelta import relativedelta

CHECKIN_INTERVAL_MONTHS = 6
DEFAULT_MAX_REMINDERS = 4
DEFAULT_GRACE_PERIOD_DAYS = 30
UPCOMING_REMINDER_DAYS = (30, 14, 7, 1)
WARNING_WINDOW_DAYS = 7
RELEASE_REASON = "checkin_failure"


class RecordStatus(str, Enum):
    ACTIVE = "active"
    OVERDUE = "overdue"
    TRIGGERED = "triggered"


class AlertType(str, Enum):
    CONCERN = "concern"
    DIRECT_INHERITANCE = "direct_inheritance"


class RecipientClass(str, Enum):
    OWNER = "owner"
    FAMILY = "family"
    PROFESSIONAL = "professional"


class MessageKind(str, Enum):
    UPCOMING_REMINDER = "upcoming_reminder"
    OVERDUE_REMINDER = "overdue_reminder"
    FAMILY_CONCERN = "family_concern"
    PROFESSIONAL_CONCERN = "professional_concern"
    DIRECT_INHERITANCE_NOTICE = "direct_inheritance_notice"
    INHERITANCE_TRIGGERED = "inheritance_triggered"
    PROFESSIONAL_INHERITANCE_NOTICE = "professional_inheritance_notice"


class Phase(str, Enum):
    ALERT = "alert"
    TRIGGER = "trigger"


class DeliveryStatus(str, Enum):
    SENT = "sent"
    FAILED = "failed"


class ReleaseStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


# Errors

class CheckinError(Exception):
    """Base class for check-in engine errors"""


class NotFoundError(CheckinError):
    """No liveness record exists for the user"""

    def __init__(self, user_id: str):
        super().__init__(f"No liveness record for user {user_id}")
        self.user_id = user_id


class InvalidPolicyError(CheckinError):
    """Escalation policy is internally inconsistent"""


class RecordTriggeredError(CheckinError):
    """Record already reached the terminal state"""

    def __init__(self, user_id: str):
        super().__init__(f"Liveness record for user {user_id} has already been triggered")
        self.user_id = user_id


class StaleRecordError(CheckinError):
    """Record changed underneath a read-decide-write sequence"""


class DuplicateTriggerAttempt(CheckinError):
    """Inheritance trigger called on an already triggered record"""


class DispatchFailure(CheckinError):
    """A notification provider could not deliver a message"""


class ConfigError(ValueError):
    """Configuration file is missing required keys"""


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def add_months(moment: datetime, months: int = CHECKIN_INTERVAL_MONTHS) -> datetime:
    """Calendar-month arithmetic, clamped to the end of shorter months"""
    return moment + relativedelta(months=months)


def days_past_due(next_due_at: datetime, now: datetime) -> int:
    """Whole days elapsed since the due date, negative while still ahead of it"""
    return math.floor((now - next_due_at).total_seconds() / 86400)


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class Contact:
    """Person who can receive a notification"""
    id: str
    name: str
    email: str
    relationship: str = ""
    phone: str = ""
    preferred_language: str = 'english'


BOOL_POLICY_FIELDS = (
    'alert_family_when_overdue', 'allow_wellness_checks', 'inheritance_only_mode',
    'professional_only', 'separate_channels',
)


@dataclass
class EscalationPolicy:
    """User-configured rules for who is alerted once check-ins are missed"""
    alert_family_when_overdue: bool = True
    alert_type: AlertType = AlertType.CONCERN
    allow_wellness_checks: bool = True
    inheritance_only_mode: bool = False
    custom_message: Optional[str] = None
    professional_only: bool = False
    professional_contact_ids: List[str] = field(default_factory=list)
    professional_message: Optional[str] = None
    separate_channels: bool = True

    def __post_init__(self):
        for name in BOOL_POLICY_FIELDS:
            if not isinstance(getattr(self, name), bool):
                raise InvalidPolicyError(f"{name} must be true or false")
        for name in ('custom_message', 'professional_message'):
            value = getattr(self, name)
            if value is not None and not isinstance(value, str):
                raise InvalidPolicyError(f"{name} must be a string")
        ids = self.professional_contact_ids
        if not isinstance(ids, (list, tuple, set)) or not all(isinstance(i, str) for i in ids):
            raise InvalidPolicyError("professional_contact_ids must be a list of contact ids")
        try:
            self.alert_type = AlertType(self.alert_type)
        except ValueError as e:
            raise InvalidPolicyError(str(e)) from e
        # set semantics, stable order
        self.professional_contact_ids = list(dict.fromkeys(sorted(ids) if isinstance(ids, set) else ids))

    def merged(self, partial: Dict) -> 'EscalationPolicy':
        """Return a copy with only the supplied fields replaced"""
        known = {f.name for f in fields(self)}
        unknown = set(partial) - known
        if unknown:
            raise InvalidPolicyError(f"Unknown policy fields: {', '.join(sorted(unknown))}")
        data = self.to_dict()
        data.update(partial)
        return EscalationPolicy(**data)

    def to_dict(self) -> Dict:
        data = asdict(self)
        data['alert_type'] = self.alert_type.value
        return data

    @classmethod
    def from_dict(cls, data: Optional[Dict]) -> 'EscalationPolicy':
        if not data:
            return cls()
        return cls(**data)


@dataclass
class LivenessRecord:
    """One per user; soft-terminated, never deleted"""
    id: str
    user_id: str
    last_checkin_at: datetime
    next_due_at: datetime
    status: RecordStatus = RecordStatus.ACTIVE
    reminders_sent: int = 0
    max_reminders: int = DEFAULT_MAX_REMINDERS
    grace_period_days: int = DEFAULT_GRACE_PERIOD_DAYS
    is_active: bool = True
    policy: EscalationPolicy = field(default_factory=EscalationPolicy)
    version: int = 0

    def __post_init__(self):
        self.status = RecordStatus(self.status)
        if not 0 <= self.reminders_sent <= self.max_reminders:
            raise ValueError(
                f"reminders_sent={self.reminders_sent} outside 0..{self.max_reminders}"
            )

    def to_dict(self, now: Optional[datetime] = None) -> Dict:
        data = {
            'id': self.id,
            'user_id': self.user_id,
            'last_checkin_at': self.last_checkin_at.isoformat(),
            'next_due_at': self.next_due_at.isoformat(),
            'status': self.status.value,
            'reminders_sent': self.reminders_sent,
            'max_reminders': self.max_reminders,
            'grace_period_days': self.grace_period_days,
            'is_active': self.is_active,
            'policy': self.policy.to_dict(),
        }
        if now is not None:
            data['display_status'] = display_status(self, now)
            data['days_until_due'] = -days_past_due(self.next_due_at, now)
        return data


def display_status(record: LivenessRecord, now: datetime) -> str:
    """UI label; 'warning' is derived from days until due and never stored"""
    if record.status != RecordStatus.ACTIVE:
        return record.status.value
    if -days_past_due(record.next_due_at, now) <= WARNING_WINDOW_DAYS:
        return 'warning'
    return RecordStatus.ACTIVE.value


@dataclass
class NotificationRecord:
    """Append-only audit entry for one message to one recipient"""
    id: str
    user_id: str
    recipient_id: str
    recipient_class: RecipientClass
    kind: MessageKind
    sent_at: datetime
    due_at: datetime
    requires_action: bool = False
    triggered_inheritance: bool = False
    privacy_respected: bool = False
    delivery_status: DeliveryStatus = DeliveryStatus.SENT
    error: Optional[str] = None

    def __post_init__(self):
        self.recipient_class = RecipientClass(self.recipient_class)
        self.kind = MessageKind(self.kind)
        self.delivery_status = DeliveryStatus(self.delivery_status)

    def to_dict(self) -> Dict:
        return {
            'id': self.id,
            'user_id': self.user_id,
            'recipient_id': self.recipient_id,
            'recipient_class': self.recipient_class.value,
            'kind': self.kind.value,
            'sent_at': self.sent_at.isoformat(),
            'due_at': self.due_at.isoformat(),
            'requires_action': self.requires_action,
            'triggered_inheritance': self.triggered_inheritance,
            'privacy_respected': self.privacy_respected,
            'delivery_status': self.delivery_status.value,
            'error': self.error,
        }


@dataclass
class InheritanceReleaseEvent:
    id: str
    user_id: str
    asset_id: str
    beneficiary_id: str
    triggered_at: datetime
    reason: str = RELEASE_REASON
    status: ReleaseStatus = ReleaseStatus.PENDING

    def to_dict(self) -> Dict:
        return {
            'id': self.id,
            'user_id': self.user_id,
            'asset_id': self.asset_id,
            'beneficiary_id': self.beneficiary_id,
            'triggered_at': self.triggered_at.isoformat(),
            'reason': self.reason,
            'status': ReleaseStatus(self.status).value,
        }


@dataclass(frozen=True)
class Decision:
    """Outcome of the escalation policy engine for one record"""
    notify_family: bool = False
    notify_professional: bool = False
    family_message_kind: Optional[MessageKind] = None
    professional_message_kind: Optional[MessageKind] = None
    fire_trigger: bool = False
    privacy_respected: bool = False
    # False only on the standard path without separate channels
    split_recipients: bool = True


@dataclass
class DeliveryResult:
    status: DeliveryStatus
    error: Optional[str] = None
    provider: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == DeliveryStatus.SENT


@dataclass
class SweepResult:
    processed: int = 0
    reminders_sent: int = 0
    family_alerts: int = 0
    professional_alerts: int = 0
    triggered: int = 0
    privacy_respected: int = 0
    failed: int = 0

    def add(self, other: 'SweepResult'):
        for f in fields(self):
            setattr(self, f.name, getattr(self, f.name) + getattr(other, f.name))

    def to_dict(self) -> Dict:
        return asdict(self)
