#!/usr/bin/env python3
"""
Liveness Tracker
Owns the check-in state machine: onboarding, check-in reset and policy edits.
"""

import uuid
import logging
from datetime import datetime
from typing import Callable, Dict, List, Optional

from checkin_models import (
    CHECKIN_INTERVAL_MONTHS, DEFAULT_GRACE_PERIOD_DAYS, DEFAULT_MAX_REMINDERS,
    EscalationPolicy, InvalidPolicyError, LivenessRecord, NotFoundError,
    NotificationRecord, RecordStatus, RecordTriggeredError, add_months, utcnow,
)
from checkin_store import CheckinStore
from contact_directory import ContactDirectory
from escalation_policy import validate_policy

logger = logging.getLogger(__name__)


class LivenessTracker:
    """User-facing operations on a liveness record; these fail fast"""

    def __init__(self, store: CheckinStore, directory: Optional[ContactDirectory] = None,
                 clock: Callable[[], datetime] = utcnow,
                 interval_months: int = CHECKIN_INTERVAL_MONTHS):
        self.store = store
        self.directory = directory
        self.clock = clock
        self.interval_months = interval_months

    def _known_contact_ids(self, user_id: str) -> Optional[List[str]]:
        if self.directory is None:
            return None
        contacts = self.directory.family_contacts(user_id) + self.directory.professional_contacts(user_id)
        return [c.id for c in contacts]

    def _require(self, user_id: str) -> LivenessRecord:
        record = self.store.get(user_id)
        if record is None:
            raise NotFoundError(user_id)
        return record

    def initialize(self, user_id: str, policy: Optional[EscalationPolicy] = None,
                   max_reminders: int = DEFAULT_MAX_REMINDERS,
                   grace_period_days: int = DEFAULT_GRACE_PERIOD_DAYS) -> LivenessRecord:
        """Create the user's record; an existing record is returned unchanged"""
        policy = policy or EscalationPolicy()
        validate_policy(policy, self._known_contact_ids(user_id))
        if max_reminders < 0 or grace_period_days < 0:
            raise InvalidPolicyError("max_reminders and grace_period_days must not be negative")

        with self.store.user_lock(user_id):
            existing = self.store.get(user_id)
            if existing is not None:
                logger.info(f"Check-in already initialized for user {user_id}")
                return existing

            now = self.clock()
            record = LivenessRecord(
                id=str(uuid.uuid4()),
                user_id=user_id,
                last_checkin_at=now,
                next_due_at=add_months(now, self.interval_months),
                status=RecordStatus.ACTIVE,
                reminders_sent=0,
                max_reminders=max_reminders,
                grace_period_days=grace_period_days,
                is_active=True,
                policy=policy,
            )
            return self.store.create(record)

    def check_in(self, user_id: str) -> LivenessRecord:
        """Reset the liveness clock. Refused once the record has been triggered."""
        with self.store.user_lock(user_id):
            record = self._require(user_id)
            if record.status == RecordStatus.TRIGGERED:
                logger.warning(f"Check-in refused for user {user_id}: inheritance already triggered")
                raise RecordTriggeredError(user_id)

            now = self.clock()
            record.status = RecordStatus.ACTIVE
            record.last_checkin_at = now
            record.next_due_at = add_months(now, self.interval_months)
            record.reminders_sent = 0
            record.is_active = True
            self.store.put(record)

        logger.info(f"User {user_id} checked in - next check-in due {record.next_due_at.date()}")
        return record

    def update_policy(self, user_id: str, partial: Dict) -> LivenessRecord:
        """Merge the supplied fields into the stored policy"""
        with self.store.user_lock(user_id):
            record = self._require(user_id)
            if record.status == RecordStatus.TRIGGERED:
                raise RecordTriggeredError(user_id)
            policy = record.policy.merged(partial)
            validate_policy(policy, self._known_contact_ids(user_id))
            record.policy = policy
            self.store.put(record)

        logger.info(f"Escalation policy updated for user {user_id}: {sorted(partial)}")
        return record

    def get_status(self, user_id: str) -> LivenessRecord:
        return self._require(user_id)

    def list_notifications(self, user_id: str) -> List[NotificationRecord]:
        self._require(user_id)
        return self.store.list_notifications(user_id)
