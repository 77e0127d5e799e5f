#!/usr/bin/env python3
"""
Schedule Evaluator
One sweep over every active liveness record: upcoming reminders, overdue
reminders, third-party alerts and finally the inheritance trigger.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Callable, Optional

from checkin_models import (
    UPCOMING_REMINDER_DAYS, Contact, DeliveryStatus, LivenessRecord, MessageKind,
    Phase, RecipientClass, RecordStatus, SweepResult, days_past_due, utcnow,
)
from checkin_store import CheckinStore
from contact_directory import ContactDirectory
from escalation_policy import decide, resolve_recipients
from inheritance_trigger import InheritanceTrigger
from notification_dispatcher import AuditedNotifier, message_context

logger = logging.getLogger(__name__)


class ScheduleEvaluator:

    def __init__(self, store: CheckinStore, contacts: ContactDirectory, notifier: AuditedNotifier,
                 trigger: InheritanceTrigger, clock: Callable[[], datetime] = utcnow,
                 workers: int = 1):
        self.store = store
        self.contacts = contacts
        self.notifier = notifier
        self.trigger = trigger
        self.clock = clock
        self.workers = max(1, workers)

    def run_sweep(self, now: Optional[datetime] = None) -> SweepResult:
        """Evaluate every active record once; a failing record never blocks the rest"""
        now = now or self.clock()
        user_ids = [record.user_id for record in self.store.list_active()]
        logger.info(f"Sweep started at {now.isoformat()} over {len(user_ids)} active record(s)")

        result = SweepResult()
        if self.workers > 1:
            with ThreadPoolExecutor(max_workers=self.workers) as pool:
                partials = list(pool.map(lambda user_id: self._safe_process(user_id, now), user_ids))
        else:
            partials = [self._safe_process(user_id, now) for user_id in user_ids]
        for partial in partials:
            result.add(partial)

        logger.info(f"Sweep completed: {result.to_dict()}")
        return result

    def _safe_process(self, user_id: str, now: datetime) -> SweepResult:
        tally = SweepResult(processed=1)
        try:
            with self.store.user_lock(user_id):
                self.process_record(user_id, now, tally)
        except Exception as e:
            logger.error(f"Failed to process liveness record for user {user_id}: {e}")
            tally.failed += 1
        return tally

    def _owner(self, record: LivenessRecord) -> Contact:
        owner = self.contacts.owner_contact(record.user_id)
        if owner is None:
            return Contact(id=record.user_id, name=record.user_id, email='')
        return owner

    def process_record(self, user_id: str, now: datetime, tally: SweepResult):
        """Read-decide-write for one record; caller holds the user lock"""
        record = self.store.get(user_id)
        if record is None or not record.is_active or record.status == RecordStatus.TRIGGERED:
            return

        overdue_days = days_past_due(record.next_due_at, now)
        owner = self._owner(record)
        context = message_context(record, owner, now)

        if overdue_days < 0:
            if -overdue_days in UPCOMING_REMINDER_DAYS:
                notification = self.notifier.notify(
                    record, owner, RecipientClass.OWNER, MessageKind.UPCOMING_REMINDER, context, now
                )
                if notification is not None and notification.delivery_status == DeliveryStatus.SENT:
                    tally.reminders_sent += 1
            return

        changed = record.status != RecordStatus.OVERDUE
        record.status = RecordStatus.OVERDUE

        if overdue_days <= record.grace_period_days:
            if record.reminders_sent < record.max_reminders:
                notification = self.notifier.notify(
                    record, owner, RecipientClass.OWNER, MessageKind.OVERDUE_REMINDER, context, now
                )
                if notification is not None and notification.delivery_status == DeliveryStatus.SENT:
                    record.reminders_sent += 1
                    tally.reminders_sent += 1
                    changed = True
            if changed:
                self.store.put(record)
            return

        if changed:
            self.store.put(record)

        if record.reminders_sent < record.max_reminders:
            self._alert(record, context, now, tally)
        else:
            decision = decide(record.policy, Phase.TRIGGER)
            self.trigger.trigger(record, decision, now, tally)
            if record.status == RecordStatus.TRIGGERED:
                tally.triggered += 1
                if decision.privacy_respected:
                    tally.privacy_respected += 1

    def _alert(self, record: LivenessRecord, context: dict, now: datetime, tally: SweepResult):
        decision = decide(record.policy, Phase.ALERT)
        recipients = resolve_recipients(
            record.policy, decision,
            self.contacts.family_contacts(record.user_id),
            self.contacts.professional_contacts(record.user_id),
        )
        for contact, recipient_class, kind in recipients:
            notification = self.notifier.notify(
                record, contact, recipient_class, kind, context, now,
                privacy_respected=decision.privacy_respected,
            )
            if notification is None or notification.delivery_status != DeliveryStatus.SENT:
                continue
            if recipient_class == RecipientClass.PROFESSIONAL:
                tally.professional_alerts += 1
            else:
                tally.family_alerts += 1
        if decision.privacy_respected:
            tally.privacy_respected += 1
