#!/usr/bin/env python3
"""
Inheritance Trigger
Terminal action: deactivates an overdue liveness record, emits one release
event per (asset, beneficiary) pair and tells each beneficiary the policy
allows to hear about it. Safe to call more than once; only the first call
has any effect.
"""

import uuid
import logging
from datetime import datetime
from typing import Dict, List, Optional, Set

from checkin_models import (
    Contact, Decision, DeliveryStatus, DuplicateTriggerAttempt, InheritanceReleaseEvent,
    LivenessRecord, MessageKind, Phase, RecipientClass, RecordStatus, ReleaseStatus,
    StaleRecordError, SweepResult, utcnow,
)
from checkin_store import CheckinStore
from contact_directory import AssetDirectory, ContactDirectory
from escalation_policy import decide
from notification_dispatcher import AuditedNotifier, message_context

logger = logging.getLogger(__name__)


class InheritanceTrigger:

    def __init__(self, store: CheckinStore, contacts: ContactDirectory, assets: AssetDirectory,
                 notifier: AuditedNotifier):
        self.store = store
        self.contacts = contacts
        self.assets = assets
        self.notifier = notifier

    def _professional_ids(self, record: LivenessRecord) -> Set[str]:
        ids = {c.id for c in self.contacts.professional_contacts(record.user_id)}
        ids.update(record.policy.professional_contact_ids)
        return ids

    def _eligible_beneficiaries(self, record: LivenessRecord) -> Set[str]:
        eligible = {c.id for c in self.contacts.family_contacts(record.user_id)}
        if record.policy.separate_channels:
            eligible.update(self._professional_ids(record))
        return eligible

    def release_events(self, record: LivenessRecord, now: datetime) -> List[InheritanceReleaseEvent]:
        eligible = self._eligible_beneficiaries(record)
        events = []
        for asset_id, beneficiaries in self.assets.assets_with_beneficiaries(record.user_id):
            for beneficiary_id in dict.fromkeys(beneficiaries):
                if beneficiary_id not in eligible:
                    continue
                events.append(InheritanceReleaseEvent(
                    id=str(uuid.uuid4()),
                    user_id=record.user_id,
                    asset_id=asset_id,
                    beneficiary_id=beneficiary_id,
                    triggered_at=now,
                    status=ReleaseStatus.PENDING,
                ))
        return events

    def beneficiary_notices(self, record: LivenessRecord, decision: Decision,
                            events: List[InheritanceReleaseEvent]):
        """One notice per beneficiary holding a release event, in the channel the policy allows"""
        family = {c.id: c for c in self.contacts.family_contacts(record.user_id)}
        professionals: Dict[str, Contact] = {
            c.id: c for c in self.contacts.professional_contacts(record.user_id)
        }
        professional_ids = self._professional_ids(record) if record.policy.separate_channels else set()

        notices = []
        for beneficiary_id in dict.fromkeys(e.beneficiary_id for e in events):
            if beneficiary_id in professional_ids:
                contact = professionals.get(beneficiary_id) or family.get(beneficiary_id)
                if contact is not None:
                    notices.append((contact, RecipientClass.PROFESSIONAL,
                                    MessageKind.PROFESSIONAL_INHERITANCE_NOTICE))
            elif beneficiary_id in family and decision.notify_family:
                notices.append((family[beneficiary_id], RecipientClass.FAMILY,
                                MessageKind.INHERITANCE_TRIGGERED))
        return notices

    def trigger(self, record: LivenessRecord, decision: Optional[Decision] = None,
                now: Optional[datetime] = None,
                tally: Optional[SweepResult] = None) -> List[InheritanceReleaseEvent]:
        """Fire the inheritance release for an overdue record; a repeat call returns []"""
        now = now or utcnow()
        if record.status == RecordStatus.TRIGGERED:
            logger.warning(f"Inheritance already triggered for user {record.user_id} - ignoring")
            return []

        events = self.release_events(record, now)
        try:
            self.store.mark_triggered(record.user_id, record.version, events)
        except (DuplicateTriggerAttempt, StaleRecordError) as e:
            logger.warning(f"{e} - ignoring")
            return []

        record.status = RecordStatus.TRIGGERED
        record.is_active = False
        record.version += 1
        logger.warning(f"Inheritance triggered for user {record.user_id}: {len(events)} release event(s)")

        decision = decision or decide(record.policy, Phase.TRIGGER)
        context = message_context(record, self.contacts.owner_contact(record.user_id), now)
        for contact, recipient_class, kind in self.beneficiary_notices(record, decision, events):
            notification = self.notifier.notify(
                record, contact, recipient_class, kind, context, now,
                privacy_respected=decision.privacy_respected,
                triggered_inheritance=True,
            )
            if tally is not None and notification is not None and notification.delivery_status == DeliveryStatus.SENT:
                if recipient_class == RecipientClass.PROFESSIONAL:
                    tally.professional_alerts += 1
                else:
                    tally.family_alerts += 1
        return events
