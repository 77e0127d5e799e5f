"""Tests for the daily sweep."""

from __future__ import annotations

from datetime import timedelta

import pytest

from checkin_models import (
    DeliveryStatus, EscalationPolicy, MessageKind, RecipientClass, RecordStatus, add_months,
)
from checkin_system import CheckinSystem
from conftest import NOW, USER


def _kinds(system, user_id: str = USER):
    return sorted((n.recipient_id, n.kind) for n in system.list_notifications(user_id))


def test_scenario_a_exhausted_reminders_trigger_inheritance(system, seed, store) -> None:
    seed(days_past_due=40, reminders_sent=4, status=RecordStatus.OVERDUE)

    result = system.run_sweep()

    record = store.get(USER)
    assert record.status == RecordStatus.TRIGGERED
    assert not record.is_active
    assert result.triggered == 1
    assert result.processed == 1
    assert _kinds(system) == [
        ("f1", MessageKind.INHERITANCE_TRIGGERED),
        ("f2", MessageKind.INHERITANCE_TRIGGERED),
        ("p1", MessageKind.PROFESSIONAL_INHERITANCE_NOTICE),
    ]
    assert result.family_alerts == 2
    assert result.professional_alerts == 1
    assert all(n.triggered_inheritance for n in system.list_notifications(USER))

    pairs = [(e.asset_id, e.beneficiary_id) for e in store.list_release_events(USER)]
    assert pairs == [("a1", "f1"), ("a1", "f2"), ("a2", "f2"), ("a2", "p1")]


def test_scenario_a_second_sweep_is_a_no_op(system, seed, store, clock) -> None:
    seed(days_past_due=40, reminders_sent=4, status=RecordStatus.OVERDUE)
    system.run_sweep()
    clock.advance(days=1)

    result = system.run_sweep()

    assert result.processed == 0
    assert result.triggered == 0
    assert len(system.list_notifications(USER)) == 3
    assert len(store.list_release_events(USER)) == 4


def test_scenario_b_alert_phase_keeps_reminder_budget(system, seed, store) -> None:
    seed(days_past_due=40, reminders_sent=2, status=RecordStatus.OVERDUE)

    result = system.run_sweep()

    record = store.get(USER)
    assert record.status == RecordStatus.OVERDUE
    assert record.reminders_sent == 2
    assert result.triggered == 0
    assert result.family_alerts == 2
    assert result.professional_alerts == 0
    assert result.privacy_respected == 0
    assert _kinds(system) == [
        ("f1", MessageKind.FAMILY_CONCERN),
        ("f2", MessageKind.FAMILY_CONCERN),
    ]
    assert store.list_release_events(USER) == []


def test_scenario_c_upcoming_reminder_sent_once_per_day(system, seed, store, dispatcher) -> None:
    seed(days_past_due=-7)

    first = system.run_sweep()
    second = system.run_sweep()

    assert first.reminders_sent == 1
    assert second.reminders_sent == 0
    notifications = system.list_notifications(USER)
    assert len(notifications) == 1
    assert notifications[0].kind == MessageKind.UPCOMING_REMINDER
    assert notifications[0].recipient_class == RecipientClass.OWNER
    assert len(dispatcher.sent) == 1

    record = store.get(USER)
    assert record.status == RecordStatus.ACTIVE
    assert record.reminders_sent == 0


@pytest.mark.parametrize("days_before", [30, 14, 7, 1])
def test_upcoming_reminder_milestones(system, seed, days_before) -> None:
    seed(days_past_due=-days_before)

    assert system.run_sweep().reminders_sent == 1


def test_no_reminder_between_milestones(system, seed) -> None:
    seed(days_past_due=-10)

    result = system.run_sweep()

    assert result.processed == 1
    assert result.reminders_sent == 0
    assert system.list_notifications(USER) == []


def test_overdue_reminder_increments_counter(system, seed, store) -> None:
    seed(days_past_due=3, reminders_sent=1)

    result = system.run_sweep()

    record = store.get(USER)
    assert record.status == RecordStatus.OVERDUE
    assert record.reminders_sent == 2
    assert result.reminders_sent == 1
    [notification] = system.list_notifications(USER)
    assert notification.kind == MessageKind.OVERDUE_REMINDER
    assert notification.requires_action is True


def test_due_today_counts_as_overdue(system, seed, store) -> None:
    seed(days_past_due=0)

    system.run_sweep()

    assert store.get(USER).status == RecordStatus.OVERDUE
    assert store.get(USER).reminders_sent == 1


def test_exhausted_budget_within_grace_sends_nothing(system, seed, store) -> None:
    seed(days_past_due=10, reminders_sent=4)

    result = system.run_sweep()

    record = store.get(USER)
    assert record.status == RecordStatus.OVERDUE
    assert record.reminders_sent == 4
    assert result.reminders_sent == 0
    assert system.list_notifications(USER) == []


def test_failed_delivery_is_recorded_and_retried(system, seed, store, dispatcher) -> None:
    seed(days_past_due=3)
    dispatcher.fail_for.add(USER)

    system.run_sweep()

    [failed] = system.list_notifications(USER)
    assert failed.delivery_status == DeliveryStatus.FAILED
    assert failed.error == "mailbox full"
    assert store.get(USER).reminders_sent == 0

    dispatcher.fail_for.clear()
    result = system.run_sweep()

    assert result.reminders_sent == 1
    assert store.get(USER).reminders_sent == 1
    statuses = [n.delivery_status for n in system.list_notifications(USER)]
    assert statuses == [DeliveryStatus.SENT, DeliveryStatus.FAILED]


def test_recipient_failure_does_not_stop_other_recipients(system, seed, dispatcher) -> None:
    seed(days_past_due=40, reminders_sent=2)
    dispatcher.raise_for.add("f1")

    result = system.run_sweep()

    assert result.failed == 0
    assert result.family_alerts == 1
    by_recipient = {n.recipient_id: n.delivery_status for n in system.list_notifications(USER)}
    assert by_recipient == {"f1": DeliveryStatus.FAILED, "f2": DeliveryStatus.SENT}


class ExplodingDirectory:
    def __init__(self, inner, bad_user: str):
        self.inner = inner
        self.bad_user = bad_user

    def owner_contact(self, user_id):
        if user_id == self.bad_user:
            raise RuntimeError("directory unavailable")
        return self.inner.owner_contact(user_id)

    def family_contacts(self, user_id):
        return self.inner.family_contacts(user_id)

    def professional_contacts(self, user_id):
        return self.inner.professional_contacts(user_id)


def test_record_failure_does_not_block_the_batch(system, seed, store) -> None:
    seed(USER, days_past_due=3)
    seed("u2", days_past_due=3)
    system.evaluator.contacts = ExplodingDirectory(system.directory, USER)

    result = system.run_sweep()

    assert result.processed == 2
    assert result.failed == 1
    assert result.reminders_sent == 1
    assert store.get("u2").reminders_sent == 1
    assert store.get(USER).reminders_sent == 0


def test_family_alerts_disabled_never_reaches_family(system, seed) -> None:
    policy = EscalationPolicy(alert_family_when_overdue=False, professional_contact_ids=["p1"])
    seed(days_past_due=40, reminders_sent=2, policy=policy)

    result = system.run_sweep()

    notifications = system.list_notifications(USER)
    assert [(n.recipient_id, n.kind) for n in notifications] == [("p1", MessageKind.PROFESSIONAL_CONCERN)]
    assert all(n.recipient_class != RecipientClass.FAMILY for n in notifications)
    assert all(n.privacy_respected for n in notifications)
    assert result.professional_alerts == 1
    assert result.family_alerts == 0
    assert result.privacy_respected == 1


def test_professional_only_trigger_notifies_professionals(system, seed, store) -> None:
    policy = EscalationPolicy(professional_only=True, professional_contact_ids=["p1"])
    seed(days_past_due=40, reminders_sent=4, policy=policy)

    result = system.run_sweep()

    assert store.get(USER).status == RecordStatus.TRIGGERED
    assert result.triggered == 1
    assert result.privacy_respected == 1
    assert _kinds(system) == [("p1", MessageKind.PROFESSIONAL_INHERITANCE_NOTICE)]


def test_separate_channels_split_family_and_professional(system, seed) -> None:
    policy = EscalationPolicy(professional_contact_ids=["p1"], professional_message="See the file")
    seed(days_past_due=40, reminders_sent=1, policy=policy)

    result = system.run_sweep()

    assert _kinds(system) == [
        ("f1", MessageKind.FAMILY_CONCERN),
        ("f2", MessageKind.FAMILY_CONCERN),
        ("p1", MessageKind.PROFESSIONAL_CONCERN),
    ]
    assert result.family_alerts == 2
    assert result.professional_alerts == 1


def test_check_in_after_alerts_restarts_cycle(system, seed, store, clock) -> None:
    seed(days_past_due=40, reminders_sent=2, status=RecordStatus.OVERDUE)
    system.run_sweep()

    system.check_in(USER)
    clock.advance(days=1)
    result = system.run_sweep()

    assert result.family_alerts == 0
    assert store.get(USER).status == RecordStatus.ACTIVE


def test_parallel_workers_process_every_record(config, dispatcher, clock) -> None:
    config["sweep_workers"] = 4
    system = CheckinSystem(config, dispatcher=dispatcher, clock=clock)
    for user_id in (USER, "u2"):
        system.initialize_checkin(user_id)

    result = system.run_sweep(add_months(NOW, 6) - timedelta(days=30))

    assert result.processed == 2
    assert result.failed == 0
    assert result.reminders_sent == 2


def test_family_alerts_disabled_without_professionals_through_trigger(system, seed, store, clock) -> None:
    policy = EscalationPolicy(alert_family_when_overdue=False)
    seed(days_past_due=30, reminders_sent=2, policy=policy)

    alert = system.run_sweep()
    record = store.get(USER)
    record.reminders_sent = record.max_reminders
    store.put(record)
    clock.advance(days=1)
    trigger = system.run_sweep()

    assert alert.family_alerts == 0
    assert alert.privacy_respected == 1
    assert trigger.triggered == 1
    assert trigger.privacy_respected == 1
    assert store.get(USER).status == RecordStatus.TRIGGERED
    notifications = system.list_notifications(USER)
    assert all(n.recipient_class != RecipientClass.FAMILY for n in notifications)
    assert all(n.privacy_respected for n in notifications)


class HookedDirectory:
    """Runs `hook` once, the first time family contacts are looked up"""

    def __init__(self, inner, hook):
        self.inner = inner
        self.hook = hook

    def family_contacts(self, user_id):
        hook, self.hook = self.hook, None
        if hook is not None:
            hook()
        return self.inner.family_contacts(user_id)

    def __getattr__(self, name):
        return getattr(self.inner, name)


def test_check_in_from_another_process_beats_the_trigger(system, seed, store, config, dispatcher, clock) -> None:
    seed(days_past_due=40, reminders_sent=4, status=RecordStatus.OVERDUE)
    web = CheckinSystem(config, dispatcher=dispatcher, clock=clock)
    checked_in = []
    system.trigger.contacts = HookedDirectory(system.directory, lambda: checked_in.append(web.check_in(USER)))

    result = system.run_sweep()

    assert checked_in[0].status == RecordStatus.ACTIVE
    assert result.triggered == 0
    record = store.get(USER)
    assert record.status == RecordStatus.ACTIVE
    assert record.is_active
    assert record.reminders_sent == 0
    assert store.list_release_events(USER) == []
    assert system.list_notifications(USER) == []


def test_overlapping_sweeps_fire_the_trigger_once(system, seed, store, config, dispatcher, clock) -> None:
    seed(days_past_due=40, reminders_sent=4, status=RecordStatus.OVERDUE)
    other = CheckinSystem(config, dispatcher=dispatcher, clock=clock)
    overlapping = []
    system.trigger.contacts = HookedDirectory(system.directory, lambda: overlapping.append(other.run_sweep()))

    result = system.run_sweep()

    assert overlapping[0].triggered == 1
    assert result.triggered == 0
    assert store.get(USER).status == RecordStatus.TRIGGERED
    assert len(store.list_release_events(USER)) == 4
    assert len(system.list_notifications(USER)) == 3
