#!/usr/bin/env python3
"""
Escalation Policy Engine
Pure decision logic: which recipient classes hear about a missed check-in,
with which message variant, and whether the inheritance trigger fires.
No I/O happens here.
"""

from typing import List, Iterable, Optional, Tuple

from checkin_models import (
    AlertType, Contact, Decision, EscalationPolicy, InvalidPolicyError,
    MessageKind, Phase, RecipientClass,
)

Recipient = Tuple[Contact, RecipientClass, MessageKind]

CONCERN_KINDS = {MessageKind.FAMILY_CONCERN, MessageKind.PROFESSIONAL_CONCERN}
INHERITANCE_KINDS = {
    MessageKind.DIRECT_INHERITANCE_NOTICE,
    MessageKind.INHERITANCE_TRIGGERED,
    MessageKind.PROFESSIONAL_INHERITANCE_NOTICE,
}


def _professional_kind(phase: Phase, alert_type: AlertType = AlertType.CONCERN) -> MessageKind:
    if phase == Phase.TRIGGER or alert_type == AlertType.DIRECT_INHERITANCE:
        return MessageKind.PROFESSIONAL_INHERITANCE_NOTICE
    return MessageKind.PROFESSIONAL_CONCERN


def _family_kind(phase: Phase, alert_type: AlertType) -> MessageKind:
    if phase == Phase.TRIGGER:
        return MessageKind.INHERITANCE_TRIGGERED
    if alert_type == AlertType.DIRECT_INHERITANCE:
        return MessageKind.DIRECT_INHERITANCE_NOTICE
    return MessageKind.FAMILY_CONCERN


def decide(policy: EscalationPolicy, phase: Phase) -> Decision:
    """Evaluate the policy for an escalation phase.

    Branches are checked in priority order: family alerts disabled,
    professional-only, inheritance-only, then the standard path. When both
    professional_only and inheritance_only_mode are set, professional_only
    wins because it is checked first.
    """
    phase = Phase(phase)
    fire = phase == Phase.TRIGGER
    has_professionals = bool(policy.professional_contact_ids)

    if not policy.alert_family_when_overdue:
        return Decision(
            notify_family=False,
            notify_professional=has_professionals,
            professional_message_kind=_professional_kind(phase) if has_professionals else None,
            fire_trigger=fire,
            privacy_respected=True,
        )

    if policy.professional_only:
        return Decision(
            notify_family=False,
            notify_professional=True,
            professional_message_kind=_professional_kind(phase),
            fire_trigger=fire,
            privacy_respected=True,
        )

    separate = policy.separate_channels and has_professionals

    if policy.inheritance_only_mode:
        return Decision(
            notify_family=True,
            family_message_kind=(MessageKind.INHERITANCE_TRIGGERED if fire
                                 else MessageKind.DIRECT_INHERITANCE_NOTICE),
            notify_professional=separate,
            professional_message_kind=MessageKind.PROFESSIONAL_INHERITANCE_NOTICE if separate else None,
            fire_trigger=fire,
            privacy_respected=True,
        )

    return Decision(
        notify_family=True,
        family_message_kind=_family_kind(phase, policy.alert_type),
        notify_professional=separate,
        professional_message_kind=_professional_kind(phase, policy.alert_type) if separate else None,
        fire_trigger=fire,
        privacy_respected=False,
        split_recipients=separate,
    )


def _unique(contacts: Iterable[Contact]) -> List[Contact]:
    seen = set()
    unique = []
    for contact in contacts:
        if contact.id not in seen:
            seen.add(contact.id)
            unique.append(contact)
    return unique


def resolve_recipients(policy: EscalationPolicy, decision: Decision,
                       family: List[Contact], professionals: List[Contact]) -> List[Recipient]:
    """Expand a decision into concrete (contact, class, kind) triples"""
    professional_ids = set(policy.professional_contact_ids)
    selected = [c for c in _unique(professionals + family) if c.id in professional_ids]

    if not decision.split_recipients:
        # one undifferentiated variant to the full contact set
        recipients = []
        for contact in _unique(family + selected):
            cls = RecipientClass.PROFESSIONAL if contact.id in professional_ids else RecipientClass.FAMILY
            recipients.append((contact, cls, decision.family_message_kind))
        return recipients

    recipients = []
    if decision.notify_family:
        for contact in _unique(family):
            if decision.notify_professional and contact.id in professional_ids:
                continue
            recipients.append((contact, RecipientClass.FAMILY, decision.family_message_kind))
    if decision.notify_professional:
        for contact in selected:
            recipients.append((contact, RecipientClass.PROFESSIONAL, decision.professional_message_kind))
    return recipients


def requires_action(kind: MessageKind, policy: EscalationPolicy) -> bool:
    if kind == MessageKind.OVERDUE_REMINDER or kind in INHERITANCE_KINDS:
        return True
    if kind in CONCERN_KINDS:
        return policy.allow_wellness_checks
    return False


def message_for(recipient_class: RecipientClass, policy: EscalationPolicy) -> Optional[str]:
    """Free-text message the user attached for this recipient class"""
    if recipient_class == RecipientClass.PROFESSIONAL:
        return policy.professional_message
    return policy.custom_message


def validate_policy(policy: EscalationPolicy, known_contact_ids: Optional[Iterable[str]] = None):
    """Reject policies that would silently produce a no-op decision later"""
    if policy.professional_only and not policy.professional_contact_ids:
        raise InvalidPolicyError("professional_only requires at least one professional contact")
    if known_contact_ids is not None:
        unknown = set(policy.professional_contact_ids) - set(known_contact_ids)
        if unknown:
            raise InvalidPolicyError(f"Unknown professional contact ids: {', '.join(sorted(unknown))}")
