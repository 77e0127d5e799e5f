#!/usr/bin/env python3
"""
Notification Dispatcher for the check-in engine
Renders a message kind and delivers it through the configured providers,
falling back from one provider to the next.
"""

import uuid
import logging
import smtplib
from dataclasses import dataclass
from datetime import datetime
from email.mime.text import MIMEText
from typing import List, Dict, Optional, Protocol

import requests

from checkin_models import (
    Contact, DeliveryResult, DeliveryStatus, DispatchFailure, LivenessRecord,
    MessageKind, NotificationRecord, RecipientClass, days_past_due,
)
from escalation_policy import message_for, requires_action

logger = logging.getLogger(__name__)


@dataclass
class RenderedMessage:
    subject: str
    body: str


class Dispatcher(Protocol):
    def send(self, recipient: Contact, kind: MessageKind, context: Dict) -> DeliveryResult:
        ...


TEMPLATES = {
    'english': {
        MessageKind.UPCOMING_REMINDER: (
            "Your check-in is due in {days_until_due} days",
            "Hello {recipient_name},\n\nYour scheduled check-in is due on {due_date}. "
            "Please confirm you are well before then."
        ),
        MessageKind.OVERDUE_REMINDER: (
            "Your check-in is overdue",
            "Hello {recipient_name},\n\nYour check-in was due on {due_date} and has not been "
            "completed. Please check in as soon as possible. Reminder {reminder_number} of {max_reminders}."
        ),
        MessageKind.FAMILY_CONCERN: (
            "Please check on {owner_name}",
            "Dear {recipient_name},\n\n{owner_name} has missed a scheduled check-in. "
            "Could you reach out and make sure they are all right?"
        ),
        MessageKind.PROFESSIONAL_CONCERN: (
            "Missed check-in for your client {owner_name}",
            "Dear {recipient_name},\n\nYour client {owner_name} has missed a scheduled check-in "
            "and listed you as a professional contact. Please follow up according to your arrangement."
        ),
        MessageKind.DIRECT_INHERITANCE_NOTICE: (
            "Important notice regarding {owner_name}",
            "Dear {recipient_name},\n\n{owner_name} has not completed their scheduled check-in. "
            "If no check-in follows, the inheritance arrangements they prepared will be released to you."
        ),
        MessageKind.INHERITANCE_TRIGGERED: (
            "Inheritance released by {owner_name}",
            "Dear {recipient_name},\n\n{owner_name} did not complete their check-in within the grace "
            "period. The assets they designated for you are now being released."
        ),
        MessageKind.PROFESSIONAL_INHERITANCE_NOTICE: (
            "Inheritance process started for {owner_name}",
            "Dear {recipient_name},\n\nThe inheritance process for your client {owner_name} "
            "has started following repeated missed check-ins. Your involvement may be required."
        ),
    },
    'spanish': {
        MessageKind.UPCOMING_REMINDER: (
            "Tu confirmación vence en {days_until_due} días",
            "Hola {recipient_name},\n\nTu confirmación programada vence el {due_date}. "
            "Por favor confirma que estás bien antes de esa fecha."
        ),
        MessageKind.OVERDUE_REMINDER: (
            "Tu confirmación está vencida",
            "Hola {recipient_name},\n\nTu confirmación vencía el {due_date} y no se ha completado. "
            "Recordatorio {reminder_number} de {max_reminders}."
        ),
        MessageKind.FAMILY_CONCERN: (
            "Por favor comunícate con {owner_name}",
            "Querido/a {recipient_name},\n\n{owner_name} no ha completado una confirmación programada. "
            "¿Podrías comprobar que se encuentra bien?"
        ),
    },
}


class MessageRenderer:
    """Turns a message kind plus structured context into subject and body"""

    def render(self, kind: MessageKind, context: Dict) -> RenderedMessage:
        language = context.get('language', 'english').lower()
        templates = TEMPLATES.get(language, TEMPLATES['english'])
        subject, body = templates.get(kind, TEMPLATES['english'][kind])
        values = dict(context)
        values.setdefault('owner_name', 'your contact')
        values.setdefault('recipient_name', 'there')
        subject = subject.format_map(_Defaulting(values))
        body = body.format_map(_Defaulting(values))
        if context.get('custom_message'):
            body = f"{body}\n\n{context['custom_message']}"
        return RenderedMessage(subject=subject, body=body)


class _Defaulting(dict):
    def __missing__(self, key):
        return ''


class EmailProvider:
    """SMTP email delivery"""
    name = 'email'

    def __init__(self, config: Dict):
        self.smtp_server = config.get('smtp_server', 'smtp.gmail.com')
        self.smtp_port = config.get('smtp_port', 587)
        self.sender = config['sender']
        self.password = config['password']

    def can_reach(self, recipient: Contact) -> bool:
        return bool(recipient.email)

    def send(self, recipient: Contact, message: RenderedMessage):
        msg = MIMEText(message.body, 'plain')
        msg['From'] = self.sender
        msg['To'] = recipient.email
        msg['Subject'] = message.subject
        try:
            with smtplib.SMTP(self.smtp_server, self.smtp_port) as server:
                server.starttls()
                server.login(self.sender, self.password)
                server.sendmail(self.sender, recipient.email, msg.as_string())
        except (smtplib.SMTPException, OSError) as e:
            raise DispatchFailure(f"SMTP delivery to {recipient.email} failed: {e}") from e


class SmsProvider:
    """Twilio SMS delivery"""
    name = 'sms'

    def __init__(self, config: Dict):
        self.account_sid = config['twilio_sid']
        self.auth_token = config['twilio_token']
        self.from_number = config['twilio_phone']
        self._client = None

    def can_reach(self, recipient: Contact) -> bool:
        return bool(recipient.phone)

    @property
    def client(self):
        if self._client is None:
            from twilio.rest import Client
            self._client = Client(self.account_sid, self.auth_token)
        return self._client

    def send(self, recipient: Contact, message: RenderedMessage):
        from twilio.base.exceptions import TwilioException
        try:
            sent = self.client.messages.create(
                body=f"{message.subject}\n\n{message.body}",
                from_=self.from_number,
                to=recipient.phone
            )
        except TwilioException as e:
            raise DispatchFailure(f"Twilio delivery to {recipient.phone} failed: {e}") from e
        logger.info(f"SMS sent to {recipient.phone}, SID: {sent.sid}")


class WebhookProvider:
    """Posts the message to an HTTP endpoint (push gateway, chat bridge)"""
    name = 'webhook'

    def __init__(self, config: Dict):
        self.url = config['webhook_url']
        self.api_key = config.get('webhook_api_key', '')
        self.timeout = config.get('webhook_timeout', 10)

    def can_reach(self, recipient: Contact) -> bool:
        return True

    def send(self, recipient: Contact, message: RenderedMessage):
        headers = {'Content-Type': 'application/json'}
        if self.api_key:
            headers['Authorization'] = f'Bearer {self.api_key}'
        data = {
            'recipient_id': recipient.id,
            'email': recipient.email,
            'phone': recipient.phone,
            'subject': message.subject,
            'body': message.body,
        }
        try:
            response = requests.post(self.url, headers=headers, json=data, timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            raise DispatchFailure(f"Webhook delivery to {recipient.id} failed: {e}") from e


PROVIDER_ORDER = ['email', 'sms', 'webhook']


class NotificationDispatcher:
    """Delivers one message to one recipient through the first provider that succeeds"""

    def __init__(self, config: Dict, renderer: Optional[MessageRenderer] = None):
        self.config = config
        self.renderer = renderer or MessageRenderer()
        self.setup_providers()

    def setup_providers(self):
        """Setup available providers"""
        self.providers = {}

        if all(key in self.config for key in ['sender', 'password']):
            self.providers['email'] = EmailProvider(self.config)

        if all(key in self.config for key in ['twilio_sid', 'twilio_token', 'twilio_phone']):
            self.providers['sms'] = SmsProvider(self.config)

        if 'webhook_url' in self.config:
            self.providers['webhook'] = WebhookProvider(self.config)

        logger.info(f"Initialized {len(self.providers)} notification providers: {list(self.providers.keys())}")

    def send(self, recipient: Contact, kind: MessageKind, context: Dict) -> DeliveryResult:
        context = dict(context, recipient_name=recipient.name, language=recipient.preferred_language)
        message = self.renderer.render(kind, context)
        errors: List[str] = []

        for provider_name in PROVIDER_ORDER:
            provider = self.providers.get(provider_name)
            if provider is None or not provider.can_reach(recipient):
                continue
            try:
                provider.send(recipient, message)
            except DispatchFailure as e:
                logger.warning(f"Failed to send {kind.value} via {provider_name}: {e}")
                errors.append(str(e))
                continue
            logger.info(f"Sent {kind.value} to {recipient.id} via {provider_name}")
            return DeliveryResult(status=DeliveryStatus.SENT, provider=provider_name)

        error = '; '.join(errors) or f"No provider can reach recipient {recipient.id}"
        logger.error(f"All providers failed for {kind.value} to {recipient.id}: {error}")
        return DeliveryResult(status=DeliveryStatus.FAILED, error=error)


class AuditedNotifier:
    """Dispatches a message and appends the outcome to the audit log.

    A failed delivery is recorded with delivery_status='failed' and is not
    retried here; the next sweep picks it up because the idempotency check
    only counts successful deliveries.
    """

    def __init__(self, dispatcher: Dispatcher, store):
        self.dispatcher = dispatcher
        self.store = store

    def notify(self, record: LivenessRecord, recipient: Contact, recipient_class: RecipientClass,
               kind: MessageKind, context: Dict, now: datetime,
               privacy_respected: bool = False,
               triggered_inheritance: bool = False) -> Optional[NotificationRecord]:
        day = now.date().isoformat()
        if self.store.was_delivered(record.user_id, recipient.id, kind, record.next_due_at, day):
            logger.info(f"Skipping duplicate {kind.value} to {recipient.id} for user {record.user_id}")
            return None

        context = dict(context, custom_message=message_for(recipient_class, record.policy))
        try:
            result = self.dispatcher.send(recipient, kind, context)
        except Exception as e:
            logger.error(f"Dispatcher error sending {kind.value} to {recipient.id}: {e}")
            result = DeliveryResult(status=DeliveryStatus.FAILED, error=str(e))

        notification = NotificationRecord(
            id=str(uuid.uuid4()),
            user_id=record.user_id,
            recipient_id=recipient.id,
            recipient_class=recipient_class,
            kind=kind,
            sent_at=now,
            due_at=record.next_due_at,
            requires_action=requires_action(kind, record.policy),
            triggered_inheritance=triggered_inheritance,
            privacy_respected=privacy_respected,
            delivery_status=result.status,
            error=result.error,
        )
        self.store.append_notification(notification)
        return notification


def message_context(record: LivenessRecord, owner: Optional[Contact], now: datetime) -> Dict:
    """Structured context handed to the renderer; no markup is produced here"""
    return {
        'user_id': record.user_id,
        'owner_name': owner.name if owner else record.user_id,
        'due_date': record.next_due_at.date().isoformat(),
        'days_until_due': -days_past_due(record.next_due_at, now),
        'reminder_number': record.reminders_sent + 1,
        'max_reminders': record.max_reminders,
    }
