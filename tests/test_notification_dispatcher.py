"""Tests for message rendering and provider fallback."""

from __future__ import annotations

import pytest
import requests

import notification_dispatcher
from checkin_models import Contact, DeliveryStatus, MessageKind
from notification_dispatcher import MessageRenderer, NotificationDispatcher

RECIPIENT = Contact(id="f1", name="Jane Owner", email="jane@example.com")

EMAIL_AND_WEBHOOK = {
    "sender": "noreply@example.com",
    "password": "secret",
    "webhook_url": "https://push.example.com/notify",
}


class FakeResponse:
    def __init__(self, status_code: int = 200):
        self.status_code = status_code

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")


class BrokenSMTP:
    def __init__(self, *args, **kwargs):
        raise OSError("connection refused")


@pytest.fixture
def posted(monkeypatch):
    calls = []

    def fake_post(url, headers=None, json=None, timeout=None):
        calls.append((url, json))
        return FakeResponse()

    monkeypatch.setattr(notification_dispatcher.requests, "post", fake_post)
    return calls


def test_renderer_appends_custom_message() -> None:
    message = MessageRenderer().render(MessageKind.FAMILY_CONCERN, {
        "owner_name": "Alex",
        "recipient_name": "Jane",
        "custom_message": "The spare key is with the neighbour.",
    })

    assert "Alex" in message.subject
    assert message.body.startswith("Dear Jane")
    assert message.body.endswith("The spare key is with the neighbour.")


def test_renderer_falls_back_to_english_templates() -> None:
    message = MessageRenderer().render(MessageKind.INHERITANCE_TRIGGERED, {
        "owner_name": "Alex",
        "language": "spanish",
    })

    assert message.subject == "Inheritance released by Alex"


def test_smtp_failure_falls_back_to_webhook(monkeypatch, posted) -> None:
    monkeypatch.setattr(notification_dispatcher.smtplib, "SMTP", BrokenSMTP)
    dispatcher = NotificationDispatcher(EMAIL_AND_WEBHOOK)

    result = dispatcher.send(RECIPIENT, MessageKind.FAMILY_CONCERN, {"owner_name": "Alex"})

    assert result.status == DeliveryStatus.SENT
    assert result.provider == "webhook"
    [(url, payload)] = posted
    assert url == EMAIL_AND_WEBHOOK["webhook_url"]
    assert payload["recipient_id"] == "f1"


def test_all_providers_failing_returns_failed_result(monkeypatch) -> None:
    monkeypatch.setattr(notification_dispatcher.smtplib, "SMTP", BrokenSMTP)
    monkeypatch.setattr(notification_dispatcher.requests, "post",
                        lambda *args, **kwargs: FakeResponse(503))
    dispatcher = NotificationDispatcher(EMAIL_AND_WEBHOOK)

    result = dispatcher.send(RECIPIENT, MessageKind.FAMILY_CONCERN, {})

    assert result.status == DeliveryStatus.FAILED
    assert "SMTP" in result.error
    assert "Webhook" in result.error


def test_no_configured_provider_fails_cleanly() -> None:
    result = NotificationDispatcher({}).send(RECIPIENT, MessageKind.UPCOMING_REMINDER, {})

    assert result.status == DeliveryStatus.FAILED
    assert "No provider" in result.error


def test_sms_skipped_for_contact_without_phone(posted) -> None:
    config = {
        "twilio_sid": "sid",
        "twilio_token": "token",
        "twilio_phone": "+15550000000",
        "webhook_url": "https://push.example.com/notify",
    }
    dispatcher = NotificationDispatcher(config)

    result = dispatcher.send(RECIPIENT, MessageKind.FAMILY_CONCERN, {})

    assert result.provider == "webhook"
    assert len(posted) == 1
