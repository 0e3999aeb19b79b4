"""
Tests for the POST /chat-events endpoint.

Tests cover:
- Valid signature with chat log + notification scheduling
- Duplicate message handling (idempotency)
- Skipped events (other event types, other channel types, system sender)
- Invalid/missing signature (401)
- Unparsable payloads (500)
"""

import json
import os

from app.config import settings
from app.models import AppointmentChat, ChatLog, PendingEmailNotification
from app.storage import create_chat_record
from app.utils import parse_iso, utcnow
from tests.conftest import chat_event, compute_signature


TEST_WEBHOOK_SECRET = os.environ["WEBHOOK_SECRET"]


def post_event(client, payload, signature=None):
    body = payload if isinstance(payload, str) else json.dumps(payload)
    headers = {"Content-Type": "application/json"}
    headers["X-Signature"] = signature if signature is not None else compute_signature(body, TEST_WEBHOOK_SECRET)
    return client.post("/chat-events", content=body, headers=headers)


class TestChatEventIngest:
    """Test message.new events from appointment chats."""

    def test_message_logged_and_notification_scheduled(self, client, db, seed):
        before = utcnow()
        response = post_event(client, chat_event(seed.id, message_id="m1", sender_id="vol-1"))

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["logged"] is True
        assert data["duplicate"] is False
        assert data["notificationsScheduled"] == 1

        log = db.query(ChatLog).filter(ChatLog.stream_message_id == "m1").one()
        assert log.appointment_id == seed.id
        assert log.sender_id == "vol-1"
        assert log.content == "Hello!"
        assert log.message_type == "text"

        notification = db.query(PendingEmailNotification).one()
        assert notification.user_id == "ind-1"
        assert notification.status == "pending"
        assert notification.channel_id == f"messaging:appointment-{seed.id}"
        scheduled_for = parse_iso(notification.scheduled_for)
        delay = (scheduled_for - before).total_seconds()
        expected = settings.EMAIL_NOTIFICATION_DELAY_MINUTES * 60
        assert expected - 5 <= delay <= expected + 5

    def test_duplicate_message_idempotent(self, client, db, seed):
        """Test that redelivered messages produce one log row and one notification."""
        payload = chat_event(seed.id, message_id="dup-1")

        first = post_event(client, payload)
        second = post_event(client, payload)

        assert first.status_code == 200
        assert second.status_code == 200
        assert second.json()["duplicate"] is True
        assert second.json()["notificationsScheduled"] == 0
        assert db.query(ChatLog).count() == 1
        assert db.query(PendingEmailNotification).count() == 1

    def test_recipients_fall_back_to_appointment_participants(self, client, db, seed):
        response = post_event(client, chat_event(seed.id, sender_id="ind-1", members=()))

        assert response.status_code == 200
        notification = db.query(PendingEmailNotification).one()
        assert notification.user_id == "vol-1"

    def test_no_recipient_still_logs(self, client, db, seed):
        response = post_event(client, chat_event(seed.id, sender_id="vol-1", members=("vol-1",)))

        assert response.status_code == 200
        assert response.json()["logged"] is True
        assert response.json()["notificationsScheduled"] == 0
        assert db.query(ChatLog).count() == 1
        assert db.query(PendingEmailNotification).count() == 0

    def test_system_message_logged_without_notification(self, client, db, seed):
        payload = chat_event(seed.id, message_id="sys-1", sender_id="vol-1")
        payload["message"]["type"] = "system"

        response = post_event(client, payload)

        assert response.status_code == 200
        log = db.query(ChatLog).one()
        assert log.message_type == "system"
        assert log.is_system_message is True
        assert db.query(PendingEmailNotification).count() == 0


class TestAdminUnreadCount:
    """Logged participant messages raise the admin unread counter."""

    def unread_count(self, db, appointment_id):
        db.expire_all()
        return db.query(AppointmentChat).filter(AppointmentChat.appointment_id == appointment_id).one().unread_count

    def test_new_messages_increment_and_duplicates_do_not(self, client, db, seed):
        create_chat_record(db, seed.id, f"messaging:appointment-{seed.id}")

        post_event(client, chat_event(seed.id, message_id="m1", sender_id="vol-1"))
        post_event(client, chat_event(seed.id, message_id="m2", sender_id="ind-1"))
        post_event(client, chat_event(seed.id, message_id="m1", sender_id="vol-1"))

        assert self.unread_count(db, seed.id) == 2

    def test_message_without_chat_row_still_logged(self, client, db, seed):
        response = post_event(client, chat_event(seed.id, message_id="m1"))

        assert response.json()["logged"] is True
        assert db.query(AppointmentChat).count() == 0


class TestChatEventSkipped:
    """Events that are acknowledged without being processed."""

    def test_other_event_type_skipped(self, client, db, seed):
        response = post_event(client, chat_event(seed.id, event_type="message.updated"))

        assert response.status_code == 200
        assert response.json()["skipped"] == "event_type"
        assert db.query(ChatLog).count() == 0

    def test_non_appointment_channel_skipped(self, client, db, seed):
        response = post_event(client, chat_event(seed.id, chat_type="team"))

        assert response.status_code == 200
        assert response.json()["skipped"] == "channel_type"
        assert db.query(ChatLog).count() == 0

    def test_system_sender_skipped(self, client, db, seed):
        response = post_event(client, chat_event(seed.id, sender_id=settings.CHAT_SYSTEM_USER_ID))

        assert response.status_code == 200
        assert response.json()["skipped"] == "system_sender"
        assert db.query(ChatLog).count() == 0

    def test_missing_message_skipped(self, client, seed):
        response = post_event(client, {"type": "message.new"})

        assert response.status_code == 200
        assert response.json()["skipped"] == "incomplete_event"


class TestChatEventSignature:
    """Test chat events with invalid or missing signatures."""

    def test_invalid_signature_returns_401(self, client, db, seed):
        response = post_event(client, chat_event(seed.id), signature="deadbeef")

        assert response.status_code == 401
        assert response.json() == {"detail": "invalid signature"}
        assert db.query(ChatLog).count() == 0

    def test_missing_signature_returns_401(self, client, seed):
        response = client.post(
            "/chat-events",
            content=json.dumps(chat_event(seed.id)),
            headers={"Content-Type": "application/json"},
        )

        assert response.status_code == 401

    def test_signature_is_case_insensitive(self, client, seed):
        body = json.dumps(chat_event(seed.id))
        response = post_event(client, body, signature=compute_signature(body, TEST_WEBHOOK_SECRET).upper())

        assert response.status_code == 200

    def test_verification_can_be_disabled(self, client, db, seed, monkeypatch):
        monkeypatch.setattr(settings, "WEBHOOK_VERIFY_SIGNATURE", False)

        response = client.post(
            "/chat-events",
            content=json.dumps(chat_event(seed.id)),
            headers={"Content-Type": "application/json"},
        )

        assert response.status_code == 200
        assert db.query(ChatLog).count() == 1


class TestChatEventMalformed:
    """Payloads that cannot be understood at all."""

    def test_invalid_json_returns_500(self, client):
        response = post_event(client, "{not json")

        assert response.status_code == 500
        data = response.json()
        assert data["success"] is False
        assert data["error"] == "Failed to process webhook"

    def test_missing_type_returns_500(self, client):
        response = post_event(client, {"message": {"id": "x"}})

        assert response.status_code == 500

    def test_non_object_payload_returns_500(self, client):
        response = post_event(client, "[1, 2, 3]")

        assert response.status_code == 500
