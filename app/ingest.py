"""
Chat message ingest.

Turns a provider `message.new` event into a durable chat log entry and one
delayed email notification per recipient. Each step fails independently:
a notification that cannot be scheduled never undoes the log entry, and
nothing here raises for conditions the provider could fix by retrying.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from app.config import settings
from app.schemas import WebhookEvent
from app.storage import create_chat_log, get_appointment, increment_chat_unread, schedule_notification
from app.utils import utcnow

logger = logging.getLogger(__name__)

APPOINTMENT_CHAT_TYPE = "appointment_chat"


@dataclass
class IngestResult:
    result: str
    message_id: Optional[str] = None
    skipped: Optional[str] = None
    logged: bool = False
    duplicate: bool = False
    notifications_scheduled: int = 0


def resolve_recipients(db: Session, event: WebhookEvent, appointment_id: int, sender_id: str) -> list[str]:
    """
    Everyone in the channel except the sender and the system user.

    Falls back to the appointment's participants when the event carries no
    member list.
    """
    excluded = {sender_id, settings.CHAT_SYSTEM_USER_ID}
    members = event.channel.member_ids() if event.channel else []

    if not members:
        appointment = get_appointment(db, appointment_id)
        if appointment is not None:
            members = [appointment.individual_id, appointment.volunteer_id]

    return [m for m in members if m not in excluded]


def process_chat_event(db: Session, event: WebhookEvent, now: Optional[datetime] = None) -> IngestResult:
    now = now or utcnow()

    if event.type != "message.new":
        logger.info(f"Ignoring chat event of type {event.type}")
        return IngestResult(result="skipped", skipped="event_type")

    message = event.message
    channel = event.channel
    if message is None or channel is None:
        logger.warning("message.new event without message or channel, skipping")
        return IngestResult(result="skipped", skipped="incomplete_event")

    if channel.chat_type != APPOINTMENT_CHAT_TYPE:
        logger.info(f"Message {message.id} is not in an appointment chat, skipping")
        return IngestResult(result="skipped", skipped="channel_type", message_id=message.id)

    appointment_id = channel.appointment_id
    if appointment_id is None:
        logger.warning(f"Appointment chat message {message.id} has no appointment_id, skipping")
        return IngestResult(result="skipped", skipped="missing_appointment", message_id=message.id)

    sender_id = message.sender_id
    if not sender_id:
        logger.warning(f"Message {message.id} has no sender, skipping")
        return IngestResult(result="skipped", skipped="missing_sender", message_id=message.id)

    if sender_id == settings.CHAT_SYSTEM_USER_ID:
        logger.info(f"Message {message.id} was posted by the system user, not logged")
        return IngestResult(result="skipped", skipped="system_sender", message_id=message.id)

    success, is_duplicate = create_chat_log(
        db=db,
        appointment_id=appointment_id,
        stream_message_id=message.id,
        sender_id=sender_id,
        content=message.text or "",
        message_type=message.kind,
    )

    if not success:
        # Still a 200 for the provider: a retry storm would not fix our database
        return IngestResult(result="error", message_id=message.id)

    if is_duplicate:
        return IngestResult(result="duplicate", message_id=message.id, logged=True, duplicate=True)

    outcome = IngestResult(result="logged", message_id=message.id, logged=True)

    if message.kind == "system":
        return outcome

    increment_chat_unread(db, appointment_id)

    recipients = resolve_recipients(db, event, appointment_id, sender_id)
    if not recipients:
        logger.warning(f"No recipient found for message {message.id} in appointment {appointment_id}")
        return outcome
    if len(recipients) > 1:
        logger.warning(
            f"Appointment chat {appointment_id} has {len(recipients)} recipients for message {message.id}"
        )

    channel_cid = channel.channel_cid(settings.CHAT_CHANNEL_TYPE) or \
        f"{settings.CHAT_CHANNEL_TYPE}:appointment-{appointment_id}"
    scheduled_for = now + timedelta(minutes=settings.EMAIL_NOTIFICATION_DELAY_MINUTES)

    for recipient_id in recipients:
        if schedule_notification(
            db=db,
            user_id=recipient_id,
            appointment_id=appointment_id,
            stream_message_id=message.id,
            channel_id=channel_cid,
            scheduled_for=scheduled_for,
        ):
            outcome.notifications_scheduled += 1

    logger.info(
        f"Message {message.id} logged for appointment {appointment_id}, "
        f"{outcome.notifications_scheduled} notification(s) scheduled"
    )
    return outcome
