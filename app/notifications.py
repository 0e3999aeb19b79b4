"""
Unread-message notification sweep.

Runs periodically (cron hits GET /run-notification-sweep) and, for every
user with at least one due notification:

1. loads ALL of that user's pending notifications, due or not, so a burst
   of messages collapses into a single email;
2. groups them by channel and asks the chat provider whether the user has
   read the channel since;
3. cancels the notifications of channels that were read and marks the rest
   sent;
4. sends one digest email listing every still-unread conversation.

Status transitions only ever touch rows that are still pending, so two
overlapping sweeps cannot both notify about the same message. A channel or
user that fails is logged and skipped; the sweep carries on.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from app.chat_provider import split_cid
from app.config import settings
from app.mailer import Mailer
from app.metrics import record_email_outcome, record_sweep_outcome, time_sweep
from app.storage import (
    cancel_pending_notifications,
    get_appointment,
    get_chat_log_by_message_id,
    get_dog_name,
    get_due_notifications,
    get_pending_notifications_for_user,
    get_user,
    transition_notifications,
)
from app.utils import format_email_datetime, utcnow

logger = logging.getLogger(__name__)

EMAIL_TEMPLATE = "unreadMessageNotification"


@dataclass
class SweepResult:
    emails_sent: int = 0
    notifications_canceled: int = 0
    notifications_sent: int = 0
    users_processed: int = 0
    errors: int = 0


def group_by_channel(notifications: list) -> dict[str, list]:
    groups: dict[str, list] = {}
    for notification in notifications:
        groups.setdefault(notification.channel_id, []).append(notification)
    return groups


def build_subject(conversations: list[dict]) -> str:
    if len(conversations) == 1:
        return f"You have unread messages from {conversations[0]['senderName']}"
    return f"You have unread messages in {len(conversations)} conversations"


def _cancel(db: Session, ids: list[int], result: SweepResult) -> None:
    canceled = transition_notifications(db, ids, "canceled")
    result.notifications_canceled += canceled
    record_sweep_outcome("canceled", canceled)


def _describe_conversation(db: Session, user_id: str, appointment, notifications: list) -> dict:
    latest = max(notifications, key=lambda n: (n.created_at, n.id))
    log = get_chat_log_by_message_id(db, latest.stream_message_id)

    sender_id = log.sender_id if log else appointment.other_participant(user_id)
    sender = get_user(db, sender_id)

    return {
        "senderName": sender.full_name if sender and sender.full_name else "Someone",
        "dogName": get_dog_name(db, appointment.volunteer_id) or "Unknown Dog",
        "appointmentTime": format_email_datetime(appointment.start_time),
        "messageCount": len(notifications),
        "latestMessage": (log.content if log and log.content else "New message"),
        "appointmentId": appointment.id,
    }


async def process_channel(
    db: Session,
    provider,
    user_id: str,
    channel_id: str,
    notifications: list,
    now: datetime,
    result: SweepResult,
) -> Optional[dict]:
    """
    Resolve one user's notifications for one channel.

    Returns the conversation entry for the digest email, or None when the
    channel needs no email.
    """
    ids = [n.id for n in notifications]
    channel_type, channel_key = split_cid(channel_id, settings.CHAT_CHANNEL_TYPE)

    state = await provider.get_channel_read_state(channel_type, channel_key, user_id)

    if not state.is_unread_for(user_id):
        _cancel(db, ids, result)
        logger.info(f"User {user_id} already read {channel_id}, canceled {len(ids)} notification(s)")
        return None

    appointment = get_appointment(db, notifications[0].appointment_id)
    if appointment is None:
        logger.warning(f"Appointment {notifications[0].appointment_id} for {channel_id} no longer exists")
        _cancel(db, ids, result)
        return None

    conversation = _describe_conversation(db, user_id, appointment, notifications)

    claimed = transition_notifications(db, ids, "sent", sent_at=now)
    result.notifications_sent += claimed
    record_sweep_outcome("sent", claimed)

    if claimed == 0:
        # Another sweep got here first
        logger.info(f"Notifications for {channel_id} / {user_id} were already resolved")
        return None

    conversation["messageCount"] = claimed
    return conversation


async def process_user(
    db: Session,
    provider,
    mailer: Mailer,
    user_id: str,
    now: datetime,
    result: SweepResult,
) -> None:
    user = get_user(db, user_id)
    if user is None or not user.email or user.status == "archived":
        canceled = cancel_pending_notifications(db, user_id=user_id)
        result.notifications_canceled += canceled
        record_sweep_outcome("canceled", canceled)
        logger.warning(f"User {user_id} cannot receive email, canceled {canceled} notification(s)")
        return

    notifications = get_pending_notifications_for_user(db, user_id)
    logger.info(f"User {user_id} has {len(notifications)} pending notification(s)")

    conversations = []
    for channel_id, channel_notifications in group_by_channel(notifications).items():
        try:
            conversation = await process_channel(
                db, provider, user_id, channel_id, channel_notifications, now, result
            )
        except Exception as e:
            result.errors += 1
            logger.error(f"Error processing channel {channel_id} for user {user_id}: {e}")
            continue
        if conversation:
            conversations.append(conversation)

    if not conversations:
        return

    data = {
        "recipientName": user.first_name or "there",
        "conversationCount": len(conversations),
        "conversations": conversations,
        "appUrl": settings.APP_URL,
        "year": now.year,
    }

    try:
        await asyncio.to_thread(
            mailer.send_transactional,
            user.email,
            build_subject(conversations),
            EMAIL_TEMPLATE,
            data,
        )
    except Exception as e:
        # The notifications stay `sent`: losing one email beats sending it twice
        result.errors += 1
        record_email_outcome("failed")
        logger.error(f"Error sending unread digest to user {user_id}: {e}")
        return

    result.emails_sent += 1
    record_email_outcome("sent")
    logger.info(f"Sent unread digest to user {user_id} for {len(conversations)} conversation(s)")


async def run_notification_sweep(
    db: Session,
    provider,
    mailer: Mailer,
    now: Optional[datetime] = None,
) -> SweepResult:
    with time_sweep():
        return await _sweep(db, provider, mailer, now or utcnow())


async def _sweep(db: Session, provider, mailer: Mailer, now: datetime) -> SweepResult:
    result = SweepResult()

    due = get_due_notifications(db, now)
    if not due:
        logger.info("No notifications ready to process")
        return result

    user_ids = list(dict.fromkeys(n.user_id for n in due))
    logger.info(f"Found {len(due)} due notification(s) across {len(user_ids)} user(s)")

    for user_id in user_ids:
        try:
            await process_user(db, provider, mailer, user_id, now, result)
        except Exception as e:
            result.errors += 1
            logger.error(f"Error processing notifications for user {user_id}: {e}")
            db.rollback()
            continue
        result.users_processed += 1

    logger.info(
        "Notification sweep complete",
        extra={
            "emails_sent": result.emails_sent,
            "notifications_sent": result.notifications_sent,
            "notifications_canceled": result.notifications_canceled,
            "errors": result.errors,
        },
    )
    return result
