"""
Appointment chat lifecycle.

A confirmed appointment gets exactly one provider channel with its two
participants as members. The channel is closed (frozen, status=closed) when
the appointment is canceled, when one of its users is archived, or once the
appointment ended more than CHAT_EXPIRY_GRACE_HOURS ago.

The provider channel is always touched before the local row, so a local
record never points at a channel that was not created, and a failed close
leaves the row active for the expiry sweep to retry.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Iterable, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.chat_provider import split_cid
from app.config import settings
from app.metrics import record_chat_lifecycle
from app.storage import (
    cancel_pending_notifications,
    create_chat_record,
    get_active_appointments_for_user,
    get_appointment,
    get_chat_by_appointment,
    get_dog_name,
    get_expired_active_chats,
    get_user,
    mark_chat_closed,
    mark_user_archived,
    upsert_read_status,
)
from app.utils import format_email_datetime, utcnow

logger = logging.getLogger(__name__)

ADMIN_CANCELLATION_REASON = "Canceled by Sunshine Administrator"

CLOSING_MESSAGE = (
    "This chat has been closed as your appointment has concluded. "
    "Thank you for using Sunshine App!"
)


class ChatLifecycleError(Exception):
    """A lifecycle precondition failed; carries the HTTP status to surface."""

    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


@dataclass
class ChatOutcome:
    closed: bool
    channel_id: Optional[str] = None
    message: str = ""


@dataclass
class AppointmentOutcome:
    appointment_id: int
    status: str
    chat: Optional[ChatOutcome] = None
    notifications_canceled: int = 0


@dataclass
class ArchiveResult:
    success: bool
    requires_confirmation: bool = False
    active_appointments: list = field(default_factory=list)
    canceled_appointments_count: int = 0
    notifications_canceled: int = 0


def channel_key(appointment_id: int) -> str:
    return f"appointment-{appointment_id}"


def is_participant(appointment, user_id: str) -> bool:
    return user_id in (appointment.individual_id, appointment.volunteer_id)


def ensure_can_act(db: Session, appointment, user_id: str) -> None:
    """Participants and admins may act on an appointment."""
    if is_participant(appointment, user_id):
        return
    user = get_user(db, user_id)
    if user is None or user.role != "admin":
        raise ChatLifecycleError("Not allowed to act on this appointment", status_code=403)


def load_appointment(db: Session, appointment_id: int):
    appointment = get_appointment(db, appointment_id)
    if appointment is None:
        raise ChatLifecycleError("Appointment not found", status_code=404)
    return appointment


def welcome_message(appointment, dog_name: str, location: str) -> str:
    start = format_email_datetime(appointment.start_time)
    return (
        "Welcome to your appointment chat!\n\n"
        "Appointment Details:\n"
        f"- Date & Time: {start}\n"
        f"- Dog: {dog_name}\n"
        f"- Location: {location}\n\n"
        "Reminders:\n"
        "- Please arrive 5-10 minutes early\n"
        "- Contact each other here if you need to make changes\n"
        f"- This chat will close {settings.CHAT_EXPIRY_GRACE_HOURS} hours after your appointment ends\n\n"
        "Feel free to discuss any details about your upcoming visit!"
    )


# =============================================================================
# Chat create / close / expire
# =============================================================================

async def create_chat(db: Session, provider, appointment_id: int):
    appointment = load_appointment(db, appointment_id)

    if appointment.status != "confirmed":
        record_chat_lifecycle("create", "conflict")
        raise ChatLifecycleError("Appointment must be confirmed to create chat", status_code=400)

    if get_chat_by_appointment(db, appointment_id) is not None:
        record_chat_lifecycle("create", "conflict")
        raise ChatLifecycleError("Chat already exists for this appointment", status_code=409)

    individual = get_user(db, appointment.individual_id)
    volunteer = get_user(db, appointment.volunteer_id)
    dog_name = get_dog_name(db, appointment.volunteer_id) or "Unknown Dog"
    location = (individual.physical_address if individual else None) or "Location to be discussed"
    members = [appointment.individual_id, appointment.volunteer_id]

    channel_type = settings.CHAT_CHANNEL_TYPE
    key = channel_key(appointment_id)

    try:
        await provider.upsert_users([
            {"id": settings.CHAT_SYSTEM_USER_ID, "name": "Sunshine", "role": "admin"},
            *[
                {"id": user.id, "name": user.full_name or user.id}
                for user in (individual, volunteer) if user is not None
            ],
        ])
        cid = await provider.create_channel(
            channel_type,
            key,
            members=members,
            created_by_id=settings.CHAT_SYSTEM_USER_ID,
            data={
                "custom": {
                    "type": "appointment_chat",
                    "appointment_id": appointment_id,
                    "appointment_start_time": appointment.start_time,
                    "appointment_end_time": appointment.end_time,
                    "dog_name": dog_name,
                    "individual_name": individual.full_name if individual else "Individual",
                    "volunteer_name": volunteer.full_name if volunteer else "Volunteer",
                    "location": location,
                },
            },
        )
        await provider.send_message(
            channel_type, key, welcome_message(appointment, dog_name, location), settings.CHAT_SYSTEM_USER_ID
        )
    except Exception:
        record_chat_lifecycle("create", "error")
        logger.error(f"Failed to create provider channel for appointment {appointment_id}")
        raise

    try:
        chat = create_chat_record(db, appointment_id, cid)
    except IntegrityError:
        record_chat_lifecycle("create", "conflict")
        raise ChatLifecycleError("Chat already exists for this appointment", status_code=409)

    record_chat_lifecycle("create", "ok")
    logger.info(f"Created chat {cid} for appointment {appointment_id}")
    return chat


async def close_chat(db: Session, provider, appointment_id: int, now: Optional[datetime] = None) -> ChatOutcome:
    """Close the appointment's chat. Missing or already-closed chats are a no-op."""
    now = now or utcnow()
    chat = get_chat_by_appointment(db, appointment_id)

    if chat is None or chat.status != "active":
        record_chat_lifecycle("close", "noop")
        return ChatOutcome(
            closed=False,
            channel_id=chat.stream_channel_id if chat else None,
            message="No active chat found",
        )

    channel_type, key = split_cid(chat.stream_channel_id, settings.CHAT_CHANNEL_TYPE)
    try:
        await provider.send_message(channel_type, key, CLOSING_MESSAGE, settings.CHAT_SYSTEM_USER_ID)
        await provider.update_channel_partial(channel_type, key, {"status": "closed", "frozen": True})
    except Exception:
        record_chat_lifecycle("close", "error")
        logger.error(f"Failed to close provider channel {chat.stream_channel_id}")
        raise

    if not mark_chat_closed(db, chat.id, now):
        # Closed concurrently; the first closed_at stands
        record_chat_lifecycle("close", "noop")
        return ChatOutcome(closed=False, channel_id=chat.stream_channel_id, message="Chat already closed")

    record_chat_lifecycle("close", "ok")
    logger.info(f"Closed chat {chat.stream_channel_id} for appointment {appointment_id}")
    return ChatOutcome(closed=True, channel_id=chat.stream_channel_id, message="Chat closed successfully")


async def expire_chats(db: Session, provider, now: Optional[datetime] = None) -> dict:
    """Close every active chat whose appointment ended more than the grace window ago."""
    now = now or utcnow()
    cutoff = now - timedelta(hours=settings.CHAT_EXPIRY_GRACE_HOURS)
    expired = get_expired_active_chats(db, cutoff)

    results = []
    for chat in expired:
        chat_id, appointment_id = chat.id, chat.appointment_id
        try:
            await close_chat(db, provider, appointment_id, now=now)
        except Exception as e:
            db.rollback()
            record_chat_lifecycle("expire", "error")
            logger.error(f"Error closing expired chat {chat_id}: {e}")
            results.append({"chatId": chat_id, "appointmentId": appointment_id, "success": False, "error": str(e)})
            continue
        record_chat_lifecycle("expire", "ok")
        results.append({"chatId": chat_id, "appointmentId": appointment_id, "success": True})

    summary = {
        "totalProcessed": len(expired),
        "successful": sum(1 for r in results if r["success"]),
        "failed": sum(1 for r in results if not r["success"]),
        "results": results,
    }
    logger.info(
        f"Expired chat cleanup: {summary['successful']} closed, {summary['failed']} failed "
        f"of {summary['totalProcessed']}"
    )
    return summary


# =============================================================================
# Appointment flows that drive the lifecycle
# =============================================================================

async def confirm_appointment(db: Session, provider, appointment_id: int) -> AppointmentOutcome:
    appointment = load_appointment(db, appointment_id)

    if appointment.status == "canceled":
        raise ChatLifecycleError("Canceled appointments cannot be confirmed", status_code=400)

    if appointment.status != "confirmed":
        appointment.status = "confirmed"
        db.commit()
        logger.info(f"Appointment {appointment_id} confirmed")

    if get_chat_by_appointment(db, appointment_id) is not None:
        return AppointmentOutcome(appointment_id=appointment_id, status="confirmed")

    chat = await create_chat(db, provider, appointment_id)
    return AppointmentOutcome(
        appointment_id=appointment_id,
        status="confirmed",
        chat=ChatOutcome(closed=False, channel_id=chat.stream_channel_id, message="Chat channel created successfully"),
    )


async def send_cancellation_emails(
    db: Session,
    mailer,
    appointment,
    reason: str,
    recipient_ids: Iterable[str],
) -> int:
    dog_name = get_dog_name(db, appointment.volunteer_id) or "N/A"
    sent = 0
    for user_id in recipient_ids:
        user = get_user(db, user_id)
        if user is None or not user.email:
            continue
        template = (
            "appointmentCanceledIndividual" if user_id == appointment.individual_id
            else "appointmentCanceledVolunteer"
        )
        data = {
            "firstName": user.first_name or "there",
            "appointmentTime": format_email_datetime(appointment.start_time),
            "dogName": dog_name,
            "cancellationReason": reason,
            "year": utcnow().year,
        }
        try:
            await asyncio.to_thread(mailer.send_transactional, user.email, "Appointment Canceled", template, data)
            sent += 1
        except Exception as e:
            logger.error(f"Failed to send cancellation email to {user_id}: {e}")
    return sent


async def cancel_appointment(
    db: Session,
    provider,
    mailer,
    appointment_id: int,
    reason: str,
    notify: Optional[Iterable[str]] = None,
) -> AppointmentOutcome:
    """
    Cancel an appointment: close its chat, mark it canceled, drop its
    pending notifications and email the participants in `notify`
    (both by default).
    """
    appointment = load_appointment(db, appointment_id)

    if appointment.status == "canceled":
        return AppointmentOutcome(appointment_id=appointment_id, status="canceled")

    chat_result = None
    try:
        chat_result = await close_chat(db, provider, appointment_id)
    except Exception as e:
        # The row stays active and the expiry sweep will close it later
        db.rollback()
        logger.error(f"Failed to close chat for appointment {appointment_id}: {e}")

    appointment.status = "canceled"
    appointment.cancellation_reason = reason
    db.commit()

    canceled = cancel_pending_notifications(db, appointment_id=appointment_id)

    recipients = list(notify) if notify is not None else [appointment.individual_id, appointment.volunteer_id]
    await send_cancellation_emails(db, mailer, appointment, reason, recipients)

    logger.info(f"Appointment {appointment_id} canceled, {canceled} notification(s) dropped")
    return AppointmentOutcome(
        appointment_id=appointment_id,
        status="canceled",
        chat=chat_result,
        notifications_canceled=canceled,
    )


async def archive_user(
    db: Session,
    provider,
    mailer,
    user_id: str,
    confirmed: bool = False,
    now: Optional[datetime] = None,
) -> ArchiveResult:
    now = now or utcnow()
    user = get_user(db, user_id)
    if user is None:
        raise ChatLifecycleError("User not found", status_code=404)
    if user.status == "archived":
        raise ChatLifecycleError("User is already archived", status_code=400)

    appointments = get_active_appointments_for_user(db, user_id)

    if appointments and not confirmed:
        active = []
        for appt in appointments:
            other_id = appt.other_participant(user_id)
            other = get_user(db, other_id)
            active.append({
                "id": appt.id,
                "start_time": appt.start_time,
                "end_time": appt.end_time,
                "status": appt.status,
                "other_user_id": other_id,
                "other_user_name": other.full_name if other else "Unknown User",
                "other_user_email": (other.email or "") if other else "",
                "dog_name": get_dog_name(db, appt.volunteer_id),
            })
        return ArchiveResult(success=False, requires_confirmation=True, active_appointments=active)

    canceled_count = 0
    for appt in appointments:
        try:
            await cancel_appointment(
                db,
                provider,
                mailer,
                appt.id,
                ADMIN_CANCELLATION_REASON,
                notify=[appt.other_participant(user_id)],
            )
            canceled_count += 1
        except Exception as e:
            db.rollback()
            logger.error(f"Failed to cancel appointment {appt.id} while archiving {user_id}: {e}")

    notifications_canceled = cancel_pending_notifications(db, user_id=user_id)

    mark_user_archived(db, user_id, now)

    logger.info(f"Archived user {user_id}, canceled {canceled_count} appointment(s)")
    return ArchiveResult(
        success=True,
        canceled_appointments_count=canceled_count,
        notifications_canceled=notifications_canceled,
    )


async def mark_read(db: Session, provider, user_id: str, appointment_id: int, now: Optional[datetime] = None):
    now = now or utcnow()
    appointment = load_appointment(db, appointment_id)
    ensure_can_act(db, appointment, user_id)

    row = upsert_read_status(db, user_id, appointment_id, now)

    chat = get_chat_by_appointment(db, appointment_id)
    if chat is not None and chat.status == "active":
        channel_type, key = split_cid(chat.stream_channel_id, settings.CHAT_CHANNEL_TYPE)
        try:
            await provider.mark_read(channel_type, key, user_id)
        except Exception as e:
            logger.warning(f"Provider mark-read failed for {chat.stream_channel_id} / {user_id}: {e}")

    return row
