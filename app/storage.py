import logging
from datetime import datetime
from typing import Generator, Iterable, Optional, Tuple

from sqlalchemy import create_engine, func, inspect, text, or_
from sqlalchemy.orm import aliased, sessionmaker, Session, declarative_base
from sqlalchemy.exc import IntegrityError

from app.config import settings
from app.utils import to_iso, utcnow

logger = logging.getLogger(__name__)

# check_same_thread=False is required for SQLite to work with FastAPI's threadpool
connect_args = {"check_same_thread": False} if settings.DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(
    settings.DATABASE_URL,
    connect_args=connect_args,
    echo=False,
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()

REQUIRED_TABLES = (
    "appointment_chats",
    "chat_logs",
    "pending_email_notifications",
)


def init_db() -> None:
    """
    Initialize the database by creating all tables.
    Called during application startup.
    """
    try:
        # Import models to register them with Base.metadata
        from app import models  # noqa: F401

        Base.metadata.create_all(bind=engine)
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise


def get_db() -> Generator[Session, None, None]:
    """
    Dependency to get database session.
    Yields a session and ensures it's closed after use.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def check_db_health() -> bool:
    """
    Check if the database is reachable and schema is applied.

    Returns:
        True if DB is healthy and schema exists, False otherwise.
    """
    try:
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))
        inspector = inspect(engine)
        missing = [name for name in REQUIRED_TABLES if not inspector.has_table(name)]
        if missing:
            logger.error(f"Database schema not applied, missing tables: {missing}")
            return False
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False


# =============================================================================
# Chat Log Repository Functions
# =============================================================================

def create_chat_log(
    db: Session,
    appointment_id: int,
    stream_message_id: str,
    sender_id: str,
    content: str,
    message_type: str = "text",
) -> Tuple[bool, bool]:
    """
    Record a chat message in the audit log (idempotent).

    Returns:
        Tuple of (success: bool, is_duplicate: bool)
        - (True, False): Entry created
        - (True, True): Entry already exists (provider redelivery)
        - (False, False): Error occurred
    """
    from app.models import ChatLog

    try:
        entry = ChatLog(
            appointment_id=appointment_id,
            stream_message_id=stream_message_id,
            sender_id=sender_id,
            content=content,
            message_type=message_type,
            is_system_message=message_type == "system",
            created_at=to_iso(utcnow()),
        )
        db.add(entry)
        db.commit()
        logger.info(f"Chat log created: message={stream_message_id}, appointment={appointment_id}")
        return (True, False)

    except IntegrityError:
        # stream_message_id already exists - this is expected for idempotency
        db.rollback()
        logger.info(f"Duplicate chat message detected: {stream_message_id}")
        return (True, True)

    except Exception as e:
        db.rollback()
        logger.error(f"Failed to log chat message {stream_message_id}: {e}")
        return (False, False)


def get_chat_log_by_message_id(db: Session, stream_message_id: str):
    from app.models import ChatLog

    return db.query(ChatLog).filter(ChatLog.stream_message_id == stream_message_id).first()


def get_chat_logs(db: Session, appointment_id: int) -> list:
    from app.models import ChatLog

    return (
        db.query(ChatLog)
        .filter(ChatLog.appointment_id == appointment_id)
        .order_by(ChatLog.created_at.asc(), ChatLog.id.asc())
        .all()
    )


# =============================================================================
# Pending Notification Repository Functions
# =============================================================================

def schedule_notification(
    db: Session,
    user_id: str,
    appointment_id: int,
    stream_message_id: str,
    channel_id: str,
    scheduled_for: datetime,
) -> bool:
    """
    Insert a pending email notification.

    Returns False when the row could not be written (including a duplicate
    for the same user and message); callers treat that as non-fatal.
    """
    from app.models import PendingEmailNotification

    try:
        db.add(PendingEmailNotification(
            user_id=user_id,
            appointment_id=appointment_id,
            stream_message_id=stream_message_id,
            channel_id=channel_id,
            scheduled_for=to_iso(scheduled_for),
            status="pending",
            created_at=to_iso(utcnow()),
        ))
        db.commit()
        return True
    except IntegrityError:
        db.rollback()
        logger.info(f"Notification already scheduled: user={user_id}, message={stream_message_id}")
        return False
    except Exception as e:
        db.rollback()
        logger.error(f"Failed to schedule notification for user {user_id}: {e}")
        return False


def get_due_notifications(db: Session, now: datetime) -> list:
    from app.models import PendingEmailNotification

    return (
        db.query(PendingEmailNotification)
        .filter(
            PendingEmailNotification.status == "pending",
            PendingEmailNotification.scheduled_for <= to_iso(now),
        )
        .order_by(PendingEmailNotification.scheduled_for.asc(), PendingEmailNotification.id.asc())
        .all()
    )


def get_pending_notifications_for_user(db: Session, user_id: str) -> list:
    from app.models import PendingEmailNotification

    return (
        db.query(PendingEmailNotification)
        .filter(
            PendingEmailNotification.user_id == user_id,
            PendingEmailNotification.status == "pending",
        )
        .order_by(PendingEmailNotification.created_at.asc(), PendingEmailNotification.id.asc())
        .all()
    )


def transition_notifications(
    db: Session,
    notification_ids: Iterable[int],
    status: str,
    sent_at: Optional[datetime] = None,
) -> int:
    """
    Move notifications out of `pending`.

    Only rows still pending are touched, so two overlapping sweeps can never
    both claim the same notification. Returns the number of rows claimed.
    """
    from app.models import PendingEmailNotification

    ids = list(notification_ids)
    if not ids:
        return 0

    values = {"status": status}
    if sent_at is not None:
        values["sent_at"] = to_iso(sent_at)

    try:
        claimed = (
            db.query(PendingEmailNotification)
            .filter(
                PendingEmailNotification.id.in_(ids),
                PendingEmailNotification.status == "pending",
            )
            .update(values, synchronize_session=False)
        )
        db.commit()
        return claimed
    except Exception:
        db.rollback()
        raise


def cancel_pending_notifications(
    db: Session,
    user_id: Optional[str] = None,
    appointment_id: Optional[int] = None,
) -> int:
    """Bulk-cancel pending notifications for a user and/or an appointment."""
    from app.models import PendingEmailNotification

    if user_id is None and appointment_id is None:
        raise ValueError("user_id or appointment_id is required")

    query = db.query(PendingEmailNotification).filter(PendingEmailNotification.status == "pending")
    if user_id is not None:
        query = query.filter(PendingEmailNotification.user_id == user_id)
    if appointment_id is not None:
        query = query.filter(PendingEmailNotification.appointment_id == appointment_id)

    try:
        canceled = query.update({"status": "canceled"}, synchronize_session=False)
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info(f"Canceled {canceled} pending notifications (user={user_id}, appointment={appointment_id})")
    return canceled


# =============================================================================
# Appointment Chat Repository Functions
# =============================================================================

def get_chat_by_appointment(db: Session, appointment_id: int):
    from app.models import AppointmentChat

    return db.query(AppointmentChat).filter(AppointmentChat.appointment_id == appointment_id).first()


def create_chat_record(db: Session, appointment_id: int, stream_channel_id: str):
    """
    Persist the appointment/channel binding.

    Raises IntegrityError when a chat already exists for the appointment.
    """
    from app.models import AppointmentChat

    chat = AppointmentChat(
        appointment_id=appointment_id,
        stream_channel_id=stream_channel_id,
        status="active",
        created_by="system",
        created_at=to_iso(utcnow()),
    )
    try:
        db.add(chat)
        db.commit()
    except IntegrityError:
        db.rollback()
        raise
    db.refresh(chat)
    return chat


def mark_chat_closed(db: Session, chat_id: int, closed_at: datetime) -> bool:
    """Close an active chat row. Returns False if it was no longer active."""
    from app.models import AppointmentChat

    try:
        updated = (
            db.query(AppointmentChat)
            .filter(AppointmentChat.id == chat_id, AppointmentChat.status == "active")
            .update({"status": "closed", "closed_at": to_iso(closed_at)}, synchronize_session=False)
        )
        db.commit()
        return updated > 0
    except Exception:
        db.rollback()
        raise


def get_expired_active_chats(db: Session, ended_before: datetime) -> list:
    from app.models import Appointment, AppointmentChat

    return (
        db.query(AppointmentChat)
        .join(Appointment, Appointment.id == AppointmentChat.appointment_id)
        .filter(
            AppointmentChat.status == "active",
            Appointment.end_time < to_iso(ended_before),
        )
        .order_by(AppointmentChat.id.asc())
        .all()
    )


def get_admin_chat_overview(db: Session) -> list[dict]:
    """
    Every chat, newest first, with participant names, dog name and message stats.

    `message_count` and `last_message_at` come from chat_logs; a chat with no
    logged message reports its own creation time as `last_message_at`.
    """
    from app.models import Appointment, AppointmentChat, ChatLog, User

    individual = aliased(User)
    volunteer = aliased(User)
    log_stats = (
        db.query(
            ChatLog.appointment_id.label("appointment_id"),
            func.count(ChatLog.id).label("message_count"),
            func.max(ChatLog.created_at).label("last_message_at"),
        )
        .group_by(ChatLog.appointment_id)
        .subquery()
    )

    rows = (
        db.query(
            AppointmentChat,
            Appointment,
            individual,
            volunteer,
            log_stats.c.message_count,
            log_stats.c.last_message_at,
        )
        .join(Appointment, Appointment.id == AppointmentChat.appointment_id)
        .outerjoin(individual, individual.id == Appointment.individual_id)
        .outerjoin(volunteer, volunteer.id == Appointment.volunteer_id)
        .outerjoin(log_stats, log_stats.c.appointment_id == AppointmentChat.appointment_id)
        .order_by(AppointmentChat.created_at.desc(), AppointmentChat.id.desc())
        .all()
    )

    overview = []
    for chat, appointment, ind, vol, message_count, last_message_at in rows:
        overview.append({
            "id": chat.id,
            "appointment_id": chat.appointment_id,
            "stream_channel_id": chat.stream_channel_id,
            "status": chat.status,
            "created_at": chat.created_at,
            "closed_at": chat.closed_at,
            "start_time": appointment.start_time,
            "end_time": appointment.end_time,
            "individual_id": appointment.individual_id,
            "individual_name": _full_name(ind),
            "volunteer_id": appointment.volunteer_id,
            "volunteer_name": _full_name(vol),
            "dog_name": get_dog_name(db, appointment.volunteer_id) or "Unknown Dog",
            "message_count": message_count or 0,
            "last_message_at": last_message_at or chat.created_at,
            "unread_count": chat.unread_count or 0,
            "last_read_at": chat.last_read_at,
        })
    return overview


def _full_name(user) -> Optional[str]:
    if user is None:
        return None
    return f"{user.first_name} {user.last_name}".strip() or None


def increment_chat_unread(db: Session, appointment_id: int) -> bool:
    """Bump the admin unread counter for one appointment chat. False if there is no chat row."""
    from app.models import AppointmentChat

    try:
        updated = (
            db.query(AppointmentChat)
            .filter(AppointmentChat.appointment_id == appointment_id)
            .update({"unread_count": AppointmentChat.unread_count + 1}, synchronize_session=False)
        )
        db.commit()
        return updated > 0
    except Exception as e:
        db.rollback()
        logger.error(f"Failed to bump admin unread count for appointment {appointment_id}: {e}")
        return False


def mark_chat_read_by_admin(db: Session, appointment_id: int, read_at: datetime) -> bool:
    """Reset the admin unread counter. False if the appointment has no chat."""
    from app.models import AppointmentChat

    try:
        updated = (
            db.query(AppointmentChat)
            .filter(AppointmentChat.appointment_id == appointment_id)
            .update({"unread_count": 0, "last_read_at": to_iso(read_at)}, synchronize_session=False)
        )
        db.commit()
        return updated > 0
    except Exception:
        db.rollback()
        raise


def get_active_chats_for_user(db: Session, user_id: str) -> list:
    """Return (appointment, chat) pairs for the user's confirmed appointments with an active chat."""
    from app.models import Appointment, AppointmentChat

    return (
        db.query(Appointment, AppointmentChat)
        .join(AppointmentChat, AppointmentChat.appointment_id == Appointment.id)
        .filter(
            or_(Appointment.individual_id == user_id, Appointment.volunteer_id == user_id),
            Appointment.status == "confirmed",
            AppointmentChat.status == "active",
        )
        .order_by(Appointment.start_time.asc())
        .all()
    )


# =============================================================================
# Appointment / User Repository Functions
# =============================================================================

def get_user(db: Session, user_id: str):
    from app.models import User

    return db.query(User).filter(User.id == user_id).first()


def get_appointment(db: Session, appointment_id: int):
    from app.models import Appointment

    return db.query(Appointment).filter(Appointment.id == appointment_id).first()


def get_active_appointments_for_user(db: Session, user_id: str) -> list:
    from app.models import Appointment

    return (
        db.query(Appointment)
        .filter(
            or_(Appointment.individual_id == user_id, Appointment.volunteer_id == user_id),
            Appointment.status.in_(("pending", "confirmed")),
        )
        .order_by(Appointment.start_time.asc())
        .all()
    )


def get_dog_name(db: Session, volunteer_id: str) -> Optional[str]:
    from app.models import Dog

    dog = db.query(Dog).filter(Dog.volunteer_id == volunteer_id).order_by(Dog.id.asc()).first()
    return dog.dog_name if dog else None


def mark_user_archived(db: Session, user_id: str, archived_at: datetime) -> None:
    """Archive a user and, for volunteers, their dogs."""
    from app.models import Dog, User

    try:
        user = db.query(User).filter(User.id == user_id).one()
        user.status = "archived"
        user.archived_at = to_iso(archived_at)
        if user.role == "volunteer":
            db.query(Dog).filter(Dog.volunteer_id == user_id).update(
                {"status": "archived"}, synchronize_session=False
            )
        db.commit()
    except Exception:
        db.rollback()
        raise


def upsert_read_status(db: Session, user_id: str, appointment_id: int, read_at: datetime):
    from app.models import MessageReadStatus

    stamp = to_iso(read_at)
    try:
        row = (
            db.query(MessageReadStatus)
            .filter(
                MessageReadStatus.user_id == user_id,
                MessageReadStatus.appointment_id == appointment_id,
            )
            .first()
        )
        if row is None:
            row = MessageReadStatus(
                user_id=user_id,
                appointment_id=appointment_id,
                last_read_at=stamp,
                updated_at=stamp,
            )
            db.add(row)
        else:
            row.last_read_at = stamp
            row.updated_at = stamp
        db.commit()
        return row
    except Exception:
        db.rollback()
        raise
