"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic request/response schemas, see schemas.py.

All timestamps are ISO-8601 UTC strings (see app.utils.to_iso) so that
range filters compare correctly as plain strings.
"""

from sqlalchemy import Boolean, Column, ForeignKey, Integer, String, Text, UniqueConstraint

from app.storage import Base


class User(Base):
    """
    A person known to the auth provider.

    Table: users
    Primary Key: id (auth provider user id)
    """
    __tablename__ = "users"

    id = Column(String, primary_key=True)
    first_name = Column(String, nullable=False, default="")
    last_name = Column(String, nullable=False, default="")
    email = Column(String, nullable=True)
    role = Column(String, nullable=False, default="individual")  # individual | volunteer | admin
    status = Column(String, nullable=False, default="approved")  # pending | approved | denied | archived
    physical_address = Column(String, nullable=True)
    archived_at = Column(String, nullable=True)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class Dog(Base):
    __tablename__ = "dogs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    volunteer_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    dog_name = Column(String, nullable=False)
    status = Column(String, nullable=False, default="active")


class Appointment(Base):
    """
    A scheduled visit between an individual and a volunteer's dog.

    Table: appointments
    """
    __tablename__ = "appointments"

    id = Column(Integer, primary_key=True, autoincrement=True)
    individual_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    volunteer_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    start_time = Column(String, nullable=False)
    end_time = Column(String, nullable=False, index=True)
    status = Column(String, nullable=False, default="pending")  # pending | confirmed | canceled
    cancellation_reason = Column(Text, nullable=True)

    def other_participant(self, user_id: str) -> str:
        return self.volunteer_id if user_id == self.individual_id else self.individual_id


class AppointmentChat(Base):
    """
    Binding between one appointment and one provider channel.

    Table: appointment_chats
    Unique: appointment_id (at most one chat per appointment, ever)
    """
    __tablename__ = "appointment_chats"

    id = Column(Integer, primary_key=True, autoincrement=True)
    appointment_id = Column(Integer, ForeignKey("appointments.id"), nullable=False, unique=True)
    stream_channel_id = Column(String, nullable=False)
    status = Column(String, nullable=False, default="active")  # active | closed
    created_by = Column(String, nullable=False, default="system")
    created_at = Column(String, nullable=False)
    closed_at = Column(String, nullable=True)
    # Participant messages not yet seen by an admin; reset by the admin mark-read route
    unread_count = Column(Integer, nullable=False, default=0)
    last_read_at = Column(String, nullable=True)


class ChatLog(Base):
    """
    Audit record of one chat message observed through the webhook.

    Table: chat_logs
    Unique: stream_message_id (ensures idempotency on provider redelivery)
    """
    __tablename__ = "chat_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    appointment_id = Column(Integer, nullable=False, index=True)
    stream_message_id = Column(String, nullable=False, unique=True)
    sender_id = Column(String, nullable=False)
    content = Column(Text, nullable=False, default="")
    message_type = Column(String, nullable=False, default="text")  # text | system
    is_system_message = Column(Boolean, nullable=False, default=False)
    created_at = Column(String, nullable=False)


class PendingEmailNotification(Base):
    """
    Scheduled intent to email one user about one unread message.

    Table: pending_email_notifications
    Unique: (user_id, stream_message_id)
    Status only moves pending -> sent or pending -> canceled.
    """
    __tablename__ = "pending_email_notifications"
    __table_args__ = (
        UniqueConstraint("user_id", "stream_message_id", name="uq_notification_user_message"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, nullable=False, index=True)
    appointment_id = Column(Integer, nullable=False, index=True)
    stream_message_id = Column(String, nullable=False)
    channel_id = Column(String, nullable=False)
    scheduled_for = Column(String, nullable=False, index=True)
    status = Column(String, nullable=False, default="pending", index=True)
    created_at = Column(String, nullable=False)
    sent_at = Column(String, nullable=True)


class MessageReadStatus(Base):
    __tablename__ = "message_read_status"
    __table_args__ = (
        UniqueConstraint("user_id", "appointment_id", name="uq_read_status_user_appointment"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, nullable=False)
    appointment_id = Column(Integer, nullable=False)
    last_read_at = Column(String, nullable=False)
    updated_at = Column(String, nullable=False)
