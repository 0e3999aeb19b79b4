"""
Pydantic schemas for request/response validation.

This module contains:
- The chat provider webhook envelope
- Request models for the authenticated chat/appointment endpoints
- Response models for API responses
"""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


# =============================================================================
# Webhook Envelope
# =============================================================================

class WebhookUser(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: Optional[str] = None


class WebhookMessage(BaseModel):
    """A chat message as embedded in a provider event."""
    model_config = ConfigDict(extra="allow")

    id: str = Field(..., min_length=1, description="Provider message identifier")
    text: Optional[str] = Field(default="", description="Message text content")
    type: Optional[str] = Field(default=None, description="Provider message type (regular, system, ...)")
    user: Optional[WebhookUser] = None
    created_at: Optional[str] = None

    @property
    def sender_id(self) -> Optional[str]:
        return self.user.id if self.user else None

    @property
    def kind(self) -> str:
        return "system" if self.type == "system" else "text"


class WebhookChannel(BaseModel):
    """
    Channel data attached to a provider event.

    Custom channel data may arrive under `custom` or flattened onto the
    channel object itself; both shapes are accepted.
    """
    model_config = ConfigDict(extra="allow")

    id: Optional[str] = None
    cid: Optional[str] = None
    type: Optional[str] = None
    members: list[Any] = Field(default_factory=list)
    custom: Optional[dict[str, Any]] = None

    def custom_field(self, name: str) -> Any:
        if self.custom and name in self.custom:
            return self.custom[name]
        return (self.model_extra or {}).get(name)

    @property
    def chat_type(self) -> Optional[str]:
        # `type` on the channel itself is the provider channel type (messaging),
        # so the discriminator is only read from custom data
        if self.custom and "type" in self.custom:
            return self.custom["type"]
        return None

    @property
    def appointment_id(self) -> Optional[int]:
        value = self.custom_field("appointment_id")
        if value is None or value == "":
            return None
        try:
            return int(value)
        except (TypeError, ValueError):
            return None

    def channel_cid(self, default_type: str = "messaging") -> Optional[str]:
        if self.cid:
            return self.cid
        if self.id:
            return f"{self.type or default_type}:{self.id}"
        return None

    def member_ids(self) -> list[str]:
        """Member ids from plain strings, {"user_id": ...} or {"user": {"id": ...}} entries."""
        ids = []
        for member in self.members:
            member_id = None
            if isinstance(member, str):
                member_id = member
            elif isinstance(member, dict):
                member_id = member.get("user_id") or (member.get("user") or {}).get("id")
            if member_id and member_id not in ids:
                ids.append(member_id)
        return ids


class WebhookEvent(BaseModel):
    """
    Envelope of an event delivered by the chat provider.

    Example:
        {"type": "message.new",
         "message": {"id": "m1", "text": "hi", "user": {"id": "u1"}},
         "channel": {"id": "appointment-7", "members": ["u1", "u2"],
                     "custom": {"type": "appointment_chat", "appointment_id": 7}}}
    """
    model_config = ConfigDict(extra="allow")

    type: str = Field(..., min_length=1)
    message: Optional[WebhookMessage] = None
    channel: Optional[WebhookChannel] = None


class WebhookResponse(BaseModel):
    success: bool = True
    skipped: Optional[str] = None
    logged: bool = False
    duplicate: bool = False
    notificationsScheduled: int = 0


class ErrorResponse(BaseModel):
    """Response model for error responses."""
    detail: str = Field(..., description="Error description")


# =============================================================================
# Authenticated Request Models
# =============================================================================

class AppointmentRequest(BaseModel):
    appointmentId: int = Field(..., ge=1, description="Appointment identifier")


class CancelAppointmentRequest(AppointmentRequest):
    cancellationReason: str = Field(default="", max_length=2000)


class ArchiveUserRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    confirmed: bool = False


# =============================================================================
# Response Models
# =============================================================================

class SweepResponse(BaseModel):
    success: bool = True
    emailsSent: int = 0
    notificationsCanceled: int = 0
    notificationsSent: int = 0
    usersProcessed: int = 0
    errors: int = 0


class ChatResult(BaseModel):
    success: bool = True
    channelId: Optional[str] = None
    message: str


class ExpireResultItem(BaseModel):
    chatId: int
    appointmentId: int
    success: bool
    error: Optional[str] = None


class ExpireChatsResponse(BaseModel):
    success: bool = True
    totalProcessed: int
    successful: int
    failed: int
    results: list[ExpireResultItem] = Field(default_factory=list)


class ChatTokenResponse(BaseModel):
    token: str
    userId: str
    apiKey: str


class ChannelSummary(BaseModel):
    appointmentId: int
    channelId: str
    startTime: str
    endTime: str
    otherUserId: str
    otherUserName: str


class ChannelsResponse(BaseModel):
    channels: list[ChannelSummary] = Field(default_factory=list)


class ChatLogResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    appointment_id: int
    stream_message_id: str
    sender_id: str
    content: str
    message_type: str
    is_system_message: bool
    created_at: str


class ChatLogsResponse(BaseModel):
    logs: list[ChatLogResponse] = Field(default_factory=list)
    total: int = 0


class AdminChatSummary(BaseModel):
    id: int
    appointment_id: int
    stream_channel_id: str
    status: str
    created_at: str
    closed_at: Optional[str] = None
    start_time: str
    end_time: str
    individual_id: str
    individual_name: Optional[str] = None
    volunteer_id: str
    volunteer_name: Optional[str] = None
    dog_name: str
    message_count: int = 0
    last_message_at: str
    unread_count: int = 0
    last_read_at: Optional[str] = None


class AdminChatsResponse(BaseModel):
    chats: list[AdminChatSummary] = Field(default_factory=list)
    total: int = 0


class AdminMarkReadResponse(BaseModel):
    success: bool = True
    message: str


class AppointmentActionResponse(BaseModel):
    success: bool = True
    appointmentId: int
    status: str
    chat: Optional[ChatResult] = None
    notificationsCanceled: int = 0


class ActiveAppointment(BaseModel):
    id: int
    start_time: str
    end_time: str
    status: str
    other_user_id: str
    other_user_name: str
    other_user_email: str = ""
    dog_name: Optional[str] = None


class ArchiveUserResponse(BaseModel):
    success: bool
    requires_confirmation: bool = False
    active_appointments: list[ActiveAppointment] = Field(default_factory=list)
    canceled_appointments_count: int = 0
    notifications_canceled: int = 0


class MarkReadResponse(BaseModel):
    success: bool = True
    lastReadAt: str


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")
