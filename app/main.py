import json
import logging
from contextlib import asynccontextmanager
from functools import lru_cache
from typing import Annotated

from fastapi import FastAPI, Response, Request, Depends, Header, HTTPException, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.auth import get_current_user_id, require_admin
from app.chat_lifecycle import (
    ChatLifecycleError,
    archive_user,
    cancel_appointment,
    close_chat,
    confirm_appointment,
    create_chat,
    ensure_can_act,
    expire_chats,
    load_appointment,
    mark_read,
)
from app.chat_provider import ChatProviderError, StreamChatProvider
from app.config import settings
from app.ingest import process_chat_event
from app.logging_utils import setup_logging, RequestLoggingMiddleware, attach_log_fields
from app.mailer import Mailer
from app.metrics import record_webhook_outcome, get_metrics, get_metrics_content_type
from app.notifications import run_notification_sweep
from app.schemas import (
    AdminChatSummary,
    AdminChatsResponse,
    AdminMarkReadResponse,
    AppointmentActionResponse,
    AppointmentRequest,
    ArchiveUserRequest,
    ArchiveUserResponse,
    CancelAppointmentRequest,
    ChannelSummary,
    ChannelsResponse,
    ChatLogResponse,
    ChatLogsResponse,
    ChatResult,
    ChatTokenResponse,
    ErrorResponse,
    ExpireChatsResponse,
    HealthResponse,
    MarkReadResponse,
    SweepResponse,
    WebhookEvent,
    WebhookResponse,
)
from app.storage import (
    check_db_health,
    get_active_chats_for_user,
    get_admin_chat_overview,
    get_chat_logs,
    get_db,
    get_user,
    init_db,
    mark_chat_read_by_admin,
)
from app.utils import utcnow, verify_bearer_secret, verify_hmac_signature


# Setup structured JSON logging
setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    - Startup: Initialize database and create tables
    """
    init_db()
    if not settings.WEBHOOK_VERIFY_SIGNATURE:
        logger.warning("Chat webhook signature verification is disabled")
    yield


app = FastAPI(
    title="Sunshine Chat Notifications",
    description="Appointment chat lifecycle and unread-message email notifications",
    version="1.0.0",
    lifespan=lifespan,
)

# Add request logging middleware
app.add_middleware(RequestLoggingMiddleware)


# =============================================================================
# Dependencies
# =============================================================================

@lru_cache()
def get_chat_provider() -> StreamChatProvider:
    return StreamChatProvider(
        api_key=settings.STREAM_API_KEY,
        api_secret=settings.STREAM_API_SECRET,
        base_url=settings.STREAM_BASE_URL,
        timeout=settings.STREAM_TIMEOUT_SECONDS,
    )


@lru_cache()
def get_mailer() -> Mailer:
    return Mailer(
        host=settings.SMTP_HOST,
        port=settings.SMTP_PORT,
        from_address=settings.EMAIL_FROM,
        username=settings.SMTP_USERNAME,
        password=settings.SMTP_PASSWORD,
        use_tls=settings.SMTP_USE_TLS,
    )


async def require_cron(
    authorization: Annotated[str | None, Header()] = None,
) -> None:
    if not verify_bearer_secret(authorization, settings.CRON_SECRET):
        logger.warning("Rejected cron request with missing or invalid secret")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")


def to_http_error(e: Exception) -> HTTPException:
    if isinstance(e, ChatLifecycleError):
        return HTTPException(status_code=e.status_code, detail=e.message)
    if isinstance(e, ChatProviderError):
        return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=f"Chat provider error: {e}")
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))


# =============================================================================
# Health Check Routes
# =============================================================================

@app.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """
    Liveness probe - always returns 200 once the app is running.
    """
    return HealthResponse(status="ok")


@app.get("/health/ready", response_model=HealthResponse)
async def health_ready(response: Response) -> HealthResponse:
    """
    Readiness probe - returns 200 only if:
    1. Webhook, cron and chat provider secrets are set
    2. DB is reachable and schema is applied

    Otherwise returns 503 (Service Unavailable).
    """
    for name in ("WEBHOOK_SECRET", "CRON_SECRET", "STREAM_API_KEY", "STREAM_API_SECRET"):
        if not getattr(settings, name):
            response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
            return HealthResponse(status="not_ready", reason=f"{name} not configured")

    if not check_db_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="Database not reachable or schema not applied"
        )

    return HealthResponse(status="ready")


# =============================================================================
# Chat Webhook Route
# =============================================================================

@app.post(
    "/chat-events",
    response_model=WebhookResponse,
    responses={
        401: {"model": ErrorResponse, "description": "Invalid signature"},
        500: {"description": "Unparsable event"},
    }
)
async def chat_events(
    request: Request,
    x_signature: Annotated[str | None, Header(alias="X-Signature")] = None,
    db: Session = Depends(get_db)
):
    """
    Ingest chat provider events.

    Only `message.new` events from appointment chats are logged; everything
    else is acknowledged with a `skipped` marker so the provider does not
    retry. Redelivered messages are acknowledged as duplicates.

    Headers:
        - X-Signature: hex HMAC-SHA256 of raw body using WEBHOOK_SECRET
    """
    raw_body = await request.body()
    logger.debug(f"Chat event body size: {len(raw_body)} bytes")

    if settings.WEBHOOK_VERIFY_SIGNATURE:
        if not x_signature or not verify_hmac_signature(raw_body, x_signature, settings.WEBHOOK_SECRET):
            logger.error("Missing or invalid X-Signature header")
            record_webhook_outcome("invalid_signature")
            attach_log_fields(request, result="invalid_signature")
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="invalid signature"
            )
    else:
        logger.warning("Accepting chat event without signature verification")

    try:
        body = json.loads(raw_body)
        if not isinstance(body, dict):
            raise ValueError("event payload must be a JSON object")
        event = WebhookEvent.model_validate(body)
        outcome = process_chat_event(db, event)
    except Exception as e:
        # JSONDecodeError and pydantic's ValidationError are both ValueErrors
        result = "invalid_payload" if isinstance(e, ValueError) else "error"
        logger.error(f"Failed to process chat event: {e}")
        record_webhook_outcome(result)
        attach_log_fields(request, result=result)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"success": False, "error": "Failed to process webhook", "details": str(e)},
        )

    record_webhook_outcome(outcome.result)
    attach_log_fields(
        request,
        message_id=outcome.message_id,
        dup=outcome.duplicate,
        result=outcome.result,
        skipped=outcome.skipped,
    )

    return WebhookResponse(
        success=True,
        skipped=outcome.skipped,
        logged=outcome.logged,
        duplicate=outcome.duplicate,
        notificationsScheduled=outcome.notifications_scheduled,
    )


# =============================================================================
# Cron Routes
# =============================================================================

@app.get("/run-notification-sweep", response_model=SweepResponse, dependencies=[Depends(require_cron)])
async def notification_sweep(
    request: Request,
    db: Session = Depends(get_db),
    provider: StreamChatProvider = Depends(get_chat_provider),
    mailer: Mailer = Depends(get_mailer),
) -> SweepResponse:
    """Email every user with due notifications about their still-unread conversations."""
    result = await run_notification_sweep(db, provider, mailer)
    attach_log_fields(
        request,
        emails_sent=result.emails_sent,
        notifications_sent=result.notifications_sent,
        notifications_canceled=result.notifications_canceled,
        sweep_errors=result.errors,
    )
    return SweepResponse(
        success=True,
        emailsSent=result.emails_sent,
        notificationsCanceled=result.notifications_canceled,
        notificationsSent=result.notifications_sent,
        usersProcessed=result.users_processed,
        errors=result.errors,
    )


@app.get("/cron/close-chats", response_model=ExpireChatsResponse, dependencies=[Depends(require_cron)])
async def close_expired_chats(
    request: Request,
    db: Session = Depends(get_db),
    provider: StreamChatProvider = Depends(get_chat_provider),
) -> ExpireChatsResponse:
    """Close chats whose appointment ended more than CHAT_EXPIRY_GRACE_HOURS ago."""
    summary = await expire_chats(db, provider)
    attach_log_fields(request, chats_closed=summary["successful"], chats_failed=summary["failed"])
    return ExpireChatsResponse(success=True, **summary)


# =============================================================================
# Chat Routes
# =============================================================================

@app.post("/chat/create", response_model=ChatResult)
async def chat_create(
    body: AppointmentRequest,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    provider: StreamChatProvider = Depends(get_chat_provider),
) -> ChatResult:
    try:
        ensure_can_act(db, load_appointment(db, body.appointmentId), user_id)
        chat = await create_chat(db, provider, body.appointmentId)
    except (ChatLifecycleError, ChatProviderError) as e:
        raise to_http_error(e)

    return ChatResult(channelId=chat.stream_channel_id, message="Chat channel created successfully")


@app.post("/chat/close", response_model=ChatResult)
async def chat_close(
    body: AppointmentRequest,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    provider: StreamChatProvider = Depends(get_chat_provider),
) -> ChatResult:
    try:
        ensure_can_act(db, load_appointment(db, body.appointmentId), user_id)
        result = await close_chat(db, provider, body.appointmentId)
    except (ChatLifecycleError, ChatProviderError) as e:
        raise to_http_error(e)

    return ChatResult(channelId=result.channel_id, message=result.message)


@app.post("/chat/mark-read", response_model=MarkReadResponse)
async def chat_mark_read(
    body: AppointmentRequest,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    provider: StreamChatProvider = Depends(get_chat_provider),
) -> MarkReadResponse:
    try:
        row = await mark_read(db, provider, user_id, body.appointmentId)
    except ChatLifecycleError as e:
        raise to_http_error(e)

    return MarkReadResponse(lastReadAt=row.last_read_at)


@app.post("/chat/token", response_model=ChatTokenResponse)
async def chat_token(
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    provider: StreamChatProvider = Depends(get_chat_provider),
) -> ChatTokenResponse:
    """Issue a chat provider token for the signed-in user."""
    user = get_user(db, user_id)
    if user is None or user.status == "archived":
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Chat is not available for this user")

    return ChatTokenResponse(
        token=provider.create_user_token(user_id),
        userId=user_id,
        apiKey=settings.STREAM_API_KEY,
    )


@app.get("/chat/channels", response_model=ChannelsResponse)
async def chat_channels(
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
) -> ChannelsResponse:
    """Active appointment chats the signed-in user belongs to."""
    channels = []
    for appointment, chat in get_active_chats_for_user(db, user_id):
        other_id = appointment.other_participant(user_id)
        other = get_user(db, other_id)
        channels.append(ChannelSummary(
            appointmentId=appointment.id,
            channelId=chat.stream_channel_id,
            startTime=appointment.start_time,
            endTime=appointment.end_time,
            otherUserId=other_id,
            otherUserName=other.full_name if other and other.full_name else "Unknown User",
        ))
    return ChannelsResponse(channels=channels)


# =============================================================================
# Appointment Routes
# =============================================================================

def _action_response(result) -> AppointmentActionResponse:
    chat = None
    if result.chat is not None:
        chat = ChatResult(channelId=result.chat.channel_id, message=result.chat.message)
    return AppointmentActionResponse(
        appointmentId=result.appointment_id,
        status=result.status,
        chat=chat,
        notificationsCanceled=result.notifications_canceled,
    )


@app.post("/appointment/confirm", response_model=AppointmentActionResponse)
async def appointment_confirm(
    body: AppointmentRequest,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    provider: StreamChatProvider = Depends(get_chat_provider),
) -> AppointmentActionResponse:
    """Confirm an appointment and open its chat."""
    try:
        ensure_can_act(db, load_appointment(db, body.appointmentId), user_id)
        result = await confirm_appointment(db, provider, body.appointmentId)
    except (ChatLifecycleError, ChatProviderError) as e:
        raise to_http_error(e)
    return _action_response(result)


@app.post("/appointment/cancel", response_model=AppointmentActionResponse)
async def appointment_cancel(
    body: CancelAppointmentRequest,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    provider: StreamChatProvider = Depends(get_chat_provider),
    mailer: Mailer = Depends(get_mailer),
) -> AppointmentActionResponse:
    """Cancel an appointment, closing its chat and dropping pending notifications."""
    try:
        ensure_can_act(db, load_appointment(db, body.appointmentId), user_id)
        result = await cancel_appointment(
            db, provider, mailer, body.appointmentId, body.cancellationReason or "No reason provided"
        )
    except ChatLifecycleError as e:
        raise to_http_error(e)
    return _action_response(result)


# =============================================================================
# Admin Routes
# =============================================================================

@app.post("/admin/archive-user", response_model=ArchiveUserResponse)
async def admin_archive_user(
    body: ArchiveUserRequest,
    admin_id: str = Depends(require_admin),
    db: Session = Depends(get_db),
    provider: StreamChatProvider = Depends(get_chat_provider),
    mailer: Mailer = Depends(get_mailer),
) -> ArchiveUserResponse:
    """
    Archive a user.

    Without `confirmed`, a user with active appointments is not archived;
    the response lists those appointments instead. With `confirmed`, every
    active appointment is canceled (closing its chat) before archiving.
    """
    logger.info(f"Admin {admin_id} archiving user {body.user_id}")
    try:
        result = await archive_user(db, provider, mailer, body.user_id, confirmed=body.confirmed)
    except ChatLifecycleError as e:
        raise to_http_error(e)

    return ArchiveUserResponse(
        success=result.success,
        requires_confirmation=result.requires_confirmation,
        active_appointments=result.active_appointments,
        canceled_appointments_count=result.canceled_appointments_count,
        notifications_canceled=result.notifications_canceled,
    )


@app.get("/admin/chats", response_model=AdminChatsResponse, dependencies=[Depends(require_admin)])
async def admin_chats(db: Session = Depends(get_db)) -> AdminChatsResponse:
    """All chats with participants, dog, message stats and the admin unread count."""
    chats = [AdminChatSummary(**row) for row in get_admin_chat_overview(db)]
    return AdminChatsResponse(chats=chats, total=len(chats))


@app.post(
    "/admin/chats/{appointment_id}/mark-read",
    response_model=AdminMarkReadResponse,
    responses={404: {"model": ErrorResponse}},
)
async def admin_mark_chat_read(
    appointment_id: int,
    admin_id: str = Depends(require_admin),
    db: Session = Depends(get_db),
) -> AdminMarkReadResponse:
    if not mark_chat_read_by_admin(db, appointment_id, utcnow()):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Chat not found")
    logger.info(f"Admin {admin_id} marked chat for appointment {appointment_id} as read")
    return AdminMarkReadResponse(message="Chat marked as read")


@app.get(
    "/admin/chats/{appointment_id}/logs",
    response_model=ChatLogsResponse,
    dependencies=[Depends(require_admin)],
)
async def admin_chat_logs(appointment_id: int, db: Session = Depends(get_db)) -> ChatLogsResponse:
    """Audit trail of logged messages for one appointment, oldest first."""
    logs = [ChatLogResponse.model_validate(log) for log in get_chat_logs(db, appointment_id)]
    return ChatLogsResponse(logs=logs, total=len(logs))


# =============================================================================
# Metrics Route
# =============================================================================

@app.get("/metrics")
async def metrics() -> Response:
    """Prometheus text exposition of the counters in app.metrics."""
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )
