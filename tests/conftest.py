"""
Pytest configuration and shared fixtures.

Test env vars are set here before any app import so the cached settings
pick them up. Real values in the environment win over these defaults.
"""

import hashlib
import hmac
import os
import time
from datetime import timedelta

import jwt
import pytest

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_app.db")
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("WEBHOOK_SECRET", "test-webhook-secret")
os.environ.setdefault("CRON_SECRET", "test-cron-secret")
os.environ.setdefault("SESSION_SECRET", "test-session-secret")
os.environ.setdefault("STREAM_API_KEY", "test-stream-key")
os.environ.setdefault("STREAM_API_SECRET", "test-stream-secret")

# Clear settings cache before any app imports to ensure test env vars are used
from app.config import get_settings
get_settings.cache_clear()

from fastapi.testclient import TestClient  # noqa: E402

from app import models  # noqa: E402,F401
from app.chat_provider import ChannelReadState, ChatProviderError  # noqa: E402
from app.mailer import EmailError  # noqa: E402
from app.main import app, get_chat_provider, get_mailer  # noqa: E402
from app.storage import Base, SessionLocal, engine  # noqa: E402
from app.utils import utcnow, to_iso  # noqa: E402


class FakeChatProvider:
    """In-memory chat provider. Channels listed in `fail_channels` raise on every call."""

    def __init__(self):
        self.channels: dict[str, dict] = {}
        self.messages: list[tuple[str, str, str]] = []
        self.upserted: dict[str, dict] = {}
        self.read_states: dict[tuple[str, str], ChannelReadState] = {}
        self.marked_read: list[tuple[str, str]] = []
        self.unread: dict[str, dict[str, int]] = {}
        self.fail_channels: set[str] = set()

    def _check(self, channel_type, channel_id):
        cid = f"{channel_type}:{channel_id}"
        if cid in self.fail_channels:
            raise ChatProviderError(f"injected failure for {cid}", status_code=500)
        return cid

    def create_user_token(self, user_id, expires_in=None):
        return f"chat-token-{user_id}"

    async def upsert_users(self, users):
        for user in users:
            self.upserted[user["id"]] = user

    async def create_channel(self, channel_type, channel_id, members, created_by_id, data=None):
        cid = self._check(channel_type, channel_id)
        self.channels[cid] = {
            "members": list(members),
            "created_by_id": created_by_id,
            "data": data or {},
            "status": "active",
            "frozen": False,
        }
        return cid

    async def send_message(self, channel_type, channel_id, text, user_id):
        cid = self._check(channel_type, channel_id)
        self.messages.append((cid, text, user_id))
        return {"id": f"msg-{len(self.messages)}", "text": text}

    async def update_channel_partial(self, channel_type, channel_id, set_fields):
        cid = self._check(channel_type, channel_id)
        self.channels.setdefault(cid, {}).update(set_fields)

    async def get_channel_read_state(self, channel_type, channel_id, user_id):
        cid = self._check(channel_type, channel_id)
        state = self.read_states.get((cid, user_id))
        if state is None:
            return ChannelReadState(last_message_at=utcnow(), last_message_user_id="someone-else")
        return state

    async def mark_read(self, channel_type, channel_id, user_id):
        cid = self._check(channel_type, channel_id)
        self.marked_read.append((cid, user_id))

    async def get_unread_counts(self, user_id):
        return dict(self.unread.get(user_id, {}))

    def set_read(self, cid, user_id, message_at, read_at):
        self.read_states[(cid, user_id)] = ChannelReadState(
            last_message_at=message_at,
            last_message_user_id="someone-else",
            last_read_at=read_at,
            has_read_state=True,
        )


class FakeMailer:
    def __init__(self):
        self.sent: list[dict] = []
        self.fail = False

    def send_transactional(self, to, subject, template_name, data):
        if self.fail:
            raise EmailError("injected SMTP failure")
        self.sent.append({"to": to, "subject": subject, "template": template_name, "data": data})
        return f"<{len(self.sent)}@test>"


def compute_signature(body: str, secret: str) -> str:
    """Compute HMAC-SHA256 signature for request body."""
    return hmac.new(
        secret.encode("utf-8"),
        body.encode("utf-8"),
        hashlib.sha256
    ).hexdigest()


def session_token(user_id: str, secret: str = None, expires_in: int = 3600) -> str:
    secret = secret or os.environ["SESSION_SECRET"]
    return jwt.encode({"sub": user_id, "exp": int(time.time()) + expires_in}, secret, algorithm="HS256")


def auth_headers(user_id: str) -> dict:
    return {"Authorization": f"Bearer {session_token(user_id)}"}


def cron_headers() -> dict:
    return {"Authorization": f"Bearer {os.environ['CRON_SECRET']}"}


@pytest.fixture(scope="function")
def tables():
    """Fresh schema for each test."""
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def provider():
    return FakeChatProvider()


@pytest.fixture
def mailer():
    return FakeMailer()


@pytest.fixture
def client(tables, provider, mailer):
    """Create test client wired to the fake provider and mailer."""
    app.dependency_overrides[get_chat_provider] = lambda: provider
    app.dependency_overrides[get_mailer] = lambda: mailer

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


@pytest.fixture
def db(tables):
    session = SessionLocal()
    yield session
    session.close()


@pytest.fixture
def seed(db):
    """
    An individual, a volunteer with a dog, an admin and one confirmed
    appointment that ended yesterday.
    """
    from app.models import Appointment, Dog, User

    now = utcnow()
    db.add_all([
        User(id="ind-1", first_name="Iris", last_name="Individual", email="iris@example.com",
             role="individual", physical_address="12 Elm Street"),
        User(id="vol-1", first_name="Victor", last_name="Volunteer", email="victor@example.com",
             role="volunteer"),
        User(id="admin-1", first_name="Ada", last_name="Admin", email="ada@example.com", role="admin"),
        User(id="other-1", first_name="Olive", last_name="Other", email="olive@example.com",
             role="individual"),
        Dog(volunteer_id="vol-1", dog_name="Buddy"),
    ])
    db.commit()

    appointment = Appointment(
        individual_id="ind-1",
        volunteer_id="vol-1",
        start_time=to_iso(now.replace(microsecond=0) - timedelta(hours=26)),
        end_time=to_iso(now.replace(microsecond=0) - timedelta(hours=25)),
        status="confirmed",
    )
    db.add(appointment)
    db.commit()
    db.refresh(appointment)
    return appointment


def add_appointment(db, start_offset_hours=24, duration_hours=1, status="confirmed",
                    individual_id="ind-1", volunteer_id="vol-1"):
    from app.models import Appointment

    now = utcnow()
    appointment = Appointment(
        individual_id=individual_id,
        volunteer_id=volunteer_id,
        start_time=to_iso(now + timedelta(hours=start_offset_hours)),
        end_time=to_iso(now + timedelta(hours=start_offset_hours + duration_hours)),
        status=status,
    )
    db.add(appointment)
    db.commit()
    db.refresh(appointment)
    return appointment


def chat_event(appointment_id, message_id="m1", sender_id="vol-1", text="Hello!",
               members=("ind-1", "vol-1"), chat_type="appointment_chat", event_type="message.new"):
    return {
        "type": event_type,
        "message": {
            "id": message_id,
            "text": text,
            "type": "regular",
            "user": {"id": sender_id},
            "created_at": to_iso(utcnow()),
        },
        "channel": {
            "id": f"appointment-{appointment_id}",
            "cid": f"messaging:appointment-{appointment_id}",
            "type": "messaging",
            "members": [{"user_id": m} for m in members],
            "custom": {"type": chat_type, "appointment_id": appointment_id},
        },
    }
