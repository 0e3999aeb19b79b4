"""
Tests for the appointment flows that drive the chat lifecycle.

Tests cover:
- POST /appointment/confirm opens the chat
- POST /appointment/cancel closes the chat, drops pending notifications, emails participants
- POST /admin/archive-user confirmation gate and the full archival flow
"""

from datetime import timedelta

from app.chat_lifecycle import ADMIN_CANCELLATION_REASON
from app.models import Appointment, AppointmentChat, Dog, PendingEmailNotification, User
from app.storage import schedule_notification
from app.utils import utcnow
from tests.conftest import add_appointment, auth_headers


def pending_for(db, appointment_id, user_id="ind-1", message_id="m1"):
    schedule_notification(
        db,
        user_id=user_id,
        appointment_id=appointment_id,
        stream_message_id=message_id,
        channel_id=f"messaging:appointment-{appointment_id}",
        scheduled_for=utcnow() + timedelta(minutes=30),
    )


def reload(db, model, pk):
    db.expire_all()
    return db.get(model, pk)


class TestConfirmAppointment:
    def test_confirm_creates_chat(self, client, db, seed, provider):
        appointment = add_appointment(db, status="pending")

        response = client.post(
            "/appointment/confirm", json={"appointmentId": appointment.id}, headers=auth_headers("vol-1")
        )

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "confirmed"
        assert data["chat"]["channelId"] == f"messaging:appointment-{appointment.id}"
        assert reload(db, Appointment, appointment.id).status == "confirmed"
        assert db.query(AppointmentChat).count() == 1

    def test_confirm_twice_keeps_one_chat(self, client, db, seed):
        appointment = add_appointment(db, status="pending")
        headers = auth_headers("vol-1")

        client.post("/appointment/confirm", json={"appointmentId": appointment.id}, headers=headers)
        response = client.post("/appointment/confirm", json={"appointmentId": appointment.id}, headers=headers)

        assert response.status_code == 200
        assert response.json()["chat"] is None
        assert db.query(AppointmentChat).count() == 1

    def test_canceled_appointment_cannot_be_confirmed(self, client, db, seed):
        appointment = add_appointment(db, status="canceled")

        response = client.post(
            "/appointment/confirm", json={"appointmentId": appointment.id}, headers=auth_headers("vol-1")
        )

        assert response.status_code == 400


class TestCancelAppointment:
    def test_cancel_closes_chat_and_drops_notifications(self, client, db, seed, provider, mailer):
        appointment = add_appointment(db)
        headers = auth_headers("ind-1")
        client.post("/chat/create", json={"appointmentId": appointment.id}, headers=headers)
        pending_for(db, appointment.id)

        response = client.post(
            "/appointment/cancel",
            json={"appointmentId": appointment.id, "cancellationReason": "Feeling unwell"},
            headers=headers,
        )

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "canceled"
        assert data["notificationsCanceled"] == 1
        assert data["chat"]["message"] == "Chat closed successfully"

        row = reload(db, Appointment, appointment.id)
        assert row.status == "canceled"
        assert row.cancellation_reason == "Feeling unwell"
        assert db.query(AppointmentChat).one().status == "closed"
        assert db.query(PendingEmailNotification).one().status == "canceled"

        templates = sorted(email["template"] for email in mailer.sent)
        assert templates == ["appointmentCanceledIndividual", "appointmentCanceledVolunteer"]
        assert mailer.sent[0]["data"]["cancellationReason"] == "Feeling unwell"

    def test_cancel_still_succeeds_when_chat_close_fails(self, client, db, seed, provider):
        appointment = add_appointment(db)
        headers = auth_headers("ind-1")
        client.post("/chat/create", json={"appointmentId": appointment.id}, headers=headers)
        provider.fail_channels.add(f"messaging:appointment-{appointment.id}")

        response = client.post("/appointment/cancel", json={"appointmentId": appointment.id}, headers=headers)

        assert response.status_code == 200
        assert reload(db, Appointment, appointment.id).status == "canceled"
        # Left for the expiry sweep
        assert db.query(AppointmentChat).one().status == "active"

    def test_cancel_is_idempotent(self, client, db, seed, mailer):
        appointment = add_appointment(db)
        headers = auth_headers("ind-1")

        client.post("/appointment/cancel", json={"appointmentId": appointment.id}, headers=headers)
        response = client.post("/appointment/cancel", json={"appointmentId": appointment.id}, headers=headers)

        assert response.status_code == 200
        assert len(mailer.sent) == 2

    def test_non_participant_forbidden(self, client, db, seed):
        appointment = add_appointment(db)

        response = client.post(
            "/appointment/cancel", json={"appointmentId": appointment.id}, headers=auth_headers("other-1")
        )

        assert response.status_code == 403
        assert reload(db, Appointment, appointment.id).status == "confirmed"


class TestArchiveUser:
    def test_requires_admin(self, client, seed):
        response = client.post("/admin/archive-user", json={"user_id": "vol-1"}, headers=auth_headers("ind-1"))

        assert response.status_code == 403

    def test_unconfirmed_archive_lists_active_appointments(self, client, db, seed):
        upcoming = add_appointment(db)

        response = client.post(
            "/admin/archive-user", json={"user_id": "vol-1"}, headers=auth_headers("admin-1")
        )

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is False
        assert data["requires_confirmation"] is True
        ids = {a["id"] for a in data["active_appointments"]}
        assert ids == {seed.id, upcoming.id}
        assert data["active_appointments"][0]["other_user_name"] == "Iris Individual"
        assert reload(db, User, "vol-1").status == "approved"

    def test_confirmed_archive_cancels_everything(self, client, db, seed, provider, mailer):
        upcoming = add_appointment(db)
        client.post("/chat/create", json={"appointmentId": upcoming.id}, headers=auth_headers("ind-1"))
        pending_for(db, upcoming.id, user_id="vol-1", message_id="to-vol")
        pending_for(db, upcoming.id, user_id="ind-1", message_id="to-ind")

        response = client.post(
            "/admin/archive-user",
            json={"user_id": "vol-1", "confirmed": True},
            headers=auth_headers("admin-1"),
        )

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["canceled_appointments_count"] == 2

        user = reload(db, User, "vol-1")
        assert user.status == "archived"
        assert user.archived_at is not None
        assert db.query(Dog).one().status == "archived"
        assert {a.status for a in db.query(Appointment).all()} == {"canceled"}
        assert db.query(AppointmentChat).one().status == "closed"
        assert {n.status for n in db.query(PendingEmailNotification).all()} == {"canceled"}

        # Only the other participant is told, with the administrator reason
        assert {email["to"] for email in mailer.sent} == {"iris@example.com"}
        assert all(email["data"]["cancellationReason"] == ADMIN_CANCELLATION_REASON for email in mailer.sent)

    def test_archive_without_appointments(self, client, db, seed):
        response = client.post(
            "/admin/archive-user", json={"user_id": "other-1"}, headers=auth_headers("admin-1")
        )

        assert response.status_code == 200
        assert response.json()["success"] is True
        assert reload(db, User, "other-1").status == "archived"

    def test_archive_unknown_user_404(self, client, seed):
        response = client.post(
            "/admin/archive-user", json={"user_id": "ghost", "confirmed": True}, headers=auth_headers("admin-1")
        )

        assert response.status_code == 404
