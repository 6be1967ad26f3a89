from datetime import datetime, timedelta, timezone
from decimal import Decimal
import json

from fastapi.testclient import TestClient
import pytest

from consultcore.api.dependencies.database import get_db
from consultcore.main import create_app
from consultcore.models.booking import BookingStatus
from consultcore.models.payment import TransactionStatus

REQUESTER_ID = "01JREQUESTER0000000000000A"
PROVIDER_ID = "01JPROV1DER00000000000000B"
OUTSIDER_ID = "01J0VTS1DER00000000000000C"


@pytest.fixture
def client(db, fake_gateway):
    app = create_app()

    def _override_get_db():
        yield db

    app.dependency_overrides[get_db] = _override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def wall_clock():
    # routes read the real clock
    return datetime.now(timezone.utc).replace(microsecond=0)


def _as(actor_id):
    return {"X-User-Id": actor_id}


def _parse(value):
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


class TestActorIdentity:
    def test_missing_actor_is_rejected(self, client, make_booking):
        booking = make_booking()

        response = client.post(f"/api/v1/bookings/{booking.id}/start")

        assert response.status_code == 401
        body = response.json()
        assert body["code"] == "MISSING_ACTOR"
        assert body["status"] == 401
        assert body["instance"] == f"/api/v1/bookings/{booking.id}/start"

    def test_malformed_booking_id(self, client):
        response = client.post("/api/v1/bookings/not-a-ulid/start", headers=_as(REQUESTER_ID))

        assert response.status_code == 422
        assert response.json()["code"] == "validation_error"

    def test_unknown_booking(self, client):
        response = client.get(
            "/api/v1/bookings/01JZZZZZZZZZZZZZZZZZZZZZZZ/chat", headers=_as(REQUESTER_ID)
        )

        assert response.status_code == 404
        assert response.json()["code"] == "BOOKING_NOT_FOUND"


class TestBookingRoutes:
    def test_requester_creates_a_pending_booking(self, client, wall_clock):
        start = wall_clock + timedelta(days=3)

        response = client.post(
            "/api/v1/bookings",
            json={
                "provider_id": PROVIDER_ID,
                "start_time": start.isoformat(),
                "duration_minutes": 60,
                "amount": "1500.00",
            },
            headers=_as(REQUESTER_ID),
        )

        assert response.status_code == 201
        body = response.json()
        assert body["status"] == BookingStatus.PENDING.value
        assert body["requester_id"] == REQUESTER_ID
        assert body["provider_id"] == PROVIDER_ID
        assert body["currency"] == "INR"
        assert Decimal(body["amount"]) == Decimal("1500.00")
        assert _parse(body["end_time"]) - _parse(body["start_time"]) == timedelta(minutes=60)

    def test_duration_outside_the_allowed_range(self, client, wall_clock):
        response = client.post(
            "/api/v1/bookings",
            json={
                "provider_id": PROVIDER_ID,
                "start_time": (wall_clock + timedelta(days=3)).isoformat(),
                "duration_minutes": 15,
                "amount": "1500.00",
            },
            headers=_as(REQUESTER_ID),
        )

        assert response.status_code == 422

    def test_negative_amount(self, client, wall_clock):
        response = client.post(
            "/api/v1/bookings",
            json={
                "provider_id": PROVIDER_ID,
                "start_time": (wall_clock + timedelta(days=3)).isoformat(),
                "duration_minutes": 30,
                "amount": "-5",
            },
            headers=_as(REQUESTER_ID),
        )

        assert response.status_code == 400
        assert response.json()["code"] == "INVALID_AMOUNT"

    def test_party_reads_booking_with_payment_deadline(
        self, client, make_booking, make_payment, wall_clock
    ):
        booking = make_booking(start=wall_clock + timedelta(days=2))
        make_payment(booking, status=TransactionStatus.PENDING)

        response = client.get(f"/api/v1/bookings/{booking.id}", headers=_as(PROVIDER_ID))

        assert response.status_code == 200
        body = response.json()
        assert body["booking"]["id"] == booking.id
        assert body["payment_status"] == TransactionStatus.PENDING.value
        assert _parse(body["payment_deadline"]) == booking.start_utc - timedelta(minutes=60)

    def test_outsider_cannot_read_booking(self, client, make_booking):
        booking = make_booking()

        response = client.get(f"/api/v1/bookings/{booking.id}", headers=_as(OUTSIDER_ID))

        assert response.status_code == 403
        assert response.json()["code"] == "ACCESS_DENIED"


class TestPaymentRoutes:
    def test_create_payment(self, client, fake_gateway, make_booking, wall_clock):
        booking = make_booking(start=wall_clock + timedelta(days=2))

        response = client.post(
            f"/api/v1/bookings/{booking.id}/payment",
            json={"gateway": "stripe", "payer_email": "payer@example.com"},
            headers=_as(REQUESTER_ID),
        )

        assert response.status_code == 201
        body = response.json()
        assert body["intent_ref"] == "stripe_intent_1"
        assert body["status"] == TransactionStatus.CREATED.value
        assert Decimal(body["amount"]) == Decimal("2000.00")
        assert fake_gateway.created[0]["payer"].email == "payer@example.com"

    def test_unknown_gateway(self, client, make_booking, wall_clock):
        booking = make_booking(start=wall_clock + timedelta(days=2))

        response = client.post(
            f"/api/v1/bookings/{booking.id}/payment",
            json={"gateway": "bitcoin"},
            headers=_as(REQUESTER_ID),
        )

        assert response.status_code == 400
        assert response.json()["code"] == "UNSUPPORTED_GATEWAY"

    def test_extra_fields_are_rejected(self, client, make_booking, wall_clock):
        booking = make_booking(start=wall_clock + timedelta(days=2))

        response = client.post(
            f"/api/v1/bookings/{booking.id}/payment",
            json={"gateway": "stripe", "amount": "1.00"},
            headers=_as(REQUESTER_ID),
        )

        assert response.status_code == 422

    def test_status_poll_confirms_booking(self, client, fake_gateway, make_booking, wall_clock):
        booking = make_booking(start=wall_clock + timedelta(days=2))
        created = client.post(
            f"/api/v1/bookings/{booking.id}/payment",
            json={"gateway": "stripe"},
            headers=_as(REQUESTER_ID),
        ).json()
        fake_gateway.complete()

        response = client.get(
            f"/api/v1/payments/stripe/status/{created['intent_ref']}", headers=_as(REQUESTER_ID)
        )

        assert response.status_code == 200
        body = response.json()
        assert body["payment_status"] == TransactionStatus.COMPLETED.value
        assert body["booking_status"] == BookingStatus.CONFIRMED.value

    def test_outsider_cannot_poll_status(self, client, fake_gateway, make_booking, wall_clock):
        booking = make_booking(start=wall_clock + timedelta(days=2))
        created = client.post(
            f"/api/v1/bookings/{booking.id}/payment",
            json={"gateway": "stripe"},
            headers=_as(REQUESTER_ID),
        ).json()
        fake_gateway.complete()

        response = client.get(
            f"/api/v1/payments/stripe/status/{created['intent_ref']}", headers=_as(OUTSIDER_ID)
        )

        assert response.status_code == 403
        assert response.json()["code"] == "ACCESS_DENIED"
        assert fake_gateway.verified == []

    def test_provider_can_poll_status(self, client, fake_gateway, make_booking, wall_clock):
        booking = make_booking(start=wall_clock + timedelta(days=2))
        created = client.post(
            f"/api/v1/bookings/{booking.id}/payment",
            json={"gateway": "stripe"},
            headers=_as(REQUESTER_ID),
        ).json()

        response = client.get(
            f"/api/v1/payments/stripe/status/{created['intent_ref']}", headers=_as(PROVIDER_ID)
        )

        assert response.status_code == 200
        assert response.json()["payment_status"] == TransactionStatus.PENDING.value

    def test_status_poll_for_unknown_intent(self, client):
        response = client.get("/api/v1/payments/stripe/status/pi_nope", headers=_as(REQUESTER_ID))

        assert response.status_code == 404
        assert response.json()["code"] == "TRANSACTION_NOT_FOUND"


class TestCancelRoute:
    def test_full_refund(self, client, fake_gateway, make_booking, make_payment, wall_clock):
        booking = make_booking(status=BookingStatus.CONFIRMED, start=wall_clock + timedelta(days=2))
        make_payment(booking)

        response = client.post(
            f"/api/v1/bookings/{booking.id}/cancel",
            json={"reason": "schedule clash"},
            headers=_as(PROVIDER_ID),
        )

        assert response.status_code == 200
        body = response.json()
        assert body["refund_status"] == "refunded"
        assert Decimal(body["refund_amount"]) == Decimal("2000.00")
        assert body["booking"]["status"] == BookingStatus.CANCELLED.value
        assert body["booking"]["cancelled_by_id"] == PROVIDER_ID
        assert len(fake_gateway.refunds) == 1

    def test_cancel_without_body(self, client, make_booking, wall_clock):
        booking = make_booking(start=wall_clock + timedelta(days=2))

        response = client.post(f"/api/v1/bookings/{booking.id}/cancel", headers=_as(REQUESTER_ID))

        assert response.status_code == 200
        assert response.json()["refund_status"] == "no_payment"

    def test_outsider_is_forbidden(self, client, make_booking):
        booking = make_booking()

        response = client.post(
            f"/api/v1/bookings/{booking.id}/cancel",
            headers=_as("01J0VTS1DER00000000000000C"),
        )

        assert response.status_code == 403
        assert response.json()["code"] == "ACCESS_DENIED"

    def test_second_cancel_conflicts(self, client, make_booking):
        booking = make_booking(status=BookingStatus.CANCELLED)

        response = client.post(f"/api/v1/bookings/{booking.id}/cancel", headers=_as(REQUESTER_ID))

        assert response.status_code == 409


class TestSessionRoutes:
    def test_start_then_complete_with_code(self, client, make_booking, wall_clock):
        booking = make_booking(
            status=BookingStatus.CONFIRMED, start=wall_clock - timedelta(minutes=30)
        )

        started = client.post(f"/api/v1/bookings/{booking.id}/start", headers=_as(PROVIDER_ID))
        assert started.status_code == 200
        assert started.json()["booking_id"] == booking.id

        issued = client.post(
            f"/api/v1/bookings/{booking.id}/completion-otp", headers=_as(REQUESTER_ID)
        )
        assert issued.status_code == 201
        code = issued.json()["code"]
        assert len(code) == 6 and code.isdigit()

        completed = client.post(
            f"/api/v1/bookings/{booking.id}/complete",
            json={"otp": code},
            headers=_as(REQUESTER_ID),
        )
        assert completed.status_code == 200
        assert completed.json()["status"] == BookingStatus.COMPLETED.value

        chat = client.get(f"/api/v1/bookings/{booking.id}/chat", headers=_as(PROVIDER_ID))
        assert chat.status_code == 200
        assert chat.json()["open"] is True
        assert chat.json()["expires_at"] is not None

    def test_wrong_code(self, client, make_booking, wall_clock):
        booking = make_booking(
            status=BookingStatus.CONFIRMED, start=wall_clock - timedelta(minutes=30)
        )
        code = client.post(
            f"/api/v1/bookings/{booking.id}/completion-otp", headers=_as(REQUESTER_ID)
        ).json()["code"]
        wrong = "000000" if code != "000000" else "111111"

        response = client.post(
            f"/api/v1/bookings/{booking.id}/complete",
            json={"otp": wrong},
            headers=_as(REQUESTER_ID),
        )

        assert response.status_code == 400
        assert response.json()["code"] == "INVALID_OTP"

    def test_provider_cannot_issue_code(self, client, make_booking):
        booking = make_booking(status=BookingStatus.CONFIRMED)

        response = client.post(
            f"/api/v1/bookings/{booking.id}/completion-otp", headers=_as(PROVIDER_ID)
        )

        assert response.status_code == 403

    def test_chat_closed_before_completion(self, client, make_booking):
        booking = make_booking(status=BookingStatus.CONFIRMED)

        response = client.get(f"/api/v1/bookings/{booking.id}/chat", headers=_as(REQUESTER_ID))

        assert response.json() == {"booking_id": booking.id, "open": False, "expires_at": None}


class TestWebhookRoute:
    def test_bad_signature(self, client):
        response = client.post(
            "/api/v1/webhooks/stripe",
            content=json.dumps({"id": "evt_1"}),
            headers={"X-Test-Signature": "forged"},
        )

        assert response.status_code == 400
        assert response.json()["code"] == "INVALID_SIGNATURE"

    def test_acknowledged(self, client):
        response = client.post(
            "/api/v1/webhooks/stripe",
            content=json.dumps({"id": "evt_1", "type": "charge.refunded"}),
            headers={"X-Test-Signature": "valid"},
        )

        assert response.status_code == 200
        assert response.json() == {"ok": True, "status": "ignored", "event_id": "evt_1"}

    def test_unsupported_gateway(self, client):
        response = client.post("/api/v1/webhooks/venmo", content=b"{}")

        assert response.status_code == 400
        assert response.json()["code"] == "UNSUPPORTED_GATEWAY"
