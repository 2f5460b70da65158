"""
HTTP surface: envelope shape and error-to-status mapping.
"""
import logging
from datetime import timedelta
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from api.routes import app, get_manager
from booking_schemas import CancellationPolicy

from conftest import START


@pytest.fixture
def client(manager):
    app.dependency_overrides[get_manager] = lambda: manager
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.mark.integration
def test_create_and_fetch_booking(client, payload_factory):
    response = client.post("/bookings", json=payload_factory())

    assert response.status_code == 201
    body = response.json()
    assert body["success"] is True
    booking_id = body["data"]["bookingId"]
    assert body["data"]["status"] == "pending"

    fetched = client.get(f"/bookings/{booking_id}")
    assert fetched.status_code == 200
    assert fetched.json()["data"]["confirmationNumber"] == body["data"]["confirmationNumber"]


@pytest.mark.integration
def test_validation_error_is_400(client):
    response = client.post("/bookings", json={"serviceType": "guide"})

    assert response.status_code == 400
    body = response.json()
    assert body["success"] is False
    assert body["errorCode"] == "VALIDATION_ERROR"
    assert body["data"]["errors"]


@pytest.mark.integration
def test_unknown_booking_is_404(client):
    response = client.get("/bookings/BKG_NOPE")

    assert response.status_code == 404
    assert response.json()["errorCode"] == "NOT_FOUND"


@pytest.mark.integration
def test_pay_then_conflicting_pay_is_409(client, payload_factory):
    first = client.post("/bookings", json=payload_factory()).json()["data"]["bookingId"]
    second = client.post("/bookings", json=payload_factory(start=START + timedelta(days=1))).json()["data"]["bookingId"]

    paid = client.post(f"/bookings/{first}/pay")
    assert paid.status_code == 200
    assert paid.json()["data"]["status"] == "confirmed"
    assert paid.json()["data"]["payment"]["transactionId"] == "TXN-1"

    conflict = client.post(f"/bookings/{second}/pay")
    assert conflict.status_code == 409
    assert conflict.json()["errorCode"] == "BOOKING_CONFLICT"
    assert conflict.json()["data"]["conflictingRange"]["start"] == START.isoformat()


@pytest.mark.integration
def test_declined_payment_is_402_with_translated_message(client, payload_factory, payment_client):
    booking_id = client.post("/bookings", json=payload_factory()).json()["data"]["bookingId"]
    payment_client.decline_with = "INSUFFICIENT_FUNDS"

    response = client.post(f"/bookings/{booking_id}/pay")

    assert response.status_code == 402
    body = response.json()
    assert body["errorCode"] == "INSUFFICIENT_FUNDS"
    assert body["message"].startswith("Payment declined due to insufficient funds")


@pytest.mark.integration
def test_cancellation_preview_and_refusal(client, payload_factory, provider_client):
    provider_client.policy = CancellationPolicy(free_cancellation=False)
    booking_id = client.post("/bookings", json=payload_factory()).json()["data"]["bookingId"]
    client.post(f"/bookings/{booking_id}/pay")

    preview = client.get(f"/bookings/{booking_id}/cancellation")
    assert preview.status_code == 200
    assert preview.json()["data"]["allowed"] is False

    refused = client.post(f"/bookings/{booking_id}/cancel", json={"reason": "Change of plans"})
    assert refused.status_code == 400
    assert refused.json()["errorCode"] == "CANCELLATION_NOT_ALLOWED"


@pytest.mark.integration
def test_approve_decline_and_cancel(client, payload_factory):
    first = client.post("/bookings", json=payload_factory()).json()["data"]["bookingId"]
    second = client.post("/bookings", json=payload_factory(provider="GUIDE-2")).json()["data"]["bookingId"]

    assert client.post(f"/bookings/{first}/approve").json()["data"]["status"] == "approved"
    declined = client.post(f"/bookings/{second}/decline", json={"reason": "Fully booked"})
    assert declined.json()["data"]["status"] == "declined"

    cancelled = client.post(f"/bookings/{first}/cancel")
    assert cancelled.status_code == 200
    assert cancelled.json()["data"]["status"] == "cancelled"


@pytest.mark.integration
def test_book_endpoint_runs_full_saga(client, payload_factory):
    response = client.post("/bookings/book", json=payload_factory(service_type="accommodation", provider="HOTEL-1"))

    assert response.status_code == 201
    data = response.json()["data"]
    assert data["status"] == "confirmed"
    assert data["reservation"]["holdStatus"] == "confirmed"


@pytest.mark.integration
def test_startup_initialises_logging_and_database():
    with patch("api.routes.init_db") as init_db, patch("api.routes.setup_logging") as setup_logging:
        with TestClient(app):
            pass

    init_db.assert_called_once()
    setup_logging.assert_called_once()


@pytest.mark.integration
def test_error_log_carries_booking_id(client, caplog):
    caplog.set_level(logging.INFO, logger="api.routes")

    client.get("/bookings/BKG_NOPE")

    records = [r for r in caplog.records if r.name == "api.routes" and r.getMessage() == "Request failed"]
    assert records
    assert records[-1].extra_fields["booking_id"] == "BKG_NOPE"
    assert records[-1].extra_fields["error_code"] == "NOT_FOUND"
