"""
Tests for the reservation hold client, with the HTTP session mocked.
"""
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
import requests

from booking_errors import HoldExpired, HoldNotFound, ResourceUnavailable, UpstreamUnavailable
from booking_schemas import DateRange
from booking_tools import ReservationHoldClient

NOW = datetime(2030, 4, 1, 12, 0, tzinfo=timezone.utc)
RANGE = DateRange(start=NOW + timedelta(days=5), end=NOW + timedelta(days=7))


def response(status_code=200, body=None):
    resp = MagicMock()
    resp.status_code = status_code
    resp.json.return_value = body if body is not None else {}
    return resp


@pytest.fixture
def session():
    return MagicMock()


@pytest.fixture
def client(session):
    return ReservationHoldClient("http://reservations.test/", timeout=10, session=session, clock=lambda: NOW)


@pytest.mark.unit
def test_create_hold_posts_with_timeout(client, session):
    session.request.return_value = response(201, {"success": True, "holdId": "HOLD-9",
                                                  "expiresAt": "2030-04-01T12:15:00Z"})

    hold = client.create_hold("ROOM-1", RANGE, 2, "BKG_1")

    assert hold.hold_id == "HOLD-9"
    assert hold.expires_at == NOW + timedelta(minutes=15)
    args, kwargs = session.request.call_args
    assert args == ("POST", "http://reservations.test/reservations")
    assert kwargs["timeout"] == 10
    assert kwargs["json"]["quantity"] == 2
    assert kwargs["json"]["holdDuration"] == 15


@pytest.mark.unit
def test_create_hold_defaults_expiry_to_ttl(client, session):
    session.request.return_value = response(200, {"success": True, "reservationId": "RES-1"})

    hold = client.create_hold("ROOM-1", RANGE, 1, "BKG_1")

    assert hold.hold_id == "RES-1"
    assert hold.expires_at == NOW + timedelta(minutes=15)


@pytest.mark.unit
def test_no_capacity_is_resource_unavailable(client, session):
    session.request.return_value = response(409, {"success": False, "errorCode": "NO_AVAILABILITY"})

    with pytest.raises(ResourceUnavailable):
        client.create_hold("ROOM-1", RANGE, 1, "BKG_1")


@pytest.mark.unit
def test_timeout_is_upstream_unavailable(client, session):
    session.request.side_effect = requests.exceptions.Timeout()

    with pytest.raises(UpstreamUnavailable):
        client.create_hold("ROOM-1", RANGE, 1, "BKG_1")


@pytest.mark.unit
def test_confirm_after_expiry_does_not_call_downstream(client, session):
    with pytest.raises(HoldExpired):
        client.confirm_hold("HOLD-9", "BKG_1", expires_at=NOW - timedelta(seconds=1))

    session.request.assert_not_called()


@pytest.mark.unit
def test_confirm_maps_gone_and_missing_holds(client, session):
    session.request.return_value = response(410, {"success": False})
    with pytest.raises(HoldExpired):
        client.confirm_hold("HOLD-9", "BKG_1")

    session.request.return_value = response(404, {"success": False})
    with pytest.raises(HoldNotFound):
        client.confirm_hold("HOLD-9", "BKG_1")


@pytest.mark.unit
def test_confirm_returns_confirmation_id(client, session):
    session.request.return_value = response(200, {"success": True, "confirmationId": "CONF-77"})

    assert client.confirm_hold("HOLD-9", "BKG_1", expires_at=NOW + timedelta(minutes=5)) == "CONF-77"


@pytest.mark.unit
def test_cancel_hold_is_idempotent(client, session):
    session.request.side_effect = [response(200, {"success": True}), response(404, {"success": False})]

    assert client.cancel_hold("HOLD-9", "Payment failed") is True
    assert client.cancel_hold("HOLD-9", "Payment failed") is True


@pytest.mark.unit
def test_cancel_hold_failure_returns_false(client, session):
    session.request.side_effect = requests.exceptions.ConnectionError()

    assert client.cancel_hold("HOLD-9", "Payment failed") is False
