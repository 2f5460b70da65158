"""
Reservation hold client: time-bounded holds against a downstream inventory service.

    POST   /reservations              -> create a hold
    POST   /reservations/{id}/confirm -> confirm it
    DELETE /reservations/{id}         -> cancel it
"""
from datetime import datetime, timedelta
from typing import Callable, Optional

import requests

from booking_errors import HoldExpired, HoldNotFound, ResourceUnavailable, UpstreamUnavailable
from booking_schemas import DateRange, ensure_utc, utcnow
from logging_setup import get_logger, log_with_context

logger = get_logger(__name__)

NO_CAPACITY_CODES = ("NO_AVAILABILITY", "RESOURCE_UNAVAILABLE", "SOLD_OUT")


class HoldResponse:
    def __init__(self, hold_id: str, expires_at: datetime, temp_hold_id: str = None, raw: dict = None):
        self.hold_id = hold_id
        self.expires_at = expires_at
        self.temp_hold_id = temp_hold_id or hold_id
        self.raw = raw or {}


def _parse_datetime(value) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    return ensure_utc(datetime.fromisoformat(str(value).replace("Z", "+00:00")))


class ReservationHoldClient:
    """
    Issues, confirms and cancels holds. Network errors and timeouts become
    UpstreamUnavailable; nothing is retried here.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        ttl_minutes: int = 15,
        session: requests.Session = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.ttl = timedelta(minutes=ttl_minutes)
        self.session = session or requests.Session()
        self.clock = clock

    def _request(self, method: str, path: str, **kwargs) -> requests.Response:
        url = f"{self.base_url}{path}"
        try:
            return self.session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.exceptions.Timeout as exc:
            logger.error("Reservation service timed out: %s %s", method, url)
            raise UpstreamUnavailable(details={"service": "reservation"}) from exc
        except requests.exceptions.RequestException as exc:
            logger.error("Reservation service unreachable: %s %s (%s)", method, url, exc)
            raise UpstreamUnavailable(details={"service": "reservation"}) from exc

    @staticmethod
    def _json(resp: requests.Response) -> dict:
        try:
            body = resp.json()
        except ValueError:
            return {}
        return body if isinstance(body, dict) else {}

    def create_hold(self, resource_id: str, date_range: DateRange, quantity: int, owner_ref: str) -> HoldResponse:
        """
        Place a hold on ``quantity`` units of ``resource_id`` for ``date_range``.

        Raises:
            ResourceUnavailable: the downstream reports no capacity
            UpstreamUnavailable: network error, timeout or 5xx
        """
        payload = {
            "resourceId": resource_id,
            "startDate": date_range.start.isoformat(),
            "endDate": date_range.end.isoformat(),
            "quantity": quantity,
            "bookingReference": owner_ref,
            "holdDuration": int(self.ttl.total_seconds() // 60),
        }
        resp = self._request("POST", "/reservations", json=payload)
        body = self._json(resp)

        if resp.status_code == 409 or body.get("errorCode") in NO_CAPACITY_CODES:
            log_with_context(logger, "warning", "No capacity for hold", resource_id=resource_id, booking_id=owner_ref)
            raise ResourceUnavailable(details={"resourceId": resource_id})
        if resp.status_code >= 400 or body.get("success") is False:
            logger.error("Hold creation failed with HTTP %s: %s", resp.status_code, body.get("message"))
            raise UpstreamUnavailable(details={"service": "reservation"})

        hold_id = body.get("holdId") or body.get("reservationId")
        if not hold_id:
            logger.error("Reservation service returned no hold id")
            raise UpstreamUnavailable(details={"service": "reservation"})

        expires_at = _parse_datetime(body.get("expiresAt") or body.get("holdUntil"))
        if expires_at is None:
            expires_at = self.clock() + self.ttl

        log_with_context(logger, "info", "Hold created", hold_id=hold_id, booking_id=owner_ref, expires_at=expires_at)
        return HoldResponse(hold_id, expires_at, temp_hold_id=body.get("tempReservationId"), raw=body)

    def confirm_hold(self, hold_id: str, owner_ref: str, expires_at: Optional[datetime] = None) -> str:
        """
        Turn a hold into a firm reservation and return the confirmation id.

        A hold past ``expires_at`` is treated as gone without calling downstream.

        Raises:
            HoldExpired: past expiry, or the downstream answers 410
            HoldNotFound: the hold was cancelled (404)
            UpstreamUnavailable: network error, timeout or 5xx
        """
        if expires_at is not None and self.clock() >= ensure_utc(expires_at):
            raise HoldExpired(details={"holdId": hold_id})

        resp = self._request("POST", f"/reservations/{hold_id}/confirm", json={"bookingReference": owner_ref})
        body = self._json(resp)

        if resp.status_code == 410 or body.get("errorCode") == "HOLD_EXPIRED":
            raise HoldExpired(details={"holdId": hold_id})
        if resp.status_code == 404:
            raise HoldNotFound(details={"holdId": hold_id})
        if resp.status_code >= 400 or body.get("success") is False:
            logger.error("Hold confirmation failed with HTTP %s: %s", resp.status_code, body.get("message"))
            raise UpstreamUnavailable(details={"service": "reservation"})

        confirmation_id = body.get("confirmationId") or body.get("confirmationNumber") or hold_id
        log_with_context(logger, "info", "Hold confirmed", hold_id=hold_id, confirmation_id=confirmation_id)
        return confirmation_id

    def cancel_hold(self, hold_id: str, reason: str) -> bool:
        """
        Release a hold. Idempotent: an already cancelled or expired hold counts as
        success. Failures are logged and reported as False, never raised.
        """
        try:
            resp = self._request("DELETE", f"/reservations/{hold_id}", json={"reason": reason})
        except UpstreamUnavailable:
            logger.error("Could not cancel hold %s: reservation service unavailable", hold_id)
            return False

        if resp.status_code in (404, 410) or resp.status_code < 300:
            log_with_context(logger, "info", "Hold released", hold_id=hold_id, reason=reason)
            return True

        logger.error("Could not cancel hold %s: HTTP %s", hold_id, resp.status_code)
        return False
