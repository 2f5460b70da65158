"""
Payment client for the payment processor service.

    POST /payments/process            -> charge
    POST /payments/refund             -> refund (full when amount is None)
    GET  /payments/{id}/status        -> reconciliation
"""
import secrets
import time
from decimal import Decimal, InvalidOperation
from typing import Optional

import requests

from booking_errors import normalize_payment_error_code, translate_payment_error
from booking_schemas import to_money
from logging_setup import get_logger, log_with_context

logger = get_logger(__name__)

USER_AGENT = "TravelBooking-Saga/1.0"


class ChargeResult:
    def __init__(
        self,
        success: bool,
        transaction_id: str = None,
        status: str = None,
        amount: Decimal = None,
        processing_fee: Decimal = None,
        error_code: str = None,
        raw: dict = None,
    ):
        self.success = success
        self.transaction_id = transaction_id
        self.status = status or ("completed" if success else "failed")
        self.amount = amount
        self.processing_fee = processing_fee
        self.error_code = error_code
        self.message = None if success else translate_payment_error(error_code)
        self.raw = raw or {}


class RefundResult:
    def __init__(self, success: bool, refund_id: str = None, amount: Decimal = None, status: str = None,
                 error_code: str = None):
        self.success = success
        self.refund_id = refund_id
        self.amount = amount
        self.status = status or ("processed" if success else "failed")
        self.error_code = error_code


class PaymentStatusResult:
    def __init__(self, success: bool, status: str = None, raw: dict = None):
        self.success = success
        self.status = status
        self.raw = raw or {}


def generate_transaction_id() -> str:
    return f"TXN-{int(time.time() * 1000)}-{secrets.token_hex(4)}"


def processing_fee_for(amount: Decimal, percent: float) -> Decimal:
    """Fixed-percentage fee, computed once at charge time."""
    return to_money(Decimal(amount) * Decimal(str(percent)) / Decimal(100))


class PaymentClient:
    """
    Talks to the payment service. Declines come back as ``ChargeResult(success=False)``
    with a stable error code; nothing here is retried, to avoid double charging.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout: float = 30.0,
        status_timeout: float = 10.0,
        processing_fee_percent: float = 2.9,
        session: requests.Session = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.status_timeout = status_timeout
        self.processing_fee_percent = processing_fee_percent
        self.session = session or requests.Session()

    @property
    def headers(self) -> dict:
        return {
            "Content-Type": "application/json",
            "User-Agent": USER_AGENT,
            "X-Service-Key": self.api_key,
        }

    @staticmethod
    def _json(resp: requests.Response) -> dict:
        try:
            body = resp.json()
        except ValueError:
            return {}
        return body if isinstance(body, dict) else {}

    def _charged_amounts(self, body: dict, amount: Decimal, booking_ref: str):
        """
        Processed amount and fee from a successful charge. The money is already
        taken, so unreadable figures fall back to what was requested.
        """
        try:
            processed = to_money(body.get("processedAmount", amount))
        except (InvalidOperation, TypeError, ValueError):
            logger.warning("Unreadable processedAmount %r for booking %s", body.get("processedAmount"), booking_ref)
            processed = amount
        fee = body.get("processingFee")
        try:
            fee = to_money(fee) if fee is not None else None
        except (InvalidOperation, TypeError, ValueError):
            logger.warning("Unreadable processingFee %r for booking %s", fee, booking_ref)
            fee = None
        if fee is None:
            fee = processing_fee_for(amount, self.processing_fee_percent)
        return processed, fee

    def charge(
        self,
        amount: Decimal,
        currency: str,
        payment_method: str,
        customer_ref: dict,
        booking_ref: str,
    ) -> ChargeResult:
        amount = to_money(amount)
        payload = {
            "transactionId": generate_transaction_id(),
            "bookingReference": booking_ref,
            "amount": str(amount),
            "currency": currency,
            "paymentMethod": payment_method,
            "customer": customer_ref,
        }
        try:
            resp = self.session.post(
                f"{self.base_url}/payments/process",
                json=payload,
                headers=self.headers,
                timeout=self.timeout,
            )
        except requests.exceptions.Timeout:
            logger.error("Payment service timed out for booking %s", booking_ref)
            return ChargeResult(False, error_code="TIMEOUT")
        except requests.exceptions.RequestException as exc:
            logger.error("Payment service unreachable for booking %s: %s", booking_ref, exc)
            return ChargeResult(False, error_code="SERVICE_UNAVAILABLE")

        body = self._json(resp)
        if resp.status_code >= 500 and "errorCode" not in body:
            logger.error("Payment service error HTTP %s for booking %s", resp.status_code, booking_ref)
            return ChargeResult(False, error_code="SERVICE_UNAVAILABLE", raw=body)

        if body.get("success"):
            processed, fee = self._charged_amounts(body, amount, booking_ref)
            result = ChargeResult(
                True,
                transaction_id=body.get("transactionId") or payload["transactionId"],
                status=body.get("status", "completed"),
                amount=processed,
                processing_fee=fee,
                raw=body,
            )
            log_with_context(
                logger, "info", "Payment processed",
                transaction_id=result.transaction_id, booking_id=booking_ref, amount=str(amount), currency=currency,
            )
            return result

        error_code = normalize_payment_error_code(body.get("errorCode"))
        # upstream text is for the logs only
        log_with_context(
            logger, "warning", "Payment declined",
            booking_id=booking_ref, error_code=error_code, upstream_message=body.get("message"),
        )
        return ChargeResult(False, error_code=error_code, raw=body)

    def refund(self, transaction_id: str, amount: Optional[Decimal], reason: str) -> RefundResult:
        """Refund ``amount`` (None = full). Never raises; failures come back as success=False."""
        payload = {
            "originalTransactionId": transaction_id,
            "refundAmount": str(to_money(amount)) if amount is not None else None,
            "reason": reason,
            "requestId": generate_transaction_id(),
        }
        try:
            resp = self.session.post(
                f"{self.base_url}/payments/refund",
                json=payload,
                headers=self.headers,
                timeout=self.timeout,
            )
            body = self._json(resp)
        except requests.exceptions.RequestException as exc:
            logger.error("Refund for %s failed: %s", transaction_id, exc)
            return RefundResult(False, error_code="SERVICE_UNAVAILABLE")

        if resp.status_code >= 400 or not body.get("success"):
            logger.error("Refund for %s rejected (HTTP %s): %s", transaction_id, resp.status_code, body.get("message"))
            return RefundResult(False, error_code=body.get("errorCode") or "REFUND_ERROR")

        refunded = body.get("refundAmount")
        try:
            refunded = to_money(refunded) if refunded is not None else None
        except (InvalidOperation, TypeError, ValueError):
            logger.warning("Unreadable refundAmount %r for %s", refunded, transaction_id)
            refunded = None
        result = RefundResult(
            True,
            refund_id=body.get("refundTransactionId") or body.get("refundId"),
            amount=refunded,
            status=body.get("status", "processed"),
        )
        log_with_context(logger, "info", "Refund processed", transaction_id=transaction_id, refund_id=result.refund_id)
        return result

    def status(self, transaction_id: str) -> PaymentStatusResult:
        try:
            resp = self.session.get(
                f"{self.base_url}/payments/{transaction_id}/status",
                headers=self.headers,
                timeout=self.status_timeout,
            )
            body = self._json(resp)
        except requests.exceptions.RequestException as exc:
            logger.error("Payment status check for %s failed: %s", transaction_id, exc)
            return PaymentStatusResult(False)

        if resp.status_code >= 400:
            return PaymentStatusResult(False, raw=body)
        return PaymentStatusResult(True, status=body.get("status"), raw=body)
