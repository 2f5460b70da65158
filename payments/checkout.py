"""
Stripe-backed implementation of the payment client interface
(charge / refund / status), selected with PAYMENT_GATEWAY=stripe.
"""
from decimal import Decimal
from typing import Optional

import stripe

from booking_errors import normalize_payment_error_code
from booking_schemas import to_money
from logging_setup import get_logger, log_with_context
from payments.payment_client import ChargeResult, PaymentStatusResult, RefundResult, processing_fee_for

logger = get_logger(__name__)

# Stripe decline / error codes -> our stable payment error codes
STRIPE_ERROR_CODES = {
    "insufficient_funds": "INSUFFICIENT_FUNDS",
    "card_declined": "CARD_DECLINED",
    "generic_decline": "CARD_DECLINED",
    "do_not_honor": "CARD_DECLINED",
    "expired_card": "EXPIRED_CARD",
    "incorrect_cvc": "INVALID_CVV",
    "invalid_cvc": "INVALID_CVV",
    "incorrect_number": "INVALID_CARD",
    "invalid_number": "INVALID_CARD",
    "invalid_expiry_month": "INVALID_CARD",
    "invalid_expiry_year": "INVALID_CARD",
    "processing_error": "PROCESSING_ERROR",
    "amount_too_small": "AMOUNT_INVALID",
    "amount_too_large": "AMOUNT_INVALID",
}

INTENT_STATUSES = {
    "succeeded": "completed",
    "processing": "pending",
    "requires_capture": "pending",
    "requires_action": "pending",
    "requires_confirmation": "pending",
    "requires_payment_method": "failed",
    "canceled": "failed",
}


def to_minor_units(amount: Decimal) -> int:
    # Stripe expects amounts in cents
    return int((to_money(amount) * 100).to_integral_value())


def from_minor_units(value: int) -> Decimal:
    return to_money(Decimal(value) / 100)


def stripe_error_code(exc: stripe.StripeError) -> str:
    if isinstance(exc, stripe.APIConnectionError):
        return "SERVICE_UNAVAILABLE"
    code = getattr(exc, "code", None)
    error = getattr(exc, "error", None)
    decline_code = getattr(error, "decline_code", None) if error is not None else None
    for candidate in (decline_code, code):
        if candidate in STRIPE_ERROR_CODES:
            return STRIPE_ERROR_CODES[candidate]
    return normalize_payment_error_code(None)


class StripePaymentClient:
    """
    Charges through a confirmed PaymentIntent. ``payment_method`` is a Stripe
    PaymentMethod id (e.g. ``pm_card_visa`` in test mode).
    """

    def __init__(self, api_key: str, processing_fee_percent: float = 2.9):
        self.api_key = api_key
        self.processing_fee_percent = processing_fee_percent

    def charge(
        self,
        amount: Decimal,
        currency: str,
        payment_method: str,
        customer_ref: dict,
        booking_ref: str,
    ) -> ChargeResult:
        amount = to_money(amount)
        try:
            intent = stripe.PaymentIntent.create(
                amount=to_minor_units(amount),
                currency=currency.lower(),
                payment_method=payment_method,
                confirm=True,
                receipt_email=(customer_ref or {}).get("email"),
                # embed the booking id so the dashboard and webhooks can find it
                metadata={"booking_id": booking_ref},
                automatic_payment_methods={"enabled": True, "allow_redirects": "never"},
                idempotency_key=f"charge-{booking_ref}",
                api_key=self.api_key,
            )
        except stripe.StripeError as exc:
            error_code = stripe_error_code(exc)
            log_with_context(
                logger, "warning", "Stripe charge declined",
                booking_id=booking_ref, error_code=error_code, upstream_message=str(exc),
            )
            return ChargeResult(False, error_code=error_code)

        status = INTENT_STATUSES.get(intent["status"], "failed")
        if status == "failed":
            return ChargeResult(False, transaction_id=intent["id"], error_code="CARD_DECLINED")

        log_with_context(logger, "info", "Stripe charge created", booking_id=booking_ref, transaction_id=intent["id"])
        return ChargeResult(
            True,
            transaction_id=intent["id"],
            status=status,
            amount=amount,
            processing_fee=processing_fee_for(amount, self.processing_fee_percent),
            raw={"status": intent["status"]},
        )

    def refund(self, transaction_id: str, amount: Optional[Decimal], reason: str) -> RefundResult:
        params = {
            "payment_intent": transaction_id,
            "metadata": {"reason": reason},
            "api_key": self.api_key,
        }
        if amount is not None:
            params["amount"] = to_minor_units(amount)
        try:
            refund = stripe.Refund.create(**params)
        except stripe.StripeError as exc:
            logger.error("Stripe refund for %s failed: %s", transaction_id, exc)
            return RefundResult(False, error_code="REFUND_ERROR")

        return RefundResult(
            refund["status"] in ("succeeded", "pending"),
            refund_id=refund["id"],
            amount=from_minor_units(refund["amount"]),
            status=refund["status"],
        )

    def status(self, transaction_id: str) -> PaymentStatusResult:
        try:
            intent = stripe.PaymentIntent.retrieve(transaction_id, api_key=self.api_key)
        except stripe.StripeError as exc:
            logger.error("Stripe status check for %s failed: %s", transaction_id, exc)
            return PaymentStatusResult(False)
        return PaymentStatusResult(True, status=INTENT_STATUSES.get(intent["status"], "failed"), raw={"status": intent["status"]})
