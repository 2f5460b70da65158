from contextlib import asynccontextmanager
from functools import lru_cache
from typing import Any, Optional

from fastapi import Body, Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from availability import ConflictChecker
from booking_errors import BookingError, ValidationError
from booking_tools import ReservationHoldClient
from logging_setup import get_correlation_id, get_logger, log_with_context, set_correlation_id, setup_logging
from payments.checkout import StripePaymentClient
from payments.payment_client import PaymentClient
from persistence.crud import BookingStore
from persistence.db import SessionLocal, init_db
from provider_client import ProviderClient
from settings import settings
from txn_manager import TransactionManager

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging(settings.log_level, settings.log_json)
    # initialize DB (creates tables)
    init_db()
    yield


app = FastAPI(title="Booking Saga Service", lifespan=lifespan)


def build_payment_client():
    if settings.payment_gateway == "stripe":
        return StripePaymentClient(settings.stripe_api_key, settings.processing_fee_percent)
    return PaymentClient(
        settings.payment_service_url,
        settings.payment_service_api_key,
        timeout=settings.payment_timeout_seconds,
        status_timeout=settings.payment_status_timeout_seconds,
        processing_fee_percent=settings.processing_fee_percent,
    )


@lru_cache()
def get_manager() -> TransactionManager:
    store = BookingStore(SessionLocal)
    return TransactionManager(
        store=store,
        hold_client=ReservationHoldClient(
            settings.reservation_service_url,
            timeout=settings.hold_timeout_seconds,
            ttl_minutes=settings.hold_ttl_minutes,
        ),
        payment_client=build_payment_client(),
        conflict_checker=ConflictChecker(
            store,
            guide_approval_locks_calendar=settings.guide_approval_locks_calendar,
            checked_service_types=settings.conflict_checked_service_types,
        ),
        provider_client=ProviderClient(settings.provider_service_url, timeout=settings.provider_timeout_seconds),
        config=settings,
    )


def envelope(message: str, data: Any = None, status_code: int = 200) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": True, "message": message, "data": data})


def booking_data(booking) -> dict:
    return booking.model_dump(mode="json", by_alias=True)


@app.exception_handler(BookingError)
async def booking_error_handler(request: Request, exc: BookingError):
    level = "error" if exc.http_status >= 500 else "info"
    booking_id = request.path_params.get("booking_id") or get_correlation_id()
    log_with_context(logger, level, "Request failed", error_code=exc.error_code, method=request.method,
                     path=request.url.path, booking_id=booking_id)
    return JSONResponse(status_code=exc.http_status, content=exc.to_response())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = [{"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]} for err in exc.errors()]
    error = ValidationError(details={"errors": errors})
    return JSONResponse(status_code=error.http_status, content=error.to_response())


@app.post("/bookings")
def create_booking(payload: dict = Body(...), manager: TransactionManager = Depends(get_manager)):
    booking = manager.create(payload)
    return envelope("Booking created successfully", booking_data(booking), status_code=201)


@app.post("/bookings/book")
def book(payload: dict = Body(...), manager: TransactionManager = Depends(get_manager)):
    """Create, hold, charge and confirm in one call."""
    booking = manager.book(payload)
    return envelope("Booking confirmed", booking_data(booking), status_code=201)


@app.get("/bookings/{booking_id}")
def get_booking(booking_id: str, manager: TransactionManager = Depends(get_manager)):
    return envelope("Booking retrieved", booking_data(manager.get(booking_id)))


@app.post("/bookings/{booking_id}/approve")
def approve_booking(booking_id: str, manager: TransactionManager = Depends(get_manager)):
    return envelope("Booking approved", booking_data(manager.approve(booking_id)))


@app.post("/bookings/{booking_id}/decline")
def decline_booking(booking_id: str, payload: Optional[dict] = Body(None),
                    manager: TransactionManager = Depends(get_manager)):
    reason = (payload or {}).get("reason")
    return envelope("Booking declined", booking_data(manager.decline(booking_id, reason)))


@app.post("/bookings/{booking_id}/pay")
def pay_booking(booking_id: str, manager: TransactionManager = Depends(get_manager)):
    set_correlation_id(booking_id)
    return envelope("Payment completed and booking confirmed", booking_data(manager.pay(booking_id)))


@app.get("/bookings/{booking_id}/cancellation")
def preview_cancellation(booking_id: str, manager: TransactionManager = Depends(get_manager)):
    decision = manager.evaluate_cancellation(booking_id)
    return envelope("Cancellation policy evaluated", decision.to_dict())


@app.post("/bookings/{booking_id}/cancel")
def cancel_booking(booking_id: str, payload: Optional[dict] = Body(None),
                   manager: TransactionManager = Depends(get_manager)):
    reason = (payload or {}).get("reason") or "User cancellation"
    return envelope("Booking cancelled", booking_data(manager.cancel(booking_id, reason)))


@app.post("/bookings/{booking_id}/complete")
def complete_booking(booking_id: str, manager: TransactionManager = Depends(get_manager)):
    return envelope("Booking completed", booking_data(manager.complete(booking_id)))
