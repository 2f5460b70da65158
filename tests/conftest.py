"""
Shared fixtures: in-memory SQLite store, a controllable clock and in-memory
fakes for the hold, payment and provider services.
"""
from datetime import datetime, timedelta, timezone
from itertools import count

import pytest

from availability import ConflictChecker
from booking_errors import HoldExpired, HoldNotFound
from booking_schemas import CancellationPolicy
from booking_tools import HoldResponse
from payments.payment_client import ChargeResult, PaymentStatusResult, RefundResult, processing_fee_for
from persistence.crud import BookingStore
from persistence.db import init_db, make_engine, make_session_factory
from settings import Settings
from txn_manager import TransactionManager

START = datetime(2030, 3, 10, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeHoldClient:
    """Reservation service double; ``holds`` shows the observable hold state."""

    def __init__(self, clock, ttl_minutes: int = 15):
        self.clock = clock
        self.ttl = timedelta(minutes=ttl_minutes)
        self.holds = {}
        self.cancel_calls = []
        self.fail_create_with = None
        self.fail_confirm_with = None
        self._ids = count(1)

    def create_hold(self, resource_id, date_range, quantity, owner_ref):
        if self.fail_create_with is not None:
            raise self.fail_create_with
        hold_id = f"HOLD-{next(self._ids)}"
        self.holds[hold_id] = {"status": "pending", "resource": resource_id, "owner": owner_ref}
        return HoldResponse(hold_id, self.clock() + self.ttl)

    def confirm_hold(self, hold_id, owner_ref, expires_at=None):
        if self.fail_confirm_with is not None:
            raise self.fail_confirm_with
        if expires_at is not None and self.clock() >= expires_at:
            raise HoldExpired(details={"holdId": hold_id})
        hold = self.holds.get(hold_id)
        if hold is None or hold["status"] == "cancelled":
            raise HoldNotFound(details={"holdId": hold_id})
        hold["status"] = "confirmed"
        return f"CONF-{hold_id}"

    def cancel_hold(self, hold_id, reason):
        self.cancel_calls.append(hold_id)
        if hold_id in self.holds:
            self.holds[hold_id]["status"] = "cancelled"
        return True


class FakePaymentClient:
    def __init__(self):
        self.charges = []
        self.refunds = []
        self.decline_with = None
        self.refund_fails = False
        self.on_charge = None
        self._ids = count(1)

    def charge(self, amount, currency, payment_method, customer_ref, booking_ref):
        if self.on_charge is not None:
            self.on_charge(booking_ref)
        if self.decline_with:
            return ChargeResult(False, error_code=self.decline_with)
        transaction_id = f"TXN-{next(self._ids)}"
        self.charges.append({"transaction_id": transaction_id, "amount": amount, "currency": currency,
                             "booking": booking_ref})
        return ChargeResult(True, transaction_id=transaction_id, amount=amount,
                            processing_fee=processing_fee_for(amount, 2.9))

    def refund(self, transaction_id, amount, reason):
        if self.refund_fails:
            return RefundResult(False, error_code="REFUND_ERROR")
        self.refunds.append({"transaction_id": transaction_id, "amount": amount, "reason": reason})
        return RefundResult(True, refund_id=f"REF-{transaction_id}", amount=amount)

    def status(self, transaction_id):
        return PaymentStatusResult(True, status="completed")


class FakeProviderClient:
    def __init__(self):
        self.counts = {}
        self.blocked = []
        self.unblocked = []
        self.policy = CancellationPolicy(free_cancellation=True, free_cancellation_window="1_day_before")
        self.count_fails = False
        # one-shot callbacks run at the start of the named call
        self.hooks = {}

    def _run_hook(self, name):
        hook = self.hooks.pop(name, None)
        if hook is not None:
            hook()

    def update_booking_count(self, service_type, resource_id, increment=1):
        self._run_hook("update_booking_count")
        if self.count_fails:
            raise RuntimeError("provider down")
        self.counts[resource_id] = self.counts.get(resource_id, 0) + increment
        return {"success": True}

    def block_guide_availability(self, guide_id, start, end):
        self._run_hook("block_guide_availability")
        self.blocked.append((guide_id, start, end))
        return {"success": True}

    def unblock_guide_availability(self, guide_id, start, end):
        self.unblocked.append((guide_id, start, end))
        return {"success": True}

    def get_cancellation_policy(self, service_type, service_id):
        return self.policy


@pytest.fixture
def clock():
    return FakeClock(datetime(2030, 3, 1, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def store():
    engine = make_engine("sqlite://")
    init_db(bind=engine)
    yield BookingStore(make_session_factory(engine))
    engine.dispose()


@pytest.fixture
def hold_client(clock):
    return FakeHoldClient(clock)


@pytest.fixture
def payment_client():
    return FakePaymentClient()


@pytest.fixture
def provider_client():
    return FakeProviderClient()


@pytest.fixture
def test_settings():
    return Settings(_env_file=None, default_currency="LKR", payment_required=True)


@pytest.fixture
def manager(store, hold_client, payment_client, provider_client, clock, test_settings):
    return TransactionManager(
        store=store,
        hold_client=hold_client,
        payment_client=payment_client,
        conflict_checker=ConflictChecker(store),
        provider_client=provider_client,
        config=test_settings,
        clock=clock,
    )


def booking_payload(service_type="guide", provider="GUIDE-1", start=START, days=2, amount="100.00",
                    currency="USD", **overrides):
    payload = {
        "serviceType": service_type,
        "serviceId": f"{service_type.upper()}-SVC-1",
        "serviceProvider": provider,
        "serviceName": "City tour",
        "userId": "USER-1",
        "dateRange": {"start": start.isoformat(), "end": (start + timedelta(days=days)).isoformat()},
        "totalAmount": amount,
        "currency": currency,
        "contactInfo": {"email": "traveller@example.com", "phone": "+94771234567"},
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def payload_factory():
    return booking_payload
