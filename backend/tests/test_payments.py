import asyncio

import pytest

from marketplace.domain.bookings import service as bookings_service
from marketplace.domain.errors import (
    InputValidationError,
    InvalidStateError,
    InvalidTransitionError,
    NetworkError,
    NotFoundError,
    PaymentFailedError,
    PermissionDeniedError,
    RefundFailedError,
    RefundNotAllowedError,
)
from marketplace.domain.payments import service as payments_service
from marketplace.domain.payments.db_models import Payment
from marketplace.domain.payments.gateway import (
    DisabledGateway,
    GatewayOutcome,
    ResilientGateway,
    SimulatedGateway,
)
from marketplace.domain.payments.schemas import PaymentCreateRequest, PaymentMethod
from marketplace.shared.circuit_breaker import CircuitBreaker
from tests.conftest import booking_request, seed_customer_and_worker

DECLINED = GatewayOutcome(approved=False, reason="insufficient_funds")


class RaisingGateway:
    def __init__(self, exc: BaseException) -> None:
        self.exc = exc

    async def attempt(self, amount, method):
        raise self.exc

    async def refund(self, amount, transaction_id):
        raise self.exc


async def _booking(async_session_maker):
    await seed_customer_and_worker(async_session_maker)
    async with async_session_maker() as session:
        booking = await bookings_service.create_booking(session, "c1", booking_request())
    return booking.booking_id


async def _paid_payment(async_session_maker, gateway, amount=1000.0):
    booking_id = await _booking(async_session_maker)
    async with async_session_maker() as session:
        payment = await payments_service.initiate_payment(
            session,
            PaymentCreateRequest(booking_id=booking_id, amount=amount, method=PaymentMethod.credit_card),
        )
        await payments_service.process_payment(session, payment.payment_id, gateway=gateway)
    return booking_id, payment.payment_id


@pytest.mark.anyio
async def test_upi_requires_upi_id(async_session_maker):
    booking_id = await _booking(async_session_maker)
    async with async_session_maker() as session:
        with pytest.raises(InputValidationError):
            await payments_service.initiate_payment(
                session, PaymentCreateRequest(booking_id=booking_id, amount=500, method="upi")
            )
        with pytest.raises(InputValidationError):
            await payments_service.initiate_payment(
                session,
                PaymentCreateRequest(booking_id=booking_id, amount=500, method="upi", upi_id="   "),
            )
        payment = await payments_service.initiate_payment(
            session,
            PaymentCreateRequest(booking_id=booking_id, amount=500, method="upi", upi_id="x@bank"),
        )

    assert payment.status == "pending"
    assert payment.upi_id == "x@bank"
    assert payment.party_id == "c1"
    assert payment.transaction_id is None


@pytest.mark.anyio
async def test_initiate_payment_checks_booking_and_payer(async_session_maker):
    booking_id = await _booking(async_session_maker)
    async with async_session_maker() as session:
        with pytest.raises(NotFoundError):
            await payments_service.initiate_payment(
                session, PaymentCreateRequest(booking_id="missing", amount=10, method="cash")
            )
        with pytest.raises(PermissionDeniedError):
            await payments_service.initiate_payment(
                session,
                PaymentCreateRequest(booking_id=booking_id, amount=10, method="cash"),
                actor_id="w1",
            )
        await bookings_service.update_status(session, booking_id, "cancelled")
        with pytest.raises(InvalidStateError):
            await payments_service.initiate_payment(
                session, PaymentCreateRequest(booking_id=booking_id, amount=10, method="cash")
            )


@pytest.mark.anyio
async def test_approved_payment_completes_and_marks_booking_paid(async_session_maker, gateway, notifier):
    booking_id = await _booking(async_session_maker)
    async with async_session_maker() as session:
        payment = await payments_service.initiate_payment(
            session,
            PaymentCreateRequest(booking_id=booking_id, amount=1200, method="debit_card"),
            actor_id="c1",
        )
        processed = await payments_service.process_payment(
            session, payment.payment_id, gateway=gateway, actor_id="c1", notifier=notifier
        )

    assert processed.status == "completed"
    assert processed.transaction_id == "txn_1"
    assert gateway.calls == [("attempt", 1200)]
    assert notifier.events_for("c1") == ["payment_completed"]

    async with async_session_maker() as session:
        booking = await bookings_service.get_booking(session, booking_id)
        assert booking.payment_status == "paid"
        assert booking.payment_id == payment.payment_id
        assert booking.status == "pending"
        with pytest.raises(InvalidStateError):
            await payments_service.initiate_payment(
                session, PaymentCreateRequest(booking_id=booking_id, amount=10, method="cash")
            )


@pytest.mark.anyio
async def test_declined_payment_is_persisted_as_failed(async_session_maker, gateway, notifier):
    booking_id = await _booking(async_session_maker)
    gateway.push(DECLINED)
    async with async_session_maker() as session:
        payment = await payments_service.initiate_payment(
            session, PaymentCreateRequest(booking_id=booking_id, amount=300, method="wallet")
        )
        with pytest.raises(PaymentFailedError):
            await payments_service.process_payment(
                session, payment.payment_id, gateway=gateway, notifier=notifier
            )

    async with async_session_maker() as session:
        stored = await payments_service.get_payment(session, payment.payment_id)
        assert stored.status == "failed"
        assert stored.failure_reason == "insufficient_funds"
        assert stored.transaction_id is None
        booking = await bookings_service.get_booking(session, booking_id)
        assert booking.payment_status == "unpaid"
        # failed is terminal for the payment record
        with pytest.raises(InvalidTransitionError):
            await payments_service.process_payment(session, payment.payment_id, gateway=gateway)
    assert notifier.events_for("c1") == ["payment_failed"]


@pytest.mark.anyio
async def test_gateway_outage_marks_payment_failed_and_reraises(async_session_maker, gateway):
    booking_id = await _booking(async_session_maker)
    gateway.push(NetworkError(detail="down"))
    async with async_session_maker() as session:
        payment = await payments_service.initiate_payment(
            session, PaymentCreateRequest(booking_id=booking_id, amount=300, method="cash")
        )
        with pytest.raises(NetworkError):
            await payments_service.process_payment(session, payment.payment_id, gateway=gateway)

    async with async_session_maker() as session:
        stored = await payments_service.get_payment(session, payment.payment_id)
    assert stored.status == "failed"
    assert stored.failure_reason == "gateway_unavailable"


@pytest.mark.anyio
@pytest.mark.parametrize("exc", [RuntimeError("connection reset"), asyncio.CancelledError()])
async def test_interrupted_gateway_call_closes_payment_as_failed(async_session_maker, exc):
    booking_id = await _booking(async_session_maker)
    async with async_session_maker() as session:
        payment = await payments_service.initiate_payment(
            session, PaymentCreateRequest(booking_id=booking_id, amount=300, method="cash")
        )
        with pytest.raises(type(exc)):
            await payments_service.process_payment(
                session, payment.payment_id, gateway=RaisingGateway(exc)
            )

    async with async_session_maker() as session:
        stored = await payments_service.get_payment(session, payment.payment_id)
        assert stored.status == "failed"
        assert stored.failure_reason == "gateway_interrupted"
        booking = await bookings_service.get_booking(session, booking_id)
        assert booking.payment_status == "unpaid"
        retry = await payments_service.initiate_payment(
            session, PaymentCreateRequest(booking_id=booking_id, amount=300, method="cash")
        )
    assert retry.status == "pending"


@pytest.mark.anyio
async def test_booking_takes_one_open_payment_at_a_time(async_session_maker):
    booking_id = await _booking(async_session_maker)
    request = PaymentCreateRequest(booking_id=booking_id, amount=100, method="cash")
    async with async_session_maker() as session:
        first = await payments_service.initiate_payment(session, request)
        with pytest.raises(InvalidStateError):
            await payments_service.initiate_payment(session, request)
        await payments_service.cancel_payment(session, first.payment_id)
        second = await payments_service.initiate_payment(session, request)
    assert second.status == "pending"
    assert second.payment_id != first.payment_id


@pytest.mark.anyio
async def test_paid_booking_is_never_charged_twice(async_session_maker, gateway):
    booking_id = await _booking(async_session_maker)
    async with async_session_maker() as session:
        first = await payments_service.initiate_payment(
            session, PaymentCreateRequest(booking_id=booking_id, amount=1000, method="cash")
        )
        duplicate = Payment(
            booking_id=booking_id, party_id="c1", amount=1000, method="cash", status="pending"
        )
        session.add(duplicate)
        await session.commit()

        await payments_service.process_payment(session, first.payment_id, gateway=gateway)
        with pytest.raises(InvalidStateError):
            await payments_service.process_payment(session, duplicate.payment_id, gateway=gateway)

    async with async_session_maker() as session:
        booking = await bookings_service.get_booking(session, booking_id)
        stored = await payments_service.get_payment(session, duplicate.payment_id)
    assert gateway.calls == [("attempt", 1000)]
    assert booking.payment_id == first.payment_id
    assert stored.status == "pending"


@pytest.mark.anyio
async def test_only_pending_payments_can_be_cancelled(async_session_maker, gateway):
    booking_id, payment_id = await _paid_payment(async_session_maker, gateway)
    async with async_session_maker() as session:
        with pytest.raises(InvalidTransitionError):
            await payments_service.cancel_payment(session, payment_id)

    async with async_session_maker() as session:
        booking = await bookings_service.create_booking(session, "c1", booking_request())
        pending = await payments_service.initiate_payment(
            session, PaymentCreateRequest(booking_id=booking.booking_id, amount=50, method="cash")
        )
        with pytest.raises(PermissionDeniedError):
            await payments_service.cancel_payment(session, pending.payment_id, actor_id="w1")
        cancelled = await payments_service.cancel_payment(session, pending.payment_id, actor_id="c1")
    assert cancelled.status == "cancelled"


@pytest.mark.anyio
async def test_full_refund_marks_payment_refunded(async_session_maker, gateway, notifier):
    booking_id, payment_id = await _paid_payment(async_session_maker, gateway, amount=800)
    async with async_session_maker() as session:
        refund = await payments_service.initiate_refund(session, payment_id, "job cancelled")
        assert refund.status == "pending"
        assert refund.amount == 800
        processed = await payments_service.process_refund(
            session, refund.refund_id, gateway=gateway, notifier=notifier
        )

    assert processed.status == "completed"
    assert processed.transaction_id.startswith("rfnd_")
    assert processed.processed_at is not None
    async with async_session_maker() as session:
        payment = await payments_service.get_payment(session, payment_id)
        assert payment.status == "refunded"
        assert payment.refund_amount == 800
        assert payment.refund_amount <= payment.amount
        assert payment.refund_date is not None
        booking = await bookings_service.get_booking(session, booking_id)
        assert booking.payment_status == "refunded"
        with pytest.raises(RefundNotAllowedError):
            await payments_service.initiate_refund(session, payment_id, "again")
    assert notifier.events_for("c1") == ["refund_completed"]


@pytest.mark.anyio
async def test_partial_refund_amount_bounds(async_session_maker, gateway):
    _, payment_id = await _paid_payment(async_session_maker, gateway, amount=1000)
    async with async_session_maker() as session:
        with pytest.raises(InputValidationError):
            await payments_service.initiate_refund(session, payment_id, "too much", 1000.01)
        with pytest.raises(InputValidationError):
            await payments_service.initiate_refund(session, payment_id, "nothing", 0)
        with pytest.raises(InputValidationError):
            await payments_service.initiate_refund(session, payment_id, "  ")
        refund = await payments_service.initiate_refund(session, payment_id, "partial", 250)
        await payments_service.process_refund(session, refund.refund_id, gateway=gateway)
        payment = await payments_service.get_payment(session, payment_id)
        # a partial refund closes the payment; the remainder is not refundable
        with pytest.raises(RefundNotAllowedError):
            await payments_service.initiate_refund(session, payment_id, "the rest", 750)
    assert payment.refund_amount == 250
    assert payment.status == "refunded"


@pytest.mark.anyio
async def test_interrupted_refund_is_closed_as_failed(async_session_maker, gateway):
    _, payment_id = await _paid_payment(async_session_maker, gateway)
    async with async_session_maker() as session:
        refund = await payments_service.initiate_refund(session, payment_id, "job cancelled")
        with pytest.raises(RuntimeError):
            await payments_service.process_refund(
                session, refund.refund_id, gateway=RaisingGateway(RuntimeError("timeout"))
            )

    async with async_session_maker() as session:
        stored = await payments_service.get_refund(session, refund.refund_id)
        payment = await payments_service.get_payment(session, payment_id)
        assert stored.status == "failed"
        assert stored.failure_reason == "gateway_interrupted"
        assert payment.status == "completed"
        retry = await payments_service.initiate_refund(session, payment_id, "job cancelled")
    assert retry.status == "pending"


@pytest.mark.anyio
async def test_open_refund_blocks_another(async_session_maker, gateway):
    _, payment_id = await _paid_payment(async_session_maker, gateway)
    async with async_session_maker() as session:
        await payments_service.initiate_refund(session, payment_id, "first")
        with pytest.raises(RefundNotAllowedError):
            await payments_service.initiate_refund(session, payment_id, "second")


@pytest.mark.anyio
async def test_declined_refund_leaves_payment_completed(async_session_maker, gateway):
    _, payment_id = await _paid_payment(async_session_maker, gateway)
    gateway.push(GatewayOutcome(approved=False, reason="refund_declined"))
    async with async_session_maker() as session:
        refund = await payments_service.initiate_refund(session, payment_id, "changed mind")
        with pytest.raises(RefundFailedError):
            await payments_service.process_refund(session, refund.refund_id, gateway=gateway)

    async with async_session_maker() as session:
        payment = await payments_service.get_payment(session, payment_id)
        stored = await payments_service.get_refund(session, refund.refund_id)
        assert payment.status == "completed"
        assert payment.refund_amount is None
        assert stored.status == "failed"
        assert stored.failure_reason == "refund_declined"
        # a failed attempt no longer blocks a new request
        retry = await payments_service.initiate_refund(session, payment_id, "changed mind")
        refunds = await payments_service.list_refunds(session, payment_id)
    assert [item.refund_id for item in refunds] == [refund.refund_id, retry.refund_id]


@pytest.mark.anyio
async def test_refund_requires_completed_payment(async_session_maker):
    booking_id = await _booking(async_session_maker)
    async with async_session_maker() as session:
        payment = await payments_service.initiate_payment(
            session, PaymentCreateRequest(booking_id=booking_id, amount=90, method="cash")
        )
        with pytest.raises(RefundNotAllowedError):
            await payments_service.initiate_refund(session, payment.payment_id, "not paid yet")


@pytest.mark.anyio
async def test_analytics_counts_every_payment(async_session_maker, gateway):
    async with async_session_maker() as session:
        empty = await payments_service.get_analytics(session, "c1")
    assert empty.total_payments == 0
    assert empty.success_rate == 0.0

    booking_id, _ = await _paid_payment(async_session_maker, gateway, amount=1000)
    gateway.push(DECLINED)
    async with async_session_maker() as session:
        booking = await bookings_service.create_booking(session, "c1", booking_request())
        failed = await payments_service.initiate_payment(
            session, PaymentCreateRequest(booking_id=booking.booking_id, amount=200, method="cash")
        )
        with pytest.raises(PaymentFailedError):
            await payments_service.process_payment(session, failed.payment_id, gateway=gateway)
        await payments_service.initiate_payment(
            session, PaymentCreateRequest(booking_id=booking.booking_id, amount=300, method="cash")
        )
        analytics = await payments_service.get_analytics(session, "c1")
        history = await payments_service.list_payments(session, "c1")

    assert analytics.total_payments == 3
    assert analytics.total_amount == pytest.approx(1500)
    assert analytics.completed_count == 1
    assert analytics.failed_count == 1
    assert analytics.refunded_count == 0
    assert analytics.success_rate == pytest.approx(1 / 3)
    assert len(history) == 3


@pytest.mark.anyio
async def test_open_circuit_surfaces_network_error():
    breaker = CircuitBreaker(name="test_gateway", failure_threshold=2, recovery_time=60)
    gateway = ResilientGateway(DisabledGateway(), breaker)

    for _ in range(2):
        with pytest.raises(NetworkError):
            await gateway.attempt(100, PaymentMethod.cash)
    assert breaker.state == "open"

    with pytest.raises(NetworkError) as excinfo:
        await gateway.attempt(100, PaymentMethod.cash)
    assert "try again later" in excinfo.value.detail


@pytest.mark.anyio
async def test_declines_do_not_trip_the_circuit():
    breaker = CircuitBreaker(name="test_declines", failure_threshold=1, recovery_time=60)
    gateway = ResilientGateway(SimulatedGateway(success_rate=0.0, seed=7), breaker)

    for _ in range(3):
        outcome = await gateway.attempt(100, PaymentMethod.credit_card)
        assert outcome.approved is False
    assert breaker.state == "closed"


@pytest.mark.anyio
async def test_simulated_gateway_is_reproducible_with_seed():
    first = SimulatedGateway(seed=42)
    second = SimulatedGateway(seed=42)
    results_first = [await first.attempt(10, PaymentMethod.upi) for _ in range(20)]
    results_second = [await second.attempt(10, PaymentMethod.upi) for _ in range(20)]
    assert results_first == results_second

    always = SimulatedGateway(success_rate=1.0, upi_success_rate=1.0, refund_success_rate=1.0, seed=1)
    assert (await always.attempt(10, PaymentMethod.net_banking)).approved
    refund = await always.refund(10, "txn_1")
    assert refund.approved and refund.transaction_id.startswith("rfnd_")
