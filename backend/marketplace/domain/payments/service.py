from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.domain.bookings import service as bookings_service
from marketplace.domain.bookings.db_models import Booking
from marketplace.domain.bookings.schemas import BookingPaymentStatus, BookingStatus
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
from marketplace.domain.parties.db_models import Party
from marketplace.domain.payments.db_models import Payment, Refund
from marketplace.domain.payments.gateway import PaymentGateway
from marketplace.domain.payments.schemas import (
    OPEN_PAYMENT_STATUSES,
    OPEN_REFUND_STATUSES,
    PAYMENT_TRANSITIONS,
    REFUND_TRANSITIONS,
    PaymentAnalytics,
    PaymentCreateRequest,
    PaymentMethod,
    PaymentStatus,
    RefundStatus,
)
from marketplace.infra import locks as entity_locks
from marketplace.infra.locks import EntityLocks
from marketplace.infra.metrics import metrics
from marketplace.infra.push import PushNotification, PushNotifier, dispatch

logger = logging.getLogger(__name__)

PAYMENT_LOCK = "payment"
REFUND_LOCK = "refund"
GATEWAY_UNAVAILABLE = "gateway_unavailable"
GATEWAY_INTERRUPTED = "gateway_interrupted"


def assert_valid_payment_transition(current: str, target: PaymentStatus) -> None:
    if target not in PAYMENT_TRANSITIONS[PaymentStatus(current)]:
        raise InvalidTransitionError(
            detail=f"Cannot transition payment from {current} to {target.value}"
        )


def assert_valid_refund_transition(current: str, target: RefundStatus) -> None:
    if target not in REFUND_TRANSITIONS[RefundStatus(current)]:
        raise InvalidTransitionError(
            detail=f"Cannot transition refund from {current} to {target.value}"
        )


def _assert_payer(payment: Payment, actor_id: str | None) -> None:
    if actor_id is not None and actor_id != payment.party_id:
        raise PermissionDeniedError(detail="Only the payer may act on this payment")


def _assert_not_paid(booking: Booking) -> None:
    if booking.payment_status == BookingPaymentStatus.paid.value:
        raise InvalidStateError(detail=f"Booking {booking.booking_id} is already paid")


async def _commit(session: AsyncSession, commit: bool) -> None:
    if commit:
        await session.commit()
    else:
        await session.flush()


async def _notify_payer(
    session: AsyncSession,
    notifier: PushNotifier | None,
    party_id: str,
    event: str,
    title: str,
    body: str,
    **data,
) -> None:
    if notifier is None:
        return
    party = await session.get(Party, party_id)
    if party is None:
        return
    await dispatch(
        notifier,
        PushNotification(
            party_id=party_id,
            event=event,
            title=title,
            body=body,
            device_token=party.device_token,
            data=data,
        ),
    )


async def get_payment(
    session: AsyncSession,
    payment_id: str,
    *,
    actor_id: str | None = None,
    for_update: bool = False,
) -> Payment:
    stmt = sa.select(Payment).where(Payment.payment_id == payment_id)
    if for_update:
        stmt = stmt.with_for_update()
    payment = await session.scalar(stmt)
    if payment is None:
        raise NotFoundError(detail=f"Payment {payment_id} not found")
    _assert_payer(payment, actor_id)
    return payment


async def get_refund(session: AsyncSession, refund_id: str, *, for_update: bool = False) -> Refund:
    stmt = sa.select(Refund).where(Refund.refund_id == refund_id)
    if for_update:
        stmt = stmt.with_for_update()
    refund = await session.scalar(stmt)
    if refund is None:
        raise NotFoundError(detail=f"Refund {refund_id} not found")
    return refund


async def list_payments(session: AsyncSession, party_id: str) -> list[Payment]:
    stmt = (
        sa.select(Payment)
        .where(Payment.party_id == party_id)
        .order_by(Payment.payment_date.desc(), Payment.payment_id.desc())
    )
    return list((await session.execute(stmt)).scalars().all())


async def list_refunds(session: AsyncSession, payment_id: str) -> list[Refund]:
    stmt = (
        sa.select(Refund)
        .where(Refund.payment_id == payment_id)
        .order_by(Refund.created_at.asc(), Refund.refund_id.asc())
    )
    return list((await session.execute(stmt)).scalars().all())


async def initiate_payment(
    session: AsyncSession,
    payload: PaymentCreateRequest,
    *,
    actor_id: str | None = None,
    locks: EntityLocks | None = None,
    commit: bool = True,
) -> Payment:
    if payload.amount <= 0:
        raise InputValidationError(detail="amount must be greater than zero")
    if payload.method == PaymentMethod.upi and not payload.upi_id:
        raise InputValidationError(
            detail="upi_id is required for UPI payments",
            errors=[{"field": "upi_id", "message": "required when method is upi"}],
        )

    async with entity_locks.hold(locks, bookings_service.LOCK_KIND, payload.booking_id):
        booking = await bookings_service.get_booking(session, payload.booking_id, for_update=True)
        if actor_id is not None and actor_id != booking.customer_id:
            raise PermissionDeniedError(detail="Only the booking's customer may pay for it")
        if booking.status == BookingStatus.cancelled.value:
            raise InvalidStateError(detail="Cancelled bookings cannot be paid")
        _assert_not_paid(booking)
        open_payment = await session.scalar(
            sa.select(Payment.payment_id).where(
                Payment.booking_id == booking.booking_id,
                Payment.status.in_(OPEN_PAYMENT_STATUSES),
            )
        )
        if open_payment is not None:
            raise InvalidStateError(
                detail=f"Payment {open_payment} is already open for booking {booking.booking_id}"
            )

        payment = Payment(
            booking_id=booking.booking_id,
            party_id=booking.customer_id,
            amount=payload.amount,
            method=payload.method.value,
            status=PaymentStatus.pending.value,
            upi_id=payload.upi_id if payload.method == PaymentMethod.upi else None,
        )
        session.add(payment)
        await _commit(session, commit)
    metrics.record_payment("initiated")
    logger.info(
        "payment_initiated",
        extra={
            "extra": {
                "payment_id": payment.payment_id,
                "booking_id": booking.booking_id,
                "method": payment.method,
                "amount": payment.amount,
            }
        },
    )
    return payment


async def process_payment(
    session: AsyncSession,
    payment_id: str,
    *,
    gateway: PaymentGateway,
    actor_id: str | None = None,
    locks: EntityLocks | None = None,
    notifier: PushNotifier | None = None,
) -> Payment:
    """Runs one gateway attempt for a pending payment.

    The processing marker and the outcome are each committed, so a failed
    attempt stays on record before PaymentFailedError reaches the caller.
    The booking lock is held across the gateway call so a booking is charged once.
    """
    async with entity_locks.hold(locks, PAYMENT_LOCK, payment_id):
        payment = await get_payment(session, payment_id, actor_id=actor_id, for_update=True)
        assert_valid_payment_transition(payment.status, PaymentStatus.processing)
        async with entity_locks.hold(locks, bookings_service.LOCK_KIND, payment.booking_id):
            booking = await bookings_service.get_booking(
                session, payment.booking_id, for_update=True
            )
            _assert_not_paid(booking)
            payment.status = PaymentStatus.processing.value
            await session.commit()

            try:
                outcome = await gateway.attempt(payment.amount, PaymentMethod(payment.method))
            except BaseException as exc:
                reason = GATEWAY_UNAVAILABLE if isinstance(exc, NetworkError) else GATEWAY_INTERRUPTED
                payment.status = PaymentStatus.failed.value
                payment.failure_reason = reason
                await asyncio.shield(session.commit())
                metrics.record_payment("error")
                logger.warning(
                    f"payment_{reason}",
                    extra={"extra": {"payment_id": payment_id, "booking_id": payment.booking_id}},
                )
                raise

            if outcome.approved:
                payment.status = PaymentStatus.completed.value
                payment.transaction_id = outcome.transaction_id
                await bookings_service.mark_paid(
                    session, payment.booking_id, payment.payment_id, commit=False
                )
            else:
                payment.status = PaymentStatus.failed.value
                payment.failure_reason = outcome.reason or "declined"
            await session.commit()

    if outcome.approved:
        metrics.record_payment("completed")
        logger.info(
            "payment_completed",
            extra={
                "extra": {
                    "payment_id": payment_id,
                    "booking_id": payment.booking_id,
                    "transaction_id": payment.transaction_id,
                }
            },
        )
        await _notify_payer(
            session,
            notifier,
            payment.party_id,
            "payment_completed",
            "Payment successful",
            f"Your payment of {payment.amount:.2f} went through",
            payment_id=payment_id,
        )
        return payment

    metrics.record_payment("failed")
    logger.info(
        "payment_failed",
        extra={"extra": {"payment_id": payment_id, "reason": payment.failure_reason}},
    )
    await _notify_payer(
        session,
        notifier,
        payment.party_id,
        "payment_failed",
        "Payment failed",
        "Your payment could not be completed",
        payment_id=payment_id,
    )
    raise PaymentFailedError(detail=f"Payment {payment_id} was declined: {payment.failure_reason}")


async def cancel_payment(
    session: AsyncSession,
    payment_id: str,
    *,
    actor_id: str | None = None,
    locks: EntityLocks | None = None,
    commit: bool = True,
) -> Payment:
    async with entity_locks.hold(locks, PAYMENT_LOCK, payment_id):
        payment = await get_payment(session, payment_id, actor_id=actor_id, for_update=True)
        assert_valid_payment_transition(payment.status, PaymentStatus.cancelled)
        payment.status = PaymentStatus.cancelled.value
        await _commit(session, commit)
    metrics.record_payment("cancelled")
    logger.info("payment_cancelled", extra={"extra": {"payment_id": payment_id}})
    return payment


async def initiate_refund(
    session: AsyncSession,
    payment_id: str,
    reason: str,
    amount: float | None = None,
    *,
    actor_id: str | None = None,
    locks: EntityLocks | None = None,
    commit: bool = True,
) -> Refund:
    if not reason or not reason.strip():
        raise InputValidationError(detail="A refund reason is required")

    async with entity_locks.hold(locks, PAYMENT_LOCK, payment_id):
        payment = await get_payment(session, payment_id, actor_id=actor_id, for_update=True)
        if payment.status != PaymentStatus.completed.value:
            raise RefundNotAllowedError(
                detail=f"Only completed payments can be refunded (status is {payment.status})"
            )
        refund_amount = payment.amount if amount is None else amount
        if refund_amount <= 0 or refund_amount > payment.amount:
            raise InputValidationError(
                detail="Refund amount must be greater than zero and at most the payment amount"
            )
        open_refund = await session.scalar(
            sa.select(Refund.refund_id).where(
                Refund.payment_id == payment_id,
                Refund.status.in_(OPEN_REFUND_STATUSES),
            )
        )
        if open_refund is not None:
            raise RefundNotAllowedError(detail=f"Refund {open_refund} is already in progress")

        refund = Refund(
            payment_id=payment_id,
            amount=refund_amount,
            reason=reason.strip(),
            status=RefundStatus.pending.value,
        )
        session.add(refund)
        await _commit(session, commit)

    metrics.record_refund("initiated")
    logger.info(
        "refund_initiated",
        extra={"extra": {"refund_id": refund.refund_id, "payment_id": payment_id, "amount": refund_amount}},
    )
    return refund


async def process_refund(
    session: AsyncSession,
    refund_id: str,
    *,
    gateway: PaymentGateway,
    actor_id: str | None = None,
    locks: EntityLocks | None = None,
    notifier: PushNotifier | None = None,
) -> Refund:
    """Runs one gateway refund. An approved refund, partial or full, closes the payment as refunded."""
    async with entity_locks.hold(locks, REFUND_LOCK, refund_id):
        refund = await get_refund(session, refund_id, for_update=True)
        async with entity_locks.hold(locks, PAYMENT_LOCK, refund.payment_id):
            payment = await get_payment(
                session, refund.payment_id, actor_id=actor_id, for_update=True
            )
            assert_valid_refund_transition(refund.status, RefundStatus.processing)
            if payment.status != PaymentStatus.completed.value:
                raise RefundNotAllowedError(
                    detail=f"Payment {payment.payment_id} is {payment.status} and cannot be refunded"
                )
            refund.status = RefundStatus.processing.value
            await session.commit()

            try:
                outcome = await gateway.refund(refund.amount, payment.transaction_id)
            except BaseException as exc:
                reason = GATEWAY_UNAVAILABLE if isinstance(exc, NetworkError) else GATEWAY_INTERRUPTED
                refund.status = RefundStatus.failed.value
                refund.failure_reason = reason
                refund.processed_at = datetime.now(timezone.utc)
                await asyncio.shield(session.commit())
                metrics.record_refund("error")
                logger.warning(
                    f"refund_{reason}",
                    extra={"extra": {"refund_id": refund_id, "payment_id": payment.payment_id}},
                )
                raise

            now = datetime.now(timezone.utc)
            refund.processed_at = now
            if outcome.approved:
                refund.status = RefundStatus.completed.value
                refund.transaction_id = outcome.transaction_id
                assert_valid_payment_transition(payment.status, PaymentStatus.refunded)
                payment.status = PaymentStatus.refunded.value
                payment.refund_amount = refund.amount
                payment.refund_date = now
                await bookings_service.mark_refunded(
                    session, payment.booking_id, payment.payment_id, commit=False
                )
            else:
                refund.status = RefundStatus.failed.value
                refund.failure_reason = outcome.reason or "refund_declined"
            await session.commit()

    if outcome.approved:
        metrics.record_refund("completed")
        logger.info(
            "refund_completed",
            extra={
                "extra": {
                    "refund_id": refund_id,
                    "payment_id": payment.payment_id,
                    "amount": refund.amount,
                }
            },
        )
        await _notify_payer(
            session,
            notifier,
            payment.party_id,
            "refund_completed",
            "Refund processed",
            f"{refund.amount:.2f} has been refunded",
            refund_id=refund_id,
            payment_id=payment.payment_id,
        )
        return refund

    metrics.record_refund("failed")
    logger.info(
        "refund_failed",
        extra={"extra": {"refund_id": refund_id, "reason": refund.failure_reason}},
    )
    raise RefundFailedError(detail=f"Refund {refund_id} was declined: {refund.failure_reason}")


async def get_analytics(session: AsyncSession, party_id: str) -> PaymentAnalytics:
    rows = (
        await session.execute(
            sa.select(
                Payment.status,
                sa.func.count(Payment.payment_id),
                sa.func.coalesce(sa.func.sum(Payment.amount), 0),
            )
            .where(Payment.party_id == party_id)
            .group_by(Payment.status)
        )
    ).all()
    counts = {status: int(count) for status, count, _ in rows}
    total_payments = sum(counts.values())
    completed = counts.get(PaymentStatus.completed.value, 0)
    return PaymentAnalytics(
        total_payments=total_payments,
        total_amount=float(sum(float(amount or 0) for _, _, amount in rows)),
        completed_count=completed,
        failed_count=counts.get(PaymentStatus.failed.value, 0),
        refunded_count=counts.get(PaymentStatus.refunded.value, 0),
        success_rate=(completed / total_payments) if total_payments else 0.0,
    )
