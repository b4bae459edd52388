from __future__ import annotations

import logging
from datetime import datetime, timezone

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.domain.bookings.db_models import Booking, Review
from marketplace.domain.bookings.schemas import (
    BookingCreateRequest,
    BookingPaymentStatus,
    BookingStatus,
    CostRange,
)
from marketplace.domain.errors import (
    InputValidationError,
    InvalidStateError,
    InvalidTransitionError,
    NotFoundError,
    PermissionDeniedError,
)
from marketplace.domain.parties import service as parties_service
from marketplace.domain.parties.db_models import Party
from marketplace.domain.parties.schemas import PartyType, ServiceType
from marketplace.infra import locks as entity_locks
from marketplace.infra.locks import EntityLocks
from marketplace.infra.metrics import metrics
from marketplace.infra.push import PushNotification, PushNotifier, dispatch

logger = logging.getLogger(__name__)

BOOKING_TRANSITIONS: dict[BookingStatus, set[BookingStatus]] = {
    BookingStatus.pending: {BookingStatus.confirmed, BookingStatus.cancelled},
    BookingStatus.confirmed: {BookingStatus.in_progress, BookingStatus.cancelled},
    BookingStatus.in_progress: {BookingStatus.completed, BookingStatus.cancelled},
    BookingStatus.completed: set(),
    BookingStatus.cancelled: set(),
}

ESTIMATED_COST: dict[ServiceType, tuple[float, float]] = {
    ServiceType.plumber: (500, 1500),
    ServiceType.electrician: (800, 2000),
    ServiceType.carpenter: (600, 1800),
    ServiceType.painter: (400, 1200),
    ServiceType.cleaner: (300, 800),
    ServiceType.mechanic: (700, 2500),
    ServiceType.gardener: (400, 1000),
    ServiceType.mason: (1000, 3000),
    ServiceType.laborer: (500, 1500),
    ServiceType.other: (500, 2000),
}

LOCK_KIND = "booking"


def estimate_cost(service_type: ServiceType | str) -> CostRange:
    try:
        low, high = ESTIMATED_COST[ServiceType(service_type)]
    except ValueError as exc:
        raise InputValidationError(detail=f"Unknown service type: {service_type}") from exc
    return CostRange(min=low, max=high)


def assert_valid_booking_transition(current: str, target: str) -> None:
    current_status = BookingStatus(current)
    target_status = BookingStatus(target)
    allowed = BOOKING_TRANSITIONS[current_status]
    if not allowed:
        raise InvalidTransitionError(
            detail=f"Booking is already in terminal status: {current_status.value}"
        )
    if target_status not in allowed:
        raise InvalidTransitionError(
            detail=f"Cannot transition booking from {current_status.value} to {target_status.value}"
        )


def _assert_participant(booking: Booking, actor_id: str | None) -> None:
    if actor_id is not None and not booking.has_participant(actor_id):
        raise PermissionDeniedError(detail="Only the booking's customer or worker may access it")


def _notification(party: Party | None, event: str, title: str, body: str, **data) -> PushNotification | None:
    if party is None:
        return None
    return PushNotification(
        party_id=party.party_id,
        event=event,
        title=title,
        body=body,
        device_token=party.device_token,
        data=data,
    )


async def _send_all(notifier: PushNotifier | None, notifications: list[PushNotification | None]) -> None:
    for notification in notifications:
        if notification is not None:
            await dispatch(notifier, notification)


async def get_booking(
    session: AsyncSession,
    booking_id: str,
    *,
    actor_id: str | None = None,
    for_update: bool = False,
) -> Booking:
    stmt = sa.select(Booking).where(Booking.booking_id == booking_id)
    if for_update:
        stmt = stmt.with_for_update()
    booking = await session.scalar(stmt)
    if booking is None:
        raise NotFoundError(detail=f"Booking {booking_id} not found")
    _assert_participant(booking, actor_id)
    return booking


async def create_booking(
    session: AsyncSession,
    customer_id: str,
    payload: BookingCreateRequest,
    *,
    notifier: PushNotifier | None = None,
    commit: bool = True,
) -> Booking:
    if customer_id == payload.worker_id:
        raise InputValidationError(detail="A customer cannot book themselves")

    customer = await parties_service.get_party(session, customer_id)
    if customer.party_type != PartyType.customer.value:
        raise InputValidationError(detail=f"Party {customer_id} is not a customer")
    worker = await parties_service.get_worker(session, payload.worker_id)
    if payload.service_type.value not in (worker.services or []):
        raise InputValidationError(
            detail=f"Worker {worker.party_id} does not offer {payload.service_type.value}"
        )

    estimate = estimate_cost(payload.service_type)
    booking = Booking(
        customer_id=customer_id,
        worker_id=worker.party_id,
        service_type=payload.service_type.value,
        scheduled_date=payload.scheduled_date,
        scheduled_time=payload.scheduled_time,
        description=payload.description.strip(),
        address=payload.address.strip(),
        status=BookingStatus.pending.value,
        estimated_cost_min=estimate.min,
        estimated_cost_max=estimate.max,
        payment_status=BookingPaymentStatus.unpaid.value,
    )
    session.add(booking)
    if commit:
        await session.commit()
    else:
        await session.flush()

    metrics.record_booking("created")
    logger.info(
        "booking_created",
        extra={
            "extra": {
                "booking_id": booking.booking_id,
                "customer_id": customer_id,
                "worker_id": worker.party_id,
                "service_type": booking.service_type,
            }
        },
    )
    await _send_all(
        notifier,
        [
            _notification(
                worker,
                "booking_created",
                "New booking request",
                f"{customer.name} requested a {booking.service_type}",
                booking_id=booking.booking_id,
            )
        ],
    )
    return booking


async def update_status(
    session: AsyncSession,
    booking_id: str,
    new_status: BookingStatus | str,
    *,
    actual_cost: float | None = None,
    actor_id: str | None = None,
    locks: EntityLocks | None = None,
    notifier: PushNotifier | None = None,
    commit: bool = True,
) -> Booking:
    target = BookingStatus(new_status)
    if actual_cost is not None:
        if target != BookingStatus.completed:
            raise InputValidationError(detail="actual_cost can only be recorded on completion")
        if actual_cost < 0:
            raise InputValidationError(detail="actual_cost must not be negative")

    async with entity_locks.hold(locks, LOCK_KIND, booking_id):
        booking = await get_booking(session, booking_id, actor_id=actor_id, for_update=True)
        previous = booking.status
        assert_valid_booking_transition(previous, target.value)

        now = datetime.now(timezone.utc)
        booking.status = target.value
        worker = None
        if target == BookingStatus.completed:
            booking.completed_at = now
            booking.actual_cost = actual_cost
            worker = await parties_service.get_party(session, booking.worker_id, for_update=True)
            worker.total_jobs = (worker.total_jobs or 0) + 1
        elif target == BookingStatus.cancelled:
            booking.cancelled_at = now

        if commit:
            await session.commit()
        else:
            await session.flush()

    metrics.record_booking(target.value)
    logger.info(
        "booking_status_changed",
        extra={
            "extra": {
                "booking_id": booking_id,
                "from_status": previous,
                "to_status": target.value,
                "actor_id": actor_id,
            }
        },
    )

    recipients = [booking.customer_id, booking.worker_id]
    if actor_id is not None:
        recipients = [party_id for party_id in recipients if party_id != actor_id]
    notifications = []
    for party_id in recipients:
        party = worker if worker is not None and worker.party_id == party_id else await session.get(Party, party_id)
        notifications.append(
            _notification(
                party,
                "booking_status_changed",
                "Booking updated",
                f"Booking is now {target.value.replace('_', ' ')}",
                booking_id=booking_id,
                status=target.value,
            )
        )
    await _send_all(notifier, notifications)
    return booking


async def attach_review(
    session: AsyncSession,
    booking_id: str,
    rating: int,
    comment: str | None = None,
    *,
    actor_id: str | None = None,
    locks: EntityLocks | None = None,
    notifier: PushNotifier | None = None,
    commit: bool = True,
) -> Booking:
    if rating < 1 or rating > 5:
        raise InputValidationError(detail="rating must be between 1 and 5")

    async with entity_locks.hold(locks, LOCK_KIND, booking_id):
        booking = await get_booking(session, booking_id, for_update=True)
        if actor_id is not None and actor_id != booking.customer_id:
            raise PermissionDeniedError(detail="Only the booking's customer may review it")
        if booking.status != BookingStatus.completed.value:
            raise InvalidStateError(detail="Only completed bookings can be reviewed")
        existing = await session.scalar(sa.select(Review.review_id).where(Review.booking_id == booking_id))
        if existing is not None or booking.rating is not None:
            raise InvalidStateError(detail="Booking has already been reviewed")

        worker = await parties_service.get_party(session, booking.worker_id, for_update=True)
        review_count = worker.rating_count or 0
        worker.rating = ((worker.rating or 0.0) * review_count + rating) / (review_count + 1)
        worker.rating_count = review_count + 1

        cleaned_comment = comment.strip() if comment and comment.strip() else None
        booking.rating = rating
        booking.review = cleaned_comment
        session.add(
            Review(
                booking_id=booking.booking_id,
                customer_id=booking.customer_id,
                worker_id=booking.worker_id,
                rating=rating,
                comment=cleaned_comment,
            )
        )
        if commit:
            await session.commit()
        else:
            await session.flush()

    metrics.record_booking("reviewed")
    logger.info(
        "booking_reviewed",
        extra={"extra": {"booking_id": booking_id, "worker_id": worker.party_id, "rating": rating}},
    )
    await _send_all(
        notifier,
        [
            _notification(
                worker,
                "booking_reviewed",
                "New review",
                f"You received a {rating}-star review",
                booking_id=booking_id,
                rating=rating,
            )
        ],
    )
    return booking


async def list_bookings(
    session: AsyncSession, party_id: str, role: PartyType | str = PartyType.customer
) -> list[Booking]:
    role = PartyType(role)
    column = Booking.customer_id if role == PartyType.customer else Booking.worker_id
    stmt = (
        sa.select(Booking)
        .where(column == party_id)
        .order_by(Booking.created_at.desc(), Booking.booking_id.desc())
    )
    return list((await session.execute(stmt)).scalars().all())


async def list_reviews(session: AsyncSession, worker_id: str) -> list[Review]:
    stmt = (
        sa.select(Review)
        .where(Review.worker_id == worker_id)
        .order_by(Review.created_at.desc(), Review.review_id.desc())
    )
    return list((await session.execute(stmt)).scalars().all())


async def mark_paid(
    session: AsyncSession, booking_id: str, payment_id: str, *, commit: bool = True
) -> Booking:
    """Links a completed payment to the booking; the lifecycle status is untouched."""
    booking = await get_booking(session, booking_id, for_update=True)
    booking.payment_status = BookingPaymentStatus.paid.value
    booking.payment_id = payment_id
    if commit:
        await session.commit()
    else:
        await session.flush()
    return booking


async def mark_refunded(
    session: AsyncSession, booking_id: str, payment_id: str, *, commit: bool = True
) -> Booking:
    booking = await get_booking(session, booking_id, for_update=True)
    if booking.payment_id not in (None, payment_id):
        logger.warning(
            "booking_refund_payment_mismatch",
            extra={"extra": {"booking_id": booking_id, "payment_id": payment_id}},
        )
    booking.payment_status = BookingPaymentStatus.refunded.value
    booking.payment_id = payment_id
    if commit:
        await session.commit()
    else:
        await session.flush()
    return booking
