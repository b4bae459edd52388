import asyncio

import pytest

from marketplace.domain.bookings import service as bookings_service
from marketplace.domain.bookings.schemas import BookingStatus
from marketplace.domain.errors import (
    InputValidationError,
    InvalidStateError,
    InvalidTransitionError,
    NotFoundError,
    PermissionDeniedError,
)
from marketplace.domain.parties import service as parties_service
from marketplace.domain.parties.schemas import PartyType, ServiceType
from marketplace.infra.locks import EntityLocks
from tests.conftest import booking_request, seed_customer_and_worker, seed_party


async def _walk(session, booking_id, *statuses, **kwargs):
    booking = None
    for status in statuses:
        booking = await bookings_service.update_status(session, booking_id, status, **kwargs)
    return booking


@pytest.mark.anyio
async def test_create_booking_starts_pending_with_estimate(async_session_maker, notifier):
    await seed_customer_and_worker(async_session_maker)
    async with async_session_maker() as session:
        booking = await bookings_service.create_booking(
            session, "c1", booking_request(), notifier=notifier
        )

    assert booking.status == BookingStatus.pending.value
    assert booking.estimated_cost == {"min": 500, "max": 1500}
    assert booking.actual_cost is None
    assert booking.completed_at is None
    assert booking.payment_status == "unpaid"
    assert notifier.events_for("w1") == ["booking_created"]


@pytest.mark.anyio
async def test_confirmed_cannot_jump_to_completed(async_session_maker):
    await seed_customer_and_worker(async_session_maker)
    async with async_session_maker() as session:
        booking = await bookings_service.create_booking(session, "c1", booking_request())
        confirmed = await bookings_service.update_status(session, booking.booking_id, "confirmed")
        assert confirmed.status == "confirmed"

        with pytest.raises(InvalidTransitionError):
            await bookings_service.update_status(session, booking.booking_id, "completed")

    async with async_session_maker() as session:
        reloaded = await bookings_service.get_booking(session, booking.booking_id)
        assert reloaded.status == "confirmed"
        assert reloaded.completed_at is None


@pytest.mark.parametrize(
    "path, target",
    [
        ((), "in_progress"),
        ((), "completed"),
        (("confirmed",), "pending"),
        (("cancelled",), "confirmed"),
        (("confirmed", "in_progress", "completed"), "cancelled"),
        (("confirmed",), "confirmed"),
    ],
)
@pytest.mark.anyio
async def test_transitions_outside_table_are_rejected(async_session_maker, path, target):
    await seed_customer_and_worker(async_session_maker)
    async with async_session_maker() as session:
        booking = await bookings_service.create_booking(session, "c1", booking_request())
        await _walk(session, booking.booking_id, *path)
        before = booking.status
        with pytest.raises(InvalidTransitionError):
            await bookings_service.update_status(session, booking.booking_id, target)
        assert booking.status == before


@pytest.mark.anyio
async def test_completion_records_cost_time_and_job_count(async_session_maker):
    await seed_customer_and_worker(async_session_maker)
    async with async_session_maker() as session:
        booking = await bookings_service.create_booking(session, "c1", booking_request())
        worker = await parties_service.get_party(session, "w1")
        assert worker.total_jobs == 0

        await _walk(session, booking.booking_id, "confirmed", "in_progress")
        assert booking.completed_at is None
        completed = await bookings_service.update_status(
            session, booking.booking_id, "completed", actual_cost=900
        )

    assert completed.actual_cost == 900
    assert completed.completed_at is not None
    async with async_session_maker() as session:
        worker = await parties_service.get_party(session, "w1")
        assert worker.total_jobs == 1


@pytest.mark.anyio
async def test_completion_without_cost_still_sets_completed_at(async_session_maker):
    await seed_customer_and_worker(async_session_maker)
    async with async_session_maker() as session:
        booking = await bookings_service.create_booking(session, "c1", booking_request())
        completed = await _walk(session, booking.booking_id, "confirmed", "in_progress", "completed")
    assert completed.actual_cost is None
    assert completed.completed_at is not None


@pytest.mark.anyio
async def test_actual_cost_only_accepted_on_completion(async_session_maker):
    await seed_customer_and_worker(async_session_maker)
    async with async_session_maker() as session:
        booking = await bookings_service.create_booking(session, "c1", booking_request())
        with pytest.raises(InputValidationError):
            await bookings_service.update_status(
                session, booking.booking_id, "confirmed", actual_cost=100
            )
        await _walk(session, booking.booking_id, "confirmed", "in_progress")
        with pytest.raises(InputValidationError):
            await bookings_service.update_status(
                session, booking.booking_id, "completed", actual_cost=-1
            )


@pytest.mark.anyio
async def test_create_booking_validations(async_session_maker):
    await seed_customer_and_worker(async_session_maker, services=[ServiceType.electrician])
    await seed_party(async_session_maker, "c2", PartyType.customer)
    async with async_session_maker() as session:
        with pytest.raises(InputValidationError):
            await bookings_service.create_booking(session, "c1", booking_request(worker_id="c1"))
        with pytest.raises(InputValidationError):
            # worker does not offer plumbing
            await bookings_service.create_booking(session, "c1", booking_request())
        with pytest.raises(InputValidationError):
            await bookings_service.create_booking(session, "c1", booking_request(worker_id="c2"))
        with pytest.raises(NotFoundError):
            await bookings_service.create_booking(session, "c1", booking_request(worker_id="nobody"))
        with pytest.raises(InputValidationError):
            await bookings_service.create_booking(
                session, "w1", booking_request(worker_id="c1", service_type=ServiceType.electrician)
            )


@pytest.mark.anyio
async def test_update_status_unknown_booking(async_session_maker):
    async with async_session_maker() as session:
        with pytest.raises(NotFoundError):
            await bookings_service.update_status(session, "missing", "confirmed")


@pytest.mark.anyio
async def test_outsiders_cannot_read_or_update(async_session_maker, notifier):
    await seed_customer_and_worker(async_session_maker)
    await seed_party(async_session_maker, "c9", PartyType.customer)
    async with async_session_maker() as session:
        booking = await bookings_service.create_booking(session, "c1", booking_request())
        with pytest.raises(PermissionDeniedError):
            await bookings_service.get_booking(session, booking.booking_id, actor_id="c9")
        with pytest.raises(PermissionDeniedError):
            await bookings_service.update_status(
                session, booking.booking_id, "confirmed", actor_id="c9"
            )
        await bookings_service.update_status(
            session, booking.booking_id, "confirmed", actor_id="w1", notifier=notifier
        )

    assert notifier.events_for("c1") == ["booking_status_changed"]
    assert "booking_status_changed" not in notifier.events_for("w1")


@pytest.mark.anyio
async def test_review_requires_completion_and_updates_running_average(async_session_maker, notifier):
    await seed_customer_and_worker(async_session_maker)
    async with async_session_maker() as session:
        first = await bookings_service.create_booking(session, "c1", booking_request())
        second = await bookings_service.create_booking(session, "c1", booking_request())

        with pytest.raises(InvalidStateError):
            await bookings_service.attach_review(session, first.booking_id, 5)

        await _walk(session, first.booking_id, "confirmed", "in_progress", "completed")
        await _walk(session, second.booking_id, "confirmed", "in_progress", "completed")

        with pytest.raises(PermissionDeniedError):
            await bookings_service.attach_review(session, first.booking_id, 4, actor_id="w1")

        reviewed = await bookings_service.attach_review(
            session, first.booking_id, 5, "great job", actor_id="c1", notifier=notifier
        )
        assert reviewed.rating == 5
        assert reviewed.review == "great job"
        await bookings_service.attach_review(session, second.booking_id, 2)

        with pytest.raises(InvalidStateError):
            await bookings_service.attach_review(session, first.booking_id, 3)

    async with async_session_maker() as session:
        worker = await parties_service.get_party(session, "w1")
        assert worker.rating == pytest.approx(3.5)
        assert worker.rating_count == 2
        reviews = await bookings_service.list_reviews(session, "w1")
        assert len(reviews) == 2
    assert notifier.events_for("w1") == ["booking_reviewed"]


@pytest.mark.anyio
async def test_list_bookings_by_role_newest_first(async_session_maker):
    await seed_customer_and_worker(async_session_maker)
    await seed_party(async_session_maker, "c2", PartyType.customer)
    async with async_session_maker() as session:
        first = await bookings_service.create_booking(session, "c1", booking_request())
        second = await bookings_service.create_booking(session, "c1", booking_request())
        other = await bookings_service.create_booking(session, "c2", booking_request())

        as_customer = await bookings_service.list_bookings(session, "c1", PartyType.customer)
        as_worker = await bookings_service.list_bookings(session, "w1", "worker")

    assert [b.booking_id for b in as_customer] == [second.booking_id, first.booking_id]
    assert [b.booking_id for b in as_worker] == [
        other.booking_id,
        second.booking_id,
        first.booking_id,
    ]


def test_estimate_table_is_fixed_per_service_type():
    assert bookings_service.estimate_cost("plumber").model_dump() == {"min": 500, "max": 1500}
    assert bookings_service.estimate_cost(ServiceType.cleaner).model_dump() == {"min": 300, "max": 800}
    for service_type in ServiceType:
        estimate = bookings_service.estimate_cost(service_type)
        assert estimate.min <= estimate.max
    with pytest.raises(InputValidationError):
        bookings_service.estimate_cost("astronaut")


@pytest.mark.anyio
async def test_concurrent_transitions_on_one_booking_are_serialized(async_session_maker):
    await seed_customer_and_worker(async_session_maker)
    async with async_session_maker() as session:
        booking = await bookings_service.create_booking(session, "c1", booking_request())
    locks = EntityLocks()

    async def attempt():
        async with async_session_maker() as session:
            try:
                updated = await bookings_service.update_status(
                    session, booking.booking_id, "confirmed", locks=locks
                )
            except InvalidTransitionError:
                return None
            return updated.status

    results = await asyncio.gather(attempt(), attempt())

    assert sorted(results, key=lambda item: item or "") == [None, "confirmed"]
    assert locks.in_use() == 0
