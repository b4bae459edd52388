from __future__ import annotations

import logging
from math import asin, cos, radians, sin, sqrt

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.domain.bookings.db_models import Booking
from marketplace.domain.bookings.schemas import BookingStatus
from marketplace.domain.chat_threads.service import validate_party_id
from marketplace.domain.errors import InputValidationError, InvalidStateError, NotFoundError
from marketplace.domain.parties.db_models import Party
from marketplace.domain.parties.schemas import (
    CustomerStats,
    PartyCreateRequest,
    PartyType,
    PartyUpdateRequest,
    ServiceType,
    WorkerStats,
)

logger = logging.getLogger(__name__)

PROFILE_FIELDS = ("name", "email", "phone", "address")


async def get_party(session: AsyncSession, party_id: str, *, for_update: bool = False) -> Party:
    stmt = sa.select(Party).where(Party.party_id == party_id)
    if for_update:
        stmt = stmt.with_for_update()
    party = await session.scalar(stmt)
    if party is None:
        raise NotFoundError(detail=f"Party {party_id} not found")
    return party


async def get_worker(session: AsyncSession, worker_id: str, *, for_update: bool = False) -> Party:
    party = await get_party(session, worker_id, for_update=for_update)
    if party.party_type != PartyType.worker.value:
        raise InputValidationError(detail=f"Party {worker_id} is not a worker")
    return party


async def register_party(
    session: AsyncSession,
    party_id: str,
    payload: PartyCreateRequest,
    *,
    commit: bool = True,
) -> Party:
    if not party_id or not party_id.strip():
        raise InputValidationError(detail="party_id is required")
    validate_party_id(party_id)
    existing = await session.get(Party, party_id)
    if existing is not None:
        raise InputValidationError(detail=f"Party {party_id} is already registered")

    party = Party(
        party_id=party_id,
        name=payload.name.strip(),
        email=payload.email.strip(),
        phone=payload.phone.strip(),
        address=payload.address.strip(),
        party_type=payload.party_type.value,
        services=sorted({service.value for service in payload.services}),
        lat=payload.lat,
        lng=payload.lng,
    )
    session.add(party)
    if commit:
        await session.commit()
    else:
        await session.flush()
    logger.info(
        "party_registered",
        extra={"extra": {"party_id": party_id, "party_type": party.party_type}},
    )
    return party


async def update_profile(
    session: AsyncSession,
    party_id: str,
    payload: PartyUpdateRequest,
    *,
    commit: bool = True,
) -> Party:
    party = await get_party(session, party_id, for_update=True)
    changes = payload.model_dump(exclude_unset=True, exclude_none=True)
    for field in PROFILE_FIELDS:
        if field in changes:
            setattr(party, field, str(changes[field]).strip())
    if "lat" in changes:
        party.lat = changes["lat"]
        party.lng = changes["lng"]
    if commit:
        await session.commit()
    else:
        await session.flush()
    logger.info("party_profile_updated", extra={"extra": {"party_id": party_id, "fields": sorted(changes)}})
    return party


async def set_availability(
    session: AsyncSession, worker_id: str, is_active: bool, *, commit: bool = True
) -> Party:
    party = await get_party(session, worker_id, for_update=True)
    if party.party_type != PartyType.worker.value:
        raise InvalidStateError(detail="Only workers have an availability flag")
    party.is_active = is_active
    if commit:
        await session.commit()
    else:
        await session.flush()
    return party


async def register_device(
    session: AsyncSession, party_id: str, device_token: str, *, commit: bool = True
) -> Party:
    party = await get_party(session, party_id, for_update=True)
    party.device_token = device_token
    if commit:
        await session.commit()
    else:
        await session.flush()
    logger.info("party_device_registered", extra={"extra": {"party_id": party_id}})
    return party


def _matches_query(worker: Party, needle: str) -> bool:
    if needle in worker.name.casefold():
        return True
    return any(needle in service.casefold() for service in worker.services or [])


def _haversine_km(origin_lat: float, origin_lng: float, dest_lat: float, dest_lng: float) -> float:
    radius_km = 6371.0
    lat1 = radians(origin_lat)
    lat2 = radians(dest_lat)
    delta_lat = radians(dest_lat - origin_lat)
    delta_lng = radians(dest_lng - origin_lng)
    a = sin(delta_lat / 2) ** 2 + cos(lat1) * cos(lat2) * sin(delta_lng / 2) ** 2
    return radius_km * 2 * asin(sqrt(a))


def _within_radius(worker: Party, near: tuple[float, float], radius_km: float) -> bool:
    if worker.lat is None or worker.lng is None:
        return False
    return _haversine_km(near[0], near[1], worker.lat, worker.lng) <= radius_km


async def search_workers(
    session: AsyncSession,
    query: str = "",
    service_type: ServiceType | None = None,
    *,
    near: tuple[float, float] | None = None,
    radius_km: float | None = None,
) -> list[Party]:
    """Active workers by party_id. With ``near`` and ``radius_km``, only located workers in range."""
    if (near is None) != (radius_km is None):
        raise InputValidationError(detail="near and radius_km must be given together")
    if radius_km is not None and radius_km <= 0:
        raise InputValidationError(detail="radius_km must be greater than zero")

    stmt = (
        sa.select(Party)
        .where(Party.party_type == PartyType.worker.value, Party.is_active.is_(True))
        .order_by(Party.party_id.asc())
    )
    workers = list((await session.execute(stmt)).scalars().all())

    if service_type is not None:
        workers = [worker for worker in workers if service_type.value in (worker.services or [])]

    needle = (query or "").strip().casefold()
    if needle:
        workers = [worker for worker in workers if _matches_query(worker, needle)]
    if near is not None:
        workers = [worker for worker in workers if _within_radius(worker, near, radius_km)]
    return workers


async def worker_stats(session: AsyncSession, worker_id: str) -> WorkerStats:
    worker = await get_worker(session, worker_id)
    row = (
        await session.execute(
            sa.select(
                sa.func.count(Booking.booking_id),
                sa.func.count(Booking.booking_id).filter(
                    Booking.status == BookingStatus.completed.value
                ),
                sa.func.coalesce(
                    sa.func.sum(Booking.actual_cost).filter(
                        Booking.status == BookingStatus.completed.value
                    ),
                    0,
                ),
            ).where(Booking.worker_id == worker_id)
        )
    ).one()
    total, completed, earnings = row
    return WorkerStats(
        total_bookings=int(total or 0),
        completed_bookings=int(completed or 0),
        total_earnings=float(earnings or 0),
        average_rating=round(worker.rating, 2),
        total_reviews=worker.rating_count,
    )


async def customer_stats(session: AsyncSession, customer_id: str) -> CustomerStats:
    await get_party(session, customer_id)
    rows = (
        await session.execute(
            sa.select(Booking.status, sa.func.count(Booking.booking_id))
            .where(Booking.customer_id == customer_id)
            .group_by(Booking.status)
        )
    ).all()
    counts = {status: int(count) for status, count in rows}
    return CustomerStats(
        total_bookings=sum(counts.values()),
        completed_bookings=counts.get(BookingStatus.completed.value, 0),
        pending_bookings=counts.get(BookingStatus.pending.value, 0),
    )
