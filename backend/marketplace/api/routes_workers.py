from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.dependencies import get_db_session, require_party_id
from marketplace.domain.bookings import service as bookings_service
from marketplace.domain.bookings.schemas import ReviewResponse
from marketplace.domain.errors import InputValidationError
from marketplace.domain.parties import service as parties_service
from marketplace.domain.parties.schemas import (
    AvailabilityRequest,
    PartyResponse,
    ServiceType,
    WorkerStats,
)

router = APIRouter()


@router.get("/v1/workers/search", response_model=list[PartyResponse])
async def search_workers(
    q: str = Query("", max_length=120),
    service_type: ServiceType | None = Query(None),
    lat: float | None = Query(None, ge=-90, le=90),
    lng: float | None = Query(None, ge=-180, le=180),
    radius_km: float | None = Query(None, gt=0),
    session: AsyncSession = Depends(get_db_session),
) -> list[PartyResponse]:
    if (lat is None) != (lng is None):
        raise InputValidationError(detail="lat and lng must be given together")
    near = (lat, lng) if lat is not None else None
    workers = await parties_service.search_workers(
        session, q, service_type, near=near, radius_km=radius_km
    )
    return [PartyResponse.model_validate(worker) for worker in workers]


@router.post("/v1/workers/me/availability", response_model=PartyResponse)
async def set_availability(
    payload: AvailabilityRequest,
    party_id: str = Depends(require_party_id),
    session: AsyncSession = Depends(get_db_session),
) -> PartyResponse:
    worker = await parties_service.set_availability(session, party_id, payload.is_active)
    return PartyResponse.model_validate(worker)


@router.get("/v1/workers/{worker_id}/stats", response_model=WorkerStats)
async def get_worker_stats(
    worker_id: str,
    session: AsyncSession = Depends(get_db_session),
) -> WorkerStats:
    return await parties_service.worker_stats(session, worker_id)


@router.get("/v1/workers/{worker_id}/reviews", response_model=list[ReviewResponse])
async def list_worker_reviews(
    worker_id: str,
    session: AsyncSession = Depends(get_db_session),
) -> list[ReviewResponse]:
    await parties_service.get_worker(session, worker_id)
    reviews = await bookings_service.list_reviews(session, worker_id)
    return [ReviewResponse.model_validate(review) for review in reviews]
