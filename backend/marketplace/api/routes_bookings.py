from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.dependencies import get_db_session, get_services, require_party_id
from marketplace.domain.bookings import service as bookings_service
from marketplace.domain.bookings.schemas import (
    BookingCreateRequest,
    BookingResponse,
    BookingStatusUpdateRequest,
    EstimateResponse,
    ReviewCreateRequest,
)
from marketplace.domain.parties.schemas import PartyType, ServiceType
from marketplace.services import AppServices

router = APIRouter()


@router.get("/v1/bookings/estimate", response_model=EstimateResponse)
async def estimate(service_type: ServiceType = Query(...)) -> EstimateResponse:
    return EstimateResponse(
        service_type=service_type,
        estimated_cost=bookings_service.estimate_cost(service_type),
    )


@router.post("/v1/bookings", response_model=BookingResponse, status_code=status.HTTP_201_CREATED)
async def create_booking(
    payload: BookingCreateRequest,
    party_id: str = Depends(require_party_id),
    session: AsyncSession = Depends(get_db_session),
    services: AppServices = Depends(get_services),
) -> BookingResponse:
    booking = await bookings_service.create_booking(
        session, party_id, payload, notifier=services.notifier
    )
    return BookingResponse.model_validate(booking)


@router.get("/v1/bookings", response_model=list[BookingResponse])
async def list_bookings(
    role: PartyType = Query(PartyType.customer),
    party_id: str = Depends(require_party_id),
    session: AsyncSession = Depends(get_db_session),
) -> list[BookingResponse]:
    bookings = await bookings_service.list_bookings(session, party_id, role)
    return [BookingResponse.model_validate(booking) for booking in bookings]


@router.get("/v1/bookings/{booking_id}", response_model=BookingResponse)
async def get_booking(
    booking_id: str,
    party_id: str = Depends(require_party_id),
    session: AsyncSession = Depends(get_db_session),
) -> BookingResponse:
    booking = await bookings_service.get_booking(session, booking_id, actor_id=party_id)
    return BookingResponse.model_validate(booking)


@router.post("/v1/bookings/{booking_id}/status", response_model=BookingResponse)
async def update_booking_status(
    booking_id: str,
    payload: BookingStatusUpdateRequest,
    party_id: str = Depends(require_party_id),
    session: AsyncSession = Depends(get_db_session),
    services: AppServices = Depends(get_services),
) -> BookingResponse:
    booking = await bookings_service.update_status(
        session,
        booking_id,
        payload.status,
        actual_cost=payload.actual_cost,
        actor_id=party_id,
        locks=services.locks,
        notifier=services.notifier,
    )
    return BookingResponse.model_validate(booking)


@router.post("/v1/bookings/{booking_id}/review", response_model=BookingResponse)
async def review_booking(
    booking_id: str,
    payload: ReviewCreateRequest,
    party_id: str = Depends(require_party_id),
    session: AsyncSession = Depends(get_db_session),
    services: AppServices = Depends(get_services),
) -> BookingResponse:
    booking = await bookings_service.attach_review(
        session,
        booking_id,
        payload.rating,
        payload.comment,
        actor_id=party_id,
        locks=services.locks,
        notifier=services.notifier,
    )
    return BookingResponse.model_validate(booking)
