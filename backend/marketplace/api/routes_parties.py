from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.dependencies import get_db_session, require_party_id
from marketplace.domain.parties import service as parties_service
from marketplace.domain.parties.schemas import (
    CustomerStats,
    DeviceRegistrationRequest,
    PartyCreateRequest,
    PartyResponse,
    PartyType,
    PartyUpdateRequest,
    WorkerStats,
)

router = APIRouter()


@router.post("/v1/parties", response_model=PartyResponse, status_code=status.HTTP_201_CREATED)
async def register_party(
    payload: PartyCreateRequest,
    party_id: str = Depends(require_party_id),
    session: AsyncSession = Depends(get_db_session),
) -> PartyResponse:
    party = await parties_service.register_party(session, party_id, payload)
    return PartyResponse.model_validate(party)


@router.get("/v1/parties/me", response_model=PartyResponse)
async def get_me(
    party_id: str = Depends(require_party_id),
    session: AsyncSession = Depends(get_db_session),
) -> PartyResponse:
    party = await parties_service.get_party(session, party_id)
    return PartyResponse.model_validate(party)


@router.patch("/v1/parties/me", response_model=PartyResponse)
async def update_me(
    payload: PartyUpdateRequest,
    party_id: str = Depends(require_party_id),
    session: AsyncSession = Depends(get_db_session),
) -> PartyResponse:
    party = await parties_service.update_profile(session, party_id, payload)
    return PartyResponse.model_validate(party)


@router.post("/v1/parties/me/device", status_code=status.HTTP_204_NO_CONTENT)
async def register_device(
    payload: DeviceRegistrationRequest,
    party_id: str = Depends(require_party_id),
    session: AsyncSession = Depends(get_db_session),
) -> None:
    await parties_service.register_device(session, party_id, payload.device_token)


@router.get("/v1/parties/me/stats", response_model=WorkerStats | CustomerStats)
async def get_my_stats(
    party_id: str = Depends(require_party_id),
    session: AsyncSession = Depends(get_db_session),
) -> WorkerStats | CustomerStats:
    party = await parties_service.get_party(session, party_id)
    if party.party_type == PartyType.worker.value:
        return await parties_service.worker_stats(session, party_id)
    return await parties_service.customer_stats(session, party_id)


@router.get("/v1/parties/{party_id}", response_model=PartyResponse)
async def get_party(
    party_id: str,
    session: AsyncSession = Depends(get_db_session),
) -> PartyResponse:
    party = await parties_service.get_party(session, party_id)
    return PartyResponse.model_validate(party)
