from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.dependencies import get_db_session, get_services, require_party_id
from marketplace.domain.payments import service as payments_service
from marketplace.domain.payments.schemas import (
    PaymentAnalytics,
    PaymentCreateRequest,
    PaymentResponse,
    RefundCreateRequest,
    RefundResponse,
)
from marketplace.services import AppServices

router = APIRouter()


@router.post("/v1/payments", response_model=PaymentResponse, status_code=status.HTTP_201_CREATED)
async def initiate_payment(
    payload: PaymentCreateRequest,
    party_id: str = Depends(require_party_id),
    session: AsyncSession = Depends(get_db_session),
    services: AppServices = Depends(get_services),
) -> PaymentResponse:
    payment = await payments_service.initiate_payment(
        session, payload, actor_id=party_id, locks=services.locks
    )
    return PaymentResponse.model_validate(payment)


@router.get("/v1/payments", response_model=list[PaymentResponse])
async def list_payments(
    party_id: str = Depends(require_party_id),
    session: AsyncSession = Depends(get_db_session),
) -> list[PaymentResponse]:
    payments = await payments_service.list_payments(session, party_id)
    return [PaymentResponse.model_validate(payment) for payment in payments]


@router.get("/v1/payments/analytics", response_model=PaymentAnalytics)
async def payment_analytics(
    party_id: str = Depends(require_party_id),
    session: AsyncSession = Depends(get_db_session),
) -> PaymentAnalytics:
    return await payments_service.get_analytics(session, party_id)


@router.get("/v1/payments/{payment_id}", response_model=PaymentResponse)
async def get_payment(
    payment_id: str,
    party_id: str = Depends(require_party_id),
    session: AsyncSession = Depends(get_db_session),
) -> PaymentResponse:
    payment = await payments_service.get_payment(session, payment_id, actor_id=party_id)
    return PaymentResponse.model_validate(payment)


@router.post("/v1/payments/{payment_id}/process", response_model=PaymentResponse)
async def process_payment(
    payment_id: str,
    party_id: str = Depends(require_party_id),
    session: AsyncSession = Depends(get_db_session),
    services: AppServices = Depends(get_services),
) -> PaymentResponse:
    payment = await payments_service.process_payment(
        session,
        payment_id,
        gateway=services.gateway,
        actor_id=party_id,
        locks=services.locks,
        notifier=services.notifier,
    )
    return PaymentResponse.model_validate(payment)


@router.post("/v1/payments/{payment_id}/cancel", response_model=PaymentResponse)
async def cancel_payment(
    payment_id: str,
    party_id: str = Depends(require_party_id),
    session: AsyncSession = Depends(get_db_session),
    services: AppServices = Depends(get_services),
) -> PaymentResponse:
    payment = await payments_service.cancel_payment(
        session, payment_id, actor_id=party_id, locks=services.locks
    )
    return PaymentResponse.model_validate(payment)


@router.post(
    "/v1/payments/{payment_id}/refunds",
    response_model=RefundResponse,
    status_code=status.HTTP_201_CREATED,
)
async def initiate_refund(
    payment_id: str,
    payload: RefundCreateRequest,
    party_id: str = Depends(require_party_id),
    session: AsyncSession = Depends(get_db_session),
    services: AppServices = Depends(get_services),
) -> RefundResponse:
    refund = await payments_service.initiate_refund(
        session,
        payment_id,
        payload.reason,
        payload.amount,
        actor_id=party_id,
        locks=services.locks,
    )
    return RefundResponse.model_validate(refund)


@router.post("/v1/refunds/{refund_id}/process", response_model=RefundResponse)
async def process_refund(
    refund_id: str,
    party_id: str = Depends(require_party_id),
    session: AsyncSession = Depends(get_db_session),
    services: AppServices = Depends(get_services),
) -> RefundResponse:
    refund = await payments_service.process_refund(
        session,
        refund_id,
        gateway=services.gateway,
        actor_id=party_id,
        locks=services.locks,
        notifier=services.notifier,
    )
    return RefundResponse.model_validate(refund)
