from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Protocol

from marketplace.domain.errors import NetworkError
from marketplace.domain.payments.schemas import PaymentMethod
from marketplace.shared.circuit_breaker import CircuitBreaker, CircuitBreakerOpenError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GatewayOutcome:
    approved: bool
    transaction_id: str | None = None
    reason: str | None = None


class PaymentGateway(Protocol):
    async def attempt(self, amount: float, method: PaymentMethod) -> GatewayOutcome: ...

    async def refund(self, amount: float, transaction_id: str | None) -> GatewayOutcome: ...


class SimulatedGateway:
    """Stand-in for a real processor: approval is a weighted coin flip."""

    def __init__(
        self,
        *,
        success_rate: float = 0.90,
        upi_success_rate: float = 0.95,
        refund_success_rate: float = 0.98,
        seed: int | None = None,
        latency_seconds: float = 0.0,
    ) -> None:
        self.success_rate = success_rate
        self.upi_success_rate = upi_success_rate
        self.refund_success_rate = refund_success_rate
        self.latency_seconds = latency_seconds
        self._rng = random.Random(seed)

    def _transaction_id(self, prefix: str) -> str:
        return f"{prefix}_{self._rng.getrandbits(64):016x}"

    async def _wait(self) -> None:
        if self.latency_seconds > 0:
            await asyncio.sleep(self.latency_seconds)

    async def attempt(self, amount: float, method: PaymentMethod) -> GatewayOutcome:
        await self._wait()
        rate = self.upi_success_rate if PaymentMethod(method) == PaymentMethod.upi else self.success_rate
        if self._rng.random() < rate:
            return GatewayOutcome(approved=True, transaction_id=self._transaction_id("txn"))
        return GatewayOutcome(approved=False, reason="declined")

    async def refund(self, amount: float, transaction_id: str | None) -> GatewayOutcome:
        await self._wait()
        if self._rng.random() < self.refund_success_rate:
            return GatewayOutcome(approved=True, transaction_id=self._transaction_id("rfnd"))
        return GatewayOutcome(approved=False, reason="refund_declined")


class DisabledGateway:
    async def attempt(self, amount: float, method: PaymentMethod) -> GatewayOutcome:
        raise NetworkError(detail="Payment gateway is disabled")

    async def refund(self, amount: float, transaction_id: str | None) -> GatewayOutcome:
        raise NetworkError(detail="Payment gateway is disabled")


class ResilientGateway:
    """Routes every gateway call through a circuit breaker.

    Transport errors and an open circuit surface as NetworkError; declines pass
    through as outcomes. Nothing is retried here.
    """

    def __init__(self, inner: PaymentGateway, breaker: CircuitBreaker) -> None:
        self.inner = inner
        self.breaker = breaker

    async def _call(self, operation: str, fn, *args) -> GatewayOutcome:
        try:
            return await self.breaker.call(fn, *args)
        except CircuitBreakerOpenError as exc:
            logger.warning(
                "gateway_circuit_open",
                extra={"extra": {"operation": operation, "retry_after": round(exc.retry_after, 1)}},
            )
            raise NetworkError(
                detail=f"Payment gateway unavailable, try again later (in {exc.retry_after:.0f}s)"
            ) from exc
        except NetworkError:
            raise
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "gateway_call_failed",
                extra={"extra": {"operation": operation, "reason": type(exc).__name__}},
            )
            raise NetworkError(detail="Payment gateway request failed") from exc

    async def attempt(self, amount: float, method: PaymentMethod) -> GatewayOutcome:
        return await self._call("attempt", self.inner.attempt, amount, method)

    async def refund(self, amount: float, transaction_id: str | None) -> GatewayOutcome:
        return await self._call("refund", self.inner.refund, amount, transaction_id)


def resolve_gateway(app_settings) -> ResilientGateway:
    if app_settings.gateway_mode == "simulated":
        inner: PaymentGateway = SimulatedGateway(
            success_rate=app_settings.gateway_success_rate,
            upi_success_rate=app_settings.gateway_upi_success_rate,
            refund_success_rate=app_settings.gateway_refund_success_rate,
            seed=app_settings.gateway_seed,
            latency_seconds=app_settings.gateway_latency_seconds,
        )
    else:
        inner = DisabledGateway()
    return ResilientGateway(
        inner,
        CircuitBreaker(
            name="payment_gateway",
            failure_threshold=app_settings.gateway_circuit_failure_threshold,
            recovery_time=app_settings.gateway_circuit_recovery_seconds,
            call_timeout=app_settings.gateway_timeout_seconds,
        ),
    )
