import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx

from marketplace.infra.metrics import metrics
from marketplace.shared.circuit_breaker import CircuitBreaker, CircuitBreakerOpenError

logger = logging.getLogger(__name__)


@dataclass
class PushNotification:
    party_id: str
    event: str
    title: str
    body: str
    device_token: str | None = None
    data: dict[str, Any] = field(default_factory=dict)


class PushNotifier(Protocol):
    async def notify(self, notification: PushNotification) -> bool: ...


class NoopPushNotifier:
    async def notify(self, notification: PushNotification) -> bool:  # noqa: D401
        logger.info(
            "push_send_skipped",
            extra={"extra": {"party_id": notification.party_id, "event": notification.event, "mode": "noop"}},
        )
        metrics.record_push("skipped")
        return False


class WebhookPushNotifier:
    """Hands notifications to a push relay over HTTP; the relay owns delivery."""

    def __init__(
        self,
        url: str,
        *,
        token: str | None = None,
        timeout_seconds: float = 5.0,
        failure_threshold: int = 5,
        recovery_time: float = 30.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.url = url
        self.token = token
        self.timeout_seconds = timeout_seconds
        self.http_client = http_client
        self._breaker = CircuitBreaker(
            name="push",
            failure_threshold=failure_threshold,
            recovery_time=recovery_time,
        )

    async def notify(self, notification: PushNotification) -> bool:
        if not notification.device_token:
            metrics.record_push("no_device")
            return False
        try:
            await self._breaker.call(self._post, notification)
        except CircuitBreakerOpenError:
            logger.warning("push_circuit_open", extra={"extra": {"party_id": notification.party_id}})
            metrics.record_push("circuit_open")
            return False
        except Exception:
            metrics.record_push("error")
            raise
        metrics.record_push("sent")
        return True

    async def _post(self, notification: PushNotification) -> None:
        headers = {"Authorization": f"Bearer {self.token}"} if self.token else {}
        payload = {
            "to": notification.device_token,
            "notification": {"title": notification.title, "body": notification.body},
            "data": {"event": notification.event, **{k: str(v) for k, v in notification.data.items()}},
        }
        if self.http_client is not None:
            response = await self.http_client.post(self.url, json=payload, headers=headers)
        else:
            async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                response = await client.post(self.url, json=payload, headers=headers)
        response.raise_for_status()


def resolve_push_notifier(app_settings) -> PushNotifier:
    if app_settings.push_mode == "webhook" and app_settings.push_webhook_url:
        return WebhookPushNotifier(
            app_settings.push_webhook_url,
            token=app_settings.push_webhook_token,
            timeout_seconds=app_settings.push_timeout_seconds,
            failure_threshold=app_settings.push_circuit_failure_threshold,
            recovery_time=app_settings.push_circuit_recovery_seconds,
        )
    return NoopPushNotifier()


async def dispatch(notifier: PushNotifier | None, notification: PushNotification) -> None:
    """Fire-and-forget delivery: a failed push never undoes the committed change."""
    if notifier is None:
        return
    try:
        await notifier.notify(notification)
    except Exception as exc:  # noqa: BLE001
        logger.warning(
            "push_send_failed",
            extra={
                "extra": {
                    "party_id": notification.party_id,
                    "event": notification.event,
                    "reason": type(exc).__name__,
                }
            },
        )
