from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from marketplace.domain.payments.gateway import PaymentGateway, resolve_gateway
from marketplace.infra.events import ThreadEventHub
from marketplace.infra.locks import EntityLocks
from marketplace.infra.metrics import Metrics, configure_metrics
from marketplace.infra.push import PushNotifier, resolve_push_notifier


@dataclass
class AppServices:
    """Typed container for runtime services stored on `app.state.services`."""

    gateway: PaymentGateway
    notifier: PushNotifier
    locks: EntityLocks
    hub: ThreadEventHub
    metrics: Metrics


def build_app_services(app_settings, *, metrics: Metrics | None = None) -> AppServices:
    metrics_client = metrics or configure_metrics(app_settings.metrics_enabled)
    return AppServices(
        gateway=resolve_gateway(app_settings),
        notifier=resolve_push_notifier(app_settings),
        locks=EntityLocks(),
        hub=ThreadEventHub(),
        metrics=metrics_client,
    )


def resolve_services(container_like: Any) -> AppServices | None:
    if isinstance(container_like, AppServices):
        return container_like
    if container_like is None:
        return None
    state = getattr(container_like, "state", container_like)
    return getattr(state, "services", None)
