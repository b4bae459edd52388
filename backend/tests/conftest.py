import asyncio
import sys
from collections import deque
from datetime import date, time
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def ensure_event_loop() -> asyncio.AbstractEventLoop:
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)

    if loop.is_closed():
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)

    return loop


ensure_event_loop()

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from marketplace.domain.bookings.schemas import BookingCreateRequest
from marketplace.domain.parties import service as parties_service
from marketplace.domain.parties.schemas import PartyCreateRequest, PartyType, ServiceType
from marketplace.domain.payments.gateway import GatewayOutcome
from marketplace.infra.db import get_db_session
from marketplace.infra.db_models_all import Base
from marketplace.infra.events import ThreadEventHub
from marketplace.infra.locks import EntityLocks
from marketplace.infra.metrics import metrics
from marketplace.main import app
from marketplace.services import AppServices
from marketplace.settings import settings


class ScriptedGateway:
    """Returns queued outcomes in order; approves when the queue is empty."""

    def __init__(self) -> None:
        self.outcomes: deque = deque()
        self.calls: list[tuple[str, float]] = []

    def push(self, *outcomes) -> None:
        self.outcomes.extend(outcomes)

    def _next(self, prefix: str) -> GatewayOutcome:
        if not self.outcomes:
            return GatewayOutcome(approved=True, transaction_id=f"{prefix}_{len(self.calls)}")
        outcome = self.outcomes.popleft()
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    async def attempt(self, amount, method) -> GatewayOutcome:
        self.calls.append(("attempt", amount))
        return self._next("txn")

    async def refund(self, amount, transaction_id) -> GatewayOutcome:
        self.calls.append(("refund", amount))
        return self._next("rfnd")


class RecordingNotifier:
    def __init__(self) -> None:
        self.sent = []

    async def notify(self, notification) -> bool:
        self.sent.append(notification)
        return True

    def events_for(self, party_id: str) -> list[str]:
        return [item.event for item in self.sent if item.party_id == party_id]


@pytest.fixture(scope="session")
def anyio_backend():
    return "asyncio"


@pytest.fixture(scope="session")
def test_engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    async def init_models() -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    asyncio.run(init_models())
    yield engine
    asyncio.run(engine.dispose())


@pytest.fixture(scope="session")
def async_session_maker(test_engine):
    return async_sessionmaker(test_engine, expire_on_commit=False)


@pytest.fixture(autouse=True)
def enable_test_mode():
    original_testing = settings.testing
    original_env = settings.app_env
    settings.testing = True
    settings.app_env = "dev"
    yield
    settings.testing = original_testing
    settings.app_env = original_env


@pytest.fixture(autouse=True)
def clean_database(test_engine):
    async def truncate_tables() -> None:
        async with test_engine.begin() as conn:
            for table in reversed(Base.metadata.sorted_tables):
                await conn.execute(table.delete())

    asyncio.run(truncate_tables())
    yield


@pytest.fixture()
def gateway() -> ScriptedGateway:
    return ScriptedGateway()


@pytest.fixture()
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture()
def app_services(gateway, notifier) -> AppServices:
    return AppServices(
        gateway=gateway,
        notifier=notifier,
        locks=EntityLocks(),
        hub=ThreadEventHub(),
        metrics=metrics,
    )


@pytest.fixture()
def client(async_session_maker, app_services):
    ensure_event_loop()

    async def override_db_session():
        async with async_session_maker() as session:
            yield session

    app.dependency_overrides[get_db_session] = override_db_session
    original_services = getattr(app.state, "services", None)
    original_factory = getattr(app.state, "db_session_factory", None)
    app.state.services = app_services
    app.state.db_session_factory = async_session_maker
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
    app.state.services = original_services
    app.state.db_session_factory = original_factory


async def seed_party(
    async_session_maker,
    party_id: str,
    party_type: PartyType = PartyType.customer,
    *,
    services: list[ServiceType] | None = None,
    name: str | None = None,
    device_token: str | None = None,
):
    async with async_session_maker() as session:
        party = await parties_service.register_party(
            session,
            party_id,
            PartyCreateRequest(
                name=name or f"Party {party_id}",
                email=f"{party_id}@example.com",
                phone="+91 98765 43210",
                address="12 Lake Road",
                party_type=party_type,
                services=services or ([] if party_type == PartyType.customer else [ServiceType.plumber]),
            ),
        )
        if device_token:
            party = await parties_service.register_device(session, party_id, device_token)
        return party


async def seed_customer_and_worker(async_session_maker, *, customer_id="c1", worker_id="w1", services=None):
    customer = await seed_party(async_session_maker, customer_id, PartyType.customer, device_token="dev-c")
    worker = await seed_party(
        async_session_maker,
        worker_id,
        PartyType.worker,
        services=services or [ServiceType.plumber, ServiceType.electrician],
        device_token="dev-w",
    )
    return customer, worker


def booking_request(worker_id: str = "w1", service_type: ServiceType = ServiceType.plumber) -> BookingCreateRequest:
    return BookingCreateRequest(
        worker_id=worker_id,
        service_type=service_type,
        scheduled_date=date(2026, 11, 2),
        scheduled_time=time(10, 30),
        description="fix tap",
        address="addr",
    )
