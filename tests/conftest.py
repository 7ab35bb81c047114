"""
Shared fixtures: a throwaway SQLite database per test, in-memory stand-ins for
the HTTP collaborators, and a fully wired DispatchEngine.
"""
import asyncio
import itertools
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

import dispatch_engine.models  # noqa: F401  (registers every table on Base.metadata)
from dispatch_engine.config import Settings
from dispatch_engine.database import Base, utcnow
from dispatch_engine.engine import DispatchEngine
from dispatch_engine.models.driver import Driver, DriverLocation
from dispatch_engine.models.request import ServiceRequest
from dispatch_engine.schemas.schemas import RequestStatusEnum, VehicleClassEnum
from dispatch_engine.services.intake import RequestDraft
from dispatch_engine.services.wallet import WalletOutcome, WalletResult

_phones = itertools.count(100000001)

# Kinshasa Centre, outside Gombe: no surge for any class.
PICKUP = (-4.380, 15.300)
DESTINATION = (-4.400, 15.320)


class FakeNotifier:
    """Records every payload; ``responder`` may react to offers (e.g. auto-accept).

    Users in ``undeliverable`` never see their messages and ``send`` reports False.
    """

    def __init__(self):
        self.sent: list[tuple[str, dict[str, Any]]] = []
        self.responder: Callable[[str, dict[str, Any]], None] | None = None
        self.deliver = True
        self.undeliverable: set[str] = set()

    async def send(self, user_id: str, payload: dict[str, Any]) -> bool:
        self.sent.append((user_id, payload))
        if user_id in self.undeliverable:
            return False
        if self.responder is not None:
            self.responder(user_id, payload)
        return self.deliver

    def of_type(self, message_type: str) -> list[tuple[str, dict[str, Any]]]:
        return [(user, payload) for user, payload in self.sent if payload.get("type") == message_type]

    async def aclose(self) -> None:
        pass


class FakeWallet:
    """Idempotent by key, like the real wallet service."""

    def __init__(self):
        self.calls: list[tuple[str, str, Decimal, str]] = []
        self.balances: dict[str, Decimal] = {}
        self.debit_outcome = WalletOutcome.ok
        self.error: Exception | None = None
        self._seen: set[str] = set()

    async def debit(self, user_id: str, amount: Decimal, idempotency_key: str) -> WalletResult:
        return self._apply("debit", user_id, -amount, idempotency_key)

    async def credit(self, user_id: str, amount: Decimal, idempotency_key: str) -> WalletResult:
        return self._apply("credit", user_id, amount, idempotency_key)

    def _apply(self, op: str, user_id: str, delta: Decimal, key: str) -> WalletResult:
        if self.error is not None:
            raise self.error
        if op == "debit" and self.debit_outcome is not WalletOutcome.ok:
            return WalletResult(self.debit_outcome)
        if key not in self._seen:
            self._seen.add(key)
            self.calls.append((op, user_id, abs(delta), key))
            self.balances[user_id] = self.balances.get(user_id, Decimal("0")) + delta
        return WalletResult(WalletOutcome.ok, reference=key)

    async def aclose(self) -> None:
        pass


class FakeAlerts:
    def __init__(self):
        self.alerts: list[dict[str, Any]] = []

    async def alert(self, payload: dict[str, Any]) -> bool:
        self.alerts.append(payload)
        return True

    def of_type(self, alert_type: str) -> list[dict[str, Any]]:
        return [a for a in self.alerts if a.get("alert_type") == alert_type]

    async def aclose(self) -> None:
        pass


def make_redis() -> AsyncMock:
    redis = AsyncMock()
    redis.get = AsyncMock(return_value=None)
    redis.setex = AsyncMock(return_value=True)
    redis.delete = AsyncMock(return_value=1)
    redis.publish = AsyncMock(return_value=0)
    return redis


@pytest.fixture
def settings() -> Settings:
    return Settings(
        assignment_response_seconds=0.3,
        bidding_window_seconds=60,
        sweeper_interval_seconds=3600,
    )


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path}/test.db")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def notifier() -> FakeNotifier:
    return FakeNotifier()


@pytest.fixture
def wallet() -> FakeWallet:
    return FakeWallet()


@pytest.fixture
def alerts() -> FakeAlerts:
    return FakeAlerts()


@pytest.fixture
def redis() -> AsyncMock:
    return make_redis()


@pytest_asyncio.fixture
async def engine(settings, session_factory, redis, notifier, wallet, alerts):
    dispatch = DispatchEngine(
        settings, session_factory, redis, notifier=notifier, wallet=wallet, alerts=alerts,
    )
    yield dispatch
    await dispatch.shutdown()


@pytest.fixture
def add_driver(session_factory):
    async def _add(
        driver_id: str,
        lat: float,
        lng: float,
        vehicle_class: VehicleClassEnum = VehicleClassEnum.standard,
        rating: float = 4.5,
        completed_trips: int = 50,
        verified: bool = True,
        online: bool = True,
        available: bool = True,
        seen_at: datetime | None = None,
    ) -> None:
        async with session_factory() as db:
            db.add(Driver(
                id=driver_id,
                name=f"Driver {driver_id}",
                phone=f"+243{next(_phones)}",
                vehicle_class=vehicle_class,
                rating=rating,
                completed_trips=completed_trips,
                verified=verified,
            ))
            db.add(DriverLocation(
                driver_id=driver_id,
                lat=lat,
                lng=lng,
                online=online,
                available=available,
                verified=verified,
                vehicle_class=vehicle_class,
                last_seen_at=seen_at or utcnow(),
            ))
            await db.commit()

    return _add


@pytest.fixture
def auto_respond(engine, notifier):
    """Make drivers answer assignment offers: ``{driver_id: "accept" | "reject"}``, others stay silent."""
    tasks: list[asyncio.Task] = []

    def _configure(answers: dict[str, str]) -> list[asyncio.Task]:
        def responder(user_id: str, payload: dict[str, Any]) -> None:
            if payload.get("type") != "assignment_offer":
                return
            answer = answers.get(user_id)
            if answer == "accept":
                coro = engine.coordinator.accept_assignment(payload["assignment_id"], user_id)
            elif answer == "reject":
                coro = engine.coordinator.reject_assignment(payload["assignment_id"], user_id)
            else:
                return
            tasks.append(asyncio.create_task(coro))

        notifier.responder = responder
        return tasks

    return _configure


@pytest.fixture
def make_request(engine, session_factory):
    async def _make(
        requester_id: str = "rider-1",
        pickup: tuple[float, float] = PICKUP,
        destination: tuple[float, float] = DESTINATION,
        **kwargs,
    ) -> ServiceRequest:
        async with session_factory() as db:
            return await engine.intake.create(db, RequestDraft(
                requester_id=requester_id,
                pickup_lat=pickup[0], pickup_lng=pickup[1],
                dest_lat=destination[0], dest_lng=destination[1],
                **kwargs,
            ))

    return _make


@pytest.fixture
def load(session_factory):
    """Fresh copy of a row by primary key."""
    async def _load(model, pk):
        async with session_factory() as db:
            return await db.get(model, pk, populate_existing=True)

    return _load


@pytest.fixture
def wait_for_status(load):
    async def _wait(request_id: str, status: RequestStatusEnum, timeout: float = 5.0) -> ServiceRequest:
        deadline = asyncio.get_running_loop().time() + timeout
        while True:
            request = await load(ServiceRequest, request_id)
            if request.status == status:
                return request
            if asyncio.get_running_loop().time() > deadline:
                raise AssertionError(f"request {request_id} stuck in {request.status.value}, wanted {status.value}")
            await asyncio.sleep(0.02)

    return _wait
