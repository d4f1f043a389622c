# Copyright (C) 2024 TripDesk Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Pytest fixtures: in-memory SQLite, a fake clock, and stand-ins for Redis and SMTP."""

import asyncio
import time

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from tripdesk_server.models import Base
from tripdesk_server.services.accounts import AccountRepository
from tripdesk_server.services.code_store import CodeStore, LocalCodeTier
from tripdesk_server.services.otp import AuthService


class FakeClock:
    """Epoch-seconds clock that only moves when told to."""

    def __init__(self, start: float | None = None):
        self.now = start if start is not None else float(int(time.time()))

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class MemorySharedTier:
    """Redis stand-in with TTLs on the fake clock. Set down=True to simulate an outage."""

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.down = False
        self.data: dict[str, tuple[str, float]] = {}

    def _check(self) -> None:
        if self.down:
            raise ConnectionError("redis unreachable")

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        self._check()
        self.data[key] = (value, self.clock() + ttl_seconds)

    async def get(self, key: str) -> str | None:
        self._check()
        # Suspend like a real round trip so concurrent callers interleave
        await asyncio.sleep(0)
        entry = self.data.get(key)
        if entry is None or self.clock() >= entry[1]:
            self.data.pop(key, None)
            return None
        return entry[0]

    async def delete(self, key: str) -> None:
        self._check()
        self.data.pop(key, None)

    async def compare_and_delete(self, key: str, expected: str) -> bool:
        self._check()
        entry = self.data.get(key)
        if entry is None or self.clock() >= entry[1] or entry[0] != expected:
            return False
        del self.data[key]
        return True

    async def close(self) -> None:
        pass


class RecordingMailer:
    """Captures outgoing mail instead of sending it."""

    def __init__(self):
        self.sent: list[tuple[str, object, dict]] = []

    async def send(self, to: str, kind, **context) -> None:
        self.sent.append((to, kind, context))

    def last_code(self, to: str) -> str:
        for recipient, _kind, context in reversed(self.sent):
            if recipient == to and "code" in context:
                return context["code"]
        raise AssertionError(f"no code sent to {to}")


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def shared_tier(clock):
    return MemorySharedTier(clock)


@pytest.fixture
def code_store(clock, shared_tier):
    return CodeStore(shared_tier, LocalCodeTier(clock=clock))


@pytest.fixture
def mailer():
    return RecordingMailer()


@pytest.fixture
async def session_maker():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
async def db(session_maker):
    async with session_maker() as session:
        yield session


@pytest.fixture
def accounts(db):
    return AccountRepository(db)


@pytest.fixture
def service(accounts, code_store, mailer, clock):
    return AuthService(accounts, code_store, mailer, clock=clock, ttl_seconds=900)
