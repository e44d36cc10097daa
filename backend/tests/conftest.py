"""
Pytest fixtures for the lifecycle service, stores, HTTP client and auth.

The service runs against the in-memory store with a frozen clock in UTC so
business-hour and "today" checks are deterministic. SQL store tests build
their own SQLite database (see test_sql_store.py).
"""

import os

# Must be set before table_booking settings are first read
os.environ.setdefault("ENVIRONMENT", "test")
os.environ["RESERVATION_STORE"] = "memory"
os.environ["REDIS_ENABLED"] = "false"
os.environ["RESTAURANT_TIMEZONE"] = "UTC"

from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from table_booking.core.security import create_access_token
from table_booking.domain.reservation import Actor, ActorRole, ReservationDraft
from table_booking.main import app
from table_booking.services.interfaces.in_memory_store import InMemoryReservationStore
from table_booking.services.reservation_service import ReservationLifecycleService
from table_booking.services.store_factory import get_reservation_service

# Saturday 09:00 UTC, one hour before opening
NOW = datetime(2030, 6, 1, 9, 0, tzinfo=timezone.utc)


def at(days: int = 1, hour: int = 12, minute: int = 0) -> datetime:
    """A UTC instant `days` after NOW at the given wall-clock time."""
    return (NOW + timedelta(days=days)).replace(hour=hour, minute=minute)


def make_draft(**overrides) -> ReservationDraft:
    values = {
        "guest_name": "Li Wei",
        "phone_number": "13800138000",
        "email": "li.wei@example.com",
        "arrival_time": at(1, 19),
        "table_size": 4,
        "special_requests": None,
    }
    values.update(overrides)
    return ReservationDraft(**values)


@pytest.fixture
def store() -> InMemoryReservationStore:
    return InMemoryReservationStore()


@pytest.fixture
def service(store) -> ReservationLifecycleService:
    return ReservationLifecycleService(store, clock=lambda: NOW, tz=timezone.utc)


@pytest.fixture
def user() -> Actor:
    return Actor(id=1)


@pytest.fixture
def other_user() -> Actor:
    return Actor(id=2)


@pytest.fixture
def admin() -> Actor:
    return Actor(id=99, role=ActorRole.ADMIN)


@pytest_asyncio.fixture
async def reservation(service, user):
    """A Requested reservation owned by `user`, tomorrow at 19:00."""
    return await service.create_reservation(user, make_draft())


@pytest_asyncio.fixture
async def client(service) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client wired to the test service instead of the process singleton."""
    app.dependency_overrides[get_reservation_service] = lambda: service

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


def _headers(actor: Actor) -> dict:
    token = create_access_token(data={"sub": str(actor.id), "role": actor.role.value})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def auth_headers(user) -> dict:
    return _headers(user)


@pytest.fixture
def other_headers(other_user) -> dict:
    return _headers(other_user)


@pytest.fixture
def admin_headers(admin) -> dict:
    return _headers(admin)
