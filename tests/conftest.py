"""Pytest configuration and fixtures for test suite."""

import os
import sys
from pathlib import Path
from types import SimpleNamespace
from typing import Iterable, Optional
from uuid import UUID

import pytest
import pytest_asyncio

# Set test environment BEFORE any other imports
os.environ.setdefault("APP_ENVIRONMENT", "test")
os.environ.setdefault("DB_DRIVER", "sqlite+aiosqlite")
os.environ.setdefault("DB_SQLITE_PATH", ":memory:")

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
if str(src_path) not in sys.path:
    sys.path.insert(0, str(src_path))

from config.database import DatabaseSettings  # noqa: E402
from core.rbac.cache import PermissionCache  # noqa: E402
from core.rbac.permissions import PermissionCatalog  # noqa: E402
from core.rbac.roles import RoleStore  # noqa: E402
from core.rbac.services import AccessControlService  # noqa: E402
from database.async_engine import create_engine, get_session_factory, init_database  # noqa: E402
from database.models import Department, Organization, User  # noqa: E402


def _reset_db_modules():
    """Reset database module globals to ensure clean state."""
    try:
        import database.async_engine as module
        module._async_engine = None
        module._async_session_factory = None
    except ImportError:
        pass


@pytest.fixture(autouse=True)
def reset_database_globals():
    """Reset database module globals before and after each test."""
    _reset_db_modules()
    yield
    _reset_db_modules()


class FakeClock:
    """Manually advanced monotonic clock for cache tests."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


# =============================================================================
# DATABASE
# =============================================================================

@pytest_asyncio.fixture
async def engine():
    """Fresh in-memory SQLite database per test."""
    engine = create_engine(DatabaseSettings(driver="sqlite+aiosqlite", sqlite_path=":memory:"))
    await init_database(engine)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session(engine):
    factory = get_session_factory(engine)
    async with factory() as session:
        yield session


@pytest_asyncio.fixture
async def catalog(session):
    """Catalog with the system permissions seeded."""
    catalog = PermissionCatalog(session)
    await catalog.seed_system_permissions()
    return catalog


@pytest_asyncio.fixture
async def tenancy(session):
    """Two organizations; the first has two departments."""
    acme = Organization(name="Acme Sensors")
    globex = Organization(name="Globex Devices")
    session.add_all([acme, globex])
    await session.flush()

    field_ops = Department(organization_id=acme.id, name="Field Ops")
    lab = Department(organization_id=acme.id, name="Lab")
    globex_ops = Department(organization_id=globex.id, name="Operations")
    session.add_all([field_ops, lab, globex_ops])
    await session.commit()

    return SimpleNamespace(acme=acme, globex=globex, field_ops=field_ops, lab=lab, globex_ops=globex_ops)


@pytest.fixture
def make_user(session):
    """Factory: await make_user("alice", organization_id=..., department_id=...)."""

    async def _make_user(
        username: str,
        organization_id: Optional[UUID] = None,
        department_id: Optional[UUID] = None,
        is_active: bool = True,
    ) -> User:
        user = User(
            username=username,
            email=f"{username}@example.com",
            full_name=username.title(),
            organization_id=organization_id,
            department_id=department_id,
            is_active=is_active,
        )
        session.add(user)
        await session.commit()
        return user

    return _make_user


@pytest.fixture
def make_role(session, catalog):
    """Factory: await make_role("viewer", ["device.read"])."""

    async def _make_role(
        name: str,
        codes: Iterable[str],
        is_system_role: bool = False,
        organization_id: Optional[UUID] = None,
    ):
        return await RoleStore(session, catalog).create_role(
            name=name,
            created_by=None,
            permission_codes=codes,
            is_system_role=is_system_role,
            organization_id=organization_id,
        )

    return _make_role


# =============================================================================
# SERVICE
# =============================================================================

@pytest.fixture
def cache(clock):
    return PermissionCache(ttl_seconds=300, max_entries=1000, clock=clock)


@pytest.fixture
def service(cache):
    return AccessControlService(cache=cache)
