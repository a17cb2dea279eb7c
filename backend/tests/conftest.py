from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

# Add backend folder to sys.path so `import buildledger...` works in tests when running from backend root
BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

from buildledger.core.config import settings  # noqa: E402
from buildledger.core.database import Base  # noqa: E402
from buildledger.models import tables  # noqa: E402,F401
from buildledger.models.enums import UserRole  # noqa: E402
from buildledger.services.storage_service import FilesystemObjectStore  # noqa: E402
from buildledger.services.upload_service import UploadService  # noqa: E402

from factories import ADMIN_ID, CREW_ID, MANAGER_ID, auth_headers, seed_rows  # noqa: E402


# ---------------------------------------------------------------------------
# Storage


@pytest.fixture
def store(tmp_path) -> FilesystemObjectStore:
    return FilesystemObjectStore(tmp_path / "blobs", "http://testserver", "test-signing-secret")


@pytest.fixture
def uploads(store) -> UploadService:
    return UploadService(store, settings)


# ---------------------------------------------------------------------------
# Database


def _make_engine():
    return create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )


async def _prepare(engine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with factory() as session:
        session.add_all(seed_rows())
        await session.commit()


@pytest_asyncio.fixture
async def db_session():
    engine = _make_engine()
    await _prepare(engine)
    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with factory() as session:
        yield session
    await engine.dispose()


@pytest.fixture
def session_factory():
    """Seeded in-memory database for API tests (TestClient runs its own loop)."""
    engine = _make_engine()
    asyncio.run(_prepare(engine))
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    asyncio.run(engine.dispose())


# ---------------------------------------------------------------------------
# API


@pytest.fixture
def client(session_factory, store):
    from fastapi.testclient import TestClient

    from buildledger.api.dependencies import get_db_session, get_object_store
    from buildledger.api.main import app

    async def _override_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db_session] = _override_db
    app.dependency_overrides[get_object_store] = lambda: store
    # No context manager: lifespan (init_db, bucket check) is not run
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def admin_headers():
    return auth_headers(ADMIN_ID, role=UserRole.ADMIN)


@pytest.fixture
def manager_headers():
    return auth_headers(MANAGER_ID, role=UserRole.MANAGER)


@pytest.fixture
def crew_headers():
    return auth_headers(CREW_ID, role=UserRole.CREW_MEMBER)
