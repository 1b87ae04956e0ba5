"""Pytest configuration and fixtures."""
import logging
from typing import Any

import pytest
import pytest_asyncio


def pytest_configure(config):
    """Ensure asyncio_mode is auto so async fixtures work (e.g. in Docker when pyproject not in cwd)."""
    if hasattr(config.option, "asyncio_mode") and config.option.asyncio_mode is None:
        config.option.asyncio_mode = "auto"
    logging.getLogger("httpcore").setLevel(logging.CRITICAL)


from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from melodymaker.main import app
from melodymaker.db import database
from melodymaker.db.database import Base, get_db
from melodymaker.services.storage import StoredObject


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture(autouse=True)
def _reset_singletons():
    """Reset process-wide state between tests to prevent cross-test pollution."""
    yield
    from melodymaker.api.routes._state import limiter
    from melodymaker.services import generation_tasks
    from melodymaker.services.storage import reset_object_store
    from melodymaker.services.track_broadcaster import reset_track_broadcaster

    reset_track_broadcaster()
    generation_tasks.reset()
    reset_object_store()
    limiter.reset()


@pytest_asyncio.fixture
async def db_session():
    """Create an in-memory test database session."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async_session_factory = async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
    # Inject so detached tasks' AsyncSessionLocal() uses the test DB
    old_engine = database._engine
    old_factory = database._async_session_factory
    database._engine = engine
    database._async_session_factory = async_session_factory
    try:
        async with async_session_factory() as session:
            async def override_get_db():
                yield session
            app.dependency_overrides[get_db] = override_get_db
            yield session
            app.dependency_overrides.clear()
    finally:
        database._engine = old_engine
        database._async_session_factory = old_factory
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture
async def client(db_session):
    """Create an async test client bound to the test database."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


# -----------------------------------------------------------------------------
# Collaborator fakes
# -----------------------------------------------------------------------------


class FakeObjectStore:
    """In-memory stand-in for S3ObjectStore that refuses to overwrite keys."""

    def __init__(self, base_url: str = "https://cdn.test/music") -> None:
        self.base_url = base_url
        self.objects: dict[str, tuple[bytes, str]] = {}
        self.fail_with: Exception | None = None

    def public_url(self, key: str) -> str:
        return f"{self.base_url}/{key}"

    async def put_object(self, key: str, data: bytes, content_type: str) -> StoredObject:
        if self.fail_with is not None:
            raise self.fail_with
        if key in self.objects:
            from melodymaker.services.errors import StorageError
            raise StorageError(f"Object already exists: {key}")
        self.objects[key] = (data, content_type)
        return StoredObject(key=key, public_url=self.public_url(key))

    async def get_object(self, key: str) -> bytes:
        return self.objects[key][0]

    def check_reachable(self) -> bool:
        return True


@pytest.fixture
def object_store(monkeypatch: pytest.MonkeyPatch) -> FakeObjectStore:
    """Install a FakeObjectStore as the process-wide object store."""
    store = FakeObjectStore()
    monkeypatch.setattr("melodymaker.services.storage._object_store", store)
    return store


def reference_track(**overrides: Any) -> dict[str, Any]:
    """A camelCase reference-track payload as the frontend sends it."""
    song: dict[str, Any] = {
        "id": "spotify-1",
        "name": "Blinding Lights",
        "artist": "The Weeknd",
        "album": "After Hours",
        "genres": ["synthpop", "dance pop"],
        "audioFeatures": {
            "danceability": 0.51,
            "energy": 0.73,
            "valence": 0.33,
            "tempo": 171.0,
            "key": 1,
            "mode": 1,
            "timeSignature": 4,
            "acousticness": 0.0,
            "instrumentalness": 0.0,
            "speechiness": 0.06,
        },
    }
    song.update(overrides)
    return song


@pytest.fixture
def make_reference():
    """Factory for reference-track payloads (``make_reference(name=...)``)."""
    return reference_track
