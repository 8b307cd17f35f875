import os
import tempfile

# Settings are read at import time, so point the app at throwaway paths first
_TEST_ROOT = tempfile.mkdtemp(prefix="upscale-tests-")
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{_TEST_ROOT}/upscale.db")
os.environ.setdefault("LOCAL_STORAGE_PATH", f"{_TEST_ROOT}/storage")
os.environ.setdefault("PUBLIC_BASE_URL", "http://test")
os.environ.setdefault("LOG_FORMAT_JSON", "false")

from typing import AsyncGenerator

import pytest
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel

from src.api.dependencies import get_dispatcher
from src.core.exceptions import get_circuit_breaker
from src.core.storage import LocalStorage
from src.main import app
from tests.factories import RecordingDispatcher


@pytest.fixture(scope="session")
def anyio_backend():
    return "asyncio"


@pytest.fixture(autouse=True)
def reset_replicate_circuit():
    get_circuit_breaker("replicate").reset()
    yield
    get_circuit_breaker("replicate").reset()


@pytest.fixture
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture
def storage(tmp_path) -> LocalStorage:
    return LocalStorage(base_path=str(tmp_path / "storage"), public_base_url="http://test")


@pytest.fixture
async def session() -> AsyncGenerator[AsyncSession, None]:
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    session_maker = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with session_maker() as s:
        yield s
    await engine.dispose()


@pytest.fixture
async def client(dispatcher) -> AsyncGenerator[AsyncClient, None]:
    # Trigger lifespan events (startup/shutdown)
    app.dependency_overrides[get_dispatcher] = lambda: dispatcher
    async with app.router.lifespan_context(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
            yield ac
    app.dependency_overrides.clear()
