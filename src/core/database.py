from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import NullPool
from sqlmodel import SQLModel
from src.core.config import settings

# Import ALL models to ensure they're registered with SQLModel.metadata
from src.modules.upscale.models import UpscaleJob, UpscaleTile  # noqa: F401

# Create async engine
engine = create_async_engine(settings.DATABASE_URL, echo=False, future=True)

# Create async session factory
async_session_maker = sessionmaker(
    engine, class_=AsyncSession, expire_on_commit=False
)


async def create_db_and_tables():
    """Create all tables if they don't exist.

    Uses checkfirst=True to avoid errors when tables already exist.
    """
    async with engine.begin() as conn:
        await conn.run_sync(lambda sync_conn: SQLModel.metadata.create_all(sync_conn, checkfirst=True))


async def get_session() -> AsyncSession:
    async with async_session_maker() as session:
        yield session


def create_worker_session_maker():
    """Engine + session factory for Celery tasks.

    Each task drives the async orchestrator on a fresh event loop, so pooled
    connections must not outlive the loop that opened them.
    """
    worker_engine = create_async_engine(settings.DATABASE_URL, poolclass=NullPool, future=True)
    return worker_engine, sessionmaker(worker_engine, class_=AsyncSession, expire_on_commit=False)
