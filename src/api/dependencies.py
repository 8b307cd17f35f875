"""
FastAPI Dependencies

Provides dependency injection for:
- Replicate client (singleton)
- Dispatcher (Celery in production, overridden in tests)
- Job orchestrator (per-request, bound to the request's session)
"""

from typing import Optional

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.database import get_session
from src.core.storage import IStorage, get_storage
from src.engines.upscale.orchestrator import Dispatcher, JobOrchestrator
from src.engines.upscale.replicate import ReplicateClient


# =============================================================================
# Global Singletons
# =============================================================================

_replicate_client: Optional[ReplicateClient] = None


def get_replicate_client() -> ReplicateClient:
    global _replicate_client
    if _replicate_client is None:
        _replicate_client = ReplicateClient()
    return _replicate_client


def get_dispatcher() -> Dispatcher:
    # Imported lazily so the API process only loads Celery when it dispatches
    from src.pipeline.tasks import CeleryDispatcher
    return CeleryDispatcher()


# =============================================================================
# Per-request services
# =============================================================================

def get_orchestrator(
    session: AsyncSession = Depends(get_session),
    storage: IStorage = Depends(get_storage),
    dispatcher: Dispatcher = Depends(get_dispatcher),
    replicate: ReplicateClient = Depends(get_replicate_client)
) -> JobOrchestrator:
    return JobOrchestrator(session, storage, dispatcher, replicate)
