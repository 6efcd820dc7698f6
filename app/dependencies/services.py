"""
Service container dependencies for FastAPI routes.

One ``ServiceContainer`` is built during application startup and kept on
``app.state.services``; routes receive it through ``get_container``.
Tests replace ``app.state.services`` with a container of stubs.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import HTTPException, Request, status

from app.database import AsyncSessionLocal
from app.services.embedding import OllamaEmbeddingService
from app.services.gap_analyzer import GapAnalyzer
from app.services.llm import OllamaLLMService
from app.services.progress_cache import ProgressAnalysisCache
from app.services.source_organizer import SourceOrganizer
from app.services.store import AnalysisStore

logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
    embedder: Optional[OllamaEmbeddingService]
    llm: Optional[OllamaLLMService]
    store: AnalysisStore
    organizer: SourceOrganizer
    gap_analyzer: GapAnalyzer
    progress_cache: ProgressAnalysisCache


def build_container(
    embedder: Optional[OllamaEmbeddingService] = None,
    llm: Optional[OllamaLLMService] = None,
    store: Optional[AnalysisStore] = None,
) -> ServiceContainer:
    """Wire the services together; missing pieces default to the Ollama-backed ones."""
    embedder = embedder or OllamaEmbeddingService()
    llm = llm or OllamaLLMService()
    store = store or AnalysisStore(AsyncSessionLocal)

    container = ServiceContainer(
        embedder=embedder,
        llm=llm,
        store=store,
        organizer=SourceOrganizer(embedder=embedder, llm=llm, store=store),
        gap_analyzer=GapAnalyzer(llm=llm, store=store),
        progress_cache=ProgressAnalysisCache(),
    )
    logger.info("Service container ready (embed model=%s, llm model=%s)", embedder.model, llm.model)
    return container


async def get_container(request: Request) -> ServiceContainer:
    """Return the application's service container. Raises 503 before startup finished."""
    container = getattr(request.app.state, "services", None)
    if container is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Services are not initialised yet.",
        )
    return container
