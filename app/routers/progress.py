"""
Research question progress endpoints.

Route summary
-------------
POST   /question                 : score a research question (cached).
POST   /projects/{project_id}    : blend question maturity with research depth (cached).
GET    /cache                    : cache sizes and hit / miss counters.
DELETE /cache                    : drop every cached result.
"""
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, status

from app.dependencies.services import ServiceContainer, get_container
from app.models.schemas import (
    CacheStatsResponse,
    ProjectInfo,
    ProjectProgress,
    ProjectProgressRequest,
    QuestionAnalysis,
    QuestionProgressRequest,
)

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/question", response_model=QuestionAnalysis)
async def question_progress(
    body: QuestionProgressRequest,
    services: ServiceContainer = Depends(get_container),
) -> QuestionAnalysis:
    return services.progress_cache.analyze_question_progress_cached(
        body.question, body.conversation_count, body.document_count, body.history
    )


@router.post("/projects/{project_id}", response_model=ProjectProgress)
async def project_progress(
    project_id: str,
    body: ProjectProgressRequest,
    services: ServiceContainer = Depends(get_container),
) -> ProjectProgress:
    """Question progress weighs 60%; documents and conversations make up the rest."""
    project = ProjectInfo(id=project_id, title=body.title, research_question=body.research_question)
    return services.progress_cache.evaluate_project_progress_cached(
        project, body.conversation_count, body.document_count, body.history
    )


@router.get("/cache", response_model=CacheStatsResponse)
async def cache_stats(services: ServiceContainer = Depends(get_container)) -> CacheStatsResponse:
    return CacheStatsResponse(**services.progress_cache.get_cache_stats())


@router.delete("/cache", status_code=status.HTTP_204_NO_CONTENT)
async def clear_cache(services: ServiceContainer = Depends(get_container)) -> None:
    services.progress_cache.clear_all()
