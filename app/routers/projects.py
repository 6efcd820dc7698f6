"""
Gap analysis and source organization endpoints.

Route summary
-------------
POST /{project_id}/gap-analysis               : analyze sources against a research question.
GET  /{project_id}/gap-analysis               : last stored analysis for the project.
POST /{project_id}/organization               : organize sources into themes / methods / timeline.
GET  /{project_id}/organization               : last stored organization for the project.
POST /{project_id}/organization/reorganize    : apply manual changes to an organization.
POST /organization/search                     : filter the sources of an organization.

Analysis endpoints never fail because Ollama is down: the services degrade
to rule-based output and say so in ``analysis_method`` /
``metadata.clustering_method``.
"""
from __future__ import annotations

import logging
from typing import List

from fastapi import APIRouter, Depends, HTTPException, status

from app.dependencies.services import ServiceContainer, get_container
from app.models.schemas import (
    GapAnalysisRequest,
    GapAnalysisResult,
    OrganizedSources,
    OrganizeRequest,
    ReorganizeRequest,
    SearchRequest,
    Source,
)
from app.services.source_organizer import search_organized_sources

logger = logging.getLogger(__name__)

router = APIRouter()


# ---------------------------------------------------------------------------
# Gap analysis
# ---------------------------------------------------------------------------

@router.post(
    "/{project_id}/gap-analysis",
    response_model=GapAnalysisResult,
    summary="Identify and rank research gaps",
)
async def run_gap_analysis(
    project_id: str,
    body: GapAnalysisRequest,
    services: ServiceContainer = Depends(get_container),
) -> GapAnalysisResult:
    """
    Synthesize the submitted sources, identify candidate gaps (model first,
    rule-based second), score and rank them, and derive follow-up questions.

    Fewer than three sources returns a low-confidence result with guidance
    and no gaps.  Successful analyses are stored in the background.
    """
    return await services.gap_analyzer.perform_gap_analysis(
        body.sources, body.research_question, project_id=project_id
    )


@router.get(
    "/{project_id}/gap-analysis",
    response_model=GapAnalysisResult,
    summary="Last stored gap analysis",
)
async def get_gap_analysis(
    project_id: str,
    services: ServiceContainer = Depends(get_container),
) -> GapAnalysisResult:
    result = await services.store.load_analysis(project_id)
    if result is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No gap analysis stored for project '{project_id}'.",
        )
    return result


# ---------------------------------------------------------------------------
# Organization
# ---------------------------------------------------------------------------

@router.post(
    "/{project_id}/organization",
    response_model=OrganizedSources,
    summary="Organize sources into themes, methodologies and a timeline",
)
async def organize_sources(
    project_id: str,
    body: OrganizeRequest,
    services: ServiceContainer = Depends(get_container),
) -> OrganizedSources:
    return await services.organizer.organize_sources(
        body.sources,
        body.research_question,
        project_id=project_id,
        manual_overrides=body.manual_overrides,
    )


@router.get(
    "/{project_id}/organization",
    response_model=OrganizedSources,
    summary="Last stored organization",
)
async def get_organization(
    project_id: str,
    services: ServiceContainer = Depends(get_container),
) -> OrganizedSources:
    organization = await services.store.load_organization(project_id)
    if organization is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No organization stored for project '{project_id}'.",
        )
    return organization


@router.post(
    "/{project_id}/organization/reorganize",
    response_model=OrganizedSources,
    summary="Apply manual changes to an organization",
)
async def reorganize_sources(
    project_id: str,
    body: ReorganizeRequest,
    services: ServiceContainer = Depends(get_container),
) -> OrganizedSources:
    """
    Move a source between themes, create, merge or delete themes.

    Unknown theme or source ids are skipped.  The result is stored as the
    project's current organization.
    """
    updated = services.organizer.reorganize_sources(body.organization, body.changes)
    services.store.schedule(services.store.persist_organization(project_id, updated))
    return updated


@router.post(
    "/organization/search",
    response_model=List[Source],
    summary="Search the sources of an organization",
)
async def search_sources(body: SearchRequest) -> List[Source]:
    results = search_organized_sources(body.organization, body.query, body.filters)
    logger.info("search: query=%r matched %d source(s)", body.query, len(results))
    return results
