"""Tests for best-effort persistence of analyses and organizations."""
import asyncio

import pytest
from sqlalchemy import select

from app.database import AsyncSessionLocal
from app.models.database_models import GapAnalysisRecord
from app.models.schemas import AnalysisMethod, ClusteringMethod
from app.services.gap_analyzer import GapAnalyzer
from app.services.source_organizer import SourceOrganizer
from app.services.store import AnalysisStore
from tests.conftest import TODAY, StubEmbedder

QUESTION = "How does sleep affect college students?"


@pytest.mark.asyncio
async def test_analysis_round_trip(store, sample_sources):
    result = await GapAnalyzer(today=TODAY).perform_gap_analysis(sample_sources, QUESTION)

    assert await store.persist_analysis("p1", result) is True
    loaded = await store.load_analysis("p1")
    assert loaded == result
    assert loaded.analysis_method == AnalysisMethod.RULE_BASED


@pytest.mark.asyncio
async def test_second_write_replaces_the_first(store, sample_sources):
    analyzer = GapAnalyzer(today=TODAY)
    first = await analyzer.perform_gap_analysis(sample_sources, QUESTION)
    second = await analyzer.perform_gap_analysis(sample_sources[:4], QUESTION)

    await store.persist_analysis("p1", first)
    await store.persist_analysis("p1", second)

    async with AsyncSessionLocal() as session:
        rows = (
            await session.execute(select(GapAnalysisRecord).where(GapAnalysisRecord.project_id == "p1"))
        ).scalars().all()
    assert len(rows) == 1
    assert (await store.load_analysis("p1")).sources_covered == 4


@pytest.mark.asyncio
async def test_concurrent_writes_to_a_new_project_keep_the_last(store, sample_sources):
    analyzer = GapAnalyzer(today=TODAY)
    first = await analyzer.perform_gap_analysis(sample_sources, QUESTION)
    second = await analyzer.perform_gap_analysis(sample_sources[:4], QUESTION)

    results = await asyncio.gather(
        store.persist_analysis("race", first),
        store.persist_analysis("race", second),
    )

    assert results == [True, True]
    assert (await store.load_analysis("race")).sources_covered == 4


@pytest.mark.asyncio
async def test_insert_race_between_stores_becomes_an_update(store, sample_sources):
    other = AnalysisStore(AsyncSessionLocal)
    analyzer = GapAnalyzer(today=TODAY)
    first = await analyzer.perform_gap_analysis(sample_sources, QUESTION)
    second = await analyzer.perform_gap_analysis(sample_sources[:4], QUESTION)

    results = await asyncio.gather(
        store.persist_analysis("shared", first),
        other.persist_analysis("shared", second),
    )

    assert results == [True, True]
    async with AsyncSessionLocal() as session:
        rows = (
            await session.execute(select(GapAnalysisRecord).where(GapAnalysisRecord.project_id == "shared"))
        ).scalars().all()
    assert len(rows) == 1


@pytest.mark.asyncio
async def test_organization_round_trip(store, sample_sources):
    organizer = SourceOrganizer(embedder=StubEmbedder(), today=TODAY)
    organization = await organizer.organize_sources(sample_sources, QUESTION)

    assert await store.persist_organization("p1", organization) is True
    loaded = await store.load_organization("p1")
    assert loaded == organization
    assert loaded.metadata.clustering_method == ClusteringMethod.SIMILARITY_THRESHOLD


@pytest.mark.asyncio
async def test_missing_project_loads_nothing(store):
    assert await store.load_analysis("nope") is None
    assert await store.load_organization("nope") is None


@pytest.mark.asyncio
async def test_scheduled_writes_finish_in_background(store, sample_sources):
    analyzer = GapAnalyzer(store=store, today=TODAY)
    await analyzer.perform_gap_analysis(sample_sources, QUESTION, project_id="p2")

    assert store.pending == 1
    await store.wait_idle()
    assert store.pending == 0
    assert (await store.load_analysis("p2")).sources_covered == 5


@pytest.mark.asyncio
async def test_write_failure_is_reported_not_raised(sample_sources):
    class BrokenSession:
        async def __aenter__(self):
            raise ConnectionRefusedError("database is down")

        async def __aexit__(self, *exc):
            return False

    broken = AnalysisStore(lambda: BrokenSession())
    result = await GapAnalyzer(today=TODAY).perform_gap_analysis(sample_sources, QUESTION)

    assert await broken.persist_analysis("p1", result) is False
    task = broken.schedule(broken.persist_analysis("p1", result))
    await broken.wait_idle()
    assert task.result() is False
    assert broken.pending == 0
