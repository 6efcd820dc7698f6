"""HTTP tests for the project and progress routers."""
import pytest
from httpx import AsyncClient

from app.services.store import AnalysisStore

QUESTION = "How does sleep deprivation affect academic performance in college students?"


def _payload(sources):
    return [s.model_dump(mode="json") for s in sources]


# ---------------------------------------------------------------------------
# Gap analysis
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_gap_analysis_is_stored(client: AsyncClient, store: AnalysisStore, sample_sources):
    resp = await client.post(
        "/api/projects/p1/gap-analysis",
        json={"sources": _payload(sample_sources), "research_question": QUESTION},
    )
    assert resp.status_code == 200
    data = resp.json()
    assert data["analysis_method"] == "rule_based"
    assert data["sources_covered"] == 5
    scores = [g["overall_score"] for g in data["identified_gaps"]]
    assert scores and scores == sorted(scores, reverse=True)

    await store.wait_idle()
    stored = await client.get("/api/projects/p1/gap-analysis")
    assert stored.status_code == 200
    assert [g["id"] for g in stored.json()["identified_gaps"]] == [g["id"] for g in data["identified_gaps"]]


@pytest.mark.asyncio
async def test_insufficient_sources_are_not_stored(client: AsyncClient, store: AnalysisStore, sample_sources):
    resp = await client.post(
        "/api/projects/p2/gap-analysis",
        json={"sources": _payload(sample_sources[:2]), "research_question": QUESTION},
    )
    assert resp.status_code == 200
    data = resp.json()
    assert data["analysis_method"] == "insufficient_sources"
    assert data["confidence_level"] == "Low"
    assert data["identified_gaps"] == []

    await store.wait_idle()
    assert (await client.get("/api/projects/p2/gap-analysis")).status_code == 404


@pytest.mark.asyncio
async def test_gap_analysis_requires_question(client: AsyncClient, sample_sources):
    resp = await client.post(
        "/api/projects/p1/gap-analysis",
        json={"sources": _payload(sample_sources), "research_question": ""},
    )
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_unknown_project_has_no_analysis(client: AsyncClient):
    resp = await client.get("/api/projects/nope/gap-analysis")
    assert resp.status_code == 404
    assert "nope" in resp.json()["detail"]


# ---------------------------------------------------------------------------
# Organization
# ---------------------------------------------------------------------------

async def _organize(client, sample_sources, project_id="p1"):
    resp = await client.post(
        f"/api/projects/{project_id}/organization",
        json={"sources": _payload(sample_sources), "research_question": QUESTION},
    )
    assert resp.status_code == 200
    return resp.json()


@pytest.mark.asyncio
async def test_organization_is_stored(client: AsyncClient, store: AnalysisStore, sample_sources):
    organization = await _organize(client, sample_sources)
    assert organization["metadata"]["clustering_method"] == "similarity-threshold"
    assert organization["metadata"]["total_sources"] == 5
    grouped = sorted(s["id"] for g in organization["methodologies"] for s in g["sources"])
    assert grouped == ["s1", "s2", "s3", "s4", "s5"]

    await store.wait_idle()
    stored = await client.get("/api/projects/p1/organization")
    assert stored.status_code == 200
    assert [t["id"] for t in stored.json()["themes"]] == [t["id"] for t in organization["themes"]]


@pytest.mark.asyncio
async def test_unknown_project_has_no_organization(client: AsyncClient):
    assert (await client.get("/api/projects/nope/organization")).status_code == 404


@pytest.mark.asyncio
async def test_reorganize_replaces_stored_organization(client: AsyncClient, store: AnalysisStore, sample_sources):
    organization = await _organize(client, sample_sources, "p3")
    first_theme = organization["themes"][0]["id"]

    resp = await client.post(
        "/api/projects/p3/organization/reorganize",
        json={
            "organization": organization,
            "changes": {"create_theme": {"name": "Favourites", "source_ids": ["s5"]}},
        },
    )
    assert resp.status_code == 200
    updated = resp.json()
    assert updated["metadata"]["clustering_method"] == "hybrid"
    assert updated["themes"][-1]["name"] == "Favourites"
    assert updated["themes"][0]["id"] == first_theme

    await store.wait_idle()
    stored = (await client.get("/api/projects/p3/organization")).json()
    assert stored["themes"][-1]["name"] == "Favourites"


@pytest.mark.asyncio
async def test_merge_requires_two_themes(client: AsyncClient, sample_sources):
    organization = await _organize(client, sample_sources)
    resp = await client.post(
        "/api/projects/p1/organization/reorganize",
        json={
            "organization": organization,
            "changes": {"merge_themes": {"theme_ids": ["theme-0"], "new_name": "Solo"}},
        },
    )
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_search_organized_sources(client: AsyncClient, sample_sources):
    organization = await _organize(client, sample_sources)
    resp = await client.post(
        "/api/projects/organization/search",
        json={"organization": organization, "query": "caffeine"},
    )
    assert resp.status_code == 200
    assert [s["id"] for s in resp.json()] == ["s5"]

    resp = await client.post(
        "/api/projects/organization/search",
        json={"organization": organization, "filters": {"min_year": 2022}},
    )
    assert sorted(s["id"] for s in resp.json()) == ["s3", "s5"]


# ---------------------------------------------------------------------------
# Progress
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_question_progress_is_cached(client: AsyncClient):
    body = {"question": QUESTION}
    first = await client.post("/api/progress/question", json=body)
    second = await client.post("/api/progress/question", json=body)

    assert first.status_code == second.status_code == 200
    assert first.json() == second.json()
    assert first.json()["progress"] == 70
    assert first.json()["stage"] == "focused"

    stats = (await client.get("/api/progress/cache")).json()
    assert stats["question_cache_size"] == 1
    assert stats["hits"] == 1
    assert stats["misses"] == 1
    assert stats["ttl_minutes"] == 5


@pytest.mark.asyncio
async def test_project_progress(client: AsyncClient):
    resp = await client.post(
        "/api/progress/projects/p1",
        json={"research_question": QUESTION, "conversation_count": 5, "document_count": 2},
    )
    assert resp.status_code == 200
    assert resp.json() == {
        "question_progress": 80,
        "research_depth": 20,
        "overall_progress": 56,
        "stage": "research-ready",
    }


@pytest.mark.asyncio
async def test_negative_counts_are_rejected(client: AsyncClient):
    resp = await client.post("/api/progress/question", json={"question": QUESTION, "conversation_count": -1})
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_clear_cache(client: AsyncClient):
    await client.post("/api/progress/question", json={"question": QUESTION})
    resp = await client.delete("/api/progress/cache")
    assert resp.status_code == 204

    stats = (await client.get("/api/progress/cache")).json()
    assert stats["total_cache_entries"] == 0
    assert stats["hits"] == stats["misses"] == 0
