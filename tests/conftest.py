"""
Shared fixtures for LitGap backend tests.

The app's global engine points at a throw-away SQLite file (via aiosqlite);
DATABASE_URL is overridden *before* any app module is imported.  Ollama is
never contacted: the HTTP client fixture installs a service container built
from stub embedding / completion services.
"""
from __future__ import annotations

import asyncio
import os
import tempfile
from datetime import date
from typing import AsyncGenerator, List, Optional

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import delete

# One database even when this module is imported twice
if "TEST_DATABASE_URL" not in os.environ:
    _db_dir = tempfile.mkdtemp(prefix="litgap-tests-")
    os.environ["TEST_DATABASE_URL"] = f"sqlite+aiosqlite:///{os.path.join(_db_dir, 'litgap_test.db')}"
TEST_DATABASE_URL = os.environ["TEST_DATABASE_URL"]
os.environ["DATABASE_URL"] = TEST_DATABASE_URL

from app.database import AsyncSessionLocal, Base, engine  # noqa: E402
from app.dependencies.services import build_container  # noqa: E402
from app.main import app  # noqa: E402
from app.models.database_models import GapAnalysisRecord, SourceOrganizationRecord  # noqa: E402
from app.models.schemas import Credibility, CredibilityLevel, Source  # noqa: E402
from app.services.embedding import embedding_text_for, fallback_embedding  # noqa: E402
from app.services.results import ServiceResult  # noqa: E402
from app.services.store import AnalysisStore  # noqa: E402

TODAY = date(2024, 6, 1)


# ---------------------------------------------------------------------------
# Source builders
# ---------------------------------------------------------------------------

def make_source(
    source_id: str,
    title: str,
    year: int = 2021,
    abstract: Optional[str] = None,
    key_findings: Optional[List[str]] = None,
    study_type: Optional[str] = None,
    authors: Optional[List[str]] = None,
) -> Source:
    return Source(
        id=source_id,
        title=title,
        authors=authors or ["A. Researcher"],
        journal="Journal of Testing",
        year=year,
        abstract=abstract,
        key_findings=key_findings or [],
        credibility=Credibility(
            level=CredibilityLevel.MODERATE,
            score=70,
            study_type=study_type,
        ),
    )


@pytest.fixture
def sample_sources() -> List[Source]:
    """Five sources about sleep and students, mostly surveys."""
    return [
        make_source(
            "s1",
            "Sleep quality and academic performance in college students",
            year=2021,
            abstract="A survey of 400 university students examining sleep and grades.",
            key_findings=["Poor sleep predicts lower grades", "Stress mediates sleep effects"],
            study_type="survey",
        ),
        make_source(
            "s2",
            "Screen time before bed and sleep latency",
            year=2019,
            abstract="An online questionnaire study of students' technology use at night.",
            key_findings=["Screen time delays sleep onset"],
            study_type="survey",
        ),
        make_source(
            "s3",
            "A randomized intervention to improve student sleep hygiene",
            year=2022,
            abstract="Randomized controlled trial of a sleep hygiene program in college dormitories.",
            key_findings=["Sleep hygiene education improves sleep duration"],
            study_type="experimental",
        ),
        make_source(
            "s4",
            "Stress, anxiety and sleep among undergraduates",
            year=2017,
            abstract="Cross-sectional survey of anxiety, stress and sleep in undergraduates.",
            key_findings=["Anxiety is associated with shorter sleep"],
        ),
        make_source(
            "s5",
            "Caffeine consumption and attention in university students",
            year=2023,
            abstract="Students reported caffeine use and attention problems during exams.",
            key_findings=["Caffeine use peaks during examination periods"],
        ),
    ]


# ---------------------------------------------------------------------------
# Service stubs
# ---------------------------------------------------------------------------

class StubLLM:
    """Completion service returning a fixed reply and recording prompts."""

    model = "stub-llm"

    def __init__(self, reply: Optional[str] = None, error: str = "offline") -> None:
        self.reply = reply
        self.error = error
        self.prompts: List[str] = []

    async def complete(self, prompt: str, system: Optional[str] = None, max_tokens: int = 1500):
        self.prompts.append(prompt)
        if self.reply is None:
            return ServiceResult.failed(self.error)
        return ServiceResult.ok(self.reply)

    async def check_health(self) -> bool:
        return False


class StubEmbedder:
    """Embedding service answering with deterministic fallback vectors."""

    model = "stub-embed"

    def __init__(self, healthy: bool = True, as_fallback: bool = False) -> None:
        self.healthy = healthy
        self.as_fallback = as_fallback
        self.calls = 0

    async def embed_sources(self, sources):
        self.calls += 1
        results = []
        for source in sources:
            vector = fallback_embedding(embedding_text_for(source), 64)
            if self.as_fallback:
                results.append(ServiceResult.fallback(vector, error="offline"))
            else:
                results.append(ServiceResult.ok(vector))
        return results

    async def check_health(self) -> bool:
        return self.healthy


class FakeStore:
    """In-memory stand-in for AnalysisStore."""

    def __init__(self) -> None:
        self.analyses = {}
        self.organizations = {}
        self.tasks = []

    async def persist_analysis(self, project_id, result) -> bool:
        self.analyses[project_id] = result
        return True

    async def persist_organization(self, project_id, organization) -> bool:
        self.organizations[project_id] = organization
        return True

    async def load_analysis(self, project_id):
        return self.analyses.get(project_id)

    async def load_organization(self, project_id):
        return self.organizations.get(project_id)

    def schedule(self, coro):
        task = asyncio.ensure_future(coro)
        self.tasks.append(task)
        return task

    async def wait_idle(self) -> None:
        await asyncio.gather(*self.tasks)


@pytest.fixture
def ollama_body(monkeypatch):
    """
    Make every outgoing httpx request answer 200 with the given JSON body.

    Usage: ``ollama_body([1, 2, 3])`` before calling a service.
    """
    real_client = httpx.AsyncClient

    def install(body) -> None:
        transport = httpx.MockTransport(lambda request: httpx.Response(200, json=body))
        monkeypatch.setattr(
            httpx, "AsyncClient", lambda **kwargs: real_client(transport=transport, **kwargs)
        )

    return install


# ---------------------------------------------------------------------------
# Database and HTTP fixtures
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def store() -> AsyncGenerator[AnalysisStore, None]:
    """AnalysisStore on the test database; tables are emptied afterwards."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    analysis_store = AnalysisStore(AsyncSessionLocal)
    yield analysis_store

    await analysis_store.wait_idle()
    async with engine.begin() as conn:
        await conn.execute(delete(GapAnalysisRecord))
        await conn.execute(delete(SourceOrganizationRecord))


@pytest_asyncio.fixture
async def client(store: AnalysisStore) -> AsyncGenerator[AsyncClient, None]:
    """
    httpx AsyncClient wired to the FastAPI app with a stub-backed service
    container (completion always fails, embeddings are deterministic).
    """
    app.state.services = build_container(embedder=StubEmbedder(), llm=StubLLM(), store=store)

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.state.services = None
