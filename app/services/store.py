"""
Best-effort persistence of finished analyses and organizations.

Public API
----------
AnalysisStore.persist_analysis(project_id, result)          -> bool
AnalysisStore.persist_organization(project_id, organization) -> bool
AnalysisStore.load_analysis(project_id)                     -> Optional[GapAnalysisResult]
AnalysisStore.load_organization(project_id)                 -> Optional[OrganizedSources]
AnalysisStore.schedule(coro)                                -> asyncio.Task
AnalysisStore.wait_idle()

Writes are upserts keyed by project id.  Writes to the same row are
serialized, so the last write issued is the one that is kept.  A failed
write is logged and reported as ``False``; it never raises into the
caller, and callers that use ``schedule`` never wait for it.
"""
import asyncio
import logging
from typing import Awaitable, Dict, Optional, Set, Tuple, Type

from pydantic import BaseModel, ValidationError
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from app.models.database_models import GapAnalysisRecord, SourceOrganizationRecord
from app.models.schemas import GapAnalysisResult, OrganizedSources

logger = logging.getLogger(__name__)


class AnalysisStore:
    """Key-value store over the ``gap_analyses`` and ``source_organizations`` tables."""

    def __init__(self, session_factory) -> None:
        self._session_factory = session_factory
        self._pending: Set[asyncio.Task] = set()
        self._locks: Dict[Tuple[str, str], asyncio.Lock] = {}

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def persist_analysis(self, project_id: str, result: GapAnalysisResult) -> bool:
        return await self._upsert(
            GapAnalysisRecord, "analysis_data", project_id, result.model_dump(mode="json")
        )

    async def persist_organization(self, project_id: str, organization: OrganizedSources) -> bool:
        return await self._upsert(
            SourceOrganizationRecord, "organization_data", project_id, organization.model_dump(mode="json")
        )

    async def _upsert(self, model, column: str, project_id: str, blob: dict) -> bool:
        # Writes for one row run one at a time, in the order they were issued
        async with self._lock_for(model.__tablename__, project_id):
            try:
                try:
                    await self._write(model, column, project_id, blob)
                except IntegrityError:
                    # Another process inserted the row first; it now exists, so update it
                    logger.info("Row for %s %s appeared concurrently, retrying as update",
                                model.__tablename__, project_id)
                    await self._write(model, column, project_id, blob)
            except SQLAlchemyError as exc:
                logger.warning("Persisting %s for project %s failed: %s", model.__tablename__, project_id, exc)
                return False
            except Exception as exc:
                logger.error(
                    "Unexpected error persisting %s for project %s: %s",
                    model.__tablename__, project_id, exc, exc_info=True,
                )
                return False

        logger.info("Stored %s for project %s", model.__tablename__, project_id)
        return True

    async def _write(self, model, column: str, project_id: str, blob: dict) -> None:
        async with self._session_factory() as session:
            existing = (
                await session.execute(select(model).where(model.project_id == project_id))
            ).scalar_one_or_none()
            if existing is None:
                session.add(model(project_id=project_id, **{column: blob}))
            else:
                setattr(existing, column, blob)
            await session.commit()

    def _lock_for(self, table: str, project_id: str) -> asyncio.Lock:
        key = (table, project_id)
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def load_analysis(self, project_id: str) -> Optional[GapAnalysisResult]:
        return await self._load(GapAnalysisRecord, "analysis_data", project_id, GapAnalysisResult)

    async def load_organization(self, project_id: str) -> Optional[OrganizedSources]:
        return await self._load(SourceOrganizationRecord, "organization_data", project_id, OrganizedSources)

    async def _load(self, model, column: str, project_id: str, schema: Type[BaseModel]):
        async with self._session_factory() as session:
            record = (
                await session.execute(select(model).where(model.project_id == project_id))
            ).scalar_one_or_none()
        if record is None:
            return None
        try:
            return schema.model_validate(getattr(record, column))
        except ValidationError as exc:
            logger.warning("Stored %s for project %s is unreadable: %s", model.__tablename__, project_id, exc)
            return None

    # ------------------------------------------------------------------
    # Fire-and-forget scheduling
    # ------------------------------------------------------------------

    def schedule(self, coro: Awaitable[bool]) -> asyncio.Task:
        """Run *coro* in the background, keeping a reference until it finishes."""
        task = asyncio.ensure_future(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def wait_idle(self) -> None:
        """Wait for every scheduled write to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
