"""
TTL memoization in front of the progress evaluator.

Public API
----------
TTLResultCache.get_or_compute(key, compute)                      -> value
ProgressAnalysisCache.analyze_question_progress_cached(...)      -> QuestionAnalysis
ProgressAnalysisCache.evaluate_project_progress_cached(...)      -> ProjectProgress
ProgressAnalysisCache.get_cache_stats()                          -> dict
ProgressAnalysisCache.clear_all()

Entries live for ``ttl_seconds``.  Each lookup has a ``sweep_probability``
chance of removing every expired entry first; there is no background timer.
An entry is never updated in place: once expired it is replaced on the next
computation.  Key growth is unbounded between sweeps.
"""
import logging
import random
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Sequence

from app.config import settings
from app.models.schemas import ProjectInfo, ProjectProgress, QuestionAnalysis
from app.services import progress
from app.utils.helpers import truncate_text

logger = logging.getLogger(__name__)

QUESTION_KEY_CHARS = 100


@dataclass(frozen=True)
class CacheEntry:
    result: Any
    timestamp: float
    key: str


class TTLResultCache:
    """Thread-safe get-or-compute map with expiry and opportunistic sweeps."""

    def __init__(
        self,
        ttl_seconds: Optional[float] = None,
        sweep_probability: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
        rng: Callable[[], float] = random.random,
        name: str = "cache",
    ) -> None:
        self.ttl_seconds = float(ttl_seconds if ttl_seconds is not None else settings.PROGRESS_CACHE_TTL_SECONDS)
        self.sweep_probability = (
            sweep_probability if sweep_probability is not None
            else settings.PROGRESS_CACHE_SWEEP_PROBABILITY
        )
        self.name = name
        self._clock = clock
        self._rng = rng
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _is_fresh(self, entry: CacheEntry, now: float) -> bool:
        return now - entry.timestamp < self.ttl_seconds

    def get_or_compute(self, key: str, compute: Callable[[], Any]) -> Any:
        """
        Return the cached value for *key*, computing and storing it on a miss.

        ``compute`` runs outside the lock; two racing misses on the same key
        both compute and the later insert wins.
        """
        if self._rng() < self.sweep_probability:
            self.sweep()

        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and self._is_fresh(entry, self._clock()):
                self.hits += 1
                logger.debug("%s hit: %s", self.name, truncate_text(key, 50))
                return entry.result
            self.misses += 1

        started = time.perf_counter()
        result = compute()
        logger.debug(
            "%s miss: %s computed in %.1f ms",
            self.name, truncate_text(key, 50), (time.perf_counter() - started) * 1000,
        )

        with self._lock:
            self._entries[key] = CacheEntry(result=result, timestamp=self._clock(), key=key)
        return result

    def sweep(self) -> int:
        """Remove every expired entry; returns how many were removed."""
        with self._lock:
            now = self._clock()
            expired = [k for k, e in self._entries.items() if not self._is_fresh(e, now)]
            for key in expired:
                del self._entries[key]
        if expired:
            logger.debug("%s sweep removed %d entries", self.name, len(expired))
        return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self.hits = 0
            self.misses = 0


def question_cache_key(
    question: str,
    conversation_count: int,
    document_count: int,
    history_length: int,
) -> str:
    prefix = question.lower()[:QUESTION_KEY_CHARS]
    return f"q:{prefix}:c{conversation_count}:d{document_count}:h{history_length}"


def project_cache_key(
    project_id: str,
    question_key: str,
    conversation_count: int,
    document_count: int,
) -> str:
    return f"p:{project_id}:{question_key}:c{conversation_count}:d{document_count}"


class ProgressAnalysisCache:
    """
    Cached front for question and project progress.

    The underlying evaluators are injected so tests can count calls.
    """

    def __init__(
        self,
        analyzer: Callable[..., QuestionAnalysis] = progress.analyze_question_progress,
        project_evaluator: Callable[..., ProjectProgress] = progress.evaluate_project_progress,
        ttl_seconds: Optional[float] = None,
        sweep_probability: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self._analyzer = analyzer
        self._project_evaluator = project_evaluator
        self.questions = TTLResultCache(ttl_seconds, sweep_probability, clock, rng, name="question cache")
        self.projects = TTLResultCache(ttl_seconds, sweep_probability, clock, rng, name="project cache")

    def analyze_question_progress_cached(
        self,
        question: str,
        conversation_count: int = 0,
        document_count: int = 0,
        history: Optional[Sequence[str]] = None,
    ) -> QuestionAnalysis:
        history = list(history or [])
        key = question_cache_key(question, conversation_count, document_count, len(history))
        return self.questions.get_or_compute(
            key,
            lambda: self._analyzer(question, conversation_count, document_count, history),
        )

    def evaluate_project_progress_cached(
        self,
        project: ProjectInfo,
        conversation_count: int = 0,
        document_count: int = 0,
        history: Optional[Sequence[str]] = None,
    ) -> ProjectProgress:
        history = list(history or [])
        question_key = question_cache_key(
            progress.project_question(project), conversation_count, document_count, len(history)
        )
        key = project_cache_key(project.id or "unknown", question_key, conversation_count, document_count)
        return self.projects.get_or_compute(
            key,
            lambda: self._project_evaluator(project, conversation_count, document_count, history),
        )

    def get_cache_stats(self) -> Dict[str, Any]:
        """Sizes after a sweep, plus hit / miss counters."""
        self.questions.sweep()
        self.projects.sweep()
        question_size = len(self.questions)
        project_size = len(self.projects)
        return {
            "question_cache_size": question_size,
            "project_cache_size": project_size,
            "total_cache_entries": question_size + project_size,
            "hits": self.questions.hits + self.projects.hits,
            "misses": self.questions.misses + self.projects.misses,
            "ttl_minutes": self.questions.ttl_seconds / 60,
        }

    def clear_all(self) -> None:
        self.questions.clear()
        self.projects.clear()
        logger.info("Progress caches cleared")
