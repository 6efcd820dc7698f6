"""
Research question maturity scoring.

Public API
----------
analyze_question_progress(question, conversation_count, document_count, history) -> QuestionAnalysis
evaluate_project_progress(project, conversation_count, document_count, history)  -> ProjectProgress
stage_for_progress(progress)                                                      -> QuestionStage
get_question_stage(question)                                                      -> QuestionStage

Everything here is pure; caching lives in ``progress_cache``.

Keywords match at the start of a word, not anywhere inside one: "rate"
does not fire on "accurate", nor "how" on "show", while "student" still
covers "students".  Plain substring matching would credit such words with
factors the question does not have.
"""
import re
from typing import Dict, List, Optional, Sequence

from app.models.schemas import (
    ProjectInfo,
    ProjectProgress,
    QuestionAnalysis,
    QuestionFactors,
    QuestionStage,
)
from app.utils.helpers import round_half_up

UNTITLED_PROJECT = "Untitled project"

POPULATION_KEYWORDS = [
    "student", "patients", "children", "adults", "elderly",
    "participants", "users", "consumers", "workers", "athletes",
]
METHOD_KEYWORDS = [
    "how", "what", "why", "does", "will", "can", "effect", "impact",
    "influence", "relationship", "compare", "correlation",
]
# "performance" is not a measurement keyword
MEASUREMENT_KEYWORDS = [
    "rate", "level", "score", "improvement", "reduction", "increase",
    "percentage", "frequency", "accuracy",
]

# (factor, points awarded when present, recommendation when absent)
FACTOR_RULES = [
    ("has_specific_population", 20,
     "Add specific target population (e.g., 'college students', 'elderly patients')"),
    ("has_research_method", 25,
     "Clarify research approach (how/what/why will you study this?)"),
    ("has_measurable_outcome", 20,
     "Define measurable outcomes (performance, rates, scores, etc.)"),
    ("is_specific", 15,
     "Make question more specific and detailed"),
    ("has_refinements", 10,
     "Engage with AI mentor to refine your question"),
]

BASE_POINTS = 10
SPECIFIC_MIN_WORDS = 8
SPECIFIC_MIN_CHARS = 50

# Upper bound (inclusive) of each stage, checked in order
STAGE_THRESHOLDS = [
    (25, QuestionStage.INITIAL),
    (50, QuestionStage.EMERGING),
    (75, QuestionStage.FOCUSED),
]

QUESTION_WEIGHT = 0.6
DEPTH_WEIGHT = 0.4
MAX_DOCUMENT_POINTS = 20
MAX_CONVERSATION_POINTS = 20


def _keyword_pattern(keywords: Sequence[str]) -> "re.Pattern[str]":
    # Anchored at a word start so "student" still matches "students"
    return re.compile(r"\b(?:" + "|".join(re.escape(k) for k in keywords) + ")", re.IGNORECASE)


_POPULATION_RE = _keyword_pattern(POPULATION_KEYWORDS)
_METHOD_RE = _keyword_pattern(METHOD_KEYWORDS)
_MEASUREMENT_RE = _keyword_pattern(MEASUREMENT_KEYWORDS)


def question_factors(
    question: str,
    conversation_count: int = 0,
    history: Optional[Sequence[str]] = None,
) -> QuestionFactors:
    history = history or []
    return QuestionFactors(
        has_specific_population=bool(_POPULATION_RE.search(question)),
        has_research_method=bool(_METHOD_RE.search(question)),
        has_measurable_outcome=bool(_MEASUREMENT_RE.search(question)),
        is_specific=len(question.split()) >= SPECIFIC_MIN_WORDS and len(question) >= SPECIFIC_MIN_CHARS,
        has_refinements=len(history) > 1 or conversation_count > 3,
    )


def stage_for_progress(progress: int) -> QuestionStage:
    for upper, stage in STAGE_THRESHOLDS:
        if progress <= upper:
            return stage
    return QuestionStage.RESEARCH_READY


def analyze_question_progress(
    question: str,
    conversation_count: int = 0,
    document_count: int = 0,
    history: Optional[Sequence[str]] = None,
) -> QuestionAnalysis:
    """
    Score a research question against five maturity factors.

    Args:
        question: Free-text research question
        conversation_count: Mentor conversations held so far
        document_count: Documents uploaded (unused by the question score,
            accepted so cached and uncached calls share a signature)
        history: Earlier versions of the question

    Returns:
        QuestionAnalysis with a 0-100 progress score, its stage, the
        factor flags and one recommendation per unmet factor
    """
    factors = question_factors(question, conversation_count, history)
    flags: Dict[str, bool] = factors.model_dump()

    progress = BASE_POINTS
    recommendations: List[str] = []
    for name, points, recommendation in FACTOR_RULES:
        if flags[name]:
            progress += points
        else:
            recommendations.append(recommendation)

    return QuestionAnalysis(
        stage=stage_for_progress(progress),
        progress=progress,
        factors=factors,
        recommendations=recommendations,
    )


def project_question(project: ProjectInfo) -> str:
    """The text a project is judged by: its title, then its research question."""
    return project.title or project.research_question or UNTITLED_PROJECT


def research_depth(conversation_count: int, document_count: int) -> int:
    depth = 0
    if document_count > 0:
        depth += min(MAX_DOCUMENT_POINTS, document_count * 5)
    if conversation_count > 0:
        depth += min(MAX_CONVERSATION_POINTS, conversation_count * 2)
    return depth


def evaluate_project_progress(
    project: ProjectInfo,
    conversation_count: int = 0,
    document_count: int = 0,
    history: Optional[Sequence[str]] = None,
) -> ProjectProgress:
    """Blend question maturity (60%) with research depth (40%)."""
    analysis = analyze_question_progress(
        project_question(project), conversation_count, document_count, history
    )
    depth = research_depth(conversation_count, document_count)
    overall = round_half_up(analysis.progress * QUESTION_WEIGHT + depth * DEPTH_WEIGHT)

    return ProjectProgress(
        question_progress=analysis.progress,
        research_depth=depth,
        overall_progress=overall,
        stage=analysis.stage,
    )


def get_question_stage(question: str) -> QuestionStage:
    return analyze_question_progress(question).stage
