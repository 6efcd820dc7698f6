"""
Research gap analysis, LitGap's core scoring engine.

Given a collection of sources and a research question, the analyzer finds
under-studied areas and ranks them as research opportunities.

Step 1 - Synthesis            (pattern extractors, no external calls)
    Themes, population coverage, methodologies, temporal coverage, settings
    and variable co-occurrence are extracted from the collection.

Step 2 - Candidate gaps       (completion model, then rules)
    The model is shown the synthesis and asked for 3-5 gaps.  Its answer is
    parsed as JSON first and as labelled free text second.  When the call
    fails or nothing parses, deterministic rules derive gaps from limited
    population coverage, missing canonical methods and temporal holes.

Step 3 - Scoring and ranking  (deterministic)
    Every candidate gets novelty, feasibility and contribution scores and an
    overall score of 0.3 * novelty + 0.4 * feasibility + 0.3 * contribution,
    rounded half up.
    Candidates are sorted by overall score with a stable sort.

Step 4 - Advice               (template tables)
    Follow-up research questions, methodological blind spots, a narrative
    assessment and a short list of recommendations.

Collections with fewer than three sources get a dedicated guidance result.
Any unexpected error inside steps 1-4 produces a generic fallback result, so
``perform_gap_analysis`` never raises.
"""
from __future__ import annotations

import dataclasses
import logging
import re
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

from app.config import settings
from app.models.schemas import (
    AnalysisMethod,
    ConfidenceLevel,
    CoverageLevel,
    DifficultyLevel,
    GapAnalysisResult,
    GapOpportunity,
    GapType,
    MethodologicalGap,
    ResearchOpportunity,
    ScopeSize,
    Source,
    SourceSynthesis,
)
from app.services.llm import OllamaLLMService, parse_json_response
from app.services.patterns import synthesize_sources
from app.utils.helpers import clamp_score, resolve_year, safe_divide

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Candidate gap before scoring
# ---------------------------------------------------------------------------

@dataclasses.dataclass
class GapDraft:
    """A candidate gap as produced by the model or the rules, before scoring."""

    title: str
    description: str
    gap_type: GapType = GapType.METHODOLOGY
    why_matters: Optional[str] = None
    current_limitation: Optional[str] = None
    proposed_approach: Optional[str] = None
    estimated_scope: Optional[ScopeSize] = None
    time_requirement: Optional[str] = None
    resources_needed: Optional[List[str]] = None
    ethics_considerations: Optional[str] = None
    id: Optional[str] = None


@dataclasses.dataclass(frozen=True)
class MethodCatalogEntry:
    method: str
    approach: str          # name used by the methodology extractor
    needed: str
    implementation: str
    difficulty: DifficultyLevel


# ---------------------------------------------------------------------------
# Prompt templates
# ---------------------------------------------------------------------------

_SYSTEM_PROMPT = (
    "You are a research methodology expert specializing in identifying literature "
    "gaps for student researchers. Provide practical, feasible research opportunities "
    "with clear explanations."
)

_GAP_PROMPT = """\
Analyze the following literature synthesis and identify specific research gaps \
for a student researcher.

Research Question: "{question}"

Literature Synthesis:
- Themes: {themes}
- Population Coverage: {populations}
- Methodologies: {methodologies}
- Time Range: {year_min}-{year_max}
- Contexts: {contexts}

Based on this synthesis, identify 3-5 specific research gaps that:
1. Are feasible for a student project (6 months, limited resources)
2. Would contribute meaningfully to the field
3. Connect directly to the research question

Respond ONLY with a valid JSON array, nothing else:
[{{"gap_type": "population|methodology|temporal|context|variable_interaction", \
"title": "...", "description": "...", "why_matters": "...", \
"current_limitation": "...", "proposed_approach": "...", \
"estimated_scope": "Small|Medium|Large", "time_requirement": "3-6 months", \
"resources_needed": ["..."], "ethics_considerations": "..."}}]\
"""


# ---------------------------------------------------------------------------
# Template tables
# ---------------------------------------------------------------------------

CANONICAL_METHODS: List[str] = [
    "Randomized Controlled Trial",
    "Longitudinal Study",
    "Qualitative Methods",
    "Mixed Methods",
]

METHOD_CATALOG: List[MethodCatalogEntry] = [
    MethodCatalogEntry(
        "Randomized Controlled Trial", "Randomized Controlled Trial",
        "To establish causal relationships and test interventions",
        "Design an experimental study with random assignment to conditions",
        DifficultyLevel.ADVANCED,
    ),
    MethodCatalogEntry(
        "Longitudinal Study", "Longitudinal Study",
        "To track changes over time and understand development",
        "Follow participants across multiple time points",
        DifficultyLevel.ADVANCED,
    ),
    MethodCatalogEntry(
        "Qualitative Interviews", "Qualitative Methods",
        "To understand lived experiences and perspectives in depth",
        "Conduct semi-structured interviews with thematic analysis",
        DifficultyLevel.INTERMEDIATE,
    ),
    MethodCatalogEntry(
        "Mixed Methods Approach", "Mixed Methods",
        "To combine quantitative breadth with qualitative depth",
        "Integrate quantitative surveys with qualitative interviews",
        DifficultyLevel.ADVANCED,
    ),
    MethodCatalogEntry(
        "Cross-Cultural Comparison", "Cross-Cultural Comparison",
        "To understand how cultural factors influence outcomes",
        "Compare findings across different cultural groups",
        DifficultyLevel.INTERMEDIATE,
    ),
]

QUESTION_TEMPLATES: Dict[Optional[GapType], str] = {
    GapType.POPULATION: "How does {base} specifically affect {subject}?",
    GapType.METHODOLOGY: "What insights about {base} can be gained through {subject}?",
    GapType.TEMPORAL: "How has {base} changed in recent years (post-2020)?",
    GapType.CONTEXT: "How does {base} manifest in different settings or contexts?",
    GapType.VARIABLE_INTERACTION: "What factors interact with {base} to influence outcomes?",
    None: "How can we better understand {base} by addressing current research limitations?",
}

_OUTCOME_BASE = "This research would contribute new knowledge to the field"

OUTCOME_TEMPLATES: Dict[Optional[GapType], str] = {
    GapType.POPULATION: (
        "by providing insights specific to an understudied population, "
        "improving generalizability of findings."
    ),
    GapType.METHODOLOGY: (
        "by applying a novel methodological approach, offering new perspectives "
        "on existing questions."
    ),
    GapType.TEMPORAL: "by updating understanding with current data, ensuring findings remain relevant.",
    GapType.CONTEXT: "by examining how context influences outcomes, improving real-world applicability.",
    None: "by filling an important gap in current understanding.",
}

_POPULATION_PREFIX = "Understudied Population: "
_METHOD_PREFIX = "Methodological Gap: "

_DEFAULT_WHY = "This gap represents an opportunity to contribute new knowledge"
_DEFAULT_LIMITATION = "Current research has not addressed this area"
_DEFAULT_APPROACH = "Further investigation needed"
_DEFAULT_RESOURCES = ["Basic research tools", "Data collection methods"]
_DEFAULT_ETHICS = "Standard ethical review required"
_DEFAULT_TIME = "3-6 months"


# ---------------------------------------------------------------------------
# Response parsing
# ---------------------------------------------------------------------------

_FIELD_ALIASES: Dict[str, Tuple[str, ...]] = {
    "gap_type": ("gap_type", "gapType", "type"),
    "title": ("title", "name"),
    "description": ("description",),
    "why_matters": ("why_matters", "whyMatters", "why_it_matters"),
    "current_limitation": ("current_limitation", "currentLimitation", "limitation"),
    "proposed_approach": ("proposed_approach", "proposedApproach", "approach"),
    "estimated_scope": ("estimated_scope", "estimatedScope", "scope"),
    "time_requirement": ("time_requirement", "timeRequirement"),
    "resources_needed": ("resources_needed", "resourcesNeeded"),
    "ethics_considerations": ("ethics_considerations", "ethicsConsiderations"),
}


def _pick(item: Dict[str, Any], field: str) -> Any:
    for key in _FIELD_ALIASES[field]:
        value = item.get(key)
        if value not in (None, "", []):
            return value
    return None


def _coerce_enum(enum_cls, value: Any, default=None):
    if value is None:
        return default
    text = str(value).strip()
    for member in enum_cls:
        if member.value.lower() == text.lower():
            return member
    return default


def _draft_from_mapping(item: Dict[str, Any]) -> Optional[GapDraft]:
    title = _pick(item, "title")
    description = _pick(item, "description")
    if not title and not description:
        return None

    resources = _pick(item, "resources_needed")
    if isinstance(resources, str):
        resources = [resources]
    elif isinstance(resources, list):
        resources = [str(r) for r in resources if str(r).strip()] or None
    else:
        resources = None

    def _text(field: str) -> Optional[str]:
        value = _pick(item, field)
        return str(value).strip() if value is not None else None

    return GapDraft(
        title=str(title or "").strip(),
        description=str(description or "").strip(),
        gap_type=_coerce_enum(GapType, _pick(item, "gap_type"), GapType.METHODOLOGY),
        why_matters=_text("why_matters"),
        current_limitation=_text("current_limitation"),
        proposed_approach=_text("proposed_approach"),
        estimated_scope=_coerce_enum(ScopeSize, _pick(item, "estimated_scope")),
        time_requirement=_text("time_requirement"),
        resources_needed=resources,
        ethics_considerations=_text("ethics_considerations"),
    )


def parse_structured_gaps(text: str) -> Optional[List[GapDraft]]:
    """
    Strict stage: JSON array of gap objects, or an object with a ``gaps`` list.

    Returns ``None`` when the text holds no such structure; otherwise the
    usable drafts (possibly empty).
    """
    ok, parsed = parse_json_response(text)
    if not ok:
        return None
    if isinstance(parsed, dict):
        parsed = parsed.get("gaps")
    if not isinstance(parsed, list):
        return None

    drafts = []
    for item in parsed:
        if isinstance(item, dict):
            draft = _draft_from_mapping(item)
            if draft is not None:
                drafts.append(draft)
    return drafts


_BLOCK_SPLIT = re.compile(r"gap\s+\d+\s*:|^\s*\d+\.", re.IGNORECASE | re.MULTILINE)


def parse_free_text_gaps(text: str) -> List[GapDraft]:
    """
    Heuristic stage: labelled free text split into ``Gap N:`` / ``N.`` blocks.

    Each block is read line by line for ``Title:``, ``Description:``,
    ``Why it matters:``, ``Limitation:`` and ``Approach:`` labels.  Blocks
    with neither a title nor a description label yield nothing, so plain
    prose replies leave the rule-based generator in charge.
    """
    drafts: List[GapDraft] = []
    blocks = [b for b in _BLOCK_SPLIT.split(text or "") if b.strip()]

    for index, block in enumerate(blocks):
        lines = [line.strip() for line in block.strip().splitlines() if line.strip()]
        fields: Dict[str, str] = {}

        for line in lines:
            lower = line.lower()
            value = re.sub(r"^[^:]*:", "", line).strip()
            if "title:" in lower or lower.startswith("gap:"):
                fields.setdefault("title", value)
            elif "description:" in lower:
                fields.setdefault("description", value)
            elif "why" in lower and "matter" in lower:
                fields.setdefault("why_matters", value)
            elif "limitation:" in lower or "current:" in lower:
                fields.setdefault("current_limitation", value)
            elif "approach:" in lower or "solution:" in lower:
                fields.setdefault("proposed_approach", value)

        if not fields.get("title") and not fields.get("description"):
            continue

        drafts.append(
            GapDraft(
                title=fields.get("title") or f"Research Gap {index + 1}",
                description=fields.get("description") or "Identified opportunity for research",
                gap_type=GapType.METHODOLOGY,
                why_matters=fields.get("why_matters"),
                current_limitation=fields.get("current_limitation"),
                proposed_approach=fields.get("proposed_approach"),
                estimated_scope=ScopeSize.MEDIUM,
            )
        )

    return drafts


def parse_gap_response(text: str) -> List[GapDraft]:
    """Two-stage parse: structured JSON first, labelled free text second."""
    drafts = parse_structured_gaps(text)
    if not drafts:
        drafts = parse_free_text_gaps(text)
    return drafts[: settings.MAX_IDENTIFIED_GAPS]


# ---------------------------------------------------------------------------
# Scoring
# ---------------------------------------------------------------------------

def novelty_score(draft: GapDraft, synthesis: SourceSynthesis) -> int:
    """Higher for less-studied populations and methods absent from the collection."""
    title = draft.title.lower()
    if draft.gap_type == GapType.POPULATION:
        match = next(
            (p for p in synthesis.populations if p.demographic.lower() in title),
            None,
        )
        if match is not None and match.coverage == CoverageLevel.MISSING:
            return 90
        if match is not None and match.coverage == CoverageLevel.LIMITED:
            return 75
        return 50

    if draft.gap_type == GapType.METHODOLOGY:
        exists = any(m.approach.lower() in title for m in synthesis.methodologies)
        return 40 if exists else 85

    return 60


_SCOPE_FEASIBILITY = {
    ScopeSize.SMALL: 90,
    ScopeSize.MEDIUM: 70,
    ScopeSize.LARGE: 40,
}

_TYPE_FEASIBILITY = {
    GapType.POPULATION: 75,
    GapType.METHODOLOGY: 60,
    GapType.TEMPORAL: 85,
}


def feasibility_score(draft: GapDraft) -> int:
    """Driven by estimated scope; gap-type defaults apply only when scope is unset."""
    if draft.estimated_scope is not None:
        return _SCOPE_FEASIBILITY[draft.estimated_scope]
    return _TYPE_FEASIBILITY.get(draft.gap_type, 65)


def contribution_score(draft: GapDraft, research_question: str) -> int:
    """
    Lexical overlap between the research question and the gap text.

    Question words longer than three characters that appear in the gap's
    title or description, as a share of all question words.
    """
    question_words = research_question.lower().split()
    gap_text = f"{draft.title} {draft.description}".lower()
    relevant = [w for w in question_words if len(w) > 3 and w in gap_text]
    return clamp_score(safe_divide(100 * len(relevant), len(question_words)))


def overall_score(novelty: int, feasibility: int, contribution: int) -> int:
    # Integer weights keep exact halves exact before rounding
    return clamp_score((3 * novelty + 4 * feasibility + 3 * contribution) / 10)


def find_related_sources(draft: GapDraft, sources: Sequence[Source], limit: int = 3) -> List[str]:
    """Ids of up to *limit* sources that share a word longer than three letters with the gap."""
    words = [w for w in f"{draft.title} {draft.description}".lower().split() if len(w) > 3]
    if not words:
        return []
    related = []
    for source in sources:
        text = f"{source.title} {source.abstract or ''}".lower()
        if any(w in text for w in words):
            related.append(source.id)
            if len(related) == limit:
                break
    return related


def determine_confidence(source_count: int, synthesis: SourceSynthesis) -> ConfidenceLevel:
    methods = len(synthesis.methodologies)
    if source_count >= 10 and methods >= 3:
        return ConfidenceLevel.HIGH
    if source_count >= 5 and methods >= 2:
        return ConfidenceLevel.MODERATE
    return ConfidenceLevel.LOW


def _base_question(research_question: str) -> str:
    return re.sub(r"[?.]$", "", research_question.strip()).lower()


# ---------------------------------------------------------------------------
# GapAnalyzer
# ---------------------------------------------------------------------------

class GapAnalyzer:
    """
    Finds and ranks research gaps in a source collection.

    Call ``await analyzer.perform_gap_analysis(sources, question)``; the
    result is always a well-formed ``GapAnalysisResult``.
    """

    # ---- tunables ----------------------------------------------------------
    MAX_OPPORTUNITIES: int = 3
    MAX_METHODOLOGICAL_GAPS: int = 3
    MAX_RECOMMENDATIONS: int = 5
    FEASIBLE_THRESHOLD: int = 70
    # -----------------------------------------------------------------------

    def __init__(
        self,
        llm: Optional[OllamaLLMService] = None,
        store=None,
        today: Optional[date] = None,
    ) -> None:
        self._llm = llm
        self._store = store
        self._today = today
        self.min_sources = settings.MIN_SOURCES_FOR_GAP_ANALYSIS
        self.max_gaps = settings.MAX_IDENTIFIED_GAPS

    # ------------------------------------------------------------------
    # Main entry point
    # ------------------------------------------------------------------

    async def perform_gap_analysis(
        self,
        sources: Sequence[Source],
        research_question: str,
        project_id: Optional[str] = None,
    ) -> GapAnalysisResult:
        """Run synthesis, gap identification, scoring and advice for *sources*."""
        sources = list(sources)
        logger.info(
            "GapAnalyzer: starting analysis of %d source(s) for project %s",
            len(sources),
            project_id,
        )

        if len(sources) < self.min_sources:
            logger.info(
                "GapAnalyzer: %d source(s) is below the minimum of %d",
                len(sources),
                self.min_sources,
            )
            return self._insufficient_sources_result(len(sources), research_question)

        try:
            result = await self._analyze(sources, research_question)
        except Exception as exc:
            logger.error("GapAnalyzer: analysis failed, using fallback: %s", exc, exc_info=True)
            return self._fallback_result(sources, research_question)

        if project_id and self._store is not None:
            self._store.schedule(self._store.persist_analysis(project_id, result))

        logger.info(
            "GapAnalyzer: complete. method=%s gaps=%d confidence=%s",
            result.analysis_method.value,
            len(result.identified_gaps),
            result.confidence_level.value,
        )
        return result

    async def _analyze(self, sources: List[Source], research_question: str) -> GapAnalysisResult:
        synthesis = synthesize_sources(sources, resolve_year(self._today))

        drafts = await self.identify_gaps_with_ai(synthesis, research_question)
        method = AnalysisMethod.AI
        if not drafts:
            drafts = self.generate_rule_based_gaps(synthesis)
            method = AnalysisMethod.RULE_BASED

        gaps = self.rank_opportunities(
            [
                self.score_draft(d, i, synthesis, sources, research_question, method)
                for i, d in enumerate(drafts)
            ]
        )
        opportunities = self.generate_research_opportunities(gaps, research_question)
        method_gaps = self.identify_methodological_gaps(synthesis)
        now = datetime.now(timezone.utc)

        return GapAnalysisResult(
            overall_assessment=self.generate_overall_assessment(synthesis, gaps, len(sources)),
            identified_gaps=gaps,
            research_opportunities=opportunities,
            methodological_gaps=method_gaps,
            recommendations=self.generate_recommendations(gaps, method_gaps),
            confidence_level=determine_confidence(len(sources), synthesis),
            sources_covered=len(sources),
            analysis_method=method,
            analysis_date=now,
            generated_at=now,
        )

    # ------------------------------------------------------------------
    # Candidate generation
    # ------------------------------------------------------------------

    async def identify_gaps_with_ai(
        self,
        synthesis: SourceSynthesis,
        research_question: str,
    ) -> List[GapDraft]:
        """Ask the completion model for gaps; an empty list means use the rules."""
        if self._llm is None:
            return []

        prompt = _GAP_PROMPT.format(
            question=research_question,
            themes=", ".join(synthesis.themes),
            populations=", ".join(
                f"{p.demographic} ({p.coverage.value})" for p in synthesis.populations
            ),
            methodologies=", ".join(
                f"{m.approach} ({m.frequency} studies)" for m in synthesis.methodologies
            ),
            year_min=synthesis.temporal_coverage.year_range.min,
            year_max=synthesis.temporal_coverage.year_range.max,
            contexts=", ".join(c.setting for c in synthesis.contexts),
        )

        reply = await self._llm.complete(prompt, system=_SYSTEM_PROMPT)
        if not reply.usable:
            logger.warning("GapAnalyzer: completion failed (%s), using rule-based gaps", reply.error)
            return []

        drafts = parse_gap_response(reply.value or "")
        if not drafts:
            logger.warning("GapAnalyzer: completion gave no parseable gaps, using rule-based gaps")
        return drafts

    def generate_rule_based_gaps(self, synthesis: SourceSynthesis) -> List[GapDraft]:
        """Deterministic gaps from limited populations, missing methods and temporal holes."""
        drafts: List[GapDraft] = []

        limited = [p for p in synthesis.populations if p.coverage == CoverageLevel.LIMITED]
        for index, pop in enumerate(limited):
            demo = pop.demographic
            drafts.append(
                GapDraft(
                    id=f"pop-gap-{index}",
                    gap_type=GapType.POPULATION,
                    title=f"{_POPULATION_PREFIX}{demo}",
                    description=(
                        f"Only {pop.source_count} studies include {demo}, representing "
                        f"a significant gap in population coverage."
                    ),
                    why_matters=(
                        f"Understanding {demo} is crucial for developing targeted "
                        f"interventions and generalizable findings."
                    ),
                    current_limitation=(
                        f"Current research primarily focuses on other demographics, "
                        f"limiting applicability to {demo}."
                    ),
                    proposed_approach=(
                        f"Conduct a focused study specifically examining {demo} "
                        f"to fill this knowledge gap."
                    ),
                    estimated_scope=ScopeSize.MEDIUM,
                    time_requirement="4-6 months",
                    resources_needed=["Participant recruitment", "Age-appropriate measures"],
                    ethics_considerations=(
                        "Special considerations for vulnerable populations may apply"
                    ),
                )
            )

        used = [m.approach for m in synthesis.methodologies]
        missing = [m for m in CANONICAL_METHODS if m not in used]
        for index, method in enumerate(missing):
            longitudinal = method == "Longitudinal Study"
            drafts.append(
                GapDraft(
                    id=f"method-gap-{index}",
                    gap_type=GapType.METHODOLOGY,
                    title=f"{_METHOD_PREFIX}{method}",
                    description=(
                        f"No studies in your collection use {method}, which could "
                        f"provide valuable insights."
                    ),
                    why_matters=(
                        f"{method} offers unique advantages for understanding the research "
                        f"question from a different perspective."
                    ),
                    current_limitation=(
                        f"Current research relies on {', '.join(used)}, limiting "
                        f"methodological diversity."
                    ),
                    proposed_approach=(
                        f"Design a study using {method} to complement existing research approaches."
                    ),
                    estimated_scope=ScopeSize.LARGE if longitudinal else ScopeSize.MEDIUM,
                    time_requirement="6+ months" if longitudinal else "3-4 months",
                    resources_needed=["Methodological training", "Appropriate tools"],
                    ethics_considerations="Method-specific ethical considerations apply",
                )
            )

        temporal_gaps = synthesis.temporal_coverage.gaps
        if temporal_gaps:
            drafts.append(
                GapDraft(
                    id="temporal-gap-1",
                    gap_type=GapType.TEMPORAL,
                    title="Temporal Research Gap",
                    description=temporal_gaps[0],
                    why_matters=(
                        "Research context and findings may have evolved over time, "
                        "requiring updated investigation."
                    ),
                    current_limitation=(
                        "Current literature collection has temporal limitations "
                        "affecting generalizability."
                    ),
                    proposed_approach=(
                        "Conduct current research to update and validate previous "
                        "findings in contemporary context."
                    ),
                    estimated_scope=ScopeSize.SMALL,
                    time_requirement="2-3 months",
                    resources_needed=["Current data collection", "Comparative analysis"],
                    ethics_considerations="Standard ethical review sufficient",
                )
            )

        return drafts[: self.max_gaps]

    # ------------------------------------------------------------------
    # Scoring and ranking
    # ------------------------------------------------------------------

    def score_draft(
        self,
        draft: GapDraft,
        index: int,
        synthesis: SourceSynthesis,
        sources: Sequence[Source],
        research_question: str,
        method: AnalysisMethod = AnalysisMethod.AI,
    ) -> GapOpportunity:
        """Turn a draft into a scored ``GapOpportunity`` with defaults filled in."""
        novelty = novelty_score(draft, synthesis)
        feasibility = feasibility_score(draft)
        contribution = contribution_score(draft, research_question)
        gap_id = draft.id or (f"ai-gap-{index}" if method == AnalysisMethod.AI else f"gap-{index}")

        return GapOpportunity(
            id=gap_id,
            gap_type=draft.gap_type,
            title=draft.title or f"Research Gap {index + 1}",
            description=draft.description or "Identified research opportunity",
            why_matters=draft.why_matters or _DEFAULT_WHY,
            current_limitation=draft.current_limitation or _DEFAULT_LIMITATION,
            proposed_approach=draft.proposed_approach or _DEFAULT_APPROACH,
            novelty_score=novelty,
            feasibility_score=feasibility,
            contribution_score=contribution,
            overall_score=0,
            estimated_scope=draft.estimated_scope or ScopeSize.MEDIUM,
            time_requirement=draft.time_requirement or _DEFAULT_TIME,
            resources_needed=list(draft.resources_needed or _DEFAULT_RESOURCES),
            ethics_considerations=draft.ethics_considerations or _DEFAULT_ETHICS,
            related_sources=find_related_sources(draft, sources),
        )

    @staticmethod
    def rank_opportunities(gaps: Sequence[GapOpportunity]) -> List[GapOpportunity]:
        """Attach overall scores (as new instances) and sort descending, stably."""
        scored = [
            gap.model_copy(
                update={
                    "overall_score": overall_score(
                        gap.novelty_score, gap.feasibility_score, gap.contribution_score
                    )
                }
            )
            for gap in gaps
        ]
        return sorted(scored, key=lambda g: g.overall_score, reverse=True)

    # ------------------------------------------------------------------
    # Advice
    # ------------------------------------------------------------------

    def generate_research_opportunities(
        self,
        gaps: Sequence[GapOpportunity],
        research_question: str,
    ) -> List[ResearchOpportunity]:
        return [
            ResearchOpportunity(
                suggested_question=self.generate_research_question(gap, research_question),
                rationale=f"This addresses the identified gap: {gap.title}. {gap.why_matters}",
                approach=gap.proposed_approach,
                expected_outcome=self.generate_expected_outcome(gap),
                feasibility_assessment=(
                    f"{gap.estimated_scope.value} scope project requiring "
                    f"{gap.time_requirement}. Feasibility score: {gap.feasibility_score}/100."
                ),
                related_gaps=[gap.id],
            )
            for gap in gaps[: self.MAX_OPPORTUNITIES]
        ]

    @staticmethod
    def generate_research_question(gap: GapOpportunity, research_question: str) -> str:
        template = QUESTION_TEMPLATES.get(gap.gap_type, QUESTION_TEMPLATES[None])
        subject = ""
        if gap.gap_type == GapType.POPULATION:
            subject = gap.title.replace(_POPULATION_PREFIX, "")
        elif gap.gap_type == GapType.METHODOLOGY:
            subject = gap.title.replace(_METHOD_PREFIX, "").lower()
        return template.format(base=_base_question(research_question), subject=subject)

    @staticmethod
    def generate_expected_outcome(gap: GapOpportunity) -> str:
        tail = OUTCOME_TEMPLATES.get(gap.gap_type, OUTCOME_TEMPLATES[None])
        return f"{_OUTCOME_BASE} {tail}"

    def identify_methodological_gaps(self, synthesis: SourceSynthesis) -> List[MethodologicalGap]:
        """Catalog methods the collection never uses, capped at three."""
        used = [m.approach for m in synthesis.methodologies]
        gaps = [
            MethodologicalGap(
                missing_method=entry.method,
                current_approaches=list(used),
                why_needed=entry.needed,
                implementation_suggestion=entry.implementation,
                difficulty_level=entry.difficulty,
            )
            for entry in METHOD_CATALOG
            if entry.approach not in used
        ]
        return gaps[: self.MAX_METHODOLOGICAL_GAPS]

    @staticmethod
    def generate_overall_assessment(
        synthesis: SourceSynthesis,
        gaps: Sequence[GapOpportunity],
        source_count: int,
    ) -> str:
        parts = [f"Based on analysis of {source_count} sources, "]

        if source_count >= 8:
            parts.append("your literature collection provides a solid foundation for gap analysis. ")
        elif source_count >= 5:
            parts.append(
                "your literature collection provides a good starting point for "
                "identifying research opportunities. "
            )
        else:
            parts.append(
                "your literature collection shows initial patterns, though additional "
                "sources would strengthen the analysis. "
            )

        if gaps:
            top = gaps[0]
            parts.append(
                f"The most promising research opportunity is {top.title.lower()}, "
                f"which scored {top.overall_score}/100 for overall potential. "
            )

        if len(synthesis.methodologies) >= 3:
            parts.append("The studies show good methodological diversity, ")
        else:
            parts.append("The studies show limited methodological diversity, ")

        coverage = {p.coverage for p in synthesis.populations}
        if CoverageLevel.MISSING in coverage or CoverageLevel.LIMITED in coverage:
            parts.append(
                "with notable gaps in population coverage that present clear research opportunities."
            )
        else:
            parts.append("with comprehensive population coverage across most relevant groups.")

        return "".join(parts)

    def generate_recommendations(
        self,
        gaps: Sequence[GapOpportunity],
        method_gaps: Sequence[MethodologicalGap],
    ) -> List[str]:
        recommendations: List[str] = []

        if gaps:
            top = gaps[0]
            recommendations.append(
                f"Focus on {top.title.lower()} - this represents your highest-impact "
                f"opportunity ({top.overall_score}/100 score) and is feasible for a "
                f"student project."
            )

        easy = next(
            (
                g for g in method_gaps
                if g.difficulty_level in (DifficultyLevel.BEGINNER, DifficultyLevel.INTERMEDIATE)
            ),
            None,
        )
        if easy is not None:
            recommendations.append(
                f"Consider using {easy.missing_method.lower()} as your research approach - "
                f"{easy.why_needed.lower()}."
            )

        if any(g.gap_type == GapType.POPULATION for g in gaps):
            recommendations.append(
                "Target the understudied population identified in your analysis to "
                "maximize the novelty and contribution of your research."
            )

        feasible = [g for g in gaps if g.feasibility_score >= self.FEASIBLE_THRESHOLD]
        if feasible:
            recommendations.append(
                f"{len(feasible)} of the identified gaps are highly feasible for student "
                f"research - prioritize these for immediate action."
            )

        if len(gaps) < 3:
            recommendations.append(
                "Consider expanding your literature collection to identify additional "
                "research opportunities and strengthen your gap analysis."
            )

        return recommendations[: self.MAX_RECOMMENDATIONS]

    # ------------------------------------------------------------------
    # Degraded results
    # ------------------------------------------------------------------

    def _insufficient_sources_result(
        self,
        source_count: int,
        research_question: str,
    ) -> GapAnalysisResult:
        needed = self.min_sources - source_count
        now = datetime.now(timezone.utc)
        return GapAnalysisResult(
            overall_assessment=(
                f"Your collection has {source_count} sources. Gap analysis requires at "
                f"least {self.min_sources} sources to identify meaningful patterns and "
                f"opportunities. Add more sources to unlock comprehensive gap analysis."
            ),
            identified_gaps=[],
            research_opportunities=[
                ResearchOpportunity(
                    suggested_question=research_question,
                    rationale=(
                        "Expand your literature collection to identify specific research opportunities"
                    ),
                    approach=(
                        "Collect additional relevant sources through database searches "
                        "and citation tracking"
                    ),
                    expected_outcome=(
                        "A more comprehensive understanding of research gaps and opportunities"
                    ),
                    feasibility_assessment=(
                        "High feasibility - literature collection is the essential first step"
                    ),
                    related_gaps=[],
                )
            ],
            methodological_gaps=[],
            recommendations=[
                f"Add at least {needed} more relevant source{'s' if needed != 1 else ''} "
                f"to enable gap analysis",
                "Focus on recent publications (last 5 years) for current perspectives",
                "Include diverse methodological approaches for comprehensive coverage",
                "Consider both high-quality journal articles and relevant reports",
            ],
            confidence_level=ConfidenceLevel.LOW,
            sources_covered=source_count,
            analysis_method=AnalysisMethod.INSUFFICIENT_SOURCES,
            analysis_date=now,
            generated_at=now,
        )

    def _fallback_result(
        self,
        sources: Sequence[Source],
        research_question: str,
    ) -> GapAnalysisResult:
        novelty, feasibility, contribution = 60, 75, 65
        gap = GapOpportunity(
            id="fallback-gap-1",
            gap_type=GapType.METHODOLOGY,
            title="Methodological Diversification Needed",
            description="Current literature may benefit from additional methodological approaches",
            why_matters="Different research methods can reveal new insights and validate findings",
            current_limitation="Limited methodological diversity in current collection",
            proposed_approach="Consider alternative research methods to complement existing studies",
            novelty_score=novelty,
            feasibility_score=feasibility,
            contribution_score=contribution,
            overall_score=overall_score(novelty, feasibility, contribution),
            estimated_scope=ScopeSize.MEDIUM,
            time_requirement=_DEFAULT_TIME,
            resources_needed=["Research design planning", "Data collection tools"],
            ethics_considerations=_DEFAULT_ETHICS,
            related_sources=[s.id for s in sources[:3]],
        )
        now = datetime.now(timezone.utc)
        return GapAnalysisResult(
            overall_assessment=(
                f"Analysis of {len(sources)} sources completed using basic pattern "
                f"recognition. For more detailed insights, try refreshing the analysis."
            ),
            identified_gaps=[gap],
            research_opportunities=[
                ResearchOpportunity(
                    suggested_question=(
                        f"How can we extend current understanding of {_base_question(research_question)}?"
                    ),
                    rationale="Building on existing research while addressing identified limitations",
                    approach="Systematic investigation using complementary methods",
                    expected_outcome="Enhanced understanding of the research area",
                    feasibility_assessment="Moderate feasibility for student research project",
                    related_gaps=[gap.id],
                )
            ],
            methodological_gaps=[
                MethodologicalGap(
                    missing_method="Additional Research Approaches",
                    current_approaches=["Current methods from literature"],
                    why_needed="To provide comprehensive understanding of the research question",
                    implementation_suggestion="Explore alternative methodological frameworks",
                    difficulty_level=DifficultyLevel.INTERMEDIATE,
                )
            ],
            recommendations=[
                "Review current literature for methodological patterns",
                "Consider how your research can complement existing studies",
                "Focus on feasible approaches for student research",
                "Consult with advisors for research design guidance",
            ],
            confidence_level=ConfidenceLevel.LOW,
            sources_covered=len(sources),
            analysis_method=AnalysisMethod.FALLBACK,
            analysis_date=now,
            generated_at=now,
        )
