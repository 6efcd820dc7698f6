"""
Source organization: themes, methodology groups and a timeline.

Public API
----------
SourceOrganizer.organize_sources(sources, question, ...)    -> OrganizedSources
SourceOrganizer.reorganize_sources(current, changes)        -> OrganizedSources
search_organized_sources(organization, query, filters)      -> List[Source]

Theme clustering asks the completion model for 2-4 clusters, seeded with
source titles and the most similar source pairs.  When the call fails or
nothing usable comes back, a greedy similarity-threshold clusterer runs over
the embedding matrix instead.  Methodology grouping and the timeline are
fully deterministic.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

from app.config import settings
from app.models.schemas import (
    ClusteringMethod,
    ManualOverrides,
    MethodologyGroup,
    MethodologyType,
    OrganizationConfidence,
    OrganizationMetadata,
    OrganizationSuggestion,
    OrganizedSources,
    RelevanceToPresent,
    ReorganizeChanges,
    SearchFilters,
    Source,
    StrengthsWeaknesses,
    SuggestionType,
    ThemeCluster,
    TimelineGroup,
    TimelineYearRange,
)
from app.services.embedding import (
    OllamaEmbeddingService,
    embedding_text_for,
    fallback_embedding,
    similarity_matrix,
)
from app.services.llm import OllamaLLMService, parse_json_response
from app.services.patterns import source_text
from app.utils.helpers import extract_keywords, resolve_year, round_half_up, top_terms

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Internal dataclasses
# ---------------------------------------------------------------------------

@dataclass
class ClusterProposal:
    name: str
    description: str
    source_indices: List[int]
    keywords: List[str] = field(default_factory=list)
    relevance_score: int = 75


@dataclass(frozen=True)
class TimePeriod:
    label: str
    start: int
    end: int


# ---------------------------------------------------------------------------
# Methodology tables
# ---------------------------------------------------------------------------

# Order matters: on equal scores the earlier type wins.
METHODOLOGY_KEYWORDS: List[Tuple[MethodologyType, List[str]]] = [
    (MethodologyType.EXPERIMENTAL,
     ["experiment", "randomized", "controlled trial", "intervention", "treatment group"]),
    (MethodologyType.SURVEY,
     ["survey", "questionnaire", "poll", "self-report", "likert scale"]),
    (MethodologyType.META_ANALYSIS,
     ["meta-analysis", "systematic review", "pooled analysis", "effect size"]),
    (MethodologyType.CASE_STUDY,
     ["case study", "case report", "single case", "case series"]),
    (MethodologyType.LONGITUDINAL,
     ["longitudinal", "follow-up", "cohort", "over time", "repeated measures"]),
    (MethodologyType.CROSS_SECTIONAL,
     ["cross-sectional", "snapshot", "point in time", "prevalence study"]),
    (MethodologyType.QUALITATIVE,
     ["qualitative", "interview", "focus group", "ethnographic", "thematic analysis"]),
    (MethodologyType.MIXED_METHODS,
     ["mixed methods", "mixed-method", "qualitative and quantitative"]),
    (MethodologyType.SYSTEMATIC_REVIEW,
     ["systematic review", "literature review", "scoping review"]),
]

# Anchored at a word start: "experiment" also matches "experimental"
_METHODOLOGY_PATTERNS = [
    (methodology, [(p, re.compile(r"\b" + re.escape(p))) for p in phrases])
    for methodology, phrases in METHODOLOGY_KEYWORDS
]

METHODOLOGY_INFO: Dict[MethodologyType, Dict[str, Any]] = {
    MethodologyType.EXPERIMENTAL: {
        "name": "Experimental Studies",
        "description": "Controlled experiments with randomization to test causal relationships",
        "characteristics": ["Random assignment", "Control groups", "Manipulated variables",
                            "Causal inference"],
        "strengths": ["Strong causal inference", "High internal validity", "Replicable results"],
        "weaknesses": ["May lack external validity", "Ethical constraints", "Artificial settings"],
    },
    MethodologyType.SURVEY: {
        "name": "Survey Research",
        "description": "Data collection through questionnaires and structured interviews",
        "characteristics": ["Self-reported data", "Large sample sizes", "Standardized questions",
                            "Statistical analysis"],
        "strengths": ["Large sample sizes", "Cost-effective", "Standardized data collection"],
        "weaknesses": ["Response bias", "Self-report limitations", "Limited depth"],
    },
    MethodologyType.META_ANALYSIS: {
        "name": "Meta-Analysis",
        "description": "Statistical synthesis of results from multiple independent studies",
        "characteristics": ["Quantitative synthesis", "Effect size calculation",
                            "Heterogeneity analysis", "Publication bias assessment"],
        "strengths": ["High statistical power", "Comprehensive evidence", "Objective synthesis"],
        "weaknesses": ["Quality depends on included studies", "Publication bias",
                       "Heterogeneity issues"],
    },
    MethodologyType.CASE_STUDY: {
        "name": "Case Studies",
        "description": "In-depth analysis of individual cases or small groups",
        "characteristics": ["Detailed examination", "Contextual factors", "Unique phenomena",
                            "Rich description"],
        "strengths": ["Rich detailed data", "Explores unique phenomena", "Generates hypotheses"],
        "weaknesses": ["Limited generalizability", "Potential bias", "No statistical inference"],
    },
    MethodologyType.LONGITUDINAL: {
        "name": "Longitudinal Studies",
        "description": "Repeated observation of the same participants across time points",
        "characteristics": ["Repeated measures", "Cohort tracking", "Temporal ordering",
                            "Change over time"],
        "strengths": ["Tracks development and change", "Temporal precedence",
                      "Within-person comparisons"],
        "weaknesses": ["Attrition", "Time-intensive", "Costly to maintain"],
    },
    MethodologyType.CROSS_SECTIONAL: {
        "name": "Cross-Sectional Studies",
        "description": "Data collected from a population at a single point in time",
        "characteristics": ["Single time point", "Prevalence estimates", "Group comparisons",
                            "Correlational analysis"],
        "strengths": ["Quick to conduct", "Inexpensive", "Good for prevalence"],
        "weaknesses": ["No causal inference", "No temporal ordering", "Cohort effects"],
    },
    MethodologyType.QUALITATIVE: {
        "name": "Qualitative Research",
        "description": "Interviews, focus groups and observation exploring meaning and experience",
        "characteristics": ["Open-ended data", "Thematic analysis", "Small purposive samples",
                            "Contextual depth"],
        "strengths": ["Rich contextual insight", "Captures participant perspectives",
                      "Flexible design"],
        "weaknesses": ["Limited generalizability", "Researcher subjectivity",
                       "Time-consuming analysis"],
    },
    MethodologyType.MIXED_METHODS: {
        "name": "Mixed Methods",
        "description": "Studies combining quantitative and qualitative data collection",
        "characteristics": ["Quantitative and qualitative strands", "Triangulation",
                            "Integrated analysis", "Sequential or concurrent design"],
        "strengths": ["Breadth and depth", "Triangulated findings", "Answers complex questions"],
        "weaknesses": ["Complex to design", "Resource-intensive", "Requires dual expertise"],
    },
    MethodologyType.SYSTEMATIC_REVIEW: {
        "name": "Systematic Reviews",
        "description": "Structured, reproducible reviews of existing literature",
        "characteristics": ["Predefined protocol", "Comprehensive search", "Quality appraisal",
                            "Evidence synthesis"],
        "strengths": ["Comprehensive overview", "Reproducible", "Identifies evidence gaps"],
        "weaknesses": ["Depends on available studies", "Time-consuming",
                       "Can become outdated quickly"],
    },
    MethodologyType.OTHER: {
        "name": "Other Methodologies",
        "description": "Various other research approaches and methodologies",
        "characteristics": ["Diverse approaches", "Context-specific methods"],
        "strengths": ["Methodological diversity", "Context-appropriate"],
        "weaknesses": ["Varied quality standards", "Difficult to compare"],
    },
}


# ---------------------------------------------------------------------------
# Prompt template
# ---------------------------------------------------------------------------

_CLUSTER_PROMPT = """\
Analyze these research sources and organize them into 2-4 thematic clusters \
based on their content similarity and relevance to the research question: \
"{question}"

Sources:
{titles}

Most similar source pairs (embedding cosine similarity):
{pairs}

For each cluster, provide:
1. A clear, descriptive name (2-4 words)
2. A brief description of the theme
3. List of source indices that belong to this cluster
4. 3-5 keywords that represent the theme
5. Relevance score (0-100) to the research question

Respond ONLY with valid JSON in this format, nothing else:
{{"clusters": [{{"name": "Theme Name", "description": "Brief description", \
"source_indices": [0, 1, 2], "keywords": ["keyword1", "keyword2"], "relevance_score": 85}}]}}\
"""


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------

def detect_source_methodology(source: Source) -> Tuple[MethodologyType, int]:
    """
    Classify one source into a canonical methodology type.

    Title, abstract, key findings and declared study type are scanned.
    Every keyword phrase found scores its word count.  The highest total
    wins; ties keep the earlier type; no hit at all means ``other``.
    """
    text = source_text(source, include_study_type=True)
    best, best_score = MethodologyType.OTHER, 0
    for methodology, phrases in _METHODOLOGY_PATTERNS:
        score = sum(len(p.split()) for p, pattern in phrases if pattern.search(text))
        if score > best_score:
            best, best_score = methodology, score
    return best, best_score


def time_period(year: int, current_year: int) -> TimePeriod:
    """Rolling window relative to *current_year*; future years land in the newest one."""
    if year >= current_year - 2:
        return TimePeriod(f"{current_year - 2}-{current_year}", current_year - 2, current_year)
    if year >= current_year - 5:
        return TimePeriod(f"{current_year - 5}-{current_year - 3}", current_year - 5, current_year - 3)
    if year >= current_year - 10:
        return TimePeriod(f"{current_year - 10}-{current_year - 6}", current_year - 10, current_year - 6)
    return TimePeriod(f"Before {current_year - 10}", 1900, current_year - 11)


def relevance_for(period: TimePeriod, current_year: int) -> RelevanceToPresent:
    age = current_year - period.end
    if age > 10:
        return RelevanceToPresent.LOW
    if age > 5:
        return RelevanceToPresent.MODERATE
    return RelevanceToPresent.HIGH


def source_keywords(source: Source) -> List[str]:
    return extract_keywords(embedding_text_for(source).lower(), top_n=3)


def _methodology_group(methodology: MethodologyType, sources: List[Source]) -> MethodologyGroup:
    info = METHODOLOGY_INFO[methodology]
    return MethodologyGroup(
        id=f"methodology-{methodology.value}",
        methodology_type=methodology,
        name=info["name"],
        description=info["description"],
        sources=sources,
        characteristics=list(info["characteristics"]),
        strengths_weaknesses=StrengthsWeaknesses(
            strengths=list(info["strengths"]),
            weaknesses=list(info["weaknesses"]),
        ),
    )


def _unique_by_id(sources: Sequence[Source]) -> List[Source]:
    seen = set()
    unique = []
    for source in sources:
        if source.id not in seen:
            seen.add(source.id)
            unique.append(source)
    return unique


def search_organized_sources(
    organization: OrganizedSources,
    query: str = "",
    filters: Optional[SearchFilters] = None,
) -> List[Source]:
    """
    Filter the sources of an organization.

    Theme filters select theme ids; methodology filters match group ids or
    methodology types; year bounds are inclusive; the text query matches
    title, authors, abstract and key findings case-insensitively.  Results
    are de-duplicated by id in first-seen order.
    """
    filters = filters or SearchFilters()

    if filters.themes:
        wanted = set(filters.themes)
        themes = [t for t in organization.themes if t.id in wanted]
    else:
        themes = organization.themes
    results = [s for theme in themes for s in theme.sources]

    if filters.methodologies:
        wanted = set(filters.methodologies)
        allowed = {
            s.id
            for group in organization.methodologies
            if group.id in wanted or group.methodology_type.value in wanted
            for s in group.sources
        }
        results = [s for s in results if s.id in allowed]

    if filters.min_year is not None:
        results = [s for s in results if s.year >= filters.min_year]
    if filters.max_year is not None:
        results = [s for s in results if s.year <= filters.max_year]

    needle = (query or "").strip().lower()
    if needle:
        results = [
            s for s in results
            if needle in s.title.lower()
            or any(needle in a.lower() for a in s.authors)
            or (s.abstract and needle in s.abstract.lower())
            or any(needle in f.lower() for f in s.key_findings)
        ]

    return _unique_by_id(results)


# ---------------------------------------------------------------------------
# SourceOrganizer
# ---------------------------------------------------------------------------

class SourceOrganizer:
    """
    Organizes a source collection into themes, methodologies and a timeline.

    Main entry point: ``organize_sources(sources, research_question)``.
    Never raises; unexpected errors produce a keyword-grouped fallback.
    """

    MAX_PROMPT_PAIRS: int = 5
    MAX_AI_CLUSTERS: int = 4
    MERGE_SUGGESTION_THEMES: int = 6
    SPLIT_SUGGESTION_SHARE: float = 0.6

    def __init__(
        self,
        embedder: Optional[OllamaEmbeddingService] = None,
        llm: Optional[OllamaLLMService] = None,
        store=None,
        today: Optional[date] = None,
    ) -> None:
        self._embedder = embedder
        self._llm = llm
        self._store = store
        self._today = today
        self.similarity_threshold = settings.CLUSTER_SIMILARITY_THRESHOLD
        self.min_sources = settings.MIN_SOURCES_FOR_CLUSTERING

    @property
    def current_year(self) -> int:
        return resolve_year(self._today)

    # ------------------------------------------------------------------
    # Main entry point
    # ------------------------------------------------------------------

    async def organize_sources(
        self,
        sources: Sequence[Source],
        research_question: str = "",
        project_id: Optional[str] = None,
        manual_overrides: Optional[ManualOverrides] = None,
    ) -> OrganizedSources:
        sources = list(sources)
        logger.info("SourceOrganizer: organizing %d source(s) for project %s", len(sources), project_id)

        if len(sources) < self.min_sources:
            return self._minimal_organization(sources)

        try:
            organization = await self._organize(sources, research_question, manual_overrides)
        except Exception as exc:
            logger.error("SourceOrganizer: organization failed, using fallback: %s", exc, exc_info=True)
            return self._fallback_organization(sources)

        if project_id and self._store is not None:
            self._store.schedule(self._store.persist_organization(project_id, organization))

        logger.info(
            "SourceOrganizer: complete. themes=%d methodologies=%d periods=%d method=%s",
            len(organization.themes),
            len(organization.methodologies),
            len(organization.timeline),
            organization.metadata.clustering_method.value,
        )
        return organization

    async def _organize(
        self,
        sources: List[Source],
        research_question: str,
        manual_overrides: Optional[ManualOverrides],
    ) -> OrganizedSources:
        vectors, fallbacks = await self._embed(sources)
        matrix = similarity_matrix(vectors)

        themes, clustering_method = await self.perform_theme_clustering(
            sources, matrix, research_question
        )
        methodologies = self.detect_methodologies(sources)
        timeline = self.create_timeline(sources)

        if manual_overrides is not None:
            if manual_overrides.themes is not None:
                themes = manual_overrides.themes
            if manual_overrides.methodologies is not None:
                methodologies = manual_overrides.methodologies
            if manual_overrides.timeline is not None:
                timeline = manual_overrides.timeline
            if manual_overrides.model_fields_set:
                clustering_method = ClusteringMethod.HYBRID

        metadata = self.generate_metadata(
            sources, themes, methodologies, timeline, clustering_method, fallbacks
        )
        return OrganizedSources(
            themes=themes,
            methodologies=methodologies,
            timeline=timeline,
            metadata=metadata,
        )

    async def _embed(self, sources: List[Source]) -> Tuple[List[List[float]], int]:
        """One vector per source plus how many came from the fallback embedding."""
        if self._embedder is None:
            return [fallback_embedding(embedding_text_for(s)) for s in sources], len(sources)

        results = await self._embedder.embed_sources(sources)
        vectors = [r.value for r in results]
        return vectors, sum(1 for r in results if r.is_fallback)

    # ------------------------------------------------------------------
    # Theme clustering
    # ------------------------------------------------------------------

    async def perform_theme_clustering(
        self,
        sources: List[Source],
        matrix: List[List[float]],
        research_question: str,
    ) -> Tuple[List[ThemeCluster], ClusteringMethod]:
        proposals = await self.propose_clusters_with_ai(sources, matrix, research_question)
        method = ClusteringMethod.AI_SIMILARITY
        if not proposals:
            proposals = self.similarity_clusters(sources, matrix)
            method = ClusteringMethod.SIMILARITY_THRESHOLD

        now = datetime.now(timezone.utc)
        themes = [
            ThemeCluster(
                id=f"theme-{index}",
                name=proposal.name,
                description=proposal.description,
                sources=[sources[i] for i in proposal.source_indices],
                keywords=proposal.keywords,
                relevance_score=proposal.relevance_score,
                is_user_defined=False,
                created_at=now,
                updated_at=now,
            )
            for index, proposal in enumerate(proposals)
        ]
        return themes, method

    async def propose_clusters_with_ai(
        self,
        sources: List[Source],
        matrix: List[List[float]],
        research_question: str,
    ) -> List[ClusterProposal]:
        """Ask the completion model for clusters; an empty list means use the fallback."""
        if self._llm is None:
            return []

        prompt = _CLUSTER_PROMPT.format(
            question=research_question,
            titles="\n".join(f"{i}: {s.title}" for i, s in enumerate(sources)),
            pairs="\n".join(
                f"{i} & {j}: {sim:.2f}" for i, j, sim in self._top_pairs(matrix)
            ) or "none",
        )
        reply = await self._llm.complete(prompt)
        if not reply.usable:
            logger.warning("SourceOrganizer: completion failed (%s), using similarity clusters", reply.error)
            return []

        proposals = self.parse_cluster_response(reply.value or "", len(sources))
        if not proposals:
            logger.warning("SourceOrganizer: no usable clusters in completion, using similarity clusters")
        return proposals

    def _top_pairs(self, matrix: List[List[float]]) -> List[Tuple[int, int, float]]:
        pairs = [
            (i, j, matrix[i][j])
            for i in range(len(matrix))
            for j in range(i + 1, len(matrix))
        ]
        pairs.sort(key=lambda p: p[2], reverse=True)
        return pairs[: self.MAX_PROMPT_PAIRS]

    def parse_cluster_response(self, text: str, source_count: int) -> List[ClusterProposal]:
        """
        Read ``{"clusters": [...]}`` (or a bare list) from a completion.

        Out-of-range, duplicate or non-integer indices are dropped; a
        cluster left with no valid member is dropped.
        """
        ok, parsed = parse_json_response(text)
        if not ok:
            return []
        if isinstance(parsed, dict):
            parsed = parsed.get("clusters")
        if not isinstance(parsed, list):
            return []

        proposals: List[ClusterProposal] = []
        for item in parsed[: self.MAX_AI_CLUSTERS]:
            if not isinstance(item, dict):
                continue
            raw_indices = item.get("source_indices", item.get("sourceIndices")) or []
            indices: List[int] = []
            for raw in raw_indices if isinstance(raw_indices, list) else []:
                if isinstance(raw, bool) or not isinstance(raw, int):
                    continue
                if 0 <= raw < source_count and raw not in indices:
                    indices.append(raw)
            if not indices:
                continue

            keywords = item.get("keywords") or []
            if not isinstance(keywords, list):
                keywords = [keywords]
            try:
                relevance = round_half_up(float(item.get("relevance_score", item.get("relevanceScore", 70))))
            except (TypeError, ValueError):
                relevance = 70

            proposals.append(
                ClusterProposal(
                    name=str(item.get("name") or f"Theme {len(proposals) + 1}").strip(),
                    description=str(item.get("description") or "Related research topics").strip(),
                    source_indices=indices,
                    keywords=[str(k) for k in keywords][:5],
                    relevance_score=max(0, min(100, relevance)),
                )
            )
        return proposals

    def similarity_clusters(
        self,
        sources: List[Source],
        matrix: List[List[float]],
    ) -> List[ClusterProposal]:
        """
        Greedy threshold clustering.

        The first unclustered source seeds a cluster and absorbs every later
        unclustered source whose similarity to the seed exceeds the threshold.
        """
        used = set()
        clusters: List[ClusterProposal] = []
        for i in range(len(sources)):
            if i in used:
                continue
            members = [i]
            used.add(i)
            for j in range(i + 1, len(sources)):
                if j not in used and matrix[i][j] > self.similarity_threshold:
                    members.append(j)
                    used.add(j)
            clusters.append(
                ClusterProposal(
                    name=f"Research Cluster {len(clusters) + 1}",
                    description="Related research topics",
                    source_indices=members,
                    keywords=source_keywords(sources[i]),
                    relevance_score=75,
                )
            )
        return clusters

    # ------------------------------------------------------------------
    # Methodologies and timeline
    # ------------------------------------------------------------------

    def detect_methodologies(self, sources: Sequence[Source]) -> List[MethodologyGroup]:
        """Group sources by detected methodology, in order of first occurrence."""
        groups: Dict[MethodologyType, List[Source]] = {}
        for source in sources:
            methodology, _score = detect_source_methodology(source)
            groups.setdefault(methodology, []).append(source)
        return [_methodology_group(m, members) for m, members in groups.items()]

    def create_timeline(self, sources: Sequence[Source]) -> List[TimelineGroup]:
        """Bucket sources into rolling windows, oldest first, with simple trend notes."""
        current_year = self.current_year
        buckets: Dict[TimePeriod, List[Source]] = {}
        for source in sources:
            buckets.setdefault(time_period(source.year or current_year, current_year), []).append(source)

        timeline = []
        for period in sorted(buckets, key=lambda p: p.start):
            members = buckets[period]
            terms = top_terms(f for s in members for f in s.key_findings)
            average = round_half_up(sum(s.year or period.start for s in members) / len(members))
            timeline.append(
                TimelineGroup(
                    id=f"timeline-{period.label.lower().replace(' ', '-')}",
                    period=period.label,
                    year_range=TimelineYearRange(start=period.start, end=period.end),
                    sources=members,
                    trends=[
                        f"{len(members)} studies published in this period",
                        *[f"Focus on {term}" for term in terms[:3]],
                        f"Average {average} publication year",
                    ],
                    evolution_notes=(
                        f"This period showed {'significant' if len(members) > 5 else 'moderate'} "
                        f"research activity with emphasis on {terms[0] if terms else 'various topics'}."
                    ),
                    relevance_to_present=relevance_for(period, current_year),
                )
            )
        return timeline

    # ------------------------------------------------------------------
    # Metadata
    # ------------------------------------------------------------------

    def generate_metadata(
        self,
        sources: Sequence[Source],
        themes: Sequence[ThemeCluster],
        methodologies: Sequence[MethodologyGroup],
        timeline: Sequence[TimelineGroup],
        clustering_method: ClusteringMethod,
        embedding_fallbacks: int = 0,
    ) -> OrganizationMetadata:
        total = len(sources)
        suggestions: List[OrganizationSuggestion] = []

        if len(themes) > self.MERGE_SUGGESTION_THEMES:
            suggestions.append(
                OrganizationSuggestion(
                    type=SuggestionType.MERGE_THEMES,
                    description="Consider merging similar themes for better organization",
                    action="Review themes with low source counts and similar keywords",
                    confidence=75,
                )
            )

        if any(len(t.sources) > total * self.SPLIT_SUGGESTION_SHARE for t in themes):
            suggestions.append(
                OrganizationSuggestion(
                    type=SuggestionType.SPLIT_THEME,
                    description="Large theme detected that could be split",
                    action="Consider breaking down the largest theme into sub-themes",
                    confidence=80,
                )
            )

        if methodologies and all(g.methodology_type == MethodologyType.OTHER for g in methodologies):
            suggestions.append(
                OrganizationSuggestion(
                    type=SuggestionType.ADD_METHODOLOGY,
                    description="No recognizable research methodology was detected in your sources",
                    action="Add study design details (survey, experiment, interviews) to your sources",
                    confidence=70,
                )
            )

        newest = time_period(self.current_year, self.current_year)
        if timeline and not any(g.period == newest.label for g in timeline):
            suggestions.append(
                OrganizationSuggestion(
                    type=SuggestionType.UPDATE_TIMELINE,
                    description="No sources from the most recent period",
                    action=f"Search for publications from {newest.label} to keep your review current",
                    confidence=70,
                )
            )

        if total >= 5:
            confidence = OrganizationConfidence.HIGH
        elif total >= 3:
            confidence = OrganizationConfidence.MODERATE
        else:
            confidence = OrganizationConfidence.LOW

        return OrganizationMetadata(
            total_sources=total,
            organization_date=datetime.now(timezone.utc),
            clustering_method=clustering_method,
            confidence=confidence,
            suggestions=suggestions,
            embedding_fallbacks=embedding_fallbacks,
        )

    # ------------------------------------------------------------------
    # Reorganization
    # ------------------------------------------------------------------

    def reorganize_sources(
        self,
        current: OrganizedSources,
        changes: ReorganizeChanges,
    ) -> OrganizedSources:
        """
        Apply explicit deltas to a copy of *current*.

        Changes apply in the order move, create, merge, delete.  Unknown
        theme or source ids are logged and skipped.
        """
        updated = current.model_copy(deep=True)
        themes = list(updated.themes)
        now = datetime.now(timezone.utc)
        by_id = {s.id: s for s in self._all_sources(updated)}

        def find_theme(theme_id: str) -> Optional[ThemeCluster]:
            return next((t for t in themes if t.id == theme_id), None)

        if changes.move_source is not None:
            move = changes.move_source
            origin, target = find_theme(move.from_theme), find_theme(move.to_theme)
            source = next((s for s in origin.sources if s.id == move.source_id), None) if origin else None
            if origin is None or target is None or source is None:
                logger.warning(
                    "reorganize: cannot move source %s from %s to %s",
                    move.source_id, move.from_theme, move.to_theme,
                )
            else:
                origin.sources = [s for s in origin.sources if s.id != move.source_id]
                if all(s.id != source.id for s in target.sources):
                    target.sources = target.sources + [source]
                origin.updated_at = target.updated_at = now

        if changes.create_theme is not None:
            create = changes.create_theme
            members = []
            for source_id in create.source_ids:
                if source_id in by_id:
                    members.append(by_id[source_id])
                else:
                    logger.warning("reorganize: unknown source %s for new theme", source_id)
            themes.append(
                ThemeCluster(
                    id=self._next_theme_id(themes, "user-theme"),
                    name=create.name,
                    description=create.description or "User-defined theme",
                    sources=_unique_by_id(members),
                    keywords=[],
                    relevance_score=80,
                    is_user_defined=True,
                    created_at=now,
                    updated_at=now,
                )
            )

        if changes.merge_themes is not None:
            merge = changes.merge_themes
            selected = [t for t in themes if t.id in set(merge.theme_ids)]
            unknown = set(merge.theme_ids) - {t.id for t in selected}
            if unknown:
                logger.warning("reorganize: unknown theme ids in merge: %s", sorted(unknown))
            if len(selected) < 2:
                logger.warning("reorganize: merge needs at least two known themes, skipping")
            else:
                keywords: List[str] = []
                for theme in selected:
                    keywords.extend(k for k in theme.keywords if k not in keywords)
                merged = ThemeCluster(
                    id=self._next_theme_id(themes, "merged-theme"),
                    name=merge.new_name,
                    description="Merged from: " + ", ".join(t.name for t in selected),
                    sources=_unique_by_id([s for t in selected for s in t.sources]),
                    keywords=keywords,
                    relevance_score=max(t.relevance_score for t in selected),
                    is_user_defined=True,
                    created_at=now,
                    updated_at=now,
                )
                position = themes.index(selected[0])
                themes = [t for t in themes if t not in selected]
                themes.insert(position, merged)

        if changes.delete_theme is not None:
            theme = find_theme(changes.delete_theme.theme_id)
            if theme is None:
                logger.warning("reorganize: unknown theme %s, nothing deleted", changes.delete_theme.theme_id)
            else:
                themes = [t for t in themes if t.id != theme.id]

        updated.themes = themes
        updated.metadata.clustering_method = ClusteringMethod.HYBRID
        updated.metadata.organization_date = now
        return updated

    @staticmethod
    def _all_sources(organization: OrganizedSources) -> List[Source]:
        return _unique_by_id(
            [s for t in organization.themes for s in t.sources]
            + [s for g in organization.methodologies for s in g.sources]
            + [s for g in organization.timeline for s in g.sources]
        )

    @staticmethod
    def _next_theme_id(themes: Sequence[ThemeCluster], prefix: str) -> str:
        taken = {t.id for t in themes}
        n = 1
        while f"{prefix}-{n}" in taken:
            n += 1
        return f"{prefix}-{n}"

    # ------------------------------------------------------------------
    # Degraded results
    # ------------------------------------------------------------------

    def _minimal_organization(self, sources: List[Source]) -> OrganizedSources:
        now = datetime.now(timezone.utc)
        current_year = self.current_year
        years = [s.year or current_year for s in sources]
        return OrganizedSources(
            themes=[
                ThemeCluster(
                    id="minimal-theme",
                    name="Research Collection",
                    description="Your collected research sources",
                    sources=sources,
                    keywords=["research"],
                    relevance_score=80,
                    created_at=now,
                    updated_at=now,
                )
            ],
            methodologies=[
                MethodologyGroup(
                    id="minimal-methodology",
                    methodology_type=MethodologyType.OTHER,
                    name="Various Methodologies",
                    description="Mixed research approaches",
                    sources=sources,
                    characteristics=["Diverse approaches"],
                    strengths_weaknesses=StrengthsWeaknesses(
                        strengths=["Methodological diversity"],
                        weaknesses=["Need more sources for detailed analysis"],
                    ),
                )
            ] if sources else [],
            timeline=[
                TimelineGroup(
                    id="minimal-timeline",
                    period="Current Collection",
                    year_range=TimelineYearRange(start=min(years), end=max(years)),
                    sources=sources,
                    trends=["Limited data for trend analysis"],
                    evolution_notes="Add more sources to analyze temporal trends",
                    relevance_to_present=RelevanceToPresent.HIGH,
                )
            ] if sources else [],
            metadata=OrganizationMetadata(
                total_sources=len(sources),
                organization_date=now,
                clustering_method=ClusteringMethod.MANUAL,
                confidence=OrganizationConfidence.LOW,
                suggestions=[
                    OrganizationSuggestion(
                        type=SuggestionType.ADD_METHODOLOGY,
                        description="Add more sources to enable detailed organization",
                        action="Collect additional relevant sources for your research",
                        confidence=90,
                    )
                ],
            ),
        )

    def _fallback_themes(self, sources: List[Source]) -> List[ThemeCluster]:
        """Group sources by their most frequent keyword."""
        now = datetime.now(timezone.utc)
        groups: Dict[str, List[Source]] = {}
        for source in sources:
            keywords = source_keywords(source)
            groups.setdefault(keywords[0] if keywords else "general", []).append(source)

        return [
            ThemeCluster(
                id=f"fallback-theme-{index}",
                name=f"{keyword[:1].upper()}{keyword[1:]} Research",
                description=f"Sources focused on {keyword} and related topics",
                sources=members,
                keywords=[keyword],
                relevance_score=70,
                created_at=now,
                updated_at=now,
            )
            for index, (keyword, members) in enumerate(groups.items())
        ]

    def _fallback_organization(self, sources: List[Source]) -> OrganizedSources:
        now = datetime.now(timezone.utc)
        current_year = self.current_year
        years = [s.year or current_year for s in sources]
        return OrganizedSources(
            themes=self._fallback_themes(sources),
            methodologies=[
                MethodologyGroup(
                    id="fallback-methodology",
                    methodology_type=MethodologyType.OTHER,
                    name="Mixed Methodologies",
                    description="Various research approaches",
                    sources=sources,
                    characteristics=["Diverse methodological approaches"],
                    strengths_weaknesses=StrengthsWeaknesses(
                        strengths=["Methodological diversity"],
                        weaknesses=["Organization analysis failed - manual review recommended"],
                    ),
                )
            ],
            timeline=[
                TimelineGroup(
                    id="fallback-timeline",
                    period="Research Collection",
                    year_range=TimelineYearRange(start=min(years), end=max(years)),
                    sources=sources,
                    trends=["Analysis unavailable"],
                    evolution_notes="Timeline analysis failed - manual review needed",
                    relevance_to_present=RelevanceToPresent.MODERATE,
                )
            ],
            metadata=OrganizationMetadata(
                total_sources=len(sources),
                organization_date=now,
                clustering_method=ClusteringMethod.MANUAL,
                confidence=OrganizationConfidence.LOW,
                suggestions=[
                    OrganizationSuggestion(
                        type=SuggestionType.ADD_METHODOLOGY,
                        description="Organization failed - consider manual categorization",
                        action="Review and manually organize sources",
                        confidence=60,
                    )
                ],
            ),
        )
