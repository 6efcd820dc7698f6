"""
Pattern extractors over a source collection.

Pure, deterministic functions: every extractor scans the case-folded
``title + abstract + key findings`` of each source against a fixed table of
compiled patterns.  Output order follows the pattern tables.  A category with
no matches yields one synthetic catch-all bucket instead of an empty list.
"""
import logging
import re
from typing import List, Optional, Pattern, Sequence, Tuple

from app.models.schemas import (
    ContextPattern,
    CoverageLevel,
    MethodologyPattern,
    PopulationCoverage,
    Source,
    SourceSynthesis,
    TemporalPattern,
    VariablePattern,
    YearRange,
)
from app.utils.helpers import resolve_year

logger = logging.getLogger(__name__)


def _words(*alternatives: str) -> Pattern:
    """Compile alternatives into one case-insensitive, word-bounded pattern."""
    return re.compile(r"\b(?:" + "|".join(alternatives) + r")\b", re.IGNORECASE)


# ---------------------------------------------------------------------------
# Pattern tables
# ---------------------------------------------------------------------------

THEME_PATTERNS: List[Tuple[Pattern, str]] = [
    (_words(r"online learning", r"e-learning", r"digital education"), "Online Learning"),
    (_words(r"motivation", r"engagement", r"intrinsic", r"extrinsic"), "Student Motivation"),
    (_words(r"anxiety", r"stress", r"mental health", r"well-?being"), "Mental Health"),
    (_words(r"social media", r"facebook", r"instagram", r"twitter", r"tiktok"), "Social Media"),
    (_words(r"sleep", r"circadian", r"insomnia"), "Sleep and Health"),
    (_words(r"cognitive", r"memory", r"attention", r"processing"), "Cognitive Function"),
    (_words(r"interventions?", r"treatments?", r"therapy", r"programs?"), "Interventions"),
    (_words(r"gender", r"sex differences", r"male", r"female"), "Gender Differences"),
    (_words(r"academic performance", r"grades", r"achievement"), "Academic Performance"),
    (_words(r"technology", r"digital", r"mobile", r"apps?"), "Technology Use"),
    (_words(r"adolescents?", r"teenagers?", r"young adults?", r"college"), "Young Adults"),
    (_words(r"longitudinal", r"follow-up", r"over time"), "Longitudinal Research"),
    (_words(r"cross-cultural", r"cultural", r"ethnic", r"diversity"), "Cultural Factors"),
    (_words(r"pandemic", r"covid(?:-19)?", r"coronavirus"), "Pandemic Impact"),
    (_words(r"exercise", r"physical activity", r"fitness"), "Physical Activity"),
]

POPULATION_PATTERNS: List[Tuple[Pattern, str]] = [
    (_words(r"adolescents?", r"teenagers?", r"teens?", r"13-18", r"14-17", r"15-19"),
     "Adolescents (13-18)"),
    (_words(r"college", r"university", r"undergraduates?", r"18-22", r"19-23", r"students?"),
     "College Students (18-22)"),
    (_words(r"young adults?", r"18-25", r"19-26", r"20-29"), "Young Adults (18-25)"),
    (re.compile(r"\badults?\b|\bmiddle-aged\b|\b(?:25|26|30)\+", re.IGNORECASE), "Adults (25+)"),
    (re.compile(r"\belderly\b|\bseniors?\b|\bolder adults?\b|\b(?:60|65)\+", re.IGNORECASE),
     "Older Adults (60+)"),
    (_words(r"children", r"child", r"pediatric", r"under 18", r"minors"), "Children (Under 18)"),
]

CHARACTERISTIC_PATTERNS: List[Tuple[Pattern, str]] = [
    (_words(r"gender", r"sex", r"male", r"female"), "Gender-specific"),
    (_words(r"ethnicity", r"race", r"cultural", r"diverse"), "Diverse backgrounds"),
    (_words(r"clinical", r"patients?", r"disorders?"), "Clinical populations"),
    (_words(r"healthy", r"normal", r"typical"), "Healthy populations"),
]

# (pattern, approach, advantages, limitations)
METHODOLOGY_PATTERNS: List[Tuple[Pattern, str, List[str], List[str]]] = [
    (
        _words(r"randomi[sz]ed", r"controlled trials?", r"rcts?"),
        "Randomized Controlled Trial",
        ["High internal validity", "Causal inference"],
        ["Artificial settings", "Limited external validity"],
    ),
    (
        _words(r"surveys?", r"questionnaires?", r"self-reports?(?:ed)?"),
        "Survey/Questionnaire",
        ["Large sample sizes", "Cost-effective"],
        ["Self-report bias", "Limited depth"],
    ),
    (
        _words(r"interviews?", r"qualitative", r"focus groups?"),
        "Qualitative Methods",
        ["Rich data", "Contextual understanding"],
        ["Small samples", "Subjective interpretation"],
    ),
    (
        _words(r"longitudinal", r"follow-up", r"over time"),
        "Longitudinal Study",
        ["Tracks changes", "Developmental insights"],
        ["Attrition", "Time-intensive"],
    ),
    (
        _words(r"cross-sectional", r"single time point"),
        "Cross-sectional Study",
        ["Quick data collection", "Snapshot view"],
        ["No causality", "Temporal limitations"],
    ),
    (
        _words(r"experimental", r"experiments?", r"manipulation"),
        "Experimental Design",
        ["Controlled conditions", "Causal relationships"],
        ["Artificial environment", "Ethical constraints"],
    ),
    (
        _words(r"mixed[- ]methods?"),
        "Mixed Methods",
        ["Breadth and depth combined", "Triangulation of findings"],
        ["Complex design", "Resource-intensive"],
    ),
    (
        _words(r"cross-cultural", r"cross-national", r"multi-country"),
        "Cross-Cultural Comparison",
        ["Generalizability across cultures", "Reveals cultural moderators"],
        ["Measurement equivalence issues", "Recruitment complexity"],
    ),
]

CONTEXT_PATTERNS: List[Tuple[Pattern, str]] = [
    (_words(r"schools?", r"classrooms?", r"academic", r"educational"), "Educational Settings"),
    (_words(r"hospitals?", r"clinics?", r"medical", r"healthcare"), "Healthcare Settings"),
    (_words(r"online", r"virtual", r"remote", r"digital"), "Online/Virtual Environments"),
    (_words(r"workplaces?", r"work", r"occupational", r"jobs?"), "Workplace Settings"),
    (_words(r"community", r"home", r"natural", r"everyday"), "Community/Home Settings"),
    (_words(r"laboratory", r"lab", r"controlled", r"experimental"), "Laboratory Settings"),
]

VARIABLES: List[str] = [
    "sleep", "stress", "anxiety", "motivation", "performance", "engagement",
    "technology use", "social media", "exercise", "diet", "mood", "attention",
]

_VARIABLE_PATTERNS: List[Tuple[Pattern, str]] = [
    (_words(re.escape(v)), v) for v in VARIABLES
]

GENERAL_THEME = "General Research"
GENERAL_POPULATION = "General Population"
GENERAL_METHODOLOGY = "General/Other"
GENERAL_CONTEXT = "General/Other Settings"
GENERAL_VARIABLE = "general"

# Year thresholds used to describe gaps in temporal coverage
HISTORICAL_CUTOFF_YEAR = 2015
RECENT_CUTOFF_YEAR = 2020
OUTDATED_AFTER_YEARS = 5


# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------

def source_text(source: Source, include_study_type: bool = False) -> str:
    """Case-folded ``title + abstract + key findings`` of one source."""
    parts = [source.title, source.abstract or "", " ".join(source.key_findings)]
    if include_study_type:
        parts.append(source.credibility.study_type or "")
    return " ".join(parts).lower()


def coverage_for(source_count: int) -> CoverageLevel:
    """Coverage label as a pure function of how many sources mention a group."""
    if source_count >= 3:
        return CoverageLevel.EXTENSIVE
    if source_count == 2:
        return CoverageLevel.MODERATE
    return CoverageLevel.LIMITED


def _matching_ids(pattern: Pattern, sources: Sequence[Source], texts: Sequence[str]) -> List[str]:
    return [s.id for s, text in zip(sources, texts) if pattern.search(text)]


# ---------------------------------------------------------------------------
# Extractors
# ---------------------------------------------------------------------------

def extract_themes(sources: Sequence[Source]) -> List[str]:
    """Theme labels whose pattern occurs anywhere in the collection."""
    corpus = " ".join(source_text(s) for s in sources)
    themes = [theme for pattern, theme in THEME_PATTERNS if pattern.search(corpus)]
    return themes or [GENERAL_THEME]


def analyze_population_coverage(sources: Sequence[Source]) -> List[PopulationCoverage]:
    """One entry per age bracket mentioned by at least one source."""
    texts = [source_text(s) for s in sources]
    populations: List[PopulationCoverage] = []

    for pattern, demographic in POPULATION_PATTERNS:
        matching = [s for s, text in zip(sources, texts) if pattern.search(text)]
        if not matching:
            continue
        age_range = re.search(r"\((.*?)\)", demographic)
        populations.append(
            PopulationCoverage(
                demographic=demographic,
                source_count=len(matching),
                age_ranges=[age_range.group(1) if age_range else "Various"],
                characteristics=_characteristics(matching),
                coverage=coverage_for(len(matching)),
            )
        )

    if populations:
        return populations

    return [
        PopulationCoverage(
            demographic=GENERAL_POPULATION,
            source_count=len(sources),
            age_ranges=["Not specified"],
            characteristics=["Mixed demographics"],
            coverage=coverage_for(len(sources)),
        )
    ]


def _characteristics(sources: Sequence[Source]) -> List[str]:
    """Sample characteristics mentioned in the abstracts of *sources*."""
    found: List[str] = []
    for source in sources:
        if not source.abstract:
            continue
        for pattern, label in CHARACTERISTIC_PATTERNS:
            if label not in found and pattern.search(source.abstract):
                found.append(label)
    return found


def analyze_methodologies(sources: Sequence[Source]) -> List[MethodologyPattern]:
    """Methodology signatures found in the collection, including declared study types."""
    texts = [source_text(s, include_study_type=True) for s in sources]
    methodologies: List[MethodologyPattern] = []

    for pattern, approach, advantages, limitations in METHODOLOGY_PATTERNS:
        frequency = sum(len(pattern.findall(text)) for text in texts)
        if frequency == 0:
            continue
        methodologies.append(
            MethodologyPattern(
                approach=approach,
                frequency=frequency,
                advantages=list(advantages),
                limitations=list(limitations),
                source_ids=_matching_ids(pattern, sources, texts),
            )
        )

    if methodologies:
        return methodologies

    return [
        MethodologyPattern(
            approach=GENERAL_METHODOLOGY,
            frequency=0,
            advantages=[],
            limitations=["Methodology not reported"],
            source_ids=[s.id for s in sources],
        )
    ]


def analyze_temporal_coverage(
    sources: Sequence[Source],
    current_year: Optional[int] = None,
) -> TemporalPattern:
    """Year range, per-year distribution, coverage gaps and outdated areas."""
    current_year = current_year or resolve_year()
    years = sorted(s.year for s in sources if s.year)

    if not years:
        return TemporalPattern(
            year_range=YearRange(min=current_year, max=current_year),
            distribution={},
            gaps=[],
            outdated_areas=[],
        )

    distribution = {}
    for year in years:
        distribution[str(year)] = distribution.get(str(year), 0) + 1

    gaps: List[str] = []
    outdated: List[str] = []
    if all(year > HISTORICAL_CUTOFF_YEAR for year in years):
        gaps.append("No research from before 2015 - missing historical context")
    if all(year < RECENT_CUTOFF_YEAR for year in years):
        gaps.append("No recent research (post-2020) - may not reflect current trends")
    if all(current_year - year > OUTDATED_AFTER_YEARS for year in years):
        outdated.append("All research is over 5 years old - findings may be outdated")

    return TemporalPattern(
        year_range=YearRange(min=years[0], max=years[-1]),
        distribution=distribution,
        gaps=gaps,
        outdated_areas=outdated,
    )


def analyze_contexts(sources: Sequence[Source]) -> List[ContextPattern]:
    """Research settings mentioned in the collection."""
    texts = [source_text(s) for s in sources]
    contexts: List[ContextPattern] = []

    for pattern, setting in CONTEXT_PATTERNS:
        frequency = sum(len(pattern.findall(text)) for text in texts)
        if frequency == 0:
            continue
        contexts.append(
            ContextPattern(
                setting=setting,
                frequency=frequency,
                description=f"Research conducted in {setting.lower()}",
                source_ids=_matching_ids(pattern, sources, texts),
            )
        )

    if contexts:
        return contexts

    return [
        ContextPattern(
            setting=GENERAL_CONTEXT,
            frequency=0,
            description="Research setting not specified",
            source_ids=[s.id for s in sources],
        )
    ]


def analyze_variables(sources: Sequence[Source]) -> List[VariablePattern]:
    """
    Canonical variables present in the collection.

    Two variables interact when both occur inside one source.  A pair that
    occurs in the collection but never in the same source is an unexplored
    combination; at most three are reported per variable.
    """
    texts = [source_text(s) for s in sources]
    present = {}
    for pattern, variable in _VARIABLE_PATTERNS:
        ids = _matching_ids(pattern, sources, texts)
        if ids:
            present[variable] = set(ids)

    variables: List[VariablePattern] = []
    for pattern, variable in _VARIABLE_PATTERNS:
        if variable not in present:
            continue
        own = present[variable]
        interactions: List[str] = []
        unexplored: List[str] = []
        for other in VARIABLES:
            if other == variable or other not in present:
                continue
            if own & present[other]:
                interactions.append(other)
            else:
                unexplored.append(other)

        variables.append(
            VariablePattern(
                variable=variable,
                interactions=interactions,
                unexplored_combinations=unexplored[:3],
                source_ids=[s.id for s in sources if s.id in own],
            )
        )

    if variables:
        return variables

    return [
        VariablePattern(
            variable=GENERAL_VARIABLE,
            interactions=[],
            unexplored_combinations=[],
            source_ids=[s.id for s in sources],
        )
    ]


def synthesize_sources(
    sources: Sequence[Source],
    current_year: Optional[int] = None,
) -> SourceSynthesis:
    """Run every extractor and bundle the results."""
    synthesis = SourceSynthesis(
        themes=extract_themes(sources),
        populations=analyze_population_coverage(sources),
        methodologies=analyze_methodologies(sources),
        temporal_coverage=analyze_temporal_coverage(sources, current_year),
        contexts=analyze_contexts(sources),
        variables=analyze_variables(sources),
    )
    logger.debug(
        "Synthesized %d sources: %d themes, %d populations, %d methodologies",
        len(sources),
        len(synthesis.themes),
        len(synthesis.populations),
        len(synthesis.methodologies),
    )
    return synthesis
