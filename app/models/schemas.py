"""
Pydantic schemas for sources, syntheses, gap analyses, organizations and
question progress, plus request/response bodies for the API.
"""
from pydantic import BaseModel, Field, ConfigDict
from typing import Optional, List, Dict
from datetime import datetime
from enum import Enum


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class CredibilityLevel(str, Enum):
    """Coarse credibility rating attached to a source."""

    HIGH = "High"
    MODERATE = "Moderate"
    LOW = "Low"


class CoverageLevel(str, Enum):
    """How well a demographic is represented in the collection."""

    EXTENSIVE = "Extensive"
    MODERATE = "Moderate"
    LIMITED = "Limited"
    MISSING = "Missing"


class GapType(str, Enum):
    """Kinds of research gaps the analyzer can report."""

    POPULATION = "population"
    METHODOLOGY = "methodology"
    TEMPORAL = "temporal"
    CONTEXT = "context"
    VARIABLE_INTERACTION = "variable_interaction"


class ScopeSize(str, Enum):
    SMALL = "Small"
    MEDIUM = "Medium"
    LARGE = "Large"


class DifficultyLevel(str, Enum):
    BEGINNER = "Beginner"
    INTERMEDIATE = "Intermediate"
    ADVANCED = "Advanced"


class ConfidenceLevel(str, Enum):
    HIGH = "High"
    MODERATE = "Moderate"
    LOW = "Low"


class AnalysisMethod(str, Enum):
    """Which branch of the gap pipeline produced the gaps."""

    AI = "ai"
    RULE_BASED = "rule_based"
    FALLBACK = "fallback"
    INSUFFICIENT_SOURCES = "insufficient_sources"


class MethodologyType(str, Enum):
    """Canonical methodology types used to group sources."""

    EXPERIMENTAL = "experimental"
    SURVEY = "survey"
    META_ANALYSIS = "meta-analysis"
    CASE_STUDY = "case-study"
    LONGITUDINAL = "longitudinal"
    CROSS_SECTIONAL = "cross-sectional"
    QUALITATIVE = "qualitative"
    MIXED_METHODS = "mixed-methods"
    SYSTEMATIC_REVIEW = "systematic-review"
    OTHER = "other"


class RelevanceToPresent(str, Enum):
    HIGH = "high"
    MODERATE = "moderate"
    LOW = "low"


class ClusteringMethod(str, Enum):
    AI_SIMILARITY = "ai-similarity"
    SIMILARITY_THRESHOLD = "similarity-threshold"
    MANUAL = "manual"
    HYBRID = "hybrid"


class OrganizationConfidence(str, Enum):
    HIGH = "high"
    MODERATE = "moderate"
    LOW = "low"


class SuggestionType(str, Enum):
    MERGE_THEMES = "merge-themes"
    SPLIT_THEME = "split-theme"
    ADD_METHODOLOGY = "add-methodology"
    UPDATE_TIMELINE = "update-timeline"


class QuestionStage(str, Enum):
    """Maturity of a research question."""

    INITIAL = "initial"
    EMERGING = "emerging"
    FOCUSED = "focused"
    RESEARCH_READY = "research-ready"


# ---------------------------------------------------------------------------
# Source records (immutable once ingested)
# ---------------------------------------------------------------------------

class Credibility(BaseModel):
    """Credibility assessment of a single source."""

    level: CredibilityLevel
    score: float = Field(..., ge=0, le=100)
    study_type: Optional[str] = None
    strengths: List[str] = []
    limitations: List[str] = []
    explanation: str = ""
    sample_size: Optional[int] = None
    impact_factor: Optional[float] = None

    model_config = ConfigDict(frozen=True)


class Source(BaseModel):
    """One bibliographic record."""

    id: str = Field(..., min_length=1)
    title: str
    authors: List[str] = Field(..., min_length=1)
    journal: str
    year: int
    doi: Optional[str] = None
    abstract: Optional[str] = None
    key_findings: List[str] = []
    relevance_explanation: str = ""
    credibility: Credibility

    model_config = ConfigDict(frozen=True)


# ---------------------------------------------------------------------------
# Source synthesis (recomputed on every analysis, never persisted)
# ---------------------------------------------------------------------------

class PopulationCoverage(BaseModel):
    demographic: str
    source_count: int
    age_ranges: List[str] = []
    characteristics: List[str] = []
    coverage: CoverageLevel


class MethodologyPattern(BaseModel):
    approach: str
    frequency: int
    advantages: List[str] = []
    limitations: List[str] = []
    source_ids: List[str] = []


class YearRange(BaseModel):
    min: int
    max: int


class TemporalPattern(BaseModel):
    year_range: YearRange
    distribution: Dict[str, int] = {}
    gaps: List[str] = []
    outdated_areas: List[str] = []


class ContextPattern(BaseModel):
    setting: str
    frequency: int
    description: str
    source_ids: List[str] = []


class VariablePattern(BaseModel):
    variable: str
    interactions: List[str] = []
    unexplored_combinations: List[str] = []
    source_ids: List[str] = []


class SourceSynthesis(BaseModel):
    """Patterns extracted from a source collection."""

    themes: List[str]
    populations: List[PopulationCoverage]
    methodologies: List[MethodologyPattern]
    temporal_coverage: TemporalPattern
    contexts: List[ContextPattern]
    variables: List[VariablePattern]


# ---------------------------------------------------------------------------
# Gap analysis
# ---------------------------------------------------------------------------

class GapOpportunity(BaseModel):
    """A scored, ranked research gap."""

    id: str
    gap_type: GapType
    title: str
    description: str
    why_matters: str
    current_limitation: str
    proposed_approach: str
    novelty_score: int = Field(..., ge=0, le=100)
    feasibility_score: int = Field(..., ge=0, le=100)
    contribution_score: int = Field(..., ge=0, le=100)
    overall_score: int = Field(0, ge=0, le=100)
    estimated_scope: ScopeSize = ScopeSize.MEDIUM
    time_requirement: str = "3-6 months"
    resources_needed: List[str] = []
    ethics_considerations: str = "Standard ethical review required"
    related_sources: List[str] = []

    model_config = ConfigDict(frozen=True)


class ResearchOpportunity(BaseModel):
    suggested_question: str
    rationale: str
    approach: str
    expected_outcome: str
    feasibility_assessment: str
    related_gaps: List[str] = []


class MethodologicalGap(BaseModel):
    missing_method: str
    current_approaches: List[str] = []
    why_needed: str
    implementation_suggestion: str
    difficulty_level: DifficultyLevel


class GapAnalysisResult(BaseModel):
    """Everything returned by a gap analysis run."""

    overall_assessment: str
    identified_gaps: List[GapOpportunity] = []
    research_opportunities: List[ResearchOpportunity] = []
    methodological_gaps: List[MethodologicalGap] = []
    recommendations: List[str] = []
    confidence_level: ConfidenceLevel
    sources_covered: int
    analysis_method: AnalysisMethod
    analysis_date: datetime
    generated_at: datetime


# ---------------------------------------------------------------------------
# Source organization
# ---------------------------------------------------------------------------

class ThemeCluster(BaseModel):
    id: str
    name: str
    description: str
    sources: List[Source] = []
    keywords: List[str] = []
    relevance_score: int = Field(..., ge=0, le=100)
    is_user_defined: bool = False
    created_at: datetime
    updated_at: datetime


class StrengthsWeaknesses(BaseModel):
    strengths: List[str] = []
    weaknesses: List[str] = []


class MethodologyGroup(BaseModel):
    id: str
    methodology_type: MethodologyType
    name: str
    description: str
    sources: List[Source] = []
    characteristics: List[str] = []
    strengths_weaknesses: StrengthsWeaknesses


class TimelineYearRange(BaseModel):
    start: int
    end: int


class TimelineGroup(BaseModel):
    id: str
    period: str
    year_range: TimelineYearRange
    sources: List[Source] = []
    trends: List[str] = []
    evolution_notes: str
    relevance_to_present: RelevanceToPresent


class OrganizationSuggestion(BaseModel):
    type: SuggestionType
    description: str
    action: str
    confidence: int = Field(..., ge=0, le=100)


class OrganizationMetadata(BaseModel):
    total_sources: int
    organization_date: datetime
    clustering_method: ClusteringMethod
    confidence: OrganizationConfidence
    suggestions: List[OrganizationSuggestion] = []
    embedding_fallbacks: int = 0


class OrganizedSources(BaseModel):
    """Themes, methodology groups and timeline for a source collection."""

    themes: List[ThemeCluster] = []
    methodologies: List[MethodologyGroup] = []
    timeline: List[TimelineGroup] = []
    metadata: OrganizationMetadata


class ManualOverrides(BaseModel):
    """Caller-supplied sections that replace the computed ones."""

    themes: Optional[List[ThemeCluster]] = None
    methodologies: Optional[List[MethodologyGroup]] = None
    timeline: Optional[List[TimelineGroup]] = None


class MoveSourceChange(BaseModel):
    source_id: str
    from_theme: str
    to_theme: str


class CreateThemeChange(BaseModel):
    name: str = Field(..., min_length=1)
    description: str = ""
    source_ids: List[str] = []


class MergeThemesChange(BaseModel):
    theme_ids: List[str] = Field(..., min_length=2)
    new_name: str = Field(..., min_length=1)


class DeleteThemeChange(BaseModel):
    theme_id: str


class ReorganizeChanges(BaseModel):
    """Explicit deltas applied on top of an existing organization."""

    move_source: Optional[MoveSourceChange] = None
    create_theme: Optional[CreateThemeChange] = None
    merge_themes: Optional[MergeThemesChange] = None
    delete_theme: Optional[DeleteThemeChange] = None


class SearchFilters(BaseModel):
    themes: List[str] = []
    methodologies: List[str] = []
    min_year: Optional[int] = None
    max_year: Optional[int] = None


# ---------------------------------------------------------------------------
# Question progress
# ---------------------------------------------------------------------------

class QuestionFactors(BaseModel):
    has_specific_population: bool = False
    has_research_method: bool = False
    has_measurable_outcome: bool = False
    is_specific: bool = False
    has_refinements: bool = False


class QuestionAnalysis(BaseModel):
    stage: QuestionStage
    progress: int = Field(..., ge=0, le=100)
    factors: QuestionFactors
    recommendations: List[str] = []

    model_config = ConfigDict(frozen=True)


class ProjectInfo(BaseModel):
    """The subset of a project record the progress evaluator reads."""

    id: Optional[str] = None
    title: Optional[str] = None
    research_question: Optional[str] = None


class ProjectProgress(BaseModel):
    question_progress: int
    research_depth: int
    overall_progress: int
    stage: QuestionStage

    model_config = ConfigDict(frozen=True)


# ---------------------------------------------------------------------------
# API request / response bodies
# ---------------------------------------------------------------------------

class GapAnalysisRequest(BaseModel):
    """Request body for POST /api/projects/{id}/gap-analysis."""

    sources: List[Source] = []
    research_question: str = Field(..., min_length=1)


class OrganizeRequest(BaseModel):
    """Request body for POST /api/projects/{id}/organization."""

    sources: List[Source] = []
    research_question: str = ""
    manual_overrides: Optional[ManualOverrides] = None


class ReorganizeRequest(BaseModel):
    """Request body for POST /api/projects/{id}/organization/reorganize."""

    organization: OrganizedSources
    changes: ReorganizeChanges


class SearchRequest(BaseModel):
    """Request body for POST /api/projects/organization/search."""

    organization: OrganizedSources
    query: str = ""
    filters: SearchFilters = SearchFilters()


class QuestionProgressRequest(BaseModel):
    """Request body for POST /api/progress/question."""

    question: str
    conversation_count: int = Field(0, ge=0)
    document_count: int = Field(0, ge=0)
    history: List[str] = []


class ProjectProgressRequest(BaseModel):
    """Request body for POST /api/progress/projects/{id}."""

    title: Optional[str] = None
    research_question: Optional[str] = None
    conversation_count: int = Field(0, ge=0)
    document_count: int = Field(0, ge=0)
    history: List[str] = []


class CacheStatsResponse(BaseModel):
    question_cache_size: int
    project_cache_size: int
    total_cache_entries: int
    hits: int
    misses: int
    ttl_minutes: float


class HealthCheckResponse(BaseModel):
    """Schema for health check endpoint."""

    status: str
    database: str
    ollama: str
    timestamp: datetime
    version: str = "0.1.0"
