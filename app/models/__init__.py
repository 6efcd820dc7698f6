"""Database and schema models for LitGap."""
from app.models.database_models import (
    GapAnalysisRecord,
    SourceOrganizationRecord,
)
from app.models.schemas import (
    Credibility,
    Source,
    SourceSynthesis,
    GapOpportunity,
    GapAnalysisResult,
    OrganizedSources,
    QuestionAnalysis,
    ProjectProgress,
    HealthCheckResponse,
)

__all__ = [
    # Database models
    "GapAnalysisRecord",
    "SourceOrganizationRecord",
    # Pydantic schemas
    "Credibility",
    "Source",
    "SourceSynthesis",
    "GapOpportunity",
    "GapAnalysisResult",
    "OrganizedSources",
    "QuestionAnalysis",
    "ProjectProgress",
    "HealthCheckResponse",
]
