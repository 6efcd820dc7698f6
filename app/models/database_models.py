"""
SQLAlchemy ORM models for the LitGap store.
Finished analyses are kept as JSON blobs keyed by project id.
"""
from sqlalchemy import (
    Column,
    Integer,
    String,
    DateTime,
    JSON,
)
from sqlalchemy.sql import func

from app.database import Base


class GapAnalysisRecord(Base):
    """Latest gap analysis for a project."""

    __tablename__ = "gap_analyses"

    id = Column(Integer, primary_key=True, index=True)
    project_id = Column(String(255), nullable=False, unique=True, index=True)
    analysis_data = Column(JSON, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )


class SourceOrganizationRecord(Base):
    """Latest source organization (themes / methodologies / timeline) for a project."""

    __tablename__ = "source_organizations"

    id = Column(Integer, primary_key=True, index=True)
    project_id = Column(String(255), nullable=False, unique=True, index=True)
    organization_data = Column(JSON, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )
