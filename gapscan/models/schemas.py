"""
Pydantic schemas for request/response validation.
"""
from pydantic import BaseModel, Field
from typing import Optional, List, Dict
from datetime import datetime
from enum import Enum

from gapscan.config import settings
from gapscan.models.domain import AnalyzeOptions


# Enums (matching domain enums)
class GapTypeSchema(str, Enum):
    """Gap types for API responses."""

    SPARSE_REGION = "sparse_region"
    UNDEFINED_CONCEPT = "undefined_concept"
    WEAK_CONNECTION = "weak_connection"


class GapSeveritySchema(str, Enum):
    """Gap severities for API responses."""

    MINOR = "minor"
    MODERATE = "moderate"
    SIGNIFICANT = "significant"


# Analysis Request Schemas
class AnalyzeRequest(BaseModel):
    """Body of POST /api/gaps/analyze.  Omitted fields fall back to settings."""

    session_id: Optional[str] = Field(None, max_length=255)
    cluster_count: Optional[int] = Field(None, ge=1, le=200)
    min_mentions: Optional[int] = Field(None, ge=1)
    sparsity_threshold: Optional[float] = Field(None, ge=0.0, le=1.0)
    exclude_folders: Optional[List[str]] = None
    use_llm: bool = True
    max_gaps: Optional[int] = Field(None, ge=1, le=1000)
    max_regions: Optional[int] = Field(None, ge=1, le=200)
    max_concepts: Optional[int] = Field(None, ge=1, le=1000)
    enrich_concept_limit: Optional[int] = Field(None, ge=0, le=100)

    def to_options(self) -> AnalyzeOptions:
        cluster_count = self.cluster_count or (settings.CLUSTER_COUNT or None)
        return AnalyzeOptions(
            cluster_count=cluster_count,
            min_mentions=self.min_mentions or settings.MIN_MENTIONS,
            sparsity_threshold=(
                self.sparsity_threshold
                if self.sparsity_threshold is not None
                else settings.SPARSITY_THRESHOLD
            ),
            exclude_folders=(
                list(self.exclude_folders)
                if self.exclude_folders is not None
                else settings.get_exclude_folders()
            ),
            use_llm=self.use_llm,
            max_gaps=self.max_gaps or settings.MAX_GAPS,
            max_regions=self.max_regions or settings.MAX_REGIONS,
            max_concepts=self.max_concepts or settings.MAX_CONCEPTS,
            enrich_concept_limit=(
                self.enrich_concept_limit
                if self.enrich_concept_limit is not None
                else settings.ENRICH_CONCEPT_LIMIT
            ),
        )


# Analysis Status Schemas
class AnalysisStatusResponse(BaseModel):
    """Progress of the current (or last) analysis run for a session."""

    session_id: str
    phase: str
    progress: int = Field(..., ge=0, le=100)
    message: str
    running: bool
    errors: List[str] = []
    elapsed_seconds: float
    total_gaps: Optional[int] = None


class MessageResponse(BaseModel):
    """Simple acknowledgement."""

    message: str


# Report Schemas
class NoteDistanceResponse(BaseModel):
    note_path: str
    distance: float


class SparseRegionResponse(BaseModel):
    id: str
    centroid: List[float]
    density: float = Field(..., ge=0.0, le=1.0)
    nearest_notes: List[NoteDistanceResponse]
    boundary_notes: List[str]
    note_count: int
    inferred_topic: Optional[str] = None


class UndefinedConceptResponse(BaseModel):
    name: str
    mention_count: int
    mentioned_in: List[str]
    related_concepts: List[str] = []
    suggested_content: Optional[str] = None


class KnowledgeGapResponse(BaseModel):
    id: str
    type: GapTypeSchema
    title: str
    description: str
    severity: GapSeveritySchema
    suggested_topics: List[str] = []
    related_notes: List[str] = []
    detected_at: datetime


class AnalyzeOptionsResponse(BaseModel):
    cluster_count: Optional[int] = None
    min_mentions: int
    sparsity_threshold: float
    exclude_folders: List[str] = []
    use_llm: bool
    max_gaps: int
    max_regions: int
    max_concepts: int
    enrich_concept_limit: int


class GapReportResponse(BaseModel):
    """Full gap report as stored for a session."""

    analyzed_at: datetime
    total_notes_analyzed: int
    total_embeddings: int
    sparse_regions: List[SparseRegionResponse]
    undefined_concepts: List[UndefinedConceptResponse]
    gaps: List[KnowledgeGapResponse]
    options: AnalyzeOptionsResponse


class GapReportSummaryResponse(BaseModel):
    """Counts by type and severity plus the highest-priority gaps."""

    total_gaps: int
    by_type: Dict[str, int]
    by_severity: Dict[str, int]
    top_priority_gaps: List[KnowledgeGapResponse]
    analyzed_at: datetime


class SeverityChangeResponse(BaseModel):
    gap: KnowledgeGapResponse
    old_severity: GapSeveritySchema
    new_severity: GapSeveritySchema


class ReportComparisonResponse(BaseModel):
    """Difference between the two most recent reports of a session."""

    new_gaps: List[KnowledgeGapResponse]
    resolved_gaps: List[KnowledgeGapResponse]
    changed_severity: List[SeverityChangeResponse]


class ExplorationSuggestionResponse(BaseModel):
    topic: str
    questions: List[str]
    subtopics: List[str]
    rationale: str


# Health Schemas
class HealthCheckResponse(BaseModel):
    """Schema for health check endpoint."""

    status: str
    database: str
    embedding_store: str
    suggestions: str
    timestamp: datetime
    version: str = "0.1.0"
