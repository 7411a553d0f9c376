"""Database, schema and domain models for GapScan."""
from gapscan.models.database_models import GapReportRecord
from gapscan.models.domain import (
    AnalysisPhase,
    AnalyzeOptions,
    GapReport,
    GapSeverity,
    GapType,
    KnowledgeGap,
    SparseRegion,
    UndefinedConcept,
)
from gapscan.models.schemas import (
    AnalyzeRequest,
    AnalysisStatusResponse,
    GapReportResponse,
    GapReportSummaryResponse,
    ReportComparisonResponse,
    HealthCheckResponse,
)

__all__ = [
    # Database models
    "GapReportRecord",
    # Domain types
    "AnalysisPhase",
    "AnalyzeOptions",
    "GapReport",
    "GapSeverity",
    "GapType",
    "KnowledgeGap",
    "SparseRegion",
    "UndefinedConcept",
    # Pydantic schemas
    "AnalyzeRequest",
    "AnalysisStatusResponse",
    "GapReportResponse",
    "GapReportSummaryResponse",
    "ReportComparisonResponse",
    "HealthCheckResponse",
]
