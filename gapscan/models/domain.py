"""
Domain types shared by the clustering, link-graph and gap-analysis services.

These are plain dataclasses (not ORM rows and not API schemas) so the core
services stay free of any database or HTTP dependency.
"""
from __future__ import annotations

import dataclasses
import enum
from datetime import datetime, timezone
from typing import Dict, List, Optional, Set


Vector = List[float]


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class GapType(str, enum.Enum):
    """Kinds of knowledge gaps a report can contain."""

    SPARSE_REGION = "sparse_region"
    UNDEFINED_CONCEPT = "undefined_concept"
    WEAK_CONNECTION = "weak_connection"


class GapSeverity(str, enum.Enum):
    """Severity levels, ordered by ``rank``."""

    MINOR = "minor"
    MODERATE = "moderate"
    SIGNIFICANT = "significant"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK: Dict[GapSeverity, int] = {
    GapSeverity.SIGNIFICANT: 3,
    GapSeverity.MODERATE: 2,
    GapSeverity.MINOR: 1,
}


class AnalysisPhase(str, enum.Enum):
    LOADING = "loading"
    CLUSTERING = "clustering"
    ANALYZING_LINKS = "analyzing_links"
    GENERATING_SUGGESTIONS = "generating_suggestions"
    COMPLETE = "complete"


# ---------------------------------------------------------------------------
# Clustering
# ---------------------------------------------------------------------------

@dataclasses.dataclass
class Cluster:
    id: str
    centroid: Vector
    members: List[str]
    variance: float  # mean squared distance of members to the centroid


@dataclasses.dataclass
class ClusterResult:
    clusters: List[Cluster]
    assignments: Dict[str, str]      # member id → cluster id
    iterations: Optional[int] = None  # K-means only


# ---------------------------------------------------------------------------
# Embeddings / sparse regions
# ---------------------------------------------------------------------------

@dataclasses.dataclass
class EmbeddingRecord:
    """One precomputed document embedding as returned by an embedding store."""

    note_id: str
    path: str
    vector: Vector
    content_hash: str = ""
    title: Optional[str] = None
    model: Optional[str] = None


@dataclasses.dataclass
class NoteDistance:
    note_path: str
    distance: float


@dataclasses.dataclass
class SparseRegion:
    id: str
    centroid: Vector
    density: float                    # 0-1, lower = sparser
    nearest_notes: List[NoteDistance]  # ascending distance
    boundary_notes: List[str]
    note_count: int
    inferred_topic: Optional[str] = None


# ---------------------------------------------------------------------------
# Link graph
# ---------------------------------------------------------------------------

@dataclasses.dataclass
class NoteLinks:
    path: str
    outgoing_links: List[str]
    tags: List[str]


@dataclasses.dataclass
class UndefinedReference:
    link_text: str
    sources: List[str]
    count: int


@dataclasses.dataclass
class LinkGraph:
    notes: Dict[str, NoteLinks]
    incoming_links: Dict[str, Set[str]]
    undefined_links: Dict[str, UndefinedReference]


@dataclasses.dataclass
class UndefinedConcept:
    name: str
    mention_count: int
    mentioned_in: List[str]
    related_concepts: List[str] = dataclasses.field(default_factory=list)
    suggested_content: Optional[str] = None


# ---------------------------------------------------------------------------
# Gaps and reports
# ---------------------------------------------------------------------------

@dataclasses.dataclass
class KnowledgeGap:
    id: str
    type: GapType
    title: str
    description: str
    severity: GapSeverity
    suggested_topics: List[str] = dataclasses.field(default_factory=list)
    related_notes: List[str] = dataclasses.field(default_factory=list)
    detected_at: datetime = dataclasses.field(
        default_factory=lambda: datetime.now(timezone.utc)
    )


@dataclasses.dataclass
class AnalyzeOptions:
    cluster_count: Optional[int] = None
    min_mentions: int = 2
    sparsity_threshold: float = 0.3
    exclude_folders: List[str] = dataclasses.field(default_factory=list)
    use_llm: bool = True
    max_gaps: int = 50
    max_regions: int = 10
    max_concepts: int = 50
    enrich_concept_limit: int = 10


@dataclasses.dataclass
class GapAnalysisProgress:
    phase: AnalysisPhase
    progress: int  # 0-100
    message: str


@dataclasses.dataclass
class GapReport:
    analyzed_at: datetime
    total_notes_analyzed: int
    total_embeddings: int
    sparse_regions: List[SparseRegion]
    undefined_concepts: List[UndefinedConcept]
    gaps: List[KnowledgeGap]
    options: AnalyzeOptions

    @classmethod
    def empty(cls, options: AnalyzeOptions) -> "GapReport":
        return cls(
            analyzed_at=datetime.now(timezone.utc),
            total_notes_analyzed=0,
            total_embeddings=0,
            sparse_regions=[],
            undefined_concepts=[],
            gaps=[],
            options=options,
        )


# ---------------------------------------------------------------------------
# Suggestions
# ---------------------------------------------------------------------------

@dataclasses.dataclass
class TopicInference:
    topic: str
    confidence: float
    reasoning: str = ""


@dataclasses.dataclass
class ExplorationSuggestion:
    topic: str
    questions: List[str]
    subtopics: List[str]
    rationale: str
