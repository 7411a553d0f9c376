"""
Gap analysis orchestrator.

Runs the five-phase pipeline and merges both gap signals into one report::

    loading (0-20)               embedding store availability + count
    clustering (25-50)           SparseRegionDetector
    analyzing_links (55-70)      UndefinedConceptFinder
    generating_suggestions (75-90)  optional LLM enrichment, then gap assembly
    complete (100)

Each step reports a :class:`GapAnalysisProgress` to the registered observer.
Cancellation is cooperative: ``cancel()`` sets a flag that is checked after
loading, clustering, link analysis and enrichment; when set, ``analyze``
returns an empty report instead of continuing.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, List, Optional, Set

from gapscan.models.domain import (
    AnalysisPhase,
    AnalyzeOptions,
    ExplorationSuggestion,
    GapAnalysisProgress,
    GapReport,
    GapSeverity,
    GapType,
    KnowledgeGap,
    SparseRegion,
    UndefinedConcept,
)
from gapscan.services.clustering import ClusteringEngine
from gapscan.services.embedding_store import EmbeddingStore
from gapscan.services.link_graph import LinkGraphBuilder
from gapscan.services.sparse_regions import SparseRegionDetector
from gapscan.services.suggestions import (
    SuggestionService,
    build_exploration_context,
    fallback_exploration_suggestions,
)
from gapscan.services.undefined_concepts import UndefinedConceptFinder
from gapscan.utils.helpers import normalize_folders, note_title, slugify

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[GapAnalysisProgress], None]


class EmbeddingStoreUnavailable(RuntimeError):
    """The embedding store has no data to analyse."""


class AnalysisAlreadyRunning(RuntimeError):
    """A second analysis was started while one is in progress."""


# ---------------------------------------------------------------------------
# Severity / ordering
# ---------------------------------------------------------------------------

def sparse_region_severity(region: SparseRegion) -> GapSeverity:
    if region.density < 0.1:
        return GapSeverity.SIGNIFICANT
    if region.density < 0.2:
        return GapSeverity.MODERATE
    return GapSeverity.MINOR


def concept_severity(concept: UndefinedConcept) -> GapSeverity:
    if concept.mention_count >= 10:
        return GapSeverity.SIGNIFICANT
    if concept.mention_count >= 5:
        return GapSeverity.MODERATE
    return GapSeverity.MINOR


def sort_gaps(gaps: List[KnowledgeGap]) -> List[KnowledgeGap]:
    """Severity descending; undefined concepts first at equal severity; otherwise stable."""
    return sorted(
        gaps,
        key=lambda g: (-g.severity.rank, 0 if g.type == GapType.UNDEFINED_CONCEPT else 1),
    )


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

class GapAnalyzer:
    """
    Combines sparse-region and undefined-concept detection into a GapReport.

    One analyzer runs one analysis at a time; a concurrent ``analyze`` call
    raises :class:`AnalysisAlreadyRunning`.
    """

    TOPIC_TITLES: int = 5
    DESCRIPTION_TITLES: int = 3
    SUGGESTED_TOPICS: int = 5
    RELATED_NOTES: int = 10
    SUGGESTION_PREVIEW_CHARS: int = 100

    def __init__(
        self,
        embedding_store: EmbeddingStore,
        link_graph_builder: LinkGraphBuilder,
        clustering_engine: ClusteringEngine,
        suggestion_service: Optional[SuggestionService] = None,
    ) -> None:
        self.embedding_store = embedding_store
        self.link_graph = link_graph_builder
        self.suggestions = suggestion_service
        self.sparse_detector = SparseRegionDetector(embedding_store, clustering_engine)
        self.concept_finder = UndefinedConceptFinder(link_graph_builder)

        self._progress_callback: Optional[ProgressCallback] = None
        self._cancelled = False
        self._running = False

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    def on_progress(self, callback: Optional[ProgressCallback]) -> None:
        self._progress_callback = callback

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def _report(self, phase: AnalysisPhase, progress: int, message: str) -> None:
        logger.info("[%s %3d%%] %s", phase.value, progress, message)
        if self._progress_callback is not None:
            self._progress_callback(GapAnalysisProgress(phase=phase, progress=progress, message=message))

    def _suggestions_available(self) -> bool:
        if self.suggestions is None:
            return False
        try:
            return bool(self.suggestions.is_available())
        except Exception as exc:
            logger.warning("Suggestion service availability check failed: %s", exc)
            return False

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    async def analyze(self, options: Optional[AnalyzeOptions] = None) -> GapReport:
        if self._running:
            raise AnalysisAlreadyRunning("Gap analysis already in progress")
        options = options or AnalyzeOptions()
        self._running = True
        self._cancelled = False
        try:
            return await self._run(options)
        finally:
            self._running = False

    async def _run(self, options: AnalyzeOptions) -> GapReport:
        # Phase 1: loading
        self._report(AnalysisPhase.LOADING, 0, "Loading embeddings...")
        if not await self.embedding_store.is_available():
            raise EmbeddingStoreUnavailable(
                "Embedding data not found. Make sure the embedding index has been generated."
            )
        embedding_count = await self.embedding_store.get_embedding_count()
        self._report(AnalysisPhase.LOADING, 20, f"Found {embedding_count} embedded notes")
        if self._cancelled:
            return self._cancelled_report(options, AnalysisPhase.LOADING)

        # one prefix list for both signals
        exclude_folders = normalize_folders(options.exclude_folders)

        # Phase 2: clustering
        self._report(AnalysisPhase.CLUSTERING, 25, "Analyzing embedding clusters...")
        regions = await self.sparse_detector.detect(
            cluster_count=options.cluster_count,
            sparsity_threshold=options.sparsity_threshold,
            exclude_folders=exclude_folders,
            max_regions=options.max_regions,
        )
        self._report(AnalysisPhase.CLUSTERING, 50, f"Found {len(regions)} sparse regions")
        if self._cancelled:
            return self._cancelled_report(options, AnalysisPhase.CLUSTERING)

        # Phase 3: link analysis
        self._report(AnalysisPhase.ANALYZING_LINKS, 55, "Analyzing link graph...")
        self.link_graph.set_exclude_folders(exclude_folders)
        concepts = await self.concept_finder.find(
            min_mentions=options.min_mentions,
            max_concepts=options.max_concepts,
            exclude_folders=exclude_folders,
        )
        self._report(AnalysisPhase.ANALYZING_LINKS, 70, f"Found {len(concepts)} undefined concepts")
        if self._cancelled:
            return self._cancelled_report(options, AnalysisPhase.ANALYZING_LINKS)

        # Phase 4: optional enrichment
        if options.use_llm and self._suggestions_available():
            self._report(AnalysisPhase.GENERATING_SUGGESTIONS, 75, "Generating topic suggestions...")
            await self._enrich_regions(regions)
            self._report(AnalysisPhase.GENERATING_SUGGESTIONS, 85, "Enriching concepts...")
            await self._enrich_concepts(concepts[: options.enrich_concept_limit])
        if self._cancelled:
            return self._cancelled_report(options, AnalysisPhase.GENERATING_SUGGESTIONS)

        # Phase 5: gap assembly
        self._report(AnalysisPhase.GENERATING_SUGGESTIONS, 90, "Creating gap report...")
        gaps = sort_gaps(self.create_gaps(regions, concepts))[: options.max_gaps]
        self._report(AnalysisPhase.COMPLETE, 100, "Analysis complete")

        return GapReport(
            analyzed_at=datetime.now(timezone.utc),
            total_notes_analyzed=embedding_count,
            total_embeddings=embedding_count,
            sparse_regions=regions,
            undefined_concepts=concepts,
            gaps=gaps,
            options=options,
        )

    def _cancelled_report(self, options: AnalyzeOptions, after: AnalysisPhase) -> GapReport:
        logger.info("Gap analysis cancelled after phase %s", after.value)
        return GapReport.empty(options)

    # ------------------------------------------------------------------
    # Enrichment (failures leave the field unset)
    # ------------------------------------------------------------------

    async def _enrich_regions(self, regions: List[SparseRegion]) -> None:
        if self.suggestions is None:
            return
        for region in regions:
            titles = [note_title(n.note_path) for n in region.nearest_notes[: self.TOPIC_TITLES]]
            try:
                inference = await self.suggestions.infer_topic(titles)
            except Exception as exc:
                logger.warning("Topic inference failed for %s: %s", region.id, exc)
                continue
            if inference.topic and inference.confidence > 0:
                region.inferred_topic = inference.topic

    async def _enrich_concepts(self, concepts: List[UndefinedConcept]) -> None:
        if self.suggestions is None:
            return
        for concept in concepts:
            try:
                content = await self.suggestions.describe_concept(concept.name, concept.mentioned_in)
            except Exception as exc:
                logger.warning("Concept description failed for %r: %s", concept.name, exc)
                continue
            if content:
                concept.suggested_content = content

    # ------------------------------------------------------------------
    # Gap assembly
    # ------------------------------------------------------------------

    def create_gaps(
        self, regions: List[SparseRegion], concepts: List[UndefinedConcept]
    ) -> List[KnowledgeGap]:
        gaps: List[KnowledgeGap] = []
        used_ids: Set[str] = set()

        def unique(base: str) -> str:
            candidate, n = base, 1
            while candidate in used_ids:
                n += 1
                candidate = f"{base}-{n}"
            used_ids.add(candidate)
            return candidate

        for region in regions:
            titles = [note_title(n.note_path) for n in region.nearest_notes]
            gaps.append(
                KnowledgeGap(
                    id=unique(f"sparse-{region.id}"),
                    type=GapType.SPARSE_REGION,
                    title=region.inferred_topic or f"Low Coverage Area {region.id}",
                    description=(
                        f"This area of your knowledge base has low note density "
                        f"({region.density * 100:.1f}%). Consider exploring topics related to: "
                        f"{', '.join(titles[: self.DESCRIPTION_TITLES])}."
                    ),
                    severity=sparse_region_severity(region),
                    suggested_topics=titles[: self.SUGGESTED_TOPICS],
                    related_notes=[n.note_path for n in region.nearest_notes[: self.RELATED_NOTES]],
                )
            )

        for concept in concepts:
            description = (
                f'"{concept.name}" is mentioned {concept.mention_count} times '
                f"but has no dedicated note."
            )
            if concept.suggested_content:
                preview = concept.suggested_content[: self.SUGGESTION_PREVIEW_CHARS]
                description += f" Suggested focus: {preview}..."
            gaps.append(
                KnowledgeGap(
                    id=unique(f"undefined-{slugify(concept.name)}"),
                    type=GapType.UNDEFINED_CONCEPT,
                    title=concept.name,
                    description=description,
                    severity=concept_severity(concept),
                    suggested_topics=concept.related_concepts[: self.SUGGESTED_TOPICS],
                    related_notes=concept.mentioned_in[: self.RELATED_NOTES],
                )
            )
        return gaps

    # ------------------------------------------------------------------
    # Exploration suggestions
    # ------------------------------------------------------------------

    async def suggest_exploration(self, gap: KnowledgeGap) -> List[ExplorationSuggestion]:
        if self.suggestions is None or not self._suggestions_available():
            return fallback_exploration_suggestions(gap)
        try:
            suggestions = await self.suggestions.generate_exploration_suggestions(
                gap.description, gap.related_notes, build_exploration_context(gap)
            )
        except Exception as exc:
            logger.warning("Exploration suggestions failed for %s: %s", gap.id, exc)
            return fallback_exploration_suggestions(gap)
        return suggestions or fallback_exploration_suggestions(gap)
