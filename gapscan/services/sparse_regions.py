"""
Sparse region detection: low-density clusters in embedding space.

Embeddings are clustered with K-means++ and every cluster whose density
score falls strictly below the sparsity threshold is reported as a
:class:`SparseRegion`, sparsest first.
"""
from __future__ import annotations

import logging
import math
from typing import Dict, Iterable, List, Optional

from gapscan.config import settings
from gapscan.models.domain import Cluster, EmbeddingRecord, NoteDistance, SparseRegion, Vector
from gapscan.services.clustering import INIT_KMEANS_PLUS_PLUS, INIT_RANDOM, ClusteringEngine
from gapscan.services.embedding_store import EmbeddingStore
from gapscan.services.vector_math import euclidean_distance
from gapscan.utils.helpers import is_excluded

logger = logging.getLogger(__name__)


class SparseRegionDetector:
    """Turns a corpus of embeddings into a ranked list of sparse regions."""

    MIN_DOCUMENTS: int = 3
    MIN_AUTO_K: int = 3
    MAX_AUTO_K: int = 20
    BOUNDARY_FRACTION: float = 0.2
    MIN_BOUNDARY_NOTES: int = 3
    MAX_ITERATIONS: int = 100
    TOLERANCE: float = 1e-4

    def __init__(
        self,
        embedding_store: EmbeddingStore,
        clustering_engine: ClusteringEngine,
        use_kmeans_plus_plus: Optional[bool] = None,
    ) -> None:
        self.embedding_store = embedding_store
        self.clustering = clustering_engine
        if use_kmeans_plus_plus is None:
            use_kmeans_plus_plus = settings.USE_KMEANS_PLUS_PLUS
        self.init = INIT_KMEANS_PLUS_PLUS if use_kmeans_plus_plus else INIT_RANDOM

    async def detect(
        self,
        cluster_count: Optional[int] = None,
        sparsity_threshold: float = 0.3,
        exclude_folders: Iterable[str] = (),
        max_regions: int = 10,
    ) -> List[SparseRegion]:
        embeddings = await self.embedding_store.read_all_embeddings()
        if not embeddings:
            return []

        folders = list(exclude_folders)
        if folders:
            embeddings = {
                note_id: record
                for note_id, record in embeddings.items()
                if not is_excluded(record.path, folders)
            }

        if len(embeddings) < self.MIN_DOCUMENTS:
            logger.info(
                "Sparse detection skipped: %d document(s) after exclusion (need %d)",
                len(embeddings),
                self.MIN_DOCUMENTS,
            )
            return []

        vectors: Dict[str, Vector] = {nid: rec.vector for nid, rec in embeddings.items()}
        k = cluster_count if cluster_count and cluster_count > 0 else self.auto_cluster_count(len(vectors))

        result = self.clustering.k_means(
            vectors,
            k,
            max_iterations=self.MAX_ITERATIONS,
            tolerance=self.TOLERANCE,
            init=self.init,
        )
        baseline = self.clustering.global_spread(vectors)

        regions: List[SparseRegion] = []
        for cluster in result.clusters:
            density = self.clustering.calculate_density(cluster, vectors, baseline=baseline)
            if density >= sparsity_threshold:
                continue
            nearest = self._nearest_notes(cluster, embeddings)
            regions.append(
                SparseRegion(
                    id=cluster.id,
                    centroid=cluster.centroid,
                    density=density,
                    nearest_notes=nearest,
                    boundary_notes=self._boundary_notes(nearest),
                    note_count=len(cluster.members),
                )
            )

        regions.sort(key=lambda r: r.density)
        logger.info(
            "Sparse detection: %d document(s), k=%d, %d cluster(s), %d sparse region(s)",
            len(vectors),
            k,
            len(result.clusters),
            len(regions),
        )
        return regions[:max_regions]

    @classmethod
    def auto_cluster_count(cls, n: int) -> int:
        """``round(sqrt(n / 2))`` (halves round up) clamped to [3, 20]."""
        k = int(math.floor(math.sqrt(n / 2) + 0.5))
        return max(cls.MIN_AUTO_K, min(cls.MAX_AUTO_K, k))

    @staticmethod
    def _nearest_notes(cluster: Cluster, embeddings: Dict[str, EmbeddingRecord]) -> List[NoteDistance]:
        distances: List[NoteDistance] = []
        for member in cluster.members:
            record = embeddings.get(member)
            if record is None:
                continue
            distances.append(
                NoteDistance(
                    note_path=record.path,
                    distance=euclidean_distance(record.vector, cluster.centroid),
                )
            )
        distances.sort(key=lambda d: d.distance)
        return distances

    @classmethod
    def _boundary_notes(cls, nearest: List[NoteDistance]) -> List[str]:
        """The farthest ~20% of members (at least 3, never more than exist)."""
        n = len(nearest)
        count = min(n, max(cls.MIN_BOUNDARY_NOTES, math.ceil(n * cls.BOUNDARY_FRACTION)))
        if count == 0:
            return []
        return [d.note_path for d in nearest[-count:]]
