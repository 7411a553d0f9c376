"""
Clustering engine for document embeddings.

Public API
----------
ClusteringEngine.k_means(vectors, k, ...)          → ClusterResult
ClusteringEngine.dbscan(vectors, eps, min_pts)     → ClusterResult
ClusteringEngine.calculate_density(cluster, all)   → float in [0, 1]
ClusteringEngine.find_optimal_k(vectors, lo, hi)   → int

All inputs are ``{document id: vector}`` mappings.  Cluster ids are
``cluster-<index>`` where *index* is the K-means centroid slot (or the
DBSCAN discovery order), so ids are stable for a given seeded run.

Limitations
-----------
DBSCAN runs one linear neighbourhood scan per visited point (no spatial
index), i.e. O(n²) distance computations.  It is meant for small-to-moderate
corpora only.
"""
from __future__ import annotations

import logging
import random
from collections import deque
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from gapscan.config import settings
from gapscan.models.domain import Cluster, ClusterResult
from gapscan.services import vector_math
from gapscan.services.vector_math import DimensionMismatch

logger = logging.getLogger(__name__)

_UNVISITED = -2
_NOISE = -1

INIT_KMEANS_PLUS_PLUS = "k-means++"
INIT_RANDOM = "random"

EMPTY_CLUSTER_ZERO = "zero"
EMPTY_CLUSTER_FARTHEST = "farthest"


def _as_matrix(vectors: Dict[str, Sequence[float]]) -> Tuple[List[str], np.ndarray]:
    """Stack a ``{id: vector}`` mapping into ``(ids, (n, dim) array)``."""
    ids = list(vectors.keys())
    rows = [vectors[i] for i in ids]
    dim = len(rows[0])
    for row in rows:
        if len(row) != dim:
            raise DimensionMismatch(dim, len(row))
    return ids, np.asarray(rows, dtype=float).reshape(len(rows), dim)


def _mean_squared_distance(points: np.ndarray, centroid: np.ndarray) -> float:
    if len(points) == 0:
        return 0.0
    return float(np.mean(np.sum((points - centroid) ** 2, axis=1)))


class ClusteringEngine:
    """
    Pure-numpy K-means(++) / DBSCAN implementation with density scoring.

    The random source is injectable: pass ``rng`` (a ``random.Random``) or
    ``seed`` to make K-means++ initialisation reproducible.  Without either,
    ``settings.CLUSTERING_SEED`` is used, and ``None`` there means unseeded.
    """

    DEFAULT_MAX_ITERATIONS: int = 100
    DEFAULT_TOLERANCE: float = 1e-4
    OPTIMAL_K_MAX_ITERATIONS: int = 50

    def __init__(
        self,
        rng: Optional[random.Random] = None,
        seed: Optional[int] = None,
        empty_cluster_strategy: Optional[str] = None,
    ) -> None:
        if rng is None:
            rng = random.Random(seed if seed is not None else settings.CLUSTERING_SEED)
        self._rng = rng

        strategy = empty_cluster_strategy or settings.EMPTY_CLUSTER_STRATEGY
        if strategy not in (EMPTY_CLUSTER_ZERO, EMPTY_CLUSTER_FARTHEST):
            raise ValueError(f"Unknown empty-cluster strategy: {strategy!r}")
        self.empty_cluster_strategy = strategy

    # ------------------------------------------------------------------
    # K-means
    # ------------------------------------------------------------------

    def k_means(
        self,
        vectors: Dict[str, Sequence[float]],
        k: int,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        tolerance: float = DEFAULT_TOLERANCE,
        init: str = INIT_KMEANS_PLUS_PLUS,
    ) -> ClusterResult:
        """
        Partition *vectors* into at most *k* clusters.

        Steps
        -----
        1.  Fewer distinct vectors than *k* → one singleton cluster per vector.
        2.  Initialise centroids (K-means++ or random distinct points).
        3.  Assign every point to its nearest centroid (lowest index on ties).
        4.  Move each centroid to the mean of its points.
        5.  Stop when assignments repeat, the largest centroid movement drops
            below *tolerance*, or *max_iterations* is reached.

        Empty clusters are dropped from the result.
        """
        if k < 1:
            raise ValueError(f"k must be >= 1, got {k}")
        if not vectors:
            return ClusterResult(clusters=[], assignments={}, iterations=0)

        ids, points = _as_matrix(vectors)

        distinct = len({tuple(row) for row in points.tolist()})
        if distinct < k:
            logger.debug(
                "k_means: %d distinct vector(s) < k=%d; emitting singletons",
                distinct,
                k,
            )
            return self._single_point_clusters(ids, points)

        if init == INIT_KMEANS_PLUS_PLUS:
            centroids = self._kmeans_plus_plus_init(points, k)
        elif init == INIT_RANDOM:
            centroids = self._random_init(points, k)
        else:
            raise ValueError(f"Unknown K-means init strategy: {init!r}")

        assignments: Optional[np.ndarray] = None
        iterations = 0
        converged = False

        while iterations < max_iterations and not converged:
            new_assignments = self._assign(points, centroids)
            converged = assignments is not None and np.array_equal(
                assignments, new_assignments
            )
            assignments = new_assignments

            if not converged:
                new_centroids = self._update_centroids(points, assignments, centroids)
                movement = float(
                    np.max(np.linalg.norm(new_centroids - centroids, axis=1))
                )
                if movement < tolerance:
                    converged = True
                centroids = new_centroids

            iterations += 1

        if assignments is None:
            assignments = self._assign(points, centroids)

        clusters: List[Cluster] = []
        assignment_map: Dict[str, str] = {}
        for slot in range(len(centroids)):
            member_idx = np.flatnonzero(assignments == slot)
            if len(member_idx) == 0:
                continue
            cluster_id = f"cluster-{slot}"
            members = [ids[j] for j in member_idx]
            clusters.append(
                Cluster(
                    id=cluster_id,
                    centroid=centroids[slot].tolist(),
                    members=members,
                    variance=_mean_squared_distance(points[member_idx], centroids[slot]),
                )
            )
            for member in members:
                assignment_map[member] = cluster_id

        logger.debug(
            "k_means: %d point(s) → %d cluster(s) in %d iteration(s)",
            len(ids),
            len(clusters),
            iterations,
        )
        return ClusterResult(
            clusters=clusters, assignments=assignment_map, iterations=iterations
        )

    # ------------------------------------------------------------------
    # DBSCAN
    # ------------------------------------------------------------------

    def dbscan(
        self,
        vectors: Dict[str, Sequence[float]],
        eps: float,
        min_pts: int,
    ) -> ClusterResult:
        """
        Density-based clustering.

        A point is *core* when its inclusive eps-neighbourhood (itself
        included) holds at least *min_pts* points.  Clusters grow breadth
        first from core points; border points join but do not expand.
        Points never reached stay unassigned (noise).
        """
        if not vectors:
            return ClusterResult(clusters=[], assignments={}, iterations=None)

        ids, points = _as_matrix(vectors)
        n = len(ids)
        labels = np.full(n, _UNVISITED, dtype=int)

        def region_query(idx: int) -> np.ndarray:
            return np.flatnonzero(np.linalg.norm(points - points[idx], axis=1) <= eps)

        current = 0
        for i in range(n):
            if labels[i] != _UNVISITED:
                continue

            neighbors = region_query(i)
            if len(neighbors) < min_pts:
                labels[i] = _NOISE
                continue

            labels[i] = current
            queue = deque(neighbors.tolist())
            while queue:
                j = queue.popleft()
                if labels[j] == _NOISE:
                    # noise reachable from a core point becomes a border point
                    labels[j] = current
                if labels[j] != _UNVISITED:
                    continue
                labels[j] = current
                j_neighbors = region_query(j)
                if len(j_neighbors) >= min_pts:
                    queue.extend(j_neighbors.tolist())
            current += 1

        clusters: List[Cluster] = []
        assignment_map: Dict[str, str] = {}
        for label in range(current):
            member_idx = np.flatnonzero(labels == label)
            cluster_id = f"cluster-{label}"
            member_points = points[member_idx]
            centroid = member_points.mean(axis=0)
            members = [ids[j] for j in member_idx]
            clusters.append(
                Cluster(
                    id=cluster_id,
                    centroid=centroid.tolist(),
                    members=members,
                    variance=_mean_squared_distance(member_points, centroid),
                )
            )
            for member in members:
                assignment_map[member] = cluster_id

        logger.debug(
            "dbscan: %d point(s) → %d cluster(s), %d noise",
            n,
            current,
            int(np.sum(labels == _NOISE)),
        )
        return ClusterResult(clusters=clusters, assignments=assignment_map, iterations=None)

    # ------------------------------------------------------------------
    # Density
    # ------------------------------------------------------------------

    @staticmethod
    def global_spread(all_vectors: Dict[str, Sequence[float]]) -> float:
        """Average distance from every corpus vector to the global centroid."""
        if not all_vectors:
            return 0.0
        _, points = _as_matrix(all_vectors)
        centroid = points.mean(axis=0)
        return float(np.mean(np.linalg.norm(points - centroid, axis=1)))

    def calculate_density(
        self,
        cluster: Cluster,
        all_vectors: Dict[str, Sequence[float]],
        baseline: Optional[float] = None,
    ) -> float:
        """
        Density score in [0, 1] (1 = tight, 0 = sparse).

        The cluster's average member-to-centroid distance is normalised by
        *baseline*, the corpus-wide average distance to the global centroid
        (computed from *all_vectors* when not supplied), then mapped through
        ``1 - d / 2`` and clamped.  An all-identical corpus scores 1.
        """
        if not cluster.members or not all_vectors:
            return 0.0

        total = 0.0
        for member in cluster.members:
            vector = all_vectors.get(member)
            if vector is not None:
                total += vector_math.euclidean_distance(vector, cluster.centroid)
        avg_distance = total / len(cluster.members)

        if baseline is None:
            baseline = self.global_spread(all_vectors)
        if baseline == 0:
            return 1.0

        normalized = avg_distance / baseline
        return max(0.0, min(1.0, 1.0 - normalized / 2.0))

    # ------------------------------------------------------------------
    # Elbow method
    # ------------------------------------------------------------------

    def find_optimal_k(
        self,
        vectors: Dict[str, Sequence[float]],
        min_k: int,
        max_k: int,
    ) -> int:
        """Pick k at the maximum discrete second derivative of the WCSS curve."""
        if min_k < 1 or max_k < min_k:
            raise ValueError(f"Invalid k range [{min_k}, {max_k}]")

        wcss: List[float] = []
        for k in range(min_k, max_k + 1):
            result = self.k_means(
                vectors, k, max_iterations=self.OPTIMAL_K_MAX_ITERATIONS
            )
            wcss.append(
                sum(c.variance * len(c.members) for c in result.clusters)
            )

        best_k = min_k
        max_curvature = 0.0
        for i in range(1, len(wcss) - 1):
            curvature = abs(wcss[i - 1] - 2 * wcss[i] + wcss[i + 1])
            if curvature > max_curvature:
                max_curvature = curvature
                best_k = min_k + i

        logger.info(
            "find_optimal_k: k in [%d, %d] → elbow at k=%d", min_k, max_k, best_k
        )
        return best_k

    # ------------------------------------------------------------------
    # Convenience pass-throughs
    # ------------------------------------------------------------------

    @staticmethod
    def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
        return vector_math.cosine_similarity(a, b)

    @staticmethod
    def euclidean_distance(a: Sequence[float], b: Sequence[float]) -> float:
        return vector_math.euclidean_distance(a, b)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _kmeans_plus_plus_init(self, points: np.ndarray, k: int) -> np.ndarray:
        """
        First centroid uniformly at random; each further centroid sampled with
        probability proportional to the squared distance to the nearest
        centroid chosen so far (roulette wheel over the cumulative weights).
        """
        n = len(points)
        first = self._rng.randrange(n)
        centroids = [points[first].copy()]
        closest_sq = np.sum((points - points[first]) ** 2, axis=1)

        for _ in range(1, k):
            total = float(closest_sq.sum())
            if total <= 0.0:
                break
            target = self._rng.random() * total
            cumulative = np.cumsum(closest_sq)
            idx = int(np.searchsorted(cumulative, target, side="right"))
            if idx >= n:
                # float round-off pushed target past the last bucket
                idx = int(np.flatnonzero(closest_sq > 0)[-1])
            centroids.append(points[idx].copy())
            closest_sq = np.minimum(
                closest_sq, np.sum((points - points[idx]) ** 2, axis=1)
            )

        return np.vstack(centroids)

    def _random_init(self, points: np.ndarray, k: int) -> np.ndarray:
        """k distinct points chosen uniformly."""
        seen = set()
        unique_idx: List[int] = []
        for i, row in enumerate(points.tolist()):
            key = tuple(row)
            if key not in seen:
                seen.add(key)
                unique_idx.append(i)
        chosen = self._rng.sample(unique_idx, k)
        return np.vstack([points[i].copy() for i in chosen])

    @staticmethod
    def _assign(points: np.ndarray, centroids: np.ndarray) -> np.ndarray:
        distances = np.column_stack(
            [np.linalg.norm(points - c, axis=1) for c in centroids]
        )
        return np.argmin(distances, axis=1)

    def _update_centroids(
        self,
        points: np.ndarray,
        assignments: np.ndarray,
        centroids: np.ndarray,
    ) -> np.ndarray:
        updated = np.zeros_like(centroids)
        taken: List[int] = []
        for slot in range(len(centroids)):
            mask = assignments == slot
            if mask.any():
                updated[slot] = points[mask].mean(axis=0)
            elif self.empty_cluster_strategy == EMPTY_CLUSTER_FARTHEST:
                spread = np.linalg.norm(points - centroids[assignments], axis=1)
                if taken:
                    spread[taken] = -1.0
                far = int(np.argmax(spread))
                taken.append(far)
                updated[slot] = points[far]
            # EMPTY_CLUSTER_ZERO: slot stays at the origin
        return updated

    @staticmethod
    def _single_point_clusters(ids: List[str], points: np.ndarray) -> ClusterResult:
        clusters: List[Cluster] = []
        assignments: Dict[str, str] = {}
        for i, (note_id, row) in enumerate(zip(ids, points)):
            cluster_id = f"cluster-{i}"
            clusters.append(
                Cluster(id=cluster_id, centroid=row.tolist(), members=[note_id], variance=0.0)
            )
            assignments[note_id] = cluster_id
        return ClusterResult(clusters=clusters, assignments=assignments, iterations=0)
