"""
Shared fixtures for GapScan tests.

The API tests run against a throwaway SQLite database (aiosqlite) created in
a temp directory.  Each test gets a fresh database file, a fresh in-memory
analyzer and a clean pipeline manager.
"""
from __future__ import annotations

import os
import tempfile
from typing import AsyncGenerator, Dict, List

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

# Override settings *before* any gapscan module is imported, so that
# settings.DATABASE_URL and the global engine point at the test DB and no
# test ever reaches a real LLM or vault.
_TMP_DIR = tempfile.mkdtemp(prefix="gapscan-tests-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_TMP_DIR}/gapscan_test.db"
os.environ["EMBEDDINGS_DIR"] = os.path.join(_TMP_DIR, "no-embeddings")
os.environ["VAULT_DIR"] = os.path.join(_TMP_DIR, "no-vault")
os.environ["LLM_ENABLED"] = "false"
os.environ["CLUSTERING_SEED"] = "1234"

from gapscan.database import Base, get_db  # noqa: E402
from gapscan.main import app  # noqa: E402
from gapscan.models.domain import Cluster, ClusterResult  # noqa: E402
from gapscan.routers.gaps import get_gap_analyzer, get_session_factory  # noqa: E402
from gapscan.services.clustering import ClusteringEngine  # noqa: E402
from gapscan.services.document_source import InMemoryDocumentSource  # noqa: E402
from gapscan.services.embedding_store import InMemoryEmbeddingStore  # noqa: E402
from gapscan.services.gap_analyzer import GapAnalyzer  # noqa: E402
from gapscan.services.link_graph import LinkGraphBuilder  # noqa: E402
from gapscan.services.pipeline_manager import pipeline_manager  # noqa: E402
from gapscan.utils.helpers import generate_note_id  # noqa: E402


# ---------------------------------------------------------------------------
# Test doubles
# ---------------------------------------------------------------------------

class FixedClusteringEngine(ClusteringEngine):
    """
    Returns a preset partition and preset density per cluster id.

    ``groups`` maps cluster id → member document paths; members are turned
    into note ids the same way ``InMemoryEmbeddingStore.from_vectors`` does.
    """

    def __init__(self, groups: Dict[str, List[str]], densities: Dict[str, float]) -> None:
        super().__init__(seed=0)
        self.groups = groups
        self.densities = densities
        self.k_means_calls: List[int] = []

    def k_means(self, vectors, k, max_iterations=100, tolerance=1e-4, init="k-means++"):
        self.k_means_calls.append(k)
        clusters = []
        assignments = {}
        for cluster_id, paths in self.groups.items():
            members = [generate_note_id(p) for p in paths]
            members = [m for m in members if m in vectors]
            centroid = [
                sum(vectors[m][d] for m in members) / len(members)
                for d in range(len(vectors[members[0]]))
            ]
            clusters.append(Cluster(id=cluster_id, centroid=centroid, members=members, variance=0.0))
            for m in members:
                assignments[m] = cluster_id
        return ClusterResult(clusters=clusters, assignments=assignments, iterations=1)

    def calculate_density(self, cluster, all_vectors, baseline=None):
        return self.densities[cluster.id]


class RecordingSuggestionService:
    """Canned answers; records every call."""

    def __init__(self, topic="Inferred Topic", confidence=0.8, description="A concept worth a note.",
                 fail=False, available=True):
        self.topic = topic
        self.confidence = confidence
        self.description = description
        self.fail = fail
        self.available = available
        self.topic_calls: List[List[str]] = []
        self.concept_calls: List[str] = []

    def is_available(self) -> bool:
        return self.available

    async def infer_topic(self, titles):
        from gapscan.models.domain import TopicInference

        self.topic_calls.append(list(titles))
        if self.fail:
            raise RuntimeError("provider down")
        return TopicInference(topic=self.topic, confidence=self.confidence)

    async def describe_concept(self, name, context_docs):
        self.concept_calls.append(name)
        if self.fail:
            raise RuntimeError("provider down")
        return self.description

    async def generate_exploration_suggestions(self, description, related_notes, context=None):
        from gapscan.models.domain import ExplorationSuggestion

        if self.fail:
            raise RuntimeError("provider down")
        return [
            ExplorationSuggestion(
                topic="Follow-up", questions=["Why?"], subtopics=["Detail"], rationale="Because"
            )
        ]


# ---------------------------------------------------------------------------
# Corpus fixtures
# ---------------------------------------------------------------------------

def scenario_a_vectors() -> Dict[str, List[float]]:
    """Ten documents in three groups (a/ and b/ tight, c/ loose)."""
    return {
        "a/A1.md": [0.0, 0.0],
        "a/A2.md": [0.1, 0.0],
        "a/A3.md": [0.0, 0.1],
        "a/A4.md": [0.1, 0.1],
        "b/B1.md": [10.0, 0.0],
        "b/B2.md": [10.1, 0.0],
        "b/B3.md": [10.0, 0.1],
        "c/C1.md": [0.0, 10.0],
        "c/C2.md": [3.0, 13.0],
        "c/C3.md": [-3.0, 7.0],
    }


SCENARIO_A_GROUPS = {
    "cluster-0": ["a/A1.md", "a/A2.md", "a/A3.md", "a/A4.md"],
    "cluster-1": ["b/B1.md", "b/B2.md", "b/B3.md"],
    "cluster-2": ["c/C1.md", "c/C2.md", "c/C3.md"],
}

SCENARIO_A_DENSITIES = {"cluster-0": 0.9, "cluster-1": 0.8, "cluster-2": 0.05}


def foo_documents() -> Dict[str, str]:
    """``[[Foo]]`` three times across A and B; Foo has no document."""
    return {
        "A.md": "Notes on [[Foo]] and again [[Foo]].",
        "B.md": "See [[Foo|the foo]] and [[A]].",
        "C.md": "Nothing linked here.",
    }


@pytest.fixture
def scenario_a_store() -> InMemoryEmbeddingStore:
    return InMemoryEmbeddingStore.from_vectors(scenario_a_vectors())


@pytest.fixture
def scenario_a_engine() -> FixedClusteringEngine:
    return FixedClusteringEngine(SCENARIO_A_GROUPS, SCENARIO_A_DENSITIES)


@pytest.fixture
def foo_builder() -> LinkGraphBuilder:
    return LinkGraphBuilder(InMemoryDocumentSource(foo_documents()), batch_size=2)


@pytest.fixture
def analyzer(scenario_a_store, scenario_a_engine, foo_builder) -> GapAnalyzer:
    return GapAnalyzer(scenario_a_store, foo_builder, scenario_a_engine)


# ---------------------------------------------------------------------------
# Database / API fixtures
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def session_factory(tmp_path) -> AsyncGenerator[async_sessionmaker, None]:
    """Session factory bound to a fresh SQLite file with all tables created."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'reports.db'}", echo=False, poolclass=NullPool
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Provide a DB session for each test."""
    async with session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


@pytest_asyncio.fixture
async def client(session_factory, analyzer) -> AsyncGenerator[AsyncClient, None]:
    """
    httpx AsyncClient wired to the FastAPI app with the DB, session factory
    and analyzer dependencies overridden.
    """

    async def _override_get_db():
        async with session_factory() as session:
            yield session
            await session.commit()

    app.dependency_overrides[get_db] = _override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_gap_analyzer] = lambda: analyzer
    pipeline_manager.reset()

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    for session_id in list(pipeline_manager._tasks):
        pipeline_manager.cancel(session_id)
        await pipeline_manager.wait(session_id)
    pipeline_manager.reset()
    app.dependency_overrides.clear()
