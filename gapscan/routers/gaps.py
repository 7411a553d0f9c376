"""
Gap analysis endpoints.

Routes
------
POST /api/gaps/analyze                        Start a background analysis (202)
GET  /api/gaps/status                         Poll run progress for a session
POST /api/gaps/cancel                         Request cancellation of a running analysis
GET  /api/gaps/report                         Latest persisted report
GET  /api/gaps/report/summary                 Counts by type/severity + top gaps
GET  /api/gaps/report/compare                 Diff of the two latest reports
POST /api/gaps/report/gaps/{gap_id}/explore   Exploration suggestions for one gap
POST /api/gaps/cache/clear                    Drop cached embeddings and link graph
"""
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from gapscan.config import settings
from gapscan.database import AsyncSessionLocal, get_db
from gapscan.models.domain import GapReport
from gapscan.models.schemas import (
    AnalysisStatusResponse,
    AnalyzeRequest,
    ExplorationSuggestionResponse,
    GapReportResponse,
    GapReportSummaryResponse,
    MessageResponse,
    ReportComparisonResponse,
)
from gapscan.services.clustering import ClusteringEngine
from gapscan.services.document_source import FileSystemDocumentSource
from gapscan.services.embedding_store import DirectoryEmbeddingStore
from gapscan.services.gap_analyzer import AnalysisAlreadyRunning, GapAnalyzer
from gapscan.services.link_graph import LinkGraphBuilder
from gapscan.services.pipeline_manager import AnalysisStatus, pipeline_manager
from gapscan.services.report_service import gap_to_dict, report_service, serialize_report
from gapscan.services.suggestions import build_suggestion_service

logger = logging.getLogger(__name__)

router = APIRouter()


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------

_analyzer: Optional[GapAnalyzer] = None


def get_gap_analyzer() -> GapAnalyzer:
    """
    Process-wide analyzer wired to the configured vault and embedding index.

    Built lazily on first use so the embedding cache and link graph survive
    between runs.  Tests override this dependency.
    """
    global _analyzer
    if _analyzer is None:
        _analyzer = GapAnalyzer(
            embedding_store=DirectoryEmbeddingStore(),
            link_graph_builder=LinkGraphBuilder(
                FileSystemDocumentSource(),
                exclude_folders=settings.get_exclude_folders(),
            ),
            clustering_engine=ClusteringEngine(),
            suggestion_service=build_suggestion_service(),
        )
    return _analyzer


def get_session_factory() -> async_sessionmaker:
    """Session factory used by background runs to persist their report."""
    return AsyncSessionLocal


def _session(session_id: Optional[str]) -> str:
    return session_id or settings.DEFAULT_SESSION_ID


def _status_response(session_id: str, run: AnalysisStatus) -> AnalysisStatusResponse:
    return AnalysisStatusResponse(
        session_id=session_id,
        phase=run.phase.value,
        progress=run.progress,
        message=run.message,
        running=pipeline_manager.is_running(session_id),
        errors=list(run.errors),
        elapsed_seconds=run.elapsed_seconds,
        total_gaps=len(run.report.gaps) if run.report is not None else None,
    )


async def _require_latest(db: AsyncSession, session_id: str) -> GapReport:
    report = await report_service.latest_report(db, session_id)
    if report is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No gap report for session '{session_id}'. Run POST /api/gaps/analyze first.",
        )
    return report


# ---------------------------------------------------------------------------
# POST /analyze
# ---------------------------------------------------------------------------

@router.post(
    "/analyze",
    response_model=AnalysisStatusResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Start a background gap analysis",
)
async def start_analysis(
    body: Optional[AnalyzeRequest] = None,
    analyzer: GapAnalyzer = Depends(get_gap_analyzer),
    session_factory: async_sessionmaker = Depends(get_session_factory),
) -> AnalysisStatusResponse:
    """
    Launch the five-phase analysis as an asyncio task and return immediately.

    **Phases**

    1. *loading*: check the embedding store and count embedded notes
    2. *clustering*: K-means over the embeddings, keep the sparse clusters
    3. *analyzing_links*: scan wiki-links for concepts without a note
    4. *generating_suggestions*: optional LLM enrichment, then gap assembly
    5. *complete*: the report is saved and served by ``GET /report``

    Poll ``GET /api/gaps/status`` for progress.  A second request while a
    run is in flight is rejected with **409**.
    """
    body = body or AnalyzeRequest()
    session_id = _session(body.session_id)
    options = body.to_options()

    async def _persist(sid: str, report: GapReport) -> None:
        async with session_factory() as db:
            await report_service.save_report(db, sid, report)
            await db.commit()

    try:
        run = pipeline_manager.start(session_id, analyzer, options, on_complete=_persist)
    except AnalysisAlreadyRunning as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))

    logger.info(
        "Session %s: gap analysis started (clusters=%s, min_mentions=%d, llm=%s)",
        session_id,
        options.cluster_count or "auto",
        options.min_mentions,
        options.use_llm,
    )
    return _status_response(session_id, run)


# ---------------------------------------------------------------------------
# GET /status  and  POST /cancel
# ---------------------------------------------------------------------------

@router.get("/status", response_model=AnalysisStatusResponse)
async def analysis_status(session_id: Optional[str] = Query(None, max_length=255)) -> AnalysisStatusResponse:
    """Poll the current (or last) analysis run for a session."""
    sid = _session(session_id)
    run = pipeline_manager.get_status(sid)
    if run is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No analysis has been started for session '{sid}'",
        )
    return _status_response(sid, run)


@router.post("/cancel", response_model=MessageResponse)
async def cancel_analysis(session_id: Optional[str] = Query(None, max_length=255)) -> MessageResponse:
    """Ask the running analysis to stop at the next phase boundary."""
    sid = _session(session_id)
    if not pipeline_manager.cancel(sid):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No running analysis for session '{sid}'",
        )
    return MessageResponse(message=f"Cancellation requested for session '{sid}'")


# ---------------------------------------------------------------------------
# Reports
# ---------------------------------------------------------------------------

@router.get("/report", response_model=GapReportResponse)
async def get_report(
    session_id: Optional[str] = Query(None, max_length=255),
    db: AsyncSession = Depends(get_db),
):
    """Latest persisted report for the session."""
    report = await _require_latest(db, _session(session_id))
    return serialize_report(report)


@router.get("/report/summary", response_model=GapReportSummaryResponse)
async def get_report_summary(
    session_id: Optional[str] = Query(None, max_length=255),
    top_n: int = Query(5, ge=1, le=50),
    db: AsyncSession = Depends(get_db),
):
    """Gap counts by type and severity plus the highest-priority gaps."""
    report = await _require_latest(db, _session(session_id))
    summary = report_service.summarize(report, top_n=top_n)
    summary["top_priority_gaps"] = [gap_to_dict(g) for g in summary["top_priority_gaps"]]
    return summary


@router.get("/report/compare", response_model=ReportComparisonResponse)
async def compare_reports(
    session_id: Optional[str] = Query(None, max_length=255),
    db: AsyncSession = Depends(get_db),
):
    """New, resolved and re-graded gaps between the two most recent reports."""
    sid = _session(session_id)
    latest = await report_service.latest_report(db, sid)
    previous = await report_service.previous_report(db, sid)
    if latest is None or previous is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Session '{sid}' needs at least two reports to compare",
        )

    diff = report_service.compare_reports(previous, latest)
    return {
        "new_gaps": [gap_to_dict(g) for g in diff["new_gaps"]],
        "resolved_gaps": [gap_to_dict(g) for g in diff["resolved_gaps"]],
        "changed_severity": [
            {
                "gap": gap_to_dict(change["gap"]),
                "old_severity": change["old_severity"].value,
                "new_severity": change["new_severity"].value,
            }
            for change in diff["changed_severity"]
        ],
    }


@router.post(
    "/report/gaps/{gap_id}/explore",
    response_model=List[ExplorationSuggestionResponse],
)
async def explore_gap(
    gap_id: str,
    session_id: Optional[str] = Query(None, max_length=255),
    db: AsyncSession = Depends(get_db),
    analyzer: GapAnalyzer = Depends(get_gap_analyzer),
):
    """
    Research suggestions for one gap of the latest report.

    Uses the LLM provider when one is configured; otherwise (or when the
    provider fails) returns templated suggestions built from the gap itself.
    """
    report = await _require_latest(db, _session(session_id))
    gap = next((g for g in report.gaps if g.id == gap_id), None)
    if gap is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Gap '{gap_id}' not found in the latest report",
        )
    suggestions = await analyzer.suggest_exploration(gap)
    return [
        ExplorationSuggestionResponse(
            topic=s.topic, questions=s.questions, subtopics=s.subtopics, rationale=s.rationale
        )
        for s in suggestions
    ]


# ---------------------------------------------------------------------------
# POST /cache/clear
# ---------------------------------------------------------------------------

@router.post("/cache/clear", response_model=MessageResponse)
async def clear_cache(analyzer: GapAnalyzer = Depends(get_gap_analyzer)) -> MessageResponse:
    """Forget cached embeddings and the link graph; the next run rebuilds both."""
    analyzer.embedding_store.clear_cache()
    analyzer.link_graph.clear_cache()
    logger.info("Embedding cache and link graph cleared")
    return MessageResponse(message="Caches cleared")
