"""
In-memory singleton that tracks background gap-analysis runs per session.

Usage
-----
    from gapscan.services.pipeline_manager import pipeline_manager

    status = pipeline_manager.start(session_id, analyzer, options, on_complete=save)
    # ... later ...
    current = pipeline_manager.get_status(session_id)
    pipeline_manager.cancel(session_id)
"""
from __future__ import annotations

import asyncio
import dataclasses
import enum
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional

from gapscan.models.domain import AnalyzeOptions, GapAnalysisProgress, GapReport
from gapscan.services.gap_analyzer import AnalysisAlreadyRunning, GapAnalyzer

logger = logging.getLogger(__name__)

ReportHook = Callable[[str, GapReport], Awaitable[Any]]


# ---------------------------------------------------------------------------
# Run phase enum (analysis phases plus run bookkeeping states)
# ---------------------------------------------------------------------------

class RunPhase(str, enum.Enum):
    QUEUED = "queued"
    LOADING = "loading"
    CLUSTERING = "clustering"
    ANALYZING_LINKS = "analyzing_links"
    GENERATING_SUGGESTIONS = "generating_suggestions"
    COMPLETE = "complete"
    CANCELLED = "cancelled"
    FAILED = "failed"


_TERMINAL = (RunPhase.COMPLETE, RunPhase.CANCELLED, RunPhase.FAILED)


# ---------------------------------------------------------------------------
# Run status (mutable dataclass shared between task and poller)
# ---------------------------------------------------------------------------

@dataclasses.dataclass
class AnalysisStatus:
    session_id: str
    phase: RunPhase = RunPhase.QUEUED
    progress: int = 0
    message: str = ""
    errors: List[str] = dataclasses.field(default_factory=list)
    started_at: float = dataclasses.field(default_factory=time.monotonic)
    completed_at: Optional[float] = None
    report: Optional[GapReport] = None

    @property
    def elapsed_seconds(self) -> float:
        end = self.completed_at if self.completed_at else time.monotonic()
        return round(end - self.started_at, 2)

    def update(self, event: GapAnalysisProgress) -> None:
        self.phase = RunPhase(event.phase.value)
        self.progress = event.progress
        self.message = event.message


# ---------------------------------------------------------------------------
# Manager (class-level state acts as a singleton)
# ---------------------------------------------------------------------------

class PipelineManager:
    """Manages one background analysis asyncio.Task per session."""

    _tasks: Dict[str, asyncio.Task] = {}
    _status: Dict[str, AnalysisStatus] = {}
    _analyzers: Dict[str, GapAnalyzer] = {}

    @classmethod
    def is_running(cls, session_id: str) -> bool:
        task = cls._tasks.get(session_id)
        return task is not None and not task.done()

    @classmethod
    def get_status(cls, session_id: str) -> Optional[AnalysisStatus]:
        return cls._status.get(session_id)

    @classmethod
    def start(
        cls,
        session_id: str,
        analyzer: GapAnalyzer,
        options: Optional[AnalyzeOptions] = None,
        on_complete: Optional[ReportHook] = None,
    ) -> AnalysisStatus:
        """
        Launch a background analysis for *session_id*.

        Raises :class:`AnalysisAlreadyRunning` when a run for the session is
        still in flight (requests are rejected, never queued).  *on_complete*
        is awaited with the finished report, e.g. to persist it.
        """
        if cls.is_running(session_id) or analyzer.is_running:
            raise AnalysisAlreadyRunning(f"Analysis already running for session {session_id}")

        status = AnalysisStatus(session_id=session_id)
        cls._status[session_id] = status
        cls._analyzers[session_id] = analyzer
        analyzer.on_progress(status.update)

        async def _wrapper() -> None:
            try:
                report = await analyzer.analyze(options)
                status.report = report
                if analyzer.cancelled:
                    status.phase = RunPhase.CANCELLED
                    status.message = "Analysis cancelled"
                    return
                if on_complete is not None:
                    await on_complete(session_id, report)
                status.phase = RunPhase.COMPLETE
            except Exception as exc:
                logger.error(
                    "Analysis task failed for session %s: %s", session_id, exc, exc_info=True
                )
                status.phase = RunPhase.FAILED
                status.errors.append(f"analysis crash: {str(exc)[:200]}")
            finally:
                status.completed_at = time.monotonic()
                if status.phase not in _TERMINAL:
                    status.phase = RunPhase.FAILED
                analyzer.on_progress(None)

        task = asyncio.create_task(_wrapper())
        cls._tasks[session_id] = task
        task.add_done_callback(lambda _t: cls._cleanup(session_id))

        logger.info("Analysis task started for session %s", session_id)
        return status

    @classmethod
    def cancel(cls, session_id: str) -> bool:
        """Request cooperative cancellation; False when nothing is running."""
        if not cls.is_running(session_id):
            return False
        analyzer = cls._analyzers.get(session_id)
        if analyzer is None:
            return False
        analyzer.cancel()
        logger.info("Cancellation requested for session %s", session_id)
        return True

    @classmethod
    async def wait(cls, session_id: str) -> Optional[AnalysisStatus]:
        """Await the session's task if one is in flight."""
        task = cls._tasks.get(session_id)
        if task is not None:
            await asyncio.shield(task)
        return cls._status.get(session_id)

    @classmethod
    def reset(cls) -> None:
        """Forget every task and status."""
        cls._tasks.clear()
        cls._status.clear()
        cls._analyzers.clear()

    @classmethod
    def _cleanup(cls, session_id: str) -> None:
        """Remove the task reference (status is kept for polling)."""
        cls._tasks.pop(session_id, None)
        cls._analyzers.pop(session_id, None)


# Module-level singleton instance
pipeline_manager = PipelineManager
