"""
Gap report helpers: summaries, filtering, search, statistics, comparison and
persistence of finished reports.

Reports are stored as JSON (``serialize_report``) in the ``gap_reports``
table, one row per completed run, newest last.
"""
from __future__ import annotations

import dataclasses
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from gapscan.models.database_models import GapReportRecord
from gapscan.models.domain import (
    AnalyzeOptions,
    GapReport,
    GapSeverity,
    GapType,
    KnowledgeGap,
    NoteDistance,
    SparseRegion,
    UndefinedConcept,
)
from gapscan.utils.helpers import safe_divide

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Serialisation
# ---------------------------------------------------------------------------

def gap_to_dict(gap: KnowledgeGap) -> Dict[str, Any]:
    return {
        "id": gap.id,
        "type": gap.type.value,
        "title": gap.title,
        "description": gap.description,
        "severity": gap.severity.value,
        "suggested_topics": list(gap.suggested_topics),
        "related_notes": list(gap.related_notes),
        "detected_at": gap.detected_at.isoformat(),
    }


def gap_from_dict(data: Dict[str, Any]) -> KnowledgeGap:
    return KnowledgeGap(
        id=data["id"],
        type=GapType(data["type"]),
        title=data["title"],
        description=data["description"],
        severity=GapSeverity(data["severity"]),
        suggested_topics=list(data.get("suggested_topics") or []),
        related_notes=list(data.get("related_notes") or []),
        detected_at=datetime.fromisoformat(data["detected_at"]),
    )


def serialize_report(report: GapReport) -> Dict[str, Any]:
    """JSON-safe dict (ISO timestamps, enum values)."""
    return {
        "analyzed_at": report.analyzed_at.isoformat(),
        "total_notes_analyzed": report.total_notes_analyzed,
        "total_embeddings": report.total_embeddings,
        "sparse_regions": [dataclasses.asdict(r) for r in report.sparse_regions],
        "undefined_concepts": [dataclasses.asdict(c) for c in report.undefined_concepts],
        "gaps": [gap_to_dict(g) for g in report.gaps],
        "options": dataclasses.asdict(report.options),
    }


def deserialize_report(data: Dict[str, Any]) -> GapReport:
    regions = [
        SparseRegion(
            id=r["id"],
            centroid=list(r["centroid"]),
            density=r["density"],
            nearest_notes=[NoteDistance(**n) for n in r.get("nearest_notes") or []],
            boundary_notes=list(r.get("boundary_notes") or []),
            note_count=r["note_count"],
            inferred_topic=r.get("inferred_topic"),
        )
        for r in data.get("sparse_regions") or []
    ]
    concepts = [UndefinedConcept(**c) for c in data.get("undefined_concepts") or []]
    return GapReport(
        analyzed_at=datetime.fromisoformat(data["analyzed_at"]),
        total_notes_analyzed=data.get("total_notes_analyzed", 0),
        total_embeddings=data.get("total_embeddings", 0),
        sparse_regions=regions,
        undefined_concepts=concepts,
        gaps=[gap_from_dict(g) for g in data.get("gaps") or []],
        options=AnalyzeOptions(**(data.get("options") or {})),
    )


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------

class GapReportService:
    """Read-side helpers over a :class:`GapReport` plus report storage."""

    SUMMARY_TOP_N: int = 5

    # ---- views ---------------------------------------------------------

    def summarize(self, report: GapReport, top_n: int = SUMMARY_TOP_N) -> Dict[str, Any]:
        by_type = {t.value: 0 for t in GapType}
        by_severity = {s.value: 0 for s in GapSeverity}
        for gap in report.gaps:
            by_type[gap.type.value] += 1
            by_severity[gap.severity.value] += 1

        top = sorted(
            report.gaps,
            key=lambda g: (-g.severity.rank, -len(g.suggested_topics)),
        )[:top_n]
        return {
            "total_gaps": len(report.gaps),
            "by_type": by_type,
            "by_severity": by_severity,
            "top_priority_gaps": top,
            "analyzed_at": report.analyzed_at,
        }

    def top_gaps(self, report: GapReport, n: int = 10) -> List[KnowledgeGap]:
        return report.gaps[:n]

    def filter_by_type(self, report: GapReport, gap_type: GapType) -> List[KnowledgeGap]:
        return [g for g in report.gaps if g.type == gap_type]

    def filter_by_severity(self, report: GapReport, severity: GapSeverity) -> List[KnowledgeGap]:
        return [g for g in report.gaps if g.severity == severity]

    def gaps_for_note(self, report: GapReport, note_path: str) -> List[KnowledgeGap]:
        return [g for g in report.gaps if note_path in g.related_notes]

    def search_gaps(self, report: GapReport, query: str) -> List[KnowledgeGap]:
        """Case-insensitive substring match on title, description and suggested topics."""
        q = query.lower()
        return [
            g
            for g in report.gaps
            if q in g.title.lower()
            or q in g.description.lower()
            or any(q in t.lower() for t in g.suggested_topics)
        ]

    def sparse_region_stats(self, regions: List[SparseRegion]) -> Dict[str, float]:
        if not regions:
            return {"avg_density": 0.0, "min_density": 0.0, "max_density": 0.0, "total_notes": 0}
        densities = [r.density for r in regions]
        return {
            "avg_density": safe_divide(sum(densities), len(densities)),
            "min_density": min(densities),
            "max_density": max(densities),
            "total_notes": sum(r.note_count for r in regions),
        }

    def undefined_concept_stats(self, concepts: List[UndefinedConcept]) -> Dict[str, float]:
        if not concepts:
            return {"total_concepts": 0, "total_mentions": 0, "avg_mentions": 0.0, "max_mentions": 0}
        mentions = [c.mention_count for c in concepts]
        return {
            "total_concepts": len(concepts),
            "total_mentions": sum(mentions),
            "avg_mentions": safe_divide(sum(mentions), len(concepts)),
            "max_mentions": max(mentions),
        }

    def compare_reports(self, old: GapReport, new: GapReport) -> Dict[str, Any]:
        """New, resolved and severity-changed gaps, matched by gap id."""
        old_by_id = {g.id: g for g in old.gaps}
        new_ids = {g.id for g in new.gaps}

        changed = []
        for gap in new.gaps:
            previous = old_by_id.get(gap.id)
            if previous is not None and previous.severity != gap.severity:
                changed.append(
                    {"gap": gap, "old_severity": previous.severity, "new_severity": gap.severity}
                )
        return {
            "new_gaps": [g for g in new.gaps if g.id not in old_by_id],
            "resolved_gaps": [g for g in old.gaps if g.id not in new_ids],
            "changed_severity": changed,
        }

    # ---- persistence ---------------------------------------------------

    async def save_report(self, db: AsyncSession, session_id: str, report: GapReport) -> GapReportRecord:
        record = GapReportRecord(
            session_id=session_id,
            analyzed_at=report.analyzed_at,
            total_notes_analyzed=report.total_notes_analyzed,
            total_gaps=len(report.gaps),
            report_json=serialize_report(report),
        )
        db.add(record)
        await db.flush()
        logger.info(
            "Saved gap report %s for session %s (%d gaps)", record.id, session_id, record.total_gaps
        )
        return record

    async def _recent(self, db: AsyncSession, session_id: str, limit: int) -> List[GapReportRecord]:
        result = await db.execute(
            select(GapReportRecord)
            .where(GapReportRecord.session_id == session_id)
            .order_by(GapReportRecord.id.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def latest_report(self, db: AsyncSession, session_id: str) -> Optional[GapReport]:
        rows = await self._recent(db, session_id, 1)
        return deserialize_report(rows[0].report_json) if rows else None

    async def previous_report(self, db: AsyncSession, session_id: str) -> Optional[GapReport]:
        """The report saved before the latest one."""
        rows = await self._recent(db, session_id, 2)
        return deserialize_report(rows[1].report_json) if len(rows) > 1 else None


report_service = GapReportService()
