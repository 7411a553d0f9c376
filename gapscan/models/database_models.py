"""
SQLAlchemy ORM models for the GapScan database.
Finished gap reports are stored as JSON documents, one row per run.
"""
from sqlalchemy import (
    Column,
    Integer,
    String,
    DateTime,
    JSON,
)
from sqlalchemy.sql import func

from gapscan.database import Base


class GapReportRecord(Base):
    """A completed gap analysis for one session."""

    __tablename__ = "gap_reports"

    id = Column(Integer, primary_key=True, index=True)
    session_id = Column(String(255), nullable=False, index=True)
    analyzed_at = Column(DateTime(timezone=True), nullable=False)
    total_notes_analyzed = Column(Integer, nullable=False, default=0)
    total_gaps = Column(Integer, nullable=False, default=0)
    report_json = Column(JSON, nullable=False)  # serialize_report() output
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    def __repr__(self):
        return f"<GapReportRecord(id={self.id}, session='{self.session_id}', gaps={self.total_gaps})>"
