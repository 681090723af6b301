import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, Integer, String, DateTime, Text, JSON, ForeignKey, Index, UniqueConstraint
from repo_scanner.database import Base
from enum import Enum


def _utcnow():
    return datetime.now(timezone.utc)


class ScanStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    PARTIAL = "partial"

    @property
    def is_terminal(self) -> bool:
        return self != ScanStatus.IN_PROGRESS


class FileStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class ScanReport(Base):
    __tablename__ = "scan_reports"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    report_id = Column(String(255), unique=True, nullable=False, index=True)
    repo_id = Column(String(255), nullable=False, index=True)
    repo_url = Column(String(500), nullable=False)
    branch = Column(String(255), default="main")
    scan_type = Column(String(50), nullable=False, index=True)
    scan_status = Column(String(50), default=ScanStatus.IN_PROGRESS.value, nullable=False)

    # Progress
    total_files = Column(Integer, default=0, nullable=False)
    processed_files = Column(Integer, default=0, nullable=False)

    # Results
    repository_info = Column(JSON)
    scan_results = Column(JSON)
    error_log = Column(Text)
    report_metadata = Column(JSON, default=dict)

    # Timing
    created_at = Column(DateTime(timezone=True), default=_utcnow, index=True)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)
    completed_at = Column(DateTime(timezone=True))


class FileScanProgress(Base):
    __tablename__ = "file_scan_progress"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    report_id = Column(String(255), ForeignKey("scan_reports.report_id"), nullable=False, index=True)
    file_path = Column(String(1000), nullable=False)
    file_classification = Column(String(50), nullable=False)
    total_chunks = Column(Integer, default=1, nullable=False)
    processed_chunks = Column(Integer, default=0, nullable=False)
    file_status = Column(String(50), default=FileStatus.PENDING.value, nullable=False)
    last_chunk_position = Column(Integer, default=0, nullable=False)
    file_analysis = Column(JSON)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        UniqueConstraint("report_id", "file_path", name="uq_file_scan_progress_report_file"),
        Index("idx_file_scan_progress_file_path", "file_path"),
    )
