"""
Progress store: the only writer of scan report and file progress rows

Every public method is one transaction. Updates go through a fixed set of
methods, one per allowed transition, rather than free-form field maps.
"""

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session, sessionmaker

from repo_scanner.database import session_scope
from repo_scanner.models.scan import FileScanProgress, FileStatus, ScanReport, ScanStatus
from ..analyzer.classifier import RepoFile
from ..error_handling.exceptions import ReportNotFoundException, ReportStateException
from ..logging.structured_logger import get_logger, EventType

logger = get_logger(__name__)


def generate_report_id(repo_id: str, scan_type: str, now: Optional[datetime] = None) -> str:
    """YYYYMMDDHHMMSS_<repo>_<SCANTYPE>_<uuid prefix>: sortable by creation time"""
    now = now or datetime.now(timezone.utc)
    short_uuid = str(uuid.uuid4()).split("-")[0]
    return f"{now.strftime('%Y%m%d%H%M%S')}_{repo_id[:8]}_{scan_type.upper()}_{short_uuid}"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ProgressStore:
    def __init__(self, session_factory: Optional[sessionmaker] = None):
        self.session_factory = session_factory

    def _session(self):
        return session_scope(self.session_factory)

    # Reports

    def create_report(
        self,
        repo_id: str,
        repo_url: str,
        branch: str,
        scan_type: str,
        total_files: int,
        repository_info: Optional[Dict[str, Any]] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ScanReport:
        report = ScanReport(
            report_id=generate_report_id(repo_id, scan_type),
            repo_id=repo_id,
            repo_url=repo_url,
            branch=branch,
            scan_type=scan_type,
            scan_status=ScanStatus.IN_PROGRESS.value,
            total_files=total_files,
            processed_files=0,
            repository_info=repository_info,
            report_metadata=metadata or {},
        )
        with self._session() as session:
            session.add(report)
        logger.info(
            f"Created scan report with ID: {report.report_id}",
            event_type=EventType.SCAN_PROGRESS,
            metadata={"total_files": total_files, "scan_type": scan_type}
        )
        return report

    def get_report(self, report_id: str) -> Optional[ScanReport]:
        with self._session() as session:
            return self._find_report(session, report_id)

    def require_report(self, report_id: str) -> ScanReport:
        report = self.get_report(report_id)
        if report is None:
            raise ReportNotFoundException(report_id)
        return report

    def list_reports(
        self,
        repo_id: Optional[str] = None,
        scan_type: Optional[str] = None,
        status: Optional[str] = None,
        limit: Optional[int] = 50,
    ) -> List[ScanReport]:
        query = select(ScanReport)
        if repo_id:
            query = query.where(ScanReport.repo_id == repo_id)
        if scan_type:
            query = query.where(ScanReport.scan_type == scan_type)
        if status:
            query = query.where(ScanReport.scan_status == status)
        query = query.order_by(ScanReport.created_at.desc())
        if limit:
            query = query.limit(limit)

        with self._session() as session:
            return list(session.scalars(query))

    def increment_processed_files(self, report_id: str) -> int:
        """Bump processed_files by one, never past total_files"""
        with self._session() as session:
            session.execute(
                update(ScanReport)
                .where(ScanReport.report_id == report_id)
                .where(ScanReport.processed_files < ScanReport.total_files)
                .values(processed_files=ScanReport.processed_files + 1, updated_at=_utcnow())
            )
            return session.scalar(
                select(ScanReport.processed_files).where(ScanReport.report_id == report_id)
            ) or 0

    def complete_report(self, report_id: str, scan_results: Dict[str, Any], status: ScanStatus) -> ScanReport:
        if not status.is_terminal:
            raise ValueError("complete_report needs a terminal status")
        with self._session() as session:
            report = self._in_progress_report(session, report_id)
            report.scan_results = scan_results
            report.scan_status = status.value
            report.completed_at = _utcnow()
            return report

    def fail_report(
        self,
        report_id: str,
        error: str,
        status: ScanStatus = ScanStatus.FAILED,
        scan_results: Optional[Dict[str, Any]] = None,
    ) -> ScanReport:
        """Close the report with an error (failed, or partial after a cancel)"""
        if not status.is_terminal:
            raise ValueError("fail_report needs a terminal status")
        with self._session() as session:
            report = self._in_progress_report(session, report_id)
            if scan_results is not None:
                report.scan_results = scan_results
            report.scan_status = status.value
            report.error_log = error
            report.completed_at = _utcnow()
            return report

    def reopen_report(self, report_id: str) -> ScanReport:
        """Terminal -> in_progress for a retry run"""
        with self._session() as session:
            report = self._find_report(session, report_id)
            if report is None:
                raise ReportNotFoundException(report_id)
            if report.scan_status == ScanStatus.IN_PROGRESS.value:
                raise ReportStateException("Cannot retry a scan that is still in progress.", report_id)
            report.scan_status = ScanStatus.IN_PROGRESS.value
            report.error_log = None
            report.completed_at = None
            return report

    # File progress

    def start_file(self, report_id: str, file: RepoFile) -> FileScanProgress:
        """Create the row as pending, or reset an existing one for a retry"""
        with self._session() as session:
            row = self._find_file(session, report_id, file.path)
            if row is None:
                row = FileScanProgress(report_id=report_id, file_path=file.path)
                session.add(row)
            row.file_classification = file.classification.value
            row.file_status = FileStatus.PENDING.value
            row.total_chunks = 1
            row.processed_chunks = 0
            row.last_chunk_position = 0
            row.file_analysis = None
            return row

    def mark_file_in_progress(self, report_id: str, file_path: str) -> FileScanProgress:
        with self._session() as session:
            row = self._require_file(session, report_id, file_path)
            row.file_status = FileStatus.IN_PROGRESS.value
            return row

    def set_total_chunks(self, report_id: str, file_path: str, total_chunks: int) -> FileScanProgress:
        if total_chunks < 1:
            raise ValueError("total_chunks must be at least 1")
        with self._session() as session:
            row = self._require_file(session, report_id, file_path)
            row.total_chunks = total_chunks
            return row

    def record_chunk_progress(
        self, report_id: str, file_path: str, processed_chunks: int, last_chunk_position: int
    ) -> FileScanProgress:
        with self._session() as session:
            row = self._require_file(session, report_id, file_path)
            row.processed_chunks = min(processed_chunks, row.total_chunks)
            row.last_chunk_position = last_chunk_position
            return row

    def complete_file(self, report_id: str, file_path: str, analysis: Dict[str, Any]) -> FileScanProgress:
        with self._session() as session:
            row = self._require_file(session, report_id, file_path)
            row.file_status = FileStatus.COMPLETED.value
            row.processed_chunks = row.total_chunks
            row.file_analysis = analysis
            return row

    def fail_file(self, report_id: str, file_path: str, error_payload: Dict[str, Any]) -> FileScanProgress:
        if not error_payload:
            raise ValueError("failed files need an error payload")
        with self._session() as session:
            row = self._require_file(session, report_id, file_path)
            row.file_status = FileStatus.FAILED.value
            row.file_analysis = error_payload
            return row

    def get_file_progress(self, report_id: str, file_path: str) -> Optional[FileScanProgress]:
        with self._session() as session:
            return self._find_file(session, report_id, file_path)

    def list_file_progress(self, report_id: str) -> List[FileScanProgress]:
        with self._session() as session:
            return list(session.scalars(
                select(FileScanProgress)
                .where(FileScanProgress.report_id == report_id)
                .order_by(FileScanProgress.created_at, FileScanProgress.file_path)
            ))

    def failed_files(self, report_id: str) -> List[FileScanProgress]:
        with self._session() as session:
            return list(session.scalars(
                select(FileScanProgress)
                .where(FileScanProgress.report_id == report_id)
                .where(FileScanProgress.file_status == FileStatus.FAILED.value)
            ))

    # Helpers

    def _find_report(self, session: Session, report_id: str) -> Optional[ScanReport]:
        return session.scalar(select(ScanReport).where(ScanReport.report_id == report_id))

    def _in_progress_report(self, session: Session, report_id: str) -> ScanReport:
        report = self._find_report(session, report_id)
        if report is None:
            raise ReportNotFoundException(report_id)
        if report.scan_status != ScanStatus.IN_PROGRESS.value:
            raise ReportStateException(
                f"Report {report_id} is already {report.scan_status}", report_id, status_code=409
            )
        return report

    def _find_file(self, session: Session, report_id: str, file_path: str) -> Optional[FileScanProgress]:
        return session.scalar(
            select(FileScanProgress)
            .where(FileScanProgress.report_id == report_id)
            .where(FileScanProgress.file_path == file_path)
        )

    def _require_file(self, session: Session, report_id: str, file_path: str) -> FileScanProgress:
        row = self._find_file(session, report_id, file_path)
        if row is None:
            raise ReportStateException(f"No progress row for {file_path} in report {report_id}", report_id)
        return row
