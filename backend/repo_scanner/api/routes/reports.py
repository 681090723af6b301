"""
API routes for scan reports: progress, listing, retry and cancellation
"""
from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from repo_scanner.api.dependencies import get_job_manager, get_orchestrator, get_progress_store
from repo_scanner.core.error_handling.exceptions import ReportStateException
from repo_scanner.core.logging.structured_logger import get_logger, EventType
from repo_scanner.core.progress.store import ProgressStore
from repo_scanner.core.reports import serialize_file_progress, serialize_report, serialize_report_summary
from repo_scanner.core.scanner.jobs import ScanJobManager
from repo_scanner.core.scanner.orchestrator import ScanOrchestrator
from repo_scanner.schemas.scan import (
    CancelResponse,
    FileProgressInfo,
    ReportDetails,
    ReportList,
    ReportSummary,
    RetryResponse,
)

logger = get_logger(__name__)

router = APIRouter()


@router.get("/scan-report/{report_id}", response_model=ReportDetails)
async def get_scan_report(report_id: str, store: ProgressStore = Depends(get_progress_store)):
    """Full report with progress, severity counts and per-file results"""
    return serialize_report(store.require_report(report_id))


@router.get("/scan-report/{report_id}/summary", response_model=ReportSummary)
async def get_scan_report_summary(report_id: str, store: ProgressStore = Depends(get_progress_store)):
    return serialize_report_summary(store.require_report(report_id))


@router.get("/scan-report/{report_id}/files", response_model=List[FileProgressInfo])
async def get_scan_report_files(report_id: str, store: ProgressStore = Depends(get_progress_store)):
    """Per-file progress rows, including chunk resume offsets"""
    store.require_report(report_id)
    return [serialize_file_progress(row) for row in store.list_file_progress(report_id)]


@router.get("/scan-reports", response_model=ReportList)
async def list_scan_reports(
    repo_id: Optional[str] = None,
    scan_type: Optional[str] = None,
    status: Optional[str] = None,
    limit: int = Query(50, ge=1, le=500),
    store: ProgressStore = Depends(get_progress_store),
):
    """
    List reports newest first, optionally filtered by repository, scan type and status
    """
    reports = store.list_reports(repo_id=repo_id, scan_type=scan_type, status=status, limit=limit)
    return ReportList(
        total=len(reports),
        reports=[serialize_report_summary(report) for report in reports],
    )


@router.post("/retry-scan/{report_id}", response_model=RetryResponse, response_model_exclude_none=True)
async def retry_scan(
    report_id: str,
    orchestrator: ScanOrchestrator = Depends(get_orchestrator),
    jobs: ScanJobManager = Depends(get_job_manager),
):
    """Re-run the failed files of a finished report, or of one whose job died"""
    if jobs.is_running(report_id):
        raise ReportStateException("Cannot retry a scan that is still in progress.", report_id)

    files = orchestrator.prepare_retry(report_id, job_running=False)
    if not files:
        return RetryResponse(message="No failed files found to retry.", failed_files=0)

    jobs.start(
        report_id,
        lambda cancel_event: orchestrator.retry_failed_files(report_id, files, cancel_event)
    )
    logger.info(
        f"Retrying {len(files)} failed files",
        event_type=EventType.API_REQUEST,
        metadata={"report_id": report_id}
    )
    return RetryResponse(
        message=f"Retrying {len(files)} failed files.",
        failed_files=len(files),
        report_id=report_id,
    )


@router.post("/scan-report/{report_id}/cancel", response_model=CancelResponse)
async def cancel_scan(
    report_id: str,
    store: ProgressStore = Depends(get_progress_store),
    jobs: ScanJobManager = Depends(get_job_manager),
):
    store.require_report(report_id)
    if not jobs.cancel(report_id):
        raise ReportStateException("No running scan for this report.", report_id, status_code=409)
    return CancelResponse(message="Cancellation requested.", report_id=report_id)
