"""
API routes for starting repository scans and direct snippet analysis
"""
from fastapi import APIRouter, Depends

from repo_scanner.api.dependencies import get_analysis_client, get_job_manager, get_orchestrator
from repo_scanner.core.ai.analyzer import SecurityAnalysisClient
from repo_scanner.core.error_handling.exceptions import ValidationException
from repo_scanner.core.logging.structured_logger import get_logger, EventType
from repo_scanner.core.reports import NO_FILES_MESSAGE
from repo_scanner.core.scanner.jobs import ScanJobManager
from repo_scanner.core.scanner.orchestrator import ScanOrchestrator
from repo_scanner.schemas.scan import (
    DirectScanRequest,
    DirectScanResponse,
    ScanRepositoryRequest,
    ScanRepositoryResponse,
)

logger = get_logger(__name__)

router = APIRouter()


@router.post("/scan-repository", response_model=ScanRepositoryResponse)
async def scan_repository(
    request: ScanRepositoryRequest,
    orchestrator: ScanOrchestrator = Depends(get_orchestrator),
    jobs: ScanJobManager = Depends(get_job_manager),
):
    """
    Clone a repository, register a scan report and start the scan in the background
    """
    report, files = await orchestrator.start_scan(
        repo_url=request.repo_url,
        branch=request.branch,
        scan_type=request.scan_type,
        options=request.options,
    )

    if files:
        report_id = report.report_id
        jobs.start(
            report_id,
            lambda cancel_event: orchestrator.process_repository(report_id, files, cancel_event)
        )
        message = "Scan started. Use the report_id to check progress."
    else:
        message = NO_FILES_MESSAGE

    logger.info(
        f"Scan requested for {request.repo_url}",
        event_type=EventType.API_REQUEST,
        metadata={"report_id": report.report_id, "files_to_scan": len(files)}
    )

    return ScanRepositoryResponse(
        report_id=report.report_id,
        repo_id=report.repo_id,
        scan_type=report.scan_type,
        status=report.scan_status,
        files_to_scan=len(files),
        message=message,
    )


@router.post("/scan", response_model=DirectScanResponse)
async def scan_snippet(
    request: DirectScanRequest,
    client: SecurityAnalysisClient = Depends(get_analysis_client),
):
    """Analyze a pasted code snippet and/or dependency listing"""
    if not request.code and not request.dependencies:
        raise ValidationException("Please provide code or dependencies to scan.")

    analysis = await client.analyze_snippet(code=request.code, dependencies=request.dependencies)
    return DirectScanResponse(analysis=analysis)
