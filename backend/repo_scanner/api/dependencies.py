"""
FastAPI dependencies for the scan services
"""

from repo_scanner.core.ai.analyzer import SecurityAnalysisClient
from repo_scanner.core.progress.store import ProgressStore
from repo_scanner.core.scanner.jobs import ScanJobManager, scan_job_manager
from repo_scanner.core.scanner.orchestrator import ScanOrchestrator


def get_progress_store() -> ProgressStore:
    return ProgressStore()


def get_analysis_client() -> SecurityAnalysisClient:
    return SecurityAnalysisClient()


def get_orchestrator() -> ScanOrchestrator:
    return ScanOrchestrator(store=get_progress_store())


def get_job_manager() -> ScanJobManager:
    return scan_job_manager
