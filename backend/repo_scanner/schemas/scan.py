from pydantic import BaseModel, field_validator
from typing import Optional, Dict, List, Any


class ScanRepositoryRequest(BaseModel):
    repo_url: Optional[str] = None
    branch: Optional[str] = "main"
    scan_type: Optional[str] = "complete"
    options: Dict[str, Any] = {}

    @field_validator('repo_url')
    @classmethod
    def strip_repo_url(cls, v):
        return v.strip() if v else v

    @field_validator('branch', 'scan_type')
    @classmethod
    def default_when_blank(cls, v, info):
        if v is None or not v.strip():
            return "main" if info.field_name == "branch" else "complete"
        return v.strip()


class ScanRepositoryResponse(BaseModel):
    report_id: str
    repo_id: str
    scan_type: str
    status: str
    files_to_scan: int
    message: str


class ScanProgress(BaseModel):
    total_files: int
    processed_files: int
    percentage: float


class ReportSummary(BaseModel):
    report_id: str
    repo_id: str
    repo_url: str
    branch: Optional[str] = None
    scan_type: str
    status: str
    progress: ScanProgress
    vulnerability_count: Dict[str, int]
    error_log: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    completed_at: Optional[str] = None


class ReportDetails(ReportSummary):
    repository_info: Optional[Dict[str, Any]] = None
    scan_results: Dict[str, Any] = {}
    metadata: Dict[str, Any] = {}


class ReportList(BaseModel):
    total: int
    reports: List[ReportSummary]


class RetryResponse(BaseModel):
    message: str
    failed_files: int
    report_id: Optional[str] = None


class CancelResponse(BaseModel):
    message: str
    report_id: str


class FileProgressInfo(BaseModel):
    file_path: str
    file_classification: str
    file_status: str
    total_chunks: int
    processed_chunks: int
    last_chunk_position: int
    file_analysis: Optional[Dict[str, Any]] = None
    updated_at: Optional[str] = None


class DirectScanRequest(BaseModel):
    code: Optional[str] = None
    dependencies: Optional[Any] = None


class DirectScanResponse(BaseModel):
    analysis: str
