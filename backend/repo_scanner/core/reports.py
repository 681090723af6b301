"""
Report rendering: progress, severity histogram and per-file outcome helpers
"""

import re
from typing import Any, Dict, Iterable, List, Optional

from repo_scanner.models.scan import FileScanProgress, ScanReport, ScanStatus

NO_FILES_MESSAGE = "No files found matching the scan criteria."

# Lower-cased text; "." stops at newlines
SEVERITY_PATTERNS = {
    "Critical": re.compile(r"critical|severity.*critical|critical.*severity"),
    "High": re.compile(r"high.*severity|severity.*high"),
    "Medium": re.compile(r"medium.*severity|severity.*medium"),
    "Low": re.compile(r"low.*severity|severity.*low"),
}


def empty_histogram() -> Dict[str, int]:
    return {"Low": 0, "Medium": 0, "High": 0, "Critical": 0}


def count_severity_mentions(text: str) -> Dict[str, int]:
    counts = empty_histogram()
    if not text:
        return counts
    lowered = text.lower()
    for level, pattern in SEVERITY_PATTERNS.items():
        counts[level] = len(pattern.findall(lowered))
    return counts


def _analysis_texts(entry: Any) -> Iterable[str]:
    if not isinstance(entry, dict):
        return
    if isinstance(entry.get("analysis"), str):
        yield entry["analysis"]
    for chunk in entry.get("chunks") or []:
        if isinstance(chunk, dict) and isinstance(chunk.get("analysis"), str):
            yield chunk["analysis"]


def count_vulnerabilities(scan_results: Optional[Dict[str, Any]]) -> Dict[str, int]:
    """Severity keyword counts over every single-call and chunk analysis"""
    totals = empty_histogram()
    for entry in (scan_results or {}).values():
        for text in _analysis_texts(entry):
            for level, count in count_severity_mentions(text).items():
                totals[level] += count
    return totals


def is_failed_result(entry: Any) -> bool:
    """A file outcome counts as failed when it carries an error, or every chunk errored"""
    if not isinstance(entry, dict):
        return False
    if entry.get("error"):
        return True
    chunks = entry.get("chunks")
    if chunks:
        return all(isinstance(chunk, dict) and "error" in chunk for chunk in chunks)
    return False


def failed_result_paths(scan_results: Optional[Dict[str, Any]]) -> List[str]:
    return [path for path, entry in (scan_results or {}).items() if is_failed_result(entry)]


def final_status(scan_results: Dict[str, Any]) -> ScanStatus:
    if any(is_failed_result(entry) for entry in scan_results.values()):
        return ScanStatus.PARTIAL
    return ScanStatus.COMPLETED


def progress_percentage(processed_files: int, total_files: int) -> float:
    if not total_files:
        return 100.0
    return round(processed_files / total_files * 100, 2)


def _isoformat(value) -> Optional[str]:
    return value.isoformat() if value else None


def serialize_report_summary(report: ScanReport) -> Dict[str, Any]:
    return {
        "report_id": report.report_id,
        "repo_id": report.repo_id,
        "repo_url": report.repo_url,
        "branch": report.branch,
        "scan_type": report.scan_type,
        "status": report.scan_status,
        "progress": {
            "total_files": report.total_files,
            "processed_files": report.processed_files,
            "percentage": progress_percentage(report.processed_files, report.total_files),
        },
        "vulnerability_count": count_vulnerabilities(report.scan_results),
        "error_log": report.error_log,
        "created_at": _isoformat(report.created_at),
        "updated_at": _isoformat(report.updated_at),
        "completed_at": _isoformat(report.completed_at),
    }


def serialize_report(report: ScanReport) -> Dict[str, Any]:
    data = serialize_report_summary(report)
    data["repository_info"] = report.repository_info
    data["scan_results"] = report.scan_results or {}
    data["metadata"] = report.report_metadata or {}
    return data


def serialize_file_progress(row: FileScanProgress) -> Dict[str, Any]:
    return {
        "file_path": row.file_path,
        "file_classification": row.file_classification,
        "file_status": row.file_status,
        "total_chunks": row.total_chunks,
        "processed_chunks": row.processed_chunks,
        "last_chunk_position": row.last_chunk_position,
        "file_analysis": row.file_analysis,
        "updated_at": _isoformat(row.updated_at),
    }
