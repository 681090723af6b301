"""
Scan Orchestrator - drives a repository scan file by file

Files run sequentially inside a report. Each file is fetched, sized with the
token estimate and sent to the analysis client either whole or in chunks.
Progress is persisted after every chunk and every file so a failed file can be
retried later without redoing finished work.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Set, Tuple

from repo_scanner.config import settings
from repo_scanner.models.scan import FileStatus, ScanReport, ScanStatus
from ..ai.analyzer import SecurityAnalysisClient
from ..analyzer.chunker import chunk_content, estimate_tokens
from ..analyzer.classifier import FileCategory, RepoFile, ScanType, collect_files, prioritize_files
from ..error_handling.exceptions import (
    RepositoryServiceException,
    ReportStateException,
    ScanCancelledException,
    ValidationException,
)
from ..logging.structured_logger import get_logger, EventType, with_report_context
from ..progress.store import ProgressStore
from ..reports import NO_FILES_MESSAGE, failed_result_paths, final_status
from ..repository.client import RepositoryServiceClient

logger = get_logger(__name__)

EMPTY_CONTENT_ERROR = "Empty file or could not retrieve content"
CANCELLED_MESSAGE = "Scan cancelled by user"
INTERRUPTED_MESSAGE = "Scan interrupted before completion"


@dataclass
class ScanSettings:
    """Pipeline tuning knobs"""
    chunk_size: int = 6000
    max_tokens_per_request: int = 25000
    request_delay: float = 5.0
    chunk_delay: float = 3.0

    @classmethod
    def from_settings(cls) -> "ScanSettings":
        return cls(
            chunk_size=settings.chunk_size,
            max_tokens_per_request=settings.max_tokens_per_request,
            request_delay=settings.request_delay_seconds,
            chunk_delay=settings.chunk_delay_seconds,
        )


class ScanOrchestrator:
    """
    Coordinates the repository service, the analysis client and the progress store
    """

    def __init__(
        self,
        store: Optional[ProgressStore] = None,
        repository_client: Optional[RepositoryServiceClient] = None,
        analysis_client: Optional[SecurityAnalysisClient] = None,
        scan_settings: Optional[ScanSettings] = None,
        sleep=asyncio.sleep,
    ):
        self.store = store or ProgressStore()
        self.repository_client = repository_client or RepositoryServiceClient()
        self._analysis_client = analysis_client
        self.scan_settings = scan_settings or ScanSettings.from_settings()
        self._sleep = sleep

    @property
    def analysis_client(self) -> SecurityAnalysisClient:
        if self._analysis_client is None:
            self._analysis_client = SecurityAnalysisClient()
        return self._analysis_client

    # Scan start

    async def start_scan(
        self,
        repo_url: str,
        branch: str = "main",
        scan_type: str = ScanType.COMPLETE.value,
        options: Optional[Dict[str, Any]] = None,
    ) -> Tuple[ScanReport, List[RepoFile]]:
        """
        Clone, list and filter the repository, then create the report.

        Returns the report and the prioritized files the background job should
        process. An empty file list closes the report straight away.
        """
        if not repo_url:
            raise ValidationException("Please provide a repository URL.")
        try:
            ScanType(scan_type)
        except ValueError:
            raise ValidationException("Invalid scan type. Use: complete, sbom, or vulnerability.")

        logger.info(f"Cloning repository: {repo_url}", event_type=EventType.SCAN_PROGRESS)
        repo_id = await self.repository_client.clone_repository(repo_url, branch)
        repo_info = await self.repository_client.get_repository_structure(repo_id)

        files = prioritize_files(collect_files(repo_info.get("structure") or {}, scan_type))
        logger.info(
            f"Found {len(files)} files to scan",
            event_type=EventType.SCAN_PROGRESS,
            metadata={"repo_id": repo_id, "scan_type": scan_type}
        )

        report = self.store.create_report(
            repo_id=repo_id,
            repo_url=repo_url,
            branch=branch,
            scan_type=scan_type,
            total_files=len(files),
            repository_info={
                "total_lines": repo_info.get("total_lines"),
                "file_types": repo_info.get("file_types"),
                "languages": repo_info.get("languages"),
                "structure": repo_info.get("structure"),
            },
            metadata=options,
        )

        if not files:
            report = self.store.complete_report(
                report.report_id, {"message": NO_FILES_MESSAGE}, ScanStatus.COMPLETED
            )
        return report, files

    # Background runs

    async def process_repository(
        self,
        report_id: str,
        files: List[RepoFile],
        cancel_event: Optional[asyncio.Event] = None,
    ) -> Dict[str, Any]:
        """Full run over every selected file; returns the per-file result map"""

        @with_report_context(report_id)
        async def run():
            report = self.store.require_report(report_id)
            return await self._run(report, files, {}, set(), cancel_event)

        return await run()

    def prepare_retry(self, report_id: str, job_running: bool = True) -> List[RepoFile]:
        """
        Pick the failed files of a finished report and re-open it.

        A report still marked in_progress is only accepted when no job owns it
        (``job_running=False``); it is first closed as interrupted. Nothing is
        written when a finished report has nothing to retry.
        """
        report = self.store.require_report(report_id)
        if not ScanStatus(report.scan_status).is_terminal:
            if job_running:
                raise ReportStateException("Cannot retry a scan that is still in progress.", report_id)
            report = self.close_interrupted(report_id)

        rows = {row.file_path: row for row in self.store.list_file_progress(report_id)}
        failed_paths = failed_result_paths(report.scan_results)
        failed_paths += [
            path for path, row in rows.items()
            if row.file_status != FileStatus.COMPLETED.value and path not in failed_paths
        ]
        if not failed_paths:
            return []

        results = report.scan_results or {}
        files = []
        for path in failed_paths:
            classification = None
            if path in rows:
                classification = rows[path].file_classification
            elif isinstance(results.get(path), dict):
                classification = results[path].get("file_type")
            files.append(RepoFile(path=path, classification=FileCategory(classification or FileCategory.OTHER.value)))

        self.store.reopen_report(report_id)
        logger.info(
            f"Retrying {len(files)} failed files",
            event_type=EventType.SCAN_PROGRESS,
            metadata={"report_id": report_id}
        )
        return prioritize_files(files)

    def close_interrupted(self, report_id: str) -> ScanReport:
        """
        Close a report whose job died while it was in_progress.

        Results are rebuilt from the finished file rows. Files that never
        finished, including selected files that were never started, get an
        error entry so a retry picks them up.
        """
        report = self.store.require_report(report_id)
        rows = self.store.list_file_progress(report_id)
        results = dict(report.scan_results or {})
        finished = set()
        for row in rows:
            if row.file_status in (FileStatus.COMPLETED.value, FileStatus.FAILED.value):
                finished.add(row.file_path)
                if row.file_analysis is not None:
                    results[row.file_path] = row.file_analysis

        unfinished = {
            row.file_path: row.file_classification for row in rows if row.file_path not in finished
        }
        structure = (report.repository_info or {}).get("structure") or {}
        for file in collect_files(structure, report.scan_type):
            if file.path not in finished:
                unfinished.setdefault(file.path, file.classification.value)

        for path, classification in unfinished.items():
            results[path] = {"file_path": path, "file_type": classification, "error": INTERRUPTED_MESSAGE}

        status = ScanStatus.PARTIAL if report.processed_files > 0 else ScanStatus.FAILED
        logger.warning(
            f"Closing interrupted scan with {len(unfinished)} unfinished files",
            event_type=EventType.SCAN_PROGRESS,
            metadata={"report_id": report_id, "status": status.value}
        )
        return self.store.fail_report(report_id, INTERRUPTED_MESSAGE, status=status, scan_results=results)

    async def retry_failed_files(
        self,
        report_id: str,
        files: List[RepoFile],
        cancel_event: Optional[asyncio.Event] = None,
    ) -> Dict[str, Any]:
        """Re-run the given files and merge the outcomes over the previous results"""

        @with_report_context(report_id)
        async def run():
            report = self.store.require_report(report_id)
            previous = dict(report.scan_results or {})
            previous.pop("message", None)
            counted = {
                row.file_path for row in self.store.list_file_progress(report_id)
                if row.file_status in (FileStatus.COMPLETED.value, FileStatus.FAILED.value)
            }
            return await self._run(report, files, previous, counted, cancel_event)

        return await run()

    async def _run(
        self,
        report: ScanReport,
        files: List[RepoFile],
        results: Dict[str, Any],
        already_counted: Set[str],
        cancel_event: Optional[asyncio.Event],
    ) -> Dict[str, Any]:
        report_id = report.report_id
        logger.info(f"Starting scan of {len(files)} files", event_type=EventType.SCAN_PROGRESS)

        try:
            for index, file in enumerate(files):
                self._check_cancelled(report_id, cancel_event)
                logger.info(
                    f"Processing file {index + 1}/{len(files)}: {file.path}",
                    event_type=EventType.SCAN_PROGRESS,
                    metadata={"classification": file.classification.value}
                )

                results[file.path] = await self._process_file(report, file, cancel_event)
                if file.path not in already_counted:
                    self.store.increment_processed_files(report_id)

                if index < len(files) - 1:
                    await self._pause(self.scan_settings.request_delay, cancel_event)

        except ScanCancelledException:
            for file in files:
                results.setdefault(file.path, {
                    "file_path": file.path,
                    "file_type": file.classification.value,
                    "error": CANCELLED_MESSAGE,
                })
            processed = self.store.require_report(report_id).processed_files
            status = ScanStatus.PARTIAL if processed > 0 else ScanStatus.FAILED
            self.store.fail_report(report_id, CANCELLED_MESSAGE, status=status, scan_results=results)
            logger.warning("Scan cancelled", event_type=EventType.SCAN_PROGRESS, metadata={"status": status.value})
            return results

        except Exception as e:
            logger.error(f"Error processing repository: {e}", error=e, event_type=EventType.ERROR_OCCURRED)
            self.store.fail_report(report_id, str(e), scan_results=results)
            raise

        status = final_status(results)
        self.store.complete_report(report_id, results, status)
        logger.info(
            f"Scan completed for report ID: {report_id}",
            event_type=EventType.SCAN_PROGRESS,
            metadata={"status": status.value, "files": len(results)}
        )
        return results

    async def _process_file(
        self,
        report: ScanReport,
        file: RepoFile,
        cancel_event: Optional[asyncio.Event],
    ) -> Dict[str, Any]:
        report_id = report.report_id
        self.store.start_file(report_id, file)

        try:
            content = await self.repository_client.get_file_content(report.repo_id, file.path)
        except RepositoryServiceException as e:
            logger.warning(f"Could not fetch {file.path}: {e}", event_type=EventType.EXTERNAL_SERVICE)
            content = None

        if not content or not content.strip():
            payload = {
                "file_path": file.path,
                "file_type": file.classification.value,
                "error": EMPTY_CONTENT_ERROR,
            }
            self.store.fail_file(report_id, file.path, payload)
            return payload

        self.store.mark_file_in_progress(report_id, file.path)

        estimated = estimate_tokens(content)
        if estimated <= self.scan_settings.max_tokens_per_request:
            result = await self.analysis_client.analyze(content, file, report.scan_type)
            if "error" in result:
                self.store.fail_file(report_id, file.path, result)
            else:
                self.store.complete_file(report_id, file.path, result)
            return result

        logger.info(
            f"File {file.path} is large ({estimated} tokens), splitting into chunks",
            event_type=EventType.RATE_LIMIT
        )
        return await self._process_chunked_file(report, file, content, cancel_event)

    async def _process_chunked_file(
        self,
        report: ScanReport,
        file: RepoFile,
        content: str,
        cancel_event: Optional[asyncio.Event],
    ) -> Dict[str, Any]:
        report_id = report.report_id
        chunks = chunk_content(content, self.scan_settings.chunk_size)
        self.store.set_total_chunks(report_id, file.path, len(chunks))

        slots = []
        for index, chunk in enumerate(chunks, start=1):
            self._check_cancelled(report_id, cancel_event)

            result = await self.analysis_client.analyze(
                chunk.content, file, report.scan_type,
                chunk_info=f"chunk {index}/{len(chunks)}, {chunk.label}"
            )
            if "error" in result:
                slots.append({"chunk_info": chunk.label, "error": result["error"]})
            else:
                slots.append({"chunk_info": chunk.label, "analysis": result["analysis"]})

            self.store.record_chunk_progress(report_id, file.path, index, chunk.end)

            if not chunk.is_last:
                await self._pause(self.scan_settings.chunk_delay, cancel_event)

        payload = {
            "file_path": file.path,
            "file_type": file.classification.value,
            "file_info": f"Processed in {len(chunks)} chunks with TPM management",
            "chunks": slots,
        }
        if any("analysis" in slot for slot in slots):
            self.store.complete_file(report_id, file.path, payload)
        else:
            payload["error"] = f"All {len(chunks)} chunks failed analysis"
            self.store.fail_file(report_id, file.path, payload)
        return payload

    def _check_cancelled(self, report_id: str, cancel_event: Optional[asyncio.Event]):
        if cancel_event is not None and cancel_event.is_set():
            raise ScanCancelledException(report_id)

    async def _pause(self, seconds: float, cancel_event: Optional[asyncio.Event]):
        """Courtesy delay; returns early once the scan is cancelled"""
        if seconds <= 0:
            return
        if cancel_event is None:
            await self._sleep(seconds)
            return
        sleeper = asyncio.ensure_future(self._sleep(seconds))
        waiter = asyncio.ensure_future(cancel_event.wait())
        try:
            await asyncio.wait({sleeper, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            sleeper.cancel()
            waiter.cancel()
        if sleeper.done() and not sleeper.cancelled():
            sleeper.result()
