"""
Integration tests for the scan orchestrator over an in-memory database
"""

import asyncio

import pytest

from repo_scanner.core.error_handling.exceptions import (
    AnalysisProviderException,
    ReportStateException,
    RepositoryServiceException,
    ValidationException,
)
from repo_scanner.core.reports import NO_FILES_MESSAGE
from repo_scanner.core.scanner.orchestrator import CANCELLED_MESSAGE, EMPTY_CONTENT_ERROR, INTERRUPTED_MESSAGE
from repo_scanner.models.scan import ScanStatus
from conftest import FakeProvider, make_orchestrator, overloaded

REPO_URL = "https://github.com/org/repo"


async def run_scan(orchestrator, scan_type="complete", cancel_event=None):
    report, files = await orchestrator.start_scan(REPO_URL, "main", scan_type)
    results = await orchestrator.process_repository(report.report_id, files, cancel_event)
    return report.report_id, results


class TestProcessRepository:
    """Test full scans"""

    @pytest.mark.asyncio
    async def test_manifest_small_and_chunked_file(self, store, clock, scheduler):
        files = {
            "src/big.py": "b" * 160000,
            "src/small.py": "s" * 8000,
            "package.json": '{"dependencies": {"lodash": "4.17.0"}}',
        }
        provider = FakeProvider()
        orchestrator = make_orchestrator(store, files, provider, clock, scheduler, chunk_size=24000)

        report_id, results = await run_scan(orchestrator)

        assert orchestrator.repository_client.fetches == ["package.json", "src/small.py", "src/big.py"]
        assert len(provider.prompts) == 9

        report = store.get_report(report_id)
        assert report.scan_status == ScanStatus.COMPLETED.value
        assert report.processed_files == 3
        assert report.total_files == 3
        assert report.completed_at is not None

        big = results["src/big.py"]
        assert big["file_info"] == "Processed in 7 chunks with TPM management"
        assert [slot["chunk_info"] for slot in big["chunks"]][:2] == ["Chars 0-24000", "Chars 24000-48000"]
        assert all("analysis" in slot for slot in big["chunks"])

        row = store.get_file_progress(report_id, "src/big.py")
        assert (row.total_chunks, row.processed_chunks, row.last_chunk_position) == (7, 7, 160000)
        assert row.file_status == "completed"

        assert scheduler.metrics.total_tokens_reserved == 2000 + 40000 + 10
        assert clock.sleeps == []

    @pytest.mark.asyncio
    async def test_overloaded_provider_backs_off(self, store, clock, scheduler):
        provider = FakeProvider([overloaded(), overloaded(), overloaded(), "looks fine"])
        orchestrator = make_orchestrator(store, {"app.py": "print(1)"}, provider, clock, scheduler)

        report_id, results = await run_scan(orchestrator)

        assert clock.sleeps == [3.0, 6.0, 12.0]
        assert results["app.py"]["analysis"] == "looks fine"
        assert store.get_report(report_id).scan_status == "completed"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("with_cancel_event", [False, True])
    async def test_courtesy_delays_between_files_and_chunks(self, store, clock, scheduler, with_cancel_event):
        files = {
            "package.json": "{}",
            "src/small.py": "s = 1",
            "src/big.py": "b" * 150000,
        }
        orchestrator = make_orchestrator(
            store, files, FakeProvider(), clock, scheduler,
            chunk_size=60000, request_delay=5.0, chunk_delay=3.0,
        )
        cancel_event = asyncio.Event() if with_cancel_event else None

        report_id, _ = await run_scan(orchestrator, cancel_event=cancel_event)

        # after each of the first two files, then between the three chunks of the last one
        assert clock.sleeps == [5.0, 5.0, 3.0, 3.0]
        assert store.get_report(report_id).scan_status == "completed"

    @pytest.mark.asyncio
    async def test_single_file_has_no_courtesy_delay(self, store, clock, scheduler):
        orchestrator = make_orchestrator(
            store, {"a.py": "x"}, FakeProvider(), clock, scheduler, request_delay=5.0, chunk_delay=3.0
        )

        await run_scan(orchestrator, cancel_event=asyncio.Event())

        assert clock.sleeps == []

    @pytest.mark.asyncio
    async def test_empty_file_fails_without_provider_call(self, store, clock, scheduler):
        provider = FakeProvider()
        files = {"package.json": "{}", "src/empty.py": "  \n  "}
        orchestrator = make_orchestrator(store, files, provider, clock, scheduler)

        report_id, results = await run_scan(orchestrator)

        assert len(provider.prompts) == 1
        assert results["src/empty.py"]["error"] == EMPTY_CONTENT_ERROR
        assert store.get_file_progress(report_id, "src/empty.py").file_status == "failed"

        report = store.get_report(report_id)
        assert report.scan_status == ScanStatus.PARTIAL.value
        assert report.processed_files == 2

    @pytest.mark.asyncio
    async def test_unfetchable_file_fails(self, store, clock, scheduler):
        files = {"a.py": RepositoryServiceException("Playground service error: gone", upstream_status=404)}
        orchestrator = make_orchestrator(store, files, FakeProvider(), clock, scheduler)

        report_id, results = await run_scan(orchestrator)

        assert results["a.py"]["error"] == EMPTY_CONTENT_ERROR
        assert store.get_report(report_id).scan_status == "partial"

    @pytest.mark.asyncio
    async def test_exhausted_retries_recorded_per_file(self, store, clock, scheduler):
        provider = FakeProvider([overloaded() for _ in range(6)])
        orchestrator = make_orchestrator(store, {"a.py": "x", "b.py": "yy"}, provider, clock, scheduler)

        report_id, results = await run_scan(orchestrator)

        assert results["a.py"]["retry_count"] == 6
        assert "analysis" in results["b.py"]
        row = store.get_file_progress(report_id, "a.py")
        assert row.file_status == "failed"
        assert row.file_analysis["retry_count"] == 6
        assert store.get_report(report_id).scan_status == "partial"

    @pytest.mark.asyncio
    async def test_partially_failed_chunks_keep_file_completed(self, store, clock, scheduler):
        provider = FakeProvider(["chunk one ok", AnalysisProviderException("bad input", transient=False)])
        orchestrator = make_orchestrator(store, {"big.py": "z" * 120000}, provider, clock, scheduler, chunk_size=60000)

        report_id, results = await run_scan(orchestrator)

        chunks = results["big.py"]["chunks"]
        assert chunks[0] == {"chunk_info": "Chars 0-60000", "analysis": "chunk one ok"}
        assert "error" in chunks[1]
        assert store.get_file_progress(report_id, "big.py").file_status == "completed"
        assert store.get_report(report_id).scan_status == "completed"

    @pytest.mark.asyncio
    async def test_all_chunks_failed_marks_file_failed(self, store, clock, scheduler):
        errors = [AnalysisProviderException("bad input", transient=False) for _ in range(2)]
        orchestrator = make_orchestrator(store, {"big.py": "z" * 120000}, FakeProvider(errors), clock, scheduler,
                                         chunk_size=60000)

        report_id, results = await run_scan(orchestrator)

        assert results["big.py"]["error"] == "All 2 chunks failed analysis"
        assert store.get_file_progress(report_id, "big.py").file_status == "failed"

    @pytest.mark.asyncio
    async def test_no_matching_files_completes_immediately(self, store, clock, scheduler):
        orchestrator = make_orchestrator(store, {"README.md": "hi"}, FakeProvider(), clock, scheduler)

        report, files = await orchestrator.start_scan(REPO_URL, "main", "sbom")

        assert files == []
        assert report.scan_status == "completed"
        assert store.get_report(report.report_id).scan_results == {"message": NO_FILES_MESSAGE}

    @pytest.mark.asyncio
    async def test_scan_type_filters_files(self, store, clock, scheduler):
        files = {"package.json": "{}", "app.py": "x", "conf.yaml": "a: 1"}
        orchestrator = make_orchestrator(store, files, FakeProvider(), clock, scheduler)

        report, selected = await orchestrator.start_scan(REPO_URL, "main", "vulnerability")

        assert [f.path for f in selected] == ["app.py"]
        assert report.total_files == 1
        assert "_VULNERABILITY_" in report.report_id

    @pytest.mark.asyncio
    async def test_validation(self, store, clock, scheduler):
        orchestrator = make_orchestrator(store, {}, FakeProvider(), clock, scheduler)

        with pytest.raises(ValidationException, match="repository URL"):
            await orchestrator.start_scan("", "main", "complete")
        with pytest.raises(ValidationException, match="Invalid scan type"):
            await orchestrator.start_scan(REPO_URL, "main", "quick")
        assert store.list_reports() == []

    @pytest.mark.asyncio
    async def test_clone_failure_creates_no_report(self, store, clock, scheduler):
        orchestrator = make_orchestrator(store, {}, FakeProvider(), clock, scheduler)

        async def broken_clone(repo_url, branch):
            raise RepositoryServiceException("Playground service error: no such repo", upstream_status=404)

        orchestrator.repository_client.clone_repository = broken_clone

        with pytest.raises(RepositoryServiceException):
            await orchestrator.start_scan(REPO_URL, "main", "complete")
        assert store.list_reports() == []

    @pytest.mark.asyncio
    async def test_unexpected_error_fails_report(self, store, clock, scheduler):
        files = {"a.py": "x", "b.py": RuntimeError("disk on fire")}
        orchestrator = make_orchestrator(store, files, FakeProvider(), clock, scheduler)
        report, selected = await orchestrator.start_scan(REPO_URL, "main", "complete")

        with pytest.raises(RuntimeError):
            await orchestrator.process_repository(report.report_id, selected)

        loaded = store.get_report(report.report_id)
        assert loaded.scan_status == "failed"
        assert loaded.error_log == "disk on fire"
        assert store.get_file_progress(report.report_id, "a.py").file_status == "completed"


class TestRetryFailedFiles:
    """Test re-running failed files"""

    @pytest.mark.asyncio
    async def test_nothing_to_retry_is_a_no_op(self, store, clock, scheduler):
        orchestrator = make_orchestrator(store, {"a.py": "x"}, FakeProvider(), clock, scheduler)
        report_id, _ = await run_scan(orchestrator)
        before = store.get_report(report_id)

        assert orchestrator.prepare_retry(report_id) == []
        assert orchestrator.prepare_retry(report_id) == []

        after = store.get_report(report_id)
        assert after.scan_status == before.scan_status == "completed"
        assert after.completed_at == before.completed_at
        assert after.updated_at == before.updated_at

    @pytest.mark.asyncio
    async def test_retry_merges_results(self, store, clock, scheduler):
        provider = FakeProvider(["manifest ok", AnalysisProviderException("bad key", transient=False)])
        files = {"package.json": "{}", "a.py": "x = 1"}
        orchestrator = make_orchestrator(store, files, provider, clock, scheduler)
        report_id, results = await run_scan(orchestrator)
        assert "error" in results["a.py"]
        assert store.get_report(report_id).scan_status == "partial"

        retry_files = orchestrator.prepare_retry(report_id)
        assert [f.path for f in retry_files] == ["a.py"]
        assert store.get_report(report_id).scan_status == "in_progress"
        assert store.get_report(report_id).completed_at is None

        merged = await orchestrator.retry_failed_files(report_id, retry_files)

        assert merged["package.json"]["analysis"] == "manifest ok"
        assert "analysis" in merged["a.py"]
        assert orchestrator.repository_client.fetches == ["package.json", "a.py", "a.py"]

        report = store.get_report(report_id)
        assert report.scan_status == "completed"
        assert report.processed_files == 2
        assert report.error_log is None

    @pytest.mark.asyncio
    async def test_retry_still_failing_stays_partial(self, store, clock, scheduler):
        provider = FakeProvider(default="")
        orchestrator = make_orchestrator(store, {"a.py": "", "b.py": "x"}, provider, clock, scheduler)
        report_id, _ = await run_scan(orchestrator)

        retry_files = orchestrator.prepare_retry(report_id)
        await orchestrator.retry_failed_files(report_id, retry_files)

        report = store.get_report(report_id)
        assert report.scan_status == "partial"
        assert report.processed_files == 2

    @pytest.mark.asyncio
    async def test_retry_rejected_while_in_progress(self, store, clock, scheduler):
        orchestrator = make_orchestrator(store, {"a.py": "x"}, FakeProvider(), clock, scheduler)
        report, _ = await orchestrator.start_scan(REPO_URL, "main", "complete")

        with pytest.raises(ReportStateException):
            orchestrator.prepare_retry(report.report_id)


    @pytest.mark.asyncio
    async def test_interrupted_report_is_closed_then_retried(self, store, clock, scheduler):
        files = {"package.json": "{}", "a.py": "x = 1", "b.py": "y = 22"}
        orchestrator = make_orchestrator(store, files, FakeProvider(), clock, scheduler)
        report, selected = await orchestrator.start_scan(REPO_URL, "main", "complete")
        report_id = report.report_id

        # a job that died after the manifest, midway through a.py, before b.py
        manifest, first, _ = selected
        store.start_file(report_id, manifest)
        store.complete_file(report_id, manifest.path, {
            "file_path": manifest.path, "file_type": "SBOM", "analysis": "manifest ok"
        })
        store.increment_processed_files(report_id)
        store.start_file(report_id, first)
        store.mark_file_in_progress(report_id, first.path)

        with pytest.raises(ReportStateException):
            orchestrator.prepare_retry(report_id)

        retry_files = orchestrator.prepare_retry(report_id, job_running=False)

        assert [f.path for f in retry_files] == ["a.py", "b.py"]
        assert store.get_report(report_id).scan_status == "in_progress"

        merged = await orchestrator.retry_failed_files(report_id, retry_files)

        assert merged["package.json"]["analysis"] == "manifest ok"
        assert "analysis" in merged["a.py"]
        assert "analysis" in merged["b.py"]
        assert orchestrator.repository_client.fetches == ["a.py", "b.py"]

        report = store.get_report(report_id)
        assert report.scan_status == "completed"
        assert report.processed_files == 3
        assert report.error_log is None

    @pytest.mark.asyncio
    async def test_close_interrupted_records_unfinished_files(self, store, clock, scheduler):
        files = {"a.py": "x", "b.py": "yy"}
        orchestrator = make_orchestrator(store, files, FakeProvider(), clock, scheduler)
        report, selected = await orchestrator.start_scan(REPO_URL, "main", "complete")
        store.start_file(report.report_id, selected[0])

        closed = orchestrator.close_interrupted(report.report_id)

        assert closed.scan_status == "failed"
        assert closed.error_log == INTERRUPTED_MESSAGE
        assert {path: entry["error"] for path, entry in closed.scan_results.items()} == {
            "a.py": INTERRUPTED_MESSAGE, "b.py": INTERRUPTED_MESSAGE
        }


class CancellingProvider(FakeProvider):
    """Sets the cancel event during the first call"""

    def __init__(self, event: asyncio.Event):
        super().__init__()
        self.event = event

    async def complete(self, instruction, prompt):
        self.event.set()
        return await super().complete(instruction, prompt)


class TestCancellation:
    """Test cooperative cancellation"""

    @pytest.mark.asyncio
    async def test_cancel_before_start_fails_report(self, store, clock, scheduler):
        provider = FakeProvider()
        orchestrator = make_orchestrator(store, {"a.py": "x", "b.py": "y"}, provider, clock, scheduler)
        event = asyncio.Event()
        event.set()

        report_id, results = await run_scan(orchestrator, cancel_event=event)

        assert provider.prompts == []
        report = store.get_report(report_id)
        assert report.scan_status == "failed"
        assert report.error_log == CANCELLED_MESSAGE
        assert results["a.py"]["error"] == CANCELLED_MESSAGE

    @pytest.mark.asyncio
    async def test_cancel_mid_scan_then_resume(self, store, clock, scheduler):
        event = asyncio.Event()
        provider = CancellingProvider(event)
        files = {"a.py": "x", "b.py": "yy", "c.py": "zzz"}
        orchestrator = make_orchestrator(store, files, provider, clock, scheduler)

        report_id, results = await run_scan(orchestrator, cancel_event=event)

        report = store.get_report(report_id)
        assert report.scan_status == "partial"
        assert report.processed_files == 1
        assert "analysis" in results["a.py"]
        assert results["b.py"]["error"] == CANCELLED_MESSAGE

        orchestrator.analysis_client._provider = FakeProvider()
        retry_files = orchestrator.prepare_retry(report_id)
        assert [f.path for f in retry_files] == ["b.py", "c.py"]
        await orchestrator.retry_failed_files(report_id, retry_files)

        report = store.get_report(report_id)
        assert report.scan_status == "completed"
        assert report.processed_files == 3

    @pytest.mark.asyncio
    async def test_cancel_between_chunks(self, store, clock, scheduler):
        event = asyncio.Event()
        provider = CancellingProvider(event)
        orchestrator = make_orchestrator(store, {"big.py": "q" * 180000}, provider, clock, scheduler,
                                         chunk_size=60000)

        report_id, _ = await run_scan(orchestrator, cancel_event=event)

        assert len(provider.prompts) == 1
        row = store.get_file_progress(report_id, "big.py")
        assert (row.total_chunks, row.processed_chunks, row.last_chunk_position) == (3, 1, 60000)
        assert row.file_status == "in_progress"
        assert store.get_report(report_id).scan_status == "failed"

    @pytest.mark.asyncio
    async def test_cancel_cuts_courtesy_delay_short(self, store, clock, scheduler):
        event = asyncio.Event()
        provider = CancellingProvider(event)
        orchestrator = make_orchestrator(store, {"a.py": "x", "b.py": "yy"}, provider, clock, scheduler,
                                         request_delay=5.0)

        async def never_wakes(seconds):
            clock.sleeps.append(seconds)
            await asyncio.Event().wait()

        orchestrator._sleep = never_wakes

        report_id, results = await run_scan(orchestrator, cancel_event=event)

        assert clock.sleeps == [5.0]
        assert results["b.py"]["error"] == CANCELLED_MESSAGE
        assert store.get_report(report_id).scan_status == "partial"
