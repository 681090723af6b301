"""
In-process background scan jobs: one asyncio task and cancel event per report
"""

import asyncio
from typing import Awaitable, Callable, Dict, List, Optional

from ..logging.structured_logger import get_logger, EventType

logger = get_logger(__name__)

JobFactory = Callable[[asyncio.Event], Awaitable]


class ScanJobManager:
    def __init__(self):
        self._tasks: Dict[str, asyncio.Task] = {}
        self._cancel_events: Dict[str, asyncio.Event] = {}

    def start(self, report_id: str, job_factory: JobFactory) -> asyncio.Task:
        """Schedule job_factory(cancel_event) on the running loop"""
        if self.is_running(report_id):
            raise RuntimeError(f"A scan job is already running for report {report_id}")

        cancel_event = asyncio.Event()
        task = asyncio.create_task(job_factory(cancel_event), name=f"scan-{report_id}")
        self._tasks[report_id] = task
        self._cancel_events[report_id] = cancel_event
        task.add_done_callback(lambda finished: self._on_done(report_id, finished))

        logger.info("Scan job started", event_type=EventType.SCAN_PROGRESS, metadata={"report_id": report_id})
        return task

    def cancel(self, report_id: str) -> bool:
        """Ask a running job to stop at its next file or chunk boundary"""
        if not self.is_running(report_id):
            return False
        self._cancel_events[report_id].set()
        logger.info("Scan job cancel requested", event_type=EventType.SCAN_PROGRESS, metadata={"report_id": report_id})
        return True

    def is_running(self, report_id: str) -> bool:
        task = self._tasks.get(report_id)
        return task is not None and not task.done()

    def running_reports(self) -> List[str]:
        return [report_id for report_id in self._tasks if self.is_running(report_id)]

    async def wait(self, report_id: str) -> Optional[object]:
        task = self._tasks.get(report_id)
        if task is None:
            return None
        return await task

    async def shutdown(self):
        """Cancel every job and wait for them to wind down"""
        for report_id in self.running_reports():
            self._cancel_events[report_id].set()
        tasks = [task for task in self._tasks.values() if not task.done()]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def _on_done(self, report_id: str, task: asyncio.Task):
        if self._tasks.get(report_id) is task:
            self._tasks.pop(report_id, None)
            self._cancel_events.pop(report_id, None)
        if task.cancelled():
            logger.warning("Scan job task cancelled", event_type=EventType.SCAN_PROGRESS, metadata={"report_id": report_id})
        elif task.exception() is not None:
            logger.error(
                "Scan job failed",
                error=task.exception(),
                event_type=EventType.ERROR_OCCURRED,
                metadata={"report_id": report_id}
            )
        else:
            logger.info("Scan job finished", event_type=EventType.SCAN_PROGRESS, metadata={"report_id": report_id})


scan_job_manager = ScanJobManager()
