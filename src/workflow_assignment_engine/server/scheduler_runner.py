"""Background thread running the recurrence scheduler inside the server."""

from __future__ import annotations

import logging
import threading

from workflow_assignment_engine.engine.service import WorkflowService

logger = logging.getLogger(__name__)


class SchedulerRunner:
    def __init__(self, *, service: WorkflowService, poll_interval_seconds: float) -> None:
        self._service = service
        self._poll = poll_interval_seconds
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._service.scheduler.run_forever,
            name="recurrence-scheduler",
            daemon=True,
            kwargs={"poll_interval_seconds": self._poll, "stop": self._stop},
        )
        self._thread.start()

    def stop(self, *, timeout: float = 10.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            if self._thread.is_alive():
                logger.warning("Scheduler thread did not stop in time")
        self._thread = None
