from __future__ import annotations

import logging
from threading import Event, Thread

from resonance.errors import InvalidTransitionError
from resonance.executor import JobExecutor
from resonance.registry import JobRegistry

logger = logging.getLogger(__name__)


class BackgroundWorker:
    def __init__(
        self,
        *,
        registry: JobRegistry,
        executor: JobExecutor,
        concurrency: int,
        poll_interval_seconds: float,
    ) -> None:
        self.registry = registry
        self.executor = executor
        self.poll_interval_seconds = poll_interval_seconds
        self._stop_event = Event()
        self._wake_event = Event()
        self._threads = [
            Thread(target=self._run_loop, name=f"resonance-worker-{index}", daemon=True)
            for index in range(max(1, concurrency))
        ]

    def start(self) -> None:
        for thread in self._threads:
            if not thread.is_alive():
                thread.start()

    def stop(self, timeout_seconds: float = 10.0) -> None:
        self._stop_event.set()
        self._wake_event.set()
        for thread in self._threads:
            if thread.is_alive():
                thread.join(timeout=timeout_seconds)

    def wake(self) -> None:
        """Nudge idle workers after a submission instead of waiting out the poll interval."""
        self._wake_event.set()

    @property
    def is_running(self) -> bool:
        return any(thread.is_alive() for thread in self._threads) and not self._stop_event.is_set()

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            job = self.registry.claim_next()
            if job is None:
                self._wake_event.wait(self.poll_interval_seconds)
                self._wake_event.clear()
                continue

            try:
                logger.info("Processing job %s (%s, model=%s)", job.id, job.source_path.name, job.model_id)
                self.executor.execute(job)
            except Exception as exc:  # pylint: disable=broad-except
                message = str(exc).strip() or "Unknown worker error"
                logger.exception("Job %s failed: %s", job.id, message)
                try:
                    self.registry.mark_failed(job.id, message[:2000])
                except InvalidTransitionError:
                    logger.warning("Job %s already finished; not marking failed", job.id)
