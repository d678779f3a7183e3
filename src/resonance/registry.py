from __future__ import annotations

import logging
import uuid
from collections.abc import Iterable
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from queue import Queue
from threading import Condition, Lock

from resonance.errors import InvalidTransitionError
from resonance.services import progress as bands
from resonance.types import (
    DEFAULT_FORMATS,
    MODEL_IDS,
    OUTPUT_FORMATS,
    Job,
    JobState,
    OutputFormat,
    ProgressEvent,
)

logger = logging.getLogger(__name__)

_TRANSITIONS: dict[JobState, frozenset[JobState]] = {
    "queued": frozenset({"provisioning", "failed"}),
    "provisioning": frozenset({"running", "failed"}),
    "running": frozenset({"finalizing", "failed"}),
    "finalizing": frozenset({"completed", "failed"}),
    "completed": frozenset(),
    "failed": frozenset(),
}

_UNSET = object()

_FAILURE_STATUS = {
    "environment": "Environment setup failed",
    "launch": "Could not start engine",
    "engine": "Transcription failed",
    "reconcile": "Could not save output",
    "cancelled": "Cancelled",
}


def normalize_formats(formats: Iterable[str] | None) -> frozenset[OutputFormat]:
    requested = frozenset(str(fmt).strip().lower() for fmt in formats or ())
    unknown = requested - set(OUTPUT_FORMATS)
    if unknown:
        raise ValueError(f"Unsupported output format(s): {', '.join(sorted(unknown))}")
    return requested or DEFAULT_FORMATS  # type: ignore[return-value]


class JobRegistry:
    """In-memory store of submitted jobs.

    Every change to a job goes through :meth:`update`, which checks the state
    transition, keeps progress non-decreasing and publishes a
    :class:`ProgressEvent` to subscribers while still holding the lock, so each
    subscriber sees a job's events in order.
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self._changed = Condition(self._lock)
        self._jobs: dict[str, Job] = {}
        self._subscribers: list[Queue[ProgressEvent]] = []

    def submit(
        self,
        source_path: str | Path,
        *,
        model_id: str = "base",
        language_hint: str | None = None,
        requested_formats: Iterable[str] | None = None,
        destination_dir: str | Path | None = None,
    ) -> Job:
        path = Path(source_path).expanduser().resolve()
        if not path.is_file():
            raise ValueError(f"Source file not found: {path}")
        if model_id not in MODEL_IDS:
            raise ValueError(f"Unknown model '{model_id}'; expected one of {', '.join(sorted(MODEL_IDS))}")

        destination = Path(destination_dir).expanduser().resolve() if destination_dir else None
        job = Job(
            id=str(uuid.uuid4()),
            source_path=path,
            model_id=model_id,  # type: ignore[arg-type]
            requested_formats=normalize_formats(requested_formats),
            language_hint=(language_hint or "").strip() or None,
            destination_dir=destination,
        )
        with self._lock:
            self._jobs[job.id] = job
            self._publish(job)
        logger.info("Queued job %s for %s", job.id, path)
        return self._snapshot(job)

    def get(self, job_id: str) -> Job | None:
        with self._lock:
            job = self._jobs.get(job_id)
            return self._snapshot(job) if job is not None else None

    def list_jobs(self, state: str | None = None, limit: int = 100) -> list[Job]:
        with self._lock:
            jobs = [
                self._snapshot(job)
                for job in self._jobs.values()
                if state is None or job.state == state
            ]
        jobs.sort(key=lambda job: job.created_at, reverse=True)
        return jobs[:limit]

    def claim_next(self) -> Job | None:
        with self._lock:
            queued = [job for job in self._jobs.values() if job.state == "queued"]
            if not queued:
                return None
            job = min(queued, key=lambda item: item.created_at)
            self._apply(
                job,
                state="provisioning",
                progress=bands.PROVISIONING_START,
                status_text="Checking environment...",
            )
            job.started_at = datetime.now()
            return self._snapshot(job)

    def update(
        self,
        job_id: str,
        *,
        state: JobState | None = None,
        progress: int | None = None,
        status_text: str | None = None,
        artifacts: dict[OutputFormat, Path] | None = None,
        error: object = _UNSET,
        error_kind: str | None = None,
    ) -> Job:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise KeyError(job_id)
            self._apply(
                job,
                state=state,
                progress=progress,
                status_text=status_text,
                artifacts=artifacts,
                error=error,
                error_kind=error_kind,
            )
            return self._snapshot(job)

    def mark_completed(self, job_id: str, artifacts: dict[OutputFormat, Path]) -> Job:
        return self.update(
            job_id,
            state="completed",
            progress=bands.COMPLETED,
            status_text="Completed",
            artifacts=artifacts,
        )

    def mark_failed(self, job_id: str, error: str, kind: str = "error") -> Job:
        return self.update(
            job_id,
            state="failed",
            status_text=_FAILURE_STATUS.get(kind, "Failed"),
            error=error or "Unknown error",
            error_kind=kind,
        )

    def wait(self, job_id: str, timeout: float | None = None) -> Job | None:
        """Block until the job is terminal or ``timeout`` elapses; return the latest snapshot."""
        with self._changed:
            self._changed.wait_for(
                lambda: job_id not in self._jobs or self._jobs[job_id].is_terminal,
                timeout=timeout,
            )
            job = self._jobs.get(job_id)
            return self._snapshot(job) if job is not None else None

    def subscribe(self) -> Queue[ProgressEvent]:
        events: Queue[ProgressEvent] = Queue()
        with self._lock:
            self._subscribers.append(events)
        return events

    def unsubscribe(self, events: Queue[ProgressEvent]) -> None:
        with self._lock:
            if events in self._subscribers:
                self._subscribers.remove(events)

    def _apply(
        self,
        job: Job,
        *,
        state: JobState | None = None,
        progress: int | None = None,
        status_text: str | None = None,
        artifacts: dict[OutputFormat, Path] | None = None,
        error: object = _UNSET,
        error_kind: str | None = None,
    ) -> None:
        if state is not None and state != job.state:
            if state not in _TRANSITIONS[job.state]:
                raise InvalidTransitionError(f"Job {job.id}: cannot move from {job.state} to {state}")
            job.state = state
            if state in ("completed", "failed"):
                job.completed_at = datetime.now()
        elif job.is_terminal:
            raise InvalidTransitionError(f"Job {job.id} is already {job.state}")

        if progress is not None:
            # 100 is reserved for completion.
            ceiling = 100 if job.state == "completed" else 99
            job.progress = max(job.progress, min(int(progress), ceiling))
        if status_text is not None:
            job.status_text = status_text
        if artifacts is not None:
            job.artifacts = {fmt: path for fmt, path in artifacts.items() if fmt in job.requested_formats}
        if error is not _UNSET:
            job.error = str(error) if error else None
            job.error_kind = error_kind if error else None

        self._publish(job)
        if job.is_terminal:
            self._changed.notify_all()

    def _publish(self, job: Job) -> None:
        event = ProgressEvent(
            job_id=job.id,
            source_path=str(job.source_path),
            state=job.state,
            progress=job.progress,
            status_text=job.status_text,
            error=job.error,
        )
        for events in self._subscribers:
            events.put(event)

    @staticmethod
    def _snapshot(job: Job) -> Job:
        return replace(job, artifacts=dict(job.artifacts))
