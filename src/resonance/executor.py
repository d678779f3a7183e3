from __future__ import annotations

import logging
import subprocess
from threading import Lock

from resonance.errors import InvalidTransitionError, JobCancelledError, TranscriptionError
from resonance.registry import JobRegistry
from resonance.services import progress as bands
from resonance.services.engine import WhisperEngine
from resonance.services.provisioner import EnvironmentProvisioner
from resonance.services.reconciler import ArtifactReconciler, engine_output_format
from resonance.types import Job

logger = logging.getLogger(__name__)


class JobExecutor:
    """Drives one claimed job from provisioning to a terminal state."""

    def __init__(
        self,
        *,
        registry: JobRegistry,
        provisioner: EnvironmentProvisioner,
        engine: WhisperEngine,
        reconciler: ArtifactReconciler,
    ) -> None:
        self.registry = registry
        self.provisioner = provisioner
        self.engine = engine
        self.reconciler = reconciler
        self._lock = Lock()
        self._processes: dict[str, subprocess.Popen[bytes]] = {}
        self._cancelled: set[str] = set()
        self._finalizing: set[str] = set()

    def execute(self, job: Job) -> Job:
        try:
            self._run(job)
        except TranscriptionError as exc:
            logger.warning("Job %s failed (%s): %s", job.id, exc.kind, exc)
            self.registry.mark_failed(job.id, str(exc), kind=exc.kind)
        finally:
            with self._lock:
                self._cancelled.discard(job.id)
                self._finalizing.discard(job.id)
        result = self.registry.get(job.id)
        if result is None:
            raise RuntimeError(f"Job {job.id} disappeared from the registry")
        return result

    def cancel(self, job_id: str) -> bool:
        """Abort a job that has not reached finalizing; return whether it was cancelled."""
        job = self.registry.get(job_id)
        if job is None or job.is_terminal or job.state == "finalizing":
            return False

        if job.state == "queued":
            try:
                self.registry.mark_failed(job_id, "Cancelled by user", kind="cancelled")
            except InvalidTransitionError:
                # Claimed by a worker in the meantime; fall through to the flag.
                pass
            else:
                logger.info("Cancelled queued job %s", job_id)
                return True

        with self._lock:
            # execute() clears flags only after the job is terminal, so a job
            # that is still active here will see and then drop the flag.
            current = self.registry.get(job_id)
            if current is None or current.is_terminal or job_id in self._finalizing:
                return False
            self._cancelled.add(job_id)
            process = self._processes.get(job_id)
        if process is not None:
            logger.info("Terminating engine for job %s", job_id)
            self.engine.terminate(process)
        return True

    def _is_cancelled(self, job_id: str) -> bool:
        with self._lock:
            return job_id in self._cancelled

    def _run(self, job: Job) -> None:
        job_id = job.id
        environment = self.provisioner.ensure_ready(
            on_status=lambda message: self.registry.update(
                job_id, progress=bands.PROVISIONING_STEP, status_text=message
            )
        )
        if self._is_cancelled(job_id):
            raise JobCancelledError("Cancelled by user")
        if environment.python_path is None:
            raise RuntimeError("Engine environment has no interpreter")

        output_dir = job.source_path.parent
        cmd = self.engine.build_command(
            environment.python_path,
            source_path=job.source_path,
            model_id=job.model_id,
            output_dir=output_dir,
            output_format=engine_output_format(job.requested_formats),
            language=job.language_hint,
        )
        self.registry.update(
            job_id, state="running", progress=bands.ENGINE_START, status_text="Transcribing..."
        )
        process = self.engine.start(cmd, search_path=environment.search_path)
        with self._lock:
            self._processes[job_id] = process
            cancelled = job_id in self._cancelled
        if cancelled:
            self.engine.terminate(process)

        def on_progress(percent: int) -> None:
            self.registry.update(
                job_id,
                progress=bands.engine_band(percent),
                status_text=f"Transcribing... {percent}%",
            )

        try:
            run = self.engine.wait(process, on_progress=on_progress)
        finally:
            with self._lock:
                self._processes.pop(job_id, None)

        # Past this point cancel() refuses the job.
        with self._lock:
            cancelled = job_id in self._cancelled
            if not cancelled:
                self._finalizing.add(job_id)
        if cancelled:
            self.reconciler.discard(job.source_path, output_dir)
            raise JobCancelledError("Cancelled by user")

        self.registry.update(
            job_id, state="finalizing", progress=bands.ENGINE_END, status_text="Finalizing..."
        )
        artifacts = self.reconciler.reconcile(
            job.requested_formats,
            source_path=job.source_path,
            output_dir=output_dir,
            destination_dir=job.destination_dir,
            returncode=run.returncode,
            diagnostics=run.diagnostics,
        )
        self.registry.mark_completed(job_id, artifacts)
        logger.info("Job %s completed: %s", job_id, ", ".join(sorted(artifacts)) or "no artifacts")
