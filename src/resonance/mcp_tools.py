from __future__ import annotations

import asyncio
from queue import Empty, Queue
from typing import Any

from fastmcp import Context, FastMCP
from mcp.types import ToolAnnotations

from resonance.executor import JobExecutor
from resonance.registry import JobRegistry
from resonance.services.desktop import open_path
from resonance.types import MODEL_CATALOG, TERMINAL_STATES, Job, ProgressEvent
from resonance.worker import BackgroundWorker

# How often a waiting transcribe call re-checks its deadline.
_POLL_SECONDS = 1.0


class ToolRegistry:
    def __init__(
        self,
        registry: JobRegistry,
        executor: JobExecutor,
        worker: BackgroundWorker | None = None,
    ) -> None:
        self.registry = registry
        self.executor = executor
        self.worker = worker

    def register(self, mcp: FastMCP) -> None:
        _ro = ToolAnnotations(readOnlyHint=True)

        @mcp.tool(annotations=_ro)
        def list_models() -> dict[str, Any]:
            """List the speech models a job can use, smallest first."""
            models = [model.to_dict() for model in MODEL_CATALOG]
            return {"count": len(models), "models": models}

        @mcp.tool(annotations=ToolAnnotations(readOnlyHint=False))
        async def transcribe(
            source_path: str,
            model: str = "base",
            language: str | None = None,
            formats: list[str] | None = None,
            destination_dir: str | None = None,
            wait: bool = False,
            timeout_seconds: float = 3600.0,
            ctx: Context | None = None,
        ) -> dict[str, Any]:
            """Queue a local media file for transcription.

            Args:
                source_path: Absolute path of the audio or video file
                model: One of tiny, base, small, medium, large (default: "base")
                language: Language code such as "en"; omit to auto-detect
                formats: Any of "subtitle", "plaintext", "markdown" (default: ["subtitle"])
                destination_dir: Folder to move the outputs into; defaults to the source folder
                wait: Block until the job finishes and return its result
                timeout_seconds: Longest time to wait when wait is set (default: 3600)

            Returns:
                The queued job, or {success, artifacts} / {success, error} when wait is set.
            """
            if wait and self.worker is None:
                return {"success": False, "error": "No worker is running to process jobs"}

            # Subscribe before submitting so the first events are not missed.
            events = self.registry.subscribe() if wait else None
            try:
                try:
                    job = self.registry.submit(
                        source_path,
                        model_id=model,
                        language_hint=language,
                        requested_formats=formats,
                        destination_dir=destination_dir,
                    )
                except ValueError as exc:
                    if wait:
                        return {"success": False, "error": str(exc)}
                    return {"error": "invalid_request", "message": str(exc)}

                if self.worker is not None:
                    self.worker.wake()
                if events is None:
                    return {"job_id": job.id, "state": job.state, "progress": job.progress}

                finished = await self._follow(job.id, events, ctx, timeout_seconds)
            finally:
                if events is not None:
                    self.registry.unsubscribe(events)

            if finished is None:
                raise RuntimeError(f"Job {job.id} disappeared from the registry")
            if not finished.is_terminal:
                return {
                    "job_id": job.id,
                    "success": False,
                    "error": f"Timed out after {timeout_seconds:.0f}s; job is still {finished.state}",
                    "state": finished.state,
                }
            return {"job_id": job.id, **finished.to_result()}

        @mcp.tool(annotations=_ro)
        def job_status(job_id: str, wait_seconds: float = 0.0) -> dict[str, Any]:
            """Get the state and progress of a job.

            Args:
                job_id: The job ID returned from transcribe()
                wait_seconds: Wait up to this long for the job to finish first (max 30)
            """
            if wait_seconds > 0:
                job = self.registry.wait(job_id, timeout=min(wait_seconds, 30.0))
            else:
                job = self.registry.get(job_id)
            if job is None:
                return {"error": "job_not_found", "job_id": job_id}
            return job.to_dict()

        @mcp.tool(annotations=_ro)
        def list_jobs(state: str | None = None, limit: int = 20) -> dict[str, Any]:
            items = [job.to_dict() for job in self.registry.list_jobs(state=state, limit=limit)]
            return {"count": len(items), "items": items}

        @mcp.tool(annotations=ToolAnnotations(readOnlyHint=False, idempotentHint=True))
        def cancel_job(job_id: str) -> dict[str, Any]:
            """Stop a queued or running job. Jobs already finalizing run to completion."""
            if self.registry.get(job_id) is None:
                return {"error": "job_not_found", "job_id": job_id}
            return {"job_id": job_id, "cancelled": self.executor.cancel(job_id)}

        @mcp.tool(annotations=_ro)
        def open_artifact(path: str) -> dict[str, Any]:
            return {"path": path, "opened": open_path(path)}

        @mcp.tool(annotations=_ro)
        def reveal_artifact(path: str) -> dict[str, Any]:
            return {"path": path, "opened": open_path(path, reveal=True)}

    async def _follow(
        self,
        job_id: str,
        events: Queue[ProgressEvent],
        ctx: Context | None,
        timeout_seconds: float,
    ) -> Job | None:
        """Relay a job's progress events to the client until it is terminal or time runs out."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + max(timeout_seconds, 0.0)
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                return self.registry.get(job_id)
            try:
                event = await asyncio.to_thread(events.get, True, min(remaining, _POLL_SECONDS))
            except Empty:
                job = self.registry.get(job_id)
                if job is None or job.is_terminal:
                    return job
                continue
            if event.job_id != job_id:
                continue
            if ctx is not None:
                await ctx.report_progress(progress=event.progress, total=100, message=event.status_text)
            if event.state in TERMINAL_STATES:
                return self.registry.get(job_id)
