from pathlib import Path

from resonance.registry import JobRegistry
from resonance.types import Job
from resonance.worker import BackgroundWorker


class FakeExecutor:
    def __init__(self, registry: JobRegistry, *, explode: bool = False) -> None:
        self.registry = registry
        self.explode = explode
        self.seen: list[str] = []

    def execute(self, job: Job) -> Job:
        self.seen.append(job.id)
        if self.explode:
            raise OSError("disk full")
        self.registry.update(job.id, state="running", progress=30)
        self.registry.update(job.id, state="finalizing", progress=95)
        return self.registry.mark_completed(job.id, {"subtitle": job.source_path.with_suffix(".srt")})


def _media(tmp_path: Path, name: str) -> Path:
    path = tmp_path / name
    path.write_bytes(b"fake-audio")
    return path


def test_worker_processes_jobs(tmp_path: Path) -> None:
    registry = JobRegistry()
    executor = FakeExecutor(registry)
    worker = BackgroundWorker(
        registry=registry,
        executor=executor,  # type: ignore[arg-type]
        concurrency=2,
        poll_interval_seconds=5,
    )
    jobs = [registry.submit(_media(tmp_path, f"clip{index}.mp3")) for index in range(3)]

    worker.start()
    worker.wake()
    try:
        finished = [registry.wait(job.id, timeout=10) for job in jobs]
    finally:
        worker.stop()

    assert all(job is not None and job.state == "completed" for job in finished)
    assert sorted(executor.seen) == sorted(job.id for job in jobs)
    assert not worker.is_running


def test_worker_fails_job_on_unexpected_error(tmp_path: Path) -> None:
    registry = JobRegistry()
    worker = BackgroundWorker(
        registry=registry,
        executor=FakeExecutor(registry, explode=True),  # type: ignore[arg-type]
        concurrency=1,
        poll_interval_seconds=0.05,
    )
    job = registry.submit(_media(tmp_path, "broken.wav"))

    worker.start()
    try:
        failed = registry.wait(job.id, timeout=10)
    finally:
        worker.stop()

    assert failed is not None
    assert failed.state == "failed"
    assert failed.error == "disk full"
