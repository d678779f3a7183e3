from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Literal

JobState = Literal["queued", "provisioning", "running", "finalizing", "completed", "failed"]
OutputFormat = Literal["subtitle", "plaintext", "markdown"]
ModelId = Literal["tiny", "base", "small", "medium", "large"]

TERMINAL_STATES: tuple[JobState, ...] = ("completed", "failed")
OUTPUT_FORMATS: tuple[OutputFormat, ...] = ("subtitle", "plaintext", "markdown")
DEFAULT_FORMATS: frozenset[OutputFormat] = frozenset({"subtitle"})


@dataclass(slots=True, frozen=True)
class ModelInfo:
    id: ModelId
    display_name: str
    description: str
    approx_size: str

    def to_dict(self) -> dict[str, str]:
        return {
            "id": self.id,
            "displayName": self.display_name,
            "description": self.description,
            "approxSize": self.approx_size,
        }


MODEL_CATALOG: tuple[ModelInfo, ...] = (
    ModelInfo("tiny", "Tiny", "Fastest, lowest accuracy", "~75MB"),
    ModelInfo("base", "Base", "Fast, good for drafts", "~150MB"),
    ModelInfo("small", "Small", "Balanced speed/accuracy", "~500MB"),
    ModelInfo("medium", "Medium", "High accuracy", "~1.5GB"),
    ModelInfo("large", "Large", "Best accuracy", "~3GB"),
)
MODEL_IDS: frozenset[str] = frozenset(model.id for model in MODEL_CATALOG)


@dataclass(slots=True)
class Job:
    id: str
    source_path: Path
    model_id: ModelId
    requested_formats: frozenset[OutputFormat]
    language_hint: str | None = None
    destination_dir: Path | None = None
    state: JobState = "queued"
    progress: int = 0
    status_text: str = "Queued"
    artifacts: dict[OutputFormat, Path] = field(default_factory=dict)
    error: str | None = None
    error_kind: str | None = None
    created_at: datetime = field(default_factory=datetime.now)
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.id,
            "source_path": str(self.source_path),
            "model_id": self.model_id,
            "language_hint": self.language_hint,
            "requested_formats": sorted(self.requested_formats),
            "destination_dir": str(self.destination_dir) if self.destination_dir else None,
            "state": self.state,
            "progress": self.progress,
            "status_text": self.status_text,
            "artifacts": {fmt: str(path) for fmt, path in self.artifacts.items()},
            "error": self.error,
            "error_kind": self.error_kind,
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }

    def to_result(self) -> dict[str, Any]:
        """Shape a terminal job the way `submitJob` callers expect it."""
        if self.state == "completed":
            return {
                "success": True,
                "artifacts": {fmt: str(path) for fmt, path in self.artifacts.items()},
            }
        return {"success": False, "error": self.error or f"Job is {self.state}"}


@dataclass(slots=True, frozen=True)
class ProgressEvent:
    job_id: str
    source_path: str
    state: JobState
    progress: int
    status_text: str
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "jobId": self.job_id,
            "sourcePath": self.source_path,
            "state": self.state,
            "progress": self.progress,
            "statusText": self.status_text,
        }
        if self.error:
            payload["error"] = self.error
        return payload


@dataclass(slots=True)
class EngineRun:
    returncode: int
    diagnostics: str


@dataclass(slots=True)
class EnvironmentState:
    ready: bool = False
    python_path: Path | None = None
    # Folders the prerequisite tools were found in, searched by the engine too.
    tool_dirs: tuple[str, ...] = ()

    @property
    def search_path(self) -> list[str]:
        dirs = [str(self.python_path.parent)] if self.python_path is not None else []
        for directory in self.tool_dirs:
            if directory not in dirs:
                dirs.append(directory)
        return dirs
