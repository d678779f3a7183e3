from __future__ import annotations

import json
import logging
import os
import shutil
import subprocess
from collections.abc import Callable, Sequence
from datetime import datetime
from pathlib import Path
from threading import Lock

from resonance.errors import EnvironmentSetupError
from resonance.types import EnvironmentState

logger = logging.getLogger(__name__)

# Searched before falling back to PATH; GUI launches often get a bare PATH.
DEFAULT_SEARCH_DIRS: tuple[str, ...] = (
    "/opt/homebrew/bin",
    "/usr/local/bin",
    "/usr/bin",
    "/bin",
)

_REMEDIATION = {
    "python3": "Python 3 not found. Please install Python 3.9+",
    "ffmpeg": "ffmpeg not found. Install with: brew install ffmpeg (macOS) or apt install ffmpeg (Linux)",
}

Runner = Callable[..., subprocess.CompletedProcess]
StatusCallback = Callable[[str], None]


class EnvironmentProvisioner:
    """Owns the private virtualenv the engine runs from.

    The install is either complete, with a marker file recording the resolved
    interpreter, or absent. A directory without a marker is a leftover from an
    interrupted attempt and is wiped before installing again.
    """

    MARKER_NAME = "environment.json"

    def __init__(
        self,
        install_root: Path,
        *,
        engine_package: str = "openai-whisper",
        install_timeout_seconds: float = 600.0,
        runtime_tool: str = "python3",
        media_tool: str = "ffmpeg",
        search_dirs: Sequence[str] = DEFAULT_SEARCH_DIRS,
        runner: Runner = subprocess.run,
    ) -> None:
        self.install_root = install_root
        self.venv_dir = install_root / "venv"
        self.engine_package = engine_package
        self.install_timeout_seconds = install_timeout_seconds
        self.runtime_tool = runtime_tool
        self.media_tool = media_tool
        self.search_dirs = tuple(search_dirs)
        self.runner = runner
        self.state = EnvironmentState()
        self._lock = Lock()
        self._generation = 0
        self._last_error: EnvironmentSetupError | None = None

    @property
    def marker_path(self) -> Path:
        return self.install_root / self.MARKER_NAME

    @property
    def venv_python(self) -> Path:
        if os.name == "nt":
            return self.venv_dir / "Scripts" / "python.exe"
        return self.venv_dir / "bin" / "python"

    def ensure_ready(self, on_status: StatusCallback | None = None) -> EnvironmentState:
        cached = self._cached_state()
        if cached is not None:
            return cached

        # Attempts that finish while we wait for the lock are shared, not repeated.
        generation = self._generation
        with self._lock:
            cached = self._cached_state() or self._load_marker()
            if cached is not None:
                return cached
            if self._generation != generation and self._last_error is not None:
                raise EnvironmentSetupError(str(self._last_error)) from self._last_error

            try:
                runtime = self.resolve_tool(self.runtime_tool)
                media = self.resolve_tool(self.media_tool)
                tool_dirs = tuple(dict.fromkeys(str(Path(tool).parent) for tool in (runtime, media)))
                python_path = self._install(runtime, tool_dirs, on_status)
            except EnvironmentSetupError as exc:
                self._last_error = exc
                raise
            else:
                self._last_error = None
                self.state = EnvironmentState(ready=True, python_path=python_path, tool_dirs=tool_dirs)
                return self.state
            finally:
                self._generation += 1

    def resolve_tool(self, name: str) -> str:
        for directory in self.search_dirs:
            candidate = Path(directory) / name
            if candidate.is_file() and os.access(candidate, os.X_OK):
                return str(candidate)
        resolved = shutil.which(name)
        if resolved:
            return resolved
        hint = _REMEDIATION.get(name, f"{name} not found. Install it and make sure it is on PATH")
        raise EnvironmentSetupError(hint)

    def _cached_state(self) -> EnvironmentState | None:
        state = self.state
        if state.ready and state.python_path is not None and state.python_path.exists():
            return state
        return None

    def _load_marker(self) -> EnvironmentState | None:
        if not self.marker_path.exists():
            return None
        try:
            payload = json.loads(self.marker_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            logger.warning("Ignoring unreadable environment marker %s", self.marker_path)
            return None

        python_path = Path(str(payload.get("python_path") or ""))
        if not python_path.is_file():
            return None
        tool_dirs = tuple(str(directory) for directory in payload.get("tool_dirs") or ())
        self.state = EnvironmentState(ready=True, python_path=python_path, tool_dirs=tool_dirs)
        logger.info("Reusing engine environment at %s", self.venv_dir)
        return self.state

    def _install(self, runtime: str, tool_dirs: tuple[str, ...], on_status: StatusCallback | None) -> Path:
        if self.install_root.exists():
            logger.info("Removing incomplete engine environment at %s", self.install_root)
            shutil.rmtree(self.install_root, ignore_errors=True)

        try:
            self.install_root.mkdir(parents=True, exist_ok=True)
            self._notify(on_status, "Setting up Python environment (first run)...")
            self._run([runtime, "-m", "venv", str(self.venv_dir)], "create virtualenv")

            self._notify(on_status, f"Installing {self.engine_package} (this may take a few minutes)...")
            python_path = self.venv_python
            self._run([str(python_path), "-m", "pip", "install", "--upgrade", "pip"], "upgrade pip")
            self._run([str(python_path), "-m", "pip", "install", self.engine_package], f"install {self.engine_package}")

            marker = {
                "python_path": str(python_path),
                "tool_dirs": list(tool_dirs),
                "engine_package": self.engine_package,
                "installed_at": datetime.now().isoformat(),
            }
            self.marker_path.write_text(json.dumps(marker, indent=2, sort_keys=True), encoding="utf-8")
        except Exception as exc:
            shutil.rmtree(self.install_root, ignore_errors=True)
            if isinstance(exc, EnvironmentSetupError):
                raise
            raise EnvironmentSetupError(f"Failed to set up whisper: {exc}") from exc

        logger.info("Engine environment ready at %s", self.venv_dir)
        return python_path

    def _run(self, cmd: list[str], step: str) -> None:
        logger.info("Provisioning step: %s", step)
        try:
            completed = self.runner(
                cmd,
                capture_output=True,
                text=True,
                check=False,
                timeout=self.install_timeout_seconds,
            )
        except subprocess.TimeoutExpired as exc:
            raise EnvironmentSetupError(
                f"Failed to set up whisper: {step} timed out after {self.install_timeout_seconds:.0f}s"
            ) from exc
        except OSError as exc:
            raise EnvironmentSetupError(f"Failed to set up whisper: could not {step}: {exc}") from exc

        if completed.returncode != 0:
            stderr = (completed.stderr or "").strip()[-400:] or f"exit code {completed.returncode}"
            raise EnvironmentSetupError(f"Failed to set up whisper: could not {step}: {stderr}")

    @staticmethod
    def _notify(on_status: StatusCallback | None, message: str) -> None:
        if on_status is not None:
            on_status(message)
