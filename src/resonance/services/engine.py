from __future__ import annotations

import logging
import os
import subprocess
from collections.abc import Callable, Sequence
from pathlib import Path
from threading import Thread
from typing import IO

from resonance.errors import LaunchError
from resonance.services.progress import parse_progress
from resonance.types import EngineRun

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int], None]

_CHUNK_SIZE = 4096
# Enough trailing text to re-join a "NN%|" marker split across two reads.
_CARRY_CHARS = 8


class WhisperEngine:
    """Runs the openai-whisper CLI as a child process."""

    def __init__(self, terminate_grace_seconds: float = 5.0) -> None:
        self.terminate_grace_seconds = terminate_grace_seconds

    def build_command(
        self,
        python_path: Path,
        *,
        source_path: Path,
        model_id: str,
        output_dir: Path,
        output_format: str,
        language: str | None = None,
    ) -> list[str]:
        cmd = [
            str(python_path),
            "-m",
            "whisper",
            str(source_path),
            "--model",
            model_id,
            "--output_dir",
            str(output_dir),
            "--output_format",
            output_format,
            # Without this whisper prints segments instead of the progress bar.
            "--verbose",
            "False",
        ]
        if language:
            cmd.extend(["--language", language])
        return cmd

    def start(self, cmd: list[str], search_path: Sequence[str] = ()) -> subprocess.Popen[bytes]:
        """Spawn the engine with ``search_path`` ahead of the inherited PATH.

        whisper shells out to ffmpeg by name, so the folder the decoder was
        found in has to be visible to the child.
        """
        logger.info("Running engine: %s", " ".join(cmd))
        env = dict(os.environ)
        inherited = env.get("PATH", "")
        env["PATH"] = os.pathsep.join([*search_path, inherited] if inherited else list(search_path))
        try:
            return subprocess.Popen(
                cmd,
                env=env,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except OSError as exc:
            raise LaunchError(f"Could not start transcription engine: {exc}") from exc

    def wait(
        self,
        process: subprocess.Popen[bytes],
        on_progress: ProgressCallback | None = None,
    ) -> EngineRun:
        """Relay progress from stderr until the process exits and both streams drain."""
        if process.stdout is None or process.stderr is None:
            raise RuntimeError("Engine process was started without output pipes")
        stdout_thread = Thread(target=self._drain_stdout, args=(process.stdout,), daemon=True)
        stdout_thread.start()

        diagnostics: list[str] = []
        carry = ""
        while True:
            data = process.stderr.read1(_CHUNK_SIZE)  # type: ignore[attr-defined]
            if not data:
                break
            chunk = data.decode("utf-8", errors="replace")
            diagnostics.append(chunk)
            percent = parse_progress(carry + chunk)
            if percent is not None and on_progress is not None:
                on_progress(percent)
            carry = chunk[-_CARRY_CHARS:]

        returncode = process.wait()
        stdout_thread.join()
        process.stderr.close()
        logger.info("Engine exited with code %s", returncode)
        return EngineRun(returncode=returncode, diagnostics="".join(diagnostics))

    def terminate(self, process: subprocess.Popen[bytes]) -> None:
        if process.poll() is not None:
            return
        process.terminate()
        try:
            process.wait(timeout=self.terminate_grace_seconds)
        except subprocess.TimeoutExpired:
            logger.warning("Engine pid %s ignored SIGTERM; killing", process.pid)
            process.kill()

    @staticmethod
    def _drain_stdout(stream: IO[bytes]) -> None:
        with stream:
            for line in stream:
                text = line.decode("utf-8", errors="replace").rstrip()
                if text:
                    logger.debug("engine stdout: %s", text)
