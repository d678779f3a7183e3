import sys
from pathlib import Path

from resonance.services.engine import WhisperEngine
from resonance.types import EnvironmentState

WHICH_SCRIPT = "import shutil; print(shutil.which('ffmpeg') or '')"


def _decoder(tmp_path: Path) -> Path:
    bin_dir = tmp_path / "tools"
    bin_dir.mkdir()
    tool = bin_dir / "ffmpeg"
    tool.write_text("#!/bin/sh\nexit 0\n", encoding="utf-8")
    tool.chmod(0o755)
    return bin_dir


def test_engine_child_sees_tool_dirs_on_path(tmp_path: Path) -> None:
    bin_dir = _decoder(tmp_path)
    state = EnvironmentState(ready=True, python_path=Path(sys.executable), tool_dirs=(str(bin_dir),))

    process = WhisperEngine().start([sys.executable, "-c", WHICH_SCRIPT], search_path=state.search_path)
    stdout, _ = process.communicate(timeout=10)

    assert process.returncode == 0
    assert Path(stdout.decode().strip()) == bin_dir / "ffmpeg"


def test_search_path_puts_interpreter_folder_first(tmp_path: Path) -> None:
    python_path = tmp_path / "venv" / "bin" / "python"
    state = EnvironmentState(
        ready=True,
        python_path=python_path,
        tool_dirs=(str(tmp_path / "venv" / "bin"), "/opt/homebrew/bin"),
    )

    assert state.search_path == [str(tmp_path / "venv" / "bin"), "/opt/homebrew/bin"]
    assert EnvironmentState().search_path == []
