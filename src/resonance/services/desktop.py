from __future__ import annotations

import logging
import os
import subprocess
import sys
from pathlib import Path

logger = logging.getLogger(__name__)


def _open_command(path: Path, reveal: bool) -> list[str]:
    if sys.platform == "darwin":
        return ["open", "-R", str(path)] if reveal else ["open", str(path)]
    if os.name == "nt":
        return ["explorer", f"/select,{path}"] if reveal else ["explorer", str(path)]
    # xdg-open cannot select a file; open its folder instead.
    return ["xdg-open", str(path.parent if reveal else path)]


def open_path(path: str | Path, *, reveal: bool = False) -> bool:
    """Open ``path`` with the platform handler, or show it in its folder.

    Returns False without doing anything when the path does not exist.
    """
    target = Path(path)
    if not target.exists():
        return False
    cmd = _open_command(target, reveal)
    try:
        subprocess.Popen(cmd, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL)
    except OSError as exc:
        logger.warning("Could not run %s: %s", cmd[0], exc)
    return True
