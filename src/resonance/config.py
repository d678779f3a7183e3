from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv


@dataclass(slots=True)
class Settings:
    host: str
    port: int
    mcp_path: str
    health_path: str
    poll_interval_seconds: float
    data_dir: Path
    install_root: Path
    max_concurrent_jobs: int
    install_timeout_seconds: float
    engine_package: str


def _as_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    return int(raw)


def _as_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    return float(raw)


def _normalized_path(path: str) -> str:
    if not path.startswith("/"):
        path = f"/{path}"
    return path


def load_settings() -> Settings:
    load_dotenv()
    default_data_dir = Path.home() / ".local" / "share" / "resonance"
    data_dir = Path(os.getenv("DATA_DIR", str(default_data_dir))).expanduser().resolve()
    install_root = Path(os.getenv("INSTALL_ROOT", str(data_dir / "whisper"))).expanduser().resolve()

    max_concurrent_jobs = _as_int("MAX_CONCURRENT_JOBS", 2)
    if max_concurrent_jobs < 1:
        raise RuntimeError("MAX_CONCURRENT_JOBS must be at least 1")

    return Settings(
        host=os.getenv("HOST", "127.0.0.1"),
        port=_as_int("PORT", 3000),
        mcp_path=_normalized_path(os.getenv("MCP_PATH", "/mcp")),
        health_path=_normalized_path(os.getenv("HEALTH_PATH", "/healthz")),
        poll_interval_seconds=_as_float("POLL_INTERVAL_SECONDS", 1.0),
        data_dir=data_dir,
        install_root=install_root,
        max_concurrent_jobs=max_concurrent_jobs,
        install_timeout_seconds=_as_float("INSTALL_TIMEOUT_SECONDS", 600.0),
        engine_package=os.getenv("ENGINE_PACKAGE", "openai-whisper").strip() or "openai-whisper",
    )
