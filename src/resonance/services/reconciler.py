from __future__ import annotations

import logging
import shutil
from collections.abc import Iterable
from pathlib import Path

from resonance.errors import EngineError, ReconcileError
from resonance.types import OutputFormat

logger = logging.getLogger(__name__)

FORMAT_EXTENSIONS: dict[OutputFormat, str] = {
    "subtitle": "srt",
    "plaintext": "txt",
    "markdown": "md",
}
# Written by the engine in "all" mode but never handed to the caller.
AUXILIARY_EXTENSIONS = ("vtt", "tsv", "json")
ENGINE_EXTENSIONS = ("srt", "txt", *AUXILIARY_EXTENSIONS)

_MAX_DIAGNOSTICS_CHARS = 2000


def engine_output_format(requested: Iterable[OutputFormat]) -> str:
    """Pick the single ``--output_format`` value that covers ``requested``."""
    formats = set(requested)
    needs_txt = "plaintext" in formats or "markdown" in formats
    needs_srt = "subtitle" in formats
    if needs_txt and needs_srt:
        return "all"
    if needs_txt:
        return "txt"
    return "srt"


def to_markdown(transcript: str, source_name: str) -> str:
    lines = [
        "# Transcription",
        "",
        f"**File:** {source_name}",
        "",
        "---",
        "",
        transcript,
    ]
    return "\n".join(lines)


def artifact_path(output_dir: Path, source_path: Path, ext: str) -> Path:
    return output_dir / f"{source_path.stem}.{ext}"


def _remove(path: Path) -> None:
    if path.exists():
        path.unlink()
        logger.debug("Removed %s", path)


def _tail(text: str) -> str:
    text = text.strip()
    if len(text) <= _MAX_DIAGNOSTICS_CHARS:
        return text
    return "..." + text[-_MAX_DIAGNOSTICS_CHARS:]


class ArtifactReconciler:
    def reconcile(
        self,
        requested: Iterable[OutputFormat],
        *,
        source_path: Path,
        output_dir: Path,
        destination_dir: Path | None = None,
        returncode: int = 0,
        diagnostics: str = "",
    ) -> dict[OutputFormat, Path]:
        formats = set(requested)
        srt_path = artifact_path(output_dir, source_path, "srt")
        txt_path = artifact_path(output_dir, source_path, "txt")
        md_path = artifact_path(output_dir, source_path, "md")

        if "markdown" in formats and txt_path.exists():
            text = txt_path.read_text(encoding="utf-8")
            md_path.write_text(to_markdown(text, source_path.name), encoding="utf-8")

        for ext in AUXILIARY_EXTENSIONS:
            _remove(artifact_path(output_dir, source_path, ext))
        if "subtitle" not in formats:
            _remove(srt_path)
        if "plaintext" not in formats:
            _remove(txt_path)

        artifacts: dict[OutputFormat, Path] = {}
        for fmt in sorted(formats):
            path = artifact_path(output_dir, source_path, FORMAT_EXTENSIONS[fmt])
            if path.exists():
                artifacts[fmt] = path

        if returncode != 0:
            if not artifacts:
                detail = _tail(diagnostics) or "Unknown error"
                raise EngineError(f"Transcription failed: {detail}", diagnostics=diagnostics)
            logger.warning(
                "Engine exited with code %s but left %s; keeping partial output",
                returncode,
                ", ".join(sorted(artifacts)),
            )
        elif not artifacts:
            logger.warning("Engine exited cleanly but produced none of %s", sorted(formats))

        if destination_dir is not None and destination_dir.resolve() != output_dir.resolve():
            artifacts = self._relocate(artifacts, destination_dir)
        return artifacts

    def discard(self, source_path: Path, output_dir: Path) -> None:
        """Remove whatever the engine wrote for ``source_path``."""
        for ext in ENGINE_EXTENSIONS:
            _remove(artifact_path(output_dir, source_path, ext))

    @staticmethod
    def _relocate(
        artifacts: dict[OutputFormat, Path],
        destination_dir: Path,
    ) -> dict[OutputFormat, Path]:
        moved: dict[OutputFormat, Path] = {}
        try:
            destination_dir.mkdir(parents=True, exist_ok=True)
            for fmt, path in artifacts.items():
                target = destination_dir / path.name
                shutil.copy2(path, target)
                moved[fmt] = target
        except OSError as exc:
            raise ReconcileError(f"Could not copy output to {destination_dir}: {exc}") from exc

        # Originals go only once every copy landed.
        try:
            for path in artifacts.values():
                path.unlink(missing_ok=True)
        except OSError as exc:
            raise ReconcileError(f"Copied output to {destination_dir} but could not remove {path}: {exc}") from exc
        return moved
