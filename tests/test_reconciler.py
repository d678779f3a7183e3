from pathlib import Path

import pytest

from resonance.errors import EngineError, ReconcileError
from resonance.services.reconciler import ArtifactReconciler, engine_output_format


def _engine_outputs(directory: Path, stem: str, *exts: str) -> None:
    for ext in exts:
        (directory / f"{stem}.{ext}").write_text(f"hello world from {ext}\n", encoding="utf-8")


def _source(tmp_path: Path, name: str = "talk.mp3") -> Path:
    source = tmp_path / name
    source.write_bytes(b"fake-audio")
    return source


def test_engine_output_format_covers_request_in_one_pass() -> None:
    assert engine_output_format({"subtitle"}) == "srt"
    assert engine_output_format({"plaintext"}) == "txt"
    assert engine_output_format({"markdown"}) == "txt"
    assert engine_output_format({"subtitle", "markdown"}) == "all"
    assert engine_output_format({"subtitle", "plaintext", "markdown"}) == "all"
    assert engine_output_format(set()) == "srt"


def test_subtitle_and_markdown_from_full_output(tmp_path: Path) -> None:
    source = _source(tmp_path)
    _engine_outputs(tmp_path, "talk", "srt", "txt", "vtt", "tsv", "json")

    artifacts = ArtifactReconciler().reconcile(
        {"subtitle", "markdown"}, source_path=source, output_dir=tmp_path
    )

    assert set(artifacts) == {"subtitle", "markdown"}
    assert artifacts["subtitle"] == tmp_path / "talk.srt"
    markdown = artifacts["markdown"].read_text(encoding="utf-8")
    assert markdown.startswith("# Transcription\n")
    assert "**File:** talk.mp3" in markdown
    assert "---" in markdown
    assert "hello world from txt" in markdown
    for ext in ("txt", "vtt", "tsv", "json"):
        assert not (tmp_path / f"talk.{ext}").exists()


def test_markdown_needs_plaintext(tmp_path: Path) -> None:
    source = _source(tmp_path)
    _engine_outputs(tmp_path, "talk", "srt")

    artifacts = ArtifactReconciler().reconcile(
        {"subtitle", "markdown"}, source_path=source, output_dir=tmp_path
    )

    assert set(artifacts) == {"subtitle"}
    assert not (tmp_path / "talk.md").exists()


def test_nonzero_exit_with_partial_output_is_success(tmp_path: Path) -> None:
    source = _source(tmp_path)
    _engine_outputs(tmp_path, "talk", "srt")

    artifacts = ArtifactReconciler().reconcile(
        {"subtitle"},
        source_path=source,
        output_dir=tmp_path,
        returncode=1,
        diagnostics="RuntimeWarning: something benign",
    )

    assert artifacts == {"subtitle": tmp_path / "talk.srt"}


def test_nonzero_exit_without_output_fails_with_diagnostics(tmp_path: Path) -> None:
    source = _source(tmp_path)
    _engine_outputs(tmp_path, "talk", "vtt")

    with pytest.raises(EngineError) as excinfo:
        ArtifactReconciler().reconcile(
            {"subtitle"},
            source_path=source,
            output_dir=tmp_path,
            returncode=1,
            diagnostics="Failed to load audio: ffmpeg error",
        )

    assert "Failed to load audio" in str(excinfo.value)
    assert excinfo.value.diagnostics == "Failed to load audio: ffmpeg error"
    assert not (tmp_path / "talk.vtt").exists()


def test_relocates_into_destination(tmp_path: Path) -> None:
    source = _source(tmp_path)
    _engine_outputs(tmp_path, "talk", "srt", "txt")
    destination = tmp_path / "out" / "nested"

    artifacts = ArtifactReconciler().reconcile(
        {"subtitle", "plaintext"},
        source_path=source,
        output_dir=tmp_path,
        destination_dir=destination,
    )

    assert artifacts == {
        "plaintext": destination / "talk.txt",
        "subtitle": destination / "talk.srt",
    }
    assert all(path.exists() for path in artifacts.values())
    assert not (tmp_path / "talk.srt").exists()
    assert not (tmp_path / "talk.txt").exists()


def test_destination_equal_to_output_dir_is_left_alone(tmp_path: Path) -> None:
    source = _source(tmp_path)
    _engine_outputs(tmp_path, "talk", "srt")

    artifacts = ArtifactReconciler().reconcile(
        {"subtitle"}, source_path=source, output_dir=tmp_path, destination_dir=tmp_path
    )

    assert artifacts == {"subtitle": tmp_path / "talk.srt"}


def test_copy_failure_keeps_originals(tmp_path: Path) -> None:
    source = _source(tmp_path)
    _engine_outputs(tmp_path, "talk", "srt")
    blocked = tmp_path / "not-a-dir"
    blocked.write_text("occupied", encoding="utf-8")

    with pytest.raises(ReconcileError):
        ArtifactReconciler().reconcile(
            {"subtitle"}, source_path=source, output_dir=tmp_path, destination_dir=blocked
        )

    assert (tmp_path / "talk.srt").exists()


def test_removal_failure_after_copy_is_reconcile_error(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    source = _source(tmp_path)
    _engine_outputs(tmp_path, "talk", "srt")
    destination = tmp_path / "exports"
    original_unlink = Path.unlink

    def read_only_unlink(self: Path, missing_ok: bool = False) -> None:
        if self.parent == tmp_path:
            raise PermissionError(f"Permission denied: '{self}'")
        original_unlink(self, missing_ok=missing_ok)

    monkeypatch.setattr(Path, "unlink", read_only_unlink)

    with pytest.raises(ReconcileError) as excinfo:
        ArtifactReconciler().reconcile(
            {"subtitle"}, source_path=source, output_dir=tmp_path, destination_dir=destination
        )

    assert "could not remove" in str(excinfo.value)
    assert (destination / "talk.srt").exists()
    assert (tmp_path / "talk.srt").exists()


def test_dotted_file_names_keep_full_stem(tmp_path: Path) -> None:
    source = _source(tmp_path, "team.sync.2024.m4a")
    _engine_outputs(tmp_path, "team.sync.2024", "txt")

    artifacts = ArtifactReconciler().reconcile(
        {"plaintext"}, source_path=source, output_dir=tmp_path
    )

    assert artifacts == {"plaintext": tmp_path / "team.sync.2024.txt"}


def test_discard_removes_engine_outputs(tmp_path: Path) -> None:
    source = _source(tmp_path)
    _engine_outputs(tmp_path, "talk", "srt", "txt", "json")

    ArtifactReconciler().discard(source, tmp_path)

    assert sorted(path.name for path in tmp_path.iterdir()) == ["talk.mp3"]
