from __future__ import annotations


class TranscriptionError(RuntimeError):
    """Base class for failures that end a job."""

    kind = "error"


class EnvironmentSetupError(TranscriptionError):
    """A prerequisite tool is missing or the engine could not be installed."""

    kind = "environment"


class LaunchError(TranscriptionError):
    """The engine executable could not be started."""

    kind = "launch"


class EngineError(TranscriptionError):
    """The engine exited unsuccessfully without leaving usable output."""

    kind = "engine"

    def __init__(self, message: str, diagnostics: str = "") -> None:
        super().__init__(message)
        self.diagnostics = diagnostics


class ReconcileError(TranscriptionError):
    """Output files could not be moved to their destination."""

    kind = "reconcile"


class JobCancelledError(TranscriptionError):
    kind = "cancelled"


class InvalidTransitionError(RuntimeError):
    pass
