from __future__ import annotations

from pathlib import Path


class WorkSplitError(Exception):
    """Base class for all job orchestration failures."""


class JobNotFoundError(WorkSplitError):
    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id


class StatusStoreError(WorkSplitError):
    """The status file could not be read, parsed, or written. Fatal to the run."""


class JobValidationError(WorkSplitError):
    pass


class ContextFileError(WorkSplitError):
    pass


class ProtectedPathError(WorkSplitError):
    def __init__(self, path: Path, reason: str = "protected job file") -> None:
        super().__init__(f"Refusing to write {reason}: {path}")
        self.path = path


class EditFailedError(WorkSplitError):
    pass


class BuildFailedError(WorkSplitError):
    def __init__(self, command: str, output: str) -> None:
        super().__init__(f"Build command failed: {command}\n{output}")
        self.command = command
        self.output = output


# ---------------------------------------------------------------------------
# Generation backend errors
# ---------------------------------------------------------------------------


class GenerationError(WorkSplitError):
    """A call to the text-generation backend failed."""


class GenerationConnectionError(GenerationError):
    pass


class GenerationTimeout(GenerationError):
    def __init__(self, seconds: float, detail: str = "") -> None:
        message = f"Generation timed out after {seconds:g}s"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.seconds = seconds


class GenerationHttpError(GenerationError):
    def __init__(self, status: int, message: str) -> None:
        super().__init__(f"HTTP {status}: {message}")
        self.status = status
        self.message = message


class GenerationParseError(GenerationError):
    pass


class GenerationStreamError(GenerationError):
    pass


class EditApplyError(WorkSplitError):
    """A single FIND/REPLACE instruction could not be located in its file."""

    def __init__(self, message: str, *, suggested_line: int | None = None) -> None:
        super().__init__(message)
        self.suggested_line = suggested_line
