from __future__ import annotations

import posixpath
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, ValidationInfo, field_validator

from .errors import JobValidationError


def utc_now() -> datetime:
    return datetime.now(UTC)


def normalize_path(path: str | Path) -> str:
    """Return a POSIX-normalized relative path string used as a graph key."""
    text = str(path).strip().replace("\\", "/")
    if not text:
        return ""
    return posixpath.normpath(text)


# ---------------------------------------------------------------------------
# Job status state machine
# ---------------------------------------------------------------------------


class JobStatus(str, Enum):
    CREATED = "created"
    PENDING_TEST = "pending_test"
    PENDING_WORK = "pending_work"
    PENDING_VERIFICATION = "pending_verification"
    PENDING_TEST_RUN = "pending_test_run"
    PASS = "pass"
    FAIL = "fail"
    PARTIAL = "partial"

    @property
    def is_ready(self) -> bool:
        return self is JobStatus.CREATED

    @property
    def is_stuck(self) -> bool:
        return self in _STUCK_STATUSES

    @property
    def is_complete(self) -> bool:
        return self in {JobStatus.PASS, JobStatus.FAIL}

    @property
    def is_tdd_phase(self) -> bool:
        return self in {JobStatus.PENDING_TEST, JobStatus.PENDING_TEST_RUN}

    @property
    def is_partial(self) -> bool:
        return self is JobStatus.PARTIAL

    def next_status(self, tdd_enabled: bool) -> JobStatus | None:
        """Return the next workflow status, or None when the next step is terminal.

        Terminal outcomes (Pass/Fail) depend on verification, so the caller
        chooses them explicitly.
        """
        if self is JobStatus.CREATED:
            return JobStatus.PENDING_TEST if tdd_enabled else JobStatus.PENDING_WORK
        if self is JobStatus.PENDING_TEST and tdd_enabled:
            return JobStatus.PENDING_WORK
        if self is JobStatus.PENDING_WORK:
            return JobStatus.PENDING_VERIFICATION
        if self is JobStatus.PENDING_VERIFICATION and tdd_enabled:
            return JobStatus.PENDING_TEST_RUN
        return None


_STUCK_STATUSES = frozenset(
    {
        JobStatus.PENDING_TEST,
        JobStatus.PENDING_WORK,
        JobStatus.PENDING_VERIFICATION,
        JobStatus.PENDING_TEST_RUN,
        JobStatus.PARTIAL,
    }
)


class SuccessfulEdit(BaseModel):
    model_config = ConfigDict(extra="ignore")

    file_path: str
    find_preview: str


class FailedEdit(BaseModel):
    model_config = ConfigDict(extra="ignore")

    file_path: str
    find_preview: str
    reason: str = ""
    suggested_line: int | None = None


class PartialEditState(BaseModel):
    """Structured record of an edit-mode job where only some edits applied."""

    model_config = ConfigDict(extra="ignore")

    successful_edits: list[SuccessfulEdit] = Field(default_factory=list)
    failed_edits: list[FailedEdit] = Field(default_factory=list)

    @property
    def has_failures(self) -> bool:
        return bool(self.failed_edits)


class JobStatusEntry(BaseModel):
    """One persisted row of the status file.

    Unknown keys are ignored on load so older binaries can read files
    written by newer ones.
    """

    model_config = ConfigDict(extra="ignore")

    id: str
    status: JobStatus = JobStatus.CREATED
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    error: str | None = None
    partial_state: PartialEditState | None = None
    ran: bool = False

    def update_status(self, status: JobStatus) -> None:
        self.status = status
        self.updated_at = utc_now()
        if status is not JobStatus.FAIL:
            self.error = None

    def set_failed(self, error: str) -> None:
        self.status = JobStatus.FAIL
        self.error = error
        self.updated_at = utc_now()


@dataclass(frozen=True)
class StatusSummary:
    total: int = 0
    created: int = 0
    pending: int = 0
    partial: int = 0
    passed: int = 0
    failed: int = 0

    def __str__(self) -> str:
        return (
            f"Total: {self.total} | Created: {self.created} | Pending: {self.pending} | "
            f"Partial: {self.partial} | Passed: {self.passed} | Failed: {self.failed}"
        )


# ---------------------------------------------------------------------------
# Job definitions (one model per generation mode)
# ---------------------------------------------------------------------------


def _require_paths(values: list[str], field_name: str) -> list[str]:
    if not values:
        raise ValueError(f"{field_name} cannot be empty")
    if any(not str(value).strip() for value in values):
        raise ValueError(f"{field_name} contains an empty path")
    return [str(value).strip() for value in values]


class _JobSpecBase(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    context_files: list[str] = Field(default_factory=list)
    output_dir: str = "."
    output_file: str = ""
    test_file: str | None = None
    verify: bool = True

    @field_validator("context_files")
    @classmethod
    def _check_context_files(cls, value: list[str], info: ValidationInfo) -> list[str]:
        limit = (info.context or {}).get("max_context_files")
        if limit is not None and len(value) > limit:
            raise ValueError(f"Too many context files: {len(value)} (max: {limit})")
        return [str(item).strip() for item in value if str(item).strip()]

    @field_validator("test_file")
    @classmethod
    def _check_test_file(cls, value: str | None) -> str | None:
        if value is not None and not value.strip():
            raise ValueError("Test file name cannot be empty")
        return value

    @property
    def output_path(self) -> Path:
        return Path(self.output_dir) / self.output_file

    @property
    def test_path(self) -> Path | None:
        if self.test_file is None:
            return None
        return Path(self.output_dir) / self.test_file

    @property
    def tdd_enabled(self) -> bool:
        return self.test_file is not None

    def declared_outputs(self) -> list[Path]:
        return [self.output_path]

    def declared_inputs(self) -> list[Path]:
        return [Path(item) for item in self.context_files]


class ReplaceJob(_JobSpecBase):
    mode: Literal["replace"] = "replace"

    @field_validator("output_file")
    @classmethod
    def _check_output_file(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("Output file cannot be empty")
        return value.strip()


class EditJob(_JobSpecBase):
    mode: Literal["edit"] = "edit"
    target_files: list[str]

    @field_validator("target_files")
    @classmethod
    def _check_target_files(cls, value: list[str]) -> list[str]:
        return _require_paths(value, "target_files")

    def declared_outputs(self) -> list[Path]:
        return [self.output_path] if self.output_file.strip() else []

    def declared_inputs(self) -> list[Path]:
        return super().declared_inputs() + [Path(item) for item in self.target_files]


class SplitJob(_JobSpecBase):
    mode: Literal["split"] = "split"
    target_file: str
    output_files: list[str]

    @field_validator("target_file")
    @classmethod
    def _check_target_file(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("split mode target_file cannot be empty")
        return value.strip()

    @field_validator("output_files")
    @classmethod
    def _check_output_files(cls, value: list[str]) -> list[str]:
        return _require_paths(value, "output_files")

    def declared_outputs(self) -> list[Path]:
        return [Path(item) for item in self.output_files]


class SequentialJob(_JobSpecBase):
    mode: Literal["sequential"] = "sequential"
    output_files: list[str]

    @field_validator("output_files")
    @classmethod
    def _check_output_files(cls, value: list[str]) -> list[str]:
        return _require_paths(value, "output_files")

    def declared_outputs(self) -> list[Path]:
        return [Path(item) for item in self.output_files]


JobSpec = Annotated[
    Union[ReplaceJob, EditJob, SplitJob, SequentialJob],
    Field(discriminator="mode"),
]

_JOB_SPEC_ADAPTER: TypeAdapter[Any] = TypeAdapter(JobSpec)
SUPPORTED_MODES = frozenset({"replace", "edit", "split", "sequential"})


def parse_job_spec(raw: dict[str, Any], *, max_context_files: int | None = None) -> JobSpec:
    """Validate flat job frontmatter into the typed per-mode job model.

    The flat form mirrors what job authors write: ``mode`` defaults to
    ``replace`` and ``sequential: true`` combined with ``output_files``
    selects sequential generation.

    Raises:
        JobValidationError: If the frontmatter is inconsistent for its mode.
    """
    data = dict(raw)
    mode = str(data.get("mode") or "replace").strip().lower()
    sequential = bool(data.pop("sequential", False))
    if mode not in SUPPORTED_MODES:
        raise JobValidationError(f"Unsupported job mode: {mode!r}")
    if sequential:
        if mode == "edit":
            raise JobValidationError("edit mode cannot be combined with sequential mode")
        if mode == "split":
            raise JobValidationError("split mode cannot be combined with sequential mode")
        if data.get("output_files") is not None:
            mode = "sequential"
    if mode == "split":
        if not data.get("target_file"):
            raise JobValidationError("split mode requires target_file")
        if data.get("output_files") is None:
            raise JobValidationError("split mode requires output_files")
    if mode == "edit" and data.get("target_files") is None:
        raise JobValidationError("target_files list cannot be empty in edit mode")
    data["mode"] = mode
    for key in ("output_dir", "output_file", "target_file", "test_file"):
        if data.get(key) is not None:
            data[key] = str(data[key])
    for key in ("context_files", "output_files", "target_files"):
        if data.get(key) is not None:
            data[key] = [str(item) for item in data[key]]
    try:
        return _JOB_SPEC_ADAPTER.validate_python(data, context={"max_context_files": max_context_files})
    except ValidationError as exc:
        messages = "; ".join(str(error.get("msg", "")).removeprefix("Value error, ") for error in exc.errors())
        raise JobValidationError(messages) from exc


@dataclass(frozen=True)
class Job:
    id: str
    spec: JobSpec
    instructions: str
    file_path: Path

    @property
    def mode(self) -> str:
        return self.spec.mode


# ---------------------------------------------------------------------------
# Parsing results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ExtractedFile:
    """A generated file; ``path`` is None when the job's default output applies."""

    content: str
    path: str | None = None


class VerificationResult(str, Enum):
    PASS = "pass"
    PASS_WITH_WARNINGS = "pass_with_warnings"
    FAIL_SOFT = "fail_soft"
    FAIL_HARD = "fail_hard"

    def is_pass(self) -> bool:
        return self in {VerificationResult.PASS, VerificationResult.PASS_WITH_WARNINGS}

    def is_hard_fail(self) -> bool:
        return self is VerificationResult.FAIL_HARD

    def to_job_status(self) -> JobStatus:
        return JobStatus.PASS if self.is_pass() else JobStatus.FAIL


@dataclass(frozen=True)
class EditInstruction:
    file_path: str
    find: str
    replace: str


@dataclass
class ParsedEdits:
    edits: list[EditInstruction] = field(default_factory=list)
    affected_files: list[str] = field(default_factory=list)

    def for_file(self, path: str | Path) -> list[EditInstruction]:
        """Return the edits whose FILE line names ``path`` (suffix match tolerated)."""
        wanted = normalize_path(path)
        matches: list[EditInstruction] = []
        for edit in self.edits:
            candidate = normalize_path(edit.file_path)
            if candidate == wanted or wanted.endswith("/" + candidate) or candidate.endswith("/" + wanted):
                matches.append(edit)
        return matches


# ---------------------------------------------------------------------------
# Auto-fix error classification
# ---------------------------------------------------------------------------


class ErrorType(str, Enum):
    BUILD = "build"
    TEST = "test"
    LINT = "lint"

    @property
    def prompt_header(self) -> str:
        return {
            ErrorType.BUILD: "## Build/Compilation Errors",
            ErrorType.TEST: "## Test Failures",
            ErrorType.LINT: "## Linter Errors",
        }[self]

    @property
    def fix_instructions(self) -> str:
        return {
            ErrorType.BUILD: "Fix the compilation errors. Focus on type mismatches, missing imports, and syntax errors.",
            ErrorType.TEST: "Fix the test failures. Focus on assertion logic, test setup, and expected values.",
            ErrorType.LINT: "Fix the linter errors. Focus on unused variables, missing type annotations, and style issues.",
        }[self]


# ---------------------------------------------------------------------------
# Run results
# ---------------------------------------------------------------------------


@dataclass
class JobResult:
    job_id: str
    status: JobStatus
    error: str | None = None
    output_paths: list[Path] = field(default_factory=list)
    output_lines: int | None = None
    test_path: Path | None = None
    test_lines: int | None = None
    retry_attempted: bool = False


@dataclass
class RunSummary:
    processed: int = 0
    passed: int = 0
    failed: int = 0
    skipped: int = 0
    results: list[JobResult] = field(default_factory=list)

    def record(self, result: JobResult) -> None:
        self.processed += 1
        if result.status is JobStatus.PASS:
            self.passed += 1
        elif result.status in {JobStatus.FAIL, JobStatus.PARTIAL}:
            self.failed += 1
        self.results.append(result)
