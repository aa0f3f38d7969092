from importlib.metadata import version

from .edits import FileEditReport, FuzzyMatch, apply_edit, apply_edits, apply_file_edits, find_fuzzy_match
from .engine import EditPreview, OrchestrationEngine
from .errors import (
    BuildFailedError,
    ContextFileError,
    EditApplyError,
    EditFailedError,
    GenerationConnectionError,
    GenerationError,
    GenerationHttpError,
    GenerationParseError,
    GenerationStreamError,
    GenerationTimeout,
    JobNotFoundError,
    JobValidationError,
    ProtectedPathError,
    StatusStoreError,
    WorkSplitError,
)
from .jobs import JobsManager
from .llm import ChatGenerator, Generator
from .models import (
    EditInstruction,
    EditJob,
    ErrorType,
    ExtractedFile,
    FailedEdit,
    Job,
    JobResult,
    JobStatus,
    JobStatusEntry,
    ParsedEdits,
    PartialEditState,
    ReplaceJob,
    RunSummary,
    SequentialJob,
    SplitJob,
    StatusSummary,
    SuccessfulEdit,
    VerificationResult,
    parse_job_spec,
)
from .parsing import classify_verification, extract_files, parse_edit_instructions
from .runner import Runner
from .scheduler import DependencyGraph, ExecutionPlan
from .settings import RuntimeSettings
from .status_store import StatusStore


def get_version() -> str:
    try:
        return version(__name__)
    except Exception:
        return "0.0.0"


__all__ = [
    "BuildFailedError",
    "ChatGenerator",
    "ContextFileError",
    "DependencyGraph",
    "EditApplyError",
    "EditFailedError",
    "EditInstruction",
    "EditJob",
    "EditPreview",
    "ErrorType",
    "ExecutionPlan",
    "ExtractedFile",
    "FailedEdit",
    "FileEditReport",
    "FuzzyMatch",
    "GenerationConnectionError",
    "GenerationError",
    "GenerationHttpError",
    "GenerationParseError",
    "GenerationStreamError",
    "GenerationTimeout",
    "Generator",
    "Job",
    "JobNotFoundError",
    "JobResult",
    "JobStatus",
    "JobStatusEntry",
    "JobValidationError",
    "JobsManager",
    "OrchestrationEngine",
    "ParsedEdits",
    "PartialEditState",
    "ProtectedPathError",
    "ReplaceJob",
    "RunSummary",
    "Runner",
    "RuntimeSettings",
    "SequentialJob",
    "SplitJob",
    "StatusStore",
    "StatusStoreError",
    "StatusSummary",
    "SuccessfulEdit",
    "VerificationResult",
    "WorkSplitError",
    "apply_edit",
    "apply_edits",
    "apply_file_edits",
    "classify_verification",
    "extract_files",
    "find_fuzzy_match",
    "get_version",
    "parse_edit_instructions",
    "parse_job_spec",
]
