from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, TypedDict

from langgraph.graph import END, START, StateGraph
from langgraph.types import Command

from .build import run_command
from .edits import FileEditReport, apply_file_edits, build_partial_state, generate_suggestions
from .errors import (
    BuildFailedError,
    EditApplyError,
    EditFailedError,
    GenerationError,
    GenerationParseError,
    JobNotFoundError,
    JobValidationError,
    StatusStoreError,
    WorkSplitError,
)
from .jobs import JobsManager
from .llm import Generator
from .models import (
    EditInstruction,
    EditJob,
    ErrorType,
    Job,
    JobResult,
    JobStatus,
    PartialEditState,
    SequentialJob,
    SplitJob,
    VerificationResult,
    normalize_path,
)
from .parsing import classify_verification, count_lines, extract_code, extract_files, parse_edit_instructions
from .prompts import (
    SYSTEM_PROMPT_CREATE,
    SYSTEM_PROMPT_EDIT,
    SYSTEM_PROMPT_FIX,
    SYSTEM_PROMPT_RETRY,
    SYSTEM_PROMPT_TEST,
    SYSTEM_PROMPT_VERIFY,
    assemble_creation_prompt,
    assemble_edit_prompt,
    assemble_fix_prompt,
    assemble_retry_prompt,
    assemble_sequential_prompt,
    assemble_test_prompt,
    assemble_verification_prompt,
    check_token_budget,
)
from .settings import RuntimeSettings
from .status_store import StatusStore

logger = logging.getLogger(__name__)


class JobState(TypedDict, total=False):
    job_id: str
    job: Job
    context: list[tuple[str, str]]
    outputs: dict[str, str]
    test_path: str
    test_lines: int
    partial_state: PartialEditState
    verification: VerificationResult
    reason: str
    retry_attempted: bool
    final_status: JobStatus


@dataclass
class EditPreview:
    """What an edit-mode job would change, computed without writing any file."""

    job_id: str
    reports: list[FileEditReport] = field(default_factory=list)
    unmatched: list[EditInstruction] = field(default_factory=list)
    suggestions: list[str] = field(default_factory=list)

    @property
    def applied_count(self) -> int:
        return sum(len(report.applied) for report in self.reports)

    @property
    def failed_count(self) -> int:
        return sum(len(report.failed) for report in self.reports) + len(self.unmatched)


class OrchestrationEngine:
    """Per-job controller: prepare -> tests -> generate -> build_check -> verify -> retry -> finalize.

    Each node records progress in the ``StatusStore``. Errors raised by any
    node are caught in ``run`` and recorded against the job, except status
    file failures, which abort the whole run.
    """

    def __init__(
        self,
        *,
        settings: RuntimeSettings,
        store: StatusStore,
        jobs: JobsManager,
        generator: Generator,
    ) -> None:
        self.settings = settings
        self.store = store
        self.jobs = jobs
        self.generator = generator
        self.graph = self._build_graph().compile()

    def _build_graph(self) -> StateGraph:
        graph = StateGraph(JobState)
        graph.add_node("prepare", self._prepare)
        graph.add_node("tests", self._tests)
        graph.add_node("generate", self._generate_outputs)
        graph.add_node("build_check", self._build_check)
        graph.add_node("verify", self._verify)
        graph.add_node("retry", self._retry)
        graph.add_node("test_run", self._test_run)
        graph.add_node("finalize", self._finalize)

        graph.add_edge(START, "prepare")
        graph.add_edge("tests", "generate")
        graph.add_edge("generate", "build_check")
        graph.add_edge("retry", "verify")
        graph.add_edge("test_run", "finalize")
        graph.add_edge("finalize", END)
        return graph

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def run(self, job_id: str) -> JobResult:
        """Run one job to a terminal status and mark it as ran, whatever the outcome."""
        logger.info("Processing job: %s", job_id)
        try:
            final = self.graph.invoke({"job_id": job_id, "retry_attempted": False})
            return self._result_from_state(final)
        except StatusStoreError:
            raise
        except (WorkSplitError, OSError) as exc:
            message = str(exc) or type(exc).__name__
            logger.error("Job %s failed: %s", job_id, message.split("\n", 1)[0])
            try:
                self.store.set_failed(job_id, message)
            except JobNotFoundError:
                logger.warning("Could not record failure for %s: not tracked in status file", job_id)
            return JobResult(job_id=job_id, status=JobStatus.FAIL, error=message)
        finally:
            try:
                self.store.mark_ran(job_id)
            except JobNotFoundError:
                logger.warning("Could not mark job %s as ran: not tracked in status file", job_id)

    def dry_run_edit(self, job_id: str) -> EditPreview:
        """Generate edits for an edit-mode job and report what would apply, without writing."""
        job = self.jobs.parse_job(job_id)
        if not isinstance(job.spec, EditJob):
            raise JobValidationError(f"{job_id}: dry run is only available for edit-mode jobs")
        context = self.jobs.load_context_files(job.spec.context_files)
        reports, unmatched, total = self._compute_edits(job, context)
        preview = EditPreview(job_id=job_id, reports=reports, unmatched=unmatched)
        preview.suggestions = generate_suggestions(build_partial_state(reports), total)
        return preview

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _generate(self, system_prompt: str, user_prompt: str, *, stream: bool | None = None) -> str:
        use_stream = self.settings.stream_output if stream is None else stream
        return self.generator.generate(system_prompt, user_prompt, stream=use_stream)

    def _write(self, path: str, content: str) -> None:
        lines = count_lines(content)
        if lines > self.settings.max_output_lines:
            logger.warning("%s has %d lines, above max_output_lines=%d", path, lines, self.settings.max_output_lines)
        self.jobs.safe_write(path, content)

    def _current_contents(self, paths: list[str]) -> list[tuple[str, str]]:
        files: list[tuple[str, str]] = []
        for path in paths:
            self.jobs.invalidate(path)
            try:
                files.append((path, self.jobs.load_target_file(path)))
            except WorkSplitError:
                logger.warning("Generated file %s is no longer readable", path)
        return files

    @staticmethod
    def _result_from_state(state: JobState) -> JobResult:
        outputs = state.get("outputs", {})
        test_path = state.get("test_path")
        status = state["final_status"]
        return JobResult(
            job_id=state["job_id"],
            status=status,
            error=state.get("reason") if status is not JobStatus.PASS else None,
            output_paths=[Path(path) for path in outputs],
            output_lines=sum(count_lines(content) for content in outputs.values()) if outputs else None,
            test_path=Path(test_path) if test_path else None,
            test_lines=state.get("test_lines"),
            retry_attempted=bool(state.get("retry_attempted")),
        )

    # ------------------------------------------------------------------
    # Graph nodes
    # ------------------------------------------------------------------

    def _prepare(self, state: JobState) -> Command[str]:
        job = self.jobs.parse_job(state["job_id"])
        context = self.jobs.load_context_files(job.spec.context_files)
        budget = check_token_budget(
            self.jobs.load_job_prompt("create"), context, job.instructions, self.settings.token_budget
        )
        if budget.is_error:
            raise JobValidationError(
                f"{job.id}: estimated {budget.estimated} tokens exceeds the budget of {budget.limit}"
            )
        first = JobStatus.CREATED.next_status(job.spec.tdd_enabled)
        self.store.update(job.id, first)
        update: dict[str, Any] = {"job": job, "context": context, "outputs": {}}
        return Command(update=update, goto="tests" if first is JobStatus.PENDING_TEST else "generate")

    def _tests(self, state: JobState) -> dict[str, Any]:
        job = state["job"]
        test_path = job.spec.test_path
        prompt = assemble_test_prompt(self.jobs.load_job_prompt("test"), state["context"], job.instructions, test_path)
        logger.info("Generating tests for %s -> %s", job.id, test_path)
        content = extract_code(self._generate(SYSTEM_PROMPT_TEST, prompt))
        if not content.strip():
            raise GenerationParseError(f"No test code generated for {test_path}")
        self._write(str(test_path), content)
        self.store.update(job.id, JobStatus.PENDING_TEST.next_status(True))
        return {"test_path": str(test_path), "test_lines": count_lines(content)}

    def _generate_outputs(self, state: JobState) -> dict[str, Any]:
        job = state["job"]
        spec = job.spec
        if isinstance(spec, EditJob):
            return self._run_edit_mode(job, state["context"])
        if isinstance(spec, SplitJob):
            source = (spec.target_file, self.jobs.load_target_file(spec.target_file))
            return {"outputs": self._run_multi_file(job, state["context"], spec.output_files, source)}
        if isinstance(spec, SequentialJob):
            return {"outputs": self._run_multi_file(job, state["context"], spec.output_files, None)}
        return {"outputs": self._run_replace_mode(job, state["context"])}

    def _run_replace_mode(self, job: Job, context: list[tuple[str, str]]) -> dict[str, str]:
        default_path = str(job.spec.output_path)
        prompt = assemble_creation_prompt(self.jobs.load_job_prompt("create"), context, job.instructions, default_path)
        files = [item for item in extract_files(self._generate(SYSTEM_PROMPT_CREATE, prompt)) if item.content.strip()]
        if not files:
            raise GenerationParseError(f"No code extracted from response for {job.id}")
        outputs: dict[str, str] = {}
        for item in files:
            path = item.path or default_path
            self._write(path, item.content)
            outputs[path] = item.content
        return outputs

    def _run_multi_file(
        self,
        job: Job,
        context: list[tuple[str, str]],
        output_files: list[str],
        source: tuple[str, str] | None,
    ) -> dict[str, str]:
        system = self.jobs.load_job_prompt("split" if source is not None else "create")
        outputs: dict[str, str] = {}
        for index, path in enumerate(output_files):
            logger.info("Generating %s (%d/%d) for %s", path, index + 1, len(output_files), job.id)
            prompt = assemble_sequential_prompt(
                system,
                context,
                list(outputs.items()),
                job.instructions,
                path,
                output_files[index + 1 :],
                source_file=source,
            )
            extracted = extract_files(self._generate(SYSTEM_PROMPT_CREATE, prompt))
            wanted = normalize_path(path)
            chosen = next(
                (item for item in extracted if item.path and normalize_path(item.path) == wanted),
                next((item for item in extracted if item.path is None), None),
            )
            if chosen is None and extracted:
                named = ", ".join(item.path or "" for item in extracted)
                raise GenerationParseError(f"Response for {path} only contained other files: {named}")
            if chosen is None or not chosen.content.strip():
                raise GenerationParseError(f"No content generated for {path}")
            self._write(path, chosen.content)
            outputs[path] = chosen.content
        return outputs

    def _compute_edits(
        self, job: Job, context: list[tuple[str, str]]
    ) -> tuple[list[FileEditReport], list[EditInstruction], int]:
        spec = job.spec
        assert isinstance(spec, EditJob)
        targets = [(path, self.jobs.load_target_file(path)) for path in spec.target_files]
        prompt = assemble_edit_prompt(self.jobs.load_job_prompt("edit"), targets, context, job.instructions)
        parsed = parse_edit_instructions(self._generate(SYSTEM_PROMPT_EDIT, prompt))
        if not parsed.edits:
            raise EditFailedError("Edit mode produced no edits: no FILE/FIND/REPLACE/END blocks found in response")

        reports: list[FileEditReport] = []
        claimed: set[int] = set()
        for path, content in targets:
            edits = [edit for edit in parsed.for_file(path) if id(edit) not in claimed]
            claimed.update(id(edit) for edit in edits)
            if edits:
                reports.append(apply_file_edits(path, content, edits))
        unmatched = [edit for edit in parsed.edits if id(edit) not in claimed]
        for edit in unmatched:
            logger.warning("Edit targets %s, which is not a declared target file of %s", edit.file_path, job.id)
        return reports, unmatched, len(parsed.edits)

    def _run_edit_mode(self, job: Job, context: list[tuple[str, str]]) -> dict[str, Any]:
        reports, unmatched, total = self._compute_edits(job, context)
        for edit in unmatched:
            report = FileEditReport(file_path=edit.file_path, content="")
            report.failed.append((edit, EditApplyError(f"{edit.file_path} is not a target file of this job")))
            reports.append(report)

        outputs: dict[str, str] = {}
        for report in reports:
            if report.changed:
                self._write(report.file_path, report.content)
                outputs[report.file_path] = report.content
        partial = build_partial_state(reports)
        if not outputs:
            reasons = "; ".join(failed.reason.split("\n", 1)[0] for failed in partial.failed_edits)
            raise EditFailedError(f"Edit mode produced no edits: {reasons}")

        update: dict[str, Any] = {"outputs": outputs}
        if partial.has_failures:
            for hint in generate_suggestions(partial, total):
                logger.warning("%s: %s", job.id, hint)
            update["partial_state"] = partial
        return update

    # -- build / lint / test verification ------------------------------

    def _attempt_auto_fix(self, files: list[tuple[str, str]], error_output: str, error_type: ErrorType) -> bool:
        prompt = assemble_fix_prompt(error_type, error_output, files)
        logger.info("Calling generator to fix %s errors", error_type.value)
        try:
            response = self._generate(SYSTEM_PROMPT_FIX, prompt)
        except GenerationError as exc:
            logger.warning("Auto-fix generation failed: %s", exc)
            return False
        written = 0
        for item in extract_files(response):
            if not item.content.strip():
                continue
            if item.path is not None:
                target = item.path
            elif len(files) == 1:
                target = files[0][0]
            else:
                continue
            self._write(target, item.content)
            written += 1
        return written > 0

    def _check_command(self, command: str, error_type: ErrorType, paths: list[str]) -> None:
        root = self.settings.project_root_path
        timeout = self.settings.command_timeout_seconds
        result = run_command(command, root, timeout_seconds=timeout)
        if result.success:
            return
        if not self.settings.auto_fix:
            raise BuildFailedError(command, result.output)

        current_error = result.output
        attempts = self.settings.auto_fix_attempts
        for attempt in range(1, attempts + 1):
            logger.info("Auto-fix attempt %d/%d for %s", attempt, attempts, error_type.value)
            if not self._attempt_auto_fix(self._current_contents(paths), current_error, error_type):
                logger.warning("Auto-fix attempt %d produced no changes", attempt)
                continue
            result = run_command(command, root, timeout_seconds=timeout)
            if result.success:
                logger.info("%s succeeded after auto-fix attempt %d", command, attempt)
                return
            current_error = result.output
        raise BuildFailedError(
            command,
            f"{error_type.value.capitalize()} failed after {attempts} auto-fix attempts.\n\n"
            f"Files:\n" + "\n".join(paths) + f"\n\nFinal error:\n{current_error}",
        )

    def _build_check(self, state: JobState) -> Command[str]:
        paths = list(state.get("outputs", {}))
        for command, error_type in (
            (self.settings.build_command, ErrorType.BUILD),
            (self.settings.lint_command, ErrorType.LINT),
        ):
            if command:
                self._check_command(command, error_type, paths)
        job = state["job"]
        if job.spec.verify:
            return Command(goto="verify")
        return Command(goto="test_run" if job.spec.tdd_enabled else "finalize")

    def _test_run(self, state: JobState) -> dict[str, Any]:
        job = state["job"]
        self.store.update(job.id, JobStatus.PENDING_TEST_RUN)
        if self.settings.test_command:
            paths = list(state.get("outputs", {}))
            if state.get("test_path"):
                paths.append(state["test_path"])
            self._check_command(self.settings.test_command, ErrorType.TEST, paths)
        return {}

    # -- LLM verification ----------------------------------------------

    def _verify(self, state: JobState) -> Command[str]:
        job = state["job"]
        self.store.update(job.id, JobStatus.PENDING_VERIFICATION)
        generated = self._current_contents(list(state.get("outputs", {})))
        kind = "verify_edit" if isinstance(job.spec, EditJob) else "verify"
        prompt = assemble_verification_prompt(self.jobs.load_job_prompt(kind), state["context"], generated, job.instructions)
        result, reason = classify_verification(self._generate(SYSTEM_PROMPT_VERIFY, prompt, stream=False))
        logger.info("Verification for %s: %s%s", job.id, result.value, f" ({reason})" if reason else "")
        update: dict[str, Any] = {"verification": result, "reason": reason or ""}
        partial = state.get("partial_state")
        if partial is not None and partial.has_failures:
            # Partial edits are recorded as-is; verification output is diagnostic only.
            return Command(update=update, goto="finalize")
        if not result.is_pass() and not state.get("retry_attempted"):
            return Command(update=update, goto="retry")
        if result.is_pass() and job.spec.tdd_enabled:
            return Command(update=update, goto="test_run")
        return Command(update=update, goto="finalize")

    def _retry(self, state: JobState) -> dict[str, Any]:
        job = state["job"]
        previous = self._current_contents(list(state.get("outputs", {})))
        reason = state.get("reason") or "Verification failed"
        logger.info("Retrying %s after failed verification: %s", job.id, reason)
        prompt = assemble_retry_prompt(
            self.jobs.load_job_prompt("create"), state["context"], job.instructions, previous, reason
        )
        extracted = extract_files(self._generate(SYSTEM_PROMPT_RETRY, prompt))
        known = {normalize_path(path): path for path, _ in previous}
        outputs = dict(state.get("outputs", {}))
        for item in extracted:
            if not item.content.strip():
                continue
            if item.path is not None:
                target = known.get(normalize_path(item.path), item.path)
            elif len(previous) == 1:
                target = previous[0][0]
            else:
                logger.warning("Skipping retry output without a path for multi-file job %s", job.id)
                continue
            self._write(target, item.content)
            outputs[target] = item.content
        return {"outputs": outputs, "retry_attempted": True}

    # -- terminal status -------------------------------------------------

    def _finalize(self, state: JobState) -> dict[str, Any]:
        job = state["job"]
        verification = state.get("verification")
        partial = state.get("partial_state")
        reason = state.get("reason") or None

        if partial is not None and partial.has_failures:
            self.store.set_partial(job.id, partial)
            return {
                "final_status": JobStatus.PARTIAL,
                "reason": f"{len(partial.failed_edits)} edit(s) failed to apply",
            }
        if verification is not None and not verification.is_pass():
            message = reason or "Verification failed"
            self.store.set_failed(job.id, message)
            return {"final_status": JobStatus.FAIL, "reason": message}
        self.store.update(job.id, JobStatus.PASS)
        if self.store.get(job.id).partial_state is not None:
            self.store.clear_partial_state(job.id)
        return {"final_status": JobStatus.PASS}
