from __future__ import annotations

import logging
import re
import threading
from pathlib import Path
from typing import Any

import yaml

from .errors import ContextFileError, JobNotFoundError, JobValidationError, ProtectedPathError
from .models import Job, JobSpec, parse_job_spec
from .prompts import DEFAULT_JOB_PROMPTS, PROMPT_FALLBACKS
from .settings import RuntimeSettings

logger = logging.getLogger(__name__)

_FRONTMATTER_RE = re.compile(r"^---[ \t]*\n(.*?)\n---[ \t]*(?:\n(.*))?$", re.DOTALL)


def split_frontmatter(text: str) -> tuple[dict[str, Any], str]:
    """Split a job markdown file into its YAML frontmatter mapping and body.

    Raises:
        JobValidationError: If the frontmatter is missing, malformed, or not a mapping.
    """
    match = _FRONTMATTER_RE.match(text.replace("\r\n", "\n").lstrip("\ufeff"))
    if match is None:
        raise JobValidationError("Job file does not start with YAML frontmatter delimited by '---'")
    try:
        frontmatter = yaml.safe_load(match.group(1))
    except yaml.YAMLError as exc:
        raise JobValidationError(f"Invalid YAML in frontmatter: {exc}") from exc
    if frontmatter is None:
        frontmatter = {}
    if not isinstance(frontmatter, dict):
        raise JobValidationError("Frontmatter must be a YAML mapping")
    return frontmatter, (match.group(2) or "").strip()


class JobsManager:
    """Discovers job files and loads their declared input files.

    Job files are ``<jobs_dir>/<id>.md``; files whose name starts with ``_``
    (system prompts, the status file) are reserved and never treated as jobs.
    """

    def __init__(self, settings: RuntimeSettings) -> None:
        self.settings = settings
        self.project_root = settings.project_root_path
        self.jobs_dir = settings.jobs_dir_path
        self._cache: dict[Path, str] = {}
        self._cache_lock = threading.Lock()

    def discover_jobs(self) -> list[str]:
        if not self.jobs_dir.is_dir():
            logger.warning("Jobs directory does not exist: %s", self.jobs_dir)
            return []
        return sorted(
            path.stem
            for path in self.jobs_dir.glob("*.md")
            if path.is_file() and not path.name.startswith("_")
        )

    def job_path(self, job_id: str) -> Path:
        return self.jobs_dir / f"{job_id}.md"

    def parse_job(self, job_id: str) -> Job:
        path = self.job_path(job_id)
        if not path.is_file():
            raise JobNotFoundError(job_id)
        frontmatter, body = split_frontmatter(path.read_text(encoding="utf-8"))
        try:
            spec: JobSpec = parse_job_spec(frontmatter, max_context_files=self.settings.max_context_files)
        except JobValidationError as exc:
            raise JobValidationError(f"{job_id}: {exc}") from exc
        if not body:
            raise JobValidationError(f"{job_id}: job instructions are empty")
        return Job(id=job_id, spec=spec, instructions=body, file_path=path)

    def parse_all(self) -> tuple[list[Job], dict[str, str]]:
        """Parse every discovered job, returning valid jobs and per-id errors."""
        jobs: list[Job] = []
        errors: dict[str, str] = {}
        for job_id in self.discover_jobs():
            try:
                jobs.append(self.parse_job(job_id))
            except JobValidationError as exc:
                errors[job_id] = str(exc)
        return jobs, errors

    # ------------------------------------------------------------------
    # Prompts
    # ------------------------------------------------------------------

    def load_job_prompt(self, kind: str) -> str:
        """Return ``_systemprompt_<kind>.md`` from the jobs dir, else the built-in text."""
        candidates = [kind]
        if kind in PROMPT_FALLBACKS:
            candidates.append(PROMPT_FALLBACKS[kind])
        for candidate in candidates:
            path = self.jobs_dir / f"_systemprompt_{candidate}.md"
            if path.is_file():
                return path.read_text(encoding="utf-8").strip()
        return DEFAULT_JOB_PROMPTS[kind]

    # ------------------------------------------------------------------
    # File access
    # ------------------------------------------------------------------

    def resolve(self, path: Path | str) -> Path:
        candidate = Path(path)
        return candidate if candidate.is_absolute() else self.project_root / candidate

    def _read(self, path: Path | str) -> str:
        resolved = self.resolve(path)
        with self._cache_lock:
            cached = self._cache.get(resolved)
        if cached is not None:
            return cached
        if not resolved.is_file():
            raise ContextFileError(f"Context file not found: {path}")
        try:
            content = resolved.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            raise ContextFileError(f"Failed to read {path}: {exc}") from exc
        with self._cache_lock:
            self._cache[resolved] = content
        return content

    def load_context_file(self, path: Path | str) -> str:
        content = self._read(path)
        lines = len(content.splitlines())
        if lines > self.settings.max_context_lines:
            raise ContextFileError(
                f"Context file too large: {path} has {lines} lines (max: {self.settings.max_context_lines})"
            )
        return content

    def load_context_files(self, paths: list[str]) -> list[tuple[str, str]]:
        return [(path, self.load_context_file(path)) for path in paths]

    def load_target_file(self, path: Path | str) -> str:
        """Read a file that will be edited or split; no line limit applies."""
        return self._read(path)

    def invalidate(self, path: Path | str) -> None:
        with self._cache_lock:
            self._cache.pop(self.resolve(path), None)

    def is_protected(self, path: Path | str) -> bool:
        resolved = self.resolve(path).resolve()
        jobs_dir = self.jobs_dir.resolve()
        return resolved.name.startswith("_") and (resolved.parent == jobs_dir or jobs_dir in resolved.parents)

    def safe_write(self, path: Path | str, content: str) -> Path:
        """Write a generated file under the project root, refusing reserved job files."""
        if self.is_protected(path):
            raise ProtectedPathError(Path(path))
        resolved = self.resolve(path)
        root = self.project_root.resolve()
        if root not in resolved.resolve().parents:
            raise ProtectedPathError(Path(path), "path outside the project root")
        if not resolved.parent.exists():
            if not self.settings.create_output_dirs:
                raise ContextFileError(f"Output directory does not exist: {resolved.parent}")
            resolved.parent.mkdir(parents=True, exist_ok=True)
        text = content if content.endswith("\n") else content + "\n"
        resolved.write_text(text, encoding="utf-8")
        self.invalidate(path)
        logger.info("Wrote %s (%d lines)", path, len(text.splitlines()))
        return resolved
