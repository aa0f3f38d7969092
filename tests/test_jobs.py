from __future__ import annotations

from pathlib import Path

import pytest

from worksplit.errors import ContextFileError, JobNotFoundError, JobValidationError, ProtectedPathError
from worksplit.jobs import JobsManager, split_frontmatter
from worksplit.models import EditJob, ReplaceJob
from worksplit.prompts import DEFAULT_JOB_PROMPTS
from worksplit.settings import RuntimeSettings


def _manager(root: Path, **overrides: object) -> JobsManager:
    settings = RuntimeSettings(project_root=str(root), **overrides).normalized()
    (root / "jobs").mkdir(exist_ok=True)
    return JobsManager(settings)


def _write_job(root: Path, job_id: str, frontmatter: str, body: str = "Build it.") -> None:
    (root / "jobs" / f"{job_id}.md").write_text(f"---\n{frontmatter}\n---\n\n{body}\n", encoding="utf-8")


def test_split_frontmatter() -> None:
    frontmatter, body = split_frontmatter("---\noutput_file: a.py\nverify: false\n---\nDo the thing.\n")
    assert frontmatter == {"output_file": "a.py", "verify": False}
    assert body == "Do the thing."


def test_split_frontmatter_errors() -> None:
    with pytest.raises(JobValidationError, match="does not start with YAML frontmatter"):
        split_frontmatter("no frontmatter here")
    with pytest.raises(JobValidationError, match="Invalid YAML"):
        split_frontmatter("---\nkey: [unclosed\n---\nbody")
    with pytest.raises(JobValidationError, match="must be a YAML mapping"):
        split_frontmatter("---\n- a\n- b\n---\nbody")


def test_discover_skips_reserved_files(tmp_path: Path) -> None:
    manager = _manager(tmp_path)
    _write_job(tmp_path, "b_job", "output_file: b.py")
    _write_job(tmp_path, "a_job", "output_file: a.py")
    (tmp_path / "jobs" / "_systemprompt_create.md").write_text("custom", encoding="utf-8")
    (tmp_path / "jobs" / "notes.txt").write_text("x", encoding="utf-8")
    assert manager.discover_jobs() == ["a_job", "b_job"]


def test_discover_missing_dir_returns_empty(tmp_path: Path) -> None:
    manager = JobsManager(RuntimeSettings(project_root=str(tmp_path), jobs_dir="absent"))
    assert manager.discover_jobs() == []


def test_parse_job(tmp_path: Path) -> None:
    manager = _manager(tmp_path)
    _write_job(tmp_path, "edit_job", "mode: edit\ntarget_files:\n  - src/app.py\ncontext_files: [docs.md]")
    job = manager.parse_job("edit_job")
    assert isinstance(job.spec, EditJob)
    assert job.mode == "edit"
    assert job.instructions == "Build it."
    assert job.file_path == tmp_path / "jobs" / "edit_job.md"


def test_parse_job_errors(tmp_path: Path) -> None:
    manager = _manager(tmp_path)
    with pytest.raises(JobNotFoundError):
        manager.parse_job("missing")

    _write_job(tmp_path, "empty_body", "output_file: a.py", body="")
    with pytest.raises(JobValidationError, match="instructions are empty"):
        manager.parse_job("empty_body")

    _write_job(tmp_path, "too_many", "output_file: a.py\ncontext_files: [a, b, c]")
    with pytest.raises(JobValidationError, match="too_many: Too many context files"):
        manager.parse_job("too_many")


def test_parse_all_separates_errors(tmp_path: Path) -> None:
    manager = _manager(tmp_path)
    _write_job(tmp_path, "good", "output_file: a.py")
    _write_job(tmp_path, "bad", "mode: edit")
    jobs, errors = manager.parse_all()
    assert [job.id for job in jobs] == ["good"]
    assert isinstance(jobs[0].spec, ReplaceJob)
    assert list(errors) == ["bad"]


def test_load_job_prompt_override_and_fallback(tmp_path: Path) -> None:
    manager = _manager(tmp_path)
    assert manager.load_job_prompt("verify") == DEFAULT_JOB_PROMPTS["verify"]

    (tmp_path / "jobs" / "_systemprompt_create.md").write_text("  Custom create.\n", encoding="utf-8")
    assert manager.load_job_prompt("create") == "Custom create."
    assert manager.load_job_prompt("edit") == "Custom create."

    (tmp_path / "jobs" / "_systemprompt_edit.md").write_text("Custom edit.", encoding="utf-8")
    assert manager.load_job_prompt("edit") == "Custom edit."


def test_context_file_line_limit(tmp_path: Path) -> None:
    manager = _manager(tmp_path, max_context_lines=3)
    (tmp_path / "small.py").write_text("a\nb\n", encoding="utf-8")
    (tmp_path / "large.py").write_text("1\n2\n3\n4\n", encoding="utf-8")
    assert manager.load_context_files(["small.py"]) == [("small.py", "a\nb\n")]
    with pytest.raises(ContextFileError, match="Context file too large: large.py has 4 lines"):
        manager.load_context_file("large.py")
    assert manager.load_target_file("large.py") == "1\n2\n3\n4\n"
    with pytest.raises(ContextFileError, match="not found"):
        manager.load_context_file("absent.py")


def test_safe_write_creates_dirs_and_refreshes_cache(tmp_path: Path) -> None:
    manager = _manager(tmp_path)
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "a.py").write_text("old\n", encoding="utf-8")
    assert manager.load_target_file("src/a.py") == "old\n"

    manager.safe_write("src/a.py", "new")
    assert (tmp_path / "src" / "a.py").read_text(encoding="utf-8") == "new\n"
    assert manager.load_target_file("src/a.py") == "new\n"

    manager.safe_write("deep/nested/b.py", "b = 1\n")
    assert (tmp_path / "deep" / "nested" / "b.py").is_file()


def test_safe_write_without_create_dirs(tmp_path: Path) -> None:
    manager = _manager(tmp_path, create_output_dirs=False)
    with pytest.raises(ContextFileError, match="Output directory does not exist"):
        manager.safe_write("missing/dir/a.py", "x")


def test_safe_write_refuses_reserved_job_files(tmp_path: Path) -> None:
    manager = _manager(tmp_path)
    with pytest.raises(ProtectedPathError):
        manager.safe_write("jobs/_jobstatus.json", "[]")
    with pytest.raises(ProtectedPathError):
        manager.safe_write("jobs/_systemprompt_create.md", "hijack")
    manager.safe_write("jobs/generated.md", "fine")
    assert (tmp_path / "jobs" / "generated.md").is_file()


def test_safe_write_stays_inside_project_root(tmp_path: Path) -> None:
    root = tmp_path / "project"
    root.mkdir()
    manager = _manager(root)
    with pytest.raises(ProtectedPathError, match="outside the project root"):
        manager.safe_write("../escape.py", "x = 1")
    with pytest.raises(ProtectedPathError, match="outside the project root"):
        manager.safe_write(tmp_path / "absolute.py", "x = 1")
    assert not (tmp_path / "escape.py").exists()
    assert not (tmp_path / "absolute.py").exists()

    manager.safe_write(root / "inside.py", "x = 1")
    assert (root / "inside.py").is_file()
