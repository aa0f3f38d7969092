from __future__ import annotations

import os
from pathlib import Path

import pytest

from worksplit.settings import CONFIG_FILENAME, RuntimeSettings


@pytest.fixture(autouse=True)
def _clean_worksplit_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep the developer's own WORKSPLIT_* variables out of these tests."""
    for name in list(os.environ):
        if name.startswith("WORKSPLIT_"):
            monkeypatch.delenv(name, raising=False)


def test_defaults() -> None:
    settings = RuntimeSettings.from_env()
    assert settings.model == "qwen-32k:latest"
    assert settings.base_url == "http://localhost:11434/v1"
    assert settings.max_output_lines == 900
    assert settings.max_context_lines == 1000
    assert settings.max_context_files == 2
    assert settings.auto_fix_attempts == 3
    assert settings.stream_output is True
    assert settings.max_concurrency == 1


def test_from_env_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("WORKSPLIT_MODEL", "  coder:7b  ")
    monkeypatch.setenv("WORKSPLIT_MAX_CONCURRENCY", "4")
    monkeypatch.setenv("WORKSPLIT_STREAM_OUTPUT", "off")
    monkeypatch.setenv("WORKSPLIT_TEMPERATURE", "0.3")
    monkeypatch.setenv("WORKSPLIT_BUILD_COMMAND", " make check ")
    settings = RuntimeSettings.from_env()
    assert settings.model == "coder:7b"
    assert settings.max_concurrency == 4
    assert settings.stream_output is False
    assert settings.temperature == pytest.approx(0.3)
    assert settings.build_command == "make check"


@pytest.mark.parametrize(
    ("name", "value"),
    [
        ("WORKSPLIT_MAX_OUTPUT_LINES", "abc"),
        ("WORKSPLIT_MAX_OUTPUT_LINES", "0"),
        ("WORKSPLIT_MAX_CONCURRENCY", "65"),
        ("WORKSPLIT_STREAM_OUTPUT", "maybe"),
        ("WORKSPLIT_TEMPERATURE", "3"),
        ("WORKSPLIT_MODEL", "   "),
    ],
)
def test_invalid_env_raises(monkeypatch: pytest.MonkeyPatch, name: str, value: str) -> None:
    monkeypatch.setenv(name, value)
    with pytest.raises(ValueError):
        RuntimeSettings.from_env()


def test_load_reads_toml_then_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    (tmp_path / CONFIG_FILENAME).write_text(
        "\n".join(
            [
                "[backend]",
                'model = "from-toml"',
                "timeout_seconds = 60",
                "[limits]",
                "max_output_lines = 500",
                "[build]",
                'lint_command = "ruff check ."',
                "auto_fix = false",
                "[paths]",
                'jobs_dir = "work"',
            ]
        ),
        encoding="utf-8",
    )
    monkeypatch.setenv("WORKSPLIT_TIMEOUT_SECONDS", "90")
    settings = RuntimeSettings.load(tmp_path)
    assert settings.model == "from-toml"
    assert settings.timeout_seconds == 90
    assert settings.max_output_lines == 500
    assert settings.lint_command == "ruff check ."
    assert settings.auto_fix is False
    assert settings.project_root_path == tmp_path
    assert settings.jobs_dir_path == tmp_path / "work"


def test_legacy_backend_table_gets_v1_suffix(tmp_path: Path) -> None:
    config = tmp_path / CONFIG_FILENAME
    config.write_text('[ollama]\nurl = "http://gpu-box:11434"\nmodel = "legacy"\n', encoding="utf-8")
    settings = RuntimeSettings.load(tmp_path)
    assert settings.base_url == "http://gpu-box:11434/v1"
    assert settings.model == "legacy"


def test_invalid_toml_raises(tmp_path: Path) -> None:
    (tmp_path / CONFIG_FILENAME).write_text("[backend\nmodel = ", encoding="utf-8")
    with pytest.raises(ValueError, match="not valid TOML"):
        RuntimeSettings.load(tmp_path)


def test_toml_type_errors_are_rejected(tmp_path: Path) -> None:
    (tmp_path / CONFIG_FILENAME).write_text('[limits]\nmax_output_lines = "many"\n', encoding="utf-8")
    with pytest.raises(ValueError, match="max_output_lines"):
        RuntimeSettings.load(tmp_path)


def test_absolute_jobs_dir_is_kept(tmp_path: Path) -> None:
    settings = RuntimeSettings(jobs_dir=str(tmp_path / "elsewhere"), project_root="/unused")
    assert settings.jobs_dir_path == tmp_path / "elsewhere"
