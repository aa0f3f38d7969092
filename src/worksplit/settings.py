from __future__ import annotations

import dataclasses
import os
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Any

CONFIG_FILENAME = "worksplit.toml"

# worksplit.toml table -> {toml key: settings field}
_TOML_FIELDS: dict[str, dict[str, str]] = {
    "backend": {
        "model": "model",
        "base_url": "base_url",
        "url": "base_url",
        "temperature": "temperature",
        "timeout_seconds": "timeout_seconds",
        "stall_timeout_seconds": "stall_timeout_seconds",
        "max_retries": "max_retries",
    },
    "limits": {
        "max_output_lines": "max_output_lines",
        "max_context_lines": "max_context_lines",
        "max_context_files": "max_context_files",
        "token_budget": "token_budget",
    },
    "behavior": {
        "stream_output": "stream_output",
        "create_output_dirs": "create_output_dirs",
        "max_concurrency": "max_concurrency",
    },
    "build": {
        "build_command": "build_command",
        "lint_command": "lint_command",
        "test_command": "test_command",
        "auto_fix": "auto_fix",
        "auto_fix_attempts": "auto_fix_attempts",
        "command_timeout_seconds": "command_timeout_seconds",
    },
    "paths": {
        "jobs_dir": "jobs_dir",
    },
}


@dataclass(frozen=True)
class RuntimeSettings:
    """Runtime settings from defaults, an optional worksplit.toml, and WORKSPLIT_* env vars."""

    model: str = "qwen-32k:latest"
    base_url: str = "http://localhost:11434/v1"
    temperature: float = 0.0
    timeout_seconds: int = 300
    stall_timeout_seconds: int = 120
    max_retries: int = 2
    max_output_lines: int = 900
    max_context_lines: int = 1_000
    max_context_files: int = 2
    token_budget: int = 32_000
    stream_output: bool = True
    create_output_dirs: bool = True
    max_concurrency: int = 1
    build_command: str = ""
    lint_command: str = ""
    test_command: str = ""
    auto_fix: bool = True
    auto_fix_attempts: int = 3
    command_timeout_seconds: int = 600
    jobs_dir: str = "jobs"
    project_root: str = ""

    @classmethod
    def from_env(cls, base: "RuntimeSettings | None" = None) -> "RuntimeSettings":
        """Overlay WORKSPLIT_* environment variables on ``base`` (defaults when None)."""
        current = base if base is not None else cls()
        return dataclasses.replace(
            current,
            model=os.getenv("WORKSPLIT_MODEL", current.model),
            base_url=os.getenv("WORKSPLIT_BASE_URL", current.base_url),
            temperature=_get_env_float("WORKSPLIT_TEMPERATURE", default=current.temperature, minimum=0.0, maximum=2.0),
            timeout_seconds=_get_env_int("WORKSPLIT_TIMEOUT_SECONDS", default=current.timeout_seconds, minimum=1),
            stall_timeout_seconds=_get_env_int(
                "WORKSPLIT_STALL_TIMEOUT_SECONDS", default=current.stall_timeout_seconds, minimum=1
            ),
            max_retries=_get_env_int("WORKSPLIT_MAX_RETRIES", default=current.max_retries, minimum=0, maximum=10),
            max_output_lines=_get_env_int("WORKSPLIT_MAX_OUTPUT_LINES", default=current.max_output_lines, minimum=1),
            max_context_lines=_get_env_int("WORKSPLIT_MAX_CONTEXT_LINES", default=current.max_context_lines, minimum=1),
            max_context_files=_get_env_int("WORKSPLIT_MAX_CONTEXT_FILES", default=current.max_context_files, minimum=0),
            token_budget=_get_env_int("WORKSPLIT_TOKEN_BUDGET", default=current.token_budget, minimum=1_000),
            stream_output=_get_env_bool("WORKSPLIT_STREAM_OUTPUT", default=current.stream_output),
            create_output_dirs=_get_env_bool("WORKSPLIT_CREATE_OUTPUT_DIRS", default=current.create_output_dirs),
            max_concurrency=_get_env_int("WORKSPLIT_MAX_CONCURRENCY", default=current.max_concurrency, minimum=1, maximum=64),
            build_command=os.getenv("WORKSPLIT_BUILD_COMMAND", current.build_command),
            lint_command=os.getenv("WORKSPLIT_LINT_COMMAND", current.lint_command),
            test_command=os.getenv("WORKSPLIT_TEST_COMMAND", current.test_command),
            auto_fix=_get_env_bool("WORKSPLIT_AUTO_FIX", default=current.auto_fix),
            auto_fix_attempts=_get_env_int(
                "WORKSPLIT_AUTO_FIX_ATTEMPTS", default=current.auto_fix_attempts, minimum=0, maximum=20
            ),
            command_timeout_seconds=_get_env_int(
                "WORKSPLIT_COMMAND_TIMEOUT_SECONDS", default=current.command_timeout_seconds, minimum=1
            ),
            jobs_dir=os.getenv("WORKSPLIT_JOBS_DIR", current.jobs_dir),
            project_root=os.getenv("WORKSPLIT_PROJECT_ROOT", current.project_root),
        ).normalized()

    @classmethod
    def load(cls, project_root: Path | None = None) -> "RuntimeSettings":
        """Layer defaults, ``worksplit.toml`` in ``project_root``, then the environment."""
        root = project_root if project_root is not None else Path.cwd()
        base = cls(project_root=str(root))
        config_path = root / CONFIG_FILENAME
        if config_path.is_file():
            base = base.with_toml(config_path)
        return cls.from_env(base)

    def with_toml(self, path: Path) -> "RuntimeSettings":
        try:
            with path.open("rb") as handle:
                data = tomllib.load(handle)
        except tomllib.TOMLDecodeError as exc:
            raise ValueError(f"{path} is not valid TOML: {exc}") from exc
        overrides: dict[str, Any] = {}
        for table, mapping in _TOML_FIELDS.items():
            section = data.get(table, {})
            if not isinstance(section, dict):
                raise ValueError(f"{path}: [{table}] must be a table")
            for key, field_name in mapping.items():
                if key in section:
                    overrides[field_name] = section[key]
        # Legacy table name for the backend section.
        legacy = data.get("ollama", {})
        if isinstance(legacy, dict):
            for key, field_name in _TOML_FIELDS["backend"].items():
                if key in legacy and field_name not in overrides:
                    value = legacy[key]
                    if field_name == "base_url" and isinstance(value, str) and not value.rstrip("/").endswith("/v1"):
                        value = value.rstrip("/") + "/v1"
                    overrides[field_name] = value
        return dataclasses.replace(self, **overrides).normalized()

    @property
    def project_root_path(self) -> Path:
        return Path(self.project_root) if self.project_root else Path.cwd()

    @property
    def jobs_dir_path(self) -> Path:
        path = Path(self.jobs_dir)
        return path if path.is_absolute() else self.project_root_path / path

    def normalized(self) -> "RuntimeSettings":
        """Validate and normalize all fields. Raises ValueError on invalid configuration."""
        model = str(self.model).strip()
        if not model:
            raise ValueError("WORKSPLIT_MODEL must be non-empty")
        base_url = str(self.base_url).strip()
        if not str(self.jobs_dir).strip():
            raise ValueError("WORKSPLIT_JOBS_DIR must be non-empty")

        for name in (
            "timeout_seconds",
            "stall_timeout_seconds",
            "max_output_lines",
            "max_context_lines",
            "max_concurrency",
            "command_timeout_seconds",
        ):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int) or value < 1:
                raise ValueError(f"{name} must be a positive integer, got: {value!r}")
        for name in ("max_context_files", "auto_fix_attempts", "max_retries"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int) or value < 0:
                raise ValueError(f"{name} must be a non-negative integer, got: {value!r}")
        for name in ("stream_output", "create_output_dirs", "auto_fix"):
            if not isinstance(getattr(self, name), bool):
                raise ValueError(f"{name} must be a boolean, got: {getattr(self, name)!r}")

        return dataclasses.replace(
            self,
            model=model,
            base_url=base_url,
            temperature=float(self.temperature),
            build_command=str(self.build_command).strip(),
            lint_command=str(self.lint_command).strip(),
            test_command=str(self.test_command).strip(),
        )


def _get_env_int(name: str, default: int, minimum: int, maximum: int = 10_000_000) -> int:
    """Parse an integer from an environment variable with bounds checking.

    Args:
        name: Environment variable name.
        default: Value to return if the variable is unset.
        minimum: Inclusive lower bound.
        maximum: Inclusive upper bound.

    Returns:
        The parsed integer, guaranteed to be within [minimum, maximum].

    Raises:
        ValueError: If the value is not an integer or is outside bounds.
    """
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got: {raw!r}") from exc
    if parsed < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {parsed}")
    if parsed > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {parsed}")
    return parsed


def _get_env_float(name: str, default: float, minimum: float, maximum: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got: {raw!r}") from exc
    if not minimum <= parsed <= maximum:
        raise ValueError(f"{name} must be within [{minimum}, {maximum}], got: {parsed}")
    return parsed


def _get_env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    lowered = raw.strip().lower()
    if lowered in {"1", "true", "yes", "on"}:
        return True
    if lowered in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"{name} must be a boolean, got: {raw!r}")
