from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CommandResult:
    command: str
    success: bool
    output: str
    returncode: int | None = None


def run_command(command: str, cwd: Path, *, timeout_seconds: float = 600) -> CommandResult:
    """Run a build or lint command through ``sh -c`` and capture stdout plus stderr.

    A command that exceeds ``timeout_seconds`` is reported as a failure
    rather than raised.
    """
    logger.info("Running command: %s", command)
    try:
        completed = subprocess.run(
            ["sh", "-c", command],
            cwd=str(cwd),
            capture_output=True,
            text=True,
            timeout=timeout_seconds,
            check=False,
        )
    except subprocess.TimeoutExpired as exc:
        partial = "".join(
            part.decode("utf-8", "replace") if isinstance(part, bytes) else part
            for part in (exc.stdout, exc.stderr)
            if part
        )
        logger.warning("Command timed out after %ss: %s", timeout_seconds, command)
        return CommandResult(
            command=command,
            success=False,
            output=f"{partial}\nCommand timed out after {timeout_seconds}s".strip(),
        )
    output = "\n".join(part for part in (completed.stdout, completed.stderr) if part).strip()
    success = completed.returncode == 0
    if not success:
        logger.warning("Command failed with exit code %d: %s", completed.returncode, command)
    return CommandResult(command=command, success=success, output=output, returncode=completed.returncode)
