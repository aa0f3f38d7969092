from __future__ import annotations

import logging
import re

from .models import EditInstruction, ExtractedFile, ParsedEdits, VerificationResult

logger = logging.getLogger(__name__)

DELIMITER = "~~~worksplit"

_DELIMITED_BLOCK_RE = re.compile(
    r"~~~worksplit(?::([^\s]+))?(?:[ \t]+\w*)?[ \t]*\n([\s\S]*?)\n~~~worksplit",
    re.IGNORECASE,
)
_PATH_HEADING_BLOCK_RE = re.compile(
    r"^([a-zA-Z0-9_./-]+\.[a-zA-Z]+)[ \t]*\n```\w*\n([\s\S]*?)\n```",
    re.MULTILINE,
)
_GENERIC_FENCE_RE = re.compile(r"```\w*\n?([\s\S]*?)```")
_NESTED_PATH_FENCE_RE = re.compile(r"[a-zA-Z0-9_./-]+\.[a-zA-Z]+\s*\n```\w*\n([\s\S]*?)\n?```\s*")
_NESTED_FENCE_RE = re.compile(r"```\w*\n([\s\S]*?)\n?```\s*")

_FAILURE_REASON_RES = (
    re.compile(r"fail[:\-\s]+(.+)", re.IGNORECASE),
    re.compile(r"failed[:\-\s]+(.+)", re.IGNORECASE),
    re.compile(r"reason[:\-\s]+(.+)", re.IGNORECASE),
)
UNCLEAR_VERIFICATION = "Unclear verification response"


# ---------------------------------------------------------------------------
# Generated file extraction
# ---------------------------------------------------------------------------


def _strip_nested_fences(content: str) -> str:
    """Unwrap a markdown fence the model placed inside a delimited block."""
    trimmed = content.strip()
    for pattern in (_NESTED_PATH_FENCE_RE, _NESTED_FENCE_RE):
        match = pattern.fullmatch(trimmed)
        if match is not None:
            return match.group(1).strip()
    return trimmed


def _strip_delimiter_lines(content: str) -> str:
    kept = []
    for line in content.split("\n"):
        lowered = line.strip().lower()
        if lowered.startswith(DELIMITER) or lowered == "~~~":
            continue
        kept.append(line)
    return "\n".join(kept).strip()


def extract_files(response: str) -> list[ExtractedFile]:
    """Extract generated files from a raw backend reply.

    Formats are tried in order and the first that yields anything wins:

    1. ``~~~worksplit[:path][ lang]`` delimiter pairs (nested fences unwrapped).
    2. A bare ``path.ext`` line followed by a fenced block.
    3. Every fenced block, concatenated into one pathless file.
    4. The raw reply with stray delimiter lines removed, as one pathless file.
    """
    text = response.replace("\r\n", "\n")

    delimited: list[ExtractedFile] = []
    for match in _DELIMITED_BLOCK_RE.finditer(text):
        content = _strip_nested_fences(match.group(2))
        if not content:
            continue
        path = match.group(1).strip() if match.group(1) else None
        delimited.append(ExtractedFile(content=content, path=path))
    if delimited:
        logger.debug("Extracted %d file(s) from delimited blocks", len(delimited))
        return delimited

    headed = [
        ExtractedFile(content=match.group(2).strip(), path=match.group(1).strip())
        for match in _PATH_HEADING_BLOCK_RE.finditer(text)
        if match.group(2).strip()
    ]
    if headed:
        logger.debug("Extracted %d file(s) using path-as-heading format", len(headed))
        return headed

    blocks = [match.group(1).strip() for match in _GENERIC_FENCE_RE.finditer(text)]
    blocks = [block for block in blocks if block]
    if blocks:
        logger.debug("Extracted %d generic code block(s)", len(blocks))
        return [ExtractedFile(content="\n\n".join(blocks))]

    logger.debug("No code fences found, using raw response")
    return [ExtractedFile(content=_strip_delimiter_lines(text.strip()))]


def extract_code(response: str) -> str:
    """Return all extracted content joined into one string."""
    return "\n\n".join(item.content for item in extract_files(response))


def count_lines(content: str) -> int:
    return len(content.splitlines())


# ---------------------------------------------------------------------------
# Verification classification
# ---------------------------------------------------------------------------


def _reason_after(response: str, patterns: tuple[str, ...]) -> str | None:
    lowered = response.lower()
    for pattern in patterns:
        pos = lowered.find(pattern)
        if pos < 0:
            continue
        after = response[pos + len(pattern):].lstrip(":- \t\r\n")
        first_line = after.split("\n", 1)[0].strip()
        if first_line:
            return first_line
    return None


def _failure_reason(response: str) -> str | None:
    for pattern in _FAILURE_REASON_RES:
        match = pattern.search(response)
        if match is not None:
            reason = match.group(1).strip()
            if reason:
                return reason.split("\n", 1)[0]
    lines = response.split("\n")
    if len(lines) > 1:
        return " ".join(lines[1:]).strip()
    return None


def classify_verification(response: str) -> tuple[VerificationResult, str | None]:
    """Classify a verifier reply into a result tier and an optional reason.

    Explicit tier prefixes win, then a leading pass/fail word, then substring
    presence. Anything else is treated as a hard failure.
    """
    trimmed = response.strip()
    lowered = trimmed.lower()
    normalized = " ".join(lowered.replace("_", " ").split())

    if normalized.startswith(("pass with warnings", "passwithwarnings")):
        reason = _reason_after(trimmed, ("pass_with_warnings", "pass with warnings", "passwithwarnings"))
        return VerificationResult.PASS_WITH_WARNINGS, reason
    if normalized.startswith(("fail hard", "failhard")):
        return VerificationResult.FAIL_HARD, _reason_after(trimmed, ("fail_hard", "fail hard", "failhard"))
    if normalized.startswith(("fail soft", "failsoft")):
        return VerificationResult.FAIL_SOFT, _reason_after(trimmed, ("fail_soft", "fail soft", "failsoft"))

    words = lowered.split()
    first_word = "".join(char for char in words[0] if char.isalpha()) if words else ""
    if first_word in {"pass", "passed"}:
        return VerificationResult.PASS, None
    if first_word in {"fail", "failed"}:
        return VerificationResult.FAIL_HARD, _failure_reason(trimmed)

    if "pass" in lowered and "fail" not in lowered:
        return VerificationResult.PASS, None
    if "fail" in lowered:
        return VerificationResult.FAIL_HARD, _failure_reason(trimmed)
    logger.debug("Unclear verification response, treating as hard failure")
    return VerificationResult.FAIL_HARD, UNCLEAR_VERIFICATION


# ---------------------------------------------------------------------------
# Edit instruction grammar
# ---------------------------------------------------------------------------


def parse_edit_instructions(response: str) -> ParsedEdits:
    """Parse ``FILE:`` / ``FIND:`` / ``REPLACE:`` / ``END`` blocks.

    Markers are case-insensitive. An instruction is recorded at ``END`` only
    when a file is in scope and both its FIND and REPLACE blocks have text.
    """
    parsed = ParsedEdits()
    current_file: str | None = None
    find_lines: list[str] = []
    replace_lines: list[str] = []
    in_find = False
    in_replace = False

    for line in response.replace("\r\n", "\n").split("\n"):
        marker = line.strip().lower()
        if marker.startswith("file:"):
            current_file = line.strip()[5:].strip()
            in_find = in_replace = False
            continue
        if marker == "find:":
            in_find, in_replace = True, False
            find_lines = []
            continue
        if marker == "replace:":
            in_find, in_replace = False, True
            replace_lines = []
            continue
        if marker == "end":
            find_text = "\n".join(find_lines).strip()
            replace_text = "\n".join(replace_lines).strip()
            if current_file and find_text and replace_text:
                parsed.edits.append(EditInstruction(file_path=current_file, find=find_text, replace=replace_text))
                if current_file not in parsed.affected_files:
                    parsed.affected_files.append(current_file)
            in_find = in_replace = False
            find_lines = []
            replace_lines = []
            continue
        if in_find:
            find_lines.append(line)
        elif in_replace:
            replace_lines.append(line)

    return parsed
