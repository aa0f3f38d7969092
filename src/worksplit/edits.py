from __future__ import annotations

import logging
from dataclasses import dataclass, field

from .errors import EditApplyError
from .models import EditInstruction, FailedEdit, PartialEditState, SuccessfulEdit

logger = logging.getLogger(__name__)

_PREVIEW_CHARS = 60
_SEARCH_PREVIEW_CHARS = 100
_SUGGESTION_LINE_CHARS = 80
_MIN_SUGGESTION_NEEDLE = 5
_MANY_EDITS_THRESHOLD = 10


@dataclass(frozen=True)
class FuzzyMatch:
    start: int
    end: int
    matched_text: str
    line_number: int


@dataclass
class FileEditReport:
    """Outcome of applying every instruction aimed at one file."""

    file_path: str
    content: str
    applied: list[EditInstruction] = field(default_factory=list)
    failed: list[tuple[EditInstruction, EditApplyError]] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.applied)


def normalize_whitespace(text: str) -> str:
    """Collapse whitespace runs within each line and trim it, keeping line breaks."""
    return "\n".join(" ".join(line.split()) for line in text.split("\n"))


def edit_preview(text: str, limit: int = _PREVIEW_CHARS) -> str:
    first_line = text.strip().split("\n", 1)[0]
    if len(first_line) > limit:
        return first_line[:limit] + "..."
    return first_line


def _leading_whitespace(line: str) -> str:
    return line[: len(line) - len(line.lstrip())]


def find_fuzzy_match(content: str, find: str) -> FuzzyMatch | None:
    """Locate ``find`` in ``content`` comparing whitespace-normalized lines.

    The returned span covers whole original lines so the caller can splice
    the replacement into the file's real formatting.
    """
    if not find.strip():
        return None
    find_lines = normalize_whitespace(find).split("\n")
    content_lines = content.split("\n")
    window = len(find_lines)
    normalized_content = [" ".join(line.split()) for line in content_lines]

    for start_line in range(len(content_lines) - window + 1):
        if normalized_content[start_line : start_line + window] != find_lines:
            continue
        start = sum(len(line) + 1 for line in content_lines[:start_line])
        matched_text = "\n".join(content_lines[start_line : start_line + window])
        return FuzzyMatch(
            start=start,
            end=start + len(matched_text),
            matched_text=matched_text,
            line_number=start_line + 1,
        )
    return None


def _suggest_line(content: str, find: str) -> tuple[str, int | None]:
    needle = find.strip().split("\n", 1)[0].strip()
    if len(needle) <= _MIN_SUGGESTION_NEEDLE:
        return "", None
    normalized_needle = normalize_whitespace(needle)
    lines = content.split("\n")
    for idx, line in enumerate(lines, start=1):
        if normalized_needle in normalize_whitespace(line):
            return f"\n\nPossible match at line {idx}: {line[:_SUGGESTION_LINE_CHARS]!r}", idx
    lowered_needle = normalized_needle.lower()
    for idx, line in enumerate(lines, start=1):
        if lowered_needle in normalize_whitespace(line).lower():
            return f"\n\nSimilar text at line {idx} (case mismatch?): {line[:_SUGGESTION_LINE_CHARS]!r}", idx
    return "", None


def _indent_delta(matched_lines: list[str], find_lines: list[str]) -> int:
    for matched, find in zip(matched_lines[1:], find_lines[1:]):
        if find.strip():
            return len(_leading_whitespace(matched)) - len(_leading_whitespace(find))
    return 0


def _shift_line(line: str, delta: int, indent_char: str) -> str:
    if not line.strip() or delta == 0:
        return line
    if delta > 0:
        return indent_char * delta + line
    current = _leading_whitespace(line)
    return line[min(-delta, len(current)) :]


def _reindent_replacement(replacement: str, matched_text: str, find: str) -> str:
    """Move a replacement onto the indentation of the lines a fuzzy match found.

    Parsed blocks are stripped, so the first line takes the matched first
    line's indent. Later lines are shifted by the offset between the file and
    the FIND block, measured on the first non-blank FIND line after the first.
    """
    if not replacement:
        return replacement
    matched_lines = matched_text.split("\n")
    base_indent = _leading_whitespace(matched_lines[0])
    indent_char = "\t" if base_indent.startswith("\t") else " "
    delta = _indent_delta(matched_lines, find.split("\n"))

    first, *rest = replacement.split("\n")
    if base_indent and first[:1] not in {" ", "\t"}:
        first = base_indent + first
    return "\n".join([first, *(_shift_line(line, delta, indent_char) for line in rest)])


def apply_edit(content: str, edit: EditInstruction) -> str:
    """Apply one instruction: exact single replacement first, then a fuzzy line match.

    Raises:
        EditApplyError: If the FIND text matches neither way. ``content`` is
            never partially modified.
    """
    if edit.find and edit.find in content:
        return content.replace(edit.find, edit.replace, 1)

    match = find_fuzzy_match(content, edit.find)
    if match is not None:
        logger.info("Fuzzy match applied for %s at line %d (whitespace normalized)", edit.file_path, match.line_number)
        replacement = _reindent_replacement(edit.replace, match.matched_text, edit.find)
        return content[: match.start] + replacement + content[match.end :]

    suggestion, line_number = _suggest_line(content, edit.find)
    raise EditApplyError(
        f"FIND text not found in {edit.file_path}.\n"
        f"Searched for: {edit.find[:_SEARCH_PREVIEW_CHARS]!r}{suggestion}",
        suggested_line=line_number,
    )


def apply_edits(content: str, edits: list[EditInstruction]) -> str:
    """Apply instructions in order, stopping at the first failure."""
    result = content
    for edit in edits:
        result = apply_edit(result, edit)
    return result


def apply_file_edits(file_path: str, content: str, edits: list[EditInstruction]) -> FileEditReport:
    """Apply every instruction for one file, collecting failures instead of stopping."""
    report = FileEditReport(file_path=file_path, content=content)
    for edit in edits:
        try:
            report.content = apply_edit(report.content, edit)
        except EditApplyError as exc:
            logger.warning("Edit failed for %s: %s", file_path, str(exc).split("\n", 1)[0])
            report.failed.append((edit, exc))
        else:
            report.applied.append(edit)
    return report


def build_partial_state(reports: list[FileEditReport]) -> PartialEditState:
    state = PartialEditState()
    for report in reports:
        for edit in report.applied:
            state.successful_edits.append(SuccessfulEdit(file_path=report.file_path, find_preview=edit_preview(edit.find)))
        for edit, error in report.failed:
            state.failed_edits.append(
                FailedEdit(
                    file_path=report.file_path,
                    find_preview=edit_preview(edit.find),
                    reason=str(error),
                    suggested_line=error.suggested_line,
                )
            )
    return state


def generate_suggestions(state: PartialEditState, total_edits: int) -> list[str]:
    """Human hints for re-running a job whose edits partly failed."""
    suggestions: list[str] = []
    if state.failed_edits:
        suggestions.append(
            "Check that FIND text matches the file exactly, including indentation and trailing whitespace."
        )
    if total_edits > _MANY_EDITS_THRESHOLD:
        suggestions.append(
            f"This job requested {total_edits} edits; consider replace mode for large changes."
        )
    for failed in state.failed_edits:
        if failed.suggested_line is not None:
            suggestions.append(
                f"{failed.file_path}: edit {failed.find_preview!r} may belong near line {failed.suggested_line}."
            )
    return suggestions
