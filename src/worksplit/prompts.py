from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Sequence

from .models import ErrorType

logger = logging.getLogger(__name__)

FileBody = tuple[Path | str, str]

# ---------------------------------------------------------------------------
# Chat-level system prompts
# ---------------------------------------------------------------------------

SYSTEM_PROMPT_CREATE = """You are a coding agent. Read the prompt once, then write the code immediately.
Do not restate or re-analyze the request.
Output only code, wrapped in the requested delimiters.
For several files, open each one with ~~~worksplit:path/to/file and close it with ~~~worksplit.
Keep it short and skip explanations unless asked for them."""

SYSTEM_PROMPT_VERIFY = """You are a code verification agent. Review the generated code against the requirements.

Decide whether the code correctly implements what was requested.

Reply format:
- Code is correct: begin the reply with "PASS", optionally followed by short notes
- Code has problems: begin with "FAIL:" and then explain clearly what is wrong

Be thorough and fair. Minor style issues are not a failure when the behavior is correct.
Check correctness, completeness, error handling, and whether the instructions were followed."""

SYSTEM_PROMPT_EDIT = """You are a code editing agent. Make small, targeted changes to existing code.

Write every edit in exactly this format:
FILE: path/to/file
FIND:
<exact text to find>
REPLACE:
<replacement text>
END

Rules:
- FIND text must match the file exactly, indentation and whitespace included
- Give FIND enough surrounding lines to be unique
- Output the edit blocks and nothing else
- A file may receive several edits
- Give each file its own FILE: line"""

SYSTEM_PROMPT_TEST = """You are a test generation agent. Write thorough unit tests.

Output only the test code, wrapped in code fences.
The tests should:
- Cover the main behavior
- Include edge cases
- Exercise error conditions
- Follow the project's existing test conventions

Keep it short and skip explanations unless asked for them."""

SYSTEM_PROMPT_RETRY = """You are a coding agent repairing a previous attempt.
A verifier found problems in the earlier code.
Read the feedback closely and fix exactly the problems it names.
Output only the corrected code, wrapped in the requested delimiters.
Stay short and focus on the reported issues."""

SYSTEM_PROMPT_FIX = """You are a coding agent repairing code that fails to build or lint.
Read the error output closely and fix only what it reports.
Output each complete fixed file, wrapped in ~~~worksplit:path/to/file delimiters."""

# Job-level instruction prompts, overridable per project via jobs/_systemprompt_<kind>.md
DEFAULT_JOB_PROMPTS: dict[str, str] = {
    "create": "Generate complete, working code that satisfies the instructions. Match the style of the context files.",
    "verify": "Check that the generated code satisfies the instructions and integrates with the context files.",
    "test": "Write tests for the described behavior before the implementation exists.",
    "edit": "Make only the changes the instructions require. Leave unrelated code untouched.",
    "verify_edit": "Check that the edited files satisfy the instructions and that no unrelated code changed.",
    "split": "Split the target file into the requested modules without losing any functionality.",
}
PROMPT_FALLBACKS: dict[str, str] = {"edit": "create", "verify_edit": "verify", "split": "create"}

_OUTPUT_BUFFER_TOKENS = 1_200
_WARNING_RATIO = 0.8
_ERROR_RATIO = 0.9


# ---------------------------------------------------------------------------
# Section helpers
# ---------------------------------------------------------------------------


def _file_block(path: Path | str, content: str, *, note: str = "") -> str:
    suffix = "" if content.endswith("\n") else "\n"
    heading = f"### File: {path}{note}\n"
    return f"{heading}```\n{content}{suffix}```\n\n"


def _files_section(title: str, files: Sequence[FileBody], *, preamble: str = "") -> str:
    if not files:
        return ""
    body = "".join(_file_block(path, content) for path, content in files)
    return f"[{title}]\n{preamble}{body}"


def _system(system_prompt: str) -> str:
    return f"[SYSTEM]\n{system_prompt}\n\n"


def _file_list(paths: Sequence[Path | str]) -> str:
    return "".join(f"  - {path}\n" for path in paths)


# ---------------------------------------------------------------------------
# Prompt assemblers
# ---------------------------------------------------------------------------


def assemble_creation_prompt(
    system_prompt: str,
    context_files: Sequence[FileBody],
    instructions: str,
    output_path: Path | str,
) -> str:
    return (
        _system(system_prompt)
        + _files_section("CONTEXT", context_files)
        + f"[INSTRUCTIONS]\n{instructions}\n\n"
        + f"Output to: {output_path}\n"
    )


def assemble_sequential_prompt(
    system_prompt: str,
    context_files: Sequence[FileBody],
    previously_generated: Sequence[FileBody],
    instructions: str,
    current_output: Path | str,
    remaining_files: Sequence[Path | str],
    *,
    source_file: FileBody | None = None,
) -> str:
    """Prompt for one file of a multi-file job.

    ``source_file`` is set for split jobs: the oversized file being broken up.
    """
    prompt = _system(system_prompt)
    if source_file is not None:
        prompt += "[TARGET FILE TO SPLIT]\n" + _file_block(source_file[0], source_file[1], note=" (to be split into modules)")
        prompt += _files_section("ADDITIONAL CONTEXT", context_files)
    else:
        prompt += _files_section("CONTEXT", context_files)
    prompt += _files_section(
        "PREVIOUSLY GENERATED IN THIS JOB",
        previously_generated,
        preamble=(
            "These files were already generated as part of this same task. "
            "Use them as reference for consistency and do not duplicate their logic.\n\n"
        ),
    )
    prompt += f"[INSTRUCTIONS]\n{instructions}\n\n"
    prompt += f"[CURRENT OUTPUT FILE]\nGenerate: {current_output}\n\n"
    if remaining_files:
        prompt += (
            "[REMAINING FILES]\n"
            "These files will be generated after this one:\n"
            + _file_list(remaining_files)
            + "\nConsider their requirements when designing interfaces.\n"
        )
    return prompt


def assemble_verification_prompt(
    system_prompt: str,
    context_files: Sequence[FileBody],
    generated_files: Sequence[FileBody],
    instructions: str,
) -> str:
    return (
        _system(system_prompt)
        + _files_section("CONTEXT", context_files)
        + "[GENERATED OUTPUT]\n"
        + "".join(_file_block(path, content) for path, content in generated_files)
        + f"[ORIGINAL INSTRUCTIONS]\n{instructions}\n"
    )


def assemble_test_prompt(
    system_prompt: str,
    context_files: Sequence[FileBody],
    instructions: str,
    test_path: Path | str,
) -> str:
    return (
        _system(system_prompt)
        + _files_section("CONTEXT", context_files)
        + f"[REQUIREMENTS]\n{instructions}\n\n"
        + f"[TEST OUTPUT]\nGenerate tests for: {test_path}\n\n"
        + "The implementation does not exist yet. Generate tests that will:\n"
        + "1. Verify the requirements are met when implementation exists\n"
        + "2. Cover edge cases and error conditions\n"
        + "3. Be immediately runnable once implementation is created\n"
    )


def assemble_retry_prompt(
    system_prompt: str,
    context_files: Sequence[FileBody],
    instructions: str,
    previous_outputs: Sequence[FileBody],
    verification_error: str,
) -> str:
    prompt = (
        _system(system_prompt)
        + _files_section("CONTEXT", context_files)
        + "[PREVIOUS ATTEMPT]\n"
        + "".join(_file_block(path, content) for path, content in previous_outputs)
        + "[VERIFICATION FEEDBACK]\n"
        + "The previous attempt failed verification with the following feedback:\n"
        + f"{verification_error}\n\n"
        + f"[INSTRUCTIONS]\n{instructions}\n\n"
    )
    if len(previous_outputs) == 1:
        prompt += f"Output to: {previous_outputs[0][0]}\n\n"
    else:
        prompt += "Output files:\n" + _file_list([path for path, _ in previous_outputs]) + "\n"
        prompt += "Use a ~~~worksplit:path/to/file delimiter for each file.\n"
    prompt += "Please fix the issues mentioned in the verification feedback and generate improved code.\n"
    return prompt


def number_lines(content: str) -> str:
    """Prefix line 1 and every tenth line with a ``[Line N]`` marker."""
    rendered: list[str] = []
    for line_number, line in enumerate(content.splitlines(), start=1):
        if line_number == 1 or line_number % 10 == 0:
            rendered.append(f"[Line {line_number:>4}] {line}")
        else:
            rendered.append(f"{'':12}{line}")
    return "\n".join(rendered) + ("\n" if rendered else "")


def assemble_edit_prompt(
    system_prompt: str,
    target_files: Sequence[FileBody],
    context_files: Sequence[FileBody],
    instructions: str,
) -> str:
    prompt = _system(system_prompt)
    prompt += (
        "[EDIT MODE]\n"
        "You are making surgical edits to existing files. Use the following format for each edit:\n\n"
        "FILE: path/to/file\nFIND:\n<exact text to find>\nREPLACE:\n<replacement text>\nEND\n\n"
        "Important:\n"
        "- FIND text must match exactly (including whitespace)\n"
        "- Include enough context in FIND to be unique\n"
        "- Multiple edits can be made to the same file\n"
        "- Line markers below are for orientation only; never copy them into FIND\n\n"
    )
    prompt += "[TARGET FILES]\nThese are the files you will be editing (line numbers shown every 10 lines):\n\n"
    for path, content in target_files:
        prompt += f"### File: {path} ({len(content.splitlines())} lines)\n```\n{number_lines(content)}```\n\n"
    prompt += _files_section("CONTEXT", context_files)
    prompt += f"[INSTRUCTIONS]\n{instructions}\n"
    return prompt


def assemble_fix_prompt(error_type: ErrorType, error_output: str, files: Sequence[FileBody]) -> str:
    prompt = f"{error_type.prompt_header}\n\n```\n{error_output.strip()}\n```\n\n{error_type.fix_instructions}\n\n"
    for path, content in files:
        prompt += f"## Source File: {path}\n\n```\n{content}\n```\n\n"
    prompt += "Output the complete fixed file(s) using ~~~worksplit:path/to/file delimiters.\n"
    return prompt


# ---------------------------------------------------------------------------
# Token budget
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TokenBudget:
    estimated: int
    limit: int
    is_warning: bool
    is_error: bool


def estimate_tokens(text: str) -> int:
    return len(text) // 4


def check_token_budget(
    system_prompt: str,
    context_files: Sequence[FileBody],
    instructions: str,
    limit: int,
) -> TokenBudget:
    """Estimate prompt size and flag it above 80% (warning) or 90% (error) of ``limit``."""
    total = (
        estimate_tokens(system_prompt)
        + sum(estimate_tokens(content) for _, content in context_files)
        + estimate_tokens(instructions)
        + _OUTPUT_BUFFER_TOKENS
    )
    budget = TokenBudget(
        estimated=total,
        limit=limit,
        is_warning=total > int(limit * _WARNING_RATIO),
        is_error=total > int(limit * _ERROR_RATIO),
    )
    if budget.is_warning:
        logger.warning("Token budget high: %d estimated tokens (limit: %d)", total, limit)
    return budget
