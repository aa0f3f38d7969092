from __future__ import annotations

from worksplit.models import ErrorType
from worksplit.prompts import (
    assemble_creation_prompt,
    assemble_edit_prompt,
    assemble_fix_prompt,
    assemble_retry_prompt,
    assemble_sequential_prompt,
    assemble_test_prompt,
    assemble_verification_prompt,
    check_token_budget,
    estimate_tokens,
    number_lines,
)


def test_creation_prompt_sections() -> None:
    prompt = assemble_creation_prompt("Be concise.", [("models.py", "class A: ...")], "Build B.", "src/b.py")
    assert prompt.startswith("[SYSTEM]\nBe concise.\n\n")
    assert "[CONTEXT]\n### File: models.py\n```\nclass A: ...\n```" in prompt
    assert "[INSTRUCTIONS]\nBuild B.\n" in prompt
    assert prompt.endswith("Output to: src/b.py\n")


def test_creation_prompt_without_context_omits_section() -> None:
    prompt = assemble_creation_prompt("sys", [], "Build B.", "b.py")
    assert "[CONTEXT]" not in prompt


def test_sequential_prompt_lists_previous_and_remaining() -> None:
    prompt = assemble_sequential_prompt(
        "sys",
        [],
        [("a.py", "def a(): ...")],
        "Make modules.",
        "b.py",
        ["c.py", "d.py"],
    )
    assert "[PREVIOUSLY GENERATED IN THIS JOB]" in prompt
    assert "### File: a.py" in prompt
    assert "[CURRENT OUTPUT FILE]\nGenerate: b.py" in prompt
    assert "[REMAINING FILES]" in prompt
    assert "  - c.py\n  - d.py\n" in prompt
    assert "[TARGET FILE TO SPLIT]" not in prompt


def test_split_prompt_includes_source_file() -> None:
    prompt = assemble_sequential_prompt(
        "sys",
        [("ctx.py", "x = 1")],
        [],
        "Split it.",
        "a.py",
        [],
        source_file=("big.py", "lots of code"),
    )
    assert "[TARGET FILE TO SPLIT]\n### File: big.py (to be split into modules)" in prompt
    assert "[ADDITIONAL CONTEXT]" in prompt
    assert "[REMAINING FILES]" not in prompt
    assert "[PREVIOUSLY GENERATED IN THIS JOB]" not in prompt


def test_verification_and_retry_prompts() -> None:
    verification = assemble_verification_prompt("check", [], [("a.py", "x = 1")], "Do X.")
    assert "[GENERATED OUTPUT]\n### File: a.py" in verification
    assert verification.endswith("[ORIGINAL INSTRUCTIONS]\nDo X.\n")

    single = assemble_retry_prompt("sys", [], "Do X.", [("a.py", "x = 1")], "missing y")
    assert "[VERIFICATION FEEDBACK]" in single
    assert "missing y" in single
    assert "Output to: a.py" in single

    multi = assemble_retry_prompt("sys", [], "Do X.", [("a.py", "1"), ("b.py", "2")], "bad")
    assert "Output files:\n  - a.py\n  - b.py\n" in multi
    assert "~~~worksplit:path/to/file" in multi


def test_test_prompt() -> None:
    prompt = assemble_test_prompt("sys", [], "Add numbers.", "tests/test_add.py")
    assert "[REQUIREMENTS]\nAdd numbers." in prompt
    assert "Generate tests for: tests/test_add.py" in prompt


def test_number_lines_marks_first_and_every_tenth_line() -> None:
    content = "\n".join(f"line{i}" for i in range(1, 12))
    rendered = number_lines(content).splitlines()
    assert rendered[0] == "[Line    1] line1"
    assert rendered[1] == " " * 12 + "line2"
    assert rendered[9] == "[Line   10] line10"
    assert rendered[10] == " " * 12 + "line11"
    assert number_lines("") == ""


def test_edit_prompt_shows_line_numbered_targets() -> None:
    prompt = assemble_edit_prompt("sys", [("app.py", "a\nb\n")], [], "Change b.")
    assert "[EDIT MODE]" in prompt
    assert "### File: app.py (2 lines)" in prompt
    assert "[Line    1] a" in prompt
    assert prompt.endswith("[INSTRUCTIONS]\nChange b.\n")


def test_fix_prompt_uses_error_type_header() -> None:
    prompt = assemble_fix_prompt(ErrorType.LINT, "  E501 line too long  ", [("a.py", "x = 1")])
    assert prompt.startswith("## Linter Errors\n\n```\nE501 line too long\n```")
    assert ErrorType.LINT.fix_instructions in prompt
    assert "## Source File: a.py" in prompt


def test_token_budget_thresholds() -> None:
    assert estimate_tokens("abcd" * 10) == 10

    small = check_token_budget("sys", [], "do it", limit=32_000)
    assert not small.is_warning and not small.is_error

    # 1200 buffer tokens plus 26000 context tokens is above 80% but below 90% of 32000.
    warning = check_token_budget("", [("big.py", "x" * 104_000)], "", limit=32_000)
    assert warning.is_warning and not warning.is_error

    error = check_token_budget("", [("big.py", "x" * 120_000)], "", limit=32_000)
    assert error.is_error
    assert error.estimated == 31_200
