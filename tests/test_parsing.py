from __future__ import annotations

from worksplit.models import VerificationResult
from worksplit.parsing import (
    UNCLEAR_VERIFICATION,
    classify_verification,
    count_lines,
    extract_code,
    extract_files,
    parse_edit_instructions,
)


def test_extract_delimited_files_with_paths() -> None:
    response = (
        "Here you go.\n"
        "~~~worksplit:src/a.py\n"
        "def a():\n    return 1\n"
        "~~~worksplit\n"
        "~~~worksplit:src/b.py python\n"
        "def b():\n    return 2\n"
        "~~~worksplit\n"
    )
    files = extract_files(response)
    assert [item.path for item in files] == ["src/a.py", "src/b.py"]
    assert files[0].content == "def a():\n    return 1"
    assert files[1].content == "def b():\n    return 2"


def test_extract_delimiter_is_case_insensitive_and_path_optional() -> None:
    files = extract_files("~~~WORKSPLIT\nprint('hi')\n~~~WORKSPLIT")
    assert len(files) == 1
    assert files[0].path is None
    assert files[0].content == "print('hi')"


def test_extract_strips_nested_fences() -> None:
    response = (
        "~~~worksplit:src/a.py\n```python\nx = 1\n```\n~~~worksplit\n"
        "~~~worksplit:src/b.py\nsrc/b.py\n```python\ny = 2\n```\n~~~worksplit\n"
    )
    files = extract_files(response)
    assert [item.content for item in files] == ["x = 1", "y = 2"]
    assert all("```" not in item.content for item in files)


def test_extract_path_heading_format() -> None:
    response = "src/a.py\n```python\nx = 1\n```\n\nsrc/b.py\n```\ny = 2\n```\n"
    files = extract_files(response)
    assert [(item.path, item.content) for item in files] == [("src/a.py", "x = 1"), ("src/b.py", "y = 2")]


def test_extract_generic_fences_are_concatenated() -> None:
    response = "First part:\n```python\nx = 1\n```\nSecond part:\n```\ny = 2\n```"
    files = extract_files(response)
    assert len(files) == 1
    assert files[0].path is None
    assert files[0].content == "x = 1\n\ny = 2"


def test_extract_raw_text_without_fences() -> None:
    files = extract_files("~~~worksplit\nx = 1\n")
    assert files[0].path is None
    assert files[0].content == "x = 1"
    assert extract_code("plain text") == "plain text"


def test_count_lines() -> None:
    assert count_lines("") == 0
    assert count_lines("a\nb\n") == 2


def test_classify_explicit_tiers() -> None:
    assert classify_verification("pass_with_warnings: minor") == (VerificationResult.PASS_WITH_WARNINGS, "minor")
    assert classify_verification("FAIL_SOFT - missing docstring") == (VerificationResult.FAIL_SOFT, "missing docstring")
    assert classify_verification("fail hard: crashes on empty input") == (
        VerificationResult.FAIL_HARD,
        "crashes on empty input",
    )


def test_classify_leading_word() -> None:
    assert classify_verification("PASS") == (VerificationResult.PASS, None)
    assert classify_verification("Passed. Looks good.") == (VerificationResult.PASS, None)
    assert classify_verification("FAIL: bad") == (VerificationResult.FAIL_HARD, "bad")


def test_classify_substring_fallback() -> None:
    result, _ = classify_verification("The code should pass review.")
    assert result is VerificationResult.PASS
    result, _ = classify_verification("This will fail on empty lists.")
    assert result is VerificationResult.FAIL_HARD


def test_classify_unclear_defaults_to_hard_fail() -> None:
    assert classify_verification("maybe ok?") == (VerificationResult.FAIL_HARD, UNCLEAR_VERIFICATION)
    assert classify_verification("") == (VerificationResult.FAIL_HARD, UNCLEAR_VERIFICATION)


def test_parse_edit_instructions() -> None:
    response = (
        "FILE: src/app.py\n"
        "FIND:\n"
        "    return 1\n"
        "REPLACE:\n"
        "    return 2\n"
        "END\n"
        "find:\n"
        "x = 1\n"
        "replace:\n"
        "x = 3\n"
        "end\n"
        "FILE: src/util.py\n"
        "FIND:\n"
        "a\n"
        "REPLACE:\n"
        "b\n"
        "END\n"
    )
    parsed = parse_edit_instructions(response)
    assert [(edit.file_path, edit.find, edit.replace) for edit in parsed.edits] == [
        ("src/app.py", "return 1", "return 2"),
        ("src/app.py", "x = 1", "x = 3"),
        ("src/util.py", "a", "b"),
    ]
    assert parsed.affected_files == ["src/app.py", "src/util.py"]


def test_parse_edit_instructions_skips_incomplete_blocks() -> None:
    response = (
        "FIND:\norphan\nREPLACE:\nx\nEND\n"
        "FILE: a.py\nFIND:\nold\nREPLACE:\n\nEND\n"
        "FILE: a.py\nFIND:\n\nREPLACE:\nnew\nEND\n"
    )
    parsed = parse_edit_instructions(response)
    assert parsed.edits == []
    assert parsed.affected_files == []
