from __future__ import annotations

import pytest

from mdimg_backend.layout import (
    CJK,
    LATIN,
    SPACE,
    ZERO_WIDTH_SPACE,
    char_columns,
    content_columns,
    soften_long_runs,
    split_runs,
    text_columns,
    wrap_columns,
)


def test_column_widths() -> None:
    assert char_columns("a") == 1
    assert char_columns("中") == 2
    assert char_columns("Ａ") == 2
    assert char_columns("\u0301") == 0
    assert text_columns("ab中文") == 6


def test_split_runs_groups_by_script() -> None:
    runs = split_runs("这是test 混合")
    assert [(r.text, r.kind) for r in runs] == [
        ("这是", CJK),
        ("test", LATIN),
        (" ", SPACE),
        ("混合", CJK),
    ]


def test_combining_marks_stay_with_their_base() -> None:
    runs = split_runs("cafe\u0301")
    assert len(runs) == 1
    assert runs[0].text == "cafe\u0301"


def test_mixed_script_line_never_exceeds_width() -> None:
    text = "这是test混合"
    lines = wrap_columns(text, 6)

    assert all(text_columns(line) <= 6 for line in lines)
    assert "".join(lines) == text
    assert "test" in lines[1]


def test_latin_breaks_only_at_whitespace() -> None:
    assert wrap_columns("hello world foo", 11) == ["hello world", "foo"]
    assert wrap_columns("hello world foo", 10) == ["hello", "world foo"]


def test_cjk_breaks_between_any_two_characters() -> None:
    assert wrap_columns("一二三四五", 4) == ["一二", "三四", "五"]


def test_overlong_latin_run_is_force_broken() -> None:
    url = "https://example.com/a/really/long/path/that/never/ends"
    lines = wrap_columns(f"see {url}", 12)

    assert all(text_columns(line) <= 12 for line in lines)
    assert lines[0] == "see"
    assert "".join(lines[1:]) == url


def test_paragraphs_and_empty_input() -> None:
    assert wrap_columns("ab\ncd", 10) == ["ab", "cd"]
    assert wrap_columns("", 10) == [""]


def test_width_must_be_positive() -> None:
    with pytest.raises(ValueError):
        wrap_columns("abc", 0)


def test_content_columns_accounts_for_padding() -> None:
    assert content_columns(1024, 30, 24) == 80
    assert content_columns(100, 50, 24) == 1


def test_soften_long_runs_inserts_break_markers() -> None:
    softened = soften_long_runs("x" * 25, 10)
    assert softened.count(ZERO_WIDTH_SPACE) == 2
    assert softened.replace(ZERO_WIDTH_SPACE, "") == "x" * 25


def test_soften_leaves_short_and_cjk_text_alone() -> None:
    assert soften_long_runs("short words only", 10) == "short words only"
    assert soften_long_runs("中" * 40, 10) == "中" * 40
