"""Mixed-script line layout.

Widths are measured in columns: a Latin glyph is one column, a wide (CJK)
glyph is two, which is how the stylesheet's fonts behave to a good
approximation. CJK runs may break between any two characters; Latin runs
break only at whitespace unless a single run is wider than the line, in which
case it is force-broken into line-sized chunks.
"""
from __future__ import annotations

import unicodedata
from dataclasses import dataclass
from typing import List

CJK = "cjk"
LATIN = "latin"
SPACE = "space"

ZERO_WIDTH_SPACE = "\u200b"

_CJK_RANGES = (
    (0x1100, 0x11FF),  # Hangul Jamo
    (0x2E80, 0x2FDF),  # radicals
    (0x3000, 0x303F),  # CJK symbols and punctuation
    (0x3040, 0x30FF),  # Hiragana, Katakana
    (0x3100, 0x31BF),  # Bopomofo, Hangul compatibility Jamo
    (0x31F0, 0x31FF),
    (0x3400, 0x4DBF),  # Extension A
    (0x4E00, 0x9FFF),  # Unified Ideographs
    (0xAC00, 0xD7AF),  # Hangul syllables
    (0xF900, 0xFAFF),  # compatibility ideographs
    (0xFE30, 0xFE4F),  # compatibility forms
    (0xFF00, 0xFFEF),  # half/fullwidth forms
    (0x20000, 0x3134F),  # Extensions B..G
)


@dataclass(frozen=True)
class Run:
    text: str
    kind: str


def is_cjk(ch: str) -> bool:
    code = ord(ch)
    for low, high in _CJK_RANGES:
        if code < low:
            return False
        if code <= high:
            return True
    return False


def char_columns(ch: str) -> int:
    if unicodedata.combining(ch) or unicodedata.category(ch) in ("Cc", "Cf"):
        return 0
    if unicodedata.east_asian_width(ch) in ("W", "F"):
        return 2
    return 1


def text_columns(text: str) -> int:
    return sum(char_columns(ch) for ch in text)


def _kind(ch: str) -> str:
    if ch.isspace():
        return SPACE
    if is_cjk(ch):
        return CJK
    return LATIN


def split_runs(text: str) -> List[Run]:
    """Group text into maximal same-script runs; combining marks stay with their base."""
    runs: List[Run] = []
    buf: List[str] = []
    kind = ""
    for ch in text:
        ch_kind = _kind(ch)
        if buf and (ch_kind == kind or unicodedata.combining(ch)):
            buf.append(ch)
            continue
        if buf:
            runs.append(Run("".join(buf), kind))
        buf = [ch]
        kind = ch_kind
    if buf:
        runs.append(Run("".join(buf), kind))
    return runs


def content_columns(page_width: int, padding: int, font_size: int) -> int:
    """Columns available on one line of body text (a Latin glyph is about half an em)."""
    usable = max(1, page_width - 2 * padding)
    return max(1, (usable * 2) // max(1, font_size))


class _LineBuilder:
    def __init__(self, width: int) -> None:
        self.width = width
        self.lines: List[str] = []
        self.current = ""
        self.used = 0
        self.pending = ""

    def space(self, text: str) -> None:
        # Whitespace at the start of a line is dropped.
        if self.current:
            self.pending = text

    def fits(self, cols: int) -> bool:
        gap = text_columns(self.pending) if self.current else 0
        return self.used + gap + cols <= self.width

    def place(self, piece: str, cols: int) -> None:
        if self.current and self.pending:
            self.current += self.pending
            self.used += text_columns(self.pending)
        self.pending = ""
        self.current += piece
        self.used += cols

    def newline(self) -> None:
        self.lines.append(self.current)
        self.current = ""
        self.used = 0
        self.pending = ""

    def finish(self) -> List[str]:
        if self.current or not self.lines:
            self.lines.append(self.current)
        return self.lines


def _wrap_paragraph(text: str, width: int) -> List[str]:
    builder = _LineBuilder(width)
    for run in split_runs(text):
        if run.kind == SPACE:
            builder.space(run.text)
        elif run.kind == CJK:
            for ch in run.text:
                cols = char_columns(ch)
                if builder.current and not builder.fits(cols):
                    builder.newline()
                builder.place(ch, cols)
        else:
            cols = text_columns(run.text)
            if builder.fits(cols):
                builder.place(run.text, cols)
                continue
            if builder.current:
                builder.newline()
            if cols <= width:
                builder.place(run.text, cols)
                continue
            # Force-break: the run alone is wider than a line.
            for ch in run.text:
                ch_cols = char_columns(ch)
                if builder.current and builder.used + ch_cols > width:
                    builder.newline()
                builder.place(ch, ch_cols)
    return builder.finish()


def wrap_columns(text: str, width: int) -> List[str]:
    """Greedy line layout of ``text`` into lines of at most ``width`` columns.

    A single glyph wider than ``width`` still occupies its own line.
    """
    if width < 1:
        raise ValueError("width must be positive")
    lines: List[str] = []
    for paragraph in text.split("\n"):
        lines.extend(_wrap_paragraph(paragraph, width))
    return lines


def soften_long_runs(text: str, limit: int, marker: str = ZERO_WIDTH_SPACE) -> str:
    """Insert invisible break opportunities into Latin runs wider than ``limit``.

    Browsers never break a Latin word on their own. URLs and identifiers that
    are longer than a line are split where ``wrap_columns`` force-breaks them,
    and the pieces are joined with ``marker``.
    """
    if limit < 1:
        raise ValueError("limit must be positive")
    parts: List[str] = []
    for run in split_runs(text):
        if run.kind == LATIN and text_columns(run.text) > limit:
            parts.append(marker.join(wrap_columns(run.text, limit)))
        else:
            parts.append(run.text)
    return "".join(parts)
