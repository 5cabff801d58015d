from __future__ import annotations

import html
import logging
import re
from pathlib import Path
from string import Template
from typing import Iterable, List, Optional

from bs4 import BeautifulSoup
from bs4.element import NavigableString, Tag
from markdown_it import MarkdownIt

from .errors import MalformedMarkdownFragment
from .fonts import font_format
from .layout import content_columns, soften_long_runs

logger = logging.getLogger(__name__)

FONT_FAMILY_NAME = "AnswerFont"

# Tags that can never come out of the parser with raw HTML disabled; dropped anyway.
_BLOCKED_TAGS = ("script", "style", "iframe", "object", "embed", "link", "meta", "base", "form", "input")
_SAFE_HREF_PREFIXES = ("http://", "https://", "mailto:", "#")
_SAFE_SRC_PREFIXES = ("http://", "https://")
_FENCE_RE = re.compile(r"^\s{0,3}(`{3,}|~{3,})")

_STYLESHEET = Template(
    """
$font_face
html, body {
    margin: 0;
    padding: 0;
    background-color: #2b2b2b;
}
body {
    box-sizing: border-box;
    width: ${page_width}px;
    padding: ${padding}px;
    font-family: $font_family;
    font-size: ${font_size}px;
    line-height: 1.8;
    color: #f0f0f0;
    word-break: normal;
    word-wrap: break-word;
    overflow-wrap: break-word;
}
.md-answer p {
    margin: 18px 0;
}
.md-answer h1, .md-answer h2, .md-answer h3, .md-answer h4, .md-answer h5, .md-answer h6 {
    margin: 30px 0 15px 0;
    color: #ffffff;
    line-height: 1.4;
    font-weight: 600;
}
.md-answer h1 {
    font-size: ${h1_size}px;
    border-bottom: 2px solid #555555;
    padding-bottom: 10px;
    text-align: center;
}
.md-answer h2 {
    font-size: ${h2_size}px;
    border-bottom: 1px solid #555555;
    padding-bottom: 8px;
}
.md-answer h3 {
    font-size: ${h3_size}px;
    color: #e0e0e0;
}
pre.md-code-block {
    font-family: 'Consolas', 'Source Code Pro', 'DejaVu Sans Mono', 'Courier New', monospace;
    font-size: ${code_size}px;
    line-height: 1.5;
    background-color: #383838;
    color: #e0e0e0;
    padding: 16px;
    margin: 20px 0;
    border-left: 3px solid #666666;
    border-radius: 8px;
    white-space: pre-wrap;
    word-wrap: break-word;
    word-break: break-all;
}
pre.md-code-block code {
    background: none;
    padding: 0;
}
code {
    font-family: 'Consolas', 'Source Code Pro', 'DejaVu Sans Mono', 'Courier New', monospace;
    background-color: #454545;
    color: #e0e0e0;
    padding: 3px 6px;
    border-radius: 4px;
    white-space: pre-wrap;
    word-break: break-all;
}
blockquote.md-quote {
    margin: 20px 0;
    padding: 10px 20px;
    border-left: 4px solid #777777;
    border-radius: 0 8px 8px 0;
    background-color: #323232;
    color: #d0d0d0;
}
table.md-table {
    width: 100%;
    margin: 25px 0;
    border-collapse: collapse;
    table-layout: fixed;
}
table.md-table th, table.md-table td {
    border: 1px solid #555555;
    padding: 12px;
    word-wrap: break-word;
    overflow-wrap: break-word;
}
table.md-table th {
    background-color: #444444;
    color: #ffffff;
    text-align: left;
}
table.md-table tr:nth-child(even) {
    background-color: #333333;
}
.md-list {
    margin: 18px 0;
    padding-left: 30px;
}
.md-list li {
    margin-bottom: 8px;
    line-height: 1.6;
}
ul.md-list-depth-1 { list-style-type: disc; }
ul.md-list-depth-2 { list-style-type: circle; }
ul.md-list-depth-3 { list-style-type: square; }
ol.md-list-depth-1 { list-style-type: decimal; }
ol.md-list-depth-2 { list-style-type: lower-alpha; }
ol.md-list-depth-3 { list-style-type: lower-roman; }
li > .md-list {
    margin: 10px 0 10px 20px;
}
hr.md-rule {
    border: 0;
    height: 1px;
    margin: 30px 0;
    background-color: #555555;
}
a.md-link {
    color: #78a9ff;
    text-decoration: none;
    border-bottom: 1px dotted #78a9ff;
}
img {
    max-width: 100%;
    height: auto;
    border-radius: 8px;
}
.md-literal {
    white-space: pre-wrap;
    color: #d0d0d0;
}
"""
)

_FONT_FACE = Template(
    """@font-face {
    font-family: '$family';
    src: url('$url') format('$fmt');
    font-weight: normal;
    font-style: normal;
}"""
)


def _merge_class_list(existing: object, add: Iterable[str]) -> list[str]:
    current: list[str] = []
    if isinstance(existing, list):
        current = [str(x) for x in existing if str(x).strip()]
    elif isinstance(existing, str):
        current = [p for p in existing.split() if p.strip()]

    for c in add:
        c = str(c).strip()
        if c and c not in current:
            current.append(c)
    return current


def _add_classes(tag: Tag, *classes: str) -> None:
    tag["class"] = _merge_class_list(tag.get("class"), classes)


def _clean_source(markdown_text: str) -> str:
    text = markdown_text or ""
    # Lone surrogates cannot be written as UTF-8; NUL is replaced by the parser anyway.
    text = text.encode("utf-8", "replace").decode("utf-8")
    return text.replace("\r\n", "\n").replace("\r", "\n").replace("\x00", "\ufffd")


def split_fragments(markdown_text: str) -> List[str]:
    """Split Markdown into blank-line separated blocks, keeping fenced code intact."""
    fragments: List[str] = []
    current: List[str] = []
    fence: Optional[str] = None
    for line in markdown_text.split("\n"):
        match = _FENCE_RE.match(line)
        if match:
            marker = match.group(1)
            if fence is None:
                fence = marker
            elif marker[0] == fence[0] and len(marker) >= len(fence):
                fence = None
        if fence is None and not line.strip():
            if current:
                fragments.append("\n".join(current))
                current = []
            continue
        current.append(line)
    if current:
        fragments.append("\n".join(current))
    return fragments


class MarkdownTranscoder:
    """Turn untrusted Markdown into a self-contained, styled HTML document.

    Raw HTML in the source is never passed through: the parser runs with HTML
    disabled, so tags come out as escaped text. Latin runs longer than a line
    receive invisible break opportunities so nothing overflows the page width.
    """

    def __init__(
        self,
        font_path: Optional[Path] = None,
        *,
        font_size: int = 24,
        padding: int = 30,
        page_width: int = 1024,
    ) -> None:
        self.font_path = font_path
        self.font_size = font_size
        self.padding = padding
        self.page_width = page_width
        self.columns = content_columns(page_width, padding, font_size)
        self._md = MarkdownIt("commonmark", {"html": False, "linkify": False, "typographer": False}).enable(
            ["table", "strikethrough"]
        )

    @classmethod
    def from_settings(cls, settings, font_path: Optional[Path]) -> "MarkdownTranscoder":
        return cls(
            font_path,
            font_size=settings.font_size,
            padding=settings.padding,
            page_width=settings.page_width,
        )

    def stylesheet(self) -> str:
        if self.font_path is not None:
            font_face = _FONT_FACE.substitute(
                family=FONT_FAMILY_NAME,
                url=self.font_path.as_uri(),
                fmt=font_format(self.font_path),
            )
            family = f"'{FONT_FAMILY_NAME}', 'Microsoft YaHei', 'SimHei', sans-serif"
        else:
            font_face = ""
            family = "'Microsoft YaHei', 'SimHei', sans-serif"
        size = self.font_size
        return _STYLESHEET.substitute(
            font_face=font_face,
            font_family=family,
            font_size=size,
            code_size=max(6, size - 2),
            h1_size=round(size * 1.35),
            h2_size=round(size * 1.2),
            h3_size=round(size * 1.05),
            padding=self.padding,
            page_width=self.page_width,
        )

    def _render_fragment(self, fragment: str) -> str:
        try:
            return self._md.render(fragment)
        except Exception as exc:
            raise MalformedMarkdownFragment(fragment) from exc

    def render_body(self, markdown_text: str) -> str:
        """Render Markdown to decorated body HTML; unparseable parts become literal text."""
        source = _clean_source(markdown_text)
        try:
            raw_html = self._render_fragment(source)
        except MalformedMarkdownFragment:
            logger.warning("Markdown parse failed; rendering fragment by fragment")
            parts: List[str] = []
            for fragment in split_fragments(source):
                try:
                    parts.append(self._render_fragment(fragment))
                except MalformedMarkdownFragment as exc:
                    logger.warning("Degrading malformed fragment (%d chars) to literal text", len(exc.fragment))
                    parts.append(f'<p class="md-literal">{html.escape(exc.fragment)}</p>\n')
            raw_html = "".join(parts)
        return self._decorate(raw_html)

    def _decorate(self, body_html: str) -> str:
        soup = BeautifulSoup(body_html, "html.parser")

        for tag in soup.find_all(_BLOCKED_TAGS):
            tag.decompose()

        for tag in soup.find_all(True):
            for attr in list(tag.attrs):
                if attr.lower().startswith("on"):
                    del tag[attr]

        for link in soup.find_all("a"):
            href = str(link.get("href") or "").strip()
            if href and not href.lower().startswith(_SAFE_HREF_PREFIXES):
                del link["href"]
            _add_classes(link, "md-link")

        for img in soup.find_all("img"):
            src = str(img.get("src") or "").strip()
            if not src.lower().startswith(_SAFE_SRC_PREFIXES):
                img.replace_with(soup.new_string(str(img.get("alt") or "")))

        for table in soup.find_all("table"):
            _add_classes(table, "md-table")
        for quote in soup.find_all("blockquote"):
            _add_classes(quote, "md-quote")
        for rule in soup.find_all("hr"):
            _add_classes(rule, "md-rule")
        for pre in soup.find_all("pre"):
            _add_classes(pre, "md-code-block")
        for lst in soup.find_all(["ul", "ol"]):
            depth = 1 + sum(1 for parent in lst.parents if parent.name in ("ul", "ol"))
            _add_classes(lst, "md-list", f"md-list-depth-{min(depth, 3)}")

        for node in list(soup.find_all(string=True)):
            if not isinstance(node, NavigableString) or node.find_parent(["pre", "code"]) is not None:
                continue
            softened = soften_long_runs(str(node), self.columns)
            if softened != str(node):
                node.replace_with(softened)

        return str(soup)

    def transcode(self, markdown_text: str) -> str:
        body = self.render_body(markdown_text)
        return (
            "<!DOCTYPE html>\n"
            '<html lang="zh">\n<head>\n<meta charset="UTF-8">\n'
            f"<style>{self.stylesheet()}</style>\n"
            "</head>\n"
            f'<body><article class="md-answer">\n{body}</article></body>\n</html>\n'
        )
