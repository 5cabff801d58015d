from __future__ import annotations

import asyncio
from pathlib import Path
from typing import List

import pytest

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 64


class FakeRenderer:
    """In-process renderer: records the documents it saw and writes a stub PNG."""

    name = "fake"

    def __init__(self, delay: float = 0.0) -> None:
        self.delay = delay
        self.documents: List[str] = []
        self.active = 0
        self.max_active = 0

    async def check_available(self) -> None:
        return None

    async def render(self, html_path: Path, output_path: Path, *, timeout: float) -> None:
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            self.documents.append(html_path.read_text(encoding="utf-8"))
            if self.delay:
                await asyncio.sleep(self.delay)
            output_path.write_bytes(PNG_BYTES)
        finally:
            self.active -= 1


@pytest.fixture
def fake_renderer() -> FakeRenderer:
    return FakeRenderer()


@pytest.fixture
def font_file(tmp_path) -> Path:
    path = tmp_path / "fonts" / "answer.ttf"
    path.parent.mkdir()
    path.write_bytes(b"\x00\x01\x00\x00fake-font")
    return path
