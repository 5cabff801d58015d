"""HTML-to-PNG rendering through an out-of-process renderer.

The renderer is a narrow capability: given an HTML file and an output path it
produces a raster image or raises RenderError. ``RenderInvoker`` owns the parts
every backend shares: the private temp input file, the concurrency bound and
the output checks.
"""
from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import shutil
from pathlib import Path
from typing import Iterator, List, Optional, Protocol

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import async_playwright

from .errors import ConfigurationError, RenderError
from .security import private_temp_name

logger = logging.getLogger(__name__)

_STDERR_LIMIT = 4000


class Renderer(Protocol):
    name: str

    async def check_available(self) -> None:
        """Raise ConfigurationError when the backend cannot run at all."""

    async def render(self, html_path: Path, output_path: Path, *, timeout: float) -> None:
        """Rasterize ``html_path`` into ``output_path`` within ``timeout`` seconds."""


def _decode(stream: Optional[bytes]) -> str:
    text = (stream or b"").decode("utf-8", errors="replace").strip()
    if len(text) > _STDERR_LIMIT:
        text = text[-_STDERR_LIMIT:]
    return text


class WkhtmltoimageRenderer:
    name = "wkhtmltoimage"

    def __init__(self, executable: str = "wkhtmltoimage", *, width: int = 1024, quality: int = 95) -> None:
        self.executable = executable
        self.width = width
        self.quality = quality
        self._resolved: Optional[str] = None

    def resolve_executable(self) -> str:
        found = shutil.which(os.path.expanduser(self.executable))
        if found:
            return found
        path = Path(self.executable).expanduser()
        if path.is_file() and os.access(path, os.X_OK):
            return str(path.resolve())
        raise ConfigurationError(f"Renderer executable not found or not executable: {self.executable}")

    async def check_available(self) -> None:
        self._resolved = self.resolve_executable()

    def build_command(self, html_path: Path, output_path: Path) -> List[str]:
        # Before check_available has run, fall back to the expanded setting.
        executable = self._resolved or os.path.expanduser(self.executable)
        return [
            executable,
            "--quiet",
            "--format",
            "png",
            "--quality",
            str(self.quality),
            "--width",
            str(self.width),
            "--encoding",
            "UTF-8",
            # The stylesheet loads the font through a file:// URL.
            "--enable-local-file-access",
            "--disable-javascript",
            str(html_path),
            str(output_path),
        ]

    async def render(self, html_path: Path, output_path: Path, *, timeout: float) -> None:
        command = self.build_command(html_path, output_path)
        try:
            proc = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise RenderError(f"Could not start {self.executable}: {exc}") from exc

        try:
            _, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            await _terminate(proc)
            raise RenderError(f"{self.name} timed out after {timeout:g}s", timed_out=True) from None
        except asyncio.CancelledError:
            await _terminate(proc)
            raise

        if proc.returncode != 0:
            raise RenderError(
                f"{self.name} exited with status {proc.returncode}",
                stderr=_decode(stderr),
            )


async def _terminate(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is None:
        with contextlib.suppress(ProcessLookupError):
            proc.kill()
    await proc.wait()


class PlaywrightRenderer:
    """Headless Chromium screenshot of the document (full page, fixed width)."""

    name = "playwright"

    def __init__(self, *, width: int = 1024) -> None:
        self.width = width

    async def check_available(self) -> None:
        async with async_playwright() as p:
            executable = p.chromium.executable_path
        if not executable or not Path(executable).exists():
            raise ConfigurationError("Chromium for Playwright is not installed (run `playwright install chromium`)")

    async def _screenshot(self, html_path: Path, output_path: Path, timeout_ms: float) -> None:
        async with async_playwright() as p:
            browser = await p.chromium.launch()
            try:
                page = await browser.new_page(viewport={"width": self.width, "height": 200})
                await page.goto(html_path.as_uri(), wait_until="load", timeout=timeout_ms)
                await page.evaluate(
                    """async () => { if (document.fonts && document.fonts.ready) { await document.fonts.ready; } }"""
                )
                await page.screenshot(path=str(output_path), full_page=True, type="png")
            finally:
                await browser.close()

    async def render(self, html_path: Path, output_path: Path, *, timeout: float) -> None:
        try:
            await asyncio.wait_for(self._screenshot(html_path, output_path, timeout * 1000), timeout=timeout)
        except asyncio.TimeoutError:
            raise RenderError(f"{self.name} timed out after {timeout:g}s", timed_out=True) from None
        except PlaywrightError as exc:
            raise RenderError(f"{self.name} failed", stderr=str(exc)[:_STDERR_LIMIT]) from exc


def build_renderer(settings) -> Renderer:
    if settings.renderer == "playwright":
        return PlaywrightRenderer(width=settings.page_width)
    return WkhtmltoimageRenderer(
        settings.renderer_path,
        width=settings.page_width,
        quality=settings.render_quality,
    )


@contextlib.contextmanager
def private_temp_file(temp_dir: Path, session_id: str, suffix: str) -> Iterator[Path]:
    """Reserve a collision-free temp path and remove it on every exit path."""
    temp_dir.mkdir(parents=True, exist_ok=True)
    path = temp_dir / private_temp_name(session_id, suffix)
    try:
        yield path
    finally:
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        except OSError:
            logger.warning("Could not remove temp file %s; the janitor will reclaim it", path.name)


class RenderInvoker:
    """Run renders through a backend with bounded concurrency and scoped temp files."""

    def __init__(
        self,
        renderer: Renderer,
        temp_dir: Path,
        *,
        timeout: float = 60.0,
        max_concurrency: int = 4,
    ) -> None:
        self.renderer = renderer
        self.temp_dir = Path(temp_dir)
        self.timeout = timeout
        self.max_concurrency = max_concurrency
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self._active = 0

    @property
    def active(self) -> int:
        return self._active

    async def render_document(self, document: str, output_path: Path, *, session_id: str) -> Path:
        """Render ``document`` to ``output_path``; the file exists and is non-empty on return."""
        output_path = Path(output_path)
        async with self._semaphore:
            self._active += 1
            try:
                with private_temp_file(self.temp_dir, session_id, ".html") as html_path:
                    await asyncio.to_thread(_write_private, html_path, document)
                    output_path.parent.mkdir(parents=True, exist_ok=True)
                    try:
                        await self.renderer.render(html_path, output_path, timeout=self.timeout)
                        _check_output(output_path)
                    except RenderError as exc:
                        _discard(output_path)
                        logger.error(
                            "Render failed for session %s: %s%s",
                            session_id,
                            exc,
                            f"\n{exc.stderr}" if exc.stderr else "",
                        )
                        raise
                    except BaseException:
                        _discard(output_path)
                        raise
            finally:
                self._active -= 1
        logger.info("Rendered image for session %s (%d bytes)", session_id, output_path.stat().st_size)
        return output_path


def _write_private(path: Path, document: str) -> None:
    # O_EXCL: the random name must not already exist.
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as fh:
        fh.write(document)


def _check_output(output_path: Path) -> None:
    try:
        size = output_path.stat().st_size
    except FileNotFoundError:
        raise RenderError("Renderer reported success but wrote no image") from None
    if size == 0:
        raise RenderError("Renderer produced an empty image")


def _discard(path: Path) -> None:
    with contextlib.suppress(OSError):
        path.unlink()
