from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional, Tuple

from .errors import ConfigurationError

# Relative paths resolve against the working directory.
DEFAULT_FONT_PATHS = "./assets/fonts/LXGWWenKaiGBScreen.ttf"

SESSIONS_SUBDIR = "sessions"
TEMP_SUBDIR = Path("pic") / "temp"

RENDERER_CHOICES = ("wkhtmltoimage", "playwright")


@dataclass(frozen=True)
class Settings:
    """Process-wide configuration, read once at startup and shared read-only."""

    data_dir: Path
    font_paths: Tuple[Path, ...]
    font_size: int = 24
    padding: int = 30
    page_width: int = 1024
    render_quality: int = 95
    session_expiry_seconds: float = 3600.0
    renderer: str = "wkhtmltoimage"
    renderer_path: str = "wkhtmltoimage"
    render_timeout_seconds: float = 60.0
    render_concurrency: int = 4
    cleanup_interval_seconds: float = 600.0
    temp_grace_seconds: float = 3600.0
    answer_api_url: str = ""
    answer_api_token: str = ""
    answer_concurrency: int = 5
    answer_timeout_seconds: float = 300.0
    log_level: str = "INFO"

    @property
    def sessions_dir(self) -> Path:
        return self.data_dir / SESSIONS_SUBDIR

    @property
    def temp_dir(self) -> Path:
        return self.data_dir / TEMP_SUBDIR


def _get(environ: Mapping[str, str], name: str, default: str) -> str:
    raw = environ.get(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip()


def _get_int(environ: Mapping[str, str], name: str, default: int, minimum: int = 0) -> int:
    raw = _get(environ, name, str(default))
    try:
        value = int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from None
    if value < minimum:
        raise ConfigurationError(f"{name} must be >= {minimum}, got {value}")
    return value


def _get_float(environ: Mapping[str, str], name: str, default: float, minimum: float = 0.0) -> float:
    raw = _get(environ, name, str(default))
    try:
        value = float(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from None
    if value < minimum:
        raise ConfigurationError(f"{name} must be >= {minimum}, got {value}")
    return value


def parse_font_paths(raw: str) -> Tuple[Path, ...]:
    return tuple(Path(part.strip()) for part in raw.split(",") if part.strip())


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    """Build the settings snapshot from environment variables.

    Raises ConfigurationError for any unparseable or out-of-range value so the
    process never starts serving with a half-valid configuration.
    """
    env = os.environ if environ is None else environ

    data_dir = Path(_get(env, "MDIMG_DATA_DIR", "./data")).expanduser()

    font_paths = parse_font_paths(_get(env, "MDIMG_FONT_PATHS", DEFAULT_FONT_PATHS))
    if not font_paths:
        raise ConfigurationError("MDIMG_FONT_PATHS does not list any font file")

    renderer = _get(env, "MDIMG_RENDERER", "wkhtmltoimage").lower()
    if renderer not in RENDERER_CHOICES:
        raise ConfigurationError(
            f"MDIMG_RENDERER must be one of {', '.join(RENDERER_CHOICES)}, got {renderer!r}"
        )

    # The generic override wins over the legacy wkhtmltoimage variable.
    renderer_path = _get(env, "MDIMG_RENDERER_PATH", _get(env, "WKHTMLTOIMAGE_PATH", "wkhtmltoimage"))

    render_timeout = _get_float(env, "MDIMG_RENDER_TIMEOUT_SECONDS", 60.0, minimum=0.1)
    temp_grace = _get_float(env, "MDIMG_TEMP_GRACE_SECONDS", 3600.0)
    if temp_grace <= render_timeout:
        raise ConfigurationError(
            "MDIMG_TEMP_GRACE_SECONDS must exceed MDIMG_RENDER_TIMEOUT_SECONDS "
            "so in-flight render files are never reclaimed"
        )

    quality = _get_int(env, "MDIMG_RENDER_QUALITY", 95, minimum=1)
    if quality > 100:
        raise ConfigurationError(f"MDIMG_RENDER_QUALITY must be <= 100, got {quality}")

    font_size = _get_int(env, "MDIMG_FONT_SIZE", 24, minimum=6)
    padding = _get_int(env, "MDIMG_PADDING", 30)
    page_width = _get_int(env, "MDIMG_PAGE_WIDTH", 1024, minimum=200)
    if padding * 2 >= page_width:
        raise ConfigurationError("MDIMG_PADDING leaves no room for content at this page width")

    return Settings(
        data_dir=data_dir,
        font_paths=font_paths,
        font_size=font_size,
        padding=padding,
        page_width=page_width,
        render_quality=quality,
        session_expiry_seconds=_get_float(env, "MDIMG_SESSION_EXPIRY_SECONDS", 3600.0),
        renderer=renderer,
        renderer_path=renderer_path,
        render_timeout_seconds=render_timeout,
        render_concurrency=_get_int(env, "MDIMG_RENDER_CONCURRENCY", 4, minimum=1),
        cleanup_interval_seconds=max(1.0, _get_float(env, "MDIMG_CLEANUP_INTERVAL_SECONDS", 600.0)),
        temp_grace_seconds=temp_grace,
        answer_api_url=_get(env, "FASTGPT_API_URL", ""),
        answer_api_token=_get(env, "FASTGPT_AUTH_TOKEN", ""),
        answer_concurrency=_get_int(env, "FASTGPT_CONCURRENCY_LIMIT", 5, minimum=1),
        answer_timeout_seconds=_get_float(env, "FASTGPT_TIMEOUT_SECONDS", 300.0, minimum=1.0),
        log_level=_get(env, "MDIMG_LOG_LEVEL", "INFO").upper(),
    )


def configure_logging(settings: Settings) -> None:
    level = logging.getLevelName(settings.log_level)
    if not isinstance(level, int):
        level = logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
