from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Iterable, Optional, Tuple, Union

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

_FONT_FORMATS = {
    ".ttf": "truetype",
    ".ttc": "truetype",
    ".otf": "opentype",
    ".woff": "woff",
    ".woff2": "woff2",
}


def font_format(path: Path) -> str:
    """CSS @font-face format hint for a font file."""
    return _FONT_FORMATS.get(path.suffix.lower(), "truetype")


class FontResolver:
    """Pick the first usable font from an ordered candidate list.

    Relative candidates are resolved against ``base_dir`` (the working
    directory by default) so the renderer, which loads the font through a
    ``file://`` URL, always receives an absolute path.
    """

    def __init__(self, candidates: Iterable[Union[str, Path]], base_dir: Optional[Path] = None) -> None:
        self.candidates: Tuple[Path, ...] = tuple(Path(c) for c in candidates)
        self.base_dir = base_dir

    def _absolute(self, candidate: Path) -> Path:
        candidate = candidate.expanduser()
        if candidate.is_absolute():
            return candidate
        return (self.base_dir or Path.cwd()) / candidate

    def resolve(self) -> Path:
        for candidate in self.candidates:
            path = self._absolute(candidate)
            if path.is_file() and os.access(path, os.R_OK):
                return path.resolve()
            logger.warning("Font candidate not usable: %s", path)
        tried = ", ".join(str(c) for c in self.candidates) or "<none>"
        raise ConfigurationError(f"No usable font file found (tried: {tried})")
