from __future__ import annotations

import re
import secrets
import uuid
from pathlib import Path


_SESSION_ID_RE = re.compile(r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}$")

# Chat-platform user ids are numeric snowflakes, but keep room for other gateways.
_OWNER_ID_RE = re.compile(r"^[A-Za-z0-9_.:@-]{1,128}$")


def new_session_id() -> str:
    return str(uuid.uuid4())


def normalize_session_id(session_id: str) -> str:
    """Validate and normalize a session id.

    Session ids double as directory names, so they are validated strictly
    before they ever touch a path.
    """
    if not isinstance(session_id, str):
        raise ValueError("Invalid session id")
    session_id = session_id.strip()
    if not _SESSION_ID_RE.match(session_id):
        raise ValueError("Invalid session id")
    return str(uuid.UUID(session_id))


def normalize_owner_id(owner_id: object) -> str:
    """Owner ids are stored verbatim in user_id.txt; accept ints and simple tokens."""
    if isinstance(owner_id, bool) or owner_id is None:
        raise ValueError("Invalid owner id")
    text = str(owner_id).strip()
    if not _OWNER_ID_RE.match(text):
        raise ValueError("Invalid owner id")
    return text


def private_temp_name(session_id: str, suffix: str) -> str:
    """Temp artifact name: session id plus a random component, never shared between calls."""
    prefix = re.sub(r"[^0-9A-Za-z-]", "", session_id or "")[:36] or "anon"
    return f"{prefix}_{secrets.token_hex(8)}{suffix}"


def is_safe_basename(name: object) -> bool:
    """A plain file name: no separators, no dot entries."""
    if not isinstance(name, str) or name in ("", ".", ".."):
        return False
    return "/" not in name and "\\" not in name and Path(name).name == name


def safe_join(base_dir: Path, *parts: str) -> Path:
    """Resolve ``parts`` under ``base_dir``; ValueError if the result escapes it."""
    base = base_dir.resolve()
    resolved = base.joinpath(*parts).resolve()
    if not resolved.is_relative_to(base):
        raise ValueError("Path traversal attempt")
    return resolved
