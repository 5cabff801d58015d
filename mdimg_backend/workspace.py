from __future__ import annotations

import contextlib
import json
import logging
import os
import shutil
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional, Tuple, TypeVar

from .errors import SessionNotFoundError, StorageError
from .locks import KeyedLocks
from .security import new_session_id, normalize_owner_id, normalize_session_id

logger = logging.getLogger(__name__)

T = TypeVar("T")

OWNER_FILENAME = "user_id.txt"
META_FILENAME = ".meta.json"
MANIFEST_FILENAME = "turns.json"
LATEST_INPUT_FILENAME = "input.txt"
LATEST_RESPONSE_FILENAME = "response.md"
STAGING_PREFIX = ".staging-"
META_VERSION = 2
PREVIEW_CHARS = 30

# Outcomes of expire_if_idle.
EXPIRED = "expired"
RETAINED = "retained"
BUSY = "busy"
MISSING = "missing"


@dataclass(frozen=True)
class Turn:
    index: int
    input_text: str
    response_markdown: str
    image_reference: Optional[Path]
    created_at: float


@dataclass(frozen=True)
class Session:
    id: str
    owner_id: str
    created_at: float
    last_accessed_at: float
    turns: Tuple[Turn, ...] = ()


@dataclass(frozen=True)
class SessionSummary:
    id: str
    owner_id: str
    created_at: float
    last_accessed_at: float
    turn_count: int
    image_count: int
    input_preview: str


def preview(text: str, limit: int = PREVIEW_CHARS) -> str:
    text = " ".join((text or "").split())
    if len(text) <= limit:
        return text
    return text[:limit] + "..."


def _tmp_sibling(path: Path) -> Path:
    return path.with_name(f".{path.name}.{uuid.uuid4().hex}.tmp")


def _publish(tmp: Path, path: Path, fill: Callable[[Path], None]) -> None:
    """Write-then-publish: fill a private sibling, then atomically rename it over ``path``."""
    try:
        fill(tmp)
        os.replace(tmp, path)
    except BaseException:
        with contextlib.suppress(OSError):
            tmp.unlink()
        raise


def _write_bytes_synced(data: bytes) -> Callable[[Path], None]:
    def fill(tmp: Path) -> None:
        with open(tmp, "xb") as fh:
            fh.write(data)
            fh.flush()
            os.fsync(fh.fileno())

    return fill


def atomic_write_text(path: Path, text: str) -> None:
    _publish(_tmp_sibling(path), path, _write_bytes_synced(text.encode("utf-8")))


def atomic_write_json(path: Path, payload: dict) -> None:
    atomic_write_text(path, json.dumps(payload, indent=2, sort_keys=True, ensure_ascii=False))


def atomic_copy(src: Path, dest: Path) -> None:
    _publish(_tmp_sibling(dest), dest, lambda tmp: shutil.copyfile(src, tmp))


class SessionStore(ABC):
    """Lifecycle of per-owner conversation sessions.

    Appends to one session are serialized through ``locks``, keyed by session
    id; the janitor takes the same keys before deleting anything.
    """

    def __init__(self, locks: Optional[KeyedLocks] = None) -> None:
        self.locks = locks if locks is not None else KeyedLocks()

    @abstractmethod
    def create_session(self, owner_id: object) -> Session: ...

    @abstractmethod
    def append_turn(
        self,
        session_id: str,
        input_text: str,
        response_markdown: str,
        image_path: Optional[Path] = None,
    ) -> Turn: ...

    @abstractmethod
    def get_session(self, session_id: str) -> Optional[Session]: ...

    @abstractmethod
    def list_sessions(self, owner_id: object) -> List[SessionSummary]: ...

    @abstractmethod
    def touch(self, session_id: str) -> None: ...

    @abstractmethod
    def delete_session(self, session_id: str) -> bool: ...

    @abstractmethod
    def session_ids(self) -> List[str]: ...

    @abstractmethod
    def expire_if_idle(self, session_id: str, max_idle: float, now: Optional[float] = None) -> str: ...

    @abstractmethod
    def reclaim_orphans(self, grace_seconds: float, now: Optional[float] = None) -> int: ...


class FileSessionStore(SessionStore):
    """Directory-as-database session store.

    Layout per session::

        <root>/<session_id>/user_id.txt
        <root>/<session_id>/.meta.json          created_at / last_access
        <root>/<session_id>/turns.json          commit manifest
        <root>/<session_id>/input_<n>.txt
        <root>/<session_id>/response_<n>.md
        <root>/<session_id>/response_<n>.png
        <root>/<session_id>/input.txt           latest question
        <root>/<session_id>/response.md         latest answer

    A session directory is assembled under ``.staging-*`` and renamed into
    place, and a turn becomes visible only when ``turns.json`` is replaced, so
    readers never observe half-written state.
    """

    def __init__(
        self,
        root: Path,
        locks: Optional[KeyedLocks] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        super().__init__(locks)
        self.root = Path(root)
        self._clock = clock

    # -- helpers -----------------------------------------------------------

    def _with_retry(self, description: str, op: Callable[[], T]) -> T:
        try:
            return op()
        except OSError as exc:
            logger.warning("%s failed (%s); retrying once", description, exc)
        try:
            return op()
        except OSError as exc:
            raise StorageError(f"{description} failed: {exc}") from exc

    def _require_id(self, session_id: str) -> str:
        try:
            return normalize_session_id(session_id)
        except ValueError:
            raise SessionNotFoundError(str(session_id)) from None

    def session_dir(self, session_id: str) -> Path:
        return self.root / normalize_session_id(session_id)

    # The _read_* helpers return None for a missing or unparseable file. Any
    # other OSError propagates so _with_retry can turn it into StorageError.

    @staticmethod
    def _read_owner(root: Path) -> Optional[str]:
        try:
            owner = (root / OWNER_FILENAME).read_text(encoding="utf-8").strip()
        except (FileNotFoundError, NotADirectoryError, UnicodeDecodeError):
            return None
        return owner or None

    @staticmethod
    def _read_meta(root: Path) -> Optional[dict]:
        try:
            meta = json.loads((root / META_FILENAME).read_text(encoding="utf-8"))
            float(meta["created_at"])
            float(meta["last_access"])
        except (FileNotFoundError, NotADirectoryError, ValueError, KeyError, TypeError):
            return None
        return meta

    @staticmethod
    def _read_manifest(root: Path) -> Optional[list]:
        try:
            turns = json.loads((root / MANIFEST_FILENAME).read_text(encoding="utf-8"))["turns"]
        except (FileNotFoundError, NotADirectoryError, ValueError, KeyError, TypeError):
            return None
        if not isinstance(turns, list):
            return None
        return turns

    # -- SessionStore ------------------------------------------------------

    def create_session(self, owner_id: object) -> Session:
        owner = normalize_owner_id(owner_id)
        return self._with_retry("create session", lambda: self._create(owner))

    def _create(self, owner: str) -> Session:
        self.root.mkdir(parents=True, exist_ok=True)
        session_id = new_session_id()
        staging = self.root / f"{STAGING_PREFIX}{uuid.uuid4().hex}"
        staging.mkdir()
        now = self._clock()
        try:
            (staging / OWNER_FILENAME).write_text(owner, encoding="utf-8")
            atomic_write_json(staging / META_FILENAME, {"created_at": now, "last_access": now, "version": META_VERSION})
            atomic_write_json(staging / MANIFEST_FILENAME, {"turns": []})
            os.rename(staging, self.root / session_id)
        except BaseException:
            shutil.rmtree(staging, ignore_errors=True)
            raise
        logger.info("Created session %s for owner %s", session_id, owner)
        return Session(id=session_id, owner_id=owner, created_at=now, last_accessed_at=now)

    def append_turn(
        self,
        session_id: str,
        input_text: str,
        response_markdown: str,
        image_path: Optional[Path] = None,
    ) -> Turn:
        sid = self._require_id(session_id)
        if image_path is not None and not Path(image_path).is_file():
            raise StorageError(f"Image to append does not exist: {image_path}")
        with self.locks.hold(sid):
            root = self.root / sid
            manifest, owner = self._with_retry(
                "read session",
                lambda: (self._read_manifest(root), self._read_owner(root)),
            )
            if manifest is None or owner is None:
                raise SessionNotFoundError(sid)
            index = len(manifest) + 1
            return self._with_retry(
                "append turn",
                lambda: self._append(root, index, input_text or "", response_markdown or "", image_path),
            )

    def _append(
        self,
        root: Path,
        index: int,
        input_text: str,
        response_markdown: str,
        image_path: Optional[Path],
    ) -> Turn:
        manifest = self._read_manifest(root)
        if manifest is None:
            raise SessionNotFoundError(root.name)
        if len(manifest) >= index:
            # An earlier attempt already committed this turn.
            return self._turn_from_record(root, manifest[index - 1])

        record = {
            "index": index,
            "input": f"input_{index}.txt",
            "response": f"response_{index}.md",
            "image": None,
            "created_at": self._clock(),
        }
        atomic_write_text(root / record["input"], input_text)
        atomic_write_text(root / record["response"], response_markdown)
        if image_path is not None:
            record["image"] = f"response_{index}{Path(image_path).suffix.lower() or '.png'}"
            atomic_copy(Path(image_path), root / record["image"])

        # Commit point.
        atomic_write_json(root / MANIFEST_FILENAME, {"turns": manifest + [record]})

        atomic_write_text(root / LATEST_INPUT_FILENAME, input_text)
        atomic_write_text(root / LATEST_RESPONSE_FILENAME, response_markdown)
        self._write_last_access(root, record["created_at"])
        logger.debug("Appended turn %d to session %s", index, root.name)
        return Turn(
            index=index,
            input_text=input_text,
            response_markdown=response_markdown,
            image_reference=(root / record["image"]) if record["image"] else None,
            created_at=record["created_at"],
        )

    def _turn_from_record(self, root: Path, record: dict) -> Turn:
        image_name = record.get("image")
        image = root / image_name if image_name else None
        if image is not None and not image.is_file():
            raise FileNotFoundError(str(image))
        return Turn(
            index=int(record["index"]),
            input_text=(root / record["input"]).read_text(encoding="utf-8"),
            response_markdown=(root / record["response"]).read_text(encoding="utf-8"),
            image_reference=image,
            created_at=float(record.get("created_at", 0.0)),
        )

    def get_session(self, session_id: str) -> Optional[Session]:
        try:
            sid = normalize_session_id(session_id)
        except ValueError:
            return None
        return self._with_retry("read session", lambda: self._load(self.root / sid))

    def _load(self, root: Path) -> Optional[Session]:
        if not root.is_dir():
            return None
        owner = self._read_owner(root)
        meta = self._read_meta(root)
        manifest = self._read_manifest(root)
        if owner is None or meta is None or manifest is None:
            return None
        try:
            turns = tuple(self._turn_from_record(root, record) for record in manifest)
        except (FileNotFoundError, KeyError, TypeError, ValueError):
            # Deleted underneath us, or a manifest that does not match the files.
            return None
        return Session(
            id=root.name,
            owner_id=owner,
            created_at=float(meta["created_at"]),
            last_accessed_at=float(meta["last_access"]),
            turns=turns,
        )

    def list_sessions(self, owner_id: object) -> List[SessionSummary]:
        owner = normalize_owner_id(owner_id)
        summaries: List[SessionSummary] = []
        for sid in self.session_ids():
            if self._with_retry("read owner", lambda: self._read_owner(self.root / sid)) != owner:
                continue
            session = self.get_session(sid)
            if session is None:
                continue
            summaries.append(
                SessionSummary(
                    id=session.id,
                    owner_id=session.owner_id,
                    created_at=session.created_at,
                    last_accessed_at=session.last_accessed_at,
                    turn_count=len(session.turns),
                    image_count=sum(1 for t in session.turns if t.image_reference is not None),
                    input_preview=preview(session.turns[0].input_text) if session.turns else "",
                )
            )
        summaries.sort(key=lambda s: s.last_accessed_at, reverse=True)
        return summaries

    def touch(self, session_id: str) -> None:
        sid = self._require_id(session_id)
        self._with_retry("touch session", lambda: self._write_last_access(self.root / sid, self._clock()))

    def _write_last_access(self, root: Path, when: float) -> None:
        meta = self._read_meta(root)
        if meta is None:
            raise SessionNotFoundError(root.name)
        meta["last_access"] = when
        atomic_write_json(root / META_FILENAME, meta)

    def delete_session(self, session_id: str) -> bool:
        try:
            sid = normalize_session_id(session_id)
        except ValueError:
            return False
        with self.locks.hold(sid):
            root = self.root / sid
            if not root.exists():
                return False
            self._with_retry("delete session", lambda: shutil.rmtree(root))
        logger.info("Deleted session %s", sid)
        return True

    # -- maintenance -------------------------------------------------------

    def session_ids(self) -> List[str]:
        if not self.root.is_dir():
            return []
        ids: List[str] = []
        for child in self.root.iterdir():
            if child.name.startswith(".") or not child.is_dir():
                continue
            try:
                ids.append(normalize_session_id(child.name))
            except ValueError:
                continue
        return sorted(ids)

    def expire_if_idle(self, session_id: str, max_idle: float, now: Optional[float] = None) -> str:
        """Delete the session if idle for strictly longer than ``max_idle`` seconds.

        Never waits: a session with an append in flight is reported as BUSY and
        left for the next sweep.
        """
        sid = normalize_session_id(session_id)
        with self.locks.try_hold(sid) as acquired:
            if not acquired:
                return BUSY
            root = self.root / sid
            meta = self._read_meta(root)
            if meta is None:
                return MISSING
            current = self._clock() if now is None else now
            if current - float(meta["last_access"]) <= max_idle:
                return RETAINED
            shutil.rmtree(root)
            return EXPIRED

    def reclaim_orphans(self, grace_seconds: float, now: Optional[float] = None) -> int:
        """Remove abandoned staging directories and unmanaged session directories.

        A directory is unmanaged when it lacks its owner or metadata file. Only
        entries older than ``grace_seconds`` are touched.
        """
        if not self.root.is_dir():
            return 0
        current = self._clock() if now is None else now
        removed = 0
        for child in self.root.iterdir():
            if not child.is_dir():
                continue
            if child.name.startswith(STAGING_PREFIX):
                orphaned = True
            else:
                try:
                    sid = normalize_session_id(child.name)
                except ValueError:
                    continue
                orphaned = self._read_owner(child) is None or self._read_meta(child) is None
                if orphaned and self.locks.is_locked(sid):
                    continue
            if not orphaned:
                continue
            try:
                age = current - child.stat().st_mtime
            except FileNotFoundError:
                continue
            if age <= grace_seconds:
                continue
            shutil.rmtree(child)
            removed += 1
            logger.info("Reclaimed orphaned directory %s", child.name)
        return removed
