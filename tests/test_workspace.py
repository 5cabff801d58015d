from __future__ import annotations

import errno
import json
import os
import threading
from pathlib import Path

import pytest

from mdimg_backend import workspace
from mdimg_backend.errors import SessionNotFoundError, StorageError
from mdimg_backend.locks import KeyedLocks
from mdimg_backend.workspace import (
    BUSY,
    EXPIRED,
    MANIFEST_FILENAME,
    META_FILENAME,
    MISSING,
    OWNER_FILENAME,
    RETAINED,
    FileSessionStore,
)


class _Clock:
    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock() -> _Clock:
    return _Clock()


@pytest.fixture
def store(tmp_path, clock) -> FileSessionStore:
    return FileSessionStore(tmp_path / "sessions", clock=clock)


def _image(tmp_path, name: str = "render.png"):
    path = tmp_path / name
    path.write_bytes(b"\x89PNG" + b"\x00" * 32)
    return path


def test_create_session_writes_owner_and_metadata(store, clock) -> None:
    session = store.create_session(42)

    root = store.session_dir(session.id)
    assert session.owner_id == "42"
    assert session.turns == ()
    assert (root / OWNER_FILENAME).read_text(encoding="utf-8") == "42"
    meta = json.loads((root / META_FILENAME).read_text(encoding="utf-8"))
    assert meta["created_at"] == clock.now
    assert meta["last_access"] == clock.now
    # No staging leftovers.
    assert [p.name for p in store.root.iterdir()] == [session.id]


def test_create_session_rejects_bad_owner(store) -> None:
    for bad in (None, True, "", "../etc", "a b"):
        with pytest.raises(ValueError):
            store.create_session(bad)


def test_append_then_read_returns_the_turn(store, tmp_path) -> None:
    image = _image(tmp_path)
    session = store.create_session("42")

    turn = store.append_turn(session.id, "hi", "**bold** reply", image)

    assert turn.index == 1
    loaded = store.get_session(session.id)
    assert loaded is not None
    assert len(loaded.turns) == 1
    stored = loaded.turns[0]
    assert stored.input_text == "hi"
    assert stored.response_markdown == "**bold** reply"
    assert stored.image_reference == store.session_dir(session.id) / "response_1.png"
    assert stored.image_reference.stat().st_size > 0
    # The store keeps its own copy; the caller's file is untouched.
    assert image.exists()

    root = store.session_dir(session.id)
    assert (root / "input.txt").read_text(encoding="utf-8") == "hi"
    assert (root / "response.md").read_text(encoding="utf-8") == "**bold** reply"


def test_turns_keep_their_order(store, tmp_path) -> None:
    session = store.create_session("7")
    store.append_turn(session.id, "first", "one", _image(tmp_path, "a.png"))
    store.append_turn(session.id, "second", "two")

    loaded = store.get_session(session.id)

    assert [t.index for t in loaded.turns] == [1, 2]
    assert [t.input_text for t in loaded.turns] == ["first", "second"]
    assert loaded.turns[1].image_reference is None
    root = store.session_dir(session.id)
    assert (root / "input.txt").read_text(encoding="utf-8") == "second"


def test_append_to_unknown_session(store, tmp_path) -> None:
    with pytest.raises(SessionNotFoundError):
        store.append_turn("6f1c1d2e-3a4b-4c5d-8e9f-0a1b2c3d4e5f", "q", "a")
    with pytest.raises(SessionNotFoundError):
        store.append_turn("../../etc", "q", "a")


def test_append_requires_an_existing_image(store, tmp_path) -> None:
    session = store.create_session("42")
    with pytest.raises(StorageError):
        store.append_turn(session.id, "q", "a", tmp_path / "missing.png")
    assert store.get_session(session.id).turns == ()


def test_concurrent_appends_are_serialized(store) -> None:
    session = store.create_session("42")
    errors = []

    def worker(n: int) -> None:
        try:
            store.append_turn(session.id, f"q{n}", f"a{n}")
        except Exception as exc:
            errors.append(exc)

    threads = [threading.Thread(target=worker, args=(n,)) for n in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    loaded = store.get_session(session.id)
    assert [t.index for t in loaded.turns] == list(range(1, 9))
    assert sorted(t.input_text for t in loaded.turns) == sorted(f"q{n}" for n in range(8))


def test_get_session_tolerates_bad_ids_and_incomplete_directories(store) -> None:
    assert store.get_session("not-a-uuid") is None
    assert store.get_session("6f1c1d2e-3a4b-4c5d-8e9f-0a1b2c3d4e5f") is None

    session = store.create_session("42")
    (store.session_dir(session.id) / MANIFEST_FILENAME).unlink()

    assert store.get_session(session.id) is None
    assert store.list_sessions("42") == []


def _snapshot(root):
    return {p.name: p.read_bytes() for p in sorted(root.iterdir()) if p.name != META_FILENAME}


def test_touch_updates_last_access_and_is_idempotent(store, clock, tmp_path) -> None:
    session = store.create_session("42")
    store.append_turn(session.id, "first", "**one**", _image(tmp_path))
    store.append_turn(session.id, "second", "two")
    before = store.get_session(session.id)
    files_before = _snapshot(store.session_dir(session.id))
    clock.now += 100

    store.touch(session.id)
    store.touch(session.id)

    after = store.get_session(session.id)
    assert after.turns == before.turns
    assert after.created_at == before.created_at
    assert after.last_accessed_at == clock.now
    assert after.last_accessed_at != before.last_accessed_at
    # turns.json and every per-turn file are byte-for-byte unchanged.
    assert _snapshot(store.session_dir(session.id)) == files_before


def test_touch_unknown_session(store) -> None:
    with pytest.raises(SessionNotFoundError):
        store.touch("6f1c1d2e-3a4b-4c5d-8e9f-0a1b2c3d4e5f")


def test_list_sessions_filters_by_owner_and_sorts_by_recency(store, clock) -> None:
    older = store.create_session("42")
    store.append_turn(older.id, "a question that is definitely longer than thirty characters", "x")
    clock.now += 10
    newer = store.create_session(42)
    store.create_session("someone-else")

    summaries = store.list_sessions("42")

    assert [s.id for s in summaries] == [newer.id, older.id]
    assert summaries[1].turn_count == 1
    assert summaries[1].image_count == 0
    assert summaries[1].input_preview == "a question that is definitely ..."
    assert summaries[0].input_preview == ""


def test_delete_session(store) -> None:
    session = store.create_session("42")

    assert store.delete_session(session.id) is True
    assert store.delete_session(session.id) is False
    assert store.delete_session("garbage") is False
    assert store.get_session(session.id) is None


def test_expire_if_idle_boundary(store, clock) -> None:
    session = store.create_session("42")
    created = clock.now

    assert store.expire_if_idle(session.id, 3600, now=created + 3600) == RETAINED
    assert store.session_dir(session.id).exists()
    assert store.expire_if_idle(session.id, 3600, now=created + 3601) == EXPIRED
    assert not store.session_dir(session.id).exists()
    assert store.expire_if_idle(session.id, 3600, now=created + 3601) == MISSING


def test_expire_if_idle_skips_busy_sessions(store, clock) -> None:
    session = store.create_session("42")
    store.locks.acquire(session.id)
    try:
        assert store.expire_if_idle(session.id, 0, now=clock.now + 10_000) == BUSY
    finally:
        store.locks.release(session.id)
    assert store.session_dir(session.id).exists()


def test_reclaim_orphans_respects_grace_period(store, clock) -> None:
    live = store.create_session("42")
    old_staging = store.root / ".staging-deadbeef"
    new_staging = store.root / ".staging-cafebabe"
    unmanaged = store.root / "6f1c1d2e-3a4b-4c5d-8e9f-0a1b2c3d4e5f"
    for d in (old_staging, new_staging, unmanaged):
        d.mkdir()
    old = clock.now - 7200
    os.utime(old_staging, (old, old))
    os.utime(unmanaged, (old, old))
    os.utime(new_staging, (clock.now, clock.now))

    assert store.reclaim_orphans(3600, now=clock.now) == 2

    assert not old_staging.exists()
    assert not unmanaged.exists()
    assert new_staging.exists()
    assert store.get_session(live.id) is not None


def test_session_ids_ignore_hidden_and_foreign_entries(store) -> None:
    session = store.create_session("42")
    (store.root / ".staging-1234").mkdir()
    (store.root / "README").write_text("x")
    (store.root / "not-a-session").mkdir()

    assert store.session_ids() == [session.id]


def test_transient_write_failure_is_retried_once(store, monkeypatch) -> None:
    session = store.create_session("42")
    real_write = workspace.atomic_write_json
    calls = {"n": 0}

    def flaky(path, payload):
        calls["n"] += 1
        if calls["n"] == 1:
            raise OSError("disk hiccup")
        return real_write(path, payload)

    monkeypatch.setattr(workspace, "atomic_write_json", flaky)
    store.touch(session.id)
    assert calls["n"] == 2


def test_persistent_write_failure_becomes_storage_error(store, monkeypatch) -> None:
    session = store.create_session("42")

    def broken(path, payload):
        raise OSError("read-only file system")

    monkeypatch.setattr(workspace, "atomic_write_json", broken)
    with pytest.raises(StorageError) as excinfo:
        store.touch(session.id)
    assert excinfo.value.retryable is True


def test_stores_sharing_a_lock_table_see_each_others_locks(tmp_path, clock) -> None:
    shared = KeyedLocks()
    writer = FileSessionStore(tmp_path / "sessions", locks=shared, clock=clock)
    sweeper = FileSessionStore(tmp_path / "sessions", locks=shared, clock=clock)
    session = writer.create_session("42")

    assert writer.locks is shared
    assert sweeper.locks is shared
    with writer.locks.hold(session.id):
        assert sweeper.expire_if_idle(session.id, 0, now=clock.now + 10) == BUSY
        assert writer.expire_if_idle(session.id, 0, now=clock.now + 10) == BUSY
    assert writer.session_dir(session.id).exists()


def _failing_reads(monkeypatch, filename: str, failures: int):
    real_read_text = Path.read_text
    calls = {"n": 0}

    def read_text(self, *args, **kwargs):
        if self.name == filename and calls["n"] < failures:
            calls["n"] += 1
            raise OSError(errno.EIO, "Input/output error")
        return real_read_text(self, *args, **kwargs)

    monkeypatch.setattr(Path, "read_text", read_text)
    return calls


def test_transient_read_failure_is_retried(store, monkeypatch) -> None:
    session = store.create_session("42")
    calls = _failing_reads(monkeypatch, META_FILENAME, failures=1)

    loaded = store.get_session(session.id)

    assert loaded is not None
    assert loaded.id == session.id
    assert calls["n"] == 1


def test_persistent_read_failure_is_a_storage_error_not_absence(store, monkeypatch) -> None:
    session = store.create_session("42")
    _failing_reads(monkeypatch, META_FILENAME, failures=100)

    with pytest.raises(StorageError) as excinfo:
        store.get_session(session.id)
    assert not isinstance(excinfo.value, SessionNotFoundError)
    assert excinfo.value.retryable is True


def test_unreadable_manifest_during_append_is_a_storage_error(store, monkeypatch) -> None:
    session = store.create_session("42")
    _failing_reads(monkeypatch, MANIFEST_FILENAME, failures=100)

    with pytest.raises(StorageError) as excinfo:
        store.append_turn(session.id, "q", "a")
    assert excinfo.value.code == "STORAGE_ERROR"
