from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from .workspace import BUSY, EXPIRED, SessionStore

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    expired_sessions: int = 0
    busy_sessions: int = 0
    orphans_removed: int = 0
    temp_files_removed: int = 0
    errors: int = 0

    @property
    def reclaimed(self) -> int:
        return self.expired_sessions + self.orphans_removed + self.temp_files_removed


class JanitorTask:
    """Periodic sweep of idle sessions and stale render artifacts.

    The sweep itself is synchronous filesystem work and runs in a worker
    thread; the loop never lets an error escape into request handling.
    """

    def __init__(
        self,
        store: SessionStore,
        temp_dir: Path,
        *,
        expiry_seconds: float,
        interval_seconds: float = 600.0,
        temp_grace_seconds: float = 3600.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.temp_dir = Path(temp_dir)
        self.expiry_seconds = expiry_seconds
        self.interval_seconds = interval_seconds
        self.temp_grace_seconds = temp_grace_seconds
        self._clock = clock
        self._task: Optional[asyncio.Task] = None

    def sweep_once(self, now: Optional[float] = None) -> SweepReport:
        now = self._clock() if now is None else now
        report = SweepReport()

        for session_id in self.store.session_ids():
            try:
                outcome = self.store.expire_if_idle(session_id, self.expiry_seconds, now=now)
            except OSError:
                # Partial delete; whatever is left is retried next cycle.
                report.errors += 1
                logger.exception("Failed to expire session %s", session_id)
                continue
            if outcome == EXPIRED:
                report.expired_sessions += 1
                logger.info("Expired idle session %s", session_id)
            elif outcome == BUSY:
                report.busy_sessions += 1

        try:
            report.orphans_removed = self.store.reclaim_orphans(self.temp_grace_seconds, now=now)
        except OSError:
            report.errors += 1
            logger.exception("Failed to reclaim orphaned session directories")

        report.temp_files_removed = self._sweep_temp(now, report)
        self.store.locks.prune()

        if report.reclaimed or report.errors:
            logger.info(
                "Sweep finished: %d expired, %d orphans, %d temp files, %d busy, %d errors",
                report.expired_sessions,
                report.orphans_removed,
                report.temp_files_removed,
                report.busy_sessions,
                report.errors,
            )
        return report

    def _sweep_temp(self, now: float, report: SweepReport) -> int:
        if not self.temp_dir.is_dir():
            return 0
        removed = 0
        for child in self.temp_dir.iterdir():
            try:
                if not child.is_file():
                    continue
                if now - child.stat().st_mtime <= self.temp_grace_seconds:
                    continue
                child.unlink()
                removed += 1
            except FileNotFoundError:
                continue
            except OSError:
                report.errors += 1
                logger.exception("Failed to remove temp file %s", child.name)
        return removed

    async def run_forever(self) -> None:
        while True:
            try:
                await asyncio.to_thread(self.sweep_once)
            except Exception:
                logger.exception("Janitor sweep crashed; retrying next cycle")
            await asyncio.sleep(self.interval_seconds)

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run_forever(), name="mdimg-janitor")
        return self._task

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
