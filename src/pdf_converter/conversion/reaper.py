import asyncio
import logging
import time
from pathlib import Path
from typing import TYPE_CHECKING, Callable

from .files import remove_quietly
from .interfaces import ScratchLayout
from .registry import ArtifactRegistry

if TYPE_CHECKING:
    from .service import UploadSessions

logger = logging.getLogger(__name__)


class ScratchReaper:
    """Deletes scratch entries older than ``max_age`` seconds.

    This is the upper bound for every temporary file the service creates:
    abandoned chunk directories, assembled artifacts, persisted uploads,
    generated documents and rasterizer working directories.
    """

    def __init__(
        self,
        scratch: ScratchLayout,
        *,
        max_age: float,
        interval: float,
        registry: ArtifactRegistry | None = None,
        sessions: "UploadSessions | None" = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._scratch = scratch
        self._max_age = max_age
        self._interval = interval
        self._registry = registry
        self._sessions = sessions
        self._clock = clock
        self._task: asyncio.Task | None = None

    def _candidates(self) -> list[Path]:
        found: list[Path] = []
        for namespace in self._scratch.namespaces():
            if namespace.is_dir():
                found.extend(namespace.iterdir())
        if self._scratch.root.is_dir():
            found.extend(self._scratch.root.glob(f"{ScratchLayout.work_prefix}*"))
        return found

    def sweep(self) -> int:
        cutoff = self._clock() - self._max_age
        removed = 0
        for path in self._candidates():
            try:
                mtime = path.stat().st_mtime
            except FileNotFoundError:
                continue
            if mtime <= cutoff and remove_quietly(path):
                removed += 1
        if self._registry is not None:
            self._registry.purge_expired()
        if self._sessions is not None:
            self._sessions.expire(self._max_age)
        if removed:
            logger.info("Reaped %d stale scratch entr%s", removed, "y" if removed == 1 else "ies")
        return removed

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            try:
                await asyncio.to_thread(self.sweep)
            except Exception:
                logger.exception("Scratch sweep failed")

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
