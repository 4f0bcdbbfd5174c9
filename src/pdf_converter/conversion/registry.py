import logging
import threading
import time
from collections import OrderedDict
from pathlib import Path
from typing import Callable

from .errors import MissingArtifactError

logger = logging.getLogger(__name__)


class ArtifactRegistry:
    """In-memory map from registry key to an assembled artifact's path.

    Entries live for at most ``ttl_seconds`` and at most ``capacity`` entries
    are kept; the least recently used entry is evicted first. Nothing survives
    a process restart. A key whose file no longer exists resolves to ``None``.
    """

    def __init__(
        self,
        *,
        capacity: int = 1024,
        ttl_seconds: float = 3600.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self._capacity = capacity
        self._ttl = ttl_seconds
        self._clock = clock
        self._entries: "OrderedDict[str, tuple[Path, float]]" = OrderedDict()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def register(self, key: str, path: Path) -> None:
        expires_at = self._clock() + self._ttl
        with self._lock:
            self._entries[key] = (Path(path), expires_at)
            self._entries.move_to_end(key)
            while len(self._entries) > self._capacity:
                evicted, _ = self._entries.popitem(last=False)
                logger.info("Evicted artifact %s (capacity %d)", evicted, self._capacity)

    def resolve(self, key: str) -> Path | None:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            path, expires_at = entry
            if expires_at <= now:
                del self._entries[key]
                return None
            self._entries.move_to_end(key)
        # Existence is checked outside the lock; a vanished file forgets the key.
        if not path.is_file():
            self.forget(key, path)
            return None
        return path

    def require(self, key: str) -> Path:
        path = self.resolve(key)
        if path is None:
            raise MissingArtifactError(f"Missing assembled file for key: {key}")
        return path

    def forget(self, key: str, path: Path | None = None) -> None:
        """Drop ``key``; when ``path`` is given only drop it if it still maps there."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return
            if path is None or entry[0] == path:
                del self._entries[key]

    def purge_expired(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [k for k, (_, exp) in self._entries.items() if exp <= now]
            for key in expired:
                del self._entries[key]
        return len(expired)
