"""Zip archives produced incrementally for streaming responses."""

import logging
import zipfile
from pathlib import Path
from typing import Callable, Iterator, Sequence

logger = logging.getLogger(__name__)

READ_BLOCK = 64 * 1024


class _StreamSink:
    """Write-only, unseekable buffer that ZipFile writes into.

    ZipFile falls back to data descriptors when ``tell``/``seek`` are missing,
    so each entry can be drained as soon as it is written.
    """

    def __init__(self) -> None:
        self._pending = bytearray()

    def write(self, data: bytes) -> int:
        self._pending += data
        return len(data)

    def flush(self) -> None:
        pass

    def drain(self) -> bytes:
        data = bytes(self._pending)
        self._pending.clear()
        return data


def iter_zip(
    entries: Sequence[tuple[str, Path]],
    *,
    on_close: Callable[[], None] | None = None,
) -> Iterator[bytes]:
    """Yield a zip archive of ``(arcname, path)`` entries block by block.

    Files are read lazily; ``on_close`` runs when the archive is finished or
    the consumer stops iterating early.
    """
    sink = _StreamSink()
    try:
        with zipfile.ZipFile(sink, "w", compression=zipfile.ZIP_DEFLATED) as archive:
            for arcname, path in entries:
                info = zipfile.ZipInfo.from_file(path, arcname)
                info.compress_type = zipfile.ZIP_DEFLATED
                with path.open("rb") as src, archive.open(info, "w") as dst:
                    while True:
                        block = src.read(READ_BLOCK)
                        if not block:
                            break
                        dst.write(block)
                        data = sink.drain()
                        if data:
                            yield data
                data = sink.drain()
                if data:
                    yield data
        # Central directory is written when the ZipFile closes.
        data = sink.drain()
        if data:
            yield data
    finally:
        if on_close is not None:
            try:
                on_close()
            except Exception:
                logger.warning("Archive cleanup callback failed", exc_info=True)
