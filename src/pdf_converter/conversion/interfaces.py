from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Protocol, Sequence


class ChunkStorage(Protocol):
    def put_chunk(self, upload_id: str, index: str, source: BinaryIO, *, max_bytes: int) -> Path:
        """Persist one chunk atomically; a repeat index overwrites."""

    def list_chunks(self, upload_id: str) -> list[Path]:
        """Return the session's chunk files in assembly order."""
        ...

    def discard(self, upload_id: str) -> None:
        ...


class ProcessGateway(Protocol):
    def probe(self, executable: str, args: Sequence[str] = ("-v",), *, timeout: float = 10.0) -> bool:
        """Return True when ``executable`` can be launched and exits cleanly."""
        ...

    def run(self, executable: str, args: Sequence[str], *, timeout: float) -> int:
        """Run to completion and return the exit status.

        Raises SpawnError when the process cannot be started and
        ProcessTimeoutError when ``timeout`` elapses.
        """
        ...


@dataclass(frozen=True)
class ScratchLayout:
    root: Path

    @property
    def upload_chunks(self) -> Path:
        return self.root / "upload_chunks"

    @property
    def assembled_uploads(self) -> Path:
        return self.root / "assembled_uploads"

    @property
    def pdf_to_images(self) -> Path:
        return self.root / "pdf_to_images"

    @property
    def documents(self) -> Path:
        return self.root / "documents"

    # Rasterizer working directories are created directly under root.
    work_prefix = "pdf_images_"

    def namespaces(self) -> tuple[Path, ...]:
        return (self.upload_chunks, self.assembled_uploads, self.pdf_to_images, self.documents)

    def ensure(self) -> None:
        for d in self.namespaces():
            d.mkdir(parents=True, exist_ok=True)
