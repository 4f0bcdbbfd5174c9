import asyncio
import logging
import os
import secrets
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Callable, Iterator

from .adapters import LocalChunkStore, SubprocessInvoker
from .documents import ImageToDocumentPipeline, ImageToPdfRequest
from .errors import AlreadyAssembledError, NoChunksError, StorageError, UploadInProgressError, ValidationError
from .files import remove_quietly, require_token, safe_filename
from .interfaces import ChunkStorage, ProcessGateway, ScratchLayout
from .rasterize import PdfToImagesRequest, RasterizationPipeline, RasterizedPages, RasterizerCapability
from .reaper import ScratchReaper
from .registry import ArtifactRegistry

logger = logging.getLogger(__name__)


class UploadState:
    PENDING = "pending"
    ASSEMBLING = "assembling"
    ASSEMBLED = "assembled"
    PURGED = "purged"


class UploadSessions:
    """Per-upload lifecycle state; every transition happens under one lock."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._states: dict[str, tuple[str, float]] = {}
        self._writers: dict[str, int] = {}
        self._lock = threading.Lock()
        self._clock = clock

    def state(self, upload_id: str) -> str:
        with self._lock:
            entry = self._states.get(upload_id)
        return entry[0] if entry else UploadState.PENDING

    @contextmanager
    def writing(self, upload_id: str) -> Iterator[None]:
        """Hold the session open for one chunk write.

        Assembly is refused while any write is in flight, so a chunk can never
        be listed half-written or discarded after it was accepted.
        """
        with self._lock:
            current = self._states.get(upload_id, (UploadState.PENDING, 0.0))[0]
            if current != UploadState.PENDING:
                raise AlreadyAssembledError(f"upload {upload_id} is already assembled; start a new upload")
            self._writers[upload_id] = self._writers.get(upload_id, 0) + 1
        try:
            yield
        finally:
            with self._lock:
                remaining = self._writers[upload_id] - 1
                if remaining:
                    self._writers[upload_id] = remaining
                else:
                    del self._writers[upload_id]

    def begin_assembly(self, upload_id: str) -> None:
        with self._lock:
            current = self._states.get(upload_id, (UploadState.PENDING, 0.0))[0]
            if current != UploadState.PENDING:
                raise AlreadyAssembledError(f"upload {upload_id} is {current}; assemble must be called once")
            if self._writers.get(upload_id):
                raise UploadInProgressError(
                    f"upload {upload_id} still has chunks being written; retry once every chunk is acknowledged"
                )
            self._states[upload_id] = (UploadState.ASSEMBLING, self._clock())

    def mark(self, upload_id: str, state: str) -> None:
        with self._lock:
            if state == UploadState.PENDING:
                self._states.pop(upload_id, None)
            else:
                self._states[upload_id] = (state, self._clock())

    def expire(self, max_age: float) -> int:
        """Forget finished sessions older than ``max_age`` seconds."""
        cutoff = self._clock() - max_age
        with self._lock:
            stale = [
                k for k, (state, since) in self._states.items()
                if state != UploadState.ASSEMBLING and since <= cutoff
            ]
            for key in stale:
                del self._states[key]
        return len(stale)


def make_registry_key(upload_id: str, filename: str) -> str:
    return f"{upload_id}__{safe_filename(filename, 'upload')}"


class Assembler:
    """Concatenates a session's chunks, in order, into one durable artifact."""

    def __init__(
        self,
        chunks: ChunkStorage,
        sessions: UploadSessions,
        registry: ArtifactRegistry,
        output_dir: Path,
    ) -> None:
        self._chunks = chunks
        self._sessions = sessions
        self._registry = registry
        self._output_dir = Path(output_dir)

    def assemble(self, upload_id: str, filename: str) -> str:
        upload_id = require_token(upload_id, "uploadId")
        if not filename or not filename.strip():
            raise ValidationError("uploadId and filename required")
        name = safe_filename(filename, "upload")

        self._sessions.begin_assembly(upload_id)
        try:
            out_file = self._concatenate(upload_id, name)
        except BaseException:
            self._sessions.mark(upload_id, UploadState.PENDING)
            raise

        key = make_registry_key(upload_id, name)
        self._registry.register(key, out_file)
        self._sessions.mark(upload_id, UploadState.ASSEMBLED)
        logger.info("Assembled upload %s into %s", upload_id, out_file.name)

        # The artifact is already durable; chunk cleanup is best-effort.
        self._chunks.discard(upload_id)
        self._sessions.mark(upload_id, UploadState.PURGED)
        return key

    def _concatenate(self, upload_id: str, name: str) -> Path:
        parts = self._chunks.list_chunks(upload_id)
        if not parts:
            raise NoChunksError(f"No chunks found for uploadId {upload_id}")
        out_file = self._output_dir / f"{secrets.token_hex(10)}_{name}"
        tmp = out_file.with_name(f".{out_file.name}.part")
        try:
            self._output_dir.mkdir(parents=True, exist_ok=True)
            with tmp.open("wb") as f_out:
                for part in parts:
                    with part.open("rb") as f_in:
                        while True:
                            block = f_in.read(1024 * 1024)
                            if not block:
                                break
                            f_out.write(block)
            os.replace(tmp, out_file)
        except OSError as e:
            tmp.unlink(missing_ok=True)
            raise StorageError(f"Assemble failed for upload {upload_id}: {e}") from e
        return out_file


@dataclass(frozen=True)
class ServiceSettings:
    scratch_dir: Path
    max_upload_bytes: int = 50 * 1024 * 1024
    max_document_bytes: int = 200 * 1024 * 1024
    raster_dpi: int = 150
    raster_timeout_sec: float = 120.0
    rasterizer_bin: str = "pdftoppm"
    artifact_ttl_sec: float = 3600.0
    artifact_capacity: int = 1024
    scratch_max_age_sec: float = 3600.0
    reaper_interval_sec: float = 300.0


class ConversionService:
    """Core domain service for chunked uploads and document conversion.

    Framework-agnostic: the HTTP layer hands it streams and form values and
    gets back paths, keys, or iterators. Blocking methods are meant to be
    called from a worker thread.
    """

    def __init__(
        self,
        settings: ServiceSettings,
        *,
        invoker: ProcessGateway | None = None,
        chunks: ChunkStorage | None = None,
        registry: ArtifactRegistry | None = None,
    ) -> None:
        self.settings = settings
        self.scratch = ScratchLayout(Path(settings.scratch_dir).resolve())
        self.registry = registry or ArtifactRegistry(
            capacity=settings.artifact_capacity, ttl_seconds=settings.artifact_ttl_sec
        )
        self.sessions = UploadSessions()
        self._chunks = chunks or LocalChunkStore(self.scratch.upload_chunks)
        self._invoker = invoker or SubprocessInvoker()
        self.assembler = Assembler(self._chunks, self.sessions, self.registry, self.scratch.assembled_uploads)
        self.capability = RasterizerCapability(self._invoker, settings.rasterizer_bin)
        self.documents = ImageToDocumentPipeline(self.registry, max_document_bytes=settings.max_document_bytes)
        self.rasterizer = RasterizationPipeline(
            self.registry,
            self._invoker,
            self.capability,
            self.scratch,
            dpi=settings.raster_dpi,
            timeout=settings.raster_timeout_sec,
            max_upload_bytes=settings.max_upload_bytes,
        )
        self.reaper = ScratchReaper(
            self.scratch,
            max_age=settings.scratch_max_age_sec,
            interval=settings.reaper_interval_sec,
            registry=self.registry,
            sessions=self.sessions,
        )

    async def start(self) -> None:
        self.scratch.ensure()
        await asyncio.to_thread(self.capability.probe)
        self.reaper.start()

    async def stop(self) -> None:
        await self.reaper.stop()

    def new_upload_id(self) -> str:
        return secrets.token_hex(8)

    def put_chunk(self, upload_id: str, index: str, source: BinaryIO) -> Path:
        upload_id = require_token(upload_id, "uploadId")
        index = require_token(index, "chunkIndex")
        with self.sessions.writing(upload_id):
            return self._chunks.put_chunk(upload_id, index, source, max_bytes=self.settings.max_upload_bytes)

    def assemble(self, upload_id: str, filename: str) -> str:
        return self.assembler.assemble(upload_id, filename)

    def image_to_pdf(self, request: ImageToPdfRequest, cancelled: Callable[[], bool] | None = None) -> tuple[Path, int]:
        """Build the document into scratch storage; the caller deletes the file."""
        out_dir = self.scratch.documents
        out_dir.mkdir(parents=True, exist_ok=True)
        destination = out_dir / f"{secrets.token_hex(10)}.pdf"
        pages = self.documents.build(request, destination, cancelled)
        return destination, pages

    def pdf_to_images(self, request: PdfToImagesRequest) -> RasterizedPages:
        return self.rasterizer.rasterize(request)

    @staticmethod
    def discard(path: Path) -> None:
        remove_quietly(path)
