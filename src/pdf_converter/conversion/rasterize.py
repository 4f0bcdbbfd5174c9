import logging
import secrets
import tempfile
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Iterator

from .archive import iter_zip
from .errors import RasterizationError, SpawnError, UnavailableError, ValidationError
from .files import copy_limited, page_ordering_key, remove_quietly, safe_filename
from .interfaces import ProcessGateway, ScratchLayout
from .registry import ArtifactRegistry

logger = logging.getLogger(__name__)

DEFAULT_ARCHIVE_NAME = "images.zip"


class RasterizerCapability:
    """Cached availability of the external page rasterizer.

    Probed once at startup; a negative result is re-probed on the next
    request, and a spawn failure during use drops the cached positive result.
    """

    def __init__(self, invoker: ProcessGateway, executable: str = "pdftoppm", *, probe_timeout: float = 10.0) -> None:
        self._invoker = invoker
        self.executable = executable
        self._probe_timeout = probe_timeout
        self._available: bool | None = None
        self._lock = threading.Lock()

    def probe(self) -> bool:
        available = self._invoker.probe(self.executable, ("-v",), timeout=self._probe_timeout)
        with self._lock:
            self._available = available
        if available:
            logger.info("Rasterizer %s is available", self.executable)
        else:
            logger.warning("Rasterizer %s is not available", self.executable)
        return available

    def ensure_available(self) -> None:
        with self._lock:
            cached = self._available
        if cached is not True and not self.probe():
            raise UnavailableError(
                f"Server requires `{self.executable}` (Poppler). "
                "Please install poppler-utils (pdftoppm)."
            )

    def invalidate(self) -> None:
        with self._lock:
            self._available = None


@dataclass
class PdfToImagesRequest:
    name: str
    stream: BinaryIO | None = None
    key: str | None = None
    output_name: str = DEFAULT_ARCHIVE_NAME

    @classmethod
    def parse(
        cls,
        *,
        stream: BinaryIO | None,
        filename: str | None,
        temp_keys: str | None,
        output_name: str | None = None,
    ) -> "PdfToImagesRequest":
        archive_name = safe_filename(output_name, DEFAULT_ARCHIVE_NAME)
        if temp_keys is not None and temp_keys.strip():
            keys = [k.strip() for k in temp_keys.split(",") if k.strip()]
            if not keys:
                raise ValidationError("No tempKeys provided")
            return cls(name=keys[0], key=keys[0], output_name=archive_name)
        if stream is None:
            raise ValidationError("No PDF uploaded")
        return cls(name=safe_filename(filename, "upload.pdf"), stream=stream, output_name=archive_name)


@dataclass
class RasterizedPages:
    work_dir: Path
    pages: list[Path]

    def entries(self) -> list[tuple[str, Path]]:
        return [(f"page_{i}{page.suffix}", page) for i, page in enumerate(self.pages, start=1)]

    def cleanup(self) -> None:
        remove_quietly(self.work_dir)

    def iter_archive(self) -> Iterator[bytes]:
        """Stream the pages as a zip; the working directory goes away afterwards."""
        return iter_zip(self.entries(), on_close=self.cleanup)


class RasterizationPipeline:
    """Turns a PDF into one PNG per page using an external rasterizer."""

    def __init__(
        self,
        registry: ArtifactRegistry,
        invoker: ProcessGateway,
        capability: RasterizerCapability,
        scratch: ScratchLayout,
        *,
        dpi: int = 150,
        timeout: float = 120.0,
        max_upload_bytes: int = 50 * 1024 * 1024,
    ) -> None:
        self._registry = registry
        self._invoker = invoker
        self._capability = capability
        self._scratch = scratch
        self._dpi = dpi
        self._timeout = timeout
        self._max_upload_bytes = max_upload_bytes

    def rasterize(self, request: PdfToImagesRequest) -> RasterizedPages:
        persisted: Path | None = None
        try:
            if request.key is not None:
                pdf_path = self._registry.require(request.key)
            else:
                persisted = pdf_path = self._persist_upload(request)
            self._capability.ensure_available()
            return self._run(pdf_path)
        finally:
            if persisted is not None:
                remove_quietly(persisted)

    def _persist_upload(self, request: PdfToImagesRequest) -> Path:
        if request.stream is None:
            raise ValidationError("No PDF uploaded")
        target_dir = self._scratch.pdf_to_images
        target = target_dir / f"{secrets.token_hex(10)}_{request.name}"
        try:
            target_dir.mkdir(parents=True, exist_ok=True)
            with target.open("wb") as f_out:
                size = copy_limited(request.stream, f_out, self._max_upload_bytes)
        except BaseException:
            target.unlink(missing_ok=True)
            raise
        if size == 0:
            target.unlink(missing_ok=True)
            raise ValidationError(f"File '{request.name}' is empty.")
        return target

    def _run(self, pdf_path: Path) -> RasterizedPages:
        self._scratch.root.mkdir(parents=True, exist_ok=True)
        work_dir = Path(tempfile.mkdtemp(prefix=ScratchLayout.work_prefix, dir=self._scratch.root))
        prefix = work_dir / "page"
        args = ["-png", "-r", str(self._dpi), str(pdf_path), str(prefix)]
        try:
            try:
                status = self._invoker.run(self._capability.executable, args, timeout=self._timeout)
            except SpawnError as e:
                self._capability.invalidate()
                raise RasterizationError(f"PDF to images conversion failed: {e}") from e
            if status != 0:
                raise RasterizationError(
                    f"PDF to images conversion failed: {self._capability.executable} exited with status {status}"
                )
            pages = sorted(
                (p for p in work_dir.iterdir() if p.is_file() and p.suffix.lower() == ".png"),
                key=page_ordering_key,
            )
            if not pages:
                raise RasterizationError("No images generated from PDF")
        except BaseException:
            remove_quietly(work_dir)
            raise
        logger.info("Rasterized %s into %d page(s)", pdf_path.name, len(pages))
        return RasterizedPages(work_dir=work_dir, pages=pages)
