import io
import logging
import math
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Callable, Sequence

from PIL import Image, ImageOps
from reportlab.lib.utils import ImageReader
from reportlab.pdfgen import canvas

from .errors import ConversionCancelled, ConversionError, ConverterError, PayloadTooLargeError, ValidationError
from .files import safe_filename
from .layout import compute_placement, normalize_orientation, normalize_page_size
from .registry import ArtifactRegistry

logger = logging.getLogger(__name__)

DEFAULT_QUALITY = 80
DEFAULT_DOCUMENT_NAME = "images.pdf"
DEFAULT_MAX_DOCUMENT_BYTES = 200 * 1024 * 1024


@dataclass(frozen=True)
class ImageSource:
    """One input image: an uploaded stream or a registry key."""

    name: str
    stream: BinaryIO | None = None
    key: str | None = None


@dataclass(frozen=True)
class ImageToPdfRequest:
    sources: Sequence[ImageSource]
    page_size: str = "auto"
    orientation: str = "portrait"
    margin: float = 0.0
    quality: int = DEFAULT_QUALITY
    output_name: str = DEFAULT_DOCUMENT_NAME

    @classmethod
    def parse(
        cls,
        sources: Sequence[ImageSource],
        *,
        page_size: str | None = None,
        orientation: str | None = None,
        margin: str | float | None = None,
        quality: str | int | None = None,
        output_name: str | None = None,
    ) -> "ImageToPdfRequest":
        """Build a request from loosely typed form values, validating each one."""
        if not sources:
            raise ValidationError("No images uploaded")
        margin_value = _parse_number(margin, "margin", default=0.0)
        if margin_value < 0:
            raise ValidationError("margin must be zero or positive")
        quality_value = _parse_number(quality, "quality", default=DEFAULT_QUALITY)
        if quality_value != int(quality_value) or not 1 <= quality_value <= 100:
            raise ValidationError("quality must be an integer between 1 and 100")
        return cls(
            sources=list(sources),
            page_size=normalize_page_size(page_size),
            orientation=normalize_orientation(orientation),
            margin=margin_value,
            quality=int(quality_value),
            output_name=safe_filename(output_name, DEFAULT_DOCUMENT_NAME),
        )


def _parse_number(raw: str | float | int | None, name: str, *, default: float) -> float:
    if raw is None or (isinstance(raw, str) and not raw.strip()):
        return float(default)
    try:
        value = float(raw)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"{name} must be a number") from e
    if not math.isfinite(value):
        raise ValidationError(f"{name} must be a finite number")
    return value


class ImageToDocumentPipeline:
    """Composes images into a PDF, one page per image, in input order.

    reportlab holds every page's image data until the document is saved, so the
    encoded images of one document may total at most ``max_document_bytes``.
    """

    def __init__(self, registry: ArtifactRegistry, *, max_document_bytes: int = DEFAULT_MAX_DOCUMENT_BYTES) -> None:
        self._registry = registry
        self._max_document_bytes = max_document_bytes

    def build(
        self,
        request: ImageToPdfRequest,
        destination: Path,
        cancelled: Callable[[], bool] | None = None,
    ) -> int:
        """Write the document to ``destination`` and return its page count.

        Nothing is left at ``destination`` when any page fails.
        """
        if not request.sources:
            raise ValidationError("No images uploaded")
        # Resolve every key before decoding anything so a bad key fails fast.
        inputs = [self._resolve(source) for source in request.sources]

        pdf = canvas.Canvas(str(destination), pageCompression=1)
        pdf.setCreator("pdf-converter-service")
        pdf.setTitle(Path(request.output_name).stem)
        held = 0
        try:
            for position, (name, handle) in enumerate(inputs, start=1):
                if cancelled is not None and cancelled():
                    raise ConversionCancelled("client disconnected; conversion abandoned")
                jpeg, width, height = self._encode(name, handle, request.quality)
                held += len(jpeg)
                if held > self._max_document_bytes:
                    raise PayloadTooLargeError(
                        f"document exceeds {self._max_document_bytes} bytes of encoded images at page {position}"
                    )
                placement = compute_placement(
                    request.page_size, request.orientation, request.margin, width, height
                )
                pdf.setPageSize((placement.page_width, placement.page_height))
                pdf.drawImage(
                    ImageReader(io.BytesIO(jpeg)),
                    placement.x,
                    placement.bottom_left_y,
                    width=placement.draw_width,
                    height=placement.draw_height,
                )
                pdf.showPage()
                logger.debug("Added page %d from %s (%dx%d)", position, name, width, height)
            pdf.save()
        except ConverterError:
            destination.unlink(missing_ok=True)
            raise
        except Exception as e:
            destination.unlink(missing_ok=True)
            raise ConversionError(f"Image to PDF conversion failed: {e}") from e
        return len(inputs)

    def _resolve(self, source: ImageSource) -> tuple[str, BinaryIO | Path]:
        if source.key is not None:
            return source.name, self._registry.require(source.key)
        if source.stream is None:
            raise ValidationError(f"image '{source.name}' has no content")
        return source.name, source.stream

    @staticmethod
    def _encode(name: str, handle: BinaryIO | Path, quality: int) -> tuple[bytes, int, int]:
        """Decode, apply EXIF orientation and re-encode as JPEG at ``quality``."""
        try:
            with Image.open(handle) as opened:
                img = ImageOps.exif_transpose(opened)
                width, height = img.size
                if img.mode in ("RGBA", "LA") or (img.mode == "P" and "transparency" in img.info):
                    rgba = img.convert("RGBA")
                    flattened = Image.new("RGB", rgba.size, (255, 255, 255))
                    flattened.paste(rgba, mask=rgba.getchannel("A"))
                    img = flattened
                elif img.mode != "RGB":
                    img = img.convert("RGB")
                buf = io.BytesIO()
                img.save(buf, format="JPEG", quality=quality)
        except (OSError, ValueError, Image.DecompressionBombError) as e:
            raise ConversionError(f"could not decode image '{name}': {e}") from e
        return buf.getvalue(), width, height
