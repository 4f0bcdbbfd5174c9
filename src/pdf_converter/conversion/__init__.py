"""
Domain layer for chunked uploads and document conversion.
Provides gateways, the artifact registry, page layout, both conversion
pipelines and a service tying them together, so front-ends (HTTP or others)
can use the same core logic.
"""

from .documents import ImageSource, ImageToDocumentPipeline, ImageToPdfRequest
from .errors import (
    AlreadyAssembledError,
    ConversionCancelled,
    ConversionError,
    ConverterError,
    MissingArtifactError,
    NoChunksError,
    PayloadTooLargeError,
    ProcessTimeoutError,
    RasterizationError,
    SpawnError,
    StorageError,
    UnavailableError,
    UploadInProgressError,
    ValidationError,
)
from .interfaces import ChunkStorage, ProcessGateway, ScratchLayout
from .layout import PAGE_PRESETS, PagePlacement, compute_placement
from .rasterize import PdfToImagesRequest, RasterizationPipeline, RasterizedPages, RasterizerCapability
from .registry import ArtifactRegistry
from .service import Assembler, ConversionService, ServiceSettings, UploadSessions, UploadState
