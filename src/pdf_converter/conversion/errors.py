"""Error taxonomy for the conversion domain.

Every error carries the HTTP status and machine-readable code the web layer
reports, so handlers never need to map exception types by hand.
"""


class ConverterError(Exception):
    status_code = 500
    code = "internal_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def as_detail(self) -> dict[str, str]:
        return {"code": self.code, "message": self.message}


class ValidationError(ConverterError):
    """Missing or out-of-range request field."""

    status_code = 400
    code = "invalid_request"


class MissingArtifactError(ConverterError):
    """Registry key unknown, expired, or pointing at a vanished file."""

    status_code = 400
    code = "missing_artifact"


class NoChunksError(ConverterError):
    status_code = 400
    code = "no_chunks"


class AlreadyAssembledError(ConverterError):
    """Upload session is assembling or already assembled."""

    status_code = 409
    code = "already_assembled"


class UploadInProgressError(ConverterError):
    """Assembly requested while a chunk of the same upload is still being written."""

    status_code = 409
    code = "upload_in_progress"


class PayloadTooLargeError(ConverterError):
    status_code = 413
    code = "payload_too_large"


class StorageError(ConverterError):
    status_code = 500
    code = "storage_error"


class UnavailableError(ConverterError):
    """External rasterizer is not installed or not working."""

    status_code = 500
    code = "rasterizer_unavailable"


class RasterizationError(ConverterError):
    status_code = 500
    code = "rasterization_failed"


class ConversionError(ConverterError):
    status_code = 500
    code = "conversion_failed"


class ConversionCancelled(ConversionError):
    # nginx convention for "client closed request"
    status_code = 499
    code = "cancelled"


class SpawnError(ConverterError):
    """External process could not be started."""

    status_code = 500
    code = "spawn_failed"


class ProcessTimeoutError(SpawnError):
    """External process exceeded its time budget and was killed."""
