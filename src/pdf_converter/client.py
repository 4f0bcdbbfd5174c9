"""HTTP client for the converter API.

Large files are sent as numbered chunks, assembled server-side, and then
referenced by their temporary key, so no single request carries the whole
file.
"""

import os
import secrets
from typing import Any, Callable, Iterator, Sequence

import requests

API_PREFIX = "/tools/pdf-converter"
DEFAULT_API_BASE = os.getenv("PDF_CONVERTER_API_BASE", "http://localhost:8080")
DEFAULT_CHUNK_SIZE = 5 * 1024 * 1024


class ClientError(Exception):
    def __init__(self, status_code: int, code: str, message: str) -> None:
        super().__init__(f"{status_code} {code}: {message}")
        self.status_code = status_code
        self.code = code
        self.message = message

    @classmethod
    def from_response(cls, resp: Any) -> "ClientError":
        code, message = "http_error", resp.text
        try:
            detail = resp.json().get("detail")
        except ValueError:
            detail = None
        if isinstance(detail, dict):
            code = str(detail.get("code", code))
            message = str(detail.get("message", message))
        elif isinstance(detail, str):
            message = detail
        return cls(resp.status_code, code, message)


def iter_chunks(data: bytes, chunk_size: int) -> Iterator[bytes]:
    if chunk_size < 1:
        raise ValueError("chunk_size must be positive")
    for start in range(0, len(data), chunk_size):
        yield data[start:start + chunk_size]


class ConverterClient:
    """Thin wrapper over the HTTP API.

    ``session`` may be a ``requests.Session`` or anything exposing the same
    ``post`` signature (for example Starlette's ``TestClient`` with an empty
    ``api_base``).
    """

    def __init__(
        self,
        api_base: str = DEFAULT_API_BASE,
        *,
        session: Any = None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        timeout: float = 60.0,
    ) -> None:
        self._base = api_base.rstrip("/")
        self._session = session if session is not None else requests.Session()
        self._chunk_size = chunk_size
        self._timeout = timeout

    def _post(self, path: str, **kwargs: Any) -> Any:
        url = f"{self._base}{API_PREFIX}{path}"
        try:
            resp = self._session.post(url, timeout=self._timeout, **kwargs)
        except requests.RequestException as e:
            raise ClientError(0, "connection_failed", str(e)) from e
        if not 200 <= resp.status_code < 300:
            raise ClientError.from_response(resp)
        return resp

    def upload(
        self,
        filename: str,
        data: bytes,
        *,
        upload_id: str | None = None,
        progress: Callable[[int, int], None] | None = None,
    ) -> str:
        """Upload ``data`` in chunks, assemble it and return the temporary key."""
        if not data:
            raise ValueError(f"cannot upload empty file {filename!r}")
        upload_id = upload_id or secrets.token_hex(8)
        total = -(-len(data) // self._chunk_size)
        for index, chunk in enumerate(iter_chunks(data, self._chunk_size)):
            self._post(
                "/upload-chunk",
                data={"uploadId": upload_id, "chunkIndex": str(index)},
                files={"chunk": (f"{filename}.part{index}", chunk, "application/octet-stream")},
            )
            if progress is not None:
                progress(index + 1, total)
        resp = self._post("/assemble-upload", json={"uploadId": upload_id, "filename": filename})
        return str(resp.json()["tempKey"])

    def image_to_pdf(
        self,
        temp_keys: Sequence[str],
        *,
        page_size: str = "auto",
        orientation: str = "portrait",
        margin: float = 0,
        quality: int = 80,
        output_name: str = "images.pdf",
    ) -> bytes:
        form = {
            "tempKeys": ",".join(temp_keys),
            "pageSize": page_size,
            "orientation": orientation,
            "margin": str(margin),
            "quality": str(quality),
            "outputName": output_name,
        }
        return self._post("/image-to-pdf", data=form).content

    def pdf_to_images(self, temp_key: str, *, output_name: str = "images.zip") -> bytes:
        form = {"tempKeys": temp_key, "outputName": output_name}
        return self._post("/pdf-to-images", data=form).content
