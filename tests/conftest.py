from __future__ import annotations

import io
from pathlib import Path
from typing import Callable, Iterator, Sequence

import pytest
from fastapi.testclient import TestClient
from PIL import Image
from pypdf import PdfReader, PdfWriter

from pdf_converter import webapi
from pdf_converter.conversion import ConversionService, ServiceSettings, SpawnError


def make_image(width: int, height: int, *, mode: str = "RGB", fmt: str = "PNG", color: object = None) -> bytes:
    buf = io.BytesIO()
    fill = color if color is not None else ((200, 30, 30) if mode == "RGB" else (200, 30, 30, 128))
    Image.new(mode, (width, height), fill).save(buf, format=fmt)
    return buf.getvalue()


def make_pdf(pages: int) -> bytes:
    writer = PdfWriter()
    for _ in range(pages):
        writer.add_blank_page(width=200, height=200)
    buf = io.BytesIO()
    writer.write(buf)
    return buf.getvalue()


class FakeRasterizer:
    """Stands in for pdftoppm: writes one PNG per input page, named like pdftoppm does."""

    def __init__(self) -> None:
        self.available = True
        self.exit_status = 0
        self.spawn_error: SpawnError | None = None
        self.produce_pages = True
        self.probes: list[str] = []
        self.runs: list[list[str]] = []

    def probe(self, executable: str, args: Sequence[str] = ("-v",), *, timeout: float = 10.0) -> bool:
        self.probes.append(executable)
        return self.available

    def run(self, executable: str, args: Sequence[str], *, timeout: float) -> int:
        self.runs.append([executable, *args])
        if self.spawn_error is not None:
            raise self.spawn_error
        if self.exit_status != 0:
            return self.exit_status
        pdf_path, prefix = Path(args[-2]), Path(args[-1])
        count = len(PdfReader(str(pdf_path)).pages)
        width = len(str(count))
        if self.produce_pages:
            for number in range(1, count + 1):
                # Distinct sizes let tests tell pages apart.
                Image.new("RGB", (10 + number, 10)).save(f"{prefix}-{number:0{width}d}.png")
        return 0


@pytest.fixture()
def image_factory() -> Callable[..., bytes]:
    return make_image


@pytest.fixture()
def pdf_factory() -> Callable[[int], bytes]:
    return make_pdf


@pytest.fixture()
def rasterizer() -> FakeRasterizer:
    return FakeRasterizer()


@pytest.fixture()
def settings(tmp_path: Path) -> ServiceSettings:
    return ServiceSettings(
        scratch_dir=tmp_path / "scratch",
        max_upload_bytes=2 * 1024 * 1024,
        reaper_interval_sec=3600,
    )


@pytest.fixture()
def service(settings: ServiceSettings, rasterizer: FakeRasterizer) -> ConversionService:
    svc = ConversionService(settings, invoker=rasterizer)
    svc.scratch.ensure()
    return svc


@pytest.fixture()
def client(service: ConversionService) -> Iterator[TestClient]:
    webapi.SERVICE = service
    try:
        with TestClient(webapi.app) as test_client:
            yield test_client
    finally:
        webapi.SERVICE = None
