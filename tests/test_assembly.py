from __future__ import annotations

import io
import itertools
from pathlib import Path

import pytest

from pdf_converter.conversion import (
    AlreadyAssembledError,
    ConversionService,
    NoChunksError,
    PayloadTooLargeError,
    UploadInProgressError,
    UploadState,
    ValidationError,
)
from pdf_converter.conversion.adapters import LocalChunkStore
from pdf_converter.conversion.files import ordering_key


def _put(service: ConversionService, upload_id: str, index: str, data: bytes) -> None:
    service.put_chunk(upload_id, index, io.BytesIO(data))


def test_chunks_sort_numerically_not_lexicographically(service: ConversionService) -> None:
    for index, data in [("2", b"BB"), ("10", b"CC"), ("1", b"AA")]:
        _put(service, "up1", index, data)

    key = service.assemble("up1", "file.bin")

    assert service.registry.require(key).read_bytes() == b"AABBCC"


def test_non_integer_indices_sort_after_integers(tmp_path: Path) -> None:
    store = LocalChunkStore(tmp_path)
    for index in ["b", "10", "a", "9"]:
        store.put_chunk("u", index, io.BytesIO(index.encode()), max_bytes=100)

    names = [p.name for p in store.list_chunks("u")]

    assert names == ["chunk_9", "chunk_10", "chunk_a", "chunk_b"]


@pytest.mark.parametrize("order", list(itertools.permutations(range(4))))
def test_arrival_order_does_not_change_artifact(service: ConversionService, order: tuple[int, ...]) -> None:
    pieces = [b"alpha-", b"beta-", b"gamma-", b"delta"]
    upload_id = "perm" + "".join(map(str, order))
    for i in order:
        _put(service, upload_id, str(i), pieces[i])

    key = service.assemble(upload_id, "f.txt")

    assert service.registry.require(key).read_bytes() == b"".join(pieces)


def test_repeat_index_overwrites(service: ConversionService) -> None:
    _put(service, "dup", "0", b"first")
    _put(service, "dup", "0", b"second")

    key = service.assemble("dup", "f.txt")

    assert service.registry.require(key).read_bytes() == b"second"


def test_registry_key_is_derived_from_upload_and_filename(service: ConversionService) -> None:
    _put(service, "abc", "0", b"x")

    key = service.assemble("abc", "../../etc/photo.png")

    assert key == "abc__photo.png"
    artifact = service.registry.require(key)
    assert artifact.parent == service.scratch.assembled_uploads
    assert artifact.name.endswith("_photo.png")


def test_assembly_removes_chunk_directory(service: ConversionService) -> None:
    _put(service, "clean", "0", b"x")
    chunk_dir = service.scratch.upload_chunks / "clean"
    assert chunk_dir.is_dir()

    service.assemble("clean", "f")

    assert not chunk_dir.exists()
    assert service.sessions.state("clean") == UploadState.PURGED


def test_assemble_without_chunks_creates_nothing(service: ConversionService) -> None:
    with pytest.raises(NoChunksError):
        service.assemble("empty", "f.bin")

    assert list(service.scratch.assembled_uploads.iterdir()) == []
    assert len(service.registry) == 0
    assert service.sessions.state("empty") == UploadState.PENDING


def test_second_assemble_is_rejected(service: ConversionService) -> None:
    _put(service, "once", "0", b"x")
    service.assemble("once", "f")

    with pytest.raises(AlreadyAssembledError):
        service.assemble("once", "f")
    with pytest.raises(AlreadyAssembledError):
        _put(service, "once", "1", b"late")


def test_failed_assembly_can_be_retried(service: ConversionService) -> None:
    with pytest.raises(NoChunksError):
        service.assemble("retry", "f")
    _put(service, "retry", "0", b"ok")

    key = service.assemble("retry", "f")

    assert service.registry.require(key).read_bytes() == b"ok"


def test_oversized_chunk_leaves_no_partial_file(service: ConversionService) -> None:
    too_big = b"x" * (service.settings.max_upload_bytes + 1)

    with pytest.raises(PayloadTooLargeError):
        _put(service, "big", "0", too_big)

    chunk_dir = service.scratch.upload_chunks / "big"
    assert list(chunk_dir.iterdir()) == []


@pytest.mark.parametrize("upload_id,index", [("../evil", "0"), ("ok", "../0"), ("", "0"), ("ok", "")])
def test_path_unsafe_identifiers_are_rejected(service: ConversionService, upload_id: str, index: str) -> None:
    with pytest.raises(ValidationError):
        _put(service, upload_id, index, b"x")


def test_only_plain_digits_sort_as_integers() -> None:
    tokens = ["1_0", "10", "2", "-1", "a"]

    assert sorted(tokens, key=ordering_key) == ["-1", "2", "10", "1_0", "a"]


def test_assemble_is_refused_while_a_chunk_is_being_written(service: ConversionService) -> None:
    _put(service, "busy", "0", b"AA")
    refused: list[UploadInProgressError] = []

    class _AssembleMidWrite(io.BytesIO):
        def read(self, size: int | None = -1) -> bytes:
            if not refused:
                with pytest.raises(UploadInProgressError) as exc_info:
                    service.assemble("busy", "f.bin")
                refused.append(exc_info.value)
            return super().read(size)

    service.put_chunk("busy", "1", _AssembleMidWrite(b"BB"))

    assert refused
    assert service.sessions.state("busy") == UploadState.PENDING
    key = service.assemble("busy", "f.bin")
    assert service.registry.require(key).read_bytes() == b"AABB"
