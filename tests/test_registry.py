from __future__ import annotations

import threading
from pathlib import Path

import pytest

from pdf_converter.conversion import ArtifactRegistry, MissingArtifactError


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def _artifact(tmp_path: Path, name: str) -> Path:
    path = tmp_path / name
    path.write_bytes(b"data")
    return path


def test_unknown_key_is_not_found(tmp_path: Path) -> None:
    registry = ArtifactRegistry()

    assert registry.resolve("never-registered") is None
    with pytest.raises(MissingArtifactError):
        registry.require("never-registered")


def test_registered_key_resolves_to_exact_path(tmp_path: Path) -> None:
    registry = ArtifactRegistry()
    path = _artifact(tmp_path, "a.pdf")

    registry.register("up1__a.pdf", path)

    assert registry.resolve("up1__a.pdf") == path
    assert registry.require("up1__a.pdf") == path


def test_entries_expire_after_ttl(tmp_path: Path) -> None:
    clock = FakeClock()
    registry = ArtifactRegistry(ttl_seconds=60, clock=clock)
    registry.register("k", _artifact(tmp_path, "k"))

    clock.now += 59
    assert registry.resolve("k") is not None
    clock.now += 2
    assert registry.resolve("k") is None
    assert len(registry) == 0


def test_least_recently_used_entry_is_evicted(tmp_path: Path) -> None:
    registry = ArtifactRegistry(capacity=2)
    registry.register("a", _artifact(tmp_path, "a"))
    registry.register("b", _artifact(tmp_path, "b"))
    registry.resolve("a")

    registry.register("c", _artifact(tmp_path, "c"))

    assert registry.resolve("b") is None
    assert registry.resolve("a") is not None
    assert registry.resolve("c") is not None


def test_vanished_file_resolves_to_not_found(tmp_path: Path) -> None:
    registry = ArtifactRegistry()
    path = _artifact(tmp_path, "gone")
    registry.register("gone", path)

    path.unlink()

    assert registry.resolve("gone") is None
    assert len(registry) == 0


def test_purge_expired_counts_removed_entries(tmp_path: Path) -> None:
    clock = FakeClock()
    registry = ArtifactRegistry(ttl_seconds=10, clock=clock)
    registry.register("old", _artifact(tmp_path, "old"))
    clock.now += 20
    registry.register("new", _artifact(tmp_path, "new"))

    assert registry.purge_expired() == 1
    assert registry.resolve("new") is not None


def test_concurrent_register_and_resolve(tmp_path: Path) -> None:
    registry = ArtifactRegistry(capacity=10_000)
    paths = [_artifact(tmp_path, f"f{i}") for i in range(200)]
    errors: list[Exception] = []

    def worker(offset: int) -> None:
        try:
            for i in range(offset, len(paths), 4):
                registry.register(f"k{i}", paths[i])
                assert registry.resolve(f"k{i}") == paths[i]
        except Exception as exc:  # pragma: no cover - surfaced below
            errors.append(exc)

    threads = [threading.Thread(target=worker, args=(n,)) for n in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    assert len(registry) == len(paths)
