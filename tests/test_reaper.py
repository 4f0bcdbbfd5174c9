from __future__ import annotations

import asyncio
import io
import os
import time
from pathlib import Path

from pdf_converter.conversion import ConversionService
from pdf_converter.conversion.reaper import ScratchReaper


def _age(path: Path, seconds: float) -> None:
    past = time.time() - seconds
    os.utime(path, (past, past))


def test_sweep_removes_only_stale_entries(service: ConversionService) -> None:
    scratch = service.scratch
    old_artifact = scratch.assembled_uploads / "aaaa_old.pdf"
    new_artifact = scratch.assembled_uploads / "bbbb_new.pdf"
    old_doc = scratch.documents / "old.pdf"
    old_work = scratch.root / "pdf_images_abc"
    old_work.mkdir()
    (old_work / "page-1.png").write_bytes(b"png")
    for path in (old_artifact, new_artifact, old_doc):
        path.write_bytes(b"x")
    for path in (old_artifact, old_doc, old_work):
        _age(path, 7200)

    reaper = ScratchReaper(scratch, max_age=3600, interval=60)

    assert reaper.sweep() == 3
    assert new_artifact.exists()
    assert not old_artifact.exists()
    assert not old_doc.exists()
    assert not old_work.exists()


def test_reaped_artifact_key_resolves_to_not_found(service: ConversionService) -> None:
    service.put_chunk("stale", "0", io.BytesIO(b"data"))
    key = service.assemble("stale", "f.bin")
    _age(service.registry.require(key), 7200)

    service.reaper.sweep()

    assert service.registry.resolve(key) is None


def test_abandoned_chunk_directory_is_swept(service: ConversionService) -> None:
    service.put_chunk("abandoned", "0", io.BytesIO(b"data"))
    chunk_dir = service.scratch.upload_chunks / "abandoned"
    _age(chunk_dir, 7200)

    service.reaper.sweep()

    assert not chunk_dir.exists()


def test_started_reaper_sweeps_until_stopped(service: ConversionService) -> None:
    scratch = service.scratch
    first = scratch.documents / "first.pdf"
    first.write_bytes(b"x")
    _age(first, 7200)
    reaper = ScratchReaper(scratch, max_age=3600, interval=0.01)

    async def scenario() -> Path:
        reaper.start()
        for _ in range(500):
            if not first.exists():
                break
            await asyncio.sleep(0.01)
        await reaper.stop()
        # Let a sweep already handed to a worker thread finish.
        await asyncio.sleep(0.05)

        second = scratch.documents / "second.pdf"
        second.write_bytes(b"x")
        _age(second, 7200)
        await asyncio.sleep(0.1)
        return second

    second = asyncio.run(scenario())

    assert not first.exists()
    assert second.exists()


def test_stop_without_start_is_a_no_op(service: ConversionService) -> None:
    reaper = ScratchReaper(service.scratch, max_age=3600, interval=60)

    asyncio.run(reaper.stop())
