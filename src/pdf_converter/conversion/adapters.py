import logging
import os
import secrets
import shutil
import subprocess
from pathlib import Path
from typing import BinaryIO, Sequence

from .errors import ConverterError, ProcessTimeoutError, SpawnError, StorageError
from .files import copy_limited, ordering_key, remove_quietly, require_token
from .interfaces import ChunkStorage, ProcessGateway

logger = logging.getLogger(__name__)

CHUNK_PREFIX = "chunk_"


class LocalChunkStore(ChunkStorage):
    """Stores chunks as ``<base>/<upload_id>/chunk_<index>``."""

    def __init__(self, base_dir: Path) -> None:
        self._base = Path(base_dir).resolve()

    def session_dir(self, upload_id: str) -> Path:
        return self._base / require_token(upload_id, "uploadId")

    def put_chunk(self, upload_id: str, index: str, source: BinaryIO, *, max_bytes: int) -> Path:
        index = require_token(index, "chunkIndex")
        session_dir = self.session_dir(upload_id)
        target = session_dir / f"{CHUNK_PREFIX}{index}"
        # Hidden temp name never matches CHUNK_PREFIX, so listings skip it.
        tmp = session_dir / f".{CHUNK_PREFIX}{index}.{secrets.token_hex(4)}.part"
        try:
            session_dir.mkdir(parents=True, exist_ok=True)
            with tmp.open("wb") as f_out:
                copy_limited(source, f_out, max_bytes)
            os.replace(tmp, target)
        except ConverterError:
            tmp.unlink(missing_ok=True)
            raise
        except OSError as e:
            tmp.unlink(missing_ok=True)
            raise StorageError(f"could not store chunk {index} of upload {upload_id}: {e}") from e
        logger.debug("Stored chunk %s for upload %s", index, upload_id)
        return target

    def list_chunks(self, upload_id: str) -> list[Path]:
        session_dir = self.session_dir(upload_id)
        if not session_dir.is_dir():
            return []
        parts = [p for p in session_dir.iterdir() if p.name.startswith(CHUNK_PREFIX) and p.is_file()]
        return sorted(parts, key=lambda p: ordering_key(p.name[len(CHUNK_PREFIX):]))

    def discard(self, upload_id: str) -> None:
        session_dir = self.session_dir(upload_id)
        for part in self.list_chunks(upload_id):
            remove_quietly(part)
        try:
            session_dir.rmdir()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning("Could not remove chunk directory %s: %s", session_dir, e)


class SubprocessInvoker(ProcessGateway):
    """Runs external executables with a mandatory timeout.

    Output is discarded; callers interpret the files a tool produces, not
    what it prints.
    """

    def which(self, executable: str) -> str | None:
        found = shutil.which(executable)
        if found:
            logger.debug("Detected external tool: %s -> %s", executable, found)
        return found

    def probe(self, executable: str, args: Sequence[str] = ("-v",), *, timeout: float = 10.0) -> bool:
        if self.which(executable) is None:
            logger.info("External tool %s not found on PATH", executable)
            return False
        try:
            status = self.run(executable, args, timeout=timeout)
        except SpawnError as e:
            logger.info("Probe of %s failed: %s", executable, e)
            return False
        return status == 0

    def run(self, executable: str, args: Sequence[str], *, timeout: float) -> int:
        command = [executable, *args]
        logger.debug("Executing command: %s", " ".join(command))
        try:
            completed = subprocess.run(
                command,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
                timeout=timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as e:
            # subprocess.run kills the child before re-raising.
            raise ProcessTimeoutError(f"{executable} did not finish within {timeout:g}s") from e
        except OSError as e:
            raise SpawnError(f"could not start {executable}: {e}") from e
        if completed.returncode != 0:
            logger.debug(
                "Command %s exited with %s: %s",
                executable,
                completed.returncode,
                completed.stderr.decode("utf-8", "replace").strip(),
            )
        return completed.returncode
