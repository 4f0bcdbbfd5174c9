"""Filesystem helpers shared by the chunk store and the pipelines."""

import logging
import re
import shutil
from pathlib import Path
from typing import BinaryIO

from .errors import PayloadTooLargeError, ValidationError

logger = logging.getLogger(__name__)

COPY_BLOCK = 1024 * 1024
_TOKEN_RE = re.compile(r"[A-Za-z0-9_-]{1,128}")
_TRAILING_NUMBER_RE = re.compile(r"(\d+)$")
_INTEGER_RE = re.compile(r"-?[0-9]+")


def ordering_key(token: str) -> tuple[int, int, str]:
    """Sort integers numerically, then everything else lexicographically.

    "2" < "10" < "a"; plain string sorting would put "10" before "2".
    """
    # int() alone would also accept "1_0" and " 7".
    if _INTEGER_RE.fullmatch(token):
        return (0, int(token), token)
    return (1, 0, token)


def page_ordering_key(path: Path) -> tuple[int, int, str]:
    """Order rasterizer output (``page-1.png``, ``page-01.png``) by page number."""
    match = _TRAILING_NUMBER_RE.search(path.stem)
    return ordering_key(match.group(1) if match else path.stem)


def require_token(value: str | None, field: str) -> str:
    """Validate an identifier that becomes part of a scratch path."""
    token = (value or "").strip()
    if not token:
        raise ValidationError(f"{field} is required")
    if not _TOKEN_RE.fullmatch(token):
        raise ValidationError(f"{field} may only contain letters, digits, '-' and '_' (max 128)")
    return token


def safe_filename(filename: str | None, default: str) -> str:
    """Return a filesystem-safe basename derived from user input."""
    if not filename:
        return default
    candidate = Path(filename.replace("\\", "/")).name.strip()
    candidate = candidate.replace('"', "").replace("\r", "").replace("\n", "")
    if candidate in {"", ".", ".."}:
        return default
    return candidate


def copy_limited(source: BinaryIO, destination: BinaryIO, max_bytes: int) -> int:
    """Copy ``source`` into ``destination`` in blocks; refuse more than ``max_bytes``."""
    size = 0
    while True:
        block = source.read(COPY_BLOCK)
        if not block:
            break
        size += len(block)
        if size > max_bytes:
            raise PayloadTooLargeError(f"upload exceeds {max_bytes // (1024 * 1024)} MB")
        destination.write(block)
    return size


def remove_quietly(path: Path) -> bool:
    """Best-effort removal of a file or directory tree; failures are logged."""
    try:
        if path.is_dir() and not path.is_symlink():
            shutil.rmtree(path)
        else:
            path.unlink(missing_ok=True)
        return True
    except OSError as exc:
        logger.warning("Could not remove %s: %s", path, exc)
        return False
