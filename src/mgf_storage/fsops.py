from __future__ import annotations

import errno
import logging
import os
import shutil
import stat
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

logger = logging.getLogger(__name__)

DELETE_BACKOFF_SECONDS: tuple[float, ...] = (0.1, 0.25, 0.5, 1.0, 2.0)
MOVE_RETRY_DELAYS_SECONDS: tuple[float, ...] = (0.0, 0.10, 0.25, 0.50, 1.00)

Sleep = Callable[[float], None]


# ---------------------------------------------------------------------------
# Atomic writes
# ---------------------------------------------------------------------------


def atomic_write_text(path: Path, content: str) -> None:
    """Write *content* to *path* atomically.

    Writes to a temporary file in the same directory, then renames
    (``os.replace``) into place, so readers never observe a partial file.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as tmp_handle:
            tmp_handle.write(content)
            tmp_handle.flush()
            os.fsync(tmp_handle.fileno())
        os.replace(tmp_path, str(path))
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


# ---------------------------------------------------------------------------
# Retrying delete / move
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DeleteOutcome:
    success: bool
    locked: bool = False
    error: str | None = None


def delete_tree_with_retry(
    path: Path,
    *,
    delays: tuple[float, ...] = DELETE_BACKOFF_SECONDS,
    sleep: Sleep = time.sleep,
) -> DeleteOutcome:
    """Recursively delete ``path``, backing off between attempts on OS/permission errors.

    Exhausted retries are reported as ``locked`` rather than raised.
    """
    last_error: OSError | None = None
    for attempt in range(len(delays) + 1):
        if attempt:
            sleep(delays[attempt - 1])
        try:
            if path.is_symlink() or path.is_file():
                path.unlink()
            elif path.exists():
                shutil.rmtree(path)
            return DeleteOutcome(success=True)
        except FileNotFoundError:
            return DeleteOutcome(success=True)
        except OSError as exc:
            last_error = exc
            logger.warning("Delete of %s failed (attempt %d/%d): %s", path, attempt + 1, len(delays) + 1, exc)
    message = str(last_error) if last_error is not None else f"Unable to delete {path}"
    return DeleteOutcome(success=False, locked=True, error=f"{message} (locked; cleanup skipped)")


def unique_destination(directory: Path, name: str) -> Path:
    """Return ``directory/name`` or the first free ``name_1``, ``name_2``, ... sibling."""
    candidate = directory / name
    counter = 1
    while candidate.exists() or candidate.is_symlink():
        candidate = directory / f"{name}_{counter}"
        counter += 1
    return candidate


def move_with_retry(
    source: Path,
    destination: Path,
    *,
    delays: tuple[float, ...] = MOVE_RETRY_DELAYS_SECONDS,
    sleep: Sleep = time.sleep,
) -> tuple[bool, str | None]:
    """Move source -> destination with retries.

    Rename can transiently fail with PermissionError while a sync client or
    scanner holds a handle. Cross-device moves fall back to ``shutil.move``.
    The destination is never overwritten.
    """
    if destination.exists():
        return False, f"Destination already exists: {destination}"
    destination.parent.mkdir(parents=True, exist_ok=True)

    last_exc: OSError | None = None
    for delay in delays:
        if delay:
            sleep(delay)
        try:
            source.rename(destination)
            return True, None
        except OSError as exc:
            last_exc = exc
            err = getattr(exc, "errno", None)
            if err == errno.EXDEV:
                try:
                    shutil.move(str(source), str(destination))
                    return True, None
                except OSError as move_exc:
                    return False, str(move_exc)
            if isinstance(exc, PermissionError) or err in {errno.EACCES, errno.EPERM, errno.EBUSY}:
                logger.warning("Move %s -> %s retrying after: %s", source, destination, exc)
                continue
            return False, str(exc)
    return False, str(last_exc) if last_exc is not None else f"Unable to move {source}"


def copy_tree(source: Path, destination: Path) -> None:
    """Recursively copy ``source`` into ``destination``, overwriting files that already exist."""
    destination.mkdir(parents=True, exist_ok=True)
    shutil.copytree(source, destination, dirs_exist_ok=True)


# ---------------------------------------------------------------------------
# Inspection
# ---------------------------------------------------------------------------


def is_reparse_point(path: Path) -> bool:
    """True for symlinks and (on Windows) junctions or other reparse points."""
    try:
        info = path.lstat()
    except OSError:
        return False
    if stat.S_ISLNK(info.st_mode):
        return True
    attributes = getattr(info, "st_file_attributes", 0)
    return bool(attributes & stat.FILE_ATTRIBUTE_REPARSE_POINT)


@dataclass(frozen=True)
class Measurement:
    item_count: int
    size_bytes: int
    exceeded: bool


def measure_directory(path: Path, *, max_items: int, max_bytes: int) -> Measurement:
    """Count entries and bytes below ``path``, stopping as soon as either limit is passed.

    Reparse points are counted as items but never followed.
    """
    item_count = 0
    size_bytes = 0
    pending = [path]
    while pending:
        current = pending.pop()
        with os.scandir(current) as entries:
            for entry in entries:
                item_count += 1
                if entry.is_symlink():
                    pass
                elif entry.is_dir(follow_symlinks=False):
                    pending.append(Path(entry.path))
                else:
                    size_bytes += entry.stat(follow_symlinks=False).st_size
                if item_count > max_items or size_bytes > max_bytes:
                    return Measurement(item_count=item_count, size_bytes=size_bytes, exceeded=True)
    return Measurement(item_count=item_count, size_bytes=size_bytes, exceeded=False)
