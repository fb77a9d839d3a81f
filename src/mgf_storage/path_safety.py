"""Path-segment and containment checks shared by every filesystem-touching component."""

from __future__ import annotations

import logging
import os
import re
from pathlib import Path

from .models import UnsafePathError

logger = logging.getLogger(__name__)

_INVALID_SEGMENT_CHARS = frozenset('<>:"|?*') | frozenset(chr(code) for code in range(32))
_DRIVE_PREFIX_RE = re.compile(r"^[A-Za-z]:")
_SEPARATOR_RE = re.compile(r"[\\/]")


def ensure_safe_segment(segment: str | None, context: str) -> None:
    """Reject a single path segment that could escape or corrupt its parent directory.

    Raises:
        UnsafePathError: On blank values, separators, ``..`` or characters invalid in file names.
    """
    if segment is None or not segment.strip():
        raise UnsafePathError(f"{context} must be a non-empty path segment")
    if "/" in segment or "\\" in segment:
        raise UnsafePathError(f"{context} must not contain path separators: {segment!r}")
    if ".." in segment:
        raise UnsafePathError(f"{context} must not contain '..': {segment!r}")
    bad = sorted({char for char in segment if char in _INVALID_SEGMENT_CHARS})
    if bad:
        raise UnsafePathError(f"{context} contains invalid characters {bad!r}: {segment!r}")


def ensure_safe_relative_path(path: str | None, context: str) -> None:
    """Reject empty, rooted or traversing relative paths."""
    if path is None or not path.strip():
        raise UnsafePathError(f"{context} must be a non-empty relative path")
    if path.startswith(("/", "\\")) or _DRIVE_PREFIX_RE.match(path) or os.path.isabs(path):
        raise UnsafePathError(f"{context} must be relative: {path!r}")
    if any(part == ".." for part in _SEPARATOR_RE.split(path)):
        raise UnsafePathError(f"{context} must not contain '..': {path!r}")


def normalize_path(path: str | os.PathLike[str]) -> str:
    """Absolute, normalized form without a trailing separator (except for a filesystem root)."""
    normalized = os.path.normpath(os.path.abspath(os.fspath(path)))
    stripped = normalized.rstrip("\\/")
    return stripped or normalized


def is_path_under_root(
    root: str | os.PathLike[str],
    target: str | os.PathLike[str],
    *,
    allow_equal: bool = True,
) -> bool:
    """Separator-aware containment: ``/data/p1`` contains ``/data/p1/x`` but not ``/data/p10``."""
    root_norm = os.path.normcase(normalize_path(root))
    target_norm = os.path.normcase(normalize_path(target))
    if target_norm == root_norm:
        return allow_equal
    prefix = root_norm if root_norm.endswith(os.sep) else root_norm + os.sep
    return target_norm.startswith(prefix)


def try_build_folder_relpath(
    root: str | os.PathLike[str],
    target: str | os.PathLike[str],
) -> tuple[bool, str | None, str | None]:
    """Return ``(ok, relpath, error)`` for a target folder expressed relative to a storage root."""
    root_norm = normalize_path(root)
    target_norm = normalize_path(target)
    if not is_path_under_root(root_norm, target_norm):
        return False, None, f"Target path is not under root: {target_norm} (root: {root_norm})"

    relpath = os.path.relpath(target_norm, root_norm)
    if not relpath or relpath == ".":
        return False, None, f"Target path resolves to the root itself: {target_norm}"
    if os.path.isabs(relpath) or relpath.startswith(("/", "\\")):
        return False, None, f"Relative path is rooted: {relpath}"
    if any(part == ".." for part in _SEPARATOR_RE.split(relpath)):
        return False, None, f"Relative path escapes root: {relpath}"
    return True, Path(relpath).as_posix(), None


def resolve_inside_root(root: Path, relpath: str, context: str) -> Path:
    """Resolve ``relpath`` under ``root`` and require it to land strictly inside it."""
    ensure_safe_relative_path(relpath, context)
    candidate = Path(normalize_path(root / relpath))
    if not is_path_under_root(root, candidate, allow_equal=False):
        raise UnsafePathError(f"{context} must be inside root {root}: {candidate}")
    return candidate
