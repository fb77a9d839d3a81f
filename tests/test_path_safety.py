from __future__ import annotations

from pathlib import Path

import pytest

from mgf_storage.models import UnsafePathError
from mgf_storage.path_safety import (
    ensure_safe_relative_path,
    ensure_safe_segment,
    is_path_under_root,
    resolve_inside_root,
    try_build_folder_relpath,
)


@pytest.mark.parametrize("segment", ["", "   ", "a/b", "a\\b", "..", "a..b", "bad:name", "what?", "tab\tname", "nul\x00"])
def test_ensure_safe_segment_rejects_unsafe_values(segment: str) -> None:
    with pytest.raises(UnsafePathError):
        ensure_safe_segment(segment, "segment")


def test_ensure_safe_segment_accepts_project_folder_names() -> None:
    ensure_safe_segment("MGF25-0007_Acme_Launch Film", "segment")
    ensure_safe_segment(".mgf", "segment")


@pytest.mark.parametrize("path", ["", "/etc", "\\\\server\\share", "C:\\data", "c:relative", "a/../b", "..\\up"])
def test_ensure_safe_relative_path_rejects_rooted_and_traversing_paths(path: str) -> None:
    with pytest.raises(UnsafePathError):
        ensure_safe_relative_path(path, "relpath")


def test_ensure_safe_relative_path_accepts_nested_relative_paths() -> None:
    ensure_safe_relative_path("99_Dump/_quarantine", "relpath")
    ensure_safe_relative_path("seeds\\readme.txt", "relpath")


def test_containment_is_separator_aware(tmp_path: Path) -> None:
    root = tmp_path / "data" / "p1"
    assert is_path_under_root(root, root / "x")
    assert is_path_under_root(root, root)
    assert not is_path_under_root(root, root, allow_equal=False)
    assert not is_path_under_root(root, tmp_path / "data" / "p10")
    assert not is_path_under_root(root, tmp_path / "data" / "p10" / "x")
    assert not is_path_under_root(root, root / ".." / "p10")


def test_try_build_folder_relpath(tmp_path: Path) -> None:
    root = tmp_path / "Dropbox"
    ok, relpath, error = try_build_folder_relpath(root, root / "02_Projects_Active" / "MGF25-0001_Acme_Launch")
    assert ok
    assert relpath == "02_Projects_Active/MGF25-0001_Acme_Launch"
    assert error is None

    ok, relpath, error = try_build_folder_relpath(root, tmp_path / "Dropbox2" / "x")
    assert not ok
    assert relpath is None
    assert error is not None and "not under root" in error

    ok, _, error = try_build_folder_relpath(root, root)
    assert not ok
    assert error is not None and "root itself" in error


def test_resolve_inside_root_requires_strict_containment(tmp_path: Path) -> None:
    assert resolve_inside_root(tmp_path, "99_Dump/_q", "Quarantine") == tmp_path / "99_Dump" / "_q"
    with pytest.raises(UnsafePathError):
        resolve_inside_root(tmp_path, "../outside", "Quarantine")
    with pytest.raises(UnsafePathError):
        resolve_inside_root(tmp_path, ".", "Quarantine")
