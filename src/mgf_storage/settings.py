from __future__ import annotations

import os
from dataclasses import dataclass, replace
from pathlib import Path

from dotenv import load_dotenv

from .models import ArchivePathTemplates, UnsafePathError
from .path_safety import ensure_safe_relative_path

_PACKAGE_ROOT = Path(__file__).resolve().parent


@dataclass(frozen=True)
class RuntimeSettings:
    """Runtime settings loaded from environment with fail-fast validation."""

    dropbox_root: str = ""
    lucidlink_root: str = ""
    nas_root: str = ""
    templates_root: str = ""
    runtime_root: str = "runtime"
    state_store_root: str = "state_store"
    workspace_root: str = ""
    dropbox_active_relpath: str = "02_Projects_Active"
    dropbox_to_archive_relpath: str = "03_Projects_ToArchive"
    dropbox_archive_relpath: str = "98_Archive"
    nas_archive_relpath: str = "01_Projects_Archive"
    integrity_max_items: int = 500
    integrity_max_bytes: int = 20 * 1024**3

    @classmethod
    def from_env(cls, env_file: Path | None = None) -> "RuntimeSettings":
        """Build settings from ``MGF_*`` variables, loading a ``.env`` file first when one exists."""
        dotenv_path = env_file
        if dotenv_path is None:
            workspace = os.getenv("MGF_WORKSPACE_ROOT", "").strip()
            dotenv_path = (Path(workspace) if workspace else Path.cwd()) / ".env"
        if dotenv_path.is_file():
            load_dotenv(dotenv_path)

        return cls(
            dropbox_root=os.getenv("MGF_DROPBOX_ROOT", ""),
            lucidlink_root=os.getenv("MGF_LUCIDLINK_ROOT", ""),
            nas_root=os.getenv("MGF_NAS_ROOT", ""),
            templates_root=os.getenv("MGF_TEMPLATES_ROOT", ""),
            runtime_root=os.getenv("MGF_RUNTIME_ROOT", "runtime"),
            state_store_root=os.getenv("MGF_STATE_STORE_ROOT", "state_store"),
            workspace_root=os.getenv("MGF_WORKSPACE_ROOT", ""),
            dropbox_active_relpath=os.getenv("MGF_DROPBOX_ACTIVE_RELPATH", "02_Projects_Active"),
            dropbox_to_archive_relpath=os.getenv("MGF_DROPBOX_TO_ARCHIVE_RELPATH", "03_Projects_ToArchive"),
            dropbox_archive_relpath=os.getenv("MGF_DROPBOX_ARCHIVE_RELPATH", "98_Archive"),
            nas_archive_relpath=os.getenv("MGF_NAS_ARCHIVE_RELPATH", "01_Projects_Archive"),
            integrity_max_items=_get_env_int("MGF_INTEGRITY_MAX_ITEMS", default=500, minimum=1),
            integrity_max_bytes=_get_env_int(
                "MGF_INTEGRITY_MAX_BYTES", default=20 * 1024**3, minimum=1, maximum=1 << 50
            ),
        ).normalized()

    def normalized(self) -> "RuntimeSettings":
        """Validate and normalize all fields. Raises ValueError on invalid configuration."""
        if not self.runtime_root.strip():
            raise ValueError("MGF_RUNTIME_ROOT must be non-empty")
        if not self.state_store_root.strip():
            raise ValueError("MGF_STATE_STORE_ROOT must be non-empty")

        relpaths = {
            "MGF_DROPBOX_ACTIVE_RELPATH": self.dropbox_active_relpath.strip(),
            "MGF_DROPBOX_TO_ARCHIVE_RELPATH": self.dropbox_to_archive_relpath.strip(),
            "MGF_DROPBOX_ARCHIVE_RELPATH": self.dropbox_archive_relpath.strip(),
            "MGF_NAS_ARCHIVE_RELPATH": self.nas_archive_relpath.strip(),
        }
        for name, value in relpaths.items():
            try:
                ensure_safe_relative_path(value, name)
            except UnsafePathError as exc:
                raise ValueError(str(exc)) from exc

        return replace(
            self,
            dropbox_root=self.dropbox_root.strip(),
            lucidlink_root=self.lucidlink_root.strip(),
            nas_root=self.nas_root.strip(),
            templates_root=self.templates_root.strip(),
            runtime_root=self.runtime_root.strip(),
            state_store_root=self.state_store_root.strip(),
            workspace_root=self.workspace_root.strip(),
            dropbox_active_relpath=relpaths["MGF_DROPBOX_ACTIVE_RELPATH"],
            dropbox_to_archive_relpath=relpaths["MGF_DROPBOX_TO_ARCHIVE_RELPATH"],
            dropbox_archive_relpath=relpaths["MGF_DROPBOX_ARCHIVE_RELPATH"],
            nas_archive_relpath=relpaths["MGF_NAS_ARCHIVE_RELPATH"],
        )

    @property
    def workspace_root_path(self) -> Path:
        """Return the workspace root as a Path, defaulting to cwd if unset."""
        return Path(self.workspace_root).resolve() if self.workspace_root else Path.cwd().resolve()

    @property
    def templates_path(self) -> Path:
        if not self.templates_root:
            return _PACKAGE_ROOT / "artifacts" / "templates"
        return self._under_workspace(self.templates_root)

    @property
    def runtime_path(self) -> Path:
        return self._under_workspace(self.runtime_root)

    @property
    def state_store_path(self) -> Path:
        return self._under_workspace(self.state_store_root)

    def root_path_for(self, domain_key: str) -> Path | None:
        """Configured absolute root for a storage domain, or ``None`` when unset."""
        raw = {
            "dropbox": self.dropbox_root,
            "lucidlink": self.lucidlink_root,
            "nas": self.nas_root,
        }.get(domain_key, "")
        if not raw:
            return None
        return Path(os.path.abspath(os.path.expanduser(raw)))

    def sandbox_root_for(self, domain_key: str) -> Path:
        return self.runtime_path / f"bootstrap_sandbox_{domain_key}"

    def archive_path_templates(self) -> ArchivePathTemplates:
        return ArchivePathTemplates(
            dropbox_active_relpath=self.dropbox_active_relpath,
            dropbox_to_archive_relpath=self.dropbox_to_archive_relpath,
            dropbox_archive_relpath=self.dropbox_archive_relpath,
            nas_archive_relpath=self.nas_archive_relpath,
        )

    def _under_workspace(self, value: str) -> Path:
        path = Path(value).expanduser()
        return path if path.is_absolute() else self.workspace_root_path / path


def _get_env_int(name: str, default: int, minimum: int, maximum: int = 10_000_000) -> int:
    """Parse an integer from an environment variable with bounds checking.

    Raises:
        ValueError: If the value is not an integer or is outside ``[minimum, maximum]``.
    """
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got: {raw!r}") from exc
    if parsed < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {parsed}")
    if parsed > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {parsed}")
    return parsed
