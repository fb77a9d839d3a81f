from __future__ import annotations

import fcntl
import json
import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator

from pydantic import ValidationError

from .canonical import to_json_document
from .fsops import atomic_write_text
from .models import (
    ProjectNotFoundError,
    ProjectRecord,
    RootIntegrityContract,
    StorageRootCandidate,
    StorageRootRecord,
)
from .path_safety import ensure_safe_segment

logger = logging.getLogger(__name__)

MAX_RUNS_PER_SECTION = 10

# ---------------------------------------------------------------------------
# File locking helpers
# ---------------------------------------------------------------------------

_LOCK_SUFFIX = ".lock"


@contextmanager
def _locked_file(path: Path) -> Iterator[None]:
    """Acquire an exclusive file lock for the duration of the context.

    Uses a separate .lock sidecar file so the data file can be atomically
    replaced via ``os.replace`` without disturbing the lock handle.
    """
    lock_path = path.with_suffix(path.suffix + _LOCK_SUFFIX)
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    with lock_path.open("a+", encoding="utf-8") as lock_handle:
        fcntl.flock(lock_handle.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(lock_handle.fileno(), fcntl.LOCK_UN)


def _safe_read_json(path: Path, model_name: str) -> str:
    """Read a JSON file and raise a clear error if missing or unreadable.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the file is empty or contains non-UTF-8 data.
    """
    if not path.is_file():
        raise FileNotFoundError(f"{model_name} not found: {path}")
    try:
        text = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as exc:
        raise ValueError(f"{model_name} at {path} contains invalid UTF-8 data") from exc
    if not text.strip():
        raise ValueError(f"{model_name} at {path} is empty")
    return text


# ---------------------------------------------------------------------------
# Projects
# ---------------------------------------------------------------------------


class JsonProjectStore:
    """Project records persisted as one JSON document per project under ``<root>/projects``."""

    def __init__(self, root: Path) -> None:
        self.root = Path(root)
        self.projects_dir = self.root / "projects"

    def _path(self, project_id: str) -> Path:
        ensure_safe_segment(project_id, "projectId")
        return self.projects_dir / f"{project_id}.json"

    def _read(self, path: Path, project_id: str) -> ProjectRecord:
        if not path.is_file():
            raise ProjectNotFoundError(f"Project not found: {project_id}")
        text = _safe_read_json(path, "Project record")
        try:
            return ProjectRecord.model_validate_json(text)
        except ValidationError as exc:
            raise ValueError(f"Project record at {path} is invalid: {exc}") from exc

    def _write(self, path: Path, record: ProjectRecord) -> None:
        atomic_write_text(path, record.model_dump_json(by_alias=True, indent=2) + "\n")

    def get(self, project_id: str) -> ProjectRecord:
        return self._read(self._path(project_id), project_id)

    def save(self, record: ProjectRecord) -> None:
        path = self._path(record.project_id)
        with _locked_file(path):
            self._write(path, record)

    def set_status(self, project_id: str, status_key: str) -> ProjectRecord:
        path = self._path(project_id)
        with _locked_file(path):
            record = self._read(path, project_id)
            updated = record.model_copy(update={"status_key": status_key})
            self._write(path, updated)
        logger.info("Project %s status %s -> %s", project_id, record.status_key, status_key)
        return updated

    def append_run(self, project_id: str, section: str, run: Any, *, max_runs: int = MAX_RUNS_PER_SECTION) -> None:
        """Append a run document under ``metadata.<section>.runs``, keeping only the newest ``max_runs``."""
        path = self._path(project_id)
        with _locked_file(path):
            record = self._read(path, project_id)
            metadata = json.loads(json.dumps(record.metadata))
            bucket = metadata.get(section)
            if not isinstance(bucket, dict):
                bucket = {}
            runs = bucket.get("runs")
            if not isinstance(runs, list):
                runs = []
            runs.append(to_json_document(run))
            bucket["runs"] = runs[-max_runs:]
            metadata[section] = bucket
            self._write(path, record.model_copy(update={"metadata": metadata}))

    def upsert_storage_root(self, project_id: str, candidate: StorageRootCandidate) -> None:
        """Insert or replace the storage root keyed by (domain, provider, root key)."""
        path = self._path(project_id)
        with _locked_file(path):
            record = self._read(path, project_id)
            new_row = StorageRootRecord(
                domain_key=candidate.domain_key,
                storage_provider_key=candidate.storage_provider_key,
                root_key=candidate.root_key,
                folder_relpath=candidate.folder_relpath,
            )
            rows = [
                row
                for row in record.storage_roots
                if (row.domain_key, row.storage_provider_key, row.root_key)
                != (new_row.domain_key, new_row.storage_provider_key, new_row.root_key)
            ]
            rows.append(new_row)
            self._write(path, record.model_copy(update={"storage_roots": rows}))
        logger.info(
            "Project %s storage root %s/%s -> %s",
            project_id,
            candidate.domain_key,
            candidate.root_key,
            candidate.folder_relpath,
        )


# ---------------------------------------------------------------------------
# Root integrity contracts
# ---------------------------------------------------------------------------


class JsonContractStore:
    """Root integrity contracts kept in a single JSON array file."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def _load_all(self) -> list[RootIntegrityContract]:
        if not self.path.is_file():
            return []
        raw = json.loads(_safe_read_json(self.path, "Contract store"))
        if not isinstance(raw, list):
            raise ValueError(f"Contract store at {self.path} must contain a JSON array")
        try:
            return [RootIntegrityContract.model_validate(item) for item in raw]
        except ValidationError as exc:
            raise ValueError(f"Contract store at {self.path} is invalid: {exc}") from exc

    def get_active(self, provider_key: str, root_key: str) -> RootIntegrityContract | None:
        for contract in self._load_all():
            if (
                contract.is_active
                and contract.provider_key.casefold() == provider_key.casefold()
                and contract.root_key.casefold() == root_key.casefold()
            ):
                return contract
        return None

    def upsert(self, contract: RootIntegrityContract) -> None:
        with _locked_file(self.path):
            contracts = [
                existing
                for existing in self._load_all()
                if (existing.provider_key, existing.root_key) != (contract.provider_key, contract.root_key)
            ]
            contracts.append(contract)
            payload = [item.model_dump(mode="json", by_alias=True) for item in contracts]
            atomic_write_text(self.path, json.dumps(payload, indent=2) + "\n")
