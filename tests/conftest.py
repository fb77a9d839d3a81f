from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Callable

import pytest

from mgf_storage.models import ProjectRecord
from mgf_storage.settings import RuntimeSettings
from mgf_storage.state_store import JsonProjectStore

PACKAGE_ROOT = Path(__file__).resolve().parents[1] / "src" / "mgf_storage"
SCHEMAS_DIR = PACKAGE_ROOT / "artifacts" / "schemas"
TEMPLATES_DIR = PACKAGE_ROOT / "artifacts" / "templates"
FOLDER_TEMPLATE_SCHEMA = SCHEMAS_DIR / "mgf.folderTemplate.schema.json"


def folder(name: str, *children: dict[str, Any], **extra: Any) -> dict[str, Any]:
    node: dict[str, Any] = {"name": name, **extra}
    if children:
        node["children"] = list(children)
    return node


def file_node(name: str, **extra: Any) -> dict[str, Any]:
    return {"name": name, "kind": "file", **extra}


ADMIN_WITH_MANIFEST = folder("00_Admin", folder(".mgf", folder("manifest")))


@pytest.fixture
def write_template(tmp_path: Path) -> Callable[..., Path]:
    """Write a template JSON file that points at the shipped schema and return its path."""
    templates_dir = tmp_path / "templates"

    def _write(root: dict[str, Any], *, key: str = "test_template", file_name: str | None = None, **extra: Any) -> Path:
        templates_dir.mkdir(parents=True, exist_ok=True)
        document = {"$schema": str(FOLDER_TEMPLATE_SCHEMA), "templateKey": key, "root": root, **extra}
        path = templates_dir / (file_name or f"{key}.json")
        path.write_text(json.dumps(document, indent=2), encoding="utf-8")
        return path

    return _write


@pytest.fixture
def no_sleep() -> Callable[[float], None]:
    return lambda _seconds: None


@pytest.fixture
def roots(tmp_path: Path) -> dict[str, Path]:
    base = tmp_path / "roots"
    return {"dropbox": base / "Dropbox", "lucidlink": base / "LucidLink", "nas": base / "NAS"}


@pytest.fixture
def make_settings(tmp_path: Path, roots: dict[str, Path]) -> Callable[..., RuntimeSettings]:
    def _make(*, domains: tuple[str, ...] = ("dropbox", "lucidlink", "nas"), **overrides: Any) -> RuntimeSettings:
        values: dict[str, Any] = {
            "workspace_root": str(tmp_path / "workspace"),
            "dropbox_root": str(roots["dropbox"]) if "dropbox" in domains else "",
            "lucidlink_root": str(roots["lucidlink"]) if "lucidlink" in domains else "",
            "nas_root": str(roots["nas"]) if "nas" in domains else "",
        }
        values.update(overrides)
        return RuntimeSettings(**values).normalized()

    return _make


@pytest.fixture
def project() -> ProjectRecord:
    return ProjectRecord(
        project_id="prj_0001",
        project_code="MGF25-0001",
        name="Launch",
        client_name="Acme",
        status_key="ready_to_provision",
    )


@pytest.fixture
def project_store(tmp_path: Path, project: ProjectRecord) -> JsonProjectStore:
    store = JsonProjectStore(tmp_path / "workspace" / "state_store")
    store.save(project)
    return store
