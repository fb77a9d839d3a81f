from __future__ import annotations

import hashlib
import json
from pathlib import Path
from typing import Callable

import pytest

from conftest import file_node, folder
from mgf_storage.models import ProvisioningMode, ProvisioningRequest, ProvisioningTokens, TokenExpansionError
from mgf_storage.provisioner import FolderProvisioner

TOKENS = ProvisioningTokens.create(project_code="MGF25-0001", project_name="Launch", client_name="Acme")


def _request(
    template_path: Path,
    base_path: Path,
    mode: ProvisioningMode,
    tokens: ProvisioningTokens = TOKENS,
    **extra: object,
) -> ProvisioningRequest:
    return ProvisioningRequest(mode=mode, template_path=template_path, base_path=base_path, tokens=tokens, **extra)


@pytest.fixture
def standard_template(write_template: Callable[..., Path]) -> Path:
    path = write_template(
        folder(
            "{PROJECT_CODE}_{PROJECT_NAME}",
            folder(
                "00_Admin",
                folder(".mgf", folder("manifest")),
                file_node("README.md", contentTemplateKey="readme-start-here"),
                file_node("guide.txt", sourceRelpath="guide.txt"),
            ),
            folder("01_Work", folder("{EDITOR_INITIALS}")),
            folder("02_Optional", optional=True),
        )
    )
    seeds = path.parent / "seeds"
    seeds.mkdir(exist_ok=True)
    (seeds / "guide.txt").write_text("seed v1\n", encoding="utf-8")
    return path


def test_plan_mode_never_touches_disk(standard_template: Path, tmp_path: Path) -> None:
    base = tmp_path / "out"
    result = FolderProvisioner().execute(_request(standard_template, base, ProvisioningMode.PLAN))
    assert result.success
    assert result.manifest_path is None
    assert result.created_items == ()
    assert not base.exists()
    assert "00_Admin/README.md" in [item.relative_path for item in result.expected_items]


def test_apply_is_idempotent_and_verify_agrees(standard_template: Path, tmp_path: Path) -> None:
    provisioner = FolderProvisioner()
    base = tmp_path / "out"

    first = provisioner.execute(_request(standard_template, base, ProvisioningMode.APPLY))
    assert first.success, first.errors
    assert first.created_items

    second = provisioner.execute(_request(standard_template, base, ProvisioningMode.APPLY))
    assert second.success
    assert second.created_items == ()

    verified = provisioner.execute(_request(standard_template, base, ProvisioningMode.VERIFY))
    assert verified.success
    assert verified.missing_required == ()


def test_verify_lists_missing_required_and_skips_optional(standard_template: Path, tmp_path: Path) -> None:
    provisioner = FolderProvisioner()
    base = tmp_path / "out"
    provisioner.execute(_request(standard_template, base, ProvisioningMode.APPLY))
    (base / "MGF25-0001_Launch" / "02_Optional").rmdir()
    (base / "MGF25-0001_Launch" / "00_Admin" / "README.md").unlink()

    verified = provisioner.execute(_request(standard_template, base, ProvisioningMode.VERIFY))
    assert not verified.success
    assert verified.missing_required == ("00_Admin/README.md",)


def test_verify_never_creates_directories(standard_template: Path, tmp_path: Path) -> None:
    base = tmp_path / "out"
    verified = FolderProvisioner().execute(_request(standard_template, base, ProvisioningMode.VERIFY))
    assert not verified.success
    assert verified.manifest_path is None
    assert not base.exists()


def test_apply_keeps_existing_seeded_files_and_repair_overwrites(standard_template: Path, tmp_path: Path) -> None:
    provisioner = FolderProvisioner()
    base = tmp_path / "out"
    provisioner.execute(_request(standard_template, base, ProvisioningMode.APPLY))
    guide = base / "MGF25-0001_Launch" / "00_Admin" / "guide.txt"
    guide.write_text("edited by hand\n", encoding="utf-8")

    applied = provisioner.execute(_request(standard_template, base, ProvisioningMode.APPLY))
    assert applied.success
    assert applied.created_items == ()
    assert guide.read_text(encoding="utf-8") == "edited by hand\n"

    repaired = provisioner.execute(_request(standard_template, base, ProvisioningMode.REPAIR))
    assert repaired.success
    assert guide.read_text(encoding="utf-8") == "seed v1\n"


def test_missing_seed_is_error_when_required_and_warning_when_optional(
    write_template: Callable[..., Path], tmp_path: Path
) -> None:
    path = write_template(
        folder(
            "{PROJECT_CODE}",
            folder(
                "01_Work",
                file_node("required.txt", sourceRelpath="missing.txt"),
                file_node("optional.txt", sourceRelpath="missing.txt", optional=True),
            ),
        )
    )
    result = FolderProvisioner().execute(_request(path, tmp_path / "out", ProvisioningMode.APPLY))
    assert not result.success
    assert len(result.errors) == 1 and "required.txt" in result.errors[0]
    assert len(result.warnings) == 1 and "optional.txt" in result.warnings[0]


def test_unknown_content_template_is_an_error(write_template: Callable[..., Path], tmp_path: Path) -> None:
    path = write_template(folder("{PROJECT_CODE}", folder("01_Work", file_node("x.md", contentTemplateKey="nope"))))
    result = FolderProvisioner().execute(_request(path, tmp_path / "out", ProvisioningMode.APPLY))
    assert any("Unknown content template" in error for error in result.errors)


def test_plain_file_nodes_are_created_empty(write_template: Callable[..., Path], tmp_path: Path) -> None:
    path = write_template(folder("{PROJECT_CODE}", folder("01_Work", file_node(".keep"))))
    result = FolderProvisioner().execute(_request(path, tmp_path / "out", ProvisioningMode.APPLY))
    assert result.success
    assert (tmp_path / "out" / "MGF25-0001" / "01_Work" / ".keep").read_bytes() == b""


def test_apply_writes_manifest(standard_template: Path, tmp_path: Path) -> None:
    tokens = ProvisioningTokens.create(project_code="MGF25-0001", project_name="Launch", editor_initials="AB")
    result = FolderProvisioner().execute(_request(standard_template, tmp_path / "out", ProvisioningMode.APPLY, tokens))
    manifest_path = tmp_path / "out" / "MGF25-0001_Launch" / "00_Admin" / ".mgf" / "manifest" / "folder_manifest.json"
    assert result.manifest_path == manifest_path

    manifest = json.loads(manifest_path.read_text(encoding="utf-8"))
    assert manifest["templateKey"] == "test_template"
    assert manifest["runMode"] == "apply"
    assert manifest["templateHash"] == hashlib.sha256(standard_template.read_bytes()).hexdigest()
    assert manifest["tokens"]["editorInitials"] == ["AB"]
    assert {"path": "01_Work/AB", "kind": "folder", "optional": False} in manifest["expectedItems"]
    assert manifest["errors"] == []
    assert set(manifest) >= {"timestampUtc", "targetRoot", "createdItems", "missingRequired", "warnings"}


def test_required_editor_folder_falls_back_to_placeholder(standard_template: Path, tmp_path: Path) -> None:
    provisioner = FolderProvisioner()
    base = tmp_path / "out"
    result = provisioner.execute(_request(standard_template, base, ProvisioningMode.APPLY))
    relpaths = [item.relative_path for item in result.expected_items]
    assert "01_Work/_EDITOR_INITIALS_HERE" in relpaths
    assert (base / "MGF25-0001_Launch" / "01_Work" / "_EDITOR_INITIALS_HERE").is_dir()


def test_root_editor_token_falls_back_to_placeholder(write_template: Callable[..., Path], tmp_path: Path) -> None:
    path = write_template(folder("{EDITOR_INITIALS}_scratch", folder("01_Work")))
    result = FolderProvisioner().execute(_request(path, tmp_path, ProvisioningMode.PLAN))
    assert result.target_root == tmp_path / "_EDITOR_INITIALS_HERE_scratch"


def test_editor_nodes_optional_skips_editor_folders_without_editors(
    standard_template: Path, tmp_path: Path
) -> None:
    result = FolderProvisioner().execute(
        _request(standard_template, tmp_path / "out", ProvisioningMode.APPLY, editor_nodes_optional=True)
    )
    relpaths = [item.relative_path for item in result.expected_items]
    assert "01_Work" in relpaths
    assert not any(path.startswith("01_Work/") for path in relpaths)


def test_editor_nodes_optional_rejects_editor_token_in_root(
    write_template: Callable[..., Path], tmp_path: Path
) -> None:
    path = write_template(folder("{EDITOR_INITIALS}_scratch", folder("01_Work")))
    with pytest.raises(TokenExpansionError):
        FolderProvisioner().execute(_request(path, tmp_path, ProvisioningMode.PLAN, editor_nodes_optional=True))


def test_editor_nodes_optional_keeps_editor_folders_when_editors_given(
    standard_template: Path, tmp_path: Path
) -> None:
    tokens = ProvisioningTokens.create(project_code="MGF25-0001", project_name="Launch", editor_initials="AB,CD")
    result = FolderProvisioner().execute(
        _request(standard_template, tmp_path, ProvisioningMode.PLAN, tokens, editor_nodes_optional=True)
    )
    relpaths = [item.relative_path for item in result.expected_items]
    assert {"01_Work/AB", "01_Work/CD"} <= set(relpaths)


def test_root_name_override_replaces_expanded_root(standard_template: Path, tmp_path: Path) -> None:
    result = FolderProvisioner().execute(
        _request(standard_template, tmp_path, ProvisioningMode.PLAN, root_name_override="Dropbox")
    )
    assert result.target_root == tmp_path / "Dropbox"


def test_single_project_scenario(write_template: Callable[..., Path], tmp_path: Path) -> None:
    path = write_template(
        folder("{PROJECT_CODE}", folder("00_Admin"), folder("01_Edits_{EDITOR_INITIALS}", optional=True))
    )
    tokens = ProvisioningTokens.create(project_code="MGF25-0007", editor_initials=[])
    provisioner = FolderProvisioner()

    planned = provisioner.execute(_request(path, tmp_path, ProvisioningMode.PLAN, tokens))
    assert [item.relative_path for item in planned.expected_items] == ["00_Admin"]

    applied = provisioner.execute(_request(path, tmp_path, ProvisioningMode.APPLY, tokens))
    assert applied.success
    assert (tmp_path / "MGF25-0007" / "00_Admin").is_dir()

    verified = provisioner.execute(_request(path, tmp_path, ProvisioningMode.VERIFY, tokens))
    assert verified.missing_required == ()
    assert verified.success


def test_manifest_location_defaults_when_template_lacks_manifest_folder(
    write_template: Callable[..., Path], tmp_path: Path
) -> None:
    path = write_template(folder("{PROJECT_CODE}", folder("00_Admin"), folder("99_Dump")))
    result = FolderProvisioner().execute(_request(path, tmp_path, ProvisioningMode.APPLY))
    assert result.manifest_path is not None
    assert result.manifest_path.parent == tmp_path / "MGF25-0001" / "00_Admin" / ".mgf" / "manifest"
