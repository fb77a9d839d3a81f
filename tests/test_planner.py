from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest

from conftest import ADMIN_WITH_MANIFEST, file_node, folder
from mgf_storage.models import (
    FolderTemplate,
    NodeKind,
    PlanValidationError,
    ProvisioningTokens,
    UnsafePathError,
)
from mgf_storage.planner import FolderTemplatePlanner, ProvisioningPolicy

TOKENS = ProvisioningTokens.create(project_code="MGF25-0001", project_name="Launch", client_name="Acme")


def _template(*children: dict[str, Any], root_name: str = "{PROJECT_CODE}") -> FolderTemplate:
    return FolderTemplate.model_validate({"templateKey": "t", "root": folder(root_name, *children)})


def _relpaths(template: FolderTemplate, tokens: ProvisioningTokens = TOKENS, base: Path = Path("/base")) -> list[str]:
    return [item.relative_path for item in FolderTemplatePlanner().plan(template, tokens, base).items]


def test_plan_targets_expanded_root_under_base_path(tmp_path: Path) -> None:
    plan = FolderTemplatePlanner().plan(
        _template(folder("01_Work"), root_name="{PROJECT_CODE}_{CLIENT_NAME}"), TOKENS, tmp_path
    )
    assert plan.target_root == tmp_path / "MGF25-0001_Acme"
    assert plan.items[0].absolute_path == tmp_path / "MGF25-0001_Acme" / "01_Work"


def test_plan_orders_folders_before_files_then_by_path() -> None:
    template = _template(
        folder("02_B", file_node("z.txt"), folder("a")),
        file_node("01_notes.txt"),
        ADMIN_WITH_MANIFEST,
    )
    assert _relpaths(template) == [
        "00_Admin",
        "00_Admin/.mgf",
        "00_Admin/.mgf/manifest",
        "02_B",
        "02_B/a",
        "01_notes.txt",
        "02_B/z.txt",
    ]


def test_plan_requires_root_children() -> None:
    with pytest.raises(PlanValidationError):
        FolderTemplatePlanner().plan(_template(), TOKENS, Path("/base"))


@pytest.mark.parametrize("name", ["Edits", "1_Edits", "AA_Edits", "01-Edits"])
def test_top_level_names_need_two_digit_prefix(name: str) -> None:
    with pytest.raises(PlanValidationError, match="must match"):
        _relpaths(_template(folder(name)))


def test_nested_names_are_not_bound_by_prefix_rule() -> None:
    assert _relpaths(_template(folder("01_Work", folder("Edits")))) == ["01_Work", "01_Work/Edits"]


@pytest.mark.parametrize(
    "children",
    [
        [folder("01_Work", folder(".mgf"))],
        [folder("00_Admin", folder("notes", folder(".mgf")))],
        [folder(".mgf")],
    ],
)
def test_metadata_folder_only_directly_under_admin(children: list[dict[str, Any]]) -> None:
    with pytest.raises(PlanValidationError):
        _relpaths(_template(*children))


def test_duplicate_paths_are_rejected_case_insensitively() -> None:
    with pytest.raises(PlanValidationError, match="Duplicate planned path detected"):
        _relpaths(_template(folder("01_Work"), folder("01_work")))


def test_editor_fan_out_colliding_with_sibling_is_a_duplicate() -> None:
    tokens = ProvisioningTokens.create(project_code="P", editor_initials=["AB"])
    with pytest.raises(PlanValidationError, match="Duplicate planned path detected"):
        _relpaths(_template(folder("01_Work", folder("{EDITOR_INITIALS}"), folder("ab"))), tokens)


def test_editor_fan_out_creates_one_subtree_per_editor() -> None:
    tokens = ProvisioningTokens.create(project_code="P", editor_initials=["AB", "CD"])
    relpaths = _relpaths(_template(folder("01_Work", folder("{EDITOR_INITIALS}", folder("Renders")))), tokens)
    assert relpaths == ["01_Work", "01_Work/AB", "01_Work/AB/Renders", "01_Work/CD", "01_Work/CD/Renders"]


def test_optional_is_inherited_by_descendants() -> None:
    template = _template(folder("01_Work", folder("a", folder("b")), optional=True), folder("02_Required"))
    plan = FolderTemplatePlanner().plan(template, TOKENS, Path("/base"))
    optional = {item.relative_path: item.optional for item in plan.items}
    assert optional == {"01_Work": True, "01_Work/a": True, "01_Work/a/b": True, "02_Required": False}


def test_file_nodes_cannot_have_children() -> None:
    template = _template(folder("01_Work", file_node("a.txt", children=[folder("x")])))
    with pytest.raises(PlanValidationError, match="must not have children"):
        _relpaths(template)


def test_folder_nodes_cannot_reference_content() -> None:
    with pytest.raises(PlanValidationError):
        _relpaths(_template(folder("01_Work", sourceRelpath="seed.txt")))
    with pytest.raises(PlanValidationError):
        _relpaths(_template(folder("01_Work", contentTemplateKey="readme-start-here")))


def test_file_source_relpath_must_stay_relative() -> None:
    with pytest.raises(UnsafePathError):
        _relpaths(_template(folder("01_Work", file_node("a.txt", sourceRelpath="../escape.txt"))))


def test_unsafe_expanded_names_are_rejected() -> None:
    tokens = ProvisioningTokens.create(project_code="../evil")
    with pytest.raises(UnsafePathError):
        _relpaths(_template(folder("01_Work")), tokens)


def test_plan_items_keep_file_metadata() -> None:
    template = _template(
        folder("00_Admin", file_node("README.md", contentTemplateKey="readme-start-here")),
        folder("01_Work", file_node("guide.txt", sourceRelpath="guide.txt")),
    )
    plan = FolderTemplatePlanner().plan(template, TOKENS, Path("/base"))
    files = {item.relative_path: item for item in plan.items if item.kind is NodeKind.FILE}
    assert files["00_Admin/README.md"].content_template_key == "readme-start-here"
    assert files["01_Work/guide.txt"].source_relpath == "guide.txt"
    assert all(item.is_seeded for item in files.values())


def test_custom_policy_changes_prefix_rule() -> None:
    planner = FolderTemplatePlanner(ProvisioningPolicy(top_level_pattern=r"^[A-Z]_.+"))
    plan = planner.plan(_template(folder("A_Work")), TOKENS, Path("/base"))
    assert [item.relative_path for item in plan.items] == ["A_Work"]
