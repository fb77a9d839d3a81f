from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path

from .models import (
    FolderNode,
    FolderPlan,
    FolderTemplate,
    NodeKind,
    PlanItem,
    PlanValidationError,
    ProvisioningTokens,
)
from .path_safety import ensure_safe_relative_path, ensure_safe_segment
from .templates import expand_node_names, expand_root_name

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProvisioningPolicy:
    """Naming rules every planned tree must satisfy."""

    top_level_pattern: str = r"^\d{2}_.+"
    admin_folder_name: str = "00_Admin"
    metadata_folder_name: str = ".mgf"
    manifest_folder_name: str = "manifest"

    @property
    def manifest_relpath(self) -> str:
        return f"{self.admin_folder_name}/{self.metadata_folder_name}/{self.manifest_folder_name}"

    def matches_top_level(self, name: str) -> bool:
        return re.match(self.top_level_pattern, name) is not None


MGF_POLICY = ProvisioningPolicy()


class FolderTemplatePlanner:
    """Expands a template against tokens into a flat, validated, ordered plan. Never touches disk."""

    def __init__(self, policy: ProvisioningPolicy = MGF_POLICY) -> None:
        self.policy = policy

    def plan(self, template: FolderTemplate, tokens: ProvisioningTokens, base_path: str | Path) -> FolderPlan:
        root = template.root
        if root is None or not root.children:
            raise PlanValidationError(f"Template {template.template_key} root must contain at least one child")

        root_name = expand_root_name(root.name, tokens)
        ensure_safe_segment(root_name, "Root folder name")
        target_root = Path(os.path.abspath(Path(base_path) / root_name))

        items: list[PlanItem] = []
        for child in root.children:
            self._expand(
                child,
                target_root=target_root,
                parent_relpath="",
                depth=1,
                top_level_name=None,
                parent_optional=root.optional,
                tokens=tokens,
                items=items,
            )

        seen: dict[str, str] = {}
        for item in items:
            key = item.relative_path.casefold()
            if key in seen:
                raise PlanValidationError(
                    f"Duplicate planned path detected: {item.relative_path} (conflicts with {seen[key]})"
                )
            seen[key] = item.relative_path

        ordered = sorted(items, key=lambda item: (item.kind is not NodeKind.FOLDER, item.relative_path))
        logger.debug("Planned %d items under %s", len(ordered), target_root)
        return FolderPlan(target_root=target_root, items=tuple(ordered))

    def _expand(
        self,
        node: FolderNode,
        *,
        target_root: Path,
        parent_relpath: str,
        depth: int,
        top_level_name: str | None,
        parent_optional: bool,
        tokens: ProvisioningTokens,
        items: list[PlanItem],
    ) -> None:
        optional = parent_optional or node.optional
        for name in expand_node_names(node.name, tokens, optional):
            ensure_safe_segment(name, f"Template node {node.name!r}")
            relpath = f"{parent_relpath}/{name}" if parent_relpath else name

            if depth == 1 and not self.policy.matches_top_level(name):
                raise PlanValidationError(
                    f"Top-level folder {name!r} must match {self.policy.top_level_pattern}"
                )
            current_top = name if depth == 1 else top_level_name
            if name.casefold() == self.policy.metadata_folder_name.casefold():
                allowed = depth == 2 and (current_top or "").casefold() == self.policy.admin_folder_name.casefold()
                if not allowed:
                    raise PlanValidationError(
                        f"{self.policy.metadata_folder_name} is only allowed directly under "
                        f"{self.policy.admin_folder_name}: {relpath}"
                    )

            if node.kind is NodeKind.FILE:
                if node.children:
                    raise PlanValidationError(f"File node {relpath} must not have children")
                if node.source_relpath is not None:
                    ensure_safe_relative_path(node.source_relpath, f"sourceRelpath of {relpath}")
            elif node.source_relpath is not None or node.content_template_key is not None:
                raise PlanValidationError(
                    f"Folder node {relpath} must not declare sourceRelpath or contentTemplateKey"
                )

            items.append(
                PlanItem(
                    kind=node.kind,
                    relative_path=relpath,
                    absolute_path=target_root.joinpath(*relpath.split("/")),
                    optional=optional,
                    source_relpath=node.source_relpath,
                    content_template_key=node.content_template_key,
                )
            )
            for child in node.children:
                self._expand(
                    child,
                    target_root=target_root,
                    parent_relpath=relpath,
                    depth=depth + 1,
                    top_level_name=current_top,
                    parent_optional=optional,
                    tokens=tokens,
                    items=items,
                )
