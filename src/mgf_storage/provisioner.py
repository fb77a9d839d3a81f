from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import replace
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from .fsops import atomic_write_text
from .models import (
    FolderPlan,
    PlanItem,
    ProvisioningMode,
    ProvisioningRequest,
    ProvisioningResult,
    TokenExpansionError,
)
from .executor import FolderPlanExecutor
from .path_safety import ensure_safe_segment
from .planner import MGF_POLICY, FolderTemplatePlanner, ProvisioningPolicy
from .templates import FolderTemplateLoader, contains_editor_token, mark_editor_nodes_optional

logger = logging.getLogger(__name__)

MANIFEST_FILE_NAME = "folder_manifest.json"


def _item_record(item: PlanItem) -> dict[str, Any]:
    return {"path": item.relative_path, "kind": item.kind.value, "optional": item.optional}


class ProvisioningManifestWriter:
    """Writes the per-run manifest into the tree's ``00_Admin/.mgf/manifest`` folder."""

    def __init__(self, policy: ProvisioningPolicy = MGF_POLICY) -> None:
        self.policy = policy

    def manifest_folder(self, plan: FolderPlan) -> Path:
        wanted = self.policy.manifest_relpath.casefold()
        for item in plan.items:
            if item.relative_path.casefold() == wanted:
                return item.absolute_path
        return plan.target_root.joinpath(*self.policy.manifest_relpath.split("/"))

    def manifest_path(self, plan: FolderPlan) -> Path:
        return self.manifest_folder(plan) / MANIFEST_FILE_NAME

    def write(self, path: Path, result: ProvisioningResult, *, timestamp: datetime | None = None) -> None:
        document = {
            "templateKey": result.template_key,
            "templateHash": result.template_hash,
            "runMode": result.mode.value,
            "timestampUtc": (timestamp or datetime.now(UTC)).isoformat(),
            "tokens": result.tokens.to_dict(),
            "targetRoot": str(result.target_root),
            "expectedItems": [_item_record(item) for item in result.expected_items],
            "createdItems": [_item_record(item) for item in result.created_items],
            "missingRequired": list(result.missing_required),
            "warnings": list(result.warnings),
            "errors": list(result.errors),
        }
        atomic_write_text(path, json.dumps(document, indent=2) + "\n")


class FolderProvisioner:
    """Load -> plan -> execute -> manifest for a single template and target."""

    def __init__(
        self,
        *,
        loader: FolderTemplateLoader | None = None,
        planner: FolderTemplatePlanner | None = None,
        executor: FolderPlanExecutor | None = None,
        manifest_writer: ProvisioningManifestWriter | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.logger = logger or logging.getLogger(__name__)
        self.loader = loader or FolderTemplateLoader()
        self.planner = planner or FolderTemplatePlanner()
        self.executor = executor or FolderPlanExecutor(logger=self.logger)
        self.manifest_writer = manifest_writer or ProvisioningManifestWriter(self.planner.policy)

    def execute(self, request: ProvisioningRequest) -> ProvisioningResult:
        loaded = self.loader.load(request.template_path, request.schema_path)
        template = loaded.template

        if request.root_name_override is not None:
            ensure_safe_segment(request.root_name_override, "Root name override")
            template = template.with_root_name(request.root_name_override)

        if request.editor_nodes_optional and not request.tokens.editor_initials:
            if template.root is not None and contains_editor_token(template.root.name):
                raise TokenExpansionError(
                    f"Template {template.template_key} root name requires editor initials but none were provided"
                )
            template = mark_editor_nodes_optional(template)

        template_hash = hashlib.sha256(loaded.template_bytes).hexdigest()
        plan = self.planner.plan(template, request.tokens, request.base_path)
        seeds_path = request.seeds_path or loaded.template_path.parent / "seeds"

        execution = self.executor.execute(
            request.mode,
            plan,
            seeds_path=seeds_path,
            tokens=request.tokens,
        )

        result = ProvisioningResult(
            mode=request.mode,
            template_key=template.template_key,
            template_hash=template_hash,
            tokens=request.tokens,
            target_root=plan.target_root,
            expected_items=plan.items,
            created_items=execution.created_items,
            missing_required=execution.missing_required,
            warnings=execution.warnings,
            errors=execution.errors,
            manifest_path=None,
        )
        try:
            manifest_path = self._write_manifest(plan, result)
        except OSError as exc:
            self.logger.error("Failed to write manifest for %s: %s", plan.target_root, exc)
            result = replace(result, errors=result.errors + (f"Failed to write manifest: {exc}",))
        else:
            if manifest_path is not None:
                result = replace(result, manifest_path=manifest_path)

        self.logger.info(
            "Provisioning %s of %s at %s: success=%s",
            request.mode.value,
            template.template_key,
            plan.target_root,
            result.success,
        )
        return result

    def _write_manifest(self, plan: FolderPlan, result: ProvisioningResult) -> Path | None:
        if result.mode is ProvisioningMode.PLAN:
            return None
        path = self.manifest_writer.manifest_path(plan)
        # verify never creates directories; it only records into an existing manifest folder
        if result.mode is ProvisioningMode.VERIFY and not path.parent.is_dir():
            return None
        self.manifest_writer.write(path, result)
        return path
