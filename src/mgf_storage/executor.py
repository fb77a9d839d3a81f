from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass, field
from pathlib import Path

from .models import (
    ExecutionResult,
    FolderPlan,
    NodeKind,
    PlanItem,
    ProvisioningMode,
    ProvisioningTokens,
)
from .templates import render_content_template

logger = logging.getLogger(__name__)


@dataclass
class _Outcome:
    created: list[PlanItem] = field(default_factory=list)
    missing_required: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    def freeze(self) -> ExecutionResult:
        return ExecutionResult(
            created_items=tuple(self.created),
            missing_required=tuple(self.missing_required),
            warnings=tuple(self.warnings),
            errors=tuple(self.errors),
        )


class FolderPlanExecutor:
    """Runs a ``FolderPlan`` against disk in one of the four provisioning modes."""

    def __init__(self, *, logger: logging.Logger | None = None) -> None:
        self.logger = logger or logging.getLogger(__name__)

    def execute(
        self,
        mode: ProvisioningMode,
        plan: FolderPlan,
        *,
        seeds_path: Path | None,
        tokens: ProvisioningTokens,
    ) -> ExecutionResult:
        if mode is ProvisioningMode.PLAN:
            return ExecutionResult()
        if mode is ProvisioningMode.VERIFY:
            return self._verify(plan)
        if mode is ProvisioningMode.APPLY:
            return self._apply(plan, seeds_path=seeds_path, tokens=tokens, overwrite_seeded=False)
        if mode is ProvisioningMode.REPAIR:
            return self._apply(plan, seeds_path=seeds_path, tokens=tokens, overwrite_seeded=True)
        raise ValueError(f"Unsupported provisioning mode: {mode!r}")

    def _verify(self, plan: FolderPlan) -> ExecutionResult:
        outcome = _Outcome()
        for item in plan.items:
            if item.optional:
                continue
            present = item.absolute_path.is_dir() if item.kind is NodeKind.FOLDER else item.absolute_path.is_file()
            if not present:
                outcome.missing_required.append(item.relative_path)
        if outcome.missing_required:
            self.logger.info("Verify of %s: %d required items missing", plan.target_root, len(outcome.missing_required))
        return outcome.freeze()

    def _apply(
        self,
        plan: FolderPlan,
        *,
        seeds_path: Path | None,
        tokens: ProvisioningTokens,
        overwrite_seeded: bool,
    ) -> ExecutionResult:
        outcome = _Outcome()
        try:
            plan.target_root.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            outcome.errors.append(f"Failed to create target root {plan.target_root}: {exc}")
            return outcome.freeze()

        for item in plan.items:
            if item.kind is NodeKind.FOLDER:
                self._apply_folder(item, outcome)
            else:
                self._apply_file(item, outcome, seeds_path=seeds_path, tokens=tokens, overwrite_seeded=overwrite_seeded)

        self.logger.info(
            "Applied plan for %s: %d created, %d warnings, %d errors",
            plan.target_root,
            len(outcome.created),
            len(outcome.warnings),
            len(outcome.errors),
        )
        return outcome.freeze()

    def _apply_folder(self, item: PlanItem, outcome: _Outcome) -> None:
        if item.absolute_path.is_dir():
            return
        try:
            item.absolute_path.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            outcome.errors.append(f"Failed to create {item.relative_path}: {exc}")
            return
        outcome.created.append(item)

    def _apply_file(
        self,
        item: PlanItem,
        outcome: _Outcome,
        *,
        seeds_path: Path | None,
        tokens: ProvisioningTokens,
        overwrite_seeded: bool,
    ) -> None:
        target = item.absolute_path
        existed = target.exists()
        if existed and not (overwrite_seeded and item.is_seeded):
            return

        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            if item.source_relpath:
                source = (seeds_path / item.source_relpath) if seeds_path is not None else None
                if source is None or not source.is_file():
                    message = f"Seed file missing for {item.relative_path}: {source or item.source_relpath}"
                    (outcome.warnings if item.optional else outcome.errors).append(message)
                    return
                shutil.copyfile(source, target)
            elif item.content_template_key:
                content = render_content_template(item.content_template_key, tokens)
                if content is None:
                    outcome.errors.append(
                        f"Unknown content template {item.content_template_key!r} for {item.relative_path}"
                    )
                    return
                target.write_text(content, encoding="utf-8")
            elif not existed:
                target.touch()
        except OSError as exc:
            outcome.errors.append(f"Failed to write {item.relative_path}: {exc}")
            return

        self.logger.debug("Wrote %s", item.relative_path)
        outcome.created.append(item)
