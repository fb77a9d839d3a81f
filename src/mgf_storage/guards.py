from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

from .models import ProjectStatus, ProvisioningSummary, ProvisioningTokens
from .path_safety import ensure_safe_segment, is_path_under_root, normalize_path

logger = logging.getLogger(__name__)

TEST_RUNS_FOLDER = "99_TestRuns"
ROOT_KEY_TEST_RUN = "test_run"
ROOT_KEY_PROJECT_CONTAINER = "project_container"


@dataclass(frozen=True)
class GateDecision:
    allowed: bool
    root_state: str | None = None
    note: str | None = None


def check_data_profile(data_profile: str | None, allow_non_real: bool, *, purpose: str) -> GateDecision:
    """Only ``real`` projects touch production storage unless explicitly overridden."""
    if allow_non_real or (data_profile or "").strip().casefold() == "real":
        return GateDecision(allowed=True)
    return GateDecision(
        allowed=False,
        root_state="blocked_non_real",
        note=f"Project data_profile='{data_profile}' is not eligible for {purpose}.",
    )


def check_bootstrap_status(status_key: str, force: bool) -> GateDecision:
    if force:
        return GateDecision(allowed=True)
    status = (status_key or "").strip().casefold()
    if status == ProjectStatus.PROVISIONING.value:
        return GateDecision(False, "blocked_already_provisioning", "Project is already provisioning.")
    if status != ProjectStatus.READY_TO_PROVISION.value:
        return GateDecision(
            False,
            "blocked_status_not_ready",
            f"Project status '{status_key}' is not ready_to_provision.",
        )
    return GateDecision(allowed=True)


def check_archive_status(status_key: str, force: bool) -> GateDecision:
    """Archive gate. A run already in flight blocks even when forced."""
    status = (status_key or "").strip().casefold()
    if status == ProjectStatus.ARCHIVING.value:
        return GateDecision(False, "blocked_already_archiving", "Project is already archiving.")
    if force:
        return GateDecision(allowed=True)
    if status in {ProjectStatus.TO_ARCHIVE.value, ProjectStatus.ARCHIVE_FAILED.value}:
        return GateDecision(allowed=True)
    if status == ProjectStatus.ARCHIVED.value:
        return GateDecision(False, "blocked_status_not_ready", "Project is already archived.")
    return GateDecision(False, "blocked_status_not_ready", "Project status is not eligible for archiving.")


def build_test_container_base_path(root_path: Path) -> Path:
    return root_path / TEST_RUNS_FOLDER


def build_test_container_target_path(root_path: Path, tokens: ProvisioningTokens) -> Path:
    folder_name = (
        f"{tokens.project_code or 'PROJECT'}_{tokens.client_name or 'CLIENT'}_{tokens.project_name or 'PROJECT'}"
    )
    ensure_safe_segment(folder_name, "Test run folder name")
    return root_path / TEST_RUNS_FOLDER / folder_name


def validate_test_cleanup(root_path: Path, target_path: Path, allow_test_cleanup: bool) -> str | None:
    """Return why deleting ``target_path`` is not allowed, or ``None`` when it is."""
    if not target_path.exists():
        return None
    if not allow_test_cleanup:
        return "Test target exists; set allowTestCleanup=true to delete and re-run."
    if not is_path_under_root(root_path, target_path, allow_equal=False):
        return "Test cleanup blocked because target is outside the configured root."
    relative = os.path.relpath(normalize_path(target_path), normalize_path(root_path))
    first_segment = Path(relative).parts[0] if Path(relative).parts else ""
    if first_segment.casefold() != TEST_RUNS_FOLDER.casefold():
        return f"Test cleanup blocked because target is not under {TEST_RUNS_FOLDER}."
    return None


def storage_root_key(test_mode: bool) -> str:
    return ROOT_KEY_TEST_RUN if test_mode else ROOT_KEY_PROJECT_CONTAINER


def should_register_storage_root(root_state: str, container: ProvisioningSummary | None) -> bool:
    if container is None or not container.success:
        return False
    return not root_state.startswith("blocked_") and not root_state.endswith("_failed")
