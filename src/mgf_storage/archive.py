from __future__ import annotations

import logging
import shutil
import time
from dataclasses import replace
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Mapping, TypedDict

from langgraph.graph import END, START, StateGraph

from .fsops import Sleep, copy_tree, delete_tree_with_retry, move_with_retry
from .guards import TEST_RUNS_FOLDER, check_archive_status, check_data_profile, validate_test_cleanup
from .models import (
    ArchiveActionSummary,
    ArchiveDomainResult,
    ArchiveJobPayload,
    ArchivePathTemplates,
    ArchiveRequest,
    ArchiveRunResult,
    MalformedTemplate,
    ProjectRecord,
    ProjectStatus,
    ProvisioningMode,
    ProvisioningRequest,
    ProvisioningResult,
    ProvisioningSummary,
    ProvisioningTokens,
    TemplateError,
)
from .path_safety import ensure_safe_segment
from .provisioner import FolderProvisioner
from .settings import RuntimeSettings
from .state_store import JsonProjectStore
from .templates import expand_root_name

logger = logging.getLogger(__name__)

DROPBOX_CONTAINER_TEMPLATE = "dropbox_project_container.json"
NAS_ARCHIVE_TEMPLATE = "nas_archive_container.json"
LUCIDLINK_ACTIVE_FOLDER = "01_Productions_Active"
NAS_SNAPSHOT_RELPATH = ("03_ProjectFiles_Snapshots", "LucidLink")

ARCHIVE_DOMAINS = ("dropbox", "lucidlink", "nas")
_NAS_SUCCESS_STATES = frozenset({"archived", "already_archived", "archive_verified", "source_found"})
_DROPBOX_FINALIZABLE_STATES = frozenset({"ready_to_archive", "already_archived"})
_MISSING_SOURCE_STATES = frozenset({"container_missing", "source_missing", "archive_move_missing"})


class ArchiveState(TypedDict, total=False):
    request: ArchiveRequest
    tokens: ProvisioningTokens
    project_folder: str
    dropbox: ArchiveDomainResult
    lucidlink: ArchiveDomainResult
    nas: ArchiveDomainResult


def is_archive_domain_error(result: ArchiveDomainResult) -> bool:
    state = result.root_state
    return (
        state.startswith(("blocked_", "cleanup_"))
        or state.endswith("_failed")
        or state in _MISSING_SOURCE_STATES
    )


def summarize_archive_domains(domains: tuple[ArchiveDomainResult, ...]) -> tuple[bool, str | None]:
    has_errors = any(is_archive_domain_error(domain) for domain in domains)
    if not has_errors:
        return False, None
    for domain in domains:
        if domain.notes and is_archive_domain_error(domain):
            return True, domain.notes[0]
    for domain in domains:
        if domain.target_provisioning is not None and domain.target_provisioning.errors:
            return True, domain.target_provisioning.errors[0]
    return True, "project.archive completed with errors."


class ProjectArchiver:
    """Moves a project out of the active storage domains and into the archive.

    The run is a LangGraph pipeline: dropbox staging -> lucidlink source check ->
    nas archive copy -> (finalize dropbox move). Every step decides from what is
    on disk, so re-running after a partial failure resumes where it stopped.
    """

    def __init__(
        self,
        settings: RuntimeSettings,
        *,
        provisioner: FolderProvisioner | None = None,
        path_templates: ArchivePathTemplates | None = None,
        sleep: Sleep = time.sleep,
        logger: logging.Logger | None = None,
    ) -> None:
        self.settings = settings
        self.logger = logger or logging.getLogger(__name__)
        self.provisioner = provisioner or FolderProvisioner(logger=self.logger)
        self.path_templates = path_templates or settings.archive_path_templates()
        self.sleep = sleep
        self.graph = self._build_graph().compile()

    def _build_graph(self) -> StateGraph:
        graph = StateGraph(ArchiveState)
        graph.add_node("dropbox", self._dropbox_node)
        graph.add_node("lucidlink", self._lucidlink_node)
        graph.add_node("nas", self._nas_node)
        graph.add_node("finalize_dropbox", self._finalize_dropbox_node)

        graph.add_edge(START, "dropbox")
        graph.add_edge("dropbox", "lucidlink")
        graph.add_edge("lucidlink", "nas")
        graph.add_conditional_edges("nas", self._finalize_route, {"finalize": "finalize_dropbox", "end": END})
        graph.add_edge("finalize_dropbox", END)
        return graph

    @staticmethod
    def _finalize_route(state: ArchiveState) -> str:
        nas_ok = state["nas"].root_state in _NAS_SUCCESS_STATES
        dropbox_ready = state["dropbox"].root_state in _DROPBOX_FINALIZABLE_STATES
        return "finalize" if nas_ok and dropbox_ready else "end"

    # -- public API ---------------------------------------------------------

    def run(self, request: ArchiveRequest, project: ProjectRecord) -> ArchiveRunResult:
        blocked = self.preflight(request, project)
        if blocked is not None:
            return blocked
        return self.execute(request, project)

    def preflight(self, request: ArchiveRequest, project: ProjectRecord) -> ArchiveRunResult | None:
        decision = check_data_profile(project.data_profile, request.allow_non_real, purpose="archive")
        if decision.allowed:
            decision = check_archive_status(project.status_key, request.force)
        if decision.allowed:
            return None
        self.logger.warning("Archive of %s blocked: %s", project.project_id, decision.note)
        domains = tuple(
            ArchiveDomainResult(
                domain_key=domain_key,
                root_path=None,
                root_state=decision.root_state or "blocked_status_not_ready",
                notes=(decision.note or "",),
            )
            for domain_key in ARCHIVE_DOMAINS
        )
        return self.build_run_result(request, domains, has_errors=True, last_error=decision.note)

    def execute(self, request: ArchiveRequest, project: ProjectRecord) -> ArchiveRunResult:
        tokens = ProvisioningTokens.create(
            project_code=project.project_code,
            project_name=project.name,
            client_name=project.client_name,
            editor_initials=request.editor_initials,
        )
        project_folder = self.resolve_project_folder_name(tokens)
        final = self.graph.invoke({"request": request, "tokens": tokens, "project_folder": project_folder})
        domains = (final["dropbox"], final["lucidlink"], final["nas"])
        has_errors, last_error = summarize_archive_domains(domains)
        for domain in domains:
            self.logger.info("Archive domain %s: %s", domain.domain_key, domain.root_state)
        return self.build_run_result(request, domains, has_errors=has_errors, last_error=last_error)

    def resolve_project_folder_name(self, tokens: ProvisioningTokens) -> str:
        """The project's folder name is the expanded root name of the dropbox container template."""
        loaded = self.provisioner.loader.load(self.settings.templates_path / DROPBOX_CONTAINER_TEMPLATE)
        if loaded.template.root is None:
            raise MalformedTemplate(f"Template {loaded.template_path} is missing its root node")
        folder_name = expand_root_name(loaded.template.root.name, tokens)
        ensure_safe_segment(folder_name, "Project folder name")
        return folder_name

    # -- dropbox ------------------------------------------------------------

    def _dropbox_paths(self, root: Path, project_folder: str, test_mode: bool) -> tuple[Path, Path, Path, Path]:
        base = root / TEST_RUNS_FOLDER if test_mode else root
        templates = self.path_templates
        return (
            base,
            base / templates.dropbox_active_relpath / project_folder,
            base / templates.dropbox_to_archive_relpath / project_folder,
            base / templates.dropbox_archive_relpath / project_folder,
        )

    def _dropbox_node(self, state: ArchiveState) -> dict[str, Any]:
        request = state["request"]
        folder = state["project_folder"]
        root = self.settings.root_path_for("dropbox")
        if root is None:
            return {"dropbox": _domain("dropbox", None, "skipped_unconfigured", notes=["Dropbox root not configured."])}
        if not root.is_dir():
            return {"dropbox": _domain("dropbox", root, "blocked_missing_root", notes=["Dropbox root missing."])}

        base, active, staging, archived = self._dropbox_paths(root, folder, request.test_mode)
        if request.test_mode:
            flat_active = base / folder
            if not active.is_dir() and flat_active.is_dir():
                active = flat_active
            stale: list[Path] = []
            for candidate in (staging, archived, flat_active):
                if candidate == active or candidate in stale or not candidate.is_dir():
                    continue
                stale.append(candidate)
            for target in stale:
                blocked = self._cleanup_test_target("dropbox", root, target, request.allow_test_cleanup)
                if blocked is not None:
                    return {"dropbox": blocked}

        staging.parent.mkdir(parents=True, exist_ok=True)
        archived.parent.mkdir(parents=True, exist_ok=True)

        if archived.is_dir():
            return {"dropbox": _domain("dropbox", root, "already_archived")}
        if staging.is_dir():
            return {"dropbox": _domain("dropbox", root, "ready_to_archive")}
        if not active.is_dir():
            return {
                "dropbox": _domain("dropbox", root, "container_missing", notes=["Dropbox active container not found."])
            }

        moved, error = move_with_retry(active, staging, sleep=self.sleep)
        action = ArchiveActionSummary(
            action="move_to_archive_staging",
            source_path=str(active),
            destination_path=str(staging),
            success=moved,
            error=error,
        )
        if moved:
            self.logger.info("Moved %s to archive staging %s", active, staging)
            return {"dropbox": _domain("dropbox", root, "ready_to_archive", actions=[action])}
        self.logger.error("Move of %s to staging failed: %s", active, error)
        return {"dropbox": _domain("dropbox", root, "move_failed", actions=[action], notes=[error or "Move failed."])}

    def _finalize_dropbox_node(self, state: ArchiveState) -> dict[str, Any]:
        dropbox = state["dropbox"]
        request = state["request"]
        root = Path(dropbox.root_path or "")
        _, _, staging, archived = self._dropbox_paths(root, state["project_folder"], request.test_mode)

        if archived.is_dir():
            return {"dropbox": replace(dropbox, root_state="already_archived")}
        if not staging.is_dir():
            return {
                "dropbox": replace(
                    dropbox,
                    root_state="archive_move_missing",
                    notes=(*dropbox.notes, "Dropbox staging folder not found when finalizing archive."),
                )
            }

        moved, error = move_with_retry(staging, archived, sleep=self.sleep)
        action = ArchiveActionSummary(
            action="move_to_archive",
            source_path=str(staging),
            destination_path=str(archived),
            success=moved,
            error=error,
        )
        if moved:
            self.logger.info("Archived dropbox container to %s", archived)
            return {"dropbox": replace(dropbox, root_state="archived", actions=(*dropbox.actions, action))}
        return {
            "dropbox": replace(
                dropbox,
                root_state="archive_move_failed",
                actions=(*dropbox.actions, action),
                notes=(*dropbox.notes, error or "Move failed."),
            )
        }

    # -- lucidlink ----------------------------------------------------------

    def _lucidlink_source(self, root: Path, project_folder: str, test_mode: bool) -> Path:
        base = root / TEST_RUNS_FOLDER if test_mode else root / LUCIDLINK_ACTIVE_FOLDER
        return base / project_folder

    def _lucidlink_node(self, state: ArchiveState) -> dict[str, Any]:
        root = self.settings.root_path_for("lucidlink")
        if root is None:
            return {
                "lucidlink": _domain("lucidlink", None, "skipped_unconfigured", notes=["LucidLink root not configured."])
            }
        source = self._lucidlink_source(root, state["project_folder"], state["request"].test_mode)
        if not source.is_dir():
            return {
                "lucidlink": _domain(
                    "lucidlink", root, "source_missing", notes=["LucidLink production container not found."]
                )
            }
        return {"lucidlink": _domain("lucidlink", root, "source_found")}

    # -- nas ----------------------------------------------------------------

    def _execute_template(
        self, template_path: Path, base_path: Path, tokens: ProvisioningTokens, mode: ProvisioningMode
    ) -> ProvisioningResult:
        return self.provisioner.execute(
            ProvisioningRequest(
                mode=mode,
                template_path=template_path,
                base_path=base_path,
                tokens=tokens,
                editor_nodes_optional=True,
            )
        )

    def _nas_node(self, state: ArchiveState) -> dict[str, Any]:
        request = state["request"]
        folder = state["project_folder"]
        root = self.settings.root_path_for("nas")
        if root is None:
            return {"nas": _domain("nas", None, "skipped_unconfigured", notes=["NAS root not configured."])}
        if not root.is_dir():
            return {"nas": _domain("nas", root, "blocked_missing_root", notes=["NAS root missing."])}

        base = root / TEST_RUNS_FOLDER if request.test_mode else root / self.path_templates.nas_archive_relpath
        target = base / folder
        if request.test_mode and target.exists():
            blocked = self._cleanup_test_target("nas", root, target, request.allow_test_cleanup)
            if blocked is not None:
                return {"nas": blocked}

        template_path = self.settings.templates_path / NAS_ARCHIVE_TEMPLATE
        try:
            self._execute_template(template_path, base, state["tokens"], ProvisioningMode.APPLY)
            verified = self._execute_template(template_path, base, state["tokens"], ProvisioningMode.VERIFY)
        except TemplateError:
            raise
        except OSError as exc:
            self.logger.exception("NAS archive template failed under %s", base)
            return {"nas": _domain("nas", root, "archive_apply_failed", notes=[str(exc)])}

        summary = ProvisioningSummary.from_result(verified)
        if not summary.success:
            return {
                "nas": _domain(
                    "nas", root, "archive_verify_failed", provisioning=summary, notes=["NAS archive template verify failed."]
                )
            }

        lucidlink = state["lucidlink"]
        lucidlink_root = self.settings.root_path_for("lucidlink")
        if lucidlink.root_state != "source_found" or lucidlink_root is None:
            return {
                "nas": _domain("nas", root, "source_missing", provisioning=summary, notes=["LucidLink source missing; skip copy."])
            }

        source = self._lucidlink_source(lucidlink_root, folder, request.test_mode)
        snapshot = target.joinpath(*NAS_SNAPSHOT_RELPATH)
        try:
            copy_tree(source, snapshot)
        except (OSError, shutil.Error) as exc:
            action = ArchiveActionSummary("copy_lucidlink_to_nas", str(source), str(snapshot), False, str(exc))
            self.logger.error("Copy %s -> %s failed: %s", source, snapshot, exc)
            return {
                "nas": _domain("nas", root, "copy_failed", provisioning=summary, actions=[action], notes=[str(exc)])
            }
        action = ArchiveActionSummary("copy_lucidlink_to_nas", str(source), str(snapshot), True)
        self.logger.info("Copied LucidLink snapshot into %s", snapshot)
        return {"nas": _domain("nas", root, "archive_verified", provisioning=summary, actions=[action])}

    # -- helpers ------------------------------------------------------------

    def _cleanup_test_target(
        self, domain_key: str, root: Path, target: Path, allow_test_cleanup: bool
    ) -> ArchiveDomainResult | None:
        """Delete a stale test-run folder; returns a terminal domain result when that is not possible."""
        error = validate_test_cleanup(root, target, allow_test_cleanup)
        if error is not None:
            self.logger.warning("Test cleanup blocked for %s: %s", target, error)
            return _domain(domain_key, root, "blocked_test_cleanup", notes=[error])
        outcome = delete_tree_with_retry(target, sleep=self.sleep)
        if not outcome.success:
            return _domain(
                domain_key, root, "cleanup_locked", notes=[outcome.error or "Test cleanup failed (locked; cleanup skipped)."]
            )
        return None

    def build_run_result(
        self,
        request: ArchiveRequest,
        domains: tuple[ArchiveDomainResult, ...],
        *,
        has_errors: bool,
        last_error: str | None,
    ) -> ArchiveRunResult:
        return ArchiveRunResult(
            job_id=request.job_id,
            project_id=request.project_id,
            editor_initials=request.editor_initials,
            started_at_utc=datetime.now(UTC).isoformat(),
            test_mode=request.test_mode,
            allow_test_cleanup=request.allow_test_cleanup,
            allow_non_real=request.allow_non_real,
            force=request.force,
            domains=domains,
            has_errors=has_errors,
            last_error=last_error,
        )


def _domain(
    domain_key: str,
    root: Path | None,
    root_state: str,
    *,
    provisioning: ProvisioningSummary | None = None,
    actions: list[ArchiveActionSummary] | None = None,
    notes: list[str] | None = None,
) -> ArchiveDomainResult:
    return ArchiveDomainResult(
        domain_key=domain_key,
        root_path=str(root) if root is not None else None,
        root_state=root_state,
        target_provisioning=provisioning,
        actions=tuple(actions or ()),
        notes=tuple(notes or ()),
    )


class RunProjectArchiveUseCase:
    """``project.archive`` job: gates, status transitions and bounded run history."""

    def __init__(
        self,
        archiver: ProjectArchiver,
        project_store: JsonProjectStore,
        *,
        logger: logging.Logger | None = None,
    ) -> None:
        self.archiver = archiver
        self.project_store = project_store
        self.logger = logger or logging.getLogger(__name__)

    def run(self, payload: ArchiveJobPayload | Mapping[str, Any], *, job_id: str) -> ArchiveRunResult:
        if not isinstance(payload, ArchiveJobPayload):
            payload = ArchiveJobPayload.model_validate(payload)
        request = payload.to_request(job_id)
        project = self.project_store.get(request.project_id)

        blocked = self.archiver.preflight(request, project)
        if blocked is not None:
            self.project_store.append_run(project.project_id, "archiving", blocked)
            return blocked

        self.project_store.set_status(project.project_id, ProjectStatus.ARCHIVING.value)
        try:
            result = self.archiver.execute(request, project)
        except Exception as exc:
            self.logger.exception("project.archive failed for %s", project.project_id)
            failed = self.archiver.build_run_result(request, (), has_errors=True, last_error=str(exc))
            self.project_store.append_run(project.project_id, "archiving", failed)
            self.project_store.set_status(project.project_id, ProjectStatus.ARCHIVE_FAILED.value)
            raise

        self.project_store.append_run(project.project_id, "archiving", result)
        final_status = ProjectStatus.ARCHIVE_FAILED if result.has_errors else ProjectStatus.ARCHIVED
        self.project_store.set_status(project.project_id, final_status.value)
        return result
