from __future__ import annotations

import logging
import time
from dataclasses import replace
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Mapping, TypedDict

from langgraph.graph import END, START, StateGraph

from .fsops import Sleep, delete_tree_with_retry
from .guards import (
    build_test_container_base_path,
    build_test_container_target_path,
    check_bootstrap_status,
    check_data_profile,
    should_register_storage_root,
    storage_root_key,
    validate_test_cleanup,
)
from .models import (
    BootstrapDomainResult,
    BootstrapJobPayload,
    BootstrapRequest,
    BootstrapRunResult,
    DomainDefinition,
    ProjectRecord,
    ProjectStatus,
    ProvisioningMode,
    ProvisioningRequest,
    ProvisioningResult,
    ProvisioningSummary,
    ProvisioningTokens,
    StorageRootCandidate,
)
from .path_safety import is_path_under_root, try_build_folder_relpath
from .provisioner import FolderProvisioner
from .settings import RuntimeSettings
from .state_store import JsonProjectStore

logger = logging.getLogger(__name__)

DEFAULT_DOMAINS: tuple[DomainDefinition, ...] = (
    DomainDefinition(
        domain_key="dropbox",
        storage_provider_key="dropbox",
        root_template_file="domain_dropbox_root.json",
        container_template_file="dropbox_project_container.json",
        container_subfolder="02_Projects_Active",
    ),
    DomainDefinition(
        domain_key="lucidlink",
        storage_provider_key="lucidlink",
        root_template_file="domain_lucidlink_root.json",
        container_template_file="lucidlink_production_container.json",
        container_subfolder="01_Productions_Active",
    ),
    DomainDefinition(
        domain_key="nas",
        storage_provider_key="nas",
        root_template_file="domain_nas_root.json",
        container_template_file="nas_archive_container.json",
        container_subfolder="01_Projects_Archive",
    ),
)

_READY_ROOT_STATES = frozenset({"ready_existing_root", "root_created", "root_verified"})


class DomainBootstrapState(TypedDict, total=False):
    domain: DomainDefinition
    request: BootstrapRequest
    tokens: ProvisioningTokens
    root_path: Path | None
    root_exists: bool
    root_state: str
    domain_root_provisioning: ProvisioningSummary | None
    project_container_provisioning: ProvisioningSummary | None
    container_result: ProvisioningResult | None
    storage_root: StorageRootCandidate | None
    notes: list[str]
    done: bool


def is_error_root_state(root_state: str) -> bool:
    return root_state.startswith(("blocked_", "cleanup_")) or root_state.endswith("_failed")


def _has_nested_errors(domain: BootstrapDomainResult) -> bool:
    return any(
        summary is not None and bool(summary.errors)
        for summary in (domain.domain_root_provisioning, domain.project_container_provisioning)
    )


def summarize_domains(domains: tuple[BootstrapDomainResult, ...]) -> tuple[bool, str | None]:
    """Return ``(has_errors, last_error)`` for a set of per-domain bootstrap results."""
    any_success = any(
        domain.project_container_provisioning is not None and domain.project_container_provisioning.success
        for domain in domains
    )
    hard_failure = any(is_error_root_state(domain.root_state) or _has_nested_errors(domain) for domain in domains)
    has_errors = hard_failure or not any_success
    if not has_errors:
        return False, None
    if not any_success:
        return True, "No domain provisioning succeeded."
    for domain in domains:
        if domain.domain_root_provisioning is not None and domain.domain_root_provisioning.errors:
            return True, domain.domain_root_provisioning.errors[0]
        if domain.project_container_provisioning is not None and domain.project_container_provisioning.errors:
            return True, domain.project_container_provisioning.errors[0]
        if domain.notes and is_error_root_state(domain.root_state):
            return True, domain.notes[0]
    return True, "project.bootstrap completed with provisioning errors."


class ProjectBootstrapper:
    """Verifies/creates each domain root and provisions the project container inside it.

    Each domain runs through a small LangGraph state machine:
    resolve_root -> prepare_root -> provision_container -> register_storage_root,
    where any node may end the run for that domain with a terminal root state.
    """

    def __init__(
        self,
        settings: RuntimeSettings,
        *,
        provisioner: FolderProvisioner | None = None,
        domains: tuple[DomainDefinition, ...] = DEFAULT_DOMAINS,
        sleep: Sleep = time.sleep,
        logger: logging.Logger | None = None,
    ) -> None:
        self.settings = settings
        self.logger = logger or logging.getLogger(__name__)
        self.provisioner = provisioner or FolderProvisioner(logger=self.logger)
        self.domains = domains
        self.sleep = sleep
        self.graph = self._build_graph().compile()

    def _build_graph(self) -> StateGraph:
        graph = StateGraph(DomainBootstrapState)
        graph.add_node("resolve_root", self._resolve_root_node)
        graph.add_node("prepare_root", self._prepare_root_node)
        graph.add_node("provision_container", self._provision_container_node)
        graph.add_node("register_storage_root", self._register_storage_root_node)

        graph.add_edge(START, "resolve_root")
        graph.add_conditional_edges("resolve_root", self._route, {"continue": "prepare_root", "end": END})
        graph.add_conditional_edges("prepare_root", self._route, {"continue": "provision_container", "end": END})
        graph.add_conditional_edges(
            "provision_container", self._route, {"continue": "register_storage_root", "end": END}
        )
        graph.add_edge("register_storage_root", END)
        return graph

    @staticmethod
    def _route(state: DomainBootstrapState) -> str:
        return "end" if state.get("done") else "continue"

    # -- public API ---------------------------------------------------------

    def run(self, request: BootstrapRequest, project: ProjectRecord) -> BootstrapRunResult:
        blocked = self.preflight(request, project)
        if blocked is not None:
            return blocked
        return self.execute(request, project)

    def preflight(self, request: BootstrapRequest, project: ProjectRecord) -> BootstrapRunResult | None:
        """Return a fully-blocked result when the project may not be provisioned, else ``None``."""
        decision = check_data_profile(project.data_profile, request.allow_non_real, purpose="provisioning")
        if decision.allowed:
            decision = check_bootstrap_status(project.status_key, request.force)
        if decision.allowed:
            return None
        self.logger.warning("Bootstrap of %s blocked: %s", project.project_id, decision.note)
        domains = tuple(
            BootstrapDomainResult(
                domain_key=domain.domain_key,
                root_path=None,
                root_state=decision.root_state or "blocked_status_not_ready",
                notes=(decision.note or "",),
            )
            for domain in self.domains
        )
        return self.build_run_result(request, domains, (), has_errors=True, last_error=decision.note)

    def execute(self, request: BootstrapRequest, project: ProjectRecord) -> BootstrapRunResult:
        tokens = ProvisioningTokens.create(
            project_code=project.project_code,
            project_name=project.name,
            client_name=project.client_name,
            editor_initials=request.editor_initials,
        )
        domain_results: list[BootstrapDomainResult] = []
        candidates: list[StorageRootCandidate] = []
        for domain in self.domains:
            final = self.graph.invoke({"domain": domain, "request": request, "tokens": tokens, "notes": []})
            root_path = final.get("root_path")
            domain_result = BootstrapDomainResult(
                domain_key=domain.domain_key,
                root_path=str(root_path) if root_path is not None else None,
                root_state=final.get("root_state", "unknown"),
                domain_root_provisioning=final.get("domain_root_provisioning"),
                project_container_provisioning=final.get("project_container_provisioning"),
                notes=tuple(final.get("notes", [])),
            )
            self.logger.info("Bootstrap domain %s: %s", domain.domain_key, domain_result.root_state)
            domain_results.append(domain_result)
            if final.get("storage_root") is not None:
                candidates.append(final["storage_root"])

        domains = tuple(domain_results)
        has_errors, last_error = summarize_domains(domains)
        return self.build_run_result(request, domains, tuple(candidates), has_errors=has_errors, last_error=last_error)

    # -- graph nodes --------------------------------------------------------

    def _resolve_root_node(self, state: DomainBootstrapState) -> dict[str, Any]:
        domain = state["domain"]
        request = state["request"]
        if request.force_sandbox:
            root_path: Path | None = self.settings.sandbox_root_for(domain.domain_key)
        else:
            root_path = self.settings.root_path_for(domain.domain_key)

        if root_path is None:
            return {
                "root_path": None,
                "root_state": "skipped_unconfigured",
                "notes": [*state["notes"], "Root path not configured."],
                "done": True,
            }
        if request.force_sandbox and not is_path_under_root(self.settings.workspace_root_path, root_path):
            return {
                "root_path": root_path,
                "root_state": "blocked_sandbox_outside_repo",
                "notes": [*state["notes"], "Sandbox root must be within the workspace runtime folder."],
                "done": True,
            }
        return {"root_path": root_path}

    def _prepare_root_node(self, state: DomainBootstrapState) -> dict[str, Any]:
        domain = state["domain"]
        request = state["request"]
        tokens = state["tokens"]
        root_path = state["root_path"]
        notes = list(state["notes"])
        template_path = self.settings.templates_path / domain.root_template_file
        base_path = _parent_of(root_path, domain.domain_key)

        summary: ProvisioningSummary | None = None
        root_exists = root_path.is_dir()
        if not root_exists:
            if not request.create_domain_roots:
                return {
                    "root_state": "blocked_missing_root",
                    "notes": [*notes, "Root path missing and createDomainRoots=false."],
                    "done": True,
                }
            created = self._execute_template(
                template_path, base_path, tokens, ProvisioningMode.APPLY, root_name_override=root_path.name
            )
            summary = ProvisioningSummary.from_result(created)
            root_exists = root_path.is_dir()
            root_state = "root_created" if created.success else "root_create_failed"
            if created.success and request.verify_domain_roots:
                verified = self._verify_or_repair(
                    template_path, base_path, tokens, request.allow_repair, root_name_override=root_path.name
                )
                summary = ProvisioningSummary.from_result(verified)
                root_state = "root_verified" if verified.success else "root_verify_failed"
        elif request.verify_domain_roots:
            verified = self._verify_or_repair(
                template_path, base_path, tokens, request.allow_repair, root_name_override=root_path.name
            )
            summary = ProvisioningSummary.from_result(verified)
            root_state = "root_verified" if verified.success else "root_verify_failed"
        else:
            root_state = "ready_existing_root"

        if not root_exists:
            notes.append("Root path still missing after domain root attempt.")
        return {
            "root_exists": root_exists,
            "root_state": root_state,
            "domain_root_provisioning": summary,
            "notes": notes,
        }

    def _provision_container_node(self, state: DomainBootstrapState) -> dict[str, Any]:
        domain = state["domain"]
        request = state["request"]
        tokens = state["tokens"]
        root_path = state["root_path"]
        notes = list(state["notes"])

        if not request.provision_project_containers:
            return {"notes": [*notes, "Project containers skipped (provisionProjectContainers=false)."]}
        if not state.get("root_exists") or state.get("root_state") not in _READY_ROOT_STATES:
            return {"notes": [*notes, "Project containers skipped because root is not ready."]}

        if request.test_mode:
            base_path = build_test_container_base_path(root_path)
            test_target = build_test_container_target_path(root_path, tokens)
            if test_target.exists():
                cleanup_error = validate_test_cleanup(root_path, test_target, request.allow_test_cleanup)
                if cleanup_error is not None:
                    self.logger.warning("Test cleanup blocked for %s: %s", test_target, cleanup_error)
                    return {"root_state": "blocked_test_cleanup", "notes": [*notes, cleanup_error], "done": True}
                outcome = delete_tree_with_retry(test_target, sleep=self.sleep)
                if not outcome.success:
                    return {
                        "root_state": "cleanup_locked",
                        "notes": [*notes, outcome.error or "Test cleanup failed (locked; cleanup skipped)."],
                        "done": True,
                    }
                self.logger.info("Removed previous test run %s", test_target)
        else:
            base_path = root_path / domain.container_subfolder

        template_path = self.settings.templates_path / domain.container_template_file
        self._execute_template(template_path, base_path, tokens, ProvisioningMode.APPLY)
        verified = self._verify_or_repair(template_path, base_path, tokens, request.allow_repair)
        return {
            "container_result": verified,
            "project_container_provisioning": ProvisioningSummary.from_result(verified),
        }

    def _register_storage_root_node(self, state: DomainBootstrapState) -> dict[str, Any]:
        root_state = state.get("root_state", "")
        container = state.get("project_container_provisioning")
        if not should_register_storage_root(root_state, container):
            return {"done": True}

        domain = state["domain"]
        root_path = state["root_path"]
        container_result = state.get("container_result")
        if container_result is None or root_path is None:
            ok, relpath, error = False, None, "Container result was missing."
        else:
            ok, relpath, error = try_build_folder_relpath(root_path, container_result.target_root)
        if not ok or relpath is None:
            return {
                "root_state": "storage_root_failed",
                "notes": [*state["notes"], error or "Unable to build storage root relpath."],
            }
        return {
            "storage_root": StorageRootCandidate(
                domain_key=domain.domain_key,
                storage_provider_key=domain.storage_provider_key,
                root_key=storage_root_key(state["request"].test_mode),
                folder_relpath=relpath,
            )
        }

    # -- helpers ------------------------------------------------------------

    def _execute_template(
        self,
        template_path: Path,
        base_path: Path,
        tokens: ProvisioningTokens,
        mode: ProvisioningMode,
        *,
        root_name_override: str | None = None,
    ) -> ProvisioningResult:
        return self.provisioner.execute(
            ProvisioningRequest(
                mode=mode,
                template_path=template_path,
                base_path=base_path,
                tokens=tokens,
                editor_nodes_optional=True,
                root_name_override=root_name_override,
            )
        )

    def _verify_or_repair(
        self,
        template_path: Path,
        base_path: Path,
        tokens: ProvisioningTokens,
        allow_repair: bool,
        *,
        root_name_override: str | None = None,
    ) -> ProvisioningResult:
        """Verify; when allowed, repair a failed verify and verify again so the final state is confirmed."""
        verified = self._execute_template(
            template_path, base_path, tokens, ProvisioningMode.VERIFY, root_name_override=root_name_override
        )
        if verified.success or not allow_repair:
            return verified
        self.logger.info("Repairing %s under %s", template_path.name, base_path)
        repaired = self._execute_template(
            template_path,
            base_path,
            tokens,
            ProvisioningMode.REPAIR,
            root_name_override=root_name_override,
        )
        if not repaired.success:
            return repaired
        return self._execute_template(
            template_path, base_path, tokens, ProvisioningMode.VERIFY, root_name_override=root_name_override
        )

    def build_run_result(
        self,
        request: BootstrapRequest,
        domains: tuple[BootstrapDomainResult, ...],
        storage_roots: tuple[StorageRootCandidate, ...],
        *,
        has_errors: bool,
        last_error: str | None,
    ) -> BootstrapRunResult:
        return BootstrapRunResult(
            job_id=request.job_id,
            project_id=request.project_id,
            editor_initials=request.editor_initials,
            started_at_utc=datetime.now(UTC).isoformat(),
            verify_domain_roots=request.verify_domain_roots,
            create_domain_roots=request.create_domain_roots,
            provision_project_containers=request.provision_project_containers,
            allow_repair=request.allow_repair,
            force_sandbox=request.force_sandbox,
            allow_non_real=request.allow_non_real,
            force=request.force,
            test_mode=request.test_mode,
            allow_test_cleanup=request.allow_test_cleanup,
            domains=domains,
            has_errors=has_errors,
            last_error=last_error,
            storage_roots=storage_roots,
        )


def _parent_of(root_path: Path, domain_key: str) -> Path:
    parent = root_path.parent
    if parent == root_path:
        raise ValueError(f"Root path has no parent for domain {domain_key}: {root_path}")
    return parent


class BootstrapProjectUseCase:
    """``project.bootstrap`` job: gates, status transitions, storage-root registration and run history."""

    def __init__(
        self,
        bootstrapper: ProjectBootstrapper,
        project_store: JsonProjectStore,
        *,
        logger: logging.Logger | None = None,
    ) -> None:
        self.bootstrapper = bootstrapper
        self.project_store = project_store
        self.logger = logger or logging.getLogger(__name__)

    def run(self, payload: BootstrapJobPayload | Mapping[str, Any], *, job_id: str) -> BootstrapRunResult:
        if not isinstance(payload, BootstrapJobPayload):
            payload = BootstrapJobPayload.model_validate(payload)
        request = payload.to_request(job_id)
        project = self.project_store.get(request.project_id)

        blocked = self.bootstrapper.preflight(request, project)
        if blocked is not None:
            self.project_store.append_run(project.project_id, "provisioning", blocked)
            return blocked

        self.project_store.set_status(project.project_id, ProjectStatus.PROVISIONING.value)
        try:
            result = self.bootstrapper.execute(request, project)
        except Exception as exc:
            self.logger.exception("project.bootstrap failed for %s", project.project_id)
            failed = self.bootstrapper.build_run_result(request, (), (), has_errors=True, last_error=str(exc))
            self.project_store.append_run(project.project_id, "provisioning", failed)
            self.project_store.set_status(project.project_id, ProjectStatus.PROVISION_FAILED.value)
            raise

        result = self._register_storage_roots(project.project_id, result)
        self.project_store.append_run(project.project_id, "provisioning", result)
        final_status = ProjectStatus.PROVISION_FAILED if result.has_errors else ProjectStatus.ACTIVE
        self.project_store.set_status(project.project_id, final_status.value)
        return result

    def _register_storage_roots(self, project_id: str, result: BootstrapRunResult) -> BootstrapRunResult:
        failures: dict[str, str] = {}
        for candidate in result.storage_roots:
            try:
                self.project_store.upsert_storage_root(project_id, candidate)
            except (OSError, ValueError) as exc:
                self.logger.error("Storage root upsert failed for %s/%s: %s", project_id, candidate.domain_key, exc)
                failures[candidate.domain_key] = f"Storage root upsert failed: {exc}"
        if not failures:
            return result

        domains = tuple(
            replace(domain, root_state="storage_root_failed", notes=(*domain.notes, failures[domain.domain_key]))
            if domain.domain_key in failures
            else domain
            for domain in result.domains
        )
        has_errors, last_error = summarize_domains(domains)
        return replace(result, domains=domains, has_errors=has_errors, last_error=last_error)
