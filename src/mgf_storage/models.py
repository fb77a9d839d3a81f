from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Iterable

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class MgfStorageError(Exception):
    """Base class for structural errors raised by the storage engine."""


class UnsafePathError(MgfStorageError, ValueError):
    pass


class TemplateError(MgfStorageError):
    pass


class TemplateNotFound(TemplateError, FileNotFoundError):
    pass


class SchemaNotFound(TemplateError, FileNotFoundError):
    pass


class SchemaValidationFailed(TemplateError, ValueError):
    pass


class MalformedTemplate(TemplateError, ValueError):
    pass


class TokenExpansionError(MgfStorageError, ValueError):
    pass


class PlanValidationError(MgfStorageError, ValueError):
    pass


class ProjectNotFoundError(MgfStorageError, LookupError):
    pass


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class NodeKind(str, Enum):
    FOLDER = "folder"
    FILE = "file"


class ProvisioningMode(str, Enum):
    PLAN = "plan"
    VERIFY = "verify"
    APPLY = "apply"
    REPAIR = "repair"


class RootIntegrityMode(str, Enum):
    REPORT = "report"
    REPAIR = "repair"


class ProjectStatus(str, Enum):
    READY_TO_PROVISION = "ready_to_provision"
    PROVISIONING = "provisioning"
    ACTIVE = "active"
    PROVISION_FAILED = "provision_failed"
    TO_ARCHIVE = "to_archive"
    ARCHIVING = "archiving"
    ARCHIVED = "archived"
    ARCHIVE_FAILED = "archive_failed"


# ---------------------------------------------------------------------------
# Folder templates (inbound JSON documents)
# ---------------------------------------------------------------------------


class FolderNode(BaseModel):
    """One node of a folder template tree. Names may contain ``{TOKEN}`` placeholders."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    name: str
    kind: NodeKind = NodeKind.FOLDER
    optional: bool = False
    children: tuple[FolderNode, ...] = ()
    notes: str | None = None
    source_relpath: str | None = Field(default=None, alias="sourceRelpath")
    content_template_key: str | None = Field(default=None, alias="contentTemplateKey")

    @field_validator("children", mode="before")
    @classmethod
    def _none_children(cls, value: Any) -> Any:
        return () if value is None else value


class FolderTemplate(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    template_key: str = Field(alias="templateKey")
    display_name: str | None = Field(default=None, alias="displayName")
    description: str | None = None
    naming_rules: dict[str, Any] | None = Field(default=None, alias="namingRules")
    root: FolderNode | None = None

    def with_root_name(self, name: str) -> FolderTemplate:
        if self.root is None:
            return self
        return self.model_copy(update={"root": self.root.model_copy(update={"name": name})})


@dataclass(frozen=True)
class LoadedTemplate:
    template: FolderTemplate
    template_bytes: bytes
    template_path: Path
    schema_path: Path


# ---------------------------------------------------------------------------
# Tokens and plans
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ProvisioningTokens:
    """Values substituted into template placeholders."""

    project_code: str | None = None
    project_name: str | None = None
    client_name: str | None = None
    editor_initials: tuple[str, ...] = ()

    @classmethod
    def create(
        cls,
        project_code: str | None = None,
        project_name: str | None = None,
        client_name: str | None = None,
        editor_initials: Iterable[str] | str | None = None,
    ) -> ProvisioningTokens:
        return cls(
            project_code=project_code,
            project_name=project_name,
            client_name=client_name,
            editor_initials=normalize_editor_initials(editor_initials),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "projectCode": self.project_code,
            "projectName": self.project_name,
            "clientName": self.client_name,
            "editorInitials": list(self.editor_initials),
        }


def normalize_editor_initials(values: Iterable[str] | str | None) -> tuple[str, ...]:
    """Split comma lists, trim, drop blanks and dedupe case-insensitively keeping first-seen order."""
    if values is None:
        return ()
    if isinstance(values, str):
        values = [values]
    seen: set[str] = set()
    ordered: list[str] = []
    for value in values:
        if value is None:
            continue
        for part in str(value).split(","):
            trimmed = part.strip()
            if not trimmed:
                continue
            key = trimmed.casefold()
            if key in seen:
                continue
            seen.add(key)
            ordered.append(trimmed)
    return tuple(ordered)


@dataclass(frozen=True)
class PlanItem:
    kind: NodeKind
    relative_path: str
    absolute_path: Path
    optional: bool = False
    source_relpath: str | None = None
    content_template_key: str | None = None

    @property
    def is_seeded(self) -> bool:
        return bool(self.source_relpath or self.content_template_key)


@dataclass(frozen=True)
class FolderPlan:
    target_root: Path
    items: tuple[PlanItem, ...]


@dataclass(frozen=True)
class ExecutionResult:
    created_items: tuple[PlanItem, ...] = ()
    missing_required: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()
    errors: tuple[str, ...] = ()

    @property
    def success(self) -> bool:
        return not self.errors and not self.missing_required


# ---------------------------------------------------------------------------
# Provisioning
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ProvisioningRequest:
    mode: ProvisioningMode
    template_path: Path
    base_path: Path
    tokens: ProvisioningTokens
    seeds_path: Path | None = None
    schema_path: Path | None = None
    # Orchestrated runs with no editors skip editor-named nodes and reject an editor token in the root name.
    editor_nodes_optional: bool = False
    root_name_override: str | None = None


@dataclass(frozen=True)
class ProvisioningResult:
    mode: ProvisioningMode
    template_key: str
    template_hash: str
    tokens: ProvisioningTokens
    target_root: Path
    expected_items: tuple[PlanItem, ...]
    created_items: tuple[PlanItem, ...]
    missing_required: tuple[str, ...]
    warnings: tuple[str, ...]
    errors: tuple[str, ...]
    manifest_path: Path | None

    @property
    def success(self) -> bool:
        return not self.errors and not self.missing_required


@dataclass(frozen=True)
class ProvisioningSummary:
    """Condensed provisioning outcome carried inside domain results."""

    mode: str
    template_key: str
    target_root: str
    manifest_path: str | None
    success: bool
    missing_required: tuple[str, ...] = ()
    errors: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()

    @classmethod
    def from_result(cls, result: ProvisioningResult) -> ProvisioningSummary:
        return cls(
            mode=result.mode.value,
            template_key=result.template_key,
            target_root=str(result.target_root),
            manifest_path=str(result.manifest_path) if result.manifest_path is not None else None,
            success=result.success,
            missing_required=result.missing_required,
            errors=result.errors,
            warnings=result.warnings,
        )


# ---------------------------------------------------------------------------
# Bootstrap
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DomainDefinition:
    domain_key: str
    storage_provider_key: str
    root_template_file: str
    container_template_file: str
    container_subfolder: str


@dataclass(frozen=True)
class BootstrapDomainResult:
    domain_key: str
    root_path: str | None
    root_state: str
    domain_root_provisioning: ProvisioningSummary | None = None
    project_container_provisioning: ProvisioningSummary | None = None
    notes: tuple[str, ...] = ()


@dataclass(frozen=True)
class StorageRootCandidate:
    domain_key: str
    storage_provider_key: str
    root_key: str
    folder_relpath: str


@dataclass(frozen=True)
class BootstrapRequest:
    job_id: str
    project_id: str
    editor_initials: tuple[str, ...] = ()
    verify_domain_roots: bool = True
    create_domain_roots: bool = False
    provision_project_containers: bool = False
    allow_repair: bool = False
    force_sandbox: bool = False
    allow_non_real: bool = False
    force: bool = False
    test_mode: bool = False
    allow_test_cleanup: bool = False


@dataclass(frozen=True)
class BootstrapRunResult:
    job_id: str
    project_id: str
    editor_initials: tuple[str, ...]
    started_at_utc: str
    verify_domain_roots: bool
    create_domain_roots: bool
    provision_project_containers: bool
    allow_repair: bool
    force_sandbox: bool
    allow_non_real: bool
    force: bool
    test_mode: bool
    allow_test_cleanup: bool
    domains: tuple[BootstrapDomainResult, ...]
    has_errors: bool
    last_error: str | None
    storage_roots: tuple[StorageRootCandidate, ...] = ()


# ---------------------------------------------------------------------------
# Archive
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ArchivePathTemplates:
    dropbox_active_relpath: str = "02_Projects_Active"
    dropbox_to_archive_relpath: str = "03_Projects_ToArchive"
    dropbox_archive_relpath: str = "98_Archive"
    nas_archive_relpath: str = "01_Projects_Archive"


@dataclass(frozen=True)
class ArchiveActionSummary:
    action: str
    source_path: str | None
    destination_path: str | None
    success: bool
    error: str | None = None


@dataclass(frozen=True)
class ArchiveDomainResult:
    domain_key: str
    root_path: str | None
    root_state: str
    target_provisioning: ProvisioningSummary | None = None
    actions: tuple[ArchiveActionSummary, ...] = ()
    notes: tuple[str, ...] = ()


@dataclass(frozen=True)
class ArchiveRequest:
    job_id: str
    project_id: str
    editor_initials: tuple[str, ...] = ()
    test_mode: bool = False
    allow_test_cleanup: bool = False
    allow_non_real: bool = False
    force: bool = False


@dataclass(frozen=True)
class ArchiveRunResult:
    job_id: str
    project_id: str
    editor_initials: tuple[str, ...]
    started_at_utc: str
    test_mode: bool
    allow_test_cleanup: bool
    allow_non_real: bool
    force: bool
    domains: tuple[ArchiveDomainResult, ...]
    has_errors: bool
    last_error: str | None


# ---------------------------------------------------------------------------
# Root integrity
# ---------------------------------------------------------------------------


class RootIntegrityContract(BaseModel):
    """Expected shape of a storage root, keyed by provider and root key."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    provider_key: str = Field(alias="providerKey")
    root_key: str = Field(alias="rootKey")
    contract_key: str = Field(alias="contractKey")
    required_folders: tuple[str, ...] = Field(default=(), alias="requiredFolders")
    optional_folders: tuple[str, ...] = Field(default=(), alias="optionalFolders")
    allowed_extras: tuple[str, ...] = Field(default=(), alias="allowedExtras")
    allowed_root_files: tuple[str, ...] = Field(default=(), alias="allowedRootFiles")
    quarantine_relpath: str | None = Field(default=None, alias="quarantineRelpath")
    max_items: int | None = Field(default=None, alias="maxItems")
    max_bytes: int | None = Field(default=None, alias="maxBytes")
    is_active: bool = Field(default=True, alias="isActive")


@dataclass(frozen=True)
class RootIntegrityEntry:
    name: str
    path: str
    kind: NodeKind
    is_reparse_point: bool = False
    size_bytes: int | None = None
    item_count: int | None = None
    note: str | None = None


@dataclass(frozen=True)
class MovePlan:
    name: str
    path: str
    kind: NodeKind
    size_bytes: int | None = None
    item_count: int | None = None
    blocked_reason: str | None = None

    @property
    def will_move(self) -> bool:
        return not self.blocked_reason


@dataclass(frozen=True)
class RootIntegrityAction:
    action: str
    path: str
    note: str | None = None


@dataclass(frozen=True)
class RootIntegrityResult:
    provider_key: str
    root_key: str
    root_path: str | None
    mode: str
    dry_run: bool
    started_at: str
    finished_at: str
    missing_required: tuple[str, ...] = ()
    missing_optional: tuple[str, ...] = ()
    unknown_entries: tuple[RootIntegrityEntry, ...] = ()
    root_files: tuple[RootIntegrityEntry, ...] = ()
    quarantine_plan: tuple[MovePlan, ...] = ()
    guardrail_blocks: tuple[MovePlan, ...] = ()
    actions: tuple[RootIntegrityAction, ...] = ()
    warnings: tuple[str, ...] = ()
    errors: tuple[str, ...] = ()
    has_errors: bool = False


# ---------------------------------------------------------------------------
# Job payloads and project records
# ---------------------------------------------------------------------------


class _Payload(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")


class BootstrapJobPayload(_Payload):
    project_id: str = Field(alias="projectId", min_length=1)
    editor_initials: tuple[str, ...] = Field(default=(), alias="editorInitials")
    verify_domain_roots: bool = Field(default=True, alias="verifyDomainRoots")
    create_domain_roots: bool = Field(default=False, alias="createDomainRoots")
    provision_project_containers: bool = Field(default=False, alias="provisionProjectContainers")
    allow_repair: bool = Field(default=False, alias="allowRepair")
    force_sandbox: bool = Field(default=False, alias="forceSandbox")
    allow_non_real: bool = Field(default=False, alias="allowNonReal")
    force: bool = False
    test_mode: bool = Field(default=False, alias="testMode")
    allow_test_cleanup: bool = Field(default=False, alias="allowTestCleanup")

    @field_validator("editor_initials", mode="before")
    @classmethod
    def _split_editors(cls, value: Any) -> tuple[str, ...]:
        return normalize_editor_initials(value)

    def to_request(self, job_id: str) -> BootstrapRequest:
        return BootstrapRequest(
            job_id=job_id,
            project_id=self.project_id,
            editor_initials=self.editor_initials,
            verify_domain_roots=self.verify_domain_roots,
            create_domain_roots=self.create_domain_roots,
            provision_project_containers=self.provision_project_containers,
            allow_repair=self.allow_repair,
            force_sandbox=self.force_sandbox,
            allow_non_real=self.allow_non_real,
            force=self.force,
            test_mode=self.test_mode,
            allow_test_cleanup=self.allow_test_cleanup,
        )


class ArchiveJobPayload(_Payload):
    project_id: str = Field(alias="projectId", min_length=1)
    editor_initials: tuple[str, ...] = Field(default=(), alias="editorInitials")
    test_mode: bool = Field(default=False, alias="testMode")
    allow_test_cleanup: bool = Field(default=False, alias="allowTestCleanup")
    allow_non_real: bool = Field(default=False, alias="allowNonReal")
    force: bool = False

    @field_validator("editor_initials", mode="before")
    @classmethod
    def _split_editors(cls, value: Any) -> tuple[str, ...]:
        return normalize_editor_initials(value)

    def to_request(self, job_id: str) -> ArchiveRequest:
        return ArchiveRequest(
            job_id=job_id,
            project_id=self.project_id,
            editor_initials=self.editor_initials,
            test_mode=self.test_mode,
            allow_test_cleanup=self.allow_test_cleanup,
            allow_non_real=self.allow_non_real,
            force=self.force,
        )


class RootIntegrityPayload(_Payload):
    provider_key: str = Field(alias="providerKey", min_length=1)
    root_key: str = Field(default="root", alias="rootKey")
    mode: str = "report"
    dry_run: bool = Field(default=True, alias="dryRun")
    quarantine_relpath: str | None = Field(default=None, alias="quarantineRelpath")
    max_items: int | None = Field(default=None, alias="maxItems")
    max_bytes: int | None = Field(default=None, alias="maxBytes")
    allowed_extras: tuple[str, ...] | None = Field(default=None, alias="allowedExtras")
    allowed_root_files: tuple[str, ...] | None = Field(default=None, alias="allowedRootFiles")

    @field_validator("root_key", "mode", mode="before")
    @classmethod
    def _blank_to_default(cls, value: Any, info: ValidationInfo) -> Any:
        if value is None or (isinstance(value, str) and not value.strip()):
            return "root" if info.field_name == "root_key" else "report"
        return value.strip() if isinstance(value, str) else value


class StorageRootRecord(_Payload):
    domain_key: str = Field(alias="domainKey")
    storage_provider_key: str = Field(alias="storageProviderKey")
    root_key: str = Field(alias="rootKey")
    folder_relpath: str = Field(alias="folderRelpath")


class ProjectRecord(BaseModel):
    """Persisted project row consumed by the bootstrap and archive use cases."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    project_id: str = Field(alias="projectId", min_length=1)
    project_code: str = Field(alias="projectCode")
    name: str
    client_name: str | None = Field(default=None, alias="clientName")
    status_key: str = Field(alias="statusKey")
    data_profile: str = Field(default="real", alias="dataProfile")
    metadata: dict[str, Any] = Field(default_factory=dict)
    storage_roots: list[StorageRootRecord] = Field(default_factory=list, alias="storageRoots")
