from importlib.metadata import PackageNotFoundError, version

from .archive import ProjectArchiver, RunProjectArchiveUseCase
from .bootstrap import DEFAULT_DOMAINS, BootstrapProjectUseCase, ProjectBootstrapper
from .canonical import to_canonical_json
from .executor import FolderPlanExecutor
from .models import (
    ArchiveJobPayload,
    ArchiveRunResult,
    BootstrapJobPayload,
    BootstrapRunResult,
    ExecutionResult,
    FolderNode,
    FolderPlan,
    FolderTemplate,
    MgfStorageError,
    NodeKind,
    PlanItem,
    PlanValidationError,
    ProjectRecord,
    ProjectStatus,
    ProvisioningMode,
    ProvisioningRequest,
    ProvisioningResult,
    ProvisioningTokens,
    RootIntegrityContract,
    RootIntegrityPayload,
    RootIntegrityResult,
    SchemaNotFound,
    SchemaValidationFailed,
    TemplateError,
    TokenExpansionError,
    UnsafePathError,
)
from .path_safety import ensure_safe_relative_path, ensure_safe_segment, is_path_under_root, try_build_folder_relpath
from .planner import FolderTemplatePlanner
from .provisioner import FolderProvisioner, ProvisioningManifestWriter
from .root_integrity import RootIntegrityChecker, build_job_payload_json
from .settings import RuntimeSettings
from .state_store import JsonContractStore, JsonProjectStore
from .templates import FolderTemplateLoader


def get_version() -> str:
    try:
        return version("mgf-storage")
    except PackageNotFoundError:
        return "0.0.0"


__all__ = [
    "ArchiveJobPayload",
    "ArchiveRunResult",
    "BootstrapJobPayload",
    "BootstrapProjectUseCase",
    "BootstrapRunResult",
    "ExecutionResult",
    "FolderNode",
    "FolderPlan",
    "FolderPlanExecutor",
    "FolderProvisioner",
    "FolderTemplate",
    "FolderTemplateLoader",
    "FolderTemplatePlanner",
    "JsonContractStore",
    "JsonProjectStore",
    "MgfStorageError",
    "NodeKind",
    "PlanItem",
    "PlanValidationError",
    "ProjectArchiver",
    "ProjectBootstrapper",
    "ProjectRecord",
    "ProjectStatus",
    "ProvisioningManifestWriter",
    "ProvisioningMode",
    "ProvisioningRequest",
    "ProvisioningResult",
    "ProvisioningTokens",
    "RootIntegrityChecker",
    "RootIntegrityContract",
    "RootIntegrityPayload",
    "RootIntegrityResult",
    "RunProjectArchiveUseCase",
    "RuntimeSettings",
    "SchemaNotFound",
    "SchemaValidationFailed",
    "TemplateError",
    "TokenExpansionError",
    "UnsafePathError",
    "DEFAULT_DOMAINS",
    "build_job_payload_json",
    "ensure_safe_relative_path",
    "ensure_safe_segment",
    "get_version",
    "is_path_under_root",
    "to_canonical_json",
    "try_build_folder_relpath",
]
