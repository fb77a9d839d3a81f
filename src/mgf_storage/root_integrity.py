"""Non-recursive sanity check of a storage root against its contract, with optional quarantine repair."""

from __future__ import annotations

import logging
import os
import re
import time
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Callable, Iterable

from .canonical import to_canonical_json, to_json_document
from .fsops import Sleep, is_reparse_point, measure_directory, move_with_retry, unique_destination
from .models import (
    MovePlan,
    NodeKind,
    RootIntegrityAction,
    RootIntegrityContract,
    RootIntegrityEntry,
    RootIntegrityMode,
    RootIntegrityPayload,
    RootIntegrityResult,
    UnsafePathError,
)
from .path_safety import is_path_under_root, normalize_path, resolve_inside_root
from .settings import RuntimeSettings
from .state_store import JsonContractStore

logger = logging.getLogger(__name__)

CONTRACTS_FILE_NAME = "storage_root_contracts.json"
DEFAULT_ALLOWED_ROOT_FILES: tuple[str, ...] = ("desktop.ini",)
DEFAULT_MAX_ITEMS = 500
DEFAULT_MAX_BYTES = 20 * 1024**3
QUARANTINE_RUN_FORMAT = "%Y%m%d_%H%M%S"

BLOCK_SIZE_UNKNOWN = "size_unknown"
BLOCK_MISSING = "missing"
BLOCK_TOO_LARGE = "too_large_to_quarantine"


def parse_mode(mode: str | None) -> RootIntegrityMode | None:
    """``report``/``repair`` in any case, or ``None`` for anything else."""
    value = (mode or "").strip().casefold()
    for candidate in RootIntegrityMode:
        if candidate.value == value:
            return candidate
    return None


def matches_allowed_extras(name: str, patterns: Iterable[str]) -> bool:
    """Case-insensitive match; a pattern is a glob only when it contains ``*``."""
    folded = name.casefold()
    for pattern in patterns:
        if not pattern or not pattern.strip():
            continue
        if "*" not in pattern:
            if pattern.casefold() == folded:
                return True
            continue
        regex = "^" + ".*".join(re.escape(part) for part in pattern.split("*")) + "$"
        if re.match(regex, name, flags=re.IGNORECASE):
            return True
    return False


def _positive_or_default(*candidates: int | None, default: int) -> int:
    for value in candidates:
        if value is not None:
            return value if value > 0 else default
    return default


class _Scan:
    def __init__(self) -> None:
        self.missing_required: list[str] = []
        self.missing_optional: list[str] = []
        self.unknown_entries: list[RootIntegrityEntry] = []
        self.root_files: list[RootIntegrityEntry] = []


def scan_root(
    root_path: Path,
    contract: RootIntegrityContract,
    allowed_extras: Iterable[str],
    allowed_root_files: Iterable[str],
) -> _Scan:
    """Classify the immediate children of ``root_path``. Nothing below the first level is read."""
    required = {name.casefold(): name for name in contract.required_folders if name.strip()}
    optional = {name.casefold(): name for name in contract.optional_folders if name.strip()}
    allowed_files = {name.casefold() for name in allowed_root_files if name.strip()}
    extras = [pattern for pattern in allowed_extras if pattern]

    with os.scandir(root_path) as iterator:
        entries = sorted(iterator, key=lambda entry: entry.name.casefold())

    present = {entry.name.casefold() for entry in entries}
    scan = _Scan()
    scan.missing_required = sorted((name for key, name in required.items() if key not in present), key=str.casefold)
    scan.missing_optional = sorted((name for key, name in optional.items() if key not in present), key=str.casefold)

    for entry in entries:
        path = Path(entry.path)
        reparse = is_reparse_point(path)
        if entry.is_dir():
            folded = entry.name.casefold()
            if folded in required or folded in optional or matches_allowed_extras(entry.name, extras):
                continue
            scan.unknown_entries.append(
                RootIntegrityEntry(
                    name=entry.name,
                    path=str(path),
                    kind=NodeKind.FOLDER,
                    is_reparse_point=reparse,
                    note="reparse_point" if reparse else None,
                )
            )
            continue

        if entry.name.casefold() in allowed_files:
            continue
        size: int | None = None
        if not reparse:
            try:
                size = entry.stat(follow_symlinks=False).st_size
            except OSError:
                size = None
        scan.root_files.append(
            RootIntegrityEntry(
                name=entry.name,
                path=str(path),
                kind=NodeKind.FILE,
                is_reparse_point=reparse,
                size_bytes=size,
                item_count=1,
                note="reparse_point" if reparse else None,
            )
        )
    return scan


def build_move_plan(entry: RootIntegrityEntry, *, max_items: int, max_bytes: int, allow_measure: bool) -> MovePlan:
    """Decide whether one unknown entry may be quarantined, and why not when it may not."""
    if entry.is_reparse_point:
        return MovePlan(entry.name, entry.path, entry.kind, blocked_reason=BLOCK_SIZE_UNKNOWN)

    path = Path(entry.path)
    if entry.kind is NodeKind.FILE:
        if not path.is_file():
            return MovePlan(
                entry.name, entry.path, entry.kind, entry.size_bytes, entry.item_count, blocked_reason=BLOCK_MISSING
            )
        try:
            size = entry.size_bytes if entry.size_bytes is not None else path.stat().st_size
        except OSError as exc:
            logger.warning("Unable to stat %s: %s", path, exc)
            return MovePlan(entry.name, entry.path, entry.kind, blocked_reason=BLOCK_SIZE_UNKNOWN)
        blocked = BLOCK_TOO_LARGE if size > max_bytes else None
        return MovePlan(entry.name, entry.path, entry.kind, size, 1, blocked_reason=blocked)

    if not allow_measure:
        return MovePlan(entry.name, entry.path, entry.kind, blocked_reason=BLOCK_SIZE_UNKNOWN)
    if not path.is_dir():
        return MovePlan(entry.name, entry.path, entry.kind, blocked_reason=BLOCK_MISSING)
    try:
        measurement = measure_directory(path, max_items=max_items, max_bytes=max_bytes)
    except OSError as exc:
        logger.warning("Unable to measure %s: %s", path, exc)
        return MovePlan(entry.name, entry.path, entry.kind, blocked_reason=BLOCK_SIZE_UNKNOWN)
    if measurement.exceeded:
        return MovePlan(
            entry.name,
            entry.path,
            entry.kind,
            measurement.size_bytes,
            measurement.item_count,
            blocked_reason=BLOCK_TOO_LARGE,
        )
    return MovePlan(entry.name, entry.path, entry.kind, measurement.size_bytes, measurement.item_count)


class RootIntegrityChecker:
    """Compares a storage root with its contract and, in repair mode, quarantines what does not belong.

    Report mode and dry runs never touch the filesystem. Repair mode creates a
    timestamped run folder under the contract's quarantine path, creates missing
    required folders and moves each unblocked entry into the run folder. Every
    per-item failure is recorded on the result; the run never aborts part way.
    """

    def __init__(
        self,
        settings: RuntimeSettings,
        contract_store: JsonContractStore | None = None,
        *,
        sleep: Sleep = time.sleep,
        clock: Callable[[], datetime] | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.settings = settings
        self.contract_store = contract_store or JsonContractStore(settings.state_store_path / CONTRACTS_FILE_NAME)
        self._sleep = sleep
        self._clock = clock or (lambda: datetime.now(UTC))
        self.logger = logger or logging.getLogger(__name__)

    def run_job(self, payload: RootIntegrityPayload) -> RootIntegrityResult:
        """Resolve the active contract and configured root for a job payload, then check it."""
        started_at = self._now()

        if parse_mode(payload.mode) is None:
            return self._failed(payload, None, started_at, f"Invalid mode '{payload.mode}'. Expected 'report' or 'repair'.")

        contract = self.contract_store.get_active(payload.provider_key, payload.root_key)
        if contract is None:
            return self._failed(
                payload,
                None,
                started_at,
                f"No storage_root_contracts entry for provider_key={payload.provider_key} root_key={payload.root_key}.",
            )

        root_path = self.settings.root_path_for(payload.provider_key.strip().casefold())
        if root_path is None:
            return self._failed(
                payload, None, started_at, f"Storage root not configured for provider_key={payload.provider_key}."
            )

        return self.run(
            contract,
            root_path,
            mode=payload.mode,
            dry_run=payload.dry_run,
            quarantine_relpath=payload.quarantine_relpath,
            max_items=payload.max_items,
            max_bytes=payload.max_bytes,
            allowed_extras=payload.allowed_extras,
            allowed_root_files=payload.allowed_root_files,
            provider_key=payload.provider_key,
            root_key=payload.root_key,
            started_at=started_at,
        )

    def run(
        self,
        contract: RootIntegrityContract,
        root_path: Path,
        *,
        mode: str = RootIntegrityMode.REPORT.value,
        dry_run: bool = True,
        quarantine_relpath: str | None = None,
        max_items: int | None = None,
        max_bytes: int | None = None,
        allowed_extras: Iterable[str] | None = None,
        allowed_root_files: Iterable[str] | None = None,
        provider_key: str | None = None,
        root_key: str | None = None,
        started_at: datetime | None = None,
    ) -> RootIntegrityResult:
        started_at = started_at or self._now()
        provider_key = provider_key or contract.provider_key
        root_key = root_key or contract.root_key
        errors: list[str] = []
        warnings: list[str] = []
        actions: list[RootIntegrityAction] = []

        def result(root: str | None, **extra: Any) -> RootIntegrityResult:
            return RootIntegrityResult(
                provider_key=provider_key,
                root_key=root_key,
                root_path=root,
                mode=mode,
                dry_run=dry_run,
                started_at=started_at.isoformat(),
                finished_at=self._now().isoformat(),
                actions=tuple(actions),
                warnings=tuple(warnings),
                errors=tuple(errors),
                has_errors=bool(errors),
                **extra,
            )

        parsed_mode = parse_mode(mode)
        if parsed_mode is None:
            errors.append(f"Invalid mode '{mode}'. Expected 'report' or 'repair'.")
            return result(None)

        root = Path(normalize_path(root_path))
        if not root.is_dir():
            errors.append(f"Root path does not exist: {root}")
            return result(str(root))

        root_files_allowed = tuple(allowed_root_files if allowed_root_files is not None else contract.allowed_root_files)
        if not root_files_allowed:
            root_files_allowed = DEFAULT_ALLOWED_ROOT_FILES
        extras = tuple(allowed_extras if allowed_extras is not None else contract.allowed_extras)
        item_limit = _positive_or_default(
            max_items, contract.max_items, default=self.settings.integrity_max_items or DEFAULT_MAX_ITEMS
        )
        byte_limit = _positive_or_default(
            max_bytes, contract.max_bytes, default=self.settings.integrity_max_bytes or DEFAULT_MAX_BYTES
        )

        scan = scan_root(root, contract, extras, root_files_allowed)
        warnings.extend(f"missing_required:{name}" for name in scan.missing_required)

        repairing = parsed_mode is RootIntegrityMode.REPAIR and not dry_run
        quarantine_plan: list[MovePlan] = []
        guardrail_blocks: list[MovePlan] = []
        for entry in [*scan.unknown_entries, *scan.root_files]:
            move = build_move_plan(entry, max_items=item_limit, max_bytes=byte_limit, allow_measure=repairing)
            if move.will_move:
                quarantine_plan.append(move)
            else:
                self.logger.warning("Guardrail blocked %s: %s", move.path, move.blocked_reason)
                guardrail_blocks.append(move)

        if repairing:
            self._repair(
                root,
                contract,
                quarantine_relpath,
                scan.missing_required,
                quarantine_plan,
                actions=actions,
                errors=errors,
            )

        self.logger.info(
            "Root integrity %s/%s mode=%s dry_run=%s unknown=%d files=%d planned=%d blocked=%d errors=%d",
            provider_key,
            root_key,
            parsed_mode.value,
            dry_run,
            len(scan.unknown_entries),
            len(scan.root_files),
            len(quarantine_plan),
            len(guardrail_blocks),
            len(errors),
        )
        return result(
            str(root),
            missing_required=tuple(scan.missing_required),
            missing_optional=tuple(scan.missing_optional),
            unknown_entries=tuple(scan.unknown_entries),
            root_files=tuple(scan.root_files),
            quarantine_plan=tuple(quarantine_plan),
            guardrail_blocks=tuple(guardrail_blocks),
        )

    def _repair(
        self,
        root: Path,
        contract: RootIntegrityContract,
        quarantine_relpath: str | None,
        missing_required: list[str],
        quarantine_plan: list[MovePlan],
        *,
        actions: list[RootIntegrityAction],
        errors: list[str],
    ) -> None:
        relpath = quarantine_relpath if quarantine_relpath and quarantine_relpath.strip() else contract.quarantine_relpath
        if not relpath or not relpath.strip():
            errors.append("Quarantine path is required for repair mode.")
            return

        try:
            quarantine_root = resolve_inside_root(root, relpath.strip(), "Quarantine path")
        except UnsafePathError:
            errors.append(f"Quarantine path must be inside root. root={root} quarantine={relpath}")
            return

        run_folder = quarantine_root / self._now().strftime(QUARANTINE_RUN_FORMAT)
        try:
            run_folder.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            errors.append(f"create_quarantine_failed:{run_folder}:{exc}")
            return
        actions.append(RootIntegrityAction("create_quarantine", str(run_folder)))
        self.logger.info("Created quarantine folder %s", run_folder)

        for name in missing_required:
            target = root / name
            try:
                target.mkdir(parents=True, exist_ok=True)
            except OSError as exc:
                errors.append(f"create_required_failed:{name}:{exc}")
                continue
            actions.append(RootIntegrityAction("create_required", str(target)))

        for move in quarantine_plan:
            source = Path(move.path)
            if is_path_under_root(source, run_folder):
                errors.append(f"quarantine_move_failed:{move.path}:source contains the quarantine folder")
                continue
            destination = unique_destination(run_folder, move.name)
            moved, error = move_with_retry(source, destination, sleep=self._sleep)
            if not moved:
                errors.append(f"quarantine_move_failed:{move.path}:{error}")
                continue
            self.logger.info("Quarantined %s -> %s", source, destination)
            actions.append(RootIntegrityAction("quarantine_move", str(destination), move.path))

    def _failed(
        self, payload: RootIntegrityPayload, root_path: str | None, started_at: datetime, error: str
    ) -> RootIntegrityResult:
        self.logger.error(error)
        return RootIntegrityResult(
            provider_key=payload.provider_key,
            root_key=payload.root_key,
            root_path=root_path,
            mode=payload.mode,
            dry_run=payload.dry_run,
            started_at=started_at.isoformat(),
            finished_at=self._now().isoformat(),
            errors=(error,),
            has_errors=True,
        )

    def _now(self) -> datetime:
        return self._clock()


def build_job_payload_json(payload: RootIntegrityPayload, result: RootIntegrityResult) -> str:
    """The job payload (camelCase) with the run result nested under ``result``, as canonical JSON."""
    document = to_json_document(payload)
    if not isinstance(document, dict):
        raise TypeError("Root integrity payload must serialize to a JSON object")
    document["result"] = to_json_document(result)
    return to_canonical_json(document)
