"""Entry point for `python -m mgf_storage` and the `mgf-storage` CLI script."""

from __future__ import annotations

import argparse
import json
import logging
import os
import uuid
from pathlib import Path
from typing import Any, Sequence

from pydantic import ValidationError

from mgf_storage.archive import ProjectArchiver, RunProjectArchiveUseCase
from mgf_storage.bootstrap import BootstrapProjectUseCase, ProjectBootstrapper
from mgf_storage.canonical import to_json_document
from mgf_storage.models import (
    MgfStorageError,
    ProvisioningMode,
    ProvisioningRequest,
    ProvisioningTokens,
    RootIntegrityPayload,
)
from mgf_storage.provisioner import FolderProvisioner
from mgf_storage.root_integrity import RootIntegrityChecker, build_job_payload_json
from mgf_storage.settings import RuntimeSettings
from mgf_storage.state_store import JsonProjectStore


def _add_payload_arguments(parser: argparse.ArgumentParser) -> None:
    group = parser.add_mutually_exclusive_group(required=True)
    group.add_argument("--payload", default=None, help="Inline JSON job payload")
    group.add_argument("--payload-file", type=Path, default=None, help="Path to a JSON job payload file")
    parser.add_argument("--job-id", default=None, help="Job identifier recorded in run history (default: random UUID)")


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Provision, bootstrap, archive and check MGF storage roots")
    parser.add_argument(
        "--workspace-root",
        type=Path,
        default=None,
        help="Directory holding .env, runtime/ and state_store/ (default: cwd)",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging verbosity",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    provision = subparsers.add_parser("provision", help="Run one folder template against a base path")
    provision.add_argument(
        "--mode",
        type=lambda value: value.lower(),
        default=ProvisioningMode.PLAN.value,
        choices=[mode.value for mode in ProvisioningMode],
        help="plan, verify, apply or repair",
    )
    provision.add_argument("--template", type=Path, required=True, help="Folder template JSON file")
    provision.add_argument("--base-path", type=Path, required=True, help="Directory the template root is created in")
    provision.add_argument("--project-code", default=None)
    provision.add_argument("--project-name", default=None)
    provision.add_argument("--client-name", default=None)
    provision.add_argument("--editors", default=None, help="Comma-separated editor initials")
    provision.add_argument("--seeds", type=Path, default=None, help="Seeds directory (default: <template dir>/seeds)")
    provision.add_argument("--schema", type=Path, default=None, help="Schema override instead of the template's $schema")
    provision.add_argument("--root-name", default=None, help="Override the expanded root folder name")

    _add_payload_arguments(subparsers.add_parser("bootstrap", help="Run a project.bootstrap job payload"))
    _add_payload_arguments(subparsers.add_parser("archive", help="Run a project.archive job payload"))
    _add_payload_arguments(subparsers.add_parser("root-integrity", help="Run a root integrity job payload"))
    return parser.parse_args(argv)


def load_payload(*, payload: str | None, payload_file: Path | None) -> dict[str, Any]:
    if payload_file is not None:
        if not payload_file.is_file():
            raise FileNotFoundError(f"Payload file does not exist: {payload_file}")
        raw = payload_file.read_text(encoding="utf-8-sig")
    else:
        raw = payload or ""
    if not raw.strip():
        raise ValueError("Job payload must be non-empty")
    try:
        document = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValueError(f"Job payload is not valid JSON: {exc}") from exc
    if not isinstance(document, dict):
        raise ValueError("Job payload must be a JSON object")
    return document


def _print(document: Any) -> None:
    print(json.dumps(document, indent=2))


def _run_provision(args: argparse.Namespace) -> int:
    request = ProvisioningRequest(
        mode=ProvisioningMode(args.mode),
        template_path=args.template,
        base_path=args.base_path,
        tokens=ProvisioningTokens.create(
            project_code=args.project_code,
            project_name=args.project_name,
            client_name=args.client_name,
            editor_initials=args.editors,
        ),
        seeds_path=args.seeds,
        schema_path=args.schema,
        root_name_override=args.root_name,
    )
    result = FolderProvisioner().execute(request)
    document = to_json_document(result)
    document["success"] = result.success
    _print(document)
    return 0 if result.success else 1


def _run_job(args: argparse.Namespace, settings: RuntimeSettings) -> int:
    payload = load_payload(payload=args.payload, payload_file=args.payload_file)
    job_id = args.job_id or str(uuid.uuid4())

    if args.command == "root-integrity":
        parsed = RootIntegrityPayload.model_validate(payload)
        result = RootIntegrityChecker(settings).run_job(parsed)
        print(build_job_payload_json(parsed, result))
        return 1 if result.has_errors else 0

    store = JsonProjectStore(settings.state_store_path)
    if args.command == "bootstrap":
        run_result = BootstrapProjectUseCase(ProjectBootstrapper(settings), store).run(payload, job_id=job_id)
    else:
        run_result = RunProjectArchiveUseCase(ProjectArchiver(settings), store).run(payload, job_id=job_id)
    _print(to_json_document(run_result))
    return 1 if run_result.has_errors else 0


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    # Set workspace root before constructing any settings objects.
    if args.workspace_root is not None:
        workspace_root = args.workspace_root.resolve()
        workspace_root.mkdir(parents=True, exist_ok=True)
        os.environ["MGF_WORKSPACE_ROOT"] = str(workspace_root)

    try:
        if args.command == "provision":
            return _run_provision(args)
        settings = RuntimeSettings.from_env()
        return _run_job(args, settings)
    except (OSError, ValueError, ValidationError, MgfStorageError) as exc:
        logging.error("%s failed: %s", args.command, exc)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
