from __future__ import annotations

import json
from pathlib import Path

import pytest

from conftest import TEMPLATES_DIR
from mgf_storage.__main__ import load_payload, main
from mgf_storage.models import ProjectRecord, RootIntegrityContract
from mgf_storage.root_integrity import CONTRACTS_FILE_NAME
from mgf_storage.state_store import JsonContractStore, JsonProjectStore


@pytest.fixture
def cli_env(monkeypatch: pytest.MonkeyPatch) -> pytest.MonkeyPatch:
    # main() writes MGF_WORKSPACE_ROOT directly; register it so it is restored.
    for name in ("MGF_WORKSPACE_ROOT", "MGF_DROPBOX_ROOT", "MGF_LUCIDLINK_ROOT", "MGF_NAS_ROOT", "MGF_TEMPLATES_ROOT"):
        monkeypatch.setenv(name, "")
        monkeypatch.delenv(name)
    return monkeypatch


def test_provision_plan_prints_result_without_touching_disk(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    base = tmp_path / "out"
    exit_code = main(
        [
            "provision",
            "--mode",
            "PLAN",
            "--template",
            str(TEMPLATES_DIR / "dropbox_project_container.json"),
            "--base-path",
            str(base),
            "--project-code",
            "MGF25-0001",
            "--project-name",
            "Launch",
            "--client-name",
            "Acme",
            "--editors",
            "AB",
        ]
    )
    assert exit_code == 0
    document = json.loads(capsys.readouterr().out)
    assert document["success"] is True
    assert document["templateKey"] == "dropbox_project_container"
    assert document["targetRoot"] == str(base / "MGF25-0001_Acme_Launch")
    assert "03_Editors/AB" in [item["relativePath"] for item in document["expectedItems"]]
    assert document["manifestPath"] is None
    assert not base.exists()


def test_provision_reports_template_errors(tmp_path: Path) -> None:
    exit_code = main(["provision", "--template", str(tmp_path / "nope.json"), "--base-path", str(tmp_path)])
    assert exit_code == 1


def test_root_integrity_job_uses_workspace_settings(
    cli_env: pytest.MonkeyPatch, tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    workspace = tmp_path / "workspace"
    nas_root = tmp_path / "NAS"
    (nas_root / "01_Projects_Archive").mkdir(parents=True)
    (nas_root / "leftover").mkdir()
    cli_env.setenv("MGF_NAS_ROOT", str(nas_root))
    JsonContractStore(workspace / "state_store" / CONTRACTS_FILE_NAME).upsert(
        RootIntegrityContract(
            provider_key="nas",
            root_key="root",
            contract_key="nas_root_v1",
            required_folders=("01_Projects_Archive", "99_Dump"),
        )
    )

    exit_code = main(
        ["--workspace-root", str(workspace), "root-integrity", "--payload", json.dumps({"providerKey": "nas"})]
    )
    assert exit_code == 0
    document = json.loads(capsys.readouterr().out)
    assert document["mode"] == "report"
    result = document["result"]
    assert result["missingRequired"] == ["99_Dump"]
    assert [entry["name"] for entry in result["unknownEntries"]] == ["leftover"]
    assert result["actions"] == []
    assert (nas_root / "leftover").is_dir()


def test_bootstrap_job_reads_payload_file(
    cli_env: pytest.MonkeyPatch, tmp_path: Path, capsys: pytest.CaptureFixture[str], project: ProjectRecord
) -> None:
    workspace = tmp_path / "workspace"
    JsonProjectStore(workspace / "state_store").save(project.model_copy(update={"data_profile": "demo"}))
    payload_file = tmp_path / "job.json"
    payload_file.write_text(json.dumps({"projectId": project.project_id}), encoding="utf-8")

    exit_code = main(
        ["--workspace-root", str(workspace), "bootstrap", "--payload-file", str(payload_file), "--job-id", "job-cli"]
    )
    assert exit_code == 1
    document = json.loads(capsys.readouterr().out)
    assert document["jobId"] == "job-cli"
    assert {domain["rootState"] for domain in document["domains"]} == {"blocked_non_real"}


def test_archive_job_for_unknown_project_fails_cleanly(cli_env: pytest.MonkeyPatch, tmp_path: Path) -> None:
    exit_code = main(
        ["--workspace-root", str(tmp_path / "workspace"), "archive", "--payload", '{"projectId": "prj_missing"}']
    )
    assert exit_code == 1


@pytest.mark.parametrize("raw", ["", "  ", "[1, 2]", "{broken"])
def test_load_payload_rejects_bad_documents(raw: str) -> None:
    with pytest.raises(ValueError):
        load_payload(payload=raw, payload_file=None)


def test_load_payload_accepts_bom_file(tmp_path: Path) -> None:
    path = tmp_path / "payload.json"
    path.write_bytes(b"\xef\xbb\xbf" + b'{"providerKey": "nas"}')
    assert load_payload(payload=None, payload_file=path) == {"providerKey": "nas"}
