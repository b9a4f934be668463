"""
Smoke tests for the command-line entry point (no network).
"""
import json

import pytest

import run_import


@pytest.fixture
def cli_env(tmp_path, monkeypatch):
    tasks = tmp_path / "tasks.json"
    tasks.write_text(json.dumps([{"id": "t1", "name": "Task", "provider_id": "nope", "status": "active"}]))
    configs = tmp_path / "providers.json"
    configs.write_text(json.dumps({"uk-gov-apprenticeships": {"subscription_key": "k"}}))
    monkeypatch.setenv("VACANCY_SYNC_PROVIDER_CONFIGS_FILE", str(configs))
    monkeypatch.chdir(tmp_path)
    return ["--tasks", str(tasks), "--data-dir", str(tmp_path / "data"), "--log-level", "warning"]


def test_providers_lists_configuration(cli_env, capsys):
    assert run_import.main(cli_env + ["providers"]) == 0

    info = {p["id"]: p for p in json.loads(capsys.readouterr().out)}
    assert info["uk-gov-apprenticeships"]["configured"] is True
    assert info["arbeitnow"]["configured"] is True


def test_run_with_unknown_provider_fails(cli_env, capsys, tmp_path):
    out = tmp_path / "result.json"
    assert run_import.main(cli_env + ["run", "t1", "--out", str(out)]) == 1

    result = json.loads(out.read_text())
    assert result["status"] == "failed"
    assert "nope" in result["message"]
    runs = json.loads((tmp_path / "data" / "runs.json").read_text())
    assert runs[0]["status"] == "failed"


def test_test_command_reports_failure(cli_env, capsys):
    assert run_import.main(cli_env + ["test", "ghost"]) == 1
    assert "ghost" in capsys.readouterr().out


def test_status_and_cleanup(cli_env, capsys):
    assert run_import.main(cli_env + ["status", "missing"]) == 1
    assert run_import.main(cli_env + ["cleanup"]) == 0
    assert "Removed 0" in capsys.readouterr().out


def test_tick_with_nothing_due(cli_env, capsys):
    assert run_import.main(cli_env + ["tick"]) == 0
    assert "No tasks due" in capsys.readouterr().out
