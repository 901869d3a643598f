"""Tests for migrate.py: argument validation, exit codes, command wiring."""
from __future__ import annotations

import csv

import pytest

import migrate
from conftest import TARGET_SUB, FakeArmState, FakeAuthorization, FakeDirectory, make_record
from engine.errors import AuthenticationFailure, ProviderError, ScopeAccessDenied
from schemas.rbac import RoleDefinition, Subscription
from src.config import Settings
from src.interchange import write_records_csv


@pytest.fixture
def fakes(monkeypatch):
    directory = FakeDirectory()
    directory.add_user("jane@fabrikam.com", "tgt-jane")
    state = FakeArmState()
    calls = []

    def _build(settings):
        calls.append(settings)
        return directory, lambda: FakeAuthorization(state)

    monkeypatch.setattr(migrate, "build_providers", _build)
    return directory, state, calls


@pytest.mark.parametrize("argv", [
    ["import", "--subscription", TARGET_SUB],
    ["import", "--file", "x.csv"],
    ["import", "--file", "  ", "--subscription", TARGET_SUB],
])
def test_import_fails_fast_on_missing_arguments(argv, fakes, capsys):
    assert migrate.main(argv) == migrate.EXIT_USAGE
    assert fakes[2] == []
    assert "Invalid argument" in capsys.readouterr().err


def test_import_with_unreadable_file_makes_no_provider_calls(tmp_path, fakes):
    code = migrate.main(["--output-dir", str(tmp_path), "import", "--file", str(tmp_path / "nope.csv"),
                         "--subscription", TARGET_SUB])
    assert code == migrate.EXIT_USAGE
    assert fakes[2] == []


def test_import_writes_outcomes_and_report(tmp_path, fakes):
    _, state, _ = fakes
    src = write_records_csv(tmp_path / "in.csv", [make_record(), make_record(scope="/")])
    out = tmp_path / "out"

    code = migrate.main(["--output-dir", str(out), "--workers", "2", "import",
                         "--file", str(src), "--subscription", TARGET_SUB])

    assert code == migrate.EXIT_OK
    assert len(state.created) == 1
    with (out / "import-outcomes.csv").open(encoding="utf-8", newline="") as handle:
        assert [r["Status"] for r in csv.DictReader(handle)] == ["Assigned", "Skipped"]
    assert (out / "import-report.html").exists()


def test_dry_run_creates_nothing(tmp_path, fakes):
    _, state, _ = fakes
    src = write_records_csv(tmp_path / "in.csv", [make_record()])
    code = migrate.main(["--output-dir", str(tmp_path), "import", "--file", str(src),
                         "--subscription", TARGET_SUB, "--dry-run"])
    assert code == migrate.EXIT_OK
    assert state.created == []


def test_export_writes_files(tmp_path, fakes):
    _, state, _ = fakes
    state.subscriptions = [Subscription("sub-a", "Production")]
    state.assignments["sub-a"] = [make_record(scope="/subscriptions/sub-a", role_definition_name=None)]
    state.role_definitions["sub-a"] = [RoleDefinition(make_record().role_definition_id, "Reader")]

    assert migrate.main(["--output-dir", str(tmp_path), "export"]) == migrate.EXIT_OK
    assert (tmp_path / "assignments-all.csv").exists()
    assert (tmp_path / "assignments-sub-a.csv").exists()
    assert (tmp_path / "export-report.html").exists()


def test_authentication_failure_exits_1(tmp_path, monkeypatch):
    def _fail(settings):
        raise AuthenticationFailure("no az login session")

    monkeypatch.setattr(migrate, "build_providers", _fail)
    assert migrate.main(["--output-dir", str(tmp_path), "export"]) == migrate.EXIT_AUTH


def test_bad_environment_setting_exits_2(monkeypatch):
    monkeypatch.setenv("RBAC_MIGRATE_MAX_WORKERS", "many")
    assert migrate.main(["export"]) == migrate.EXIT_USAGE


def test_settings_from_env():
    settings = Settings.from_env({
        "RBAC_MIGRATE_OUTPUT_DIR": "exports",
        "RBAC_MIGRATE_MAX_WORKERS": "0",
        "RBAC_MIGRATE_TIMEOUT": "12.5",
        "AZURE_TENANT_ID": "tenant-1",
        "RBAC_MIGRATE_LOG_LEVEL": "debug",
    })
    assert settings == Settings(output_dir="exports", max_workers=1, timeout=12.5,
                                tenant_id="tenant-1", log_level="DEBUG")
    assert Settings.from_env({}) == Settings()


def test_provider_failure_before_any_scope_exits_3(tmp_path, fakes, monkeypatch):
    directory, state, _ = fakes

    class _Unavailable(FakeAuthorization):
        def list_subscriptions(self):
            raise ProviderError("503 ServiceUnavailable", status_code=503)

    monkeypatch.setattr(migrate, "build_providers", lambda settings: (directory, lambda: _Unavailable(state)))
    assert migrate.main(["--output-dir", str(tmp_path), "export"]) == migrate.EXIT_PROVIDER


def test_directory_failure_on_import_exits_3(tmp_path, fakes, monkeypatch):
    directory, _, _ = fakes

    def _denied():
        raise ScopeAccessDenied("/", "403 Forbidden")

    monkeypatch.setattr(directory, "list_verified_domains", _denied)
    src = write_records_csv(tmp_path / "in.csv", [make_record()])
    code = migrate.main(["--output-dir", str(tmp_path), "import", "--file", str(src),
                         "--subscription", TARGET_SUB])
    assert code == migrate.EXIT_PROVIDER
