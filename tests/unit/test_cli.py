"""Tests for the weighsync CLI."""

from __future__ import annotations

import json
from pathlib import Path

import pytest
from typer.testing import CliRunner

from weighsync import __version__
from weighsync.cli.main import app
from weighsync.unified_config import UnifiedConfig

runner = CliRunner()


@pytest.fixture(autouse=True)
def data_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    monkeypatch.setenv("WEIGHSYNC_DIR", str(tmp_path))
    return tmp_path


def _activate(tenant_id: int = 7) -> None:
    UnifiedConfig.load().set_tenant(tenant_id)


# ─── config ─────────────────────────────────────────────────────


class TestConfigCommands:
    def test_show_json(self, data_dir: Path) -> None:
        result = runner.invoke(app, ["config", "show", "--json"])

        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["tenant_id"] == 0
        assert data["data_dir"] == str(data_dir)

    def test_show_text(self) -> None:
        result = runner.invoke(app, ["config", "show"])
        assert result.exit_code == 0
        assert "(not set)" in result.output
        assert "(disabled)" in result.output

    def test_set_tenant(self) -> None:
        result = runner.invoke(app, ["config", "set-tenant", "12"])

        assert result.exit_code == 0
        assert UnifiedConfig.load().tenant_id == 12

    def test_set_tenant_rejects_zero(self) -> None:
        result = runner.invoke(app, ["config", "set-tenant", "0"])
        assert result.exit_code == 1

    def test_set_cloud(self) -> None:
        result = runner.invoke(app, ["config", "set-cloud", "https://backup.example.com"])

        assert result.exit_code == 0
        assert "Cloud sync enabled" in result.output
        assert UnifiedConfig.load().cloud.server_url == "https://backup.example.com"

    def test_set_cloud_rejects_scheme(self) -> None:
        result = runner.invoke(app, ["config", "set-cloud", "backup.example.com"])
        assert result.exit_code == 1


# ─── sync ───────────────────────────────────────────────────────


class TestSyncCommands:
    def test_requires_activation(self) -> None:
        result = runner.invoke(app, ["sync", "auto"])

        assert result.exit_code == 1
        assert "No activation configured" in result.output

    def test_upload_without_cloud(self) -> None:
        _activate()
        result = runner.invoke(app, ["sync", "upload", "--json"])

        assert result.exit_code == 1
        data = json.loads(result.output)
        assert data["success"] is False
        assert data["message"] == "Cloud sync not configured"

    def test_check_without_cloud(self) -> None:
        _activate()
        result = runner.invoke(app, ["sync", "check", "--json"])

        assert result.exit_code == 0
        assert json.loads(result.output)["mismatched"] is False


# ─── misc ───────────────────────────────────────────────────────


def test_status_json() -> None:
    _activate(7)
    result = runner.invoke(app, ["status", "--json"])

    assert result.exit_code == 0
    data = json.loads(result.output)
    assert data["tenantId"] == 7
    assert data["pendingUpload"] == 0
    assert data["lastSyncTime"] is None
    assert set(data["records"]) >= {"customers"}


def test_version() -> None:
    result = runner.invoke(app, ["version"])
    assert result.exit_code == 0
    assert __version__ in result.output


def test_no_args_shows_help() -> None:
    result = runner.invoke(app, [])
    assert "sync" in result.output


def test_status_text() -> None:
    _activate(7)
    result = runner.invoke(app, ["status"])

    assert result.exit_code == 0
    assert "customers" in result.output
    assert "never" in result.output


def test_discover_without_activation() -> None:
    result = runner.invoke(app, ["discover", "--timeout", "0.1"])
    assert result.exit_code == 1
