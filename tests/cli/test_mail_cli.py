"""Tests for mail sync CLI commands."""

import json
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from typer.testing import CliRunner

from claimmail.cli import cli
from claimmail.ingestion.imap.sync_state import CheckpointStore, ItemFailure, SyncResult


@pytest.fixture
def runner():
    """Create CLI test runner."""
    return CliRunner()


@pytest.fixture
def env(tmp_path: Path, monkeypatch) -> Path:
    """Point storage at tmp_path and clear any IMAP environment."""
    db_path = tmp_path / "claimmail.db"
    monkeypatch.setenv("CLAIMMAIL_DB_PATH", str(db_path))
    monkeypatch.setenv("FILE_ROOT_PATH", str(tmp_path / "files"))
    for name in ("IMAP_HOST", "IMAP_PORT", "IMAP_USER", "IMAP_PASS", "IMAP_TLS"):
        monkeypatch.delenv(name, raising=False)
    return db_path


def _json(result) -> dict:
    return json.loads(result.stdout.strip().splitlines()[-1])


def test_status_json_on_empty_database(runner, env):
    """Test status reports an unconfigured, never-synced mailbox."""
    result = runner.invoke(cli, ["mail", "status", "--json"])

    assert result.exit_code == 0
    assert _json(result) == {
        "enabled": True,
        "useIdle": True,
        "configured": False,
        "lastProcessedId": None,
        "lastSyncedAt": None,
        "threads": 0,
        "messages": 0,
    }


def test_status_shows_checkpoint(runner, env):
    """Test status reads the stored checkpoint."""
    store = CheckpointStore(env)
    store.advance("1005")
    store.close()

    result = runner.invoke(cli, ["mail", "status"])

    assert result.exit_code == 0
    assert "Mail Sync Status" in result.output
    assert "1005" in result.output


def test_config_set_and_show(runner, env):
    """Test stored configuration is saved and shown with the password masked."""
    result = runner.invoke(
        cli,
        [
            "mail", "config", "set",
            "--host", "imap.example.com",
            "--user", "claims@example.com",
            "--password", "hunter2",
            "--no-tls",
            "--json",
        ],
    )
    assert result.exit_code == 0
    saved = _json(result)
    assert saved["success"] is True
    assert saved["config"]["imap_host"] == "imap.example.com"
    assert saved["config"]["imap_tls"] is False

    result = runner.invoke(cli, ["mail", "config", "show", "--json"])

    assert result.exit_code == 0
    shown = _json(result)
    assert shown["imap_user"] == "claims@example.com"
    assert shown["imap_pass"] == "••••••••"
    assert "hunter2" not in result.output

    result = runner.invoke(cli, ["mail", "status", "--json"])
    assert _json(result)["configured"] is True


def test_config_set_keeps_existing_fields(runner, env):
    """Test a partial update leaves other stored fields untouched."""
    runner.invoke(cli, ["mail", "config", "set", "--host", "imap.example.com", "--user", "u"])

    result = runner.invoke(cli, ["mail", "config", "set", "--port", "143", "--json"])

    config = _json(result)["config"]
    assert config["imap_host"] == "imap.example.com"
    assert config["imap_user"] == "u"
    assert config["imap_port"] == 143


def test_config_show_empty(runner, env):
    """Test show explains that the environment applies."""
    result = runner.invoke(cli, ["mail", "config", "show"])

    assert result.exit_code == 0
    assert "No stored configuration" in result.output


def test_sync_now_unconfigured_fails(runner, env):
    """Test sync-now exits non-zero with the configuration error code."""
    result = runner.invoke(cli, ["mail", "sync-now", "--json"])

    assert result.exit_code == 1
    payload = _json(result)
    assert payload["success"] is False
    assert payload["code"] == "MAILBOX_NOT_CONFIGURED"


def test_sync_now_prints_counts(runner, env):
    """Test sync-now reports the pipeline counts."""
    supervisor = MagicMock()
    supervisor.sync_now = AsyncMock(
        return_value=SyncResult(
            new_messages=4,
            new_threads=1,
            failures=[ItemFailure(item="7", error="bad part", stage="attachment")],
        )
    )
    supervisor.aclose = AsyncMock()

    with patch("claimmail.ingestion.imap.cli.build_supervisor", return_value=supervisor):
        result = runner.invoke(cli, ["mail", "sync-now", "--json"])

    assert result.exit_code == 0
    assert _json(result) == {"success": True, "newMessages": 4, "newThreads": 1, "failures": 1}
    supervisor.aclose.assert_awaited_once()


def test_invalid_environment_is_reported(runner, env, monkeypatch):
    """Test a malformed integer variable produces a configuration error."""
    monkeypatch.setenv("IMAP_PORT", "not-a-port")

    result = runner.invoke(cli, ["mail", "status", "--json"])

    assert result.exit_code == 1
    assert _json(result)["code"] == "CONFIGURATION_ERROR"


def test_run_without_password_fails(runner, env, monkeypatch):
    """Test run refuses to start when host and user are set but no password is."""
    monkeypatch.setenv("IMAP_HOST", "imap.example.com")
    monkeypatch.setenv("IMAP_USER", "claims@example.com")

    result = runner.invoke(cli, ["mail", "run", "--json"])

    assert result.exit_code == 1
    payload = _json(result)
    assert payload["success"] is False
    assert payload["code"] == "MAILBOX_PASSWORD_MISSING"


def test_connection_test_reports_connect_time(runner, env):
    """Test the connection check prints the measured connect time."""
    report = {
        "connected": True,
        "supports_idle": True,
        "exists": 12,
        "folder": "INBOX",
        "connect_seconds": 0.25,
    }

    with patch(
        "claimmail.ingestion.imap.cli.MailboxFetcher.test_connection", return_value=report
    ):
        result = runner.invoke(cli, ["mail", "test"])

    assert result.exit_code == 0
    assert "IDLE supported: yes" in result.output
    assert "Connect time: 0.250s" in result.output
