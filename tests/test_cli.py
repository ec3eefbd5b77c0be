"""
Tests for softpurge CLI module.
"""

import asyncio
import json
import sqlite3
import time

import pytest
from click.testing import CliRunner
from rich.console import Console

from softpurge import __version__
from softpurge import config as config_module
from softpurge.cli import cli
from softpurge.config import PurgeConfig, get_config, set_config
from softpurge.jobs import JobQueue, SQLJobStore


@pytest.fixture
def runner():
    """Create a CLI runner."""
    return CliRunner()


@pytest.fixture
def store_url(tmp_path):
    return f"sqlite:///{tmp_path / 'jobs.db'}"


@pytest.fixture(autouse=True)
def cli_config(store_url, monkeypatch):
    """Point the CLI at a throwaway job store with a wide console."""
    monkeypatch.setattr("softpurge.cli.console", Console(width=200))
    set_config(
        PurgeConfig(environment="test", job_store_url=store_url, queue_name="purges")
    )
    yield
    config_module._config = None


def populate(store_url, action):
    """Run ``action`` against the CLI's queue before invoking a command."""

    async def _run():
        store = SQLJobStore(store_url)
        await store.initialize()
        try:
            return await action(JobQueue(store, "purges"))
        finally:
            await store.close()

    return asyncio.run(_run())


class TestCLIBasics:
    """Test basic CLI functionality."""

    def test_cli_help(self, runner):
        """Test CLI help command."""
        result = runner.invoke(cli, ["--help"])
        assert result.exit_code == 0
        assert "purge pipeline" in result.output.lower()

    def test_cli_version(self, runner):
        """Test CLI version command."""
        result = runner.invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.output

    def test_cli_no_command(self, runner):
        """Test CLI with no command shows info."""
        result = runner.invoke(cli, [])
        assert result.exit_code == 0
        assert "softpurge" in result.output

    def test_task_id(self, runner):
        result = runner.invoke(cli, ["task-id", "users", "65f0c2a1"])
        assert result.exit_code == 0
        assert result.output.strip() == "purge-users-65f0c2a1"


class TestConfigCommands:
    """Test configuration-related commands."""

    def test_config_show(self, runner):
        """Test config show command."""
        result = runner.invoke(cli, ["config", "show"])
        assert result.exit_code == 0
        assert "softpurge Configuration" in result.output
        assert "retention_days" in result.output

    def test_config_show_json(self, runner, store_url):
        """Test config show with JSON format."""
        result = runner.invoke(cli, ["config", "show", "--format", "json"])
        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["queue_name"] == "purges"
        assert data["job_store_url"] == store_url

    def test_config_show_yaml(self, runner):
        result = runner.invoke(cli, ["config", "show", "--format", "yaml"])
        assert result.exit_code == 0
        assert "retention_days: 30" in result.output

    def test_config_file_option(self, runner, tmp_path):
        """Test loading configuration from a file."""
        path = tmp_path / "softpurge.yaml"
        path.write_text("retention_days: 12\nenvironment: test\n")

        result = runner.invoke(
            cli, ["--config", str(path), "config", "show", "--format", "json"]
        )

        assert result.exit_code == 0
        assert json.loads(result.output)["retention_days"] == 12
        assert get_config().retention_days == 12

    def test_invalid_config_file(self, runner, tmp_path):
        path = tmp_path / "bad.json"
        path.write_text('{"retention_days": 0}')

        result = runner.invoke(cli, ["--config", str(path), "config", "show"])

        assert result.exit_code == 1
        assert "Error loading configuration" in result.output


class TestJobCommands:
    """Test queue inspection commands."""

    def test_counts_empty(self, runner):
        result = runner.invoke(cli, ["jobs", "counts"])
        assert result.exit_code == 0
        assert "waiting" in result.output
        assert "delayed" in result.output
        assert "active" in result.output

    def test_list_empty(self, runner):
        result = runner.invoke(cli, ["jobs", "list"])
        assert result.exit_code == 0
        assert "No queued tasks" in result.output

    def test_list_tasks(self, runner, store_url):
        populate(
            store_url,
            lambda queue: queue.add(
                "purge-entity",
                {"entity_type": "users", "entity_id": "u1"},
                task_id="purge-users-u1",
            ),
        )

        result = runner.invoke(cli, ["jobs", "list"])

        assert result.exit_code == 0
        assert "purge-users-u1" in result.output
        assert "0/5" in result.output

    def test_cancel(self, runner, store_url):
        populate(
            store_url,
            lambda queue: queue.add("purge-entity", {}, task_id="purge-users-u2"),
        )

        result = runner.invoke(cli, ["jobs", "cancel", "purge-users-u2"])

        assert result.exit_code == 0
        assert "Cancelled purge-users-u2" in result.output
        remaining = populate(store_url, lambda queue: queue.get_job("purge-users-u2"))
        assert remaining is None

    def test_cancel_missing(self, runner):
        result = runner.invoke(cli, ["jobs", "cancel", "purge-users-nobody"])
        assert result.exit_code == 1
        assert "not found or currently running" in result.output

    def test_schedules(self, runner, store_url):
        populate(
            store_url,
            lambda queue: queue.upsert_job_scheduler(
                "scan-users-daily", "FREQ=DAILY", "scan", {"entity_type": "users"}
            ),
        )

        result = runner.invoke(cli, ["jobs", "schedules"])

        assert result.exit_code == 0
        assert "scan-users-daily" in result.output
        assert "FREQ=DAILY" in result.output

    def test_unreachable_store(self, runner, tmp_path):
        missing = tmp_path / "missing" / "jobs.db"
        set_config(PurgeConfig(job_store_url=f"sqlite:///{missing}"))

        result = runner.invoke(cli, ["jobs", "counts"])

        assert result.exit_code == 1
        assert "Error reading job store" in result.output


class TestHealthCommand:
    """Test the health command."""

    def test_healthy(self, runner):
        result = runner.invoke(cli, ["health"])
        assert result.exit_code == 0
        assert "job_store" in result.output

    def test_unreachable(self, runner, tmp_path):
        missing = tmp_path / "missing" / "jobs.db"
        set_config(PurgeConfig(job_store_url=f"sqlite:///{missing}"))

        result = runner.invoke(cli, ["health"])

        assert result.exit_code == 1
        assert "unreachable" in result.output

    def test_locked_store_fails_within_timeout(self, runner, store_url, tmp_path):
        """Test that a job store held under an exclusive lock fails fast."""
        populate(store_url, lambda queue: queue.counts())
        set_config(
            PurgeConfig(job_store_url=store_url, health_check_timeout_seconds=0.2)
        )
        holder = sqlite3.connect(str(tmp_path / "jobs.db"), isolation_level=None)
        holder.execute("BEGIN EXCLUSIVE")
        try:
            started = time.monotonic()
            result = runner.invoke(cli, ["health"])
            elapsed = time.monotonic() - started
        finally:
            holder.execute("ROLLBACK")
            holder.close()

        assert result.exit_code == 1
        assert "unreachable" in result.output
        assert elapsed < 2


class TestCheckCommand:
    """Test the policy check command."""

    def test_clean_sources(self, runner, tmp_path):
        (tmp_path / "clean.py").write_text("users.soft_delete(1)\n")

        result = runner.invoke(cli, ["check", str(tmp_path)])

        assert result.exit_code == 0
        assert "No policy violations" in result.output

    def test_violations(self, runner, tmp_path):
        path = tmp_path / "dirty.py"
        path.write_text("x = 1\nusers.delete_many({})\n")

        result = runner.invoke(cli, ["check", str(path)])

        assert result.exit_code == 1
        assert f"{path}:2:1: hard-delete:" in result.output
        assert "1 policy violation(s)" in result.output

    def test_pragma_exempts(self, runner, tmp_path):
        path = tmp_path / "purge.py"
        path.write_text("users.delete_one({})  # softpurge: allow-hard-delete\n")

        result = runner.invoke(cli, ["check", str(path)])

        assert result.exit_code == 0

    def test_syntax_error(self, runner, tmp_path):
        path = tmp_path / "broken.py"
        path.write_text("def broken(:\n")

        result = runner.invoke(cli, ["check", str(path)])

        assert result.exit_code == 2
        assert "Cannot parse" in result.output

    def test_paths_required(self, runner):
        result = runner.invoke(cli, ["check"])
        assert result.exit_code == 2
