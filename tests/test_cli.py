"""Tests for the CLI module.

Covers:
- CLI help and version output
- Database management commands (init, status, migrate)
- Configuration validation and checking
- Authentication record management
- Personality registration and mention resolution
"""

from pathlib import Path

import pytest
import yaml
from click.testing import CliRunner

from chorus import __version__
from chorus.cli import cli


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    """Config pointing at a temp data directory, with quiet logging."""
    path = tmp_path / "config.yaml"
    with open(path, "w") as f:
        yaml.dump({"data_dir": str(tmp_path / "data"), "log_level": "ERROR"}, f)
    return path


def invoke(runner: CliRunner, config_file: Path, *args: str):
    return runner.invoke(cli, ["-c", str(config_file), *args])


class TestCliHelp:
    """Tests for help and basic command availability."""

    def test_cli_help(self, cli_runner: CliRunner) -> None:
        result = cli_runner.invoke(cli, ["--help"])
        assert result.exit_code == 0
        assert "Chorus - routes Discord messages to AI personalities." in result.output
        for group in ("db", "config", "auth", "personality", "run", "version"):
            assert group in result.output

    def test_version(self, cli_runner: CliRunner) -> None:
        result = cli_runner.invoke(cli, ["version"])
        assert result.exit_code == 0
        assert result.output.strip() == f"chorus {__version__}"

    def test_auth_group_help(self, cli_runner: CliRunner) -> None:
        result = cli_runner.invoke(cli, ["auth", "--help"])
        assert result.exit_code == 0
        for command in ("login", "refresh", "blacklist", "unblacklist", "verify-nsfw", "status"):
            assert command in result.output


class TestDatabaseCommands:
    """Tests for db subcommands."""

    def test_status_fresh_database(self, cli_runner, config_file) -> None:
        result = invoke(cli_runner, config_file, "db", "status")
        assert result.exit_code == 0
        assert "Current version: 0" in result.output
        assert "Pending migrations: 1" in result.output

    def test_migrate(self, cli_runner, config_file) -> None:
        result = invoke(cli_runner, config_file, "db", "migrate")
        assert result.exit_code == 0
        assert "Migrated from version 0 to 1" in result.output

        again = invoke(cli_runner, config_file, "db", "migrate")
        assert "Database already at version 1" in again.output

    def test_init(self, cli_runner, config_file, tmp_path) -> None:
        result = invoke(cli_runner, config_file, "db", "init")
        assert result.exit_code == 0
        assert "Schema version: 1" in result.output
        assert (tmp_path / "data" / "chorus.db").exists()

        status = invoke(cli_runner, config_file, "db", "status")
        assert "No pending migrations" in status.output


class TestConfigCheck:
    """Tests for config check."""

    def test_valid_config(self, cli_runner, config_file) -> None:
        result = cli_runner.invoke(cli, ["config", "check", "-c", str(config_file)])
        assert result.exit_code == 0
        assert "Configuration valid" in result.output
        assert "Mention character: @" in result.output
        assert "Authentication: required" in result.output

    def test_invalid_config(self, cli_runner, tmp_path) -> None:
        path = tmp_path / "bad.yaml"
        with open(path, "w") as f:
            yaml.dump({"messaging": {"mention_char": "ab"}}, f)
        result = cli_runner.invoke(cli, ["config", "check", "-c", str(path)])
        assert result.exit_code == 1
        assert "Configuration error" in result.output

    def test_missing_config(self, cli_runner, tmp_path) -> None:
        result = cli_runner.invoke(cli, ["config", "check", "-c", str(tmp_path / "nope.yaml")])
        assert result.exit_code != 0


class TestRun:
    def test_run_requires_token(self, cli_runner, config_file, monkeypatch) -> None:
        monkeypatch.delenv("DISCORD_TOKEN", raising=False)
        result = invoke(cli_runner, config_file, "run", "--in-memory")
        assert result.exit_code == 1
        assert "DISCORD_TOKEN" in result.output


class TestAuthCommands:
    """Tests for auth record management."""

    def test_login_and_status(self, cli_runner, config_file) -> None:
        login = invoke(cli_runner, config_file, "auth", "login", "42", "--token", "abc")
        assert login.exit_code == 0
        assert '"identity": "42"' in login.output

        status = invoke(cli_runner, config_file, "auth", "status", "42")
        assert status.exit_code == 0
        assert '"authenticated": true' in status.output
        assert '"needs_refresh": false' in status.output

    def test_double_login_fails(self, cli_runner, config_file) -> None:
        invoke(cli_runner, config_file, "auth", "login", "42", "--token", "abc")
        result = invoke(cli_runner, config_file, "auth", "login", "42", "--token", "abc")
        assert result.exit_code == 1
        assert "already authenticated" in result.output

    def test_blacklist_cycle(self, cli_runner, config_file) -> None:
        invoke(cli_runner, config_file, "auth", "login", "42", "--token", "abc")
        invoke(cli_runner, config_file, "auth", "verify-nsfw", "42")

        blacklisted = invoke(cli_runner, config_file, "auth", "blacklist", "42", "--reason", "spam")
        assert blacklisted.exit_code == 0
        assert '"blacklisted": true' in blacklisted.output
        assert '"nsfw_verified": false' in blacklisted.output

        refused = invoke(cli_runner, config_file, "auth", "refresh", "42", "--token", "new")
        assert refused.exit_code == 1

        assert invoke(cli_runner, config_file, "auth", "unblacklist", "42").exit_code == 0
        refreshed = invoke(
            cli_runner, config_file, "auth", "refresh", "42", "--token", "new", "--expires-in", "90"
        )
        assert refreshed.exit_code == 0
        assert '"value": "new"' in refreshed.output

    def test_unknown_identity(self, cli_runner, config_file) -> None:
        result = invoke(cli_runner, config_file, "auth", "verify-nsfw", "nobody")
        assert result.exit_code == 1

    def test_revoke(self, cli_runner, config_file) -> None:
        invoke(cli_runner, config_file, "auth", "login", "42", "--token", "abc")
        result = invoke(cli_runner, config_file, "auth", "revoke", "42")
        assert result.exit_code == 0
        assert "OK" in result.output

        status = invoke(cli_runner, config_file, "auth", "status", "42")
        assert '"exists": false' in status.output

    def test_expires_at_in_past_rejected(self, cli_runner, config_file) -> None:
        result = invoke(
            cli_runner,
            config_file,
            "auth",
            "login",
            "42",
            "--token",
            "abc",
            "--expires-at",
            "2000-01-01",
        )
        assert result.exit_code == 1


class TestPersonalityCommands:
    """Tests for personality registration and lookup."""

    def test_add_and_list(self, cli_runner, config_file) -> None:
        added = invoke(
            cli_runner,
            config_file,
            "personality",
            "add",
            "bambi-prime",
            "--display-name",
            "Bambi Prime",
            "--alias",
            "bambi prime",
            "--alias",
            "bp",
        )
        assert added.exit_code == 0
        assert "Registered bambi-prime (2 aliases)" in added.output

        listed = invoke(cli_runner, config_file, "personality", "list")
        assert "bambi-prime (Bambi Prime)" in listed.output

    def test_empty_list(self, cli_runner, config_file) -> None:
        result = invoke(cli_runner, config_file, "personality", "list")
        assert "No personalities registered" in result.output

    def test_resolve(self, cli_runner, config_file) -> None:
        invoke(cli_runner, config_file, "personality", "add", "bambi")
        invoke(
            cli_runner, config_file, "personality", "add", "bambi-prime", "--alias", "bambi prime"
        )

        result = invoke(cli_runner, config_file, "personality", "resolve", "@bambi prime hello")
        assert result.exit_code == 0
        assert result.output.startswith("bambi-prime (matched 'bambi prime', 2 words)")

        missing = invoke(cli_runner, config_file, "personality", "resolve", "@ghost hi")
        assert missing.exit_code == 1

    def test_user_alias(self, cli_runner, config_file) -> None:
        invoke(cli_runner, config_file, "personality", "add", "bambi")
        result = invoke(
            cli_runner, config_file, "personality", "alias", "bambi", "b", "--owner", "42"
        )
        assert result.exit_code == 0
        assert "(user 42)" in result.output

        mine = invoke(cli_runner, config_file, "personality", "resolve", "@b hi", "--user", "42")
        assert mine.exit_code == 0
        theirs = invoke(cli_runner, config_file, "personality", "resolve", "@b hi", "--user", "7")
        assert theirs.exit_code == 1

    def test_alias_unknown_personality(self, cli_runner, config_file) -> None:
        result = invoke(cli_runner, config_file, "personality", "alias", "ghost", "g")
        assert result.exit_code == 1
        assert "Unknown personality" in result.output
