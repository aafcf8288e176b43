"""Tests for the configuration module."""

from datetime import timedelta
from pathlib import Path

import pytest
import yaml
from pydantic import ValidationError

from chorus.config import (
    DEFAULT_DENIAL_NOTICES,
    DEFAULT_PROXY_APPLICATION_IDS,
    AuthConfig,
    Config,
    ConversationsConfig,
    DedupConfig,
    DiscordConfig,
    MessagingConfig,
)


@pytest.fixture
def sample_config_yaml(tmp_path: Path) -> Path:
    """Create a sample config file for testing."""
    config = {
        "data_dir": str(tmp_path / "data"),
        "log_level": "debug",
        "log_json": False,
        "discord": {"command_prefix": "!c", "operator_user_ids": ["1", "2"]},
        "messaging": {"mention_char": "&", "max_alias_word_count": 3},
        "dedup": {"proxy_delay_seconds": 1.5, "max_entries_per_channel": 20},
        "conversations": {"conversation_timeout_minutes": 10},
        "auth": {"require_authentication": False},
        "database": {"path": "test.db"},
    }
    config_path = tmp_path / "config.yaml"
    with open(config_path, "w") as f:
        yaml.dump(config, f)
    return config_path


class TestConfigLoading:
    """Tests for loading YAML with environment overlay."""

    def test_load(self, sample_config_yaml: Path, tmp_path: Path) -> None:
        config = Config.load(sample_config_yaml)
        assert config.log_level == "DEBUG"
        assert config.log_json is False
        assert config.discord.command_prefix == "!c"
        assert config.discord.operator_user_ids == ["1", "2"]
        assert config.messaging.mention_char == "&"
        assert config.messaging.max_alias_word_count == 3
        assert config.dedup.proxy_delay == timedelta(seconds=1.5)
        assert config.conversations.conversation_timeout == timedelta(minutes=10)
        assert config.auth.require_authentication is False
        assert config.database_path == tmp_path / "data" / "test.db"

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(FileNotFoundError):
            Config.load(tmp_path / "missing.yaml")

    def test_empty_file_gives_defaults(self, tmp_path: Path) -> None:
        path = tmp_path / "empty.yaml"
        path.write_text("")
        config = Config.load(path)
        assert config.messaging.mention_char == "@"

    def test_env_overrides(self, sample_config_yaml: Path, tmp_path: Path, monkeypatch) -> None:
        monkeypatch.setenv("CHORUS_DATA_DIR", str(tmp_path / "elsewhere"))
        monkeypatch.setenv("CHORUS_LOG_LEVEL", "warning")
        monkeypatch.setenv("CHORUS_LOG_JSON", "true")
        config = Config.load(sample_config_yaml)
        assert config.data_dir == tmp_path / "elsewhere"
        assert config.log_level == "WARNING"
        assert config.log_json is True

    def test_load_or_default_missing(self, tmp_path: Path) -> None:
        config = Config.load_or_default(tmp_path / "missing.yaml")
        assert config == Config()

    def test_discord_token_from_env(self, monkeypatch) -> None:
        monkeypatch.setenv("DISCORD_TOKEN", "secret")
        assert Config().discord_token == "secret"


class TestDefaults:
    """Tests for default values."""

    def test_defaults(self) -> None:
        config = Config()
        assert config.discord.command_prefix == "!tz"
        assert config.discord.proxy_application_ids == DEFAULT_PROXY_APPLICATION_IDS
        assert config.dedup.proxy_delay_seconds == 2.0
        assert config.dedup.window_ttl == timedelta(seconds=30)
        assert config.dedup.max_entries_per_channel == 10
        assert config.conversations.auto_response_in_dm is True
        assert config.conversations.message_attribution_ttl == timedelta(hours=24)
        assert config.conversations.webhook_association_ttl == timedelta(hours=1)
        assert config.auth.token_refresh_threshold == timedelta(hours=1)
        assert config.messaging.link_placeholder == "[Discord message link]"

    def test_default_lists_are_independent(self) -> None:
        first, second = Config(), Config()
        first.discord.proxy_application_ids.append("123")
        assert "123" not in second.discord.proxy_application_ids

    def test_notice_defaults(self) -> None:
        config = Config()
        assert config.discord.denial_notices == DEFAULT_DENIAL_NOTICES
        assert config.discord.restriction_notice_interval == timedelta(hours=1)
        config.discord.denial_notices["blacklisted"] = "no"
        assert Config().discord.denial_notices["blacklisted"] != "no"


class TestValidation:
    """Tests for field validators."""

    @pytest.mark.parametrize("char", ["", "ab", "a", "1", "_", " "])
    def test_invalid_mention_char(self, char: str) -> None:
        with pytest.raises(ValidationError):
            MessagingConfig(mention_char=char)

    @pytest.mark.parametrize("char", ["@", "&", "!", "%"])
    def test_valid_mention_char(self, char: str) -> None:
        assert MessagingConfig(mention_char=char).mention_char == char

    def test_max_words_at_least_one(self) -> None:
        with pytest.raises(ValidationError):
            MessagingConfig(max_alias_word_count=0)

    @pytest.mark.parametrize("field", ["proxy_delay_seconds", "window_ttl_seconds"])
    def test_durations_positive(self, field: str) -> None:
        with pytest.raises(ValidationError):
            DedupConfig(**{field: 0})

    @pytest.mark.parametrize("value", [0, -3])
    def test_max_entries_at_least_one(self, value: int) -> None:
        with pytest.raises(ValidationError):
            DedupConfig(max_entries_per_channel=value)

    @pytest.mark.parametrize("value", [0, -1])
    def test_restriction_interval_positive(self, value: float) -> None:
        with pytest.raises(ValidationError):
            DiscordConfig(restriction_notice_interval_minutes=value)

    @pytest.mark.parametrize("value", [0, 1.5])
    def test_ratio_bounds(self, value: float) -> None:
        with pytest.raises(ValidationError):
            DedupConfig(similarity_threshold=value)

    def test_invalid_log_level(self) -> None:
        with pytest.raises(ValidationError):
            Config(log_level="LOUD")

    def test_auth_threshold(self) -> None:
        assert AuthConfig(token_refresh_threshold_minutes=5).token_refresh_threshold == timedelta(
            minutes=5
        )

    def test_conversation_timeout(self) -> None:
        config = ConversationsConfig(conversation_timeout_minutes=1.5)
        assert config.conversation_timeout == timedelta(seconds=90)
