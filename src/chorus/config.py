"""Configuration loading and validation for Chorus."""

from __future__ import annotations

import os
from datetime import timedelta
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, field_validator

# PluralKit and Tupperbox bot user ids
DEFAULT_PROXY_APPLICATION_IDS = ["466378653216014359", "510016054391734273"]
DEFAULT_PROXY_SYSTEM_NAMES = ["PluralKit", "Tupperbox", "PK", "PKSystem"]

# Replies to refused interactions, keyed by denial reason
DEFAULT_DENIAL_NOTICES = {
    "not_authenticated": "You need to authenticate before talking to personalities.",
    "blacklisted": "You are not allowed to talk to personalities.",
    "nsfw_not_permitted": (
        "Personalities can only be used in channels marked NSFW, "
        "or in DMs once you have verified with /verify."
    ),
}
DEFAULT_RESTRICTION_NOTICE = (
    "Personalities can only be used in DMs or in channels marked NSFW. "
    "Mark this channel as NSFW in its settings to use the activated personality."
)


class DiscordConfig(BaseModel):
    """Discord transport configuration."""

    bot_user_id: str | None = None  # Auto-detected at runtime from Discord
    command_prefix: str = "!tz"
    operator_user_ids: list[str] = Field(default_factory=list)
    proxy_application_ids: list[str] = Field(
        default_factory=lambda: list(DEFAULT_PROXY_APPLICATION_IDS)
    )
    proxy_system_names: list[str] = Field(
        default_factory=lambda: list(DEFAULT_PROXY_SYSTEM_NAMES)
    )
    failure_notice: str = "Sorry, something went wrong while handling that message."
    denial_notices: dict[str, str] = Field(default_factory=lambda: dict(DEFAULT_DENIAL_NOTICES))
    restriction_notice: str = DEFAULT_RESTRICTION_NOTICE
    restriction_notice_interval_minutes: float = 60.0

    @field_validator("restriction_notice_interval_minutes")
    @classmethod
    def validate_interval(cls, v: float) -> float:
        """The notice interval must be positive."""
        if v <= 0:
            raise ValueError("restriction_notice_interval_minutes must be positive")
        return v

    @property
    def restriction_notice_interval(self) -> timedelta:
        return timedelta(minutes=self.restriction_notice_interval_minutes)


class MessagingConfig(BaseModel):
    """Mention parsing and reference resolution settings."""

    mention_char: str = "@"
    max_alias_word_count: int = 5
    nested_preview_chars: int = 200
    link_placeholder: str = "[Discord message link]"

    @field_validator("mention_char")
    @classmethod
    def validate_mention_char(cls, v: str) -> str:
        """Mention sigil must be a single non-word, non-space character."""
        if len(v) != 1 or v.isalnum() or v == "_" or v.isspace():
            raise ValueError("mention_char must be a single punctuation character")
        return v

    @field_validator("max_alias_word_count")
    @classmethod
    def validate_max_words(cls, v: int) -> int:
        """At least one word must be considered."""
        if v < 1:
            raise ValueError("max_alias_word_count must be at least 1")
        return v


class DedupConfig(BaseModel):
    """Proxy duplicate detection settings."""

    proxy_delay_seconds: float = 2.0
    window_ttl_seconds: float = 30.0
    max_entries_per_channel: int = 10
    sweep_interval_seconds: float = 60.0
    similarity_threshold: float = 0.9
    min_containment_ratio: float = 0.8

    @field_validator(
        "proxy_delay_seconds",
        "window_ttl_seconds",
        "sweep_interval_seconds",
    )
    @classmethod
    def validate_positive(cls, v: float) -> float:
        """Durations must be positive."""
        if v <= 0:
            raise ValueError("durations must be positive")
        return v

    @field_validator("similarity_threshold", "min_containment_ratio")
    @classmethod
    def validate_ratio(cls, v: float) -> float:
        """Ratios live in (0, 1]."""
        if not 0 < v <= 1:
            raise ValueError("ratio must be within (0, 1]")
        return v

    @field_validator("max_entries_per_channel")
    @classmethod
    def validate_max_entries(cls, v: int) -> int:
        """Each channel window must hold at least one message."""
        if v < 1:
            raise ValueError("max_entries_per_channel must be at least 1")
        return v

    @property
    def proxy_delay(self) -> timedelta:
        return timedelta(seconds=self.proxy_delay_seconds)

    @property
    def window_ttl(self) -> timedelta:
        return timedelta(seconds=self.window_ttl_seconds)


class ConversationsConfig(BaseModel):
    """Active conversation tracking settings."""

    conversation_timeout_minutes: float = 30.0
    auto_response_in_dm: bool = True
    message_attribution_hours: float = 24.0
    webhook_association_minutes: float = 60.0

    @property
    def conversation_timeout(self) -> timedelta:
        return timedelta(minutes=self.conversation_timeout_minutes)

    @property
    def message_attribution_ttl(self) -> timedelta:
        return timedelta(hours=self.message_attribution_hours)

    @property
    def webhook_association_ttl(self) -> timedelta:
        return timedelta(minutes=self.webhook_association_minutes)


class AuthConfig(BaseModel):
    """Authorization settings."""

    require_authentication: bool = True
    token_refresh_threshold_minutes: float = 60.0

    @property
    def token_refresh_threshold(self) -> timedelta:
        return timedelta(minutes=self.token_refresh_threshold_minutes)


class DatabaseConfig(BaseModel):
    """Database configuration."""

    path: str = "chorus.db"


class Config(BaseModel):
    """Root configuration for Chorus."""

    data_dir: Path = Path("./data")
    log_level: str = "INFO"
    log_json: bool = True

    discord: DiscordConfig = Field(default_factory=DiscordConfig)
    messaging: MessagingConfig = Field(default_factory=MessagingConfig)
    dedup: DedupConfig = Field(default_factory=DedupConfig)
    conversations: ConversationsConfig = Field(default_factory=ConversationsConfig)
    auth: AuthConfig = Field(default_factory=AuthConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log_level is valid."""
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR"}
        v_upper = v.upper()
        if v_upper not in allowed:
            raise ValueError(f"log_level must be one of: {allowed}")
        return v_upper

    @property
    def database_path(self) -> Path:
        """Get full path to database file."""
        return self.data_dir / self.database.path

    @property
    def discord_token(self) -> str | None:
        """Get Discord token from environment."""
        return os.environ.get("DISCORD_TOKEN")

    @classmethod
    def load(cls, config_path: Path | str = Path("config.yaml")) -> "Config":
        """Load configuration from YAML file with env var overlay.

        Args:
            config_path: Path to YAML configuration file.

        Returns:
            Validated Config instance.

        Raises:
            FileNotFoundError: If config file doesn't exist.
            ValueError: If config is invalid.
        """
        config_path = Path(config_path)

        if not config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        with open(config_path) as f:
            yaml_config = yaml.safe_load(f) or {}

        if "CHORUS_DATA_DIR" in os.environ:
            yaml_config["data_dir"] = os.environ["CHORUS_DATA_DIR"]
        if "CHORUS_LOG_LEVEL" in os.environ:
            yaml_config["log_level"] = os.environ["CHORUS_LOG_LEVEL"]
        if "CHORUS_LOG_JSON" in os.environ:
            yaml_config["log_json"] = os.environ["CHORUS_LOG_JSON"].lower() == "true"

        return cls.model_validate(yaml_config)

    @classmethod
    def load_or_default(cls, config_path: Path | str | None = None) -> "Config":
        """Load configuration, falling back to defaults if file not found.

        Args:
            config_path: Optional path to YAML configuration file.

        Returns:
            Config instance (from file or defaults).
        """
        if config_path is None:
            for path in [Path("config.yaml"), Path("config.yml")]:
                if path.exists():
                    return cls.load(path)
            return cls()

        try:
            return cls.load(config_path)
        except FileNotFoundError:
            return cls()
