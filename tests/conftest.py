"""Pytest configuration and shared fixtures."""

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from click.testing import CliRunner

from chorus.config import Config
from chorus.database import create_tables, get_engine
from chorus.errors import NotFoundError, TransportError
from chorus.models import ChannelKind, InboundMessage, Personality
from chorus.orchestrator import MessageTransport
from chorus.repositories import InMemoryAuthenticationRepository, InMemoryPersonalityDirectory


class FakeClock:
    """Manually advanced clock for time-dependent components."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


def make_message(**overrides) -> InboundMessage:
    """Build an inbound guild message with sensible defaults."""
    data = {
        "id": "1000",
        "channel_id": "200",
        "guild_id": "300",
        "channel_kind": ChannelKind.GUILD,
        "author_id": "42",
        "author_name": "alice",
        "content": "hello",
    }
    data.update(overrides)
    return InboundMessage(**data)


class FakeTransport(MessageTransport):
    """In-memory transport. Unknown message ids raise NotFoundError."""

    def __init__(self, *messages: InboundMessage) -> None:
        self.messages = {m.id: m for m in messages}
        self.unreachable_guilds: set[str] = set()
        self.failing: set[str] = set()  # Message ids whose fetch raises TransportError
        self.fetches: list[str] = []
        self.notices: list[tuple[str, str]] = []

    def add(self, *messages: InboundMessage) -> None:
        for message in messages:
            self.messages[message.id] = message

    def remove(self, message_id: str) -> None:
        self.messages.pop(message_id, None)

    async def fetch_message(self, channel_id: str, message_id: str) -> InboundMessage:
        self.fetches.append(message_id)
        if message_id in self.failing:
            raise TransportError(f"fetch of {message_id} failed")
        try:
            return self.messages[message_id]
        except KeyError:
            raise NotFoundError(f"Unknown message {message_id}") from None

    async def fetch_guild(self, guild_id: str) -> bool:
        return guild_id not in self.unreachable_guilds

    async def send_notice(self, channel_id: str, text: str) -> None:
        self.notices.append((channel_id, text))


@pytest.fixture
def cli_runner() -> CliRunner:
    """Provide a Click CLI test runner."""
    return CliRunner()


@pytest.fixture
def temp_data_dir(tmp_path):
    """Provide a temporary data directory for tests."""
    data_dir = tmp_path / "data"
    data_dir.mkdir()
    return data_dir


@pytest.fixture
def test_config(tmp_path: Path) -> Config:
    """Configuration with a temp database."""
    return Config(data_dir=tmp_path)


@pytest.fixture
def engine(test_config: Config):
    """Database engine with all tables created."""
    engine = get_engine(test_config)
    create_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def bambi() -> Personality:
    return Personality(id="bambi", name="bambi", display_name="Bambi", aliases=["bam"])


@pytest.fixture
def bambi_prime() -> Personality:
    return Personality(
        id="bambi-prime",
        name="bambi-prime",
        display_name="Bambi Prime",
        aliases=["bambi prime"],
    )


@pytest.fixture
def directory(bambi: Personality, bambi_prime: Personality) -> InMemoryPersonalityDirectory:
    return InMemoryPersonalityDirectory([bambi, bambi_prime])


@pytest.fixture
def auth_repository() -> InMemoryAuthenticationRepository:
    return InMemoryAuthenticationRepository()
