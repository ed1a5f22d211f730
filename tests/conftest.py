"""
Shared fixtures for Feed Notifier tests.

Provides common test fixtures and fakes for use across all test modules.
"""

import asyncio
from collections.abc import Callable, Iterable
from pathlib import Path
from typing import Any

import pytest

from feed_notifier.config import AppConfig, FeedConfig, PushoverConfig, TelegramConfig
from feed_notifier.models import DeliveryRequest, FeedItem, Receipt
from feed_notifier.notifier import DeliveryError


# Path to test fixtures directory
FIXTURES_DIR = Path(__file__).parent / "fixtures"


class ScriptedSource:
    """
    Feed source replaying a fixed sequence of poll results.

    Each step is either a list of items or an exception raised by fetch.
    Once the script runs out every poll returns no items.
    """

    def __init__(self, script: Iterable[list[FeedItem] | Exception]):
        self.script = list(script)
        self.fetches = 0

    async def fetch(self, url: str) -> list[FeedItem]:
        self.fetches += 1
        if not self.script:
            return []
        step = self.script.pop(0)
        if isinstance(step, Exception):
            raise step
        return step

    def parse(self, content: list[FeedItem]) -> list[FeedItem]:
        return list(content)


class RecordingNotifier:
    """Notifier that records every request, optionally failing."""

    name = "recording"

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent: list[DeliveryRequest] = []
        self.attempts = 0
        self.closed = False

    async def send(self, request: DeliveryRequest) -> Receipt:
        self.attempts += 1
        if self.fail:
            raise DeliveryError("transport down")
        self.sent.append(request)
        return Receipt(
            delivery_id=f"id-{len(self.sent)}",
            remaining=100 - len(self.sent),
            limit=100,
        )

    async def close(self) -> None:
        self.closed = True


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll predicate until it holds or fail after timeout."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def fixtures_dir() -> Path:
    """Return path to fixtures directory."""
    return FIXTURES_DIR


@pytest.fixture
def sample_config_path(fixtures_dir: Path) -> Path:
    """Return path to sample config file."""
    return fixtures_dir / "sample_config.yaml"


@pytest.fixture
def sample_rss_content(fixtures_dir: Path) -> bytes:
    """Return contents of sample RSS feed."""
    return (fixtures_dir / "sample_rss.xml").read_bytes()


@pytest.fixture
def sample_atom_content(fixtures_dir: Path) -> bytes:
    """Return contents of sample Atom feed."""
    return (fixtures_dir / "sample_atom.xml").read_bytes()


@pytest.fixture
def make_item() -> Callable[[str], FeedItem]:
    """
    Build feed items from a short identifier.

    Returns
    -------
    Callable[[str], FeedItem]
        Factory producing an item whose title and link derive from the id.
    """

    def factory(identifier: str) -> FeedItem:
        return FeedItem(
            identifier=identifier,
            title=f"Item {identifier}",
            description=f"<p>About {identifier}</p>",
            link=f"https://example.com/items/{identifier}",
        )

    return factory


@pytest.fixture
def recording_notifier() -> RecordingNotifier:
    """Create a notifier that records what it sends."""
    return RecordingNotifier()


@pytest.fixture
def minimal_pushover_config() -> PushoverConfig:
    """Create a minimal valid Pushover configuration."""
    return PushoverConfig(
        app_token="azGDORePK8gMaC0QOYAMyEEuzJnyUi",
        recipient="uQiRzpo4DXghDmr9QzzfQu27cmVRsG",
    )


@pytest.fixture
def minimal_telegram_config() -> TelegramConfig:
    """Create a minimal valid Telegram configuration."""
    return TelegramConfig(
        bot_token="1234567890:ABCdefGHIjklMNOpqrsTUVwxyz",
        chat_id="-1001234567890",
    )


@pytest.fixture
def minimal_config_dict() -> dict[str, Any]:
    """
    Create a minimal valid configuration dictionary.

    Returns
    -------
    dict
        Configuration dictionary that can be used to create AppConfig.
    """
    return {
        "feed": {"url": "https://example.com/feed.xml"},
        "pushover": {
            "app_token": "azGDORePK8gMaC0QOYAMyEEuzJnyUi",
            "recipient": "uQiRzpo4DXghDmr9QzzfQu27cmVRsG",
        },
    }


@pytest.fixture
def minimal_app_config(minimal_pushover_config: PushoverConfig) -> AppConfig:
    """Create a minimal valid app configuration."""
    return AppConfig(
        feed=FeedConfig(url="https://example.com/feed.xml"),
        pushover=minimal_pushover_config,
    )
