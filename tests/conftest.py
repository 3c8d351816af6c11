"""Shared pytest fixtures for ViewCountBot tests."""

import pytest
from unittest.mock import MagicMock

import viewcount_bot as bot
from viewcount_providers import Provider, ProviderAdapter


SONG_PAGE = """{{Song box 2
|title = Example song
|views = %s
|links = %s
}}
Some prose about the song.
"""


def song_page(views: str, links: str) -> str:
    """Build a minimal song page with the given views/links fields."""
    return SONG_PAGE % (views, links)


def fake_adapter(counts):
    """Adapter whose fetch() looks the video id up in ``counts``.

    A value that is an exception instance is raised instead of returned.
    """
    adapter = MagicMock(spec=ProviderAdapter)

    def fetch(video_id, recorded=None):
        value = counts[video_id]
        if isinstance(value, Exception):
            raise value
        return value

    adapter.fetch.side_effect = fetch
    return adapter


@pytest.fixture
def mock_site():
    """Create a mock mwclient Site."""
    site = MagicMock()
    site.get_token.return_value = "token+\\"
    return site


@pytest.fixture
def make_ctx(mock_site, tmp_path):
    """Factory for a RunContext over fake adapters."""
    def _make(registry=None, **config):
        config.setdefault("domain", "example.fandom.com")
        config.setdefault("list_file", str(tmp_path / "list.txt"))
        return bot.RunContext(
            site=mock_site,
            config=bot.RunConfig(**config),
            registry=registry if registry is not None else {},
        )
    return _make


@pytest.fixture
def yt_counts():
    """Mutable id -> count table behind a fake YouTube adapter."""
    return {}


@pytest.fixture
def yt_registry(yt_counts):
    return {Provider.YOUTUBE: fake_adapter(yt_counts)}
