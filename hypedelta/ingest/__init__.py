"""Source adapter registry, keyed by source kind."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from hypedelta.ingest.base import BaseSource

SOURCES: dict[str, type[BaseSource]] = {}


def register_source(kind: str):
    """Decorator to register a source adapter for a source kind."""

    def decorator(cls):
        SOURCES[kind] = cls
        return cls

    return decorator


def get_adapter(kind: str, config: dict, limiter=None) -> BaseSource:
    """Instantiate the adapter registered for a source kind."""
    if kind not in SOURCES:
        raise KeyError(f"No adapter registered for source kind '{kind}'")
    return SOURCES[kind](config, limiter=limiter)


# Import implementations to trigger registration
from hypedelta.ingest.arxiv import ArxivSource  # noqa: E402, F401
from hypedelta.ingest.bluesky import BlueskySource  # noqa: E402, F401
from hypedelta.ingest.feeds import BlogSource, PodcastSource, SubstackSource  # noqa: E402, F401
from hypedelta.ingest.lesswrong import LessWrongSource  # noqa: E402, F401
from hypedelta.ingest.twitter import TwitterSource  # noqa: E402, F401
from hypedelta.ingest.youtube import YouTubeSource  # noqa: E402, F401
