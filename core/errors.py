"""
Exception taxonomy for sources and the orchestrator.
"""

from __future__ import annotations


class SourceError(Exception):
    """Base class for every error raised by a source or the orchestrator."""

    def __init__(self, message: str, source_id: str | None = None):
        super().__init__(message)
        self.source_id = source_id


class AuthenticationFailure(SourceError):
    """Login did not reach a success page within its bounded wait."""


class NavigationFailure(SourceError):
    """A portal sub-application failed to load."""


class ScrapeFailure(SourceError):
    """Reading links out of a page or frame failed."""


class FetchFailure(SourceError):
    """Retrieving a single artifact failed."""


class LockContention(SourceError):
    """The requested lock is already held and the caller asked to fail fast."""


class ConfigurationError(SourceError):
    """Unknown source type, missing field or otherwise unusable configuration."""


class SourceNotFound(SourceError):
    """No source with the given id is configured or active."""
