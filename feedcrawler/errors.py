"""
Error Taxonomy
==============
Every error the engine raises derives from ``CrawlError`` so hosts can
catch the whole family in one place.

Retry policy at the WorkItem level:
    - retryable:      ``PageStalled``, ``SessionInvalid``, generic errors
    - not retryable:  ``MissingIdError``, ``NonRetryableError``
    - fatal (run):    ``ConfigError``, ``NoCredentialsError``
    - handled inline: ``RateLimited`` (Backoff Controller)
"""

from __future__ import annotations


class CrawlError(Exception):
    """Base class for all engine errors."""

    retryable: bool = True


class ConfigError(CrawlError):
    """Invalid configuration (credential shape, unparseable date bound, ...)."""

    retryable = False


class NoCredentialsError(CrawlError):
    """No usable login identity is left while identities are required."""

    retryable = False


class RateLimited(CrawlError):
    """The site answered with a rate-limit signal (HTTP 429 or equivalent)."""


class PageStalled(CrawlError):
    """The page driver made no progress across consecutive attempts."""

    def __init__(self, message: str = "", attempts: int = 0):
        super().__init__(message or f"No page progress after {attempts} attempts")
        self.attempts = attempts


class MissingIdError(CrawlError):
    """A candidate item has no extractable id; dedup cannot be guaranteed."""

    retryable = False


class SessionInvalid(CrawlError):
    """The bound identity was rejected (login redirect, challenge, logout)."""


class NonRetryableError(CrawlError):
    """The target can never succeed (does not exist, age gated, unsupported)."""

    retryable = False


class RunAborted(CrawlError):
    """The run-level abort signal was raised."""

    retryable = False


def is_retryable(error: BaseException) -> bool:
    """Return True if a WorkItem that failed with *error* may be retried."""
    if isinstance(error, CrawlError):
        return error.retryable
    return True
