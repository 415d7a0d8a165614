"""Error taxonomy shared by the ingestion, discovery and context pipelines.

Batch loops (emails, search results, candidates) catch these at the item
boundary and log them; only failures that would corrupt shared state abort
the calling operation.
"""

from __future__ import annotations


class TrackerError(Exception):
    """Base class for all tracker errors."""


class MailboxUnavailable(TrackerError, ConnectionError):
    """The IMAP server could not be reached or rejected the login.

    Never retried in-process; the next scheduled check retries.
    """


class ParseError(TrackerError, ValueError):
    """A message, newsletter body or backend response could not be parsed."""


class SourceValidationError(TrackerError, ValueError):
    """A candidate source URL is malformed or unreachable.

    Attributes:
        url: The URL that failed validation.
        reason: Short machine-readable reason (e.g. ``domain-not-found``).
    """

    def __init__(self, url: str, reason: str) -> None:
        super().__init__(f"Invalid source '{url}': {reason}")
        self.url = url
        self.reason = reason


class BackendError(TrackerError, RuntimeError):
    """The generative backend failed or returned an unusable shape."""


class ProgressAnalysisFailed(BackendError):
    """The progress analysis response could not be used; no state was written."""


class NotFoundError(TrackerError, LookupError):
    """A project, discovery, context entry or schedule does not exist."""


class AuthorizationError(TrackerError, PermissionError):
    """The acting user does not own the requested project."""


class SearchError(TrackerError, ConnectionError):
    """A web search request failed or returned an unreadable body."""
