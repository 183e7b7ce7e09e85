"""Error taxonomy shared by catalog adapters and the search services."""

from typing import Optional

_SOURCE_LABELS = {
    "google-books": "Google Books",
    "open-library": "Open Library",
}


def source_label(source: Optional[str]) -> str:
    """Human-readable catalog name for error messages."""
    if source is None:
        return "Book search"
    return _SOURCE_LABELS.get(source, source)


class BookSearchError(Exception):
    """Base class for every error surfaced by the search subsystem."""

    status: Optional[int] = None

    def __init__(self, message: str, source: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.source = source

    @property
    def retryable(self) -> bool:
        """Whether the UI should offer a retry affordance."""
        return False


class InvalidQueryError(BookSearchError):
    status = 400


class NotFoundError(BookSearchError):
    """Raised inside adapters; detail lookups convert it to ``None``."""

    status = 404


class RateLimitedError(BookSearchError):
    status = 429


class ServiceUnavailableError(BookSearchError):
    status = 503

    @property
    def retryable(self) -> bool:
        return True


class NetworkError(BookSearchError):
    @property
    def retryable(self) -> bool:
        return True


class RequestTimeoutError(BookSearchError):
    """The HTTP request to a catalog timed out (after retries)."""

    @property
    def retryable(self) -> bool:
        return True


class TimedOutError(RequestTimeoutError):
    """An adapter call exceeded the orchestration-level timeout."""


class ParseError(BookSearchError):
    """A catalog response failed schema validation."""


class NoServiceAvailableError(BookSearchError):
    """No catalog adapter is configured."""
