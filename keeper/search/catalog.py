"""Shared plumbing for catalog adapters: HTTP with retry, caching, batching."""

import asyncio
import html
import logging
import re
from typing import Any, Awaitable, Callable, ClassVar, Optional

import httpx
from pydantic import BaseModel, ValidationError

from keeper.core.cache import CacheClient, book_key, search_key
from keeper.core.config import CatalogConfig
from keeper.search.errors import (
    BookSearchError,
    InvalidQueryError,
    NetworkError,
    NotFoundError,
    ParseError,
    RateLimitedError,
    RequestTimeoutError,
    ServiceUnavailableError,
    source_label,
)
from keeper.search.models import (
    Book,
    BookSource,
    RateLimitInfo,
    SearchParams,
    SearchResults,
)

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]

MAX_CATEGORIES = 5


class CatalogAdapter:
    """Base class for one external book catalog.

    Subclasses provide the query grammar, the request parameters, and the
    normalization of the catalog's payloads into ``Book`` records.
    """

    source: ClassVar[BookSource]
    max_page_size: ClassVar[int]

    def __init__(
        self,
        config: CatalogConfig,
        cache: CacheClient | None = None,
        client: httpx.AsyncClient | None = None,
        search_ttl: int = 3600,
        details_ttl: int = 7 * 86400,
        sleep: Sleep = asyncio.sleep,
    ):
        self.config = config
        self.cache = cache
        self.search_ttl = search_ttl
        self.details_ttl = details_ttl
        self._sleep = sleep
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=config.timeout,
            headers={"Accept": "application/json"},
            follow_redirects=True,
        )

    @property
    def label(self) -> str:
        return source_label(self.source)

    # ── Hooks ────────────────────────────────────────────────────

    def build_query(self, params: SearchParams) -> str:
        raise NotImplementedError

    def search_request(self, params: SearchParams) -> tuple[str, dict[str, Any]]:
        """Return (endpoint path, query-string params)."""
        raise NotImplementedError

    def parse_search_response(self, payload: Any, params: SearchParams) -> SearchResults:
        raise NotImplementedError

    async def fetch_details(self, original_id: str) -> Optional[Book]:
        raise NotImplementedError

    def get_rate_limit_info(self) -> RateLimitInfo:
        raise NotImplementedError

    def is_configured(self) -> bool:
        return self.config.enabled

    # ── Public API ───────────────────────────────────────────────

    def clamp(self, max_results: int) -> int:
        """Clamp a requested page size to the catalog's hard ceiling."""
        return max(1, min(max_results, self.max_page_size))

    async def search_books(self, params: SearchParams) -> SearchResults:
        """Search the catalog, reading through the cache."""
        if params.is_blank:
            return SearchResults.empty(params, self.source)

        path, query_params = self.search_request(params)
        key = search_key(
            self.source,
            self.build_query(params),
            self.clamp(params.max_results),
            start=params.start_index,
            lang=params.language,
        )

        cached = await self._cache_get(key)
        if cached is not None:
            try:
                results = SearchResults.model_validate(cached)
                logger.debug("%s cache hit for %r", self.label, params.query)
                return results
            except ValidationError:
                logger.warning("Ignoring malformed %s cache entry %s", self.label, key)

        logger.info("%s query: %s", self.label, query_params.get("q"))
        payload = await self._get_json(path, query_params, context=params.query)
        results = self.parse_search_response(payload, params)
        logger.info(
            "%s returned %d books (total %d)",
            self.label,
            len(results.books),
            results.total_items,
        )

        if results.books:
            await self._cache_set(key, results.model_dump(mode="json"), self.search_ttl)
        return results

    async def get_details(self, book_id: str) -> Optional[Book]:
        """Look up one book; ``None`` when the catalog does not know it."""
        original_id = self._strip_prefix(book_id)
        key = book_key(self.source, original_id)

        cached = await self._cache_get(key)
        if cached is not None:
            try:
                return Book.model_validate(cached)
            except ValidationError:
                logger.warning("Ignoring malformed %s cache entry %s", self.label, key)

        try:
            book = await self.fetch_details(original_id)
        except NotFoundError:
            logger.info("%s has no record %s", self.label, original_id)
            return None

        if book is not None:
            await self._cache_set(key, book.model_dump(mode="json"), self.details_ttl)
        return book

    async def fetch_books_by_titles(self, titles: list[str], per_title: int = 3) -> list[Book]:
        """Best single match per title, fetched in throttled batches."""
        results: list[Book] = []
        batch_size = self.config.batch_size

        for start in range(0, len(titles), batch_size):
            batch = titles[start : start + batch_size]
            matches = await asyncio.gather(*(self._best_match(t, per_title) for t in batch))
            results.extend(book for book in matches if book is not None)
            if start + batch_size < len(titles):
                await self._sleep(self.config.batch_delay)

        logger.info("%s matched %d/%d titles", self.label, len(results), len(titles))
        return results

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    # ── HTTP with Retry ──────────────────────────────────────────

    async def _get_json(
        self,
        path: str,
        params: dict[str, Any] | None = None,
        context: str | None = None,
    ) -> Any:
        """GET a JSON document, retrying transient failures with backoff.

        Network errors, timeouts, and 5xx are retried; 429 and other 4xx
        are raised immediately.
        """
        url = f"{self.config.base_url}/{path}"
        query = {k: v for k, v in (params or {}).items() if v is not None}
        max_attempts = self.config.max_retries

        for attempt in range(1, max_attempts + 1):
            try:
                response = await self._client.get(url, params=query)
            except httpx.TimeoutException as exc:
                error: BookSearchError = RequestTimeoutError(
                    f"{self.label} API request timed out. Please try again.", self.source
                )
                cause: Exception = exc
            except httpx.RequestError as exc:
                error = NetworkError(
                    f"Network error while contacting {self.label} API. "
                    "Please check your connection.",
                    self.source,
                )
                cause = exc
            else:
                if response.status_code < 400:
                    try:
                        return response.json()
                    except ValueError as exc:
                        raise ParseError(
                            f"Received invalid JSON from {self.label} API.", self.source
                        ) from exc
                error = self._map_status(response.status_code, context)
                cause = httpx.HTTPStatusError(
                    f"HTTP {response.status_code}", request=response.request, response=response
                )
                if not isinstance(error, ServiceUnavailableError):
                    raise error from cause

            if attempt == max_attempts:
                raise error from cause

            wait = self.config.base_delay * 2 ** (attempt - 1)
            logger.warning(
                "%s request failed (attempt %d/%d): %s; retrying in %.2fs",
                self.label,
                attempt,
                max_attempts,
                cause,
                wait,
            )
            await self._sleep(wait)

        raise AssertionError("unreachable")  # pragma: no cover

    def _map_status(self, status: int, context: str | None) -> BookSearchError:
        ctx = f' for "{context}"' if context else ""
        if status == 400:
            return InvalidQueryError(f"Invalid {self.label} search query{ctx}.", self.source)
        if status in (401, 403):
            return BookSearchError(
                f"{self.label} API access denied (HTTP {status}). Please check your API key.",
                self.source,
            )
        if status == 404:
            return NotFoundError(f"{self.label}: book not found{ctx}.", self.source)
        if status == 429:
            return RateLimitedError(
                f"{self.label} API rate limit exceeded. Please try again later.", self.source
            )
        if status >= 500:
            return ServiceUnavailableError(
                f"{self.label} API is temporarily unavailable (HTTP {status}).", self.source
            )
        return BookSearchError(f"{self.label} API error{ctx}: HTTP {status}", self.source)

    # ── Validation ───────────────────────────────────────────────

    def _validate(self, model: type[BaseModel], payload: Any) -> Any:
        try:
            return model.model_validate(payload)
        except ValidationError as exc:
            raise ParseError(
                f"Invalid {self.label} API response: {exc.error_count()} validation error(s).",
                self.source,
            ) from exc

    # ── Cache ────────────────────────────────────────────────────

    async def _cache_get(self, key: str) -> Any:
        if self.cache is None:
            return None
        return await self.cache.get(key)

    async def _cache_set(self, key: str, value: Any, ttl: int) -> None:
        if self.cache is not None:
            await self.cache.set(key, value, ttl=ttl)

    # ── Helpers ──────────────────────────────────────────────────

    async def _best_match(self, title: str, per_title: int) -> Optional[Book]:
        try:
            results = await self.search_books(SearchParams(query=title, max_results=per_title))
        except BookSearchError as exc:
            logger.warning("%s lookup failed for %r: %s", self.label, title, exc)
            return None
        return results.books[0] if results.books else None

    def _strip_prefix(self, book_id: str) -> str:
        prefix = f"{self.source}-"
        return book_id[len(prefix):] if book_id.startswith(prefix) else book_id


# ── Normalization Helpers ────────────────────────────────────────────


_TAG_RE = re.compile(r"<[^>]*>")
_BREAK_RE = re.compile(r"<\s*(br|/p|/div|/li)\s*/?>", re.IGNORECASE)
_MANY_NEWLINES_RE = re.compile(r"\n{3,}")
_INLINE_SPACE_RE = re.compile(r"[ \t\xa0]+")


def clean_description(text: Optional[str]) -> Optional[str]:
    """Strip HTML tags, decode entities, tidy whitespace."""
    if not text:
        return None
    text = _BREAK_RE.sub("\n", text)
    text = _TAG_RE.sub("", text)
    text = html.unescape(text)
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    text = _INLINE_SPACE_RE.sub(" ", text)
    text = "\n".join(line.strip() for line in text.split("\n"))
    text = _MANY_NEWLINES_RE.sub("\n\n", text).strip()
    return text or None


def https_url(url: Optional[str]) -> Optional[str]:
    """Upgrade plaintext image URLs to HTTPS; drop anything that isn't a URL."""
    if not url:
        return None
    if url.startswith("http://"):
        url = "https://" + url[len("http://"):]
    if not url.startswith("https://"):
        return None
    return url


def first_string(value: Any) -> Optional[str]:
    """First element of a list, or the value itself when it is a string."""
    if isinstance(value, list):
        value = next((v for v in value if v), None)
    if value is None:
        return None
    return str(value) or None


def string_list(value: Any, limit: int | None = None) -> list[str]:
    if not isinstance(value, list):
        return []
    items = [str(v).strip() for v in value if isinstance(v, (str, int)) and str(v).strip()]
    return items[:limit] if limit else items
