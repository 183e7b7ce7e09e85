"""Unified search across Google Books and Open Library.

Strategy selection is a pure function of configuration and adapter
availability. Every adapter call runs under a per-call timeout; a failed or
empty single-source search falls back to the other catalog once, and the merged
strategy tolerates the failure of either side.
"""

import asyncio
import logging
import math
from dataclasses import dataclass
from typing import Any, Awaitable, Optional, TypeVar, Union

from pydantic import ValidationError

from keeper.core.cache import CacheClient, search_key
from keeper.core.config import QualityWeights, UnifiedSearchConfig
from keeper.search.catalog import CatalogAdapter
from keeper.search.errors import BookSearchError, NoServiceAvailableError, TimedOutError, source_label
from keeper.search.models import (
    GOOGLE_BOOKS,
    OPEN_LIBRARY,
    Book,
    BookSource,
    SearchParams,
    SearchResults,
    split_book_id,
)
from keeper.search.ranking import merge_and_rank

logger = logging.getLogger(__name__)

T = TypeVar("T")


# ── Strategies ───────────────────────────────────────────────────────


@dataclass(frozen=True)
class PrimaryOnly:
    source: BookSource

    @property
    def name(self) -> str:
        return f"{self.source}-only"


@dataclass(frozen=True)
class Merged:
    @property
    def name(self) -> str:
        return "merged-results"


Strategy = Union[PrimaryOnly, Merged]


def other_source(source: BookSource) -> BookSource:
    return OPEN_LIBRARY if source == GOOGLE_BOOKS else GOOGLE_BOOKS


def select_strategy(
    config: UnifiedSearchConfig,
    google_available: bool,
    open_library_available: bool,
) -> Strategy:
    """Pick the search strategy.

    1. Merging enabled and both catalogs available: ``Merged``.
    2. Primary catalog available: ``PrimaryOnly(primary)``.
    3. The other catalog available: ``PrimaryOnly(other)``.
    4. Otherwise ``NoServiceAvailableError``.
    """
    available = {GOOGLE_BOOKS: google_available, OPEN_LIBRARY: open_library_available}

    if config.enable_merging and google_available and open_library_available:
        return Merged()
    if available[config.primary_source]:
        return PrimaryOnly(config.primary_source)
    secondary = other_source(config.primary_source)
    if available[secondary]:
        return PrimaryOnly(secondary)
    raise NoServiceAvailableError("No book search services are configured or available")


async def with_timeout(call: Awaitable[T], seconds: float, source: Optional[str] = None) -> T:
    """Await ``call``, cancelling it and raising ``TimedOutError`` after ``seconds``."""
    try:
        return await asyncio.wait_for(call, timeout=seconds)
    except asyncio.TimeoutError as exc:
        raise TimedOutError(
            f"{source_label(source)} search timed out after {seconds:g}s", source
        ) from exc


def limit_results(results: SearchResults, limit: int) -> SearchResults:
    """Truncate to ``limit`` books; truncation implies ``has_more``."""
    if len(results.books) <= limit:
        return results
    return results.model_copy(update={"books": results.books[:limit], "has_more": True})


# ── Service ──────────────────────────────────────────────────────────


class UnifiedSearchService:
    """Public search surface over both catalog adapters."""

    def __init__(
        self,
        config: UnifiedSearchConfig,
        google_books: CatalogAdapter,
        open_library: CatalogAdapter,
        cache: CacheClient | None = None,
        weights: QualityWeights | None = None,
        search_ttl: int = 3600,
    ):
        self.config = config
        self.cache = cache
        self.weights = weights or QualityWeights()
        self.search_ttl = search_ttl
        self.adapters: dict[BookSource, CatalogAdapter] = {
            GOOGLE_BOOKS: google_books,
            OPEN_LIBRARY: open_library,
        }

    # ── Status ───────────────────────────────────────────────────

    def is_configured(self) -> bool:
        return any(a.is_configured() for a in self.adapters.values())

    def get_rate_limit(self) -> dict[str, Any]:
        """Per-catalog quota info; the top-level flags follow the primary."""
        info = {s: a.get_rate_limit_info() for s, a in self.adapters.items()}
        primary = info[self.config.primary_source]
        return {
            "google_books": info[GOOGLE_BOOKS],
            "open_library": info[OPEN_LIBRARY],
            "has_key": primary.has_key,
            "unlimited": primary.unlimited,
        }

    def get_available_strategies(self) -> list[Strategy]:
        strategies: list[Strategy] = [
            PrimaryOnly(s) for s, a in self.adapters.items() if a.is_configured()
        ]
        if len(strategies) == len(self.adapters):
            strategies.append(Merged())
        return strategies

    def select_strategy(self) -> Strategy:
        return select_strategy(
            self.config,
            self.adapters[GOOGLE_BOOKS].is_configured(),
            self.adapters[OPEN_LIBRARY].is_configured(),
        )

    # ── Search ───────────────────────────────────────────────────

    async def search_books(self, params: SearchParams, use_cache: bool = True) -> SearchResults:
        """Search with the selected strategy.

        Raises only when every viable strategy has failed, or
        ``NoServiceAvailableError`` when no catalog is configured.
        """
        strategy = self.select_strategy()
        if params.is_blank:
            return SearchResults.empty(params, self._result_source(strategy))

        limit = min(params.max_results, self.config.max_results)
        key = self._cache_key(params, strategy, limit)

        if use_cache:
            cached = await self._cached_results(key)
            if cached is not None:
                logger.info("Unified search cache hit for %r", params.query)
                return cached

        results = await self._execute(strategy, params, limit)

        if use_cache and results.books and self.cache is not None:
            await self.cache.set(key, results.model_dump(mode="json"), ttl=self.search_ttl)
        return results

    async def _execute(self, strategy: Strategy, params: SearchParams, limit: int) -> SearchResults:
        if isinstance(strategy, Merged):
            return await self._search_merged(params, limit)

        try:
            results = await self._search_single(strategy.source, params, limit)
        except BookSearchError as exc:
            if not self._can_fall_back(strategy.source):
                raise
            fallback = other_source(strategy.source)
            logger.warning(
                "%s search failed (%s); falling back to %s",
                source_label(strategy.source),
                exc,
                source_label(fallback),
            )
            try:
                return await self._search_single(fallback, params, limit)
            except BookSearchError as fallback_exc:
                logger.error(
                    "Fallback %s search failed too: %s", source_label(fallback), fallback_exc
                )
                raise exc from fallback_exc

        if results.books or not self._can_fall_back(strategy.source):
            return results

        fallback = other_source(strategy.source)
        logger.info(
            "%s returned no results for %r; trying %s",
            source_label(strategy.source),
            params.query,
            source_label(fallback),
        )
        try:
            fallback_results = await self._search_single(fallback, params, limit)
        except BookSearchError as exc:
            logger.warning("Fallback %s search failed: %s", source_label(fallback), exc)
            return results
        return fallback_results if fallback_results.books else results

    def _can_fall_back(self, source: BookSource) -> bool:
        return self.config.enable_fallback and self.adapters[other_source(source)].is_configured()

    async def _search_single(self, source: BookSource, params: SearchParams, limit: int) -> SearchResults:
        adapter = self.adapters[source]
        call_params = params.model_copy(update={"max_results": limit})
        results = await with_timeout(adapter.search_books(call_params), self.config.timeout, source)
        return limit_results(results, limit)

    async def _search_merged(self, params: SearchParams, limit: int) -> SearchResults:
        half = math.ceil(limit / 2)
        call_params = params.model_copy(update={"max_results": half})

        succeeded, errors = await self._gather(list(self.adapters), call_params)

        if not succeeded:
            # adapters are ordered Google Books first
            raise errors[0]

        merged = merge_and_rank([r.books for r in succeeded], self.weights)
        books = merged[:limit]

        return SearchResults(
            books=books,
            total_items=max(r.total_items for r in succeeded),
            start_index=params.start_index,
            items_per_page=len(books),
            has_more=len(merged) > limit or any(r.has_more for r in succeeded),
            query=params.query,
            source="combined",
        )

    async def search_each_source(self, params: SearchParams) -> list[Book]:
        """Query every configured catalog with ``params`` and rank the union.

        Bypasses strategy selection and the result cache. Failing catalogs
        are logged and skipped.
        """
        sources = [s for s, a in self.adapters.items() if a.is_configured()]
        succeeded, _ = await self._gather(sources, params)
        return merge_and_rank([r.books for r in succeeded], self.weights)

    async def _gather(
        self, sources: list[BookSource], params: SearchParams
    ) -> tuple[list[SearchResults], list[Exception]]:
        outcomes = await asyncio.gather(
            *(
                with_timeout(self.adapters[source].search_books(params), self.config.timeout, source)
                for source in sources
            ),
            return_exceptions=True,
        )

        succeeded: list[SearchResults] = []
        errors: list[Exception] = []
        for source, outcome in zip(sources, outcomes):
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, Exception):
                    raise outcome
                logger.warning("%s failed during multi-source search: %s", source_label(source), outcome)
                errors.append(outcome)
            else:
                succeeded.append(outcome)
        return succeeded, errors

    # ── Details ──────────────────────────────────────────────────

    async def get_book_details(self, book_id: str, source: Optional[BookSource] = None) -> Optional[Book]:
        """Look up one book by composite id.

        ``None`` when the book does not exist or its catalog cannot be reached.
        """
        prefixed, original_id = split_book_id(book_id)
        target = source or prefixed or self.config.primary_source
        if source is not None and prefixed != source:
            original_id = book_id

        adapter = self.adapters[target]
        try:
            return await with_timeout(adapter.get_details(original_id), self.config.timeout, target)
        except BookSearchError as exc:
            logger.warning("%s details lookup failed for %r: %s", source_label(target), book_id, exc)
            return None

    # ── Helpers ──────────────────────────────────────────────────

    def _result_source(self, strategy: Strategy) -> str:
        return "combined" if isinstance(strategy, Merged) else strategy.source

    def _cache_key(self, params: SearchParams, strategy: Strategy, limit: int) -> str:
        return search_key(
            "unified",
            params.query,
            limit,
            strategy=strategy.name,
            start=params.start_index,
            author=params.author_query,
            search_in=params.search_in,
            lang=params.language,
            after=params.published_after,
            before=params.published_before,
        )

    async def _cached_results(self, key: str) -> Optional[SearchResults]:
        if self.cache is None:
            return None
        cached = await self.cache.get(key)
        if cached is None:
            return None
        try:
            results = SearchResults.model_validate(cached)
        except ValidationError:
            logger.warning("Ignoring malformed cache entry %s", key)
            return None
        return results.model_copy(update={"source": "cache"})
