"""Search orchestration: direct search mode and AI-assisted prompt mode.

Search mode delegates to unified search and retries an empty result with a
broader query across every catalog. Prompt mode asks the recommendation agent
for titles, looks them up in both catalogs, and matches suggestions back to
catalog records. It is strictly best-effort: any failure falls back to plain
search with the same text.
"""

import asyncio
import logging
import math
import re
from typing import Literal, Optional

from pydantic import BaseModel, Field, ValidationError

from keeper.agents.models import BookSuggestion
from keeper.agents.recommender import RecommendationClient
from keeper.core.cache import CacheClient, search_key
from keeper.core.config import OrchestratorConfig
from keeper.search.models import Book, SearchParams, SearchResults
from keeper.search.ranking import deduplicate_preserving_order, strip_stopwords
from keeper.search.unified import UnifiedSearchService

logger = logging.getLogger(__name__)

BROADER_QUERY_WORDS = 3


class SearchRequest(BaseModel):
    query: str
    mode: Literal["search", "prompt"] = "search"
    max_results: int = Field(default=10, ge=1)
    use_cache: bool = True


# ── Suggestion Matching ──────────────────────────────────────────────


def is_similar_title(title1: str, title2: str) -> bool:
    """Containment after dropping punctuation and stop words."""
    norm1 = strip_stopwords(title1)
    norm2 = strip_stopwords(title2)
    if not norm1 or not norm2:
        return False
    return norm1 in norm2 or norm2 in norm1


def is_book_match(book: Book, suggestion: BookSuggestion) -> bool:
    book_title = book.title.lower()
    rec_title = suggestion.title.lower()

    if book_title == rec_title or rec_title in book_title or book_title in rec_title:
        return True

    if suggestion.author:
        authors = " ".join(a.lower() for a in book.authors)
        return is_similar_title(book_title, rec_title) and suggestion.author.lower() in authors

    return False


def match_suggestions(suggestions: list[BookSuggestion], books: list[Book]) -> list[Book]:
    """First matching book per suggestion, in suggestion order.

    Each book is used at most once and carries the suggestion's confidence.
    """
    used: set[str] = set()
    matched: list[Book] = []

    for suggestion in suggestions:
        book = next((b for b in books if b.id not in used and is_book_match(b, suggestion)), None)
        if book is None:
            logger.debug("No catalog match for suggestion %r", suggestion.title)
            continue
        used.add(book.id)
        matched.append(book.model_copy(update={"confidence": suggestion.confidence}))

    return matched


def broaden_query(query: str) -> str:
    """Drop quotes and punctuation and keep the first few words."""
    words = re.sub(r"[^\w\s]", " ", re.sub(r"['\"]", "", query)).split()
    return " ".join(words[:BROADER_QUERY_WORDS])


# ── Orchestrator ─────────────────────────────────────────────────────


class SearchOrchestrator:
    """Entry point for both search modes."""

    def __init__(
        self,
        unified: UnifiedSearchService,
        recommender: RecommendationClient,
        cache: CacheClient | None = None,
        config: OrchestratorConfig | None = None,
        search_ttl: int = 3600,
    ):
        self.unified = unified
        self.recommender = recommender
        self.cache = cache
        self.config = config or OrchestratorConfig()
        self.search_ttl = search_ttl

    async def search(self, request: SearchRequest) -> SearchResults:
        if request.mode == "prompt":
            return await self.prompt_mode(request)
        return await self.search_mode(request)

    async def search_mode(self, request: SearchRequest) -> SearchResults:
        params = SearchParams(query=request.query, max_results=request.max_results)
        results = await self.unified.search_books(params, use_cache=request.use_cache)
        if results.books or len(params.query) <= self.config.broader_query_min_length:
            return results
        return await self._broader_search(request, results)

    async def _broader_search(self, request: SearchRequest, results: SearchResults) -> SearchResults:
        """Retry an empty search with a shorter query across every catalog."""
        broader = broaden_query(request.query)
        if not broader or broader == request.query.strip():
            return results

        logger.info("No results for %r, trying broader query %r", request.query, broader)
        per_source = max(1, request.max_results // 2)
        books = await self.unified.search_each_source(
            SearchParams(query=broader, max_results=per_source)
        )
        if not books:
            return results

        final = books[: request.max_results]
        return SearchResults(
            books=final,
            total_items=len(books),
            start_index=0,
            items_per_page=len(final),
            has_more=len(books) > request.max_results,
            query=request.query,
            source="combined",
        )

    async def prompt_mode(self, request: SearchRequest) -> SearchResults:
        if not request.query.strip():
            return await self.search_mode(request)

        key = search_key("unified", request.query, request.max_results, mode="prompt")

        if request.use_cache:
            cached = await self._cached_results(key)
            if cached is not None:
                logger.info("Prompt-mode cache hit for %r", request.query)
                return cached

        try:
            results = await self._run_prompt_pipeline(request)
        except Exception as exc:
            logger.warning(
                "Prompt mode failed for %r, falling back to search mode: %s",
                request.query,
                exc,
                exc_info=True,
            )
            return await self.search_mode(request)

        if results is None:
            logger.info("No AI suggestions for %r, falling back to search mode", request.query)
            return await self.search_mode(request)

        if request.use_cache and results.books and self.cache is not None:
            await self.cache.set(key, results.model_dump(mode="json"), ttl=self.search_ttl)
        return results

    # ── Prompt Pipeline ──────────────────────────────────────────

    async def _run_prompt_pipeline(self, request: SearchRequest) -> Optional[SearchResults]:
        """Recommend, look up, match, supplement, dedup. None when the agent suggests nothing."""
        max_results = request.max_results

        suggestions = await self.recommender.recommend(
            request.query, max_results * self.config.suggestion_multiplier
        )
        if not suggestions:
            return None

        lookups = list(dict.fromkeys(s.lookup for s in suggestions))
        logger.info("Fetching metadata for %d suggested titles", len(lookups))
        books = await self._fetch_suggested_books(lookups)

        matched = match_suggestions(suggestions, books)
        logger.info("Matched %d/%d suggestions", len(matched), len(suggestions))

        floor = max(self.config.min_prompt_matches, math.ceil(max_results / 2))
        if len(matched) < floor:
            matched.extend(await self._supplement(request, matched))

        unique = deduplicate_preserving_order(matched, self.unified.weights)
        final = unique[:max_results]

        return SearchResults(
            books=final,
            total_items=len(unique),
            start_index=0,
            items_per_page=len(final),
            has_more=len(unique) > max_results,
            query=request.query,
            source="combined",
        )

    async def _fetch_suggested_books(self, lookups: list[str]) -> list[Book]:
        adapters = [a for a in self.unified.adapters.values() if a.is_configured()]
        outcomes = await asyncio.gather(
            *(a.fetch_books_by_titles(lookups) for a in adapters),
            return_exceptions=True,
        )

        books: list[Book] = []
        for adapter, outcome in zip(adapters, outcomes):
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, Exception):
                    raise outcome
                logger.warning("%s title lookup failed: %s", adapter.label, outcome)
                continue
            books.extend(outcome)
        return books

    async def _supplement(self, request: SearchRequest, matched: list[Book]) -> list[Book]:
        logger.info(
            "Only %d matched books for %r, supplementing with direct search",
            len(matched),
            request.query,
        )
        existing = {b.id for b in matched}
        results = await self.search_mode(request)

        extra: list[Book] = []
        for book in results.books:
            if len(matched) + len(extra) >= request.max_results:
                break
            if book.id not in existing:
                extra.append(book)
        return extra

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
