#!/usr/bin/env python3
"""Command-line book search runner."""

import argparse
import asyncio
import json
import logging
import sys
import time
from pathlib import Path

# Ensure project root is on sys.path
PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from keeper.agents.recommender import RecommendationClient
from keeper.core.cache import build_cache
from keeper.core.config import SearchConfig, load_search_config
from keeper.search.errors import BookSearchError
from keeper.search.google_books import GoogleBooksAdapter
from keeper.search.models import Book, SearchResults
from keeper.search.open_library import OpenLibraryAdapter
from keeper.search.orchestrator import SearchOrchestrator, SearchRequest
from keeper.search.unified import UnifiedSearchService

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("search")


# ── Wiring ───────────────────────────────────────────────────────────


def build_orchestrator(config: SearchConfig) -> SearchOrchestrator:
    """Construct the cache, adapters, and services once and wire them together."""
    cache = build_cache(config.cache)
    ttls = {"search_ttl": config.cache.search_ttl, "details_ttl": config.cache.details_ttl}

    google = GoogleBooksAdapter(config.google_books, cache=cache, **ttls)
    open_library = OpenLibraryAdapter(config.open_library, cache=cache, **ttls)

    unified = UnifiedSearchService(
        config.search,
        google,
        open_library,
        cache=cache,
        weights=config.quality_weights,
        search_ttl=config.cache.search_ttl,
    )
    recommender = RecommendationClient(
        config.recommender, cache=cache, cache_ttl=config.cache.recommendation_ttl
    )
    return SearchOrchestrator(
        unified,
        recommender,
        cache=cache,
        config=config.orchestrator,
        search_ttl=config.cache.search_ttl,
    )


async def _close(orchestrator: SearchOrchestrator) -> None:
    for adapter in orchestrator.unified.adapters.values():
        await adapter.close()
    await orchestrator.recommender.close()
    close_cache = getattr(orchestrator.cache, "close", None)
    if close_cache is not None:
        await close_cache()


# ── Output ───────────────────────────────────────────────────────────


def _format_book(i: int, book: Book) -> str:
    authors = ", ".join(book.authors) or "Unknown author"
    year = (book.published_date or "")[:4] or "n.d."
    line = f"{i:>3}. {book.title} by {authors} ({year}) [{book.source}]"
    if book.confidence is not None:
        line += f" confidence={book.confidence:.2f}"
    return line


def _print_results(results: SearchResults, as_json: bool) -> None:
    if as_json:
        print(json.dumps(results.model_dump(mode="json"), indent=2))
        return
    print(
        f"{len(results.books)} of {results.total_items} results "
        f"(source: {results.source}, more: {results.has_more})"
    )
    for i, book in enumerate(results.books, 1):
        print(_format_book(i, book))


# ── Commands ─────────────────────────────────────────────────────────


async def run_search(args: argparse.Namespace, config: SearchConfig) -> int:
    orchestrator = build_orchestrator(config)
    try:
        if args.details:
            book = await orchestrator.unified.get_book_details(args.details)
            if book is None:
                logger.error("No book found for id %s", args.details)
                return 1
            print(json.dumps(book.model_dump(mode="json"), indent=2))
            return 0

        t = time.time()
        request = SearchRequest(
            query=args.query,
            mode=args.mode,
            max_results=args.max_results,
            use_cache=not args.no_cache,
        )
        results = await orchestrator.search(request)
        logger.info("Search complete in %.1fs", time.time() - t)
        _print_results(results, args.json)
        return 0
    except BookSearchError as exc:
        logger.error("Search failed: %s", exc)
        return 2
    finally:
        await _close(orchestrator)


def main():
    parser = argparse.ArgumentParser(description="Search Google Books and Open Library")
    parser.add_argument("query", nargs="?", default="", help="Search text or free-text prompt")
    parser.add_argument(
        "--mode",
        choices=("search", "prompt"),
        default="search",
        help="Direct search or AI-assisted prompt mode",
    )
    parser.add_argument("--max-results", type=int, default=10, help="Maximum books to return")
    parser.add_argument("--config", default=None, help="Path to search config YAML")
    parser.add_argument("--details", metavar="BOOK_ID", help="Look up one book by id instead")
    parser.add_argument("--no-cache", action="store_true", help="Bypass the result cache")
    parser.add_argument("--json", action="store_true", help="Print results as JSON")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    args = parser.parse_args()

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)
    if not args.query and not args.details:
        parser.error("a query or --details is required")

    config = load_search_config(args.config)
    sys.exit(asyncio.run(run_search(args, config)))


if __name__ == "__main__":
    main()
