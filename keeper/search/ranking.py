"""Merge, rank, and deduplicate books from Google Books and Open Library."""

import logging
import re
from typing import Iterable

from keeper.core.config import QualityWeights
from keeper.search.models import GOOGLE_BOOKS, Book

logger = logging.getLogger(__name__)

_DEFAULT_WEIGHTS = QualityWeights()


# ── Quality Score ────────────────────────────────────────────────────


def quality_score(book: Book, weights: QualityWeights = _DEFAULT_WEIGHTS) -> int:
    """Weighted sum of present-field indicators."""
    score = 0
    if book.description and len(book.description) >= weights.description_min_length:
        score += weights.description
    if book.has_cover:
        score += weights.cover
    if book.published_date:
        score += weights.published_date
    if book.publisher:
        score += weights.publisher
    if book.page_count and book.page_count > 0:
        score += weights.page_count
    if book.isbn10 or book.isbn13:
        score += weights.isbn
    if book.categories:
        score += weights.categories
    if book.average_rating and book.average_rating > 0:
        score += weights.rating
    return score


def _rank_key(book: Book, weights: QualityWeights) -> tuple[int, int]:
    # Higher score first; on ties Google Books first.
    return (-quality_score(book, weights), 0 if book.source == GOOGLE_BOOKS else 1)


# ── Dedup Keys ───────────────────────────────────────────────────────


def title_author_key(book: Book) -> str:
    """``{title}|{sorted normalized authors}``."""
    authors = sorted(normalize_title(a) for a in book.authors if a.strip())
    return f"{normalize_title(book.title)}|{'|'.join(authors)}"


def dedup_keys(book: Book) -> list[str]:
    """Every key that identifies this book's physical edition.

    ISBN keys when the record has ISBNs, plus the title/author key, so an
    ISBN-bearing and an ISBN-less record of the same book still collide.
    """
    keys = [f"isbn:{isbn}" for isbn in (book.isbn13, book.isbn10) if isbn]
    keys.append(title_author_key(book))
    return keys


# ── Public API ───────────────────────────────────────────────────────


def merge_and_rank(
    lists: Iterable[Iterable[Book]],
    weights: QualityWeights = _DEFAULT_WEIGHTS,
) -> list[Book]:
    """Concatenate, rank by quality, keep the best record per dedup key.

    Deterministic: the sort is stable and depends only on the inputs.
    """
    books = [book for books in lists for book in books]
    ranked = sorted(books, key=lambda b: _rank_key(b, weights))

    seen: set[str] = set()
    unique: list[Book] = []
    for book in ranked:
        keys = dedup_keys(book)
        if any(k in seen for k in keys):
            continue
        seen.update(keys)
        unique.append(book)

    logger.debug("Merged %d books → %d unique", len(books), len(unique))
    return unique


def deduplicate_preserving_order(
    books: Iterable[Book],
    weights: QualityWeights = _DEFAULT_WEIGHTS,
) -> list[Book]:
    """Drop duplicates without reordering.

    When two records collide, the one with the better rank key occupies the
    slot of the first occurrence.
    """
    slots: list[Book] = []
    key_to_slot: dict[str, int] = {}

    for book in books:
        keys = dedup_keys(book)
        slot = next((key_to_slot[k] for k in keys if k in key_to_slot), None)
        if slot is None:
            slot = len(slots)
            slots.append(book)
        elif _rank_key(book, weights) < _rank_key(slots[slot], weights):
            slots[slot] = book
        for k in keys:
            key_to_slot.setdefault(k, slot)

    return slots


# ── Helpers ──────────────────────────────────────────────────────────


_PUNCT_RE = re.compile(r"[^\w\s]", re.UNICODE)
_SPACE_RE = re.compile(r"\s+")
_STOPWORDS_RE = re.compile(r"\b(the|a|an|and|or|of|in|on|at|to|for)\b")


def normalize_title(title: str) -> str:
    """Lowercase, strip punctuation, collapse whitespace."""
    t = title.lower()
    t = _PUNCT_RE.sub("", t)
    t = _SPACE_RE.sub(" ", t).strip()
    return t


def strip_stopwords(title: str) -> str:
    """Normalize and drop common English stop words."""
    t = _STOPWORDS_RE.sub("", normalize_title(title))
    return _SPACE_RE.sub(" ", t).strip()
