"""Tests for cross-source merge, ranking, and deduplication."""

from keeper.core.config import QualityWeights
from keeper.search.models import Book
from keeper.search.ranking import (
    dedup_keys,
    deduplicate_preserving_order,
    merge_and_rank,
    normalize_title,
    quality_score,
    strip_stopwords,
    title_author_key,
)

LONG_DESCRIPTION = "A detailed description of the book that is comfortably over fifty characters."


# ── Factories ────────────────────────────────────────────────────────


def _gb(title="Clean Code", original_id="gb1", authors=("Robert C. Martin",), **kw):
    return Book(
        id=f"google-books-{original_id}",
        source="google-books",
        original_id=original_id,
        title=title,
        authors=list(authors),
        **kw,
    )


def _ol(title="Clean Code", original_id="OL1W", authors=("Robert C. Martin",), **kw):
    return Book(
        id=f"open-library-{original_id}",
        source="open-library",
        original_id=original_id,
        title=title,
        authors=list(authors),
        **kw,
    )


# ── Quality Score ────────────────────────────────────────────────────


def test_empty_book_scores_zero():
    assert quality_score(_gb()) == 0


def test_full_book_scores_all_weights():
    book = _gb(
        description=LONG_DESCRIPTION,
        thumbnail="https://x/t.jpg",
        published_date="2008-08-01",
        publisher="Prentice Hall",
        page_count=464,
        isbn13="9780132350884",
        categories=["Computers"],
        average_rating=4.5,
    )
    assert quality_score(book) == 3 + 2 + 1 + 1 + 1 + 2 + 1 + 2


def test_short_description_not_counted():
    assert quality_score(_gb(description="Too short.")) == 0


def test_zero_page_count_and_rating_not_counted():
    assert quality_score(_gb(page_count=0, average_rating=0.0)) == 0


def test_custom_weights():
    weights = QualityWeights(isbn=10)
    assert quality_score(_gb(isbn10="0132350882"), weights) == 10


# ── Dedup Keys ───────────────────────────────────────────────────────


def test_title_author_key_normalized():
    a = _gb(title="Clean Code!", authors=("Robert C. Martin",))
    b = _ol(title="  clean   code", authors=("robert c martin",))
    assert title_author_key(a) == title_author_key(b)


def test_title_author_key_sorts_authors():
    a = _gb(title="Refactoring", authors=("Martin Fowler", "Kent Beck"))
    b = _ol(title="Refactoring", authors=("Kent Beck", "Martin Fowler"))
    assert title_author_key(a) == title_author_key(b)


def test_dedup_keys_include_isbns():
    keys = dedup_keys(_gb(isbn10="0132350882", isbn13="9780132350884"))
    assert "isbn:9780132350884" in keys
    assert "isbn:0132350882" in keys
    assert len(keys) == 3


# ── Merge & Rank ─────────────────────────────────────────────────────


def test_clean_code_collapses_to_one():
    """ISBN-bearing Google record and ISBN-less Open Library record merge."""
    gb = _gb(isbn13="9780132350884", thumbnail="https://x/t.jpg")
    ol = _ol()
    merged = merge_and_rank([[gb], [ol]])
    assert merged == [gb]


def test_same_isbn_keeps_higher_quality():
    poor = _gb(title="Clean Code", isbn13="9780132350884")
    rich = _ol(
        title="Clean Code: A Handbook of Agile Software Craftsmanship",
        isbn13="9780132350884",
        description=LONG_DESCRIPTION,
        publisher="Prentice Hall",
    )
    merged = merge_and_rank([[poor], [rich]])
    assert merged == [rich]
    assert quality_score(merged[0]) >= quality_score(poor)


def test_tie_prefers_google_books():
    gb = _gb(publisher="Prentice Hall")
    ol = _ol(publisher="Prentice Hall")
    assert merge_and_rank([[ol], [gb]]) == [gb]


def test_sorted_by_score_descending():
    low = _ol(title="Low", original_id="OL2W")
    high = _ol(title="High", original_id="OL3W", description=LONG_DESCRIPTION)
    mid = _gb(title="Mid", original_id="gb2", publisher="P")
    assert merge_and_rank([[mid], [low, high]]) == [high, mid, low]


def test_distinct_books_all_kept():
    books = [_gb(title=f"Book {i}", original_id=f"gb{i}") for i in range(5)]
    assert len(merge_and_rank([books, []])) == 5


def test_merge_is_deterministic():
    lists = [
        [_gb(title="A", original_id="a"), _gb(title="B", original_id="b")],
        [_ol(title="a", original_id="OLa"), _ol(title="C", original_id="OLc")],
    ]
    assert merge_and_rank(lists) == merge_and_rank(lists)


def test_empty_inputs():
    assert merge_and_rank([[], []]) == []


# ── Order-Preserving Dedup ───────────────────────────────────────────


def test_preserving_order_keeps_input_order():
    first = _ol(title="Zeta", original_id="OLz")
    second = _gb(title="Alpha", original_id="a", description=LONG_DESCRIPTION)
    assert deduplicate_preserving_order([first, second]) == [first, second]


def test_preserving_order_better_duplicate_takes_slot():
    first = _ol(title="Dune", authors=("Frank Herbert",), original_id="OLd")
    other = _gb(title="Other", original_id="o")
    better = _gb(title="Dune", authors=("Frank Herbert",), original_id="d", publisher="Ace")
    assert deduplicate_preserving_order([first, other, better]) == [better, other]


def test_preserving_order_worse_duplicate_dropped():
    first = _gb(title="Dune", authors=("Frank Herbert",), original_id="d", publisher="Ace")
    worse = _ol(title="Dune", authors=("Frank Herbert",), original_id="OLd")
    assert deduplicate_preserving_order([first, worse]) == [first]


# ── Normalization ────────────────────────────────────────────────────


def test_normalize_title():
    assert normalize_title("  The Lord of the Rings: Fellowship!  ") == "the lord of the rings fellowship"


def test_strip_stopwords():
    assert strip_stopwords("The Lord of the Rings") == "lord rings"
