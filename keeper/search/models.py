"""Shared data models for catalog adapters and search orchestration."""

from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

BookSource = Literal["google-books", "open-library"]
ResultSource = Literal["google-books", "open-library", "combined", "cache"]
SearchIn = Literal["all", "title", "author"]

GOOGLE_BOOKS: BookSource = "google-books"
OPEN_LIBRARY: BookSource = "open-library"
SOURCES: tuple[BookSource, ...] = (GOOGLE_BOOKS, OPEN_LIBRARY)


def make_book_id(source: str, original_id: str) -> str:
    """Compose the globally unique id ``{source}-{original_id}``."""
    return f"{source}-{original_id}"


def split_book_id(book_id: str) -> tuple[BookSource | None, str]:
    """Split a composite id into (source, original_id).

    Returns (None, book_id) when the id carries no known source prefix.
    """
    for source in SOURCES:
        prefix = f"{source}-"
        if book_id.startswith(prefix):
            return source, book_id[len(prefix):]
    return None, book_id


# ── Book ─────────────────────────────────────────────────────────────


class Book(BaseModel):
    """A single book record normalized from one catalog."""

    model_config = ConfigDict(frozen=True)

    id: str
    source: BookSource
    original_id: str
    title: str
    authors: list[str] = Field(default_factory=list)
    description: Optional[str] = None
    published_date: Optional[str] = None
    publisher: Optional[str] = None
    page_count: Optional[int] = None
    categories: list[str] = Field(default_factory=list)
    language: Optional[str] = None
    isbn10: Optional[str] = None
    isbn13: Optional[str] = None
    thumbnail: Optional[str] = None
    small_thumbnail: Optional[str] = None
    medium_thumbnail: Optional[str] = None
    large_thumbnail: Optional[str] = None
    extra_large_thumbnail: Optional[str] = None
    average_rating: Optional[float] = None
    ratings_count: Optional[int] = None
    preview_link: Optional[str] = None
    info_link: Optional[str] = None
    confidence: Optional[float] = Field(
        default=None, ge=0.0, le=1.0, description="AI match confidence (prompt mode only)"
    )

    @field_validator("title")
    @classmethod
    def title_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Book title must not be empty")
        return v

    @field_validator("authors", "categories", mode="before")
    @classmethod
    def none_to_empty(cls, v):
        return [] if v is None else v

    @model_validator(mode="after")
    def id_matches_source(self) -> "Book":
        if self.id != make_book_id(self.source, self.original_id):
            raise ValueError(
                f"Book id {self.id!r} does not match {self.source}/{self.original_id}"
            )
        return self

    @property
    def has_cover(self) -> bool:
        return bool(
            self.thumbnail
            or self.small_thumbnail
            or self.medium_thumbnail
            or self.large_thumbnail
            or self.extra_large_thumbnail
        )


# ── Search Parameters ────────────────────────────────────────────────


class SearchParams(BaseModel):
    """Caller-supplied search query."""

    query: str
    author_query: Optional[str] = None
    max_results: int = Field(default=20, ge=1)
    start_index: int = Field(default=0, ge=0)
    search_in: SearchIn = "all"
    language: Optional[str] = None
    published_after: Optional[int] = None
    published_before: Optional[int] = None

    @field_validator("query")
    @classmethod
    def strip_query(cls, v: str) -> str:
        return v.strip()

    @field_validator("author_query", "language")
    @classmethod
    def blank_to_none(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        v = v.strip()
        return v or None

    @model_validator(mode="after")
    def valid_year_range(self) -> "SearchParams":
        if (
            self.published_after is not None
            and self.published_before is not None
            and self.published_after > self.published_before
        ):
            raise ValueError(
                f"published_after ({self.published_after}) must be <= "
                f"published_before ({self.published_before})"
            )
        return self

    @property
    def is_blank(self) -> bool:
        return not self.query


# ── Search Results ───────────────────────────────────────────────────


class SearchResults(BaseModel):
    """Response envelope for one search."""

    books: list[Book] = Field(default_factory=list)
    total_items: int = 0
    start_index: int = 0
    items_per_page: int = 0
    has_more: bool = False
    query: str
    source: ResultSource

    @classmethod
    def empty(cls, params: SearchParams, source: ResultSource) -> "SearchResults":
        return cls(
            books=[],
            total_items=0,
            start_index=params.start_index,
            items_per_page=params.max_results,
            has_more=False,
            query=params.query,
            source=source,
        )


class RateLimitInfo(BaseModel):
    """Quota status of one catalog."""

    has_key: bool
    unlimited: bool = False
