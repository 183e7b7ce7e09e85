"""Open Library adapter.

No API key is required. The search payload uses snake_case fields, nested
author references, and numeric cover ids, so normalization differs from
Google Books in almost every field.

API documentation: https://openlibrary.org/developers/api
"""

import asyncio
import logging
import re
from datetime import date
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from keeper.search.catalog import (
    MAX_CATEGORIES,
    CatalogAdapter,
    clean_description,
    first_string,
    string_list,
)
from keeper.search.errors import BookSearchError
from keeper.search.models import (
    OPEN_LIBRARY,
    Book,
    RateLimitInfo,
    SearchParams,
    SearchResults,
    make_book_id,
)

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100
MAX_AUTHOR_LOOKUPS = 3

SEARCH_FIELDS = ",".join(
    (
        "key",
        "title",
        "author_name",
        "first_publish_year",
        "publish_year",
        "isbn",
        "cover_i",
        "edition_count",
        "publisher",
        "language",
        "subject",
        "number_of_pages_median",
    )
)

_ISBN_CHARS_RE = re.compile(r"[^0-9X]")


# ── Response Schema ──────────────────────────────────────────────────


class SearchResponse(BaseModel):
    """Envelope of ``/search.json``; docs are validated one by one."""

    start: int = 0
    numFound: Optional[int] = None
    num_found: Optional[int] = None
    docs: list[dict] = Field(default_factory=list)

    @property
    def total(self) -> int:
        if self.numFound is not None:
            return self.numFound
        if self.num_found is not None:
            return self.num_found
        return len(self.docs)


class SearchDoc(BaseModel):
    model_config = ConfigDict(extra="ignore")

    key: str
    title: str
    author_name: Optional[list[Any]] = None
    first_publish_year: Optional[int] = None
    publish_year: Optional[list[int]] = None
    isbn: Optional[list[Any]] = None
    cover_i: Optional[int] = None
    publisher: Any = None
    language: Any = None
    subject: Optional[list[Any]] = None
    number_of_pages_median: Optional[int] = None


class KeyRef(BaseModel):
    key: str


class AuthorRole(BaseModel):
    author: Optional[KeyRef] = None
    key: Optional[str] = None

    @property
    def author_key(self) -> Optional[str]:
        return self.author.key if self.author else self.key


class Work(BaseModel):
    model_config = ConfigDict(extra="ignore")

    title: Optional[str] = None
    description: Any = None
    subjects: Optional[list[Any]] = None
    covers: Optional[list[int]] = None
    authors: Optional[list[AuthorRole]] = None
    first_publish_date: Optional[str] = None


class Author(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: Optional[str] = None
    personal_name: Optional[str] = None


# ── Adapter ──────────────────────────────────────────────────────────


class OpenLibraryAdapter(CatalogAdapter):
    """Search and work lookups against Open Library."""

    source = OPEN_LIBRARY
    max_page_size = MAX_PAGE_SIZE

    @property
    def covers_url(self) -> str:
        return getattr(self.config, "covers_url", "https://covers.openlibrary.org/b").rstrip("/")

    def build_query(self, params: SearchParams) -> str:
        """Translate params into Open Library's field query grammar."""
        query = params.query

        if params.author_query:
            return f"title:{query} author:{params.author_query}"

        if params.search_in == "title":
            query = f"title:{query}"
        elif params.search_in == "author":
            query = f"author:{query}"

        if params.published_after is not None or params.published_before is not None:
            after = params.published_after or 0
            before = params.published_before or date.today().year
            query += f" first_publish_year:[{after} TO {before}]"

        return query

    def search_request(self, params: SearchParams) -> tuple[str, dict[str, Any]]:
        return "search.json", {
            "q": self.build_query(params),
            "offset": params.start_index,
            "limit": self.clamp(params.max_results),
            "fields": SEARCH_FIELDS,
            "language": params.language,
        }

    def parse_search_response(self, payload: Any, params: SearchParams) -> SearchResults:
        response = self._validate(SearchResponse, payload)

        books: list[Book] = []
        for raw in response.docs:
            book = self.parse_doc(raw)
            if book is not None:
                books.append(book)

        total = response.total
        return SearchResults(
            books=books,
            total_items=total,
            start_index=params.start_index,
            items_per_page=self.clamp(params.max_results),
            has_more=params.start_index + len(books) < total,
            query=params.query,
            source=self.source,
        )

    async def fetch_details(self, original_id: str) -> Optional[Book]:
        work_id = original_id.removeprefix("/works/")
        payload = await self._get_json(f"works/{work_id}.json", context=work_id)
        work = self._validate(Work, payload)
        if not work.title or not work.title.strip():
            return None

        refs = [r.author_key for r in work.authors or [] if r.author_key]
        authors = await self._author_names(refs[:MAX_AUTHOR_LOOKUPS])

        description = work.description
        if isinstance(description, dict):
            description = description.get("value")

        work_url = f"{self.config.base_url}/works/{work_id}"
        try:
            return Book(
                id=make_book_id(OPEN_LIBRARY, work_id),
                source=OPEN_LIBRARY,
                original_id=work_id,
                title=work.title,
                authors=authors,
                description=clean_description(description if isinstance(description, str) else None),
                published_date=work.first_publish_date,
                categories=string_list(work.subjects, MAX_CATEGORIES),
                preview_link=work_url,
                info_link=work_url,
                **self.cover_urls(next((c for c in work.covers or [] if c > 0), None)),
            )
        except ValidationError as exc:
            logger.warning("Invalid Open Library work %s: %s", work_id, exc)
            return None

    def get_rate_limit_info(self) -> RateLimitInfo:
        return RateLimitInfo(has_key=False, unlimited=False)

    # ── Normalization ────────────────────────────────────────────

    def parse_doc(self, raw: dict) -> Book | None:
        """Convert a search doc into a Book; None when it is unusable."""
        try:
            doc = SearchDoc.model_validate(raw)
        except ValidationError:
            logger.warning(
                "Skipping malformed Open Library doc: %s",
                raw.get("key") or raw.get("title") if isinstance(raw, dict) else raw,
            )
            return None

        isbn10 = isbn13 = None
        for value in doc.isbn or []:
            clean = _ISBN_CHARS_RE.sub("", str(value).upper())
            if len(clean) == 10 and isbn10 is None:
                isbn10 = clean
            elif len(clean) == 13 and isbn13 is None:
                isbn13 = clean

        year = doc.first_publish_year or (doc.publish_year[0] if doc.publish_year else None)
        work_id = doc.key.removeprefix("/works/")
        work_url = f"{self.config.base_url}/works/{work_id}"

        try:
            return Book(
                id=make_book_id(OPEN_LIBRARY, work_id),
                source=OPEN_LIBRARY,
                original_id=work_id,
                title=doc.title,
                authors=string_list(doc.author_name),
                published_date=f"{year}-01-01" if year else None,
                publisher=first_string(doc.publisher),
                page_count=doc.number_of_pages_median,
                categories=string_list(doc.subject, MAX_CATEGORIES),
                language=first_string(doc.language),
                isbn10=isbn10,
                isbn13=isbn13,
                preview_link=work_url,
                info_link=work_url,
                **self.cover_urls(doc.cover_i),
            )
        except ValidationError as exc:
            logger.warning("Skipping invalid Open Library doc %s: %s", doc.key, exc)
            return None

    def cover_urls(self, cover_id: Optional[int]) -> dict[str, str]:
        """Expand a numeric cover id into every size variant."""
        if not cover_id or cover_id <= 0:
            return {}
        base = f"{self.covers_url}/id/{cover_id}"
        return {
            "small_thumbnail": f"{base}-S.jpg",
            "thumbnail": f"{base}-M.jpg",
            "medium_thumbnail": f"{base}-L.jpg",
            "large_thumbnail": f"{base}-L.jpg",
            "extra_large_thumbnail": f"{base}-L.jpg",
        }

    async def _author_names(self, keys: list[str]) -> list[str]:
        names = await asyncio.gather(*(self._author_name(k) for k in keys))
        return [n for n in names if n]

    async def _author_name(self, key: str) -> Optional[str]:
        path = key.lstrip("/")
        try:
            payload = await self._get_json(f"{path}.json", context=key)
            author = Author.model_validate(payload)
        except (BookSearchError, ValidationError) as exc:
            logger.debug("Author lookup failed for %s: %s", key, exc)
            return None
        return author.name or author.personal_name
