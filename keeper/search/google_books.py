"""Google Books API v1 adapter.

API documentation: https://developers.google.com/books/docs/v1/using
"""

import logging
from datetime import date
from typing import Any, Optional

from pydantic import BaseModel, Field, ValidationError

from keeper.search.catalog import (
    MAX_CATEGORIES,
    CatalogAdapter,
    clean_description,
    https_url,
    string_list,
)
from keeper.search.models import (
    GOOGLE_BOOKS,
    Book,
    RateLimitInfo,
    SearchParams,
    SearchResults,
    make_book_id,
)

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 40


# ── Response Schema ──────────────────────────────────────────────────
# Field names mirror the API payload.


class IndustryIdentifier(BaseModel):
    type: str
    identifier: str


class ImageLinks(BaseModel):
    smallThumbnail: Optional[str] = None
    thumbnail: Optional[str] = None
    small: Optional[str] = None
    medium: Optional[str] = None
    large: Optional[str] = None
    extraLarge: Optional[str] = None


class VolumeInfo(BaseModel):
    title: Optional[str] = None
    authors: Optional[list[str]] = None
    publisher: Optional[str] = None
    publishedDate: Optional[str] = None
    description: Optional[str] = None
    industryIdentifiers: Optional[list[IndustryIdentifier]] = None
    pageCount: Optional[int] = None
    categories: Optional[list[str]] = None
    averageRating: Optional[float] = None
    ratingsCount: Optional[int] = None
    language: Optional[str] = None
    imageLinks: Optional[ImageLinks] = None
    previewLink: Optional[str] = None
    infoLink: Optional[str] = None


class Volume(BaseModel):
    id: str
    volumeInfo: VolumeInfo = Field(default_factory=VolumeInfo)


class VolumesResponse(BaseModel):
    totalItems: int = 0
    items: Optional[list[Volume]] = None


# ── Adapter ──────────────────────────────────────────────────────────


class GoogleBooksAdapter(CatalogAdapter):
    """Search and detail lookups against Google Books."""

    source = GOOGLE_BOOKS
    max_page_size = MAX_PAGE_SIZE

    @property
    def api_key(self) -> Optional[str]:
        return getattr(self.config, "api_key", None)

    def build_query(self, params: SearchParams) -> str:
        """Translate params into Google's ``intitle:``/``inauthor:`` grammar."""
        query = params.query

        if params.author_query:
            return f"intitle:{query} inauthor:{params.author_query}"

        if params.search_in == "title":
            query = f"intitle:{query}"
        elif params.search_in == "author":
            query = f"inauthor:{query}"

        if params.published_after is not None or params.published_before is not None:
            after = params.published_after or 0
            before = params.published_before or date.today().year
            query += f" published:{after}-{before}"

        return query

    def search_request(self, params: SearchParams) -> tuple[str, dict[str, Any]]:
        return "volumes", {
            "q": self.build_query(params),
            "startIndex": params.start_index,
            "maxResults": self.clamp(params.max_results),
            "printType": "books",
            "projection": "full",
            "orderBy": "relevance",
            "langRestrict": params.language,
            "key": self.api_key,
        }

    def parse_search_response(self, payload: Any, params: SearchParams) -> SearchResults:
        response = self._validate(VolumesResponse, payload)
        books = [b for b in (parse_volume(v) for v in response.items or []) if b is not None]

        return SearchResults(
            books=books,
            total_items=response.totalItems,
            start_index=params.start_index,
            items_per_page=self.clamp(params.max_results),
            has_more=params.start_index + len(books) < response.totalItems,
            query=params.query,
            source=self.source,
        )

    async def fetch_details(self, original_id: str) -> Optional[Book]:
        payload = await self._get_json(
            f"volumes/{original_id}",
            {"projection": "full", "key": self.api_key},
            context=original_id,
        )
        return parse_volume(self._validate(Volume, payload))

    def get_rate_limit_info(self) -> RateLimitInfo:
        # Google Books works keyless but always enforces quotas.
        return RateLimitInfo(has_key=bool(self.api_key), unlimited=False)


# ── Volume → Book ────────────────────────────────────────────────────


def parse_volume(volume: Volume) -> Book | None:
    """Convert a Google Books volume into a Book; None when it has no title."""
    info = volume.volumeInfo
    if not info.title or not info.title.strip():
        return None

    isbn10 = isbn13 = None
    for ident in info.industryIdentifiers or []:
        if ident.type == "ISBN_10":
            isbn10 = ident.identifier
        elif ident.type == "ISBN_13":
            isbn13 = ident.identifier

    images = info.imageLinks or ImageLinks()

    try:
        return Book(
            id=make_book_id(GOOGLE_BOOKS, volume.id),
            source=GOOGLE_BOOKS,
            original_id=volume.id,
            title=info.title,
            authors=string_list(info.authors),
            description=clean_description(info.description),
            published_date=info.publishedDate,
            publisher=info.publisher,
            page_count=info.pageCount,
            categories=string_list(info.categories, MAX_CATEGORIES),
            language=info.language,
            isbn10=isbn10,
            isbn13=isbn13,
            thumbnail=https_url(images.thumbnail),
            small_thumbnail=https_url(images.smallThumbnail),
            medium_thumbnail=https_url(images.small or images.medium),
            large_thumbnail=https_url(images.large),
            extra_large_thumbnail=https_url(images.extraLarge),
            average_rating=info.averageRating,
            ratings_count=info.ratingsCount,
            preview_link=https_url(info.previewLink),
            info_link=https_url(info.infoLink),
        )
    except ValidationError as exc:
        logger.warning("Skipping invalid Google Books volume %s: %s", volume.id, exc)
        return None
