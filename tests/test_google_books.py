"""Tests for the Google Books adapter (mocked HTTP)."""

import httpx
import pytest

from keeper.core.cache import MemoryCache
from keeper.core.config import GoogleBooksConfig
from keeper.search.errors import (
    BookSearchError,
    InvalidQueryError,
    NetworkError,
    ParseError,
    RateLimitedError,
    RequestTimeoutError,
    ServiceUnavailableError,
)
from keeper.search.google_books import GoogleBooksAdapter, Volume, parse_volume
from keeper.search.models import SearchParams

BASE_URL = "https://books.test/v1"


# ── Factories ────────────────────────────────────────────────────────


def _volume(vid="zyTCAlFPjgYC", title="Dune", **info):
    volume_info = {
        "title": title,
        "authors": ["Frank Herbert"],
        "publisher": "Ace",
        "publishedDate": "1990-09-01",
        "description": "<p>Set on the desert planet <b>Arrakis</b>.</p><p>Spice &amp; sand.</p>",
        "industryIdentifiers": [
            {"type": "ISBN_10", "identifier": "0441172717"},
            {"type": "ISBN_13", "identifier": "9780441172719"},
        ],
        "pageCount": 535,
        "categories": ["Fiction"],
        "averageRating": 4.5,
        "ratingsCount": 120,
        "language": "en",
        "imageLinks": {
            "smallThumbnail": "http://books.google.com/s.jpg",
            "thumbnail": "http://books.google.com/t.jpg",
        },
        "previewLink": "http://books.google.com/preview",
        "infoLink": "https://books.google.com/info",
    }
    volume_info.update(info)
    return {"id": vid, "volumeInfo": volume_info}


def _volumes(items, total=None):
    return {"totalItems": len(items) if total is None else total, "items": items}


class Recorder:
    """MockTransport handler that replays responses and records requests."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        return response


class FakeSleep:
    def __init__(self):
        self.waits: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.waits.append(seconds)


def _adapter(handler, cache=None, **config):
    config.setdefault("base_url", BASE_URL)
    sleep = FakeSleep()
    adapter = GoogleBooksAdapter(
        GoogleBooksConfig(**config),
        cache=cache,
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        sleep=sleep,
    )
    return adapter, sleep


# ── Query Grammar ────────────────────────────────────────────────────


def _query(**params):
    adapter, _ = _adapter(Recorder(httpx.Response(200, json=_volumes([]))))
    return adapter.build_query(SearchParams(**params))


def test_query_passthrough():
    assert _query(query="dune") == "dune"


def test_query_author_scoping():
    assert _query(query="dune", author_query="herbert") == "intitle:dune inauthor:herbert"


def test_query_search_in():
    assert _query(query="dune", search_in="title") == "intitle:dune"
    assert _query(query="herbert", search_in="author") == "inauthor:herbert"


def test_query_year_range():
    assert _query(query="dune", published_after=1960, published_before=1970) == (
        "dune published:1960-1970"
    )


def test_query_open_ended_year_range():
    assert _query(query="dune", published_before=1970) == "dune published:0-1970"


# ── Search ───────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_search_request_params():
    recorder = Recorder(httpx.Response(200, json=_volumes([_volume()])))
    adapter, _ = _adapter(recorder, api_key="k123")

    await adapter.search_books(SearchParams(query="dune", max_results=100, language="en"))

    request = recorder.requests[0]
    assert request.url.path == "/v1/volumes"
    assert request.url.params["q"] == "dune"
    assert request.url.params["maxResults"] == "40"
    assert request.url.params["startIndex"] == "0"
    assert request.url.params["printType"] == "books"
    assert request.url.params["langRestrict"] == "en"
    assert request.url.params["key"] == "k123"


@pytest.mark.asyncio
async def test_search_omits_unset_params():
    recorder = Recorder(httpx.Response(200, json=_volumes([_volume()])))
    adapter, _ = _adapter(recorder)
    await adapter.search_books(SearchParams(query="dune"))
    params = recorder.requests[0].url.params
    assert "key" not in params
    assert "langRestrict" not in params


@pytest.mark.asyncio
async def test_search_normalizes_volume():
    adapter, _ = _adapter(Recorder(httpx.Response(200, json=_volumes([_volume()], total=250))))
    results = await adapter.search_books(SearchParams(query="dune", max_results=10))

    assert results.source == "google-books"
    assert results.total_items == 250
    assert results.has_more is True
    book = results.books[0]
    assert book.id == "google-books-zyTCAlFPjgYC"
    assert book.isbn10 == "0441172717"
    assert book.isbn13 == "9780441172719"
    assert book.thumbnail == "https://books.google.com/t.jpg"
    assert book.small_thumbnail == "https://books.google.com/s.jpg"
    assert book.preview_link == "https://books.google.com/preview"
    assert "<" not in book.description
    assert "Spice & sand." in book.description


@pytest.mark.asyncio
async def test_search_drops_untitled_volumes():
    payload = _volumes([_volume(vid="a", title=""), _volume(vid="b")])
    adapter, _ = _adapter(Recorder(httpx.Response(200, json=payload)))
    results = await adapter.search_books(SearchParams(query="dune"))
    assert [b.original_id for b in results.books] == ["b"]


@pytest.mark.asyncio
async def test_search_without_items():
    adapter, _ = _adapter(Recorder(httpx.Response(200, json={"totalItems": 0})))
    results = await adapter.search_books(SearchParams(query="zzzz"))
    assert results.books == []
    assert results.has_more is False


@pytest.mark.asyncio
async def test_blank_query_makes_no_request():
    recorder = Recorder(httpx.Response(200, json=_volumes([])))
    adapter, _ = _adapter(recorder)
    results = await adapter.search_books(SearchParams(query="  "))
    assert results.books == []
    assert recorder.requests == []


@pytest.mark.asyncio
async def test_search_reads_through_cache():
    recorder = Recorder(httpx.Response(200, json=_volumes([_volume()])))
    adapter, _ = _adapter(recorder, cache=MemoryCache())

    first = await adapter.search_books(SearchParams(query="Dune"))
    second = await adapter.search_books(SearchParams(query="  dune "))

    assert len(recorder.requests) == 1
    assert second == first


@pytest.mark.asyncio
async def test_empty_results_not_cached():
    recorder = Recorder(httpx.Response(200, json=_volumes([])))
    cache = MemoryCache()
    adapter, _ = _adapter(recorder, cache=cache)
    await adapter.search_books(SearchParams(query="zzzz"))
    assert len(cache) == 0


# ── Errors & Retry ───────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_server_error_retried_with_backoff():
    recorder = Recorder(
        httpx.Response(503),
        httpx.Response(500),
        httpx.Response(200, json=_volumes([_volume()])),
    )
    adapter, sleep = _adapter(recorder, base_delay=1.0, max_retries=3)
    results = await adapter.search_books(SearchParams(query="dune"))
    assert len(results.books) == 1
    assert sleep.waits == [1.0, 2.0]


@pytest.mark.asyncio
async def test_server_error_exhausts_retries():
    recorder = Recorder(httpx.Response(503))
    adapter, sleep = _adapter(recorder, max_retries=3)
    with pytest.raises(ServiceUnavailableError, match="Google Books"):
        await adapter.search_books(SearchParams(query="dune"))
    assert len(recorder.requests) == 3
    assert len(sleep.waits) == 2


@pytest.mark.asyncio
async def test_rate_limit_not_retried():
    recorder = Recorder(httpx.Response(429))
    adapter, sleep = _adapter(recorder)
    with pytest.raises(RateLimitedError) as exc_info:
        await adapter.search_books(SearchParams(query="dune"))
    assert exc_info.value.source == "google-books"
    assert len(recorder.requests) == 1
    assert sleep.waits == []


@pytest.mark.asyncio
async def test_bad_request_is_invalid_query():
    adapter, _ = _adapter(Recorder(httpx.Response(400)))
    with pytest.raises(InvalidQueryError):
        await adapter.search_books(SearchParams(query="dune"))


@pytest.mark.asyncio
async def test_forbidden_is_base_error():
    adapter, _ = _adapter(Recorder(httpx.Response(403)))
    with pytest.raises(BookSearchError, match="API key"):
        await adapter.search_books(SearchParams(query="dune"))


@pytest.mark.asyncio
async def test_network_error_retried_then_raised():
    recorder = Recorder(httpx.ConnectError("connection refused"))
    adapter, sleep = _adapter(recorder, max_retries=2, base_delay=0.5)
    with pytest.raises(NetworkError) as exc_info:
        await adapter.search_books(SearchParams(query="dune"))
    assert exc_info.value.retryable
    assert len(recorder.requests) == 2
    assert sleep.waits == [0.5]


@pytest.mark.asyncio
async def test_timeout_mapped():
    adapter, _ = _adapter(Recorder(httpx.ReadTimeout("slow")), max_retries=1)
    with pytest.raises(RequestTimeoutError, match="timed out"):
        await adapter.search_books(SearchParams(query="dune"))


@pytest.mark.asyncio
async def test_redirect_loop_is_network_error():
    adapter, _ = _adapter(Recorder(httpx.TooManyRedirects("Exceeded maximum allowed redirects.")), max_retries=1)
    with pytest.raises(NetworkError, match="Google Books"):
        await adapter.search_books(SearchParams(query="dune"))


@pytest.mark.asyncio
async def test_invalid_json_is_parse_error():
    adapter, _ = _adapter(Recorder(httpx.Response(200, text="<html>oops</html>")))
    with pytest.raises(ParseError):
        await adapter.search_books(SearchParams(query="dune"))


@pytest.mark.asyncio
async def test_schema_mismatch_is_parse_error():
    adapter, _ = _adapter(Recorder(httpx.Response(200, json={"totalItems": "many"})))
    with pytest.raises(ParseError):
        await adapter.search_books(SearchParams(query="dune"))


# ── Details ──────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_details_strips_prefix():
    recorder = Recorder(httpx.Response(200, json=_volume()))
    adapter, _ = _adapter(recorder)
    book = await adapter.get_details("google-books-zyTCAlFPjgYC")
    assert book.title == "Dune"
    assert recorder.requests[0].url.path == "/v1/volumes/zyTCAlFPjgYC"


@pytest.mark.asyncio
async def test_details_not_found_returns_none():
    adapter, _ = _adapter(Recorder(httpx.Response(404)))
    assert await adapter.get_details("missing") is None


@pytest.mark.asyncio
async def test_details_cached():
    recorder = Recorder(httpx.Response(200, json=_volume()))
    adapter, _ = _adapter(recorder, cache=MemoryCache())
    await adapter.get_details("zyTCAlFPjgYC")
    await adapter.get_details("zyTCAlFPjgYC")
    assert len(recorder.requests) == 1


# ── Title Batches ────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_fetch_by_titles_batches_with_delay():
    recorder = Recorder(httpx.Response(200, json=_volumes([_volume()])))
    adapter, sleep = _adapter(recorder, batch_size=3, batch_delay=0.2)
    books = await adapter.fetch_books_by_titles(["a", "b", "c", "d"])
    assert len(books) == 4
    assert sleep.waits == [0.2]


@pytest.mark.asyncio
async def test_fetch_by_titles_skips_failures():
    def handler(request):
        if request.url.params["q"] == "bad":
            return httpx.Response(429)
        return httpx.Response(200, json=_volumes([_volume()]))

    adapter, _ = _adapter(handler)
    books = await adapter.fetch_books_by_titles(["good", "bad"])
    assert len(books) == 1


# ── Normalization ────────────────────────────────────────────────────


def test_categories_capped():
    volume = Volume.model_validate(_volume(categories=[f"c{i}" for i in range(8)]))
    assert len(parse_volume(volume).categories) == 5


def test_non_http_image_dropped():
    volume = Volume.model_validate(_volume(imageLinks={"thumbnail": "data:image/png;base64,xx"}))
    assert parse_volume(volume).thumbnail is None


def test_rate_limit_info():
    adapter, _ = _adapter(Recorder(httpx.Response(200)), api_key="k")
    info = adapter.get_rate_limit_info()
    assert info.has_key is True
    assert info.unlimited is False
    assert adapter.is_configured()


# ── Live Search ──────────────────────────────────────────────────────


@pytest.mark.network
@pytest.mark.asyncio
async def test_live_search():
    async with GoogleBooksAdapter(GoogleBooksConfig()) as adapter:
        results = await adapter.search_books(SearchParams(query="dune frank herbert", max_results=5))
    assert 0 < len(results.books) <= 5
    assert all(b.id.startswith("google-books-") for b in results.books)
