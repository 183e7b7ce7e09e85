"""Search configuration: Pydantic models, YAML loader, and environment overrides."""

import logging
import os
from pathlib import Path
from typing import Literal, Optional

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path(__file__).resolve().parent.parent.parent / "config" / "search.yaml"


# ── Catalog Adapters ─────────────────────────────────────────────────


class CatalogConfig(BaseModel):
    """HTTP and politeness settings shared by both catalogs."""

    base_url: str
    timeout: float = Field(default=5.0, gt=0, description="Per-request HTTP timeout (s)")
    max_retries: int = Field(default=3, ge=1, description="Total attempts for transient errors")
    base_delay: float = Field(default=1.0, ge=0, description="Backoff base delay (s)")
    batch_size: int = Field(default=3, ge=1, description="Titles fetched concurrently")
    batch_delay: float = Field(default=0.2, ge=0, description="Pause between title batches (s)")
    enabled: bool = True


class GoogleBooksConfig(CatalogConfig):
    base_url: str = "https://www.googleapis.com/books/v1"
    api_key: Optional[str] = None


class OpenLibraryConfig(CatalogConfig):
    base_url: str = "https://openlibrary.org"
    covers_url: str = "https://covers.openlibrary.org/b"
    batch_size: int = Field(default=2, ge=1)
    batch_delay: float = Field(default=0.5, ge=0)


# ── Cache ────────────────────────────────────────────────────────────


class CacheConfig(BaseModel):
    """Key-value cache settings. No ``redis_url`` means in-memory cache."""

    redis_url: Optional[str] = None
    search_ttl: int = Field(default=3600, gt=0)
    details_ttl: int = Field(default=7 * 86400, gt=0)
    recommendation_ttl: int = Field(default=86400, gt=0)
    circuit_threshold: int = Field(default=5, ge=1)
    circuit_reset_timeout: float = Field(default=60.0, gt=0)
    compression_threshold: int = Field(default=1024, ge=0, description="Bytes")
    memory_max_entries: int = Field(default=1000, ge=1, description="In-memory cache only")


# ── Unified Search ───────────────────────────────────────────────────


class UnifiedSearchConfig(BaseModel):
    """Strategy selection and fan-out settings."""

    primary_source: Literal["google-books", "open-library"] = "google-books"
    enable_fallback: bool = True
    enable_merging: bool = False
    max_results: int = Field(default=40, ge=1)
    timeout: float = Field(default=10.0, gt=0, description="Per adapter call (s)")


class QualityWeights(BaseModel):
    """Weights of the present-field indicators in the quality score."""

    description: int = 3
    description_min_length: int = Field(default=50, ge=0)
    cover: int = 2
    published_date: int = 1
    publisher: int = 1
    page_count: int = 1
    isbn: int = 2
    categories: int = 1
    rating: int = 2


# ── AI Recommendations ───────────────────────────────────────────────


class RecommenderConfig(BaseModel):
    """Ollama model used for prompt-mode suggestions."""

    model: str = "qwen3:8b"
    host: Optional[str] = None
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    timeout: float = Field(default=15.0, gt=0)


class OrchestratorConfig(BaseModel):
    """Search-mode and prompt-mode pipeline settings."""

    min_prompt_matches: int = Field(
        default=3, ge=0, description="Floor below which direct search supplements matches"
    )
    suggestion_multiplier: int = Field(default=2, ge=1)
    broader_query_min_length: int = Field(
        default=10, ge=0, description="Empty searches with longer queries retry with a broader query"
    )


# ── Top-level ────────────────────────────────────────────────────────


class SearchConfig(BaseModel):
    """Top-level configuration for the search subsystem."""

    google_books: GoogleBooksConfig = Field(default_factory=GoogleBooksConfig)
    open_library: OpenLibraryConfig = Field(default_factory=OpenLibraryConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    search: UnifiedSearchConfig = Field(default_factory=UnifiedSearchConfig)
    quality_weights: QualityWeights = Field(default_factory=QualityWeights)
    recommender: RecommenderConfig = Field(default_factory=RecommenderConfig)
    orchestrator: OrchestratorConfig = Field(default_factory=OrchestratorConfig)

    @field_validator("google_books", "open_library")
    @classmethod
    def strip_trailing_slash(cls, v: CatalogConfig) -> CatalogConfig:
        v.base_url = v.base_url.rstrip("/")
        return v

    @model_validator(mode="after")
    def primary_is_enabled(self) -> "SearchConfig":
        primary = (
            self.google_books
            if self.search.primary_source == "google-books"
            else self.open_library
        )
        if not primary.enabled and not self.search.enable_fallback:
            raise ValueError(
                f"Primary source {self.search.primary_source} is disabled "
                "and fallback is off"
            )
        return self


# ── Loading ──────────────────────────────────────────────────────────

# env var -> (section, key)
_ENV_OVERRIDES: dict[str, tuple[str, str]] = {
    "GOOGLE_BOOKS_API_KEY": ("google_books", "api_key"),
    "GOOGLE_BOOKS_BASE_URL": ("google_books", "base_url"),
    "OPEN_LIBRARY_BASE_URL": ("open_library", "base_url"),
    "REDIS_URL": ("cache", "redis_url"),
    "OLLAMA_HOST": ("recommender", "host"),
    "KEEPER_RECOMMENDER_MODEL": ("recommender", "model"),
    "KEEPER_PRIMARY_SOURCE": ("search", "primary_source"),
    "KEEPER_ENABLE_MERGING": ("search", "enable_merging"),
    "KEEPER_ENABLE_FALLBACK": ("search", "enable_fallback"),
}


def _apply_env_overrides(raw: dict, environ: dict[str, str]) -> dict:
    for var, (section, key) in _ENV_OVERRIDES.items():
        value = environ.get(var)
        if value is None or value == "":
            continue
        raw.setdefault(section, {})[key] = value
        logger.debug("Config override from %s", var)
    return raw


def load_search_config(
    path: str | Path | None = None,
    environ: dict[str, str] | None = None,
) -> SearchConfig:
    """Load the YAML config (if present), apply env overrides, validate."""
    path = Path(path) if path is not None else DEFAULT_CONFIG_PATH
    environ = dict(os.environ) if environ is None else environ

    raw: dict = {}
    if path.exists():
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
        logger.info("Loaded search config from %s", path)
    else:
        logger.info("No config file at %s, using defaults", path)

    return SearchConfig.model_validate(_apply_env_overrides(raw, environ))
