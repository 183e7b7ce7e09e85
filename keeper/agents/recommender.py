"""Book recommendation agent using Ollama structured output."""

import json
import logging
import re
from typing import Optional

import ollama
from pydantic import ValidationError

from keeper.agents.models import BookSuggestion, RecommendationResponse
from keeper.core.cache import CacheClient, recommendation_key
from keeper.core.config import RecommenderConfig

logger = logging.getLogger(__name__)

MAX_EXTRACTED = 5
EXTRACTED_CONFIDENCE = 0.4

SYSTEM_PROMPT = (
    "You are a knowledgeable book recommendation assistant. Suggest real, "
    "well-known books that can be found in Google Books or Open Library. "
    "Respond ONLY with the requested JSON."
)


# ── Prompt ───────────────────────────────────────────────────────────


def build_prompt(prompt: str, max_recommendations: int, exclude: list[str] | None = None) -> str:
    """User message asking for ``max_recommendations`` titles."""
    excluded = ""
    if exclude:
        excluded = f"\nExclude these books: {', '.join(exclude)}\n"

    return f"""/no_think
Generate {max_recommendations} book recommendations for this request: "{prompt}"
{excluded}
Guidelines:
- Include author names whenever possible; they are used to find the books.
- Prefer popular, well-known books.
- Consider both fiction and non-fiction when appropriate.
- Keep reasons to one sentence.
- Confidence is between 0.1 and 1.0.

Respond with JSON only:
{{"recommendations": [{{"title": "...", "author": "...", "reason": "...", "confidence": 0.85}}],
 "reasoning": "...", "confidence": 0.8}}"""


# ── Response Parsing ─────────────────────────────────────────────────


_FENCE_RE = re.compile(r"```(?:json)?\s*")
_THINK_RE = re.compile(r"<think>.*?</think>", re.DOTALL)
_NUMBERED_RE = re.compile(r"^\d+\.\s*(.+?)(?:\s+by\s+(.+?))?$", re.IGNORECASE)
_BULLET_RE = re.compile(r"^-\s*(.+?)(?:\s+by\s+(.+?))?$", re.IGNORECASE)


def parse_response(raw: str) -> RecommendationResponse:
    """Parse the model's reply, falling back to line extraction.

    Suggestions that fail validation (e.g. no title) are dropped
    individually rather than failing the whole response.
    """
    cleaned = _FENCE_RE.sub("", _THINK_RE.sub("", raw)).strip()
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError:
        logger.warning("Recommendation reply is not JSON; extracting titles from text")
        return extract_titles_from_text(cleaned)

    if not isinstance(data, dict) or not isinstance(data.get("recommendations"), list):
        logger.warning("Recommendation reply has no recommendations list")
        return extract_titles_from_text(cleaned)

    suggestions = []
    for item in data["recommendations"]:
        try:
            suggestions.append(BookSuggestion.model_validate(item))
        except ValidationError:
            logger.debug("Dropping invalid suggestion: %r", item)

    return RecommendationResponse(
        recommendations=suggestions,
        reasoning=str(data.get("reasoning") or "No reasoning provided"),
        confidence=data.get("confidence"),
    )


def extract_titles_from_text(text: str) -> RecommendationResponse:
    """Pull ``1. Title by Author`` / ``- Title`` lines out of free text."""
    suggestions: list[BookSuggestion] = []
    for line in text.splitlines():
        line = line.strip()
        match = _NUMBERED_RE.match(line) or _BULLET_RE.match(line)
        if not match:
            continue
        try:
            suggestions.append(
                BookSuggestion(
                    title=match.group(1).strip().strip('"*'),
                    author=match.group(2),
                    reason="Extracted from AI response",
                    confidence=EXTRACTED_CONFIDENCE,
                )
            )
        except ValidationError:
            continue
        if len(suggestions) == MAX_EXTRACTED:
            break

    return RecommendationResponse(
        recommendations=suggestions,
        reasoning="Partial extraction from AI response",
        confidence=0.3,
    )


# ── Client ───────────────────────────────────────────────────────────


class RecommendationClient:
    """Free-text prompt in, ranked title/author suggestions out."""

    def __init__(
        self,
        config: RecommenderConfig,
        cache: CacheClient | None = None,
        client: ollama.AsyncClient | None = None,
        cache_ttl: int = 86400,
    ):
        self.config = config
        self.cache = cache
        self.cache_ttl = cache_ttl
        self._owns_client = client is None
        self._client = client or ollama.AsyncClient(host=config.host, timeout=config.timeout)

    async def close(self) -> None:
        if self._owns_client:
            # ollama.AsyncClient wraps an httpx.AsyncClient
            await self._client._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def recommend(
        self,
        prompt: str,
        max_recommendations: int = 10,
        exclude: list[str] | None = None,
    ) -> list[BookSuggestion]:
        """Suggestions sorted by confidence (stable), at most ``max_recommendations``.

        Ollama and transport errors propagate to the caller.
        """
        key = recommendation_key(prompt, max_recommendations, exclude)
        cached = await self._cached(key)
        if cached is not None:
            logger.info("Recommendation cache hit for %r", prompt)
            return cached.recommendations

        response = await self._client.chat(
            model=self.config.model,
            messages=[
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": build_prompt(prompt, max_recommendations, exclude)},
            ],
            format=RecommendationResponse.model_json_schema(),
            options={"temperature": self.config.temperature},
            think=False,
        )

        parsed = parse_response(response.message.content or "")
        ranked = sorted(parsed.recommendations, key=lambda s: -s.confidence)[:max_recommendations]
        result = parsed.model_copy(update={"recommendations": ranked})
        logger.info(
            "%s suggested %d books for %r (confidence %.2f)",
            self.config.model,
            len(ranked),
            prompt,
            result.confidence,
        )

        if ranked and self.cache is not None:
            await self.cache.set(key, result.model_dump(mode="json"), ttl=self.cache_ttl)
        return ranked

    async def _cached(self, key: str) -> Optional[RecommendationResponse]:
        if self.cache is None:
            return None
        cached = await self.cache.get(key)
        if cached is None:
            return None
        try:
            return RecommendationResponse.model_validate(cached)
        except ValidationError:
            logger.warning("Ignoring malformed cache entry %s", key)
            return None
