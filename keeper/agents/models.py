"""Structured output models for the recommendation agent."""

from typing import Optional

from pydantic import BaseModel, Field, field_validator

MIN_CONFIDENCE = 0.1
MAX_CONFIDENCE = 1.0
DEFAULT_CONFIDENCE = 0.5


def clamp_confidence(value) -> float:
    """Coerce to float and clamp into [0.1, 1.0]; unparseable means 0.5."""
    try:
        number = float(value)
    except (TypeError, ValueError):
        number = DEFAULT_CONFIDENCE
    if number != number or number == 0:  # NaN or zero
        number = DEFAULT_CONFIDENCE
    return min(max(number, MIN_CONFIDENCE), MAX_CONFIDENCE)


class BookSuggestion(BaseModel):
    """One title proposed by the LLM."""

    title: str
    author: Optional[str] = None
    reason: str = Field(default="", description="Why this book matches the prompt")
    confidence: float = Field(default=DEFAULT_CONFIDENCE, ge=MIN_CONFIDENCE, le=MAX_CONFIDENCE)

    @field_validator("title")
    @classmethod
    def title_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Suggestion title must not be empty")
        return v

    @field_validator("author")
    @classmethod
    def blank_author_to_none(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        return v.strip() or None

    @field_validator("reason")
    @classmethod
    def strip_reason(cls, v: str) -> str:
        return v.strip()

    @field_validator("confidence", mode="before")
    @classmethod
    def clamp(cls, v) -> float:
        return clamp_confidence(v)

    @property
    def lookup(self) -> str:
        """Search string used to find this book in the catalogs."""
        return f"{self.title} {self.author}" if self.author else self.title


class RecommendationResponse(BaseModel):
    """Schema used for Ollama structured output."""

    recommendations: list[BookSuggestion] = Field(default_factory=list)
    reasoning: str = "No reasoning provided"
    confidence: float = Field(default=DEFAULT_CONFIDENCE, ge=MIN_CONFIDENCE, le=MAX_CONFIDENCE)

    @field_validator("confidence", mode="before")
    @classmethod
    def clamp(cls, v) -> float:
        return clamp_confidence(v)
