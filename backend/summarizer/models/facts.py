"""Fact, style guide and summarization result models."""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from summarizer.models.document import Document

SCALAR_FACT_FIELDS = ("class_title", "date_or_series", "audience")

ARRAY_FACT_FIELDS = (
    "learning_objectives",
    "key_takeaways",
    "topics",
    "techniques",
    "action_items",
    "notable_quotes",
    "open_questions",
    "timestamp_refs",
)


class ExtractedFacts(BaseModel):
    """Structured facts extracted from a transcript or document."""

    class_title: Optional[str] = None
    date_or_series: Optional[str] = None
    audience: Optional[str] = None
    learning_objectives: List[str] = Field(default_factory=list)
    key_takeaways: List[str] = Field(default_factory=list)
    topics: List[str] = Field(default_factory=list)
    techniques: List[str] = Field(default_factory=list)
    action_items: List[str] = Field(default_factory=list)
    notable_quotes: List[str] = Field(default_factory=list)
    open_questions: List[str] = Field(default_factory=list)
    timestamp_refs: List[str] = Field(default_factory=list)

    @field_validator(*ARRAY_FACT_FIELDS, mode="before")
    @classmethod
    def coerce_string_list(cls, v: Any) -> List[str]:
        """
        Accept the loose shapes LLMs tend to return for list fields.

        None becomes an empty list, a bare string becomes a one-item list
        and non-string items are converted to strings.
        """
        if v is None:
            return []
        if isinstance(v, str):
            return [v]
        if not isinstance(v, list):
            raise ValueError(f"expected a list of strings, got {type(v).__name__}")
        return [item if isinstance(item, str) else str(item) for item in v if item is not None]

    @field_validator(*SCALAR_FACT_FIELDS, mode="before")
    @classmethod
    def coerce_scalar(cls, v: Any) -> Optional[str]:
        if v is None or isinstance(v, str):
            return v
        if isinstance(v, (list, dict)):
            raise ValueError(f"expected a string, got {type(v).__name__}")
        return str(v)

    def is_empty(self) -> bool:
        """True when no field carries any content."""
        if any((getattr(self, name) or "").strip() for name in SCALAR_FACT_FIELDS):
            return False
        return not any(getattr(self, name) for name in ARRAY_FACT_FIELDS)


class ToneSettings(BaseModel):
    formality: int = Field(50, ge=0, le=100)
    enthusiasm: int = Field(50, ge=0, le=100)
    technicality: int = Field(50, ge=0, le=100)


class ExamplePhrases(BaseModel):
    preferred_openings: List[str] = Field(default_factory=list)
    preferred_transitions: List[str] = Field(default_factory=list)
    preferred_conclusions: List[str] = Field(default_factory=list)
    avoid_phrases: List[str] = Field(default_factory=list)


class StyleGuide(BaseModel):
    """Desired tone and vocabulary for generated summaries."""

    instructions_md: str = ""
    tone_settings: ToneSettings = Field(default_factory=ToneSettings)
    keywords: List[str] = Field(default_factory=list)
    example_phrases: Optional[ExamplePhrases] = None


@dataclass
class FactExtractionResult:
    """Outcome of one fact-extraction call for a chunk."""

    facts: Dict[str, Any]
    parse_success: bool
    raw_response: str
    error: Optional[str] = None


@dataclass(frozen=True)
class ChunkFacts:
    """Facts extracted from a single chunk. A failed parse always carries empty facts."""

    chunk_id: str
    chunk_index: int
    facts: Dict[str, Any]
    parse_success: bool
    raw_response: str
    error: Optional[str] = None

    def __post_init__(self):
        if not self.parse_success and self.facts:
            raise ValueError("ChunkFacts with parse_success=False must have empty facts")


@dataclass(frozen=True)
class ProcessingStats:
    total_chunks: int
    successful_chunks: int
    failed_chunks: int
    processing_time: float  # milliseconds
    model_used: str


@dataclass(frozen=True)
class SummarizationResult:
    """Terminal output of one summarization run."""

    document: Document
    chunk_facts: List[ChunkFacts]
    merged_facts: ExtractedFacts
    markdown_summary: str
    processing_stats: ProcessingStats
    raw_summary: Optional[str] = None
    styled_summary: Optional[str] = None
    path: str = "standard"
