"""Per-chunk fact extraction with bounded retries, and cross-chunk merging."""
import asyncio
import json
import logging
from typing import Any, Dict, List, Optional

from summarizer.exceptions import BackendError, InvalidConfigError, ResponseParseError
from summarizer.models.facts import (
    ARRAY_FACT_FIELDS,
    SCALAR_FACT_FIELDS,
    ChunkFacts,
    ExtractedFacts,
    FactExtractionResult,
    StyleGuide,
)
from summarizer.prompts import FactExtractionPrompt
from summarizer.services.llm_service import LLMService
from summarizer.utils.logger import logger as default_logger
from summarizer.utils.metrics import FACT_EXTRACTIONS
from summarizer.utils.text_cleaner import extract_json_object, remove_control_characters, strip_code_fences


def clean_json_response(response: str) -> str:
    """
    Drop control characters, strip markdown fences and keep the first
    balanced JSON object.

    Falls back to the fence-stripped text when no complete object exists, so
    the caller's json.loads reports the problem.
    """
    cleaned = strip_code_fences(remove_control_characters(response))
    return extract_json_object(cleaned) or cleaned


def parse_facts(response: str) -> Dict[str, Any]:
    """
    Parse an LLM response into partial facts.

    Only the fields present in the response are returned.

    Raises:
        ResponseParseError: If the response holds no JSON object
        ValueError: If the JSON is malformed or a field has the wrong shape
    """
    data = json.loads(clean_json_response(response))
    if not isinstance(data, dict):
        raise ResponseParseError(f"Expected a JSON object, got {type(data).__name__}")
    return ExtractedFacts.model_validate(data).model_dump(exclude_unset=True)


class FactExtractor:
    """Extracts structured facts from chunks through the chat backend."""

    def __init__(
        self,
        llm_service: LLMService,
        max_retries: int = 2,
        retry_delay: float = 1.0,
        timeout: Optional[float] = None,
        log: logging.Logger = default_logger,
    ):
        """
        Initialize fact extractor.

        Args:
            llm_service: Chat backend client
            max_retries: Total attempts per chunk (default: 2)
            retry_delay: Seconds to wait between attempts (default: 1.0)
            timeout: Optional per-call timeout in seconds
            log: Logger for extraction events
        """
        if max_retries < 1:
            raise InvalidConfigError(f"max_retries must be at least 1, got {max_retries}")
        self.llm_service = llm_service
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.timeout = timeout
        self.logger = log

    async def extract_facts(
        self,
        chunk_text: str,
        style_guide: StyleGuide,
        chunk_index: int,
        model: Optional[str] = None,
    ) -> FactExtractionResult:
        """
        Extract facts from one chunk.

        Never raises for backend or parse failures: after max_retries attempts
        the result has parse_success=False, empty facts and the last error.

        Args:
            chunk_text: Text of the chunk
            style_guide: Style guide for the extracted wording
            chunk_index: 0-based index of the chunk
            model: Optional chat model override

        Returns:
            FactExtractionResult
        """
        messages = FactExtractionPrompt.build(chunk_text, style_guide, chunk_index)
        last_error = ""
        last_response = ""

        for attempt in range(1, self.max_retries + 1):
            try:
                last_response = await self.llm_service.chat(messages, model=model, timeout=self.timeout)
                facts = parse_facts(last_response)
                FACT_EXTRACTIONS.labels(outcome="success").inc()
                return FactExtractionResult(facts=facts, parse_success=True, raw_response=last_response)
            except (BackendError, ResponseParseError, ValueError) as e:
                last_error = str(e) or type(e).__name__
                self.logger.warning(
                    f"Fact extraction attempt {attempt}/{self.max_retries} failed: {last_error}",
                    extra={"chunk_index": chunk_index, "attempt": attempt, "stage": "fact_extraction"},
                )
                if attempt < self.max_retries:
                    await asyncio.sleep(self.retry_delay)

        FACT_EXTRACTIONS.labels(outcome="failure").inc()
        return FactExtractionResult(facts={}, parse_success=False, raw_response=last_response, error=last_error)

    async def extract_chunk_facts(
        self,
        chunk_id: str,
        chunk_index: int,
        chunk_text: str,
        style_guide: StyleGuide,
        model: Optional[str] = None,
    ) -> ChunkFacts:
        """extract_facts() wrapped into a ChunkFacts record."""
        result = await self.extract_facts(chunk_text, style_guide, chunk_index, model=model)
        return ChunkFacts(
            chunk_id=chunk_id,
            chunk_index=chunk_index,
            facts=result.facts,
            parse_success=result.parse_success,
            raw_response=result.raw_response,
            error=result.error,
        )


def _as_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    return [item if isinstance(item, str) else str(item) for item in value if item is not None]


def merge_facts(chunk_facts: List[ChunkFacts]) -> ExtractedFacts:
    """
    Merge per-chunk facts in chunk order.

    Scalars take the first non-empty value. Arrays are concatenated and
    deduplicated case-insensitively, keeping the first spelling and order.
    Failed chunks contribute nothing.

    Args:
        chunk_facts: Per-chunk extraction results

    Returns:
        Merged facts
    """
    successful = sorted((cf for cf in chunk_facts if cf.parse_success), key=lambda cf: cf.chunk_index)

    scalars: Dict[str, Optional[str]] = {name: None for name in SCALAR_FACT_FIELDS}
    for chunk in successful:
        for name in SCALAR_FACT_FIELDS:
            value = chunk.facts.get(name)
            if not scalars[name] and isinstance(value, str) and value.strip():
                scalars[name] = value

    arrays: Dict[str, List[str]] = {}
    for name in ARRAY_FACT_FIELDS:
        seen = set()
        unique = []
        for chunk in successful:
            for value in _as_list(chunk.facts.get(name)):
                key = value.lower()
                if value.strip() and key not in seen:
                    seen.add(key)
                    unique.append(value)
        arrays[name] = unique

    return ExtractedFacts(**scalars, **arrays)
