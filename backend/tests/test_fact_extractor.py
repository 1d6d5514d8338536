"""Tests for fact extraction and merging."""
import json
from unittest.mock import AsyncMock

import pytest

from summarizer.exceptions import BackendTimeoutError, InvalidConfigError, ResponseParseError
from summarizer.models.facts import ChunkFacts, ExtractedFacts
from summarizer.prompts import FactExtractionPrompt
from summarizer.services.fact_extractor import FactExtractor, clean_json_response, merge_facts, parse_facts

FACTS_JSON = json.dumps(
    {
        "class_title": "Breathing for Speakers",
        "key_takeaways": ["Breathe before you speak"],
        "topics": ["breathing", "posture"],
        "techniques": ["box breathing"],
    }
)


def chunk_facts(index, facts, success=True):
    return ChunkFacts(
        chunk_id=f"doc-1-chunk-{index}",
        chunk_index=index,
        facts=facts if success else {},
        parse_success=success,
        raw_response="",
        error=None if success else "parse failed",
    )


class TestParsing:
    """Tests for response cleaning and parsing."""

    def test_clean_json_response_strips_fences(self):
        assert clean_json_response(f"```json\n{FACTS_JSON}\n```") == FACTS_JSON

    def test_clean_json_response_ignores_surrounding_text(self):
        response = f"Here are the facts:\n{FACTS_JSON}\nLet me know if you need more."
        assert json.loads(clean_json_response(response))["class_title"] == "Breathing for Speakers"

    def test_parse_facts_drops_control_characters(self):
        facts = parse_facts('\x00{"topics": ["brea\x07thing"], "class_title": "Voice\x1b"}')
        assert facts == {"topics": ["breathing"], "class_title": "Voice"}

    def test_parse_facts_keeps_only_present_fields(self):
        facts = parse_facts('{"topics": "breathing", "audience": null}')
        assert facts == {"topics": ["breathing"], "audience": None}

    def test_parse_facts_rejects_non_object(self):
        with pytest.raises(ResponseParseError):
            parse_facts('["not", "an", "object"]')

    def test_parse_facts_rejects_malformed_json(self):
        with pytest.raises(ValueError):
            parse_facts('{"topics": [')

    def test_prompt_numbers_chunks_from_one(self, style_guide):
        messages = FactExtractionPrompt.build("chunk text", style_guide, 0)
        assert messages[0]["role"] == "system"
        assert "(chunk 1)" in messages[1]["content"]
        assert "breathing, confidence" in messages[1]["content"]


class TestFactExtractor:
    """Tests for FactExtractor retries."""

    def test_invalid_retries(self, mock_llm_service):
        with pytest.raises(InvalidConfigError):
            FactExtractor(mock_llm_service, max_retries=0)

    @pytest.mark.asyncio
    async def test_successful_extraction(self, mock_llm_service, style_guide):
        mock_llm_service.chat = AsyncMock(return_value=f"```json\n{FACTS_JSON}\n```")
        extractor = FactExtractor(mock_llm_service, retry_delay=0)

        result = await extractor.extract_facts("chunk text", style_guide, 0)

        assert result.parse_success is True
        assert result.facts["techniques"] == ["box breathing"]
        assert mock_llm_service.chat.await_count == 1

    @pytest.mark.asyncio
    async def test_retry_then_succeed(self, mock_llm_service, style_guide):
        mock_llm_service.chat = AsyncMock(side_effect=["not json at all", FACTS_JSON])
        extractor = FactExtractor(mock_llm_service, max_retries=2, retry_delay=0)

        result = await extractor.extract_facts("chunk text", style_guide, 3)

        assert result.parse_success is True
        assert mock_llm_service.chat.await_count == 2

    @pytest.mark.asyncio
    async def test_retries_exhausted(self, mock_llm_service, style_guide):
        mock_llm_service.chat = AsyncMock(side_effect=BackendTimeoutError())
        extractor = FactExtractor(mock_llm_service, max_retries=2, retry_delay=0)

        result = await extractor.extract_chunk_facts("doc-1-chunk-0", 0, "chunk text", style_guide)

        assert mock_llm_service.chat.await_count == 2
        assert result.parse_success is False
        assert result.facts == {}
        assert "unresponsive" in result.error

    @pytest.mark.asyncio
    async def test_unparseable_response_exhausts_retries(self, mock_llm_service, style_guide):
        mock_llm_service.chat = AsyncMock(return_value="not json")
        extractor = FactExtractor(mock_llm_service, max_retries=2, retry_delay=0)

        result = await extractor.extract_chunk_facts("doc-1-chunk-0", 0, "chunk text", style_guide)

        assert mock_llm_service.chat.await_count == 2
        assert result.parse_success is False
        assert result.facts == {}
        assert result.error

    @pytest.mark.asyncio
    async def test_passes_model_and_timeout(self, mock_llm_service, style_guide):
        mock_llm_service.chat = AsyncMock(return_value=FACTS_JSON)
        extractor = FactExtractor(mock_llm_service, timeout=15.0, retry_delay=0)

        await extractor.extract_facts("chunk text", style_guide, 0, model="mistral:7b")

        _, kwargs = mock_llm_service.chat.call_args
        assert kwargs == {"model": "mistral:7b", "timeout": 15.0}


class TestMergeFacts:
    """Tests for merge_facts."""

    def test_merge_order_and_dedup(self):
        merged = merge_facts(
            [
                chunk_facts(1, {"class_title": "Second", "topics": ["Posture", "breathing"]}),
                chunk_facts(0, {"class_title": "  ", "topics": ["Breathing"], "audience": "new speakers"}),
                chunk_facts(2, {"class_title": "Third", "topics": ["voice", "POSTURE", ""]}),
            ]
        )

        assert merged.class_title == "Second"
        assert merged.audience == "new speakers"
        assert merged.topics == ["Breathing", "Posture", "voice"]

    def test_failed_chunks_contribute_nothing(self):
        merged = merge_facts([chunk_facts(0, {}, success=False), chunk_facts(1, {"techniques": ["pausing"]})])
        assert merged.techniques == ["pausing"]
        assert merged.class_title is None

    def test_merge_is_idempotent(self):
        merged = merge_facts(
            [
                chunk_facts(0, {"topics": ["a", "b"], "key_takeaways": ["x"]}),
                chunk_facts(1, {"topics": ["B", "c"], "date_or_series": "Week 2"}),
            ]
        )
        again = merge_facts([chunk_facts(0, merged.model_dump())])
        assert again == merged

    def test_merge_nothing(self):
        merged = merge_facts([])
        assert merged == ExtractedFacts()
        assert merged.is_empty()

    def test_failed_chunk_must_have_empty_facts(self):
        with pytest.raises(ValueError):
            ChunkFacts("doc-1-chunk-0", 0, {"topics": ["x"]}, False, "")
