"""Tests for the summarization pipeline."""
import json
from unittest.mock import AsyncMock, Mock

import httpx
import pytest

from summarizer.config import PROCESSING_PRESETS
from summarizer.exceptions import BackendTimeoutError, ResponseParseError, SummarizationError
from summarizer.models.facts import ExtractedFacts
from summarizer.prompts import (
    CombinedSummaryPrompt,
    FactExtractionPrompt,
    RawSummaryPrompt,
    StyledSummaryPrompt,
)
from summarizer.services.fact_extractor import FactExtractor
from summarizer.services.llm_service import LLMService
from summarizer.services.summarization_service import (
    BACKEND_UNAVAILABLE,
    NO_FACTS_MESSAGE,
    OMISSION_MARKER,
    SummarizationService,
    build_fallback_summary,
    check_document_size,
    parse_combined_summary,
    sample_document,
    should_use_fast_path,
)

FACTS = {
    "class_title": "Breathing for Speakers",
    "key_takeaways": ["Breathe before you speak"],
    "topics": ["breathing", "posture"],
    "techniques": ["box breathing"],
    "notable_quotes": ["Slow is smooth"],
}

COMBINED = json.dumps({"rawSummary": "# Raw\n\nFacts only.", "styledSummary": "# Styled\n\nWith flair!"})


def words(length: int) -> str:
    text = " ".join(f"word{i}" for i in range(length // 5 + 1))
    return text[:length]


class FakeBackend:
    """Answers each prompt type with a canned response and records what was asked."""

    def __init__(self, combined=COMBINED, facts=FACTS):
        self.combined = combined
        self.facts = facts
        self.calls = []

    async def chat(self, messages, model=None, timeout=None):
        system = messages[0]["content"]
        self.calls.append(system)
        if system == CombinedSummaryPrompt.SYSTEM_MESSAGE:
            return self.combined
        if system == FactExtractionPrompt.SYSTEM_MESSAGE:
            return json.dumps(self.facts)
        if system == RawSummaryPrompt.SYSTEM_MESSAGE:
            return "# Raw summary"
        if system == StyledSummaryPrompt.SYSTEM_MESSAGE:
            return "# Styled summary"
        raise AssertionError(f"unexpected prompt: {system}")

    def count(self, prompt_class):
        return self.calls.count(prompt_class.SYSTEM_MESSAGE)


@pytest.fixture
def backend(mock_llm_service):
    fake = FakeBackend()
    mock_llm_service.chat = AsyncMock(side_effect=fake.chat)
    return fake


class TestSizeAndSampling:
    """Tests for size checks, path selection and sampling."""

    def test_check_document_size(self):
        small = check_document_size(5_000, "llama3.1:8b")
        assert small.suggested_mode == "balanced"
        assert not small.exceeds
        assert small.warning is None

        medium = check_document_size(40_000, "llama3.1:8b")
        assert medium.suggested_mode == "fast"
        assert medium.exceeds

        large = check_document_size(200_000, "llama3.1:8b")
        assert large.estimated_tokens == 50_000
        assert large.suggested_mode == "ultra-fast"
        assert "ultra-fast" in large.warning

    def test_should_use_fast_path(self):
        assert should_use_fast_path(500_000, 1, 4096)
        assert should_use_fast_path(150_000, 3, 131_072)
        assert not should_use_fast_path(150_000, 3, 4096)
        assert should_use_fast_path(99_999, 10, 4096)
        assert not should_use_fast_path(200_000, 30, 4096)
        assert not should_use_fast_path(200_000, 10, 4096)

    def test_sample_three_parts(self):
        text = words(150_000)
        sample = sample_document(text)

        assert sample.count(OMISSION_MARKER) == 2
        assert len(sample) == 45_000 + 2 * len(OMISSION_MARKER)
        assert sample.startswith(text[:15_000])
        assert sample.endswith(text[-15_000:])

    def test_sample_two_parts(self):
        text = words(60_000)
        sample = sample_document(text)
        assert sample.count(OMISSION_MARKER) == 1
        assert sample == text[:22_500] + OMISSION_MARKER + text[-22_500:]

    def test_short_text_not_sampled(self):
        text = words(10_000)
        assert sample_document(text) == text


class TestFallbackTemplate:
    """Tests for the fact-only summary."""

    def test_fallback_summary_with_facts(self, make_document):
        document = make_document("Some transcript text.")
        facts = ExtractedFacts(audience="new speakers", **FACTS)
        summary = build_fallback_summary(document, facts)

        assert summary.startswith("# Breathing for Speakers")
        assert "**Audience:** new speakers" in summary
        assert "## Synopsis" in summary
        assert "This session covers breathing, posture." in summary
        assert "## Key Takeaways\n\n- Breathe before you speak" in summary
        assert "## Techniques Covered" in summary
        assert "> Slow is smooth" in summary
        assert "## Action Items" not in summary

    def test_fallback_summary_without_facts(self, make_document):
        document = make_document("Some transcript text.")
        summary = build_fallback_summary(document, ExtractedFacts())
        assert summary.startswith(f"# {document.title}")
        assert "No structured facts could be extracted" in summary

    def test_fallback_summary_empty_facts_has_no_sections(self, make_document):
        document = make_document("Some transcript text.")
        assert build_fallback_summary(document, ExtractedFacts(class_title="  ", topics=[])) == (
            f"# {document.title}\n\n## Synopsis\n\n{NO_FACTS_MESSAGE}\n"
        )

        audience_only = build_fallback_summary(document, ExtractedFacts(audience="new speakers"))
        assert "**Audience:** new speakers" in audience_only

    def test_parse_combined_summary(self):
        assert parse_combined_summary(f"```json\n{COMBINED}\n```") == ("# Raw\n\nFacts only.", "# Styled\n\nWith flair!")
        with pytest.raises(ResponseParseError):
            parse_combined_summary(json.dumps({"rawSummary": "only raw"}))


class TestSummarizationService:
    """Tests for SummarizationService.summarize."""

    @pytest.mark.asyncio
    async def test_short_document_takes_fast_path(
        self, mock_llm_service, backend, settings, style_guide, make_document
    ):
        document = make_document(words(5_000))
        progress = []
        service = SummarizationService(mock_llm_service, settings=settings)

        result = await service.summarize(document, style_guide, on_progress=lambda *args: progress.append(args))

        assert result.path == "fast"
        assert backend.calls == [CombinedSummaryPrompt.SYSTEM_MESSAGE]
        assert result.raw_summary == "# Raw\n\nFacts only."
        assert result.markdown_summary == result.styled_summary == "# Styled\n\nWith flair!"
        assert result.processing_stats.total_chunks == 1
        assert result.processing_stats.successful_chunks == 1
        assert result.processing_stats.model_used == settings.chat_model
        assert progress[-1] == (1, 1, "Complete")

    @pytest.mark.asyncio
    async def test_long_document_takes_standard_path(
        self, mock_llm_service, backend, settings, style_guide, make_document
    ):
        document = make_document(words(200_000))
        progress = []
        service = SummarizationService(mock_llm_service, settings=settings)

        result = await service.summarize(document, style_guide, on_progress=lambda *args: progress.append(args))

        assert result.path == "standard"
        assert backend.count(CombinedSummaryPrompt) == 0
        assert backend.count(FactExtractionPrompt) == len(result.chunk_facts) > 3
        assert backend.count(RawSummaryPrompt) == 1
        assert backend.count(StyledSummaryPrompt) == 1
        assert [cf.chunk_index for cf in result.chunk_facts] == list(range(len(result.chunk_facts)))
        assert result.merged_facts.techniques == ["box breathing"]
        assert result.raw_summary == "# Raw summary"
        assert result.markdown_summary == "# Styled summary"
        assert result.processing_stats.failed_chunks == 0
        total = len(result.chunk_facts)
        assert progress[-1] == (total, total, "Complete")

    @pytest.mark.asyncio
    async def test_sequential_mode_keeps_order(self, mock_llm_service, backend, settings, style_guide, make_document):
        document = make_document(words(200_000))
        service = SummarizationService(mock_llm_service, settings=settings, processing=PROCESSING_PRESETS["quality"])

        result = await service.summarize(document, style_guide)

        assert result.path == "standard"
        assert [cf.chunk_index for cf in result.chunk_facts] == list(range(len(result.chunk_facts)))

    @pytest.mark.asyncio
    async def test_failed_fast_path_falls_back_to_chunks(
        self, mock_llm_service, backend, settings, style_guide, make_document
    ):
        backend.combined = "I cannot produce JSON today."
        document = make_document(words(5_000))
        service = SummarizationService(mock_llm_service, settings=settings)

        result = await service.summarize(document, style_guide)

        assert result.path == "simplified"
        assert backend.count(CombinedSummaryPrompt) == 1
        assert backend.count(FactExtractionPrompt) == 1
        assert result.merged_facts.class_title == "Breathing for Speakers"
        assert result.markdown_summary == "# Styled summary"

    @pytest.mark.asyncio
    async def test_unavailable_backend_renders_fallback(self, mock_llm_service, settings, style_guide, make_document):
        mock_llm_service.is_available = AsyncMock(return_value=False)
        document = make_document(words(5_000))
        service = SummarizationService(mock_llm_service, settings=settings)

        result = await service.summarize(document, style_guide)

        assert result.path == "fallback"
        mock_llm_service.chat.assert_not_called()
        assert all(not cf.parse_success and cf.error == BACKEND_UNAVAILABLE for cf in result.chunk_facts)
        assert result.processing_stats.successful_chunks == 0
        assert result.raw_summary == result.styled_summary
        assert result.markdown_summary.startswith(f"# {document.title}")
        assert "No structured facts could be extracted" in result.markdown_summary

    @pytest.mark.asyncio
    async def test_malformed_model_list_renders_fallback(self, settings, style_guide, make_document):
        client = httpx.AsyncClient(
            base_url="http://ollama.test", transport=httpx.MockTransport(lambda request: httpx.Response(200, json=[]))
        )
        llm_service = LLMService(base_url="http://ollama.test", http_client=client)
        document = make_document(words(600))
        service = SummarizationService(llm_service, settings=settings)

        result = await service.summarize(document, style_guide)

        assert result.path == "fallback"
        assert all(cf.error == BACKEND_UNAVAILABLE for cf in result.chunk_facts)
        assert result.markdown_summary.startswith(f"# {document.title}")
        await llm_service.close()

    @pytest.mark.asyncio
    async def test_total_outage_still_returns_summary(self, mock_llm_service, settings, style_guide, make_document):
        mock_llm_service.chat = AsyncMock(side_effect=BackendTimeoutError())
        document = make_document(words(5_000))
        service = SummarizationService(mock_llm_service, settings=settings, enable_fast_path=False)

        result = await service.summarize(document, style_guide)

        assert result.path == "simplified"
        assert result.processing_stats.successful_chunks == 0
        assert result.processing_stats.failed_chunks == 1
        # two extraction attempts, then one raw and one styled call
        assert mock_llm_service.chat.await_count == 4
        assert result.markdown_summary.startswith(f"# {document.title}")
        assert result.merged_facts.is_empty()

    @pytest.mark.asyncio
    async def test_empty_summary_uses_fallback(self, mock_llm_service, backend, settings, style_guide, make_document):
        original = backend.chat

        async def blank_styled(messages, model=None, timeout=None):
            if messages[0]["content"] == StyledSummaryPrompt.SYSTEM_MESSAGE:
                return "   "
            return await original(messages, model=model, timeout=timeout)

        mock_llm_service.chat = AsyncMock(side_effect=blank_styled)
        service = SummarizationService(mock_llm_service, settings=settings, enable_fast_path=False)

        result = await service.summarize(make_document(words(5_000)), style_guide)

        assert result.raw_summary == "# Raw summary"
        assert result.styled_summary.startswith("# Breathing for Speakers")

    @pytest.mark.asyncio
    async def test_model_override(self, mock_llm_service, backend, settings, style_guide, make_document):
        service = SummarizationService(mock_llm_service, settings=settings)
        result = await service.summarize(make_document(words(5_000)), style_guide, model_id="mistral:7b")

        assert result.processing_stats.model_used == "mistral:7b"
        assert mock_llm_service.chat.call_args.kwargs["model"] == "mistral:7b"

    @pytest.mark.asyncio
    async def test_blank_document_rejected(self, mock_llm_service, settings, style_guide, make_document):
        service = SummarizationService(mock_llm_service, settings=settings)
        with pytest.raises(SummarizationError) as exc_info:
            await service.summarize(make_document("   \n "), style_guide)
        assert exc_info.value.stage == "input"

    @pytest.mark.asyncio
    async def test_unexpected_failure_is_wrapped(self, mock_llm_service, settings, style_guide, make_document):
        extractor = Mock(spec=FactExtractor)
        extractor.extract_chunk_facts = AsyncMock(side_effect=RuntimeError("worker crashed"))
        service = SummarizationService(
            mock_llm_service, settings=settings, fact_extractor=extractor, enable_fast_path=False
        )

        with pytest.raises(SummarizationError) as exc_info:
            await service.summarize(make_document(words(5_000), doc_id="doc-9"), style_guide)
        assert exc_info.value.stage == "fact_extraction"
        assert exc_info.value.document_id == "doc-9"
        assert "worker crashed" in str(exc_info.value)
