"""Summarization pipeline: chunk, extract facts, merge, then write raw and styled summaries."""
import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple

from summarizer.config import ProcessingConfig, Settings, get_processing_config
from summarizer.exceptions import BackendError, ResponseParseError, SummarizationError
from summarizer.models.document import Document, TextChunk
from summarizer.models.facts import (
    ChunkFacts,
    ExtractedFacts,
    ProcessingStats,
    StyleGuide,
    SummarizationResult,
)
from summarizer.prompts import CombinedSummaryPrompt, RawSummaryPrompt, StyledSummaryPrompt
from summarizer.services.chunker import (
    CHARS_PER_TOKEN,
    TextChunker,
    combine_into_sections,
    estimate_tokens,
    get_model_context_window,
)
from summarizer.services.fact_extractor import FactExtractor, clean_json_response, merge_facts
from summarizer.services.llm_service import LLMService
from summarizer.utils.logger import logger as default_logger
from summarizer.utils.metrics import SUMMARIZATION_PATHS

ProgressCallback = Callable[[int, int, str], None]

OMISSION_MARKER = "\n\n[... content omitted for length ...]\n\n"
BACKEND_UNAVAILABLE = "LLM backend unavailable"
NO_FACTS_MESSAGE = "No structured facts could be extracted from this document."
SIMPLIFIED_PATH_MAX_CHUNKS = 3


@dataclass(frozen=True)
class SizeCheck:
    """How a document compares to the target model's context window."""

    estimated_tokens: int
    context_window: int
    exceeds: bool
    suggested_mode: str
    warning: Optional[str] = None


def check_document_size(text_length: int, model_id: str) -> SizeCheck:
    """
    Compare a document's estimated token count with the model's context window.

    Suggests ultra-fast above 4x the window, fast above 2x, balanced otherwise.
    The suggestion is advisory; the selected mode is never changed here.
    """
    context_window = get_model_context_window(model_id)
    tokens = estimate_tokens(text_length)

    if tokens > context_window * 4:
        suggested = "ultra-fast"
    elif tokens > context_window * 2:
        suggested = "fast"
    else:
        suggested = "balanced"

    exceeds = tokens > context_window
    warning = None
    if exceeds:
        warning = (
            f"Document is about {tokens} tokens, which exceeds the {context_window}-token context window "
            f"of {model_id}. Consider the {suggested} processing mode."
        )
    return SizeCheck(tokens, context_window, exceeds, suggested, warning)


def should_use_fast_path(
    text_length: int,
    chunk_count: int,
    context_window: int,
    fast_path_max_chars: int = 100_000,
    large_context_window: int = 32_768,
) -> bool:
    """True for a single chunk, for up to three chunks on a large-context model, or for short text."""
    if chunk_count == 1:
        return True
    if chunk_count <= SIMPLIFIED_PATH_MAX_CHUNKS and context_window >= large_context_window:
        return True
    return text_length < fast_path_max_chars


def sample_document(
    text: str,
    three_part_threshold: int = 100_000,
    two_part_threshold: int = 50_000,
    budget: int = 45_000,
) -> str:
    """
    Shrink very long text to a representative sample.

    Above three_part_threshold keeps beginning, middle and end thirds of the
    budget; above two_part_threshold keeps beginning and end halves. Shorter
    text is returned unchanged.
    """
    length = len(text)
    if length > three_part_threshold:
        segment = budget // 3
        middle = length // 2 - segment // 2
        parts = [text[:segment], text[middle:middle + segment], text[-segment:]]
    elif length > two_part_threshold:
        segment = budget // 2
        parts = [text[:segment], text[-segment:]]
    else:
        return text
    return OMISSION_MARKER.join(parts)


def _bullets(items: List[str]) -> str:
    return "".join(f"- {item}\n" for item in items) + "\n"


def _build_synopsis(facts: ExtractedFacts) -> str:
    def join(items: List[str], separator: str = ", ") -> str:
        return separator.join(item.strip().rstrip(".") for item in items)

    sentences = []
    if facts.topics:
        sentences.append(f"This session covers {join(facts.topics[:3])}.")
    if facts.key_takeaways:
        sentences.append(f"Key takeaways include: {join(facts.key_takeaways[:2], '; ')}.")
    if facts.techniques:
        sentences.append(f"Techniques covered include {join(facts.techniques[:3])}.")
    if not sentences:
        return NO_FACTS_MESSAGE
    return " ".join(sentences)


def build_fallback_summary(document: Document, facts: ExtractedFacts) -> str:
    """
    Render a markdown summary straight from merged facts.

    Makes no external calls, so it cannot fail for well-formed facts.
    """
    if facts.is_empty():
        return f"# {document.title}\n\n## Synopsis\n\n{NO_FACTS_MESSAGE}\n"

    summary = f"# {facts.class_title or document.title}\n\n"

    if facts.date_or_series:
        summary += f"**Date/Series:** {facts.date_or_series}\n\n"
    if facts.audience:
        summary += f"**Audience:** {facts.audience}\n\n"

    summary += f"## Synopsis\n\n{_build_synopsis(facts)}\n\n"

    sections = [
        ("Key Takeaways", facts.key_takeaways),
        ("Techniques Covered", facts.techniques),
        ("Topics Discussed", facts.topics),
        ("Learning Objectives", facts.learning_objectives),
        ("Action Items", facts.action_items),
    ]
    for heading, items in sections:
        if items:
            summary += f"## {heading}\n\n{_bullets(items)}"

    if facts.notable_quotes:
        summary += "## Notable Quotes\n\n"
        summary += "".join(f"> {quote}\n\n" for quote in facts.notable_quotes)

    return summary


def parse_combined_summary(response: str) -> Tuple[str, str]:
    """
    Read rawSummary and styledSummary from a combined-summary response.

    Raises:
        ResponseParseError: If either summary is missing or empty
        ValueError: If the response is not valid JSON
    """
    data = json.loads(clean_json_response(response))
    if not isinstance(data, dict):
        raise ResponseParseError("Combined summary response is not a JSON object")
    raw, styled = data.get("rawSummary"), data.get("styledSummary")
    if not isinstance(raw, str) or not raw.strip() or not isinstance(styled, str) or not styled.strip():
        raise ResponseParseError("Combined summary response is missing rawSummary or styledSummary")
    return raw.strip(), styled.strip()


class SummarizationService:
    """Runs one summarization per call, picking the fast, simplified or standard path."""

    def __init__(
        self,
        llm_service: LLMService,
        settings: Optional[Settings] = None,
        fact_extractor: Optional[FactExtractor] = None,
        chunker: Optional[TextChunker] = None,
        processing: Optional[ProcessingConfig] = None,
        enable_fast_path: bool = True,
        log: logging.Logger = default_logger,
    ):
        """
        Initialize summarization service.

        Args:
            llm_service: Chat backend client
            settings: Application settings (default: Settings())
            fact_extractor: Optional extractor (default: built from settings and the preset)
            chunker: Optional chunker (default: built from the preset)
            processing: Processing preset (default: settings.processing_mode)
            enable_fast_path: Allow the single-call fast path
            log: Logger for summarization events
        """
        self.llm_service = llm_service
        self.settings = settings or Settings()
        self.processing = processing or get_processing_config(self.settings.processing_mode)
        self.fact_extractor = fact_extractor or FactExtractor(
            llm_service,
            max_retries=self.settings.fact_extraction_retries,
            retry_delay=self.settings.retry_delay_seconds,
            timeout=self.processing.fact_extraction_timeout,
            log=log,
        )
        self.chunker = chunker or TextChunker(default_config=self.processing.chunking, log=log)
        self.enable_fast_path = enable_fast_path
        self.logger = log

    async def summarize(
        self,
        document: Document,
        style_guide: StyleGuide,
        on_progress: Optional[ProgressCallback] = None,
        model_id: Optional[str] = None,
    ) -> SummarizationResult:
        """
        Summarize a document.

        Args:
            document: Document to summarize
            style_guide: Voice for the styled summary
            on_progress: Optional callback receiving (current, total, status)
            model_id: Optional chat model override

        Returns:
            SummarizationResult

        Raises:
            SummarizationError: If the document has no text or an unexpected failure occurs
        """
        start_time = time.perf_counter()
        model = model_id or self.settings.chat_model
        stage = "size_check"
        log_extra = {"document_id": document.id, "model": model}

        if not document.text.strip():
            raise SummarizationError("Document has no text to summarize", document.id, "input")

        self.logger.info(
            f"Starting summarization for document: {document.title} ({len(document.text)} chars)",
            extra=log_extra,
        )

        try:
            size_check = check_document_size(len(document.text), model)
            if size_check.warning:
                self.logger.warning(size_check.warning, extra={**log_extra, "stage": stage})

            stage = "chunking"
            chunks = self.chunker.split_with_fallback(document.text, document.id, model)
            self.logger.info(f"Document split into {len(chunks)} chunks", extra={**log_extra, "stage": stage})

            stage = "availability"
            if not await self.llm_service.is_available():
                return self._degraded_result(document, chunks, model, start_time, on_progress)

            context_window = get_model_context_window(model)
            if self.enable_fast_path and should_use_fast_path(
                len(document.text),
                len(chunks),
                context_window,
                self.settings.fast_path_max_chars,
                self.settings.large_context_window,
            ):
                stage = "fast_path"
                result = await self._fast_path(document, style_guide, model, start_time, on_progress)
                if result is not None:
                    return result

            stage = "fact_extraction"
            if len(chunks) <= SIMPLIFIED_PATH_MAX_CHUNKS:
                path = "simplified"
                chunk_facts = await self._extract_sequential(chunks, style_guide, model, on_progress)
            else:
                path = "standard"
                units = chunks
                if len(chunks) > self.settings.section_batching_threshold:
                    units = combine_into_sections(chunks, document.text, self.settings.section_target_chars)
                    self.logger.info(
                        f"Combined {len(chunks)} chunks into {len(units)} sections",
                        extra={**log_extra, "stage": stage},
                    )
                if self.processing.enable_parallel_fact_extraction and self.processing.chunking.parallel_processing:
                    chunk_facts = await self._extract_concurrent(units, style_guide, model, on_progress)
                else:
                    chunk_facts = await self._extract_sequential(units, style_guide, model, on_progress)

            stage = "merge"
            merged = merge_facts(chunk_facts)

            stage = "raw_summary"
            raw_summary = await self._generate_summary(
                RawSummaryPrompt.build(document.title, merged), document, merged, model, stage
            )

            stage = "styled_summary"
            styled_summary = await self._generate_summary(
                StyledSummaryPrompt.build(document.title, merged, raw_summary, style_guide),
                document,
                merged,
                model,
                stage,
            )

            if on_progress:
                on_progress(len(chunk_facts), len(chunk_facts), "Complete")
            return self._result(
                document, chunk_facts, merged, raw_summary, styled_summary, model, start_time, path
            )
        except SummarizationError:
            raise
        except Exception as e:
            self.logger.error(
                f"Summarization failed for document: {document.title}",
                extra={**log_extra, "stage": stage},
                exc_info=True,
            )
            raise SummarizationError(str(e), document.id, stage) from e

    async def _fast_path(
        self,
        document: Document,
        style_guide: StyleGuide,
        model: str,
        start_time: float,
        on_progress: Optional[ProgressCallback],
    ) -> Optional[SummarizationResult]:
        """Single combined call. Returns None when the call or its parsing fails."""
        text = sample_document(
            document.text,
            self.settings.sampling_three_part_threshold,
            self.settings.sampling_two_part_threshold,
            self.settings.sample_budget_chars,
        )
        if len(text) != len(document.text):
            self.logger.info(
                f"Sampled {len(text)} of {len(document.text)} chars for the fast path "
                f"(about {len(text) // CHARS_PER_TOKEN} tokens)",
                extra={"document_id": document.id, "path": "fast"},
            )

        if on_progress:
            on_progress(0, 1, "Generating summary (fast path)")
        try:
            response = await self.llm_service.chat(
                CombinedSummaryPrompt.build(document.title, text, style_guide), model=model
            )
            raw_summary, styled_summary = parse_combined_summary(response)
        except (BackendError, ResponseParseError, ValueError) as e:
            self.logger.warning(
                f"Fast path failed, falling back to chunked processing: {str(e)}",
                extra={"document_id": document.id, "path": "fast"},
            )
            return None

        synthetic = ChunkFacts(
            chunk_id=f"{document.id}-fast-path",
            chunk_index=0,
            facts={},
            parse_success=True,
            raw_response=response,
        )
        if on_progress:
            on_progress(1, 1, "Complete")
        return self._result(
            document, [synthetic], ExtractedFacts(), raw_summary, styled_summary, model, start_time, "fast"
        )

    async def _extract_sequential(
        self,
        chunks: List[TextChunk],
        style_guide: StyleGuide,
        model: str,
        on_progress: Optional[ProgressCallback],
    ) -> List[ChunkFacts]:
        results = []
        total = len(chunks)
        for position, chunk in enumerate(chunks, start=1):
            if on_progress:
                on_progress(position, total, f"Extracting facts from chunk {position}/{total}")
            results.append(
                await self.fact_extractor.extract_chunk_facts(
                    chunk.id, chunk.chunk_index, chunk.text, style_guide, model=model
                )
            )
            self._log_chunk(results[-1], position, total)
        return results

    async def _extract_concurrent(
        self,
        chunks: List[TextChunk],
        style_guide: StyleGuide,
        model: str,
        on_progress: Optional[ProgressCallback],
    ) -> List[ChunkFacts]:
        """Extract with at most batch_size calls in flight; output order matches chunk order."""
        semaphore = asyncio.Semaphore(self.processing.chunking.batch_size)
        total = len(chunks)
        completed = 0

        async def extract(chunk: TextChunk) -> ChunkFacts:
            nonlocal completed
            async with semaphore:
                chunk_facts = await self.fact_extractor.extract_chunk_facts(
                    chunk.id, chunk.chunk_index, chunk.text, style_guide, model=model
                )
            completed += 1
            self._log_chunk(chunk_facts, completed, total)
            if on_progress:
                on_progress(completed, total, f"Extracted facts from {completed}/{total} chunks")
            return chunk_facts

        return list(await asyncio.gather(*(extract(chunk) for chunk in chunks)))

    def _log_chunk(self, chunk_facts: ChunkFacts, position: int, total: int) -> None:
        if chunk_facts.parse_success:
            self.logger.info(
                f"Extracted facts from chunk {position}/{total}",
                extra={"chunk_id": chunk_facts.chunk_id, "chunk_index": chunk_facts.chunk_index},
            )
        else:
            self.logger.error(
                f"Failed to extract facts from chunk {position}/{total}: {chunk_facts.error}",
                extra={"chunk_id": chunk_facts.chunk_id, "chunk_index": chunk_facts.chunk_index},
            )

    async def _generate_summary(
        self, messages, document: Document, merged: ExtractedFacts, model: str, stage: str
    ) -> str:
        """Run one summary call, rendering the fallback template if it fails."""
        try:
            response = (await self.llm_service.chat(messages, model=model)).strip()
            if not response:
                raise ResponseParseError("Empty summary response")
            return response
        except (BackendError, ResponseParseError) as e:
            self.logger.warning(
                f"Summary generation failed, using fallback template: {str(e)}",
                extra={"document_id": document.id, "stage": stage},
            )
            return build_fallback_summary(document, merged)

    def _degraded_result(
        self,
        document: Document,
        chunks: List[TextChunk],
        model: str,
        start_time: float,
        on_progress: Optional[ProgressCallback],
    ) -> SummarizationResult:
        """Result for an unreachable backend: every chunk failed, summary from the template."""
        self.logger.warning(
            "LLM backend unavailable, rendering fallback summary",
            extra={"document_id": document.id, "path": "fallback"},
        )
        chunk_facts = [
            ChunkFacts(
                chunk_id=chunk.id,
                chunk_index=chunk.chunk_index,
                facts={},
                parse_success=False,
                raw_response="",
                error=BACKEND_UNAVAILABLE,
            )
            for chunk in chunks
        ]
        merged = merge_facts(chunk_facts)
        summary = build_fallback_summary(document, merged)
        if on_progress:
            on_progress(len(chunks), len(chunks), BACKEND_UNAVAILABLE)
        return self._result(document, chunk_facts, merged, summary, summary, model, start_time, "fallback")

    def _result(
        self,
        document: Document,
        chunk_facts: List[ChunkFacts],
        merged: ExtractedFacts,
        raw_summary: str,
        styled_summary: str,
        model: str,
        start_time: float,
        path: str,
    ) -> SummarizationResult:
        successful = sum(1 for cf in chunk_facts if cf.parse_success)
        stats = ProcessingStats(
            total_chunks=len(chunk_facts),
            successful_chunks=successful,
            failed_chunks=len(chunk_facts) - successful,
            processing_time=round((time.perf_counter() - start_time) * 1000, 2),
            model_used=model,
        )
        SUMMARIZATION_PATHS.labels(path=path).inc()
        self.logger.info(
            f"Summarization completed for document: {document.title}",
            extra={
                "document_id": document.id,
                "path": path,
                "duration_ms": stats.processing_time,
                "result_count": successful,
            },
        )
        return SummarizationResult(
            document=document,
            chunk_facts=chunk_facts,
            merged_facts=merged,
            markdown_summary=styled_summary,
            processing_stats=stats,
            raw_summary=raw_summary,
            styled_summary=styled_summary,
            path=path,
        )
