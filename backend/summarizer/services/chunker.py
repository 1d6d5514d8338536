"""Text chunking: overlapping, size-bounded segments sized for the target model."""
import logging
import math
from typing import Dict, List, Optional

from summarizer.config import AGGRESSIVE_CHUNKING, CHUNKING_PRESETS, ChunkingConfig
from summarizer.exceptions import ChunkingError, InvalidConfigError
from summarizer.models.document import TextChunk
from summarizer.utils.logger import logger as default_logger

CHARS_PER_TOKEN = 4
MAX_MODEL_CHUNK_CHARS = 15_000
DEFAULT_MODEL_MAX_CHUNKS = 50

# Model context windows in tokens
MODEL_CONTEXT_WINDOWS: Dict[str, int] = {
    "llama3.1:8b-instruct-q4_K_M": 4096,
    "llama3.1:8b": 4096,
    "llama3.1:13b-instruct-q4_K_M": 4096,
    "llama3.1:13b": 4096,
    "llama3.1:70b": 4096,
    "llama3.1:70b-instruct": 4096,
    "gemma3:1b": 32768,
    "gemma3:4b": 131072,
    "gemma3:12b": 131072,
    "gemma3:27b": 131072,
    "mixtral:8x7b": 32768,
    "mixtral:8x7b-instruct": 32768,
    "codellama:7b": 16384,
    "codellama:13b": 16384,
    "codellama:34b": 16384,
    "mistral:7b": 8192,
    "mistral:7b-instruct": 8192,
    "phi:2.7b": 2048,
    "phi:3.8b": 8192,
}
DEFAULT_CONTEXT_WINDOW = 4096

# Share of the context window that can safely be filled
MODEL_UTILIZATION: Dict[str, float] = {
    "gemma3:1b": 0.95,
    "gemma3:4b": 0.95,
    "gemma3:12b": 0.95,
    "gemma3:27b": 0.95,
    "mixtral:8x7b": 0.95,
    "mixtral:8x7b-instruct": 0.95,
    "llama3.1:13b": 0.90,
    "llama3.1:13b-instruct-q4_K_M": 0.90,
    "llama3.1:70b": 0.90,
    "llama3.1:70b-instruct": 0.90,
    "codellama:7b": 0.90,
    "codellama:13b": 0.90,
    "codellama:34b": 0.90,
    "mistral:7b": 0.90,
    "mistral:7b-instruct": 0.90,
    "phi:3.8b": 0.90,
    "llama3.1:8b": 0.85,
    "llama3.1:8b-instruct-q4_K_M": 0.85,
    "phi:2.7b": 0.85,
}
DEFAULT_UTILIZATION = 0.90


def get_model_context_window(model_id: str) -> int:
    """Context window in tokens for model_id (4096 when unknown)."""
    return MODEL_CONTEXT_WINDOWS.get(model_id, DEFAULT_CONTEXT_WINDOW)


def get_model_utilization_threshold(model_id: str) -> float:
    return MODEL_UTILIZATION.get(model_id, DEFAULT_UTILIZATION)


def estimate_tokens(text_length: int) -> int:
    return math.ceil(text_length / CHARS_PER_TOKEN)


def _chunk_id(document_id: str, chunk_index: int) -> str:
    return f"{document_id}-chunk-{chunk_index}"


class TextChunker:
    """Splits document text into overlapping chunks that together cover every character."""

    def __init__(
        self,
        default_config: Optional[ChunkingConfig] = None,
        fallback_config: ChunkingConfig = AGGRESSIVE_CHUNKING,
        log: logging.Logger = default_logger,
    ):
        """
        Initialize the chunker.

        Args:
            default_config: Configuration used when split() gets none (default: balanced preset)
            fallback_config: Configuration used by split_with_fallback() after a failure
            log: Logger for chunking events
        """
        self.default_config = default_config or CHUNKING_PRESETS["balanced"]
        self.fallback_config = fallback_config
        self.logger = log

    def split(self, text: str, document_id: str, config: Optional[ChunkingConfig] = None) -> List[TextChunk]:
        """
        Split text into overlapping chunks.

        Chunks break at the last whitespace in the final 30% of the window when
        possible. Consecutive chunks share exactly `overlap` characters (fewer
        when the window had to be advanced to guarantee progress). When the
        result would exceed max_chunks, the chunk size is widened instead of
        dropping text.

        Args:
            text: Document text
            document_id: ID of the source document
            config: Optional chunking configuration (defaults to the chunker's default)

        Returns:
            Chunks ordered by chunk_index

        Raises:
            InvalidConfigError: If the configuration is malformed
        """
        config = (config or self.default_config).validate()

        if not text:
            return []

        if len(text) <= config.chunk_size:
            return [TextChunk(_chunk_id(document_id, 0), document_id, text, 0, len(text), 0)]

        chunk_size = config.chunk_size
        if config.max_chunks:
            # Each chunk advances by at least chunk_size - overlap characters
            needed = math.ceil(len(text) / config.max_chunks) + config.overlap
            chunk_size = max(chunk_size, needed)

        chunks = self._create_chunks(text, document_id, chunk_size, config.overlap)
        while config.max_chunks and len(chunks) > config.max_chunks:
            chunk_size = math.ceil(chunk_size * 1.25)
            chunks = self._create_chunks(text, document_id, chunk_size, config.overlap)

        if chunk_size != config.chunk_size:
            self.logger.info(
                f"Widened chunk size from {config.chunk_size} to {chunk_size} "
                f"to respect max_chunks={config.max_chunks}",
                extra={"document_id": document_id},
            )

        return chunks

    def _create_chunks(self, text: str, document_id: str, chunk_size: int, overlap: int) -> List[TextChunk]:
        """Fixed-size windows with a word-boundary break and overlap."""
        chunks: List[TextChunk] = []
        text_length = len(text)
        start_index = 0

        while start_index < text_length:
            end_index = min(start_index + chunk_size, text_length)

            if end_index < text_length:
                last_space = text.rfind(" ", start_index, end_index)
                if last_space > start_index + chunk_size * 0.7:
                    end_index = last_space + 1

            chunk_index = len(chunks)
            chunks.append(
                TextChunk(
                    id=_chunk_id(document_id, chunk_index),
                    document_id=document_id,
                    text=text[start_index:end_index],
                    start_index=start_index,
                    end_index=end_index,
                    chunk_index=chunk_index,
                )
            )

            if end_index >= text_length:
                break
            start_index = max(end_index - overlap, start_index + 1)

        return chunks

    def config_for_model(self, text_length: int, model_id: str) -> Optional[ChunkingConfig]:
        """
        Derive a chunking configuration from the model's context window.

        Returns:
            None when the whole text fits in one chunk, otherwise the derived configuration
        """
        context_window = get_model_context_window(model_id)
        max_chars = int(context_window * CHARS_PER_TOKEN * get_model_utilization_threshold(model_id))

        if text_length <= max_chars:
            return None

        # Leave half of the window for the prompt scaffolding and the response
        chunk_size = max(1, min(MAX_MODEL_CHUNK_CHARS, max_chars // 2))
        return ChunkingConfig(
            mode="model",
            chunk_size=chunk_size,
            overlap=int(chunk_size * 0.02),
            max_chunks=self.default_config.max_chunks or DEFAULT_MODEL_MAX_CHUNKS,
            parallel_processing=self.default_config.parallel_processing,
            batch_size=self.default_config.batch_size,
            description=f"Derived from the {context_window}-token context window of {model_id}",
        )

    def split_for_model(self, text: str, document_id: str, model_id: str) -> List[TextChunk]:
        """
        Split text using a configuration derived from the target model.

        Args:
            text: Document text
            document_id: ID of the source document
            model_id: Target chat model

        Returns:
            Chunks ordered by chunk_index
        """
        if not text:
            return []

        config = self.config_for_model(len(text), model_id)
        if config is None:
            return [TextChunk(_chunk_id(document_id, 0), document_id, text, 0, len(text), 0)]

        self.logger.info(
            f"Document too large for a single {model_id} call "
            f"({estimate_tokens(len(text))} estimated tokens), splitting with chunk size {config.chunk_size}",
            extra={"document_id": document_id, "model": model_id},
        )
        return self.split(text, document_id, config)

    def split_with_fallback(self, text: str, document_id: str, model_id: Optional[str] = None) -> List[TextChunk]:
        """
        Split for the model (or with the default configuration), falling back
        to the aggressive configuration if that raises.

        Raises:
            ChunkingError: If even the fallback configuration fails
        """
        try:
            if model_id:
                return self.split_for_model(text, document_id, model_id)
            return self.split(text, document_id)
        except Exception as e:
            self.logger.warning(
                f"Chunking failed ({str(e)}), retrying with aggressive fallback configuration",
                extra={"document_id": document_id, "stage": "chunking"},
            )

        try:
            return self.split(text, document_id, self.fallback_config)
        except Exception as e:
            raise ChunkingError(f"Fallback chunking failed for document {document_id}: {str(e)}") from e


def combine_into_sections(chunks: List[TextChunk], source_text: str, target_chars: int = 10_000) -> List[TextChunk]:
    """
    Merge consecutive chunks into larger sections of roughly target_chars.

    Section text is re-sliced from the source so overlaps are not duplicated.

    Args:
        chunks: Chunks ordered by chunk_index
        source_text: The text the chunks were cut from
        target_chars: Desired section size in characters

    Returns:
        Sections renumbered from 0, covering the same character range
    """
    if target_chars <= 0:
        raise InvalidConfigError(f"target_chars must be positive, got {target_chars}")
    if not chunks:
        return []

    document_id = chunks[0].document_id
    sections: List[TextChunk] = []
    group_start = chunks[0].start_index
    group_end = chunks[0].end_index

    def close_group(start: int, end: int):
        section_index = len(sections)
        sections.append(
            TextChunk(
                id=f"{document_id}-section-{section_index}",
                document_id=document_id,
                text=source_text[start:end],
                start_index=start,
                end_index=end,
                chunk_index=section_index,
            )
        )

    for chunk in chunks[1:]:
        if chunk.end_index - group_start > target_chars:
            close_group(group_start, group_end)
            group_start = group_end
        group_end = chunk.end_index

    close_group(group_start, group_end)
    return sections


def get_chunking_stats(chunks: List[TextChunk]) -> dict:
    """Summary statistics over chunk lengths."""
    if not chunks:
        return {
            "total_chunks": 0,
            "average_chunk_size": 0,
            "min_chunk_size": 0,
            "max_chunk_size": 0,
            "total_characters": 0,
        }

    sizes = [len(chunk.text) for chunk in chunks]
    total = sum(sizes)
    return {
        "total_chunks": len(chunks),
        "average_chunk_size": round(total / len(chunks)),
        "min_chunk_size": min(sizes),
        "max_chunk_size": max(sizes),
        "total_characters": total,
    }
