"""Application settings and chunking/processing presets."""
import math
import os
from dataclasses import dataclass, replace
from typing import Dict, Optional

from pydantic_settings import BaseSettings

from summarizer.exceptions import InvalidConfigError


@dataclass(frozen=True)
class ChunkingConfig:
    """Chunk sizing for one processing mode."""

    mode: str
    chunk_size: int
    overlap: int
    max_chunks: Optional[int] = None
    parallel_processing: bool = True
    batch_size: int = 1
    description: str = ""

    def validate(self) -> "ChunkingConfig":
        """
        Check the configuration and return it unchanged.

        Raises:
            InvalidConfigError: If any size is out of range
        """
        if self.chunk_size <= 0:
            raise InvalidConfigError(f"chunk_size must be positive, got {self.chunk_size}")
        if self.overlap < 0:
            raise InvalidConfigError(f"overlap must not be negative, got {self.overlap}")
        if self.overlap >= self.chunk_size:
            raise InvalidConfigError(
                f"overlap ({self.overlap}) must be smaller than chunk_size ({self.chunk_size})"
            )
        if self.max_chunks is not None and self.max_chunks <= 0:
            raise InvalidConfigError(f"max_chunks must be positive, got {self.max_chunks}")
        if self.batch_size <= 0:
            raise InvalidConfigError(f"batch_size must be positive, got {self.batch_size}")
        return self

    def with_overrides(self, **overrides) -> "ChunkingConfig":
        """Return a copy with the non-None overrides applied."""
        values = {key: value for key, value in overrides.items() if value is not None}
        return replace(self, **values)


@dataclass(frozen=True)
class ProcessingConfig:
    """Full processing profile: chunking plus fact-extraction behaviour."""

    chunking: ChunkingConfig
    enable_parallel_fact_extraction: bool
    fact_extraction_timeout: float  # seconds
    enable_fast_mode: bool
    max_retries: int


CHUNKING_PRESETS: Dict[str, ChunkingConfig] = {
    "ultra-fast": ChunkingConfig(
        mode="ultra-fast",
        chunk_size=8000,
        overlap=100,
        max_chunks=10,
        parallel_processing=True,
        batch_size=4,
        description="Large chunks processed in parallel. Quick overviews of large documents.",
    ),
    "fast": ChunkingConfig(
        mode="fast",
        chunk_size=5000,
        overlap=150,
        max_chunks=20,
        parallel_processing=True,
        batch_size=3,
        description="Larger chunks processed in parallel. Good balance of speed and quality.",
    ),
    "balanced": ChunkingConfig(
        mode="balanced",
        chunk_size=2500,
        overlap=200,
        parallel_processing=True,
        batch_size=2,
        description="Balanced processing for good quality and reasonable speed. Default setting.",
    ),
    "quality": ChunkingConfig(
        mode="quality",
        chunk_size=1500,
        overlap=300,
        parallel_processing=False,
        batch_size=1,
        description="Small chunks processed one at a time for detailed analysis.",
    ),
}

PROCESSING_PRESETS: Dict[str, ProcessingConfig] = {
    "ultra-fast": ProcessingConfig(
        chunking=CHUNKING_PRESETS["ultra-fast"],
        enable_parallel_fact_extraction=True,
        fact_extraction_timeout=15.0,
        enable_fast_mode=True,
        max_retries=1,
    ),
    "fast": ProcessingConfig(
        chunking=CHUNKING_PRESETS["fast"],
        enable_parallel_fact_extraction=True,
        fact_extraction_timeout=25.0,
        enable_fast_mode=True,
        max_retries=2,
    ),
    "balanced": ProcessingConfig(
        chunking=CHUNKING_PRESETS["balanced"],
        enable_parallel_fact_extraction=True,
        fact_extraction_timeout=40.0,
        enable_fast_mode=False,
        max_retries=2,
    ),
    "quality": ProcessingConfig(
        chunking=CHUNKING_PRESETS["quality"],
        enable_parallel_fact_extraction=False,
        fact_extraction_timeout=60.0,
        enable_fast_mode=False,
        max_retries=3,
    ),
}

# Used when regular chunking raises
AGGRESSIVE_CHUNKING = ChunkingConfig(
    mode="aggressive",
    chunk_size=8000,
    overlap=100,
    max_chunks=50,
    parallel_processing=True,
    batch_size=4,
    description="Fallback configuration used when regular chunking fails.",
)


def get_processing_config(mode: str) -> ProcessingConfig:
    """
    Look up a processing preset by name.

    Raises:
        InvalidConfigError: If the preset does not exist
    """
    try:
        return PROCESSING_PRESETS[mode]
    except KeyError:
        raise InvalidConfigError(
            f"Unknown processing mode: {mode}. Available: {', '.join(PROCESSING_PRESETS)}"
        )


def estimate_processing_time(document_word_count: int, config: ProcessingConfig) -> dict:
    """
    Rough estimate of chunk count and wall-clock minutes for a document.

    Args:
        document_word_count: Number of words in the document
        config: Processing preset to estimate for

    Returns:
        Dictionary with estimated_chunks, estimated_time_minutes and description
    """
    chunking = config.chunking
    words_per_chunk = chunking.chunk_size / 5
    estimated_chunks = math.ceil(document_word_count / words_per_chunk) if document_word_count > 0 else 0

    if chunking.max_chunks:
        estimated_chunks = min(estimated_chunks, chunking.max_chunks)

    base_time_per_chunk = 0.5 if config.enable_fast_mode else 1.5
    if config.enable_parallel_fact_extraction:
        effective_time = estimated_chunks / chunking.batch_size * base_time_per_chunk
    else:
        effective_time = estimated_chunks * base_time_per_chunk

    return {
        "estimated_chunks": estimated_chunks,
        "estimated_time_minutes": max(0.5, effective_time),
        "description": f"Processing {estimated_chunks} chunks with {chunking.mode} mode",
    }


class Settings(BaseSettings):
    """Application settings."""

    # LLM / embedding backend (Ollama-compatible HTTP API)
    ollama_base_url: str = "http://127.0.0.1:11434"
    chat_model: str = "llama3.1:8b-instruct-q4_K_M"
    embedding_model: str = "nomic-embed-text"
    request_timeout_seconds: float = 120.0  # Generation calls are slow
    probe_timeout_seconds: float = 5.0
    embedding_timeout_seconds: float = 30.0

    # Embedding generation
    embedding_backend: str = "ollama"  # "ollama" or "sentence_transformers"
    local_embedding_model: str = "sentence-transformers/all-MiniLM-L6-v2"
    cpu_cores: int = 0  # 0 = use all available
    embedding_batch_size: int = 10
    max_concurrent_embeddings: int = 20
    vector_dimension: int = 384

    # Embedding store
    vector_store_backend: str = "memory"  # "memory" or "qdrant"
    qdrant_location: str = ":memory:"  # ":memory:" or a directory path
    qdrant_collection: str = "document_embeddings"

    # Hybrid retrieval
    min_similarity_threshold: float = 0.3
    semantic_weight: float = 0.7
    keyword_weight: float = 0.3
    max_results: int = 5

    # Summarization
    processing_mode: str = "balanced"
    fast_path_max_chars: int = 100_000
    large_context_window: int = 32_768
    sampling_three_part_threshold: int = 100_000
    sampling_two_part_threshold: int = 50_000
    sample_budget_chars: int = 45_000
    section_batching_threshold: int = 8
    section_target_chars: int = 10_000
    fact_extraction_retries: int = 2
    retry_delay_seconds: float = 1.0

    # Logging and tracing
    log_level: str = "INFO"
    tracing_enabled: bool = False
    otlp_endpoint: str = ""  # empty = console exporter

    class Config:
        env_file = os.path.join(os.path.dirname(__file__), "..", "..", ".env")
        env_file_encoding = "utf-8"
        case_sensitive = False
        extra = "ignore"

    @property
    def processing(self) -> ProcessingConfig:
        """The processing preset selected by processing_mode."""
        return get_processing_config(self.processing_mode)
