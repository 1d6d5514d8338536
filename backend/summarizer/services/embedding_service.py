"""Embedding generation for chunks and queries."""
import asyncio
import logging
import math
import os
import threading
import time
from typing import Callable, List, Optional

import torch
from sentence_transformers import SentenceTransformer

from summarizer.exceptions import BackendError, EmbeddingError, InvalidConfigError, ResponseParseError
from summarizer.models.document import EmbeddedChunk, EmbeddingProgress, TextChunk
from summarizer.services.chunker import TextChunker, get_chunking_stats
from summarizer.services.llm_service import LLMService
from summarizer.utils.logger import logger as default_logger
from summarizer.utils.metrics import EMBEDDINGS_GENERATED

ProgressCallback = Callable[[EmbeddingProgress], None]


def configure_cpu_cores(cpu_cores: int = 0) -> int:
    """
    Configure the number of CPU cores for PyTorch.

    Args:
        cpu_cores: Number of CPU cores to use (0 = use all available)

    Returns:
        Actual number of cores configured
    """
    available_cores = os.cpu_count() or 1
    cores_to_use = cpu_cores if cpu_cores > 0 else available_cores

    torch.set_num_threads(cores_to_use)
    os.environ["OMP_NUM_THREADS"] = str(cores_to_use)
    os.environ["MKL_NUM_THREADS"] = str(cores_to_use)

    default_logger.info(f"CPU configuration: using {cores_to_use} cores (available: {available_cores})")
    return cores_to_use


def _get_model_path() -> Optional[str]:
    """Local model directory from EMBEDDING_MODEL_PATH or the usual download locations."""
    local_model_path = os.getenv("EMBEDDING_MODEL_PATH")
    if local_model_path:
        return local_model_path if os.path.isdir(local_model_path) else None

    possible_paths = [
        os.path.join(os.path.dirname(__file__), "..", "..", "models", "sentence-transformers_all-MiniLM-L6-v2"),
        os.path.join(os.getcwd(), "models", "sentence-transformers_all-MiniLM-L6-v2"),
    ]
    for path in possible_paths:
        abs_path = os.path.abspath(path)
        if os.path.isdir(abs_path):
            return abs_path
    return None


class OllamaEmbedder:
    """Embeds text through the backend's embedding endpoint."""

    def __init__(self, llm_service: LLMService, model: Optional[str] = None):
        self.llm_service = llm_service
        self.model = model

    async def embed(self, text: str) -> List[float]:
        return await self.llm_service.generate_embedding(text, model=self.model)


class SentenceTransformerEmbedder:
    """Embeds text with a local sentence-transformers model, loaded on first use."""

    def __init__(self, model_name: str = "sentence-transformers/all-MiniLM-L6-v2", cpu_cores: int = 0):
        """
        Initialize the embedder (model loaded lazily on first use).

        Args:
            model_name: Name of the sentence transformer model
            cpu_cores: Number of CPU cores to use (0 = use all available)
        """
        self.model_name = model_name
        self.cpu_cores = cpu_cores
        self._model: Optional[SentenceTransformer] = None
        self._lock = threading.Lock()

    def _load_model(self) -> SentenceTransformer:
        """Load the model (thread-safe lazy loading)."""
        if self._model is None:
            with self._lock:
                if self._model is None:
                    configure_cpu_cores(self.cpu_cores)
                    local_model_path = _get_model_path()
                    if local_model_path:
                        default_logger.info(f"Loading embedding model from local path: {local_model_path}")
                        self._model = SentenceTransformer(local_model_path, device="cpu")
                    else:
                        default_logger.info(f"Local model not found, loading from HuggingFace: {self.model_name}")
                        self._model = SentenceTransformer(self.model_name, device="cpu")
        return self._model

    def _encode(self, texts: List[str]) -> List[List[float]]:
        embeddings = self._load_model().encode(
            texts,
            show_progress_bar=False,
            convert_to_numpy=True,
            normalize_embeddings=False,
        )
        return embeddings.tolist()

    async def embed(self, text: str) -> List[float]:
        # Encoding is CPU bound; keep it off the event loop
        vectors = await asyncio.to_thread(self._encode, [text])
        return vectors[0]


class EmbeddingService:
    """Turns chunks and queries into vectors with bounded concurrency."""

    def __init__(
        self,
        embedder,
        chunker: Optional[TextChunker] = None,
        batch_size: int = 10,
        max_concurrent: int = 20,
        log: logging.Logger = default_logger,
    ):
        """
        Initialize embedding service.

        Args:
            embedder: Object with an async embed(text) -> List[float] method
            chunker: Chunker used by generate_document_embeddings (default: TextChunker())
            batch_size: Maximum chunks per progress batch
            max_concurrent: Maximum embedding calls in flight
            log: Logger for embedding events
        """
        if batch_size <= 0 or max_concurrent <= 0:
            raise InvalidConfigError("batch_size and max_concurrent must be positive")
        self.embedder = embedder
        self.chunker = chunker or TextChunker()
        self.batch_size = batch_size
        self.max_concurrent = max_concurrent
        self.logger = log

    async def embed_text(self, text: str) -> List[float]:
        """
        Generate an embedding for a single text.

        Raises:
            EmbeddingError: If the embedder fails or returns an empty vector
        """
        try:
            vector = await self.embedder.embed(text)
        except (BackendError, ResponseParseError) as e:
            raise EmbeddingError(f"Embedding generation failed: {str(e)}") from e
        if not vector:
            raise EmbeddingError("Embedder returned an empty vector")
        EMBEDDINGS_GENERATED.inc()
        return vector

    async def _embed_chunk(self, chunk: TextChunk, semaphore: asyncio.Semaphore) -> EmbeddedChunk:
        async with semaphore:
            try:
                vector = await self.embed_text(chunk.text)
            except EmbeddingError as e:
                self.logger.error(
                    f"Failed to generate embedding for chunk: {chunk.id}",
                    extra={"document_id": chunk.document_id, "chunk_id": chunk.id},
                )
                raise EmbeddingError(str(e), document_id=chunk.document_id, chunk_id=chunk.id) from e
        return EmbeddedChunk.from_chunk(chunk, vector)

    async def _embed_batch(self, batch: List[TextChunk], semaphore: asyncio.Semaphore) -> List[EmbeddedChunk]:
        """Embed one batch; the first failure cancels the rest of the batch."""
        tasks = [asyncio.create_task(self._embed_chunk(chunk, semaphore)) for chunk in batch]
        try:
            return await asyncio.gather(*tasks)
        finally:
            pending = [task for task in tasks if not task.done()]
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

    async def embed_chunks(
        self,
        chunks: List[TextChunk],
        document_id: str,
        on_progress: Optional[ProgressCallback] = None,
    ) -> List[EmbeddedChunk]:
        """
        Embed chunks batch by batch, preserving chunk order.

        A failure on any chunk aborts the whole call.

        Args:
            chunks: Chunks ordered by chunk_index
            document_id: Document the chunks belong to
            on_progress: Optional callback invoked after every batch

        Returns:
            Embedded chunks in input order

        Raises:
            EmbeddingError: If any chunk fails or the vectors differ in dimension
        """
        if not chunks:
            return []

        total = len(chunks)
        batch_size = max(1, min(self.batch_size, math.ceil(total / 2)))
        semaphore = asyncio.Semaphore(self.max_concurrent)
        embedded: List[EmbeddedChunk] = []
        num_batches = math.ceil(total / batch_size)

        for batch_number, start in enumerate(range(0, total, batch_size), start=1):
            batch = chunks[start:start + batch_size]
            batch_start = time.perf_counter()

            embedded.extend(await self._embed_batch(batch, semaphore))

            current = min(start + batch_size, total)
            progress = EmbeddingProgress(
                current=current,
                total=total,
                chunk_id=batch[-1].id,
                percentage=round(current / total * 100),
            )
            if on_progress:
                on_progress(progress)
            self.logger.info(
                f"Processed embedding batch {batch_number}/{num_batches}",
                extra={
                    "document_id": document_id,
                    "progress": progress.percentage,
                    "duration_ms": round((time.perf_counter() - batch_start) * 1000, 2),
                },
            )

        dimensions = {len(chunk.embedding) for chunk in embedded}
        if len(dimensions) > 1:
            raise EmbeddingError(
                f"Embedder returned vectors of mixed dimensions {sorted(dimensions)}", document_id=document_id
            )

        return embedded

    async def generate_document_embeddings(
        self,
        document_id: str,
        text: str,
        on_progress: Optional[ProgressCallback] = None,
    ) -> List[EmbeddedChunk]:
        """
        Chunk a document and embed every chunk.

        Args:
            document_id: Document ID
            text: Document text
            on_progress: Optional per-batch progress callback

        Returns:
            Embedded chunks in chunk order
        """
        start_time = time.perf_counter()
        self.logger.info(
            f"Starting embedding generation for document: {document_id} ({len(text)} chars)",
            extra={"document_id": document_id, "stage": "embedding"},
        )

        try:
            chunks = self.chunker.split(text, document_id)
            stats = get_chunking_stats(chunks)
            self.logger.info(
                f"Text split into {stats['total_chunks']} chunks "
                f"(average {stats['average_chunk_size']} chars)",
                extra={"document_id": document_id},
            )
            embedded = await self.embed_chunks(chunks, document_id, on_progress)
        except EmbeddingError:
            self.logger.error(
                f"Failed to generate embeddings for document: {document_id}",
                extra={"document_id": document_id, "stage": "embedding"},
                exc_info=True,
            )
            raise

        self.logger.info(
            f"Embedding generation completed for document: {document_id}",
            extra={
                "document_id": document_id,
                "result_count": len(embedded),
                "duration_ms": round((time.perf_counter() - start_time) * 1000, 2),
            },
        )
        return embedded


def create_embedder(settings, llm_service: Optional[LLMService] = None):
    """Build the embedder selected by settings.embedding_backend."""
    backend = settings.embedding_backend.lower()
    if backend == "ollama":
        if llm_service is None:
            raise InvalidConfigError("The ollama embedding backend needs an LLMService")
        return OllamaEmbedder(llm_service, model=settings.embedding_model)
    if backend == "sentence_transformers":
        return SentenceTransformerEmbedder(settings.local_embedding_model, cpu_cores=settings.cpu_cores)
    raise InvalidConfigError(
        f"Invalid embedding_backend: {settings.embedding_backend}. Must be 'ollama' or 'sentence_transformers'."
    )
