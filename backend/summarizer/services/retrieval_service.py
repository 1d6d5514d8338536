"""Hybrid (semantic + keyword) retrieval over embedded chunks."""
import asyncio
import hashlib
import logging
import time
from typing import Dict, List, Optional

from summarizer.exceptions import (
    DimensionMismatchError,
    EmbeddingError,
    InvalidConfigError,
    InvalidLimitError,
    StoreError,
)
from summarizer.models.document import (
    DistanceMetric,
    DocumentEmbedding,
    EmbeddedChunk,
    IndexStatus,
    RetrievalResult,
    SearchOptions,
)
from summarizer.services.embedding_service import EmbeddingService
from summarizer.services.vector_store import EmbeddingStore
from summarizer.utils.logger import logger as default_logger
from summarizer.utils.metrics import RETRIEVAL_FALLBACKS
from summarizer.utils.text_cleaner import count_word_matches, tokenize_query
from summarizer.utils.vector_math import clamp_unit, cosine_similarity


def _rank(results: List[RetrievalResult]) -> List[RetrievalResult]:
    """Sort by descending similarity (ties by chunk_index) and number ranks from 1."""
    ordered = sorted(results, key=lambda r: (-r.similarity, r.chunk.chunk_index))
    return [RetrievalResult(chunk=r.chunk, similarity=r.similarity, rank=i) for i, r in enumerate(ordered, start=1)]


def keyword_search(query: str, corpus: List[EmbeddedChunk]) -> List[RetrievalResult]:
    """
    Score chunks by whole-word keyword hits.

    Each query word longer than two characters adds matches / number_of_words
    to a chunk's score, which is capped at 1.0. Chunks without hits are dropped.

    Args:
        query: Free-text query
        corpus: Chunks to score

    Returns:
        Ranked keyword results
    """
    words = tokenize_query(query)
    if not words:
        return []

    results = []
    for chunk in corpus:
        score = sum(count_word_matches(word, chunk.text) / len(words) for word in words)
        if score > 0:
            results.append(RetrievalResult(chunk=chunk, similarity=min(score, 1.0), rank=0))
    return _rank(results)


def combine_search_results(
    semantic_results: List[RetrievalResult],
    keyword_results: List[RetrievalResult],
    semantic_weight: float,
    keyword_weight: float,
) -> List[RetrievalResult]:
    """
    Merge semantic and keyword scores per chunk as a weighted sum.

    A chunk found by only one search scores 0 in the other.

    Returns:
        Ranked results with scores clamped to [0, 1]
    """
    scores: Dict[str, Dict[str, float]] = {}
    chunks: Dict[str, EmbeddedChunk] = {}

    for result in semantic_results:
        scores[result.chunk.id] = {"semantic": result.similarity, "keyword": 0.0}
        chunks[result.chunk.id] = result.chunk
    for result in keyword_results:
        scores.setdefault(result.chunk.id, {"semantic": 0.0, "keyword": 0.0})["keyword"] = result.similarity
        chunks.setdefault(result.chunk.id, result.chunk)

    combined = [
        RetrievalResult(
            chunk=chunks[chunk_id],
            similarity=clamp_unit(s["semantic"] * semantic_weight + s["keyword"] * keyword_weight),
            rank=0,
        )
        for chunk_id, s in scores.items()
    ]
    return _rank(combined)


def corpus_fingerprint(corpus: List[EmbeddedChunk]) -> str:
    """Stable digest of chunk ids, embedding timestamps and dimensions."""
    digest = hashlib.sha256()
    for chunk in corpus:
        digest.update(f"{chunk.id}|{chunk.embedding_timestamp}|{len(chunk.embedding)}\n".encode("utf-8"))
    return digest.hexdigest()


class HybridRetriever:
    """Ranks chunks for a query using the embedding store, with a linear-scan fallback."""

    def __init__(
        self,
        embedding_service: EmbeddingService,
        store: EmbeddingStore,
        min_similarity_threshold: float = 0.3,
        log: logging.Logger = default_logger,
    ):
        """
        Initialize retriever.

        Args:
            embedding_service: Service used to embed queries
            store: Embedding store the corpus is loaded into
            min_similarity_threshold: Minimum semantic similarity for a hit (default: 0.3)
            log: Logger for retrieval events
        """
        self.embedding_service = embedding_service
        self.store = store
        self.min_similarity_threshold = min_similarity_threshold
        self.logger = log
        self._fingerprint: Optional[str] = None
        self._lock = asyncio.Lock()

    def _load_corpus(self, corpus: List[EmbeddedChunk]) -> None:
        """Replace the store contents with corpus and build the index, unless already loaded."""
        fingerprint = corpus_fingerprint(corpus)
        if fingerprint == self._fingerprint and self.store.get_index_status() == IndexStatus.READY:
            return

        self._fingerprint = None
        self.store.clear_all()
        result = self.store.insert_batch(DocumentEmbedding.from_embedded_chunk(chunk) for chunk in corpus)
        if result.failed:
            raise StoreError(f"{result.failed} of {len(corpus)} chunks could not be indexed: {result.errors[0]['error']}")
        self.store.build_index()
        self._fingerprint = fingerprint
        self.logger.debug(f"Loaded {len(corpus)} chunks into the embedding store")

    async def search(
        self,
        query: str,
        corpus: List[EmbeddedChunk],
        max_results: int = 5,
        semantic_weight: float = 0.7,
        keyword_weight: float = 0.3,
    ) -> List[RetrievalResult]:
        """
        Hybrid search over an embedded corpus.

        The indexed path ranks by semantic similarity from the store. When the
        store fails, a linear scan combines semantic and keyword scores. When
        the query cannot be embedded, only keyword scores are used.

        Args:
            query: Free-text query
            corpus: Embedded chunks to search
            max_results: Maximum number of results (default: 5)
            semantic_weight: Weight of the semantic score in the fallback (default: 0.7)
            keyword_weight: Weight of the keyword score in the fallback (default: 0.3)

        Returns:
            Results ranked 1..n by descending similarity

        Raises:
            InvalidLimitError: If max_results <= 0
            InvalidConfigError: If a weight is negative
        """
        if max_results <= 0:
            raise InvalidLimitError(f"max_results must be positive, got {max_results}")
        if semantic_weight < 0 or keyword_weight < 0:
            raise InvalidConfigError(
                f"Weights must not be negative (semantic={semantic_weight}, keyword={keyword_weight})"
            )
        if not corpus or not query.strip():
            return []

        start_time = time.perf_counter()

        try:
            query_vector = await self.embedding_service.embed_text(query)
        except EmbeddingError as e:
            self.logger.warning(f"Query embedding failed, using keyword search only: {str(e)}")
            RETRIEVAL_FALLBACKS.inc()
            keyword_results = keyword_search(query, corpus)
            return combine_search_results([], keyword_results, semantic_weight, keyword_weight)[:max_results]

        try:
            async with self._lock:
                self._load_corpus(corpus)
                hits = self.store.search_similar(
                    query_vector,
                    SearchOptions(
                        limit=max_results,
                        threshold=self.min_similarity_threshold,
                        distance_metric=DistanceMetric.COSINE,
                    ),
                )
            by_id = {chunk.id: chunk for chunk in corpus}
            results = _rank(
                [
                    RetrievalResult(chunk=by_id[hit.id], similarity=clamp_unit(hit.similarity), rank=0)
                    for hit in hits
                    if hit.id in by_id
                ]
            )
        except Exception as e:
            self.logger.warning(f"Vector store search failed, falling back to linear search: {str(e)}")
            RETRIEVAL_FALLBACKS.inc()
            self._fingerprint = None
            results = self._linear_hybrid_search(
                query, query_vector, corpus, max_results, semantic_weight, keyword_weight
            )

        self.logger.info(
            f"Hybrid search returned {len(results)} results",
            extra={
                "result_count": len(results),
                "similarity_scores": [round(r.similarity, 4) for r in results],
                "duration_ms": round((time.perf_counter() - start_time) * 1000, 2),
            },
        )
        return results

    def _semantic_scores(self, query_vector: List[float], corpus: List[EmbeddedChunk]) -> List[RetrievalResult]:
        results = []
        for chunk in corpus:
            if len(chunk.embedding) != len(query_vector):
                raise DimensionMismatchError(len(chunk.embedding), len(query_vector))
            similarity = cosine_similarity(query_vector, chunk.embedding)
            if similarity >= self.min_similarity_threshold:
                results.append(RetrievalResult(chunk=chunk, similarity=clamp_unit(similarity), rank=0))
        return _rank(results)

    def _linear_hybrid_search(
        self,
        query: str,
        query_vector: List[float],
        corpus: List[EmbeddedChunk],
        max_results: int,
        semantic_weight: float,
        keyword_weight: float,
    ) -> List[RetrievalResult]:
        semantic_results = self._semantic_scores(query_vector, corpus)
        keyword_results = keyword_search(query, corpus)
        combined = combine_search_results(semantic_results, keyword_results, semantic_weight, keyword_weight)
        return combined[:max_results]

    async def semantic_search(
        self, query: str, corpus: List[EmbeddedChunk], max_results: int = 5
    ) -> List[RetrievalResult]:
        """
        Pure cosine-similarity ranking by linear scan.

        Raises:
            InvalidLimitError: If max_results <= 0
            EmbeddingError: If the query cannot be embedded
        """
        if max_results <= 0:
            raise InvalidLimitError(f"max_results must be positive, got {max_results}")
        if not corpus or not query.strip():
            return []

        query_vector = await self.embedding_service.embed_text(query)
        results = self._semantic_scores(query_vector, corpus)[:max_results]
        self.logger.info(
            f"Semantic search returned {len(results)} results",
            extra={"result_count": len(results), "similarity_scores": [round(r.similarity, 4) for r in results]},
        )
        return results
