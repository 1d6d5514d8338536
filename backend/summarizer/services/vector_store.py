"""Embedding stores: a reference in-memory store and a Qdrant-backed store."""
import hashlib
import os
import time
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional

import numpy as np
from qdrant_client import QdrantClient
from qdrant_client.http import models
from qdrant_client.models import Distance, PointStruct, VectorParams

from summarizer.exceptions import (
    DatabaseClosedError,
    DimensionMismatchError,
    IndexNotReadyError,
    InvalidConfigError,
    InvalidLimitError,
    StoreError,
)
from summarizer.models.document import (
    BatchOperationResult,
    DistanceMetric,
    DocumentEmbedding,
    IndexStatus,
    SearchOptions,
    SearchResult,
    StoreStats,
    utc_now,
)
from summarizer.utils.logger import logger
from summarizer.utils.vector_math import score_matrix, score_vectors

ProgressCallback = Callable[[int], None]

BYTES_PER_FLOAT = 4


class EmbeddingStore(ABC):
    """
    Storage contract every embedding store satisfies.

    Stores are synchronous; the retriever and the embedding service only
    depend on this interface.
    """

    def __init__(self, vector_dimension: int = 384):
        if vector_dimension <= 0:
            raise InvalidConfigError(f"vector_dimension must be positive, got {vector_dimension}")
        self.vector_dimension = vector_dimension
        self._initialized = False
        self._closed = False
        self._index_status = IndexStatus.NOT_BUILT
        self._last_updated = utc_now()

    # Lifecycle

    def initialize(self) -> None:
        """Open the store. Calling it again on an open store is a no-op."""
        if self._closed:
            raise DatabaseClosedError()
        if not self._initialized:
            self._open()
            self._initialized = True

    def close(self) -> None:
        """Close the store. Every later operation raises DatabaseClosedError."""
        if not self._closed:
            self._release()
        self._closed = True
        self._initialized = False

    def is_initialized(self) -> bool:
        return self._initialized and not self._closed

    def _ensure_open(self) -> None:
        if self._closed:
            raise DatabaseClosedError()
        if not self._initialized:
            raise DatabaseClosedError("Database is not initialized. Call initialize() first.")

    def _open(self) -> None:
        pass

    def _release(self) -> None:
        pass

    # Validation

    def _check_dimension(self, vector: List[float]) -> None:
        if len(vector) != self.vector_dimension:
            raise DimensionMismatchError(self.vector_dimension, len(vector))

    def _touch(self) -> None:
        self._last_updated = utc_now()

    # Mutation

    def insert(self, embedding: DocumentEmbedding) -> None:
        """
        Insert or replace one embedding.

        Raises:
            DatabaseClosedError: If the store is not open
            DimensionMismatchError: If the vector has the wrong dimension
        """
        self._ensure_open()
        self._check_dimension(embedding.vector)
        self._store([self._stamp(embedding)])
        self._touch()

    def insert_batch(self, embeddings: Iterable[DocumentEmbedding]) -> BatchOperationResult:
        """
        Insert many embeddings, recording invalid ones instead of raising.

        Returns:
            BatchOperationResult with per-index errors and the duration in milliseconds
        """
        self._ensure_open()
        start_time = time.perf_counter()
        result = BatchOperationResult()
        valid: List[DocumentEmbedding] = []

        for index, embedding in enumerate(embeddings):
            try:
                self._check_dimension(embedding.vector)
                valid.append(self._stamp(embedding))
            except DimensionMismatchError as e:
                result.failed += 1
                result.errors.append({"index": index, "id": embedding.id, "error": str(e)})

        if valid:
            try:
                self._store(valid)
                result.successful = len(valid)
            except Exception as e:
                logger.error(f"Batch insert of {len(valid)} embeddings failed: {str(e)}", exc_info=True)
                result.failed += len(valid)
                result.errors.append({"index": None, "id": None, "error": str(e)})
            self._touch()

        result.duration = (time.perf_counter() - start_time) * 1000
        if result.failed:
            logger.warning(f"Batch insert finished with {result.failed} failures out of {result.failed + result.successful}")
        return result

    def update(self, embedding: DocumentEmbedding) -> None:
        """Replace an existing embedding. Unknown ids are ignored."""
        self._ensure_open()
        self._check_dimension(embedding.vector)
        existing = self.get_by_id(embedding.id)
        if existing is None:
            logger.debug(f"Update ignored for unknown embedding {embedding.id}")
            return
        self._store([replace(self._stamp(embedding), created_at=existing.created_at)])
        self._touch()

    @staticmethod
    def _stamp(embedding: DocumentEmbedding) -> DocumentEmbedding:
        now = utc_now()
        return replace(
            embedding,
            vector=list(embedding.vector),
            metadata=dict(embedding.metadata),
            created_at=embedding.created_at or now,
            updated_at=now,
        )

    @abstractmethod
    def _store(self, embeddings: List[DocumentEmbedding]) -> None:
        """Persist already validated embeddings (upsert semantics)."""

    @abstractmethod
    def delete(self, embedding_id: str) -> bool:
        """Delete one embedding. Returns False when the id is unknown."""

    @abstractmethod
    def delete_by_document(self, document_id: str) -> int:
        """Delete every embedding of a document. Returns the number deleted."""

    @abstractmethod
    def clear_all(self) -> None:
        """Remove every embedding and reset the index."""

    # Query

    @abstractmethod
    def get_by_id(self, embedding_id: str) -> Optional[DocumentEmbedding]:
        pass

    @abstractmethod
    def get_by_document_id(self, document_id: str) -> List[DocumentEmbedding]:
        pass

    @abstractmethod
    def get_all(self) -> List[DocumentEmbedding]:
        pass

    # Search

    def search_similar(self, query_vector: List[float], options: Optional[SearchOptions] = None) -> List[SearchResult]:
        """
        Find the stored vectors most similar to query_vector.

        Args:
            query_vector: Query embedding
            options: Limit, threshold, metric and filters (defaults: SearchOptions())

        Returns:
            Results sorted by descending similarity, at most options.limit long

        Raises:
            DatabaseClosedError: If the store is not open
            InvalidLimitError: If options.limit <= 0
            DimensionMismatchError: If the query has the wrong dimension
        """
        options = options or SearchOptions()
        self._ensure_open()
        if options.limit <= 0:
            raise InvalidLimitError(f"Search limit must be positive, got {options.limit}")
        self._check_dimension(query_vector)

        results = [r for r in self._search(query_vector, options) if r.similarity >= options.threshold]
        results.sort(key=lambda r: (-r.similarity, r.distance))
        return results[:options.limit]

    @abstractmethod
    def _search(self, query_vector: List[float], options: SearchOptions) -> List[SearchResult]:
        """Candidate results for an already validated query (threshold applied by the caller)."""

    # Index management

    @abstractmethod
    def build_index(self, progress_callback: Optional[ProgressCallback] = None) -> None:
        pass

    def rebuild_index(self, progress_callback: Optional[ProgressCallback] = None) -> None:
        self._ensure_open()
        self._index_status = IndexStatus.NOT_BUILT
        self.build_index(progress_callback)

    def get_index_status(self) -> IndexStatus:
        return self._index_status

    # Statistics

    def get_stats(self) -> StoreStats:
        """Counts plus estimated index and database sizes in bytes."""
        self._ensure_open()
        embeddings = self.get_all()
        index_size = len(embeddings) * self.vector_dimension * BYTES_PER_FLOAT
        return StoreStats(
            total_embeddings=len(embeddings),
            total_documents=len({e.document_id for e in embeddings}),
            database_size=int(index_size * 1.5),
            index_size=index_size,
            vector_dimension=self.vector_dimension,
            index_status=self._index_status,
            last_updated=self._last_updated,
        )


def _matches_filters(embedding: DocumentEmbedding, options: SearchOptions) -> bool:
    if options.document_ids is not None and embedding.document_id not in options.document_ids:
        return False
    if options.metadata_filter:
        for key, value in options.metadata_filter.items():
            if embedding.metadata.get(key) != value:
                return False
    return True


class InMemoryVectorStore(EmbeddingStore):
    """
    Brute-force reference store.

    build_index() stacks the vectors into a numpy matrix; any mutation drops
    the matrix and searches fall back to a per-vector scan until the next build.
    """

    def __init__(self, vector_dimension: int = 384):
        super().__init__(vector_dimension)
        self._embeddings: Dict[str, DocumentEmbedding] = {}
        self._index_ids: List[str] = []
        self._matrix: Optional[np.ndarray] = None
        self._norms: Optional[np.ndarray] = None

    def _release(self) -> None:
        self._embeddings.clear()
        self._drop_index()

    def _drop_index(self) -> None:
        self._index_ids = []
        self._matrix = None
        self._norms = None
        self._index_status = IndexStatus.NOT_BUILT

    def _store(self, embeddings: List[DocumentEmbedding]) -> None:
        for embedding in embeddings:
            self._embeddings[embedding.id] = embedding
        self._drop_index()

    def delete(self, embedding_id: str) -> bool:
        self._ensure_open()
        if self._embeddings.pop(embedding_id, None) is None:
            return False
        self._drop_index()
        self._touch()
        return True

    def delete_by_document(self, document_id: str) -> int:
        self._ensure_open()
        ids = [key for key, e in self._embeddings.items() if e.document_id == document_id]
        for embedding_id in ids:
            del self._embeddings[embedding_id]
        if ids:
            self._drop_index()
            self._touch()
        return len(ids)

    def clear_all(self) -> None:
        self._ensure_open()
        self._embeddings.clear()
        self._drop_index()
        self._touch()

    def get_by_id(self, embedding_id: str) -> Optional[DocumentEmbedding]:
        self._ensure_open()
        return self._embeddings.get(embedding_id)

    def get_by_document_id(self, document_id: str) -> List[DocumentEmbedding]:
        self._ensure_open()
        return [e for e in self._embeddings.values() if e.document_id == document_id]

    def get_all(self) -> List[DocumentEmbedding]:
        self._ensure_open()
        return list(self._embeddings.values())

    def build_index(self, progress_callback: Optional[ProgressCallback] = None) -> None:
        """
        Stack all vectors into a matrix with precomputed norms.

        Args:
            progress_callback: Optional callable receiving percentages 0..100
        """
        self._ensure_open()
        self._index_status = IndexStatus.BUILDING
        if progress_callback:
            progress_callback(0)

        try:
            ids = list(self._embeddings.keys())
            total = len(ids)
            matrix = np.zeros((total, self.vector_dimension), dtype=np.float64)
            step = max(1, total // 10)
            for row, embedding_id in enumerate(ids):
                matrix[row] = self._embeddings[embedding_id].vector
                if progress_callback and (row + 1) % step == 0 and row + 1 < total:
                    progress_callback(int((row + 1) / total * 100))

            self._index_ids = ids
            self._matrix = matrix
            self._norms = np.linalg.norm(matrix, axis=1)
            self._index_status = IndexStatus.READY
        except Exception as e:
            self._index_status = IndexStatus.ERROR
            logger.error(f"Index build failed: {str(e)}", exc_info=True)
            raise StoreError(f"Index build failed: {str(e)}") from e

        if progress_callback:
            progress_callback(100)
        logger.debug(f"In-memory index built over {len(self._index_ids)} embeddings")

    def _search(self, query_vector: List[float], options: SearchOptions) -> List[SearchResult]:
        if self._index_status == IndexStatus.READY and self._matrix is not None:
            return self._indexed_search(query_vector, options)

        results = []
        for embedding in self._embeddings.values():
            if not _matches_filters(embedding, options):
                continue
            similarity, distance = score_vectors(query_vector, embedding.vector, options.distance_metric)
            results.append(self._to_result(embedding, similarity, distance))
        return results

    def _indexed_search(self, query_vector: List[float], options: SearchOptions) -> List[SearchResult]:
        similarities, distances = score_matrix(query_vector, self._matrix, self._norms, options.distance_metric)
        results = []
        for row, embedding_id in enumerate(self._index_ids):
            embedding = self._embeddings[embedding_id]
            if not _matches_filters(embedding, options):
                continue
            results.append(self._to_result(embedding, float(similarities[row]), float(distances[row])))
        return results

    @staticmethod
    def _to_result(embedding: DocumentEmbedding, similarity: float, distance: float) -> SearchResult:
        return SearchResult(
            id=embedding.id,
            similarity=similarity,
            distance=distance,
            document_id=embedding.document_id,
            metadata=dict(embedding.metadata),
        )


# Named vector per metric so the metric can be chosen at query time
_QDRANT_VECTORS = {
    DistanceMetric.COSINE: ("cosine", Distance.COSINE),
    DistanceMetric.EUCLIDEAN: ("euclidean", Distance.EUCLID),
    DistanceMetric.DOT_PRODUCT: ("dot", Distance.DOT),
}
# Qdrant normalizes cosine vectors on write; this one keeps the raw values
_RAW_VECTOR = "euclidean"


class QdrantVectorStore(EmbeddingStore):
    """Embedding store backed by a Qdrant collection (local, in-memory or on disk)."""

    def __init__(
        self,
        location: str = ":memory:",
        collection_name: str = "document_embeddings",
        vector_dimension: int = 384,
        batch_size: int = 100,
        client: Optional[QdrantClient] = None,
    ):
        """
        Initialize Qdrant store settings (the client is opened by initialize()).

        Args:
            location: ":memory:" or a directory for persistent local storage
            collection_name: Collection holding the embeddings
            vector_dimension: Size of embedding vectors (default: 384 for all-MiniLM-L6-v2)
            batch_size: Maximum number of points per upsert
            client: Optional preconfigured client
        """
        super().__init__(vector_dimension)
        self.location = location
        self.collection_name = collection_name
        self.batch_size = batch_size
        self.client = client

    def _open(self) -> None:
        if self.client is None:
            if self.location == ":memory:":
                self.client = QdrantClient(location=":memory:")
            else:
                os.makedirs(self.location, exist_ok=True)
                self.client = QdrantClient(path=self.location)
        self._ensure_collection()
        logger.info(f"Qdrant store ready (collection={self.collection_name}, location={self.location})")

    def _release(self) -> None:
        if self.client is not None:
            self.client.close()
            self.client = None

    def _ensure_collection(self) -> None:
        """Create the collection if it doesn't exist."""
        if self.client.collection_exists(self.collection_name):
            return
        self.client.create_collection(
            collection_name=self.collection_name,
            vectors_config={
                name: VectorParams(size=self.vector_dimension, distance=distance)
                for name, distance in _QDRANT_VECTORS.values()
            },
        )
        logger.debug(f"Created Qdrant collection: {self.collection_name}")

    @staticmethod
    def _point_id(embedding_id: str) -> int:
        """Stable positive 63-bit integer id derived from the embedding id."""
        hash_bytes = hashlib.md5(embedding_id.encode("utf-8")).digest()[:8]
        return int.from_bytes(hash_bytes, byteorder="big") & 0x7FFFFFFFFFFFFFFF

    def _to_point(self, embedding: DocumentEmbedding) -> PointStruct:
        return PointStruct(
            id=self._point_id(embedding.id),
            vector={name: embedding.vector for name, _ in _QDRANT_VECTORS.values()},
            payload={
                "embedding_id": embedding.id,
                "document_id": embedding.document_id,
                "chunk_id": embedding.chunk_id,
                "metadata": embedding.metadata,
                "created_at": embedding.created_at.isoformat() if embedding.created_at else None,
                "updated_at": embedding.updated_at.isoformat() if embedding.updated_at else None,
            },
        )

    @staticmethod
    def _from_record(record) -> DocumentEmbedding:
        payload = record.payload or {}
        vector = record.vector[_RAW_VECTOR] if isinstance(record.vector, dict) else record.vector
        created_at = payload.get("created_at")
        updated_at = payload.get("updated_at")
        return DocumentEmbedding(
            id=payload.get("embedding_id", str(record.id)),
            document_id=payload.get("document_id", ""),
            chunk_id=payload.get("chunk_id", ""),
            vector=[float(v) for v in vector] if vector is not None else [],
            metadata=dict(payload.get("metadata") or {}),
            created_at=datetime.fromisoformat(created_at) if created_at else None,
            updated_at=datetime.fromisoformat(updated_at) if updated_at else None,
        )

    def _store(self, embeddings: List[DocumentEmbedding]) -> None:
        for start in range(0, len(embeddings), self.batch_size):
            batch = embeddings[start:start + self.batch_size]
            self.client.upsert(
                collection_name=self.collection_name,
                points=[self._to_point(e) for e in batch],
            )
        logger.debug(f"Upserted {len(embeddings)} embeddings into {self.collection_name}")

    def _document_filter(self, document_id: str) -> models.Filter:
        return models.Filter(
            must=[models.FieldCondition(key="document_id", match=models.MatchValue(value=document_id))]
        )

    def delete(self, embedding_id: str) -> bool:
        self._ensure_open()
        if self.get_by_id(embedding_id) is None:
            return False
        self.client.delete(
            collection_name=self.collection_name,
            points_selector=models.PointIdsList(points=[self._point_id(embedding_id)]),
        )
        self._touch()
        return True

    def delete_by_document(self, document_id: str) -> int:
        self._ensure_open()
        count = self.client.count(
            collection_name=self.collection_name,
            count_filter=self._document_filter(document_id),
            exact=True,
        ).count
        if count:
            self.client.delete(
                collection_name=self.collection_name,
                points_selector=models.FilterSelector(filter=self._document_filter(document_id)),
            )
            self._touch()
        return count

    def clear_all(self) -> None:
        self._ensure_open()
        self.client.delete_collection(collection_name=self.collection_name)
        self._ensure_collection()
        self._index_status = IndexStatus.NOT_BUILT
        self._touch()

    def get_by_id(self, embedding_id: str) -> Optional[DocumentEmbedding]:
        self._ensure_open()
        records = self.client.retrieve(
            collection_name=self.collection_name,
            ids=[self._point_id(embedding_id)],
            with_payload=True,
            with_vectors=[_RAW_VECTOR],
        )
        return self._from_record(records[0]) if records else None

    def _scroll(self, scroll_filter: Optional[models.Filter] = None) -> List[DocumentEmbedding]:
        embeddings = []
        offset = None
        while True:
            records, offset = self.client.scroll(
                collection_name=self.collection_name,
                scroll_filter=scroll_filter,
                limit=256,
                offset=offset,
                with_payload=True,
                with_vectors=[_RAW_VECTOR],
            )
            embeddings.extend(self._from_record(r) for r in records)
            if offset is None:
                return embeddings

    def get_by_document_id(self, document_id: str) -> List[DocumentEmbedding]:
        self._ensure_open()
        return self._scroll(self._document_filter(document_id))

    def get_all(self) -> List[DocumentEmbedding]:
        self._ensure_open()
        return self._scroll()

    def build_index(self, progress_callback: Optional[ProgressCallback] = None) -> None:
        """
        Mark the collection searchable.

        Qdrant maintains its HNSW graph on write; this checks the collection
        is reachable and flips the status to ready.
        """
        self._ensure_open()
        self._index_status = IndexStatus.BUILDING
        if progress_callback:
            progress_callback(0)
        try:
            self.client.get_collection(self.collection_name)
        except Exception as e:
            self._index_status = IndexStatus.ERROR
            logger.error(f"Qdrant collection {self.collection_name} unavailable: {str(e)}", exc_info=True)
            raise StoreError(f"Index build failed: {str(e)}") from e
        self._index_status = IndexStatus.READY
        if progress_callback:
            progress_callback(100)

    def _build_filter(self, options: SearchOptions) -> Optional[models.Filter]:
        conditions = []
        if options.document_ids is not None:
            conditions.append(
                models.FieldCondition(key="document_id", match=models.MatchAny(any=list(options.document_ids)))
            )
        for key, value in (options.metadata_filter or {}).items():
            conditions.append(models.FieldCondition(key=f"metadata.{key}", match=models.MatchValue(value=value)))
        return models.Filter(must=conditions) if conditions else None

    def _search(self, query_vector: List[float], options: SearchOptions) -> List[SearchResult]:
        if self._index_status != IndexStatus.READY:
            raise IndexNotReadyError(
                f"Index for collection {self.collection_name} is {self._index_status.value}; call build_index() first"
            )

        vector_name, _ = _QDRANT_VECTORS[options.distance_metric]
        response = self.client.query_points(
            collection_name=self.collection_name,
            query=list(query_vector),
            using=vector_name,
            query_filter=self._build_filter(options),
            limit=options.limit,
            with_payload=True,
            with_vectors=[_RAW_VECTOR],
        )

        results = []
        for point in response.points:
            embedding = self._from_record(point)
            # Qdrant scores differ per metric; report the same scale as the in-memory store
            similarity, distance = score_vectors(query_vector, embedding.vector, options.distance_metric)
            results.append(
                SearchResult(
                    id=embedding.id,
                    similarity=similarity,
                    distance=distance,
                    document_id=embedding.document_id,
                    metadata=embedding.metadata,
                )
            )
        return results


def create_vector_store(settings) -> EmbeddingStore:
    """
    Build the embedding store selected by settings.vector_store_backend.

    Returns:
        An initialized InMemoryVectorStore or QdrantVectorStore

    Raises:
        InvalidConfigError: If the backend name is unknown
    """
    backend = settings.vector_store_backend.lower()

    if backend == "memory":
        logger.info("Creating in-memory vector store")
        store = InMemoryVectorStore(vector_dimension=settings.vector_dimension)
    elif backend == "qdrant":
        logger.info(f"Creating Qdrant vector store at {settings.qdrant_location}")
        store = QdrantVectorStore(
            location=settings.qdrant_location,
            collection_name=settings.qdrant_collection,
            vector_dimension=settings.vector_dimension,
        )
    else:
        raise InvalidConfigError(
            f"Invalid vector_store_backend: {settings.vector_store_backend}. Must be 'memory' or 'qdrant'."
        )

    store.initialize()
    return store
