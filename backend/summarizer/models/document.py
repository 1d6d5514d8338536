"""Document, chunk and embedding data models."""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class DocumentMetadata:
    """File-level metadata captured at upload time."""

    file_size: int = 0
    file_type: str = "text/plain"
    word_count: Optional[int] = None
    uploaded_at: Optional[str] = None  # ISO date string


@dataclass(frozen=True)
class Document:
    """An ingested document. Owned by the caller and never mutated here."""

    id: str
    title: str
    filename: str
    text: str
    tags: List[str] = field(default_factory=list)
    metadata: DocumentMetadata = field(default_factory=DocumentMetadata)


@dataclass(frozen=True)
class TextChunk:
    """A contiguous slice of a document's text."""

    id: str
    document_id: str
    text: str
    start_index: int
    end_index: int
    chunk_index: int


@dataclass(frozen=True)
class EmbeddedChunk(TextChunk):
    """A chunk together with its embedding vector."""

    embedding: List[float] = field(default_factory=list)
    embedding_timestamp: str = ""

    @classmethod
    def from_chunk(cls, chunk: TextChunk, embedding: List[float], timestamp: Optional[str] = None) -> "EmbeddedChunk":
        return cls(
            id=chunk.id,
            document_id=chunk.document_id,
            text=chunk.text,
            start_index=chunk.start_index,
            end_index=chunk.end_index,
            chunk_index=chunk.chunk_index,
            embedding=list(embedding),
            embedding_timestamp=timestamp or utc_now().isoformat(),
        )


@dataclass
class DocumentEmbedding:
    """Index-resident form of an embedded chunk, owned by the embedding store."""

    id: str
    document_id: str
    chunk_id: str
    vector: List[float]
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_embedded_chunk(cls, chunk: EmbeddedChunk, document_title: Optional[str] = None) -> "DocumentEmbedding":
        created_at = None
        if chunk.embedding_timestamp:
            try:
                created_at = datetime.fromisoformat(chunk.embedding_timestamp)
            except ValueError:
                created_at = None
        return cls(
            id=chunk.id,
            document_id=chunk.document_id,
            chunk_id=chunk.id,
            vector=list(chunk.embedding),
            metadata={
                "chunk_text": chunk.text,
                "chunk_index": chunk.chunk_index,
                "document_title": document_title or chunk.document_id,
            },
            created_at=created_at,
        )


class DistanceMetric(str, Enum):
    COSINE = "cosine"
    EUCLIDEAN = "euclidean"
    DOT_PRODUCT = "dot_product"


class IndexStatus(str, Enum):
    NOT_BUILT = "not_built"
    BUILDING = "building"
    READY = "ready"
    ERROR = "error"


@dataclass
class SearchOptions:
    """Options for vector similarity search."""

    limit: int = 10
    threshold: float = 0.0
    distance_metric: DistanceMetric = DistanceMetric.COSINE
    document_ids: Optional[List[str]] = None
    metadata_filter: Optional[Dict[str, Any]] = None


@dataclass(frozen=True)
class SearchResult:
    """One hit from the embedding store."""

    id: str
    similarity: float
    distance: float
    document_id: str
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class RetrievalResult:
    """A ranked chunk returned by the hybrid retriever. Rank is 1-based."""

    chunk: EmbeddedChunk
    similarity: float
    rank: int


@dataclass(frozen=True)
class EmbeddingProgress:
    current: int
    total: int
    chunk_id: str
    percentage: int


@dataclass
class BatchOperationResult:
    """Outcome of a batch insert."""

    successful: int = 0
    failed: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)
    duration: float = 0.0  # milliseconds


@dataclass(frozen=True)
class StoreStats:
    """Statistics about an embedding store."""

    total_embeddings: int
    total_documents: int
    database_size: int
    index_size: int
    vector_dimension: int
    index_status: IndexStatus
    last_updated: datetime
