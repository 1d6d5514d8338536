"""Tests for the embedding stores."""
import os

import pytest

from summarizer.exceptions import (
    DatabaseClosedError,
    DimensionMismatchError,
    IndexNotReadyError,
    InvalidConfigError,
    InvalidLimitError,
)
from summarizer.models.document import DistanceMetric, DocumentEmbedding, IndexStatus, SearchOptions
from summarizer.services.vector_store import InMemoryVectorStore, QdrantVectorStore, create_vector_store


def make_embedding(embedding_id, vector, document_id="doc-1", **metadata):
    return DocumentEmbedding(
        id=embedding_id,
        document_id=document_id,
        chunk_id=embedding_id,
        vector=list(vector),
        metadata=metadata,
    )


def seed(store):
    store.insert(make_embedding("a", [1.0, 0.0, 0.0], kind="intro"))
    store.insert(make_embedding("b", [0.9, 0.1, 0.0], kind="body"))
    store.insert(make_embedding("c", [0.0, 1.0, 0.0], document_id="doc-2", kind="body"))
    store.build_index()


@pytest.fixture(params=["memory", "qdrant"])
def store(request):
    """An initialized 3-dimensional store of each kind."""
    if request.param == "memory":
        vector_store = InMemoryVectorStore(vector_dimension=3)
    else:
        vector_store = QdrantVectorStore(location=":memory:", collection_name="test_embeddings", vector_dimension=3)
    vector_store.initialize()
    yield vector_store
    vector_store.close()


class TestLifecycle:
    """Tests for initialize/close behaviour."""

    def test_uninitialized_store_rejects_operations(self):
        store = InMemoryVectorStore(vector_dimension=3)
        assert not store.is_initialized()
        with pytest.raises(DatabaseClosedError):
            store.get_all()

    def test_closed_store_rejects_operations(self, store):
        store.close()
        assert not store.is_initialized()
        with pytest.raises(DatabaseClosedError):
            store.insert(make_embedding("a", [1.0, 0.0, 0.0]))
        with pytest.raises(DatabaseClosedError):
            store.search_similar([1.0, 0.0, 0.0])
        with pytest.raises(DatabaseClosedError):
            store.initialize()

    def test_invalid_dimension(self):
        with pytest.raises(InvalidConfigError):
            InMemoryVectorStore(vector_dimension=0)

    def test_factory(self, settings):
        store = create_vector_store(settings)
        assert isinstance(store, InMemoryVectorStore)
        assert store.is_initialized()
        store.close()

    def test_factory_unknown_backend(self, settings):
        with pytest.raises(InvalidConfigError):
            create_vector_store(settings.model_copy(update={"vector_store_backend": "faiss"}))


class TestMutation:
    """Tests for insert, update and delete."""

    def test_insert_and_get(self, store):
        store.insert(make_embedding("a", [1.0, 2.0, 3.0], chunk_index=0))
        stored = store.get_by_id("a")

        assert stored.vector == [1.0, 2.0, 3.0]
        assert stored.metadata == {"chunk_index": 0}
        assert stored.created_at is not None
        assert stored.updated_at is not None
        assert store.get_by_id("missing") is None

    def test_insert_wrong_dimension(self, store):
        with pytest.raises(DimensionMismatchError):
            store.insert(make_embedding("a", [1.0, 0.0]))

    def test_insert_batch_records_failures(self, store):
        result = store.insert_batch(
            [
                make_embedding("a", [1.0, 0.0, 0.0]),
                make_embedding("bad", [1.0]),
                make_embedding("b", [0.0, 1.0, 0.0]),
            ]
        )

        assert result.successful == 2
        assert result.failed == 1
        assert result.errors[0]["index"] == 1
        assert result.errors[0]["id"] == "bad"
        assert result.duration >= 0
        assert {e.id for e in store.get_all()} == {"a", "b"}

    def test_update_unknown_is_noop(self, store):
        store.update(make_embedding("ghost", [1.0, 0.0, 0.0]))
        assert store.get_by_id("ghost") is None

    def test_update_keeps_created_at(self, store):
        store.insert(make_embedding("a", [1.0, 0.0, 0.0]))
        created_at = store.get_by_id("a").created_at

        store.update(make_embedding("a", [0.0, 0.0, 1.0]))
        updated = store.get_by_id("a")

        assert updated.vector == [0.0, 0.0, 1.0]
        assert updated.created_at == created_at
        assert updated.updated_at >= created_at

    def test_delete(self, store):
        seed(store)
        assert store.delete("a") is True
        assert store.delete("a") is False
        assert store.get_by_id("a") is None

    def test_delete_by_document(self, store):
        seed(store)
        assert store.delete_by_document("doc-1") == 2
        assert store.delete_by_document("doc-1") == 0
        assert [e.id for e in store.get_all()] == ["c"]
        assert [e.id for e in store.get_by_document_id("doc-2")] == ["c"]

    def test_clear_all(self, store):
        seed(store)
        store.clear_all()
        assert store.get_all() == []
        assert store.get_index_status() == IndexStatus.NOT_BUILT


class TestSearch:
    """Tests for search_similar."""

    def test_cosine_ranking(self, store):
        seed(store)
        results = store.search_similar([1.0, 0.0, 0.0], SearchOptions(limit=3))

        assert [r.id for r in results][:2] == ["a", "b"]
        assert results[0].similarity == pytest.approx(1.0)
        similarities = [r.similarity for r in results]
        assert similarities == sorted(similarities, reverse=True)
        assert all(0.0 <= s <= 1.0 for s in similarities)

    def test_threshold_and_limit(self, store):
        seed(store)
        results = store.search_similar([1.0, 0.0, 0.0], SearchOptions(limit=10, threshold=0.5))
        assert {r.id for r in results} == {"a", "b"}

        assert len(store.search_similar([1.0, 0.0, 0.0], SearchOptions(limit=1))) == 1

    def test_euclidean_similarity(self, store):
        seed(store)
        results = store.search_similar(
            [0.0, 1.0, 0.0], SearchOptions(limit=3, distance_metric=DistanceMetric.EUCLIDEAN)
        )

        assert results[0].id == "c"
        for result in results:
            assert result.similarity == pytest.approx(1.0 / (1.0 + result.distance))

    def test_dot_product_clamped(self, store):
        seed(store)
        results = store.search_similar(
            [2.0, 0.0, 0.0], SearchOptions(limit=3, distance_metric=DistanceMetric.DOT_PRODUCT)
        )
        assert all(0.0 <= r.similarity <= 1.0 for r in results)
        assert results[0].id in ("a", "b")

    def test_document_and_metadata_filters(self, store):
        seed(store)
        by_document = store.search_similar([1.0, 0.0, 0.0], SearchOptions(limit=10, document_ids=["doc-2"]))
        assert [r.id for r in by_document] == ["c"]

        by_metadata = store.search_similar([1.0, 0.0, 0.0], SearchOptions(limit=10, metadata_filter={"kind": "body"}))
        assert {r.id for r in by_metadata} == {"b", "c"}

    def test_invalid_limit(self, store):
        seed(store)
        with pytest.raises(InvalidLimitError):
            store.search_similar([1.0, 0.0, 0.0], SearchOptions(limit=0))

    def test_query_dimension_mismatch(self, store):
        seed(store)
        with pytest.raises(DimensionMismatchError):
            store.search_similar([1.0, 0.0])

    def test_query_against_384_dimension_index(self):
        store = InMemoryVectorStore(vector_dimension=384)
        store.initialize()
        store.insert(make_embedding("a", [0.1] * 384))
        store.build_index()

        with pytest.raises(DimensionMismatchError):
            store.search_similar([1.0, 2.0, 3.0], SearchOptions(limit=5))

    def test_memory_store_searches_without_index(self):
        store = InMemoryVectorStore(vector_dimension=3)
        store.initialize()
        store.insert(make_embedding("a", [1.0, 0.0, 0.0]))

        assert store.get_index_status() == IndexStatus.NOT_BUILT
        assert [r.id for r in store.search_similar([1.0, 0.0, 0.0])] == ["a"]

    def test_qdrant_search_requires_index(self):
        store = QdrantVectorStore(location=":memory:", vector_dimension=3)
        store.initialize()
        store.insert(make_embedding("a", [1.0, 0.0, 0.0]))

        with pytest.raises(IndexNotReadyError):
            store.search_similar([1.0, 0.0, 0.0])
        store.close()


class TestIndexAndStats:
    """Tests for index status and statistics."""

    def test_build_index_progress(self, store):
        for i in range(25):
            store.insert(make_embedding(f"e{i}", [1.0, float(i), 0.0]))

        progress = []
        store.build_index(progress.append)

        assert progress[0] == 0
        assert progress[-1] == 100
        assert progress == sorted(progress)
        assert store.get_index_status() == IndexStatus.READY

    def test_mutation_resets_memory_index(self):
        store = InMemoryVectorStore(vector_dimension=3)
        store.initialize()
        seed(store)
        assert store.get_index_status() == IndexStatus.READY

        store.insert(make_embedding("d", [0.0, 0.0, 1.0]))
        assert store.get_index_status() == IndexStatus.NOT_BUILT

        store.rebuild_index()
        assert store.get_index_status() == IndexStatus.READY

    def test_stats(self, store):
        seed(store)
        stats = store.get_stats()

        assert stats.total_embeddings == 3
        assert stats.total_documents == 2
        assert stats.vector_dimension == 3
        assert stats.index_size == 3 * 3 * 4
        assert stats.database_size == int(stats.index_size * 1.5)
        assert stats.index_status == IndexStatus.READY


def test_qdrant_persists_to_disk(temp_dir):
    location = os.path.join(temp_dir, "qdrant")
    store = QdrantVectorStore(location=location, vector_dimension=3)
    store.initialize()
    store.insert(make_embedding("a", [1.0, 0.0, 0.0], chunk_index=0))
    store.close()

    reopened = QdrantVectorStore(location=location, vector_dimension=3)
    reopened.initialize()
    assert reopened.get_by_id("a").metadata == {"chunk_index": 0}
    assert reopened.get_index_status() == IndexStatus.NOT_BUILT
    reopened.close()
