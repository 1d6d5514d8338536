"""Pytest configuration and fixtures."""
import shutil
import tempfile
from unittest.mock import AsyncMock, Mock

import pytest

from summarizer.config import Settings
from summarizer.models.document import Document, DocumentMetadata, EmbeddedChunk
from summarizer.models.facts import StyleGuide, ToneSettings
from summarizer.services.llm_service import LLMService

SAMPLE_TRANSCRIPT = (
    "Today the instructor walks through breathing techniques for public speaking. "
    "The first technique is box breathing, which calms nerves before a talk. "
    "Students practise pausing between sentences to slow their delivery. "
    "The session closes with a discussion of how posture affects voice projection. "
)


@pytest.fixture
def temp_dir():
    """Create a temporary directory for tests."""
    temp_path = tempfile.mkdtemp()
    yield temp_path
    shutil.rmtree(temp_path)


@pytest.fixture
def settings():
    """Settings isolated from any local .env file."""
    return Settings(_env_file=None, retry_delay_seconds=0.0)


@pytest.fixture
def style_guide():
    return StyleGuide(
        instructions_md="Write warmly and address the reader directly.",
        tone_settings=ToneSettings(formality=30, enthusiasm=70, technicality=40),
        keywords=["breathing", "confidence"],
    )


@pytest.fixture
def sample_text():
    return SAMPLE_TRANSCRIPT * 4


@pytest.fixture
def make_document():
    """Factory for documents of arbitrary text."""

    def _make(text: str, doc_id: str = "doc-1", title: str = "Public Speaking 101") -> Document:
        return Document(
            id=doc_id,
            title=title,
            filename="speaking.txt",
            text=text,
            metadata=DocumentMetadata(file_size=len(text), word_count=len(text.split())),
        )

    return _make


@pytest.fixture
def mock_llm_service():
    """Mock LLM service that is reachable and answers every chat with a fixed string."""
    service = Mock(spec=LLMService)
    service.is_available = AsyncMock(return_value=True)
    service.chat = AsyncMock(return_value="# Summary\n\n## Synopsis\n\nA summary.")
    service.generate_embedding = AsyncMock(return_value=[0.1, 0.2, 0.3])
    service.close = AsyncMock()
    return service


@pytest.fixture
def make_embedded_chunk():
    """Factory for embedded chunks with hand-picked vectors."""

    def _make(index: int, text: str, embedding, doc_id: str = "doc-1") -> EmbeddedChunk:
        return EmbeddedChunk(
            id=f"{doc_id}-chunk-{index}",
            document_id=doc_id,
            text=text,
            start_index=index * 100,
            end_index=index * 100 + len(text),
            chunk_index=index,
            embedding=list(embedding),
            embedding_timestamp="2024-01-01T00:00:00+00:00",
        )

    return _make


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Keep tests independent of the developer's environment."""
    for name in ("PROCESSING_MODE", "VECTOR_STORE_BACKEND", "EMBEDDING_BACKEND", "EMBEDDING_MODEL_PATH"):
        monkeypatch.delenv(name, raising=False)
