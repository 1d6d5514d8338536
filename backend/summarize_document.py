"""Summarize a text file from the command line, optionally running a hybrid search over it."""
import argparse
import asyncio
import os
import sys
import uuid

from summarizer import __version__
from summarizer.config import PROCESSING_PRESETS, Settings
from summarizer.exceptions import SummarizerError
from summarizer.models.document import Document, DocumentMetadata, utc_now
from summarizer.models.facts import StyleGuide
from summarizer.services.chunker import TextChunker
from summarizer.services.embedding_service import EmbeddingService, create_embedder
from summarizer.services.llm_service import LLMService
from summarizer.services.retrieval_service import HybridRetriever
from summarizer.services.summarization_service import SummarizationService
from summarizer.services.vector_store import create_vector_store
from summarizer.utils.logger import logger
from summarizer.utils.text_cleaner import count_words
from summarizer.utils.tracer import initialize_tracing, shutdown_tracing


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Summarize a UTF-8 text document with a local LLM.")
    parser.add_argument("path", help="Path to the text file")
    parser.add_argument("--title", help="Document title (default: file name)")
    parser.add_argument("--model", help="Chat model override")
    parser.add_argument("--mode", choices=sorted(PROCESSING_PRESETS), help="Processing mode")
    parser.add_argument("--query", help="Also embed the document and print hybrid search results for this query")
    parser.add_argument("--chunk-size", type=int, help="Chunk size in characters for query embeddings")
    parser.add_argument("--overlap", type=int, help="Chunk overlap in characters for query embeddings")
    return parser.parse_args(argv)


def load_document(path: str, title: str = None) -> Document:
    """Read a text file into a Document."""
    with open(path, encoding="utf-8") as f:
        text = f.read()
    filename = os.path.basename(path)
    return Document(
        id=str(uuid.uuid4()),
        title=title or os.path.splitext(filename)[0],
        filename=filename,
        text=text,
        metadata=DocumentMetadata(
            file_size=os.path.getsize(path),
            file_type="text/plain",
            word_count=count_words(text),
            uploaded_at=utc_now().date().isoformat(),
        ),
    )


async def run(args: argparse.Namespace, settings: Settings) -> int:
    document = load_document(args.path, args.title)
    llm_service = LLMService(
        base_url=settings.ollama_base_url,
        chat_model=settings.chat_model,
        embedding_model=settings.embedding_model,
        request_timeout=settings.request_timeout_seconds,
        probe_timeout=settings.probe_timeout_seconds,
        embedding_timeout=settings.embedding_timeout_seconds,
    )

    try:
        summarizer = SummarizationService(llm_service, settings=settings)

        def report(current: int, total: int, status: str):
            print(f"[{current}/{total}] {status}", file=sys.stderr)

        result = await summarizer.summarize(document, StyleGuide(), on_progress=report, model_id=args.model)
        print(result.markdown_summary)

        stats = result.processing_stats
        print(
            f"\n---\npath={result.path} chunks={stats.total_chunks} ok={stats.successful_chunks} "
            f"failed={stats.failed_chunks} time={stats.processing_time:.0f}ms model={stats.model_used}",
            file=sys.stderr,
        )

        if args.query:
            embedding_service = EmbeddingService(
                create_embedder(settings, llm_service),
                chunker=TextChunker(
                    settings.processing.chunking.with_overrides(chunk_size=args.chunk_size, overlap=args.overlap)
                ),
                batch_size=settings.embedding_batch_size,
                max_concurrent=settings.max_concurrent_embeddings,
            )
            corpus = await embedding_service.generate_document_embeddings(document.id, document.text)
            dimension = len(corpus[0].embedding) if corpus else settings.vector_dimension
            store = create_vector_store(settings.model_copy(update={"vector_dimension": dimension}))
            try:
                retriever = HybridRetriever(embedding_service, store, settings.min_similarity_threshold)
                results = await retriever.search(
                    args.query,
                    corpus,
                    max_results=settings.max_results,
                    semantic_weight=settings.semantic_weight,
                    keyword_weight=settings.keyword_weight,
                )
            finally:
                store.close()

            print(f"\n## Results for: {args.query}\n")
            for hit in results:
                preview = " ".join(hit.chunk.text.split())[:200]
                print(f"{hit.rank}. ({hit.similarity:.3f}) [chunk {hit.chunk.chunk_index}] {preview}")
    finally:
        await llm_service.close()

    return 0


def main(argv=None) -> int:
    args = parse_args(argv)
    overrides = {"processing_mode": args.mode} if args.mode else {}
    settings = Settings(**overrides)

    tracer_provider = initialize_tracing(
        service_name="document-summarizer",
        service_version=__version__,
        otlp_endpoint=settings.otlp_endpoint or None,
        tracing_enabled=settings.tracing_enabled,
    )
    try:
        return asyncio.run(run(args, settings))
    except FileNotFoundError as e:
        logger.error(f"Input file not found: {e.filename}")
        return 1
    except SummarizerError as e:
        logger.error(f"Summarization failed: {str(e)}")
        return 1
    finally:
        shutdown_tracing(tracer_provider)


if __name__ == "__main__":
    sys.exit(main())
