"""Prometheus collectors for backend calls, retrieval and summarization."""
from prometheus_client import Counter, Histogram

LLM_REQUESTS = Counter(
    "summarizer_llm_requests_total",
    "Requests sent to the LLM/embedding backend",
    ["operation", "outcome"],
)

LLM_REQUEST_SECONDS = Histogram(
    "summarizer_llm_request_seconds",
    "Latency of LLM/embedding backend requests",
    ["operation"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30, 60, 120),
)

EMBEDDINGS_GENERATED = Counter(
    "summarizer_embeddings_generated_total",
    "Chunk embeddings generated",
)

RETRIEVAL_FALLBACKS = Counter(
    "summarizer_retrieval_fallbacks_total",
    "Hybrid searches answered by the linear-scan fallback",
)

FACT_EXTRACTIONS = Counter(
    "summarizer_fact_extraction_total",
    "Per-chunk fact extraction outcomes",
    ["outcome"],
)

SUMMARIZATION_PATHS = Counter(
    "summarizer_summarization_path_total",
    "Summarization runs by the path that produced the result",
    ["path"],
)
