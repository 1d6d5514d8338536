"""LLM service for an Ollama-compatible chat and embedding API."""
import time
from typing import Dict, List, Optional

import httpx

from summarizer.exceptions import (
    BackendError,
    BackendTimeoutError,
    BackendUnavailableError,
    ResponseParseError,
)
from summarizer.utils.logger import logger
from summarizer.utils.metrics import LLM_REQUEST_SECONDS, LLM_REQUESTS
from summarizer.utils.tracer import get_tracer

tracer = get_tracer(__name__)


class LLMService:
    """Service for interacting with the local LLM backend."""

    def __init__(
        self,
        base_url: str = "http://127.0.0.1:11434",
        chat_model: str = "llama3.1:8b-instruct-q4_K_M",
        embedding_model: str = "nomic-embed-text",
        request_timeout: float = 120.0,
        probe_timeout: float = 5.0,
        embedding_timeout: float = 30.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Initialize LLM service.

        Args:
            base_url: Backend base URL (without /api)
            chat_model: Default model for chat completions
            embedding_model: Default model for embeddings
            request_timeout: Timeout in seconds for generation calls
            probe_timeout: Timeout in seconds for the availability probe
            embedding_timeout: Timeout in seconds for embedding calls
            http_client: Optional preconfigured client (tests pass one with a mock transport)
        """
        self.base_url = base_url.rstrip("/")
        self.chat_model = chat_model
        self.embedding_model = embedding_model
        self.request_timeout = request_timeout
        self.probe_timeout = probe_timeout
        self.embedding_timeout = embedding_timeout
        self.client = http_client or httpx.AsyncClient(base_url=self.base_url, timeout=request_timeout)

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    async def _post_json(self, operation: str, path: str, payload: dict, timeout: float) -> dict:
        """
        POST a JSON payload and return the decoded body.

        Raises:
            BackendTimeoutError: If the backend does not answer in time
            BackendUnavailableError: On transport errors or non-2xx responses
            ResponseParseError: If the body is not JSON
        """
        start_time = time.perf_counter()
        outcome = "error"
        try:
            response = await self.client.post(self._url(path), json=payload, timeout=timeout)
            response.raise_for_status()
            body = response.json()
            outcome = "success"
            return body
        except httpx.TimeoutException as e:
            outcome = "timeout"
            logger.error(f"LLM backend timed out during {operation} after {timeout}s")
            raise BackendTimeoutError(
                f"LLM backend unresponsive: {operation} did not complete within {timeout}s"
            ) from e
        except httpx.HTTPStatusError as e:
            logger.error(f"LLM backend rejected {operation}: HTTP {e.response.status_code}")
            raise BackendUnavailableError(
                f"{operation} request failed: HTTP {e.response.status_code} {e.response.reason_phrase}"
            ) from e
        except httpx.RequestError as e:
            logger.error(f"LLM backend unreachable during {operation}: {str(e)}")
            raise BackendUnavailableError(f"{operation} request failed: {str(e)}") from e
        except ValueError as e:
            raise ResponseParseError(f"{operation} response is not valid JSON: {str(e)}") from e
        finally:
            LLM_REQUESTS.labels(operation=operation, outcome=outcome).inc()
            LLM_REQUEST_SECONDS.labels(operation=operation).observe(time.perf_counter() - start_time)

    async def chat(
        self, messages: List[Dict[str, str]], model: Optional[str] = None, timeout: Optional[float] = None
    ) -> str:
        """
        Run a non-streaming chat completion.

        Args:
            messages: Chat messages as {"role", "content"} dictionaries
            model: Optional model override
            timeout: Optional per-call timeout override in seconds

        Returns:
            The assistant message content
        """
        model_name = model or self.chat_model
        payload = {"model": model_name, "messages": messages, "stream": False}

        with tracer.start_as_current_span("llm.chat") as span:
            span.set_attribute("llm.model", model_name)
            span.set_attribute("llm.prompt_chars", sum(len(m.get("content", "")) for m in messages))

            body = await self._post_json("chat", "/api/chat", payload, timeout or self.request_timeout)

            try:
                content = body["message"]["content"]
            except (KeyError, TypeError) as e:
                raise ResponseParseError("chat response is missing message.content") from e
            if not isinstance(content, str):
                raise ResponseParseError("chat response message.content is not a string")

            span.set_attribute("llm.completion_chars", len(content))

        logger.debug(f"Chat completion received ({len(content)} chars)", extra={"model": model_name})
        return content

    async def generate_embedding(self, text: str, model: Optional[str] = None) -> List[float]:
        """
        Generate an embedding vector for text.

        Args:
            text: Text to embed
            model: Optional model override

        Returns:
            Embedding vector as a list of floats
        """
        model_name = model or self.embedding_model

        with tracer.start_as_current_span("llm.embedding") as span:
            span.set_attribute("llm.model", model_name)
            span.set_attribute("llm.prompt_chars", len(text))

            body = await self._post_json(
                "embedding", "/api/embeddings", {"model": model_name, "prompt": text}, self.embedding_timeout
            )

            embedding = body.get("embedding") if isinstance(body, dict) else None
            if not isinstance(embedding, list) or not embedding:
                raise ResponseParseError("embedding response is missing a non-empty embedding array")

            span.set_attribute("llm.embedding_dimension", len(embedding))

        return [float(value) for value in embedding]

    async def list_models(self) -> List[str]:
        """Names of the models the backend has installed."""
        try:
            response = await self.client.get(self._url("/api/tags"), timeout=self.probe_timeout)
            response.raise_for_status()
            body = response.json()
        except httpx.TimeoutException as e:
            raise BackendTimeoutError("LLM backend unresponsive while listing models") from e
        except httpx.HTTPError as e:
            raise BackendUnavailableError(f"Listing models failed: {str(e)}") from e
        except ValueError as e:
            raise ResponseParseError(f"Model list is not valid JSON: {str(e)}") from e

        models = (body.get("models") or []) if isinstance(body, dict) else None
        if not isinstance(models, list):
            raise ResponseParseError("model list response is missing a models array")

        return [model.get("name", "") for model in models if isinstance(model, dict)]

    async def is_available(self) -> bool:
        """Probe the backend. Never raises; any failure means unavailable."""
        try:
            await self.list_models()
            return True
        except (BackendError, ResponseParseError) as e:
            logger.warning(f"LLM backend not available: {str(e)}")
            return False

    async def close(self):
        """Close HTTP client."""
        await self.client.aclose()
