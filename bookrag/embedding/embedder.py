"""
Embedder with pluggable providers and LangSmith instrumentation
----------------------------------------------------------------
The pipeline only ever talks to `Embedder`, which wraps any object
satisfying the `EmbeddingProvider` protocol and adds:
  - Input validation (empty strings are rejected, never sent)
  - Transparent batching under the provider's request cap
  - Retry with bounded exponential backoff via tenacity
  - L2 normalisation, so cosine similarity == inner product
  - LangSmith run tracing for cost / latency observability

`OpenAIEmbeddingProvider` is the production adapter (text-embedding-3-small).
"""
from __future__ import annotations

import os
import time
import threading
from typing import Any, Optional, Protocol, Sequence, runtime_checkable

import numpy as np
from langsmith import traceable
from loguru import logger
from tenacity import (
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from bookrag.config import EmbeddingConfig
from bookrag.errors import EmbeddingProviderError, InvalidInputError

MODEL = "text-embedding-3-small"
DIMENSIONS = 1536          # text-embedding-3-small native dimensions
BATCH_SIZE = 512           # OpenAI allows up to 2048; 512 keeps requests < 1 MB
MAX_INPUT_TOKENS = 8191    # text-embedding-3-* context window


@runtime_checkable
class EmbeddingProvider(Protocol):
    """Capability interface: texts in, one vector per text out, same order."""

    model_id: str
    dimensions: int

    def embed(self, texts: list[str]) -> list[list[float]]:
        ...


class OpenAIEmbeddingProvider:
    """OpenAI Embeddings API adapter.  Maps SDK errors onto the bookrag taxonomy."""

    def __init__(
        self,
        model: str = MODEL,
        dimensions: int = DIMENSIONS,
        timeout_s: float = 30.0,
        client: Optional[Any] = None,
    ) -> None:
        import openai  # lazy import keeps import graph clean

        self.model_id = model
        self.dimensions = dimensions
        self._openai = openai
        self._client = client or openai.OpenAI(
            api_key=os.getenv("OPENAI_API_KEY"),
            timeout=timeout_s,
            max_retries=0,  # retries are owned by Embedder
        )
        self._enc = None

    def _token_count(self, text: str) -> int:
        if self._enc is None:
            import tiktoken

            self._enc = tiktoken.get_encoding("cl100k_base")
        return len(self._enc.encode(text))

    def embed(self, texts: list[str]) -> list[list[float]]:
        for i, text in enumerate(texts):
            # Every cl100k token spans at least one UTF-8 byte.
            if len(text.encode("utf-8")) <= MAX_INPUT_TOKENS:
                continue
            n_tokens = self._token_count(text)
            if n_tokens > MAX_INPUT_TOKENS:
                raise InvalidInputError(
                    f"Input {i} has {n_tokens} tokens; {self.model_id} accepts {MAX_INPUT_TOKENS}"
                )

        openai = self._openai
        try:
            response = self._client.embeddings.create(model=self.model_id, input=texts)
        except (
            openai.APITimeoutError,
            openai.APIConnectionError,
            openai.RateLimitError,
            openai.InternalServerError,
        ) as exc:
            raise EmbeddingProviderError(f"{type(exc).__name__}: {exc}") from exc
        except openai.APIStatusError as exc:
            # 400, 401, 403, 404 and the like: retrying cannot help
            raise InvalidInputError(f"{type(exc).__name__}: {exc}") from exc
        except openai.APIError as exc:
            raise EmbeddingProviderError(f"{type(exc).__name__}: {exc}") from exc

        logger.debug(f"[Embedder] API call: {len(texts)} texts, {response.usage.total_tokens} tokens")
        return [item.embedding for item in sorted(response.data, key=lambda x: x.index)]


class Embedder:
    """
    Generates L2-normalised embeddings through a provider.

    The model version tag is carried into every index payload so that
    vectors from different models never end up in one collection.
    """

    def __init__(
        self,
        provider: EmbeddingProvider,
        batch_size: int = BATCH_SIZE,
        max_attempts: int = 3,
        backoff_min_s: float = 2.0,
        backoff_max_s: float = 30.0,
    ) -> None:
        if batch_size <= 0:
            raise InvalidInputError(f"batch_size must be positive, got {batch_size}")
        self.provider = provider
        self.batch_size = batch_size
        self.max_attempts = max_attempts
        self.backoff_min_s = backoff_min_s
        self.backoff_max_s = backoff_max_s
        self.total_api_calls: int = 0
        self._calls_lock = threading.Lock()

    @property
    def model_version(self) -> str:
        return self.provider.model_id

    @property
    def dimensions(self) -> int:
        return self.provider.dimensions

    @traceable(name="embed_texts", run_type="embedding")
    def embed(self, texts: Sequence[str], model_id: Optional[str] = None) -> np.ndarray:
        """
        Embed strings and return an (N, dimensions) float32 array, same order.

        Raises:
            InvalidInputError:      an input is empty, or model_id does not match.
            EmbeddingProviderError: the provider kept failing after retries.
        """
        if model_id is not None and model_id != self.model_version:
            raise InvalidInputError(
                f"Embedder is bound to {self.model_version!r}, asked for {model_id!r}"
            )
        texts = list(texts)
        for i, text in enumerate(texts):
            if not isinstance(text, str) or not text.strip():
                raise InvalidInputError(f"Cannot embed empty text (position {i})")
        if not texts:
            return np.empty((0, self.dimensions), dtype=np.float32)

        rows: list[list[float]] = []
        for i in range(0, len(texts), self.batch_size):
            batch = texts[i: i + self.batch_size]
            vectors = self._embed_batch(batch)
            rows.extend(vectors)
            logger.debug(
                f"[Embedder] Batch {i // self.batch_size + 1} | {len(batch)} texts | "
                f"model={self.model_version}"
            )

        matrix = np.asarray(rows, dtype=np.float32)
        if matrix.ndim != 2 or matrix.shape[1] != self.dimensions:
            raise EmbeddingProviderError(
                f"Provider returned vectors of shape {matrix.shape}, expected (*, {self.dimensions})"
            )
        # L2-normalise so cosine sim == inner product
        norms = np.linalg.norm(matrix, axis=1, keepdims=True)
        norms = np.where(norms == 0, 1, norms)  # avoid div-by-zero
        return (matrix / norms).astype(np.float32)

    def embed_query(self, text: str) -> np.ndarray:
        """Embed a single query string. Returns shape (dimensions,)."""
        return self.embed([text])[0]

    def _embed_batch(self, texts: list[str]) -> list[list[float]]:
        """One provider call, retried on transient failure."""
        retrying = Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=1, min=self.backoff_min_s, max=self.backoff_max_s),
            retry=retry_if_exception_type(EmbeddingProviderError),
            reraise=True,
        )
        for attempt in retrying:
            with attempt:
                start = time.perf_counter()
                with self._calls_lock:
                    self.total_api_calls += 1
                vectors = self.provider.embed(texts)
                elapsed = time.perf_counter() - start
        if len(vectors) != len(texts):
            raise EmbeddingProviderError(
                f"Provider returned {len(vectors)} vectors for {len(texts)} texts"
            )
        logger.debug(f"[Embedder] {len(texts)} texts embedded in {elapsed:.2f}s")
        return vectors

    def usage_summary(self) -> dict:
        return {
            "model": self.model_version,
            "dimensions": self.dimensions,
            "total_api_calls": self.total_api_calls,
        }


def make_embedder(config: EmbeddingConfig) -> Embedder:
    """Production Embedder over the OpenAI provider, configured from settings."""
    provider = OpenAIEmbeddingProvider(
        model=config.model,
        dimensions=config.dimensions,
        timeout_s=config.timeout_s,
    )
    return Embedder(provider, batch_size=config.batch_size, max_attempts=config.max_attempts)
