"""Embedding service: narrative text to fixed-dimension vectors.

Wraps a ChromaDB embedding function (the bundled all-MiniLM-L6-v2 ONNX model
by default). The model runs synchronously, so calls go through the default
executor under ``asyncio.wait_for``.

Contract:
- Input is truncated to ``settings.embedding_max_chars``
- One retry with a short backoff, then UpstreamUnavailableError
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Sequence

from chromadb.utils import embedding_functions

from discovery.config import settings
from discovery.models.errors import InvalidRequestError, UpstreamUnavailableError

logger = logging.getLogger(__name__)

EmbeddingFunction = Callable[[Sequence[str]], Sequence[Sequence[float]]]


class EmbeddingService:
    """Async facade over a synchronous embedding function."""

    def __init__(
        self,
        embedding_function: EmbeddingFunction | None = None,
        max_chars: int | None = None,
        timeout: float | None = None,
        retry_delay: float | None = None,
    ) -> None:
        self._fn = embedding_function or embedding_functions.DefaultEmbeddingFunction()
        self.max_chars = max_chars or settings.embedding_max_chars
        self.timeout = timeout if timeout is not None else settings.embedding_timeout_seconds
        self.retry_delay = retry_delay if retry_delay is not None else settings.embedding_retry_delay

    def prepare(self, text: str) -> str:
        text = (text or "").strip()
        if not text:
            raise InvalidRequestError("Cannot embed empty text.")
        return text[: self.max_chars]

    async def embed(self, text: str) -> list[float]:
        """Embed one text. Retries once before giving up."""
        prepared = self.prepare(text)
        loop = asyncio.get_running_loop()
        last_error: Exception | None = None
        for attempt in range(2):
            try:
                vectors = await asyncio.wait_for(
                    loop.run_in_executor(None, self._fn, [prepared]),
                    timeout=self.timeout,
                )
                return [float(x) for x in vectors[0]]
            except Exception as e:  # includes asyncio.TimeoutError
                last_error = e
            if attempt == 0:
                logger.warning("Embedding attempt failed (%s), retrying in %.1fs",
                               type(last_error).__name__, self.retry_delay)
                await asyncio.sleep(self.retry_delay)

        raise UpstreamUnavailableError(
            f"Embedding service unavailable: {type(last_error).__name__}: {last_error}"
        )
