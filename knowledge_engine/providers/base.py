"""
Embedding provider interface.

Concrete providers only implement :meth:`EmbeddingProvider._request_embeddings`;
retry with back-off, dimension validation and the bounded batch pool live
here so every provider behaves the same way.
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from typing import Optional

from ..errors import DimensionMismatchError, ProviderUnavailableError
from ..pool import CancelToken, check_token, map_bounded

logger = logging.getLogger(__name__)


class EmbeddingProvider(ABC):
    """
    Converts text into fixed-length float vectors.

    Parameters
    ----------
    model:
        Embedding model name.
    dimension:
        Expected vector length; any other length raises
        :class:`DimensionMismatchError`.
    concurrency:
        Maximum in-flight requests during :meth:`embed_batch`.
    max_retries:
        Extra attempts per request after a :class:`ProviderUnavailableError`.
    retry_delay:
        Base back-off in seconds; doubles on every retry.
    request_timeout:
        Per-request timeout in seconds (clipped to the token deadline).
    """

    name = "base"
    # Texts sent per request.  1 means one call per text, pipelined by the pool.
    batch_size = 1

    def __init__(
        self,
        model: str,
        dimension: int,
        concurrency: int = 4,
        max_retries: int = 2,
        retry_delay: float = 0.5,
        request_timeout: float = 30.0,
    ) -> None:
        self.model = model
        self.dimension = dimension
        self.concurrency = max(1, concurrency)
        self.max_retries = max(0, max_retries)
        self.retry_delay = retry_delay
        self.request_timeout = request_timeout

    # ── Subclass hook ──

    @abstractmethod
    def _request_embeddings(self, texts: list[str], timeout: float) -> list[list[float]]:
        """Perform one provider call for *texts*.

        Must raise :class:`ProviderUnavailableError` for transport-level or
        malformed-response failures.
        """

    def is_available(self) -> bool:
        """Cheap health probe.  Providers override where an endpoint exists."""
        return True

    # ── Public API ──

    def embed(self, text: str, token: Optional[CancelToken] = None) -> list[float]:
        """Embed a single text."""
        return self._embed_group([text], token)[0]

    def embed_batch(
        self, texts: list[str], token: Optional[CancelToken] = None
    ) -> list[list[float]]:
        """
        Embed many texts, preserving order.

        Texts are grouped into ``batch_size`` requests which are dispatched
        through :func:`map_bounded` with at most ``concurrency`` in flight.
        The first failure aborts the batch.
        """
        if not texts:
            return []
        groups = [
            texts[i: i + self.batch_size]
            for i in range(0, len(texts), self.batch_size)
        ]
        logger.debug(
            "[%s] Embedding %d text(s) in %d request(s), concurrency=%d",
            self.name, len(texts), len(groups), self.concurrency,
        )
        results = map_bounded(
            lambda group: self._embed_group(group, token),
            groups,
            concurrency=self.concurrency,
            token=token,
        )
        return [vec for group in results for vec in group]

    # ── Internals ──

    def _timeout(self, token: Optional[CancelToken]) -> float:
        remaining = token.remaining() if token is not None else None
        if remaining is None:
            return self.request_timeout
        return max(0.001, min(self.request_timeout, remaining))

    def _embed_group(
        self, texts: list[str], token: Optional[CancelToken]
    ) -> list[list[float]]:
        """One request with bounded retry and exponential back-off."""
        attempts = self.max_retries + 1
        for attempt in range(1, attempts + 1):
            check_token(token)
            try:
                vectors = self._request_embeddings(texts, self._timeout(token))
                break
            except ProviderUnavailableError as exc:
                if attempt >= attempts:
                    raise
                wait = self.retry_delay * (2 ** (attempt - 1))
                logger.warning(
                    "[%s] Embedding error (attempt %d/%d): %s; retrying in %.1fs",
                    self.name, attempt, attempts, exc, wait,
                )
                if token is not None:
                    token.sleep(wait)
                else:
                    time.sleep(wait)

        if len(vectors) != len(texts):
            raise ProviderUnavailableError(
                f"{self.name} returned {len(vectors)} embedding(s) for {len(texts)} text(s)"
            )
        for vec in vectors:
            if len(vec) != self.dimension:
                raise DimensionMismatchError(self.dimension, len(vec))
        return [[float(x) for x in vec] for vec in vectors]
