"""
OpenAI-compatible embedding provider: works with OpenAI and any service
that implements the ``/embeddings`` endpoint of the OpenAI API.

Requires the optional ``openai`` extra.
"""

import logging
from typing import List

from .base import EmbeddingProvider
from ..errors import ProviderUnavailableError

logger = logging.getLogger(__name__)


def _get_openai_client(api_key: str, base_url: str):
    """Return an openai.OpenAI client, raising ImportError if not installed."""
    try:
        import openai  # type: ignore
    except ImportError as exc:
        raise ImportError(
            "openai package is required for the openai embedding provider. "
            "Install it with: pip install 'knowledge_engine[openai]'"
        ) from exc
    if not api_key:
        raise EnvironmentError(
            "OPENAI_API_KEY environment variable is not set."
        )
    return openai.OpenAI(api_key=api_key, base_url=base_url)


class OpenAIProvider(EmbeddingProvider):

    name = "openai"
    batch_size = 100

    def __init__(self, api_key: str, base_url: str, model: str, dimension: int,
                 client=None, **kwargs):
        super().__init__(model=model, dimension=dimension, **kwargs)
        self._client = client or _get_openai_client(api_key, base_url)

    def _request_embeddings(self, texts: List[str], timeout: float) -> List[List[float]]:
        import openai  # type: ignore

        try:
            response = self._client.embeddings.create(
                model=self.model,
                input=texts,
                timeout=timeout,
            )
        except openai.OpenAIError as exc:
            raise ProviderUnavailableError(f"[OpenAI] Embedding error: {exc}") from exc
        items = sorted(response.data, key=lambda item: item.index)
        return [item.embedding for item in items]

    def is_available(self) -> bool:
        import openai  # type: ignore

        try:
            self._client.models.retrieve(self.model, timeout=3)
            return True
        except openai.OpenAIError as exc:
            logger.debug("[OpenAI] Availability probe failed: %s", exc)
            return False
