"""
Embedding providers.

The engine treats the provider as an external collaborator: anything that
subclasses :class:`EmbeddingProvider` can be plugged in.
"""

from .base import EmbeddingProvider
from .ollama import OllamaProvider

__all__ = ["EmbeddingProvider", "OllamaProvider", "create_provider"]


def create_provider(config) -> EmbeddingProvider:
    """Build the provider named by ``config.EMBEDDING_PROVIDER``."""
    common = dict(
        model=config.EMBEDDING_MODEL,
        dimension=config.VECTOR_DIM,
        concurrency=config.EMBED_CONCURRENCY,
        max_retries=config.EMBED_MAX_RETRIES,
        retry_delay=config.EMBED_RETRY_DELAY,
        request_timeout=config.REQUEST_TIMEOUT,
    )
    name = config.EMBEDDING_PROVIDER
    if name == "ollama":
        return OllamaProvider(base_url=config.OLLAMA_BASE_URL, **common)
    if name == "openai":
        from .openai_client import OpenAIProvider
        return OpenAIProvider(
            api_key=config.OPENAI_API_KEY,
            base_url=config.OPENAI_BASE_URL,
            **common,
        )
    raise ValueError(f"Unknown embedding provider: {name!r} (expected 'ollama' or 'openai')")
