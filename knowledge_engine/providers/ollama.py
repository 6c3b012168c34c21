import requests
from typing import List

from .base import EmbeddingProvider
from ..errors import ProviderUnavailableError


class OllamaProvider(EmbeddingProvider):
    """Embeddings from a local Ollama server (``nomic-embed-text`` by default)."""

    name = "ollama"
    batch_size = 1

    def __init__(self, base_url: str, model: str, dimension: int, **kwargs):
        super().__init__(model=model, dimension=dimension, **kwargs)
        # Derive the API root for endpoints like /api/embeddings
        if "/api/" in base_url:
            self._api_root = base_url.rsplit("/api/", 1)[0]
        else:
            self._api_root = base_url.rstrip("/")

    def _request_embeddings(self, texts: List[str], timeout: float) -> List[List[float]]:
        url = f"{self._api_root}/api/embeddings"
        vectors = []
        for text in texts:
            payload = {"model": self.model, "prompt": text}
            try:
                response = requests.post(url, json=payload, timeout=timeout)
                response.raise_for_status()
                data = response.json()
            except requests.exceptions.RequestException as e:
                raise ProviderUnavailableError(f"[Ollama] Embedding error: {e}") from e
            except ValueError as e:
                raise ProviderUnavailableError(f"[Ollama] Embedding parse error: {e}") from e
            embedding = data.get("embedding") if isinstance(data, dict) else None
            if not embedding:
                raise ProviderUnavailableError("[Ollama] Response carried no embedding")
            vectors.append(embedding)
        return vectors

    def is_available(self) -> bool:
        """True when Ollama answers and lists the configured model."""
        try:
            response = requests.get(f"{self._api_root}/api/tags", timeout=3)
            response.raise_for_status()
            models = response.json().get("models", [])
        except (requests.exceptions.RequestException, ValueError):
            return False
        return any((m.get("name") or "").startswith(self.model) for m in models)
