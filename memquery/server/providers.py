"""Embedding provider implementations for memquery-server."""

import logging

logger = logging.getLogger(__name__)


class VoyageEmbed:
    """Embedding provider using Voyage AI."""

    def __init__(self, api_key: str, model: str = "voyage-3-lite"):
        import voyageai
        self._client = voyageai.Client(api_key=api_key)
        self._model = model

    def embed(self, texts: list[str], input_type: str = "document") -> list[list[float]]:
        result = self._client.embed(texts, model=self._model, input_type=input_type)
        return result.embeddings


class OpenAIEmbed:
    """Embedding provider using OpenAI's API."""

    def __init__(self, api_key: str, model: str = "text-embedding-3-small", dims: int = 0):
        from openai import OpenAI
        self._client = OpenAI(api_key=api_key)
        self._model = model
        self._dims = dims

    def embed(self, texts: list[str], input_type: str = "document") -> list[list[float]]:
        kwargs = {"input": texts, "model": self._model}
        if self._dims:
            kwargs["dimensions"] = self._dims
        response = self._client.embeddings.create(**kwargs)
        # The API may return items out of order; index restores input order
        return [item.embedding for item in sorted(response.data, key=lambda d: d.index)]


def create_embed(provider: str, api_key: str = "", model: str = "", base_url: str = "", dims: int = 1024):
    """Factory for embedding providers."""
    if provider == "ollama":
        from memquery.providers.ollama import OllamaEmbed
        kwargs = {"dims": dims}
        if model:
            kwargs["model"] = model
        if base_url:
            kwargs["base_url"] = base_url
        return OllamaEmbed(**kwargs)
    elif provider == "voyage":
        return VoyageEmbed(api_key=api_key, model=model or "voyage-3-lite")
    elif provider == "openai":
        return OpenAIEmbed(api_key=api_key, model=model or "text-embedding-3-small", dims=dims)
    else:
        raise ValueError(f"Unknown embed provider: {provider}. Use 'ollama', 'voyage', or 'openai'.")
