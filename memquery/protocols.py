"""
Provider protocols for dependency injection.

Consumers (e.g., your AI agent) implement these and pass them to memquery.init().
memquery never imports embedding libraries directly.
"""

from typing import Protocol, runtime_checkable


@runtime_checkable
class EmbedProvider(Protocol):
    """Provider for text embeddings (message storage and search queries)."""

    def embed(self, texts: list[str], input_type: str = "document") -> list[list[float]]:
        """
        Get one embedding vector per input text.

        Args:
            texts: The texts to embed
            input_type: "document" for stored messages, "query" for search text.
                Some models (e.g., Voyage, Qwen3-Embedding) format the two
                differently; providers that don't care can ignore it.

        Returns:
            Embedding vectors as lists of floats, in input order
        """
        ...
