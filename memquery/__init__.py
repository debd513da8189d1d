"""
memquery: semantic memory search for AI agents.

Finds stored messages by free text and/or a metadata filter, scores them by
vector similarity, and optionally diversifies the page with Maximal Marginal
Relevance.

Usage:
    import memquery
    from memquery.config import MemqueryConfig
    from memquery.models import SearchQuery

    config = MemqueryConfig(db_path=Path("data/my.db"))
    memquery.init(config, embed="ollama")

    from memquery.core import add_message, search_messages
    add_message("session-1", "user", "The deadline moved to Friday")
    results = search_messages("session-1", SearchQuery(text="project deadline"))
"""

import logging
import math
import threading

from memquery.config import MemqueryConfig
from memquery.protocols import EmbedProvider

__version__ = "0.1.0"

_log = logging.getLogger(__name__)

_config: MemqueryConfig | None = None
_embed: EmbedProvider | None = None
_initialized: bool = False
_init_lock = threading.Lock()

_PROVIDER_SHORTCUTS: dict[str, type] = {}


def _get_provider_class(name: str) -> type:
    """Lazy-load provider classes to avoid import cost when not used."""
    if not _PROVIDER_SHORTCUTS:
        from memquery.providers.ollama import OllamaEmbed
        _PROVIDER_SHORTCUTS["ollama"] = OllamaEmbed
    cls = _PROVIDER_SHORTCUTS.get(name)
    if cls is None:
        raise ValueError(
            f"Unknown embed provider shortcut {name!r}. "
            f"Available: {', '.join(sorted(_PROVIDER_SHORTCUTS))}"
        )
    return cls


def init(
    config: MemqueryConfig,
    embed: "EmbedProvider | str",
    *,
    embed_model: str = "",
    embed_base_url: str = "",
) -> None:
    """
    Initialize memquery with configuration and an embedding provider.

    Must be called before using any memquery functionality.

    Args:
        config: Database path, embedding dimensions, search tuning parameters
        embed: Provider for text embeddings, or a shortcut string (e.g. "ollama")
        embed_model: Override the default model when using a shortcut
        embed_base_url: Override the default base URL when using a shortcut
    """
    global _config, _embed, _initialized

    config.validate()

    # Resolve string shortcut to provider instance
    if isinstance(embed, str):
        cls = _get_provider_class(embed)
        kwargs: dict = {"dims": config.embed_dims}
        if embed_model:
            kwargs["model"] = embed_model
        if embed_base_url:
            kwargs["base_url"] = embed_base_url
        embed = cls(**kwargs)

    with _init_lock:
        _config = config
        _embed = embed
        _initialized = True

    # Validate embedding dimensions and normalization
    _validate_embed(embed, config)

    # Initialize database schema (outside lock, init_db does its own DB locking)
    from memquery.core.db import init_db
    init_db()


def _validate_embed(embed: EmbedProvider, config: MemqueryConfig) -> None:
    """Check that the provider returns vectors matching config expectations."""
    try:
        vectors = embed.embed(["memquery validation"])
    except Exception as exc:
        raise RuntimeError(
            f"Embedding provider failed validation call: {exc}"
        ) from exc

    if len(vectors) != 1:
        raise ValueError(
            f"Embedding provider returned {len(vectors)} vectors for 1 input text"
        )

    vec = vectors[0]
    if len(vec) != config.embed_dims:
        raise ValueError(
            f"Embedding dimension mismatch: provider returned {len(vec)}d "
            f"but config.embed_dims={config.embed_dims}. "
            f"Either change config.embed_dims or fix the provider."
        )

    # Inner-product scores are only comparable across messages for unit vectors
    norm = math.sqrt(sum(x * x for x in vec))
    if abs(norm - 1.0) > 0.05:
        _log.warning(
            "Embedding vector is not L2-normalized (norm=%.4f). "
            "Inner-product similarity favours long vectors, search ranking "
            "may degrade.",
            norm,
        )


def get_config() -> MemqueryConfig:
    """Get the current config. Raises if not initialized."""
    if not _initialized or _config is None:
        raise RuntimeError("memquery not initialized. Call memquery.init() first.")
    return _config


def get_embed() -> EmbedProvider:
    """Get the embedding provider. Raises if not initialized."""
    if not _initialized or _embed is None:
        raise RuntimeError("memquery not initialized. Call memquery.init() first.")
    return _embed
