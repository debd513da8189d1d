"""
memquery configuration.

All paths, model names, and tuning parameters are set here.
No hardcoded values in the rest of the package.
"""

from dataclasses import dataclass
from pathlib import Path


@dataclass
class MemqueryConfig:
    """Configuration for the memquery search core."""

    # Database
    db_path: Path

    # Embedding
    embed_dims: int = 1024
    embed_model: str = "qwen3-embedding:8b"  # recorded in DB to prevent model mismatch

    # Search limits
    default_search_limit: int = 10
    max_search_limit: int = 200

    # MMR reranking. lambda: 1.0 = pure relevance, 0.0 = pure diversity.
    # The pool multiplier controls how many candidates are fetched per result slot.
    mmr_lambda: float = 0.5
    mmr_pool_multiplier: int = 2

    # Store input limits
    max_content_length: int = 50_000
    max_role_length: int = 50
    max_metadata_json_length: int = 10_000

    def validate(self) -> None:
        """Reject settings the search core cannot work with."""
        if self.embed_dims < 1:
            raise ValueError(f"embed_dims must be positive, got {self.embed_dims}")
        if not 0.0 < self.mmr_lambda <= 1.0:
            raise ValueError(f"mmr_lambda must be in (0, 1], got {self.mmr_lambda}")
        if self.mmr_pool_multiplier < 1:
            raise ValueError(
                f"mmr_pool_multiplier must be >= 1, got {self.mmr_pool_multiplier}"
            )
        if not 1 <= self.default_search_limit <= self.max_search_limit:
            raise ValueError(
                f"default_search_limit must be between 1 and max_search_limit "
                f"({self.max_search_limit}), got {self.default_search_limit}"
            )
