"""Search request and result types."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class SearchType(str, Enum):
    SIMILARITY = "similarity"
    MMR = "mmr"


@dataclass(frozen=True)
class SearchQuery:
    """
    A single memory search request.

    At least one of ``text`` or ``metadata`` must be non-empty. ``limit == 0``
    means the configured default limit; ``mmr_lambda == 0`` with an MMR search
    means the configured default lambda (0.5 unless overridden).
    """

    text: str = ""
    metadata: Optional[dict[str, Any]] = None
    search_type: SearchType = SearchType.SIMILARITY
    mmr_lambda: float = 0.0
    limit: int = 0


@dataclass
class Message:
    uuid: str
    session_id: str
    created_at: str
    role: str
    content: str
    metadata: Optional[dict[str, Any]] = None
    token_count: int = 0


@dataclass
class SearchResult:
    """
    A matched message and its similarity score.

    ``dist`` is the sign-flipped inner product between the query and message
    embeddings (larger = more similar), or None when no distance was computed.
    ``embedding`` is populated only for MMR searches.
    """

    message: Message
    dist: Optional[float] = None
    embedding: Optional[list[float]] = field(default=None, repr=False)
