"""Session message endpoints: store, list, get, delete, search."""

import json
import logging
from dataclasses import asdict
from typing import Any, Optional

from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel, Field, field_validator

from memquery.errors import (
    EmbeddingProviderError,
    InvalidQueryError,
    MalformedFilterError,
    MemorySearchError,
    SearchCancelledError,
)
from memquery.models import SearchQuery, SearchType

router = APIRouter()
logger = logging.getLogger(__name__)

MAX_METADATA_BYTES = 10_000  # 10KB cap on serialized metadata


def _check_metadata_size(v: dict | None) -> dict | None:
    if v is None:
        return v
    try:
        size = len(json.dumps(v, default=str))
    except RecursionError:
        raise ValueError("metadata is nested too deeply")
    if size > MAX_METADATA_BYTES:
        raise ValueError(f"metadata exceeds {MAX_METADATA_BYTES} byte limit")
    return v


# --- Request/Response models ---

class MessageRequest(BaseModel):
    role: str = Field(..., min_length=1, max_length=50, description="Speaker role (user, assistant, ...)")
    content: str = Field(..., min_length=1, max_length=50000, description="Message text")
    metadata: Optional[dict] = Field(None, description="Structured data, searchable with jsonpath filters")
    token_count: int = Field(0, ge=0, description="Token count of the content")

    _validate_metadata = field_validator("metadata")(_check_metadata_size)


class MessageResponse(BaseModel):
    uuid: str


class SearchRequest(BaseModel):
    text: str = Field("", max_length=2000, description="Search text")
    metadata: Optional[dict[str, Any]] = Field(
        None, description="Filter: {where: {jsonpath, and, or}, start_date, end_date}"
    )
    type: SearchType = Field(SearchType.SIMILARITY, description="similarity or mmr")
    mmr_lambda: float = Field(0.0, ge=0.0, le=1.0, description="0 = server default")

    _validate_metadata = field_validator("metadata")(_check_metadata_size)


def _search_error_status(exc: MemorySearchError) -> int:
    if isinstance(exc, (InvalidQueryError, MalformedFilterError)):
        return 400
    if isinstance(exc, EmbeddingProviderError):
        return 502
    if isinstance(exc, SearchCancelledError):
        return 499
    return 500


# --- Endpoints ---
# Routes use `def` (not `async def`) because they call synchronous memquery
# functions. FastAPI runs `def` routes in a threadpool, keeping the event
# loop free for other requests.

@router.post("/{session_id}/messages", response_model=MessageResponse)
def add(session_id: str, req: MessageRequest):
    """Store a message and its embedding."""
    from memquery.core.store import add_message

    try:
        message_uuid = add_message(
            session_id=session_id,
            role=req.role,
            content=req.content,
            metadata=req.metadata,
            token_count=req.token_count,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return MessageResponse(uuid=message_uuid)


@router.get("/{session_id}/messages")
def list_messages(session_id: str, limit: int = Query(50, ge=1, le=500)):
    """Most recent messages of a session."""
    from memquery.core.store import get_session_messages

    messages = get_session_messages(session_id, limit=limit)
    return {"messages": [asdict(m) for m in messages], "count": len(messages)}


@router.get("/{session_id}/messages/{message_uuid}")
def get(session_id: str, message_uuid: str):
    """Get a specific message."""
    from memquery.core.store import get_message

    message = get_message(message_uuid)
    if message is None or message.session_id != session_id:
        raise HTTPException(status_code=404, detail=f"Message {message_uuid} not found")
    return asdict(message)


@router.delete("/{session_id}/messages/{message_uuid}")
def delete(session_id: str, message_uuid: str):
    """Soft-delete a message."""
    from memquery.core.store import delete_message

    if not delete_message(session_id, message_uuid):
        raise HTTPException(status_code=404, detail=f"Message {message_uuid} not found")
    return {"deleted": True, "uuid": message_uuid}


@router.post("/{session_id}/search")
def search(
    session_id: str,
    req: SearchRequest,
    limit: int = Query(0, ge=0, le=200, description="Max results, 0 = server default"),
):
    """Search session messages by text similarity and/or metadata filter."""
    from memquery.core.retrieval import search_messages

    query = SearchQuery(
        text=req.text,
        metadata=req.metadata,
        search_type=req.type,
        mmr_lambda=req.mmr_lambda,
    )
    try:
        results = search_messages(session_id, query, limit=limit)
    except MemorySearchError as e:
        status = _search_error_status(e)
        if status >= 500:
            logger.error("Search failed for session %s", session_id, exc_info=True)
        raise HTTPException(status_code=status, detail=str(e))

    return {
        "results": [{"message": asdict(r.message), "dist": r.dist} for r in results],
        "count": len(results),
    }
