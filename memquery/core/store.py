"""
memquery Message Store (slim)

Message writes and lookups: add, get, list, soft-delete.
Database infra lives in db.py, search in retrieval.py.
"""

import json
import logging
import uuid
from datetime import datetime
from typing import Optional

from memquery.core.db import _db, get_embedding, serialize_embedding
from memquery.models import Message
from memquery.utils import load_metadata, to_db_timestamp

logger = logging.getLogger(__name__)

_MESSAGE_COLUMNS = "uuid, session_id, created_at, role, content, metadata, token_count"


def _row_to_message(row) -> Message:
    return Message(
        uuid=row["uuid"],
        session_id=row["session_id"],
        created_at=row["created_at"],
        role=row["role"],
        content=row["content"],
        metadata=load_metadata(row["metadata"]),
        token_count=row["token_count"] or 0,
    )


def add_message(
    session_id: str,
    role: str,
    content: str,
    metadata: Optional[dict] = None,
    token_count: int = 0,
    created_at: Optional[datetime] = None,
    embed: bool = True,
) -> str:
    """
    Store a message and (by default) its embedding.

    Args:
        session_id: Session the message belongs to
        role: Speaker role (user, assistant, system, ...)
        content: Message text
        metadata: Additional structured data, searchable with jsonpath filters
        token_count: Token count of the content
        created_at: Override the creation time (defaults to now, UTC)
        embed: Compute and store an embedding. Messages without one are only
            reachable through metadata-only searches.

    Returns:
        Message UUID
    """
    import memquery
    config = memquery.get_config()

    if not session_id:
        raise ValueError("session_id is required")
    if len(content) > config.max_content_length:
        content = content[:config.max_content_length]
    if len(role) > config.max_role_length:
        raise ValueError(f"role exceeds {config.max_role_length} chars")

    meta_json = None
    if metadata is not None:
        meta_json = json.dumps(metadata)
        if len(meta_json) > config.max_metadata_json_length:
            raise ValueError(
                f"Metadata JSON exceeds {config.max_metadata_json_length} chars ({len(meta_json)})"
            )

    # Compute embedding before opening the connection (network I/O, no DB needed)
    embedding = None
    if embed:
        embedding = get_embedding(content)
        if len(embedding) != config.embed_dims:
            raise ValueError(
                f"Embedding dimension mismatch: got {len(embedding)}d, "
                f"expected {config.embed_dims}d"
            )

    message_uuid = str(uuid.uuid4())

    with _db() as db:
        if created_at is None:
            db.execute("""
                INSERT INTO messages (uuid, session_id, role, content, metadata, token_count)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (message_uuid, session_id, role, content, meta_json, token_count))
        else:
            db.execute("""
                INSERT INTO messages (uuid, session_id, role, content, metadata, token_count, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (
                message_uuid, session_id, role, content, meta_json, token_count,
                to_db_timestamp(created_at),
            ))

        if embedding is not None:
            db.execute(
                "INSERT INTO message_embeddings (message_uuid, embedding) VALUES (?, vec_f32(?))",
                (message_uuid, serialize_embedding(embedding))
            )

        db.commit()

    logger.debug("Stored message %s in session %s", message_uuid, session_id)
    return message_uuid


def get_message(message_uuid: str, include_deleted: bool = False) -> Optional[Message]:
    """Get a single message by UUID."""
    query = f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE uuid = ?"
    if not include_deleted:
        query += " AND deleted_at IS NULL"

    with _db() as db:
        row = db.execute(query, (message_uuid,)).fetchone()

    return _row_to_message(row) if row else None


def get_session_messages(session_id: str, limit: Optional[int] = None) -> list[Message]:
    """Get live messages of a session, most recent first."""
    query = (
        f"SELECT {_MESSAGE_COLUMNS} FROM messages "
        "WHERE session_id = ? AND deleted_at IS NULL "
        "ORDER BY created_at DESC"
    )
    params: list = [session_id]

    if limit is not None:
        query += " LIMIT ?"
        params.append(limit)

    with _db() as db:
        rows = db.execute(query, params).fetchall()

    return [_row_to_message(row) for row in rows]


def delete_message(session_id: str, message_uuid: str) -> bool:
    """Soft-delete a message. Deleted messages never appear in search results."""
    with _db() as db:
        cursor = db.execute("""
            UPDATE messages
            SET deleted_at = CURRENT_TIMESTAMP, updated_at = CURRENT_TIMESTAMP
            WHERE uuid = ? AND session_id = ? AND deleted_at IS NULL
        """, (message_uuid, session_id))
        deleted = cursor.rowcount > 0
        db.commit()

    return deleted
