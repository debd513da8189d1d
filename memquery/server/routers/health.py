"""Health and stats endpoints."""

import logging

from fastapi import APIRouter, Depends

from memquery.server.auth import require_auth

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("/health")
def health():
    """Health check: DB accessible."""
    from memquery.core.db import _db

    try:
        with _db() as db:
            db.execute("SELECT 1").fetchone()
        return {"status": "healthy"}
    except Exception:
        logger.exception("Health check failed")
        return {"status": "unhealthy"}


@router.get("/stats", dependencies=[Depends(require_auth)])
def stats():
    """Message and embedding counts."""
    import memquery
    from memquery.core.db import _db

    with _db() as db:
        total_messages = db.execute(
            "SELECT COUNT(*) FROM messages WHERE deleted_at IS NULL"
        ).fetchone()[0]
        total_deleted = db.execute(
            "SELECT COUNT(*) FROM messages WHERE deleted_at IS NOT NULL"
        ).fetchone()[0]
        total_sessions = db.execute(
            "SELECT COUNT(DISTINCT session_id) FROM messages WHERE deleted_at IS NULL"
        ).fetchone()[0]
        total_embeddings = db.execute(
            "SELECT COUNT(*) FROM message_embeddings"
        ).fetchone()[0]
        dims_row = db.execute(
            "SELECT vec_length(embedding) FROM message_embeddings LIMIT 1"
        ).fetchone()

    config = memquery.get_config()
    return {
        "messages": {
            "total_active": total_messages,
            "total_deleted": total_deleted,
            "sessions": total_sessions,
        },
        "embeddings": {
            "total": total_embeddings,
            "model": config.embed_model,
            "dims": dims_row[0] if dims_row else config.embed_dims,
        },
    }
