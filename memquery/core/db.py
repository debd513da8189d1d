"""
memquery Database Infrastructure

Connection management, schema initialization, migrations, embedding model
tracking, and embedding helpers. All other core modules import from here for
DB access.
"""

import logging
import sqlite3
import struct
import threading
from contextlib import contextmanager
from typing import Callable, Optional

from memquery.errors import EmbeddingProviderError, SearchCancelledError

logger = logging.getLogger(__name__)


def _apply_pragmas(db: sqlite3.Connection):
    """Apply standard SQLite pragmas for safety and concurrency."""
    db.execute("PRAGMA journal_mode=WAL")
    db.execute("PRAGMA busy_timeout=5000")
    db.execute("PRAGMA foreign_keys=ON")


def _get_db_path():
    """Get the configured database path."""
    import memquery
    return memquery.get_config().db_path


def _get_embed_dims():
    """Get the configured embedding dimensions."""
    import memquery
    return memquery.get_config().embed_dims


def _unpack_float32(blob: bytes) -> tuple[float, ...]:
    """Inverse of sqlite_vec.serialize_float32."""
    return struct.unpack(f"{len(blob) // 4}f", blob)


def _negative_inner_product(a: Optional[bytes], b: Optional[bytes]) -> Optional[float]:
    """
    SQL function vec_negative_inner_product(a, b): -(a . b) over float32 blobs.

    Same convention as pgvector's <#> operator. NULL in, NULL out, so messages
    without a stored embedding get a NULL distance.
    """
    if a is None or b is None:
        return None
    va = _unpack_float32(a)
    vb = _unpack_float32(b)
    if len(va) != len(vb):
        raise ValueError(f"vector dimension mismatch: {len(va)} != {len(vb)}")
    return -sum(x * y for x, y in zip(va, vb))


def get_db() -> sqlite3.Connection:
    """Get database connection with sqlite-vec loaded and the inner-product function registered.

    NOTE: Each call opens a new connection and loads sqlite-vec. Functions use
    _db() context manager for auto-close.
    """
    import sqlite_vec

    db = sqlite3.connect(str(_get_db_path()))
    db.row_factory = sqlite3.Row
    _apply_pragmas(db)

    db.enable_load_extension(True)
    sqlite_vec.load(db)
    db.enable_load_extension(False)

    db.create_function(
        "vec_negative_inner_product", 2, _negative_inner_product, deterministic=True
    )

    return db


@contextmanager
def _db():
    """Context manager for database connections, ensures close on exception."""
    db = get_db()
    try:
        yield db
    finally:
        db.close()


def _ensure_migration_table(db: sqlite3.Connection):
    """Create the schema_migrations tracking table if it doesn't exist."""
    db.execute("""
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version INTEGER PRIMARY KEY,
            description TEXT NOT NULL,
            applied_at TEXT DEFAULT CURRENT_TIMESTAMP
        )
    """)
    db.commit()


def run_migration(db: sqlite3.Connection, version: int, description: str, migrate_fn: Callable[[sqlite3.Connection], None]):
    """
    Run a schema migration if it hasn't been applied yet.

    Checks schema_migrations for the version. If not present, runs migrate_fn
    inside a transaction and records the version. If already applied, skips silently.

    Args:
        db: Open database connection (with sqlite-vec loaded)
        version: Integer migration version (must be unique, monotonically increasing)
        description: Human-readable description of what this migration does
        migrate_fn: Callable that takes a db connection and performs the migration
    """
    existing = db.execute(
        "SELECT version FROM schema_migrations WHERE version = ?", (version,)
    ).fetchone()
    if existing:
        return

    logger.info(f"Running migration {version}: {description}")
    try:
        migrate_fn(db)
        db.execute(
            "INSERT INTO schema_migrations (version, description) VALUES (?, ?)",
            (version, description)
        )
        db.commit()
        logger.info(f"Migration {version} applied successfully")
    except Exception:
        db.rollback()
        logger.error(f"Migration {version} failed, rolled back", exc_info=True)
        raise


def _check_embed_model(db: sqlite3.Connection):
    """
    Record the embedding model and dimensions on first init; refuse to reuse a
    database built with a different model or dimension afterwards.
    """
    import memquery
    config = memquery.get_config()
    expected = {"embed_model": config.embed_model, "embed_dims": str(config.embed_dims)}

    rows = db.execute(
        "SELECT key, value FROM db_meta WHERE key IN ('embed_model', 'embed_dims')"
    ).fetchall()
    recorded = {row["key"]: row["value"] for row in rows}

    if "embed_model" in recorded and recorded["embed_model"] != expected["embed_model"]:
        raise RuntimeError(
            f"Embedding model mismatch: database was built with "
            f"{recorded['embed_model']!r} but config.embed_model={config.embed_model!r}. "
            f"Stored embeddings are not comparable across models."
        )
    if "embed_dims" in recorded and recorded["embed_dims"] != expected["embed_dims"]:
        raise RuntimeError(
            f"Embedding dimension mismatch: database was built with "
            f"{recorded['embed_dims']}d vectors but config.embed_dims={config.embed_dims}."
        )

    for key, value in expected.items():
        if key not in recorded:
            db.execute("INSERT INTO db_meta (key, value) VALUES (?, ?)", (key, value))
    db.commit()


def init_db():
    """Initialize database schema."""
    db = get_db()
    try:
        db.execute("""
            CREATE TABLE IF NOT EXISTS messages (
                uuid TEXT PRIMARY KEY,
                session_id TEXT NOT NULL,
                role TEXT NOT NULL,
                content TEXT NOT NULL,
                metadata TEXT,
                token_count INTEGER NOT NULL DEFAULT 0,
                created_at TEXT DEFAULT CURRENT_TIMESTAMP,
                updated_at TEXT DEFAULT CURRENT_TIMESTAMP,
                deleted_at TEXT
            )
        """)

        # Packed float32 vectors (sqlite-vec format), one per message
        db.execute("""
            CREATE TABLE IF NOT EXISTS message_embeddings (
                message_uuid TEXT PRIMARY KEY,
                embedding BLOB NOT NULL,
                created_at TEXT DEFAULT CURRENT_TIMESTAMP,
                FOREIGN KEY (message_uuid) REFERENCES messages(uuid) ON DELETE CASCADE
            )
        """)

        db.execute(
            "CREATE INDEX IF NOT EXISTS idx_messages_session_created "
            "ON messages(session_id, created_at)"
        )
        db.commit()

        # --- Migration tracking and schema migrations ---
        _ensure_migration_table(db)

        # Version 0: Mark the baseline as tracked
        run_migration(db, 0, "Baseline schema", lambda _db: None)

        # Version 1: Embedding model tracking
        def _migrate_db_meta(db: sqlite3.Connection):
            db.execute("""
                CREATE TABLE IF NOT EXISTS db_meta (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                )
            """)

        run_migration(db, 1, "Embedding model tracking (db_meta)", _migrate_db_meta)

        # Version 2: Partial index for live (not soft-deleted) messages
        def _migrate_live_index(db: sqlite3.Connection):
            db.execute("""
                CREATE INDEX IF NOT EXISTS idx_messages_live
                ON messages(session_id, created_at)
                WHERE deleted_at IS NULL
            """)

        run_migration(db, 2, "Partial index on live messages", _migrate_live_index)

        _check_embed_model(db)
    finally:
        db.close()

    # Set restrictive file permissions on the database (owner read/write only).
    import os
    db_path = _get_db_path()
    try:
        os.chmod(db_path, 0o600)
        # WAL and SHM files too, if they exist
        for suffix in ("-wal", "-shm"):
            wal_path = str(db_path) + suffix
            if os.path.exists(wal_path):
                os.chmod(wal_path, 0o600)
    except OSError:
        logger.debug("Could not set restrictive permissions on database files")


# ============================================================================
# EMBEDDING HELPERS
# ============================================================================

def _check_cancelled(cancel: Optional[threading.Event], stage: str):
    if cancel is not None and cancel.is_set():
        raise SearchCancelledError(f"search cancelled during {stage}")


def get_embedding(text: str) -> list[float]:
    """Get embedding vector for a stored message via the configured EmbedProvider."""
    import memquery
    return memquery.get_embed().embed([text], input_type="document")[0]


def resolve_query_embedding(text: str, cancel: Optional[threading.Event] = None) -> list[float]:
    """
    Get the embedding vector for search text.

    The provider must return exactly one non-empty vector of the configured
    dimensionality. Cancellation is checked before and after the provider call.
    """
    import memquery

    _check_cancelled(cancel, "query embedding")
    embed = memquery.get_embed()
    expected_dims = memquery.get_config().embed_dims

    try:
        vectors = embed.embed([text], input_type="query")
    except Exception as exc:
        raise EmbeddingProviderError(f"failed to embed query: {exc}") from exc

    _check_cancelled(cancel, "query embedding")

    if vectors is None or len(vectors) != 1:
        count = 0 if vectors is None else len(vectors)
        raise EmbeddingProviderError(
            f"embedding provider returned {count} vectors for 1 query text"
        )

    vector = list(vectors[0])
    if not vector:
        raise EmbeddingProviderError("embedding provider returned an empty vector")
    if len(vector) != expected_dims:
        raise EmbeddingProviderError(
            f"embedding provider returned {len(vector)}d vector, "
            f"expected {expected_dims}d (config.embed_dims)"
        )
    return vector


def serialize_embedding(embedding: list[float]) -> bytes:
    """Convert embedding to binary format for sqlite-vec."""
    from sqlite_vec import serialize_float32
    return serialize_float32(embedding)


def deserialize_embedding(blob: bytes) -> list[float]:
    """Decode a stored float32 blob back to the exact stored values."""
    return list(_unpack_float32(blob))
