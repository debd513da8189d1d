"""
Tests for embedding model tracking in db_meta and init-time provider validation.

Verifies that:
1. The model is recorded on first init
2. Re-init with the same model succeeds
3. Re-init with a different model or dimension raises RuntimeError
4. A provider returning the wrong dimensionality is rejected at init
"""

import hashlib
import tempfile
from pathlib import Path

import pytest


class MockEmbedProvider:
    def __init__(self, dims=64):
        self.dims = dims

    def embed(self, texts: list[str], input_type: str = "document") -> list[list[float]]:
        vectors = []
        for text in texts:
            h = hashlib.sha256(text.encode()).digest()
            vec = [b / 255.0 for b in h]
            while len(vec) < self.dims:
                vec.extend(vec)
            vectors.append(vec[:self.dims])
        return vectors


def _init_memquery(db_path: Path, embed_model: str = "test-model", embed_dims: int = 64,
                   provider_dims: int | None = None):
    """Helper to init memquery with a given model name."""
    import memquery
    from memquery.config import MemqueryConfig

    # Reset global state so we can re-init
    memquery._config = None
    memquery._embed = None
    memquery._initialized = False

    config = MemqueryConfig(
        db_path=db_path,
        embed_dims=embed_dims,
        embed_model=embed_model,
    )

    memquery.init(config=config, embed=MockEmbedProvider(dims=provider_dims or embed_dims))


def _tmp_db() -> Path:
    return Path(tempfile.mkdtemp(prefix="memquery_embed_track_")) / "test.db"


class TestEmbedModelTracking:
    def test_model_recorded_on_first_init(self):
        """First init records the model in db_meta."""
        _init_memquery(_tmp_db(), embed_model="test-model-v1")

        from memquery.core.db import get_db
        db = get_db()
        row = db.execute("SELECT value FROM db_meta WHERE key = 'embed_model'").fetchone()
        assert row is not None
        assert row["value"] == "test-model-v1"

        dims_row = db.execute("SELECT value FROM db_meta WHERE key = 'embed_dims'").fetchone()
        assert dims_row is not None
        assert dims_row["value"] == "64"
        db.close()

    def test_migrations_recorded(self):
        _init_memquery(_tmp_db())

        from memquery.core.db import get_db
        db = get_db()
        versions = [r["version"] for r in db.execute(
            "SELECT version FROM schema_migrations ORDER BY version"
        )]
        db.close()
        assert versions == [0, 1, 2]

    def test_same_model_reinit_succeeds(self):
        """Re-init with the same model should work fine."""
        db_path = _tmp_db()
        _init_memquery(db_path, embed_model="test-model-v1")
        _init_memquery(db_path, embed_model="test-model-v1")

    def test_different_model_raises(self):
        """Re-init with a different model should raise RuntimeError."""
        db_path = _tmp_db()
        _init_memquery(db_path, embed_model="model-alpha")

        with pytest.raises(RuntimeError, match="Embedding model mismatch"):
            _init_memquery(db_path, embed_model="model-beta")

    def test_different_dims_raises(self):
        """Re-init with different dimensions should raise RuntimeError."""
        db_path = _tmp_db()
        _init_memquery(db_path, embed_model="same-model", embed_dims=64)

        with pytest.raises(RuntimeError, match="dimension mismatch"):
            _init_memquery(db_path, embed_model="same-model", embed_dims=128)


class TestInitValidation:
    def test_provider_dims_must_match_config(self):
        with pytest.raises(ValueError, match="dimension mismatch"):
            _init_memquery(_tmp_db(), embed_dims=64, provider_dims=32)

    @pytest.mark.parametrize("overrides", [
        {"embed_dims": 0},
        {"mmr_lambda": 0.0},
        {"mmr_lambda": 1.5},
        {"mmr_pool_multiplier": 0},
        {"default_search_limit": 500},
    ])
    def test_invalid_config_rejected(self, overrides):
        import memquery
        from memquery.config import MemqueryConfig

        config = MemqueryConfig(db_path=_tmp_db(), **overrides)
        with pytest.raises(ValueError):
            memquery.init(config=config, embed=MockEmbedProvider())

    def test_uninitialized_access_raises(self, monkeypatch):
        import memquery
        monkeypatch.setattr(memquery, "_initialized", False)
        with pytest.raises(RuntimeError, match="not initialized"):
            memquery.get_config()
