"""
End-to-end tests for search_messages against a real SQLite database.

Uses a keyed mock embedder so distances are known in advance:

    "project deadline" -> [1, 0, 0, 0]   (query)
    m1 "deadline is Friday"  [1, 0, 0, 0]     dist 1.0
    m2 "deadline slipped"    [0.8, 0.6, 0, 0] dist 0.8
    m3 "lunch plans"         [0, 0, 1, 0]     dist 0.0
    m4 "grocery list"        [0, 0, 0, 1]     dist 0.0
    m5 "unembedded note"     (no embedding)   dist None
"""

import hashlib
import math
import struct
import tempfile
import threading
from datetime import datetime
from pathlib import Path
from unittest.mock import patch

import pytest

from memquery.errors import (
    EmbeddingProviderError,
    InvalidQueryError,
    MalformedFilterError,
    SearchCancelledError,
    StorageExecutionError,
)
from memquery.models import Message, SearchQuery, SearchResult, SearchType


# ============================================================================
# MOCK PROVIDER
# ============================================================================

KEYED_VECTORS = {
    "project deadline": [1.0, 0.0, 0.0, 0.0],
    "deadline is Friday": [1.0, 0.0, 0.0, 0.0],
    "deadline slipped": [0.8, 0.6, 0.0, 0.0],
    "lunch plans": [0.0, 0.0, 1.0, 0.0],
    "grocery list": [0.0, 0.0, 0.0, 1.0],
    "alpha": [0.9, 0.4, 0.0, 0.0],
    "alpha again": [0.85, 0.45, 0.0, 0.0],
    "something else": [0.7, -0.6, 0.0, 0.0],
    "precise values": [1e-7, 0.999999, 0.0, 0.0012345678],
}


class KeyedEmbedProvider:
    """Known vectors for known texts, a hashed unit vector for anything else."""

    def __init__(self, dims=4):
        self.dims = dims
        self.calls: list[tuple[list[str], str]] = []

    def _vector(self, text: str) -> list[float]:
        if text in KEYED_VECTORS:
            return list(KEYED_VECTORS[text])
        h = hashlib.sha256(text.encode()).digest()
        vec = [b / 255.0 + 0.01 for b in h[:self.dims]]
        norm = math.sqrt(sum(x * x for x in vec))
        return [x / norm for x in vec]

    def embed(self, texts: list[str], input_type: str = "document") -> list[list[float]]:
        self.calls.append((list(texts), input_type))
        return [self._vector(t) for t in texts]


class FailingEmbedProvider:
    def embed(self, texts, input_type="document"):
        raise ConnectionError("provider unreachable")


class WrongDimsEmbedProvider:
    def embed(self, texts, input_type="document"):
        return [[1.0, 0.0] for _ in texts]


class CancellingEmbedProvider:
    """Sets the cancel event while the embedding request is in flight."""

    def __init__(self, event: threading.Event):
        self.event = event

    def embed(self, texts, input_type="document"):
        self.event.set()
        return [[1.0, 0.0, 0.0, 0.0] for _ in texts]


# ============================================================================
# FIXTURES
# ============================================================================

@pytest.fixture(scope="module")
def seeded():
    """Initialized memquery with two sessions of known messages."""
    import memquery
    from memquery.config import MemqueryConfig
    from memquery.core.store import add_message

    tmpdir = tempfile.mkdtemp(prefix="memquery_search_")
    config = MemqueryConfig(
        db_path=Path(tmpdir) / "search.db",
        embed_dims=4,
        embed_model="keyed-test",
        default_search_limit=10,
    )
    provider = KeyedEmbedProvider(dims=4)
    memquery.init(config=config, embed=provider)

    ids = {
        "m1": add_message("s1", "user", "deadline is Friday",
                          metadata={"tag": "work", "status": "open"},
                          created_at=datetime(2024, 1, 1, 9, 0)),
        "m2": add_message("s1", "assistant", "deadline slipped",
                          metadata={"tag": "work"},
                          created_at=datetime(2024, 1, 2, 9, 0)),
        "m3": add_message("s1", "user", "lunch plans",
                          metadata={"status": "open"},
                          created_at=datetime(2024, 1, 3, 9, 0)),
        "m4": add_message("s1", "user", "grocery list",
                          created_at=datetime(2024, 1, 4, 9, 0)),
        "m5": add_message("s1", "user", "unembedded note",
                          metadata={"tag": "work"},
                          created_at=datetime(2024, 1, 5, 9, 0), embed=False),
        "other": add_message("s2", "user", "deadline is Friday",
                             metadata={"tag": "work", "status": "open"},
                             created_at=datetime(2024, 1, 1, 9, 0)),
        "a": add_message("mmr", "user", "alpha", created_at=datetime(2024, 2, 1)),
        "b": add_message("mmr", "user", "alpha again", created_at=datetime(2024, 2, 2)),
        "c": add_message("mmr", "user", "something else", created_at=datetime(2024, 2, 3)),
        "precise": add_message("precision", "user", "precise values",
                               created_at=datetime(2024, 3, 1)),
    }
    names = {uuid: name for name, uuid in ids.items()}
    yield {"ids": ids, "names": names, "provider": provider}


def _names(seeded, results: list[SearchResult]) -> list[str]:
    return [seeded["names"][r.message.uuid] for r in results]


def _search(session_id, limit=0, cancel=None, **query):
    from memquery.core.retrieval import search_messages
    return search_messages(session_id, SearchQuery(**query), limit=limit, cancel=cancel)


# ============================================================================
# SIMILARITY SEARCH
# ============================================================================

class TestSimilaritySearch:
    def test_sorted_by_similarity(self, seeded):
        results = _search("s1", text="project deadline")
        # m3/m4 tie at 0.0 and fall back to newest first; m5 has no distance
        assert _names(seeded, results) == ["m1", "m2", "m4", "m3"]
        assert results[0].dist == pytest.approx(1.0)
        assert results[1].dist == pytest.approx(0.8, abs=1e-6)

    def test_limit(self, seeded):
        results = _search("s1", limit=2, text="project deadline")
        assert _names(seeded, results) == ["m1", "m2"]

    def test_query_limit_used_when_argument_is_zero(self, seeded):
        from memquery.core.retrieval import search_messages
        results = search_messages("s1", SearchQuery(text="project deadline", limit=1))
        assert _names(seeded, results) == ["m1"]

    def test_argument_limit_overrides_query_limit(self, seeded):
        from memquery.core.retrieval import search_messages
        results = search_messages("s1", SearchQuery(text="project deadline", limit=1), limit=3)
        assert _names(seeded, results) == ["m1", "m2", "m4"]

    def test_query_is_embedded_as_query(self, seeded):
        seeded["provider"].calls.clear()
        _search("s1", text="project deadline")
        assert seeded["provider"].calls == [(["project deadline"], "query")]

    def test_results_carry_message_fields(self, seeded):
        top = _search("s1", limit=1, text="project deadline")[0]
        assert top.message.session_id == "s1"
        assert top.message.role == "user"
        assert top.message.content == "deadline is Friday"
        assert top.message.metadata == {"tag": "work", "status": "open"}
        assert top.message.created_at == "2024-01-01 09:00:00"
        assert top.embedding is None

    def test_scoped_to_session(self, seeded):
        results = _search("s2", text="project deadline")
        assert _names(seeded, results) == ["other"]
        assert all(r.message.session_id == "s1"
                   for r in _search("s1", text="project deadline"))

    def test_unknown_session_returns_empty(self, seeded):
        assert _search("nobody", text="project deadline") == []


# ============================================================================
# METADATA FILTERS
# ============================================================================

class TestMetadataSearch:
    def test_metadata_only_is_newest_first_and_keeps_unscored(self, seeded):
        results = _search("s1", metadata={"where": {"jsonpath": "$.tag"}})
        assert _names(seeded, results) == ["m5", "m2", "m1"]
        assert all(r.dist is None for r in results)

    def test_empty_where_is_no_filter(self, seeded):
        results = _search("s1", metadata={"where": {}})
        assert _names(seeded, results) == ["m5", "m4", "m3", "m2", "m1"]
        assert all(r.dist is None for r in results)

    def test_and_filter(self, seeded):
        metadata = {"where": {"jsonpath": "$.tag", "and": [{"jsonpath": "$.status"}]}}
        results = _search("s1", metadata=metadata)
        assert _names(seeded, results) == ["m1"]

    def test_or_filter(self, seeded):
        metadata = {"where": {"or": [
            {"jsonpath": '$.status ? (@ == "open")'},
            {"jsonpath": "$.tag"},
        ]}}
        results = _search("s1", metadata=metadata)
        assert _names(seeded, results) == ["m5", "m3", "m2", "m1"]

    def test_text_and_metadata_keeps_unscored_rows_last(self, seeded):
        results = _search("s1", text="project deadline",
                          metadata={"where": {"jsonpath": "$.tag"}})
        assert _names(seeded, results) == ["m1", "m2", "m5"]
        assert results[-1].dist is None

    def test_date_bounds_are_inclusive(self, seeded):
        metadata = {"start_date": "2024-01-02 09:00:00", "end_date": "2024-01-03 09:00:00"}
        results = _search("s1", text="project deadline", metadata=metadata)
        assert _names(seeded, results) == ["m2", "m3"]

    def test_date_only_filter(self, seeded):
        results = _search("s1", metadata={"start_date": "2024-01-04"})
        assert _names(seeded, results) == ["m5", "m4"]

    def test_no_match_returns_empty(self, seeded):
        metadata = {"where": {"jsonpath": '$.tag ? (@ == "home")'}}
        assert _search("s1", metadata=metadata) == []

    def test_malformed_filter_raises(self, seeded):
        with pytest.raises(MalformedFilterError):
            _search("s1", metadata={"where": {"jsonpath": "tag"}})

    def test_malformed_date_raises(self, seeded):
        with pytest.raises(MalformedFilterError):
            _search("s1", text="project deadline", metadata={"start_date": "soon"})


# ============================================================================
# MMR
# ============================================================================

class TestMmrSearch:
    def test_fetches_pool_multiplier_candidates(self, seeded):
        from memquery.core import retrieval

        with patch(
            "memquery.core.retrieval.execute_search_query",
            wraps=retrieval.execute_search_query,
        ) as spy:
            _search("mmr", limit=2, text="project deadline", search_type=SearchType.MMR)

        executable = spy.call_args[0][1]
        assert executable.limit == 4
        assert executable.search_type == SearchType.MMR
        assert "e.embedding AS embedding" in executable.sql

    def test_similarity_does_not_overfetch(self, seeded):
        from memquery.core import retrieval

        with patch(
            "memquery.core.retrieval.execute_search_query",
            wraps=retrieval.execute_search_query,
        ) as spy:
            _search("mmr", limit=2, text="project deadline")

        assert spy.call_args[0][1].limit == 2

    def test_similarity_returns_near_duplicates(self, seeded):
        results = _search("mmr", limit=2, text="project deadline")
        assert _names(seeded, results) == ["a", "b"]

    def test_mmr_diversifies(self, seeded):
        results = _search("mmr", limit=2, text="project deadline",
                          search_type=SearchType.MMR, mmr_lambda=0.5)
        assert _names(seeded, results) == ["a", "c"]
        assert len(results[0].embedding) == 4

    def test_mmr_embedding_is_exact_stored_float32(self, seeded):
        results = _search("precision", text="project deadline", search_type=SearchType.MMR)
        stored = struct.unpack("4f", struct.pack("4f", *KEYED_VECTORS["precise values"]))
        assert _names(seeded, results) == ["precise"]
        assert results[0].embedding == list(stored)

    def test_mmr_default_lambda(self, seeded):
        results = _search("mmr", limit=2, text="project deadline", search_type="mmr")
        assert _names(seeded, results) == ["a", "c"]

    def test_mmr_lambda_one_matches_similarity(self, seeded):
        results = _search("mmr", limit=3, text="project deadline",
                          search_type=SearchType.MMR, mmr_lambda=1.0)
        assert _names(seeded, results) == ["a", "b", "c"]

    def test_mmr_without_candidates_returns_empty(self, seeded):
        assert _search("nobody", text="project deadline", search_type=SearchType.MMR) == []

    def test_mmr_skips_unembedded_candidates(self, seeded):
        results = _search("s1", text="project deadline", search_type=SearchType.MMR,
                          metadata={"where": {"jsonpath": "$.tag"}})
        assert "m5" not in _names(seeded, results)
        assert set(_names(seeded, results)) == {"m1", "m2"}


# ============================================================================
# SOFT DELETE
# ============================================================================

class TestSoftDelete:
    def test_deleted_messages_are_excluded(self, seeded):
        from memquery.core.store import add_message, delete_message, get_message

        keep = add_message("del", "user", "deadline is Friday")
        drop = add_message("del", "user", "deadline slipped")

        assert delete_message("del", drop) is True
        assert delete_message("del", drop) is False
        assert delete_message("other-session", keep) is False

        results = _search("del", text="project deadline")
        assert [r.message.uuid for r in results] == [keep]
        assert get_message(drop) is None
        assert get_message(drop, include_deleted=True).uuid == drop


# ============================================================================
# ERRORS
# ============================================================================

class TestErrors:
    @pytest.mark.parametrize("session_id,query", [
        ("s1", SearchQuery()),
        ("s1", SearchQuery(metadata={})),
        ("", SearchQuery(text="project deadline")),
        ("s1", SearchQuery(metadata={"start_date": "2024-01-01"}, search_type=SearchType.MMR)),
        ("s1", SearchQuery(text="project deadline", search_type="bogus")),
        ("s1", SearchQuery(text="project deadline", mmr_lambda=1.5)),
        ("s1", SearchQuery(text="project deadline", limit=-1)),
    ])
    def test_invalid_queries(self, seeded, session_id, query):
        from memquery.core.retrieval import search_messages
        with pytest.raises(InvalidQueryError):
            search_messages(session_id, query)

    def test_none_query(self, seeded):
        from memquery.core.retrieval import search_messages
        with pytest.raises(InvalidQueryError):
            search_messages("s1", None)

    def test_negative_limit(self, seeded):
        with pytest.raises(InvalidQueryError):
            _search("s1", limit=-1, text="project deadline")

    def test_invalid_query_is_value_error(self, seeded):
        with pytest.raises(ValueError):
            _search("s1")

    def test_provider_failure(self, seeded, monkeypatch):
        import memquery
        monkeypatch.setattr(memquery, "_embed", FailingEmbedProvider())
        with pytest.raises(EmbeddingProviderError, match="provider unreachable"):
            _search("s1", text="project deadline")

    def test_provider_wrong_dims(self, seeded, monkeypatch):
        import memquery
        monkeypatch.setattr(memquery, "_embed", WrongDimsEmbedProvider())
        with pytest.raises(EmbeddingProviderError, match="expected 4d"):
            _search("s1", text="project deadline")

    def test_metadata_only_search_skips_provider(self, seeded, monkeypatch):
        import memquery
        monkeypatch.setattr(memquery, "_embed", FailingEmbedProvider())
        results = _search("s1", metadata={"where": {"jsonpath": "$.status"}})
        assert _names(seeded, results) == ["m3", "m1"]

    def test_storage_failure(self, seeded):
        from memquery.core.db import get_db
        from memquery.core.query import ExecutableQuery
        from memquery.core.retrieval import execute_search_query

        broken = ExecutableQuery(
            sql="SELECT * FROM no_such_table",
            params=(),
            search_type=SearchType.SIMILARITY,
            scored=False,
            limit=1,
        )
        db = get_db()
        try:
            with pytest.raises(StorageExecutionError):
                execute_search_query(db, broken)
        finally:
            db.close()


# ============================================================================
# CANCELLATION
# ============================================================================

class TestCancellation:
    def test_cancelled_before_start(self, seeded):
        cancel = threading.Event()
        cancel.set()
        with pytest.raises(SearchCancelledError):
            _search("s1", text="project deadline", cancel=cancel)

    def test_cancelled_during_embedding(self, seeded, monkeypatch):
        import memquery
        cancel = threading.Event()
        monkeypatch.setattr(memquery, "_embed", CancellingEmbedProvider(cancel))
        with pytest.raises(SearchCancelledError):
            _search("s1", text="project deadline", cancel=cancel)

    def test_cancelled_before_execution(self, seeded):
        from memquery.core.db import get_db
        from memquery.core.query import build_search_query
        from memquery.core.retrieval import execute_search_query

        executable = build_search_query(
            "s1", SearchQuery(metadata={"where": {"jsonpath": "$.tag"}}),
            None, None, limit=10, pool_multiplier=2,
        )
        cancel = threading.Event()
        cancel.set()
        db = get_db()
        try:
            with pytest.raises(SearchCancelledError):
                execute_search_query(db, executable, cancel)
        finally:
            db.close()

    def test_unset_event_does_not_interfere(self, seeded):
        results = _search("s1", limit=2, text="project deadline", cancel=threading.Event())
        assert _names(seeded, results) == ["m1", "m2"]


# ============================================================================
# RESULT VALIDATION + QUERY ASSEMBLY (no database)
# ============================================================================

def _bare(dist):
    return SearchResult(
        message=Message(uuid="x", session_id="s", created_at="", role="user", content=""),
        dist=dist,
    )


class TestFilterValidResults:
    def test_drops_unscored_without_metadata(self):
        from memquery.core.retrieval import filter_valid_results
        results = [_bare(0.9), _bare(None), _bare(0.1)]
        assert [r.dist for r in filter_valid_results(results, None)] == [0.9, 0.1]
        assert [r.dist for r in filter_valid_results(results, {})] == [0.9, 0.1]

    def test_keeps_everything_with_metadata(self):
        from memquery.core.retrieval import filter_valid_results
        results = [_bare(None), _bare(0.5)]
        kept = filter_valid_results(results, {"where": {"jsonpath": "$.tag"}})
        assert kept == results

    def test_empty(self):
        from memquery.core.retrieval import filter_valid_results
        assert filter_valid_results([], None) == []


class TestBuildSearchQuery:
    def test_similarity_shape(self):
        from memquery.core.query import build_search_query

        q = build_search_query("s1", SearchQuery(text="x"), None, [1.0, 0.0],
                               limit=5, pool_multiplier=2)
        assert "AS dist" in q.sql
        assert "AS embedding" not in q.sql
        assert q.sql.endswith("ORDER BY dist DESC, m.created_at DESC LIMIT ?")
        assert "m.deleted_at IS NULL" in q.sql
        assert q.params[-2:] == ("s1", 5)
        assert q.scored and q.limit == 5

    def test_metadata_only_shape(self):
        from memquery.core.filters import Predicate
        from memquery.core.query import build_search_query

        predicate = Predicate("json_type(m.metadata, ?) IS NOT NULL", ("$.tag",))
        q = build_search_query("s1", SearchQuery(metadata={"where": {}}), predicate, None,
                               limit=3, pool_multiplier=2)
        assert "dist" not in q.sql
        assert q.sql.endswith("ORDER BY m.created_at DESC LIMIT ?")
        assert q.params == ("$.tag", "s1", 3)
        assert not q.scored

    def test_mmr_overfetches(self):
        from memquery.core.query import build_search_query

        q = build_search_query("s1", SearchQuery(text="x", search_type=SearchType.MMR),
                               None, [1.0, 0.0], limit=5, pool_multiplier=3)
        assert "e.embedding AS embedding" in q.sql
        assert q.limit == 15
        assert q.params[-1] == 15
