"""
memquery quickstart: store a conversation, search it by text, by metadata,
and with MMR diversification.

This example uses a mock embedding provider so you can run it without any API
keys or embedding models. In production, you'd swap it for a real provider
(see the EmbedProvider protocol in memquery/protocols.py).

    python examples/quickstart.py
"""

import hashlib
import math
import tempfile
from datetime import datetime
from pathlib import Path

import memquery
from memquery.config import MemqueryConfig
from memquery.models import SearchQuery, SearchType


# -- Step 0: Implement the provider protocol --------------------------------
# memquery doesn't bundle an embedding model. You bring your own.

class LocalEmbedProvider:
    """Hash-based embeddings for demo purposes. Not useful for real retrieval."""

    def __init__(self, dims: int = 64):
        self.dims = dims

    def _vector(self, text: str) -> list[float]:
        h = hashlib.sha256(text.lower().encode()).digest()
        vec = [b / 255.0 for b in h]
        while len(vec) < self.dims:
            vec.extend(vec)
        vec = vec[: self.dims]
        norm = math.sqrt(sum(x * x for x in vec))
        return [x / norm for x in vec]

    def embed(self, texts: list[str], input_type: str = "document") -> list[list[float]]:
        return [self._vector(t) for t in texts]


def show(title: str, results):
    print(title)
    for r in results:
        score = "   -  " if r.dist is None else f"{r.dist:.3f}"
        print(f"  {score}  [{r.message.created_at}] {r.message.role}: {r.message.content}")
    print()


# -- Step 1: Initialize memquery ---------------------------------------------

with tempfile.TemporaryDirectory() as tmp:
    config = MemqueryConfig(db_path=Path(tmp) / "demo.db", embed_dims=64, embed_model="demo-hash")
    memquery.init(config=config, embed=LocalEmbedProvider(dims=64))

    # -- Step 2: Store a conversation ----------------------------------------

    from memquery.core import add_message

    session = "demo-session"
    conversation = [
        ("user", "The Atlas launch deadline moved to Friday", {"tag": "work", "status": "open"}),
        ("assistant", "Noted, Friday it is for Atlas", {"tag": "work"}),
        ("user", "Book a table for lunch on Thursday", {"status": "open"}),
        ("user", "Remind me to pick up groceries", None),
        ("assistant", "Atlas demo slides are in the shared drive",
         {"entities": [{"label": "ORG", "name": "Atlas"}]}),
    ]
    for day, (role, content, metadata) in enumerate(conversation, start=1):
        add_message(session, role, content, metadata=metadata,
                    created_at=datetime(2024, 3, day, 9, 0))

    print(f"Stored {len(conversation)} messages.\n")

    # -- Step 3: Similarity search -------------------------------------------

    from memquery.core import search_messages

    show("Text: 'Atlas launch deadline'",
         search_messages(session, SearchQuery(text="Atlas launch deadline"), limit=3))

    # -- Step 4: Metadata-only search (newest first, no distances) -----------

    show("Metadata: tag AND status",
         search_messages(session, SearchQuery(metadata={
             "where": {"jsonpath": "$.tag", "and": [{"jsonpath": "$.status"}]},
         })))

    show("Metadata: ORG entities mentioned",
         search_messages(session, SearchQuery(metadata={
             "where": {"jsonpath": '$.entities[*] ? (@.label == "ORG")'},
         })))

    show("Metadata: date range March 2-3",
         search_messages(session, SearchQuery(metadata={
             "start_date": "2024-03-02", "end_date": "2024-03-03T23:59:59",
         })))

    # -- Step 5: MMR for a diverse page --------------------------------------

    show("MMR: 'Atlas' (lambda=0.3)",
         search_messages(session, SearchQuery(
             text="Atlas", search_type=SearchType.MMR, mmr_lambda=0.3,
         ), limit=3))
