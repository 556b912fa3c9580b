import asyncio
from collections import Counter

import pytest
from fastapi.testclient import TestClient

from prodboard.config import Settings
from prodboard.engine import OrderingEngine
from prodboard.main import create_app
from prodboard.repositories import CARDS, COLUMNS
from prodboard.store import MemoryDocumentStore

AUTH = {"Authorization": "Bearer test-user"}


def run(coro):
    return asyncio.run(coro)


async def check_board(store):
    """Assert density, membership and no-orphan over the whole store."""
    columns = {s.id: s.data for s in await store.query(COLUMNS)}
    cards = await store.query(CARDS)
    by_column = {column_id: [] for column_id in columns}
    for card in cards:
        assert card.data["columnId"] in columns, f"orphaned card {card.id}"
        by_column[card.data["columnId"]].append(card)
    for column_id, owned in by_column.items():
        positions = sorted(c.data["orderInColumn"] for c in owned)
        assert positions == list(range(len(owned))), f"column {column_id} positions {positions}"
        card_order = columns[column_id]["cardOrder"]
        assert Counter(card_order) == Counter(c.id for c in owned)


@pytest.fixture
def store():
    return MemoryDocumentStore(max_attempts=5, backoff_base=0.0)


@pytest.fixture
def engine(store):
    return OrderingEngine(store)


@pytest.fixture
def client(store):
    app = create_app(Settings(), store=store)
    return TestClient(app)
