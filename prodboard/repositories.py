"""Typed access to Column and Card documents.

Methods prefixed ``tx_`` work against an open ``Transaction``; the rest talk
to the store directly.
"""

from __future__ import annotations

from typing import Any, List, Optional

from .models import CARD_FIELDS, COLUMN_FIELDS, Card, Column, to_document
from .store import SERVER_TIMESTAMP, DocumentStore, Transaction, array_remove, array_union

COLUMNS = "productionBoardColumns"
CARDS = "productionBoardCards"


class ColumnRepository:
    def __init__(self, store: DocumentStore) -> None:
        self.store = store

    async def create(self, title: str) -> Column:
        column_id = self.store.new_id()
        now = self.store.server_now()
        await self.store.set(
            COLUMNS,
            column_id,
            {
                "title": title,
                "cardOrder": [],
                "createdAt": SERVER_TIMESTAMP,
                "updatedAt": SERVER_TIMESTAMP,
            },
            now=now,
        )
        return Column(id=column_id, title=title, created_at=now, updated_at=now)

    async def get(self, column_id: str) -> Optional[Column]:
        snapshot = await self.store.get(COLUMNS, column_id)
        return Column.from_snapshot(snapshot) if snapshot.exists else None

    async def list_all(self) -> List[Column]:
        snapshots = await self.store.query(COLUMNS, order_by="createdAt")
        return [Column.from_snapshot(s) for s in snapshots]

    async def tx_get(self, tx: Transaction, column_id: str) -> Optional[Column]:
        snapshot = await tx.get(COLUMNS, column_id)
        return Column.from_snapshot(snapshot) if snapshot.exists else None

    def tx_update(self, tx: Transaction, column_id: str, **changes: Any) -> None:
        data = to_document(changes, COLUMN_FIELDS)
        data["updatedAt"] = SERVER_TIMESTAMP
        tx.update(COLUMNS, column_id, data)

    def tx_add_card(self, tx: Transaction, column_id: str, card_id: str) -> None:
        tx.update(COLUMNS, column_id, {"cardOrder": array_union(card_id), "updatedAt": SERVER_TIMESTAMP})

    def tx_remove_card(self, tx: Transaction, column_id: str, card_id: str) -> None:
        tx.update(COLUMNS, column_id, {"cardOrder": array_remove(card_id), "updatedAt": SERVER_TIMESTAMP})

    def tx_delete(self, tx: Transaction, column_id: str) -> None:
        tx.delete(COLUMNS, column_id)


class CardRepository:
    def __init__(self, store: DocumentStore) -> None:
        self.store = store

    def new_id(self) -> str:
        return self.store.new_id()

    async def get(self, card_id: str) -> Optional[Card]:
        snapshot = await self.store.get(CARDS, card_id)
        return Card.from_snapshot(snapshot) if snapshot.exists else None

    async def list_for_column(self, column_id: str) -> List[Card]:
        snapshots = await self.store.query(CARDS, where=("columnId", column_id), order_by="orderInColumn")
        return [Card.from_snapshot(s) for s in snapshots]

    async def tx_get(self, tx: Transaction, card_id: str) -> Optional[Card]:
        snapshot = await tx.get(CARDS, card_id)
        return Card.from_snapshot(snapshot) if snapshot.exists else None

    async def tx_list_for_column(self, tx: Transaction, column_id: str) -> List[Card]:
        snapshots = await tx.query(CARDS, where=("columnId", column_id), order_by="orderInColumn")
        return [Card.from_snapshot(s) for s in snapshots]

    def tx_set(self, tx: Transaction, card: Card) -> None:
        data = to_document(
            {
                "column_id": card.column_id,
                "title": card.title,
                "order_in_column": card.order_in_column,
                "description": card.description,
                "priority": card.priority,
                "due_date": card.due_date,
                "portfolio_item_id": card.portfolio_item_id,
            },
            CARD_FIELDS,
        )
        data["createdAt"] = SERVER_TIMESTAMP
        data["updatedAt"] = SERVER_TIMESTAMP
        tx.set(CARDS, card.id, data)

    def tx_update(self, tx: Transaction, card_id: str, **changes: Any) -> None:
        data = to_document(changes, CARD_FIELDS)
        data["updatedAt"] = SERVER_TIMESTAMP
        tx.update(CARDS, card_id, data)

    def tx_delete(self, tx: Transaction, card_id: str) -> None:
        tx.delete(CARDS, card_id)
