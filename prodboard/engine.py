"""Ordering engine for the production board.

Every mutating operation runs as one store transaction. Card positions
(``orderInColumn``) are kept dense and zero-based per column: inserts shift
later siblings down, removals close the gap. ``Column.cardOrder`` is kept in
step for membership through array union/remove updates only; its sequence
is never used to render the board.

Any change to a column's membership also writes that column's document, so
two transactions that add or remove cards in the same column always
conflict and one of them is replayed against the other's result.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Any, List, Optional

from .errors import InvalidArgument, NotFound
from .models import Card, Column
from .repositories import CardRepository, ColumnRepository
from .store import DocumentStore, Transaction
from .utils import clamp

logger = logging.getLogger(__name__)

EDITABLE_CARD_FIELDS = ("title", "description", "priority", "due_date", "portfolio_item_id")


def _require_title(title: Any, message: str) -> str:
    if not isinstance(title, str) or not title.strip():
        raise InvalidArgument(message)
    return title.strip()


class OrderingEngine:
    def __init__(self, store: DocumentStore) -> None:
        self.store = store
        self.columns = ColumnRepository(store)
        self.cards = CardRepository(store)

    def _renumber(self, tx: Transaction, cards: List[Card], skip: Optional[str] = None) -> None:
        """Write ``orderInColumn = index`` for every card whose position moved."""
        for index, card in enumerate(cards):
            if card.id == skip or card.order_in_column == index:
                continue
            self.cards.tx_update(tx, card.id, order_in_column=index)

    # === Columns ===

    async def list_columns(self) -> List[Column]:
        columns = await self.columns.list_all()
        for column in columns:
            column.cards = await self.cards.list_for_column(column.id)
        return columns

    async def create_column(self, title: Optional[str]) -> Column:
        title = _require_title(title, "Title is required")
        column = await self.columns.create(title)
        logger.info("Created column %s", column.id)
        return column

    async def update_column(self, column_id: str, title: Optional[str] = None) -> Column:
        changes = {}
        if title is not None:
            changes["title"] = _require_title(title, "Title, if provided, must be a non-empty string")

        async def _update(tx: Transaction) -> Column:
            column = await self.columns.tx_get(tx, column_id)
            if column is None:
                raise NotFound("Column not found")
            self.columns.tx_update(tx, column_id, **changes)
            return replace(column, **changes, updated_at=tx.now)

        return await self.store.run_transaction(_update)

    async def delete_column(self, column_id: str) -> None:
        async def _delete(tx: Transaction) -> int:
            if await self.columns.tx_get(tx, column_id) is None:
                raise NotFound("Column not found")
            cards = await self.cards.tx_list_for_column(tx, column_id)
            for card in cards:
                self.cards.tx_delete(tx, card.id)
            self.columns.tx_delete(tx, column_id)
            return len(cards)

        removed = await self.store.run_transaction(_delete)
        logger.info("Deleted column %s and %d card(s)", column_id, removed)

    # === Cards ===

    async def get_card(self, card_id: str) -> Card:
        card = await self.cards.get(card_id)
        if card is None:
            raise NotFound("Card not found")
        return card

    async def create_card(
        self,
        column_id: str,
        title: Optional[str],
        description: Optional[str] = None,
        priority: Optional[str] = None,
        due_date: Optional[str] = None,
        portfolio_item_id: Optional[str] = None,
        order_in_column: Optional[int] = None,
    ) -> Card:
        title = _require_title(title, "Card title is required")
        card_id = self.cards.new_id()

        async def _create(tx: Transaction) -> Card:
            if await self.columns.tx_get(tx, column_id) is None:
                raise NotFound("Column not found")
            siblings = await self.cards.tx_list_for_column(tx, column_id)
            requested = len(siblings) if order_in_column is None else order_in_column
            card = Card(
                id=card_id,
                column_id=column_id,
                title=title,
                order_in_column=clamp(requested, 0, len(siblings)),
                description=description,
                priority=priority,
                due_date=due_date,
                portfolio_item_id=portfolio_item_id,
                created_at=tx.now,
                updated_at=tx.now,
            )
            ordered = list(siblings)
            ordered.insert(card.order_in_column, card)
            self._renumber(tx, ordered, skip=card.id)
            self.cards.tx_set(tx, card)
            self.columns.tx_add_card(tx, column_id, card.id)
            return card

        card = await self.store.run_transaction(_create)
        logger.info("Created card %s in column %s", card_id, column_id)
        return card

    async def update_card(self, card_id: str, **changes: Any) -> Card:
        fields = {key: value for key, value in changes.items() if key in EDITABLE_CARD_FIELDS}
        if "title" in fields:
            fields["title"] = _require_title(fields["title"], "Title, if provided, must be a non-empty string")
        if not fields:
            raise InvalidArgument("No valid fields provided for update")

        async def _update(tx: Transaction) -> Card:
            card = await self.cards.tx_get(tx, card_id)
            if card is None:
                raise NotFound("Card not found")
            self.cards.tx_update(tx, card_id, **fields)
            return replace(card, **fields, updated_at=tx.now)

        return await self.store.run_transaction(_update)

    async def delete_card(self, card_id: str) -> None:
        async def _delete(tx: Transaction) -> None:
            card = await self.cards.tx_get(tx, card_id)
            if card is None:
                raise NotFound("Card not found")
            column = None
            siblings: List[Card] = []
            if card.column_id:
                column = await self.columns.tx_get(tx, card.column_id)
                siblings = [c for c in await self.cards.tx_list_for_column(tx, card.column_id) if c.id != card_id]
            self.cards.tx_delete(tx, card_id)
            self._renumber(tx, siblings)
            if column is not None:
                self.columns.tx_remove_card(tx, column.id, card_id)
            elif card.column_id:
                logger.warning("Column %s of card %s not found, skipping cardOrder update", card.column_id, card_id)
            else:
                logger.warning("Card %s has no columnId, skipping cardOrder update", card_id)

        await self.store.run_transaction(_delete)
        logger.info("Deleted card %s", card_id)

    async def move_card(self, card_id: str, target_column_id: str, new_order_in_column: Optional[int] = None) -> Card:
        """Move a card to ``new_order_in_column`` in the target column.

        Same-column and cross-column moves share one path. The index is
        clamped into the target column, so out-of-range values append at the
        end and negative values land at the top.
        """

        async def _move(tx: Transaction) -> Card:
            card = await self.cards.tx_get(tx, card_id)
            if card is None:
                raise NotFound("Card not found")
            source_column_id = card.column_id
            if await self.columns.tx_get(tx, target_column_id) is None:
                raise NotFound(f"Target column {target_column_id} not found")

            source: Optional[Column] = None
            source_siblings: List[Card] = []
            cross_column = source_column_id != target_column_id
            if cross_column and source_column_id:
                source = await self.columns.tx_get(tx, source_column_id)
                source_siblings = [
                    c for c in await self.cards.tx_list_for_column(tx, source_column_id) if c.id != card_id
                ]
            target_siblings = [
                c for c in await self.cards.tx_list_for_column(tx, target_column_id) if c.id != card_id
            ]

            requested = len(target_siblings) if new_order_in_column is None else new_order_in_column
            position = clamp(requested, 0, len(target_siblings))
            ordered = list(target_siblings)
            ordered.insert(position, card)

            self._renumber(tx, ordered, skip=card_id)
            self._renumber(tx, source_siblings)
            self.cards.tx_update(tx, card_id, column_id=target_column_id, order_in_column=position)
            self.columns.tx_add_card(tx, target_column_id, card_id)
            if source is not None:
                self.columns.tx_remove_card(tx, source.id, card_id)
            elif cross_column and source_column_id:
                logger.warning("Source column %s of card %s not found", source_column_id, card_id)
            return replace(card, column_id=target_column_id, order_in_column=position, updated_at=tx.now)

        moved = await self.store.run_transaction(_move)
        logger.info("Moved card %s to column %s at %d", card_id, target_column_id, moved.order_in_column)
        return moved
