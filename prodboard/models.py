from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from .store import DocumentSnapshot


# === Domain objects mapped onto store documents ===


@dataclass
class Card:
    id: str
    column_id: Optional[str]
    title: str
    order_in_column: int = 0
    description: Optional[str] = None
    priority: Optional[str] = None
    due_date: Optional[str] = None
    portfolio_item_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_snapshot(cls, snapshot: DocumentSnapshot) -> Card:
        data = snapshot.data or {}
        return cls(
            id=snapshot.id,
            column_id=data.get("columnId"),
            title=data.get("title", ""),
            order_in_column=int(data.get("orderInColumn") or 0),
            description=data.get("description"),
            priority=data.get("priority"),
            due_date=data.get("dueDate"),
            portfolio_item_id=data.get("portfolioItemId"),
            created_at=data.get("createdAt"),
            updated_at=data.get("updatedAt"),
        )


@dataclass
class Column:
    id: str
    title: str
    card_order: List[str] = field(default_factory=list)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    # populated by listings only, never stored
    cards: List[Card] = field(default_factory=list)

    @classmethod
    def from_snapshot(cls, snapshot: DocumentSnapshot) -> Column:
        data = snapshot.data or {}
        return cls(
            id=snapshot.id,
            title=data.get("title", ""),
            card_order=list(data.get("cardOrder") or []),
            created_at=data.get("createdAt"),
            updated_at=data.get("updatedAt"),
        )


CARD_FIELDS = {
    "column_id": "columnId",
    "title": "title",
    "order_in_column": "orderInColumn",
    "description": "description",
    "priority": "priority",
    "due_date": "dueDate",
    "portfolio_item_id": "portfolioItemId",
}

COLUMN_FIELDS = {
    "title": "title",
}


def to_document(changes: Dict[str, Any], names: Dict[str, str]) -> Dict[str, Any]:
    """Rename attribute names in ``changes`` to their stored field names."""
    unknown = set(changes) - set(names)
    if unknown:
        raise KeyError(f"unknown fields: {', '.join(sorted(unknown))}")
    return {names[key]: value for key, value in changes.items()}
