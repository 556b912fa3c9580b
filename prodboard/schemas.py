from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class Health(BaseModel):
    status: str = "ok"


class Version(BaseModel):
    version: str


class ColumnIn(BaseModel):
    title: Optional[str] = Field(default=None, max_length=200)


class ColumnPatch(BaseModel):
    title: Optional[str] = Field(default=None, max_length=200)


class CardIn(BaseModel):
    title: Optional[str] = Field(default=None, max_length=500)
    description: Optional[str] = Field(default=None, max_length=8000)
    priority: Optional[str] = None
    dueDate: Optional[str] = None
    portfolioItemId: Optional[str] = None
    orderInColumn: Optional[int] = None


class CardPatch(BaseModel):
    title: Optional[str] = Field(default=None, max_length=500)
    description: Optional[str] = Field(default=None, max_length=8000)
    priority: Optional[str] = None
    dueDate: Optional[str] = None
    portfolioItemId: Optional[str] = None


class CardMove(BaseModel):
    targetColumnId: str = Field(min_length=1)
    newOrderInColumn: Optional[int] = None


class CardOut(BaseModel):
    id: str
    columnId: Optional[str]
    title: str
    orderInColumn: int
    description: Optional[str] = None
    priority: Optional[str] = None
    dueDate: Optional[str] = None
    portfolioItemId: Optional[str] = None
    createdAt: Optional[datetime] = None
    updatedAt: Optional[datetime] = None


class ColumnOut(BaseModel):
    id: str
    title: str
    cardOrder: list[str]
    createdAt: Optional[datetime] = None
    updatedAt: Optional[datetime] = None


class ColumnWithCards(ColumnOut):
    cards: list[CardOut]
