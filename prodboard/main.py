from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .auth import get_current_user
from .config import Settings
from .engine import OrderingEngine
from .errors import BoardError
from .models import Card, Column
from .schemas import (
    CardIn,
    CardMove,
    CardOut,
    CardPatch,
    ColumnIn,
    ColumnOut,
    ColumnPatch,
    ColumnWithCards,
    Health,
    Version,
)
from .store import DocumentStore, MemoryDocumentStore

VERSION = "1.0.0"

logger = logging.getLogger(__name__)

# API field name -> engine keyword
CARD_PATCH_FIELDS = {
    "title": "title",
    "description": "description",
    "priority": "priority",
    "dueDate": "due_date",
    "portfolioItemId": "portfolio_item_id",
}


# === Helpers ===


def card_out(card: Card) -> CardOut:
    return CardOut(
        id=card.id,
        columnId=card.column_id,
        title=card.title,
        orderInColumn=card.order_in_column,
        description=card.description,
        priority=card.priority,
        dueDate=card.due_date,
        portfolioItemId=card.portfolio_item_id,
        createdAt=card.created_at,
        updatedAt=card.updated_at,
    )


def column_out(column: Column) -> ColumnOut:
    return ColumnOut(
        id=column.id,
        title=column.title,
        cardOrder=column.card_order,
        createdAt=column.created_at,
        updatedAt=column.updated_at,
    )


def column_with_cards(column: Column) -> ColumnWithCards:
    return ColumnWithCards(
        **column_out(column).model_dump(),
        cards=[card_out(c) for c in column.cards],
    )


def get_engine(request: Request) -> OrderingEngine:
    return request.app.state.engine


def build_store(settings: Settings) -> DocumentStore:
    options = dict(
        max_attempts=settings.tx_max_attempts,
        backoff_base=settings.tx_backoff_base,
        backoff_max=settings.tx_backoff_max,
    )
    if settings.store_backend == "memory":
        return MemoryDocumentStore(**options)
    if settings.store_backend == "sql":
        from .db import SqlDocumentStore

        store = SqlDocumentStore(settings.database_url, **options)
        store.init_db()
        return store
    raise ValueError(f"unknown STORE_BACKEND {settings.store_backend!r}")


# === Health & metadata ===

meta = APIRouter()


@meta.get("/health", response_model=Health)
def health() -> Health:
    return Health()


@meta.get("/version", response_model=Version)
def version() -> Version:
    return Version(version=VERSION)


# === Board endpoints ===

board = APIRouter(dependencies=[Depends(get_current_user)])


@board.get("/columns", response_model=list[ColumnWithCards])
async def list_columns(engine: OrderingEngine = Depends(get_engine)):
    return [column_with_cards(c) for c in await engine.list_columns()]


@board.post("/columns", response_model=ColumnOut, status_code=201)
async def create_column(payload: ColumnIn, engine: OrderingEngine = Depends(get_engine)):
    return column_out(await engine.create_column(payload.title))


@board.put("/columns/{column_id}", response_model=ColumnOut)
async def update_column(column_id: str, payload: ColumnPatch, engine: OrderingEngine = Depends(get_engine)):
    return column_out(await engine.update_column(column_id, payload.title))


@board.delete("/columns/{column_id}", status_code=204)
async def delete_column(column_id: str, engine: OrderingEngine = Depends(get_engine)):
    await engine.delete_column(column_id)
    return Response(status_code=204)


@board.post("/columns/{column_id}/cards", response_model=CardOut, status_code=201)
async def create_card(column_id: str, payload: CardIn, engine: OrderingEngine = Depends(get_engine)):
    card = await engine.create_card(
        column_id,
        payload.title,
        description=payload.description,
        priority=payload.priority,
        due_date=payload.dueDate,
        portfolio_item_id=payload.portfolioItemId,
        order_in_column=payload.orderInColumn,
    )
    return card_out(card)


@board.get("/cards/{card_id}", response_model=CardOut)
async def get_card(card_id: str, engine: OrderingEngine = Depends(get_engine)):
    return card_out(await engine.get_card(card_id))


@board.put("/cards/{card_id}", response_model=CardOut)
async def update_card(card_id: str, payload: CardPatch, engine: OrderingEngine = Depends(get_engine)):
    changes = {CARD_PATCH_FIELDS[k]: v for k, v in payload.model_dump(exclude_unset=True).items()}
    return card_out(await engine.update_card(card_id, **changes))


@board.delete("/cards/{card_id}", status_code=204)
async def delete_card(card_id: str, engine: OrderingEngine = Depends(get_engine)):
    await engine.delete_card(card_id)
    return Response(status_code=204)


@board.patch("/cards/{card_id}/move", response_model=CardOut)
async def move_card(card_id: str, payload: CardMove, engine: OrderingEngine = Depends(get_engine)):
    card = await engine.move_card(card_id, payload.targetColumnId, payload.newOrderInColumn)
    return card_out(card)


# === App factory ===


def create_app(settings: Optional[Settings] = None, store: Optional[DocumentStore] = None) -> FastAPI:
    settings = settings or Settings.from_env()
    logging.basicConfig(level=settings.log_level)

    app = FastAPI(title="Production Board API", version=VERSION)
    app.state.settings = settings
    app.state.engine = OrderingEngine(store or build_store(settings))

    @app.exception_handler(BoardError)
    async def board_error(request: Request, exc: BoardError):
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(status_code=exc.status_code, content={"error": exc.message})

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        if errors:
            first = errors[0]
            field = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
            message = f"{field}: {first.get('msg')}" if field else str(first.get("msg"))
        else:
            message = "Invalid request"
        return JSONResponse(status_code=400, content={"error": message})

    @app.exception_handler(StarletteHTTPException)
    async def http_error(request: Request, exc: StarletteHTTPException):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=exc.headers)

    @app.exception_handler(Exception)
    async def unexpected_error(request: Request, exc: Exception):
        logger.exception("%s %s raised", request.method, request.url.path)
        return JSONResponse(status_code=500, content={"error": "Internal server error"})

    app.include_router(meta)
    app.include_router(board, prefix=settings.api_prefix)
    return app


app = create_app()
