from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import JSON, DateTime, Integer, String, create_engine, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker

from .errors import Internal
from .store import (
    DocKey,
    DocumentSnapshot,
    DocumentStore,
    TransactionConflict,
    Write,
    apply_writes,
    filter_and_sort,
)
from .utils import now_utc

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    pass


class DocumentRow(Base):
    __tablename__ = "documents"
    collection: Mapped[str] = mapped_column(String(64), primary_key=True)
    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    # NULL data is a tombstone; the row stays so versions never go backwards
    data: Mapped[dict | None] = mapped_column(JSON(none_as_null=True), nullable=True)
    version: Mapped[int] = mapped_column(Integer, default=1)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=now_utc, onupdate=now_utc)


def _encode_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return {"$date": value.isoformat()}
    raise TypeError(f"{type(value).__name__} is not JSON serializable")


def _decode_object(obj: Dict[str, Any]) -> Any:
    if len(obj) == 1 and "$date" in obj:
        return datetime.fromisoformat(obj["$date"])
    return obj


def encode(data: Dict[str, Any]) -> str:
    return json.dumps(data, default=_encode_value)


def decode(raw: Optional[str]) -> Optional[Dict[str, Any]]:
    if raw is None:
        return None
    return json.loads(raw, object_hook=_decode_object)


def _field_equals(field_name: str, value: Any):
    """SQL condition matching a top-level document field, or None when it cannot be pushed down."""
    element = DocumentRow.data[field_name]
    if isinstance(value, bool):
        return element.as_boolean() == value
    if isinstance(value, int):
        return element.as_integer() == value
    if isinstance(value, str):
        return element.as_string() == value
    return None


class SqlDocumentStore(DocumentStore):
    """Document store persisted through SQLAlchemy.

    All documents live in one table keyed by (collection, id) with a
    version column. Commits apply conditional ``UPDATE ... WHERE version =``
    statements so a concurrent writer in another process is detected as a
    conflict rather than silently overwritten.
    """

    def __init__(self, database_url: str, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.engine = create_engine(
            database_url,
            connect_args={"check_same_thread": False} if database_url.startswith("sqlite") else {},
            json_serializer=encode,
            json_deserializer=decode,
        )
        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)

    def init_db(self) -> None:
        Base.metadata.create_all(bind=self.engine)

    def dispose(self) -> None:
        self.engine.dispose()

    async def _call(self, fn, *args):
        try:
            return await asyncio.to_thread(fn, *args)
        except (TransactionConflict, Internal):
            raise
        except SQLAlchemyError as exc:
            logger.exception("Document store failure")
            raise Internal("Unexpected document store failure") from exc

    # === Reads ===

    def _get_sync(self, collection: str, doc_id: str) -> DocumentSnapshot:
        with self.SessionLocal() as session:
            row = session.get(DocumentRow, (collection, doc_id))
            if row is None:
                return DocumentSnapshot(id=doc_id, data=None, version=0)
            return DocumentSnapshot(id=doc_id, data=row.data, version=row.version)

    def _query_sync(self, collection: str, where: Optional[Tuple[str, Any]]) -> List[DocumentSnapshot]:
        stmt = select(DocumentRow).where(
            DocumentRow.collection == collection,
            DocumentRow.data.is_not(None),
        )
        if where is not None:
            condition = _field_equals(*where)
            if condition is not None:
                stmt = stmt.where(condition)
        with self.SessionLocal() as session:
            rows = session.scalars(stmt).all()
            return [DocumentSnapshot(id=row.id, data=row.data, version=row.version) for row in rows]

    async def get(self, collection: str, doc_id: str) -> DocumentSnapshot:
        return await self._call(self._get_sync, collection, doc_id)

    async def query(
        self,
        collection: str,
        where: Optional[Tuple[str, Any]] = None,
        order_by: Optional[str] = None,
    ) -> List[DocumentSnapshot]:
        snapshots = await self._call(self._query_sync, collection, where)
        # null filters and ordering are applied here
        return filter_and_sort(snapshots, where, order_by)

    # === Writes ===

    def _commit_sync(self, writes: List[Write], reads: Dict[DocKey, int], now: datetime) -> None:
        with self.SessionLocal() as session:
            try:
                with session.begin():
                    self._apply(session, writes, reads, now)
            except IntegrityError as exc:
                # another writer inserted the same key first
                raise TransactionConflict(writes[0].key) from exc

    def _apply(self, session: Session, writes: List[Write], reads: Dict[DocKey, int], now: datetime) -> None:
        rows: Dict[DocKey, Optional[DocumentRow]] = {}
        for key in set(reads) | {w.key for w in writes}:
            rows[key] = session.get(DocumentRow, key, with_for_update=True)
        for key, version in reads.items():
            row = rows[key]
            if (row.version if row is not None else 0) != version:
                raise TransactionConflict(key)

        def load(key: DocKey) -> Optional[Dict[str, Any]]:
            row = rows[key]
            return row.data if row is not None else None

        staged = apply_writes(writes, load, now)
        for key, data in staged.items():
            row = rows[key]
            if row is None:
                session.add(DocumentRow(collection=key[0], id=key[1], data=data, version=1))
                continue
            result = session.execute(
                update(DocumentRow)
                .where(
                    DocumentRow.collection == key[0],
                    DocumentRow.id == key[1],
                    DocumentRow.version == row.version,
                )
                .values(data=data, version=row.version + 1, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise TransactionConflict(key)

    async def commit(
        self,
        writes: List[Write],
        reads: Optional[Dict[DocKey, int]] = None,
        now: Optional[datetime] = None,
    ) -> None:
        await self._call(self._commit_sync, writes, dict(reads or {}), now or self.server_now())
