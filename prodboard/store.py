"""Document store client.

A narrow document database interface: point reads by collection and id,
filtered and sorted queries, and an optimistic-concurrency transaction.
Transactions record the version of every document they read; the commit is
rejected with ``TransactionConflict`` when any of those versions moved, and
``DocumentStore.run_transaction`` replays the callback with exponential
backoff until it commits or the attempt budget is spent.
"""

from __future__ import annotations

import asyncio
import copy
import logging
import random
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, TypeVar

from .errors import Internal, Unavailable
from .utils import new_id, now_utc

logger = logging.getLogger(__name__)

T = TypeVar("T")
DocKey = Tuple[str, str]


# === Field transforms resolved at commit time ===


class _ServerTimestamp:
    def __repr__(self) -> str:
        return "SERVER_TIMESTAMP"


SERVER_TIMESTAMP = _ServerTimestamp()


@dataclass(frozen=True)
class ArrayUnion:
    values: tuple


@dataclass(frozen=True)
class ArrayRemove:
    values: tuple


def array_union(*values: Any) -> ArrayUnion:
    return ArrayUnion(values)


def array_remove(*values: Any) -> ArrayRemove:
    return ArrayRemove(values)


def _resolve(value: Any, current: Any, now: datetime) -> Any:
    if value is SERVER_TIMESTAMP:
        return now
    if isinstance(value, ArrayUnion):
        items = list(current) if isinstance(current, list) else []
        for item in value.values:
            if item not in items:
                items.append(item)
        return items
    if isinstance(value, ArrayRemove):
        items = list(current) if isinstance(current, list) else []
        return [item for item in items if item not in value.values]
    return copy.deepcopy(value)


# === Snapshots and writes ===


@dataclass
class DocumentSnapshot:
    id: str
    data: Optional[Dict[str, Any]]
    version: int = 0  # 0 means the document was never written

    @property
    def exists(self) -> bool:
        return self.data is not None


@dataclass
class Write:
    op: str  # set|update|delete
    collection: str
    doc_id: str
    data: Optional[Dict[str, Any]] = None

    @property
    def key(self) -> DocKey:
        return (self.collection, self.doc_id)


class TransactionConflict(Exception):
    """A document read by a transaction changed before it committed."""

    def __init__(self, key: DocKey) -> None:
        super().__init__(f"{key[0]}/{key[1]} changed during transaction")
        self.key = key


def apply_writes(
    writes: List[Write],
    load: Callable[[DocKey], Optional[Dict[str, Any]]],
    now: datetime,
) -> Dict[DocKey, Optional[Dict[str, Any]]]:
    """Fold ``writes`` over the current documents and return the new state per key.

    ``None`` in the result marks a deleted document.
    """
    staged: Dict[DocKey, Optional[Dict[str, Any]]] = {}
    for write in writes:
        key = write.key
        current = staged[key] if key in staged else load(key)
        if write.op == "delete":
            staged[key] = None
        elif write.op == "set":
            staged[key] = {name: _resolve(value, None, now) for name, value in (write.data or {}).items()}
        elif write.op == "update":
            if current is None:
                raise Internal(f"Cannot update missing document {key[0]}/{key[1]}")
            updated = dict(current)
            for name, value in (write.data or {}).items():
                updated[name] = _resolve(value, current.get(name), now)
            staged[key] = updated
        else:
            raise ValueError(f"unknown write op {write.op!r}")
    return staged


def _sort_key(field_name: str) -> Callable[[DocumentSnapshot], tuple]:
    def key(snapshot: DocumentSnapshot) -> tuple:
        value = (snapshot.data or {}).get(field_name)
        return (value is None, value if value is not None else 0, snapshot.id)

    return key


def filter_and_sort(
    snapshots: List[DocumentSnapshot],
    where: Optional[Tuple[str, Any]],
    order_by: Optional[str],
) -> List[DocumentSnapshot]:
    if where is not None:
        field_name, expected = where
        snapshots = [s for s in snapshots if (s.data or {}).get(field_name) == expected]
    if order_by is not None:
        snapshots = sorted(snapshots, key=_sort_key(order_by))
    return snapshots


# === Transactions ===


class Transaction:
    """Handle passed to a transaction callback.

    Reads go to the store and are recorded; writes are buffered and only
    reach the store on commit. All reads must happen before the first write.
    """

    def __init__(self, store: DocumentStore) -> None:
        self._store = store
        # every SERVER_TIMESTAMP written by this attempt resolves to this value
        self.now = store.server_now()
        self._reads: Dict[DocKey, int] = {}
        self._writes: List[Write] = []

    def _ensure_reading(self) -> None:
        if self._writes:
            raise Internal("Transactions must perform all reads before any writes")

    def _record(self, collection: str, snapshot: DocumentSnapshot) -> None:
        self._reads.setdefault((collection, snapshot.id), snapshot.version)

    async def get(self, collection: str, doc_id: str) -> DocumentSnapshot:
        self._ensure_reading()
        snapshot = await self._store.get(collection, doc_id)
        self._record(collection, snapshot)
        return snapshot

    async def query(
        self,
        collection: str,
        where: Optional[Tuple[str, Any]] = None,
        order_by: Optional[str] = None,
    ) -> List[DocumentSnapshot]:
        self._ensure_reading()
        snapshots = await self._store.query(collection, where=where, order_by=order_by)
        for snapshot in snapshots:
            self._record(collection, snapshot)
        return snapshots

    def set(self, collection: str, doc_id: str, data: Dict[str, Any]) -> None:
        self._writes.append(Write("set", collection, doc_id, data))

    def update(self, collection: str, doc_id: str, data: Dict[str, Any]) -> None:
        self._writes.append(Write("update", collection, doc_id, data))

    def delete(self, collection: str, doc_id: str) -> None:
        self._writes.append(Write("delete", collection, doc_id))

    async def commit(self) -> None:
        if not self._writes:
            return
        await self._store.commit(self._writes, self._reads, now=self.now)


# === Store interface ===


class DocumentStore:
    """Base class for store backends.

    Subclasses implement ``get``, ``query`` and ``commit``; everything else
    is shared.
    """

    def __init__(
        self,
        max_attempts: int = 5,
        backoff_base: float = 0.02,
        backoff_max: float = 1.0,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self._last_timestamp: Optional[datetime] = None

    def new_id(self) -> str:
        return new_id()

    def server_now(self) -> datetime:
        # strictly increasing so creation order survives sorting by timestamp
        now = now_utc()
        if self._last_timestamp is not None and now <= self._last_timestamp:
            now = self._last_timestamp + timedelta(microseconds=1)
        self._last_timestamp = now
        return now

    async def get(self, collection: str, doc_id: str) -> DocumentSnapshot:
        raise NotImplementedError

    async def query(
        self,
        collection: str,
        where: Optional[Tuple[str, Any]] = None,
        order_by: Optional[str] = None,
    ) -> List[DocumentSnapshot]:
        raise NotImplementedError

    async def commit(
        self,
        writes: List[Write],
        reads: Optional[Dict[DocKey, int]] = None,
        now: Optional[datetime] = None,
    ) -> None:
        raise NotImplementedError

    async def set(
        self,
        collection: str,
        doc_id: str,
        data: Dict[str, Any],
        now: Optional[datetime] = None,
    ) -> None:
        await self.commit([Write("set", collection, doc_id, data)], now=now)

    async def update(self, collection: str, doc_id: str, data: Dict[str, Any]) -> None:
        await self.commit([Write("update", collection, doc_id, data)])

    async def delete(self, collection: str, doc_id: str) -> None:
        await self.commit([Write("delete", collection, doc_id)])

    def backoff(self, attempt: int) -> float:
        delay = min(self.backoff_max, self.backoff_base * (2 ** attempt))
        return delay + random.uniform(0, delay / 2) if delay else 0.0

    async def run_transaction(
        self,
        fn: Callable[[Transaction], Awaitable[T]],
        max_attempts: Optional[int] = None,
    ) -> T:
        """Run ``fn`` inside a transaction, replaying it on commit conflicts.

        Errors raised by ``fn`` abort the attempt without writing anything and
        propagate unchanged. Raises ``Unavailable`` once the attempt budget is
        exhausted.
        """
        attempts = max_attempts or self.max_attempts
        for attempt in range(attempts):
            tx = Transaction(self)
            result = await fn(tx)
            try:
                await tx.commit()
            except TransactionConflict as exc:
                delay = self.backoff(attempt)
                logger.debug(
                    "Transaction attempt %d/%d conflicted on %s, retrying in %.3fs",
                    attempt + 1,
                    attempts,
                    "/".join(exc.key),
                    delay,
                )
                await asyncio.sleep(delay)
                continue
            return result
        logger.warning("Transaction abandoned after %d conflicting attempts", attempts)
        raise Unavailable("The board is busy right now, please retry")


class MemoryDocumentStore(DocumentStore):
    """Process-local store.

    Every read yields to the event loop so concurrent transactions
    interleave the way they would against a remote database. Commits run
    without suspending and are therefore atomic.
    """

    def __init__(self, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._docs: Dict[DocKey, Dict[str, Any]] = {}
        self._versions: Dict[DocKey, int] = {}

    def _snapshot(self, key: DocKey) -> DocumentSnapshot:
        data = self._docs.get(key)
        return DocumentSnapshot(
            id=key[1],
            data=copy.deepcopy(data) if data is not None else None,
            version=self._versions.get(key, 0),
        )

    async def get(self, collection: str, doc_id: str) -> DocumentSnapshot:
        await asyncio.sleep(0)
        return self._snapshot((collection, doc_id))

    async def query(
        self,
        collection: str,
        where: Optional[Tuple[str, Any]] = None,
        order_by: Optional[str] = None,
    ) -> List[DocumentSnapshot]:
        await asyncio.sleep(0)
        snapshots = [self._snapshot(key) for key in self._docs if key[0] == collection]
        return filter_and_sort(snapshots, where, order_by)

    async def commit(
        self,
        writes: List[Write],
        reads: Optional[Dict[DocKey, int]] = None,
        now: Optional[datetime] = None,
    ) -> None:
        await asyncio.sleep(0)
        for key, version in (reads or {}).items():
            if self._versions.get(key, 0) != version:
                raise TransactionConflict(key)
        staged = apply_writes(writes, self._docs.get, now or self.server_now())
        for key, data in staged.items():
            if data is None:
                self._docs.pop(key, None)
            else:
                self._docs[key] = data
            self._versions[key] = self._versions.get(key, 0) + 1
