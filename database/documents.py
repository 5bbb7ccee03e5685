"""
ParkWise – Document store

Collections, nested sub-collections, documents and live queries on top of the
SQLAlchemy ``documents`` table.  Paths alternate collection / document
segments: ``parkingLands`` is a collection, ``parkingLands/land1`` a document,
``parkingLands/land1/slots`` a sub-collection.
"""
from __future__ import annotations
import copy, operator, threading, uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Iterator, List, NamedTuple, Optional

from loguru import logger
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from .models import Document, SessionLocal
from .errors import (
    StoreError, PermissionDeniedError, NotFoundError, StoreUnavailableError,
)


class _ServerTimestamp:
    def __repr__(self):
        return "SERVER_TIMESTAMP"

# Replaced by the commit time when a write lands
SERVER_TIMESTAMP = _ServerTimestamp()

_OPERATORS = {
    "==": operator.eq,
    "!=": operator.ne,
    "<":  operator.lt,
    "<=": operator.le,
    ">":  operator.gt,
    ">=": operator.ge,
    "in": lambda actual, options: actual in options,
}

ASCENDING  = "asc"
DESCENDING = "desc"

_MISSING = object()


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()

def _new_id() -> str:
    return uuid.uuid4().hex[:20]

def _join(*segments) -> str:
    parts: List[str] = []
    for seg in segments:
        parts.extend(p for p in str(seg).split("/") if p)
    return "/".join(parts)

def _resolve(data: dict, ts: str) -> dict:
    out = {}
    for key, value in data.items():
        if value is SERVER_TIMESTAMP:
            out[key] = ts
        elif isinstance(value, dict):
            out[key] = _resolve(value, ts)
        else:
            out[key] = value
    return out

def _field(data: dict, name: str):
    value: Any = data
    for part in name.split("."):
        if not isinstance(value, dict) or part not in value:
            return _MISSING
        value = value[part]
    return value


# ── Snapshots ─────────────────────────────────────────────────────────────
class DocumentSnapshot:
    def __init__(self, path: str, data: Optional[dict]):
        self.path = path
        self.id = path.rsplit("/", 1)[-1]
        self._data = data

    @property
    def exists(self) -> bool:
        return self._data is not None

    def to_dict(self) -> Optional[dict]:
        return copy.deepcopy(self._data) if self._data is not None else None

    def get(self, name: str, default=None):
        if self._data is None:
            return default
        value = _field(self._data, name)
        return default if value is _MISSING else value

    def __repr__(self):
        return f"DocumentSnapshot({self.path!r}, exists={self.exists})"


class QuerySnapshot:
    def __init__(self, docs: List[DocumentSnapshot]):
        self.docs = docs

    @property
    def size(self) -> int:
        return len(self.docs)

    @property
    def empty(self) -> bool:
        return not self.docs

    def __iter__(self) -> Iterator[DocumentSnapshot]:
        return iter(self.docs)

    def __len__(self) -> int:
        return len(self.docs)


# ── References & queries ──────────────────────────────────────────────────
class Query:
    def __init__(self, store: "DocumentStore", path: str,
                 filters: tuple = (), limit: Optional[int] = None,
                 order: Optional[tuple] = None):
        if len(path.split("/")) % 2 != 1:
            raise ValueError(f"Not a collection path: {path!r}")
        self._store = store
        self.path = path
        self._filters = filters
        self._limit = limit
        self._order = order

    def where(self, field: str, op: str, value) -> "Query":
        if op not in _OPERATORS:
            raise ValueError(f"Unsupported operator {op!r}")
        return Query(self._store, self.path, self._filters + ((field, op, value),),
                     self._limit, self._order)

    def order_by(self, field: str, direction: str = ASCENDING) -> "Query":
        """Sort on a data field; documents without the field drop out."""
        if direction not in (ASCENDING, DESCENDING):
            raise ValueError(f"Unsupported direction {direction!r}")
        return Query(self._store, self.path, self._filters, self._limit,
                     (field, direction))

    def limit(self, count: int) -> "Query":
        if count < 1:
            raise ValueError("limit must be positive")
        return Query(self._store, self.path, self._filters, count, self._order)

    def arrange(self, docs: List[DocumentSnapshot]) -> List[DocumentSnapshot]:
        """Apply ordering then the limit to already filtered documents."""
        if self._order is not None:
            name, direction = self._order
            keyed = [(_field(d._data, name), d) for d in docs]
            keyed = [(value, d) for value, d in keyed if value is not _MISSING]
            keyed.sort(key=lambda pair: (pair[0], pair[1].path),
                       reverse=direction == DESCENDING)
            docs = [d for _, d in keyed]
        if self._limit is not None:
            docs = docs[:self._limit]
        return docs

    def get(self) -> QuerySnapshot:
        return self._store._query(self)

    def stream(self) -> Iterator[DocumentSnapshot]:
        return iter(self.get().docs)

    def on_snapshot(self, callback: Callable[[QuerySnapshot], None],
                    on_error: Optional[Callable[[StoreError], None]] = None,
                    ) -> "ListenerRegistration":
        """Deliver the current result now and again after every change."""
        return self._store._listen(self, callback, on_error)

    def matches(self, data: dict) -> bool:
        for name, op, expected in self._filters:
            actual = _field(data, name)
            if actual is _MISSING:
                return False
            try:
                if not _OPERATORS[op](actual, expected):
                    return False
            except TypeError:
                return False
        return True

    def __repr__(self):
        return (f"Query({self.path!r}, filters={self._filters!r}, "
                f"order={self._order!r}, limit={self._limit})")


class CollectionReference(Query):
    def __init__(self, store: "DocumentStore", path: str):
        super().__init__(store, path)

    @property
    def id(self) -> str:
        return self.path.rsplit("/", 1)[-1]

    def document(self, doc_id: Optional[str] = None) -> "DocumentReference":
        return DocumentReference(self._store, _join(self.path, doc_id or _new_id()))

    def add(self, data: dict) -> "DocumentReference":
        ref = self.document()
        ref.set(data)
        return ref


class DocumentReference:
    def __init__(self, store: "DocumentStore", path: str):
        if not path or len(path.split("/")) % 2 != 0:
            raise ValueError(f"Not a document path: {path!r}")
        self._store = store
        self.path = path
        self.id = path.rsplit("/", 1)[-1]

    @property
    def parent(self) -> CollectionReference:
        return CollectionReference(self._store, self.path.rsplit("/", 1)[0])

    def collection(self, name: str) -> CollectionReference:
        return CollectionReference(self._store, _join(self.path, name))

    def get(self) -> DocumentSnapshot:
        return self._store._get(self.path)

    def set(self, data: dict, merge: bool = False):
        self._store._commit([_Write("set", self.path, data, merge)])

    def update(self, data: dict):
        self._store._commit([_Write("update", self.path, data, False)])

    def delete(self):
        self._store._commit([_Write("delete", self.path, None, False)])

    def __eq__(self, other):
        return isinstance(other, DocumentReference) and other.path == self.path

    def __hash__(self):
        return hash(self.path)

    def __repr__(self):
        return f"DocumentReference({self.path!r})"


# ── Writes ────────────────────────────────────────────────────────────────
class _Write(NamedTuple):
    kind:  str
    path:  str
    data:  Optional[dict]
    merge: bool


class WriteBatch:
    """Queued writes that commit all together or not at all."""

    def __init__(self, store: "DocumentStore"):
        self._store = store
        self._writes: List[_Write] = []
        self._committed = False

    def set(self, ref: DocumentReference, data: dict, merge: bool = False):
        self._writes.append(_Write("set", ref.path, data, merge))
        return self

    def update(self, ref: DocumentReference, data: dict):
        self._writes.append(_Write("update", ref.path, data, False))
        return self

    def delete(self, ref: DocumentReference):
        self._writes.append(_Write("delete", ref.path, None, False))
        return self

    def commit(self):
        if self._committed:
            raise ValueError("Batch already committed")
        self._committed = True
        self._store._commit(self._writes)

    def __len__(self):
        return len(self._writes)


class Transaction(WriteBatch):
    """Reads see committed data; every read must precede the first write."""

    def __init__(self, store: "DocumentStore", session):
        super().__init__(store)
        self._session = session

    def get(self, ref: DocumentReference) -> DocumentSnapshot:
        if self._writes:
            raise ValueError("Transactions require all reads before writes")
        self._store._check("get", ref.path)
        row = self._session.get(Document, ref.path)
        return DocumentSnapshot(ref.path, copy.deepcopy(row.data) if row else None)

    def commit(self):
        raise ValueError("Transactions are committed by run_transaction")


# ── Listeners ─────────────────────────────────────────────────────────────
class ListenerRegistration:
    def __init__(self, store: "DocumentStore", query: Query,
                 callback: Callable[[QuerySnapshot], None],
                 on_error: Optional[Callable[[StoreError], None]]):
        self._store = store
        self.query = query
        self._callback = callback
        self._on_error = on_error
        self._last = None
        self.active = True

    def unsubscribe(self):
        self._store._detach(self)

    def _deliver(self, force: bool = False):
        try:
            snap = self._store._query(self.query)
        except StoreError as e:
            self._fail(e)
            return
        key = [(d.path, d._data) for d in snap.docs]
        if not force and key == self._last:
            return
        self._last = key
        try:
            self._callback(snap)
        except Exception:
            logger.exception(f"Snapshot listener on {self.query.path} raised")

    def _fail(self, error: StoreError):
        self._store._detach(self)
        logger.warning(f"Listener on {self.query.path} detached: {error}")
        if self._on_error is not None:
            self._on_error(error)


# ── Store ─────────────────────────────────────────────────────────────────
class DocumentStore:
    """
    Document database backed by one SQLAlchemy table.

    ``rules(operation, path) -> bool`` is consulted before every read and
    write; operations are ``get``, ``list``, ``create``, ``update`` and
    ``delete``.
    """

    def __init__(self, session_factory=SessionLocal,
                 rules: Optional[Callable[[str, str], bool]] = None):
        self._session_factory = session_factory
        self._rules = rules
        self._lock = threading.RLock()
        self._listeners: List[ListenerRegistration] = []

    # public API
    def collection(self, *segments) -> CollectionReference:
        return CollectionReference(self, _join(*segments))

    def document(self, *segments) -> DocumentReference:
        return DocumentReference(self, _join(*segments))

    def batch(self) -> WriteBatch:
        return WriteBatch(self)

    def run_transaction(self, fn: Callable, *args, **kwargs):
        """Run ``fn(transaction, ...)`` and commit its writes atomically."""
        with self._lock:
            with self._session() as session:
                txn = Transaction(self, session)
                result = fn(txn, *args, **kwargs)
                changed = self._apply_all(session, txn._writes)
                session.commit()
            self._notify(changed)
        return result

    def set_rules(self, rules: Optional[Callable[[str, str], bool]]):
        self._rules = rules

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    # internals
    @contextmanager
    def _session(self):
        session = self._session_factory()
        try:
            yield session
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Document store error: {e}")
            raise StoreUnavailableError(str(e)) from e
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def _check(self, operation: str, path: str):
        if self._rules is not None and not self._rules(operation, path):
            raise PermissionDeniedError(path, operation)

    # Reads hold the lock too: closing a session on a shared connection
    # would roll back a writer's uncommitted flush.
    def _get(self, path: str) -> DocumentSnapshot:
        self._check("get", path)
        with self._lock, self._session() as session:
            row = session.get(Document, path)
            return DocumentSnapshot(path, copy.deepcopy(row.data) if row else None)

    def _query(self, query: Query) -> QuerySnapshot:
        self._check("list", query.path)
        with self._lock, self._session() as session:
            rows = session.execute(
                select(Document)
                .where(Document.parent == query.path)
                .order_by(Document.created_at, Document.path)
            ).scalars().all()
            docs = [
                DocumentSnapshot(r.path, copy.deepcopy(r.data))
                for r in rows if query.matches(r.data or {})
            ]
        return QuerySnapshot(query.arrange(docs))

    def _commit(self, writes: List[_Write]):
        if not writes:
            return
        with self._lock:
            with self._session() as session:
                changed = self._apply_all(session, writes)
                session.commit()
            self._notify(changed)

    def _apply_all(self, session, writes: List[_Write]) -> set:
        ts = _now_iso()
        changed = set()
        for w in writes:
            self._apply(session, w, ts)
            changed.add(w.path.rsplit("/", 1)[0])
        return changed

    def _apply(self, session, w: _Write, ts: str):
        row = session.get(Document, w.path)
        if w.kind == "delete":
            self._check("delete", w.path)
            if row is not None:
                session.delete(row)
                session.flush()
            return

        data = _resolve(w.data or {}, ts)
        if w.kind == "update":
            self._check("update", w.path)
            if row is None:
                raise NotFoundError(w.path, "update")
            row.data = {**(row.data or {}), **data}
        elif row is None:
            self._check("create", w.path)
            parent, doc_id = w.path.rsplit("/", 1)
            session.add(Document(path=w.path, parent=parent, doc_id=doc_id, data=data))
        else:
            self._check("update", w.path)
            row.data = {**(row.data or {}), **data} if w.merge else data
        session.flush()

    def _listen(self, query, callback, on_error) -> ListenerRegistration:
        reg = ListenerRegistration(self, query, callback, on_error)
        with self._lock:
            self._listeners.append(reg)
            reg._deliver(force=True)
        return reg

    def _detach(self, reg: ListenerRegistration):
        with self._lock:
            reg.active = False
            if reg in self._listeners:
                self._listeners.remove(reg)

    def _notify(self, changed: set):
        for reg in list(self._listeners):
            if reg.active and reg.query.path in changed:
                reg._deliver()
