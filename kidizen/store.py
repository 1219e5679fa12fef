"""
Entity store abstraction: ancestor-scoped keys, transactions, and two backends.

Both backends share the transaction semantics the rest of the service relies on:

- reads inside a transaction see the snapshot taken at the first read and never
  the transaction's own buffered writes;
- writes are buffered and become visible atomically on commit;
- keys created without an id get one allocated at commit time;
- commit fails with `StorageError` if an entity the transaction read was
  changed or deleted by another transaction since it was read.
"""

from __future__ import annotations

import base64
import binascii
import copy
import json
import threading
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Protocol

from sqlalchemy import JSON, Column, Integer, String, create_engine, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from kidizen.errors import Conflict, StorageError


@dataclass
class Key:
    """Identifies an entity by kind and id, optionally under a parent key."""

    kind: str
    id: Optional[int] = None
    parent: Optional["Key"] = None

    @property
    def is_complete(self) -> bool:
        return self.id is not None

    @property
    def path(self) -> tuple:
        prefix = self.parent.path if self.parent is not None else ()
        return prefix + ((self.kind, self.id),)

    def has_ancestor(self, ancestor: "Key") -> bool:
        ancestor_path = ancestor.path
        return len(self.path) > len(ancestor_path) and self.path[: len(ancestor_path)] == ancestor_path


@dataclass
class Entity:
    key: Key
    data: Dict[str, Any]

    @property
    def id(self) -> str:
        return str(self.key.id)


@dataclass
class QueryResult:
    entities: List[Entity]
    end_cursor: Optional[str] = None
    more_results: bool = False


class Transaction(Protocol):
    """Operations available inside one store transaction."""

    def __enter__(self) -> "Transaction":
        ...

    def __exit__(self, exc_type, exc, tb) -> bool:
        ...

    def get(self, key: Key) -> Optional[Entity]:
        ...

    def query(
        self,
        kind: str,
        *,
        ancestor: Optional[Key] = None,
        filters: Optional[Dict[str, Any]] = None,
        projection: Optional[List[str]] = None,
        limit: Optional[int] = None,
        start_cursor: Optional[str] = None,
    ) -> QueryResult:
        ...

    def put(self, key: Key, data: Dict[str, Any]) -> None:
        ...

    def delete(self, *keys: Key) -> None:
        ...

    def commit(self) -> None:
        ...

    def rollback(self) -> None:
        ...


class EntityStore(Protocol):
    """Interface for the transactional entity store."""

    def transaction(self, *, read_only: bool = False) -> Transaction:
        ...

    def put(self, key: Key, data: Dict[str, Any]) -> Key:
        ...


def encode_cursor(last_id: int) -> str:
    raw = json.dumps({"after": last_id}).encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii")


def decode_cursor(cursor: str) -> int:
    try:
        payload = json.loads(base64.urlsafe_b64decode(cursor.encode("ascii")))
        last_id = payload["after"]
    except (binascii.Error, ValueError, TypeError, KeyError, UnicodeError) as exc:
        raise Conflict() from exc
    if not isinstance(last_id, int) or isinstance(last_id, bool):
        raise Conflict()
    return last_id


def project_fields(data: Dict[str, Any], projection: Iterable[str]) -> Dict[str, Any]:
    """Return only the dotted property paths in `projection`, keyed by path."""
    projected: Dict[str, Any] = {}
    for path in projection:
        value: Any = data
        for part in path.split("."):
            value = value.get(part) if isinstance(value, dict) else None
        projected[path] = value
    return projected


class _BufferedTransaction:
    """Buffers writes until commit; subclasses provide reads and apply."""

    def __init__(self, *, read_only: bool = False):
        self.read_only = read_only
        self._mutations: list[tuple[str, Key, Optional[Dict[str, Any]]]] = []
        self._watched: set[tuple] = set()
        self._active = True

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        if exc_type is not None:
            if self._active:
                self.rollback()
            return False
        if self._active:
            self.commit()
        return False

    @property
    def active(self) -> bool:
        return self._active

    def _check_active(self) -> None:
        if not self._active:
            raise StorageError("Transaction is no longer active.")

    def _check_writable(self) -> None:
        self._check_active()
        if self.read_only:
            raise StorageError("Cannot write inside a read-only transaction.")

    def put(self, key: Key, data: Dict[str, Any]) -> None:
        self._check_writable()
        self._mutations.append(("put", key, copy.deepcopy(data)))

    def delete(self, *keys: Key) -> None:
        self._check_writable()
        for key in keys:
            if not key.is_complete:
                raise StorageError(f"Cannot delete incomplete key of kind {key.kind}.")
            self._mutations.append(("delete", key, None))

    def commit(self) -> None:
        self._check_active()
        try:
            self._apply(self._mutations)
        except Exception:
            self._active = False
            self._mutations = []
            self._release()
            raise
        self._active = False
        self._mutations = []
        self._release()

    def rollback(self) -> None:
        self._active = False
        self._mutations = []
        self._release()

    def _watch(self, key: Key) -> None:
        self._watched.add(key.path)

    def _apply(self, mutations: list[tuple[str, Key, Optional[Dict[str, Any]]]]) -> None:
        raise NotImplementedError

    def _release(self) -> None:
        return None


class InMemoryTransaction(_BufferedTransaction):
    def __init__(self, store: "InMemoryEntityStore", *, read_only: bool = False):
        super().__init__(read_only=read_only)
        self._store = store
        self._snapshot: Optional[Dict[tuple, tuple[Key, Dict[str, Any]]]] = None
        self._versions: Dict[tuple, int] = {}

    def _view(self) -> Dict[tuple, tuple[Key, Dict[str, Any]]]:
        self._check_active()
        if self._snapshot is None:
            self._snapshot, self._versions = self._store.snapshot()
        return self._snapshot

    def get(self, key: Key) -> Optional[Entity]:
        if not key.is_complete:
            raise StorageError(f"Cannot get incomplete key of kind {key.kind}.")
        found = self._view().get(key.path)
        self._watch(key)
        if found is None:
            return None
        stored_key, data = found
        return Entity(key=stored_key, data=copy.deepcopy(data))

    def query(
        self,
        kind: str,
        *,
        ancestor: Optional[Key] = None,
        filters: Optional[Dict[str, Any]] = None,
        projection: Optional[List[str]] = None,
        limit: Optional[int] = None,
        start_cursor: Optional[str] = None,
    ) -> QueryResult:
        after = decode_cursor(start_cursor) if start_cursor else None
        matches: list[tuple[Key, Dict[str, Any]]] = []
        for stored_key, data in self._view().values():
            if stored_key.kind != kind:
                continue
            if ancestor is not None and not stored_key.has_ancestor(ancestor):
                continue
            if filters and any(data.get(name) != value for name, value in filters.items()):
                continue
            if after is not None and stored_key.id <= after:
                continue
            matches.append((stored_key, data))
        matches.sort(key=lambda item: item[0].id)

        more_results = False
        if limit is not None and len(matches) > limit:
            matches = matches[:limit]
            more_results = True

        entities = [
            Entity(
                key=stored_key,
                data=project_fields(data, projection) if projection else copy.deepcopy(data),
            )
            for stored_key, data in matches
        ]
        end_cursor = encode_cursor(entities[-1].key.id) if entities else start_cursor
        return QueryResult(entities=entities, end_cursor=end_cursor, more_results=more_results)

    def _apply(self, mutations: list[tuple[str, Key, Optional[Dict[str, Any]]]]) -> None:
        expected: Dict[tuple, int] = {}
        if self._snapshot is not None:
            paths = set(self._watched)
            paths.update(key.path for _, key, _ in mutations if key.is_complete)
            expected = {path: self._versions.get(path, 0) for path in paths}
        self._store.apply(mutations, expected)


class InMemoryEntityStore:
    """Simple in-memory entity store for development and tests."""

    def __init__(self):
        self.entities: Dict[tuple, tuple[Key, Dict[str, Any]]] = {}
        # Bumped on every write to a path, deletes included.
        self.versions: Dict[tuple, int] = {}
        self._next_id = 1
        self._lock = threading.Lock()

    def transaction(self, *, read_only: bool = False) -> InMemoryTransaction:
        return InMemoryTransaction(self, read_only=read_only)

    def put(self, key: Key, data: Dict[str, Any]) -> Key:
        with self.transaction() as tx:
            tx.put(key, data)
        return key

    def snapshot(self) -> tuple[Dict[tuple, tuple[Key, Dict[str, Any]]], Dict[tuple, int]]:
        with self._lock:
            return copy.deepcopy(self.entities), dict(self.versions)

    def apply(
        self,
        mutations: list[tuple[str, Key, Optional[Dict[str, Any]]]],
        expected: Optional[Dict[tuple, int]] = None,
    ) -> None:
        """Apply `mutations` atomically unless a path moved past its `expected` version."""
        with self._lock:
            for path, version in (expected or {}).items():
                if self.versions.get(path, 0) != version:
                    raise StorageError(f"Transaction conflict on {path}.")
            for op, key, data in mutations:
                if op == "put":
                    if not key.is_complete:
                        key.id = self._next_id
                        self._next_id += 1
                    else:
                        self._next_id = max(self._next_id, key.id + 1)
                    self.entities[key.path] = (copy.deepcopy(key), copy.deepcopy(data))
                else:
                    self.entities.pop(key.path, None)
                self.versions[key.path] = self.versions.get(key.path, 0) + 1

    def count(self, kind: str) -> int:
        return sum(1 for stored_key, _ in self.entities.values() if stored_key.kind == kind)

    def reset(self) -> None:
        """Clear all stored data (useful in tests)."""
        with self._lock:
            self.entities.clear()
            self.versions.clear()
            self._next_id = 1


class SqlTransaction(_BufferedTransaction):
    def __init__(self, store: "SqlEntityStore", *, read_only: bool = False):
        super().__init__(read_only=read_only)
        self._store = store
        self._session: Optional[Session] = None
        # Strong references keep loaded rows in the identity map until commit.
        self._loaded: Dict[int, EntityRow] = {}

    def _get_session(self) -> Session:
        self._check_active()
        if self._session is None:
            self._session = self._store.Session()
        return self._session

    def get(self, key: Key) -> Optional[Entity]:
        if not key.is_complete:
            raise StorageError(f"Cannot get incomplete key of kind {key.kind}.")
        try:
            row = self._get_session().get(EntityRow, key.id)
        except SQLAlchemyError as exc:
            raise StorageError(f"Failed to read {key.kind} {key.id}: {exc}") from exc
        if row is None or not self._store.row_matches(row, key):
            return None
        self._loaded[row.id] = row
        return Entity(key=self._store.row_key(row), data=copy.deepcopy(row.data))

    def query(
        self,
        kind: str,
        *,
        ancestor: Optional[Key] = None,
        filters: Optional[Dict[str, Any]] = None,
        projection: Optional[List[str]] = None,
        limit: Optional[int] = None,
        start_cursor: Optional[str] = None,
    ) -> QueryResult:
        after = decode_cursor(start_cursor) if start_cursor else None
        stmt = select(EntityRow).where(EntityRow.kind == kind).order_by(EntityRow.id.asc())
        if ancestor is not None:
            stmt = stmt.where(
                EntityRow.parent_kind == ancestor.kind,
                EntityRow.parent_id == ancestor.id,
            )
        for name, value in (filters or {}).items():
            stmt = stmt.where(_json_equals(EntityRow.data[name], value))
        if after is not None:
            stmt = stmt.where(EntityRow.id > after)
        if limit is not None:
            stmt = stmt.limit(limit + 1)

        try:
            rows = list(self._get_session().execute(stmt).scalars())
        except SQLAlchemyError as exc:
            raise StorageError(f"Failed to query {kind}: {exc}") from exc
        self._loaded.update((row.id, row) for row in rows)

        more_results = False
        if limit is not None and len(rows) > limit:
            rows = rows[:limit]
            more_results = True

        entities = [
            Entity(
                key=self._store.row_key(row),
                data=project_fields(row.data, projection) if projection else copy.deepcopy(row.data),
            )
            for row in rows
        ]
        end_cursor = encode_cursor(entities[-1].key.id) if entities else start_cursor
        return QueryResult(entities=entities, end_cursor=end_cursor, more_results=more_results)

    def _apply(self, mutations: list[tuple[str, Key, Optional[Dict[str, Any]]]]) -> None:
        session = self._get_session()
        try:
            for op, key, data in mutations:
                if op == "put":
                    row = session.get(EntityRow, key.id) if key.is_complete else None
                    if row is None:
                        row = EntityRow(
                            id=key.id,
                            kind=key.kind,
                            parent_kind=key.parent.kind if key.parent else None,
                            parent_id=key.parent.id if key.parent else None,
                            data=data,
                        )
                        session.add(row)
                        session.flush()
                        key.id = row.id
                    else:
                        row.data = data
                else:
                    row = session.get(EntityRow, key.id)
                    if row is not None:
                        session.delete(row)
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            raise StorageError(f"Failed to commit transaction: {exc}") from exc

    def _release(self) -> None:
        if self._session is not None:
            self._session.rollback()
            self._session.close()
            self._session = None
        self._loaded = {}


def _json_equals(element, value: Any):
    if isinstance(value, bool):
        return element.as_boolean() == value
    if isinstance(value, int):
        return element.as_integer() == value
    if isinstance(value, float):
        return element.as_float() == value
    return element.as_string() == value


class SqlEntityStore:
    """
    SQLAlchemy-backed implementation. Accepts any SQLAlchemy URL (e.g., Postgres or SQLite for tests).
    """

    def __init__(self, database_url: str):
        if not database_url:
            raise ValueError("DATABASE_URL is required for SqlEntityStore")
        engine = create_engine(
            database_url,
            future=True,
            pool_pre_ping=True,
            pool_recycle=1800,
        )
        if engine.dialect.name != "sqlite":
            # Pin each transaction to the snapshot taken at its first read.
            engine = engine.execution_options(isolation_level="REPEATABLE READ")
        self.engine = engine
        self.Session = sessionmaker(
            bind=self.engine, class_=Session, expire_on_commit=False, future=True
        )
        Base.metadata.create_all(self.engine)

    def transaction(self, *, read_only: bool = False) -> SqlTransaction:
        return SqlTransaction(self, read_only=read_only)

    def put(self, key: Key, data: Dict[str, Any]) -> Key:
        with self.transaction() as tx:
            tx.put(key, data)
        return key

    @staticmethod
    def row_key(row: "EntityRow") -> Key:
        parent = Key(row.parent_kind, row.parent_id) if row.parent_kind else None
        return Key(kind=row.kind, id=row.id, parent=parent)

    @staticmethod
    def row_matches(row: "EntityRow", key: Key) -> bool:
        if row.kind != key.kind:
            return False
        if key.parent is None:
            return row.parent_kind is None
        return row.parent_kind == key.parent.kind and row.parent_id == key.parent.id


Base = declarative_base()


class EntityRow(Base):
    __tablename__ = "entities"

    id = Column(Integer, primary_key=True, autoincrement=True)
    kind = Column(String, nullable=False, index=True)
    parent_kind = Column(String, nullable=True)
    parent_id = Column(Integer, nullable=True, index=True)
    data = Column(JSON, nullable=False, default=dict)
    version = Column(Integer, nullable=False)

    # UPDATE and DELETE match on the version read, so stale writes raise StaleDataError.
    __mapper_args__ = {"version_id_col": version}
