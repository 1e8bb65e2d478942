"""
Document Store

Persistence for price series and user documents. Two implementations
share one async interface:

- MemoryDocumentStore: process-local, used in tests and single-node runs
- SqliteDocumentStore: JSON documents in SQLite, calls run in a threadpool

Partial updates use dotted paths ("vehicle.isPluggedIn") that address
nested maps and merge into the existing document.
"""

import asyncio
import contextlib
import copy
import json
import logging
import sqlite3
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple

logger = logging.getLogger("smartcharge.store")

_MISSING = object()


class DocumentNotFound(KeyError):
    """Raised when an update targets a document that does not exist."""


def apply_partial(doc: Dict[str, Any], partial: Dict[str, Any]) -> Dict[str, Any]:
    """Merge ``partial`` into a copy of ``doc``. Dotted keys address nested maps."""
    merged = copy.deepcopy(doc)
    for path, value in partial.items():
        target = merged
        parts = path.split(".")
        for part in parts[:-1]:
            child = target.get(part)
            if not isinstance(child, dict):
                child = {}
                target[part] = child
            target = child
        target[parts[-1]] = copy.deepcopy(value)
    return merged


def read_path(doc: Dict[str, Any], path: str) -> Any:
    """Return the value at a dotted path, or a sentinel when absent."""
    current: Any = doc
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return _MISSING
        current = current[part]
    return current


def _same_value(actual: Any, expected: Any) -> bool:
    # True == 1 must not satisfy a boolean compare-and-set
    return actual is not _MISSING and type(actual) is type(expected) and actual == expected


class DocumentStore(ABC):
    """Async document store used by the charging core."""

    @abstractmethod
    async def get_price_series(self, zone: str) -> Optional[Dict[str, Any]]: ...

    @abstractmethod
    async def put_price_series(self, zone: str, doc: Dict[str, Any]) -> None:
        """Replace the zone's series document entirely."""

    @abstractmethod
    async def get_user(self, user_id: str) -> Optional[Dict[str, Any]]: ...

    @abstractmethod
    async def put_user(self, user_id: str, doc: Dict[str, Any]) -> None: ...

    @abstractmethod
    async def list_users(self) -> Dict[str, Dict[str, Any]]: ...

    @abstractmethod
    async def find_user_by_vin(self, vin: str) -> Optional[Tuple[str, Dict[str, Any]]]: ...

    @abstractmethod
    async def update_user_fields(self, user_id: str, partial: Dict[str, Any]) -> Dict[str, Any]:
        """Merge ``partial`` into the user's document and return the new document."""

    @abstractmethod
    async def batch_update(self, updates: List[Tuple[str, Dict[str, Any]]]) -> None:
        """Apply several user updates; nothing is written if any user is missing."""

    @abstractmethod
    async def compare_and_set(self, user_id: str, path: str, expected: Any, new: Any) -> bool:
        """Atomically set ``path`` to ``new`` if it currently equals ``expected``."""


class MemoryDocumentStore(DocumentStore):
    def __init__(self) -> None:
        self._prices: Dict[str, Dict[str, Any]] = {}
        self._users: Dict[str, Dict[str, Any]] = {}
        self._lock = asyncio.Lock()

    async def get_price_series(self, zone: str) -> Optional[Dict[str, Any]]:
        async with self._lock:
            doc = self._prices.get(zone)
            return copy.deepcopy(doc) if doc is not None else None

    async def put_price_series(self, zone: str, doc: Dict[str, Any]) -> None:
        async with self._lock:
            self._prices[zone] = copy.deepcopy(doc)

    async def get_user(self, user_id: str) -> Optional[Dict[str, Any]]:
        async with self._lock:
            doc = self._users.get(user_id)
            return copy.deepcopy(doc) if doc is not None else None

    async def put_user(self, user_id: str, doc: Dict[str, Any]) -> None:
        async with self._lock:
            self._users[user_id] = copy.deepcopy(doc)

    async def list_users(self) -> Dict[str, Dict[str, Any]]:
        async with self._lock:
            return copy.deepcopy(self._users)

    async def find_user_by_vin(self, vin: str) -> Optional[Tuple[str, Dict[str, Any]]]:
        async with self._lock:
            for user_id, doc in self._users.items():
                if (doc.get("vehicle") or {}).get("vin") == vin:
                    return user_id, copy.deepcopy(doc)
        return None

    async def update_user_fields(self, user_id: str, partial: Dict[str, Any]) -> Dict[str, Any]:
        async with self._lock:
            if user_id not in self._users:
                raise DocumentNotFound(user_id)
            self._users[user_id] = apply_partial(self._users[user_id], partial)
            return copy.deepcopy(self._users[user_id])

    async def batch_update(self, updates: List[Tuple[str, Dict[str, Any]]]) -> None:
        async with self._lock:
            missing = [user_id for user_id, _ in updates if user_id not in self._users]
            if missing:
                raise DocumentNotFound(", ".join(missing))
            staged = dict(self._users)
            for user_id, partial in updates:
                staged[user_id] = apply_partial(staged[user_id], partial)
            self._users = staged

    async def compare_and_set(self, user_id: str, path: str, expected: Any, new: Any) -> bool:
        async with self._lock:
            doc = self._users.get(user_id)
            if doc is None:
                raise DocumentNotFound(user_id)
            if not _same_value(read_path(doc, path), expected):
                return False
            self._users[user_id] = apply_partial(doc, {path: new})
            return True


class SqliteDocumentStore(DocumentStore):
    """
    JSON documents in SQLite.

    Each call opens its own connection in a worker thread; read-modify-write
    operations run inside BEGIN IMMEDIATE so concurrent writers serialize.
    """

    def __init__(self, db_path: str):
        self.db_path = db_path
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._ensure_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=30.0, isolation_level=None)
        return conn

    @contextlib.contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            conn.close()

    def _ensure_schema(self) -> None:
        with self._transaction() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS price_series (
                    zone TEXT PRIMARY KEY,
                    doc TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS users (
                    user_id TEXT PRIMARY KEY,
                    vin TEXT,
                    doc TEXT NOT NULL
                )
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_users_vin ON users(vin)")

    @staticmethod
    def _vin_of(doc: Dict[str, Any]) -> Optional[str]:
        return (doc.get("vehicle") or {}).get("vin")

    def _write_user(self, conn: sqlite3.Connection, user_id: str, doc: Dict[str, Any]) -> None:
        conn.execute(
            "INSERT OR REPLACE INTO users (user_id, vin, doc) VALUES (?, ?, ?)",
            (user_id, self._vin_of(doc), json.dumps(doc)),
        )

    @staticmethod
    def _read_user(conn: sqlite3.Connection, user_id: str) -> Optional[Dict[str, Any]]:
        row = conn.execute("SELECT doc FROM users WHERE user_id = ?", (user_id,)).fetchone()
        return json.loads(row[0]) if row else None

    # --- sync implementations (run in threadpool) ---

    def _get_price_series(self, zone: str) -> Optional[Dict[str, Any]]:
        with contextlib.closing(self._connect()) as conn:
            row = conn.execute("SELECT doc FROM price_series WHERE zone = ?", (zone,)).fetchone()
        return json.loads(row[0]) if row else None

    def _put_price_series(self, zone: str, doc: Dict[str, Any]) -> None:
        with self._transaction() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO price_series (zone, doc) VALUES (?, ?)",
                (zone, json.dumps(doc)),
            )

    def _get_user(self, user_id: str) -> Optional[Dict[str, Any]]:
        with contextlib.closing(self._connect()) as conn:
            return self._read_user(conn, user_id)

    def _put_user(self, user_id: str, doc: Dict[str, Any]) -> None:
        with self._transaction() as conn:
            self._write_user(conn, user_id, doc)

    def _list_users(self) -> Dict[str, Dict[str, Any]]:
        with contextlib.closing(self._connect()) as conn:
            rows = conn.execute("SELECT user_id, doc FROM users ORDER BY user_id").fetchall()
        return {user_id: json.loads(doc) for user_id, doc in rows}

    def _find_user_by_vin(self, vin: str) -> Optional[Tuple[str, Dict[str, Any]]]:
        with contextlib.closing(self._connect()) as conn:
            row = conn.execute(
                "SELECT user_id, doc FROM users WHERE vin = ? LIMIT 1", (vin,)
            ).fetchone()
        return (row[0], json.loads(row[1])) if row else None

    def _update_user_fields(self, user_id: str, partial: Dict[str, Any]) -> Dict[str, Any]:
        with self._transaction() as conn:
            doc = self._read_user(conn, user_id)
            if doc is None:
                raise DocumentNotFound(user_id)
            merged = apply_partial(doc, partial)
            self._write_user(conn, user_id, merged)
            return merged

    def _batch_update(self, updates: List[Tuple[str, Dict[str, Any]]]) -> None:
        with self._transaction() as conn:
            for user_id, partial in updates:
                doc = self._read_user(conn, user_id)
                if doc is None:
                    raise DocumentNotFound(user_id)
                self._write_user(conn, user_id, apply_partial(doc, partial))

    def _compare_and_set(self, user_id: str, path: str, expected: Any, new: Any) -> bool:
        with self._transaction() as conn:
            doc = self._read_user(conn, user_id)
            if doc is None:
                raise DocumentNotFound(user_id)
            if not _same_value(read_path(doc, path), expected):
                return False
            self._write_user(conn, user_id, apply_partial(doc, {path: new}))
            return True

    # --- async interface ---

    async def get_price_series(self, zone: str) -> Optional[Dict[str, Any]]:
        return await asyncio.to_thread(self._get_price_series, zone)

    async def put_price_series(self, zone: str, doc: Dict[str, Any]) -> None:
        await asyncio.to_thread(self._put_price_series, zone, doc)

    async def get_user(self, user_id: str) -> Optional[Dict[str, Any]]:
        return await asyncio.to_thread(self._get_user, user_id)

    async def put_user(self, user_id: str, doc: Dict[str, Any]) -> None:
        await asyncio.to_thread(self._put_user, user_id, doc)

    async def list_users(self) -> Dict[str, Dict[str, Any]]:
        return await asyncio.to_thread(self._list_users)

    async def find_user_by_vin(self, vin: str) -> Optional[Tuple[str, Dict[str, Any]]]:
        return await asyncio.to_thread(self._find_user_by_vin, vin)

    async def update_user_fields(self, user_id: str, partial: Dict[str, Any]) -> Dict[str, Any]:
        return await asyncio.to_thread(self._update_user_fields, user_id, partial)

    async def batch_update(self, updates: List[Tuple[str, Dict[str, Any]]]) -> None:
        await asyncio.to_thread(self._batch_update, updates)

    async def compare_and_set(self, user_id: str, path: str, expected: Any, new: Any) -> bool:
        return await asyncio.to_thread(self._compare_and_set, user_id, path, expected, new)


def create_store(backend: str, path: str = "data/smartcharge.db") -> DocumentStore:
    """Build the store selected in config.yaml (``store.backend``)."""
    if backend == "memory":
        return MemoryDocumentStore()
    if backend == "sqlite":
        logger.info("Using SQLite document store at %s", path)
        return SqliteDocumentStore(path)
    raise ValueError(f"Unknown store backend {backend!r} (expected 'memory' or 'sqlite')")
