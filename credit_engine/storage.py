"""
Async Storage Backend Module

Storage interface with a unit of work and per-record pessimistic locks, an
in-memory implementation for tests and local runs, and a production
PostgreSQL implementation using asyncpg. All monetary values are stored as
Decimal strings.
"""

from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from contextvars import ContextVar
from dataclasses import dataclass, fields
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, ClassVar, Dict, FrozenSet, List, Optional, Tuple, Type
import asyncio
import copy
import json

import asyncpg

from .exceptions import TransientStorageError
from .logging_config import get_logger, log_action


logger = get_logger("credit_engine.storage")


def _to_storable(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: _to_storable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_storable(v) for v in value]
    return value


@dataclass
class StorageRecord:
    """Base class for all storage records"""
    id: str
    created_at: datetime
    updated_at: datetime

    # Field names converted back from their stored text form in from_dict
    _decimal_fields: ClassVar[Tuple[str, ...]] = ()
    _date_fields: ClassVar[Tuple[str, ...]] = ()
    _enum_fields: ClassVar[Dict[str, Type[Enum]]] = {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a JSON-safe dictionary for storage"""
        return {f.name: _to_storable(getattr(self, f.name)) for f in fields(self)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]):
        """Create instance from a stored dictionary"""
        data = dict(data)
        for name in ('created_at', 'updated_at'):
            if isinstance(data.get(name), str):
                data[name] = datetime.fromisoformat(data[name])
        for name in cls._decimal_fields:
            if data.get(name) is not None:
                data[name] = Decimal(str(data[name]))
        for name in cls._date_fields:
            if isinstance(data.get(name), str):
                data[name] = date.fromisoformat(data[name])
        for name, enum_type in cls._enum_fields.items():
            if data.get(name) is not None:
                data[name] = enum_type(data[name])

        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _filter_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, Enum):
        return str(value.value)
    return str(value)


class AsyncStorageInterface(ABC):
    """Abstract interface for async storage backends"""

    def __init__(self):
        self._key_locks: Dict[Tuple[str, str], asyncio.Lock] = {}
        self._lock_users: Dict[Tuple[str, str], int] = {}
        self._held_locks: ContextVar[FrozenSet[Tuple[str, str]]] = ContextVar(
            f"held_locks_{id(self)}", default=frozenset()
        )

    @abstractmethod
    async def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to storage"""
        pass

    @abstractmethod
    async def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from storage"""
        pass

    @abstractmethod
    async def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        pass

    @abstractmethod
    async def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from storage"""
        pass

    @abstractmethod
    async def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        pass

    @abstractmethod
    async def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records whose top-level fields equal every filter value"""
        pass

    @abstractmethod
    async def count(self, table: str) -> int:
        """Count records in table"""
        pass

    @abstractmethod
    async def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        pass

    @abstractmethod
    async def next_sequence(self, name: str) -> int:
        """Return the next value of a named counter, starting at 1"""
        pass

    async def close(self) -> None:
        """Close storage connection (default no-op)"""
        pass

    async def begin_transaction(self) -> None:
        """Start a transaction bound to the current task (default no-op)"""
        pass

    async def commit(self) -> None:
        """Commit current transaction (default no-op)"""
        pass

    async def rollback(self) -> None:
        """Rollback current transaction (default no-op)"""
        pass

    def in_transaction(self) -> bool:
        return False

    @asynccontextmanager
    async def atomic(self):
        """
        Run the block as one unit of work.

        A nested ``atomic()`` joins the enclosing one. Any exception,
        cancellation included, rolls back every write made in the block.
        """
        if self.in_transaction():
            yield
            return

        await self.begin_transaction()
        try:
            yield
        except BaseException as e:
            await self.rollback()
            log_action(logger, "warning", "Transaction rolled back",
                       action="rollback", resource="storage",
                       extra={"error": type(e).__name__})
            raise
        else:
            await self.commit()

    @asynccontextmanager
    async def lock(self, table: str, record_id: str):
        """
        Hold an exclusive lock on one record for the duration of the block.

        Re-entrant within the same task so that an operation holding the
        lock may delegate to another that takes it again.
        """
        key = (table, str(record_id))
        held = self._held_locks.get()
        if key in held:
            yield
            return

        key_lock = self._key_locks.setdefault(key, asyncio.Lock())
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            async with key_lock:
                token = self._held_locks.set(held | {key})
                try:
                    yield
                finally:
                    self._held_locks.reset(token)
        finally:
            # drop the entry once no task holds or waits on it
            self._lock_users[key] -= 1
            if self._lock_users[key] == 0:
                del self._lock_users[key]
                self._key_locks.pop(key, None)


_MISSING = object()


class AsyncInMemoryStorage(AsyncStorageInterface):
    """
    In-memory storage with an undo-log unit of work.

    Each task that begins a transaction gets its own journal of the previous
    value of every record it touches; rollback restores them.
    """

    def __init__(self):
        super().__init__()
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._sequences: Dict[str, int] = {}
        self._journal: ContextVar[Optional[Dict[Tuple[str, str], Any]]] = ContextVar(
            f"memory_journal_{id(self)}", default=None
        )

    def _remember(self, table: str, record_id: str) -> None:
        journal = self._journal.get()
        if journal is None:
            return
        key = (table, record_id)
        if key not in journal:
            current = self._data.get(table, {}).get(record_id, _MISSING)
            journal[key] = current if current is _MISSING else copy.deepcopy(current)

    async def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        self._remember(table, record_id)
        self._data.setdefault(table, {})[record_id] = copy.deepcopy(data)

    async def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        record = self._data.get(table, {}).get(record_id)
        return copy.deepcopy(record) if record is not None else None

    async def load_all(self, table: str) -> List[Dict[str, Any]]:
        return [copy.deepcopy(r) for r in self._data.get(table, {}).values()]

    async def delete(self, table: str, record_id: str) -> bool:
        if record_id not in self._data.get(table, {}):
            return False
        self._remember(table, record_id)
        del self._data[table][record_id]
        return True

    async def exists(self, table: str, record_id: str) -> bool:
        return record_id in self._data.get(table, {})

    async def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        results = []
        for record in self._data.get(table, {}).values():
            if all(_filter_text(record.get(k)) == _filter_text(v) for k, v in filters.items()):
                results.append(copy.deepcopy(record))
        return results

    async def count(self, table: str) -> int:
        return len(self._data.get(table, {}))

    async def clear_table(self, table: str) -> None:
        for record_id in list(self._data.get(table, {})):
            self._remember(table, record_id)
        self._data.pop(table, None)

    async def next_sequence(self, name: str) -> int:
        self._sequences[name] = self._sequences.get(name, 0) + 1
        return self._sequences[name]

    async def begin_transaction(self) -> None:
        if self._journal.get() is not None:
            raise RuntimeError("Transaction already active in this task")
        self._journal.set({})

    async def commit(self) -> None:
        self._journal.set(None)

    async def rollback(self) -> None:
        journal = self._journal.get()
        self._journal.set(None)
        if not journal:
            return
        for (table, record_id), previous in journal.items():
            rows = self._data.setdefault(table, {})
            if previous is _MISSING:
                rows.pop(record_id, None)
            else:
                rows[record_id] = previous

    def in_transaction(self) -> bool:
        return self._journal.get() is not None


_TRANSIENT_ERRORS = (
    asyncpg.exceptions.PostgresConnectionError,
    asyncpg.exceptions.SerializationError,
    asyncpg.exceptions.DeadlockDetectedError,
    asyncpg.exceptions.TooManyConnectionsError,
    asyncpg.InterfaceError,
    asyncio.TimeoutError,
    OSError,
)


class AsyncPostgreSQLStorage(AsyncStorageInterface):
    """Async PostgreSQL storage using asyncpg, one JSONB table per entity"""

    def __init__(self, connection_string: str, pool_size: int = 10):
        super().__init__()
        self.connection_string = connection_string
        self.pool_size = pool_size
        self.pool: Optional[asyncpg.Pool] = None
        self._tables: set = set()
        self._tx: ContextVar[Optional[Tuple[Any, Any]]] = ContextVar(
            f"pg_tx_{id(self)}", default=None
        )

    async def initialize(self) -> None:
        """Initialize connection pool"""
        try:
            self.pool = await asyncpg.create_pool(
                self.connection_string,
                min_size=1,
                max_size=self.pool_size,
                command_timeout=60,
            )
        except _TRANSIENT_ERRORS as e:
            raise TransientStorageError(f"Cannot connect to database: {e}") from e

    async def close(self) -> None:
        if self.pool:
            await self.pool.close()
            self.pool = None

    @asynccontextmanager
    async def _connection(self):
        """Yield the task's transaction connection, or a pooled one"""
        if not self.pool:
            raise RuntimeError("Storage not initialized")
        try:
            current = self._tx.get()
            if current is not None:
                yield current[0]
            else:
                async with self.pool.acquire() as conn:
                    yield conn
        except _TRANSIENT_ERRORS as e:
            raise TransientStorageError(str(e)) from e

    async def _ensure_table(self, conn, table: str) -> None:
        if table in self._tables:
            return
        await conn.execute(f"""
            CREATE TABLE IF NOT EXISTS "{table}" (
                id TEXT PRIMARY KEY,
                data JSONB NOT NULL,
                created_at TIMESTAMPTZ DEFAULT NOW(),
                updated_at TIMESTAMPTZ DEFAULT NOW()
            )
        """)
        self._tables.add(table)

    @staticmethod
    def _decode(raw: Any) -> Dict[str, Any]:
        return json.loads(raw) if isinstance(raw, str) else dict(raw)

    async def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        async with self._connection() as conn:
            await self._ensure_table(conn, table)
            await conn.execute(f"""
                INSERT INTO "{table}" (id, data, updated_at)
                VALUES ($1, $2::jsonb, NOW())
                ON CONFLICT (id) DO UPDATE SET
                    data = EXCLUDED.data,
                    updated_at = NOW()
            """, record_id, json.dumps(data, default=str))

    async def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        async with self._connection() as conn:
            await self._ensure_table(conn, table)
            row = await conn.fetchrow(f'SELECT data FROM "{table}" WHERE id = $1', record_id)
            return self._decode(row['data']) if row else None

    async def load_all(self, table: str) -> List[Dict[str, Any]]:
        async with self._connection() as conn:
            await self._ensure_table(conn, table)
            rows = await conn.fetch(f'SELECT data FROM "{table}" ORDER BY created_at')
            return [self._decode(row['data']) for row in rows]

    async def delete(self, table: str, record_id: str) -> bool:
        async with self._connection() as conn:
            await self._ensure_table(conn, table)
            result = await conn.execute(f'DELETE FROM "{table}" WHERE id = $1', record_id)
            return result.split()[-1] != '0'

    async def exists(self, table: str, record_id: str) -> bool:
        async with self._connection() as conn:
            await self._ensure_table(conn, table)
            row = await conn.fetchrow(f'SELECT 1 FROM "{table}" WHERE id = $1', record_id)
            return row is not None

    async def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        if not filters:
            return await self.load_all(table)

        conditions = []
        params = []
        for key, value in filters.items():
            text = _filter_text(value)
            if text is None:
                conditions.append(f"data->>'{key}' IS NULL")
            else:
                params.append(text)
                conditions.append(f"data->>'{key}' = ${len(params)}")

        async with self._connection() as conn:
            await self._ensure_table(conn, table)
            rows = await conn.fetch(
                f'SELECT data FROM "{table}" WHERE {" AND ".join(conditions)} ORDER BY created_at',
                *params,
            )
            return [self._decode(row['data']) for row in rows]

    async def count(self, table: str) -> int:
        async with self._connection() as conn:
            await self._ensure_table(conn, table)
            return await conn.fetchval(f'SELECT COUNT(*) FROM "{table}"')

    async def clear_table(self, table: str) -> None:
        async with self._connection() as conn:
            await self._ensure_table(conn, table)
            await conn.execute(f'DELETE FROM "{table}"')

    async def next_sequence(self, name: str) -> int:
        async with self._connection() as conn:
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS "_sequences" (
                    name TEXT PRIMARY KEY,
                    value BIGINT NOT NULL
                )
            """)
            return await conn.fetchval("""
                INSERT INTO "_sequences" (name, value) VALUES ($1, 1)
                ON CONFLICT (name) DO UPDATE SET value = "_sequences".value + 1
                RETURNING value
            """, name)

    async def begin_transaction(self) -> None:
        if not self.pool:
            raise RuntimeError("Storage not initialized")
        if self._tx.get() is not None:
            raise RuntimeError("Transaction already active in this task")
        try:
            conn = await self.pool.acquire()
        except _TRANSIENT_ERRORS as e:
            raise TransientStorageError(str(e)) from e
        tx = conn.transaction()
        try:
            await tx.start()
        except _TRANSIENT_ERRORS as e:
            await self.pool.release(conn)
            raise TransientStorageError(str(e)) from e
        self._tx.set((conn, tx))

    async def commit(self) -> None:
        current = self._tx.get()
        if current is None:
            return
        self._tx.set(None)
        conn, tx = current
        try:
            await tx.commit()
        except _TRANSIENT_ERRORS as e:
            raise TransientStorageError(str(e)) from e
        finally:
            await self.pool.release(conn)

    async def rollback(self) -> None:
        current = self._tx.get()
        if current is None:
            return
        self._tx.set(None)
        conn, tx = current
        try:
            await tx.rollback()
        finally:
            await self.pool.release(conn)

    def in_transaction(self) -> bool:
        return self._tx.get() is not None

    @asynccontextmanager
    async def lock(self, table: str, record_id: str):
        """Process-local lock plus a row lock when inside a transaction"""
        async with super().lock(table, record_id):
            if self.in_transaction():
                async with self._connection() as conn:
                    await self._ensure_table(conn, table)
                    await conn.execute(
                        f'SELECT 1 FROM "{table}" WHERE id = $1 FOR UPDATE', str(record_id)
                    )
            yield


def create_async_storage(config=None) -> AsyncStorageInterface:
    """
    Factory function to create the configured storage backend.

    Args:
        config: EngineConfig; the process default when omitted

    Returns:
        AsyncInMemoryStorage, or AsyncPostgreSQLStorage (call ``initialize()``
        before use) when ``storage_type`` is ``postgresql``
    """
    if config is None:
        from .config import get_config
        config = get_config()

    if config.storage_type == "postgresql":
        if not config.database_url:
            raise ValueError("database_url is required for postgresql storage")
        return AsyncPostgreSQLStorage(config.database_url, pool_size=config.database_pool_size)

    return AsyncInMemoryStorage()
