"""
Storage Backend Module

Provides abstract storage interface and implementations for in-memory (testing),
SQLite and PostgreSQL persistence. All monetary values stored as Decimal strings.

Transactions are owned by the thread that began them: writes made inside
`atomic()` are invisible to other threads until commit and are discarded
on rollback, so no reader ever observes a partially applied loan update.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Union
from decimal import Decimal
from datetime import datetime, timezone
import sqlite3
import json
import threading
from dataclasses import dataclass, asdict
from pathlib import Path
from contextlib import contextmanager

from .errors import BusyError


@dataclass
class StorageRecord:
    """Base class for all stored records"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        result = asdict(self)
        # Convert datetime objects to ISO strings
        result['created_at'] = self.created_at.isoformat()
        result['updated_at'] = self.updated_at.isoformat()
        # Convert Decimal objects to strings
        for key, value in result.items():
            if isinstance(value, Decimal):
                result[key] = str(value)
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StorageRecord':
        """Create instance from dictionary"""
        # Convert ISO strings back to datetime objects
        if 'created_at' in data and isinstance(data['created_at'], str):
            data['created_at'] = datetime.fromisoformat(data['created_at'])
        if 'updated_at' in data and isinstance(data['updated_at'], str):
            data['updated_at'] = datetime.fromisoformat(data['updated_at'])

        return cls(**data)


def _copy(data: Dict[str, Any]) -> Dict[str, Any]:
    """Deep copy through JSON to prevent external mutation"""
    return json.loads(json.dumps(data, default=str))


def _matches(record: Dict[str, Any], filters: Dict[str, Any]) -> bool:
    for key, value in filters.items():
        if key not in record or record[key] != value:
            return False
    return True


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    @abstractmethod
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to storage"""
        pass

    @abstractmethod
    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from storage"""
        pass

    @abstractmethod
    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        pass

    @abstractmethod
    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from storage"""
        pass

    @abstractmethod
    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        pass

    @abstractmethod
    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters"""
        pass

    @abstractmethod
    def count(self, table: str) -> int:
        """Count records in table"""
        pass

    @abstractmethod
    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        pass

    @abstractmethod
    def close(self) -> None:
        """Close storage connection"""
        pass

    def begin_transaction(self) -> None:
        """Start a database transaction (default no-op)"""
        pass

    def commit(self) -> None:
        """Commit current transaction (default no-op)"""
        pass

    def rollback(self) -> None:
        """Rollback current transaction (default no-op)"""
        pass

    def lock_for_update(self, table: str, record_id: str, timeout: Optional[float] = None) -> None:
        """
        Take a row-level lock held until the current transaction ends.

        Backends without row locks rely on the caller's application-level
        lock and treat this as a no-op.
        """
        pass

    @contextmanager
    def atomic(self):
        """Context manager for atomic operations"""
        self.begin_transaction()
        try:
            yield
            self.commit()
        except BaseException:
            self.rollback()
            raise


class InMemoryStorage(StorageInterface):
    """In-memory storage implementation for testing"""

    def __init__(self):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()
        self._local = threading.local()

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists"""
        if table not in self._data:
            self._data[table] = {}

    def _pending(self) -> Optional[Dict[str, Dict[str, Optional[Dict[str, Any]]]]]:
        """Uncommitted writes of the calling thread; None outside a transaction"""
        return getattr(self._local, 'pending', None)

    def _view(self, table: str) -> Dict[str, Dict[str, Any]]:
        """Committed rows overlaid with this thread's uncommitted writes"""
        self._ensure_table(table)
        rows = dict(self._data[table])
        pending = self._pending()
        if pending and table in pending:
            for record_id, record in pending[table].items():
                if record is None:
                    rows.pop(record_id, None)
                else:
                    rows[record_id] = record
        return rows

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to memory"""
        copied = _copy(data)
        pending = self._pending()
        if pending is not None:
            pending.setdefault(table, {})[record_id] = copied
            return
        with self._lock:
            self._ensure_table(table)
            self._data[table][record_id] = copied

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from memory"""
        with self._lock:
            record = self._view(table).get(record_id)
            if record:
                return _copy(record)
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._lock:
            return [_copy(record) for record in self._view(table).values()]

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from memory"""
        with self._lock:
            existed = record_id in self._view(table)
            pending = self._pending()
            if pending is not None:
                if existed:
                    pending.setdefault(table, {})[record_id] = None
                return existed
            if existed:
                del self._data[table][record_id]
            return existed

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        with self._lock:
            return record_id in self._view(table)

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters"""
        with self._lock:
            return [_copy(record) for record in self._view(table).values()
                    if _matches(record, filters)]

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._lock:
            return len(self._view(table))

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._lock:
            self._data[table] = {}

    def begin_transaction(self) -> None:
        """Start buffering this thread's writes"""
        if self._pending() is None:
            self._local.pending = {}
            self._local.depth = 0
        self._local.depth += 1

    def commit(self) -> None:
        """Apply this thread's buffered writes in one step"""
        pending = self._pending()
        if pending is None:
            return
        self._local.depth -= 1
        if self._local.depth > 0:
            return
        with self._lock:
            for table, rows in pending.items():
                self._ensure_table(table)
                for record_id, record in rows.items():
                    if record is None:
                        self._data[table].pop(record_id, None)
                    else:
                        self._data[table][record_id] = record
        self._local.pending = None

    def rollback(self) -> None:
        """Discard this thread's buffered writes"""
        self._local.pending = None
        self._local.depth = 0

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass


class _OwnedTransactionMixin:
    """
    Single-connection backends: a transaction holds the connection lock
    from begin to commit/rollback, so other threads wait instead of
    interleaving statements into it.
    """

    busy_timeout: float = 30.0

    def _init_transactions(self) -> None:
        self._lock = threading.RLock()
        self._in_transaction = False
        self._depth = 0
        self._tables = set()

    def begin_transaction(self) -> None:
        if not self._lock.acquire(timeout=self.busy_timeout):
            raise BusyError("storage", self.busy_timeout,
                            message=f"Storage connection busy for more than {self.busy_timeout}s")
        self._depth += 1
        self._in_transaction = True

    def _end_transaction(self, finish) -> None:
        if not self._in_transaction:
            return
        self._depth -= 1
        try:
            if self._depth == 0:
                try:
                    finish()
                finally:
                    self._in_transaction = False
        finally:
            self._lock.release()

    def commit(self) -> None:
        """Commit current transaction"""
        self._end_transaction(self._connection.commit)

    def rollback(self) -> None:
        """Rollback current transaction"""
        if not self._in_transaction:
            return
        # An inner rollback aborts the whole transaction
        while self._depth > 1:
            self._depth -= 1
            self._lock.release()
        # Tables created inside the transaction are gone too
        self._tables.clear()
        self._end_transaction(self._connection.rollback)


class SQLiteStorage(_OwnedTransactionMixin, StorageInterface):
    """SQLite storage implementation for persistence"""

    def __init__(self, db_path: Union[str, Path] = ":memory:", busy_timeout: float = 30.0):
        self.db_path = str(db_path)
        self.busy_timeout = busy_timeout
        # isolation_level=None: transactions are opened explicitly with BEGIN IMMEDIATE
        self._connection = sqlite3.connect(
            self.db_path, check_same_thread=False, isolation_level=None, timeout=busy_timeout
        )
        self._connection.row_factory = sqlite3.Row
        self._init_transactions()

        # Enable WAL mode for better concurrent access
        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        if table in self._tables:
            return
        with self._lock:
            self._connection.execute(f"""
                CREATE TABLE IF NOT EXISTS {table} (
                    id TEXT PRIMARY KEY,
                    data TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            # Create index on timestamps for better query performance
            self._connection.execute(f"""
                CREATE INDEX IF NOT EXISTS idx_{table}_created_at
                ON {table}(created_at)
            """)
            self._tables.add(table)

    def begin_transaction(self) -> None:
        """Start a database transaction"""
        super().begin_transaction()
        if self._depth == 1:
            try:
                self._connection.execute("BEGIN IMMEDIATE")
            except Exception as e:
                self._depth = 0
                self._in_transaction = False
                self._lock.release()
                # Another connection held the write lock past busy_timeout
                if isinstance(e, sqlite3.OperationalError) and (
                        "locked" in str(e) or "busy" in str(e)):
                    raise BusyError(self.db_path, self.busy_timeout,
                                    message=f"Database {self.db_path} is locked: {e}") from e
                raise

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to SQLite"""
        with self._lock:
            self._ensure_table(table)

            now = datetime.now(timezone.utc).isoformat()
            data_json = json.dumps(data, default=str)

            # Use INSERT OR REPLACE to handle updates
            self._connection.execute(f"""
                INSERT OR REPLACE INTO {table} (id, data, created_at, updated_at)
                VALUES (?, ?,
                    COALESCE((SELECT created_at FROM {table} WHERE id = ?), ?),
                    ?)
            """, (record_id, data_json, record_id, now, now))

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from SQLite"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} WHERE id = ?
            """, (record_id,))
            row = cursor.fetchone()
            if row:
                return json.loads(row['data'])
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} ORDER BY created_at, rowid
            """)
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from SQLite"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                DELETE FROM {table} WHERE id = ?
            """, (record_id,))
            return cursor.rowcount > 0

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT 1 FROM {table} WHERE id = ? LIMIT 1
            """, (record_id,))
            return cursor.fetchone() is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters (simple JSON key matching)"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} ORDER BY created_at, rowid
            """)

            results = []
            for row in cursor.fetchall():
                record = json.loads(row['data'])
                if _matches(record, filters):
                    results.append(record)

            return results

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT COUNT(*) as count FROM {table}
            """)
            return cursor.fetchone()['count']

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._lock:
            self._ensure_table(table)
            self._connection.execute(f"DELETE FROM {table}")

    def close(self) -> None:
        """Close SQLite connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


class PostgreSQLStorage(_OwnedTransactionMixin, StorageInterface):
    """PostgreSQL storage backend with ACID transactions and row locks"""

    def __init__(self, connection_string: str, busy_timeout: float = 30.0):
        try:
            import psycopg2
            import psycopg2.errors
            import psycopg2.extras
            self.psycopg2 = psycopg2
            self.extras = psycopg2.extras
        except ImportError:
            raise ImportError("psycopg2 is required for PostgreSQL storage. Install with: pip install psycopg2-binary")

        self.connection_string = connection_string
        self.busy_timeout = busy_timeout
        self._connection = None
        self._init_transactions()
        self._connect()

    def _connect(self) -> None:
        """Establish database connection"""
        with self._lock:
            if self._connection:
                self._connection.close()

            self._connection = self.psycopg2.connect(
                self.connection_string,
                cursor_factory=self.extras.RealDictCursor
            )
            self._connection.autocommit = False  # We handle transactions manually

    def _finish_statement(self) -> None:
        # Only commit if not in transaction
        if not self._in_transaction:
            self._connection.commit()

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        if table in self._tables:
            return
        with self._lock:
            cursor = self._connection.cursor()
            try:
                cursor.execute(f"""
                    CREATE TABLE IF NOT EXISTS {table} (
                        id TEXT PRIMARY KEY,
                        data JSONB NOT NULL,
                        created_at TIMESTAMPTZ DEFAULT NOW(),
                        updated_at TIMESTAMPTZ DEFAULT NOW()
                    )
                """)
                cursor.execute(f"""
                    CREATE INDEX IF NOT EXISTS idx_{table}_data
                    ON {table} USING gin(data)
                """)
                cursor.execute(f"""
                    CREATE INDEX IF NOT EXISTS idx_{table}_created_at
                    ON {table}(created_at)
                """)
                self._finish_statement()
                self._tables.add(table)
            finally:
                cursor.close()

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to PostgreSQL using UPSERT"""
        with self._lock:
            self._ensure_table(table)

            now = datetime.now(timezone.utc)
            data_json = json.dumps(data, default=str)

            cursor = self._connection.cursor()
            try:
                cursor.execute(f"""
                    INSERT INTO {table} (id, data, created_at, updated_at)
                    VALUES (%s, %s, %s, %s)
                    ON CONFLICT (id) DO UPDATE SET
                        data = EXCLUDED.data,
                        updated_at = EXCLUDED.updated_at
                """, (record_id, data_json, now, now))
                self._finish_statement()
            finally:
                cursor.close()

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from PostgreSQL"""
        with self._lock:
            self._ensure_table(table)

            cursor = self._connection.cursor()
            try:
                cursor.execute(f"""
                    SELECT data FROM {table} WHERE id = %s
                """, (record_id,))
                row = cursor.fetchone()
                self._finish_statement()
                if row:
                    return dict(row['data'])
                return None
            finally:
                cursor.close()

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._lock:
            self._ensure_table(table)

            cursor = self._connection.cursor()
            try:
                cursor.execute(f"""
                    SELECT data FROM {table} ORDER BY created_at
                """)
                rows = [dict(row['data']) for row in cursor.fetchall()]
                self._finish_statement()
                return rows
            finally:
                cursor.close()

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from PostgreSQL"""
        with self._lock:
            self._ensure_table(table)

            cursor = self._connection.cursor()
            try:
                cursor.execute(f"""
                    DELETE FROM {table} WHERE id = %s
                """, (record_id,))
                self._finish_statement()
                return cursor.rowcount > 0
            finally:
                cursor.close()

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        with self._lock:
            self._ensure_table(table)

            cursor = self._connection.cursor()
            try:
                cursor.execute(f"""
                    SELECT 1 FROM {table} WHERE id = %s LIMIT 1
                """, (record_id,))
                found = cursor.fetchone() is not None
                self._finish_statement()
                return found
            finally:
                cursor.close()

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters using JSONB containment"""
        with self._lock:
            self._ensure_table(table)

            cursor = self._connection.cursor()
            try:
                if not filters:
                    cursor.execute(f"""
                        SELECT data FROM {table} ORDER BY created_at
                    """)
                else:
                    cursor.execute(f"""
                        SELECT data FROM {table}
                        WHERE data @> %s::jsonb
                        ORDER BY created_at
                    """, (json.dumps(filters, default=str),))

                rows = [dict(row['data']) for row in cursor.fetchall()]
                self._finish_statement()
                return rows
            finally:
                cursor.close()

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._lock:
            self._ensure_table(table)

            cursor = self._connection.cursor()
            try:
                cursor.execute(f"""
                    SELECT COUNT(*) as count FROM {table}
                """)
                total = cursor.fetchone()['count']
                self._finish_statement()
                return total
            finally:
                cursor.close()

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._lock:
            self._ensure_table(table)

            cursor = self._connection.cursor()
            try:
                cursor.execute(f"DELETE FROM {table}")
                self._finish_statement()
            finally:
                cursor.close()

    def lock_for_update(self, table: str, record_id: str, timeout: Optional[float] = None) -> None:
        """SELECT ... FOR UPDATE, bounded by lock_timeout"""
        if not self._in_transaction:
            raise RuntimeError("lock_for_update requires an active transaction")
        self._ensure_table(table)
        cursor = self._connection.cursor()
        try:
            if timeout is not None:
                cursor.execute("SET LOCAL lock_timeout = %s", (f"{int(timeout * 1000)}ms",))
            cursor.execute(f"SELECT id FROM {table} WHERE id = %s FOR UPDATE", (record_id,))
        except self.psycopg2.errors.LockNotAvailable as e:
            raise BusyError(record_id, timeout) from e
        finally:
            cursor.close()

    def close(self) -> None:
        """Close PostgreSQL connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


def create_storage(database_url: str = "memory://", busy_timeout: float = 30.0) -> StorageInterface:
    """Factory: pick a backend from a database URL"""
    if database_url in ("memory://", "memory", ""):
        return InMemoryStorage()
    if database_url.startswith("sqlite:///"):
        return SQLiteStorage(database_url[len("sqlite:///"):] or ":memory:", busy_timeout=busy_timeout)
    if database_url.startswith(("postgresql://", "postgres://")):
        return PostgreSQLStorage(database_url, busy_timeout=busy_timeout)
    raise ValueError(f"Unsupported database URL: {database_url}")
