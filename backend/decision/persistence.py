"""Persistence backends for decision records.

Two scopes exist: the local device, and one namespace per signed-in user.
Every backend speaks the same ``DecisionStorage`` protocol, but the
capabilities differ and are advertised rather than faked:

- ``LocalDecisionStorage`` writes synchronously to a per-device
  key-value file and supports bulk clearing.
- ``PostgresDecisionStorage`` is the remote per-user store.  It can fail
  per operation and deliberately does not bulk-delete; ``clear_all``
  returns a notice instead.
- ``InMemoryDecisionStorage`` is a remote-shaped store for tests and
  development.

Writes are full-record upserts keyed by record id (last writer wins);
removes are idempotent.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol, runtime_checkable

from decision.errors import PersistenceFailure, StorageUnavailable
from decision.local_state import HISTORY_KEY, LocalStateFile
from decision.schemas import DecisionRecord, FeedbackSubmission, dump_records, load_records

logger = logging.getLogger(__name__)

try:
    import asyncpg
except ImportError:
    asyncpg = None

REMOTE_CLEAR_NOTICE = (
    "To permanently delete all cloud data, please manage this in your account settings."
)


@dataclass(frozen=True)
class Scope:
    """Persistence context: the local device, or one authenticated user."""
    user_id: Optional[str] = None

    @classmethod
    def local(cls) -> "Scope":
        return cls()

    @classmethod
    def for_user(cls, user_id: str) -> "Scope":
        if not user_id:
            raise ValueError("user_id is required for a user scope")
        return cls(user_id=user_id)

    @property
    def is_local(self) -> bool:
        return self.user_id is None

    def __str__(self) -> str:
        return "local" if self.is_local else f"user:{self.user_id}"


@dataclass(frozen=True)
class ClearResult:
    """Outcome of ``clear_all``; ``notice`` is shown to the user when set."""
    cleared: bool
    notice: Optional[str] = None


def _newest_first(records: List[DecisionRecord]) -> List[DecisionRecord]:
    return sorted(records, key=lambda r: r.created_at, reverse=True)


class DecisionStorage(Protocol):
    """Storage interface for decision records.

    Allows different implementations (local file, PostgreSQL, memory)
    without coupling the reconciliation controller to any of them.
    """

    supports_bulk_clear: bool

    async def load(self, scope: Scope) -> List[DecisionRecord]:
        """Return every record in *scope*, newest ``created_at`` first.

        Raises:
            StorageUnavailable: If the backend is offline or not configured
        """
        ...

    async def upsert(self, scope: Scope, record: DecisionRecord) -> None:
        """Write *record* in full, replacing any record with the same id."""
        ...

    async def remove(self, scope: Scope, record_id: str) -> None:
        """Delete a record; unknown ids are ignored."""
        ...

    async def clear_all(self, scope: Scope) -> ClearResult:
        """Delete every record in *scope*, if this backend supports it."""
        ...


@runtime_checkable
class FeedbackStorage(Protocol):
    """Append-only feedback collection (remote backends only)."""

    async def add_feedback(self, feedback: FeedbackSubmission) -> None:
        ...


# ---------------------------------------------------------------------------
# Local device
# ---------------------------------------------------------------------------


class LocalDecisionStorage:
    """Device-local storage under the fixed ``clarity_choice_history`` slot.

    Never reports ``StorageUnavailable``: the file is always reachable.  I/O
    or decoding problems surface as ``PersistenceFailure`` and leave the
    previously written state intact.
    """

    supports_bulk_clear = True

    def __init__(self, state: LocalStateFile):
        self.state = state

    @staticmethod
    def _require_local(scope: Scope) -> None:
        if not scope.is_local:
            raise ValueError(f"Local storage cannot serve scope {scope}")

    def _read(self, scope: Scope) -> List[DecisionRecord]:
        try:
            raw = self.state.get_item(HISTORY_KEY)
            return load_records(raw) if raw else []
        except (OSError, ValueError) as e:
            logger.error("Failed to read local decision history: %s", e)
            raise PersistenceFailure("Local decision history could not be read", scope=scope) from e

    def _write(self, scope: Scope, records: List[DecisionRecord], record: Optional[DecisionRecord] = None) -> None:
        try:
            self.state.set_item(HISTORY_KEY, dump_records(records).decode("utf-8"))
        except OSError as e:
            logger.error("Failed to write local decision history: %s", e)
            raise PersistenceFailure("Local decision history could not be saved", scope=scope, record=record) from e

    async def load(self, scope: Scope) -> List[DecisionRecord]:
        self._require_local(scope)
        records = _newest_first(self._read(scope))
        logger.debug("Loaded %d local decision records", len(records))
        return records

    async def upsert(self, scope: Scope, record: DecisionRecord) -> None:
        self._require_local(scope)
        records = self._read(scope)
        if any(r.id == record.id for r in records):
            records = [record if r.id == record.id else r for r in records]
        else:
            records = [record, *records]
        self._write(scope, records, record)
        logger.debug("Saved local decision record %s", record.id)

    async def remove(self, scope: Scope, record_id: str) -> None:
        self._require_local(scope)
        records = self._read(scope)
        remaining = [r for r in records if r.id != record_id]
        if len(remaining) == len(records):
            return
        self._write(scope, remaining)
        logger.debug("Removed local decision record %s", record_id)

    async def clear_all(self, scope: Scope) -> ClearResult:
        self._require_local(scope)
        try:
            self.state.remove_item(HISTORY_KEY)
        except OSError as e:
            raise PersistenceFailure("Local decision history could not be cleared", scope=scope) from e
        logger.info("Cleared local decision history")
        return ClearResult(cleared=True)


# ---------------------------------------------------------------------------
# Remote, per user
# ---------------------------------------------------------------------------


def _require_user(scope: Scope) -> str:
    if scope.is_local:
        raise ValueError("Remote storage requires a user scope")
    return scope.user_id


def _parse_record(value: Any) -> DecisionRecord:
    # asyncpg may return JSONB as a raw string or an already-decoded object
    if isinstance(value, (str, bytes)):
        return DecisionRecord.model_validate_json(value)
    return DecisionRecord.model_validate(value)


class PostgresDecisionStorage:
    """PostgreSQL implementation of the remote per-user store.

    One row per (user, record) holding the full record JSON, plus an
    append-only feedback table.

    Expected table schema:
    CREATE TABLE decision_records (
        user_id TEXT NOT NULL,
        record_id TEXT NOT NULL,
        record JSONB NOT NULL,
        created_at BIGINT NOT NULL,
        updated_at TIMESTAMP DEFAULT NOW(),
        PRIMARY KEY (user_id, record_id)
    );
    """

    supports_bulk_clear = False

    def __init__(self, conn_string: str):
        """Initialize with PostgreSQL connection string.

        Args:
            conn_string: asyncpg connection string
        """
        if asyncpg is None:
            raise RuntimeError("asyncpg not installed. Install with: pip install asyncpg")

        self.conn_string = conn_string
        self._pool: Optional[Any] = None

    async def _get_pool(self):
        """Get or create database connection pool."""
        if self._pool is None:
            pool = await asyncpg.create_pool(self.conn_string, min_size=1, max_size=5)
            await self._ensure_tables(pool)
            self._pool = pool
        return self._pool

    async def _ensure_tables(self, pool) -> None:
        async with pool.acquire() as conn:
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS decision_records (
                    user_id TEXT NOT NULL,
                    record_id TEXT NOT NULL,
                    record JSONB NOT NULL,
                    created_at BIGINT NOT NULL,
                    updated_at TIMESTAMP DEFAULT NOW(),
                    PRIMARY KEY (user_id, record_id)
                );
            """)
            await conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_decision_records_user_created
                ON decision_records(user_id, created_at DESC);
            """)
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS decision_feedback (
                    id SERIAL PRIMARY KEY,
                    feedback_type TEXT NOT NULL,
                    message TEXT NOT NULL,
                    email TEXT,
                    user_id TEXT,
                    submitted_at BIGINT NOT NULL,
                    created_at TIMESTAMP DEFAULT NOW()
                );
            """)
        logger.debug("Ensured decision_records and decision_feedback tables exist")

    @asynccontextmanager
    async def _connection(self, scope: Optional[Scope], record: Optional[DecisionRecord] = None) -> AsyncIterator[Any]:
        """Acquire a connection, translating driver errors into persistence failures."""
        try:
            pool = await self._get_pool()
            async with pool.acquire() as conn:
                yield conn
        except (OSError, asyncio.TimeoutError, asyncpg.exceptions.InterfaceError) as e:
            logger.error("Remote decision store unavailable (%s): %s", scope, e)
            raise StorageUnavailable("Remote decision store is unavailable", scope=scope, record=record) from e
        except asyncpg.exceptions.PostgresError as e:
            logger.error("Remote decision store error (%s): %s", scope, e)
            raise PersistenceFailure("Remote decision store rejected the operation", scope=scope, record=record) from e

    async def load(self, scope: Scope) -> List[DecisionRecord]:
        user_id = _require_user(scope)
        async with self._connection(scope) as conn:
            rows = await conn.fetch("""
                SELECT record FROM decision_records
                WHERE user_id = $1
                ORDER BY created_at DESC
            """, user_id)
        records = [_parse_record(row["record"]) for row in rows]
        logger.debug("Loaded %d remote decision records for %s", len(records), scope)
        return records

    async def upsert(self, scope: Scope, record: DecisionRecord) -> None:
        user_id = _require_user(scope)
        async with self._connection(scope, record) as conn:
            await conn.execute("""
                INSERT INTO decision_records (user_id, record_id, record, created_at, updated_at)
                VALUES ($1, $2, $3, $4, NOW())
                ON CONFLICT (user_id, record_id) DO UPDATE
                SET record = $3, created_at = $4, updated_at = NOW()
            """, user_id, record.id, record.model_dump_json(by_alias=True), record.created_at)
        logger.debug("Saved remote decision record %s for %s", record.id, scope)

    async def remove(self, scope: Scope, record_id: str) -> None:
        user_id = _require_user(scope)
        async with self._connection(scope) as conn:
            await conn.execute(
                "DELETE FROM decision_records WHERE user_id = $1 AND record_id = $2",
                user_id, record_id,
            )
        logger.debug("Removed remote decision record %s for %s", record_id, scope)

    async def clear_all(self, scope: Scope) -> ClearResult:
        _require_user(scope)
        logger.info("Bulk clear requested for %s; remote data left untouched", scope)
        return ClearResult(cleared=False, notice=REMOTE_CLEAR_NOTICE)

    async def add_feedback(self, feedback: FeedbackSubmission) -> None:
        async with self._connection(None) as conn:
            await conn.execute("""
                INSERT INTO decision_feedback (feedback_type, message, email, user_id, submitted_at)
                VALUES ($1, $2, $3, $4, $5)
            """, feedback.type, feedback.message, feedback.email, feedback.user_id, feedback.timestamp)
        logger.debug("Stored %s feedback", feedback.type)

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None


class InMemoryDecisionStorage:
    """In-memory remote store for testing and development.

    Records are kept serialised so callers never share mutable state with
    the store.  Set ``online = False`` to simulate an unreachable backend.
    """

    def __init__(self, supports_bulk_clear: bool = False):
        self.supports_bulk_clear = supports_bulk_clear
        self.documents: Dict[str, Dict[str, str]] = {}
        self.feedback: List[FeedbackSubmission] = []
        self.online = True

    def _check_online(self, scope: Optional[Scope], record: Optional[DecisionRecord] = None) -> None:
        if not self.online:
            raise StorageUnavailable("Remote decision store is unavailable", scope=scope, record=record)

    async def load(self, scope: Scope) -> List[DecisionRecord]:
        user_id = _require_user(scope)
        self._check_online(scope)
        docs = self.documents.get(user_id, {})
        return _newest_first([DecisionRecord.model_validate_json(raw) for raw in docs.values()])

    async def upsert(self, scope: Scope, record: DecisionRecord) -> None:
        user_id = _require_user(scope)
        self._check_online(scope, record)
        self.documents.setdefault(user_id, {})[record.id] = record.model_dump_json(by_alias=True)

    async def remove(self, scope: Scope, record_id: str) -> None:
        user_id = _require_user(scope)
        self._check_online(scope)
        self.documents.get(user_id, {}).pop(record_id, None)

    async def clear_all(self, scope: Scope) -> ClearResult:
        user_id = _require_user(scope)
        if not self.supports_bulk_clear:
            return ClearResult(cleared=False, notice=REMOTE_CLEAR_NOTICE)
        self._check_online(scope)
        self.documents.pop(user_id, None)
        return ClearResult(cleared=True)

    async def add_feedback(self, feedback: FeedbackSubmission) -> None:
        self._check_online(None)
        self.feedback.append(feedback)
