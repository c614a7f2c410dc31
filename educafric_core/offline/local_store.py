# =============================================================================
# educafric_core/offline/local_store.py
# Local SQLite Store for Offline Operations
# =============================================================================
"""
LocalDurableStore - per-user SQLite storage for the offline sync core.

Tables:
- pending_actions: queued mutations waiting for server acknowledgment
- failed_actions:  conflicts (4xx) and dead letters (retries exhausted)
- cached_entities: server snapshots with a TTL, keyed by type
- sync_meta:       small key/value records (last_server_sync_at, ...)

Every write goes through ``transaction()``; any SQLite failure surfaces as
PersistenceError so callers see a broken storage guarantee immediately.
"""

from __future__ import annotations
import json
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union
import logging

import pandas as pd

from educafric_core.errors import PersistenceError
from educafric_core.offline.models import (
    CachedEntity,
    EntityType,
    FailedAction,
    FailureReason,
    Operation,
    QueuedAction,
)

logger = logging.getLogger(__name__)

# Marks an optimistically created record until the server returns its copy
PENDING_MARKER = "_pending_action_id"

ACTION_COLUMNS = [
    "id", "entity_type", "operation", "entity_id", "user_id",
    "created_at", "synced", "attempt_count", "last_error",
]


class LocalDurableStore:
    """
    Durable local storage scoped to a single authenticated user.
    """

    DEFAULT_DATA_DIR = Path("local_data")
    DB_FILENAME = "educafric_offline.db"

    SCHEMA = {
        "pending_actions": """
            CREATE TABLE IF NOT EXISTS pending_actions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                entity_type TEXT NOT NULL,
                operation TEXT NOT NULL,
                entity_id TEXT,
                payload_json TEXT NOT NULL,
                user_id INTEGER,
                created_at TEXT NOT NULL,
                synced INTEGER NOT NULL DEFAULT 0,
                attempt_count INTEGER NOT NULL DEFAULT 0,
                last_error TEXT,
                last_attempt TEXT
            )
        """,
        "failed_actions": """
            CREATE TABLE IF NOT EXISTS failed_actions (
                id INTEGER PRIMARY KEY,
                entity_type TEXT NOT NULL,
                operation TEXT NOT NULL,
                entity_id TEXT,
                payload_json TEXT NOT NULL,
                user_id INTEGER,
                created_at TEXT NOT NULL,
                attempt_count INTEGER NOT NULL DEFAULT 0,
                last_error TEXT,
                reason TEXT NOT NULL,
                status_code INTEGER,
                failed_at TEXT NOT NULL
            )
        """,
        "cached_entities": """
            CREATE TABLE IF NOT EXISTS cached_entities (
                type TEXT PRIMARY KEY,
                data_json TEXT,
                fetched_at TEXT NOT NULL,
                ttl_expires_at TEXT NOT NULL
            )
        """,
        "sync_meta": """
            CREATE TABLE IF NOT EXISTS sync_meta (
                key TEXT PRIMARY KEY,
                value TEXT,
                updated_at TEXT NOT NULL
            )
        """,
    }

    INDEXES = [
        "CREATE INDEX IF NOT EXISTS idx_pending_synced ON pending_actions (synced, id)",
        "CREATE INDEX IF NOT EXISTS idx_failed_reason ON failed_actions (reason)",
        "CREATE INDEX IF NOT EXISTS idx_cache_expiry ON cached_entities (ttl_expires_at)",
    ]

    def __init__(
        self,
        db_path: Optional[Union[str, Path]] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        """
        Initialize local store.

        Args:
            db_path: Path to SQLite database file
            clock: Source of "now" (injected by tests)
        """
        self.db_path = Path(db_path) if db_path else self.DEFAULT_DATA_DIR / self.DB_FILENAME
        self._clock = clock
        self._local = threading.local()
        self._connections: List[sqlite3.Connection] = []
        self._conn_lock = threading.Lock()
        self._initialized = False

    @classmethod
    def for_user(
        cls,
        user_id: Union[int, str],
        data_dir: Optional[Union[str, Path]] = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> LocalDurableStore:
        """Open (and initialize) the store belonging to one user."""
        base = Path(data_dir) if data_dir else cls.DEFAULT_DATA_DIR
        store = cls(base / f"user_{user_id}" / cls.DB_FILENAME, clock=clock)
        store.initialize()
        return store

    # =========================================================================
    # CONNECTION MANAGEMENT
    # =========================================================================

    def release_connection(self) -> None:
        """Close the calling thread's connection, if it has one."""
        conn = getattr(self._local, "connection", None)
        if conn is None:
            return
        self._local.connection = None
        with self._conn_lock:
            if conn in self._connections:
                self._connections.remove(conn)
        try:
            conn.close()
        except sqlite3.Error as e:
            logger.debug(f"Error closing connection: {e}")

    def _get_connection(self) -> sqlite3.Connection:
        """Get thread-local database connection."""
        conn = getattr(self._local, "connection", None)
        if conn is None:
            try:
                self.db_path.parent.mkdir(parents=True, exist_ok=True)
                conn = sqlite3.connect(str(self.db_path), check_same_thread=False, timeout=5.0)
            except (sqlite3.Error, OSError) as e:
                raise PersistenceError(
                    f"Cannot open local store: {e}", db_path=str(self.db_path)
                ) from e
            conn.row_factory = sqlite3.Row
            self._local.connection = conn
            with self._conn_lock:
                self._connections.append(conn)
        return conn

    @contextmanager
    def transaction(self):
        """Context manager for write transactions."""
        conn = self._get_connection()
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise PersistenceError(
                f"Local store write failed: {e}", db_path=str(self.db_path)
            ) from e
        except Exception:
            conn.rollback()
            raise

    def _query(self, sql: str, params: Optional[List] = None) -> List[sqlite3.Row]:
        try:
            return self._get_connection().execute(sql, params or []).fetchall()
        except sqlite3.Error as e:
            raise PersistenceError(
                f"Local store read failed: {e}", db_path=str(self.db_path)
            ) from e

    def initialize(self) -> None:
        """Create tables and indexes."""
        if self._initialized:
            return

        with self.transaction() as conn:
            for table_name, schema in self.SCHEMA.items():
                conn.execute(schema)
                logger.debug(f"Created/verified table: {table_name}")
            for statement in self.INDEXES:
                conn.execute(statement)

        self._initialized = True
        logger.info(f"Local store initialized at: {self.db_path}")

    def close(self) -> None:
        """Close every connection opened by this store."""
        with self._conn_lock:
            for conn in self._connections:
                try:
                    conn.close()
                except sqlite3.Error as e:
                    logger.debug(f"Error closing connection: {e}")
            self._connections.clear()
        self._local = threading.local()

    def _now(self) -> datetime:
        return self._clock()

    # =========================================================================
    # CACHED ENTITIES
    # =========================================================================

    def cache_data(self, cache_type: str, data: Any, ttl_minutes: float = 60) -> CachedEntity:
        """
        Store data under a type; last write wins.

        Args:
            cache_type: Cache key (e.g. "students", "profile-42")
            data: JSON-serializable payload
            ttl_minutes: Freshness window

        Returns:
            The stored CachedEntity
        """
        now = self._now()
        entity = CachedEntity(
            type=cache_type,
            data=data,
            fetched_at=now,
            ttl_expires_at=now + timedelta(minutes=ttl_minutes),
        )
        try:
            data_json = json.dumps(data, default=str)
        except (TypeError, ValueError) as e:
            raise PersistenceError(f"Data for {cache_type!r} is not serializable: {e}",
                                   table="cached_entities") from e

        with self.transaction() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO cached_entities (type, data_json, fetched_at, ttl_expires_at)
                VALUES (?, ?, ?, ?)
                """,
                [cache_type, data_json, now.isoformat(), entity.ttl_expires_at.isoformat()],
            )
        logger.debug(f"Data cached: {cache_type} (ttl={ttl_minutes}m)")
        return entity

    def get_cached_entity(self, cache_type: str, allow_stale: bool = False) -> Optional[CachedEntity]:
        """Return the cached snapshot, or None when missing (or expired unless allow_stale)."""
        rows = self._query(
            "SELECT * FROM cached_entities WHERE type = ?",
            [cache_type],
        )
        if not rows:
            return None

        row = rows[0]
        entity = CachedEntity(
            type=row["type"],
            data=json.loads(row["data_json"]) if row["data_json"] is not None else None,
            fetched_at=datetime.fromisoformat(row["fetched_at"]),
            ttl_expires_at=datetime.fromisoformat(row["ttl_expires_at"]),
        )
        if entity.is_expired(self._now()) and not allow_stale:
            return None
        return entity

    def get_cached_data(self, cache_type: str) -> Any:
        """Return cached data while fresh, else None."""
        entity = self.get_cached_entity(cache_type)
        return entity.data if entity else None

    def clean_expired_cache(self) -> int:
        """Delete expired cache rows; returns how many were removed."""
        with self.transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM cached_entities WHERE ttl_expires_at <= ?",
                [self._now().isoformat()],
            )
            deleted = cursor.rowcount
        if deleted:
            logger.info(f"Cleaned up {deleted} expired cache entries")
        return deleted

    def apply_to_cache(
        self,
        cache_type: str,
        operation: Operation,
        record: Dict[str, Any],
        pending_action_id: Optional[int] = None,
        optimistic: bool = False,
    ) -> bool:
        """
        Merge one record into a cached collection.

        Used for the optimistic write at enqueue time and for reconciling
        the server's canonical record after a successful sync. Only list
        collections that are already cached are touched; the TTL is kept.

        Returns:
            True if the cached collection changed
        """
        entity = self.get_cached_entity(cache_type, allow_stale=True)
        if entity is None or not isinstance(entity.data, list):
            return False

        items = [dict(i) if isinstance(i, dict) else i for i in entity.data]
        record_id = record.get("id") if isinstance(record, dict) else None

        def same(item) -> bool:
            return (
                isinstance(item, dict)
                and record_id is not None
                and item.get("id") is not None
                and str(item.get("id")) == str(record_id)
            )

        def placeholder(item) -> bool:
            return (
                pending_action_id is not None
                and isinstance(item, dict)
                and item.get(PENDING_MARKER) == pending_action_id
            )

        if operation == Operation.DELETE:
            items = [i for i in items if not same(i) and not placeholder(i)]
        elif optimistic and operation == Operation.CREATE:
            items.append({**record, PENDING_MARKER: pending_action_id})
        else:
            if operation == Operation.CREATE:
                items = [i for i in items if not placeholder(i)]
            merged = False
            for idx, item in enumerate(items):
                if same(item):
                    items[idx] = {**item, **record} if optimistic else dict(record)
                    merged = True
            if not merged and not optimistic:
                items.append(dict(record))

        if items == entity.data:
            return False

        with self.transaction() as conn:
            conn.execute(
                "UPDATE cached_entities SET data_json = ? WHERE type = ?",
                [json.dumps(items, default=str), cache_type],
            )
        return True

    # User-scoped helpers; TTLs match what the web client used

    def cache_user_profile(self, user_id: int, profile: Dict[str, Any]) -> CachedEntity:
        return self.cache_data(f"profile-{user_id}", profile, ttl_minutes=120)

    def get_cached_user_profile(self, user_id: int) -> Optional[Dict[str, Any]]:
        return self.get_cached_data(f"profile-{user_id}")

    def cache_user_settings(self, user_id: int, settings: Dict[str, Any]) -> CachedEntity:
        return self.cache_data(f"settings-{user_id}", settings, ttl_minutes=240)

    def get_cached_user_settings(self, user_id: int) -> Optional[Dict[str, Any]]:
        return self.get_cached_data(f"settings-{user_id}")

    def cache_notifications(self, user_id: int, notifications: List[Dict[str, Any]]) -> CachedEntity:
        return self.cache_data(f"notifications-{user_id}", notifications, ttl_minutes=60)

    def get_cached_notifications(self, user_id: int) -> Optional[List[Dict[str, Any]]]:
        return self.get_cached_data(f"notifications-{user_id}")

    def cache_dashboard_data(self, user_id: int, role: str, data: Any) -> CachedEntity:
        return self.cache_data(f"dashboard-{role}-{user_id}", data, ttl_minutes=30)

    def get_cached_dashboard_data(self, user_id: int, role: str) -> Any:
        return self.get_cached_data(f"dashboard-{role}-{user_id}")

    # =========================================================================
    # ACTION LOG
    # =========================================================================

    def queue_action(
        self,
        entity_type: EntityType,
        operation: Operation,
        payload: Dict[str, Any],
        user_id: Optional[int] = None,
        entity_id: Optional[str] = None,
    ) -> QueuedAction:
        """
        Append an action to the persisted log.

        Returns:
            The stored action with its assigned id
        """
        created_at = self._now()
        try:
            payload_json = json.dumps(payload, default=str)
        except (TypeError, ValueError) as e:
            raise PersistenceError(f"Payload is not serializable: {e}",
                                   table="pending_actions") from e

        with self.transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO pending_actions
                    (entity_type, operation, entity_id, payload_json, user_id, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                [entity_type.value, operation.value, entity_id, payload_json,
                 user_id, created_at.isoformat()],
            )
            action_id = cursor.lastrowid

        logger.debug(f"Action queued: #{action_id} {entity_type.value} {operation.value}")
        return QueuedAction(
            id=action_id,
            entity_type=entity_type,
            operation=operation,
            payload=payload,
            user_id=user_id,
            created_at=created_at,
            entity_id=entity_id,
        )

    @staticmethod
    def _row_to_action(row: sqlite3.Row) -> QueuedAction:
        keys = row.keys()
        return QueuedAction(
            id=row["id"],
            entity_type=EntityType(row["entity_type"]),
            operation=Operation(row["operation"]),
            payload=json.loads(row["payload_json"]) if row["payload_json"] else {},
            user_id=row["user_id"],
            created_at=datetime.fromisoformat(row["created_at"]),
            entity_id=row["entity_id"],
            synced=bool(row["synced"]) if "synced" in keys else False,
            attempt_count=row["attempt_count"],
            last_error=row["last_error"],
        )

    def get_action(self, action_id: int) -> Optional[QueuedAction]:
        rows = self._query("SELECT * FROM pending_actions WHERE id = ?", [action_id])
        return self._row_to_action(rows[0]) if rows else None

    def list_pending_actions(self) -> List[QueuedAction]:
        """All unsynced actions in insertion (FIFO) order."""
        rows = self._query(
            "SELECT * FROM pending_actions WHERE synced = 0 ORDER BY id ASC"
        )
        return [self._row_to_action(row) for row in rows]

    def pending_count(self) -> int:
        rows = self._query("SELECT COUNT(*) AS count FROM pending_actions WHERE synced = 0")
        return rows[0]["count"] if rows else 0

    def mark_synced(self, action_id: int) -> bool:
        """Flag an action as acknowledged. No-op for unknown or already-synced ids."""
        with self.transaction() as conn:
            cursor = conn.execute(
                "UPDATE pending_actions SET synced = 1, last_attempt = ? WHERE id = ? AND synced = 0",
                [self._now().isoformat(), action_id],
            )
            return cursor.rowcount > 0

    def record_failure(self, action_id: int, error: str) -> Optional[int]:
        """
        Count a failed attempt.

        Returns:
            The new attempt count, or None when the action is no longer pending
        """
        with self.transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE pending_actions
                SET attempt_count = attempt_count + 1, last_error = ?, last_attempt = ?
                WHERE id = ? AND synced = 0
                """,
                [error, self._now().isoformat(), action_id],
            )
            if cursor.rowcount == 0:
                return None
            row = conn.execute(
                "SELECT attempt_count FROM pending_actions WHERE id = ?", [action_id]
            ).fetchone()
        return row["attempt_count"] if row else None

    def purge_synced(self) -> int:
        """Drop acknowledged actions from the log."""
        with self.transaction() as conn:
            cursor = conn.execute("DELETE FROM pending_actions WHERE synced = 1")
            return cursor.rowcount

    # =========================================================================
    # FAILED ACTIONS (CONFLICTS / DEAD LETTERS)
    # =========================================================================

    def move_to_failed(
        self,
        action_id: int,
        reason: FailureReason,
        error: Optional[str] = None,
        status_code: Optional[int] = None,
    ) -> bool:
        """Move a pending action to the failed table. No-op if it is gone."""
        with self.transaction() as conn:
            row = conn.execute(
                "SELECT * FROM pending_actions WHERE id = ? AND synced = 0", [action_id]
            ).fetchone()
            if row is None:
                return False
            conn.execute(
                """
                INSERT OR REPLACE INTO failed_actions
                    (id, entity_type, operation, entity_id, payload_json, user_id,
                     created_at, attempt_count, last_error, reason, status_code, failed_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [row["id"], row["entity_type"], row["operation"], row["entity_id"],
                 row["payload_json"], row["user_id"], row["created_at"],
                 row["attempt_count"], error or row["last_error"], reason.value,
                 status_code, self._now().isoformat()],
            )
            conn.execute("DELETE FROM pending_actions WHERE id = ?", [action_id])
        logger.warning(f"Action #{action_id} moved to {reason.value}: {error}")
        return True

    def list_failed_actions(self, reason: Optional[FailureReason] = None) -> List[FailedAction]:
        if reason is None:
            rows = self._query("SELECT * FROM failed_actions ORDER BY id ASC")
        else:
            rows = self._query(
                "SELECT * FROM failed_actions WHERE reason = ? ORDER BY id ASC",
                [reason.value],
            )
        return [
            FailedAction(
                action=self._row_to_action(row),
                reason=FailureReason(row["reason"]),
                failed_at=datetime.fromisoformat(row["failed_at"]),
                status_code=row["status_code"],
            )
            for row in rows
        ]

    def failed_count(self, reason: Optional[FailureReason] = None) -> int:
        if reason is None:
            rows = self._query("SELECT COUNT(*) AS count FROM failed_actions")
        else:
            rows = self._query(
                "SELECT COUNT(*) AS count FROM failed_actions WHERE reason = ?",
                [reason.value],
            )
        return rows[0]["count"] if rows else 0

    def requeue_actions(self, action_ids: List[int]) -> Dict[int, QueuedAction]:
        """
        Re-append actions at the tail of the pending log as new actions.

        Each id may name a failed action (its attempt count starts again at
        0) or a pending one (moved behind the others, attempts kept). The
        relative order of ``action_ids`` is preserved and the old rows are
        removed in the same transaction.

        Returns:
            Old id -> re-queued action (with its new id), in queue order
        """
        created_at = self._now()
        requeued: Dict[int, QueuedAction] = {}
        with self.transaction() as conn:
            for action_id in sorted(action_ids):
                table = "failed_actions"
                row = conn.execute(
                    "SELECT * FROM failed_actions WHERE id = ?", [action_id]
                ).fetchone()
                if row is None:
                    table = "pending_actions"
                    row = conn.execute(
                        "SELECT * FROM pending_actions WHERE id = ? AND synced = 0", [action_id]
                    ).fetchone()
                if row is None:
                    continue

                attempts = row["attempt_count"] if table == "pending_actions" else 0
                last_error = row["last_error"] if table == "pending_actions" else None
                cursor = conn.execute(
                    """
                    INSERT INTO pending_actions
                        (entity_type, operation, entity_id, payload_json, user_id,
                         created_at, attempt_count, last_error)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    [row["entity_type"], row["operation"], row["entity_id"],
                     row["payload_json"], row["user_id"], created_at.isoformat(),
                     attempts, last_error],
                )
                conn.execute(f"DELETE FROM {table} WHERE id = ?", [action_id])
                requeued[action_id] = replace(
                    self._row_to_action(row),
                    id=cursor.lastrowid,
                    created_at=created_at,
                    attempt_count=attempts,
                    last_error=last_error,
                )
                logger.info(f"Action #{action_id} re-queued as #{cursor.lastrowid}")
        return requeued

    def discard_failed(self, action_id: int) -> bool:
        """Forget a failed action once the user has resolved it."""
        with self.transaction() as conn:
            cursor = conn.execute("DELETE FROM failed_actions WHERE id = ?", [action_id])
            return cursor.rowcount > 0

    # =========================================================================
    # SYNC METADATA
    # =========================================================================

    def get_meta(self, key: str, default: Any = None) -> Any:
        rows = self._query("SELECT value FROM sync_meta WHERE key = ?", [key])
        if not rows:
            return default
        try:
            return json.loads(rows[0]["value"])
        except (TypeError, json.JSONDecodeError):
            return rows[0]["value"]

    def set_meta(self, key: str, value: Any) -> None:
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO sync_meta (key, value, updated_at)
                VALUES (?, ?, ?)
                """,
                [key, json.dumps(value, default=str), self._now().isoformat()],
            )

    def get_meta_datetime(self, key: str) -> Optional[datetime]:
        value = self.get_meta(key)
        if not value:
            return None
        try:
            return datetime.fromisoformat(value)
        except (TypeError, ValueError):
            logger.warning(f"Ignoring malformed timestamp in sync_meta[{key}]: {value!r}")
            return None

    def set_meta_datetime(self, key: str, value: datetime) -> None:
        self.set_meta(key, value.isoformat())

    # =========================================================================
    # PANDAS VIEWS (status panel)
    # =========================================================================

    def pending_frame(self) -> pd.DataFrame:
        """Pending actions as a DataFrame."""
        actions = self.list_pending_actions()
        return pd.DataFrame([a.to_dict() for a in actions], columns=ACTION_COLUMNS + ["payload"])

    def failed_frame(self, reason: Optional[FailureReason] = None) -> pd.DataFrame:
        """Failed actions as a DataFrame."""
        failed = self.list_failed_actions(reason)
        columns = ACTION_COLUMNS + ["payload", "reason", "status_code", "failed_at"]
        frame = pd.DataFrame([f.to_dict() for f in failed], columns=columns)
        return frame.drop(columns=["synced"])

    # =========================================================================
    # MAINTENANCE
    # =========================================================================

    def clear_all(self) -> None:
        """Remove every queued, failed, and cached record (metadata included)."""
        with self.transaction() as conn:
            for table in self.SCHEMA:
                conn.execute(f"DELETE FROM {table}")
        logger.info("All offline data cleared")
