"""
DuckDB database operations for translate-jobs.

Durable record store for the job engine: rate window, emergency state,
job locks, translation relationships, usage log, and posts.

All statements go through a process-wide re-entrant lock so that one
connection can be shared by worker threads, and `transaction()` turns a
sequence of statements into a single atomic read-modify-write.
"""

from __future__ import annotations

import json
import threading
from collections.abc import Generator
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

import duckdb


class Status(str, Enum):
    """Translation relationship status."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    OUTDATED = "outdated"
    ERROR = "error"


@dataclass
class Lock:
    """Job lock record."""

    key: str
    owner: str
    acquired_at: float

    def age(self, now: float) -> float:
        """Seconds since the lock was acquired."""
        return now - self.acquired_at


@dataclass
class RateWindow:
    """Fixed-window call counters."""

    hour_count: int = 0
    hour_window_start: float | None = None
    day_count: int = 0
    day_window_start: float | None = None
    last_call_at: float | None = None


@dataclass
class EmergencyState:
    """Global kill switch state."""

    active: bool = False
    reason: str | None = None
    tripped_at: float | None = None


@dataclass
class TranslationRelationship:
    """Source post to translated post relationship for one language."""

    source_id: int
    language: str
    target_id: int | None = None
    status: Status = Status.PENDING
    error_message: str | None = None
    created_at: float | None = None
    updated_at: float | None = None


@dataclass
class UsageEntry:
    """Usage log record."""

    id: int | None = None
    action: str = ""
    job_key: str | None = None
    success: bool = True
    error_code: str | None = None
    data: dict[str, Any] = field(default_factory=dict)
    created_at: float | None = None


@dataclass
class Post:
    """Minimal post record."""

    id: int | None = None
    title: str = ""
    content: str = ""
    language: str = ""
    created_at: float | None = None
    updated_at: float | None = None


class Database:
    """DuckDB database wrapper for translate-jobs."""

    _SCHEMA = """
    -- Fixed-window rate counters (single row, id = 1)
    CREATE TABLE IF NOT EXISTS rate_window (
        id INTEGER PRIMARY KEY,
        hour_count INTEGER NOT NULL DEFAULT 0,
        hour_window_start DOUBLE,
        day_count INTEGER NOT NULL DEFAULT 0,
        day_window_start DOUBLE,
        last_call_at DOUBLE
    );

    -- Emergency stop (single row, id = 1)
    CREATE TABLE IF NOT EXISTS emergency_state (
        id INTEGER PRIMARY KEY,
        active BOOLEAN NOT NULL DEFAULT FALSE,
        reason VARCHAR,
        tripped_at DOUBLE
    );

    -- In-flight job locks
    CREATE TABLE IF NOT EXISTS job_locks (
        key VARCHAR PRIMARY KEY,
        owner VARCHAR NOT NULL,
        acquired_at DOUBLE NOT NULL
    );

    -- Source/target relationship per language
    CREATE TABLE IF NOT EXISTS translation_relationships (
        source_id INTEGER NOT NULL,
        language VARCHAR NOT NULL,
        target_id INTEGER,
        status VARCHAR NOT NULL DEFAULT 'pending',
        error_message TEXT,
        created_at DOUBLE,
        updated_at DOUBLE,
        PRIMARY KEY (source_id, language)
    );

    -- Append-only usage log for analytics
    CREATE TABLE IF NOT EXISTS usage_log (
        id INTEGER PRIMARY KEY,
        action VARCHAR NOT NULL,
        job_key VARCHAR,
        success BOOLEAN NOT NULL,
        error_code VARCHAR,
        data JSON,
        created_at DOUBLE NOT NULL
    );

    CREATE SEQUENCE IF NOT EXISTS usage_log_id_seq START 1;

    -- Posts (source and translated)
    CREATE TABLE IF NOT EXISTS posts (
        id INTEGER PRIMARY KEY,
        title VARCHAR NOT NULL,
        content TEXT NOT NULL,
        language VARCHAR NOT NULL,
        created_at DOUBLE,
        updated_at DOUBLE
    );

    CREATE SEQUENCE IF NOT EXISTS posts_id_seq START 1;

    CREATE INDEX IF NOT EXISTS idx_usage_action ON usage_log(action);
    """

    def __init__(self, db_path: Path | str):
        """Initialize database connection."""
        self.db_path = Path(db_path)
        if str(db_path) != ":memory:":
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn: duckdb.DuckDBPyConnection | None = None
        self._lock = threading.RLock()
        self._depth = 0

    @property
    def conn(self) -> duckdb.DuckDBPyConnection:
        """Get or create database connection."""
        with self._lock:
            if self._conn is None:
                self._conn = duckdb.connect(str(self.db_path))
                self._conn.execute(self._SCHEMA)
            return self._conn

    def close(self) -> None:
        """Close database connection."""
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    @contextmanager
    def transaction(self) -> Generator[duckdb.DuckDBPyConnection, None, None]:
        """
        Run the enclosed statements as one atomic unit.

        Re-entrant: a nested call joins the outer transaction, so the
        outermost block decides commit or rollback.
        """
        with self._lock:
            conn = self.conn
            if self._depth > 0:
                self._depth += 1
                try:
                    yield conn
                finally:
                    self._depth -= 1
                return

            conn.begin()
            self._depth = 1
            try:
                yield conn
                conn.commit()
            except BaseException:
                conn.rollback()
                raise
            finally:
                self._depth = 0

    def _fetchone(self, sql: str, params: list[Any] | None = None) -> tuple | None:
        with self._lock:
            return self.conn.execute(sql, params or []).fetchone()

    def _fetchall(self, sql: str, params: list[Any] | None = None) -> list[tuple]:
        with self._lock:
            return self.conn.execute(sql, params or []).fetchall()

    # ==================== Emergency state ====================

    def get_emergency_state(self) -> EmergencyState:
        """Read the emergency stop record (inactive when never written)."""
        row = self._fetchone("SELECT active, reason, tripped_at FROM emergency_state WHERE id = 1")
        if row is None:
            return EmergencyState()
        return EmergencyState(active=bool(row[0]), reason=row[1], tripped_at=row[2])

    def save_emergency_state(self, state: EmergencyState) -> None:
        """Write the emergency stop record."""
        with self.transaction() as conn:
            exists = conn.execute("SELECT 1 FROM emergency_state WHERE id = 1").fetchone()
            if exists:
                conn.execute(
                    "UPDATE emergency_state SET active = ?, reason = ?, tripped_at = ? WHERE id = 1",
                    [state.active, state.reason, state.tripped_at],
                )
            else:
                conn.execute(
                    "INSERT INTO emergency_state (id, active, reason, tripped_at) VALUES (1, ?, ?, ?)",
                    [state.active, state.reason, state.tripped_at],
                )

    # ==================== Rate window ====================

    def get_rate_window(self) -> RateWindow | None:
        """Read the rate window, or None before the first call."""
        row = self._fetchone(
            """
            SELECT hour_count, hour_window_start, day_count, day_window_start, last_call_at
            FROM rate_window WHERE id = 1
            """
        )
        if row is None:
            return None
        return RateWindow(
            hour_count=row[0],
            hour_window_start=row[1],
            day_count=row[2],
            day_window_start=row[3],
            last_call_at=row[4],
        )

    def save_rate_window(self, window: RateWindow) -> None:
        """Write the rate window."""
        params = [
            window.hour_count,
            window.hour_window_start,
            window.day_count,
            window.day_window_start,
            window.last_call_at,
        ]
        with self.transaction() as conn:
            exists = conn.execute("SELECT 1 FROM rate_window WHERE id = 1").fetchone()
            if exists:
                conn.execute(
                    """
                    UPDATE rate_window
                    SET hour_count = ?, hour_window_start = ?, day_count = ?,
                        day_window_start = ?, last_call_at = ?
                    WHERE id = 1
                    """,
                    params,
                )
            else:
                conn.execute(
                    """
                    INSERT INTO rate_window
                    (id, hour_count, hour_window_start, day_count, day_window_start, last_call_at)
                    VALUES (1, ?, ?, ?, ?, ?)
                    """,
                    params,
                )

    # ==================== Locks ====================

    def get_lock(self, key: str) -> Lock | None:
        """Get a lock by key."""
        row = self._fetchone("SELECT key, owner, acquired_at FROM job_locks WHERE key = ?", [key])
        if row:
            return self._row_to_lock(row)
        return None

    def get_locks(self) -> list[Lock]:
        """Get all locks, oldest first."""
        rows = self._fetchall("SELECT key, owner, acquired_at FROM job_locks ORDER BY acquired_at")
        return [self._row_to_lock(row) for row in rows]

    def insert_lock(self, lock: Lock) -> None:
        """Insert a new lock row; fails on an existing key."""
        with self._lock:
            self.conn.execute(
                "INSERT INTO job_locks (key, owner, acquired_at) VALUES (?, ?, ?)",
                [lock.key, lock.owner, lock.acquired_at],
            )

    def replace_lock(self, lock: Lock) -> None:
        """Take over an existing lock row."""
        with self._lock:
            self.conn.execute(
                "UPDATE job_locks SET owner = ?, acquired_at = ? WHERE key = ?",
                [lock.owner, lock.acquired_at, lock.key],
            )

    def delete_lock(self, key: str, owner: str | None = None) -> int:
        """Delete a lock, optionally only when held by owner."""
        if owner is None:
            rows = self._fetchall("DELETE FROM job_locks WHERE key = ? RETURNING key", [key])
        else:
            rows = self._fetchall(
                "DELETE FROM job_locks WHERE key = ? AND owner = ? RETURNING key", [key, owner]
            )
        return len(rows)

    def delete_locks_acquired_before(self, cutoff: float) -> list[Lock]:
        """Delete every lock acquired before cutoff and return them."""
        rows = self._fetchall(
            "DELETE FROM job_locks WHERE acquired_at < ? RETURNING key, owner, acquired_at",
            [cutoff],
        )
        return [self._row_to_lock(row) for row in rows]

    def delete_all_locks(self) -> int:
        """Delete every lock."""
        return len(self._fetchall("DELETE FROM job_locks RETURNING key"))

    def _row_to_lock(self, row: tuple) -> Lock:
        """Convert database row to Lock."""
        return Lock(key=row[0], owner=row[1], acquired_at=row[2])

    # ==================== Relationships ====================

    _RELATIONSHIP_COLUMNS = (
        "source_id, language, target_id, status, error_message, created_at, updated_at"
    )

    def get_relationship(self, source_id: int, language: str) -> TranslationRelationship | None:
        """Get the relationship for a source post and language."""
        row = self._fetchone(
            f"SELECT {self._RELATIONSHIP_COLUMNS} FROM translation_relationships "
            "WHERE source_id = ? AND language = ?",
            [source_id, language],
        )
        if row:
            return self._row_to_relationship(row)
        return None

    def get_relationship_by_target(self, target_id: int) -> TranslationRelationship | None:
        """Get the relationship whose translated post is target_id."""
        row = self._fetchone(
            f"SELECT {self._RELATIONSHIP_COLUMNS} FROM translation_relationships "
            "WHERE target_id = ?",
            [target_id],
        )
        if row:
            return self._row_to_relationship(row)
        return None

    def get_relationships(
        self,
        source_id: int | None = None,
        status: Status | None = None,
    ) -> list[TranslationRelationship]:
        """Get relationships, optionally filtered by source and status."""
        conditions = []
        params: list[Any] = []

        if source_id is not None:
            conditions.append("source_id = ?")
            params.append(source_id)
        if status is not None:
            conditions.append("status = ?")
            params.append(status.value)

        where_clause = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        rows = self._fetchall(
            f"SELECT {self._RELATIONSHIP_COLUMNS} FROM translation_relationships "
            f"{where_clause} ORDER BY source_id, language",
            params,
        )
        return [self._row_to_relationship(row) for row in rows]

    def insert_relationship(self, rel: TranslationRelationship) -> None:
        """Insert a new relationship row."""
        with self._lock:
            self.conn.execute(
                f"INSERT INTO translation_relationships ({self._RELATIONSHIP_COLUMNS}) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                [
                    rel.source_id,
                    rel.language,
                    rel.target_id,
                    rel.status.value,
                    rel.error_message,
                    rel.created_at,
                    rel.updated_at,
                ],
            )

    def compare_and_set_status(
        self,
        source_id: int,
        language: str,
        expected: Status,
        new: Status,
        updated_at: float,
        *,
        target_id: int | None = None,
        error_message: str | None = None,
    ) -> bool:
        """
        Move a relationship from expected to new status.

        Returns False without writing when the stored status is not expected.
        target_id is only written when given; error_message is always written.
        """
        rows = self._fetchall(
            """
            UPDATE translation_relationships
            SET status = ?, target_id = COALESCE(?, target_id),
                error_message = ?, updated_at = ?
            WHERE source_id = ? AND language = ? AND status = ?
            RETURNING source_id
            """,
            [
                new.value,
                target_id,
                error_message,
                updated_at,
                source_id,
                language,
                expected.value,
            ],
        )
        return len(rows) == 1

    def delete_relationship(self, source_id: int, language: str) -> bool:
        """Delete a relationship."""
        rows = self._fetchall(
            "DELETE FROM translation_relationships WHERE source_id = ? AND language = ? "
            "RETURNING source_id",
            [source_id, language],
        )
        return len(rows) == 1

    def _row_to_relationship(self, row: tuple) -> TranslationRelationship:
        """Convert database row to TranslationRelationship."""
        return TranslationRelationship(
            source_id=row[0],
            language=row[1],
            target_id=row[2],
            status=Status(row[3]),
            error_message=row[4],
            created_at=row[5],
            updated_at=row[6],
        )

    # ==================== Usage log ====================

    def add_usage_entry(self, entry: UsageEntry) -> int:
        """Append a usage entry."""
        data_json = json.dumps(entry.data) if entry.data else None
        row = self._fetchone(
            """
            INSERT INTO usage_log (id, action, job_key, success, error_code, data, created_at)
            VALUES (nextval('usage_log_id_seq'), ?, ?, ?, ?, ?, ?)
            RETURNING id
            """,
            [
                entry.action,
                entry.job_key,
                entry.success,
                entry.error_code,
                data_json,
                entry.created_at,
            ],
        )
        return row[0] if row else 0

    def trim_usage(self, keep: int) -> int:
        """Keep only the newest `keep` entries."""
        rows = self._fetchall(
            """
            DELETE FROM usage_log
            WHERE id NOT IN (SELECT id FROM usage_log ORDER BY id DESC LIMIT ?)
            RETURNING id
            """,
            [keep],
        )
        return len(rows)

    def delete_usage_before(self, cutoff: float) -> int:
        """Delete usage entries created before cutoff."""
        rows = self._fetchall("DELETE FROM usage_log WHERE created_at < ? RETURNING id", [cutoff])
        return len(rows)

    def get_usage(self, limit: int = 50, action: str | None = None) -> list[UsageEntry]:
        """Get the newest usage entries."""
        if action:
            rows = self._fetchall(
                "SELECT * FROM usage_log WHERE action = ? ORDER BY id DESC LIMIT ?",
                [action, limit],
            )
        else:
            rows = self._fetchall("SELECT * FROM usage_log ORDER BY id DESC LIMIT ?", [limit])
        return [self._row_to_usage(row) for row in rows]

    def count_usage(self) -> int:
        """Count usage entries."""
        row = self._fetchone("SELECT COUNT(*) FROM usage_log")
        return row[0] if row else 0

    def get_usage_summary(self) -> dict[str, dict[str, int]]:
        """Per-action totals and success counts."""
        rows = self._fetchall(
            """
            SELECT action, COUNT(*), SUM(CASE WHEN success THEN 1 ELSE 0 END)
            FROM usage_log GROUP BY action ORDER BY action
            """
        )
        return {row[0]: {"total": row[1], "successful": int(row[2] or 0)} for row in rows}

    def _row_to_usage(self, row: tuple) -> UsageEntry:
        """Convert database row to UsageEntry."""
        data = row[5]
        if isinstance(data, str):
            data = json.loads(data)
        return UsageEntry(
            id=row[0],
            action=row[1],
            job_key=row[2],
            success=bool(row[3]),
            error_code=row[4],
            data=data or {},
            created_at=row[6],
        )

    # ==================== Posts ====================

    def add_post(self, post: Post) -> int:
        """Add a post."""
        row = self._fetchone(
            """
            INSERT INTO posts (id, title, content, language, created_at, updated_at)
            VALUES (nextval('posts_id_seq'), ?, ?, ?, ?, ?)
            RETURNING id
            """,
            [post.title, post.content, post.language, post.created_at, post.updated_at],
        )
        return row[0] if row else 0

    def get_post(self, post_id: int) -> Post | None:
        """Get a post by ID."""
        row = self._fetchone(
            "SELECT id, title, content, language, created_at, updated_at FROM posts WHERE id = ?",
            [post_id],
        )
        if row:
            return Post(
                id=row[0],
                title=row[1],
                content=row[2],
                language=row[3],
                created_at=row[4],
                updated_at=row[5],
            )
        return None

    def update_post(self, post: Post) -> None:
        """Overwrite a post's title, content and language."""
        with self._lock:
            self.conn.execute(
                "UPDATE posts SET title = ?, content = ?, language = ?, updated_at = ? WHERE id = ?",
                [post.title, post.content, post.language, post.updated_at, post.id],
            )
