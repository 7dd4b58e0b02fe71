"""Durable job store for roomkeeper scheduler state.

All scheduler state lives in a single SQLite table of namespaced keys with
JSON values. Every read and write goes through a transaction: either the
whole batch is committed or none of it is visible after a crash.
"""

import enum
import hashlib
import json
import logging
import sqlite3
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, TypeVar

logger = logging.getLogger("roomkeeper.db")

T = TypeVar("T")

TASK_STATE_PREFIX = "recurring_task_state/"
SUBSCRIPTION_PREFIX = "subscription/"
REMINDER_PREFIX = "reminder/"
SYNC_TOKEN_KEY = "sync_state/next_batch"
REMINDER_SEQ_KEY = "meta/reminder_seq"


class StorageError(Exception):
    """A store operation failed; nothing was applied and it is safe to retry."""


# ============================================================================
# Timestamps
# ============================================================================


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def format_ts(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def parse_ts(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# ============================================================================
# Records
# ============================================================================


@dataclass(frozen=True)
class Cursor:
    """Opaque marker of the newest item already processed for one source.

    item_id is the source's stable identifier. published is the item's
    timestamp as reported by the same source, only used to locate the
    cursor once item_id has scrolled out of the fetched window.
    """
    item_id: str
    published: str | None = None

    def to_dict(self) -> dict:
        return {"item_id": self.item_id, "published": self.published}

    @classmethod
    def from_dict(cls, data: dict | None) -> "Cursor | None":
        if not data:
            return None
        return cls(item_id=data["item_id"], published=data.get("published"))


@dataclass
class RecurringTaskState:
    """Polling progress of one subscription."""
    kind: str
    source_id: str
    cursor: Cursor | None = None
    next_eligible_run: datetime | None = None
    consecutive_rate_limit_skips: int = 0
    etag: str | None = None
    last_modified: str | None = None
    last_error: str | None = None
    last_success_at: datetime | None = None

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "source_id": self.source_id,
            "cursor": self.cursor.to_dict() if self.cursor else None,
            "next_eligible_run": format_ts(self.next_eligible_run),
            "consecutive_rate_limit_skips": self.consecutive_rate_limit_skips,
            "etag": self.etag,
            "last_modified": self.last_modified,
            "last_error": self.last_error,
            "last_success_at": format_ts(self.last_success_at),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "RecurringTaskState":
        return cls(
            kind=data["kind"],
            source_id=data["source_id"],
            cursor=Cursor.from_dict(data.get("cursor")),
            next_eligible_run=parse_ts(data.get("next_eligible_run")),
            consecutive_rate_limit_skips=data.get("consecutive_rate_limit_skips", 0),
            etag=data.get("etag"),
            last_modified=data.get("last_modified"),
            last_error=data.get("last_error"),
            last_success_at=parse_ts(data.get("last_success_at")),
        )


@dataclass
class Subscription:
    """A feed or GitHub account whose new items are posted to a room."""
    kind: str               # "rss" or "github"
    source_id: str
    room: str
    target: str             # feed URL or GitHub login
    token: str = ""         # GitHub API token
    name: str = ""
    interval_seconds: int = 0
    cron: str = ""
    digest: bool = False
    from_config: bool = False

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "Subscription":
        return cls(**data)

    @property
    def label(self) -> str:
        return self.name or self.target


class ReminderStatus(str, enum.Enum):
    PENDING = "pending"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


@dataclass
class ReminderRecord:
    id: int
    room: str
    creator: str
    message: str
    due_at: datetime
    status: ReminderStatus = ReminderStatus.PENDING
    target: str = ""        # user to mention; defaults to creator
    created_at: datetime | None = None
    attempts: int = 0
    last_error: str | None = None
    delivered_at: datetime | None = None

    @property
    def who(self) -> str:
        return self.target or self.creator

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "room": self.room,
            "creator": self.creator,
            "target": self.target,
            "message": self.message,
            "due_at": format_ts(self.due_at),
            "status": self.status.value,
            "created_at": format_ts(self.created_at),
            "attempts": self.attempts,
            "last_error": self.last_error,
            "delivered_at": format_ts(self.delivered_at),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ReminderRecord":
        return cls(
            id=data["id"],
            room=data["room"],
            creator=data["creator"],
            target=data.get("target", ""),
            message=data["message"],
            due_at=parse_ts(data["due_at"]),
            status=ReminderStatus(data.get("status", "pending")),
            created_at=parse_ts(data.get("created_at")),
            attempts=data.get("attempts", 0),
            last_error=data.get("last_error"),
            delivered_at=parse_ts(data.get("delivered_at")),
        )


# ============================================================================
# Keys
# ============================================================================


def make_source_id(room: str, target: str) -> str:
    """Deterministic id for a (room, target) subscription."""
    return hashlib.sha256(f"{room}\n{target}".encode()).hexdigest()[:12]


def task_state_key(kind: str, source_id: str) -> str:
    return f"{TASK_STATE_PREFIX}{kind}/{source_id}"


def subscription_key(kind: str, source_id: str) -> str:
    return f"{SUBSCRIPTION_PREFIX}{kind}/{source_id}"


def reminder_key(reminder_id: int) -> str:
    # Zero-padded so key order is id order
    return f"{REMINDER_PREFIX}{reminder_id:010d}"


# ============================================================================
# Store
# ============================================================================


def init_db(db_path: Path) -> None:
    """Initialize database with schema."""
    schema_path = Path(__file__).parent / "schema.sql"
    db_path = Path(db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)
    try:
        with sqlite3.connect(db_path) as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(schema_path.read_text())
    except sqlite3.Error as e:
        raise StorageError(f"Cannot initialize store at {db_path}: {e}") from e


@contextmanager
def get_db(db_path: Path) -> Iterator[sqlite3.Connection]:
    """Get a connection in manual transaction mode."""
    # timeout=30.0 waits up to 30s for locks instead of failing immediately
    conn = sqlite3.connect(db_path, timeout=30.0, isolation_level=None)
    try:
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=FULL")
        yield conn
    finally:
        conn.close()


class Transaction:
    """Reads and writes applied as one atomic batch by JobStore.transaction."""

    def __init__(self, conn: sqlite3.Connection):
        self._conn = conn

    def get(self, key: str) -> dict | None:
        row = self._conn.execute(
            "SELECT value FROM job_store WHERE key = ?", (key,),
        ).fetchone()
        if row is None:
            return None
        return json.loads(row[0])

    def put(self, key: str, value: dict) -> None:
        self._conn.execute(
            """
            INSERT INTO job_store (key, value, updated_at)
            VALUES (?, ?, datetime('now'))
            ON CONFLICT(key) DO UPDATE SET
                value = excluded.value,
                updated_at = excluded.updated_at
            """,
            (key, json.dumps(value, sort_keys=True)),
        )

    def delete(self, key: str) -> bool:
        cursor = self._conn.execute("DELETE FROM job_store WHERE key = ?", (key,))
        return cursor.rowcount > 0

    def scan(self, prefix: str) -> list[tuple[str, dict]]:
        rows = self._conn.execute(
            """
            SELECT key, value FROM job_store
            WHERE substr(key, 1, length(?)) = ?
            ORDER BY key
            """,
            (prefix, prefix),
        ).fetchall()
        return [(key, json.loads(value)) for key, value in rows]


class JobStore:
    """Crash-safe key/value store backing every scheduler record.

    Each public operation is its own transaction. Use transaction(fn) to
    apply several reads and writes atomically; fn must not await.
    """

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self._lock = threading.Lock()

    def init(self) -> None:
        init_db(self.db_path)

    def transaction(self, fn: Callable[[Transaction], T]) -> T:
        """Run fn(txn) atomically and return its result.

        Any exception rolls the whole batch back. sqlite errors surface as
        StorageError; other exceptions propagate unchanged.
        """
        with self._lock:
            try:
                with get_db(self.db_path) as conn:
                    conn.execute("BEGIN IMMEDIATE")
                    try:
                        result = fn(Transaction(conn))
                        conn.execute("COMMIT")
                    except BaseException:
                        conn.execute("ROLLBACK")
                        raise
                    return result
            except sqlite3.Error as e:
                logger.error("Store transaction failed: %s", e)
                raise StorageError(str(e)) from e

    def get(self, key: str) -> dict | None:
        return self.transaction(lambda txn: txn.get(key))

    def put(self, key: str, value: dict) -> None:
        self.transaction(lambda txn: txn.put(key, value))

    def delete(self, key: str) -> bool:
        return self.transaction(lambda txn: txn.delete(key))

    def scan(self, prefix: str) -> list[tuple[str, dict]]:
        return self.transaction(lambda txn: txn.scan(prefix))


# Typed helpers below accept a Transaction or a JobStore (same interface).
Reader = Any


# ============================================================================
# Recurring task state
# ============================================================================


def get_task_state(txn: Reader, kind: str, source_id: str) -> RecurringTaskState | None:
    data = txn.get(task_state_key(kind, source_id))
    if data is None:
        return None
    return RecurringTaskState.from_dict(data)


def put_task_state(txn: Reader, state: RecurringTaskState) -> None:
    txn.put(task_state_key(state.kind, state.source_id), state.to_dict())


def list_task_states(txn: Reader) -> dict[tuple[str, str], RecurringTaskState]:
    states = {}
    for _, data in txn.scan(TASK_STATE_PREFIX):
        state = RecurringTaskState.from_dict(data)
        states[(state.kind, state.source_id)] = state
    return states


# ============================================================================
# Subscriptions
# ============================================================================


def get_subscription(txn: Reader, kind: str, source_id: str) -> Subscription | None:
    data = txn.get(subscription_key(kind, source_id))
    if data is None:
        return None
    return Subscription.from_dict(data)


def put_subscription(txn: Reader, subscription: Subscription) -> None:
    txn.put(subscription_key(subscription.kind, subscription.source_id), subscription.to_dict())


def list_subscriptions(
    txn: Reader, kind: str | None = None, room: str | None = None,
) -> list[Subscription]:
    prefix = f"{SUBSCRIPTION_PREFIX}{kind}/" if kind else SUBSCRIPTION_PREFIX
    subscriptions = [Subscription.from_dict(data) for _, data in txn.scan(prefix)]
    if room is not None:
        subscriptions = [s for s in subscriptions if s.room == room]
    return subscriptions


def remove_subscription(txn: Transaction, kind: str, source_id: str) -> bool:
    """Delete a subscription together with its polling state."""
    txn.delete(task_state_key(kind, source_id))
    return txn.delete(subscription_key(kind, source_id))


# ============================================================================
# Reminders
# ============================================================================


def allocate_reminder_id(txn: Transaction) -> int:
    """Next reminder id; ids grow with creation order."""
    data = txn.get(REMINDER_SEQ_KEY) or {"value": 0}
    next_id = data["value"] + 1
    txn.put(REMINDER_SEQ_KEY, {"value": next_id})
    return next_id


def get_reminder(txn: Reader, reminder_id: int) -> ReminderRecord | None:
    data = txn.get(reminder_key(reminder_id))
    if data is None:
        return None
    return ReminderRecord.from_dict(data)


def put_reminder(txn: Reader, record: ReminderRecord) -> None:
    txn.put(reminder_key(record.id), record.to_dict())


def list_reminders(
    txn: Reader,
    status: ReminderStatus | None = None,
    room: str | None = None,
) -> list[ReminderRecord]:
    """Reminders ordered by (due_at, id)."""
    records = [ReminderRecord.from_dict(data) for _, data in txn.scan(REMINDER_PREFIX)]
    if status is not None:
        records = [r for r in records if r.status is status]
    if room is not None:
        records = [r for r in records if r.room == room]
    records.sort(key=lambda r: (r.due_at, r.id))
    return records


def delete_reminder(txn: Reader, reminder_id: int) -> bool:
    return txn.delete(reminder_key(reminder_id))


# ============================================================================
# Sync token
# ============================================================================


def get_sync_token(txn: Reader) -> str | None:
    data = txn.get(SYNC_TOKEN_KEY)
    return data["value"] if data else None


def set_sync_token(txn: Reader, token: str) -> None:
    txn.put(SYNC_TOKEN_KEY, {"value": token})
