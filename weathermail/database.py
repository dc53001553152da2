"""
Database module for weathermail.

Handles SQLite persistence of email subscriptions:
- Double opt-in through confirm tokens
- Unsubscribe tokens for one-click removal
- Minute-staggered delivery slots for hourly and daily batches
"""

import sqlite3
import threading
import logging
import uuid
from typing import Callable, List, Optional, Tuple
from dataclasses import dataclass
from datetime import datetime, timedelta

from .config import DEFAULT_DB_PATH

logger = logging.getLogger(__name__)

FREQUENCIES = ("hourly", "daily")


class RepositoryError(Exception):
    """Base exception for subscription storage errors."""
    pass


class EmailAlreadyExists(RepositoryError):
    """Raised when attempting to subscribe an email that already exists."""
    pass


class SubscriptionNotFound(RepositoryError):
    """Raised when no subscription matches a token."""
    pass


@dataclass
class Subscription:
    """A persisted subscription row."""
    id: int
    email: str
    city: str
    frequency: str          # 'hourly' | 'daily'
    confirmed: bool
    confirm_token: Optional[str]
    unsubscribe_token: str
    scheduled_minute: int
    scheduled_hour: int
    created_at: str

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Subscription":
        data = dict(row)
        data["confirmed"] = bool(data["confirmed"])
        return cls(**data)


class SubscriptionRepository:
    """
    SQLite subscription store with thread-safe operations.

    A single connection is shared by the request handlers and the
    scheduler thread; every statement runs under one lock.
    """

    def __init__(self, db_path: str = None, clock: Callable[[], datetime] = datetime.utcnow) -> None:
        self._db_path = db_path or str(DEFAULT_DB_PATH)
        self._clock = clock
        self._lock = threading.Lock()
        self._conn = None
        self._connect()
        self._init_schema()
        logger.info(f"Database initialized at {self._db_path}")

    def _connect(self) -> None:
        """Establish database connection with WAL mode."""
        self._conn = sqlite3.connect(
            self._db_path,
            check_same_thread=False,
            isolation_level=None
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA synchronous=NORMAL")

    def _init_schema(self) -> None:
        """Initialize database schema."""
        with self._lock:
            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS subscriptions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    email TEXT NOT NULL UNIQUE,
                    city TEXT NOT NULL,
                    frequency TEXT NOT NULL
                        CHECK (frequency IN ('hourly', 'daily')),
                    confirmed INTEGER NOT NULL DEFAULT 0,
                    confirm_token TEXT UNIQUE,
                    unsubscribe_token TEXT NOT NULL UNIQUE,
                    scheduled_minute INTEGER NOT NULL DEFAULT 0
                        CHECK (scheduled_minute BETWEEN 0 AND 59),
                    scheduled_hour INTEGER NOT NULL DEFAULT 0
                        CHECK (scheduled_hour BETWEEN 0 AND 23),
                    created_at TEXT NOT NULL DEFAULT (datetime('now'))
                )
            """)

            # Indexes for scheduler lookups
            self._conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_subs_hourly
                ON subscriptions(scheduled_minute)
                WHERE confirmed = 1 AND frequency = 'hourly'
            """)
            self._conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_subs_daily
                ON subscriptions(scheduled_hour, scheduled_minute)
                WHERE confirmed = 1 AND frequency = 'daily'
            """)

    # =========================================================================
    # Subscription Lifecycle
    # =========================================================================

    def create(self, email: str, city: str, frequency: str) -> Tuple[str, str]:
        """Insert an unconfirmed subscription; returns (confirm_token, unsubscribe_token)."""
        confirm_token = str(uuid.uuid4())
        unsubscribe_token = str(uuid.uuid4())

        with self._lock:
            try:
                self._conn.execute("""
                    INSERT INTO subscriptions
                    (email, city, frequency, confirm_token, unsubscribe_token)
                    VALUES (?, ?, ?, ?, ?)
                """, (email, city, frequency, confirm_token, unsubscribe_token))
            except sqlite3.IntegrityError as e:
                if "subscriptions.email" in str(e):
                    logger.warning(f"Duplicate email subscription attempt: {email}")
                    raise EmailAlreadyExists(email)
                logger.error(f"Failed to create subscription for {email}: {e}")
                raise RepositoryError(str(e)) from e

        logger.debug(f"Subscription created: {email} / {city} / {frequency}")
        return confirm_token, unsubscribe_token

    def confirm(self, token: str) -> None:
        """
        Confirm a subscription by its confirm token.

        The delivery slot is set one minute ahead so the first email goes
        out on the next scheduler tick.
        """
        slot = self._clock() + timedelta(minutes=1)

        with self._lock:
            cursor = self._conn.execute("""
                UPDATE subscriptions
                SET confirmed = 1,
                    confirm_token = NULL,
                    scheduled_hour = ?,
                    scheduled_minute = ?
                WHERE confirm_token = ? AND confirmed = 0
            """, (slot.hour, slot.minute, token))

            if cursor.rowcount == 0:
                logger.warning(f"Confirm token not found or already confirmed: {token}")
                raise SubscriptionNotFound(token)

        logger.info(f"Subscription confirmed: {token}")

    def delete_by_unsubscribe_token(self, token: str) -> None:
        """Remove the subscription owning the given unsubscribe token."""
        with self._lock:
            cursor = self._conn.execute(
                "DELETE FROM subscriptions WHERE unsubscribe_token = ?",
                (token,)
            )
            if cursor.rowcount == 0:
                logger.warning(f"Unsubscribe token not found: {token}")
                raise SubscriptionNotFound(token)

        logger.info(f"Subscription deleted: {token}")

    def get_by_email(self, email: str) -> Optional[Subscription]:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM subscriptions WHERE email = ?", (email,)
            ).fetchone()
            return Subscription.from_row(row) if row else None

    # =========================================================================
    # Scheduler Batches
    # =========================================================================

    def hourly_batch(self, minute: int) -> List[Subscription]:
        """Confirmed hourly subscriptions due at the given minute."""
        with self._lock:
            cursor = self._conn.execute("""
                SELECT * FROM subscriptions
                WHERE confirmed = 1
                  AND frequency = 'hourly'
                  AND scheduled_minute = ?
                ORDER BY id
            """, (minute,))
            subs = [Subscription.from_row(row) for row in cursor.fetchall()]

        logger.debug(f"Fetched hourly batch for minute {minute}: {len(subs)}")
        return subs

    def daily_batch(self, hour: int, minute: int) -> List[Subscription]:
        """Confirmed daily subscriptions due at the given hour and minute."""
        with self._lock:
            cursor = self._conn.execute("""
                SELECT * FROM subscriptions
                WHERE confirmed = 1
                  AND frequency = 'daily'
                  AND scheduled_hour = ?
                  AND scheduled_minute = ?
                ORDER BY id
            """, (hour, minute))
            subs = [Subscription.from_row(row) for row in cursor.fetchall()]

        logger.debug(f"Fetched daily batch for {hour:02d}:{minute:02d}: {len(subs)}")
        return subs

    def count(self) -> int:
        with self._lock:
            return self._conn.execute("SELECT COUNT(*) FROM subscriptions").fetchone()[0]

    def close(self) -> None:
        """Close database connection."""
        with self._lock:
            if self._conn:
                self._conn.close()
                self._conn = None
                logger.info("Database connection closed")
