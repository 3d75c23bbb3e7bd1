"""
SQLite database for accounts, behavioral events and identified emails.

The events table is append-only; nothing here updates or deletes an event.
"""

import json
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Optional
from contextlib import contextmanager

from .models import (
    Account,
    EventType,
    PersistedEvent,
    SubscriptionTier,
)
from .utils import round_half_up


class ChurnOppDatabase:
    """SQLite database for ChurnOpp data."""

    def __init__(self, db_path: str = "data/churnopp.db"):
        """Initialize database connection."""
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

    @contextmanager
    def _get_connection(self):
        """Get a database connection with row factory."""
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        finally:
            conn.close()

    def _init_schema(self):
        """Initialize database schema."""
        with self._get_connection() as conn:
            cursor = conn.cursor()

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS accounts (
                    account_id TEXT PRIMARY KEY,
                    email TEXT NOT NULL,
                    tier TEXT NOT NULL DEFAULT 'basic'
                )
            """)

            # Append-only event log
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS events (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    account_id TEXT NOT NULL,
                    user_id TEXT NOT NULL,
                    event_type TEXT NOT NULL,
                    payload TEXT NOT NULL,
                    timestamp TIMESTAMP NOT NULL
                )
            """)

            # Last identified email per tracked user
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS user_emails (
                    account_id TEXT NOT NULL,
                    user_id TEXT NOT NULL,
                    email TEXT NOT NULL,
                    updated_at TIMESTAMP NOT NULL,
                    PRIMARY KEY (account_id, user_id)
                )
            """)

            cursor.execute(
                "CREATE INDEX IF NOT EXISTS idx_events_account_user_ts "
                "ON events(account_id, user_id, timestamp)"
            )
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_events_type ON events(event_type)")

    # Account operations
    def save_account(self, account: Account):
        """Insert or replace an account."""
        with self._get_connection() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO accounts (account_id, email, tier) VALUES (?, ?, ?)",
                (account.account_id, account.email, account.tier.value),
            )

    def get_account(self, account_id: str) -> Optional[Account]:
        """Get an account by id."""
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM accounts WHERE account_id = ?", (account_id,)
            ).fetchone()
            if row:
                return Account(
                    account_id=row["account_id"],
                    email=row["email"],
                    tier=SubscriptionTier(row["tier"]),
                )
        return None

    # Event operations
    def append_event(self, event: PersistedEvent) -> PersistedEvent:
        """Append an event. Returns the event with its row id."""
        with self._get_connection() as conn:
            cursor = conn.execute("""
                INSERT INTO events (account_id, user_id, event_type, payload, timestamp)
                VALUES (?, ?, ?, ?, ?)
            """, (
                event.account_id,
                event.user_id,
                event.event_type.value,
                json.dumps(event.payload, default=str),
                event.timestamp.isoformat(),
            ))
            return event.model_copy(update={"id": cursor.lastrowid})

    def get_user_events(self, account_id: str, user_id: str) -> list[PersistedEvent]:
        """Full event history of one tracked user, oldest first."""
        with self._get_connection() as conn:
            rows = conn.execute("""
                SELECT * FROM events
                WHERE account_id = ? AND user_id = ?
                ORDER BY timestamp ASC, id ASC
            """, (account_id, user_id)).fetchall()
            return [self._row_to_event(row) for row in rows]

    def list_user_ids(self, account_id: str) -> list[str]:
        """Distinct tracked user ids seen for an account."""
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT DISTINCT user_id FROM events WHERE account_id = ? ORDER BY user_id",
                (account_id,),
            ).fetchall()
            return [row["user_id"] for row in rows]

    def get_recent_events(
        self,
        account_id: str,
        event_type: Optional[EventType] = None,
        user_id: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        limit: int = 100,
    ) -> list[PersistedEvent]:
        """Most recent events for an account with optional filters."""
        where, params = self._build_filters(account_id, event_type, user_id, start_date, end_date)
        with self._get_connection() as conn:
            rows = conn.execute(
                f"SELECT * FROM events WHERE {where} ORDER BY timestamp DESC, id DESC LIMIT ?",
                params + [limit],
            ).fetchall()
            return [self._row_to_event(row) for row in rows]

    # Identified users
    def upsert_user_email(self, account_id: str, user_id: str, email: str):
        """Remember the latest email seen for a tracked user."""
        with self._get_connection() as conn:
            conn.execute("""
                INSERT INTO user_emails (account_id, user_id, email, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(account_id, user_id)
                DO UPDATE SET email = excluded.email, updated_at = excluded.updated_at
            """, (account_id, user_id, email, datetime.utcnow().isoformat()))

    def get_user_email(self, account_id: str, user_id: str) -> Optional[str]:
        """Get the identified email of a tracked user, if any."""
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT email FROM user_emails WHERE account_id = ? AND user_id = ?",
                (account_id, user_id),
            ).fetchone()
            return row["email"] if row else None

    # Analytics
    def get_event_stats(
        self,
        account_id: str,
        event_type: Optional[EventType] = None,
        user_id: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> dict:
        """Aggregate event statistics for the dashboard."""
        where, params = self._build_filters(account_id, event_type, user_id, start_date, end_date)
        with self._get_connection() as conn:
            cursor = conn.cursor()

            cursor.execute(f"SELECT COUNT(*) AS total FROM events WHERE {where}", params)
            total_events = cursor.fetchone()["total"] or 0

            cursor.execute(f"""
                SELECT COUNT(*) AS sessions,
                       AVG(json_extract(payload, '$.duration')) AS avg_duration
                FROM events
                WHERE {where} AND event_type = 'sessionDuration'
            """, params)
            row = cursor.fetchone()
            total_sessions = row["sessions"] or 0
            avg_session_duration = row["avg_duration"] or 0

            cursor.execute(f"""
                SELECT AVG(json_extract(payload, '$.depth')) AS avg_depth
                FROM events
                WHERE {where} AND event_type = 'scrollDepth'
            """, params)
            avg_scroll_depth = cursor.fetchone()["avg_depth"] or 0

            cursor.execute(f"""
                SELECT event_type, COUNT(*) AS count
                FROM events
                WHERE {where}
                GROUP BY event_type
            """, params)
            event_counts = {row["event_type"]: row["count"] for row in cursor.fetchall()}

            cursor.execute(f"""
                SELECT user_id, COUNT(*) AS count
                FROM events
                WHERE {where}
                GROUP BY user_id
                ORDER BY count DESC, user_id ASC
                LIMIT 5
            """, params)
            top_users = [
                {"userId": row["user_id"], "eventCount": row["count"]}
                for row in cursor.fetchall()
            ]

            return {
                "totalEvents": total_events,
                "totalSessions": total_sessions,
                "avgSessionDuration": round_half_up(avg_session_duration),
                "avgScrollDepth": round_half_up(avg_scroll_depth),
                "eventCounts": event_counts,
                "topUsers": top_users,
            }

    @staticmethod
    def _build_filters(
        account_id: str,
        event_type: Optional[EventType],
        user_id: Optional[str],
        start_date: Optional[datetime],
        end_date: Optional[datetime],
    ) -> tuple[str, list]:
        query = "account_id = ?"
        params: list = [account_id]

        if event_type:
            query += " AND event_type = ?"
            params.append(event_type.value)

        if user_id:
            query += " AND user_id = ?"
            params.append(user_id)

        if start_date:
            query += " AND timestamp >= ?"
            params.append(start_date.isoformat())

        if end_date:
            query += " AND timestamp <= ?"
            params.append(end_date.isoformat())

        return query, params

    @staticmethod
    def _row_to_event(row: sqlite3.Row) -> PersistedEvent:
        return PersistedEvent(
            id=row["id"],
            account_id=row["account_id"],
            user_id=row["user_id"],
            event_type=EventType(row["event_type"]),
            payload=json.loads(row["payload"]),
            timestamp=datetime.fromisoformat(row["timestamp"]),
        )
