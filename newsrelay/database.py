"""SQLite content store for feeds, items, recipients and the delivery ledger."""
import json
import re
import sqlite3
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from newsrelay.errors import DuplicateDeliveryRecord, DuplicateFeed, StoreError
from newsrelay.models import (
    DeliveryRecord,
    DeliveryStatus,
    Feed,
    Item,
    RawItem,
    Recipient,
    RetentionPolicy,
    SummaryLevel,
)

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"
DELIVERY_TIME_PATTERN = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")


def to_db_timestamp(dt: datetime) -> str:
    """Serialize a datetime as a naive UTC string, same shape as CURRENT_TIMESTAMP."""
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt.strftime(TIMESTAMP_FORMAT)


def from_db_timestamp(value: str | None) -> datetime | None:
    """Parse a stored UTC timestamp into an aware datetime."""
    if not value:
        return None
    return datetime.fromisoformat(value.replace(" ", "T")).replace(tzinfo=timezone.utc)


def format_timestamp(utc_str: str | None, tz_name: str = "Asia/Tokyo") -> str:
    """Stored UTC timestamp rendered in a local zone, or N/A."""
    dt = from_db_timestamp(utc_str)
    return dt.astimezone(ZoneInfo(tz_name)).strftime(TIMESTAMP_FORMAT) if dt else "N/A"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class PurgeResult:
    """Per-category outcome of a retention purge."""

    deleted: dict[str, int] = field(default_factory=dict)
    errors: dict[str, str] = field(default_factory=dict)


class Database:
    """SQLite database wrapper owning all persisted pipeline state.

    All public operations are serialized on one connection; each is atomic
    for its own rows. Uniqueness of item URLs and of ledger pairs is enforced
    by constraints, not by application-level checks.
    """

    SCHEMA = """
    -- Feed sources
    CREATE TABLE IF NOT EXISTS feeds (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL,
        url TEXT UNIQUE NOT NULL,
        active BOOLEAN DEFAULT 1,
        last_fetched_at TIMESTAMP,
        fetch_interval INTEGER DEFAULT 3600,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    );

    -- Recipients (soft-deleted only, the ledger references them)
    CREATE TABLE IF NOT EXISTS recipients (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        external_id TEXT UNIQUE NOT NULL,
        display_name TEXT,
        summary_level TEXT NOT NULL DEFAULT 'standard'
            CHECK (summary_level IN ('brief', 'standard', 'detailed')),
        delivery_time TEXT NOT NULL DEFAULT '08:00',
        timezone TEXT NOT NULL DEFAULT 'Asia/Tokyo',
        active BOOLEAN DEFAULT 1,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    );

    -- Recipient/feed subscriptions
    CREATE TABLE IF NOT EXISTS subscriptions (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        recipient_id INTEGER NOT NULL,
        feed_id INTEGER NOT NULL,
        active BOOLEAN DEFAULT 1,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        FOREIGN KEY (recipient_id) REFERENCES recipients(id),
        FOREIGN KEY (feed_id) REFERENCES feeds(id),
        UNIQUE (recipient_id, feed_id)
    );

    -- Ingested items (url uniqueness is the dedup invariant)
    CREATE TABLE IF NOT EXISTS items (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        feed_id INTEGER,
        title TEXT NOT NULL,
        url TEXT UNIQUE NOT NULL,
        body TEXT,
        summary TEXT,
        keywords TEXT,
        published_at TIMESTAMP NOT NULL,
        processed BOOLEAN DEFAULT 0,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        FOREIGN KEY (feed_id) REFERENCES feeds(id) ON DELETE SET NULL
    );

    -- Delivery ledger (one row per recipient/item pair; item_id outlives the item)
    CREATE TABLE IF NOT EXISTS delivery_records (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        recipient_id INTEGER NOT NULL,
        item_id INTEGER NOT NULL,
        delivered_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        status TEXT NOT NULL CHECK (status IN ('sent', 'failed')),
        error_detail TEXT,
        FOREIGN KEY (recipient_id) REFERENCES recipients(id),
        UNIQUE (recipient_id, item_id)
    );

    -- Job run history
    CREATE TABLE IF NOT EXISTS job_runs (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        job_name TEXT NOT NULL,
        started_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        completed_at TIMESTAMP,
        result TEXT,
        error TEXT,
        status TEXT CHECK (status IN ('running', 'completed', 'failed'))
    );

    -- Indexes for common queries
    CREATE INDEX IF NOT EXISTS idx_items_published ON items(published_at);
    CREATE INDEX IF NOT EXISTS idx_items_processed ON items(processed, created_at);
    CREATE INDEX IF NOT EXISTS idx_delivery_recipient ON delivery_records(recipient_id);
    CREATE INDEX IF NOT EXISTS idx_delivery_delivered ON delivery_records(delivered_at);
    CREATE INDEX IF NOT EXISTS idx_subscriptions_recipient ON subscriptions(recipient_id);
    CREATE INDEX IF NOT EXISTS idx_job_runs_name ON job_runs(job_name, started_at);
    """

    def __init__(self, db_path: Path, clock: Callable[[], datetime] | None = None):
        """Initialize database, creating tables if needed."""
        self.db_path = db_path
        self._clock = clock or _utcnow
        self._lock = threading.RLock()
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA foreign_keys = ON")
        self._init_schema()

    def _init_schema(self) -> None:
        """Create tables if they don't exist."""
        self.conn.executescript(self.SCHEMA)
        self.conn.commit()

    def _now(self) -> str:
        return to_db_timestamp(self._clock())

    def execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        """Execute SQL and return cursor."""
        with self._lock:
            return self.conn.execute(sql, params)

    def _query(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        with self._lock:
            return self.conn.execute(sql, params).fetchall()

    def _query_one(self, sql: str, params: tuple = ()) -> sqlite3.Row | None:
        with self._lock:
            return self.conn.execute(sql, params).fetchone()

    def commit(self) -> None:
        """Commit current transaction."""
        with self._lock:
            self.conn.commit()

    def close(self) -> None:
        """Close database connection."""
        with self._lock:
            self.conn.close()

    # === Feeds ===

    def upsert_feed(self, name: str, url: str, fetch_interval: int = 3600) -> Feed:
        """Register a new feed. Raises DuplicateFeed if the URL is already known."""
        now = self._now()
        with self._lock:
            try:
                cursor = self.conn.execute(
                    """INSERT INTO feeds (name, url, fetch_interval, created_at, updated_at)
                       VALUES (?, ?, ?, ?, ?)""",
                    (name.strip(), url.strip(), fetch_interval, now, now),
                )
            except sqlite3.IntegrityError as e:
                self.conn.rollback()
                raise DuplicateFeed(url.strip()) from e
            self.conn.commit()
            return self.get_feed(cursor.lastrowid)

    def get_feed(self, feed_id: int) -> Feed | None:
        row = self._query_one("SELECT * FROM feeds WHERE id = ?", (feed_id,))
        return _row_to_feed(row) if row else None

    def list_feeds(self) -> list[Feed]:
        rows = self._query("SELECT * FROM feeds ORDER BY name")
        return [_row_to_feed(row) for row in rows]

    def list_active_feeds(self) -> list[Feed]:
        rows = self._query("SELECT * FROM feeds WHERE active = 1 ORDER BY name")
        return [_row_to_feed(row) for row in rows]

    def mark_feed_fetched(self, feed_id: int) -> None:
        """Stamp the feed's last successful fetch time."""
        now = self._now()
        with self._lock:
            self.conn.execute(
                "UPDATE feeds SET last_fetched_at = ?, updated_at = ? WHERE id = ?",
                (now, now, feed_id),
            )
            self.conn.commit()

    def deactivate_feed(self, feed_id: int) -> bool:
        """Deactivate a feed. Feeds are never hard-deleted."""
        with self._lock:
            cursor = self.conn.execute(
                "UPDATE feeds SET active = 0, updated_at = ? WHERE id = ?",
                (self._now(), feed_id),
            )
            self.conn.commit()
            return cursor.rowcount > 0

    # === Items ===

    def insert_item_if_new(self, item: RawItem, feed_id: int | None) -> Item | None:
        """Insert a normalized item unless its URL is already stored.

        Returns the stored Item, or None when the URL already exists. The
        UNIQUE constraint on url decides, so concurrent inserts of the same
        URL yield exactly one row.
        """
        published_at = item.published_at
        if not isinstance(published_at, datetime):
            raise ValueError("insert_item_if_new requires a normalized published_at")

        now = self._now()
        with self._lock:
            cursor = self.conn.execute(
                """INSERT INTO items (feed_id, title, url, body, published_at, created_at)
                   VALUES (?, ?, ?, ?, ?, ?)
                   ON CONFLICT(url) DO NOTHING""",
                (feed_id, item.title, item.url, item.body, to_db_timestamp(published_at), now),
            )
            self.conn.commit()
            if cursor.rowcount == 0:
                return None
            item_id = cursor.lastrowid
        return self.get_item(item_id)

    def get_item(self, item_id: int) -> Item | None:
        row = self._query_one(
            """SELECT i.*, f.name AS feed_name FROM items i
               LEFT JOIN feeds f ON i.feed_id = f.id
               WHERE i.id = ?""",
            (item_id,),
        )
        return _row_to_item(row) if row else None

    def mark_item_enriched(self, item_id: int, summary: str, keywords: list[str]) -> bool:
        """Fill summary/keywords and flip processed. Items are enriched at most once."""
        with self._lock:
            cursor = self.conn.execute(
                """UPDATE items
                   SET summary = ?, keywords = ?, processed = 1
                   WHERE id = ? AND processed = 0""",
                (summary, json.dumps(keywords), item_id),
            )
            self.conn.commit()
            return cursor.rowcount > 0

    def list_unprocessed_items(
        self,
        limit: int = 10,
        max_age: timedelta = timedelta(days=7),
    ) -> list[Item]:
        """Unprocessed items still inside the processing-timeout window, oldest first."""
        cutoff = to_db_timestamp(self._clock() - max_age)
        rows = self._query(
            """SELECT i.*, f.name AS feed_name FROM items i
               LEFT JOIN feeds f ON i.feed_id = f.id
               WHERE i.processed = 0 AND i.created_at > ?
               ORDER BY i.created_at ASC
               LIMIT ?""",
            (cutoff, limit),
        )
        return [_row_to_item(row) for row in rows]

    def list_recent_items(self, limit: int = 20) -> list[Item]:
        """Most recently published enriched items."""
        rows = self._query(
            """SELECT i.*, f.name AS feed_name FROM items i
               LEFT JOIN feeds f ON i.feed_id = f.id
               WHERE i.processed = 1
               ORDER BY i.published_at DESC
               LIMIT ?""",
            (limit,),
        )
        return [_row_to_item(row) for row in rows]

    def list_undelivered_eligible_items(
        self,
        recipient_id: int,
        lookback: timedelta = timedelta(hours=24),
        limit: int = 5,
        retry_failed: bool = False,
    ) -> list[Item]:
        """Enriched items from actively subscribed feeds not yet delivered to the recipient.

        Any existing ledger row excludes the item. With retry_failed, only
        'sent' rows exclude it.
        """
        cutoff = to_db_timestamp(self._clock() - lookback)
        ledger_filter = "AND d.status = 'sent'" if retry_failed else ""
        rows = self._query(
            f"""SELECT DISTINCT i.*, f.name AS feed_name
                FROM items i
                JOIN feeds f ON i.feed_id = f.id
                JOIN subscriptions s ON s.feed_id = f.id
                WHERE s.recipient_id = ?
                  AND s.active = 1
                  AND i.processed = 1
                  AND i.summary IS NOT NULL
                  AND i.published_at > ?
                  AND NOT EXISTS (
                      SELECT 1 FROM delivery_records d
                      WHERE d.item_id = i.id AND d.recipient_id = ? {ledger_filter}
                  )
                ORDER BY i.published_at DESC
                LIMIT ?""",
            (recipient_id, cutoff, recipient_id, limit),
        )
        return [_row_to_item(row) for row in rows]

    # === Recipients & subscriptions ===

    def get_or_create_recipient(
        self, external_id: str, display_name: str | None = None
    ) -> tuple[Recipient, bool]:
        """Return (recipient, created). Recipients are created on first contact."""
        now = self._now()
        with self._lock:
            cursor = self.conn.execute(
                """INSERT INTO recipients (external_id, display_name, created_at, updated_at)
                   VALUES (?, ?, ?, ?)
                   ON CONFLICT(external_id) DO NOTHING""",
                (external_id, display_name, now, now),
            )
            self.conn.commit()
            created = cursor.rowcount > 0
        return self.get_recipient_by_external_id(external_id), created

    def get_recipient_by_external_id(self, external_id: str) -> Recipient | None:
        row = self._query_one(
            "SELECT * FROM recipients WHERE external_id = ?", (external_id,)
        )
        return _row_to_recipient(row) if row else None

    def list_recipients(self) -> list[Recipient]:
        rows = self._query("SELECT * FROM recipients ORDER BY created_at DESC, id DESC")
        return [_row_to_recipient(row) for row in rows]

    def list_active_recipients(self) -> list[Recipient]:
        rows = self._query("SELECT * FROM recipients WHERE active = 1 ORDER BY id")
        return [_row_to_recipient(row) for row in rows]

    def update_recipient_settings(
        self,
        external_id: str,
        summary_level: str | None = None,
        delivery_time: str | None = None,
        timezone_name: str | None = None,
        active: bool | None = None,
    ) -> bool:
        """Apply recipient-initiated settings changes. Returns False for unknown recipients."""
        fields = []
        values: list = []

        if summary_level is not None:
            if summary_level not in SummaryLevel.ALL:
                raise ValueError(f"Unknown summary level: {summary_level}")
            fields.append("summary_level = ?")
            values.append(summary_level)
        if delivery_time is not None:
            if not DELIVERY_TIME_PATTERN.match(delivery_time):
                raise ValueError(f"Delivery time must be HH:MM, got {delivery_time!r}")
            fields.append("delivery_time = ?")
            values.append(delivery_time)
        if timezone_name is not None:
            try:
                ZoneInfo(timezone_name)
            except (ZoneInfoNotFoundError, ValueError) as e:
                raise ValueError(f"Unknown time zone: {timezone_name}") from e
            fields.append("timezone = ?")
            values.append(timezone_name)
        if active is not None:
            fields.append("active = ?")
            values.append(1 if active else 0)

        fields.append("updated_at = ?")
        values.append(self._now())
        values.append(external_id)

        with self._lock:
            cursor = self.conn.execute(
                f"UPDATE recipients SET {', '.join(fields)} WHERE external_id = ?",
                tuple(values),
            )
            self.conn.commit()
            return cursor.rowcount > 0

    def subscribe(self, recipient_id: int, feed_id: int) -> None:
        """Create or reactivate a subscription."""
        with self._lock:
            try:
                self.conn.execute(
                    """INSERT INTO subscriptions (recipient_id, feed_id, created_at)
                       VALUES (?, ?, ?)
                       ON CONFLICT(recipient_id, feed_id) DO UPDATE SET active = 1""",
                    (recipient_id, feed_id, self._now()),
                )
            except sqlite3.IntegrityError as e:
                self.conn.rollback()
                raise StoreError(
                    f"Cannot subscribe recipient {recipient_id} to feed {feed_id}: {e}"
                ) from e
            self.conn.commit()

    def unsubscribe(self, recipient_id: int, feed_id: int) -> bool:
        with self._lock:
            cursor = self.conn.execute(
                "UPDATE subscriptions SET active = 0 WHERE recipient_id = ? AND feed_id = ?",
                (recipient_id, feed_id),
            )
            self.conn.commit()
            return cursor.rowcount > 0

    # === Delivery ledger ===

    def record_delivery(
        self,
        recipient_id: int,
        item_id: int,
        status: str,
        error_detail: str | None = None,
        replace_failed: bool = False,
    ) -> None:
        """Write the ledger row for one delivery attempt.

        Raises DuplicateDeliveryRecord if the pair already has a row. With
        replace_failed, a 'failed' row is overwritten instead; a 'sent' row
        still raises.
        """
        if status not in DeliveryStatus.ALL:
            raise ValueError(f"Unknown delivery status: {status}")

        sql = """INSERT INTO delivery_records
                 (recipient_id, item_id, delivered_at, status, error_detail)
                 VALUES (?, ?, ?, ?, ?)"""
        if replace_failed:
            sql += """
                 ON CONFLICT(recipient_id, item_id) DO UPDATE SET
                     delivered_at = excluded.delivered_at,
                     status = excluded.status,
                     error_detail = excluded.error_detail
                 WHERE delivery_records.status = 'failed'"""

        with self._lock:
            try:
                cursor = self.conn.execute(
                    sql, (recipient_id, item_id, self._now(), status, error_detail)
                )
            except sqlite3.IntegrityError as e:
                self.conn.rollback()
                if "UNIQUE" in str(e):
                    raise DuplicateDeliveryRecord(recipient_id, item_id) from e
                raise StoreError(f"Ledger write rejected: {e}") from e
            self.conn.commit()
            if cursor.rowcount == 0:
                raise DuplicateDeliveryRecord(recipient_id, item_id)

    def list_delivery_records(self, recipient_id: int | None = None) -> list[DeliveryRecord]:
        if recipient_id is None:
            rows = self._query("SELECT * FROM delivery_records ORDER BY delivered_at DESC, id DESC")
        else:
            rows = self._query(
                """SELECT * FROM delivery_records WHERE recipient_id = ?
                   ORDER BY delivered_at DESC, id DESC""",
                (recipient_id,),
            )
        return [_row_to_delivery(row) for row in rows]

    # === Retention ===

    def purge_stale(self, policy: RetentionPolicy | None = None) -> PurgeResult:
        """Delete stale ledger rows and items. Each category succeeds or fails on its own."""
        policy = policy or RetentionPolicy()
        now = self._clock()
        categories = [
            (
                "delivery_records",
                "DELETE FROM delivery_records WHERE delivered_at < ?",
                now - policy.ledger_retention,
            ),
            (
                "unprocessed_items",
                "DELETE FROM items WHERE processed = 0 AND created_at < ?",
                now - policy.processing_timeout,
            ),
            (
                "processed_items",
                "DELETE FROM items WHERE processed = 1 AND created_at < ?",
                now - policy.content_retention,
            ),
        ]

        result = PurgeResult()
        for name, sql, cutoff in categories:
            with self._lock:
                try:
                    cursor = self.conn.execute(sql, (to_db_timestamp(cutoff),))
                    self.conn.commit()
                except sqlite3.Error as e:
                    self.conn.rollback()
                    result.errors[name] = str(e)
                    continue
            result.deleted[name] = cursor.rowcount
        return result

    def get_stats(self) -> dict:
        """Counts for operator dashboards."""
        recent_cutoff = to_db_timestamp(self._clock() - timedelta(days=7))
        queries = {
            "active_recipients": ("SELECT COUNT(*) FROM recipients WHERE active = 1", ()),
            "active_feeds": ("SELECT COUNT(*) FROM feeds WHERE active = 1", ()),
            "total_items": ("SELECT COUNT(*) FROM items", ()),
            "unprocessed_items": ("SELECT COUNT(*) FROM items WHERE processed = 0", ()),
            "total_deliveries": ("SELECT COUNT(*) FROM delivery_records", ()),
            "failed_deliveries": (
                "SELECT COUNT(*) FROM delivery_records WHERE status = 'failed'",
                (),
            ),
            "recent_items": (
                "SELECT COUNT(*) FROM items WHERE created_at > ?",
                (recent_cutoff,),
            ),
        }
        return {
            key: self._query_one(sql, params)[0]
            for key, (sql, params) in queries.items()
        }

    # === Job runs ===

    def record_run_start(self, job_name: str) -> int:
        """Start a new job run, return run_id.

        Also marks stale 'running' rows of the same job from interrupted
        processes as failed.
        """
        now = self._now()
        with self._lock:
            self.conn.execute(
                """UPDATE job_runs
                   SET status = 'failed', completed_at = ?, error = 'interrupted'
                   WHERE status = 'running' AND job_name = ?""",
                (now, job_name),
            )
            cursor = self.conn.execute(
                "INSERT INTO job_runs (job_name, started_at, status) VALUES (?, ?, ?)",
                (job_name, now, "running"),
            )
            self.conn.commit()
            return cursor.lastrowid

    def record_run_complete(self, run_id: int, result: dict) -> None:
        """Mark job run as complete with its aggregate result."""
        with self._lock:
            self.conn.execute(
                """UPDATE job_runs
                   SET completed_at = ?, result = ?, status = 'completed'
                   WHERE id = ?""",
                (self._now(), json.dumps(result), run_id),
            )
            self.conn.commit()

    def record_run_failed(self, run_id: int, error: str) -> None:
        with self._lock:
            self.conn.execute(
                """UPDATE job_runs
                   SET completed_at = ?, error = ?, status = 'failed'
                   WHERE id = ?""",
                (self._now(), error[:500], run_id),
            )
            self.conn.commit()

    def get_last_run(self, job_name: str) -> dict | None:
        """Most recent run of a job, with its decoded result."""
        row = self._query_one(
            "SELECT * FROM job_runs WHERE job_name = ? ORDER BY id DESC LIMIT 1",
            (job_name,),
        )
        if not row:
            return None
        run = dict(row)
        run["result"] = json.loads(row["result"]) if row["result"] else None
        return run


def _row_to_feed(row: sqlite3.Row) -> Feed:
    return Feed(
        id=row["id"],
        name=row["name"],
        url=row["url"],
        active=bool(row["active"]),
        last_fetched_at=from_db_timestamp(row["last_fetched_at"]),
        fetch_interval=row["fetch_interval"],
    )


def _row_to_item(row: sqlite3.Row) -> Item:
    keys = row.keys()
    return Item(
        id=row["id"],
        feed_id=row["feed_id"],
        title=row["title"],
        url=row["url"],
        body=row["body"] or "",
        published_at=from_db_timestamp(row["published_at"]),
        summary=row["summary"],
        keywords=json.loads(row["keywords"]) if row["keywords"] else None,
        processed=bool(row["processed"]),
        created_at=from_db_timestamp(row["created_at"]),
        feed_name=row["feed_name"] if "feed_name" in keys else None,
    )


def _row_to_recipient(row: sqlite3.Row) -> Recipient:
    return Recipient(
        id=row["id"],
        external_id=row["external_id"],
        display_name=row["display_name"],
        summary_level=row["summary_level"],
        delivery_time=row["delivery_time"],
        timezone=row["timezone"],
        active=bool(row["active"]),
        created_at=from_db_timestamp(row["created_at"]),
        updated_at=from_db_timestamp(row["updated_at"]),
    )


def _row_to_delivery(row: sqlite3.Row) -> DeliveryRecord:
    return DeliveryRecord(
        recipient_id=row["recipient_id"],
        item_id=row["item_id"],
        delivered_at=from_db_timestamp(row["delivered_at"]),
        status=row["status"],
        error_detail=row["error_detail"],
    )
