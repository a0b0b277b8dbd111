"""Data models for the ingestion-and-delivery pipeline."""
from dataclasses import dataclass, field
from datetime import datetime, timedelta


class SummaryLevel:
    """Allowed summary detail levels."""

    BRIEF = "brief"
    STANDARD = "standard"
    DETAILED = "detailed"

    ALL = (BRIEF, STANDARD, DETAILED)


class DeliveryStatus:
    """Delivery ledger statuses."""

    SENT = "sent"
    FAILED = "failed"

    ALL = (SENT, FAILED)


@dataclass
class Feed:
    """Feed subscription source."""

    id: int
    name: str
    url: str
    active: bool = True
    last_fetched_at: datetime | None = None
    fetch_interval: int = 3600  # seconds


@dataclass
class RawItem:
    """Candidate item as returned by the feed parser, before normalization."""

    title: str
    url: str
    description: str = ""
    body: str = ""
    published_at: datetime | str | None = None
    author: str | None = None


@dataclass
class Item:
    """Stored feed item."""

    id: int
    feed_id: int | None
    title: str
    url: str
    body: str
    published_at: datetime
    summary: str | None = None
    keywords: list[str] | None = None
    processed: bool = False
    created_at: datetime | None = None
    feed_name: str | None = None


@dataclass
class Recipient:
    """Subscribed recipient of deliveries."""

    id: int
    external_id: str
    display_name: str | None = None
    summary_level: str = SummaryLevel.STANDARD
    delivery_time: str = "08:00"  # HH:MM in the recipient's zone
    timezone: str = "Asia/Tokyo"
    active: bool = True
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class Subscription:
    """Recipient-to-feed join."""

    recipient_id: int
    feed_id: int
    active: bool = True


@dataclass
class DeliveryRecord:
    """Ledger entry for one delivery attempt of an item to a recipient."""

    recipient_id: int
    item_id: int
    delivered_at: datetime
    status: str
    error_detail: str | None = None


@dataclass
class Message:
    """Outbound message payload."""

    text: str
    type: str = "text"

    def to_payload(self) -> dict:
        return {"type": self.type, "text": self.text}


@dataclass
class RetentionPolicy:
    """Age thresholds used by the retention sweep."""

    ledger_retention: timedelta = field(default_factory=lambda: timedelta(days=90))
    processing_timeout: timedelta = field(default_factory=lambda: timedelta(days=7))
    content_retention: timedelta = field(default_factory=lambda: timedelta(days=30))

    @classmethod
    def from_config(cls, section: dict) -> "RetentionPolicy":
        return cls(
            ledger_retention=timedelta(days=section.get("ledger_days", 90)),
            processing_timeout=timedelta(days=section.get("unprocessed_days", 7)),
            content_retention=timedelta(days=section.get("content_days", 30)),
        )
