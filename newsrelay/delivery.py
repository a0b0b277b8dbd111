"""Per-recipient delivery of enriched items."""
import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from newsrelay.database import Database
from newsrelay.errors import StoreError, TransportError
from newsrelay.models import DeliveryStatus, Item, Message, Recipient
from newsrelay.transport import MessageTransport
from newsrelay.window import DEFAULT_WINDOW_MINUTES, is_within_window

logger = logging.getLogger(__name__)

SEPARATOR = "━━━━━━━━━━━━━━━━"


@dataclass
class DeliveryResult:
    """Aggregate counts for one delivery pass."""

    recipients_considered: int = 0
    successful_deliveries: int = 0
    failed_deliveries: int = 0
    items_sent: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


def format_header(count: int) -> Message:
    noun = "item" if count == 1 else "items"
    return Message(text=f"📰 Today's news ({count} {noun})\n{SEPARATOR}")


def format_item_message(item: Item, tz_name: str) -> Message:
    published = item.published_at.astimezone(ZoneInfo(tz_name)).strftime("%m/%d %H:%M")
    lines = [
        f"📄 {item.title}",
        "",
        f"⏰ {published} | 📡 {item.feed_name or 'News'}",
        "",
        f"📝 {item.summary or 'No summary available'}",
        "",
    ]
    if item.keywords:
        lines += [f"🏷️ {', '.join(item.keywords)}", ""]
    lines += [f"🔗 {item.url}", "", SEPARATOR]
    return Message(text="\n".join(lines))


def build_messages(items: list[Item], tz_name: str) -> list[Message]:
    """Header followed by one message per item, in the given order."""
    return [format_header(len(items))] + [format_item_message(i, tz_name) for i in items]


class DeliveryEngine:
    """Send each in-window recipient their undelivered items as one batch.

    Every attempted (recipient, item) pair gets exactly one ledger row, sent
    or failed. One recipient's transport failure never affects another's.
    """

    def __init__(
        self,
        db: Database,
        transport: MessageTransport,
        lookback: timedelta = timedelta(hours=24),
        page_size: int = 5,
        window_minutes: int = DEFAULT_WINDOW_MINUTES,
        workers: int = 4,
        retry_failed: bool = False,
        clock: Callable[[], datetime] | None = None,
    ):
        self.db = db
        self.transport = transport
        self.lookback = lookback
        self.page_size = page_size
        self.window_minutes = window_minutes
        self.workers = workers
        self.retry_failed = retry_failed
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def run_pass(self) -> DeliveryResult:
        recipients = self.db.list_active_recipients()
        result = DeliveryResult(recipients_considered=len(recipients))
        now = self._clock()
        logger.info(f"Starting delivery pass for {len(recipients)} active recipients")

        if recipients:
            with ThreadPoolExecutor(
                max_workers=min(self.workers, len(recipients)), thread_name_prefix="deliver"
            ) as pool:
                futures = {pool.submit(self._deliver_to, r, now): r for r in recipients}
                for future in as_completed(futures):
                    recipient = futures[future]
                    try:
                        status, sent = future.result()
                    except StoreError as e:
                        logger.error(f"Ledger invariant violated for {recipient.external_id}: {e}")
                        raise
                    except Exception as e:
                        logger.error(f"✗ Delivery to {recipient.external_id} failed: {e}")
                        result.failed_deliveries += 1
                        continue

                    if status == DeliveryStatus.SENT:
                        result.successful_deliveries += 1
                        result.items_sent += sent
                    elif status == DeliveryStatus.FAILED:
                        result.failed_deliveries += 1
                        result.items_sent += sent

        logger.info(f"Delivery pass completed: {result.to_dict()}")
        return result

    def _deliver_to(self, recipient: Recipient, now: datetime) -> tuple[str | None, int]:
        """Returns (status, items_sent); status is None when the recipient was skipped."""
        try:
            due = is_within_window(recipient, now, self.window_minutes)
        except (ZoneInfoNotFoundError, ValueError) as e:
            logger.warning(f"Skipping {recipient.external_id}: bad delivery settings ({e})")
            return None, 0
        if not due:
            return None, 0

        items = self.db.list_undelivered_eligible_items(
            recipient.id,
            lookback=self.lookback,
            limit=self.page_size,
            retry_failed=self.retry_failed,
        )
        if not items:
            logger.debug(f"No new items for {recipient.external_id}")
            return None, 0

        messages = build_messages(items, recipient.timezone)
        try:
            self.transport.send_batch(recipient.external_id, messages)
        except TransportError as e:
            # messages[0] is the header; item messages follow in order
            delivered = items[:max(0, e.delivered - 1)]
            logger.error(
                f"✗ Transport failed for {recipient.external_id} "
                f"after {len(delivered)}/{len(items)} items: {e}"
            )
            for item in delivered:
                self._record(recipient, item, DeliveryStatus.SENT)
            for item in items[len(delivered):]:
                self._record(recipient, item, DeliveryStatus.FAILED, str(e))
            return DeliveryStatus.FAILED, len(delivered)

        for item in items:
            self._record(recipient, item, DeliveryStatus.SENT)
        logger.info(f"✓ Sent {len(items)} items to {recipient.external_id}")
        return DeliveryStatus.SENT, len(items)

    def _record(self, recipient: Recipient, item: Item, status: str, error: str | None = None) -> None:
        self.db.record_delivery(
            recipient.id,
            item.id,
            status,
            error_detail=error,
            replace_failed=self.retry_failed,
        )
