"""Feed ingestion with background enrichment."""
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, as_completed, wait
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from email.utils import parsedate_to_datetime
from typing import Callable

from newsrelay.database import Database
from newsrelay.errors import ExtractionError, StoreError
from newsrelay.extractor import ContentExtractor
from newsrelay.feeds import FeedParser, strip_markup
from newsrelay.models import Feed, Item, RawItem, SummaryLevel
from newsrelay.summarizer import Summarizer

logger = logging.getLogger(__name__)


@dataclass
class IngestionResult:
    """Aggregate counts for one ingestion pass."""

    feeds_attempted: int = 0
    feeds_succeeded: int = 0
    feeds_failed: int = 0
    items_inserted: int = 0
    enrichment_retries: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


def coerce_published(value: datetime | str | None, now: datetime) -> datetime:
    """Best-effort publish date; anything missing or unparsable becomes `now`."""
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, str) and value.strip():
        text = value.strip()
        try:
            parsed = parsedate_to_datetime(text)
        except (TypeError, ValueError):
            try:
                parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
            except ValueError:
                return now
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return now


def normalize_item(raw: RawItem, now: datetime) -> RawItem | None:
    """Trim, strip markup and fix dates. Returns None for items without a title or URL."""
    title = (raw.title or "").strip()
    url = (raw.url or "").strip()
    if not title or not url:
        return None

    description = strip_markup(raw.description)
    return RawItem(
        title=title,
        url=url,
        description=description,
        body=strip_markup(raw.body) or description,
        published_at=coerce_published(raw.published_at, now),
        author=raw.author,
    )


class IngestionCoordinator:
    """Fetch active feeds, store unseen items, and enrich them in the background.

    Feeds are fetched on a bounded worker pool. Enrichment (extraction and
    summarization) runs on a separate pool and is never awaited by a pass;
    completion is visible only through the item's processed flag.
    """

    def __init__(
        self,
        db: Database,
        parser: FeedParser,
        extractor: ContentExtractor,
        summarizer: Summarizer,
        feed_workers: int = 4,
        enrichment_workers: int = 2,
        summary_level: str = SummaryLevel.STANDARD,
        max_keywords: int = 5,
        retry_unprocessed_limit: int = 10,
        processing_timeout: timedelta = timedelta(days=7),
        clock: Callable[[], datetime] | None = None,
    ):
        self.db = db
        self.parser = parser
        self.extractor = extractor
        self.summarizer = summarizer
        self.feed_workers = feed_workers
        self.summary_level = summary_level
        self.max_keywords = max_keywords
        self.retry_unprocessed_limit = retry_unprocessed_limit
        self.processing_timeout = processing_timeout
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._enrichment_pool = ThreadPoolExecutor(
            max_workers=enrichment_workers, thread_name_prefix="enrich"
        )
        self._lock = threading.Lock()
        self._in_flight: set[int] = set()
        self._futures: set[Future] = set()

    def run_pass(self) -> IngestionResult:
        """Ingest every active feed. Per-feed failures are counted, never raised."""
        feeds = self.db.list_active_feeds()
        result = IngestionResult(feeds_attempted=len(feeds))
        logger.info(f"Starting ingestion pass over {len(feeds)} feeds")

        inserted_ids: set[int] = set()
        if feeds:
            with ThreadPoolExecutor(
                max_workers=min(self.feed_workers, len(feeds)), thread_name_prefix="feed"
            ) as pool:
                futures = {pool.submit(self._ingest_feed, feed): feed for feed in feeds}
                for future in as_completed(futures):
                    feed = futures[future]
                    try:
                        ids = future.result()
                    except StoreError:
                        raise
                    except Exception as e:
                        logger.error(f"✗ Feed {feed.name} ({feed.url}) failed: {e}")
                        result.feeds_failed += 1
                        continue
                    result.feeds_succeeded += 1
                    result.items_inserted += len(ids)
                    inserted_ids.update(ids)

        result.enrichment_retries = self._requeue_unprocessed(skip=inserted_ids)
        logger.info(f"Ingestion pass completed: {result.to_dict()}")
        return result

    def _ingest_feed(self, feed: Feed) -> list[int]:
        raw_items = self.parser.parse(feed.url)
        now = self._clock()

        inserted = []
        for raw in raw_items:
            item = normalize_item(raw, now)
            if item is None:
                continue
            try:
                stored = self.db.insert_item_if_new(item, feed.id)
            except StoreError:
                raise
            except Exception as e:
                logger.warning(f"Could not store {item.url} from {feed.name}: {e}")
                continue
            if stored is None:
                continue
            inserted.append(stored.id)
            self.submit_enrichment(stored)

        self.db.mark_feed_fetched(feed.id)
        logger.info(f"✓ Feed {feed.name}: {len(raw_items)} items, {len(inserted)} new")
        return inserted

    def _requeue_unprocessed(self, skip: set[int]) -> int:
        """Resubmit enrichment for items left unprocessed by earlier attempts."""
        if self.retry_unprocessed_limit <= 0:
            return 0
        pending = self.db.list_unprocessed_items(
            limit=self.retry_unprocessed_limit, max_age=self.processing_timeout
        )
        retried = 0
        for item in pending:
            if item.id not in skip and self.submit_enrichment(item):
                retried += 1
        if retried:
            logger.info(f"Requeued enrichment for {retried} unprocessed items")
        return retried

    def submit_enrichment(self, item: Item) -> bool:
        """Queue enrichment for an item. Returns False if it is already queued."""
        with self._lock:
            if item.id in self._in_flight:
                return False
            self._in_flight.add(item.id)
            future = self._enrichment_pool.submit(self._enrichment_task, item.id, item.url)
            self._futures.add(future)
        future.add_done_callback(self._forget)
        return True

    def _enrichment_task(self, item_id: int, url: str) -> bool:
        # Runs on the enrichment pool; nothing awaits it, so crashes end here
        try:
            return self._enrich(item_id, url)
        except Exception:
            logger.exception(f"✗ Enrichment crashed for item {item_id}")
            return False
        finally:
            with self._lock:
                self._in_flight.discard(item_id)

    def _enrich(self, item_id: int, url: str) -> bool:
        try:
            content = self.extractor.extract(url)
        except ExtractionError as e:
            logger.warning(f"✗ Extraction failed for item {item_id}, will retry later: {e}")
            return False

        summary = self.summarizer.summarize(content.body, self.summary_level)
        keywords = self.summarizer.extract_keywords(content.body, self.max_keywords)
        self.db.mark_item_enriched(item_id, summary.text, keywords)
        logger.info(f"✓ Enriched item {item_id} ({summary.method}, {summary.word_count} words)")
        return True

    def _forget(self, future: Future) -> None:
        with self._lock:
            self._futures.discard(future)

    def wait_for_enrichment(self, timeout: float | None = None) -> None:
        """Block until queued enrichment finishes. Used at shutdown and in tests."""
        with self._lock:
            pending = list(self._futures)
        wait(pending, timeout=timeout)

    def shutdown(self, wait_for_pending: bool = True) -> None:
        self._enrichment_pool.shutdown(wait=wait_for_pending)
