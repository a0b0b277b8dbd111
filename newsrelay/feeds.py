"""RSS/Atom feed fetching and plain-text conversion."""
import logging
import re
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from datetime import datetime, timezone

import feedparser
import requests
from bs4 import BeautifulSoup

from newsrelay.errors import FeedFetchError, FeedTimeout
from newsrelay.models import RawItem

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "NewsRelay/1.0 (compatible; RSS reader)"
FEED_ACCEPT = "application/rss+xml, application/atom+xml, application/xml, text/xml"


def strip_markup(text: str | None) -> str:
    """Reduce an HTML fragment to collapsed plain text."""
    if not text:
        return ""
    plain = BeautifulSoup(text, "html.parser").get_text(separator=" ")
    return re.sub(r"\s+", " ", plain).strip()


class FeedParser:
    """Fetch a feed URL and return its entries as raw candidate items."""

    def __init__(
        self,
        request_timeout: int = 30,
        parse_timeout: int = 45,
        user_agent: str = DEFAULT_USER_AGENT,
        session: requests.Session | None = None,
    ):
        self.request_timeout = request_timeout
        self.parse_timeout = parse_timeout
        self.user_agent = user_agent
        self._session = session or requests.Session()

    @classmethod
    def from_config(cls, config: dict) -> "FeedParser":
        section = config["feeds"]
        return cls(
            request_timeout=section["request_timeout"],
            parse_timeout=section["parse_timeout"],
            user_agent=section["user_agent"],
        )

    def parse(self, feed_url: str) -> list[RawItem]:
        """Fetch and parse a feed.

        Raises:
            FeedTimeout: the download did not finish within parse_timeout seconds
            FeedFetchError: network failure, HTTP error, or unparsable feed
        """
        logger.info(f"Fetching feed: {feed_url}")
        content = self._download(feed_url)

        parsed = feedparser.parse(content)
        if parsed.bozo and not parsed.entries:
            raise FeedFetchError(f"Unparsable feed {feed_url}: {parsed.bozo_exception}")

        items = []
        for entry in parsed.entries:
            url = entry.get("link") or entry.get("id") or ""
            title = entry.get("title") or ""
            if not url or not title:
                continue
            items.append(RawItem(
                title=title,
                url=url,
                description=entry.get("summary") or entry.get("description") or "",
                body=_entry_body(entry),
                published_at=_entry_published(entry),
                author=entry.get("author"),
            ))

        logger.info(f"Parsed {len(items)} items from {feed_url}")
        return items

    def _download(self, feed_url: str) -> bytes:
        """Download the feed body, giving up after parse_timeout seconds of wall-clock time."""
        pending = {}
        pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="feed-download")
        try:
            future = pool.submit(self._fetch, feed_url, pending)
            return future.result(timeout=self.parse_timeout)
        except FuturesTimeout as e:
            # Closing the socket unblocks the worker's pending read
            response = pending.get("response")
            if response is not None:
                response.close()
            raise FeedTimeout(f"Feed {feed_url} exceeded {self.parse_timeout}s") from e
        finally:
            pool.shutdown(wait=False)

    def _fetch(self, feed_url: str, pending: dict) -> bytes:
        headers = {"User-Agent": self.user_agent, "Accept": FEED_ACCEPT}
        try:
            with self._session.get(
                feed_url, headers=headers, timeout=self.request_timeout, stream=True
            ) as response:
                pending["response"] = response
                response.raise_for_status()
                return b"".join(response.iter_content(chunk_size=65536))
        except requests.Timeout as e:
            raise FeedTimeout(f"Feed {feed_url} timed out: {e}") from e
        except requests.RequestException as e:
            raise FeedFetchError(f"Failed to fetch {feed_url}: {e}") from e


def _entry_body(entry) -> str:
    content = entry.get("content")
    if isinstance(content, list) and content:
        return content[0].get("value", "")
    return entry.get("summary") or entry.get("description") or ""


def _entry_published(entry) -> datetime | str | None:
    # feedparser's *_parsed structs are UTC
    for key in ("published_parsed", "updated_parsed"):
        parsed = entry.get(key)
        if parsed:
            return datetime(*parsed[:6], tzinfo=timezone.utc)
    return entry.get("published") or entry.get("updated")
