"""Full-text extraction of article pages."""
import logging
import re
from dataclasses import dataclass
from urllib.parse import urlparse

import requests
from bs4 import BeautifulSoup

from newsrelay.errors import ExtractionError

logger = logging.getLogger(__name__)

BROWSER_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0 Safari/537.36"
)

NOISE_SELECTORS = "script, style, nav, header, footer, aside, .advertisement, .ads, .social-share"
TITLE_SELECTORS = ["h1", ".article-title", ".entry-title", ".post-title", "title"]
CONTENT_SELECTORS = [
    ".article-content",
    ".entry-content",
    ".post-content",
    ".content",
    "article",
    ".main-content",
    "#content",
]


@dataclass
class ExtractedContent:
    """Article content pulled from a page."""

    title: str
    body: str
    author: str | None
    publish_date: str | None


class ContentExtractor:
    """Fetch a page and pull out its main article text."""

    def __init__(
        self,
        request_timeout: int = 10,
        min_body_length: int = 100,
        session: requests.Session | None = None,
    ):
        self.request_timeout = request_timeout
        self.min_body_length = min_body_length
        self._session = session or requests.Session()

    @classmethod
    def from_config(cls, config: dict) -> "ContentExtractor":
        section = config["extractor"]
        return cls(
            request_timeout=section["request_timeout"],
            min_body_length=section["min_body_length"],
        )

    def extract(self, url: str) -> ExtractedContent:
        """Raises ExtractionError if the page can't be fetched or has no usable body."""
        parsed = urlparse(url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ExtractionError(f"Invalid URL: {url}")

        try:
            response = self._session.get(
                url,
                timeout=self.request_timeout,
                headers={"User-Agent": BROWSER_USER_AGENT},
            )
            response.raise_for_status()
        except requests.RequestException as e:
            raise ExtractionError(f"Failed to fetch {url}: {e}") from e

        return self.extract_from_html(response.text, url)

    def extract_from_html(self, html: str, url: str = "") -> ExtractedContent:
        soup = BeautifulSoup(html, "html.parser")
        metadata = _metadata(soup)
        for element in soup.select(NOISE_SELECTORS):
            element.decompose()

        body = self._main_content(soup)
        if body is None:
            raise ExtractionError(f"No usable body found at {url}")

        return ExtractedContent(
            title=_title(soup) or "",
            body=body,
            author=metadata["author"] or None,
            publish_date=metadata["publish_date"] or None,
        )

    def _main_content(self, soup: BeautifulSoup) -> str | None:
        for selector in CONTENT_SELECTORS:
            element = soup.select_one(selector)
            if element is not None:
                text = _clean_text(element.get_text(separator=" "))
                if len(text) > self.min_body_length:
                    return text

        # Fallback: join substantial paragraphs
        paragraphs = [p.get_text().strip() for p in soup.find_all("p")]
        content = "\n\n".join(p for p in paragraphs if len(p) > 20)
        if len(content) > self.min_body_length:
            return _clean_text(content)
        return None


def _title(soup: BeautifulSoup) -> str | None:
    for selector in TITLE_SELECTORS:
        element = soup.select_one(selector)
        if element is not None and element.get_text().strip():
            return element.get_text().strip()
    return None


def _meta(soup: BeautifulSoup, **attrs) -> str:
    tag = soup.find("meta", attrs=attrs)
    return tag.get("content", "") if tag else ""


def _metadata(soup: BeautifulSoup) -> dict:
    time_tag = soup.find("time", attrs={"datetime": True})
    return {
        "author": _meta(soup, name="author") or _meta(soup, property="article:author"),
        "publish_date": (
            _meta(soup, property="article:published_time")
            or _meta(soup, name="publish-date")
            or (time_tag["datetime"] if time_tag else "")
        ),
    }


def _clean_text(text: str) -> str:
    return re.sub(r"\s+", " ", text).strip()
