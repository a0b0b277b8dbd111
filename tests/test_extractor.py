"""Tests for article extraction."""
from unittest.mock import MagicMock

import pytest
import requests

from newsrelay.errors import ExtractionError
from newsrelay.extractor import ContentExtractor

BODY = "Researchers unveiled a robot that folds laundry in under a minute. " * 4

PAGE = f"""
<html>
  <head>
    <title>Site name</title>
    <meta name="author" content="Jane Doe">
    <meta property="article:published_time" content="2026-03-10T09:30:00Z">
  </head>
  <body>
    <nav>Home | About | Contact</nav>
    <h1>Robots learn to fold laundry</h1>
    <article>
      <script>trackVisitor();</script>
      <p>{BODY}</p>
    </article>
    <footer>Copyright</footer>
  </body>
</html>
"""


def test_extract_from_html_main_content():
    content = ContentExtractor().extract_from_html(PAGE, "https://example.com/robots")

    assert content.title == "Robots learn to fold laundry"
    assert content.body == BODY.strip()
    assert "trackVisitor" not in content.body
    assert content.author == "Jane Doe"
    assert content.publish_date == "2026-03-10T09:30:00Z"


def test_extract_falls_back_to_paragraphs():
    html = f"<html><body><div><p>{BODY}</p><p>short</p></div></body></html>"

    content = ContentExtractor().extract_from_html(html)

    assert content.body == BODY.strip()
    assert content.author is None


def test_extract_rejects_thin_pages():
    with pytest.raises(ExtractionError):
        ContentExtractor().extract_from_html("<html><body><p>Too short.</p></body></html>")


def test_extract_rejects_invalid_url():
    session = MagicMock()
    extractor = ContentExtractor(session=session)

    with pytest.raises(ExtractionError):
        extractor.extract("ftp://example.com/file")
    with pytest.raises(ExtractionError):
        extractor.extract("not a url")
    session.get.assert_not_called()


def test_extract_fetch_failure():
    session = MagicMock()
    session.get.side_effect = requests.ConnectionError("refused")
    extractor = ContentExtractor(session=session)

    with pytest.raises(ExtractionError):
        extractor.extract("https://example.com/robots")


def test_extract_fetches_page():
    session = MagicMock()
    session.get.return_value.text = PAGE
    extractor = ContentExtractor(request_timeout=5, session=session)

    content = extractor.extract("https://example.com/robots")

    assert content.title == "Robots learn to fold laundry"
    _, kwargs = session.get.call_args
    assert kwargs["timeout"] == 5
