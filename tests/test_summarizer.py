"""Tests for summarization with fallback."""
from unittest.mock import MagicMock

from newsrelay.summarizer import Summarizer, fallback_keywords, fallback_summarize

ARTICLE = (
    "Researchers unveiled a robot that folds laundry. "
    "The machine uses cameras to recognize garments. "
    "It folds a shirt in under a minute. "
    "The team hopes to sell it to hotels. "
    "Critics say the price is still too high. "
    "A consumer version could follow in two years."
)


def _completion(text):
    response = MagicMock()
    response.choices = [MagicMock()]
    response.choices[0].message.content = text
    return response


def test_fallback_summarize_respects_level():
    brief = fallback_summarize(ARTICLE, "brief")
    standard = fallback_summarize(ARTICLE, "standard")

    assert brief.method == "fallback"
    assert brief.text == (
        "Researchers unveiled a robot that folds laundry. "
        "The machine uses cameras to recognize garments."
    )
    assert standard.text.count(".") == 4


def test_fallback_summarize_empty_text():
    summary = fallback_summarize("")

    assert summary.text == "No content available for summarization."
    assert summary.word_count == 0


def test_fallback_keywords():
    text = "Robots robots robots. Laundry laundry. Hotels. This that with."

    assert fallback_keywords(text, 2) == ["robots", "laundry"]


def test_summarizer_without_key_uses_fallback():
    summarizer = Summarizer(api_key="")

    summary = summarizer.summarize(ARTICLE, "brief")

    assert summary.method == "fallback"
    assert summarizer.extract_keywords(ARTICLE, 3)
    assert summarizer.extract_keywords("   ") == []


def test_summarizer_uses_remote_client():
    summarizer = Summarizer(api_key="test-key")
    client = MagicMock()
    client.chat.completions.create.side_effect = [
        _completion("A robot folds laundry."),
        _completion("robots, laundry, hotels"),
    ]
    summarizer._client = client

    summary = summarizer.summarize(ARTICLE, "detailed")
    keywords = summarizer.extract_keywords(ARTICLE, 2)

    assert summary.method == "openai"
    assert summary.level == "detailed"
    assert summary.text == "A robot folds laundry."
    assert keywords == ["robots", "laundry"]
    _, kwargs = client.chat.completions.create.call_args_list[0]
    assert kwargs["max_tokens"] == 500


def test_summarizer_falls_back_on_api_error():
    """API errors never escape the summarizer."""
    summarizer = Summarizer(api_key="test-key")
    client = MagicMock()
    client.chat.completions.create.side_effect = RuntimeError("rate limited")
    summarizer._client = client

    summary = summarizer.summarize(ARTICLE)
    keywords = summarizer.extract_keywords(ARTICLE)

    assert summary.method == "fallback"
    assert keywords


def test_summarizer_falls_back_on_empty_completion():
    summarizer = Summarizer(api_key="test-key")
    client = MagicMock()
    client.chat.completions.create.return_value = _completion("")
    summarizer._client = client

    assert summarizer.summarize(ARTICLE).method == "fallback"


def test_unknown_level_uses_standard():
    summary = Summarizer().summarize(ARTICLE, "verbose")

    assert summary.level == "standard"
