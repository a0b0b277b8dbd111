"""Summarization and keyword extraction with a local extractive fallback."""
import logging
import re
from collections import Counter
from dataclasses import dataclass

from openai import OpenAI

from newsrelay.models import SummaryLevel

logger = logging.getLogger(__name__)

LEVELS = {
    SummaryLevel.BRIEF: {"sentences": 2, "max_tokens": 150},
    SummaryLevel.STANDARD: {"sentences": 4, "max_tokens": 300},
    SummaryLevel.DETAILED: {"sentences": 8, "max_tokens": 500},
}

STOP_WORDS = {
    "this", "that", "with", "have", "will", "from", "they", "been",
    "were", "said", "each", "which", "their", "time", "would", "there",
    "could", "other", "after", "first", "well", "many", "some", "what",
    "when", "where", "much", "should", "very", "through", "just", "being",
}

SYSTEM_PROMPT = (
    "You are a professional news summarizer. Create accurate, concise summaries "
    "that capture the key information."
)


@dataclass
class Summary:
    """Summarizer output."""

    text: str
    method: str  # openai | fallback
    level: str
    word_count: int


class Summarizer:
    """Summarize text via an OpenAI-compatible API, falling back to extraction.

    Never raises: any upstream failure (no credentials, API error, empty
    response) degrades to the local extractive method.
    """

    def __init__(self, api_key: str = "", model: str = "gpt-3.5-turbo", base_url: str = ""):
        self.model = model
        self._client = None
        if api_key:
            self._client = OpenAI(api_key=api_key, base_url=base_url or None)
        else:
            logger.warning("No summarizer API key configured, using fallback summarization")

    @classmethod
    def from_config(cls, config: dict) -> "Summarizer":
        section = config["summarizer"]
        return cls(
            api_key=section.get("api_key", ""),
            model=section["model"],
            base_url=section.get("base_url", ""),
        )

    def summarize(self, text: str, level: str = SummaryLevel.STANDARD) -> Summary:
        level = level if level in LEVELS else SummaryLevel.STANDARD
        if self._client is not None and text and text.strip():
            try:
                return self._summarize_remote(text, level)
            except Exception as e:
                logger.warning(f"Remote summarization failed, falling back: {e}")
        return fallback_summarize(text, level)

    def extract_keywords(self, text: str, max_count: int = 5) -> list[str]:
        if not text or not text.strip():
            return []
        if self._client is not None:
            try:
                return self._keywords_remote(text, max_count)
            except Exception as e:
                logger.warning(f"Remote keyword extraction failed, falling back: {e}")
        return fallback_keywords(text, max_count)

    def _complete(self, system: str, prompt: str, max_tokens: int, temperature: float) -> str:
        response = self._client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": system},
                {"role": "user", "content": prompt},
            ],
            max_tokens=max_tokens,
            temperature=temperature,
        )
        content = (response.choices[0].message.content or "").strip()
        if not content:
            raise ValueError("empty completion")
        return content

    def _summarize_remote(self, text: str, level: str) -> Summary:
        config = LEVELS[level]
        prompt = (
            f"Please summarize the following news article in exactly {config['sentences']} "
            f"sentences. Make it clear, concise, and informative:\n\n{text}"
        )
        summary = self._complete(SYSTEM_PROMPT, prompt, config["max_tokens"], 0.3)
        return Summary(text=summary, method="openai", level=level, word_count=len(summary.split()))

    def _keywords_remote(self, text: str, max_count: int) -> list[str]:
        raw = self._complete(
            "Extract the most important keywords from the given text. "
            "Return only the keywords separated by commas, no explanations.",
            f"Extract {max_count} key terms from this text:\n\n{text}",
            100,
            0.1,
        )
        keywords = [k.strip() for k in raw.split(",") if k.strip()]
        return keywords[:max_count]


def fallback_summarize(text: str, level: str = SummaryLevel.STANDARD) -> Summary:
    """Take the leading sentences of the text."""
    limit = LEVELS.get(level, LEVELS[SummaryLevel.STANDARD])["sentences"]
    sentences = [s.strip() for s in re.split(r"[.!?]+", text or "") if len(s.strip()) > 10]

    if not sentences:
        return Summary(
            text="No content available for summarization.",
            method="fallback",
            level=level,
            word_count=0,
        )

    summary = ". ".join(sentences[:limit]) + "."
    return Summary(text=summary, method="fallback", level=level, word_count=len(summary.split()))


def fallback_keywords(text: str, max_count: int = 5) -> list[str]:
    """Most frequent non-stop-words longer than three characters."""
    words = re.sub(r"[^\w\s]", "", text.lower()).split()
    counts = Counter(w for w in words if len(w) > 3 and w not in STOP_WORDS)
    return [word for word, _ in counts.most_common(max_count)]
