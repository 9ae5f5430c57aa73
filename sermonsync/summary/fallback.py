"""Extractive summary used when AI generation keeps failing."""

import re
from typing import List

from sermonsync.types import GeneratedSummary

LEADING_SENTENCES = 3
MAX_KEYWORD_SENTENCES = 5

KEYWORDS = (
    "scripture",
    "bible",
    "gospel",
    "verse",
    "faith",
    "prayer",
    "pray",
    "grace",
    "jesus",
    "christ",
    "god",
    "lord",
    "spirit",
    "love",
    "hope",
    "salvation",
    "forgive",
    "church",
)

_SENTENCE_END = re.compile(r"(?<=[.!?])\s+")
_KEYWORD_RE = re.compile(r"\b(" + "|".join(KEYWORDS) + r")", re.IGNORECASE)

EMPTY_PLACEHOLDER = "No transcript was available to summarize."


def split_sentences(text: str) -> List[str]:
    return [s.strip() for s in _SENTENCE_END.split(text.strip()) if s.strip()]


def basic_summary(transcript: str, service_type: str) -> GeneratedSummary:
    """Build a summary from the transcript alone. Never raises.

    Keeps the opening sentences and then sentences that mention one of
    KEYWORDS, in transcript order.
    """
    title = f"{service_type} Summary" if service_type else "Sermon Summary"
    sentences = split_sentences(transcript or "")
    if not sentences:
        return GeneratedSummary(text=EMPTY_PLACEHOLDER, title=title)

    chosen = sentences[:LEADING_SENTENCES]
    highlights = [s for s in sentences[LEADING_SENTENCES:] if _KEYWORD_RE.search(s)]
    chosen.extend(highlights[:MAX_KEYWORD_SENTENCES])

    body = " ".join(chosen)
    return GeneratedSummary(
        text=f"**Summary**: {body}\n\n_Generated offline from the transcript._",
        title=title,
    )
