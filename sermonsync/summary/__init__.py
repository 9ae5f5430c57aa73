"""Summary generation and its durable retry queue."""

from .fallback import basic_summary
from .generator import OpenAISummaryGenerator
from .retry_queue import PENDING_SUMMARIES_KEY, SummaryRetryQueue, backoff_delay

__all__ = [
    "OpenAISummaryGenerator",
    "PENDING_SUMMARIES_KEY",
    "SummaryRetryQueue",
    "backoff_delay",
    "basic_summary",
]
