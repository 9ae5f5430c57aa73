"""OpenAISummaryGenerator - SummaryGenerator backed by the OpenAI API.

Wraps the ``openai`` Python SDK. The SDK is imported lazily so that the
module can be imported without having ``openai`` installed (the import
fails only when the class is instantiated).
"""

from __future__ import annotations

import logging
import os
from typing import Any, Optional

from sermonsync.config import Settings, get_settings
from sermonsync.protocols import RateLimitedError, SummaryServiceError
from sermonsync.types import GeneratedSummary

logger = logging.getLogger(__name__)

DEFAULT_RETRY_AFTER = 60.0

SYSTEM_PROMPT = """You are a helpful assistant that creates comprehensive summaries of {service_type} content.

Start with a single line "Title: <a short title>", then structure your response with the following sections:

**Summary**: A concise overview of the main points
**Key Points**: 3-5 bullet points of the most important takeaways
**Scripture References**: Any Bible verses or religious texts mentioned
**Application**: How the audience can apply these teachings

Keep the summary engaging and easy to understand."""


def split_title(content: str) -> GeneratedSummary:
    """Separate a leading ``Title:`` line from the summary body."""
    text = content.strip()
    first, _, rest = text.partition("\n")
    if first.lower().startswith("title:"):
        title = first[len("title:") :].strip().strip("*").strip()
        return GeneratedSummary(text=rest.strip(), title=title or None)
    return GeneratedSummary(text=text)


class OpenAISummaryGenerator:
    """SummaryGenerator backed by OpenAI chat completions.

    Usage::

        generator = OpenAISummaryGenerator()  # key and model from Settings
        summary = await generator.generate(transcript, "Sunday Service")
    """

    def __init__(
        self,
        model_id: Optional[str] = None,
        *,
        api_key: Optional[str] = None,
        max_tokens: int = 1000,
        temperature: float = 0.7,
        client: Any = None,
        settings: Optional[Settings] = None,
    ) -> None:
        settings = settings or get_settings()
        if client is None:
            try:
                import openai as _openai
            except ImportError:
                raise ImportError(
                    "The 'openai' package is required for OpenAISummaryGenerator. "
                    "Install it with: pip install openai"
                ) from None

            resolved_key = (
                api_key or settings.openai_api_key or os.environ.get("OPENAI_API_KEY")
            )
            if not resolved_key:
                raise ValueError(
                    "An API key is required. Pass api_key= or set "
                    "SERMONSYNC_OPENAI_API_KEY or OPENAI_API_KEY."
                )
            client = _openai.AsyncOpenAI(api_key=resolved_key)

        self._client = client
        self._model_id = model_id or settings.summary_model
        self._max_tokens = max_tokens
        self._temperature = temperature

    @property
    def model_id(self) -> str:
        return self._model_id

    async def generate(self, transcript: str, service_type: str) -> GeneratedSummary:
        """Summarize a transcript for the given service type."""
        if not transcript.strip():
            raise SummaryServiceError("Transcript is empty", transient=False)

        try:
            response = await self._client.chat.completions.create(
                model=self._model_id,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT.format(service_type=service_type)},
                    {
                        "role": "user",
                        "content": f"Please summarize this {service_type} text: {transcript}",
                    },
                ],
                max_tokens=self._max_tokens,
                temperature=self._temperature,
            )
        except Exception as exc:
            logger.debug("OpenAI summary request failed: %s", exc, exc_info=True)
            raise self._classify_error(exc) from exc

        if not response.choices or not response.choices[0].message.content:
            raise SummaryServiceError("OpenAI returned an empty summary")
        return split_title(response.choices[0].message.content)

    @staticmethod
    def _classify_error(exc: Exception) -> SummaryServiceError:
        """Map an OpenAI SDK exception onto transient or permanent failures."""
        import openai as _openai

        if isinstance(exc, _openai.RateLimitError):
            return RateLimitedError(_retry_after(exc), "OpenAI rate limit")
        if isinstance(exc, _openai.AuthenticationError):
            return SummaryServiceError(f"OpenAI auth failed: {exc}", transient=False)
        if isinstance(exc, (_openai.APITimeoutError, _openai.APIConnectionError)):
            return SummaryServiceError(f"OpenAI unreachable: {exc}")
        if isinstance(exc, _openai.APIStatusError):
            code = exc.status_code
            return SummaryServiceError(
                f"OpenAI API error ({code}): {exc}", transient=code >= 500 or code == 408
            )
        return SummaryServiceError(f"OpenAI API error: {exc}")


def _retry_after(exc: Exception) -> float:
    response = getattr(exc, "response", None)
    headers = getattr(response, "headers", None) or {}
    value = headers.get("retry-after") if hasattr(headers, "get") else None
    try:
        return float(value) if value is not None else DEFAULT_RETRY_AFTER
    except (TypeError, ValueError):
        return DEFAULT_RETRY_AFTER
