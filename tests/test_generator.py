"""Tests for the OpenAI summary generator."""

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import httpx
import openai
import pytest

from sermonsync.config import Settings
from sermonsync.protocols import RateLimitedError, SummaryServiceError
from sermonsync.summary.generator import OpenAISummaryGenerator, split_title

OPENAI_REQUEST = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")


def completion(content):
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])


def status_error(cls, code, headers=None):
    response = httpx.Response(code, headers=headers or {}, request=OPENAI_REQUEST)
    return cls(f"HTTP {code}", response=response, body=None)


@pytest.fixture
def client():
    client = MagicMock()
    client.chat.completions.create = AsyncMock(
        return_value=completion("Title: Walking by Faith\n**Summary**: Trust God.")
    )
    return client


class TestSplitTitle:
    def test_leading_title_line(self):
        result = split_title("Title: **Grace**\n\n**Summary**: Body")
        assert result.title == "Grace"
        assert result.text == "**Summary**: Body"

    def test_no_title_line(self):
        result = split_title("**Summary**: Body")
        assert result.title is None
        assert result.text == "**Summary**: Body"


class TestGenerate:
    @pytest.mark.asyncio
    async def test_request_and_result(self, client):
        generator = OpenAISummaryGenerator(client=client)

        summary = await generator.generate("We walk by faith.", "Bible Study")

        assert summary.title == "Walking by Faith"
        assert summary.text == "**Summary**: Trust God."
        kwargs = client.chat.completions.create.call_args.kwargs
        assert kwargs["model"] == "gpt-4o-mini"
        assert "Bible Study" in kwargs["messages"][0]["content"]
        assert kwargs["messages"][1]["content"].endswith("We walk by faith.")

    @pytest.mark.asyncio
    async def test_empty_transcript_is_permanent(self, client):
        generator = OpenAISummaryGenerator(client=client)

        with pytest.raises(SummaryServiceError) as exc_info:
            await generator.generate("   ", "Sunday Service")

        assert exc_info.value.transient is False
        client.chat.completions.create.assert_not_called()

    @pytest.mark.asyncio
    async def test_empty_completion_is_transient(self, client):
        client.chat.completions.create.return_value = completion("")
        generator = OpenAISummaryGenerator(client=client)

        with pytest.raises(SummaryServiceError) as exc_info:
            await generator.generate("Words.", "Sunday Service")

        assert exc_info.value.transient is True

    @pytest.mark.asyncio
    async def test_sdk_errors_are_classified(self, client):
        client.chat.completions.create.side_effect = status_error(
            openai.RateLimitError, 429, {"retry-after": "30"}
        )
        generator = OpenAISummaryGenerator(client=client)

        with pytest.raises(RateLimitedError) as exc_info:
            await generator.generate("Words.", "Sunday Service")

        assert exc_info.value.retry_after == 30.0

    def test_requires_api_key(self, monkeypatch):
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        with pytest.raises(ValueError, match="API key"):
            OpenAISummaryGenerator(settings=Settings(openai_api_key=None))

    def test_builds_async_client(self):
        generator = OpenAISummaryGenerator("gpt-4o", api_key="sk-test")

        assert isinstance(generator._client, openai.AsyncOpenAI)
        assert generator.model_id == "gpt-4o"

    def test_key_and_model_from_settings(self, monkeypatch):
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        settings = Settings(openai_api_key="sk-settings", summary_model="gpt-4.1-mini")

        generator = OpenAISummaryGenerator(settings=settings)

        assert generator._client.api_key == "sk-settings"
        assert generator.model_id == "gpt-4.1-mini"


class TestClassifyError:
    classify = staticmethod(OpenAISummaryGenerator._classify_error)

    def test_rate_limit_without_header(self):
        error = self.classify(status_error(openai.RateLimitError, 429))
        assert isinstance(error, RateLimitedError)
        assert error.retry_after == 60.0

    def test_auth_is_permanent(self):
        error = self.classify(status_error(openai.AuthenticationError, 401))
        assert error.transient is False

    def test_bad_request_is_permanent(self):
        error = self.classify(status_error(openai.BadRequestError, 400))
        assert error.transient is False

    def test_server_error_is_transient(self):
        error = self.classify(status_error(openai.InternalServerError, 500))
        assert error.transient is True

    def test_timeout_is_transient(self):
        error = self.classify(openai.APITimeoutError(request=OPENAI_REQUEST))
        assert error.transient is True
        assert not isinstance(error, RateLimitedError)

    def test_connection_error_is_transient(self):
        error = self.classify(openai.APIConnectionError(request=OPENAI_REQUEST))
        assert error.transient is True

    def test_unknown_error_is_transient(self):
        assert self.classify(ValueError("odd")).transient is True
