"""Tests for dbcoach.providers.litellm_provider: liteLLM streaming adapter."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import litellm
import pytest

from dbcoach.errors import MissingCredentialError
from dbcoach.providers.base import RetryBudget
from dbcoach.providers.litellm_provider import LiteLLMProvider, _short_error_reason
from dbcoach.schemas.pipeline import ModelConfig

# Shorthand for the mock targets
_ACOMP = "dbcoach.providers.litellm_provider.litellm.acompletion"
_SLEEP = "dbcoach.providers.litellm_provider.asyncio.sleep"


# ── Helpers ───────────────────────────────────────────────────


def _make_config(**overrides) -> ModelConfig:
    defaults = {
        "model": "gemini/gemini-2.0-flash",
        "display_name": "Gemini 2.0 Flash",
        "api_key_env": "GEMINI_API_KEY",
        "temperature": 0.7,
        "max_output_tokens": 8192,
    }
    defaults.update(overrides)
    return ModelConfig(**defaults)


def _make_chunk(content: str | None) -> MagicMock:
    chunk = MagicMock()
    chunk.choices = [MagicMock()]
    chunk.choices[0].delta.content = content
    return chunk


def _stream_of(*contents: str | None):
    async def mock_aiter():
        for content in contents:
            yield _make_chunk(content)

    return mock_aiter()


async def _drain(provider: LiteLLMProvider) -> list[str]:
    return [
        fragment async for fragment in provider.stream(
            [{"role": "user", "content": "test"}], "system prompt",
        )
    ]


@pytest.fixture
def provider():
    with patch.dict("os.environ", {"GEMINI_API_KEY": "key-test"}):
        return LiteLLMProvider(_make_config())


# ── Construction ──────────────────────────────────────────────


class TestLiteLLMProviderInit:
    def test_missing_key_raises(self):
        with patch.dict("os.environ", {}, clear=True), pytest.raises(
            MissingCredentialError, match="GEMINI_API_KEY",
        ):
            LiteLLMProvider(_make_config())

    def test_missing_key_allowed_when_not_required(self):
        with patch.dict("os.environ", {}, clear=True):
            provider = LiteLLMProvider(_make_config(), require_key=False)
        assert provider.model_id == "gemini/gemini-2.0-flash"

    def test_display_name_falls_back_to_model(self, provider):
        assert provider.display_name == "Gemini 2.0 Flash"
        with patch.dict("os.environ", {"GEMINI_API_KEY": "k"}):
            bare = LiteLLMProvider(_make_config(display_name=""))
        assert bare.display_name == "gemini/gemini-2.0-flash"

    def test_completion_kwargs(self, provider):
        kwargs = provider._build_completion_kwargs([{"role": "user", "content": "x"}], 12)
        assert kwargs["model"] == "gemini/gemini-2.0-flash"
        assert kwargs["timeout"] == 12.0
        assert kwargs["api_key"] == "key-test"
        assert kwargs["max_tokens"] == 8192
        assert "api_base" not in kwargs

    def test_completion_kwargs_api_base(self):
        with patch.dict("os.environ", {"GEMINI_API_KEY": "k"}):
            provider = LiteLLMProvider(_make_config(api_base="http://localhost:4000"))
        kwargs = provider._build_completion_kwargs([], 5)
        assert kwargs["api_base"] == "http://localhost:4000"


# ── Streaming ─────────────────────────────────────────────────


class TestLiteLLMProviderStream:
    @pytest.mark.asyncio
    async def test_yields_non_empty_deltas(self, provider):
        with patch.object(
            provider, "_call_streaming_with_retry",
            new_callable=AsyncMock,
            return_value=_stream_of("CREATE ", None, "", "TABLE users"),
        ):
            fragments = await _drain(provider)

        assert fragments == ["CREATE ", "TABLE users"]

    @pytest.mark.asyncio
    async def test_skips_chunks_without_choices(self, provider):
        empty = MagicMock()
        empty.choices = []

        async def mock_aiter():
            yield empty
            yield _make_chunk("ok")

        with patch.object(
            provider, "_call_streaming_with_retry",
            new_callable=AsyncMock,
            return_value=mock_aiter(),
        ):
            fragments = await _drain(provider)

        assert fragments == ["ok"]

    @pytest.mark.asyncio
    async def test_system_prompt_prepended(self, provider):
        mock_call = AsyncMock(return_value=_stream_of("x"))
        with patch.object(provider, "_call_streaming_with_retry", mock_call):
            await _drain(provider)

        kwargs = mock_call.call_args.args[0]
        assert kwargs["stream"] is True
        assert kwargs["messages"][0] == {"role": "system", "content": "system prompt"}
        assert kwargs["messages"][1]["role"] == "user"

    @pytest.mark.asyncio
    async def test_complete_concatenates_stream(self, provider):
        with patch.object(
            provider, "_call_streaming_with_retry",
            new_callable=AsyncMock,
            return_value=_stream_of("Hello", ", ", "world"),
        ):
            text = await provider.complete(
                [{"role": "user", "content": "test"}], "system",
            )

        assert text == "Hello, world"


# ── Retry ─────────────────────────────────────────────────────


class TestLiteLLMProviderRetry:
    @pytest.mark.asyncio
    async def test_retries_on_rate_limit(self, provider):
        mock_acomp = AsyncMock(side_effect=[
            litellm.RateLimitError(
                message="rate limited", model="test", llm_provider="test",
            ),
            _stream_of("recovered"),
        ])
        with (
            patch(_ACOMP, mock_acomp),
            patch(_SLEEP, new_callable=AsyncMock),
        ):
            fragments = await _drain(provider)

        assert fragments == ["recovered"]
        assert mock_acomp.call_count == 2

    @pytest.mark.asyncio
    async def test_gives_up_after_max_retries(self, provider):
        mock_acomp = AsyncMock(side_effect=litellm.InternalServerError(
            message="server error", model="test", llm_provider="test",
        ))
        with (
            patch(_ACOMP, mock_acomp),
            patch(_SLEEP, new_callable=AsyncMock),
            pytest.raises(RuntimeError, match="failed after 2 attempt"),
        ):
            await _drain(provider)

        assert mock_acomp.call_count == 2

    @pytest.mark.asyncio
    async def test_zero_retries_single_attempt(self, provider):
        mock_acomp = AsyncMock(side_effect=litellm.ServiceUnavailableError(
            message="unavailable", model="test", llm_provider="test",
        ))
        with patch(_ACOMP, mock_acomp), pytest.raises(RuntimeError):
            async for _ in provider.stream(
                [{"role": "user", "content": "x"}], "s", max_retries=0,
            ):
                pass

        assert mock_acomp.call_count == 1

    @pytest.mark.asyncio
    async def test_spent_budget_blocks_retry(self, provider):
        mock_acomp = AsyncMock(side_effect=litellm.RateLimitError(
            message="rate limited", model="test", llm_provider="test",
        ))
        with (
            patch(_ACOMP, mock_acomp),
            patch(_SLEEP, new_callable=AsyncMock),
            pytest.raises(RuntimeError, match="failed after 1 attempt"),
        ):
            async for _ in provider.stream(
                [{"role": "user", "content": "x"}], "s",
                max_retries=1, retry_budget=RetryBudget(0),
            ):
                pass

        assert mock_acomp.call_count == 1

    @pytest.mark.asyncio
    async def test_budget_shared_between_calls(self, provider):
        budget = RetryBudget(1)
        mock_acomp = AsyncMock(side_effect=litellm.APIConnectionError(
            message="connection reset", model="test", llm_provider="test",
        ))
        with patch(_ACOMP, mock_acomp), patch(_SLEEP, new_callable=AsyncMock):
            for _call in range(2):
                with pytest.raises(RuntimeError):
                    async for _ in provider.stream(
                        [{"role": "user", "content": "x"}], "s",
                        max_retries=1, retry_budget=budget,
                    ):
                        pass

        # First call retried once, second had nothing left to spend
        assert mock_acomp.call_count == 3
        assert budget.remaining == 0

    def test_budget_take(self):
        budget = RetryBudget(2)
        assert budget.take() and budget.take()
        assert not budget.take()
        assert RetryBudget(-1).remaining == 0

    @pytest.mark.asyncio
    async def test_timeout_propagates_as_timeout_error(self, provider):
        mock_acomp = AsyncMock(side_effect=TimeoutError())
        with (
            patch(_ACOMP, mock_acomp),
            patch(_SLEEP, new_callable=AsyncMock),
            pytest.raises(TimeoutError, match="timed out"),
        ):
            await _drain(provider)

    @pytest.mark.asyncio
    async def test_auth_error_not_retried(self, provider):
        mock_acomp = AsyncMock(side_effect=litellm.AuthenticationError(
            message="bad key", model="test", llm_provider="test",
        ))
        with patch(_ACOMP, mock_acomp), pytest.raises(
            RuntimeError, match="Authentication failed",
        ):
            await _drain(provider)

        assert mock_acomp.call_count == 1


class TestShortErrorReason:
    def test_known_reasons(self):
        assert _short_error_reason(Exception("429 Too Many Requests")) == "rate limit"
        assert _short_error_reason(Exception("503 Service Unavailable")) == "service unavailable"
        assert _short_error_reason(TimeoutError()) == "timeout"

    def test_unknown_reason_truncated(self):
        reason = _short_error_reason(Exception("x" * 200))
        assert len(reason) == 80
