"""LiteLLM adapter implementing the TextGenerator interface.

Routes streaming completion requests to any LLM provider via LiteLLM's
unified API. Handles API key resolution, timeouts, and a short bounded
retry when opening the stream.
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import AsyncIterator

import litellm

# Suppress LiteLLM's "Give Feedback / Get Help" and "Provider List" banners
litellm.suppress_debug_info = True

from dbcoach.errors import MissingCredentialError
from dbcoach.providers.base import RetryBudget, TextGenerator
from dbcoach.schemas.pipeline import ModelConfig

logger = logging.getLogger(__name__)

# Delay before each retry
_RETRY_BACKOFF = 0.5  # seconds


def _short_error_reason(error: Exception) -> str:
    """Extract a short, user-friendly reason from a LiteLLM error."""
    error_str = str(error).lower()
    if "rate" in error_str or "429" in error_str:
        return "rate limit"
    if "overloaded" in error_str or "529" in error_str:
        return "overloaded"
    if "timeout" in error_str or isinstance(error, TimeoutError):
        return "timeout"
    if "503" in error_str or "unavailable" in error_str:
        return "service unavailable"
    if "500" in error_str or "internal" in error_str:
        return "server error"
    if "connection" in error_str:
        return "connection error"
    return str(error)[:80]


class LiteLLMProvider(TextGenerator):
    """Universal LLM adapter powered by LiteLLM.

    Routes calls to any provider (Gemini, Anthropic, OpenAI, ...) through
    ``litellm.acompletion(stream=True)``.
    """

    def __init__(self, config: ModelConfig, *, require_key: bool = True) -> None:
        super().__init__(config)
        self._api_key = os.environ.get(config.api_key_env, "")
        if require_key and not self._api_key:
            raise MissingCredentialError(config.api_key_env)

    async def stream(
        self,
        messages: list[dict[str, str]],
        system: str,
        *,
        timeout: float = 25.0,
        max_retries: int = 1,
        retry_budget: RetryBudget | None = None,
    ) -> AsyncIterator[str]:
        """Stream a completion via LiteLLM, yielding each non-empty delta."""
        full_messages = [{"role": "system", "content": system}, *messages]
        kwargs = self._build_completion_kwargs(full_messages, timeout)
        kwargs["stream"] = True

        response = await self._call_streaming_with_retry(kwargs, max_retries, retry_budget)

        async for chunk in response:
            if not chunk.choices or not chunk.choices[0].delta:
                continue
            delta = chunk.choices[0].delta.content or ""
            if delta:
                yield delta

    def _build_completion_kwargs(
        self,
        messages: list[dict[str, str]],
        timeout: float,
    ) -> dict:
        """Build the kwargs dict for litellm.acompletion."""
        kwargs: dict = {
            "model": self._config.model,
            "messages": messages,
            "timeout": float(timeout),
            "temperature": self._config.temperature,
            "max_tokens": self._config.max_output_tokens,
        }

        if self._api_key:
            kwargs["api_key"] = self._api_key

        if self._config.api_base:
            kwargs["api_base"] = self._config.api_base

        return kwargs

    async def _call_streaming_with_retry(
        self, kwargs: dict, max_retries: int, retry_budget: RetryBudget | None = None,
    ):
        """Call litellm.acompletion with stream=True, retrying transient errors.

        Non-retryable errors (auth, bad request) are raised immediately. When a
        run-wide budget is given, a retry happens only if it can pay for it.

        Raises:
            TimeoutError: If every attempt timed out.
            RuntimeError: If all attempts fail with non-timeout errors.
        """
        attempts = max_retries + 1
        last_error: Exception | None = None
        made = 0

        for attempt in range(attempts):
            made = attempt + 1
            try:
                return await litellm.acompletion(**kwargs)
            except TimeoutError:
                last_error = TimeoutError(
                    f"Streaming call timed out after {kwargs.get('timeout')}s "
                    f"(attempt {attempt + 1}/{attempts})"
                )
            except litellm.AuthenticationError:
                raise RuntimeError(
                    f"Authentication failed for {self._config.model}. "
                    f"Check that {self._config.api_key_env} is set correctly."
                ) from None
            except litellm.BadRequestError as e:
                raise RuntimeError(
                    f"Bad request to {self._config.model}: {e}"
                ) from e
            except (
                litellm.RateLimitError,
                litellm.ServiceUnavailableError,
                litellm.InternalServerError,
                litellm.APIConnectionError,
                litellm.Timeout,
            ) as e:
                last_error = e

            if attempt == attempts - 1:
                break
            if retry_budget is not None and not retry_budget.take():
                logger.warning(
                    "Retry budget exhausted for %s, giving up after %d attempt(s)",
                    self.display_name, made,
                )
                break
            logger.warning(
                "Streaming retry %d/%d for %s (%s, backoff: %.1fs)",
                attempt + 1, max_retries, self.display_name,
                _short_error_reason(last_error), _RETRY_BACKOFF,
            )
            await asyncio.sleep(_RETRY_BACKOFF)

        if isinstance(last_error, TimeoutError):
            raise last_error
        raise RuntimeError(
            f"Streaming call to {self._config.model} failed after "
            f"{made} attempt(s): {last_error}"
        ) from last_error
