"""Abstract base class for text-generation backends.

Defines the TextGenerator interface that every LLM adapter must implement.
The pipeline runner interacts exclusively through this interface and
never calls provider SDKs directly.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator

from dbcoach.schemas.pipeline import ModelConfig


class RetryBudget:
    """Backend retries shared by every call of one generation run."""

    def __init__(self, total: int) -> None:
        self.remaining = max(total, 0)

    def take(self) -> bool:
        """Consume one retry. Returns False once the budget is spent."""
        if self.remaining <= 0:
            return False
        self.remaining -= 1
        return True


class TextGenerator(ABC):
    """Abstract interface for any LLM that can drive a generation phase.

    Exposes a streaming method yielding text fragments that concatenate to
    the full response, and a single-shot ``complete()`` built on top of it.
    """

    def __init__(self, config: ModelConfig) -> None:
        self._config = config

    @property
    def model_id(self) -> str:
        """LiteLLM model identifier used for routing."""
        return self._config.model

    @property
    def display_name(self) -> str:
        """Human-friendly model name for CLI output."""
        return self._config.display_name or self._config.model

    @property
    def config(self) -> ModelConfig:
        return self._config

    @abstractmethod
    def stream(
        self,
        messages: list[dict[str, str]],
        system: str,
        *,
        timeout: float = 25.0,
        max_retries: int = 1,
        retry_budget: RetryBudget | None = None,
    ) -> AsyncIterator[str]:
        """Stream a completion as an async iterator of text fragments.

        Args:
            messages: Conversation messages in OpenAI format.
            system: System instructions for this call.
            timeout: Timeout in seconds handed to the backend.
            max_retries: Retries allowed when opening the stream.
            retry_budget: Run-wide retry allowance. Each retry also
                consumes one unit of it when given.

        Raises:
            TimeoutError: If the backend call times out.
            RuntimeError: If the call fails with a non-retryable error or
                after all retries.
        """

    async def complete(
        self,
        messages: list[dict[str, str]],
        system: str,
        *,
        timeout: float = 25.0,
        max_retries: int = 1,
        retry_budget: RetryBudget | None = None,
    ) -> str:
        """Return the whole response as one string.

        Default implementation drains ``stream()``.
        """
        parts: list[str] = []
        async for fragment in self.stream(
            messages, system,
            timeout=timeout, max_retries=max_retries, retry_budget=retry_budget,
        ):
            parts.append(fragment)
        return "".join(parts)
