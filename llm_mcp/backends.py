"""Backend generate capabilities.

The orchestrator only needs ``await backend.generate(prompt_or_messages)``
and a ``backend_id`` naming the backend family (used to pick a tool-call
strategy). Two adapters are provided:

    # Any litellm model
    backend = LiteLLMBackend("anthropic/claude-sonnet-4-5-20250929", timeout=120)

    # Any callable, sync or async
    backend = CallableBackend(my_generate, backend_id="openai")
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import random
from typing import Any, Callable, Protocol, runtime_checkable

from llm_mcp.errors import (
    BackendAuthError,
    BackendError,
    BackendRateLimitError,
    BackendTransientError,
    wrap_backend_error,
)

logger = logging.getLogger(__name__)

PromptOrMessages = str | list[dict[str, Any]]


@runtime_checkable
class Backend(Protocol):
    """Anything that turns a prompt or message list into raw output."""

    backend_id: str

    async def generate(self, prompt_or_messages: PromptOrMessages) -> Any: ...


def to_messages(prompt_or_messages: PromptOrMessages) -> list[dict[str, Any]]:
    """Normalize a prompt string into a single user message."""
    if isinstance(prompt_or_messages, str):
        return [{"role": "user", "content": prompt_or_messages}]
    return list(prompt_or_messages)


def exponential_backoff(attempt: int, base_delay: float = 1.0, max_delay: float = 30.0) -> float:
    """Exponential backoff with jitter, capped at *max_delay*."""
    delay = base_delay * (2 ** attempt)
    jitter = random.uniform(0.5, 1.5)
    return min(delay * jitter, max_delay)


_CLAUDE_HOSTS = frozenset({"bedrock", "bedrock_converse", "vertex_ai", "vertex_ai_beta"})


def resolve_backend_id(model: str) -> str:
    """Backend family of a litellm model string.

    Uses litellm's own provider resolution, falling back to the model prefix.
    Claude models served through a hosting provider (Bedrock, Vertex) speak
    the Anthropic message format, so they resolve to ``anthropic``.
    """
    lowered = model.lower()
    provider = ""
    try:
        import litellm

        _, resolved, _, _ = litellm.get_llm_provider(model)
        provider = str(resolved or "").lower()
    except Exception:
        logger.debug("litellm could not resolve provider for %r", model, exc_info=True)
    if not provider and "/" in model:
        provider = model.split("/", 1)[0].lower()
    if provider in _CLAUDE_HOSTS and ("anthropic." in lowered or "claude" in lowered):
        return "anthropic"
    if provider:
        return provider
    if lowered.startswith("claude"):
        return "anthropic"
    if lowered.startswith(("gpt", "o1", "o3", "o4")):
        return "openai"
    return "generic"


class CallableBackend:
    """Adapt a plain function to the :class:`Backend` protocol."""

    def __init__(self, fn: Callable[[PromptOrMessages], Any], backend_id: str = "generic") -> None:
        self._fn = fn
        self.backend_id = backend_id

    def __repr__(self) -> str:
        return f"CallableBackend({getattr(self._fn, '__name__', self._fn)!r}, backend_id={self.backend_id!r})"

    async def generate(self, prompt_or_messages: PromptOrMessages) -> Any:
        result = self._fn(prompt_or_messages)
        if inspect.isawaitable(result):
            result = await result
        return result


class LiteLLMBackend:
    """Backend over ``litellm.acompletion`` with retry on transient failures."""

    def __init__(
        self,
        model: str,
        *,
        timeout: float = 60,
        num_retries: int = 2,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        backend_id: str | None = None,
        **litellm_kwargs: Any,
    ) -> None:
        self.model = model
        self.timeout = timeout
        self.num_retries = num_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.backend_id = backend_id or resolve_backend_id(model)
        self.litellm_kwargs = litellm_kwargs

    def __repr__(self) -> str:
        return f"LiteLLMBackend({self.model!r}, backend_id={self.backend_id!r})"

    async def _complete(self, messages: list[dict[str, Any]]) -> Any:
        import litellm

        return await litellm.acompletion(
            model=self.model,
            messages=messages,
            timeout=self.timeout,
            **self.litellm_kwargs,
        )

    async def generate(self, prompt_or_messages: PromptOrMessages) -> Any:
        """Return the message text, or the message itself when it carries native tool calls.

        Raises:
            BackendError: After retries are exhausted, or immediately for
                non-retryable failures.
        """
        messages = to_messages(prompt_or_messages)
        last_error: BackendError | None = None
        for attempt in range(self.num_retries + 1):
            try:
                response = await self._complete(messages)
            except Exception as exc:
                error = wrap_backend_error(exc)
                last_error = error
                retryable = isinstance(error, (BackendRateLimitError, BackendTransientError))
                if isinstance(error, BackendAuthError) or not retryable or attempt >= self.num_retries:
                    raise error from exc
                delay = exponential_backoff(attempt, self.base_delay, self.max_delay)
                logger.warning(
                    "%s generate attempt %d/%d failed (retrying in %.1fs): %s",
                    self.model, attempt + 1, self.num_retries + 1, delay, exc,
                )
                await asyncio.sleep(delay)
                continue
            if attempt > 0:
                logger.info("%s generate succeeded after %d retries", self.model, attempt)
            message = response.choices[0].message
            if getattr(message, "tool_calls", None):
                return message
            return message.content or ""
        raise last_error  # type: ignore[misc]  # unreachable
