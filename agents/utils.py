"""LiteLLM client for the coding agent.

- LLMClient.complete: one chat completion with tool definitions, retried with
  capped exponential backoff on rate limits, outages and timeouts
- MockLLMClient: replays scripted responses (tests and ``use_mock_llm``)
- assistant_message / tool_result_message: the conversation entries the
  agent appends after each reason/act round
"""

import asyncio
import json
import time
from dataclasses import dataclass, field
from typing import Any

import structlog
from litellm import ModelResponse, acompletion
from litellm.exceptions import (
    AuthenticationError,
    BadRequestError,
    RateLimitError,
    ServiceUnavailableError,
    Timeout,
)

from config import settings

logger = structlog.get_logger()

# Transient provider failures worth another attempt.
RETRYABLE_ERRORS = (RateLimitError, ServiceUnavailableError, Timeout)
# Failures that will not change on retry.
FATAL_ERRORS = (AuthenticationError, BadRequestError)

MAX_BACKOFF_SECONDS = 4.0


def backoff_delay(attempt: int, base_delay: float) -> float:
    """Delay before retry number ``attempt`` (1-based): base, 2x base, 4x base, capped."""
    return min(base_delay * 2 ** (attempt - 1), MAX_BACKOFF_SECONDS)


def parse_tool_arguments(raw: Any) -> dict[str, Any]:
    """Decode a tool call's arguments into a dict.

    Models sometimes send arrays, bare values or broken JSON. Anything that
    is not a JSON object is wrapped so tools always receive a mapping and
    can report a readable argument error.
    """
    if raw is None:
        return {}
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError:
            return {"raw": raw}
    return raw if isinstance(raw, dict) else {"value": raw}


@dataclass
class ToolCallData:
    """A tool call requested by the model."""

    id: str
    name: str
    args: dict[str, Any]


@dataclass
class CompletionUsage:
    model: str
    input_tokens: int = 0
    output_tokens: int = 0
    latency_ms: int = 0


@dataclass
class LLMResponse:
    """One parsed completion.

    Attributes:
        content: Assistant text (empty when the model only called tools)
        tool_calls: Requested tool calls, in order
        finish_reason: ``stop``, ``tool_calls``, ``length``...
        usage: Token counts and latency
    """

    content: str
    tool_calls: list[ToolCallData]
    finish_reason: str
    usage: CompletionUsage
    raw_response: ModelResponse | None = field(default=None, repr=False)


def parse_completion(response: ModelResponse, model: str, latency_ms: int) -> LLMResponse:
    choice = response.choices[0]
    message = choice.message
    tool_calls = [
        ToolCallData(
            id=call.id,
            name=call.function.name,
            args=parse_tool_arguments(call.function.arguments),
        )
        for call in message.tool_calls or []
    ]
    usage = response.usage
    return LLMResponse(
        content=message.content or "",
        tool_calls=tool_calls,
        finish_reason=choice.finish_reason or "unknown",
        usage=CompletionUsage(
            model=model,
            input_tokens=usage.prompt_tokens if usage else 0,
            output_tokens=usage.completion_tokens if usage else 0,
            latency_ms=latency_ms,
        ),
        raw_response=response,
    )


class LLMClient:
    """Thin LiteLLM wrapper with a retry policy.

    Rate limits, provider outages and timeouts are retried up to
    ``retry_attempts`` times; authentication and malformed-request errors
    are raised immediately.
    """

    def __init__(
        self,
        default_model: str | None = None,
        retry_attempts: int | None = None,
        retry_delay: float = 1.0,
    ) -> None:
        self.default_model = default_model or settings.default_model
        self.retry_attempts = settings.llm_max_retries if retry_attempts is None else retry_attempts
        self.retry_delay = retry_delay

    async def _send(self, request: dict[str, Any]) -> ModelResponse:
        return await acompletion(**request)

    async def _sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)

    async def complete(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        model: str | None = None,
        temperature: float = 0.7,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        """Run one chat completion.

        Raises:
            AuthenticationError, BadRequestError: Immediately.
            RateLimitError, ServiceUnavailableError, Timeout: Once retries
                are exhausted.
        """
        model = model or self.default_model
        request: dict[str, Any] = {
            "model": model,
            "messages": messages,
            "temperature": temperature,
            "timeout": settings.llm_request_timeout_seconds,
        }
        if tools:
            request["tools"] = tools
            request["tool_choice"] = "auto"
        if max_tokens:
            request["max_tokens"] = max_tokens

        started = time.monotonic()
        attempt = 0
        while True:
            attempt += 1
            try:
                raw = await self._send(request)
            except RETRYABLE_ERRORS as e:
                if attempt > self.retry_attempts:
                    logger.error(
                        "llm_retries_exhausted",
                        model=model,
                        attempts=attempt,
                        error_type=type(e).__name__,
                        error=str(e),
                    )
                    raise
                delay = backoff_delay(attempt, self.retry_delay)
                logger.warning(
                    "llm_call_retry",
                    model=model,
                    attempt=attempt,
                    error_type=type(e).__name__,
                    retry_delay=delay,
                )
                await self._sleep(delay)
                continue
            except FATAL_ERRORS as e:
                logger.error("llm_call_rejected", model=model, error_type=type(e).__name__, error=str(e))
                raise

            response = parse_completion(raw, model, int((time.monotonic() - started) * 1000))
            logger.info(
                "llm_call_complete",
                model=model,
                attempt=attempt,
                input_tokens=response.usage.input_tokens,
                output_tokens=response.usage.output_tokens,
                latency_ms=response.usage.latency_ms,
                tool_calls=len(response.tool_calls),
            )
            return response


def assistant_message(content: str, tool_calls: list[ToolCallData]) -> dict[str, Any]:
    """The assistant turn as it is replayed to the model, tool calls included."""
    message: dict[str, Any] = {"role": "assistant", "content": content}
    if tool_calls:
        message["tool_calls"] = [
            {
                "id": call.id,
                "type": "function",
                "function": {"name": call.name, "arguments": json.dumps(call.args)},
            }
            for call in tool_calls
        ]
    return message


def tool_result_message(tool_call_id: str, content: str) -> dict[str, Any]:
    return {"role": "tool", "tool_call_id": tool_call_id, "content": content}


def make_mock_response(
    content: str = "",
    tool_calls: list[ToolCallData] | None = None,
) -> LLMResponse:
    """Build an LLMResponse without calling a model."""
    return LLMResponse(
        content=content,
        tool_calls=tool_calls or [],
        finish_reason="tool_calls" if tool_calls else "stop",
        usage=CompletionUsage(model="mock"),
    )


class MockLLMClient(LLMClient):
    """Replays scripted responses in order and records every request.

    Usage:
        >>> client = MockLLMClient(responses=[make_mock_response("Done")])
        >>> response = await client.complete(messages=[...])
    """

    def __init__(self, responses: list[LLMResponse] | None = None, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.responses = list(responses or [])
        self.call_history: list[dict[str, Any]] = []

    async def complete(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        model: str | None = None,
        temperature: float = 0.7,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        """Return the next scripted response.

        Raises:
            IndexError: When the script is exhausted.
        """
        self.call_history.append({
            "messages": list(messages),
            "tools": tools,
            "model": model or self.default_model,
            "temperature": temperature,
        })
        turn = len(self.call_history) - 1
        if turn >= len(self.responses):
            raise IndexError("No more mock responses available")
        logger.debug("mock_llm_call", turn=turn, tool_calls=len(self.responses[turn].tool_calls))
        return self.responses[turn]
