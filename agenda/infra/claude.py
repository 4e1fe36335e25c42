"""
Claude API Client

Manages Anthropic API calls with retry logic, model fallback and a bounded
timeout. Every call returns one fully received turn; when streaming is on,
the turn is the stream's final message, so callers never see partial output.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Optional

from anthropic import AsyncAnthropic, APIError, RateLimitError, APIConnectionError

from agenda.config import settings
from agenda.core.errors import ProviderError

logger = logging.getLogger(__name__)


class ClaudeClientError(ProviderError):
    """Raised when Claude API call fails."""
    pass


@dataclass
class Usage:
    """Token accounting, summed across model calls."""

    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def __add__(self, other: "Usage") -> "Usage":
        return Usage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
        )

    def to_dict(self) -> dict[str, int]:
        return {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "total_tokens": self.total_tokens,
        }


@dataclass
class ToolCall:
    """One tool invocation requested by the model."""

    id: str
    name: str
    input: dict[str, Any]


@dataclass
class ModelTurn:
    """A complete assistant turn."""

    text: str
    tool_calls: list[ToolCall]
    usage: Usage
    stop_reason: Optional[str]
    model: str
    content_blocks: list[dict[str, Any]] = field(default_factory=list)
    latency_ms: float = 0.0

    @property
    def wants_tools(self) -> bool:
        return bool(self.tool_calls)


class ClaudeClient:
    """
    Async Claude API client wrapper.

    Features:
    - Automatic retries with exponential backoff
    - Model fallback
    - Per-turn timeout
    - Optional streaming, buffered into a single turn
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        fallback_model: Optional[str] = None,
        timeout: Optional[float] = None,
        stream: Optional[bool] = None,
        client: Optional[AsyncAnthropic] = None,
    ):
        self.api_key = api_key or settings.anthropic_api_key
        if client is None and not self.api_key:
            raise ValueError("Anthropic API key is required")

        self._client = client or AsyncAnthropic(api_key=self.api_key)
        self._default_model = model or settings.agent_model
        self._fallback_model = fallback_model if fallback_model is not None else settings.fallback_model
        self._timeout = timeout or settings.model_timeout
        self._stream = settings.stream_responses if stream is None else stream

        logger.info(f"ClaudeClient initialized with model={self._default_model}")

    async def create_message(
        self,
        messages: list[dict[str, Any]],
        system: Optional[str] = None,
        tools: Optional[list[dict[str, Any]]] = None,
        model: Optional[str] = None,
        max_tokens: Optional[int] = None,
        use_fallback_on_error: bool = True,
    ) -> ModelTurn:
        """
        Run one model turn.

        Args:
            messages: Conversation in Anthropic message format
            system: System prompt
            tools: Tool definitions (name, description, input_schema)
            model: Model override
            max_tokens: Output cap
            use_fallback_on_error: Try the fallback model once on failure

        Returns:
            ModelTurn with text, tool calls and usage

        Raises:
            ClaudeClientError: If the call fails or times out after retries
        """
        model = model or self._default_model
        kwargs: dict[str, Any] = {
            "model": model,
            "max_tokens": max_tokens or settings.max_tokens,
            "messages": messages,
        }
        if system:
            kwargs["system"] = system
        if tools:
            kwargs["tools"] = tools

        start_time = time.time()
        try:
            response = await asyncio.wait_for(
                self._call_with_retry(kwargs), timeout=self._timeout
            )
        except (APIError, asyncio.TimeoutError, ClaudeClientError) as e:
            fallback = self._fallback_model
            if use_fallback_on_error and fallback and model != fallback:
                logger.warning(f"Primary model failed, trying fallback: {e!r}")
                return await self.create_message(
                    messages=messages,
                    system=system,
                    tools=tools,
                    model=fallback,
                    max_tokens=max_tokens,
                    use_fallback_on_error=False,
                )
            raise ClaudeClientError(f"Claude API call failed: {e!r}") from e

        turn = self._to_turn(response, model)
        turn.latency_ms = (time.time() - start_time) * 1000
        return turn

    async def _call_with_retry(self, kwargs: dict[str, Any], max_retries: int = 3) -> Any:
        """Call API with exponential backoff retry."""
        last_error: Optional[Exception] = None

        for attempt in range(max_retries):
            try:
                if self._stream:
                    async with self._client.messages.stream(**kwargs) as stream:
                        return await stream.get_final_message()
                return await self._client.messages.create(**kwargs)

            except RateLimitError as e:
                last_error = e
                wait_time = 2 ** attempt
                logger.warning(f"Rate limited, waiting {wait_time}s (attempt {attempt + 1})")
                await asyncio.sleep(wait_time)

            except APIConnectionError as e:
                last_error = e
                wait_time = 2 ** attempt
                logger.warning(f"Connection error, retrying in {wait_time}s (attempt {attempt + 1})")
                await asyncio.sleep(wait_time)

            except APIError as e:
                logger.error(f"API error: {e}")
                raise

        raise ClaudeClientError(f"Max retries exceeded: {last_error!r}")

    @staticmethod
    def _to_turn(response: Any, model: str) -> ModelTurn:
        text_parts: list[str] = []
        tool_calls: list[ToolCall] = []
        blocks: list[dict[str, Any]] = []

        for block in response.content:
            if block.type == "text":
                text_parts.append(block.text)
                blocks.append({"type": "text", "text": block.text})
            elif block.type == "tool_use":
                tool_calls.append(ToolCall(id=block.id, name=block.name, input=dict(block.input or {})))
                blocks.append(
                    {"type": "tool_use", "id": block.id, "name": block.name, "input": block.input}
                )

        usage = getattr(response, "usage", None)
        return ModelTurn(
            text="\n".join(part for part in text_parts if part).strip(),
            tool_calls=tool_calls,
            usage=Usage(
                input_tokens=getattr(usage, "input_tokens", 0) or 0,
                output_tokens=getattr(usage, "output_tokens", 0) or 0,
            ),
            stop_reason=getattr(response, "stop_reason", None),
            model=getattr(response, "model", None) or model,
            content_blocks=blocks,
        )

    async def close(self) -> None:
        """Close the client."""
        await self._client.close()
