"""Anthropic API client with streaming, rate limiting and error handling."""

import asyncio
import json
import os
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Literal, TypeVar

import tiktoken
from anthropic import APIError, AsyncAnthropic
from anthropic.types import Message as AnthropicResponseMessage
from limits import parse
from limits.storage import MemoryStorage
from limits.strategies import MovingWindowRateLimiter
from pydantic import BaseModel

from taskmate.models.llm import (
    AbortSignal,
    AssistantReply,
    ChatChoice,
    ChatResponse,
    LLMTool,
    LLMUsage,
    StreamCallbacks,
)
from taskmate.models.messages import Message, ToolCall, ToolFunction
from taskmate.utils.arguments import parse_tool_arguments
from taskmate.utils.errors import OperationCancelledError
from taskmate.utils.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class CacheControl(BaseModel):
    """Cache control configuration for prompt caching."""

    type: Literal["ephemeral"] = "ephemeral"
    ttl: Literal["5m", "1h"] = "5m"


class AnthropicMessage(BaseModel):
    """Message format for Anthropic API."""

    role: Literal["user", "assistant"]
    content: list[dict[str, Any]]


class AnthropicTool(BaseModel):
    """Tool definition for Anthropic API."""

    name: str
    description: str
    input_schema: dict[str, Any]
    cache_control: CacheControl | None = None


@dataclass
class AnthropicConfig:
    """Configuration for Anthropic API client."""

    model: str = "claude-sonnet-4-5"
    max_tokens: int = 4096
    temperature: float = 0.1
    max_retries: int = 3
    retry_delay: float = 1.0

    # Token limits for truncation
    max_conversation_tokens: int = 200000
    token_headroom: int = 4096  # Reserve tokens for response

    # Rounds of tool calls the client may execute itself before handing back
    max_auto_tool_turns: int = 10

    @classmethod
    def from_env(cls) -> "AnthropicConfig":
        config = cls()
        config.model = os.getenv("ANTHROPIC_MODEL", config.model)
        config.max_tokens = int(os.getenv("ANTHROPIC_MAX_TOKENS", config.max_tokens))
        return config


class AnthropicRateLimiter:
    """Moving-window rate limiter for requests and tokens."""

    def __init__(self, requests_per_minute: int = 50, tokens_per_minute: int = 40_000):
        """Initialize rate limiter.

        Args:
            requests_per_minute: Maximum requests per minute
            tokens_per_minute: Maximum tokens per minute
        """
        self.storage = MemoryStorage()
        self.limiter = MovingWindowRateLimiter(self.storage)

        self.request_limit = parse(f"{requests_per_minute}/minute")
        self.token_limit = parse(f"{tokens_per_minute}/minute")

    async def check_rate_limit(self, estimated_tokens: int, identifier: str = "anthropic") -> None:
        """Wait until the request fits within the rate limits."""
        logger.debug(f"Checking rate limit for {estimated_tokens} tokens, identifier: {identifier}")

        if not self.limiter.hit(self.request_limit, identifier):
            await self._wait_for_reset(self.request_limit, identifier, "Request")

        token_identifier = f"{identifier}_tokens"
        cost = min(max(estimated_tokens, 1), self.token_limit.amount)
        if not self.limiter.hit(self.token_limit, token_identifier, cost=cost):
            await self._wait_for_reset(self.token_limit, token_identifier, "Token")

    async def _wait_for_reset(self, limit, identifier: str, kind: str) -> None:
        window_stats = self.limiter.get_window_stats(limit, identifier)
        if window_stats:
            wait_time = max(0.0, window_stats.reset_time - time.time())
            if wait_time > 0:
                logger.warning(f"{kind} rate limit exceeded, waiting {wait_time:.2f}s")
                await asyncio.sleep(wait_time)


class AnthropicClient:
    """Model client backed by the Anthropic Messages API.

    Tools with a ``callable`` are executed by the client itself; the loop stops
    at the first reply that contains text only or a call the orchestrator must
    handle.
    """

    tokenizer: tiktoken.Encoding | None = None

    def __init__(
        self,
        api_key: str | None = None,
        config: AnthropicConfig | None = None,
        rate_limiter: AnthropicRateLimiter | None = None,
        client: AsyncAnthropic | None = None,
    ):
        """Initialize Anthropic client.

        Args:
            api_key: Anthropic API key (defaults to ANTHROPIC_API_KEY env var)
            config: Client configuration
            rate_limiter: Shared rate limiter (a new one by default)
            client: Preconfigured SDK client, mainly for tests
        """
        if client is None:
            anthropic_api_key = api_key or os.getenv("ANTHROPIC_API_KEY")
            if not anthropic_api_key:
                raise ValueError("ANTHROPIC_API_KEY environment variable is required")
            client = AsyncAnthropic(api_key=anthropic_api_key)

        self.client = client
        self.config = config or AnthropicConfig()
        self.rate_limiter = rate_limiter or AnthropicRateLimiter()

        try:
            # Close approximation for Claude
            self.tokenizer = tiktoken.get_encoding("cl100k_base")
        except Exception:
            self.tokenizer = None

    async def chat(
        self,
        messages: list[Message],
        tools: dict[str, LLMTool],
        callbacks: StreamCallbacks,
        signal: AbortSignal | None = None,
    ) -> ChatResponse:
        """Send the conversation and return the first reply the caller must handle."""
        system_prompt, conversation = self.to_anthropic_messages(messages)
        anthropic_tools = self.to_anthropic_tools(tools)
        usage = LLMUsage()
        model = self.config.model

        try:
            for turn in range(self.config.max_auto_tool_turns + 1):
                if signal is not None:
                    signal.raise_if_aborted()

                truncated = self.truncate_conversation(conversation, system_prompt, anthropic_tools)
                await self.rate_limiter.check_rate_limit(self._estimate_tokens(truncated, system_prompt))

                request_params: dict[str, Any] = {
                    "model": self.config.model,
                    "max_tokens": self.config.max_tokens,
                    "temperature": self.config.temperature,
                    "messages": [msg.model_dump() for msg in truncated],
                }
                if system_prompt:
                    request_params["system"] = system_prompt
                if anthropic_tools:
                    request_params["tools"] = [tool.model_dump(exclude_none=True) for tool in anthropic_tools]

                logger.debug(f"Anthropic call {turn + 1}: {len(truncated)} messages, {len(anthropic_tools)} tools")
                response = await self._request_with_retries(lambda: self._stream(request_params, callbacks, signal))
                self._add_usage(usage, response)
                model = response.model

                if not response.content:
                    return ChatResponse(choices=[], usage=usage, model=model)

                text = "".join(block.text for block in response.content if block.type == "text")
                tool_calls = [
                    ToolCall(id=block.id, function=ToolFunction(name=block.name, arguments=dict(block.input or {})))
                    for block in response.content
                    if block.type == "tool_use"
                ]

                auto_executable = bool(tool_calls) and all(
                    tools.get(call.function.name) is not None and tools[call.function.name].callable is not None
                    for call in tool_calls
                )
                if not auto_executable or turn == self.config.max_auto_tool_turns:
                    reply = AssistantReply(content=text, tool_calls=tool_calls or None)
                    return ChatResponse(choices=[ChatChoice(message=reply)], usage=usage, model=model)

                results: list[dict[str, Any]] = []
                for call in tool_calls:
                    tool_callable = tools[call.function.name].callable
                    assert tool_callable is not None
                    result = await tool_callable(call)
                    if callbacks.on_tool_executed is not None:
                        callbacks.on_tool_executed(call, result)
                    if signal is not None:
                        signal.raise_if_aborted()
                    results.append({"type": "tool_result", "tool_use_id": call.id, "content": result or "(empty)"})

                conversation = [
                    *conversation,
                    AnthropicMessage(
                        role="assistant",
                        content=[block.model_dump(exclude_none=True) for block in response.content],
                    ),
                    AnthropicMessage(role="user", content=results),
                ]

            raise RuntimeError("Auto tool loop ended without a reply")
        finally:
            if callbacks.on_finish is not None:
                callbacks.on_finish()

    async def _stream(
        self,
        request_params: dict[str, Any],
        callbacks: StreamCallbacks,
        signal: AbortSignal | None,
    ) -> AnthropicResponseMessage:
        """Stream one request, stopping as soon as the signal is aborted.

        The stream is raced against the signal, so an abort also lands while
        the model is thinking or emitting tool input and no text arrives.
        """
        if signal is None:
            return await self._consume_stream(request_params, callbacks, None)

        consume = asyncio.ensure_future(self._consume_stream(request_params, callbacks, signal))
        aborted = asyncio.ensure_future(signal.wait())
        try:
            await asyncio.wait({consume, aborted}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            aborted.cancel()
            if not consume.done():
                consume.cancel()
                await asyncio.gather(consume, return_exceptions=True)

        if consume.cancelled():
            logger.info("Model stream cancelled by user")
            raise OperationCancelledError()
        response = consume.result()
        signal.raise_if_aborted()
        return response

    async def _consume_stream(
        self,
        request_params: dict[str, Any],
        callbacks: StreamCallbacks,
        signal: AbortSignal | None,
    ) -> AnthropicResponseMessage:
        async with self.client.messages.stream(**request_params) as stream:
            async for text in stream.text_stream:
                if signal is not None and signal.aborted:
                    raise OperationCancelledError()
                if callbacks.on_token is not None:
                    callbacks.on_token(text)
            return await stream.get_final_message()

    async def _request_with_retries(self, call: Callable[[], Awaitable[T]]) -> T:
        """Execute Anthropic API request with retry logic."""
        for attempt in range(self.config.max_retries):
            try:
                return await call()

            except OperationCancelledError:
                raise

            except APIError as e:
                status_code = getattr(e, "status_code", None)
                if status_code == 429:  # Rate limit exceeded
                    retry_after = 60
                    response = getattr(e, "response", None)
                    if response is not None and hasattr(response, "headers"):
                        retry_after = int(response.headers.get("retry-after", 60))

                    if retry_after < 120 and attempt < self.config.max_retries - 1:
                        logger.warning(f"Rate limited by API, retrying in {retry_after}s")
                        await asyncio.sleep(retry_after)
                        continue

                elif status_code is not None and status_code >= 500 and attempt < self.config.max_retries - 1:
                    # Server error, retry with exponential backoff
                    await asyncio.sleep(self.config.retry_delay * (2**attempt))
                    continue

                # Re-raise if not retryable or max retries reached
                raise

        raise RuntimeError(f"Failed to complete request after {self.config.max_retries} attempts")

    @staticmethod
    def _add_usage(usage: LLMUsage, response: AnthropicResponseMessage) -> None:
        if not response.usage:
            return
        usage.input_tokens += response.usage.input_tokens
        usage.output_tokens += response.usage.output_tokens
        usage.total_tokens += response.usage.input_tokens + response.usage.output_tokens
        usage.cache_creation_input_tokens += response.usage.cache_creation_input_tokens or 0
        usage.cache_read_input_tokens += response.usage.cache_read_input_tokens or 0

    @staticmethod
    def to_anthropic_tools(tools: dict[str, LLMTool]) -> list[AnthropicTool]:
        """Convert tools, marking the last one for prompt caching."""
        tool_list = list(tools.values())
        return [
            AnthropicTool(
                name=tool.name,
                description=tool.description,
                input_schema=tool.input_schema,
                cache_control=CacheControl() if i == len(tool_list) - 1 else None,
            )
            for i, tool in enumerate(tool_list)
        ]

    @staticmethod
    def to_anthropic_messages(messages: list[Message]) -> tuple[str, list[AnthropicMessage]]:
        """Convert history to Anthropic format.

        Tool-role messages become ``tool_result`` blocks. A ``tool_use`` without a
        result, or a result without a ``tool_use``, cannot be sent to the API, so
        the former is dropped and the latter is sent as plain text.

        Returns:
            System prompt and the converted conversation
        """
        answered = {m.tool_call_id for m in messages if m.role == "tool" and m.tool_call_id}
        requested: set[str] = set()
        for message in messages:
            if message.role == "assistant":
                requested.update(call.id for call in message.tool_calls or [] if call.id in answered)

        system_parts: list[str] = []
        converted: list[AnthropicMessage] = []

        def append(role: Literal["user", "assistant"], blocks: list[dict[str, Any]]) -> None:
            if not blocks:
                return
            if converted and converted[-1].role == role:
                converted[-1].content.extend(blocks)
            else:
                converted.append(AnthropicMessage(role=role, content=blocks))

        for message in messages:
            if message.role == "system":
                if message.content:
                    system_parts.append(message.content)
            elif message.role == "user":
                if message.content.strip():
                    append("user", [{"type": "text", "text": message.content}])
            elif message.role == "assistant":
                blocks: list[dict[str, Any]] = []
                if message.content.strip():
                    blocks.append({"type": "text", "text": message.content})
                for call in message.tool_calls or []:
                    if call.id in requested:
                        blocks.append(
                            {
                                "type": "tool_use",
                                "id": call.id,
                                "name": call.function.name,
                                "input": parse_tool_arguments(call.function.arguments),
                            }
                        )
                append("assistant", blocks)
            elif message.tool_call_id in requested:
                append(
                    "user",
                    [{"type": "tool_result", "tool_use_id": message.tool_call_id, "content": message.content or "(empty)"}],
                )
            elif message.content:
                append("user", [{"type": "text", "text": f"Tool result ({message.name or 'tool'}): {message.content}"}])

        return "\n\n".join(system_parts), converted

    def estimate_message_tokens(self, message: str) -> int:
        """Estimate token count for a single message."""
        try:
            return len(self.tokenizer.encode(message)) if self.tokenizer else len(message) // 4
        except Exception:
            # Fallback: roughly 4 characters per token
            return len(message) // 4

    @staticmethod
    def _message_text(message: AnthropicMessage) -> str:
        parts: list[str] = []
        for block in message.content:
            if "text" in block:
                parts.append(block["text"])
            elif block.get("type") == "tool_result":
                parts.append(str(block.get("content", "")))
            elif block.get("type") == "tool_use":
                parts.append(json.dumps(block.get("input", {})))
        return "".join(parts)

    def _estimate_tokens(self, messages: list[AnthropicMessage], system_prompt: str) -> int:
        """Estimate token count for rate limiting."""
        return self.estimate_message_tokens(system_prompt + "".join(self._message_text(m) for m in messages))

    def truncate_conversation(
        self, messages: list[AnthropicMessage], system_prompt: str, tools: list[AnthropicTool] | None = None
    ) -> list[AnthropicMessage]:
        """Truncate conversation from the beginning to fit within token limits.

        The result always starts with a user message that is not a tool result.
        """
        if not messages:
            return messages

        available_tokens = self.config.max_conversation_tokens - self.config.token_headroom
        available_tokens -= self.estimate_message_tokens(system_prompt)
        if tools:
            tool_content = "".join(tool.name + tool.description + str(tool.input_schema) for tool in tools)
            available_tokens -= self.estimate_message_tokens(tool_content)

        truncated: list[AnthropicMessage] = []
        current_tokens = 0
        for message in reversed(messages):
            message_tokens = self.estimate_message_tokens(self._message_text(message))
            if current_tokens + message_tokens > available_tokens:
                break
            truncated.insert(0, message)
            current_tokens += message_tokens

        while truncated and (truncated[0].role != "user" or truncated[0].content[0].get("type") == "tool_result"):
            truncated.pop(0)

        if len(truncated) < len(messages):
            logger.warning(
                f"Truncated conversation from {len(messages)} to {len(truncated)} messages "
                f"to fit within {available_tokens} token limit"
            )

        return truncated
