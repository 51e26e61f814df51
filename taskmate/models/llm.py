"""LLM-related data models and types (provider-agnostic)."""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Protocol

from pydantic import BaseModel

from taskmate.models.messages import Message, ToolCall
from taskmate.utils.errors import OperationCancelledError


@dataclass
class LLMTool:
    """Tool as handed to the model client.

    ``callable`` is set only for tools the client may run on its own, i.e. tools
    that never need approval. Everything else comes back as a tool call.
    """

    name: str
    description: str
    input_schema: dict[str, Any]
    callable: Callable[[ToolCall], Awaitable[str]] | None = None


@dataclass
class StreamCallbacks:
    """Callbacks invoked by the model client while a response is produced."""

    on_token: Callable[[str], None] | None = None
    on_tool_executed: Callable[[ToolCall, str], None] | None = None
    on_finish: Callable[[], None] | None = None


class AssistantReply(BaseModel):
    """Assistant message returned by the model."""

    content: str = ""
    tool_calls: list[ToolCall] | None = None


class ChatChoice(BaseModel):
    """One completion choice."""

    message: AssistantReply


@dataclass
class LLMUsage:
    """Token usage information from the LLM provider."""

    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0

    cache_creation_input_tokens: int = 0
    cache_read_input_tokens: int = 0

    @property
    def cache_hit_rate(self) -> float:
        """Calculate cache hit rate as percentage."""
        total_input = self.input_tokens + self.cache_read_input_tokens + self.cache_creation_input_tokens
        if total_input == 0:
            return 0.0
        return (self.cache_read_input_tokens / total_input) * 100


@dataclass
class ChatResponse:
    """Provider-agnostic chat response."""

    choices: list[ChatChoice]
    usage: LLMUsage = field(default_factory=LLMUsage)
    model: str = ""


class AbortSignal:
    """Cancellation handle for one in-flight model call."""

    def __init__(self):
        self._event = asyncio.Event()

    @property
    def aborted(self) -> bool:
        return self._event.is_set()

    def abort(self) -> None:
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_aborted(self) -> None:
        """Raise OperationCancelledError if abort() has been called."""
        if self._event.is_set():
            raise OperationCancelledError()


class ModelClient(Protocol):
    """Interface the orchestrator needs from a language-model client."""

    async def chat(
        self,
        messages: list[Message],
        tools: dict[str, LLMTool],
        callbacks: StreamCallbacks,
        signal: AbortSignal | None = None,
    ) -> ChatResponse:
        """Send the conversation and return the model's reply."""
        ...
