"""Shared fixtures: a scripted model client and small tool factories."""

from collections.abc import Callable
from datetime import date
from typing import Any

import pytest
from pydantic import BaseModel, Field

from taskmate.models.llm import AbortSignal, AssistantReply, ChatChoice, ChatResponse, LLMTool, StreamCallbacks
from taskmate.models.messages import Message, ToolCall, ToolFunction
from taskmate.services.approval_registry import ApprovalRegistry
from taskmate.services.task_store import MarkdownTaskStore
from taskmate.tools.base import ApprovalPolicy, ToolContext, ToolDefinition


def reply(content: str = "", tool_calls: list[ToolCall] | None = None) -> ChatResponse:
    """Single-choice response with the given content and calls."""
    return ChatResponse(choices=[ChatChoice(message=AssistantReply(content=content, tool_calls=tool_calls))])


def call(name: str, arguments: dict[str, Any] | str | None = None, call_id: str | None = None) -> ToolCall:
    return ToolCall(id=call_id or f"call_{name}", function=ToolFunction(name=name, arguments=arguments or {}))


class ScriptedModelClient:
    """ModelClient returning canned responses in order.

    A script entry may be a ChatResponse, an exception to raise, or a callable
    taking the messages and returning either of those.
    """

    def __init__(self, script: list[Any]):
        self.script = list(script)
        self.requests: list[list[Message]] = []
        self.tools: list[dict[str, LLMTool]] = []

    async def chat(
        self,
        messages: list[Message],
        tools: dict[str, LLMTool],
        callbacks: StreamCallbacks,
        signal: AbortSignal | None = None,
    ) -> ChatResponse:
        self.requests.append(list(messages))
        self.tools.append(tools)
        if not self.script:
            raise AssertionError("Model called more times than scripted")

        entry = self.script.pop(0)
        if callable(entry) and not isinstance(entry, ChatResponse):
            entry = entry(messages)
        if isinstance(entry, BaseException):
            raise entry

        for choice in entry.choices:
            if callbacks.on_token is not None and choice.message.content:
                for token in choice.message.content.split(" "):
                    callbacks.on_token(token + " ")
        if callbacks.on_finish is not None:
            callbacks.on_finish()
        return entry


class EchoInput(BaseModel):
    """Input for recording test tools."""

    value: str = Field("", description="Value to echo back")


def recording_tool(
    name: str,
    needs_approval: bool = True,
    executed: list[str] | None = None,
    result: str | Callable[[EchoInput], str] | None = None,
) -> ToolDefinition:
    """Tool that records its name on every run and echoes its input."""

    async def handler(params: EchoInput, context: ToolContext) -> str:
        if executed is not None:
            executed.append(name)
        if callable(result):
            return result(params)
        return result if result is not None else f"{name}: {params.value}"

    return ToolDefinition(
        name=name,
        description=f"Test tool {name}",
        input_schema_class=EchoInput,
        handler=handler,
        needs_approval=ApprovalPolicy.static(needs_approval),
    )


@pytest.fixture
def approvals():
    """Fresh approval registry."""
    return ApprovalRegistry()


@pytest.fixture
def task_store(tmp_path):
    """Markdown task store in a temp directory, fixed to ISO week 2025-W48."""
    return MarkdownTaskStore(tmp_path / "tasks", today=lambda: date(2025, 11, 26))
