"""Tests for the Anthropic client: message conversion, truncation and the chat loop."""

import asyncio
from unittest.mock import AsyncMock, Mock, patch

import pytest
from anthropic.types import Message as AnthropicResponseMessage
from anthropic.types import TextBlock, ToolUseBlock, Usage

from taskmate.clients.anthropic import AnthropicClient, AnthropicConfig, AnthropicMessage
from taskmate.models.llm import AbortSignal, LLMTool, StreamCallbacks
from taskmate.models.messages import Message, ToolCall, ToolFunction
from taskmate.utils.errors import OperationCancelledError


def api_response(*blocks, input_tokens: int = 10, output_tokens: int = 5) -> AnthropicResponseMessage:
    return AnthropicResponseMessage.model_construct(
        id="msg_1",
        type="message",
        role="assistant",
        model="claude-test",
        content=list(blocks),
        stop_reason="end_turn",
        usage=Usage.model_construct(input_tokens=input_tokens, output_tokens=output_tokens),
    )


@pytest.fixture
def anthropic_client():
    """Client with a mocked SDK and the character-count tokenizer fallback."""
    client = AnthropicClient(config=AnthropicConfig(), client=Mock())
    client.tokenizer = None
    return client


class TestClientSetup:
    """Tests for construction and configuration."""

    def test_requires_api_key(self):
        """Test that a missing API key is reported."""
        with patch.dict("os.environ", {}, clear=True):
            with pytest.raises(ValueError, match="ANTHROPIC_API_KEY"):
                AnthropicClient()

    def test_config_from_env(self):
        """Test model and max token overrides."""
        with patch.dict("os.environ", {"ANTHROPIC_MODEL": "claude-x", "ANTHROPIC_MAX_TOKENS": "1024"}):
            config = AnthropicConfig.from_env()

        assert config.model == "claude-x"
        assert config.max_tokens == 1024


class TestMessageConversion:
    """Tests for converting history to the Anthropic format."""

    def test_system_tool_pairing_and_merging(self):
        """Test system extraction, tool_use/tool_result pairing and same-role merging."""
        messages = [
            Message(role="system", content="Be brief"),
            Message(role="user", content="hi"),
            Message(
                role="assistant",
                content="Checking",
                tool_calls=[ToolCall(id="c1", function=ToolFunction(name="list_tasks", arguments='{"state": "todo"}'))],
            ),
            Message(role="tool", content="none", tool_call_id="c1", name="list_tasks"),
            Message(role="user", content="thanks"),
        ]

        system, converted = AnthropicClient.to_anthropic_messages(messages)

        assert system == "Be brief"
        assert [m.role for m in converted] == ["user", "assistant", "user"]
        assert converted[1].content == [
            {"type": "text", "text": "Checking"},
            {"type": "tool_use", "id": "c1", "name": "list_tasks", "input": {"state": "todo"}},
        ]
        assert converted[2].content == [
            {"type": "tool_result", "tool_use_id": "c1", "content": "none"},
            {"type": "text", "text": "thanks"},
        ]

    def test_unpaired_calls_and_results(self):
        """Test that calls without results are dropped and orphan results become text."""
        messages = [
            Message(role="user", content="hi"),
            Message(role="assistant", tool_calls=[ToolCall(id="c2", function=ToolFunction(name="list_tasks"))]),
            Message(role="tool", content="stale", tool_call_id="zz", name="list_tasks"),
        ]

        _, converted = AnthropicClient.to_anthropic_messages(messages)

        assert len(converted) == 1
        assert converted[0].content == [
            {"type": "text", "text": "hi"},
            {"type": "text", "text": "Tool result (list_tasks): stale"},
        ]

    def test_empty_tool_result(self):
        """Test that an empty tool result is sent as a placeholder."""
        messages = [
            Message(role="user", content="go"),
            Message(role="assistant", tool_calls=[ToolCall(id="c1", function=ToolFunction(name="delete_task"))]),
            Message(role="tool", content="", tool_call_id="c1", name="delete_task"),
        ]

        _, converted = AnthropicClient.to_anthropic_messages(messages)

        assert converted[-1].content == [{"type": "tool_result", "tool_use_id": "c1", "content": "(empty)"}]

    def test_last_tool_is_cached(self):
        """Test that only the last tool carries cache_control."""
        tools = {
            name: LLMTool(name=name, description=name, input_schema={"type": "object"}) for name in ("a", "b")
        }

        converted = AnthropicClient.to_anthropic_tools(tools)

        assert converted[0].cache_control is None
        assert converted[1].cache_control is not None
        assert converted[1].model_dump(exclude_none=True)["cache_control"] == {"type": "ephemeral", "ttl": "5m"}


class TestConversationTruncation:
    """Tests for conversation truncation."""

    @pytest.fixture
    def small_client(self):
        """Client with room for roughly three 100-token messages."""
        client = AnthropicClient(config=AnthropicConfig(max_conversation_tokens=350, token_headroom=0), client=Mock())
        client.tokenizer = None
        return client

    def test_drops_oldest_and_leading_tool_results(self, small_client):
        """Test that truncation keeps the newest messages and starts on a plain user turn."""
        messages = [
            AnthropicMessage(role="user", content=[{"type": "text", "text": "a" * 400}]),
            AnthropicMessage(role="assistant", content=[{"type": "text", "text": "b" * 400}]),
            AnthropicMessage(role="user", content=[{"type": "tool_result", "tool_use_id": "x", "content": "c" * 400}]),
            AnthropicMessage(role="assistant", content=[{"type": "text", "text": "d" * 400}]),
            AnthropicMessage(role="user", content=[{"type": "text", "text": "e" * 400}]),
        ]

        truncated = small_client.truncate_conversation(messages, "")

        assert truncated == [messages[-1]]

    def test_keeps_conversation_that_fits(self, small_client):
        """Test that short conversations are returned unchanged."""
        messages = [
            AnthropicMessage(role="user", content=[{"type": "text", "text": "hi"}]),
            AnthropicMessage(role="assistant", content=[{"type": "text", "text": "hello"}]),
        ]

        assert small_client.truncate_conversation(messages, "system") == messages

    def test_empty_conversation(self, small_client):
        """Test that an empty conversation stays empty."""
        assert small_client.truncate_conversation([], "system") == []


class TestChat:
    """Tests for the chat loop with a mocked stream."""

    @pytest.mark.asyncio
    async def test_text_reply(self, anthropic_client):
        """Test a plain text reply with usage and the finish callback."""
        on_finish = Mock()
        stream = AsyncMock(return_value=api_response(TextBlock(type="text", text="Hello")))

        with patch.object(anthropic_client, "_stream", stream):
            response = await anthropic_client.chat(
                [Message(role="system", content="sys"), Message(role="user", content="hi")],
                {},
                StreamCallbacks(on_finish=on_finish),
            )

        assert response.choices[0].message.content == "Hello"
        assert response.choices[0].message.tool_calls is None
        assert response.usage.total_tokens == 15
        assert response.model == "claude-test"
        params = stream.call_args.args[0]
        assert params["system"] == "sys"
        assert "tools" not in params
        on_finish.assert_called_once()

    @pytest.mark.asyncio
    async def test_uncallable_tool_comes_back(self, anthropic_client):
        """Test that calls to tools without a callable are returned to the caller."""
        tools = {"new_task": LLMTool(name="new_task", description="d", input_schema={"type": "object"})}
        stream = AsyncMock(
            return_value=api_response(ToolUseBlock(type="tool_use", id="t1", name="new_task", input={"description": "x"}))
        )

        with patch.object(anthropic_client, "_stream", stream):
            response = await anthropic_client.chat([Message(role="user", content="add x")], tools, StreamCallbacks())

        tool_calls = response.choices[0].message.tool_calls
        assert [(c.id, c.function.name, c.function.arguments) for c in tool_calls] == [
            ("t1", "new_task", {"description": "x"})
        ]
        assert stream.await_count == 1

    @pytest.mark.asyncio
    async def test_callable_tools_run_in_client(self, anthropic_client):
        """Test that callable tools are executed and their results sent back."""
        runner = AsyncMock(return_value="3 tasks")
        on_tool_executed = Mock()
        tools = {"list_tasks": LLMTool(name="list_tasks", description="d", input_schema={"type": "object"}, callable=runner)}
        stream = AsyncMock(
            side_effect=[
                api_response(ToolUseBlock(type="tool_use", id="t1", name="list_tasks", input={})),
                api_response(TextBlock(type="text", text="You have 3 tasks.")),
            ]
        )

        with patch.object(anthropic_client, "_stream", stream):
            response = await anthropic_client.chat(
                [Message(role="user", content="what's open?")], tools, StreamCallbacks(on_tool_executed=on_tool_executed)
            )

        assert response.choices[0].message.content == "You have 3 tasks."
        assert response.usage.input_tokens == 20
        runner.assert_awaited_once()
        assert on_tool_executed.call_args.args[1] == "3 tasks"
        second_messages = stream.call_args_list[1].args[0]["messages"]
        assert second_messages[-1]["content"] == [{"type": "tool_result", "tool_use_id": "t1", "content": "3 tasks"}]

    @pytest.mark.asyncio
    async def test_aborted_before_request(self, anthropic_client):
        """Test that an aborted signal stops the call and still finishes the stream."""
        signal = AbortSignal()
        signal.abort()
        on_finish = Mock()
        stream = AsyncMock()

        with patch.object(anthropic_client, "_stream", stream):
            with pytest.raises(OperationCancelledError):
                await anthropic_client.chat(
                    [Message(role="user", content="hi")], {}, StreamCallbacks(on_finish=on_finish), signal
                )

        stream.assert_not_called()
        on_finish.assert_called_once()

    @pytest.mark.asyncio
    async def test_empty_content(self, anthropic_client):
        """Test that a reply without content blocks yields no choices."""
        with patch.object(anthropic_client, "_stream", AsyncMock(return_value=api_response())):
            response = await anthropic_client.chat([Message(role="user", content="hi")], {}, StreamCallbacks())

        assert response.choices == []


class SilentStream:
    """SDK stream stand-in that sends no text for a long time, as during tool input."""

    def __init__(self, delay: float = 5.0):
        self.delay = delay
        self.closed = False

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        self.closed = True
        return False

    @property
    def text_stream(self):
        async def generate():
            await asyncio.sleep(self.delay)
            yield "late"

        return generate()

    async def get_final_message(self):
        return api_response(ToolUseBlock(type="tool_use", id="t1", name="execute_bash", input={"command": "rm -rf build"}))


class TestAbort:
    """Tests for cancelling an in-flight request."""

    @pytest.mark.asyncio
    async def test_abort_while_no_text_arrives(self, anthropic_client):
        """Test that abort() stops a stream that is not producing text deltas."""
        stream = SilentStream()
        anthropic_client.client.messages.stream = Mock(return_value=stream)
        signal = AbortSignal()
        asyncio.get_running_loop().call_later(0.05, signal.abort)

        with pytest.raises(OperationCancelledError):
            await asyncio.wait_for(
                anthropic_client.chat([Message(role="user", content="clean")], {}, StreamCallbacks(), signal), timeout=2
            )

        assert stream.closed

    @pytest.mark.asyncio
    async def test_abort_after_stream_finished(self, anthropic_client):
        """Test that a reply completed after abort() is not returned."""
        stream = SilentStream(delay=0)
        anthropic_client.client.messages.stream = Mock(return_value=stream)
        signal = AbortSignal()

        def abort_on_token(token):
            signal.abort()

        with pytest.raises(OperationCancelledError):
            await anthropic_client.chat(
                [Message(role="user", content="clean")], {}, StreamCallbacks(on_token=abort_on_token), signal
            )

    @pytest.mark.asyncio
    async def test_abort_during_auto_executed_tool(self, anthropic_client):
        """Test that an abort raised while a callable tool runs stops the auto loop."""
        signal = AbortSignal()

        async def runner(tool_call):
            signal.abort()
            return "3 tasks"

        tools = {"list_tasks": LLMTool(name="list_tasks", description="d", input_schema={"type": "object"}, callable=runner)}
        stream = AsyncMock(
            side_effect=[
                api_response(ToolUseBlock(type="tool_use", id="t1", name="list_tasks", input={})),
                api_response(TextBlock(type="text", text="never")),
            ]
        )

        with patch.object(anthropic_client, "_stream", stream):
            with pytest.raises(OperationCancelledError):
                await anthropic_client.chat([Message(role="user", content="hi")], tools, StreamCallbacks(), signal)

        assert stream.await_count == 1
