"""Conversation orchestration: model calls, tool dispatch and approvals.

One user turn runs as an explicit loop over ``LoopState`` values. Every
continuation (tool results, self-correction prompts, nudges) starts a new
iteration with a fresh history list; ``max_iterations`` bounds the turn.
"""

import re
from collections.abc import Callable
from datetime import datetime

from taskmate.models.approval import ApprovalMetadata
from taskmate.models.conversation import DevelopmentMode, LoopState, TerminalReason, TurnOutcome
from taskmate.models.llm import AbortSignal, ChatResponse, LLMTool, ModelClient, StreamCallbacks
from taskmate.models.messages import Message, ToolCall, ToolResult, tool_results_to_messages
from taskmate.services.approval_registry import ApprovalRegistry
from taskmate.services.conversation_state import ConversationStateTracker
from taskmate.services.display import DisplayQueue
from taskmate.services.inline_tool_calls import parse_tool_calls
from taskmate.services.normalizer import normalize_tool_calls
from taskmate.services.progress_registry import ToolProgressUpdate
from taskmate.services.routines import RoutineStore
from taskmate.services.tool_executor import ExecutionOptions, ToolExecutor, cancelled_result
from taskmate.tools.base import ToolDefinition
from taskmate.tools.registry import ToolsRegistry
from taskmate.utils.arguments import parse_tool_arguments
from taskmate.utils.errors import EmptyModelResponseError, OperationCancelledError, format_error
from taskmate.utils.logging import get_logger

logger = get_logger(__name__)

DEFAULT_MAX_ITERATIONS = 25

SUMMARY_NUDGE = "Please provide a summary or response based on the tool results above."
CONTINUE_NUDGE = "Please continue with the task."
INTERRUPTED = "Interrupted by user."

_THINK_BLOCK = re.compile(r"<think>.*?</think>", re.IGNORECASE | re.DOTALL)
_THINK_UNCLOSED = re.compile(r"<think>.*$", re.IGNORECASE | re.DOTALL)
_THINK_STRAY_CLOSE = re.compile(r"</think>", re.IGNORECASE)
_BLANK_RUNS = re.compile(r"\n{3,}")


def normalize_streaming_content(content: str) -> str:
    """Clean streamed text for display.

    Drops ``<think>`` sections (including one still open mid-stream), keeps at
    most one blank line in a row and strips leading whitespace.
    """
    content = _THINK_BLOCK.sub("", content)
    content = _THINK_UNCLOSED.sub("", content)
    content = _THINK_STRAY_CLOSE.sub("", content)
    content = _BLANK_RUNS.sub("\n\n", content)
    return content.lstrip()


def malformed_call_correction(error: str) -> str:
    return f"Your previous response contained a malformed tool call. {error}\n\nPlease try again using the correct format."


def get_system_prompt(assistant_name: str = "Taskmate", mode: DevelopmentMode = DevelopmentMode.NORMAL) -> str:
    """Generate the system prompt for a session.

    Args:
        assistant_name: Name the assistant introduces itself with
        mode: Current approval mode

    Returns:
        System prompt string
    """
    prompt = f"""You are {assistant_name}, a terminal assistant that helps the user manage their work.

You can:
1. Create, update, list, search and delete the user's weekly tasks
2. Run shell commands (every command is shown to the user for approval first)
3. Launch and manage coding-agent sessions in tmux
4. Delegate read-only investigation to the explore_subagent tool

Call tools through the native tool interface. If it is unavailable, emit each call as:
<tool_call>
{{"name": "<tool name>", "arguments": {{...}}}}
</tool_call>

Keep answers short. After using tools, tell the user what changed.

Current session status:"""
    prompt += f"\n- Approval mode: {mode.value}"
    prompt += f"\n- Current date and time: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}"
    return prompt


class ConversationOrchestrator:
    """Runs user turns against a model client with human-approved tool use."""

    def __init__(
        self,
        client: ModelClient,
        tools: ToolsRegistry,
        approvals: ApprovalRegistry,
        executor: ToolExecutor | None = None,
        display: DisplayQueue | None = None,
        routines: RoutineStore | None = None,
        state_tracker: ConversationStateTracker | None = None,
        mode: DevelopmentMode = DevelopmentMode.NORMAL,
        non_interactive: bool = False,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        assistant_name: str = "Taskmate",
    ):
        self.client = client
        self.tools = tools
        self.approvals = approvals
        self.executor = executor or ToolExecutor(tools)
        self.display = display or DisplayQueue()
        self.routines = routines or RoutineStore()
        self.state_tracker = state_tracker or ConversationStateTracker()
        self.mode = mode
        self.non_interactive = non_interactive
        self.max_iterations = max_iterations
        self.assistant_name = assistant_name

        # UI hooks
        self.on_conversation_complete: Callable[[], None] | None = None
        self.on_streaming_update: Callable[[str], None] | None = None
        self.on_tool_executing: Callable[[ToolCall | None], None] | None = None
        self.on_tool_progress: Callable[[ToolCall, ToolProgressUpdate], None] | None = None

        self._messages: list[Message] = []
        self._signal: AbortSignal | None = None
        self._stream_buffer = ""
        self.streaming_content = ""
        self.is_streaming = False
        self.current_tool: ToolCall | None = None
        self._model_calls = 0

    @property
    def messages(self) -> list[Message]:
        """Current conversation history. Replaced wholesale, never mutated."""
        return self._messages

    @property
    def is_tool_executing(self) -> bool:
        return self.current_tool is not None

    def system_message(self) -> Message:
        return Message(role="system", content=get_system_prompt(self.assistant_name, self.mode))

    def clear(self) -> None:
        """Start a new session."""
        self._messages = []
        self.state_tracker.reset()
        self.display.clear()

    def cancel(self) -> None:
        """Abort the in-flight model call and any pending approvals."""
        if self._signal is not None:
            self._signal.abort()
        self.approvals.cancel_all()

    async def handle_user_message(self, text: str) -> TurnOutcome:
        """Run one user turn.

        ``@name`` routine references are expanded before the message is sent;
        the text as typed is kept on the message as ``original_content``.
        """
        expanded = self.routines.expand(text)
        user_message = Message(role="user", content=expanded, original_content=text)
        self.display.push("user", text)

        is_first_message = not self._messages
        history = [*self._messages, user_message]
        self._set_messages(history)
        if is_first_message:
            self.state_tracker.initialize_state(text)

        self._signal = AbortSignal()
        return await self.process_response(self.system_message(), history)

    async def process_response(self, system_message: Message, history: list[Message]) -> TurnOutcome:
        """Drive the model/tool loop until the turn reaches a terminal state."""
        state = LoopState(history=tuple(history))
        self._model_calls = 0

        try:
            while True:
                if state.iteration >= self.max_iterations:
                    error = f"Stopped after {self.max_iterations} model calls without finishing the turn."
                    logger.warning(error)
                    self.display.push("error", error)
                    self._signal_complete()
                    return self._outcome(TerminalReason.ERROR, state, error=error)

                if self._signal is None:
                    self._signal = AbortSignal()
                history = list(state.history)

                response = await self._call_model(system_message, history)
                if not response.choices:
                    raise EmptyModelResponseError()
                reply = response.choices[0].message
                full_content = reply.content or ""

                parsed = parse_tool_calls(full_content)
                if not parsed.success:
                    error_content = f"{parsed.error}\n\n{parsed.examples}"
                    logger.info(f"Malformed inline tool call, asking model to retry: {parsed.error}")
                    self.display.push("error", error_content)
                    history = [
                        *history,
                        Message(role="assistant", content=full_content),
                        Message(role="user", content=malformed_call_correction(error_content)),
                    ]
                    self._set_messages(history)
                    self._reset_streaming()
                    state = state.advance(history)
                    continue

                content = parsed.cleaned_content
                if content.strip():
                    self.display.push("assistant", content)

                valid_calls, error_results = normalize_tool_calls(
                    [*(reply.tool_calls or []), *parsed.tool_calls],
                    self.executor.known_tool_names(),
                )

                assistant_message: Message | None = None
                if content.strip() or valid_calls:
                    assistant_message = Message(role="assistant", content=content, tool_calls=valid_calls or None)
                    self._set_messages([*history, assistant_message])
                    self.state_tracker.update_assistant_message(assistant_message)
                base = [*history, assistant_message] if assistant_message else history
                self._reset_streaming()

                if error_results:
                    for result in error_results:
                        self.display.push("error", result.content)
                    history = [*base, *tool_results_to_messages(error_results)]
                    self._set_messages(history)
                    state = state.advance(history)
                    continue

                if valid_calls:
                    results: list[ToolResult] = []
                    for tool_call in valid_calls:
                        if await self.executor.approval_required(tool_call, self.mode):
                            if self.non_interactive:
                                error = f"Tool approval required for: {tool_call.function.name}. Exiting non-interactive mode"
                                self.display.push("error", error)
                                final = [*base, Message(role="assistant", content=error)]
                                self._set_messages(final)
                                self._signal_complete()
                                return self._outcome(TerminalReason.APPROVAL_REQUIRED, state, final, error)

                            try:
                                approved = await self.approvals.request(tool_call, ApprovalMetadata())
                            except Exception as e:
                                logger.info(f"Approval for {tool_call.function.name} cancelled: {format_error(e)}")
                                results.append(cancelled_result(tool_call, e))
                                break
                            if not approved:
                                results.append(cancelled_result(tool_call))
                                break

                        result = await self._execute(tool_call)
                        results.append(result)
                        self._display_result(tool_call, result)

                    history = [*base, *tool_results_to_messages(results)]
                    self._set_messages(history)

                    if any(result.is_cancellation for result in results):
                        self.display.push("info", INTERRUPTED)
                        self._signal_complete()
                        return self._outcome(TerminalReason.CANCELLED, state, history)

                    state = state.advance(history)
                    continue

                if not content.strip():
                    nudge = SUMMARY_NUDGE if history and history[-1].role == "tool" else CONTINUE_NUDGE
                    self.display.push("user", "continue")
                    history = [*history, Message(role="user", content=nudge)]
                    self._set_messages(history)
                    state = state.advance(history)
                    continue

                self._signal_complete()
                return self._outcome(TerminalReason.COMPLETE, state, base)

        except OperationCancelledError:
            logger.info("Turn cancelled by user")
            self.display.push("info", INTERRUPTED)
            self._signal_complete()
            return self._outcome(TerminalReason.CANCELLED, state, self._messages)
        except Exception as e:
            logger.error(f"Error processing response: {e}", exc_info=True)
            error = format_error(e)
            self.display.push("error", error)
            self._signal_complete()
            return self._outcome(TerminalReason.ERROR, state, self._messages, error)
        finally:
            self._reset_streaming()
            self._signal = None

    async def _call_model(self, system_message: Message, history: list[Message]) -> ChatResponse:
        assert self._signal is not None
        self._signal.raise_if_aborted()
        self._model_calls += 1

        self.is_streaming = True
        self._stream_buffer = ""
        self.streaming_content = ""

        callbacks = StreamCallbacks(
            on_token=self._on_token,
            on_tool_executed=self._display_result_text,
            on_finish=self._on_finish,
        )
        response = await self.client.chat([system_message, *history], self._model_tools(), callbacks, self._signal)
        # Replies that arrive after cancel() are discarded
        self._signal.raise_if_aborted()
        return response

    def _model_tools(self) -> dict[str, LLMTool]:
        return self.tools.get_llm_tools(auto_executor=self._auto_executor)

    def _auto_executor(self, tool: ToolDefinition):
        """Callable for tools the client may run itself (policy statically False)."""
        if not tool.needs_approval.is_static or tool.needs_approval.value:
            return None

        async def run(tool_call: ToolCall) -> str:
            result = await self._execute(tool_call)
            return result.content

        return run

    async def _execute(self, tool_call: ToolCall) -> ToolResult:
        self._set_current_tool(tool_call)
        try:
            return await self.executor.execute(
                tool_call,
                ExecutionOptions(tool_call_id=tool_call.id, on_progress=self._progress_forwarder(tool_call)),
            )
        finally:
            self._set_current_tool(None)

    def _progress_forwarder(self, tool_call: ToolCall) -> Callable[[ToolProgressUpdate], None]:
        def forward(update: ToolProgressUpdate) -> None:
            if self.on_tool_progress is not None:
                self.on_tool_progress(tool_call, update)

        return forward

    def _set_current_tool(self, tool_call: ToolCall | None) -> None:
        self.current_tool = tool_call
        if self.on_tool_executing is not None:
            self.on_tool_executing(tool_call)

    def _display_result(self, tool_call: ToolCall, result: ToolResult) -> None:
        self._display_result_text(tool_call, result.content)

    def _display_result_text(self, tool_call: ToolCall, content: str) -> None:
        tool = self.tools.get_tool(tool_call.function.name)
        if content.startswith("Error:"):
            self.display.push("error", content, tool_call)
            return
        text = tool.format_call(parse_tool_arguments(tool_call.function.arguments), content) if tool else content
        self.display.push("tool_result", text, tool_call)

    def _on_token(self, token: str) -> None:
        self._stream_buffer += token
        self.streaming_content = normalize_streaming_content(self._stream_buffer)
        if self.on_streaming_update is not None:
            self.on_streaming_update(self.streaming_content)

    def _on_finish(self) -> None:
        self.is_streaming = False

    def _reset_streaming(self) -> None:
        self.is_streaming = False
        self._stream_buffer = ""
        self.streaming_content = ""

    def _set_messages(self, history: list[Message]) -> None:
        self._messages = list(history)

    def _signal_complete(self) -> None:
        if self.on_conversation_complete is not None:
            self.on_conversation_complete()

    def _outcome(
        self,
        reason: TerminalReason,
        state: LoopState,
        messages: list[Message] | None = None,
        error: str | None = None,
    ) -> TurnOutcome:
        return TurnOutcome(
            reason=reason,
            messages=list(messages if messages is not None else state.history),
            error=error,
            iterations=self._model_calls,
        )
