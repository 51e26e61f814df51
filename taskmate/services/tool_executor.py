"""Execution of approved tool calls.

All tool failures are returned as ``Error: ...`` results rather than raised, so
callers never need a catch-all around execution.
"""

from collections.abc import Callable
from dataclasses import dataclass

from pydantic import BaseModel

from taskmate.models.approval import ApprovalMetadata
from taskmate.models.conversation import DevelopmentMode
from taskmate.models.messages import CANCELLED_BY_USER, CANCELLED_PREFIX, ToolCall, ToolResult
from taskmate.services.approval_registry import ApprovalRegistry
from taskmate.services.normalizer import unknown_tool_message
from taskmate.services.progress_registry import ProgressListener, ProgressRegistry, ToolProgressUpdate
from taskmate.services.schema_fixer import fix_schema, get_tool_schema
from taskmate.tools.base import ToolContext, ToolDefinition
from taskmate.tools.registry import ToolsRegistry
from taskmate.utils.arguments import parse_tool_arguments
from taskmate.utils.errors import ApprovalRequiredError, ToolArgumentsError, format_error
from taskmate.utils.logging import get_logger

logger = get_logger(__name__)

# Stand-in tool name for inline tool-call syntax the parser could not accept
MALFORMED_TOOL_CALL = "__malformed_tool_call__"

# Shell execution always asks, even in auto-accept mode
BASH_TOOL_NAME = "execute_bash"


@dataclass
class ExecutionOptions:
    """Optional execution settings."""

    tool_call_id: str | None = None
    on_progress: ProgressListener | None = None


class ToolExecutor:
    """Runs tool calls against a tools registry."""

    def __init__(self, tools: ToolsRegistry, progress_registry: ProgressRegistry | None = None):
        self.tools = tools
        self.progress_registry = progress_registry or ProgressRegistry()

    def known_tool_names(self) -> set[str]:
        """Names the normalizer should accept."""
        return {*self.tools.get_tool_names(), MALFORMED_TOOL_CALL}

    def prepare_arguments(self, tool: ToolDefinition, tool_call: ToolCall) -> BaseModel:
        """Decode, auto-fix and strictly validate the call's arguments.

        Raises:
            ToolArgumentsError: arguments are malformed or miss required keys
            pydantic.ValidationError: arguments don't match the input model
        """
        raw = parse_tool_arguments(tool_call.function.arguments, strict=True)

        fix = fix_schema(raw, get_tool_schema(tool))
        if not fix.valid:
            raise ToolArgumentsError("; ".join(fix.warnings))
        if fix.fixed is not None:
            logger.warning(f"[Schema Auto-Fix] {tool.name}: {'; '.join(fix.warnings)}")
            raw = fix.fixed

        return tool.parse_input(raw)

    async def needs_approval(self, tool_call: ToolCall) -> bool:
        """Resolve the tool's approval policy; unknown tools and errors require approval."""
        tool = self.tools.get_tool(tool_call.function.name)
        if tool is None:
            return True
        if tool.needs_approval.is_static:
            return tool.needs_approval.value
        arguments = parse_tool_arguments(tool_call.function.arguments)
        return await tool.needs_approval.evaluate(arguments)

    async def validation_failed(self, tool_call: ToolCall) -> bool:
        """Run the tool's validator. Validator errors count as failure."""
        if tool_call.function.name == MALFORMED_TOOL_CALL:
            return True
        tool = self.tools.get_tool(tool_call.function.name)
        if tool is None or tool.validator is None:
            return False
        try:
            result = await tool.validator(self.prepare_arguments(tool, tool_call))
        except Exception as e:
            logger.info(f"Validation of {tool_call.function.name} raised: {format_error(e)}")
            return True
        if not result.valid:
            logger.info(f"Validation of {tool_call.function.name} failed: {result.error}")
        return not result.valid

    async def approval_required(self, tool_call: ToolCall, mode: DevelopmentMode) -> bool:
        """Whether the call must be shown to the user before it runs.

        Calls that failed validation run directly so the error reaches the model.
        """
        if await self.validation_failed(tool_call):
            return False
        if not await self.needs_approval(tool_call):
            return False
        if mode == DevelopmentMode.AUTO_ACCEPT and tool_call.function.name != BASH_TOOL_NAME:
            return False
        return True

    async def execute(self, tool_call: ToolCall, options: ExecutionOptions | None = None) -> ToolResult:
        """Execute one tool call and wrap its outcome as a ToolResult."""
        options = options or ExecutionOptions()
        name = tool_call.function.name

        if name == MALFORMED_TOOL_CALL:
            details = parse_tool_arguments(tool_call.function.arguments)
            return ToolResult.for_call(tool_call, f"Error: {details.get('error') or 'Malformed tool call'}")

        tool = self.tools.get_tool(name)
        if tool is None:
            return ToolResult.for_call(tool_call, unknown_tool_message(name))

        try:
            parsed = self.prepare_arguments(tool, tool_call)
            if tool.validator is not None:
                validation = await tool.validator(parsed)
                if not validation.valid:
                    return ToolResult.for_call(tool_call, f"Error: {validation.error or 'Validation failed'}")
            tool_call_id = options.tool_call_id or tool_call.id
            context = ToolContext(
                tool_call_id=tool_call_id,
                report_progress=self._progress_reporter(tool, tool_call_id, options.on_progress),
            )
            logger.debug(f"Executing tool {name} ({tool_call.id})")
            result = await tool.handler(parsed, context)
            return ToolResult.for_call(tool_call, str(result))
        except Exception as e:
            logger.warning(f"Tool {name} failed: {format_error(e)}")
            return ToolResult.for_call(tool_call, f"Error: {format_error(e)}")

    def _progress_reporter(
        self, tool: ToolDefinition, tool_call_id: str, on_progress: ProgressListener | None
    ) -> Callable[[ToolProgressUpdate], None] | None:
        if not tool.supports_progress:
            return None

        def report(update: ToolProgressUpdate) -> None:
            if on_progress is not None:
                on_progress(update)
            self.progress_registry.report_progress(tool_call_id, update)

        return report


def cancelled_result(tool_call: ToolCall, error: BaseException | None = None) -> ToolResult:
    """Result recorded for a call the user declined, or whose approval was torn down."""
    if error is None:
        return ToolResult.for_call(tool_call, CANCELLED_BY_USER)
    return ToolResult.for_call(tool_call, f"{CANCELLED_PREFIX} {format_error(error)}")


async def execute_tools_with_approval(
    executor: ToolExecutor,
    approvals: ApprovalRegistry,
    tool_calls: list[ToolCall],
    metadata: ApprovalMetadata,
    mode: DevelopmentMode = DevelopmentMode.NORMAL,
    non_interactive: bool = False,
    on_tool_executing: Callable[[ToolCall], None] | None = None,
    on_tool_executed: Callable[[ToolCall, ToolResult], None] | None = None,
) -> list[ToolResult]:
    """Execute a batch of calls for a sub-agent, asking for approval where needed.

    A declined call records a cancellation result and the batch moves on; the
    caller decides what a cancellation means for its own loop.

    Raises:
        ApprovalRequiredError: a call needs approval and non_interactive is set
    """
    results: list[ToolResult] = []

    for tool_call in tool_calls:
        if await executor.approval_required(tool_call, mode):
            if non_interactive:
                raise ApprovalRequiredError(
                    f"Tool approval required for: {tool_call.function.name}. Exiting non-interactive mode"
                )
            try:
                approved = await approvals.request(tool_call, metadata)
            except Exception as e:
                results.append(cancelled_result(tool_call, e))
                continue
            if not approved:
                results.append(cancelled_result(tool_call))
                continue

        if on_tool_executing is not None:
            on_tool_executing(tool_call)

        result = await executor.execute(tool_call, ExecutionOptions(tool_call_id=tool_call.id))
        results.append(result)

        if on_tool_executed is not None:
            on_tool_executed(tool_call, result)

    return results
