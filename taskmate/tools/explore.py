"""Explore sub-agent tool.

Delegates a question to a nested model loop that may only use read-only tools.
Approvals for any of its calls go through the shared approval registry, tagged
with sub-agent metadata so the UI can show where a request came from.
"""

import json
from typing import Any

from pydantic import BaseModel, Field

from taskmate.models.approval import ApprovalMetadata
from taskmate.models.llm import LLMTool, ModelClient, StreamCallbacks
from taskmate.models.messages import Message, ToolCall, tool_results_to_messages
from taskmate.services.approval_registry import ApprovalRegistry
from taskmate.services.progress_registry import ProgressRegistry
from taskmate.services.tool_executor import ExecutionOptions, ToolExecutor, execute_tools_with_approval
from taskmate.tools.base import ApprovalPolicy, ToolContext, ToolDefinition
from taskmate.tools.registry import ToolsRegistry
from taskmate.utils.errors import format_error
from taskmate.utils.logging import get_logger

logger = get_logger(__name__)

SUBAGENT_TYPE = "explore_subagent"
MAX_LOOPS = 10

READ_ONLY_TOOL_NAMES = ("list_tasks", "search_tasks", "list_coding_sessions")

EXPLORE_PROMPT = """You are an exploration agent. Your job is to gather context to answer a question.

- Use the available read-only tools to look up tasks and coding sessions.
- Search broadly first, then narrow down.
- Do not guess: if the tools return nothing relevant, say so.
- Finish with a concise summary of your findings. Do not ask the user questions."""


class ExploreInput(BaseModel):
    """Input schema for explore_subagent."""

    query: str = Field(..., description="The question or task to explore. Be specific about what information you need.")
    context: str | None = Field(
        None, description="Optional additional context to help the subagent understand what to explore"
    )


def create_explore_tool(
    client: ModelClient,
    tools: ToolsRegistry,
    approvals: ApprovalRegistry,
    progress_registry: ProgressRegistry | None = None,
    max_loops: int = MAX_LOOPS,
) -> ToolDefinition:
    """Create the explore_subagent tool.

    Args:
        client: Model client used for the nested loop
        tools: Main registry; the read-only subset is taken from it at call time
        approvals: Shared approval registry
        progress_registry: Registry for the nested executor's progress updates
        max_loops: Maximum model calls per exploration
    """
    metadata = ApprovalMetadata(source="subagent", subagent_type=SUBAGENT_TYPE, chain=["main", SUBAGENT_TYPE])

    async def handler(params: ExploreInput, context: ToolContext) -> str:
        records: list[dict[str, Any]] = []

        def record(tool_call: ToolCall, result: str) -> None:
            records.append({"name": tool_call.function.name, "args": tool_call.function.arguments, "result": result})
            context.progress("tool_result", name=tool_call.function.name, result=result)

        subset = tools.subset(READ_ONLY_TOOL_NAMES)
        executor = ToolExecutor(subset, progress_registry)

        def auto_executor(tool: ToolDefinition):
            if not tool.needs_approval.is_static or tool.needs_approval.value:
                return None

            async def run(tool_call: ToolCall) -> str:
                call = tool_call.model_copy(update={"parent_tool_call_id": context.tool_call_id})
                result = await executor.execute(call, ExecutionOptions(tool_call_id=call.id))
                return result.content

            return run

        llm_tools: dict[str, LLMTool] = subset.get_llm_tools(auto_executor=auto_executor)
        user_content = f"{params.query}\n\nAdditional context: {params.context}" if params.context else params.query
        messages = [Message(role="system", content=EXPLORE_PROMPT), Message(role="user", content=user_content)]

        context.progress("status", status="started", query=params.query)
        findings = ""

        try:
            for loop in range(1, max_loops + 1):
                response = await client.chat(messages, llm_tools, StreamCallbacks(on_tool_executed=record))
                if not response.choices:
                    break
                reply = response.choices[0].message

                if not reply.tool_calls:
                    findings = reply.content
                    break

                calls = [
                    tool_call.model_copy(update={"parent_tool_call_id": context.tool_call_id})
                    for tool_call in reply.tool_calls
                ]
                results = await execute_tools_with_approval(
                    executor,
                    approvals,
                    calls,
                    metadata,
                    on_tool_executed=lambda call, result: record(call, result.content),
                )

                if any(result.is_cancellation for result in results):
                    context.progress("status", status="cancelled")
                    return json.dumps(
                        {"findings": "Exploration cancelled by user", "toolCalls": records, "cancelled": True}
                    )

                assistant = Message(role="assistant", content=reply.content, tool_calls=calls)
                messages = [*messages, assistant, *tool_results_to_messages(results)]
                findings = reply.content or findings
                logger.debug(f"Explore loop {loop}: {len(calls)} tool calls")
        except Exception as e:
            logger.warning(f"Explore subagent failed: {format_error(e)}", exc_info=True)
            return json.dumps({"error": f"Subagent exploration failed: {format_error(e)}", "toolCalls": []})

        context.progress("status", status="completed")
        return json.dumps({"findings": findings or "No findings to report", "toolCalls": records})

    def formatter(args: dict[str, Any], result: str | None) -> str:
        lines = ["⚒ explore_subagent", f"└ Query: {args.get('query', '')}"]
        if result:
            try:
                payload = json.loads(result)
            except ValueError:
                payload = {"findings": result}
            if isinstance(payload, dict):
                summary = payload.get("error") or payload.get("findings", "")
                lines.append(f"  {len(payload.get('toolCalls', []))} tool calls")
                lines.append(f"  {summary}")
        return "\n".join(lines)

    return ToolDefinition(
        name=SUBAGENT_TYPE,
        description=(
            "Delegate a question or exploration task to a specialized subagent that searches tasks and "
            "coding sessions to gather context before answering"
        ),
        input_schema_class=ExploreInput,
        handler=handler,
        needs_approval=ApprovalPolicy.static(False),
        formatter=formatter,
        supports_progress=True,
    )
