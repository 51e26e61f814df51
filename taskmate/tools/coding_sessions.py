"""Coding agent session tools."""

from collections.abc import Callable
from typing import Any

from pydantic import BaseModel, Field

from taskmate.clients.tmux import TmuxError, TmuxLauncher, get_agent_config
from taskmate.models.session import TaskContext
from taskmate.services.coding_sessions import CodingSessionStore
from taskmate.services.task_store import TaskStore
from taskmate.tools.base import ApprovalPolicy, ToolContext, ToolDefinition
from taskmate.utils.logging import get_logger

logger = get_logger(__name__)


class LaunchCodingSessionInput(BaseModel):
    """Input schema for launch_coding_session."""

    task_description: str = Field(..., description="Description of what needs to be implemented or worked on")
    working_directory: str = Field(
        ..., description="Absolute path to the directory where the coding agent should work"
    )
    task_number: int | None = Field(None, description="Optional task number to associate with this session")
    agent_name: str | None = Field(
        None,
        description="Coding agent to use (claude-code, cursor, aider, codex). Defaults to the configured agent.",
    )


class ListCodingSessionsInput(BaseModel):
    """Input schema for list_coding_sessions."""

    task_number: int | None = Field(None, description="Optional task number to filter sessions for a specific task")


class CloseCodingSessionInput(BaseModel):
    """Input schema for close_coding_session."""

    identifier: str = Field(..., description='Task number (e.g. "42" or "task-42") or tmux session name')


def attach_hint(tmux_session_name: str) -> str:
    return f"tmux attach -t {tmux_session_name}"


def create_coding_session_tools(
    sessions: CodingSessionStore,
    launcher: TmuxLauncher,
    task_store: TaskStore,
    default_agent: str | Callable[[], str] = "claude-code",
) -> list[ToolDefinition]:
    """Create launch/list/close tools bound to the given collaborators.

    ``default_agent`` may be a callable so a changed preference applies to the
    next launch.
    """

    async def launch(params: LaunchCodingSessionInput, context: ToolContext) -> str:
        if not launcher.is_installed():
            return "ERROR: tmux is not installed. Please install tmux first."

        agent_name = params.agent_name or (default_agent() if callable(default_agent) else default_agent)
        agent = get_agent_config(agent_name)
        if agent is None:
            return f"ERROR: Unknown agent: {agent_name}"
        if not launcher.is_agent_installed(agent):
            return f"ERROR: {agent.display_name} is not installed ({agent.command} not found)"

        if params.task_number:
            tasks = await task_store.read_week_tasks()
            if not any(t.number == params.task_number for t in tasks):
                return f"ERROR: Task #{params.task_number} not found"

        session = sessions.create_session(
            agent_name=agent_name,
            task_description=params.task_description,
            working_directory=params.working_directory,
            task_number=params.task_number,
        )
        task_context = TaskContext(task_description=params.task_description, task_number=params.task_number)

        try:
            await launcher.launch(session, task_context)
        except (TmuxError, OSError) as e:
            logger.warning(f"Failed to launch {agent_name}: {e}")
            sessions.delete_session(session.id)
            return f"ERROR: Failed to launch agent: {e}"

        session.status = "detached"
        sessions.save_session(session)
        return (
            f'SUCCESS: Launched {agent.display_name} in background session "{session.tmux_session_name}"\n\n'
            f"To attach to this session, run: {attach_hint(session.tmux_session_name)}\n\n"
            "Press Ctrl+B then D to detach from the session when you're done."
        )

    async def list_sessions(params: ListCodingSessionsInput, context: ToolContext) -> str:
        if params.task_number:
            found = sessions.sessions_for_task(params.task_number)
        else:
            found = []
            for session in sessions.active_sessions():
                if await launcher.session_exists(session.tmux_session_name):
                    found.append(session)
                else:
                    sessions.update_status(session.id, "completed")

        if not found:
            return "No active coding sessions found."

        lines: list[str] = []
        for session in found:
            task_info = f"Task #{session.task_number}: " if session.task_number else ""
            lines.append(f"[{session.agent_name}] {task_info}{session.task_description}")
            lines.append(f"  Session: {session.tmux_session_name}")
            lines.append(f"  Status: {session.status}")
            lines.append(f"  Started: {session.started_at.isoformat()}")
            lines.append(f"  Attach: {attach_hint(session.tmux_session_name)}")
            lines.append("")
        return "\n".join(lines).rstrip()

    async def close(params: CloseCodingSessionInput, context: ToolContext) -> str:
        session = sessions.find_session(params.identifier)
        if session is None:
            return f"ERROR: Session not found: {params.identifier}"
        await launcher.kill_session(session.tmux_session_name)
        sessions.update_status(session.id, "completed")
        return f'SUCCESS: Closed session "{session.tmux_session_name}"'

    def launch_formatter(args: dict[str, Any], result: str | None) -> str:
        lines = ["⚡ launch_coding_session"]
        if args.get("task_number"):
            lines.append(f"└ Task: #{args['task_number']}")
        lines.append(f"  Description: {args.get('task_description', '')}")
        lines.append(f"  Working Directory: {args.get('working_directory', '')}")
        if args.get("agent_name"):
            lines.append(f"  Agent: {args['agent_name']}")
        if result:
            lines += ["", result]
        return "\n".join(lines)

    return [
        ToolDefinition(
            name="launch_coding_session",
            description=(
                "Launch a coding agent (Claude Code, Cursor, Aider, etc.) in a detached tmux session "
                "for implementation work"
            ),
            input_schema_class=LaunchCodingSessionInput,
            handler=launch,
            needs_approval=ApprovalPolicy.static(True),
            formatter=launch_formatter,
        ),
        ToolDefinition(
            name="list_coding_sessions",
            description="List all active coding agent sessions",
            input_schema_class=ListCodingSessionsInput,
            handler=list_sessions,
            needs_approval=ApprovalPolicy.static(False),
        ),
        ToolDefinition(
            name="close_coding_session",
            description="Close a coding session by task number or session name, killing the tmux session",
            input_schema_class=CloseCodingSessionInput,
            handler=close,
            needs_approval=ApprovalPolicy.static(True),
        ),
    ]
