"""Registry populated with the built-in tools."""

from collections.abc import Callable

from taskmate.clients.tmux import TmuxLauncher
from taskmate.models.llm import ModelClient
from taskmate.services.approval_registry import ApprovalRegistry
from taskmate.services.coding_sessions import CodingSessionStore
from taskmate.services.progress_registry import ProgressRegistry
from taskmate.services.task_store import TaskStore
from taskmate.tools.bash import DEFAULT_TIMEOUT_SECONDS, create_bash_tool
from taskmate.tools.coding_sessions import create_coding_session_tools
from taskmate.tools.explore import create_explore_tool
from taskmate.tools.registry import ToolsRegistry
from taskmate.tools.tasks import create_task_tools


def build_default_registry(
    client: ModelClient,
    approvals: ApprovalRegistry,
    task_store: TaskStore,
    session_store: CodingSessionStore,
    launcher: TmuxLauncher | None = None,
    progress_registry: ProgressRegistry | None = None,
    default_coding_agent: str | Callable[[], str] = "claude-code",
    bash_timeout: float = DEFAULT_TIMEOUT_SECONDS,
) -> ToolsRegistry:
    """Create a registry with task, bash, coding-session and explore tools."""
    registry = ToolsRegistry(create_task_tools(task_store))
    registry.register_tool(create_bash_tool(timeout=bash_timeout))
    for tool in create_coding_session_tools(
        session_store, launcher or TmuxLauncher(), task_store, default_agent=default_coding_agent
    ):
        registry.register_tool(tool)
    registry.register_tool(create_explore_tool(client, registry, approvals, progress_registry))
    return registry
