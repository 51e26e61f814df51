"""Tools registry for managing assistant tools."""

from collections.abc import Awaitable, Callable, Iterable

from taskmate.models.llm import LLMTool
from taskmate.models.messages import ToolCall
from taskmate.tools.base import ToolDefinition, ToolValidator

# Bootstrap-only tools that must never be offered to the model
HIDDEN_TOOL_NAMES = frozenset(
    {
        "memory_ingest",
        "initialize_conversation_session",
        "get_integrations",
        "memory_about_user",
    }
)

AutoExecutor = Callable[[ToolDefinition], Callable[[ToolCall], Awaitable[str]] | None]


class ToolsRegistry:
    """Registry for managing assistant tools."""

    def __init__(self, tools: Iterable[ToolDefinition] = ()):
        """Initialize the registry with an optional set of tools."""
        self._tools: dict[str, ToolDefinition] = {}
        for tool in tools:
            self.register_tool(tool)

    def register_tool(self, tool: ToolDefinition) -> None:
        """Register a new tool in the registry."""
        self._tools[tool.name] = tool

    def get_tool(self, name: str) -> ToolDefinition | None:
        return self._tools.get(name)

    def get_validator(self, name: str) -> ToolValidator | None:
        tool = self._tools.get(name)
        return tool.validator if tool else None

    def get_tool_names(self) -> list[str]:
        """Get list of all registered tool names."""
        return list(self._tools.keys())

    def has_tool(self, name: str) -> bool:
        """Check if a tool is registered."""
        return name in self._tools

    def subset(self, names: Iterable[str]) -> "ToolsRegistry":
        """New registry restricted to the given names (unknown names are skipped)."""
        return ToolsRegistry(self._tools[name] for name in names if name in self._tools)

    def get_llm_tools(
        self,
        exclude: Iterable[str] = HIDDEN_TOOL_NAMES,
        auto_executor: AutoExecutor | None = None,
    ) -> dict[str, LLMTool]:
        """Get model-visible tools.

        Args:
            exclude: Names hidden from the model
            auto_executor: Returns the callable the model client may run directly
                for a tool, or None when the tool must come back as a tool call

        Returns:
            Tools keyed by name
        """
        hidden = set(exclude)
        llm_tools: dict[str, LLMTool] = {}
        for name, tool in self._tools.items():
            if name in hidden:
                continue
            llm_tools[name] = LLMTool(
                name=tool.name,
                description=tool.description,
                input_schema=tool.get_json_schema(),
                callable=auto_executor(tool) if auto_executor else None,
            )
        return llm_tools
