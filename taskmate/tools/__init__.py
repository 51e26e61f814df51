"""Tools for the terminal assistant."""

from taskmate.tools.base import ApprovalPolicy, ToolContext, ToolDefinition, ValidationResult
from taskmate.tools.registry import HIDDEN_TOOL_NAMES, ToolsRegistry

__all__ = [
    "HIDDEN_TOOL_NAMES",
    "ApprovalPolicy",
    "ToolContext",
    "ToolDefinition",
    "ToolsRegistry",
    "ValidationResult",
]
