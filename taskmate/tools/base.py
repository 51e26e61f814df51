"""Base types and definitions for tools."""

import inspect
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel

from taskmate.services.progress_registry import ToolProgressUpdate
from taskmate.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class ToolContext:
    """Per-execution context handed to tool handlers."""

    tool_call_id: str | None = None
    report_progress: Callable[[ToolProgressUpdate], None] | None = None

    def progress(self, type_: str, **data: Any) -> None:
        """Emit a progress update if anyone is listening."""
        if self.report_progress is not None:
            self.report_progress(ToolProgressUpdate(type=type_, data=data))  # type: ignore[arg-type]


@dataclass(frozen=True)
class ValidationResult:
    """Outcome of a tool's pre-execution validator."""

    valid: bool
    error: str | None = None

    @classmethod
    def ok(cls) -> "ValidationResult":
        return cls(valid=True)

    @classmethod
    def fail(cls, error: str) -> "ValidationResult":
        return cls(valid=False, error=error)


ApprovalPredicate = Callable[[dict[str, Any]], bool | Awaitable[bool]]


@dataclass(frozen=True)
class ApprovalPolicy:
    """Whether a tool call needs human approval.

    Either a fixed answer or a predicate over the call's arguments. A predicate
    that raises counts as "needs approval".
    """

    value: bool = True
    predicate: ApprovalPredicate | None = None

    @classmethod
    def static(cls, value: bool) -> "ApprovalPolicy":
        return cls(value=value)

    @classmethod
    def when(cls, predicate: ApprovalPredicate) -> "ApprovalPolicy":
        return cls(predicate=predicate)

    @property
    def is_static(self) -> bool:
        return self.predicate is None

    async def evaluate(self, arguments: dict[str, Any]) -> bool:
        """Resolve the policy for concrete arguments."""
        if self.predicate is None:
            return self.value
        try:
            result = self.predicate(arguments)
            if inspect.isawaitable(result):
                result = await result
            return bool(result)
        except Exception as e:
            logger.warning(f"Approval predicate failed, requiring approval: {e}")
            return True


ToolHandler = Callable[[BaseModel, ToolContext], Awaitable[str]]
ToolValidator = Callable[[BaseModel], Awaitable[ValidationResult]]
ToolFormatter = Callable[[dict[str, Any], str | None], str]


@dataclass
class ToolDefinition:
    """Definition of a tool available to the assistant."""

    name: str
    description: str
    input_schema_class: type[BaseModel]
    handler: ToolHandler
    needs_approval: ApprovalPolicy = field(default_factory=ApprovalPolicy)
    validator: ToolValidator | None = None
    formatter: ToolFormatter | None = None
    supports_progress: bool = False

    def get_json_schema(self) -> dict[str, Any]:
        """Get JSON schema for this tool's input."""
        return self.input_schema_class.model_json_schema()

    def parse_input(self, raw_input: dict[str, Any]) -> BaseModel:
        """Parse and validate tool input."""
        return self.input_schema_class.model_validate(raw_input)

    def format_call(self, arguments: dict[str, Any], result: str | None = None) -> str:
        """Human-readable summary of a call, for approval prompts and results."""
        if self.formatter is not None:
            try:
                return self.formatter(arguments, result)
            except Exception as e:
                logger.debug(f"Formatter for {self.name} failed: {e}")
        lines = [f"⚒ {self.name}"]
        for key, value in arguments.items():
            lines.append(f"  {key}: {value}")
        if result:
            lines.append(f"  {result}")
        return "\n".join(lines)
