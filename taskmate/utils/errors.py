"""Exception types and error formatting."""

from pydantic import ValidationError


class TaskmateError(Exception):
    """Base class for errors raised by taskmate."""


class OperationCancelledError(TaskmateError):
    """Raised when the user aborts an in-flight model call."""

    def __init__(self, message: str = "Operation was cancelled"):
        super().__init__(message)


class ApprovalCancelledError(TaskmateError):
    """Raised into pending approval waits when they are torn down."""

    def __init__(self, message: str = "Approval cancelled by user"):
        super().__init__(message)


class ApprovalRequiredError(TaskmateError):
    """Raised when a tool needs approval but nobody can be asked."""


class ToolArgumentsError(TaskmateError):
    """Raised when tool arguments cannot be decoded or repaired."""


class EmptyModelResponseError(TaskmateError):
    """Raised when the model returns no choices."""

    def __init__(self, message: str = "No response received from model"):
        super().__init__(message)


def format_error(error: BaseException | object) -> str:
    """Format an exception as a single clean line for display or tool results."""
    if error is None:
        return "Unknown error"
    if not isinstance(error, BaseException):
        return str(error)

    if isinstance(error, ValidationError):
        details = []
        for item in error.errors():
            location = ".".join(str(part) for part in item.get("loc", ())) or "input"
            details.append(f"{location}: {item.get('msg', 'invalid value')}")
        return f"Invalid arguments ({'; '.join(details)})"

    message = " ".join(str(error).split())
    if not message:
        return type(error).__name__
    if message.startswith("Error: "):
        message = message[len("Error: ") :]
    return message
