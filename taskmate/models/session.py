"""Coding session models."""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal

SessionStatus = Literal["active", "detached", "completed", "error"]


@dataclass
class CodingSession:
    """A coding agent running in a tmux session."""

    id: str
    tmux_session_name: str  # e.g. "task-42-abcde"
    agent_name: str  # "claude-code", "cursor", ...
    task_description: str
    working_directory: str
    task_number: int | None = None
    agent_session_id: str | None = None
    status: SessionStatus = "active"
    context_provided: str = ""
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    last_activity: datetime | None = None

    def as_dict(self) -> dict[str, Any]:
        """Return the session as a JSON-serialisable dictionary."""
        return {
            "id": self.id,
            "tmux_session_name": self.tmux_session_name,
            "agent_name": self.agent_name,
            "task_description": self.task_description,
            "working_directory": self.working_directory,
            "task_number": self.task_number,
            "agent_session_id": self.agent_session_id,
            "status": self.status,
            "context_provided": self.context_provided,
            "started_at": self.started_at.isoformat(),
            "last_activity": self.last_activity.isoformat() if self.last_activity else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CodingSession":
        """Rebuild a session from as_dict() output."""
        last_activity = data.get("last_activity")
        return cls(
            id=data["id"],
            tmux_session_name=data["tmux_session_name"],
            agent_name=data["agent_name"],
            task_description=data.get("task_description", ""),
            working_directory=data.get("working_directory", ""),
            task_number=data.get("task_number"),
            agent_session_id=data.get("agent_session_id"),
            status=data.get("status", "detached"),
            context_provided=data.get("context_provided", ""),
            started_at=datetime.fromisoformat(data["started_at"]) if data.get("started_at") else datetime.now(UTC),
            last_activity=datetime.fromisoformat(last_activity) if last_activity else None,
        )


@dataclass
class TaskContext:
    """What a launched coding agent is told to work on."""

    task_description: str
    task_number: int | None = None
    prompt: str | None = None  # passed as system prompt where the agent supports one
