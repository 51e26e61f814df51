"""Task data models."""

from dataclasses import dataclass, field
from enum import StrEnum


class TaskState(StrEnum):
    """Lifecycle state of a task."""

    TODO = "todo"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class Priority(StrEnum):
    """Task priority."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


@dataclass
class Task:
    """Task business model."""

    number: int
    description: str
    state: TaskState = TaskState.TODO
    tags: list[str] = field(default_factory=list)
    priority: Priority | None = None
    completed_at: str | None = None  # ISO date


@dataclass
class WeekTasks:
    """Tasks stored in one week file."""

    week_file: str  # e.g. "2025-W48.md"
    tasks: list[Task]
