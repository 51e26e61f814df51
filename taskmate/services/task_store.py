"""Weekly task storage interface and markdown implementation."""

import re
from collections.abc import Callable
from datetime import date
from pathlib import Path
from typing import Protocol

from taskmate.models.tasks import Priority, Task, TaskState, WeekTasks
from taskmate.utils.logging import get_logger

logger = get_logger(__name__)

SECTION_HEADERS = {
    "## Todo": TaskState.TODO,
    "## In Progress": TaskState.IN_PROGRESS,
    "## Completed": TaskState.COMPLETED,
}

STATE_MARKERS = {
    TaskState.TODO: " ",
    TaskState.IN_PROGRESS: ">",
    TaskState.COMPLETED: "x",
}

_TASK_LINE = re.compile(r"^-\s+\[.\]\s+(\d+)\.\s+(.+?)(?:\s+\(([^)]+)\))?$")
_HASHTAG = re.compile(r"#(\w+)")
_WEEK_FILE = re.compile(r"^\d{4}-W\d{2}\.md$")


def week_identifier(day: date) -> str:
    """ISO week of a date, e.g. ``2025-W48``."""
    year, week, _ = day.isocalendar()
    return f"{year}-W{week:02d}"


def parse_task_line(line: str, state: TaskState) -> Task | None:
    """Parse ``- [x] 1. Description #tag #high (2025-11-26)``."""
    match = _TASK_LINE.match(line)
    if not match:
        return None

    number, content, completed_at = match.groups()
    tags: list[str] = []
    priority: Priority | None = None
    for tag in _HASHTAG.findall(content):
        if tag in Priority._value2member_map_:
            priority = Priority(tag)
        else:
            tags.append(tag)

    return Task(
        number=int(number),
        description=_HASHTAG.sub("", content).strip(),
        state=state,
        tags=tags,
        priority=priority,
        completed_at=completed_at or None,
    )


def parse_tasks_from_markdown(markdown: str) -> list[Task]:
    tasks: list[Task] = []
    state: TaskState | None = None
    for line in markdown.splitlines():
        stripped = line.strip()
        if stripped in SECTION_HEADERS:
            state = SECTION_HEADERS[stripped]
            continue
        if state is not None and stripped.startswith("-"):
            task = parse_task_line(stripped, state)
            if task:
                tasks.append(task)
    return tasks


def format_task_line(task: Task) -> str:
    line = f"- [{STATE_MARKERS[task.state]}] {task.number}. {task.description}"
    for tag in task.tags:
        line += f" #{tag}"
    if task.priority:
        line += f" #{task.priority}"
    if task.state == TaskState.COMPLETED and task.completed_at:
        line += f" ({task.completed_at})"
    return line


def write_tasks_to_markdown(tasks: list[Task]) -> str:
    """Render tasks grouped into the three state sections."""
    sections: list[str] = []
    for header, state in SECTION_HEADERS.items():
        lines = [header]
        in_state = [task for task in tasks if task.state == state]
        if in_state:
            lines.extend(format_task_line(task) for task in in_state)
        else:
            lines.append("")
        sections.append("\n".join(lines))
    return "\n\n".join(sections) + "\n"


def next_task_number(tasks: list[Task]) -> int:
    return max((task.number for task in tasks), default=0) + 1


class TaskStore(Protocol):
    """Interface for weekly task storage."""

    def current_week_file(self) -> str:
        """Name of the current week's file, e.g. ``2025-W48.md``."""
        ...

    async def read_week_tasks(self) -> list[Task]:
        """Read the current week's tasks.

        Returns:
            Tasks in file order, empty when the week has no file yet
        """
        ...

    async def write_week_tasks(self, tasks: list[Task]) -> None:
        """Replace the current week's tasks."""
        ...

    async def list_week_files(self) -> list[str]:
        """All week files, oldest first."""
        ...

    async def read_week_file(self, week_file: str) -> WeekTasks:
        """Read tasks from a specific week file."""
        ...


class MarkdownTaskStore:
    """Task store keeping one markdown file per ISO week."""

    def __init__(self, tasks_dir: Path, today: Callable[[], date] = date.today):
        """Initialize the store.

        Args:
            tasks_dir: Directory holding the ``YYYY-WNN.md`` files
            today: Clock used to pick the current week
        """
        self.tasks_dir = Path(tasks_dir)
        self.today = today

    def current_week_file(self) -> str:
        return f"{week_identifier(self.today())}.md"

    def _current_path(self) -> Path:
        return self.tasks_dir / self.current_week_file()

    async def read_week_tasks(self) -> list[Task]:
        path = self._current_path()
        if not path.exists():
            return []
        return parse_tasks_from_markdown(path.read_text(encoding="utf-8"))

    async def write_week_tasks(self, tasks: list[Task]) -> None:
        self.tasks_dir.mkdir(parents=True, exist_ok=True)
        self._current_path().write_text(write_tasks_to_markdown(tasks), encoding="utf-8")
        logger.debug(f"Wrote {len(tasks)} tasks to {self._current_path()}")

    async def list_week_files(self) -> list[str]:
        if not self.tasks_dir.is_dir():
            return []
        return sorted(path.name for path in self.tasks_dir.iterdir() if _WEEK_FILE.match(path.name))

    async def read_week_file(self, week_file: str) -> WeekTasks:
        path = self.tasks_dir / week_file
        if not path.exists():
            return WeekTasks(week_file=week_file, tasks=[])
        return WeekTasks(week_file=week_file, tasks=parse_tasks_from_markdown(path.read_text(encoding="utf-8")))
