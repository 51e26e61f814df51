"""Weekly task management tools."""

from datetime import date
from typing import Any

from pydantic import BaseModel, Field

from taskmate.models.tasks import Priority, Task, TaskState
from taskmate.services.task_store import SECTION_HEADERS, TaskStore, next_task_number
from taskmate.tools.base import ApprovalPolicy, ToolContext, ToolDefinition, ValidationResult


class NewTaskInput(BaseModel):
    """Input schema for new_task."""

    description: str = Field(..., description="The task description")
    tags: list[str] = Field(default_factory=list, description="Optional tags for the task (without # prefix)")
    priority: Priority | None = Field(None, description="Optional priority level")


class UpdateTaskInput(BaseModel):
    """Input schema for update_task. Omitted fields are left unchanged."""

    task_number: int = Field(..., description="The task number to update")
    state: TaskState | None = Field(None, description="New state for the task")
    description: str | None = Field(None, description="New description for the task")
    tags: list[str] | None = Field(None, description="New tags (replaces existing tags)")
    priority: Priority | None = Field(None, description="New priority (use null to remove priority)")


class DeleteTaskInput(BaseModel):
    """Input schema for delete_task."""

    task_number: int = Field(..., description="The task number to delete")


class ListTasksInput(BaseModel):
    """Input schema for list_tasks."""

    state: TaskState | None = Field(None, description="Optional: filter tasks by state")


class SearchTasksInput(BaseModel):
    """Input schema for search_tasks."""

    query: str = Field(..., description="Search query (searches in description and tags)")
    state: TaskState | None = Field(None, description="Optional: filter results by state")


def format_task_for_display(task: Task) -> str:
    line = f"{task.number}. {task.description}"
    if task.tags:
        line += " " + " ".join(f"#{tag}" for tag in task.tags)
    if task.priority:
        line += f" #{task.priority}"
    if task.completed_at:
        line += f" ({task.completed_at})"
    return line


def _hashtags(tags: list[str]) -> str:
    return " ".join(f"#{tag}" for tag in tags)


def _format_lines(header: str, lines: list[str], result: str | None) -> str:
    if result:
        lines.append(f"  {result}")
    return "\n".join([header, *lines])


def create_new_task_tool(store: TaskStore) -> ToolDefinition:
    async def handler(params: NewTaskInput, context: ToolContext) -> str:
        tasks = await store.read_week_tasks()
        number = next_task_number(tasks)
        tasks.append(
            Task(
                number=number,
                description=params.description.strip(),
                tags=list(params.tags),
                priority=params.priority,
            )
        )
        await store.write_week_tasks(tasks)
        return f"Task #{number} created successfully in {store.current_week_file()}"

    async def validator(params: NewTaskInput) -> ValidationResult:
        if not params.description.strip():
            return ValidationResult.fail("⚒ Task description cannot be empty")
        return ValidationResult.ok()

    def formatter(args: dict[str, Any], result: str | None) -> str:
        lines = [f"└ Description: {args.get('description', '')}"]
        if args.get("tags"):
            lines.append(f"  Tags: {_hashtags(args['tags'])}")
        if args.get("priority"):
            lines.append(f"  Priority: #{args['priority']}")
        return _format_lines("⚒ new_task", lines, result)

    return ToolDefinition(
        name="new_task",
        description="Create a new task in the current week",
        input_schema_class=NewTaskInput,
        handler=handler,
        validator=validator,
        formatter=formatter,
    )


def create_update_task_tool(store: TaskStore) -> ToolDefinition:
    async def handler(params: UpdateTaskInput, context: ToolContext) -> str:
        tasks = await store.read_week_tasks()
        task = next((t for t in tasks if t.number == params.task_number), None)
        if task is None:
            raise ValueError(f"Task #{params.task_number} not found")

        provided = params.model_fields_set
        updates: list[str] = []
        if "state" in provided and params.state is not None:
            task.state = params.state
            task.completed_at = date.today().isoformat() if params.state == TaskState.COMPLETED else None
            updates.append(f"state → {params.state}")
        if "description" in provided and params.description is not None:
            task.description = params.description
            updates.append("description updated")
        if "tags" in provided and params.tags is not None:
            task.tags = list(params.tags)
            updates.append(f"tags → {_hashtags(params.tags) or 'none'}")
        if "priority" in provided:
            task.priority = params.priority
            updates.append(f"priority → {'#' + params.priority if params.priority else 'none'}")

        await store.write_week_tasks(tasks)
        return f"Task #{params.task_number} updated: {', '.join(updates)}"

    async def validator(params: UpdateTaskInput) -> ValidationResult:
        if params.task_number < 1:
            return ValidationResult.fail("⚒ Task number must be positive")
        if not params.model_fields_set & {"state", "description", "tags", "priority"}:
            return ValidationResult.fail(
                "⚒ At least one field must be provided (state, description, tags, or priority)"
            )
        return ValidationResult.ok()

    def formatter(args: dict[str, Any], result: str | None) -> str:
        lines = [f"└ Task Number: #{args.get('task_number')}"]
        if args.get("state"):
            lines.append(f"  New State: {args['state']}")
        if args.get("description"):
            lines.append(f"  New Description: {args['description']}")
        if "tags" in args:
            lines.append(f"  New Tags: {_hashtags(args['tags'] or []) or 'none'}")
        if "priority" in args:
            lines.append(f"  New Priority: {'#' + args['priority'] if args['priority'] else 'none'}")
        return _format_lines("⚒ update_task", lines, result)

    return ToolDefinition(
        name="update_task",
        description="Update an existing task (change state, description, tags, or priority)",
        input_schema_class=UpdateTaskInput,
        handler=handler,
        validator=validator,
        formatter=formatter,
    )


def create_delete_task_tool(store: TaskStore) -> ToolDefinition:
    async def handler(params: DeleteTaskInput, context: ToolContext) -> str:
        tasks = await store.read_week_tasks()
        task = next((t for t in tasks if t.number == params.task_number), None)
        if task is None:
            raise ValueError(f"Task #{params.task_number} not found")
        tasks.remove(task)
        await store.write_week_tasks(tasks)
        return f'Task #{params.task_number} "{task.description}" deleted successfully.'

    async def validator(params: DeleteTaskInput) -> ValidationResult:
        if params.task_number < 1:
            return ValidationResult.fail("⚒ Task number must be positive")
        tasks = await store.read_week_tasks()
        if not any(t.number == params.task_number for t in tasks):
            return ValidationResult.fail(f"⚒ Task #{params.task_number} not found in current week")
        return ValidationResult.ok()

    def formatter(args: dict[str, Any], result: str | None) -> str:
        return _format_lines("⚒ delete_task", [f"└ Task Number: #{args.get('task_number')}"], result)

    return ToolDefinition(
        name="delete_task",
        description="Delete a task by its number",
        input_schema_class=DeleteTaskInput,
        handler=handler,
        validator=validator,
        formatter=formatter,
    )


def create_list_tasks_tool(store: TaskStore) -> ToolDefinition:
    async def handler(params: ListTasksInput, context: ToolContext) -> str:
        tasks = await store.read_week_tasks()
        if not tasks:
            return "No tasks found for the current week"

        if params.state:
            filtered = [t for t in tasks if t.state == params.state]
            if not filtered:
                return f'No tasks found with state "{params.state}"'
            lines = [f"Tasks from {store.current_week_file()}:", ""]
            lines.extend(format_task_for_display(t) for t in filtered)
            return "\n".join(lines)

        lines = [f"Tasks from {store.current_week_file()}:", ""]
        for header, state in SECTION_HEADERS.items():
            in_state = [t for t in tasks if t.state == state]
            if in_state:
                lines.append(header)
                lines.extend(format_task_for_display(t) for t in in_state)
                lines.append("")
        return "\n".join(lines).rstrip()

    def formatter(args: dict[str, Any], result: str | None) -> str:
        if args.get("state"):
            return _format_lines("⚒ list_tasks", [f"└ Filter: {args['state']}"], result)
        return "\n".join(["⚒ list_tasks", *([f"└ {result}"] if result else [])])

    return ToolDefinition(
        name="list_tasks",
        description="List all tasks from the current week, optionally filtered by state",
        input_schema_class=ListTasksInput,
        handler=handler,
        needs_approval=ApprovalPolicy.static(False),
        formatter=formatter,
    )


def create_search_tasks_tool(store: TaskStore) -> ToolDefinition:
    async def handler(params: SearchTasksInput, context: ToolContext) -> str:
        week_files = await store.list_week_files()
        if not week_files:
            return "No task files found"

        query = params.query.lower()
        matches: list[tuple[str, Task]] = []
        for week_file in week_files:
            week = await store.read_week_file(week_file)
            for task in week.tasks:
                if params.state and task.state != params.state:
                    continue
                if query in task.description.lower() or any(query in tag.lower() for tag in task.tags):
                    matches.append((week_file, task))

        if not matches:
            return f'No tasks found matching "{params.query}"'

        lines = [f'Found {len(matches)} task(s) matching "{params.query}":', ""]
        current_week = ""
        for week_file, task in matches:
            if week_file != current_week:
                if current_week:
                    lines.append("")
                lines.append(f"## {week_file}")
                current_week = week_file
            lines.append(f"  {format_task_for_display(task)} [{task.state}]")
        return "\n".join(lines)

    async def validator(params: SearchTasksInput) -> ValidationResult:
        if not params.query.strip():
            return ValidationResult.fail("⚒ Search query cannot be empty")
        return ValidationResult.ok()

    def formatter(args: dict[str, Any], result: str | None) -> str:
        lines = [f"└ Query: {args.get('query', '')}"]
        if args.get("state"):
            lines.append(f"  Filter: {args['state']}")
        return _format_lines("⚒ search_tasks", lines, result)

    return ToolDefinition(
        name="search_tasks",
        description="Search for tasks across all weeks by description, tags, or state",
        input_schema_class=SearchTasksInput,
        handler=handler,
        needs_approval=ApprovalPolicy.static(False),
        validator=validator,
        formatter=formatter,
    )


def create_task_tools(store: TaskStore) -> list[ToolDefinition]:
    return [
        create_new_task_tool(store),
        create_update_task_tool(store),
        create_delete_task_tool(store),
        create_list_tasks_tool(store),
        create_search_tasks_tool(store),
    ]
