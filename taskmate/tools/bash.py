"""Shell command execution tool."""

import asyncio
import os
from typing import Any

from pydantic import BaseModel, Field

from taskmate.tools.base import ApprovalPolicy, ToolContext, ToolDefinition, ValidationResult
from taskmate.utils.logging import get_logger

logger = get_logger(__name__)

DEFAULT_TIMEOUT_SECONDS = 120.0
MAX_OUTPUT_CHARS = 20_000
READ_CHUNK_BYTES = 65_536


class ExecuteBashInput(BaseModel):
    """Input schema for execute_bash."""

    command: str = Field(..., description="The bash command to run")
    working_directory: str | None = Field(None, description="Directory to run the command in (default: current)")


async def _kill(process: asyncio.subprocess.Process) -> None:
    try:
        process.kill()
    except ProcessLookupError:
        # Exited between the returncode check and kill
        pass
    await process.wait()


def _truncate(output: str) -> str:
    if len(output) <= MAX_OUTPUT_CHARS:
        return output
    omitted = len(output) - MAX_OUTPUT_CHARS
    return output[:MAX_OUTPUT_CHARS] + f"\n... [{omitted} characters truncated]"


def create_bash_tool(timeout: float = DEFAULT_TIMEOUT_SECONDS) -> ToolDefinition:
    """Create the execute_bash tool.

    Output lines are streamed as ``status`` progress updates while the command
    runs. The command is killed when it exceeds ``timeout`` seconds.
    """

    async def handler(params: ExecuteBashInput, context: ToolContext) -> str:
        cwd = os.path.expanduser(params.working_directory) if params.working_directory else None
        process = await asyncio.create_subprocess_shell(
            params.command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            cwd=cwd,
        )
        context.progress("tool_call", command=params.command)

        lines: list[str] = []

        def emit(raw: bytes) -> None:
            line = raw.decode(errors="replace").rstrip("\r")
            lines.append(line)
            context.progress("status", line=line)

        async def read_output() -> None:
            # Chunked reads; a single line may be longer than the StreamReader limit
            assert process.stdout is not None
            pending = b""
            while chunk := await process.stdout.read(READ_CHUNK_BYTES):
                pending += chunk
                *complete, pending = pending.split(b"\n")
                for raw in complete:
                    emit(raw)
            if pending:
                emit(pending)

        try:
            await asyncio.wait_for(asyncio.gather(read_output(), process.wait()), timeout=timeout)
        except TimeoutError:
            logger.warning(f"Command timed out after {timeout}s: {params.command}")
            output = "\n".join(lines)
            return f"Error: Command timed out after {timeout:g} seconds\n{_truncate(output)}".rstrip()
        finally:
            if process.returncode is None:
                await _kill(process)

        output = _truncate("\n".join(lines)) or "(no output)"
        context.progress("tool_result", exit_code=process.returncode)
        if process.returncode != 0:
            return f"Exit code {process.returncode}\n{output}"
        return output

    async def validator(params: ExecuteBashInput) -> ValidationResult:
        if not params.command.strip():
            return ValidationResult.fail("Command cannot be empty")
        if params.working_directory and not os.path.isdir(os.path.expanduser(params.working_directory)):
            return ValidationResult.fail(f"Working directory does not exist: {params.working_directory}")
        return ValidationResult.ok()

    def formatter(args: dict[str, Any], result: str | None) -> str:
        lines = ["⚒ execute_bash", f"└ $ {args.get('command', '')}"]
        if args.get("working_directory"):
            lines.append(f"  in {args['working_directory']}")
        if result:
            lines.append(f"  {result}")
        return "\n".join(lines)

    return ToolDefinition(
        name="execute_bash",
        description="Run a bash command on the user's machine and return its combined output",
        input_schema_class=ExecuteBashInput,
        handler=handler,
        needs_approval=ApprovalPolicy.static(True),
        validator=validator,
        formatter=formatter,
        supports_progress=True,
    )
