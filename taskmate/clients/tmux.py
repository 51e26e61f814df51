"""tmux launcher for coding agents."""

import asyncio
import shlex
import shutil
from dataclasses import dataclass, field

from taskmate.models.session import CodingSession, TaskContext
from taskmate.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class CodingAgentConfig:
    """How to launch one coding agent CLI."""

    name: str
    display_name: str
    command: str
    supports_session_id: bool = False
    supports_system_prompt: bool = False
    # Keys: session_id, system_prompt, resume, working_dir
    flags: dict[str, str] = field(default_factory=dict)


CODING_AGENTS: dict[str, CodingAgentConfig] = {
    "claude-code": CodingAgentConfig(
        name="claude-code",
        display_name="Claude Code",
        command="claude",
        supports_session_id=True,
        supports_system_prompt=True,
        flags={"session_id": "--session-id", "system_prompt": "--append-system-prompt", "resume": "--resume"},
    ),
    "cursor": CodingAgentConfig(
        name="cursor",
        display_name="Cursor AI",
        command="cursor",
        flags={"working_dir": "--goto"},
    ),
    "aider": CodingAgentConfig(
        name="aider",
        display_name="Aider",
        command="aider",
        supports_system_prompt=True,
        flags={"system_prompt": "--message"},
    ),
    "codex": CodingAgentConfig(name="codex", display_name="Codex CLI", command="codex"),
}


def get_agent_config(agent_name: str) -> CodingAgentConfig | None:
    return CODING_AGENTS.get(agent_name)


def build_agent_command(
    agent: CodingAgentConfig,
    session: CodingSession,
    context: TaskContext,
    custom_path: str | None = None,
) -> list[str]:
    """Build the argv that starts the agent inside tmux."""
    argv = [custom_path or agent.command]
    if agent.supports_session_id and session.agent_session_id and "session_id" in agent.flags:
        argv += [agent.flags["session_id"], session.agent_session_id]
    if agent.supports_system_prompt and context.prompt and "system_prompt" in agent.flags:
        argv += [agent.flags["system_prompt"], context.prompt]
    if "working_dir" in agent.flags:
        argv += [agent.flags["working_dir"], session.working_directory]
    argv.append(context.task_description)
    return argv


class TmuxError(Exception):
    """Raised when tmux or the agent binary cannot be used."""


class TmuxLauncher:
    """Starts, checks and kills detached tmux sessions."""

    def __init__(self, tmux_binary: str = "tmux"):
        self.tmux_binary = tmux_binary

    def is_installed(self) -> bool:
        return shutil.which(self.tmux_binary) is not None

    @staticmethod
    def is_agent_installed(agent: CodingAgentConfig, custom_path: str | None = None) -> bool:
        return shutil.which(custom_path or agent.command) is not None

    async def _run(self, *args: str) -> tuple[int, str]:
        process = await asyncio.create_subprocess_exec(
            self.tmux_binary,
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
        output, _ = await process.communicate()
        return process.returncode or 0, output.decode(errors="replace")

    async def session_exists(self, session_name: str) -> bool:
        code, _ = await self._run("has-session", "-t", session_name)
        return code == 0

    async def list_sessions(self) -> list[str]:
        code, output = await self._run("list-sessions", "-F", "#{session_name}")
        if code != 0:
            return []
        return [line for line in output.splitlines() if line]

    async def launch(self, session: CodingSession, context: TaskContext, custom_path: str | None = None) -> None:
        """Launch the session's agent in a detached tmux session.

        Raises:
            TmuxError: unknown agent, tmux missing, agent missing, or tmux failed
        """
        agent = get_agent_config(session.agent_name)
        if agent is None:
            raise TmuxError(f"Unknown agent: {session.agent_name}")
        if not self.is_installed():
            raise TmuxError("tmux is not installed. Please install tmux first.")
        if not self.is_agent_installed(agent, custom_path):
            raise TmuxError(
                f"Agent command not found: {custom_path or agent.command}. Please install {agent.display_name} first."
            )

        command = shlex.join(build_agent_command(agent, session, context, custom_path))
        logger.info(f"Launching {agent.name} in tmux session {session.tmux_session_name}")
        code, output = await self._run(
            "new-session", "-d", "-s", session.tmux_session_name, "-c", session.working_directory, command
        )
        if code != 0:
            raise TmuxError(f"Agent launch failed with code {code}: {output.strip()}")

    async def kill_session(self, session_name: str) -> bool:
        code, _ = await self._run("kill-session", "-t", session_name)
        return code == 0
