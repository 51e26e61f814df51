#!/usr/bin/env python3
"""Interactive terminal front end for the Taskmate assistant."""

import argparse
import asyncio
import signal
import sys
import threading
from collections import Counter
from datetime import UTC, datetime
from typing import TextIO

from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.text import Text

from taskmate.clients.anthropic import AnthropicClient, AnthropicConfig
from taskmate.clients.tmux import CODING_AGENTS, TmuxLauncher, get_agent_config
from taskmate.config import AssistantConfig
from taskmate.models.approval import PendingApproval
from taskmate.models.conversation import DevelopmentMode, DisplayEntry, TerminalReason, TurnOutcome
from taskmate.models.llm import ModelClient
from taskmate.models.messages import ToolCall
from taskmate.models.tasks import TaskState
from taskmate.services.approval_registry import ApprovalRegistry
from taskmate.services.coding_sessions import CodingSessionStore
from taskmate.services.display import DisplayQueue
from taskmate.services.orchestrator import ConversationOrchestrator
from taskmate.services.progress_registry import ProgressRegistry, ToolProgressUpdate
from taskmate.services.routines import RoutineStore
from taskmate.services.task_store import MarkdownTaskStore, write_tasks_to_markdown
from taskmate.services.tool_executor import ToolExecutor
from taskmate.tools.coding_sessions import attach_hint
from taskmate.tools.defaults import build_default_registry
from taskmate.utils.arguments import parse_tool_arguments
from taskmate.utils.errors import format_error
from taskmate.utils.logging import LogConfig, get_logger, setup_logging

logger = get_logger(__name__)

EXIT_COMMANDS = ("/quit", "/exit", "quit", "exit")


def format_age(started_at: datetime, now: datetime | None = None) -> str:
    minutes = int(((now or datetime.now(UTC)) - started_at).total_seconds() // 60)
    if minutes < 1:
        return "just now"
    if minutes < 60:
        return f"{minutes}m ago"
    if minutes < 60 * 24:
        return f"{minutes // 60}h ago"
    return f"{minutes // (60 * 24)}d ago"


class TerminalInput:
    """Single reader of the input stream.

    One daemon thread reads lines and hands them to the event loop through a
    queue, so the chat prompt and approval prompts never compete for stdin.
    A consumer that is cancelled while waiting leaves the next line in the
    queue for whoever reads after it.
    """

    def __init__(self, stream: TextIO | None = None):
        self.stream = stream or sys.stdin
        self._lines: asyncio.Queue[str | None] = asyncio.Queue()
        self._thread: threading.Thread | None = None

    def _ensure_started(self) -> None:
        if self._thread is not None:
            return
        loop = asyncio.get_running_loop()
        self._thread = threading.Thread(target=self._pump, args=(loop,), name="terminal-input", daemon=True)
        self._thread.start()

    def _pump(self, loop: asyncio.AbstractEventLoop) -> None:
        for line in iter(self.stream.readline, ""):
            try:
                loop.call_soon_threadsafe(self._lines.put_nowait, line.rstrip("\r\n"))
            except RuntimeError:
                # Loop closed while we were blocked on the stream
                return
        try:
            loop.call_soon_threadsafe(self._lines.put_nowait, None)
        except RuntimeError:
            return

    async def readline(self) -> str:
        """Return the next line without its newline.

        Raises:
            EOFError: the stream is exhausted
        """
        self._ensure_started()
        line = await self._lines.get()
        if line is None:
            self._lines.put_nowait(None)
            raise EOFError
        return line


class ChatCLI:
    """Interactive chat interface around a ConversationOrchestrator."""

    def __init__(
        self,
        config: AssistantConfig,
        client: ModelClient,
        console: Console | None = None,
        non_interactive: bool = False,
        launcher: TmuxLauncher | None = None,
        input_reader: TerminalInput | None = None,
    ):
        """Initialize chat CLI."""
        self.config = config
        self.console = console or Console()
        self.input = input_reader or TerminalInput()
        self.approvals = ApprovalRegistry()
        self.progress = ProgressRegistry()
        self.display = DisplayQueue()
        self.task_store = MarkdownTaskStore(config.tasks_dir)
        self.session_store = CodingSessionStore(config.sessions_file)
        self.launcher = launcher or TmuxLauncher()
        self._approval_tasks: set[asyncio.Task] = set()

        tools = build_default_registry(
            client,
            self.approvals,
            self.task_store,
            self.session_store,
            launcher=self.launcher,
            progress_registry=self.progress,
            default_coding_agent=lambda: self.config.default_coding_agent,
            bash_timeout=config.bash_timeout,
        )
        self.orchestrator = ConversationOrchestrator(
            client,
            tools,
            self.approvals,
            executor=ToolExecutor(tools, self.progress),
            display=self.display,
            routines=RoutineStore(config.routines_dir),
            mode=config.mode,
            non_interactive=non_interactive,
            max_iterations=config.max_iterations,
            assistant_name=config.assistant_name,
        )
        self.orchestrator.on_tool_executing = self._show_tool_executing
        self.orchestrator.on_tool_progress = self._show_tool_progress
        self.display.subscribe(self._render)
        if not non_interactive:
            self.approvals.on_approval_needed(self._schedule_approval)

    async def start(self) -> None:
        """Start the interactive chat session."""
        self.console.print(
            Panel.fit(
                f"[bold blue]{self.config.assistant_name}[/bold blue]\n"
                "Type your messages to chat with the assistant.\n"
                "Commands: /help, /tasks, /sessions, /clear, /mode, /quit",
                border_style="blue",
            )
        )
        self._show_mode()

        try:
            while True:
                self.console.print("\n[bold cyan]You[/bold cyan]: ", end="")
                user_input = (await self.input.readline()).strip()

                if user_input.lower() in EXIT_COMMANDS:
                    break
                elif user_input == "":
                    continue
                elif user_input.startswith("/"):
                    await self.handle_command(user_input)
                    continue

                await self.run_turn(user_input)

        except EOFError:
            pass
        finally:
            self.approvals.cancel_all()
            self.console.print("\n[yellow]👋 Goodbye![/yellow]")

    async def handle_command(self, text: str) -> None:
        """Run a slash command typed at the prompt."""
        command, _, argument = text.strip().partition(" ")
        command = command.lower()
        argument = argument.strip()

        if command == "/help":
            self._show_help()
        elif command == "/clear":
            self.orchestrator.clear()
            self.console.print("[yellow]🔄 Session cleared[/yellow]")
        elif command == "/mode":
            self._switch_mode(argument)
        elif command == "/tasks":
            await self._show_tasks()
        elif command == "/sessions":
            subcommand, _, identifier = argument.partition(" ")
            if subcommand == "close":
                await self._close_session(identifier.strip())
            else:
                await self._show_sessions()
        elif command == "/set-coding-agent":
            self._set_coding_agent(argument)
        elif command == "/set-name":
            self._set_name(argument)
        else:
            self.console.print(f"[red]Unknown command {command}. Type /help for the list.[/red]")

    async def run_turn(self, text: str) -> TurnOutcome:
        """Run one turn; Ctrl+C cancels it instead of exiting."""
        loop = asyncio.get_running_loop()
        try:
            loop.add_signal_handler(signal.SIGINT, self.orchestrator.cancel)
            handler_installed = True
        except (NotImplementedError, RuntimeError):
            handler_installed = False

        try:
            outcome = await self.orchestrator.handle_user_message(text)
        finally:
            if handler_installed:
                loop.remove_signal_handler(signal.SIGINT)

        logger.info(f"Turn finished: {outcome.reason} after {outcome.iterations} model call(s)")
        return outcome

    async def run_prompt(self, text: str) -> int:
        """Run a single prompt without a human in the loop and return an exit code."""
        outcome = await self.run_turn(text)
        if outcome.reason == TerminalReason.COMPLETE:
            return 0
        if outcome.reason == TerminalReason.CANCELLED:
            return 130
        return 1

    def _schedule_approval(self, pending: PendingApproval) -> None:
        task = asyncio.get_running_loop().create_task(self._ask_approval(pending))
        self._approval_tasks.add(task)
        task.add_done_callback(self._approval_tasks.discard)

    async def _ask_approval(self, pending: PendingApproval) -> None:
        tool_call = pending.tool_call
        tool = self.orchestrator.tools.get_tool(tool_call.function.name)
        arguments = parse_tool_arguments(tool_call.function.arguments)
        body = tool.format_call(arguments) if tool else f"{tool_call.function.name} {arguments}"
        source = " → ".join(pending.metadata.chain)

        self.console.print(
            Panel(
                Text(body),
                title=f"[bold yellow]Approval needed[/bold yellow] [dim]({source})[/dim]",
                border_style="yellow",
            )
        )
        read = asyncio.ensure_future(self._confirm())
        try:
            await asyncio.wait({read, pending.future}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            if not read.done():
                read.cancel()

        # Settled elsewhere (turn cancelled); the unread answer stays for the chat prompt
        if pending.future.done():
            return
        try:
            approved = read.result()
        except EOFError as e:
            self.approvals.reject_with_error(tool_call.id, e)
            return
        self.approvals.resolve(tool_call.id, approved)

    async def _confirm(self) -> bool:
        while True:
            self.console.print("Run this tool? [bold magenta]\\[y/n][/bold magenta] [cyan](n)[/cyan]: ", end="")
            answer = (await self.input.readline()).strip().lower()
            if answer in ("", "n", "no"):
                return False
            if answer in ("y", "yes"):
                return True
            self.console.print("[prompt.invalid]Please enter Y or N")

    def _render(self, entry: DisplayEntry) -> None:
        if entry.kind == "user":
            return
        if entry.kind == "assistant":
            self.console.print(
                Panel(
                    Markdown(entry.text),
                    title=f"[bold green]🤖 {self.config.assistant_name}[/bold green]",
                    border_style="green",
                    padding=(1, 2),
                )
            )
        elif entry.kind == "tool_result":
            self.console.print(Text(entry.text, style="cyan"))
        elif entry.kind == "error":
            self.console.print(Text(f"❌ {entry.text}", style="red"))
        else:
            self.console.print(Text(entry.text, style="yellow"))

    def _show_tool_executing(self, tool_call: ToolCall | None) -> None:
        if tool_call is not None:
            self.console.print(f"[dim]⚒ Running {tool_call.function.name}...[/dim]")

    def _show_tool_progress(self, tool_call: ToolCall, update: ToolProgressUpdate) -> None:
        line = update.data.get("line")
        if update.type == "status" and line is not None:
            self.console.print(Text(f"  {line}", style="dim"))

    def _switch_mode(self, requested: str) -> None:
        if not requested:
            current = self.orchestrator.mode
            requested = (
                DevelopmentMode.NORMAL if current == DevelopmentMode.AUTO_ACCEPT else DevelopmentMode.AUTO_ACCEPT
            )
        try:
            self.orchestrator.mode = DevelopmentMode(requested)
        except ValueError:
            valid = ", ".join(m.value for m in DevelopmentMode)
            self.console.print(f"[red]Unknown mode {requested!r}. Valid modes: {valid}[/red]")
            return
        self._show_mode()

    def _show_mode(self) -> None:
        self.console.print(f"[dim]Approval mode: {self.orchestrator.mode.value}[/dim]")

    async def _show_tasks(self) -> None:
        tasks = await self.task_store.read_week_tasks()
        counts = Counter(task.state for task in tasks)
        week = self.task_store.current_week_file().removesuffix(".md")
        self.console.print(
            Panel(
                Markdown(write_tasks_to_markdown(tasks)),
                title=f"[bold blue]📋 Tasks for {week}[/bold blue]",
                subtitle=(
                    f"Todo: {counts[TaskState.TODO]} | In Progress: {counts[TaskState.IN_PROGRESS]} | "
                    f"Completed: {counts[TaskState.COMPLETED]}"
                ),
                border_style="blue",
            )
        )

    async def _show_sessions(self) -> None:
        sessions = []
        for session in self.session_store.active_sessions():
            if await self.launcher.session_exists(session.tmux_session_name):
                sessions.append(session)
            else:
                self.session_store.update_status(session.id, "completed")

        if not sessions:
            self.console.print("[dim]No active coding sessions[/dim]")
            self.console.print("[dim]Start one by asking the assistant to implement a task[/dim]")
            return

        self.console.print("[bold blue]💻 Active Coding Agent Sessions[/bold blue]\n")
        for index, session in enumerate(sessions, start=1):
            task_info = f"Task #{session.task_number}: " if session.task_number else ""
            self.console.print(
                Text(f"{index}. [{session.agent_name}] {task_info}{session.task_description}"),
                Text(f"   Session: {session.tmux_session_name}", style="dim"),
                Text(f"   Status: {session.status} | Started: {format_age(session.started_at)}", style="dim"),
                Text(f"   Attach: {attach_hint(session.tmux_session_name)}", style="green"),
                sep="\n",
            )

    async def _close_session(self, identifier: str) -> None:
        if not identifier:
            self.console.print("[red]Usage: /sessions close <session name, id or task number>[/red]")
            return
        session = self.session_store.find_session(identifier)
        if session is None:
            self.console.print(f"[red]Session not found: {identifier}[/red]")
            return
        await self.launcher.kill_session(session.tmux_session_name)
        self.session_store.update_status(session.id, "completed")
        self.console.print(f"[green]✓ Closed session {session.tmux_session_name}[/green]")

    def _set_coding_agent(self, agent_name: str) -> None:
        valid = ", ".join(CODING_AGENTS)
        if not agent_name:
            self.console.print(
                f"[yellow]Default coding agent: {self.config.default_coding_agent}. Available: {valid}[/yellow]"
            )
            return
        agent = get_agent_config(agent_name)
        if agent is None:
            self.console.print(f"[red]Unknown coding agent {agent_name!r}. Available: {valid}[/red]")
            return
        self.config.default_coding_agent = agent.name
        self._save_preferences()
        self.console.print(f"[green]✓ Default coding agent set to {agent.display_name}[/green]")

    def _set_name(self, name: str) -> None:
        if not name:
            self.console.print(f"[yellow]Assistant name: {self.config.assistant_name}. Usage: /set-name <name>[/yellow]")
            return
        self.config.assistant_name = name
        self.orchestrator.assistant_name = name
        self._save_preferences()
        self.console.print(f"[green]✓ Assistant name set to {name}[/green]")

    def _save_preferences(self) -> None:
        try:
            self.config.save_preferences()
        except OSError as e:
            logger.warning(f"Failed to save preferences: {e}")
            self.console.print(f"[red]❌ Could not save preferences: {format_error(e)}[/red]")

    def _show_help(self) -> None:
        """Show help information."""
        help_text = """
[bold]Available Commands:[/bold]
• /help - Show this help message
• /tasks - Show this week's tasks with per-state counts
• /sessions - List active coding agent sessions
• /sessions close <id> - Close a coding session by tmux name, id or task number
• /set-coding-agent <name> - Change the default coding agent (saved for next time)
• /set-name <name> - Change the assistant's name (saved for next time)
• /clear - Clear the conversation and start over
• /mode [normal|auto-accept] - Switch approval mode (toggles without an argument)
• /quit or /exit - Exit the chat

[bold]Tips:[/bold]
• Press Ctrl+C while the assistant is working to interrupt the current turn
• Reference a routine with @name to include its text in your message
• In auto-accept mode only shell commands still ask for approval
        """

        self.console.print(Panel(help_text.strip(), title="[cyan]❓ Help[/cyan]", border_style="cyan"))


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="taskmate", description="Terminal assistant for tasks and coding sessions")
    parser.add_argument("-p", "--prompt", help="Run a single prompt non-interactively and exit")
    parser.add_argument(
        "--auto-accept",
        action="store_true",
        help="Run tools without asking for approval (shell commands still ask)",
    )
    parser.add_argument("--log-level", default=None, help="Log level for stderr output (default: WARNING)")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the chat CLI."""
    args = parse_args(argv)
    setup_logging(LogConfig(level=args.log_level) if args.log_level else None)

    try:
        config = AssistantConfig.from_env()
        client = AnthropicClient(config=AnthropicConfig.from_env())
    except ValueError as e:
        Console(stderr=True).print(f"[red]❌ {format_error(e)}[/red]")
        return 2

    if args.auto_accept:
        config.mode = DevelopmentMode.AUTO_ACCEPT

    chat = ChatCLI(config, client, non_interactive=args.prompt is not None)
    if args.prompt is not None:
        return asyncio.run(chat.run_prompt(args.prompt))

    try:
        asyncio.run(chat.start())
    except KeyboardInterrupt:
        return 130
    return 0


if __name__ == "__main__":
    sys.exit(main())
