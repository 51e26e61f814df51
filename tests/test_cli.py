"""Tests for environment configuration and the terminal front end."""

import asyncio
import io
import json
import os
from pathlib import Path
from unittest.mock import AsyncMock, Mock, patch

import pytest
from conftest import ScriptedModelClient, call, reply
from rich.console import Console

from taskmate.cli import ChatCLI, TerminalInput, main, parse_args
from taskmate.clients.tmux import TmuxLauncher
from taskmate.config import AssistantConfig
from taskmate.models.conversation import DevelopmentMode
from taskmate.models.tasks import Task, TaskState


class TestAssistantConfig:
    """Tests for AssistantConfig.from_env."""

    def test_defaults(self):
        """Test values when nothing is set."""
        with patch.dict("os.environ", {"TASKMATE_HOME": "/data/tm"}, clear=True):
            config = AssistantConfig.from_env()

        assert config.mode == DevelopmentMode.NORMAL
        assert config.max_iterations == 25
        assert config.default_coding_agent == "claude-code"
        assert config.tasks_dir == Path("/data/tm/tasks")
        assert config.routines_dir == Path("/data/tm/routines")
        assert config.sessions_file == Path("/data/tm/sessions.json")

    def test_overrides(self):
        """Test that every variable is honored."""
        env = {
            "TASKMATE_MODE": "auto-accept",
            "TASKMATE_MAX_ITERATIONS": "5",
            "TASKMATE_DEFAULT_CODING_AGENT": "aider",
            "TASKMATE_BASH_TIMEOUT": "30",
            "TASKMATE_NAME": "Jarvis",
        }
        with patch.dict("os.environ", env):
            config = AssistantConfig.from_env()

        assert config.mode == DevelopmentMode.AUTO_ACCEPT
        assert config.max_iterations == 5
        assert config.default_coding_agent == "aider"
        assert config.bash_timeout == 30.0
        assert config.assistant_name == "Jarvis"

    def test_invalid_mode(self):
        """Test that an unknown mode lists the valid ones."""
        with patch.dict("os.environ", {"TASKMATE_MODE": "yolo"}):
            with pytest.raises(ValueError, match="normal, auto-accept"):
                AssistantConfig.from_env()

    def test_invalid_max_iterations(self):
        """Test that the iteration cap must be positive."""
        with patch.dict("os.environ", {"TASKMATE_MAX_ITERATIONS": "0"}):
            with pytest.raises(ValueError, match="at least 1"):
                AssistantConfig.from_env()

    def test_saved_preferences(self, tmp_path):
        """Test that saved preferences apply and environment variables win over them."""
        preferences = {"assistant_name": "Jarvis", "default_coding_agent": "aider"}
        (tmp_path / "preferences.json").write_text(json.dumps(preferences))

        with patch.dict("os.environ", {"TASKMATE_HOME": str(tmp_path)}, clear=True):
            saved = AssistantConfig.from_env()
        with patch.dict("os.environ", {"TASKMATE_HOME": str(tmp_path), "TASKMATE_NAME": "Friday"}, clear=True):
            overridden = AssistantConfig.from_env()

        assert saved.assistant_name == "Jarvis"
        assert saved.default_coding_agent == "aider"
        assert overridden.assistant_name == "Friday"
        assert overridden.default_coding_agent == "aider"

    def test_unreadable_preferences_ignored(self, tmp_path):
        """Test that a corrupt preferences file falls back to defaults."""
        (tmp_path / "preferences.json").write_text("{not json")

        with patch.dict("os.environ", {"TASKMATE_HOME": str(tmp_path)}, clear=True):
            config = AssistantConfig.from_env()

        assert config.assistant_name == "Taskmate"
        assert config.default_coding_agent == "claude-code"


@pytest.fixture
def launcher():
    """Launcher reporting every tmux session as alive."""
    mock = Mock(spec=TmuxLauncher)
    mock.session_exists = AsyncMock(return_value=True)
    mock.kill_session = AsyncMock(return_value=True)
    return mock


class TestChatCLI:
    """Tests for ChatCLI turns with a scripted model."""

    def _cli(self, tmp_path, script, non_interactive=True, typed="", launcher=None):
        console = Console(file=io.StringIO(), width=100)
        client = ScriptedModelClient(script)
        cli = ChatCLI(
            AssistantConfig(home=tmp_path),
            client,
            console=console,
            non_interactive=non_interactive,
            launcher=launcher,
            input_reader=TerminalInput(io.StringIO(typed)),
        )
        return cli, client, console

    @pytest.mark.asyncio
    async def test_prompt_success(self, tmp_path):
        """Test that a completed turn exits 0 and renders the reply."""
        cli, _, console = self._cli(tmp_path, [reply("Hello there")])

        assert await cli.run_prompt("hi") == 0
        assert "Hello there" in console.file.getvalue()

    @pytest.mark.asyncio
    async def test_prompt_needs_approval(self, tmp_path):
        """Test that a gated tool in non-interactive mode exits 1 without running."""
        cli, _, _ = self._cli(tmp_path, [reply(tool_calls=[call("new_task", {"description": "Buy milk"})])])

        assert await cli.run_prompt("add milk") == 1
        assert not (tmp_path / "tasks").exists() or not any((tmp_path / "tasks").iterdir())

    @pytest.mark.asyncio
    async def test_prompt_model_error(self, tmp_path):
        """Test that a failing model call exits 1."""
        cli, _, console = self._cli(tmp_path, [RuntimeError("overloaded")])

        assert await cli.run_prompt("hi") == 1
        assert "overloaded" in console.file.getvalue()

    @pytest.mark.asyncio
    async def test_interactive_approval(self, tmp_path):
        """Test that an approved call runs and the task is written."""
        cli, _, console = self._cli(
            tmp_path,
            [reply(tool_calls=[call("new_task", {"description": "Buy milk"})]), reply("Added.")],
            non_interactive=False,
            typed="y\n",
        )

        outcome = await cli.run_turn("add milk")

        assert outcome.reason == "complete"
        week_files = list((tmp_path / "tasks").glob("*.md"))
        assert len(week_files) == 1
        assert "Buy milk" in week_files[0].read_text()
        assert "Approval needed" in console.file.getvalue()

    @pytest.mark.asyncio
    async def test_interactive_rejection(self, tmp_path):
        """Test that a declined call cancels the turn."""
        cli, _, _ = self._cli(
            tmp_path,
            [reply(tool_calls=[call("new_task", {"description": "Buy milk"})])],
            non_interactive=False,
            typed="n\n",
        )

        outcome = await cli.run_turn("add milk")

        assert outcome.reason == "cancelled"

    @pytest.mark.asyncio
    async def test_approval_reasks_on_unclear_answer(self, tmp_path):
        """Test that anything other than y/n asks again."""
        cli, _, console = self._cli(
            tmp_path,
            [reply(tool_calls=[call("new_task", {"description": "Buy milk"})]), reply("Added.")],
            non_interactive=False,
            typed="maybe\nyes\n",
        )

        outcome = await cli.run_turn("add milk")

        assert outcome.reason == "complete"
        assert "Please enter Y or N" in console.file.getvalue()

    @pytest.mark.asyncio
    async def test_cancelled_approval_leaves_input_for_chat_prompt(self, tmp_path):
        """Test that a line typed after cancelling an approval reaches the next reader."""
        read_fd, write_fd = os.pipe()
        reader = os.fdopen(read_fd, "r")
        console = Console(file=io.StringIO(), width=100)
        cli = ChatCLI(
            AssistantConfig(home=tmp_path),
            ScriptedModelClient([reply(tool_calls=[call("new_task", {"description": "Buy milk"})])]),
            console=console,
            input_reader=TerminalInput(reader),
        )

        try:
            turn = asyncio.create_task(cli.run_turn("add milk"))
            while cli.approvals.get_pending() is None:
                await asyncio.sleep(0.01)
            await asyncio.sleep(0.05)

            cli.orchestrator.cancel()
            outcome = await asyncio.wait_for(turn, timeout=2)
            await asyncio.gather(*cli._approval_tasks)

            os.write(write_fd, b"hello\n")
            assert await asyncio.wait_for(cli.input.readline(), timeout=2) == "hello"
        finally:
            os.close(write_fd)
            if cli.input._thread is not None:
                cli.input._thread.join(timeout=2)
            reader.close()

        assert outcome.reason == "cancelled"
        assert not (tmp_path / "tasks").exists()

    @pytest.mark.asyncio
    async def test_routines_loaded_from_home(self, tmp_path):
        """Test that routines in the home directory expand in prompts."""
        (tmp_path / "routines").mkdir()
        (tmp_path / "routines" / "standup.md").write_text("List my in-progress tasks.")
        cli, client, _ = self._cli(tmp_path, [reply("Nothing in progress.")])

        await cli.run_prompt("@standup")

        assert client.requests[0][-1].content == "List my in-progress tasks."

    def test_routines_read_once(self, tmp_path):
        """Test that building the CLI reads each routine file once."""
        (tmp_path / "routines").mkdir()
        (tmp_path / "routines" / "standup.md").write_text("List my in-progress tasks.")

        with patch.object(Path, "read_text", autospec=True, side_effect=Path.read_text) as read_text:
            self._cli(tmp_path, [])

        routine_reads = [c for c in read_text.call_args_list if c.args[0].name == "standup.md"]
        assert len(routine_reads) == 1

    def test_switch_mode(self, tmp_path):
        """Test toggling and explicit mode switches."""
        cli, _, console = self._cli(tmp_path, [])

        cli._switch_mode("")
        assert cli.orchestrator.mode == DevelopmentMode.AUTO_ACCEPT
        cli._switch_mode("normal")
        assert cli.orchestrator.mode == DevelopmentMode.NORMAL
        cli._switch_mode("turbo")
        assert cli.orchestrator.mode == DevelopmentMode.NORMAL
        assert "Unknown mode 'turbo'" in console.file.getvalue()

    @pytest.mark.asyncio
    async def test_chat_loop_reads_typed_lines(self, tmp_path):
        """Test that start() runs turns and commands until /quit."""
        cli, client, console = self._cli(tmp_path, [reply("Hi!")], non_interactive=False, typed="hello\n/help\n/quit\n")

        await cli.start()

        output = console.file.getvalue()
        assert client.requests[0][-1].content == "hello"
        assert "Available Commands" in output
        assert "Goodbye" in output

    @pytest.mark.asyncio
    async def test_chat_loop_ends_on_eof(self, tmp_path):
        """Test that closing stdin ends the session."""
        cli, client, console = self._cli(tmp_path, [], non_interactive=False)

        await cli.start()

        assert client.requests == []
        assert "Goodbye" in console.file.getvalue()


class TestSlashCommands:
    """Tests for the slash commands handled by ChatCLI."""

    def _cli(self, tmp_path, launcher=None):
        console = Console(file=io.StringIO(), width=120)
        cli = ChatCLI(
            AssistantConfig(home=tmp_path),
            ScriptedModelClient([]),
            console=console,
            launcher=launcher,
            input_reader=TerminalInput(io.StringIO()),
        )
        return cli, console

    @pytest.mark.asyncio
    async def test_tasks(self, tmp_path):
        """Test that /tasks shows this week's tasks with counts per state."""
        cli, console = self._cli(tmp_path)
        await cli.task_store.write_week_tasks(
            [
                Task(number=1, description="Buy milk"),
                Task(number=2, description="Fix login bug", state=TaskState.IN_PROGRESS),
            ]
        )

        await cli.handle_command("/tasks")

        output = console.file.getvalue()
        assert f"Tasks for {cli.task_store.current_week_file().removesuffix('.md')}" in output
        assert "Todo: 1 | In Progress: 1 | Completed: 0" in output
        assert "Buy milk" in output
        assert "Fix login bug" in output

    @pytest.mark.asyncio
    async def test_tasks_empty_week(self, tmp_path):
        """Test that /tasks works before any task file exists."""
        cli, console = self._cli(tmp_path)

        await cli.handle_command("/tasks")

        assert "Todo: 0 | In Progress: 0 | Completed: 0" in console.file.getvalue()

    @pytest.mark.asyncio
    async def test_sessions(self, tmp_path, launcher):
        """Test that /sessions lists live sessions and marks dead ones completed."""
        cli, console = self._cli(tmp_path, launcher)
        alive = cli.session_store.create_session("claude-code", "Fix login bug", str(tmp_path), task_number=3)
        dead = cli.session_store.create_session("aider", "Write docs", str(tmp_path))
        launcher.session_exists.side_effect = lambda name: name == alive.tmux_session_name

        await cli.handle_command("/sessions")

        output = console.file.getvalue()
        assert "[claude-code] Task #3: Fix login bug" in output
        assert "Started: just now" in output
        assert f"tmux attach -t {alive.tmux_session_name}" in output
        assert "Write docs" not in output
        assert cli.session_store.get_session(dead.id).status == "completed"

    @pytest.mark.asyncio
    async def test_sessions_none_active(self, tmp_path, launcher):
        """Test the message shown when nothing is running."""
        cli, console = self._cli(tmp_path, launcher)

        await cli.handle_command("/sessions")

        assert "No active coding sessions" in console.file.getvalue()

    @pytest.mark.asyncio
    async def test_sessions_close(self, tmp_path, launcher):
        """Test that /sessions close kills the tmux session and marks it completed."""
        cli, console = self._cli(tmp_path, launcher)
        session = cli.session_store.create_session("claude-code", "Fix login bug", str(tmp_path), task_number=3)

        await cli.handle_command("/sessions close 3")

        launcher.kill_session.assert_awaited_once_with(session.tmux_session_name)
        assert cli.session_store.get_session(session.id).status == "completed"
        assert f"Closed session {session.tmux_session_name}" in console.file.getvalue()

    @pytest.mark.asyncio
    async def test_sessions_close_unknown(self, tmp_path, launcher):
        """Test closing a session that does not exist."""
        cli, console = self._cli(tmp_path, launcher)

        await cli.handle_command("/sessions close task-99")

        launcher.kill_session.assert_not_called()
        assert "Session not found: task-99" in console.file.getvalue()

    @pytest.mark.asyncio
    async def test_set_coding_agent(self, tmp_path):
        """Test that /set-coding-agent switches and saves the default agent."""
        cli, console = self._cli(tmp_path)

        await cli.handle_command("/set-coding-agent aider")

        assert cli.config.default_coding_agent == "aider"
        saved = json.loads((tmp_path / "preferences.json").read_text())
        assert saved["default_coding_agent"] == "aider"
        assert "Default coding agent set to Aider" in console.file.getvalue()

    @pytest.mark.asyncio
    async def test_set_coding_agent_unknown(self, tmp_path):
        """Test that an unknown agent is refused and the valid ones are listed."""
        cli, console = self._cli(tmp_path)

        await cli.handle_command("/set-coding-agent vim")

        assert cli.config.default_coding_agent == "claude-code"
        assert not (tmp_path / "preferences.json").exists()
        output = console.file.getvalue()
        assert "Unknown coding agent 'vim'" in output
        assert "claude-code, cursor, aider, codex" in output

    @pytest.mark.asyncio
    async def test_set_coding_agent_used_by_launch_tool(self, tmp_path, launcher):
        """Test that sessions launched after the switch use the new default agent."""
        launcher.is_installed.return_value = True
        launcher.is_agent_installed.return_value = True
        launcher.launch = AsyncMock()
        cli, _ = self._cli(tmp_path, launcher)

        await cli.handle_command("/set-coding-agent codex")
        await cli.orchestrator.executor.execute(
            call("launch_coding_session", {"task_description": "Refactor parser", "working_directory": str(tmp_path)})
        )

        [session] = cli.session_store.all_sessions()
        assert session.agent_name == "codex"

    @pytest.mark.asyncio
    async def test_set_name(self, tmp_path):
        """Test that /set-name renames the assistant and saves it."""
        cli, console = self._cli(tmp_path)

        await cli.handle_command("/set-name Jarvis")

        assert cli.config.assistant_name == "Jarvis"
        assert "You are Jarvis" in cli.orchestrator.system_message().content
        saved = json.loads((tmp_path / "preferences.json").read_text())
        assert saved["assistant_name"] == "Jarvis"
        assert "Assistant name set to Jarvis" in console.file.getvalue()

    @pytest.mark.asyncio
    async def test_unknown_command(self, tmp_path):
        """Test that unknown commands point at /help."""
        cli, console = self._cli(tmp_path)

        await cli.handle_command("/deploy")

        assert "Unknown command /deploy" in console.file.getvalue()

    def test_help_lists_commands(self, tmp_path):
        """Test that /help mentions every command."""
        cli, console = self._cli(tmp_path)

        cli._show_help()

        output = console.file.getvalue()
        for command in ("/tasks", "/sessions", "/set-coding-agent", "/set-name", "/mode", "/clear", "/quit"):
            assert command in output


class TestMain:
    """Tests for argument parsing and the entry point."""

    def test_parse_args(self):
        """Test prompt and auto-accept flags."""
        args = parse_args(["-p", "hello", "--auto-accept"])

        assert args.prompt == "hello"
        assert args.auto_accept is True
        assert args.log_level is None

    def test_missing_api_key_exits_2(self):
        """Test that configuration errors exit with status 2."""
        with patch.dict("os.environ", {}, clear=True):
            assert main(["-p", "hi"]) == 2
