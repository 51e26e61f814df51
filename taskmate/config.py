"""Application configuration read from the environment and saved preferences."""

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from taskmate.models.conversation import DevelopmentMode
from taskmate.services.orchestrator import DEFAULT_MAX_ITERATIONS
from taskmate.tools.bash import DEFAULT_TIMEOUT_SECONDS
from taskmate.utils.logging import get_logger

logger = get_logger(__name__)

PREFERENCES_FILE = "preferences.json"


def _default_home() -> Path:
    return Path(os.getenv("TASKMATE_HOME", "~/.taskmate")).expanduser()


def load_preferences(path: Path) -> dict[str, Any]:
    """Read saved preferences; a missing or unreadable file means none."""
    if not path.exists():
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        logger.warning(f"Ignoring unreadable preferences file {path}: {e}")
        return {}
    return data if isinstance(data, dict) else {}


@dataclass
class AssistantConfig:
    """Configuration for the terminal assistant."""

    home: Path = field(default_factory=_default_home)
    mode: DevelopmentMode = DevelopmentMode.NORMAL
    max_iterations: int = DEFAULT_MAX_ITERATIONS
    default_coding_agent: str = "claude-code"
    bash_timeout: float = DEFAULT_TIMEOUT_SECONDS
    assistant_name: str = "Taskmate"

    @property
    def tasks_dir(self) -> Path:
        return self.home / "tasks"

    @property
    def routines_dir(self) -> Path:
        return self.home / "routines"

    @property
    def sessions_file(self) -> Path:
        return self.home / "sessions.json"

    @property
    def preferences_file(self) -> Path:
        return self.home / PREFERENCES_FILE

    def save_preferences(self) -> None:
        """Persist the settings changed with /set-name and /set-coding-agent."""
        self.home.mkdir(parents=True, exist_ok=True)
        preferences = {"assistant_name": self.assistant_name, "default_coding_agent": self.default_coding_agent}
        self.preferences_file.write_text(json.dumps(preferences, indent=2), encoding="utf-8")
        logger.debug(f"Saved preferences to {self.preferences_file}")

    @classmethod
    def from_env(cls) -> "AssistantConfig":
        """Build a config from ``TASKMATE_*`` environment variables.

        Saved preferences fill in the name and coding agent; environment
        variables take precedence over them.

        Raises:
            ValueError: a variable holds an unusable value
        """
        mode = os.getenv("TASKMATE_MODE", DevelopmentMode.NORMAL.value)
        try:
            development_mode = DevelopmentMode(mode)
        except ValueError:
            valid = ", ".join(m.value for m in DevelopmentMode)
            raise ValueError(f"TASKMATE_MODE must be one of: {valid} (got {mode!r})") from None

        max_iterations = int(os.getenv("TASKMATE_MAX_ITERATIONS", DEFAULT_MAX_ITERATIONS))
        if max_iterations < 1:
            raise ValueError("TASKMATE_MAX_ITERATIONS must be at least 1")

        home = _default_home()
        preferences = load_preferences(home / PREFERENCES_FILE)

        return cls(
            home=home,
            mode=development_mode,
            max_iterations=max_iterations,
            default_coding_agent=os.getenv(
                "TASKMATE_DEFAULT_CODING_AGENT", preferences.get("default_coding_agent", "claude-code")
            ),
            bash_timeout=float(os.getenv("TASKMATE_BASH_TIMEOUT", DEFAULT_TIMEOUT_SECONDS)),
            assistant_name=os.getenv("TASKMATE_NAME", preferences.get("assistant_name", "Taskmate")),
        )
