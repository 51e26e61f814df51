"""Coding session storage backed by a single JSON file."""

import json
import random
import string
import uuid
from datetime import UTC, datetime
from pathlib import Path

from taskmate.models.session import CodingSession, SessionStatus
from taskmate.utils.logging import get_logger

logger = get_logger(__name__)


def _random_suffix(length: int = 5) -> str:
    return "".join(random.choices(string.ascii_lowercase, k=length))


class CodingSessionStore:
    """CRUD for coding sessions, persisted as ``{id: session}`` JSON."""

    def __init__(self, path: Path):
        """Initialize the store.

        Args:
            path: JSON file holding all sessions; created on first save
        """
        self.path = Path(path)

    def _load(self) -> dict[str, CodingSession]:
        if not self.path.exists():
            return {}
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning(f"Could not read sessions file {self.path}: {e}")
            return {}

        sessions: dict[str, CodingSession] = {}
        for session_id, data in raw.items():
            try:
                sessions[session_id] = CodingSession.from_dict(data)
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping invalid session {session_id}: {e}")
        return sessions

    def _dump(self, sessions: dict[str, CodingSession]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = {session_id: session.as_dict() for session_id, session in sessions.items()}
        self.path.write_text(json.dumps(payload, indent=2), encoding="utf-8")

    def create_session(
        self,
        agent_name: str,
        task_description: str,
        working_directory: str,
        task_number: int | None = None,
        context_provided: str = "",
        agent_session_id: str | None = None,
    ) -> CodingSession:
        """Create and persist a new session.

        tmux session names are ``task-<n>-<suffix>`` for task-linked sessions and
        ``coding-<suffix>`` otherwise.
        """
        suffix = _random_suffix()
        tmux_name = f"task-{task_number}-{suffix}" if task_number else f"coding-{suffix}"
        session = CodingSession(
            id=str(uuid.uuid4()),
            tmux_session_name=tmux_name,
            agent_name=agent_name,
            task_description=task_description,
            working_directory=working_directory,
            task_number=task_number,
            agent_session_id=agent_session_id,
            context_provided=context_provided,
        )
        self.save_session(session)
        return session

    def save_session(self, session: CodingSession) -> None:
        sessions = self._load()
        sessions[session.id] = session
        self._dump(sessions)

    def get_session(self, session_id: str) -> CodingSession | None:
        return self._load().get(session_id)

    def all_sessions(self) -> list[CodingSession]:
        return sorted(self._load().values(), key=lambda session: session.started_at)

    def find_session(self, identifier: str) -> CodingSession | None:
        """Find a session by tmux name, id, or task number (``42`` / ``task-42``).

        Returns None when a task number matches more than one open session.
        """
        sessions = self.all_sessions()
        for session in sessions:
            if identifier in (session.tmux_session_name, session.id):
                return session

        candidate = identifier.removeprefix("task-").split("-")[0]
        if not candidate.isdigit():
            return None
        matches = self.sessions_for_task(int(candidate))
        return matches[0] if len(matches) == 1 else None

    def sessions_for_task(self, task_number: int) -> list[CodingSession]:
        return [s for s in self.all_sessions() if s.task_number == task_number and s.status != "completed"]

    def update_status(self, session_id: str, status: SessionStatus) -> CodingSession | None:
        sessions = self._load()
        session = sessions.get(session_id)
        if session is None:
            return None
        session.status = status
        session.last_activity = datetime.now(UTC)
        self._dump(sessions)
        return session

    def delete_session(self, session_id: str) -> bool:
        sessions = self._load()
        if sessions.pop(session_id, None) is None:
            return False
        self._dump(sessions)
        return True

    def active_sessions(self) -> list[CodingSession]:
        return [s for s in self.all_sessions() if s.status in ("active", "detached")]
