"""Routines: reusable prompt snippets referenced as ``@name`` in user input."""

import re
from dataclasses import dataclass
from pathlib import Path

from taskmate.utils.logging import get_logger

logger = get_logger(__name__)

ROUTINE_PATTERN = re.compile(r"@(\S+)")


@dataclass(frozen=True)
class Routine:
    name: str
    content: str


class RoutineStore:
    """Routines loaded from ``<name>.md`` files plus programmatic registrations."""

    def __init__(self, routines_dir: Path | None = None):
        self.routines_dir = routines_dir
        self._routines: dict[str, Routine] = {}
        if routines_dir is not None:
            self.load()

    def load(self) -> int:
        """(Re)load routines from the routines directory.

        Returns:
            Number of routines loaded from disk
        """
        if self.routines_dir is None or not self.routines_dir.is_dir():
            return 0

        loaded = 0
        for path in sorted(self.routines_dir.glob("*.md")):
            try:
                content = path.read_text(encoding="utf-8").strip()
            except OSError as e:
                logger.warning(f"Failed to read routine {path}: {e}")
                continue
            self._routines[path.stem] = Routine(name=path.stem, content=content)
            loaded += 1
        logger.debug(f"Loaded {loaded} routines from {self.routines_dir}")
        return loaded

    def register(self, name: str, content: str) -> None:
        self._routines[name] = Routine(name=name, content=content.strip())

    def get(self, name: str) -> Routine | None:
        return self._routines.get(name)

    def names(self) -> list[str]:
        return sorted(self._routines)

    def expand(self, text: str) -> str:
        """Replace every ``@name`` naming a known routine with its content."""

        def substitute(match: re.Match[str]) -> str:
            routine = self._routines.get(match.group(1))
            return routine.content if routine else match.group(0)

        return ROUTINE_PATTERN.sub(substitute, text)
