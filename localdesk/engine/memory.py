"""Long-term user memory kept in a markdown file."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path

from localdesk.shared.durable_write import atomic_write_text

logger = logging.getLogger(__name__)


class MemoryStore:
    """Reads and writes the memory file.

    A missing file means no memory. Read failures other than a missing
    file are logged and also treated as no memory, so a broken memory
    file never stops a run.
    """

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path).expanduser()

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> str | None:
        try:
            content = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            logger.warning("Failed to load memory from %s: %s", self._path, exc)
            return None
        logger.debug("Memory loaded from %s (%d chars)", self._path, len(content))
        return content or None

    def save(self, content: str) -> None:
        atomic_write_text(self._path, content)
        logger.info("Memory saved to %s", self._path)

    def create(self, content: str, memory_type: str = "general") -> Path:
        """Replace the memory file with a fresh headed document."""
        created = datetime.now(timezone.utc).strftime("%Y-%m-%d")
        self.save(
            f"# Memory ({memory_type})\n\nCreated: {created}\n\n---\n\n{content.strip()}\n"
        )
        return self._path

    def clear(self) -> bool:
        try:
            self._path.unlink()
        except FileNotFoundError:
            return False
        logger.info("Memory cleared at %s", self._path)
        return True

    def append(self, note: str) -> str:
        """Append a bullet line and return the new content."""
        current = self.load() or ""
        if current and not current.endswith("\n"):
            current += "\n"
        updated = f"{current}- {note.strip()}\n"
        self.save(updated)
        return updated
