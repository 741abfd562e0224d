"""Session store implementations.

InMemorySessionStore keeps everything in dicts and is used by tests and
short-lived CLI runs. JsonSessionStore persists one metadata file and
one append-only JSONL transcript per session:

    <base_dir>/<session_id>.json    session metadata (atomic rewrite)
    <base_dir>/<session_id>.jsonl   transcript, one entry per line

Sibling runners write different session ids, so they never contend on
the same file.
"""
from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any

from .models import (
    Session,
    SessionHistory,
    SessionStatus,
    TranscriptEntry,
    now_ms,
    entry_from_dict,
)
from .ports import SessionStore
from localdesk.shared.durable_write import append_json_line, atomic_write_json

logger = logging.getLogger(__name__)

_UPDATABLE_FIELDS = {
    "title",
    "model",
    "working_directory",
    "temperature",
    "status",
    "last_prompt",
}


def _apply_changes(session: Session, changes: dict[str, Any]) -> None:
    for key, value in changes.items():
        if key not in _UPDATABLE_FIELDS:
            raise ValueError(f"Session field {key!r} cannot be updated")
        if key == "status":
            value = SessionStatus(value)
        setattr(session, key, value)
    session.updated_at = now_ms()


class InMemorySessionStore(SessionStore):
    """Dict-backed session store. Single event loop only."""

    def __init__(self) -> None:
        self._sessions: dict[str, Session] = {}
        self._transcripts: dict[str, list[TranscriptEntry]] = {}

    async def create_session(
        self,
        *,
        title: str,
        model: str,
        working_directory: str | None = None,
        temperature: float | None = None,
    ) -> Session:
        session = Session(
            title=title,
            model=model,
            working_directory=working_directory,
            temperature=temperature,
        )
        self._sessions[session.id] = session
        self._transcripts[session.id] = []
        logger.debug("Created session %s (%s)", session.id[:8], title)
        return session

    async def get_session(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    async def list_sessions(self) -> list[Session]:
        return sorted(
            self._sessions.values(), key=lambda s: s.updated_at, reverse=True,
        )

    async def append(self, session_id: str, entry: TranscriptEntry) -> None:
        self._transcripts.setdefault(session_id, []).append(entry)

    async def read_history(self, session_id: str) -> SessionHistory:
        return SessionHistory(
            session_id=session_id,
            messages=list(self._transcripts.get(session_id, [])),
        )

    async def update_session(self, session_id: str, **changes: Any) -> Session | None:
        session = self._sessions.get(session_id)
        if session is None:
            logger.debug("update_session: unknown session %s", session_id[:8])
            return None
        _apply_changes(session, changes)
        return session

    async def add_tokens(
        self, session_id: str, input_tokens: int, output_tokens: int,
    ) -> None:
        session = self._sessions.get(session_id)
        if session is None:
            return
        session.input_tokens += input_tokens
        session.output_tokens += output_tokens

    async def delete_session(self, session_id: str) -> bool:
        self._transcripts.pop(session_id, None)
        return self._sessions.pop(session_id, None) is not None


class JsonSessionStore(SessionStore):
    """File-backed session store under ``base_dir``.

    File I/O runs in worker threads via asyncio.to_thread. A per-session
    asyncio.Lock serializes metadata rewrites for one session.
    """

    def __init__(self, base_dir: str | Path) -> None:
        self._base_dir = Path(base_dir).expanduser()
        self._base_dir.mkdir(parents=True, exist_ok=True)
        self._locks: dict[str, asyncio.Lock] = {}

    def _meta_path(self, session_id: str) -> Path:
        return self._base_dir / f"{session_id}.json"

    def _transcript_path(self, session_id: str) -> Path:
        return self._base_dir / f"{session_id}.jsonl"

    def _lock(self, session_id: str) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = self._locks[session_id] = asyncio.Lock()
        return lock

    def _read_meta(self, session_id: str) -> Session | None:
        path = self._meta_path(session_id)
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as exc:
            logger.warning("Unreadable session metadata %s: %s", path, exc)
            return None
        return Session.from_dict(data)

    def _write_meta(self, session: Session) -> None:
        atomic_write_json(self._meta_path(session.id), session.to_dict())

    async def create_session(
        self,
        *,
        title: str,
        model: str,
        working_directory: str | None = None,
        temperature: float | None = None,
    ) -> Session:
        session = Session(
            title=title,
            model=model,
            working_directory=working_directory,
            temperature=temperature,
        )
        async with self._lock(session.id):
            await asyncio.to_thread(self._write_meta, session)
        logger.info("Created session %s in %s", session.id[:8], self._base_dir)
        return session

    async def get_session(self, session_id: str) -> Session | None:
        return await asyncio.to_thread(self._read_meta, session_id)

    async def list_sessions(self) -> list[Session]:
        def _scan() -> list[Session]:
            sessions = []
            for path in self._base_dir.glob("*.json"):
                session = self._read_meta(path.stem)
                if session is not None:
                    sessions.append(session)
            return sessions

        sessions = await asyncio.to_thread(_scan)
        return sorted(sessions, key=lambda s: s.updated_at, reverse=True)

    async def append(self, session_id: str, entry: TranscriptEntry) -> None:
        async with self._lock(session_id):
            await asyncio.to_thread(
                append_json_line, self._transcript_path(session_id), entry.to_dict(),
            )

    async def read_history(self, session_id: str) -> SessionHistory:
        def _read() -> list[TranscriptEntry]:
            path = self._transcript_path(session_id)
            if not path.exists():
                return []
            entries: list[TranscriptEntry] = []
            with path.open(encoding="utf-8") as f:
                for lineno, line in enumerate(f, start=1):
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        entry = entry_from_dict(json.loads(line))
                    except ValueError:
                        logger.warning("Skipping corrupt line %d in %s", lineno, path)
                        continue
                    if entry is not None:
                        entries.append(entry)
            return entries

        messages = await asyncio.to_thread(_read)
        return SessionHistory(session_id=session_id, messages=messages)

    async def update_session(self, session_id: str, **changes: Any) -> Session | None:
        async with self._lock(session_id):
            session = await asyncio.to_thread(self._read_meta, session_id)
            if session is None:
                return None
            _apply_changes(session, changes)
            await asyncio.to_thread(self._write_meta, session)
            return session

    async def add_tokens(
        self, session_id: str, input_tokens: int, output_tokens: int,
    ) -> None:
        async with self._lock(session_id):
            session = await asyncio.to_thread(self._read_meta, session_id)
            if session is None:
                return
            session.input_tokens += input_tokens
            session.output_tokens += output_tokens
            session.updated_at = now_ms()
            await asyncio.to_thread(self._write_meta, session)

    async def delete_session(self, session_id: str) -> bool:
        def _delete() -> bool:
            found = False
            for path in (self._meta_path(session_id), self._transcript_path(session_id)):
                try:
                    path.unlink()
                    found = True
                except FileNotFoundError:
                    pass
            return found

        async with self._lock(session_id):
            found = await asyncio.to_thread(_delete)
        self._locks.pop(session_id, None)
        return found
