from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta
from typing import Any

from loguru import logger

from coding_agent_loop.errors import SessionNotFoundError
from coding_agent_loop.memory.store import MemoryStore
from coding_agent_loop.models import ContentBlock, Message, Session, SessionSummary, new_id, utc_now


class SessionStore:
    """Durable sessions, one full JSON snapshot per session.

    Every ``update`` rewrites the whole record in a single statement, so a
    committed row is always a complete session. Writers to the same session id
    serialize through ``lock(session_id)``.
    """

    def __init__(self, store: MemoryStore):
        self._store = store
        self._locks: dict[str, asyncio.Lock] = {}

    def lock(self, session_id: str) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[session_id] = lock
        return lock

    def create(self, project_path: str, *, title: str | None = None, metadata: dict[str, Any] | None = None) -> Session:
        now = utc_now()
        session = Session(
            id=new_id(),
            project_path=project_path,
            created_at=now,
            updated_at=now,
            title=title,
            metadata=dict(metadata or {}),
        )
        self._write(session)
        logger.debug(f"Session created: id={session.id}, project={project_path}")
        return session

    def get(self, session_id: str) -> Session | None:
        row = self._store.execute(
            "SELECT snapshot_json FROM sessions WHERE id = ? LIMIT 1",
            (session_id,),
        ).fetchone()
        if row is None:
            return None
        return Session.from_json(row["snapshot_json"])

    def require(self, session_id: str) -> Session:
        session = self.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def update(self, session: Session) -> None:
        """Bump ``updated_at`` and persist the full snapshot (inserting it if new)."""
        session.updated_at = utc_now()
        self._write(session)

    def _write(self, session: Session) -> None:
        self._store.execute(
            """
            INSERT INTO sessions (id, project_path, title, created_at, updated_at, message_count, snapshot_json)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                project_path = excluded.project_path,
                title = excluded.title,
                updated_at = excluded.updated_at,
                message_count = excluded.message_count,
                snapshot_json = excluded.snapshot_json
            """,
            (
                session.id,
                session.project_path,
                session.display_title(),
                session.created_at,
                session.updated_at,
                len(session.messages),
                session.to_json(),
            ),
        )
        self._store.commit()

    def list(self, project_path: str | None = None) -> list[SessionSummary]:
        """Summaries, most recently updated first."""
        if project_path is None:
            rows = self._store.execute(
                """
                SELECT id, title, project_path, created_at, updated_at, message_count
                FROM sessions
                ORDER BY updated_at DESC, created_at DESC
                """
            ).fetchall()
        else:
            rows = self._store.execute(
                """
                SELECT id, title, project_path, created_at, updated_at, message_count
                FROM sessions
                WHERE project_path = ?
                ORDER BY updated_at DESC, created_at DESC
                """,
                (project_path,),
            ).fetchall()
        return [_summary(row) for row in rows]

    def get_recent(self, limit: int = 10) -> list[SessionSummary]:
        rows = self._store.execute(
            """
            SELECT id, title, project_path, created_at, updated_at, message_count
            FROM sessions
            ORDER BY updated_at DESC, created_at DESC
            LIMIT ?
            """,
            (max(1, limit),),
        ).fetchall()
        return [_summary(row) for row in rows]

    def delete(self, session_id: str) -> bool:
        cursor = self._store.execute("DELETE FROM sessions WHERE id = ?", (session_id,))
        self._store.commit()
        self._locks.pop(session_id, None)
        return cursor.rowcount > 0

    def prune(self, max_age: timedelta) -> int:
        """Delete sessions not updated within ``max_age``; returns how many were removed."""
        cutoff = (datetime.now(UTC) - max_age).isoformat(timespec="milliseconds")
        rows = self._store.execute("SELECT id FROM sessions WHERE updated_at < ?", (cutoff,)).fetchall()
        if rows:
            self._store.executemany("DELETE FROM sessions WHERE id = ?", [(str(row["id"]),) for row in rows])
            self._store.commit()
            for row in rows:
                self._locks.pop(str(row["id"]), None)
        logger.debug(f"Pruned {len(rows)} sessions older than {cutoff}")
        return len(rows)

    def add_message(self, session_id: str, message: Message) -> Session:
        session = self.require(session_id)
        session.messages.append(message)
        self.update(session)
        return session

    def update_message(self, session_id: str, message_id: str, content: list[ContentBlock]) -> Session:
        """Replace the content of the most recent message; earlier messages are immutable."""
        session = self.require(session_id)
        if not session.messages or session.messages[-1].id != message_id:
            raise ValueError(f"Only the most recent message can be updated (got {message_id})")
        if not content:
            raise ValueError("Message content must not be empty")
        session.messages[-1].content = list(content)
        self.update(session)
        return session


def _summary(row) -> SessionSummary:
    return SessionSummary(
        id=str(row["id"]),
        title=str(row["title"]),
        project_path=str(row["project_path"]),
        created_at=str(row["created_at"]),
        updated_at=str(row["updated_at"]),
        message_count=int(row["message_count"]),
    )
