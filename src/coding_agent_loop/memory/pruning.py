from __future__ import annotations

from datetime import timedelta

from loguru import logger

from coding_agent_loop.memory.session_store import SessionStore


def prune_sessions(
    store: SessionStore,
    *,
    max_age: timedelta | None = None,
    max_sessions: int = 0,
) -> int:
    """Drop sessions older than ``max_age``, then all but the newest ``max_sessions`` (0 = no cap)."""
    removed = store.prune(max_age) if max_age is not None else 0

    if max_sessions > 0:
        for summary in store.list()[max_sessions:]:
            if store.delete(summary.id):
                removed += 1

    if removed:
        logger.info(f"Session pruning removed {removed} session(s)")
    return removed
