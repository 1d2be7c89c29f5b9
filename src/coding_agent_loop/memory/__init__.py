from coding_agent_loop.memory.export import export_session, import_session
from coding_agent_loop.memory.pruning import prune_sessions
from coding_agent_loop.memory.session_store import SessionStore
from coding_agent_loop.memory.store import MemoryStore

__all__ = [
    "MemoryStore",
    "SessionStore",
    "export_session",
    "import_session",
    "prune_sessions",
]
