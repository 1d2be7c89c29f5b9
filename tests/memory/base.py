import shutil
import unittest
from pathlib import Path
from uuid import uuid4

from coding_agent_loop.memory import MemoryStore, SessionStore


PROJECT_ROOT = Path(__file__).resolve().parents[2]


class MemoryStoreTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp_dir = PROJECT_ROOT / ".test-artifacts" / f"{self.__class__.__name__.lower()}-{uuid4().hex}"
        self._tmp_dir.mkdir(parents=True, exist_ok=True)
        self._store = MemoryStore(str(self._tmp_dir / "sessions.db"))
        self._sessions = SessionStore(self._store)

    def tearDown(self) -> None:
        self._store.close()
        shutil.rmtree(self._tmp_dir, ignore_errors=True)

    def _set_updated_at(self, session_id: str, updated_at: str) -> None:
        self._store.execute("UPDATE sessions SET updated_at = ? WHERE id = ?", (updated_at, session_id))
        self._store.commit()
