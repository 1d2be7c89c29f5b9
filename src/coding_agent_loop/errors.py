class AgentLoopError(Exception):
    """Base class for errors raised by the agent loop."""


class TransportError(AgentLoopError):
    """Network-level failure talking to a model backend (timeout, reset, DNS)."""

    def __init__(self, provider: str, message: str):
        super().__init__(f"{provider}: {message}")
        self.provider = provider


class EventStreamError(AgentLoopError):
    """A binary event-stream body could not be framed."""


class SessionNotFoundError(AgentLoopError, KeyError):
    def __init__(self, session_id: str):
        super().__init__(session_id)
        self.session_id = session_id

    def __str__(self) -> str:
        return f"Session not found: {self.session_id}"
