from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from loguru import logger

from coding_agent_loop.cancellation import CancellationToken
from coding_agent_loop.permissions import PermissionChecker

# question -> answer; an empty answer means the user gave none.
AskFn = Callable[[str], Awaitable[str]]


async def no_answer(_: str) -> str:
    return ""


@dataclass
class ToolResult:
    output: str
    is_error: bool = False
    title: str | None = None
    metadata: dict[str, Any] | None = None


@dataclass
class ToolContext:
    """Everything one tool invocation may touch besides its input."""

    session_id: str
    tool_call_id: str
    working_directory: str
    cancel_token: CancellationToken
    permissions: PermissionChecker
    ask: AskFn = no_answer
    log: Any = logger
    # Conversation-scoped scratch state shared by all tool calls of one Agent.
    state: dict[str, Any] = field(default_factory=dict)

    def resolve_path(self, path: str) -> Path:
        candidate = Path(path).expanduser()
        if not candidate.is_absolute():
            candidate = Path(self.working_directory) / candidate
        return candidate.resolve()


@runtime_checkable
class Tool(Protocol):
    @property
    def name(self) -> str: ...

    @property
    def description(self) -> str: ...

    @property
    def input_schema(self) -> dict[str, Any]: ...

    async def execute(self, tool_input: dict[str, Any], context: ToolContext) -> ToolResult: ...


def permission_denied(reason: str | None) -> ToolResult:
    """A denial is reported to the model as a normal result, not a tool failure."""
    return ToolResult(f"Permission denied: {reason or 'not allowed'}", title="Permission denied")
