"""Events the agent emits to its caller while processing one user request.

``QuestionAsked`` and ``PermissionRequested`` are requests: the agent suspends
until the handler resolves ``reply`` (or the request times out or is cancelled).
"""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Union

from coding_agent_loop.models import Message


@dataclass(frozen=True)
class MessageStarted:
    message_id: str
    type: str = field(default="message:start", init=False)


@dataclass(frozen=True)
class TextDelta:
    message_id: str
    text: str
    type: str = field(default="text:delta", init=False)


@dataclass(frozen=True)
class TextDone:
    message_id: str
    text: str
    type: str = field(default="text:done", init=False)


@dataclass(frozen=True)
class ToolStarted:
    tool_use_id: str
    name: str
    input: dict[str, Any]
    type: str = field(default="tool:start", init=False)


@dataclass(frozen=True)
class ToolDone:
    tool_use_id: str
    name: str
    output: str
    is_error: bool
    title: str | None = None
    type: str = field(default="tool:done", init=False)


@dataclass(frozen=True)
class MessageDone:
    message: Message
    type: str = field(default="message:done", init=False)


@dataclass(frozen=True)
class TurnDone:
    turn: int
    type: str = field(default="turn:done", init=False)


@dataclass(frozen=True)
class ErrorOccurred:
    message: str
    error_type: str = "error"
    type: str = field(default="error", init=False)


@dataclass(frozen=True, eq=False)
class QuestionAsked:
    question: str
    reply: asyncio.Future
    type: str = field(default="question:ask", init=False)


@dataclass(frozen=True, eq=False)
class PermissionRequested:
    capability: str
    target: str | None
    question: str
    reply: asyncio.Future
    type: str = field(default="permission:ask", init=False)


AgentEvent = Union[
    MessageStarted,
    TextDelta,
    TextDone,
    ToolStarted,
    ToolDone,
    MessageDone,
    TurnDone,
    ErrorOccurred,
    QuestionAsked,
    PermissionRequested,
]

# Handlers may be plain functions or coroutines.
EventHandler = Callable[[AgentEvent], Union[Awaitable[None], None]]


class EventEmitter:
    def __init__(self, handler: EventHandler | None = None):
        self._handler = handler

    @property
    def has_handler(self) -> bool:
        return self._handler is not None

    async def emit(self, event: AgentEvent) -> None:
        if self._handler is None:
            return
        result = self._handler(event)
        if inspect.isawaitable(result):
            await result
