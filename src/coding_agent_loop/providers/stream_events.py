"""Canonical, backend-agnostic stream events.

Every provider adapter decodes its own wire framing into this union; the turn
engine only ever consumes these types.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal, Union

from coding_agent_loop.models import TokenUsage

StopReason = Literal["end_turn", "tool_use", "max_tokens", "stop_sequence"]


@dataclass(frozen=True)
class MessageStart:
    message_id: str = ""
    model: str = ""
    usage: TokenUsage | None = None
    type: Literal["message_start"] = field(default="message_start", init=False)


@dataclass(frozen=True)
class ContentBlockStart:
    index: int
    block_type: Literal["text", "tool_use"]
    tool_use_id: str | None = None
    tool_name: str | None = None
    # Some backends send the whole tool input up front instead of as fragments.
    input: dict[str, Any] | None = None
    type: Literal["content_block_start"] = field(default="content_block_start", init=False)


@dataclass(frozen=True)
class ContentBlockDelta:
    index: int
    delta_type: Literal["text_delta", "input_json_delta"]
    text: str = ""
    partial_json: str = ""
    type: Literal["content_block_delta"] = field(default="content_block_delta", init=False)


@dataclass(frozen=True)
class ContentBlockStop:
    index: int
    type: Literal["content_block_stop"] = field(default="content_block_stop", init=False)


@dataclass(frozen=True)
class MessageDelta:
    stop_reason: StopReason | None = None
    usage: TokenUsage | None = None
    type: Literal["message_delta"] = field(default="message_delta", init=False)


@dataclass(frozen=True)
class StreamError:
    error_type: str
    message: str
    type: Literal["error"] = field(default="error", init=False)


StreamEvent = Union[MessageStart, ContentBlockStart, ContentBlockDelta, ContentBlockStop, MessageDelta, StreamError]


def text_delta(index: int, text: str) -> ContentBlockDelta:
    return ContentBlockDelta(index=index, delta_type="text_delta", text=text)


def input_json_delta(index: int, partial_json: str) -> ContentBlockDelta:
    return ContentBlockDelta(index=index, delta_type="input_json_delta", partial_json=partial_json)
