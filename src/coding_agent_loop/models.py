"""Conversation data model shared by the orchestrator, the providers and the session store.

Every record serializes to a plain dict with a fixed key order so that a stored
snapshot re-serializes byte-for-byte after a load.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal, Union
from uuid import uuid4

Role = Literal["user", "assistant", "system"]
ToolUseStatus = Literal["pending", "complete"]


def utc_now() -> str:
    return datetime.now(UTC).isoformat(timespec="milliseconds")


def new_id() -> str:
    return str(uuid4())


@dataclass
class TextBlock:
    text: str
    type: Literal["text"] = field(default="text", init=False)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "text": self.text}


@dataclass
class ImageBlock:
    media_type: str
    data: str
    type: Literal["image"] = field(default="image", init=False)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "media_type": self.media_type, "data": self.data}


@dataclass
class ToolUseBlock:
    id: str
    name: str
    input: dict[str, Any]
    status: ToolUseStatus = "pending"
    type: Literal["tool_use"] = field(default="tool_use", init=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "id": self.id,
            "name": self.name,
            "input": self.input,
            "status": self.status,
        }


@dataclass
class ToolResultBlock:
    tool_use_id: str
    output: str
    is_error: bool = False
    type: Literal["tool_result"] = field(default="tool_result", init=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "tool_use_id": self.tool_use_id,
            "output": self.output,
            "is_error": self.is_error,
        }


@dataclass
class ErrorBlock:
    message: str
    type: Literal["error"] = field(default="error", init=False)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "message": self.message}


ContentBlock = Union[TextBlock, ImageBlock, ToolUseBlock, ToolResultBlock, ErrorBlock]


def content_block_from_dict(data: dict[str, Any]) -> ContentBlock:
    block_type = data.get("type")
    if block_type == "text":
        return TextBlock(data["text"])
    if block_type == "image":
        return ImageBlock(data["media_type"], data["data"])
    if block_type == "tool_use":
        return ToolUseBlock(data["id"], data["name"], data["input"], data.get("status", "pending"))
    if block_type == "tool_result":
        return ToolResultBlock(data["tool_use_id"], data["output"], bool(data.get("is_error", False)))
    if block_type == "error":
        return ErrorBlock(data["message"])
    raise ValueError(f"Unknown content block type: {block_type!r}")


@dataclass
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_tokens: int | None = None
    cache_write_tokens: int | None = None

    def merge(self, other: TokenUsage | None) -> TokenUsage:
        """Combine partial counts reported at different points of a stream."""
        if other is None:
            return self
        return TokenUsage(
            input_tokens=other.input_tokens or self.input_tokens,
            output_tokens=other.output_tokens or self.output_tokens,
            cache_read_tokens=other.cache_read_tokens if other.cache_read_tokens is not None else self.cache_read_tokens,
            cache_write_tokens=(
                other.cache_write_tokens if other.cache_write_tokens is not None else self.cache_write_tokens
            ),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "cache_read_tokens": self.cache_read_tokens,
            "cache_write_tokens": self.cache_write_tokens,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TokenUsage:
        return cls(
            input_tokens=int(data.get("input_tokens", 0)),
            output_tokens=int(data.get("output_tokens", 0)),
            cache_read_tokens=data.get("cache_read_tokens"),
            cache_write_tokens=data.get("cache_write_tokens"),
        )


@dataclass
class Message:
    id: str
    role: Role
    content: list[ContentBlock]
    created_at: str
    model: str | None = None
    usage: TokenUsage | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def create(
        cls,
        role: Role,
        content: list[ContentBlock],
        *,
        metadata: dict[str, Any] | None = None,
    ) -> Message:
        return cls(id=new_id(), role=role, content=list(content), created_at=utc_now(), metadata=dict(metadata or {}))

    def tool_uses(self) -> list[ToolUseBlock]:
        return [b for b in self.content if isinstance(b, ToolUseBlock)]

    def text(self) -> str:
        return "".join(b.text for b in self.content if isinstance(b, TextBlock))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "role": self.role,
            "content": [b.to_dict() for b in self.content],
            "created_at": self.created_at,
            "model": self.model,
            "usage": self.usage.to_dict() if self.usage is not None else None,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Message:
        usage = data.get("usage")
        return cls(
            id=data["id"],
            role=data["role"],
            content=[content_block_from_dict(b) for b in data.get("content", [])],
            created_at=data["created_at"],
            model=data.get("model"),
            usage=TokenUsage.from_dict(usage) if usage is not None else None,
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass
class Session:
    id: str
    project_path: str
    created_at: str
    updated_at: str
    messages: list[Message] = field(default_factory=list)
    title: str | None = None
    continuation_token: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "project_path": self.project_path,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "title": self.title,
            "continuation_token": self.continuation_token,
            "metadata": self.metadata,
            "messages": [m.to_dict() for m in self.messages],
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=True)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Session:
        return cls(
            id=data["id"],
            project_path=data["project_path"],
            created_at=data["created_at"],
            updated_at=data["updated_at"],
            messages=[Message.from_dict(m) for m in data.get("messages", [])],
            title=data.get("title"),
            continuation_token=data.get("continuation_token"),
            metadata=dict(data.get("metadata") or {}),
        )

    @classmethod
    def from_json(cls, text: str) -> Session:
        return cls.from_dict(json.loads(text))

    def display_title(self) -> str:
        if self.title and self.title.strip():
            return self.title.strip()
        return default_title(self.messages)


@dataclass(frozen=True)
class SessionSummary:
    id: str
    title: str
    project_path: str
    created_at: str
    updated_at: str
    message_count: int


_TITLE_MAX_CHARS = 50


def default_title(messages: list[Message]) -> str:
    """First line of the first user-authored text block, capped at 50 characters."""
    for message in messages:
        if message.role != "user":
            continue
        for block in message.content:
            if isinstance(block, TextBlock):
                first_line = block.text.strip().split("\n")[0]
                if len(first_line) > _TITLE_MAX_CHARS:
                    return first_line[: _TITLE_MAX_CHARS - 3] + "..."
                return first_line
    return "New Session"
