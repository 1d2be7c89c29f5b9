from __future__ import annotations

import json
from typing import Literal

from coding_agent_loop.models import (
    ErrorBlock,
    ImageBlock,
    Session,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
    new_id,
    utc_now,
)

EXPORT_VERSION = "1.0"
_RESULT_PREVIEW_CHARS = 1000

ExportFormat = Literal["json", "markdown"]


def export_session(session: Session, fmt: ExportFormat = "json", *, include_tool_results: bool = False) -> str:
    if fmt == "markdown":
        return _to_markdown(session, include_tool_results)
    if fmt != "json":
        raise ValueError(f"Unsupported export format: {fmt!r}")
    return json.dumps(
        {"version": EXPORT_VERSION, "exported_at": utc_now(), "session": session.to_dict()},
        indent=2,
    )


def import_session(text: str) -> Session:
    """Parse an exported JSON session under a fresh id. Call ``SessionStore.update`` to persist it."""
    try:
        exported = json.loads(text)
    except json.JSONDecodeError as ex:
        raise ValueError(f"Invalid JSON export: {ex}") from ex
    if not isinstance(exported, dict) or exported.get("version") != EXPORT_VERSION:
        version = exported.get("version") if isinstance(exported, dict) else None
        raise ValueError(f"Unsupported export version: {version!r}")

    session = Session.from_dict(exported["session"])
    original_id = session.id
    session.id = new_id()
    session.metadata = {**session.metadata, "imported_from": original_id, "imported_at": utc_now()}
    return session


def _to_markdown(session: Session, include_tool_results: bool) -> str:
    parts = [
        f"# Session: {session.display_title()}",
        "",
        f"**Id:** {session.id}",
        f"**Project:** {session.project_path}",
        f"**Created:** {session.created_at}",
        f"**Updated:** {session.updated_at}",
        "",
        "---",
        "",
    ]

    for message in session.messages:
        parts.append(f"## {message.role.capitalize()}")
        parts.append("")
        for block in message.content:
            if isinstance(block, TextBlock):
                parts.append(block.text)
            elif isinstance(block, ImageBlock):
                parts.append(f"*[image: {block.media_type}]*")
            elif isinstance(block, ToolUseBlock):
                parts.append(f"**Tool call:** `{block.name}`")
                parts.append("```json")
                parts.append(json.dumps(block.input, indent=2))
                parts.append("```")
            elif isinstance(block, ToolResultBlock) and include_tool_results:
                label = "Tool error" if block.is_error else "Tool result"
                output = block.output
                if len(output) > _RESULT_PREVIEW_CHARS:
                    output = output[:_RESULT_PREVIEW_CHARS] + "\n...(truncated)"
                parts.append(f"**{label}:**")
                parts.append("```")
                parts.append(output)
                parts.append("```")
            elif isinstance(block, ErrorBlock):
                parts.append(f"> **Error:** {block.message}")
        parts.extend(["", "---", ""])

    return "\n".join(parts)
