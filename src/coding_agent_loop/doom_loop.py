from __future__ import annotations

import json

from coding_agent_loop.models import Message, ToolUseBlock

DEFAULT_WINDOW = 10
DEFAULT_THRESHOLD = 3


def tool_call_signature(block: ToolUseBlock) -> str:
    return f"{block.name}:{json.dumps(block.input, sort_keys=True, ensure_ascii=True)}"


def detect_doom_loop(
    messages: list[Message],
    *,
    window: int = DEFAULT_WINDOW,
    threshold: int = DEFAULT_THRESHOLD,
) -> str | None:
    """Return the signature of the latest tool call if it repeats ``threshold`` times in the last ``window`` messages."""
    signatures = [
        tool_call_signature(block)
        for message in messages[-window:]
        for block in message.tool_uses()
    ]
    if not signatures:
        return None
    latest = signatures[-1]
    if signatures.count(latest) >= threshold:
        return latest
    return None
