from __future__ import annotations

from typing import Any

from loguru import logger
from tenacity import retry_if_exception_type, stop_after_attempt, wait_exponential

from coding_agent_loop.models import (
    ErrorBlock,
    ImageBlock,
    Message,
    TextBlock,
    TokenUsage,
    ToolResultBlock,
    ToolUseBlock,
)
from coding_agent_loop.providers.stream_events import (
    ContentBlockStart,
    ContentBlockStop,
    MessageDelta,
    MessageStart,
    StreamError,
    StreamEvent,
    input_json_delta,
    text_delta,
)


def _on_retry(retry_state) -> None:
    attempt = retry_state.attempt_number
    wait = retry_state.next_action.sleep if retry_state.next_action else 0
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    reason = type(exc).__name__ if exc else "Unknown"
    logger.warning(f"{reason}. Retrying in {wait:.0f}s (attempt {attempt})...")


def default_retry_kwargs(exception_types: tuple[type[Exception], ...], *, max_attempts: int = 5) -> dict:
    return {
        "retry": retry_if_exception_type(exception_types),
        "wait": wait_exponential(multiplier=10, min=10, max=320),
        "stop": stop_after_attempt(max(1, max_attempts)),
        "before_sleep": _on_retry,
        "reraise": True,
    }


def to_anthropic_messages(messages: list[Message]) -> list[dict]:
    """Convert stored messages to the Anthropic Messages API shape.

    System messages travel in the separate ``system`` parameter and error blocks are
    local bookkeeping, so both are left out.
    """
    out: list[dict] = []
    for msg in messages:
        if msg.role == "system":
            continue
        content: list[dict] = []
        for block in msg.content:
            if isinstance(block, TextBlock):
                if block.text:
                    content.append({"type": "text", "text": block.text})
            elif isinstance(block, ImageBlock):
                content.append({
                    "type": "image",
                    "source": {"type": "base64", "media_type": block.media_type, "data": block.data},
                })
            elif isinstance(block, ToolUseBlock):
                content.append({"type": "tool_use", "id": block.id, "name": block.name, "input": block.input})
            elif isinstance(block, ToolResultBlock):
                content.append({
                    "type": "tool_result",
                    "tool_use_id": block.tool_use_id,
                    "content": block.output,
                    "is_error": block.is_error,
                })
            elif isinstance(block, ErrorBlock):
                continue
        if content:
            out.append({"role": msg.role, "content": content})
    return out


def _field(obj: Any, name: str) -> Any:
    if obj is None:
        return None
    if isinstance(obj, dict):
        return obj.get(name)
    return getattr(obj, name, None)


def usage_from_anthropic(usage: Any) -> TokenUsage | None:
    if usage is None:
        return None
    return TokenUsage(
        input_tokens=int(_field(usage, "input_tokens") or 0),
        output_tokens=int(_field(usage, "output_tokens") or 0),
        cache_read_tokens=_field(usage, "cache_read_input_tokens"),
        cache_write_tokens=_field(usage, "cache_creation_input_tokens"),
    )


class AnthropicEventTranslator:
    """Translate Anthropic-format stream events (SDK objects or plain dicts) to canonical events.

    Block types the loop does not model (e.g. thinking) are dropped together with
    their deltas and stop event.
    """

    def __init__(self) -> None:
        self._skipped: set[int] = set()

    def translate(self, event: Any) -> list[StreamEvent]:
        event_type = _field(event, "type")

        if event_type == "message_start":
            message = _field(event, "message")
            return [
                MessageStart(
                    message_id=_field(message, "id") or "",
                    model=_field(message, "model") or "",
                    usage=usage_from_anthropic(_field(message, "usage")),
                )
            ]

        if event_type == "content_block_start":
            index = int(_field(event, "index") or 0)
            block = _field(event, "content_block")
            block_type = _field(block, "type")
            if block_type == "text":
                out: list[StreamEvent] = [ContentBlockStart(index=index, block_type="text")]
                initial_text = _field(block, "text")
                if initial_text:
                    out.append(text_delta(index, initial_text))
                return out
            if block_type == "tool_use":
                initial_input = _field(block, "input")
                return [
                    ContentBlockStart(
                        index=index,
                        block_type="tool_use",
                        tool_use_id=_field(block, "id"),
                        tool_name=_field(block, "name"),
                        input=dict(initial_input) if initial_input else None,
                    )
                ]
            self._skipped.add(index)
            return []

        if event_type == "content_block_delta":
            index = int(_field(event, "index") or 0)
            if index in self._skipped:
                return []
            delta = _field(event, "delta")
            delta_type = _field(delta, "type")
            if delta_type == "text_delta":
                return [text_delta(index, _field(delta, "text") or "")]
            if delta_type == "input_json_delta":
                return [input_json_delta(index, _field(delta, "partial_json") or "")]
            return []

        if event_type == "content_block_stop":
            index = int(_field(event, "index") or 0)
            if index in self._skipped:
                self._skipped.discard(index)
                return []
            return [ContentBlockStop(index=index)]

        if event_type == "message_delta":
            return [
                MessageDelta(
                    stop_reason=_field(_field(event, "delta"), "stop_reason"),
                    usage=usage_from_anthropic(_field(event, "usage")),
                )
            ]

        if event_type == "error":
            error = _field(event, "error")
            return [
                StreamError(
                    error_type=_field(error, "type") or "error",
                    message=_field(error, "message") or str(error),
                )
            ]

        return []


def status_error_type(status_code: int, body: Any) -> str:
    """Backend error type from an HTTP error body, falling back to ``http_<status>``."""
    if isinstance(body, dict):
        error = body.get("error", body)
        if isinstance(error, dict) and error.get("type"):
            return str(error["type"])
    return f"http_{status_code}"
