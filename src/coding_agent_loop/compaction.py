import json
import re
from collections.abc import Awaitable, Callable
from typing import Protocol, runtime_checkable

from loguru import logger

from coding_agent_loop.errors import TransportError
from coding_agent_loop.models import Message, TextBlock, ToolResultBlock, ToolUseBlock
from coding_agent_loop.provider import ChatRequest, LLMProvider
from coding_agent_loop.providers.stream_events import ContentBlockDelta, StreamError

Summarizer = Callable[[str], Awaitable[str]]

_FILE_REFERENCE = re.compile(r"(?:/[\w./]+\.\w+)|(?:[\w-]+\.\w{2,4})")
_ACK_TEXT = "Understood. Continuing with the current task."


@runtime_checkable
class CompactionStrategy(Protocol):
    async def maybe_compact(self, messages: list[Message]) -> list[Message]: ...


class NoneCompactionStrategy:
    async def maybe_compact(self, messages: list[Message]) -> list[Message]:
        return messages


class SummarizeCompactionStrategy:
    """Folds older messages into a summary attached to the first user message.

    Only the request view is rewritten; callers keep the full transcript.
    """

    def __init__(
        self,
        threshold_messages: int = 50,
        keep_recent: int = 10,
        threshold_tokens: int = 0,
        keep_tool_calls: bool = True,
        summarizer: Summarizer | None = None,
    ):
        self._threshold_messages = threshold_messages
        self._keep_recent = max(1, keep_recent)
        self._threshold_tokens = threshold_tokens
        self._keep_tool_calls = keep_tool_calls
        self._summarizer = summarizer

    def needs_compaction(self, messages: list[Message]) -> bool:
        if self._threshold_messages > 0 and len(messages) > self._threshold_messages:
            return True
        return self._threshold_tokens > 0 and estimate_tokens(messages) > self._threshold_tokens

    async def maybe_compact(self, messages: list[Message]) -> list[Message]:
        if not self.needs_compaction(messages):
            return messages

        start = _tail_start(messages, len(messages) - self._keep_recent)
        if start <= 1:
            return messages

        compactable = messages[1:start]
        important = extract_important_content(compactable, self._keep_tool_calls)
        summary = basic_summary(compactable, important)
        if self._summarizer is not None:
            summary = await self._summarizer(important) or summary

        result = _rebuild(messages, start, summary, len(compactable))
        logger.info(
            f"Compaction: summarized {len(compactable)} messages, "
            f"request now {len(result)} messages (~{estimate_tokens(result):,} tokens)"
        )
        return result


def estimate_tokens(messages: list[Message]) -> int:
    chars = 0
    for message in messages:
        for block in message.content:
            if isinstance(block, TextBlock):
                chars += len(block.text)
            elif isinstance(block, ToolUseBlock):
                chars += len(block.name) + len(json.dumps(block.input))
            elif isinstance(block, ToolResultBlock):
                chars += len(block.output)
    return -(-chars // 4)


def extract_important_content(messages: list[Message], keep_tool_calls: bool = True) -> str:
    parts = []
    for message in messages:
        role = message.role.capitalize()
        for block in message.content:
            if isinstance(block, TextBlock):
                parts.append(f"{role}: {_clip(block.text, 500)}")
            elif isinstance(block, ToolUseBlock) and keep_tool_calls:
                parts.append(f"{role} used tool: {block.name}")
            elif isinstance(block, ToolResultBlock) and keep_tool_calls:
                parts.append(f"Tool result: {_clip(block.output, 200)}")
    return "\n\n".join(parts)


def basic_summary(messages: list[Message], content: str) -> str:
    """Counts, tools and file names from ``messages`` followed by the clipped ``content``."""
    user_messages = sum(1 for m in messages if m.role == "user")
    assistant_messages = sum(1 for m in messages if m.role == "assistant")
    tools_used: dict[str, None] = {}
    files: dict[str, None] = {}
    tool_calls = 0
    for message in messages:
        for block in message.content:
            if isinstance(block, ToolUseBlock):
                tool_calls += 1
                tools_used[block.name] = None
            elif isinstance(block, TextBlock):
                for match in _FILE_REFERENCE.findall(block.text)[:10]:
                    files[match] = None

    lines = [f"Previous conversation: {user_messages} user messages, {assistant_messages} assistant responses"]
    if tool_calls:
        lines.append(f"Tools used: {', '.join(tools_used)} ({tool_calls} total calls)")
    if files:
        names = list(files)
        lines.append(f"Files referenced: {', '.join(names[:5])}{'...' if len(names) > 5 else ''}")
    if len(content) > 2000:
        content = content[:2000] + "\n...(truncated)"
    lines.append("\nKey points from conversation:")
    lines.append(content)
    return "\n".join(lines)


_SUMMARIZE_PROMPT = """\
Summarize the following conversation history between a user and an AI coding assistant.
Preserve the original request, decisions made, file paths, identifiers and the current task status.
Do not repeat raw tool output; note what was retrieved and the key findings.

---
CONVERSATION HISTORY:

"""


def model_summarizer(provider: LLMProvider, model: str, *, max_tokens: int = 4096) -> Summarizer:
    """Summarize through ``provider``; returns "" on failure so the basic summary is used."""

    async def summarize(content: str) -> str:
        request = ChatRequest(
            messages=[Message.create("user", [TextBlock(_SUMMARIZE_PROMPT + content)])],
            model=model,
            max_tokens=max_tokens,
            temperature=0,
        )
        parts: list[str] = []
        stream = provider.stream(request)
        try:
            async for event in stream:
                if isinstance(event, StreamError):
                    logger.warning(f"Compaction summary failed: {event.error_type}: {event.message}")
                    return ""
                if isinstance(event, ContentBlockDelta) and event.delta_type == "text_delta":
                    parts.append(event.text)
        except TransportError as ex:
            logger.warning(f"Compaction summary failed: {ex}")
            return ""
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()
        return "".join(parts).strip()

    return summarize


def _clip(text: str, limit: int) -> str:
    return text[:limit] + "..." if len(text) > limit else text


def _tail_start(messages: list[Message], start: int) -> int:
    # A tool result must stay next to the assistant message that requested it.
    while start > 1 and any(isinstance(b, ToolResultBlock) for b in messages[start].content):
        start -= 1
    return start


def _rebuild(messages: list[Message], start: int, summary: str, compacted: int) -> list[Message]:
    first = messages[0]
    merged = first.text() + "\n\n[CONTEXT SUMMARY]\n" + summary + "\n[END CONTEXT SUMMARY]"
    result = [Message.create(
        "user",
        [TextBlock(merged)],
        metadata={"compaction": True, "compacted_messages": compacted},
    )]

    tail = messages[start:]
    if tail and tail[0].role == "user":
        result.append(Message.create("assistant", [TextBlock(_ACK_TEXT)], metadata={"synthetic": True}))
    result.extend(tail)
    return result
