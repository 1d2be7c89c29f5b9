from __future__ import annotations

import json
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from loguru import logger

from coding_agent_loop.agent_config import AgentConfig
from coding_agent_loop.agent_events import (
    ErrorOccurred,
    EventEmitter,
    MessageDone,
    MessageStarted,
    TextDelta,
    TextDone,
    ToolDone,
    ToolStarted,
    TurnDone,
)
from coding_agent_loop.cancellation import CancellationToken
from coding_agent_loop.doom_loop import detect_doom_loop
from coding_agent_loop.errors import TransportError
from coding_agent_loop.memory.session_store import SessionStore
from coding_agent_loop.models import (
    ContentBlock,
    Message,
    Session,
    TextBlock,
    TokenUsage,
    ToolResultBlock,
    ToolUseBlock,
    new_id,
)
from coding_agent_loop.provider import ChatRequest, LLMProvider
from coding_agent_loop.providers.stream_events import (
    ContentBlockDelta,
    ContentBlockStart,
    ContentBlockStop,
    MessageDelta,
    MessageStart,
    StreamError,
)
from coding_agent_loop.tool import ToolContext
from coding_agent_loop.tool_registry import ToolRegistry

CANCELLED_TOOL_OUTPUT = "Tool execution cancelled"


class TurnStatus(str, Enum):
    COMPLETED = "completed"
    TURN_LIMIT = "turn_limit"
    DOOM_LOOP = "doom_loop"
    CANCELLED = "cancelled"
    FAILED = "failed"


class ConversationState(str, Enum):
    AWAITING_USER_INPUT = "awaiting_user_input"
    MODEL_TURN = "model_turn"
    TOOL_EXECUTION = "tool_execution"
    ABORTED = "aborted"
    FAILED = "failed"


@dataclass
class TurnResult:
    status: TurnStatus
    # Last persisted assistant message of this request, if any.
    message: Message | None = None
    turns: int = 0
    error: str | None = None
    warning: str | None = None


@dataclass
class _BlockBuffer:
    kind: str
    tool_use_id: str | None = None
    tool_name: str | None = None
    start_input: dict[str, Any] | None = None
    parts: list[str] = field(default_factory=list)


@dataclass
class _ModelTurn:
    content: list[ContentBlock]
    stop_reason: str | None = None
    usage: TokenUsage | None = None
    model: str | None = None
    cancelled: bool = False
    error: StreamError | None = None


class TurnEngine:
    """Runs model turns and tool rounds for one user request until the model stops asking for tools."""

    def __init__(
        self,
        *,
        provider: LLMProvider,
        registry: ToolRegistry,
        store: SessionStore,
        config: AgentConfig,
        on_state_change: Callable[[ConversationState], None] | None = None,
    ) -> None:
        self._provider = provider
        self._registry = registry
        self._store = store
        self._config = config
        self._on_state_change = on_state_change

    def _set_state(self, state: ConversationState) -> None:
        if self._on_state_change is not None:
            self._on_state_change(state)

    async def run(
        self,
        session: Session,
        *,
        cancel_token: CancellationToken,
        events: EventEmitter,
        context_factory: Callable[[ToolUseBlock], ToolContext],
    ) -> TurnResult:
        last_assistant: Message | None = None

        for turn in range(1, self._config.max_turns + 1):
            self._set_state(ConversationState.MODEL_TURN)
            try:
                outcome = await self._model_turn(session, cancel_token, events)
            except TransportError as ex:
                logger.error(f"Transport failure on turn {turn}: {ex}")
                await events.emit(ErrorOccurred(str(ex), error_type="transport"))
                return TurnResult(TurnStatus.FAILED, last_assistant, turn, error=str(ex))

            if outcome.error is not None:
                error = f"{outcome.error.error_type}: {outcome.error.message}"
                logger.error(f"Provider error on turn {turn}: {error}")
                await events.emit(ErrorOccurred(error, error_type=outcome.error.error_type))
                return TurnResult(TurnStatus.FAILED, last_assistant, turn, error=error)

            if outcome.cancelled:
                last_assistant = await self._persist_cancelled_turn(session, outcome, events) or last_assistant
                logger.info(f"Turn {turn} cancelled: {cancel_token.reason}")
                return TurnResult(TurnStatus.CANCELLED, last_assistant, turn, error=cancel_token.reason)

            if not outcome.content:
                logger.warning(f"Turn {turn} produced no content (stop_reason={outcome.stop_reason})")
                return TurnResult(TurnStatus.COMPLETED, last_assistant, turn)

            assistant = Message.create("assistant", outcome.content, metadata={"stop_reason": outcome.stop_reason})
            assistant.model = outcome.model
            assistant.usage = outcome.usage
            session.messages.append(assistant)
            self._store.update(session)
            await events.emit(MessageDone(assistant))
            last_assistant = assistant

            tool_uses = assistant.tool_uses()
            logger.debug(
                f"Turn {turn}: stop_reason={outcome.stop_reason}, "
                f"blocks={len(outcome.content)}, tool_calls={len(tool_uses)}"
            )
            if not tool_uses:
                return TurnResult(TurnStatus.COMPLETED, assistant, turn)

            self._set_state(ConversationState.TOOL_EXECUTION)
            results = await self.execute_tools(tool_uses, cancel_token=cancel_token, events=events,
                                               context_factory=context_factory)
            for block in tool_uses:
                block.status = "complete"
            session.messages.append(Message.create("user", results))
            self._store.update(session)
            await events.emit(TurnDone(turn))

            if cancel_token.cancelled:
                logger.info(f"Turn {turn} cancelled during tool execution: {cancel_token.reason}")
                return TurnResult(TurnStatus.CANCELLED, assistant, turn, error=cancel_token.reason)

            signature = detect_doom_loop(
                session.messages,
                window=self._config.doom_loop_window,
                threshold=self._config.doom_loop_threshold,
            )
            if signature is not None:
                warning = (
                    "Detected repetitive tool calls (the same tool was called with identical input "
                    f"{self._config.doom_loop_threshold} times). Stopping to prevent an infinite loop."
                )
                logger.warning(f"Doom loop detected: {signature[:200]}")
                notice = await self._append_notice(session, warning, "doom_loop", events)
                return TurnResult(TurnStatus.DOOM_LOOP, notice, turn, warning=warning)

        warning = f"Stopped after reaching the maximum of {self._config.max_turns} turns."
        logger.warning(warning)
        await self._append_notice(session, warning, "turn_limit", events)
        return TurnResult(TurnStatus.TURN_LIMIT, last_assistant, self._config.max_turns, warning=warning)

    async def _model_turn(self, session: Session, cancel_token: CancellationToken, events: EventEmitter) -> _ModelTurn:
        # Compaction rewrites the request view only; the stored transcript stays append-only.
        messages = await self._config.compaction_strategy.maybe_compact(list(session.messages))
        request = ChatRequest(
            messages=messages,
            model=self._config.model,
            max_tokens=self._config.max_tokens,
            temperature=self._config.temperature,
            system_prompt=self._config.system_prompt,
            tools=self._registry.definitions(),
        )
        message_id = new_id()
        await events.emit(MessageStarted(message_id))

        open_blocks: dict[int, _BlockBuffer] = {}
        finalized: dict[int, ContentBlock] = {}
        outcome = _ModelTurn(content=[], model=self._config.model)

        stream = self._provider.stream(request, cancel_token)
        try:
            async for event in stream:
                if cancel_token.cancelled:
                    break

                if isinstance(event, MessageStart):
                    outcome.usage = event.usage
                    outcome.model = event.model or outcome.model

                elif isinstance(event, ContentBlockStart):
                    open_blocks[event.index] = _BlockBuffer(
                        kind=event.block_type,
                        tool_use_id=event.tool_use_id,
                        tool_name=event.tool_name,
                        start_input=event.input,
                    )

                elif isinstance(event, ContentBlockDelta):
                    buffer = open_blocks.get(event.index)
                    if buffer is None:
                        logger.warning(f"Delta for unknown content block {event.index}; ignoring")
                        continue
                    if event.delta_type == "text_delta":
                        buffer.parts.append(event.text)
                        await events.emit(TextDelta(message_id, event.text))
                    else:
                        buffer.parts.append(event.partial_json)

                elif isinstance(event, ContentBlockStop):
                    buffer = open_blocks.pop(event.index, None)
                    if buffer is None:
                        continue
                    block = self._finalize_block(buffer)
                    if block is not None:
                        finalized[event.index] = block
                        if isinstance(block, TextBlock):
                            await events.emit(TextDone(message_id, block.text))

                elif isinstance(event, MessageDelta):
                    outcome.stop_reason = event.stop_reason or outcome.stop_reason
                    outcome.usage = (outcome.usage or TokenUsage()).merge(event.usage)

                elif isinstance(event, StreamError):
                    outcome.error = event
                    return outcome
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

        if cancel_token.cancelled:
            # Blocks still streaming are discarded; only finalized content survives.
            outcome.cancelled = True
        elif open_blocks:
            logger.warning(f"Stream ended with {len(open_blocks)} unterminated block(s); finalizing them")
            for index, buffer in open_blocks.items():
                block = self._finalize_block(buffer)
                if block is not None:
                    finalized[index] = block

        outcome.content = [finalized[i] for i in sorted(finalized)]
        return outcome

    @staticmethod
    def _finalize_block(buffer: _BlockBuffer) -> ContentBlock | None:
        if buffer.kind == "text":
            text = "".join(buffer.parts)
            return TextBlock(text) if text else None

        raw = "".join(buffer.parts)
        tool_input: dict[str, Any] = dict(buffer.start_input or {})
        if raw.strip():
            try:
                parsed = json.loads(raw)
            except json.JSONDecodeError:
                logger.warning(f"Malformed tool input JSON for {buffer.tool_name}: {raw[:200]}")
            else:
                if isinstance(parsed, dict):
                    tool_input = parsed
                else:
                    logger.warning(f"Tool input for {buffer.tool_name} is not an object: {raw[:200]}")
        return ToolUseBlock(id=buffer.tool_use_id or new_id(), name=buffer.tool_name or "", input=tool_input)

    async def execute_tools(
        self,
        tool_uses: list[ToolUseBlock],
        *,
        cancel_token: CancellationToken,
        events: EventEmitter,
        context_factory: Callable[[ToolUseBlock], ToolContext],
    ) -> list[ToolResultBlock]:
        """Run tool calls one at a time, in order; calls not started before cancellation get a cancelled result."""
        results: list[ToolResultBlock] = []
        for block in tool_uses:
            if cancel_token.cancelled:
                results.append(ToolResultBlock(block.id, CANCELLED_TOOL_OUTPUT, is_error=True))
                continue

            await events.emit(ToolStarted(block.id, block.name, block.input))
            result = await self._registry.execute(block.name, block.input, context_factory(block))
            output = self._truncate_tool_result(result.output, block.name)
            await events.emit(ToolDone(block.id, block.name, output, result.is_error, result.title))
            results.append(ToolResultBlock(block.id, output, is_error=result.is_error))
        return results

    def _truncate_tool_result(self, result: str, tool_name: str) -> str:
        limit = self._config.max_tool_result_chars
        if limit <= 0 or len(result) <= limit:
            return result

        original_length = len(result)
        logger.warning(f"{tool_name} output truncated from {original_length:,} to {limit:,} chars")
        return result[:limit] + (
            f"\n\n[OUTPUT TRUNCATED: Showing {limit:,} of {original_length:,} characters from {tool_name}]"
        )

    async def _persist_cancelled_turn(
        self,
        session: Session,
        outcome: _ModelTurn,
        events: EventEmitter,
    ) -> Message | None:
        if not outcome.content:
            return None

        assistant = Message.create("assistant", outcome.content, metadata={"incomplete": True})
        assistant.model = outcome.model
        assistant.usage = outcome.usage
        session.messages.append(assistant)

        tool_uses = assistant.tool_uses()
        if tool_uses:
            for block in tool_uses:
                block.status = "complete"
            session.messages.append(Message.create(
                "user",
                [ToolResultBlock(block.id, CANCELLED_TOOL_OUTPUT, is_error=True) for block in tool_uses],
                metadata={"incomplete": True},
            ))

        self._store.update(session)
        await events.emit(MessageDone(assistant))
        return assistant

    async def _append_notice(self, session: Session, text: str, reason: str, events: EventEmitter) -> Message:
        notice = Message.create("assistant", [TextBlock(text)], metadata={"synthetic": True, "reason": reason})
        session.messages.append(notice)
        self._store.update(session)
        await events.emit(MessageDone(notice))
        return notice
