from __future__ import annotations

import json
from collections.abc import AsyncIterator
from typing import Any

import httpx
import openai
from loguru import logger
from tenacity import AsyncRetrying

from coding_agent_loop.cancellation import CancellationToken, iterate_until_cancelled
from coding_agent_loop.errors import TransportError
from coding_agent_loop.models import (
    ImageBlock,
    Message,
    TextBlock,
    TokenUsage,
    ToolResultBlock,
    ToolUseBlock,
)
from coding_agent_loop.provider import ChatRequest
from coding_agent_loop.providers.common import default_retry_kwargs, status_error_type
from coding_agent_loop.providers.stream_events import (
    ContentBlockStart,
    ContentBlockStop,
    MessageDelta,
    StreamError,
    StreamEvent,
    input_json_delta,
    text_delta,
)

# Map OpenAI finish reasons to Anthropic-style stop reasons.
_STOP_REASON_MAP = {
    "stop": "end_turn",
    "tool_calls": "tool_use",
    "function_call": "tool_use",
    "length": "max_tokens",
}

_RETRYABLE = (
    openai.RateLimitError,
    openai.APIConnectionError,
    openai.APITimeoutError,
)


def _to_openai_messages(system_prompt: str, messages: list[Message]) -> list[dict]:
    """Convert stored messages to OpenAI chat format."""
    out: list[dict] = []

    if system_prompt:
        out.append({"role": "system", "content": system_prompt})

    for msg in messages:
        if msg.role == "assistant":
            text_parts: list[str] = []
            tool_calls: list[dict] = []
            for block in msg.content:
                if isinstance(block, TextBlock):
                    text_parts.append(block.text)
                elif isinstance(block, ToolUseBlock):
                    tool_calls.append({
                        "id": block.id,
                        "type": "function",
                        "function": {
                            "name": block.name,
                            "arguments": json.dumps(block.input),
                        },
                    })
            if not text_parts and not tool_calls:
                continue

            oai_msg: dict = {"role": "assistant", "content": "\n".join(text_parts) if text_parts else None}
            if tool_calls:
                oai_msg["tool_calls"] = tool_calls
            out.append(oai_msg)

        elif msg.role == "user":
            parts: list[dict] = []
            has_image = False
            for block in msg.content:
                if isinstance(block, ToolResultBlock):
                    # Tool results must directly follow the assistant message that requested them.
                    out.append({
                        "role": "tool",
                        "tool_call_id": block.tool_use_id,
                        "content": block.output,
                    })
                elif isinstance(block, TextBlock):
                    parts.append({"type": "text", "text": block.text})
                elif isinstance(block, ImageBlock):
                    has_image = True
                    parts.append({
                        "type": "image_url",
                        "image_url": {"url": f"data:{block.media_type};base64,{block.data}"},
                    })

            if not parts:
                continue
            if has_image:
                out.append({"role": "user", "content": parts})
            else:
                out.append({"role": "user", "content": "\n".join(p["text"] for p in parts)})

        else:
            text = msg.text()
            if text:
                out.append({"role": msg.role, "content": text})

    return out


def _to_openai_tools(tools: list[dict]) -> list[dict]:
    """Convert Anthropic-style tool dicts to OpenAI function-calling format."""
    return [
        {
            "type": "function",
            "function": {
                "name": t["name"],
                "description": t.get("description", ""),
                "parameters": t.get("input_schema", {}),
            },
        }
        for t in tools
    ]


def _usage_from_openai(usage: Any) -> TokenUsage:
    details = getattr(usage, "prompt_tokens_details", None)
    return TokenUsage(
        input_tokens=int(getattr(usage, "prompt_tokens", 0) or 0),
        output_tokens=int(getattr(usage, "completion_tokens", 0) or 0),
        cache_read_tokens=getattr(details, "cached_tokens", None),
    )


class ChunkReframer:
    """Re-frame chat-completion chunks as content-block events.

    Text and each tool-call index get a block index on first appearance; argument
    fragments are forwarded untouched for the consumer to assemble.
    """

    def __init__(self) -> None:
        self._next_index = 0
        self._text_index: int | None = None
        self._tool_indexes: dict[int, int] = {}
        self._open: list[int] = []
        self._finish_reason: str | None = None
        self._usage: TokenUsage | None = None

    def _allocate(self) -> int:
        index = self._next_index
        self._next_index += 1
        self._open.append(index)
        return index

    def feed(self, chunk: Any) -> list[StreamEvent]:
        out: list[StreamEvent] = []

        usage = getattr(chunk, "usage", None)
        if usage is not None:
            self._usage = _usage_from_openai(usage)

        choice = chunk.choices[0] if chunk.choices else None
        if choice is None:
            return out
        if choice.finish_reason:
            self._finish_reason = choice.finish_reason

        delta = choice.delta
        if delta is None:
            return out

        if delta.content:
            if self._text_index is None:
                self._text_index = self._allocate()
                out.append(ContentBlockStart(index=self._text_index, block_type="text"))
            out.append(text_delta(self._text_index, delta.content))

        for tc_delta in delta.tool_calls or []:
            function = tc_delta.function
            if tc_delta.index not in self._tool_indexes:
                index = self._allocate()
                self._tool_indexes[tc_delta.index] = index
                out.append(ContentBlockStart(
                    index=index,
                    block_type="tool_use",
                    tool_use_id=tc_delta.id or f"call_{index}",
                    tool_name=(function.name if function and function.name else ""),
                ))
            if function and function.arguments:
                out.append(input_json_delta(self._tool_indexes[tc_delta.index], function.arguments))

        return out

    def finish(self) -> list[StreamEvent]:
        out: list[StreamEvent] = [ContentBlockStop(index=i) for i in sorted(self._open)]
        self._open.clear()
        stop_reason = _STOP_REASON_MAP.get(self._finish_reason or "stop", "end_turn")
        out.append(MessageDelta(stop_reason=stop_reason, usage=self._usage))
        return out


class OpenAIProvider:
    def __init__(
        self,
        api_key: str | None = None,
        *,
        base_url: str | None = None,
        max_attempts: int = 5,
        client: Any = None,
    ):
        self._client = client or openai.AsyncOpenAI(api_key=api_key, base_url=base_url)
        self._max_attempts = max_attempts

    @property
    def name(self) -> str:
        return "openai"

    def _build_kwargs(self, request: ChatRequest) -> dict:
        kwargs: dict = dict(
            model=request.model,
            max_tokens=request.max_tokens,
            messages=_to_openai_messages(request.system_prompt, request.messages),
            stream=True,
            stream_options={"include_usage": True},
        )
        if request.temperature is not None:
            kwargs["temperature"] = request.temperature
        if request.tools:
            kwargs["tools"] = _to_openai_tools(request.tools)
        return kwargs

    async def _open_stream(self, kwargs: dict):
        raw_stream = None
        async for attempt in AsyncRetrying(**default_retry_kwargs(_RETRYABLE, max_attempts=self._max_attempts)):
            with attempt:
                raw_stream = await self._client.chat.completions.create(**kwargs)
        return raw_stream

    async def stream(
        self,
        request: ChatRequest,
        cancel_token: CancellationToken | None = None,
    ) -> AsyncIterator[StreamEvent]:
        kwargs = self._build_kwargs(request)
        logger.debug(
            f"API request: model={request.model}, max_tokens={request.max_tokens}, "
            f"messages={len(kwargs['messages'])}, tools={len(request.tools)}"
        )

        try:
            raw_stream = await self._open_stream(kwargs)
        except openai.APIConnectionError as ex:
            raise TransportError(self.name, str(ex)) from ex
        except openai.APIStatusError as ex:
            logger.error(f"OpenAI API error: {ex}")
            yield StreamError(error_type=status_error_type(ex.status_code, ex.body), message=str(ex))
            return

        reframer = ChunkReframer()
        try:
            async for chunk in iterate_until_cancelled(raw_stream, cancel_token):
                for event in reframer.feed(chunk):
                    yield event
            if cancel_token is not None and cancel_token.cancelled:
                return
            events = reframer.finish()
            logger.debug(f"API response: stop_reason={events[-1].stop_reason}, blocks={len(events) - 1}")
            for event in events:
                yield event
        except (openai.APIConnectionError, httpx.TransportError) as ex:
            # The SDK re-raises httpx errors raised while reading the body.
            raise TransportError(self.name, str(ex) or type(ex).__name__) from ex
        except openai.APIStatusError as ex:
            yield StreamError(error_type=status_error_type(ex.status_code, ex.body), message=str(ex))
        except openai.APIError as ex:
            yield StreamError(error_type="api_error", message=str(ex))
        finally:
            close = getattr(raw_stream, "close", None)
            if close is not None:
                await close()
