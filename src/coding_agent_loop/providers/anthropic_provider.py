from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Any

import anthropic
import httpx
from loguru import logger
from tenacity import AsyncRetrying

from coding_agent_loop.cancellation import CancellationToken, iterate_until_cancelled
from coding_agent_loop.errors import TransportError
from coding_agent_loop.provider import ChatRequest
from coding_agent_loop.providers.common import (
    AnthropicEventTranslator,
    default_retry_kwargs,
    status_error_type,
    to_anthropic_messages,
)
from coding_agent_loop.providers.stream_events import StreamError, StreamEvent

_RETRYABLE = (
    anthropic.RateLimitError,
    anthropic.APIConnectionError,
    anthropic.APITimeoutError,
)


class AnthropicProvider:
    def __init__(
        self,
        api_key: str | None = None,
        *,
        base_url: str | None = None,
        max_attempts: int = 5,
        client: Any = None,
    ):
        self._client = client or anthropic.AsyncAnthropic(api_key=api_key, base_url=base_url)
        self._max_attempts = max_attempts

    @property
    def name(self) -> str:
        return "anthropic"

    def _build_kwargs(self, request: ChatRequest) -> dict:
        kwargs: dict = dict(
            model=request.model,
            max_tokens=request.max_tokens,
            messages=to_anthropic_messages(request.messages),
            stream=True,
        )
        if request.system_prompt:
            kwargs["system"] = request.system_prompt
        if request.temperature is not None:
            kwargs["temperature"] = request.temperature
        if request.tools:
            kwargs["tools"] = request.tools
        return kwargs

    async def _open_stream(self, kwargs: dict):
        raw_stream = None
        async for attempt in AsyncRetrying(**default_retry_kwargs(_RETRYABLE, max_attempts=self._max_attempts)):
            with attempt:
                raw_stream = await self._client.messages.create(**kwargs)
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
        except anthropic.APIConnectionError as ex:
            raise TransportError(self.name, str(ex)) from ex
        except anthropic.APIStatusError as ex:
            logger.error(f"Anthropic API error: {ex}")
            yield StreamError(error_type=status_error_type(ex.status_code, ex.body), message=str(ex))
            return

        translator = AnthropicEventTranslator()
        try:
            async for raw_event in iterate_until_cancelled(raw_stream, cancel_token):
                for event in translator.translate(raw_event):
                    if isinstance(event, StreamError):
                        logger.error(f"Anthropic stream error: {event.error_type}: {event.message}")
                    yield event
        except (anthropic.APIConnectionError, httpx.TransportError) as ex:
            # The SDK re-raises httpx errors raised while reading the body.
            raise TransportError(self.name, str(ex) or type(ex).__name__) from ex
        except anthropic.APIStatusError as ex:
            yield StreamError(error_type=status_error_type(ex.status_code, ex.body), message=str(ex))
        except anthropic.APIError as ex:
            yield StreamError(error_type="api_error", message=str(ex))
        finally:
            close = getattr(raw_stream, "close", None)
            if close is not None:
                await close()
