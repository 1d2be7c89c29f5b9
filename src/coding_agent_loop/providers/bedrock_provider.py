from __future__ import annotations

import base64
import json
from collections.abc import AsyncIterator
from urllib.parse import quote

import httpx
from loguru import logger
from tenacity import AsyncRetrying

from coding_agent_loop.cancellation import CancellationToken, iterate_until_cancelled
from coding_agent_loop.errors import EventStreamError, TransportError
from coding_agent_loop.provider import ChatRequest
from coding_agent_loop.providers.common import (
    AnthropicEventTranslator,
    default_retry_kwargs,
    status_error_type,
    to_anthropic_messages,
)
from coding_agent_loop.providers.eventstream import EventStreamDecoder, EventStreamMessage
from coding_agent_loop.providers.sigv4 import AwsCredentials, sha256_hex, sign_request
from coding_agent_loop.providers.stream_events import StreamError, StreamEvent

__all__ = ["AwsCredentials", "BedrockProvider"]

BEDROCK_ANTHROPIC_VERSION = "bedrock-2023-05-31"
_SERVICE = "bedrock"
_RETRY_STATUSES = {429, 503}


class _RetryableStatus(Exception):
    def __init__(self, status_code: int, error_type: str, body: str):
        super().__init__(f"Error code: {status_code} - {body}")
        self.status_code = status_code
        self.error_type = error_type


def _error_type_from_response(response: httpx.Response, body: str) -> str:
    header = response.headers.get("x-amzn-errortype")
    if header:
        return header.split(":", 1)[0]
    try:
        parsed = json.loads(body)
    except ValueError:
        parsed = None
    return status_error_type(response.status_code, parsed)


class BedrockProvider:
    """Anthropic models on AWS Bedrock via the signed streaming invoke endpoint."""

    def __init__(
        self,
        credentials: AwsCredentials,
        *,
        region: str = "us-east-1",
        max_attempts: int = 5,
        client: httpx.AsyncClient | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._credentials = credentials
        self._region = region
        self._max_attempts = max_attempts
        self._client = client or httpx.AsyncClient(
            transport=transport,
            timeout=httpx.Timeout(600.0, connect=30.0),
        )

    @property
    def name(self) -> str:
        return "bedrock"

    @property
    def host(self) -> str:
        return f"bedrock-runtime.{self._region}.amazonaws.com"

    def endpoint_path(self, model: str) -> str:
        return f"/model/{quote(model, safe='')}/invoke-with-response-stream"

    def build_body(self, request: ChatRequest) -> bytes:
        body: dict = {
            "anthropic_version": BEDROCK_ANTHROPIC_VERSION,
            "max_tokens": request.max_tokens,
            "messages": to_anthropic_messages(request.messages),
        }
        if request.system_prompt:
            body["system"] = request.system_prompt
        if request.temperature is not None:
            body["temperature"] = request.temperature
        if request.tools:
            body["tools"] = request.tools
        return json.dumps(body).encode("utf-8")

    def _signed_request(self, path: str, body: bytes) -> httpx.Request:
        headers = {
            "content-type": "application/json",
            "accept": "application/vnd.amazon.eventstream",
        }
        headers.update(sign_request(
            method="POST",
            host=self.host,
            path=path,
            headers=headers,
            payload_hash=sha256_hex(body),
            region=self._region,
            service=_SERVICE,
            credentials=self._credentials,
        ))
        return httpx.Request("POST", f"https://{self.host}{path}", headers=headers, content=body)

    async def _open(self, path: str, body: bytes) -> httpx.Response:
        response = None
        async for attempt in AsyncRetrying(**default_retry_kwargs(
            (httpx.ConnectError, httpx.TimeoutException, _RetryableStatus),
            max_attempts=self._max_attempts,
        )):
            with attempt:
                # Signed per attempt: the signature embeds the request time.
                response = await self._client.send(self._signed_request(path, body), stream=True)
                if response.status_code in _RETRY_STATUSES:
                    text = (await response.aread()).decode("utf-8", errors="replace")
                    await response.aclose()
                    raise _RetryableStatus(response.status_code, _error_type_from_response(response, text), text)
        return response

    async def stream(
        self,
        request: ChatRequest,
        cancel_token: CancellationToken | None = None,
    ) -> AsyncIterator[StreamEvent]:
        path = self.endpoint_path(request.model)
        body = self.build_body(request)
        logger.debug(
            f"API request: model={request.model}, region={self._region}, "
            f"messages={len(request.messages)}, tools={len(request.tools)}"
        )

        try:
            response = await self._open(path, body)
        except httpx.TransportError as ex:
            raise TransportError(self.name, str(ex) or type(ex).__name__) from ex
        except _RetryableStatus as ex:
            logger.error(f"Bedrock API error: {ex}")
            yield StreamError(error_type=ex.error_type, message=str(ex))
            return

        try:
            if not response.is_success:
                text = (await response.aread()).decode("utf-8", errors="replace")
                logger.error(f"Bedrock API error: {response.status_code} {text}")
                yield StreamError(
                    error_type=_error_type_from_response(response, text),
                    message=f"Error code: {response.status_code} - {text}",
                )
                return

            decoder = EventStreamDecoder()
            translator = AnthropicEventTranslator()
            async for data in iterate_until_cancelled(response.aiter_bytes(), cancel_token):
                for frame in decoder.feed(data):
                    for event in self._frame_events(frame, translator):
                        yield event
                        if isinstance(event, StreamError):
                            return
        except httpx.TransportError as ex:
            raise TransportError(self.name, str(ex) or type(ex).__name__) from ex
        except EventStreamError as ex:
            logger.error(f"Bedrock event stream corrupt: {ex}")
            yield StreamError(error_type="event_stream_error", message=str(ex))
        finally:
            await response.aclose()

    def _frame_events(self, frame: EventStreamMessage, translator: AnthropicEventTranslator) -> list[StreamEvent]:
        message_type = frame.headers.get(":message-type")

        if message_type == "event":
            if frame.headers.get(":event-type") != "chunk":
                return []
            try:
                envelope = json.loads(frame.payload)
                event = json.loads(base64.b64decode(envelope["bytes"]))
            except (ValueError, KeyError, TypeError) as ex:
                logger.warning(f"Skipping malformed event-stream chunk: {ex}")
                return []
            return translator.translate(event)

        if message_type in ("exception", "error"):
            error_type = frame.headers.get(":exception-type") or frame.headers.get(":error-code") or message_type
            text = frame.payload.decode("utf-8", errors="replace")
            try:
                parsed = json.loads(text)
            except ValueError:
                parsed = None
            message = parsed.get("message", text) if isinstance(parsed, dict) else text
            logger.error(f"Bedrock stream exception: {error_type}: {message}")
            return [StreamError(error_type=str(error_type), message=str(message))]

        return []

    async def aclose(self) -> None:
        await self._client.aclose()
