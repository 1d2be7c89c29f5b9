from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from coding_agent_loop.cancellation import CancellationToken
from coding_agent_loop.models import Message
from coding_agent_loop.providers.stream_events import StreamEvent


@dataclass
class ChatRequest:
    messages: list[Message]
    model: str
    max_tokens: int = 8192
    temperature: float | None = None
    system_prompt: str = ""
    # Tool catalogue in {"name", "description", "input_schema"} form.
    tools: list[dict[str, Any]] = field(default_factory=list)


@runtime_checkable
class LLMProvider(Protocol):
    @property
    def name(self) -> str: ...

    def stream(
        self,
        request: ChatRequest,
        cancel_token: CancellationToken | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Issue one chat request and yield canonical stream events.

        The sequence is finite and not restartable. HTTP status failures arrive as a
        single ``StreamError`` event; network failures raise ``TransportError``.
        """
        ...


def create_provider(provider_name: str, **options: Any) -> LLMProvider:
    """Factory: create an LLMProvider by name."""
    name = provider_name.strip().lower()
    if name == "anthropic":
        from coding_agent_loop.providers.anthropic_provider import AnthropicProvider
        return AnthropicProvider(
            api_key=options.get("api_key"),
            base_url=options.get("base_url"),
            max_attempts=options.get("max_attempts", 5),
        )
    if name == "openai":
        from coding_agent_loop.providers.openai_provider import OpenAIProvider
        return OpenAIProvider(
            api_key=options.get("api_key"),
            base_url=options.get("base_url"),
            max_attempts=options.get("max_attempts", 5),
        )
    if name == "bedrock":
        from coding_agent_loop.providers.bedrock_provider import AwsCredentials, BedrockProvider
        return BedrockProvider(
            AwsCredentials(
                access_key_id=options.get("aws_access_key_id") or "",
                secret_access_key=options.get("aws_secret_access_key") or "",
                session_token=options.get("aws_session_token"),
            ),
            region=options.get("region") or "us-east-1",
            max_attempts=options.get("max_attempts", 5),
        )
    raise ValueError(f"Unknown provider: {provider_name!r}. Supported: 'anthropic', 'openai', 'bedrock'")
