from __future__ import annotations

import asyncio
from typing import Any

from loguru import logger

from coding_agent_loop.agent_config import AgentConfig
from coding_agent_loop.agent_events import EventEmitter, EventHandler, PermissionRequested, QuestionAsked
from coding_agent_loop.cancellation import CancellationToken
from coding_agent_loop.memory.session_store import SessionStore
from coding_agent_loop.models import ContentBlock, ImageBlock, Message, Session, TextBlock, ToolUseBlock
from coding_agent_loop.permissions import PermissionChecker
from coding_agent_loop.provider import LLMProvider
from coding_agent_loop.tool import AskFn, ToolContext, no_answer
from coding_agent_loop.tool_registry import ToolRegistry
from coding_agent_loop.turn_engine import ConversationState, TurnEngine, TurnResult, TurnStatus

_STATE_AFTER = {
    TurnStatus.COMPLETED: ConversationState.AWAITING_USER_INPUT,
    TurnStatus.TURN_LIMIT: ConversationState.ABORTED,
    TurnStatus.DOOM_LOOP: ConversationState.ABORTED,
    TurnStatus.CANCELLED: ConversationState.ABORTED,
    TurnStatus.FAILED: ConversationState.FAILED,
}


class Agent:
    """One conversation: a stored session plus the provider, tools and policy used to continue it."""

    def __init__(
        self,
        *,
        provider: LLMProvider,
        store: SessionStore,
        registry: ToolRegistry,
        permissions: PermissionChecker,
        config: AgentConfig,
        session: Session,
    ):
        self._provider = provider
        self._store = store
        self._registry = registry
        self._permissions = permissions
        self._config = config
        self._session = session
        self._state = ConversationState.AWAITING_USER_INPUT
        # Tool scratch state (e.g. the todo list) lives as long as this conversation object.
        self._tool_state: dict[str, Any] = {}

        self._turn_engine = TurnEngine(
            provider=provider,
            registry=registry,
            store=store,
            config=config,
            on_state_change=self._set_state,
        )

    @classmethod
    def create(
        cls,
        *,
        provider: LLMProvider,
        store: SessionStore,
        registry: ToolRegistry,
        permissions: PermissionChecker,
        config: AgentConfig,
        project_path: str | None = None,
    ) -> Agent:
        session = store.create(project_path or config.working_directory)
        return cls(provider=provider, store=store, registry=registry, permissions=permissions, config=config,
                   session=session)

    @classmethod
    def resume(
        cls,
        session_id: str,
        *,
        provider: LLMProvider,
        store: SessionStore,
        registry: ToolRegistry,
        permissions: PermissionChecker,
        config: AgentConfig,
    ) -> Agent:
        session = store.require(session_id)
        logger.info(f"Resumed session {session_id} with {len(session.messages)} messages")
        return cls(provider=provider, store=store, registry=registry, permissions=permissions, config=config,
                   session=session)

    @property
    def session(self) -> Session:
        return self._session

    @property
    def state(self) -> ConversationState:
        return self._state

    def _set_state(self, state: ConversationState) -> None:
        if state != self._state:
            logger.debug(f"Conversation state: {self._state.value} -> {state.value}")
        self._state = state

    async def process(
        self,
        user_text: str,
        cancel_token: CancellationToken | None = None,
        on_event: EventHandler | None = None,
        *,
        images: list[ImageBlock] | None = None,
        confirm_via_events: bool = True,
    ) -> TurnResult:
        """Append a user message and run the model/tool loop until it settles.

        When ``on_event`` is given and the permission checker has no confirm callback of its own,
        ``ask`` decisions and ``ask_user`` questions are sent to the handler as ``PermissionRequested``
        and ``QuestionAsked`` events. The handler must resolve their ``reply`` future; an unanswered
        request waits ``question_timeout_seconds`` and then falls back to deny (or an empty answer).
        A display-only handler should pass ``confirm_via_events=False``: ``ask`` decisions are then
        denied at once and questions get an empty answer without emitting events.
        """
        content: list[ContentBlock] = []
        if user_text:
            content.append(TextBlock(user_text))
        content.extend(images or [])
        if not content:
            raise ValueError("A user message needs text or at least one image")

        cancel_token = cancel_token or CancellationToken()
        events = EventEmitter(on_event)

        async with self._store.lock(self._session.id):
            stored = self._store.get(self._session.id)
            if stored is not None:
                self._session = stored

            self._session.messages.append(Message.create("user", content))
            self._store.update(self._session)

            permissions = self._permissions
            if confirm_via_events and events.has_handler and not permissions.has_confirm:
                permissions = permissions.bind(self._confirm_via_events(events, cancel_token))
            ask = self._ask_via_events(events, cancel_token) if confirm_via_events else no_answer

            def context_factory(block: ToolUseBlock) -> ToolContext:
                return ToolContext(
                    session_id=self._session.id,
                    tool_call_id=block.id,
                    working_directory=self._config.working_directory,
                    cancel_token=cancel_token,
                    permissions=permissions,
                    ask=ask,
                    log=logger.bind(session_id=self._session.id, tool=block.name),
                    state=self._tool_state,
                )

            try:
                result = await self._turn_engine.run(
                    self._session,
                    cancel_token=cancel_token,
                    events=events,
                    context_factory=context_factory,
                )
            except BaseException:
                self._set_state(ConversationState.FAILED)
                raise

        self._set_state(_STATE_AFTER[result.status])
        return result

    def _ask_via_events(self, events: EventEmitter, cancel_token: CancellationToken) -> AskFn:
        async def ask(question: str) -> str:
            if not events.has_handler:
                return ""
            reply: asyncio.Future = asyncio.get_running_loop().create_future()
            await events.emit(QuestionAsked(question, reply))
            return await self._await_reply(reply, cancel_token, default="")

        return ask

    def _confirm_via_events(self, events: EventEmitter, cancel_token: CancellationToken):
        async def confirm(capability: str, target: str | None, question: str) -> bool:
            reply: asyncio.Future = asyncio.get_running_loop().create_future()
            await events.emit(PermissionRequested(capability, target, question, reply))
            return bool(await self._await_reply(reply, cancel_token, default=False))

        return confirm

    async def _await_reply(self, reply: asyncio.Future, cancel_token: CancellationToken, *, default: Any) -> Any:
        """Wait for the UI to resolve ``reply``; timeout or cancellation yields ``default``."""
        cancelled = asyncio.ensure_future(cancel_token.wait())
        try:
            done, _ = await asyncio.wait(
                {reply, cancelled},
                timeout=self._config.question_timeout_seconds,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            cancelled.cancel()

        if reply in done and not reply.cancelled():
            return reply.result()
        if not reply.done():
            reply.cancel()
        if not done:
            logger.warning(f"No reply within {self._config.question_timeout_seconds:g}s; using default answer")
        return default
