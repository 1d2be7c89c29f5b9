import asyncio
from types import SimpleNamespace

import httpx

from coding_agent_loop.agent import Agent
from coding_agent_loop.agent_config import AgentConfig
from coding_agent_loop.agent_events import ErrorOccurred, MessageDone, TextDelta, ToolDone, ToolStarted, TurnDone
from coding_agent_loop.compaction import SummarizeCompactionStrategy
from coding_agent_loop.errors import SessionNotFoundError, TransportError
from coding_agent_loop.models import ToolResultBlock, ToolUseBlock
from coding_agent_loop.permissions import allow_all
from coding_agent_loop.providers.anthropic_provider import AnthropicProvider
from coding_agent_loop.providers.stream_events import StreamError
from coding_agent_loop.tool_registry import ToolRegistry
from coding_agent_loop.turn_engine import ConversationState, TurnStatus
from tests.agent.base import AgentTestCase, RecordingTool, ScriptedProvider, text_turn, tool_turn


class _DroppedConnectionStream:
    """Raw SDK stream that yields a few events, then fails like a reset socket."""

    def __init__(self, events: list[dict]):
        self._events = list(events)

    def __aiter__(self):
        return self

    async def __anext__(self):
        if self._events:
            return self._events.pop(0)
        raise httpx.RemoteProtocolError("peer closed connection without sending complete message body")

    async def close(self) -> None:
        pass


def _dropping_client(events: list[dict]) -> SimpleNamespace:
    async def create(**kwargs):
        return _DroppedConnectionStream(events)

    return SimpleNamespace(messages=SimpleNamespace(create=create))


class AgentLoopTests(AgentTestCase):
    def test_text_reply_completes_and_is_persisted(self) -> None:
        events: list = []
        agent = self._agent(ScriptedProvider([text_turn("Hello there")]))

        result = asyncio.run(agent.process("hi", on_event=events.append))

        self.assertEqual(TurnStatus.COMPLETED, result.status)
        self.assertEqual("Hello there", result.message.text())
        self.assertEqual(ConversationState.AWAITING_USER_INPUT, agent.state)
        self.assertEqual(["Hello there"], [e.text for e in events if isinstance(e, TextDelta)])
        stored = self._sessions.require(agent.session.id)
        self.assertEqual(["user", "assistant"], [m.role for m in stored.messages])
        self.assertEqual("end_turn", stored.messages[1].metadata["stop_reason"])
        self.assertEqual("hi", stored.display_title())

    def test_tool_round_then_answer(self) -> None:
        tool = RecordingTool()
        provider = ScriptedProvider([
            tool_turn(("t1", "lookup", {"value": "a"}), text="Checking."),
            text_turn("Done."),
        ])
        events: list = []
        agent = self._agent(provider, [tool])

        result = asyncio.run(agent.process("go", on_event=events.append))

        self.assertEqual(TurnStatus.COMPLETED, result.status)
        self.assertEqual(2, result.turns)
        self.assertEqual([{"value": "a"}], tool.calls)
        messages = self._sessions.require(agent.session.id).messages
        self.assertEqual(["user", "assistant", "user", "assistant"], [m.role for m in messages])
        tool_use = messages[1].content[1]
        self.assertIsInstance(tool_use, ToolUseBlock)
        self.assertEqual("complete", tool_use.status)
        self.assertEqual(ToolResultBlock("t1", "ok: a", is_error=False), messages[2].content[0])

        # The second request carries the tool result back to the model.
        self.assertEqual(3, len(provider.requests[1].messages))
        self.assertEqual(["lookup"], [t["name"] for t in provider.requests[0].tools])

        kinds = [type(e) for e in events]
        self.assertLess(kinds.index(ToolStarted), kinds.index(ToolDone))
        self.assertIn(TurnDone, kinds)

    def test_multiple_tool_calls_run_in_order(self) -> None:
        order: list[str] = []

        class _Ordered(RecordingTool):
            async def execute(self, tool_input, context):
                order.append(tool_input["value"])
                return await super().execute(tool_input, context)

        provider = ScriptedProvider([
            tool_turn(("t1", "lookup", {"value": "first"}), ("t2", "lookup", {"value": "second"})),
            text_turn("ok"),
        ])
        agent = self._agent(provider, [_Ordered()])

        asyncio.run(agent.process("go"))

        self.assertEqual(["first", "second"], order)
        results = self._sessions.require(agent.session.id).messages[2].content
        self.assertEqual(["t1", "t2"], [r.tool_use_id for r in results])

    def test_unknown_tool_result_goes_back_to_model(self) -> None:
        provider = ScriptedProvider([tool_turn(("t1", "missing_tool", {})), text_turn("Sorry.")])
        agent = self._agent(provider, [RecordingTool()])

        result = asyncio.run(agent.process("go"))

        self.assertEqual(TurnStatus.COMPLETED, result.status)
        tool_result = self._sessions.require(agent.session.id).messages[2].content[0]
        self.assertTrue(tool_result.is_error)
        self.assertEqual("Unknown tool: missing_tool", tool_result.output)

    def test_malformed_tool_arguments_become_tool_error(self) -> None:
        tool = RecordingTool()
        provider = ScriptedProvider([tool_turn(("t1", "lookup", '{"value": ')), text_turn("Retrying.")])
        agent = self._agent(provider, [tool])

        result = asyncio.run(agent.process("go"))

        self.assertEqual(TurnStatus.COMPLETED, result.status)
        messages = self._sessions.require(agent.session.id).messages
        self.assertEqual({}, messages[1].content[0].input)
        self.assertTrue(messages[2].content[0].is_error)
        self.assertIn('Error executing tool "lookup"', messages[2].content[0].output)

    def test_long_tool_output_is_truncated(self) -> None:
        tool = RecordingTool(output="x" * 500)
        provider = ScriptedProvider([tool_turn(("t1", "lookup", {"value": "v"})), text_turn("ok")])
        agent = self._agent(provider, [tool], max_tool_result_chars=100)

        asyncio.run(agent.process("go"))

        output = self._sessions.require(agent.session.id).messages[2].content[0].output
        self.assertTrue(output.startswith("x" * 100 + "\n\n[OUTPUT TRUNCATED: Showing 100 of"))

    def test_turn_limit_stops_loop_with_notice(self) -> None:
        provider = ScriptedProvider([tool_turn((f"t{i}", "lookup", {"value": str(i)})) for i in range(3)])
        agent = self._agent(provider, [RecordingTool()], max_turns=3)

        result = asyncio.run(agent.process("loop forever"))

        self.assertEqual(TurnStatus.TURN_LIMIT, result.status)
        self.assertEqual(ConversationState.ABORTED, agent.state)
        self.assertIn("maximum of 3 turns", result.warning)
        last = self._sessions.require(agent.session.id).messages[-1]
        self.assertEqual("assistant", last.role)
        self.assertTrue(last.metadata["synthetic"])
        self.assertEqual("turn_limit", last.metadata["reason"])

    def test_repeated_identical_calls_trigger_doom_loop(self) -> None:
        tool = RecordingTool()
        provider = ScriptedProvider([tool_turn((f"t{i}", "lookup", {"value": "same"})) for i in range(5)])
        agent = self._agent(provider, [tool], max_turns=10)

        result = asyncio.run(agent.process("go"))

        self.assertEqual(TurnStatus.DOOM_LOOP, result.status)
        self.assertEqual(3, len(tool.calls))
        self.assertEqual(3, result.turns)
        self.assertEqual("doom_loop", result.message.metadata["reason"])

    def test_provider_error_fails_without_persisting_reply(self) -> None:
        events: list = []
        provider = ScriptedProvider([[StreamError(error_type="overloaded_error", message="Overloaded")]])
        agent = self._agent(provider)

        result = asyncio.run(agent.process("hi", on_event=events.append))

        self.assertEqual(TurnStatus.FAILED, result.status)
        self.assertEqual("overloaded_error: Overloaded", result.error)
        self.assertEqual(ConversationState.FAILED, agent.state)
        self.assertEqual(["user"], [m.role for m in self._sessions.require(agent.session.id).messages])
        errors = [e for e in events if isinstance(e, ErrorOccurred)]
        self.assertEqual("overloaded_error", errors[0].error_type)

    def test_transport_error_fails_turn(self) -> None:
        provider = ScriptedProvider([[TransportError("scripted", "connection reset")]])
        agent = self._agent(provider)

        result = asyncio.run(agent.process("hi"))

        self.assertEqual(TurnStatus.FAILED, result.status)
        self.assertIn("connection reset", result.error)

    def test_connection_dropped_mid_reply_fails_turn(self) -> None:
        events: list = []
        provider = AnthropicProvider(client=_dropping_client([
            {"type": "message_start", "message": {"id": "msg_1", "model": "fake-model"}},
            {"type": "content_block_start", "index": 0, "content_block": {"type": "text", "text": ""}},
            {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "Half a rep"}},
        ]))
        agent = self._agent(provider)

        result = asyncio.run(agent.process("hi", on_event=events.append))

        self.assertEqual(TurnStatus.FAILED, result.status)
        self.assertIn("peer closed connection", result.error)
        self.assertEqual(ConversationState.FAILED, agent.state)
        self.assertEqual(["user"], [m.role for m in self._sessions.require(agent.session.id).messages])
        self.assertEqual(["transport"], [e.error_type for e in events if isinstance(e, ErrorOccurred)])

    def test_next_request_after_failure_reuses_history(self) -> None:
        provider = ScriptedProvider([
            [StreamError(error_type="api_error", message="boom")],
            text_turn("Recovered."),
        ])
        agent = self._agent(provider)
        asyncio.run(agent.process("first"))

        result = asyncio.run(agent.process("second"))

        self.assertEqual(TurnStatus.COMPLETED, result.status)
        self.assertEqual(["first", "second"], [m.text() for m in provider.requests[1].messages])

    def test_empty_user_message_rejected(self) -> None:
        agent = self._agent(ScriptedProvider([]))

        with self.assertRaises(ValueError):
            asyncio.run(agent.process(""))

    def test_states_visited_during_tool_round(self) -> None:
        seen: list[ConversationState] = []

        class _StateRecorder(RecordingTool):
            async def execute(self, tool_input, context):
                seen.append(agent.state)
                return await super().execute(tool_input, context)

        provider = ScriptedProvider([tool_turn(("t1", "lookup", {"value": "v"})), text_turn("ok")])
        agent = self._agent(provider, [_StateRecorder()])

        asyncio.run(agent.process("go"))

        self.assertEqual([ConversationState.TOOL_EXECUTION], seen)
        self.assertEqual(ConversationState.AWAITING_USER_INPUT, agent.state)

    def test_message_done_emitted_for_each_assistant_message(self) -> None:
        events: list = []
        provider = ScriptedProvider([tool_turn(("t1", "lookup", {"value": "v"})), text_turn("ok")])
        agent = self._agent(provider, [RecordingTool()])

        asyncio.run(agent.process("go", on_event=events.append))

        self.assertEqual(2, len([e for e in events if isinstance(e, MessageDone)]))


class AgentResumeTests(AgentTestCase):
    def test_resume_continues_stored_history(self) -> None:
        first = self._agent(ScriptedProvider([text_turn("One.")]))
        asyncio.run(first.process("question one"))

        provider = ScriptedProvider([text_turn("Two.")])
        resumed = Agent.resume(
            first.session.id,
            provider=provider,
            store=self._sessions,
            registry=ToolRegistry(),
            permissions=allow_all(),
            config=AgentConfig(model="fake-model", working_directory=str(self._tmp_dir)),
        )
        asyncio.run(resumed.process("question two"))

        self.assertEqual(
            ["user", "assistant", "user"],
            [m.role for m in provider.requests[0].messages],
        )
        self.assertEqual(4, len(self._sessions.require(first.session.id).messages))

    def test_resume_unknown_session(self) -> None:
        with self.assertRaises(SessionNotFoundError):
            Agent.resume(
                "nope",
                provider=ScriptedProvider([]),
                store=self._sessions,
                registry=ToolRegistry(),
                permissions=allow_all(),
                config=AgentConfig(),
            )


class _YieldingProvider(ScriptedProvider):
    """Hands control back to the event loop before every event."""

    async def stream(self, request, cancel_token=None):
        async for event in super().stream(request, cancel_token):
            await asyncio.sleep(0)
            yield event


class AgentSessionOrderingTests(AgentTestCase):
    def _resume(self, session_id: str, provider: ScriptedProvider) -> Agent:
        return Agent.resume(
            session_id,
            provider=provider,
            store=self._sessions,
            registry=ToolRegistry(),
            permissions=allow_all(),
            config=AgentConfig(model="fake-model", working_directory=str(self._tmp_dir)),
        )

    def test_concurrent_requests_on_one_session_do_not_interleave(self) -> None:
        session_id = self._agent(ScriptedProvider([])).session.id
        provider_a = _YieldingProvider([text_turn("reply a")])
        provider_b = _YieldingProvider([text_turn("reply b")])
        agent_a = self._resume(session_id, provider_a)
        agent_b = self._resume(session_id, provider_b)

        async def go():
            return await asyncio.gather(agent_a.process("ask a"), agent_b.process("ask b"))

        results = asyncio.run(go())

        self.assertEqual([TurnStatus.COMPLETED, TurnStatus.COMPLETED], [r.status for r in results])
        messages = self._sessions.require(session_id).messages
        self.assertEqual(["user", "assistant", "user", "assistant"], [m.role for m in messages])
        texts = [m.text() for m in messages]
        self.assertIn(texts, (
            ["ask a", "reply a", "ask b", "reply b"],
            ["ask b", "reply b", "ask a", "reply a"],
        ))
        # Whichever request ran second saw the first exchange in full.
        second = provider_b if texts[0] == "ask a" else provider_a
        self.assertEqual(3, len(second.requests[0].messages))


class AgentCompactionTests(AgentTestCase):
    def test_long_history_is_compacted_in_request_only(self) -> None:
        provider = ScriptedProvider([text_turn("One."), text_turn("Two."), text_turn("Three.")])
        agent = self._agent(
            provider,
            compaction_strategy=SummarizeCompactionStrategy(threshold_messages=3, keep_recent=2),
        )

        for text in ("first", "second", "third"):
            asyncio.run(agent.process(text))

        self.assertEqual(3, len(provider.requests[1].messages))
        request = provider.requests[2].messages
        self.assertEqual(["user", "assistant", "user"], [m.role for m in request])
        self.assertTrue(request[0].metadata["compaction"])
        self.assertIn("[CONTEXT SUMMARY]", request[0].text())
        self.assertEqual(["Two.", "third"], [m.text() for m in request[1:]])
        stored = self._sessions.require(agent.session.id).messages
        self.assertEqual(["first", "One.", "second", "Two.", "third", "Three."], [m.text() for m in stored])
        self.assertFalse(any(m.metadata.get("compaction") for m in stored))
