import asyncio

from coding_agent_loop.agent_events import TextDelta
from coding_agent_loop.cancellation import CancellationToken
from coding_agent_loop.models import TextBlock
from coding_agent_loop.providers.stream_events import (
    ContentBlockStart,
    ContentBlockStop,
    MessageStart,
    input_json_delta,
    text_delta,
)
from coding_agent_loop.turn_engine import CANCELLED_TOOL_OUTPUT, ConversationState, TurnStatus
from tests.agent.base import WAIT_FOR_CANCEL, AgentTestCase, RecordingTool, ScriptedProvider, text_turn, tool_turn


def _partial_turn(with_open_tool: bool) -> list:
    events = [
        MessageStart(message_id="msg", model="fake-model"),
        ContentBlockStart(index=0, block_type="text"),
        text_delta(0, "Let me look."),
        ContentBlockStop(index=0),
    ]
    if with_open_tool:
        events += [
            ContentBlockStart(index=1, block_type="tool_use", tool_use_id="t1", tool_name="lookup"),
            input_json_delta(1, '{"value"'),
        ]
    events.append(WAIT_FOR_CANCEL)
    return events


class AgentCancellationTests(AgentTestCase):
    def _process_and_cancel(self, agent, text: str = "go", delay: float = 0.05):
        async def go():
            token = CancellationToken()
            asyncio.get_running_loop().call_later(delay, token.cancel)
            return await agent.process(text, token)

        return asyncio.run(go())

    def test_cancel_while_streaming_keeps_finished_blocks(self) -> None:
        agent = self._agent(ScriptedProvider([_partial_turn(with_open_tool=False)]))

        result = self._process_and_cancel(agent)

        self.assertEqual(TurnStatus.CANCELLED, result.status)
        self.assertEqual("cancelled by user", result.error)
        self.assertEqual(ConversationState.ABORTED, agent.state)
        messages = self._sessions.require(agent.session.id).messages
        self.assertEqual(["user", "assistant"], [m.role for m in messages])
        self.assertEqual([TextBlock("Let me look.")], messages[1].content)
        self.assertTrue(messages[1].metadata["incomplete"])

    def test_unfinished_tool_call_is_dropped_on_cancel(self) -> None:
        tool = RecordingTool()
        agent = self._agent(ScriptedProvider([_partial_turn(with_open_tool=True)]), [tool])

        self._process_and_cancel(agent)

        messages = self._sessions.require(agent.session.id).messages
        self.assertEqual(["user", "assistant"], [m.role for m in messages])
        self.assertEqual([], messages[1].tool_uses())
        self.assertEqual([], tool.calls)

    def test_cancel_before_any_block_finishes_persists_only_user_message(self) -> None:
        token = CancellationToken()

        def on_event(event) -> None:
            if isinstance(event, TextDelta):
                token.cancel("stop")

        agent = self._agent(ScriptedProvider([text_turn("Hello")]))

        result = asyncio.run(agent.process("hi", token, on_event))

        self.assertEqual(TurnStatus.CANCELLED, result.status)
        self.assertIsNone(result.message)
        self.assertEqual("stop", result.error)
        self.assertEqual(["user"], [m.role for m in self._sessions.require(agent.session.id).messages])

    def test_cancel_during_tools_pairs_every_call_with_a_result(self) -> None:
        second = RecordingTool("second")

        class _Canceller(RecordingTool):
            async def execute(self, tool_input, context):
                context.cancel_token.cancel()
                return await super().execute(tool_input, context)

        provider = ScriptedProvider([
            tool_turn(("t1", "first", {"value": "a"}), ("t2", "second", {"value": "b"})),
            text_turn("never requested"),
        ])
        agent = self._agent(provider, [_Canceller("first"), second])

        result = asyncio.run(agent.process("go"))

        self.assertEqual(TurnStatus.CANCELLED, result.status)
        self.assertEqual(1, len(provider.requests))
        self.assertEqual([], second.calls)
        messages = self._sessions.require(agent.session.id).messages
        self.assertEqual(["user", "assistant", "user"], [m.role for m in messages])
        results = messages[2].content
        self.assertEqual(["t1", "t2"], [r.tool_use_id for r in results])
        self.assertFalse(results[0].is_error)
        self.assertEqual(CANCELLED_TOOL_OUTPUT, results[1].output)
        self.assertTrue(results[1].is_error)

    def test_already_cancelled_token_stops_before_first_event(self) -> None:
        token = CancellationToken()
        token.cancel()
        agent = self._agent(ScriptedProvider([text_turn("Hello")]))

        result = asyncio.run(agent.process("hi", token))

        self.assertEqual(TurnStatus.CANCELLED, result.status)
        self.assertEqual(1, len(self._sessions.require(agent.session.id).messages))

    def test_conversation_continues_after_cancel(self) -> None:
        provider = ScriptedProvider([_partial_turn(with_open_tool=False), text_turn("Back.")])
        agent = self._agent(provider)
        self._process_and_cancel(agent)

        result = asyncio.run(agent.process("continue"))

        self.assertEqual(TurnStatus.COMPLETED, result.status)
        self.assertEqual(["user", "assistant", "user"], [m.role for m in provider.requests[1].messages])
