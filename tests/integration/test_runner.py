import json
import logging

import pytest

from tidechat.annotations import AnnotationKind, extract_annotations
from tidechat.builtin_tools import calculator
from tidechat.events import RunCompleteEvent, RunItemEvent, TextChangedEvent
from tidechat.message import Message, MessageRole, ToolCallRequestMessage, ToolCallResultMessage
from tidechat.provider import TransportError
from tidechat.runner import MAX_TOOL_ROUNDS, Runner, compose_document
from tidechat.session import Session
from tidechat.streaming import DeltaAccumulator, PARSE_ERROR_ANSWER
from tidechat.tools import tool

from tests.conftest import (
    DONE,
    MockProvider,
    content_event,
    make_multi_tool_call_stream,
    make_text_stream,
    make_tool_call_stream,
    reasoning_event,
    sse,
    usage_event,
)


# ---------------------------------------------------------------------------
# Tool fixtures (module-level, reused across test classes)
# ---------------------------------------------------------------------------

@tool
def echo(text: str):
    """Echo text back."""
    return text


@tool
def explode():
    """Always fails."""
    raise RuntimeError("kaboom")


class AlwaysToolProvider(MockProvider):
    """Requests a calculator call on every single round."""

    async def stream(self, model, messages, tools=None):
        self.call_log.append({"model": model, "messages": messages, "tools": tools})
        n = len(self.call_log)
        for chunk in make_tool_call_stream(
            "calculator", {"expression": "1+1"}, call_id=f"call_{n}",
        ):
            yield chunk


# ---------------------------------------------------------------------------
# Tests
# ---------------------------------------------------------------------------

class TestRunnerSimpleResponse:
    @pytest.mark.asyncio
    async def test_single_round_answer(self, make_agent, mock_provider):
        mock_provider.responses = [make_text_stream("4")]
        agent = make_agent()
        session = Session(session_id="s1")

        result = await Runner().run(agent, session, "What is 2+2?")

        assert "4" in result.answer
        assert result.rounds == 1
        assert result.tool_results == []
        assert len(mock_provider.call_log) == 1
        assert mock_provider.call_log[0]["tools"] is None
        assert len(session.transcript) == 2
        assert session.transcript[0] == Message(role=MessageRole.USER, content="What is 2+2?")
        assert session.transcript[1].role == MessageRole.ASSISTANT
        assert session.transcript[1].content == "4"

    @pytest.mark.asyncio
    async def test_system_prompt_not_in_transcript(self, make_agent, mock_provider):
        mock_provider.responses = [make_text_stream("Hi")]
        agent = make_agent(system_prompt="You are helpful.")
        session = Session(session_id="s1")

        await Runner().run(agent, session, "hello")

        messages = mock_provider.call_log[0]["messages"]
        assert messages[0] == {"role": "system", "content": "You are helpful."}
        assert messages[1] == {"role": "user", "content": "hello"}
        assert all(m.role != MessageRole.SYSTEM for m in session.transcript)

    @pytest.mark.asyncio
    async def test_prior_transcript_is_sent(self, make_agent, mock_provider):
        mock_provider.responses = [make_text_stream("again")]
        session = Session(session_id="s1", transcript=[
            Message(role=MessageRole.USER, content="first"),
            Message(role=MessageRole.ASSISTANT, content="reply"),
        ])

        await Runner().run(make_agent(), session, "second")

        sent = mock_provider.call_log[0]["messages"]
        assert [m["content"] for m in sent] == ["first", "reply", "second"]
        assert len(session.transcript) == 4

    @pytest.mark.asyncio
    async def test_transcript_trimmed_after_exchange(self, make_agent, mock_provider):
        mock_provider.responses = [make_text_stream("ok")]
        session = Session(session_id="s1", max_messages=3, transcript=[
            Message(role=MessageRole.USER, content=str(i)) for i in range(3)
        ])

        await Runner().run(make_agent(), session, "new")

        assert [m.content for m in session.transcript] == ["2", "new", "ok"]

    @pytest.mark.asyncio
    async def test_usage_reported(self, make_agent, mock_provider):
        mock_provider.responses = [make_text_stream("ok")]
        result = await Runner().run(make_agent(), Session(session_id="s"), "hi")
        assert result.usage.total_tokens == 15


class TestRunnerToolRounds:
    @pytest.mark.asyncio
    async def test_calculator_round_then_answer(self, make_agent, mock_provider):
        mock_provider.responses = [
            make_tool_call_stream("calculator", {"expression": "2*3"}),
            make_text_stream("The answer is 6."),
        ]
        agent = make_agent(tools=[calculator])
        session = Session(session_id="s1")

        result = await Runner().run(agent, session, "What is 2*3?")

        assert result.rounds == 2
        assert len(result.tool_results) == 1
        assert json.loads(result.tool_results[0].content)["value"] == 6
        assert result.answer == "The answer is 6."

        second_round = mock_provider.call_log[1]["messages"]
        assert len(second_round) == len(mock_provider.call_log[0]["messages"]) + 2
        assert second_round[-2]["tool_calls"][0]["function"]["name"] == "calculator"
        assert second_round[-1] == {
            "role": "tool", "content": '{"value": 6}', "tool_call_id": "call_1",
        }

    @pytest.mark.asyncio
    async def test_transcript_keeps_tool_plumbing(self, make_agent, mock_provider):
        mock_provider.responses = [
            make_tool_call_stream("echo", {"text": "hi"}),
            make_text_stream("done"),
        ]
        session = Session(session_id="s1")

        await Runner().run(make_agent(tools=[echo]), session, "go")

        assert [type(m) for m in session.transcript] == [
            Message, ToolCallRequestMessage, ToolCallResultMessage, Message,
        ]
        assert session.transcript[2].content == "hi"

    @pytest.mark.asyncio
    async def test_failing_tool_still_yields_result(self, make_agent, mock_provider):
        mock_provider.responses = [
            make_multi_tool_call_stream([
                ("explode", {}, "call_a"),
                ("echo", {"text": "second"}, "call_b"),
            ]),
            make_text_stream("recovered"),
        ]
        agent = make_agent(tools=[explode, echo])

        result = await Runner().run(agent, Session(session_id="s"), "go")

        assert [r.call_id for r in result.tool_results] == ["call_a", "call_b"]
        assert json.loads(result.tool_results[0].content) == {"error": "kaboom"}
        assert result.tool_results[1].content == "second"
        tool_messages = mock_provider.call_log[1]["messages"][-2:]
        assert [m["tool_call_id"] for m in tool_messages] == ["call_a", "call_b"]

    @pytest.mark.asyncio
    async def test_incomplete_call_is_dropped(self, make_agent, mock_provider):
        mock_provider.responses = [[
            sse({"choices": [{"delta": {"tool_calls": [
                {"index": 0, "function": {"name": "echo", "arguments": "{}"}},
            ]}}]}),
            sse(content_event("no id, no call")),
            DONE,
        ]]

        result = await Runner().run(make_agent(tools=[echo]), Session(session_id="s"), "go")

        assert result.rounds == 1
        assert result.tool_results == []
        assert result.answer == "no id, no call"

    @pytest.mark.asyncio
    async def test_round_cap_is_enforced(self, make_agent, caplog):
        provider = AlwaysToolProvider()
        agent = make_agent(tools=[calculator], provider=provider)
        session = Session(session_id="s")

        events = []
        with caplog.at_level(logging.WARNING, logger="tidechat.runner"):
            async for event in Runner().iter(agent, session, "loop forever"):
                events.append(event)
        result = events[-1].result

        assert len(provider.call_log) == MAX_TOOL_ROUNDS
        assert result.rounds == MAX_TOOL_ROUNDS
        assert result.round_limit_reached
        assert [tc.id for tc in result.discarded_tool_calls] == [f"call_{MAX_TOOL_ROUNDS}"]
        assert len(result.tool_results) == MAX_TOOL_ROUNDS - 1
        assert result.answer == ""
        assert any(isinstance(e, RunItemEvent) and e.name == "round_limit" for e in events)
        assert any("Round limit" in r.message for r in caplog.records)
        # Discarded calls never reach the transcript.
        assert session.transcript[-1] == Message(role=MessageRole.ASSISTANT, content="")
        assert isinstance(session.transcript[-2], ToolCallResultMessage)

    @pytest.mark.asyncio
    async def test_custom_round_cap(self, make_agent):
        provider = AlwaysToolProvider()
        agent = make_agent(tools=[calculator], provider=provider)

        result = await Runner(max_rounds=1).run(agent, Session(session_id="s"), "x")

        assert len(provider.call_log) == 1
        assert result.tool_results == []
        assert result.round_limit_reached

    def test_rejects_zero_rounds(self):
        with pytest.raises(ValueError):
            Runner(max_rounds=0)


class TestRunnerEvents:
    @pytest.mark.asyncio
    async def test_text_changed_per_fragment(self, make_agent, mock_provider):
        mock_provider.responses = [[
            sse(content_event("a")),
            sse(usage_event()),
            sse(content_event("b")),
            DONE,
        ]]

        events = [e async for e in Runner().iter(make_agent(), Session(session_id="s"), "x")]
        changed = [e for e in events if isinstance(e, TextChangedEvent)]

        assert [e.answer for e in changed] == ["a", "ab"]
        assert isinstance(events[-1], RunCompleteEvent)

    @pytest.mark.asyncio
    async def test_reasoning_flips_to_done_on_first_answer(self, make_agent, mock_provider):
        mock_provider.responses = [[
            sse(reasoning_event("think ")),
            sse(content_event("A")),
            sse(reasoning_event("late")),
            DONE,
        ]]

        events = [e async for e in Runner().iter(make_agent(), Session(session_id="s"), "x")]
        docs = [e.document for e in events if isinstance(e, TextChangedEvent)]

        assert 'state="live"' in docs[0]
        assert 'state="done"' in docs[1]
        assert docs[2].startswith('<think id="r0" state="done">think late</think>')
        assert events[-1].result.reasoning == "think late"

    @pytest.mark.asyncio
    async def test_prior_round_annotations_precede_content(self, make_agent, mock_provider):
        mock_provider.responses = [
            [
                sse(reasoning_event("need calc")),
                *make_tool_call_stream("calculator", {"expression": "2*3"}),
            ],
            make_text_stream("Six."),
        ]

        events = [
            e async for e in Runner().iter(
                make_agent(tools=[calculator]), Session(session_id="s"), "x",
            )
        ]
        second_round = [
            e for e in events if isinstance(e, TextChangedEvent) and e.round_index == 1
        ]
        document = events[-1].result.document
        _, segments = extract_annotations(document)

        assert [s.kind for s in segments] == [AnnotationKind.REASONING, AnnotationKind.TOOL]
        assert segments[1].name == "calculator"
        assert document.endswith("Six.")
        assert all(e.document.index("<tool") < e.document.index(e.answer) for e in second_round)
        tool_events = [e for e in events if isinstance(e, RunItemEvent) and e.name == "tool_call"]
        assert tool_events[0].data["output"] == '{"value": 6}'

    @pytest.mark.asyncio
    async def test_reasoning_excluded_from_document(self, make_agent, mock_provider):
        mock_provider.responses = [make_text_stream("ok", reasoning="hidden")]

        result = await Runner(include_reasoning=False).run(
            make_agent(), Session(session_id="s"), "x",
        )

        assert result.document == "ok"
        assert result.reasoning == "hidden"


class TestRunnerErrors:
    @pytest.mark.asyncio
    async def test_transport_error_propagates(self, make_agent, mock_provider):
        mock_provider.responses = [[
            sse(content_event("partial")),
            TransportError("connection reset"),
        ]]
        session = Session(session_id="s")

        with pytest.raises(TransportError, match="connection reset"):
            await Runner().run(make_agent(), session, "x")

        assert session.transcript == []

    @pytest.mark.asyncio
    async def test_malformed_lines_skipped(self, make_agent, mock_provider):
        mock_provider.responses = [[
            b"data: {broken\n\n",
            sse(content_event("fine")),
            DONE,
        ]]

        result = await Runner().run(make_agent(), Session(session_id="s"), "x")
        assert result.answer == "fine"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("bad_event", [
        {"choices": [], "usage": {"prompt_tokens": 1.5, "total_tokens": 3}},
        {"choices": [{"delta": {"tool_calls": [{"index": 0, "function": "echo"}]}}]},
        {"choices": [{"delta": {"tool_calls": [
            {"index": 0, "id": 7, "function": {"name": "echo", "arguments": "{}"}},
        ]}}]},
    ], ids=["fractional_usage", "string_function", "integer_call_id"])
    async def test_badly_shaped_events_skipped(self, make_agent, mock_provider, bad_event):
        mock_provider.responses = [[
            sse(content_event("4")),
            sse(bad_event),
            DONE,
        ]]
        session = Session(session_id="s")

        result = await Runner().run(make_agent(tools=[echo]), session, "x")

        assert result.answer == "4"
        assert result.rounds == 1
        assert result.tool_results == []
        assert result.usage is None
        assert len(session.transcript) == 2

    @pytest.mark.asyncio
    async def test_non_streamed_fallback(self, make_agent, mock_provider):
        body = {"choices": [{"message": {"content": "whole answer"}}]}
        mock_provider.responses = [[json.dumps(body).encode()]]

        result = await Runner().run(make_agent(), Session(session_id="s"), "x")
        assert result.answer == "whole answer"

    @pytest.mark.asyncio
    async def test_malformed_fallback_is_in_band_error(self, make_agent, mock_provider):
        mock_provider.responses = [[b"<html>502 Bad Gateway</html>"]]

        result = await Runner().run(make_agent(), Session(session_id="s"), "x")
        assert result.answer == PARSE_ERROR_ANSWER


class TestModelResolution:
    @pytest.mark.asyncio
    async def test_empty_model_uses_discovery(self, make_agent, mock_provider):
        mock_provider.models = [{"id": "qwen"}, {"id": "llama-3.1-8b"}]
        mock_provider.responses = [make_text_stream("hi")]

        await Runner().run(make_agent(model=""), Session(session_id="s"), "x")
        assert mock_provider.call_log[0]["model"] == "llama-3.1-8b"

    @pytest.mark.asyncio
    async def test_no_models_falls_back(self, make_agent, mock_provider):
        mock_provider.responses = [make_text_stream("hi")]

        await Runner().run(make_agent(model=""), Session(session_id="s"), "x")
        assert mock_provider.call_log[0]["model"] == "llama"


def test_compose_document_order():
    acc = DeltaAccumulator()
    acc.apply(reasoning_event("r"))
    acc.apply(content_event("answer"))

    doc = compose_document(["<tool>x</tool>"], acc, block_id="r1")
    assert doc == '<tool>x</tool>\n\n<think id="r1" state="done">r</think>\n\nanswer'
