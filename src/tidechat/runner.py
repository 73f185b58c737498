import logging
from collections.abc import AsyncIterator
from contextlib import aclosing
from dataclasses import dataclass, field

from tidechat.agent import Agent
from tidechat.annotations import AnnotationState, reasoning_annotation, tool_annotation
from tidechat.events import RunCompleteEvent, RunItemEvent, StreamEvent, TextChangedEvent
from tidechat.executor import ToolResult, execute_tool_calls
from tidechat.instrumentation import (
    completion_span,
    exchange_span,
    record_error,
    record_usage,
)
from tidechat.message import Message, MessageRole, ToolCallRequestMessage, ToolCallResultMessage
from tidechat.provider import TransportError, pick_default_model
from tidechat.session import Session
from tidechat.sse import StreamDecoder
from tidechat.streaming import DeltaAccumulator, ToolCall, Usage

logger = logging.getLogger(__name__)

MAX_TOOL_ROUNDS = 4
FALLBACK_MODEL = "llama"


@dataclass
class RunResult:
    """The result of a single Runner.run() invocation."""

    last_message: Message
    answer: str = ""
    reasoning: str = ""
    document: str = ""
    rounds: int = 0
    tool_results: list[ToolResult] = field(default_factory=list)
    usage: Usage | None = None
    round_limit_reached: bool = False
    discarded_tool_calls: list[ToolCall] = field(default_factory=list)


def compose_document(
    annotations: list[str],
    acc: DeltaAccumulator,
    include_reasoning: bool = True,
    final: bool = False,
    block_id: str | None = None,
) -> str:
    """Render-ready text: earlier rounds' annotations, then this round.

    The round's own reasoning stays ``live`` until its first answer
    fragment arrives (or the round is final) and is ``done`` after that.
    """
    parts = list(annotations)
    if include_reasoning and acc.reasoning.strip():
        done = final or acc.answer_started
        state = AnnotationState.DONE if done else AnnotationState.LIVE
        parts.append(reasoning_annotation(acc.reasoning, state, block_id))
    if acc.answer:
        parts.append(acc.answer)
    return "\n\n".join(parts)


class Runner:
    """Executes one user exchange as a bounded series of rounds.

    Each round streams one completion over the full working message
    sequence. A round that requests tools has them executed in order, the
    call list and one result per call appended to the working sequence,
    and the loop continues. The exchange ends on the first round without
    tool calls or after ``max_rounds`` rounds, whichever comes first.

    The session transcript is only replaced once the exchange completes:
    working sequence plus the final assistant message, then trimmed. The
    system prompt is injected at call time and never stored.

    ``run()`` drains ``iter()``.  ``iter()`` is the streaming entry point.

    Args:
        max_rounds: Upper bound on stream requests per exchange.
        include_reasoning: Compose reasoning annotations into the
            render-ready document.
    """

    def __init__(
        self,
        max_rounds: int = MAX_TOOL_ROUNDS,
        include_reasoning: bool = True,
    ):
        if max_rounds < 1:
            raise ValueError("max_rounds must be at least 1")
        self.max_rounds = max_rounds
        self.include_reasoning = include_reasoning

    async def run(
        self, agent: Agent, session: Session, user_payload: str,
    ) -> RunResult:
        """Run one exchange to completion."""
        result: RunResult | None = None
        async for event in self.iter(agent, session, user_payload):
            if isinstance(event, RunCompleteEvent):
                result = event.result
        if result is None:
            raise RuntimeError("iter() ended without emitting RunCompleteEvent")
        return result

    async def iter(
        self, agent: Agent, session: Session, user_payload: str,
    ) -> AsyncIterator[StreamEvent]:
        """Run one exchange, yielding events as execution proceeds."""
        model = await self.resolve_model(agent)
        tool_schemas = agent.tool_schemas()
        working: list[Message] = [
            *session.transcript,
            Message(role=MessageRole.USER, content=user_payload),
        ]
        annotations: list[str] = []
        tool_results: list[ToolResult] = []
        discarded: list[ToolCall] = []
        usage: Usage | None = None
        acc = DeltaAccumulator()
        rounds = 0

        async with exchange_span(model, self.max_rounds) as span:
            try:
                for round_index in range(self.max_rounds):
                    acc = DeltaAccumulator()
                    rounds = round_index + 1
                    async for event in self._stream_round(
                        agent, model, working, tool_schemas, acc,
                        annotations, round_index,
                    ):
                        yield event
                    if acc.usage is not None:
                        usage = acc.usage

                    calls = acc.finalize_tool_calls()
                    if not calls:
                        break

                    if rounds == self.max_rounds:
                        discarded = calls
                        logger.warning(
                            f"Round limit {self.max_rounds} reached; "
                            f"discarding {len(calls)} pending tool call(s)"
                        )
                        yield RunItemEvent(name="round_limit", data={
                            "rounds": rounds,
                            "tool_names": [tc.name for tc in calls],
                        })
                        break

                    logger.info(f"Round {round_index}: calling {len(calls)} tool(s)")
                    results = await execute_tool_calls(calls, agent.dispatch)
                    tool_results.extend(results)
                    working.append(ToolCallRequestMessage(
                        role=MessageRole.ASSISTANT, content="", tool_calls=calls,
                    ))
                    for r in results:
                        working.append(ToolCallResultMessage(
                            role=MessageRole.TOOL, content=r.content,
                            tool_call_id=r.call_id,
                        ))

                    if self.include_reasoning and acc.reasoning.strip():
                        annotations.append(reasoning_annotation(
                            acc.reasoning, AnnotationState.DONE, f"r{round_index}",
                        ))
                    for tc, r in zip(calls, results):
                        annotations.append(tool_annotation(
                            tc.name, tc.arguments or "{}", r.content,
                            AnnotationState.DONE, tc.id,
                        ))
                        yield RunItemEvent(name="tool_call", data={
                            "tool_name": tc.name, "call_id": tc.id,
                            "output": r.content, "is_error": r.is_error,
                        })
                    yield RunItemEvent(name="round_complete", data={
                        "round": round_index, "tool_calls": len(calls),
                    })
            except Exception as e:
                record_error(span, e)
                raise

        final = Message(role=MessageRole.ASSISTANT, content=acc.answer)
        session.transcript = [*working, final]
        session.trim()
        document = compose_document(
            annotations, acc, self.include_reasoning, final=True,
            block_id=f"r{rounds - 1}",
        )
        yield RunCompleteEvent(result=RunResult(
            last_message=final,
            answer=acc.answer,
            reasoning=acc.reasoning,
            document=document,
            rounds=rounds,
            tool_results=tool_results,
            usage=usage,
            round_limit_reached=bool(discarded),
            discarded_tool_calls=discarded,
        ))

    async def resolve_model(self, agent: Agent) -> str:
        """The agent's model, or one picked from the endpoint's listing."""
        if agent.model:
            return agent.model
        try:
            models = await agent.provider.list_models()
        except TransportError as e:
            logger.warning(f"Model discovery failed: {e}")
            models = []
        model = pick_default_model(models) or FALLBACK_MODEL
        logger.info(f"Using model {model}")
        return model

    def _messages(self, agent: Agent, working: list[Message]) -> list[dict]:
        messages = [m.model_dump() for m in working]
        if agent.system_prompt:
            messages.insert(0, {"role": "system", "content": agent.system_prompt})
        return messages

    # ------------------------------------------------------------------
    # One round
    # ------------------------------------------------------------------

    async def _stream_round(
        self, agent: Agent, model: str, working: list[Message],
        tool_schemas: list[dict] | None, acc: DeltaAccumulator,
        annotations: list[str], round_index: int,
    ) -> AsyncIterator[TextChangedEvent]:
        decoder = StreamDecoder()
        block_id = f"r{round_index}"

        def apply(payload) -> bool:
            try:
                return acc.apply(payload).changed_text
            except Exception as e:
                logger.warning(f"Skipping malformed stream event: {e}")
                return False

        def changed() -> TextChangedEvent:
            return TextChangedEvent(
                round_index=round_index,
                answer=acc.answer,
                reasoning=acc.reasoning,
                document=compose_document(
                    annotations, acc, self.include_reasoning, block_id=block_id,
                ),
            )

        async with completion_span(agent.provider.system, model, round_index) as span:
            try:
                stream = agent.provider.stream(
                    model, self._messages(agent, working), tool_schemas,
                )
                async with aclosing(stream) as chunks:
                    async for chunk in chunks:
                        for payload in decoder.feed(chunk):
                            if apply(payload):
                                yield changed()
                        if decoder.done:
                            break
                for payload in decoder.close():
                    if apply(payload):
                        yield changed()
            except Exception as e:
                record_error(span, e)
                raise

            if not acc.answer and not acc.reasoning and decoder.remainder.strip():
                logger.info("No streamed content; parsing trailing response body")
                acc.apply_fallback(decoder.remainder.strip())
                if acc.answer or acc.reasoning:
                    yield changed()
            record_usage(span, acc.usage)
