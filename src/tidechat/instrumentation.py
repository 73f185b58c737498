"""Optional OpenTelemetry tracing for tidechat.

Nothing is traced until :func:`instrument` has been called; until then
every span helper yields ``None`` and the record helpers do nothing.
Needs the ``otel`` extra (``opentelemetry-api``).

Span layout of one exchange::

    chat_exchange
      chat <model>              one per round
      execute_tool <name>       one per tool call
"""

import importlib.util
import logging
from contextlib import asynccontextmanager

logger = logging.getLogger(__name__)

_tracer = None


def instrument(*, tracer_name: str = "tidechat") -> None:
    """Start emitting spans through the global TracerProvider.

    Configure the provider first, for example::

        from opentelemetry import trace
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import (
            SimpleSpanProcessor, ConsoleSpanExporter,
        )

        provider = TracerProvider()
        provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))
        trace.set_tracer_provider(provider)

        import tidechat
        tidechat.instrument()

    Args:
        tracer_name: Name passed to ``trace.get_tracer()``.

    Raises:
        ImportError: If ``opentelemetry-api`` is not installed.
    """
    global _tracer
    if importlib.util.find_spec("opentelemetry.trace") is None:
        raise ImportError(
            "opentelemetry-api is required for instrumentation. "
            "Install it with: pip install tidechat[otel]"
        )
    from opentelemetry import trace
    _tracer = trace.get_tracer(tracer_name)
    if isinstance(_tracer, trace.NoOpTracer):
        logger.info(
            "No TracerProvider configured; spans will be discarded "
            "until one is set."
        )
    else:
        logger.info("tidechat instrumentation enabled")


def uninstrument() -> None:
    """Stop emitting spans."""
    global _tracer
    _tracer = None


@asynccontextmanager
async def _span(name: str, attributes: dict, client: bool = False):
    if _tracer is None:
        yield None
        return
    kwargs = {"attributes": attributes}
    if client:
        from opentelemetry.trace import SpanKind
        kwargs["kind"] = SpanKind.CLIENT
    with _tracer.start_as_current_span(name, **kwargs) as span:
        yield span


def exchange_span(model: str, max_rounds: int):
    """Span covering one user exchange, all of its rounds included."""
    return _span("chat_exchange", {
        "gen_ai.operation.name": "invoke_agent",
        "gen_ai.request.model": model,
        "tidechat.max_rounds": max_rounds,
    })


def completion_span(system: str, model: str, round_index: int):
    """Client span around one streamed round."""
    return _span(f"chat {model}", {
        "gen_ai.operation.name": "chat",
        "gen_ai.provider.name": system,
        "gen_ai.request.model": model,
        "tidechat.round": round_index,
    }, client=True)


def tool_span(tool_name: str, call_id: str):
    return _span(f"execute_tool {tool_name}", {
        "gen_ai.operation.name": "execute_tool",
        "gen_ai.tool.name": tool_name,
        "gen_ai.tool.call.id": call_id,
    })


def record_usage(span, usage) -> None:
    """Copy prompt/completion token counts onto *span*."""
    if span is None or usage is None:
        return
    prompt = getattr(usage, "prompt_tokens", None)
    completion = getattr(usage, "completion_tokens", None)
    if prompt is not None:
        span.set_attribute("gen_ai.usage.input_tokens", prompt)
    if completion is not None:
        span.set_attribute("gen_ai.usage.output_tokens", completion)


def record_error(span, exception: BaseException) -> None:
    """Mark *span* failed with *exception*; ``error.type`` is the qualified class name."""
    if span is None:
        return
    from opentelemetry.trace import StatusCode

    span.set_status(StatusCode.ERROR, str(exception))
    span.record_exception(exception)
    span.set_attribute("error.type", type(exception).__qualname__)
