"""Terminal chat against a local OpenAI-compatible server.

Demonstrates:

- Reading ``TIDECHAT_*`` settings from the environment

- Built-in ``calculator`` / ``get_time`` tools

- Writing the rendered conversation (reasoning and tool blocks, MathML)
  to an HTML file after every exchange

Usage:
    TIDECHAT_BASE_URL=http://localhost:8080/v1 python examples/chat_cli.py
    TIDECHAT_OTEL=1 ... to print spans (needs opentelemetry-sdk)
"""

import asyncio
import logging
import os
import pathlib

from tidechat.agent import Agent
from tidechat.builtin_tools import default_tools
from tidechat.chat import ChatSession
from tidechat.config import Settings, configure_logging
from tidechat.instrumentation import instrument, uninstrument
from tidechat.provider import OpenAICompatibleProvider, TransportError

PAGE = """<!doctype html>
<meta charset="utf-8">
<title>tidechat</title>
{body}
"""


def write_page(chat: ChatSession, path: pathlib.Path) -> None:
    body = "\n".join(
        f'<div class="msg {view.role}">{view.html}</div>' for view in chat.document
    )
    path.write_text(PAGE.format(body=body), encoding="utf-8")


def setup_tracing() -> None:
    from opentelemetry import trace
    from opentelemetry.sdk.resources import SERVICE_NAME, Resource
    from opentelemetry.sdk.trace import TracerProvider
    from opentelemetry.sdk.trace.export import ConsoleSpanExporter, SimpleSpanProcessor

    tracer_provider = TracerProvider(resource=Resource({SERVICE_NAME: "tidechat-cli"}))
    tracer_provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))
    trace.set_tracer_provider(tracer_provider)
    instrument()


async def main():
    configure_logging(logging.WARNING)
    settings = Settings.from_env()
    if os.getenv("TIDECHAT_OTEL"):
        setup_tracing()

    agent = Agent(
        model=settings.model,
        provider=OpenAICompatibleProvider(settings.base_url, settings.api_key),
        tools=default_tools(),
        system_prompt="You are a helpful assistant. Use tools for arithmetic and time.",
    )
    chat = ChatSession(agent, settings=settings)
    page = pathlib.Path("conversation.html")

    print(f"tidechat ({settings.base_url}); Ctrl-D to quit\n")

    while True:
        try:
            user_input = input("You: ").strip()
        except (KeyboardInterrupt, EOFError):
            print("\nGoodbye!")
            break
        if not user_input:
            continue

        try:
            result = await chat.send(user_input)
        except TransportError as e:
            print(f"Error: {e}\n")
            continue
        for r in result.tool_results:
            print(f"  [{r.name}] {r.content}")
        if result.round_limit_reached:
            print("  (stopped after the maximum number of tool rounds)")
        print(f"Assistant: {result.answer}\n")
        write_page(chat, page)

    uninstrument()


if __name__ == "__main__":
    asyncio.run(main())
