import json

import pytest

from tidechat import mathcache
from tidechat.agent import Agent
from tidechat.provider import ModelProvider
from tidechat.tools import tool


# ---------------------------------------------------------------------------
# SSE builders (mirror the OpenAI chat-completions stream shape)
# ---------------------------------------------------------------------------

DONE = b"data: [DONE]\n\n"


def sse(payload: dict) -> bytes:
    return f"data: {json.dumps(payload)}\n\n".encode()


def content_event(text: str) -> dict:
    return {"choices": [{"index": 0, "delta": {"content": text}}]}


def reasoning_event(text: str, key: str = "reasoning_content") -> dict:
    return {"choices": [{"index": 0, "delta": {key: text}}]}


def tool_call_event(
    index: int = 0,
    call_id: str | None = None,
    name: str | None = None,
    arguments: str | None = None,
) -> dict:
    fragment = {"index": index, "function": {}}
    if call_id is not None:
        fragment["id"] = call_id
        fragment["type"] = "function"
    if name is not None:
        fragment["function"]["name"] = name
    if arguments is not None:
        fragment["function"]["arguments"] = arguments
    return {"choices": [{"index": 0, "delta": {"tool_calls": [fragment]}}]}


def usage_event(prompt: int = 10, completion: int = 5) -> dict:
    return {
        "choices": [],
        "usage": {
            "prompt_tokens": prompt,
            "completion_tokens": completion,
            "total_tokens": prompt + completion,
        },
    }


def make_text_stream(
    text: str, reasoning: str | None = None, usage: bool = True,
) -> list[bytes]:
    """Fake round streaming optional reasoning, then *text* in two pieces."""
    chunks = []
    if reasoning:
        chunks.append(sse(reasoning_event(reasoning)))
    half = len(text) // 2
    for piece in (text[:half], text[half:]):
        if piece:
            chunks.append(sse(content_event(piece)))
    if usage:
        chunks.append(sse(usage_event()))
    chunks.append(DONE)
    return chunks


def make_tool_call_stream(
    name: str,
    args: dict,
    call_id: str = "call_1",
    content: str | None = None,
) -> list[bytes]:
    """Fake round requesting a single tool call, arguments split in two."""
    return make_multi_tool_call_stream([(name, args, call_id)], content)


def make_multi_tool_call_stream(
    calls: list[tuple[str, dict, str]],
    content: str | None = None,
) -> list[bytes]:
    """Fake round requesting several tool calls.

    Each item in *calls* is ``(func_name, args_dict, call_id)``.
    """
    chunks = []
    if content:
        chunks.append(sse(content_event(content)))
    for index, (name, args, call_id) in enumerate(calls):
        raw = json.dumps(args)
        half = len(raw) // 2
        chunks.append(sse(tool_call_event(index, call_id, name, raw[:half])))
        chunks.append(sse(tool_call_event(index, arguments=raw[half:])))
    chunks.append(DONE)
    return chunks


# ---------------------------------------------------------------------------
# Mock provider
# ---------------------------------------------------------------------------

class MockProvider(ModelProvider):
    """Provider that replays pre-queued byte streams. No network calls.

    A queued item that is an exception instance is raised when reached,
    simulating a read error mid-stream.
    """

    def __init__(self):
        self.responses: list[list] = []
        self.call_log: list[dict] = []
        self.models: list[dict] = []

    async def stream(self, model, messages, tools=None):
        self.call_log.append({"model": model, "messages": messages, "tools": tools})
        for chunk in self.responses.pop(0):
            if isinstance(chunk, Exception):
                raise chunk
            yield chunk

    async def list_models(self):
        return list(self.models)


@pytest.fixture(autouse=True)
def _reset_math_cache():
    """Math cache state is process-wide; isolate each test from the others."""
    mathcache._MATH_CACHE.clear()
    mathcache._INFLIGHT.clear()
    mathcache._FAILED.clear()
    yield
    mathcache._MATH_CACHE.clear()
    mathcache._INFLIGHT.clear()
    mathcache._FAILED.clear()
    mathcache.set_math_renderer(None)


@pytest.fixture
def mock_provider():
    return MockProvider()


@pytest.fixture
def sample_tool():
    @tool
    def greet(name: str):
        """Say hello."""
        return f"Hello {name}"
    return greet


@pytest.fixture
def make_agent(mock_provider):
    """Factory fixture to build agents with the mock provider."""
    def _make(
        tools=None,
        system_prompt=None,
        model="mock-model",
        provider=None,
        dispatch=None,
    ):
        return Agent(
            model=model,
            provider=provider or mock_provider,
            tools=tools or [],
            dispatch=dispatch,
            system_prompt=system_prompt,
        )
    return _make
