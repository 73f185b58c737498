import logging
import math
import os
import re
from collections.abc import AsyncIterator

import httpx
from openai import APIError, AsyncOpenAI

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "http://localhost:8080/v1"

_CONTEXT_FIELDS = (
    "context_length",
    "max_context_length",
    "max_context_tokens",
    "n_ctx",
    "ctx",
)


class TransportError(Exception):
    """The model endpoint could not be reached or the stream broke off.

    Terminal for the whole exchange; there is no partial-success path.
    """


class ModelProvider:
    """Source of raw chat-completion byte streams.

    Subclasses open one streaming request per round and yield the response
    body exactly as it arrives; decoding is the caller's job.
    """

    system = "openai"

    def stream(
        self,
        model: str,
        messages: list[dict],
        tools: list[dict] | None = None,
    ) -> AsyncIterator[bytes]:
        raise NotImplementedError

    async def list_models(self) -> list[dict]:
        return []


def build_request(
    model: str, messages: list[dict], tools: list[dict] | None = None,
) -> dict:
    """Assemble the keyword arguments of one streaming round request."""
    request = {
        "model": model,
        "messages": messages,
        "stream": True,
        "stream_options": {"include_usage": True},
    }
    if tools:
        request["tools"] = tools
        request["tool_choice"] = "auto"
    return request


class OpenAICompatibleProvider(ModelProvider):
    """Any endpoint speaking the OpenAI chat-completions protocol."""

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        api_key: str | None = None,
        max_retries: int = 2,
        timeout: float = 600.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.client = AsyncOpenAI(
            base_url=self.base_url,
            api_key=api_key or "EMPTY",
            max_retries=max_retries,
            timeout=timeout,
        )

    async def stream(
        self,
        model: str,
        messages: list[dict],
        tools: list[dict] | None = None,
    ) -> AsyncIterator[bytes]:
        request = build_request(model, messages, tools)
        try:
            async with self.client.chat.completions.with_streaming_response.create(
                **request
            ) as response:
                async for chunk in response.iter_bytes():
                    yield chunk
        except (APIError, httpx.HTTPError) as e:
            raise TransportError(str(e) or type(e).__name__) from e

    async def list_models(self) -> list[dict]:
        try:
            page = await self.client.models.list()
        except (APIError, httpx.HTTPError) as e:
            raise TransportError(str(e) or type(e).__name__) from e
        return [m.model_dump() for m in page.data]


class OpenAIProvider(OpenAICompatibleProvider):

    def __init__(self, api_key: str | None = None):
        if not api_key:
            api_key = os.getenv("OPENAI_API_KEY")
        super().__init__(
            base_url="https://api.openai.com/v1",
            api_key=api_key,
            max_retries=5,
        )


class OpenRouter(OpenAICompatibleProvider):
    system = "openrouter"

    def __init__(self, api_key: str | None = None):
        if not api_key:
            api_key = os.getenv("OPENROUTER_API_KEY")
        super().__init__(
            base_url="https://openrouter.ai/api/v1",
            api_key=api_key,
            max_retries=5,
            timeout=180.0,
        )


def pick_default_model(models: list[dict]) -> str | None:
    """Prefer a llama model, otherwise the first advertised one."""
    ids = [m.get("id") for m in models if isinstance(m, dict) and m.get("id")]
    for model_id in ids:
        if re.search("llama", model_id, re.IGNORECASE):
            return model_id
    return ids[0] if ids else None


def context_length_of(model: dict) -> int | None:
    """Read the context window size from a model listing entry, if present."""
    candidates = [model.get(k) for k in _CONTEXT_FIELDS]
    meta = model.get("meta")
    if isinstance(meta, dict):
        candidates.extend(meta.get(k) for k in _CONTEXT_FIELDS[:4])
    for value in candidates:
        if isinstance(value, (int, float)) and not isinstance(value, bool) \
                and math.isfinite(value) and value > 0:
            return int(value)
    return None
