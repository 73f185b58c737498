import inspect
import json
import logging
from dataclasses import dataclass
from typing import Any

from tidechat.instrumentation import record_error, tool_span
from tidechat.streaming import ToolCall
from tidechat.tools import ToolDispatch, ToolError

logger = logging.getLogger(__name__)


@dataclass
class ToolResult:
    """The string-serialized outcome of one tool call."""

    call_id: str
    name: str
    content: str
    is_error: bool = False


def parse_arguments(raw: str) -> dict:
    """Parse a tool call's argument text, falling back to an empty record."""
    try:
        params = json.loads(raw or "")
    except json.JSONDecodeError:
        logger.warning(f"Invalid JSON in tool arguments: {raw!r}")
        return {}
    if not isinstance(params, dict):
        logger.warning(f"Tool arguments are not an object: {raw!r}")
        return {}
    return params


def _serialize(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, default=str)


async def _execute_one(tc: ToolCall, dispatch: ToolDispatch) -> ToolResult:
    params = parse_arguments(tc.arguments)
    logger.info(f"Calling {tc.name} with {params}")
    async with tool_span(tc.name, tc.id) as span:
        try:
            output = dispatch(tc.name, params)
            if inspect.isawaitable(output):
                output = await output
        except ToolError as e:
            logger.info(f"Tool {tc.name} reported an error: {e}")
            record_error(span, e)
            return ToolResult(
                call_id=tc.id, name=tc.name,
                content=_serialize({"error": str(e)}), is_error=True,
            )
        except Exception as e:
            logger.error(f"Tool {tc.name} raised: {e}")
            record_error(span, e)
            return ToolResult(
                call_id=tc.id, name=tc.name,
                content=_serialize({"error": str(e) or type(e).__name__}),
                is_error=True,
            )
    return ToolResult(call_id=tc.id, name=tc.name, content=_serialize(output))


async def execute_tool_calls(
    calls: list[ToolCall], dispatch: ToolDispatch,
) -> list[ToolResult]:
    """Run *calls* strictly in order and return one result per call.

    A failing call never stops the ones after it; later calls may rely on
    the side effects of earlier ones.
    """
    results = []
    for tc in calls:
        results.append(await _execute_one(tc, dispatch))
    return results
