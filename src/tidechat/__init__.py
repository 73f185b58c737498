from tidechat.agent import Agent
from tidechat.chat import ChatSession
from tidechat.config import Settings, configure_logging
from tidechat.instrumentation import instrument, uninstrument
from tidechat.provider import OpenAICompatibleProvider, TransportError
from tidechat.runner import MAX_TOOL_ROUNDS, Runner, RunResult
from tidechat.session import Session
from tidechat.tools import Tool, ToolError, tool

__all__ = [
    "Agent",
    "ChatSession",
    "MAX_TOOL_ROUNDS",
    "OpenAICompatibleProvider",
    "RunResult",
    "Runner",
    "Session",
    "Settings",
    "Tool",
    "ToolError",
    "TransportError",
    "configure_logging",
    "instrument",
    "tool",
    "uninstrument",
]
