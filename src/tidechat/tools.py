import inspect
import re
from collections.abc import Awaitable, Callable
from typing import Any

from pydantic import BaseModel, Field

ToolDispatch = Callable[[str, dict], Awaitable[Any]]

_JSON_TYPES = {
    str: "string",
    int: "integer",
    float: "number",
    bool: "boolean",
    list: "array",
    tuple: "array",
    set: "array",
    dict: "object",
    type(None): "null",
}

_GOOGLE_HEADERS = ("args:", "arguments:", "parameters:", "params:")


class ToolError(Exception):
    """Raised by a tool to report a failure the model should see.

    The message becomes the ``error`` field of the tool result instead of
    aborting the exchange.
    """


class ToolCallResult(BaseModel):
    tool_name: str
    output: Any = None


def _json_type(annotation: Any) -> str:
    if annotation is inspect.Parameter.empty:
        return "string"
    if isinstance(annotation, str):
        by_name = {t.__name__: v for t, v in _JSON_TYPES.items()}
        return by_name.get(annotation.split("[", 1)[0], "string")
    origin = getattr(annotation, "__origin__", None)
    return _JSON_TYPES.get(origin or annotation, "string")


def _parse_param_descriptions(func: Callable) -> dict[str, str]:
    """Pull per-parameter descriptions out of a Google, reST or NumPy docstring."""
    doc = inspect.getdoc(func)
    if not doc:
        return {}
    lines = doc.splitlines()
    descriptions: dict[str, list[str]] = {}

    # reST: ":param name: description"
    for line in lines:
        m = re.match(r"\s*:param\s+(?:\w+\s+)?(\w+):\s*(.*)", line)
        if m:
            descriptions[m.group(1)] = [m.group(2).strip()]
    if descriptions:
        return {k: "\n".join(v) for k, v in descriptions.items()}

    # Google: "Args:" followed by indented "name (type): description"
    in_section = False
    current = None
    base_indent = None
    for line in lines:
        stripped = line.strip()
        if stripped.lower() in _GOOGLE_HEADERS:
            in_section = True
            continue
        if not in_section:
            continue
        if not stripped:
            current = None
            continue
        indent = len(line) - len(line.lstrip())
        if indent == 0:
            break
        if base_indent is None:
            base_indent = indent
        m = re.match(r"(\w+)\s*(?:\([^)]*\))?\s*:\s*(.*)", stripped)
        if indent == base_indent and m:
            current = m.group(1)
            descriptions[current] = [m.group(2).strip()]
        elif current is not None:
            descriptions[current].append(stripped)
    if descriptions:
        return {k: "\n".join(v) for k, v in descriptions.items()}

    # NumPy: "Parameters" + dashes, then "name : type" and indented text
    for i, line in enumerate(lines[:-1]):
        if line.strip() == "Parameters" and set(lines[i + 1].strip()) == {"-"}:
            current = None
            for body in lines[i + 2:]:
                if not body.strip():
                    continue
                if not body.startswith((" ", "\t")):
                    m = re.match(r"(\w+)\s*:", body)
                    if not m:
                        break
                    current = m.group(1)
                    descriptions[current] = []
                elif current is not None:
                    descriptions[current].append(body.strip())
            break
    return {k: "\n".join(v) for k, v in descriptions.items()}


def _build_parameters_schema(func: Callable) -> tuple[dict, list[str]]:
    """Build a JSON schema for *func*'s parameters from its signature."""
    signature = inspect.signature(func)
    descriptions = _parse_param_descriptions(func)
    properties = {}
    required = []
    for name, param in signature.parameters.items():
        if param.kind in (param.VAR_POSITIONAL, param.VAR_KEYWORD):
            continue
        properties[name] = {
            "type": _json_type(param.annotation),
            "description": descriptions.get(name, ""),
        }
        if param.default is inspect.Parameter.empty:
            required.append(name)
    schema = {
        "type": "object",
        "properties": properties,
        "required": required,
    }
    return schema, required


class Tool(BaseModel):
    """A callable advertised to the model as a function tool.

    Args:
        func: Sync or async callable receiving the parsed arguments as
            keyword arguments.
        name: Tool name sent to the model.
        description: Tool description sent to the model.
        parameters_schema: JSON schema of the arguments object.
    """

    model_config = {"arbitrary_types_allowed": True}

    func: Callable = Field(exclude=True)
    name: str
    description: str = ""
    parameters_schema: dict = Field(default_factory=dict)

    def model_dump(self, **kwargs):
        """Return the OpenAI-compatible function declaration."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters_schema,
            },
        }

    async def __call__(self, **kwargs) -> ToolCallResult:
        output = self.func(**kwargs)
        if inspect.isawaitable(output):
            output = await output
        return ToolCallResult(tool_name=self.name, output=output)


def tool(func: Callable | None = None, *, name: str | None = None,
         description: str | None = None, strict: bool = False):
    """Turn a function into a :class:`Tool`.

    Usable bare (``@tool``) or with overrides
    (``@tool(name="x", description="y")``). With ``strict=True`` the
    schema rejects arguments it does not declare.
    """
    def wrap(f: Callable) -> Tool:
        schema, _ = _build_parameters_schema(f)
        if strict:
            schema["additionalProperties"] = False
        doc = inspect.getdoc(f) or ""
        summary = doc.split("\n\n", 1)[0].strip()
        return Tool(
            func=f,
            name=name or f.__name__,
            description=description if description is not None else summary,
            parameters_schema=schema,
        )

    if func is not None:
        return wrap(func)
    return wrap


def make_dispatch(tools: list[Tool]) -> ToolDispatch:
    """Build a name-keyed dispatch function over *tools*.

    Raises:
        ValueError: If two tools share a name.
    """
    registry: dict[str, Tool] = {}
    for t in tools:
        if t.name in registry:
            raise ValueError(f"Duplicate tool name: '{t.name}'")
        registry[t.name] = t

    async def dispatch(name: str, args: dict) -> Any:
        tool_obj = registry.get(name)
        if tool_obj is None:
            raise ToolError(f"Unknown tool: {name}")
        result = await tool_obj(**args)
        return result.output

    return dispatch
