from pydantic import BaseModel, ConfigDict, Field

from tidechat.provider import ModelProvider
from tidechat.tools import Tool, ToolDispatch, make_dispatch


class Agent(BaseModel):
    """What the runner talks to: a model, its endpoint and its tools.

    Args:
        model: Model identifier. Empty means "pick one from the endpoint's
            model listing" before the first round.
        provider: Endpoint that streams chat completions.
        tools: Tools advertised to the model and dispatched by name.
        dispatch: Optional custom dispatch function; defaults to one built
            from ``tools``.
        system_prompt: Sent ahead of the transcript on every round, never
            stored in it.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    model: str = ""
    provider: ModelProvider
    tools: list[Tool] = Field(default_factory=list)
    dispatch: ToolDispatch | None = None
    system_prompt: str | None = None

    def model_post_init(self, __context) -> None:
        if self.dispatch is None:
            self.dispatch = make_dispatch(self.tools)

    def tool_schemas(self) -> list[dict] | None:
        schemas = [t.model_dump() for t in self.tools]
        return schemas or None
