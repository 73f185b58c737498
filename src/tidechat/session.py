from pydantic import BaseModel, Field, SerializeAsAny

from tidechat.message import Message, MessageRole


class Session(BaseModel):
    """Rolling conversation window sent to the model on every exchange.

    Only the :class:`~tidechat.runner.Runner` mutates ``transcript``, and
    only once an exchange has completed.
    """

    session_id: str
    transcript: list[SerializeAsAny[Message]] = Field(default_factory=list)
    max_messages: int = 20

    def trim(self) -> None:
        """Drop the oldest messages beyond ``max_messages``.

        Tool results left at the head of the window lost the assistant turn
        that requested them, so they are dropped too.
        """
        limit = self.max_messages if self.max_messages > 0 else 20
        if len(self.transcript) > limit:
            window = self.transcript[-limit:]
            while window and window[0].role is MessageRole.TOOL:
                window.pop(0)
            self.transcript = window
