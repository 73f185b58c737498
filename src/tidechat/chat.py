import logging
import uuid

from tidechat.agent import Agent
from tidechat.config import Settings
from tidechat.document import Document, MessageView
from tidechat.events import RunCompleteEvent, TextChangedEvent
from tidechat.markdown import render_markdown_into
from tidechat.message import MessageRole, ToolCallRequestMessage
from tidechat.runner import Runner, RunResult
from tidechat.scheduler import RenderScheduler
from tidechat.scroll import with_sticky_scroll
from tidechat.session import Session

logger = logging.getLogger(__name__)


class ChatSession:
    """Connects a :class:`Runner` to a rendered :class:`Document`.

    Every text change of the running exchange is handed to a
    :class:`RenderScheduler`, so the assistant view is redrawn at most once
    per ``settings.render_delay`` while the model streams. When the
    exchange ends the view gets one last render with every disclosure
    closed.
    """

    def __init__(
        self,
        agent: Agent,
        session: Session | None = None,
        settings: Settings | None = None,
        document: Document | None = None,
        runner: Runner | None = None,
    ):
        self.settings = settings or Settings()
        self.agent = agent
        self.session = session or Session(
            session_id=uuid.uuid4().hex,
            max_messages=self.settings.max_messages,
        )
        self.document = document or Document()
        self.runner = runner or Runner(
            max_rounds=self.settings.max_rounds,
            include_reasoning=self.settings.include_reasoning,
        )
        self.scheduler = RenderScheduler(
            self._render,
            viewport=self.document.viewport,
            delay=self.settings.render_delay,
            threshold=self.settings.scroll_threshold,
        )
        self.is_sending = False

    def _render(self, view: MessageView, text: str) -> None:
        render_markdown_into(view, text, self.document)

    def _append_rendered(self, role: str, text: str) -> MessageView:
        view = self.document.append(role)
        with_sticky_scroll(
            self.document.viewport,
            lambda: self._render(view, text),
            self.settings.scroll_threshold,
        )
        return view

    async def send(
        self, user_payload: str, display_text: str | None = None,
    ) -> RunResult:
        """Run one exchange for *user_payload* and render it as it streams.

        ``display_text`` is what the user view shows when it differs from
        the payload sent to the model (e.g. attachments folded in).

        Raises:
            RuntimeError: If another exchange is still running.
        """
        if self.is_sending:
            raise RuntimeError("An exchange is already in progress")
        self.is_sending = True
        try:
            user_view = self._append_rendered(
                MessageRole.USER.value,
                user_payload if display_text is None else display_text,
            )
            user_view.finalized = True
            view = self.document.append(MessageRole.ASSISTANT.value)
            try:
                result = await self._stream_into(view, user_payload)
            except Exception as e:
                self.scheduler.flush()
                view.finalized = True
                view.error = True
                logger.error(f"Exchange failed: {e}")
                err = self._append_rendered(
                    MessageRole.ASSISTANT.value, f"**Error:** {e}",
                )
                err.finalized = True
                err.error = True
                raise
            self.scheduler.cancel()
            with_sticky_scroll(
                self.document.viewport,
                lambda: self._finish(view, result),
                self.settings.scroll_threshold,
            )
            return result
        finally:
            self.is_sending = False

    async def _stream_into(self, view: MessageView, user_payload: str) -> RunResult:
        result: RunResult | None = None
        async for event in self.runner.iter(self.agent, self.session, user_payload):
            if isinstance(event, TextChangedEvent):
                self.scheduler.request(view, event.document)
            elif isinstance(event, RunCompleteEvent):
                result = event.result
        if result is None:
            raise RuntimeError("iter() ended without emitting RunCompleteEvent")
        return result

    def _finish(self, view: MessageView, result: RunResult) -> None:
        self._render(view, result.document)
        view.close_disclosures()
        view.raw_answer = result.answer
        view.raw_reasoning = result.reasoning
        view.finalized = True

    def rebuild(self) -> Document:
        """Re-render the stored transcript from scratch.

        Only user and assistant text is shown; tool requests and results
        stay hidden. Blocks come back closed and the view ends at the bottom.
        """
        self.scheduler.cancel()
        self.document.clear()
        for message in self.session.transcript:
            if message.role not in (MessageRole.USER, MessageRole.ASSISTANT):
                continue
            if isinstance(message, ToolCallRequestMessage):
                continue
            view = self.document.append(message.role.value)
            self._render(view, message.content)
            view.close_disclosures()
            if message.role is MessageRole.ASSISTANT:
                view.raw_answer = message.content
            view.finalized = True
        self.document.viewport.scroll_to_bottom()
        return self.document
