"""Per-conversation turn orchestration.

Each turn owns a ``StreamSession``. Callbacks are bound to the session they
were created for, and a session may commit only while it is the controller's
active one and only once, so a late ``on_complete`` from an earlier turn can
never land in a later turn's slot and a Stop racing a natural completion
appends at most one assistant message.
"""

import asyncio
import itertools
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional

from chat_errors import GENERIC_MESSAGE, ChatError
from chat_models import Message
from local_quota import CountInfo
from stream_client import AbortSignal, Capability, StreamClient

logger = logging.getLogger(__name__)

MAX_INPUT_CHARS = 500


class ChatState(Enum):
    IDLE = "idle"
    SENDING = "sending"
    STREAMING = "streaming"
    COMMITTING = "committing"
    ERROR = "error"


@dataclass(eq=False)
class StreamSession:
    id: int
    signal: AbortSignal = field(default_factory=AbortSignal)
    buffer: str = ""
    committed: bool = False
    task: Optional["asyncio.Task[None]"] = None


class ChatController:
    def __init__(
        self,
        client: StreamClient,
        *,
        on_change: Optional[Callable[["ChatController"], None]] = None,
        max_input_chars: int = MAX_INPUT_CHARS,
    ):
        self.client = client
        self.history: List[Message] = []
        self.state = ChatState.IDLE
        self.error: Optional[str] = None
        self.max_input_chars = max_input_chars
        self._on_change = on_change
        self._session: Optional[StreamSession] = None
        self._ids = itertools.count(1)

    @property
    def live_text(self) -> str:
        """Uncommitted text of the turn in flight, for rendering only."""
        return self._session.buffer if self._session else ""

    @property
    def is_busy(self) -> bool:
        return self._session is not None

    async def count_info(self) -> CountInfo:
        return await self.client.quota.get_count_info()

    def submit(self, text: str) -> Optional["asyncio.Task[None]"]:
        """Start a turn; the user message is in history before this returns.

        Returns the task driving the network side, or None for blank input.
        Must be called from inside a running event loop.
        """
        content = (text or "").strip()
        if not content:
            return None
        if len(content) > self.max_input_chars:
            raise ValueError(f"message too long (max {self.max_input_chars} chars)")

        if self._session is not None:
            self._supersede(self._session)

        self.error = None
        self.history.append(Message(role="user", content=content))
        session = StreamSession(id=next(self._ids))
        self._session = session
        self._set_state(ChatState.SENDING)
        session.task = asyncio.ensure_future(self._run(session, list(self.history)))
        return session.task

    async def send(self, text: str) -> None:
        task = self.submit(text)
        if task is not None:
            await task

    def stop(self) -> None:
        session = self._session
        if session is None:
            return
        session.signal.abort()
        if self.client.capability is Capability.UNSUPPORTED:
            # Simulated reveal: what is on screen is exactly what gets kept.
            self._commit(session, session.buffer)

    async def _run(self, session: StreamSession, messages: List[Message]) -> None:
        try:
            await self.client.send(
                messages,
                on_delta=lambda chunk: self._on_delta(session, chunk),
                on_complete=lambda text: self._commit(session, text),
                on_error=lambda err: self._fail(session, err),
                abort_signal=session.signal,
            )
        except Exception:
            logger.exception("chat turn %d failed", session.id)
            self._fail(session, ChatError(GENERIC_MESSAGE))

    def _supersede(self, previous: StreamSession) -> None:
        # Keep what the old turn already showed, then cut it off for good.
        previous.signal.abort()
        self._commit(previous, previous.buffer)

    def _is_live(self, session: StreamSession) -> bool:
        return session is self._session and not session.committed

    def _on_delta(self, session: StreamSession, chunk: str) -> None:
        if not self._is_live(session):
            return
        session.buffer += chunk
        self._set_state(ChatState.STREAMING)

    def _commit(self, session: StreamSession, text: str) -> None:
        if not self._is_live(session):
            return
        session.committed = True
        self._set_state(ChatState.COMMITTING)
        if text.strip():
            self.history.append(Message(role="assistant", content=text))
        session.buffer = ""
        self._session = None
        self._set_state(ChatState.IDLE)

    def _fail(self, session: StreamSession, err: ChatError) -> None:
        if not self._is_live(session):
            return
        session.committed = True
        session.buffer = ""
        self._session = None
        self.error = err.message
        self._set_state(ChatState.ERROR)
        self._set_state(ChatState.IDLE)

    def _set_state(self, state: ChatState) -> None:
        self.state = state
        if self._on_change is not None:
            self._on_change(self)
