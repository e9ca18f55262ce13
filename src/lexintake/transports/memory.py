"""In-process loopback transport.

Sessions are driven from Python: ``emit`` pushes lifecycle or message
events, and everything the bot sends is recorded on the session. Useful
for local dry runs and as the session used by the test-suite.
"""

from __future__ import annotations

import math
from collections.abc import AsyncIterator
from pathlib import Path
from typing import TYPE_CHECKING

import anyio

from ..logging import get_logger
from ..transport import (
    InboundMessage,
    MediaPayload,
    Ready,
    SessionEvent,
    TransportError,
)
from ..transport_registry import SetupResult

if TYPE_CHECKING:
    from ..settings import FleetSettings

logger = get_logger(__name__)


class MemorySession:
    """A fake WhatsApp session living entirely in memory."""

    def __init__(
        self,
        bot_id: str,
        session_path: Path | None = None,
        *,
        phone_number: str | None = "5511900000000",
        auto_ready: bool = True,
    ) -> None:
        self.bot_id = bot_id
        self.session_path = session_path
        self.phone_number = phone_number
        self.auto_ready = auto_ready
        self.sent: list[tuple[str, str]] = []
        self.typing: list[tuple[str, bool]] = []
        self.media: dict[str, MediaPayload] = {}
        self.connect_error: Exception | None = None
        self.send_error: Exception | None = None
        self.ping_ok = True
        self.connected = False
        self.closed = False
        self.credentials_cleared = False
        self._send, self._receive = anyio.create_memory_object_stream[SessionEvent](
            max_buffer_size=math.inf
        )

    def emit(self, event: SessionEvent) -> None:
        self._send.send_nowait(event)

    async def connect(self) -> None:
        if self.connect_error is not None:
            raise self.connect_error
        self.connected = True
        if self.auto_ready:
            self.emit(Ready(phone_number=self.phone_number))

    async def events(self) -> AsyncIterator[SessionEvent]:
        async for event in self._receive:
            yield event

    async def send_text(self, chat_id: str, text: str) -> None:
        if self.send_error is not None:
            raise self.send_error
        self.sent.append((chat_id, text))

    async def send_typing(self, chat_id: str, typing: bool) -> None:
        self.typing.append((chat_id, typing))

    async def download_media(self, message: InboundMessage) -> MediaPayload:
        try:
            return self.media[message.message_id]
        except KeyError:
            raise TransportError(f"no media for message {message.message_id}") from None

    async def ping(self) -> bool:
        return self.ping_ok and not self.closed

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self.connected = False
        self._send.close()

    async def clear_credentials(self) -> None:
        self.credentials_cleared = True


class MemoryTransportBackend:
    """Backend handing out MemorySession objects and remembering them."""

    id = "memory"
    description = "In-process loopback transport for dry runs and tests"

    def __init__(self) -> None:
        self.sessions: dict[str, list[MemorySession]] = {}

    def check_setup(self, settings: "FleetSettings") -> SetupResult:
        _ = settings
        return SetupResult(ready=True, message="memory transport needs no setup")

    def build_session(
        self,
        bot_id: str,
        session_path: Path,
        settings: "FleetSettings",
    ) -> MemorySession:
        _ = settings
        session = MemorySession(bot_id, session_path)
        self.sessions.setdefault(bot_id, []).append(session)
        logger.debug("memory.session_built", bot_id=bot_id)
        return session

    def latest(self, bot_id: str) -> MemorySession | None:
        sessions = self.sessions.get(bot_id)
        return sessions[-1] if sessions else None


TRANSPORT = MemoryTransportBackend()
