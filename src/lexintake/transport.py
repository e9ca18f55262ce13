"""Transport session protocol and the events it produces.

A transport session is one live WhatsApp login. Backends (see
``lexintake.transports``) implement ``TransportSession``; the supervisor
only ever talks to this surface.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Protocol, TypeAlias


class TransportError(RuntimeError):
    """A transport call failed (network, bridge, or session state)."""


class MessageKind(str, Enum):
    TEXT = "text"
    AUDIO = "audio"
    DOCUMENT = "document"
    IMAGE = "image"
    VIDEO = "video"
    UNKNOWN = "unknown"


class DisconnectReason(str, Enum):
    CONNECTION_LOST = "connection_lost"
    LOGGED_OUT = "logged_out"
    SESSION_REPLACED = "session_replaced"
    AUTH_FAILURE = "auth_failure"
    CLOSED = "closed"


@dataclass(frozen=True, slots=True)
class InboundMessage:
    """A message as reported by the transport, before ingestion."""

    message_id: str
    chat_id: str
    sender: str
    kind: MessageKind = MessageKind.TEXT
    body: str = ""
    timestamp: float = 0.0
    display_name: str | None = None
    mimetype: str | None = None
    filename: str | None = None
    from_me: bool = False
    raw: dict[str, Any] = field(default_factory=dict, compare=False)

    @property
    def is_media(self) -> bool:
        return self.kind in {
            MessageKind.AUDIO,
            MessageKind.DOCUMENT,
            MessageKind.IMAGE,
            MessageKind.VIDEO,
        }

    @property
    def phone(self) -> str:
        return self.sender.split("@", 1)[0]


@dataclass(frozen=True, slots=True)
class MediaPayload:
    data: bytes
    mimetype: str | None = None
    filename: str | None = None


@dataclass(frozen=True, slots=True)
class AuthChallenge:
    qr: str


@dataclass(frozen=True, slots=True)
class Authenticated:
    pass


@dataclass(frozen=True, slots=True)
class Ready:
    phone_number: str | None = None


@dataclass(frozen=True, slots=True)
class Disconnected:
    reason: DisconnectReason
    detail: str = ""


@dataclass(frozen=True, slots=True)
class MessageReceived:
    message: InboundMessage


SessionEvent: TypeAlias = (
    AuthChallenge | Authenticated | Ready | Disconnected | MessageReceived
)


class TransportSession(Protocol):
    """One authenticated (or authenticating) WhatsApp session."""

    async def connect(self) -> None:
        """Start the session; returns once the transport accepted it.

        Raises:
            TransportError: If the session could not be started
        """
        ...

    def events(self) -> AsyncIterator[SessionEvent]:
        """Stream of lifecycle and message events until the session ends."""
        ...

    async def send_text(self, chat_id: str, text: str) -> None: ...

    async def send_typing(self, chat_id: str, typing: bool) -> None: ...

    async def download_media(self, message: InboundMessage) -> MediaPayload: ...

    async def ping(self) -> bool:
        """Liveness check used by the keep-alive loop."""
        ...

    async def close(self) -> None: ...

    async def clear_credentials(self) -> None:
        """Forget stored login state so the next connect asks for a QR scan."""
        ...


class SessionFactory(Protocol):
    def __call__(self, bot_id: str, session_path: Path) -> TransportSession: ...
