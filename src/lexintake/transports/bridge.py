"""HTTP bridge transport.

Talks to a WhatsApp bridge daemon (one process hosting the actual
WhatsApp Web sockets) over a small JSON API:

    POST   /sessions/{id}/start          {"session_path": ...}
    GET    /sessions/{id}/events         ?cursor=N&timeout=S   (long poll)
    POST   /sessions/{id}/messages       {"to": ..., "text": ...}
    POST   /sessions/{id}/presence       {"to": ..., "state": "composing"|"paused"}
    GET    /sessions/{id}/media/{msg}    raw bytes
    GET    /sessions/{id}/ping
    DELETE /sessions/{id}
    DELETE /sessions/{id}/credentials
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from pathlib import Path
from typing import TYPE_CHECKING, Any

import anyio
import anyio.lowlevel
import httpx

from ..logging import get_logger
from ..transport import (
    AuthChallenge,
    Authenticated,
    Disconnected,
    DisconnectReason,
    InboundMessage,
    MediaPayload,
    MessageKind,
    MessageReceived,
    Ready,
    SessionEvent,
    TransportError,
)
from ..transport_registry import SetupResult

if TYPE_CHECKING:
    from ..settings import FleetSettings

logger = get_logger(__name__)

_KIND_ALIASES = {
    "chat": MessageKind.TEXT,
    "text": MessageKind.TEXT,
    "ptt": MessageKind.AUDIO,
    "audio": MessageKind.AUDIO,
    "document": MessageKind.DOCUMENT,
    "image": MessageKind.IMAGE,
    "video": MessageKind.VIDEO,
}

_REASON_ALIASES = {
    "logged_out": DisconnectReason.LOGGED_OUT,
    "logout": DisconnectReason.LOGGED_OUT,
    "session_replaced": DisconnectReason.SESSION_REPLACED,
    "conflict": DisconnectReason.SESSION_REPLACED,
    "auth_failure": DisconnectReason.AUTH_FAILURE,
    "closed": DisconnectReason.CLOSED,
}


def parse_message(payload: dict[str, Any]) -> InboundMessage:
    kind = _KIND_ALIASES.get(str(payload.get("kind", "")).lower(), MessageKind.UNKNOWN)
    return InboundMessage(
        message_id=str(payload["id"]),
        chat_id=str(payload.get("chat") or payload.get("from", "")),
        sender=str(payload.get("from", "")),
        kind=kind,
        body=str(payload.get("body") or ""),
        timestamp=float(payload.get("timestamp") or 0.0),
        display_name=payload.get("name"),
        mimetype=payload.get("mimetype"),
        filename=payload.get("filename"),
        from_me=bool(payload.get("fromMe", False)),
        raw=payload,
    )


def parse_event(payload: dict[str, Any]) -> SessionEvent | None:
    """Translate one bridge event object; unknown types yield None."""
    event_type = payload.get("type")
    if event_type == "qr":
        return AuthChallenge(qr=str(payload.get("qr", "")))
    if event_type == "authenticated":
        return Authenticated()
    if event_type == "ready":
        return Ready(phone_number=payload.get("phone"))
    if event_type == "disconnected":
        reason = _REASON_ALIASES.get(
            str(payload.get("reason", "")).lower(), DisconnectReason.CONNECTION_LOST
        )
        return Disconnected(reason=reason, detail=str(payload.get("detail", "")))
    if event_type == "message":
        return MessageReceived(message=parse_message(payload))
    return None


class BridgeSession:
    """One bot's session hosted by the bridge daemon."""

    def __init__(
        self,
        bot_id: str,
        session_path: Path,
        *,
        base_url: str,
        token: str | None = None,
        poll_timeout_s: int = 50,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.bot_id = bot_id
        self.session_path = session_path
        self._poll_timeout_s = poll_timeout_s
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=base_url,
            headers=headers,
            timeout=httpx.Timeout(30.0, read=poll_timeout_s + 10.0),
        )
        self._prefix = f"/sessions/{bot_id}"
        self._cursor = 0
        self._closed = False

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self._client.request(method, self._prefix + path, **kwargs)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise TransportError(f"bridge {method} {path} failed: {e}") from e
        return response

    async def connect(self) -> None:
        await self._request(
            "POST", "/start", json={"session_path": str(self.session_path)}
        )
        logger.debug("bridge.session_started", bot_id=self.bot_id)

    async def events(self) -> AsyncIterator[SessionEvent]:
        while not self._closed:
            response = await self._request(
                "GET",
                "/events",
                params={"cursor": self._cursor, "timeout": self._poll_timeout_s},
            )
            body = response.json()
            self._cursor = int(body.get("cursor", self._cursor))
            for payload in body.get("events", []):
                event = parse_event(payload)
                if event is None:
                    logger.debug("bridge.event_ignored", type=payload.get("type"))
                    continue
                yield event
                if isinstance(event, Disconnected):
                    return
            await anyio.lowlevel.checkpoint()

    async def send_text(self, chat_id: str, text: str) -> None:
        await self._request("POST", "/messages", json={"to": chat_id, "text": text})

    async def send_typing(self, chat_id: str, typing: bool) -> None:
        state = "composing" if typing else "paused"
        await self._request("POST", "/presence", json={"to": chat_id, "state": state})

    async def download_media(self, message: InboundMessage) -> MediaPayload:
        response = await self._request("GET", f"/media/{message.message_id}")
        return MediaPayload(
            data=response.content,
            mimetype=response.headers.get("content-type") or message.mimetype,
            filename=message.filename,
        )

    async def ping(self) -> bool:
        try:
            response = await self._request("GET", "/ping")
        except TransportError:
            return False
        return bool(response.json().get("ok", False))

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self._request("DELETE", "")
        except TransportError as e:
            logger.warning("bridge.close_failed", bot_id=self.bot_id, error=str(e))
        finally:
            if self._owns_client:
                await self._client.aclose()

    async def clear_credentials(self) -> None:
        await self._request("DELETE", "/credentials")


class BridgeTransportBackend:
    id = "bridge"
    description = "WhatsApp Web sessions hosted by an HTTP bridge daemon"

    def check_setup(self, settings: "FleetSettings") -> SetupResult:
        url = settings.transport.bridge_url
        if not url.startswith(("http://", "https://")):
            return SetupResult(
                ready=False,
                message="transport.bridge_url must be an http(s) URL",
                details={"bridge_url": url},
            )
        return SetupResult(ready=True, message="bridge configured", details={"bridge_url": url})

    def build_session(
        self,
        bot_id: str,
        session_path: Path,
        settings: "FleetSettings",
    ) -> BridgeSession:
        token = settings.transport.bridge_token
        return BridgeSession(
            bot_id,
            session_path,
            base_url=settings.transport.bridge_url,
            token=token.get_secret_value() if token else None,
            poll_timeout_s=settings.transport.poll_timeout_s,
        )


TRANSPORT = BridgeTransportBackend()
