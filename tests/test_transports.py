"""Tests for lexintake.transports and the transport registry."""

from __future__ import annotations

import json
from pathlib import Path

import anyio
import httpx
import pytest

from lexintake.settings import ConfigError, FleetSettings, TransportSettings
from lexintake.transport import (
    AuthChallenge,
    Authenticated,
    Disconnected,
    DisconnectReason,
    MessageKind,
    MessageReceived,
    Ready,
    TransportError,
)
from lexintake.transports import (
    SetupResult,
    TransportBackend,
    check_transport_setup,
    get_default_transport,
    get_transport,
    list_transports,
    session_factory,
)
from lexintake.transports.bridge import (
    BridgeSession,
    BridgeTransportBackend,
    parse_event,
    parse_message,
)
from lexintake.transports.memory import MemorySession, MemoryTransportBackend

BRIDGE_URL = "http://bridge.test"


class TestSetupResult:
    def test_not_ready_result(self) -> None:
        result = SetupResult(ready=False, message="Missing config", details={"x": 1})
        assert result.ready is False
        assert result.details == {"x": 1}


class TestRegistry:
    """Tests for the transport registry functions."""

    def test_lists_builtin_transports(self) -> None:
        assert list_transports() == ["bridge", "memory"]
        assert get_default_transport() == "bridge"

    def test_get_transport_returns_backend(self) -> None:
        backend = get_transport("memory")
        assert isinstance(backend, TransportBackend)
        assert backend.id == "memory"

    def test_unknown_transport_raises(self) -> None:
        with pytest.raises(ConfigError, match="Unknown transport 'telegram'"):
            get_transport("telegram")

    def test_check_setup_unknown(self) -> None:
        result = check_transport_setup("telegram", FleetSettings())
        assert result.ready is False

    def test_session_factory_uses_configured_backend(self, tmp_path: Path) -> None:
        settings = FleetSettings(transport=TransportSettings(backend="memory"))
        build = session_factory(settings)
        session = build("bot-1", tmp_path)
        assert isinstance(session, MemorySession)
        assert session.session_path == tmp_path


class TestMemoryTransport:
    """Tests for the in-process transport."""

    @pytest.mark.anyio
    async def test_connect_emits_ready(self) -> None:
        session = MemorySession("bot-1", phone_number="5511900000001")
        await session.connect()
        await session.close()
        events = [event async for event in session.events()]
        assert events == [Ready(phone_number="5511900000001")]

    @pytest.mark.anyio
    async def test_records_outbound(self) -> None:
        session = MemorySession("bot-1")
        await session.send_text("chat", "olá")
        await session.send_typing("chat", True)
        assert session.sent == [("chat", "olá")]
        assert session.typing == [("chat", True)]

    @pytest.mark.anyio
    async def test_connect_error(self) -> None:
        session = MemorySession("bot-1")
        session.connect_error = TransportError("bridge down")
        with pytest.raises(TransportError):
            await session.connect()

    @pytest.mark.anyio
    async def test_ping_fails_after_close(self) -> None:
        session = MemorySession("bot-1")
        assert await session.ping() is True
        await session.close()
        assert await session.ping() is False

    def test_backend_remembers_sessions(self, tmp_path: Path) -> None:
        backend = MemoryTransportBackend()
        first = backend.build_session("bot-1", tmp_path, FleetSettings())
        second = backend.build_session("bot-1", tmp_path, FleetSettings())
        assert backend.latest("bot-1") is second
        assert backend.sessions["bot-1"] == [first, second]
        assert backend.latest("other") is None


class TestBridgeParsing:
    def test_parse_text_message(self) -> None:
        message = parse_message(
            {
                "id": "ABC",
                "from": "5511988887777@c.us",
                "kind": "chat",
                "body": "oi",
                "timestamp": 1700000000,
                "name": "João",
            }
        )
        assert message.kind is MessageKind.TEXT
        assert message.chat_id == "5511988887777@c.us"
        assert message.phone == "5511988887777"
        assert message.timestamp == 1700000000.0
        assert message.display_name == "João"
        assert message.from_me is False

    def test_parse_voice_note(self) -> None:
        message = parse_message({"id": "1", "from": "x@c.us", "kind": "ptt", "fromMe": True})
        assert message.kind is MessageKind.AUDIO
        assert message.is_media
        assert message.from_me is True

    def test_unknown_kind(self) -> None:
        assert parse_message({"id": "1", "from": "x", "kind": "sticker"}).kind is MessageKind.UNKNOWN

    @pytest.mark.parametrize(
        ("payload", "expected"),
        [
            ({"type": "qr", "qr": "2@abc"}, AuthChallenge(qr="2@abc")),
            ({"type": "authenticated"}, Authenticated()),
            ({"type": "ready", "phone": "5511"}, Ready(phone_number="5511")),
            (
                {"type": "disconnected", "reason": "LOGOUT"},
                Disconnected(reason=DisconnectReason.LOGGED_OUT),
            ),
            (
                {"type": "disconnected", "reason": "conflict", "detail": "opened elsewhere"},
                Disconnected(reason=DisconnectReason.SESSION_REPLACED, detail="opened elsewhere"),
            ),
            (
                {"type": "disconnected", "reason": "NAVIGATION"},
                Disconnected(reason=DisconnectReason.CONNECTION_LOST),
            ),
        ],
    )
    def test_parse_lifecycle_events(self, payload: dict, expected: object) -> None:
        assert parse_event(payload) == expected

    def test_message_event(self) -> None:
        event = parse_event({"type": "message", "id": "1", "from": "x@c.us", "kind": "text"})
        assert isinstance(event, MessageReceived)

    def test_unknown_event(self) -> None:
        assert parse_event({"type": "battery"}) is None


class TestBridgeSession:
    """Tests for BridgeSession against a mocked bridge."""

    def _session(self, handler, tmp_path: Path) -> BridgeSession:
        client = httpx.AsyncClient(base_url=BRIDGE_URL, transport=httpx.MockTransport(handler))
        return BridgeSession("bot-1", tmp_path, base_url=BRIDGE_URL, client=client, poll_timeout_s=1)

    @pytest.mark.anyio
    async def test_connect_and_send(self, tmp_path: Path) -> None:
        requests: list[tuple[str, str, dict | None]] = []

        def handler(request: httpx.Request) -> httpx.Response:
            body = json.loads(request.content) if request.content else None
            requests.append((request.method, request.url.path, body))
            return httpx.Response(200, json={"ok": True})

        session = self._session(handler, tmp_path)
        await session.connect()
        await session.send_text("5511@c.us", "olá")
        await session.send_typing("5511@c.us", True)
        assert await session.ping() is True
        await session.clear_credentials()
        await session.close()

        assert requests == [
            ("POST", "/sessions/bot-1/start", {"session_path": str(tmp_path)}),
            ("POST", "/sessions/bot-1/messages", {"to": "5511@c.us", "text": "olá"}),
            ("POST", "/sessions/bot-1/presence", {"to": "5511@c.us", "state": "composing"}),
            ("GET", "/sessions/bot-1/ping", None),
            ("DELETE", "/sessions/bot-1/credentials", None),
            ("DELETE", "/sessions/bot-1", None),
        ]

    @pytest.mark.anyio
    async def test_events_long_poll_with_cursor(self, tmp_path: Path) -> None:
        cursors: list[str] = []
        pages = [
            {"cursor": 2, "events": [{"type": "qr", "qr": "2@x"}, {"type": "ready", "phone": "55"}]},
            {"cursor": 3, "events": [{"type": "disconnected", "reason": "logout"}]},
        ]

        def handler(request: httpx.Request) -> httpx.Response:
            cursors.append(request.url.params["cursor"])
            return httpx.Response(200, json=pages.pop(0))

        session = self._session(handler, tmp_path)
        with anyio.fail_after(5):
            events = [event async for event in session.events()]

        assert events == [
            AuthChallenge(qr="2@x"),
            Ready(phone_number="55"),
            Disconnected(reason=DisconnectReason.LOGGED_OUT),
        ]
        assert cursors == ["0", "2"]

    @pytest.mark.anyio
    async def test_http_errors_become_transport_errors(self, tmp_path: Path) -> None:
        session = self._session(lambda r: httpx.Response(502), tmp_path)
        with pytest.raises(TransportError, match="bridge POST /start failed"):
            await session.connect()
        assert await session.ping() is False

    @pytest.mark.anyio
    async def test_download_media(self, tmp_path: Path) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/sessions/bot-1/media/MSG1"
            return httpx.Response(200, content=b"%PDF", headers={"content-type": "application/pdf"})

        session = self._session(handler, tmp_path)
        message = parse_message({"id": "MSG1", "from": "x@c.us", "kind": "document"})
        payload = await session.download_media(message)
        assert payload.data == b"%PDF"
        assert payload.mimetype == "application/pdf"


class TestBridgeBackend:
    def test_check_setup_requires_http_url(self) -> None:
        backend = BridgeTransportBackend()
        bad = FleetSettings(transport=TransportSettings(bridge_url="bridge:3000"))
        assert backend.check_setup(bad).ready is False
        assert backend.check_setup(FleetSettings()).ready is True

    def test_build_session(self, tmp_path: Path) -> None:
        settings = FleetSettings(transport=TransportSettings(bridge_url=BRIDGE_URL, bridge_token="t"))
        session = BridgeTransportBackend().build_session("bot-9", tmp_path, settings)
        assert isinstance(session, BridgeSession)
        assert session.bot_id == "bot-9"
