"""Tests for lexintake.supervisor."""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path

import anyio
import pytest

from factories import CLIENT_CHAT, CLIENT_PHONE, MemorySessions, RecordingSleep, inbound, until
from lexintake import prompts
from lexintake.delivery import DeliveryThrottle
from lexintake.ingest import MessageIngestPipeline
from lexintake.model import BotInstance, BotStatus
from lexintake.settings import AdmissionSettings, SupervisorSettings
from lexintake.supervisor import ConnectionSupervisor, reconnect_delay, restore_timeout
from lexintake.transport import (
    AuthChallenge,
    Authenticated,
    Disconnected,
    DisconnectReason,
    MessageKind,
    MessageReceived,
    TransportError,
)
from lexintake.transports.memory import MemorySession

FAST = SupervisorSettings(
    reconnect_base_delay_s=0.01,
    reconnect_max_delay_s=0.05,
    keepalive_interval_s=3600.0,
    restore_timeout_base_s=0.05,
    restore_timeout_step_s=0.0,
    restart_pause_s=0.0,
)


class FakeEngine:
    """Stands in for ConversationEngine; answers every turn with ``reply``.

    Set ``gate`` to hold every turn until the event fires.
    """

    def __init__(self, reply: str = "Olá! Sou a Ana, como posso ajudar?") -> None:
        self.reply = reply
        self.error: Exception | None = None
        self.gate: anyio.Event | None = None
        self.calls: list[tuple[str, str, str | None]] = []
        self.attached = False
        self.deliver: Callable | None = None

    def attach(self, tg: object) -> None:
        self.attached = True

    def detach(self) -> None:
        self.attached = False

    def set_retry_callbacks(self, on_success: Callable, on_failed: Callable) -> None:
        self.deliver = on_success

    async def process_incoming_message(
        self, phone: str, text: str, display_name: str | None = None
    ) -> str:
        self.calls.append((phone, text, display_name))
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return self.reply


class GatedSessions(MemorySessions):
    """Sessions whose ``connect`` waits for ``release`` and counts overlap."""

    def __init__(self) -> None:
        super().__init__()
        self.release = anyio.Event()
        self.connecting: list[str] = []
        self.connected: list[str] = []
        self.peak = 0

    def __call__(self, bot_id: str, session_path: Path | None) -> MemorySession:
        session = GatedSession(self, bot_id, session_path)
        self.sessions.append(session)
        return session


class GatedSession(MemorySession):
    def __init__(self, factory: GatedSessions, bot_id: str, session_path: Path | None) -> None:
        super().__init__(bot_id, session_path)
        self.factory = factory

    async def connect(self) -> None:
        factory = self.factory
        factory.connecting.append(self.bot_id)
        factory.peak = max(factory.peak, len(factory.connecting))
        try:
            await factory.release.wait()
            await super().connect()
        finally:
            factory.connecting.remove(self.bot_id)
        factory.connected.append(self.bot_id)


def _supervisor(
    bot: BotInstance | None = None,
    *,
    sessions: MemorySessions | None = None,
    engine: FakeEngine | None = None,
    settings: SupervisorSettings = FAST,
    notify: Callable[[BotInstance], None] | None = None,
    admission: AdmissionSettings | None = None,
    sleep: RecordingSleep | None = None,
    global_lock: anyio.Lock | None = None,
) -> ConnectionSupervisor:
    bot = bot or BotInstance(id="bot-1", name="Escritório Silva")
    return ConnectionSupervisor(
        bot,
        session_factory=sessions or MemorySessions(),
        engine=engine or FakeEngine(),  # type: ignore[arg-type]
        pipeline=MessageIngestPipeline(bot, settings=admission),
        throttle=DeliveryThrottle(sleep=sleep or RecordingSleep()),
        global_lock=global_lock or anyio.Lock(),
        settings=settings,
        notify=notify,
    )


class TestBackoff:
    def test_reconnect_delay_grows_and_caps(self) -> None:
        settings = SupervisorSettings()
        delays = [reconnect_delay(n, settings) for n in range(1, 11)]
        assert delays[:3] == [5.0, 7.5, 11.25]
        assert delays[-1] == 60.0
        assert max(delays) == 60.0

    def test_restore_timeout_grows_per_attempt(self) -> None:
        settings = SupervisorSettings()
        assert restore_timeout(0, settings) == 30.0
        assert restore_timeout(2, settings) == 50.0


class TestOnDisconnect:
    """Tests for the disconnect decision table."""

    def test_connection_lost_backs_off_then_gives_up(self) -> None:
        supervisor = _supervisor(settings=SupervisorSettings())
        delays = [supervisor.on_disconnect(DisconnectReason.CONNECTION_LOST) for _ in range(10)]
        assert delays[0] == 5.0
        assert all(d is not None for d in delays)
        assert supervisor.bot.status is BotStatus.RECONNECTING

        assert supervisor.on_disconnect(DisconnectReason.CONNECTION_LOST) is None
        assert supervisor.bot.status is BotStatus.DISCONNECTED
        assert "10" in (supervisor.bot.last_error or "")

    def test_logged_out_stays_down(self) -> None:
        supervisor = _supervisor()
        assert supervisor.on_disconnect(DisconnectReason.LOGGED_OUT) is None
        assert supervisor.bot.status is BotStatus.DISCONNECTED
        assert supervisor.bot.reconnect_attempts == 0

    def test_auth_failure_is_an_error(self) -> None:
        supervisor = _supervisor()
        assert supervisor.on_disconnect(DisconnectReason.AUTH_FAILURE, "bad creds") is None
        assert supervisor.bot.status is BotStatus.ERROR
        assert supervisor.bot.last_error == "bad creds"

    def test_session_replaced_reconnects_immediately(self) -> None:
        supervisor = _supervisor()
        assert supervisor.on_disconnect(DisconnectReason.SESSION_REPLACED) == 0.0
        assert supervisor.bot.reconnect_attempts == 1

    def test_manual_stop_wins(self) -> None:
        supervisor = _supervisor()
        supervisor.bot.manual_stop = True
        assert supervisor.on_disconnect(DisconnectReason.CONNECTION_LOST) is None
        assert supervisor.bot.status is BotStatus.STOPPED


class TestLifecycle:
    """Tests driving the supervisor actor with memory sessions."""

    @pytest.mark.anyio
    async def test_start_connects(self, tmp_path: Path) -> None:
        statuses: list[BotStatus] = []
        bot = BotInstance(id="bot-1", name="Silva", session_path=tmp_path / "session-bot-1")
        engine = FakeEngine()
        supervisor = _supervisor(bot, engine=engine, notify=lambda b: statuses.append(b.status))

        async with anyio.create_task_group() as tg:
            await tg.start(supervisor.run)
            assert engine.attached
            assert await supervisor.start() is True
            await until(lambda: bot.status is BotStatus.CONNECTED)

            assert bot.is_active
            assert bot.has_connected_before
            assert bot.phone_number == "5511900000000"
            assert (tmp_path / "session-bot-1").is_dir()
            assert supervisor.running
            assert await supervisor.start() is False

            await supervisor.shutdown()

        assert statuses[0] is BotStatus.INITIALIZING
        assert BotStatus.CONNECTED in statuses
        assert bot.status is BotStatus.STOPPED
        assert bot.manual_stop is False
        assert not engine.attached

    @pytest.mark.anyio
    async def test_qr_flow(self) -> None:
        sessions = MemorySessions(auto_ready=False)
        supervisor = _supervisor(sessions=sessions)
        bot = supervisor.bot

        async with anyio.create_task_group() as tg:
            await tg.start(supervisor.run)
            await supervisor.start()
            sessions.latest.emit(AuthChallenge(qr="2@qr-payload"))
            await until(lambda: bot.status is BotStatus.WAITING_FOR_SCAN)
            assert bot.qr_code == "2@qr-payload"

            sessions.latest.emit(Authenticated())
            await until(lambda: bot.status is BotStatus.AUTHENTICATED)
            assert bot.qr_code is None
            await supervisor.shutdown()

    @pytest.mark.anyio
    async def test_connect_error_marks_bot_failed(self) -> None:
        sessions = MemorySessions(connect_error=TransportError("bridge unreachable"))
        supervisor = _supervisor(sessions=sessions)

        async with anyio.create_task_group() as tg:
            await tg.start(supervisor.run)
            assert await supervisor.start() is False
            assert supervisor.bot.status is BotStatus.ERROR
            assert supervisor.bot.last_error == "bridge unreachable"
            await until(lambda: not supervisor.running)
            assert sessions.latest.closed
            await supervisor.shutdown()

    @pytest.mark.anyio
    async def test_stop_and_restart(self) -> None:
        sessions = MemorySessions()
        supervisor = _supervisor(sessions=sessions)
        bot = supervisor.bot

        async with anyio.create_task_group() as tg:
            await tg.start(supervisor.run)
            await supervisor.start()
            await until(lambda: bot.status is BotStatus.CONNECTED)

            assert await supervisor.stop() is True
            assert bot.status is BotStatus.STOPPED
            assert bot.manual_stop is True
            assert sessions.latest.closed
            assert not supervisor.running
            assert await supervisor.stop() is False

            assert await supervisor.restart() is True
            await until(lambda: bot.status is BotStatus.CONNECTED)
            assert bot.manual_stop is False
            assert len(sessions.sessions) == 2
            await supervisor.shutdown()

    @pytest.mark.anyio
    async def test_logout_event_stops_reconnecting(self) -> None:
        sessions = MemorySessions()
        supervisor = _supervisor(sessions=sessions)

        async with anyio.create_task_group() as tg:
            await tg.start(supervisor.run)
            await supervisor.start()
            await until(lambda: supervisor.bot.status is BotStatus.CONNECTED)
            sessions.latest.emit(Disconnected(reason=DisconnectReason.LOGGED_OUT))
            await until(lambda: not supervisor.running)

            assert supervisor.bot.status is BotStatus.DISCONNECTED
            assert len(sessions.sessions) == 1
            await supervisor.shutdown()

    @pytest.mark.anyio
    async def test_dropped_session_reconnects(self) -> None:
        sessions = MemorySessions()
        supervisor = _supervisor(sessions=sessions)
        bot = supervisor.bot

        async with anyio.create_task_group() as tg:
            await tg.start(supervisor.run)
            await supervisor.start()
            await until(lambda: bot.status is BotStatus.CONNECTED)

            await sessions.latest.close()
            await until(lambda: len(sessions.sessions) == 2)
            await until(lambda: bot.status is BotStatus.CONNECTED)
            assert bot.reconnect_attempts == 0
            await supervisor.shutdown()

    @pytest.mark.anyio
    async def test_keepalive_failure_reconnects(self) -> None:
        sessions = MemorySessions()
        settings = FAST.model_copy(update={"keepalive_interval_s": 0.02})
        supervisor = _supervisor(sessions=sessions, settings=settings)
        bot = supervisor.bot

        async with anyio.create_task_group() as tg:
            await tg.start(supervisor.run)
            await supervisor.start()
            await until(lambda: bot.status is BotStatus.CONNECTED)

            first = sessions.latest
            first.ping_ok = False
            await until(lambda: len(sessions.sessions) == 2)
            await until(lambda: bot.status is BotStatus.CONNECTED)
            assert first.closed
            await supervisor.shutdown()

    @pytest.mark.anyio
    async def test_restore_timeouts_wipe_credentials(self, tmp_path: Path) -> None:
        session_path = tmp_path / "session-bot-1"
        session_path.mkdir()
        (session_path / "creds.json").write_text("{}")
        bot = BotInstance(
            id="bot-1", name="Silva", session_path=session_path, has_connected_before=True
        )
        sessions = MemorySessions(auto_ready=False)
        supervisor = _supervisor(bot, sessions=sessions)

        async with anyio.create_task_group() as tg:
            await tg.start(supervisor.run)
            await supervisor.start(restore=True)
            await until(lambda: len(sessions.sessions) == 3)

            assert not sessions.sessions[0].credentials_cleared
            assert sessions.sessions[1].credentials_cleared
            assert not (session_path / "creds.json").exists()
            assert bot.has_connected_before is False
            assert bot.restore_attempts == 0

            sessions.latest.emit(AuthChallenge(qr="2@fresh"))
            await until(lambda: bot.status is BotStatus.WAITING_FOR_SCAN)
            await supervisor.shutdown()

    @pytest.mark.anyio
    async def test_connects_are_serialized_across_bots(self) -> None:
        sessions = GatedSessions()
        lock = anyio.Lock()
        first = _supervisor(
            BotInstance(id="bot-1", name="Silva"), sessions=sessions, global_lock=lock
        )
        second = _supervisor(
            BotInstance(id="bot-2", name="Souza"), sessions=sessions, global_lock=lock
        )

        async with anyio.create_task_group() as tg:
            await tg.start(first.run)
            await tg.start(second.run)
            tg.start_soon(first.start)
            await until(lambda: sessions.connecting == ["bot-1"])
            tg.start_soon(second.start)
            await until(lambda: len(sessions.sessions) == 2)
            await anyio.sleep(0.05)
            assert sessions.connecting == ["bot-1"]
            assert lock.locked()

            sessions.release.set()
            await until(lambda: second.bot.status is BotStatus.CONNECTED)
            await until(lambda: first.bot.status is BotStatus.CONNECTED)
            await first.shutdown()
            await second.shutdown()

        assert sessions.connected == ["bot-1", "bot-2"]
        assert sessions.peak == 1
        assert not lock.locked()


class TestMessages:
    """Tests for inbound message handling."""

    @pytest.mark.anyio
    async def test_reply_and_dedup(self) -> None:
        sessions = MemorySessions()
        engine = FakeEngine()
        supervisor = _supervisor(sessions=sessions, engine=engine)

        async with anyio.create_task_group() as tg:
            await tg.start(supervisor.run)
            await supervisor.start()
            await until(lambda: supervisor.bot.status is BotStatus.CONNECTED)

            message = inbound("Olá", message_id="m-1")
            sessions.latest.emit(MessageReceived(message))
            sessions.latest.emit(MessageReceived(message))
            await until(lambda: len(sessions.latest.sent) == 1)
            await anyio.sleep(0.05)
            await supervisor.shutdown()

        assert engine.calls == [(CLIENT_PHONE, "Olá", "Cliente")]
        assert sessions.latest.sent == [(CLIENT_CHAT, engine.reply)]
        assert (CLIENT_CHAT, True) in sessions.latest.typing
        assert supervisor.bot.message_count == 1

    @pytest.mark.anyio
    async def test_non_pdf_document_gets_direct_reply(self) -> None:
        sessions = MemorySessions()
        engine = FakeEngine()
        supervisor = _supervisor(sessions=sessions, engine=engine)

        async with anyio.create_task_group() as tg:
            await tg.start(supervisor.run)
            await supervisor.start()
            await until(lambda: supervisor.bot.status is BotStatus.CONNECTED)

            document = inbound(kind=MessageKind.DOCUMENT, mimetype="image/png")
            sessions.latest.emit(MessageReceived(document))
            await until(lambda: len(sessions.latest.sent) == 1)
            await supervisor.shutdown()

        assert engine.calls == []
        assert sessions.latest.sent == [(CLIENT_CHAT, prompts.PDF_ONLY)]

    @pytest.mark.anyio
    async def test_engine_failure_sends_fallback_and_allows_redelivery(self) -> None:
        sessions = MemorySessions()
        engine = FakeEngine()
        engine.error = RuntimeError("database down")
        supervisor = _supervisor(
            sessions=sessions,
            engine=engine,
            admission=AdmissionSettings(reply_cooldown_s=0.0),
        )

        async with anyio.create_task_group() as tg:
            await tg.start(supervisor.run)
            await supervisor.start()
            await until(lambda: supervisor.bot.status is BotStatus.CONNECTED)

            message = inbound("Olá", message_id="m-1")
            sessions.latest.emit(MessageReceived(message))
            await until(lambda: len(sessions.latest.sent) == 1)
            assert sessions.latest.sent == [(CLIENT_CHAT, prompts.TECHNICAL_DIFFICULTIES)]

            engine.error = None
            sessions.latest.emit(MessageReceived(message))
            await until(lambda: len(sessions.latest.sent) == 2)
            await supervisor.shutdown()

        assert sessions.latest.sent[-1] == (CLIENT_CHAT, engine.reply)
        assert len(engine.calls) == 2

    @pytest.mark.anyio
    async def test_fallback_is_paced_and_starts_cooldown(self) -> None:
        sessions = MemorySessions()
        engine = FakeEngine()
        engine.error = RuntimeError("database down")
        sleep = RecordingSleep()
        supervisor = _supervisor(sessions=sessions, engine=engine, sleep=sleep)

        async with anyio.create_task_group() as tg:
            await tg.start(supervisor.run)
            await supervisor.start()
            await until(lambda: supervisor.bot.status is BotStatus.CONNECTED)

            sessions.latest.emit(MessageReceived(inbound("Olá", message_id="m-1")))
            await until(lambda: len(sessions.latest.sent) == 1)
            reading, response = sleep.delays
            assert reading == 0.5
            assert 1.0 <= response <= 5.0

            sessions.latest.emit(MessageReceived(inbound("Oi?", message_id="m-2")))
            await anyio.sleep(0.05)
            await supervisor.shutdown()

        assert [text for _, text, _ in engine.calls] == ["Olá"]
        assert sessions.latest.sent == [(CLIENT_CHAT, prompts.TECHNICAL_DIFFICULTIES)]

    @pytest.mark.anyio
    async def test_text_during_turn_is_dropped_but_media_is_not(self) -> None:
        sessions = MemorySessions()
        engine = FakeEngine()
        engine.gate = anyio.Event()
        supervisor = _supervisor(sessions=sessions, engine=engine)

        async with anyio.create_task_group() as tg:
            await tg.start(supervisor.run)
            await supervisor.start()
            await until(lambda: supervisor.bot.status is BotStatus.CONNECTED)

            session = sessions.latest
            session.emit(MessageReceived(inbound("Olá", message_id="m-1")))
            await until(lambda: len(engine.calls) == 1)
            session.emit(MessageReceived(inbound("Tem alguém aí?", message_id="m-2")))
            session.emit(MessageReceived(inbound(kind=MessageKind.IMAGE, message_id="m-3")))
            await until(lambda: len(engine.calls) == 2)
            await anyio.sleep(0.05)

            engine.gate.set()
            await until(lambda: len(session.sent) == 2)
            await supervisor.shutdown()

        assert [text for _, text, _ in engine.calls] == ["Olá", prompts.IMAGE_TAG]
        assert session.sent == [(CLIENT_CHAT, engine.reply)] * 2

    @pytest.mark.anyio
    async def test_out_of_band_delivery(self) -> None:
        sessions = MemorySessions()
        engine = FakeEngine()
        supervisor = _supervisor(sessions=sessions, engine=engine)

        async with anyio.create_task_group() as tg:
            await tg.start(supervisor.run)
            assert engine.deliver is not None

            await engine.deliver(CLIENT_PHONE, "late reply")
            await supervisor.start()
            await until(lambda: supervisor.bot.status is BotStatus.CONNECTED)
            await engine.deliver(CLIENT_PHONE, "late reply")
            await supervisor.shutdown()

        assert sessions.latest.sent == [(CLIENT_CHAT, "late reply")]
