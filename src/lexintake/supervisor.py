"""Connection supervisor: one actor per bot.

The supervisor owns the bot's single transport session and drives its
lifecycle::

    initializing -> waiting_for_scan -> authenticated -> connected
    connected -> reconnecting -> connected | disconnected | stopped
    any live state -> error

Commands (start, stop, restart, shutdown) arrive through a mailbox and
are handled one at a time by the actor task, so the registry never
touches a session directly. Inbound messages flow through the ingest
pipeline and the conversation engine, and replies go out through the
delivery throttle.
"""

from __future__ import annotations

import math
import shutil
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import anyio
from anyio.abc import TaskGroup, TaskStatus

from . import prompts
from .delivery import DeliveryThrottle
from .engine import ConversationEngine
from .ingest import MessageIngestPipeline
from .logging import get_logger
from .model import BotInstance, BotStatus
from .scheduler import Sleep, Timer, TimerHandle
from .settings import SupervisorSettings
from .transport import (
    AuthChallenge,
    Authenticated,
    Disconnected,
    DisconnectReason,
    InboundMessage,
    MessageReceived,
    Ready,
    SessionEvent,
    SessionFactory,
    TransportError,
    TransportSession,
)

logger = get_logger(__name__)

Notify = Callable[[BotInstance], None]


def reconnect_delay(attempt: int, settings: SupervisorSettings) -> float:
    """Seconds before reconnection attempt ``attempt`` (1-based)."""
    delay = settings.reconnect_base_delay_s * settings.reconnect_factor ** (attempt - 1)
    return min(delay, settings.reconnect_max_delay_s)


def restore_timeout(attempt: int, settings: SupervisorSettings) -> float:
    """Seconds to wait for a restored session to come up (0-based attempt)."""
    return settings.restore_timeout_base_s + settings.restore_timeout_step_s * attempt


@dataclass(frozen=True, slots=True)
class SessionOutcome:
    """Why a session run ended."""

    reason: DisconnectReason
    detail: str = ""
    restore_timeout: bool = False


@dataclass(eq=False, slots=True)
class _Command:
    kind: str
    manual: bool = True
    restore: bool = False
    done: anyio.Event = field(default_factory=anyio.Event)
    result: Any = None
    error: BaseException | None = None


class ConnectionSupervisor:
    """Owns one bot's transport session and wires it to the intake flow."""

    def __init__(
        self,
        bot: BotInstance,
        *,
        session_factory: SessionFactory,
        engine: ConversationEngine,
        pipeline: MessageIngestPipeline,
        throttle: DeliveryThrottle,
        global_lock: anyio.Lock,
        settings: SupervisorSettings | None = None,
        notify: Notify | None = None,
        sleep: Sleep = anyio.sleep,
    ) -> None:
        self.bot = bot
        self.engine = engine
        self.pipeline = pipeline
        self.throttle = throttle
        self.settings = settings or SupervisorSettings()
        self._factory = session_factory
        self._global_lock = global_lock
        self._notify_cb = notify
        self._sleep = sleep

        self._mailbox_send, self._mailbox_recv = anyio.create_memory_object_stream[
            _Command
        ](max_buffer_size=math.inf)
        self._tg: TaskGroup | None = None
        self._session: TransportSession | None = None
        self._connection_scope: anyio.CancelScope | None = None
        self._connection_done: anyio.Event | None = None
        self._reconnect_scope: anyio.CancelScope | None = None
        self._restore_timer: TimerHandle | None = None
        self._restoring = False
        self._processing = False
        self._first_connection = True
        self._activity_before_connect: datetime | None = None
        self._chats: dict[str, str] = {}

    # --- public surface (mailbox) ---

    @property
    def session(self) -> TransportSession | None:
        return self._session

    @property
    def running(self) -> bool:
        return self._connection_scope is not None

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_scope is not None

    async def start(self, *, restore: bool = False) -> bool:
        """Open the session.

        Args:
            restore: Reuse the saved login and arm the restore timeout.

        Returns:
            False if the bot is already running or failed to start.
        """
        return await self._call(_Command("start", restore=restore))

    async def stop(self, manual: bool = True) -> bool:
        """Close the session and cancel any pending reconnect.

        Args:
            manual: Mark the bot as stopped by an operator, so neither
                reconnects nor the next boot bring it back.

        Returns:
            True if a session was running.
        """
        return await self._call(_Command("stop", manual=manual))

    async def restart(self) -> bool:
        return await self._call(_Command("restart"))

    async def shutdown(self) -> None:
        """Stop the session without marking it manual, then end ``run()``."""
        await self._call(_Command("shutdown", manual=False))

    async def _call(self, command: _Command) -> Any:
        await self._mailbox_send.send(command)
        await command.done.wait()
        if command.error is not None:
            raise command.error
        return command.result

    async def run(self, *, task_status: TaskStatus[None] = anyio.TASK_STATUS_IGNORED) -> None:
        """Actor loop; returns after a shutdown command."""
        async with anyio.create_task_group() as tg:
            self._tg = tg
            self.engine.attach(tg)
            self.engine.set_retry_callbacks(self._deliver_out_of_band, self._deliver_out_of_band)
            task_status.started()
            async with self._mailbox_recv:
                async for command in self._mailbox_recv:
                    try:
                        command.result = await self._handle(command)
                    except Exception as e:
                        logger.exception(
                            "supervisor.command_failed", bot_id=self.bot.id, command=command.kind
                        )
                        command.error = e
                    finally:
                        command.done.set()
                    if command.kind == "shutdown":
                        break
            self.engine.detach()
            tg.cancel_scope.cancel()
        self._tg = None

    async def _handle(self, command: _Command) -> Any:
        if command.kind == "start":
            return await self._start(restore=command.restore)
        if command.kind == "stop":
            return await self._stop(manual=command.manual)
        if command.kind == "restart":
            return await self._restart()
        if command.kind == "shutdown":
            await self._stop(manual=False)
            self._mailbox_send.close()
            return None
        raise ValueError(f"unknown supervisor command: {command.kind}")

    # --- lifecycle ---

    def _notify(self) -> None:
        if self._notify_cb is not None:
            self._notify_cb(self.bot)

    def _set_status(self, status: BotStatus, **changes: Any) -> None:
        previous = self.bot.status
        self.bot.status = status
        for name, value in changes.items():
            setattr(self.bot, name, value)
        if previous is not status:
            logger.info(
                "bot.status", bot_id=self.bot.id, status=status.value, previous=previous.value
            )
        self._notify()

    async def _start(self, *, restore: bool) -> bool:
        if self._connection_scope is not None:
            logger.info("bot.already_running", bot_id=self.bot.id)
            return False
        if self._tg is None:
            raise RuntimeError("supervisor actor is not running")
        self.bot.manual_stop = False
        self._set_status(BotStatus.INITIALIZING, last_error=None)
        await self._tg.start(self._connection_loop, restore)
        return self.bot.status is not BotStatus.ERROR

    async def _stop(self, *, manual: bool) -> bool:
        if manual:
            self.bot.manual_stop = True
        self._cancel_reconnect()
        was_running = await self._teardown()
        self._set_status(BotStatus.STOPPED, is_active=False, qr_code=None)
        logger.info("bot.stopped", bot_id=self.bot.id, manual=manual)
        return was_running

    async def _restart(self) -> bool:
        await self._stop(manual=False)
        await self._sleep(self.settings.restart_pause_s)
        self.bot.reconnect_attempts = 0
        self.bot.restore_attempts = 0
        self.bot.qr_code = None
        self.bot.last_error = None
        logger.info("bot.restarting", bot_id=self.bot.id)
        return await self._start(restore=self.bot.has_connected_before)

    def _cancel_reconnect(self) -> None:
        if self._reconnect_scope is not None:
            self._reconnect_scope.cancel()
            logger.info("reconnect.cancelled", bot_id=self.bot.id)

    async def _teardown(self) -> bool:
        if self._connection_scope is None:
            await self._close_session()
            return False
        self._connection_scope.cancel()
        if self._connection_done is not None:
            await self._connection_done.wait()
        return True

    def _fail(self, error: BaseException) -> None:
        message = str(error) or type(error).__name__
        logger.error("bot.init_failed", bot_id=self.bot.id, error=message)
        self._set_status(BotStatus.ERROR, is_active=False, last_error=message)

    async def _connection_loop(
        self,
        restore: bool,
        *,
        task_status: TaskStatus[None] = anyio.TASK_STATUS_IGNORED,
    ) -> None:
        done = anyio.Event()
        self._connection_done = done
        with anyio.CancelScope() as scope:
            self._connection_scope = scope
            try:
                try:
                    await self._open_session(restore=restore)
                except Exception as e:
                    self._fail(e)
                    return
                finally:
                    task_status.started()
                await self._supervise()
            except Exception as e:
                logger.exception("bot.supervision_failed", bot_id=self.bot.id)
                self._fail(e)
            finally:
                with anyio.CancelScope(shield=True):
                    await self._close_session()
                self._connection_scope = None
                self._connection_done = None
                done.set()

    async def _supervise(self) -> None:
        """Run sessions back to back until one ends without a reconnect."""
        opened = True
        outcome = SessionOutcome(DisconnectReason.CLOSED)
        while True:
            if opened:
                outcome = await self._run_session()
            if outcome.restore_timeout:
                await self._on_restore_timeout()
                await self._close_session()
            else:
                await self._close_session()
                if not await self._await_reconnect(outcome):
                    return
            try:
                await self._open_session(restore=self._restoring)
                opened = True
            except Exception as e:
                logger.warning("reconnect.connect_failed", bot_id=self.bot.id, error=str(e))
                opened = False
                outcome = SessionOutcome(DisconnectReason.CONNECTION_LOST, str(e))

    async def _open_session(self, *, restore: bool) -> None:
        if self._session is not None:
            await self._close_session()
        if self.bot.session_path is not None:
            await anyio.Path(self.bot.session_path).mkdir(parents=True, exist_ok=True)
        session = self._factory(self.bot.id, self.bot.session_path)
        self._session = session
        self._restoring = restore
        try:
            async with self._global_lock:
                with anyio.fail_after(self.settings.connect_timeout_s):
                    await session.connect()
        except BaseException:
            with anyio.CancelScope(shield=True):
                await self._close_session()
            raise
        logger.info("bot.session_opened", bot_id=self.bot.id, restore=restore)

    async def _close_session(self) -> None:
        session, self._session = self._session, None
        if session is None:
            return
        try:
            await session.close()
        except Exception as e:
            logger.warning("bot.session_close_failed", bot_id=self.bot.id, error=str(e))

    async def _run_session(self) -> SessionOutcome:
        session = self._session
        if session is None:
            raise RuntimeError("no open session to run")
        outcome: SessionOutcome | None = None

        async with anyio.create_task_group() as tg:

            def finish(result: SessionOutcome) -> None:
                nonlocal outcome
                if outcome is None:
                    outcome = result
                tg.cancel_scope.cancel()

            async def on_restore_timeout() -> None:
                finish(
                    SessionOutcome(
                        DisconnectReason.CONNECTION_LOST,
                        "session restore timed out",
                        restore_timeout=True,
                    )
                )

            if self._restoring:
                timeout = restore_timeout(self.bot.restore_attempts, self.settings)
                self._restore_timer = Timer(tg, sleep=self._sleep).call_later(
                    timeout, on_restore_timeout, name=f"restore:{self.bot.id}"
                )
                logger.info("restore.waiting", bot_id=self.bot.id, timeout_s=timeout)
            tg.start_soon(self._keepalive, session, finish)

            try:
                async for event in session.events():
                    result = self._on_event(event, session)
                    if result is not None:
                        finish(result)
                        break
                else:
                    finish(SessionOutcome(DisconnectReason.CLOSED, "event stream ended"))
            except TransportError as e:
                finish(SessionOutcome(DisconnectReason.CONNECTION_LOST, str(e)))
            except Exception as e:
                logger.exception("bot.session_failed", bot_id=self.bot.id)
                finish(SessionOutcome(DisconnectReason.CONNECTION_LOST, str(e)))

        self._cancel_restore_timer()
        if outcome is None:
            raise RuntimeError("session ended without an outcome")
        return outcome

    def _on_event(
        self, event: SessionEvent, session: TransportSession
    ) -> SessionOutcome | None:
        if isinstance(event, AuthChallenge):
            self.on_auth_challenge(event.qr)
        elif isinstance(event, Authenticated):
            self.on_authenticated()
        elif isinstance(event, Ready):
            self.on_ready(event.phone_number)
        elif isinstance(event, Disconnected):
            return SessionOutcome(event.reason, event.detail)
        elif isinstance(event, MessageReceived):
            if self._tg is None:
                raise RuntimeError("supervisor actor is not running")
            self._tg.start_soon(self._handle_message, session, event.message)
        return None

    def _cancel_restore_timer(self) -> None:
        if self._restore_timer is not None:
            self._restore_timer.cancel()
            self._restore_timer = None

    def on_auth_challenge(self, qr: str) -> None:
        """A QR code must be scanned; any restoration attempt is over."""
        self._cancel_restore_timer()
        self._restoring = False
        self._set_status(BotStatus.WAITING_FOR_SCAN, qr_code=qr, is_active=False)
        logger.info("bot.qr", bot_id=self.bot.id)

    def on_authenticated(self) -> None:
        self._cancel_restore_timer()
        self._set_status(BotStatus.AUTHENTICATED, qr_code=None, last_error=None)

    def on_ready(self, phone_number: str | None) -> None:
        self._cancel_restore_timer()
        self._restoring = False
        self._first_connection = not self.bot.has_connected_before
        self._activity_before_connect = self.bot.last_activity
        self._set_status(
            BotStatus.CONNECTED,
            is_active=True,
            qr_code=None,
            last_error=None,
            reconnect_attempts=0,
            restore_attempts=0,
            has_connected_before=True,
            phone_number=phone_number or self.bot.phone_number,
        )
        logger.info(
            "bot.connected",
            bot_id=self.bot.id,
            phone=self.bot.phone_number,
            first_connection=self._first_connection,
        )

    def on_disconnect(self, reason: DisconnectReason, detail: str = "") -> float | None:
        """Decide what a session end means.

        Returns:
            Seconds to wait before reconnecting, or None to stay down
        """
        bot = self.bot
        logger.warning("bot.disconnected", bot_id=bot.id, reason=reason.value, detail=detail)
        if bot.manual_stop:
            self._set_status(BotStatus.STOPPED, is_active=False)
            return None
        if reason is DisconnectReason.LOGGED_OUT:
            self._set_status(BotStatus.DISCONNECTED, is_active=False, last_error="logged out")
            return None
        if reason is DisconnectReason.AUTH_FAILURE:
            self._set_status(
                BotStatus.ERROR,
                is_active=False,
                last_error=detail or "authentication failed",
            )
            return None
        if bot.reconnect_attempts >= self.settings.max_reconnect_attempts:
            logger.error(
                "reconnect.gave_up", bot_id=bot.id, attempts=bot.reconnect_attempts
            )
            self._set_status(
                BotStatus.DISCONNECTED,
                is_active=False,
                last_error=f"gave up after {bot.reconnect_attempts} reconnection attempts",
            )
            return None

        bot.reconnect_attempts += 1
        if reason is DisconnectReason.SESSION_REPLACED:
            delay = 0.0
        else:
            delay = reconnect_delay(bot.reconnect_attempts, self.settings)
        self._set_status(BotStatus.RECONNECTING, is_active=False)
        logger.info(
            "reconnect.scheduled",
            bot_id=bot.id,
            attempt=bot.reconnect_attempts,
            delay_s=delay,
            reason=reason.value,
        )
        return delay

    async def _await_reconnect(self, outcome: SessionOutcome) -> bool:
        delay = self.on_disconnect(outcome.reason, outcome.detail)
        if delay is None:
            return False
        with anyio.CancelScope() as scope:
            self._reconnect_scope = scope
            try:
                await self._sleep(delay)
            finally:
                self._reconnect_scope = None
        return not scope.cancel_called

    async def _on_restore_timeout(self) -> None:
        bot = self.bot
        bot.restore_attempts += 1
        logger.warning("restore.timeout", bot_id=bot.id, attempt=bot.restore_attempts)
        if bot.restore_attempts < self.settings.restore_attempts_before_wipe:
            return
        await self.wipe_credentials()
        bot.restore_attempts = 0
        self._restoring = False

    async def wipe_credentials(self) -> None:
        """Forget the stored login so the next connect starts a fresh QR flow."""
        bot = self.bot
        if self._session is not None:
            try:
                await self._session.clear_credentials()
            except Exception as e:
                logger.warning("restore.clear_failed", bot_id=bot.id, error=str(e))
        if bot.session_path is not None and bot.session_path.exists():
            shutil.rmtree(bot.session_path, ignore_errors=True)
        bot.has_connected_before = False
        logger.warning("restore.credentials_wiped", bot_id=bot.id)

    async def _keepalive(
        self, session: TransportSession, finish: Callable[[SessionOutcome], None]
    ) -> None:
        while True:
            await self._sleep(self.settings.keepalive_interval_s)
            if self.bot.status is not BotStatus.CONNECTED:
                continue
            try:
                with anyio.fail_after(self.settings.keepalive_timeout_s):
                    alive = await session.ping()
            except Exception as e:
                logger.warning("keepalive.error", bot_id=self.bot.id, error=str(e))
                alive = False
            if not alive:
                logger.warning("keepalive.failed", bot_id=self.bot.id)
                finish(SessionOutcome(DisconnectReason.CONNECTION_LOST, "keep-alive ping failed"))
                return

    # --- messages ---

    async def _handle_message(self, session: TransportSession, message: InboundMessage) -> None:
        admitted = self.pipeline.admit(
            message,
            first_connection=self._first_connection,
            last_activity=self._activity_before_connect,
        )
        if not admitted:
            return
        if not message.is_media:
            if self._processing:
                logger.info(
                    "message.busy_dropped", bot_id=self.bot.id, message_id=message.message_id
                )
                return
            self._processing = True
        try:
            await self._process_message(session, message)
        except Exception:
            logger.exception(
                "message.failed", bot_id=self.bot.id, message_id=message.message_id
            )
            self.pipeline.forget(message.message_id)
            await self._send_fallback(session, message.chat_id)
        finally:
            if not message.is_media:
                self._processing = False

    async def _process_message(self, session: TransportSession, message: InboundMessage) -> None:
        result = await self.pipeline.normalize(message, session)
        self._chats[result.phone] = message.chat_id

        if result.direct_reply is not None:
            await self.throttle.send(session, message.chat_id, result.direct_reply)
            self.pipeline.mark_replied(message.chat_id)
            return
        if result.text is None:
            return

        await self.throttle.simulate_reading(len(result.text))
        reply = await self.engine.process_incoming_message(
            result.phone, result.text, result.display_name
        )
        await self.throttle.send(session, message.chat_id, reply)
        self.pipeline.mark_replied(message.chat_id)
        logger.info(
            "message.replied",
            bot_id=self.bot.id,
            phone=result.phone,
            length=len(reply),
        )

    async def _send_fallback(self, session: TransportSession, chat_id: str) -> None:
        try:
            await self.throttle.wait_before_response()
            await session.send_text(chat_id, prompts.TECHNICAL_DIFFICULTIES)
            self.pipeline.mark_replied(chat_id)
        except Exception as e:
            logger.error("message.fallback_failed", bot_id=self.bot.id, error=str(e))

    async def _deliver_out_of_band(self, phone: str, text: str) -> None:
        session = self._session
        if session is None or self.bot.status is not BotStatus.CONNECTED:
            logger.warning("retry.undeliverable", bot_id=self.bot.id, phone=phone)
            return
        chat_id = self._chats.get(phone, f"{phone}@c.us")
        await self.throttle.send(session, chat_id, text)
        self.pipeline.mark_replied(chat_id)
