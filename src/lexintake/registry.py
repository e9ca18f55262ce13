"""Bot registry: the fleet of per-bot supervisor actors.

The registry creates, restores and removes bots, routes lifecycle
commands to each bot's supervisor mailbox, and answers fleet-wide status
queries. It guarantees one supervisor (and so at most one live session)
per bot id, refuses overlapping starts for the same id, and shares one
global lock that serializes connection establishment across all bots.
"""

from __future__ import annotations

import random
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import anyio
from anyio.abc import TaskGroup, TaskStatus

from .delivery import DeliveryThrottle
from .engine import ConversationEngine
from .events import FleetEvents
from .ingest import MessageIngestPipeline
from .llm import LLMProvider
from .logging import get_logger
from .media import AudioTranscriber, StorageUploader
from .model import BotInstance, BotStatus
from .scheduler import Sleep
from .settings import FleetSettings
from .store import FleetStore
from .supervisor import ConnectionSupervisor
from .transport import SessionFactory
from .triage import TriageCollaborator

logger = get_logger(__name__)


class BotNotFoundError(KeyError):
    """No bot with the given id is registered."""


@dataclass(frozen=True, slots=True)
class BotServices:
    """Collaborators shared by every bot in the fleet."""

    llm: LLMProvider
    triage: TriageCollaborator
    transcriber: AudioTranscriber | None = None
    uploader: StorageUploader | None = None


@dataclass(frozen=True, slots=True)
class FleetStatus:
    total: int
    active: int
    bots: list[dict[str, Any]]


def _new_bot_id() -> str:
    return uuid.uuid4().hex[:12]


class BotRegistry:
    def __init__(
        self,
        *,
        settings: FleetSettings,
        session_factory: SessionFactory,
        services: BotServices,
        store: FleetStore | None = None,
        events: FleetEvents | None = None,
        sleep: Sleep = anyio.sleep,
        rng: random.Random | None = None,
        id_factory: Callable[[], str] = _new_bot_id,
    ) -> None:
        self.settings = settings
        self.events = events or FleetEvents()
        self._session_factory = session_factory
        self._services = services
        self._store = store
        self._sleep = sleep
        self._rng = rng or random.Random()
        self._id_factory = id_factory

        self._bots: dict[str, BotInstance] = {}
        self._supervisors: dict[str, ConnectionSupervisor] = {}
        self._initializing: set[str] = set()
        self._init_lock = anyio.Lock()
        self._tg: TaskGroup | None = None
        self._closing: anyio.Event | None = None
        self._closed: anyio.Event | None = None

    # --- actor management ---

    async def run(self, *, task_status: TaskStatus[None] = anyio.TASK_STATUS_IGNORED) -> None:
        """Own every supervisor actor until ``shutdown()`` is called."""
        self._closing = anyio.Event()
        self._closed = anyio.Event()
        try:
            async with anyio.create_task_group() as tg:
                self._tg = tg
                to_start = await self._load_persisted()
                task_status.started()
                for bot_id, restore in to_start:
                    tg.start_soon(self._restore_bot, bot_id, restore)
                await self._closing.wait()
                await self._shutdown_all()
                tg.cancel_scope.cancel()
        finally:
            self._tg = None
            self._closed.set()

    async def shutdown(self) -> None:
        """Stop every bot (non-manually, so they come back on next boot) and persist."""
        if self._closing is None or self._closed is None:
            return
        self._closing.set()
        await self._closed.wait()

    async def _shutdown_all(self) -> None:
        for bot_id, supervisor in list(self._supervisors.items()):
            try:
                await supervisor.shutdown()
            except Exception:
                logger.exception("registry.shutdown_failed", bot_id=bot_id)
        await self.save()
        logger.info("registry.shutdown", bots=len(self._bots))

    async def _register(self, bot: BotInstance) -> ConnectionSupervisor:
        if self._tg is None:
            raise RuntimeError("registry is not running")
        if bot.id in self._supervisors:
            raise ValueError(f"bot {bot.id} is already registered")
        if bot.session_path is None:
            bot.session_path = self.settings.sessions_dir / f"session-{bot.id}"

        settings = self.settings
        engine = ConversationEngine(
            llm=self._services.llm,
            triage=self._services.triage,
            assistant_name=bot.assistant_name,
            settings=settings.conversation,
            rng=self._rng,
            sleep=self._sleep,
        )
        if self._store is not None:
            snapshot = await self._store.load_conversations(bot.id)
            if snapshot:
                engine.restore(snapshot)

        pipeline = MessageIngestPipeline(
            bot,
            settings=settings.admission,
            transcriber=self._services.transcriber,
            uploader=self._services.uploader,
            on_activity=self.events.updated,
        )
        supervisor = ConnectionSupervisor(
            bot,
            session_factory=self._session_factory,
            engine=engine,
            pipeline=pipeline,
            throttle=DeliveryThrottle(settings.delays, sleep=self._sleep, rng=self._rng),
            global_lock=self._init_lock,
            settings=settings.supervisor,
            notify=self.events.updated,
            sleep=self._sleep,
        )
        await self._tg.start(supervisor.run)
        self._bots[bot.id] = bot
        self._supervisors[bot.id] = supervisor
        return supervisor

    async def _load_persisted(self) -> list[tuple[str, bool]]:
        if self._store is None:
            return []
        to_start: list[tuple[str, bool]] = []
        for bot in self._store.load_bots():
            bot.qr_code = None
            bot.is_active = False
            await self._register(bot)
            if bot.manual_stop or bot.status is BotStatus.ERROR:
                if bot.status is not BotStatus.ERROR:
                    bot.status = BotStatus.STOPPED
                continue
            to_start.append((bot.id, bot.has_connected_before))
        logger.info("registry.loaded", bots=len(self._bots), restoring=len(to_start))
        return to_start

    async def _restore_bot(self, bot_id: str, restore: bool) -> None:
        try:
            await self.start_bot(bot_id, restore=restore)
        except Exception:
            logger.exception("registry.restore_failed", bot_id=bot_id)

    def _persist(self) -> None:
        if self._store is None:
            return
        try:
            self._store.save_bots(list(self._bots.values()))
        except OSError as e:
            logger.error("registry.persist_failed", error=str(e))

    def _supervisor(self, bot_id: str) -> ConnectionSupervisor:
        try:
            return self._supervisors[bot_id]
        except KeyError:
            raise BotNotFoundError(bot_id) from None

    # --- fleet operations ---

    async def create_bot(
        self,
        name: str | None = None,
        *,
        assistant_name: str | None = None,
        owner_id: str | None = None,
        start: bool = True,
    ) -> BotInstance:
        """Register a new bot and, by default, start its session.

        Args:
            name: Display name; defaults to ``Bot <id prefix>``.
            assistant_name: Persona name used in replies; defaults to the
                fleet-wide ``default_assistant_name``.
            owner_id: Optional owner, used to filter ``list_bots``.
            start: Open the WhatsApp session right away.

        Returns:
            The registered bot. Its status reflects the start attempt.

        Raises:
            RuntimeError: If the registry is not running.
        """
        bot_id = self._id_factory()
        bot = BotInstance(
            id=bot_id,
            name=name or f"Bot {bot_id[:6]}",
            assistant_name=assistant_name or self.settings.default_assistant_name,
            owner_id=owner_id,
        )
        await self._register(bot)
        logger.info("bot.created", bot_id=bot_id, name=bot.name, owner_id=owner_id)
        self.events.created(bot)
        self._persist()
        if start:
            await self.start_bot(bot_id)
        return bot

    async def start_bot(self, bot_id: str, *, restore: bool = False) -> bool:
        """Start a bot's session.

        Args:
            bot_id: Bot to start.
            restore: Reuse saved credentials instead of asking for a QR
                scan; a restore that times out falls back to a fresh login.

        Returns:
            True once the session is open. False when a start or restart
            for this id is already underway, the bot is already running, or
            the connection attempt failed.

        Raises:
            BotNotFoundError: If no bot has this id.
        """
        supervisor = self._supervisor(bot_id)
        if bot_id in self._initializing:
            logger.info("bot.init_in_progress", bot_id=bot_id)
            return False
        self._initializing.add(bot_id)
        try:
            started = await supervisor.start(restore=restore)
        finally:
            self._initializing.discard(bot_id)
        self._persist()
        return started

    async def stop_bot(self, bot_id: str) -> bool:
        """Stop a bot and keep it down across restarts of the service.

        Args:
            bot_id: Bot to stop.

        Returns:
            True if a session was running.

        Raises:
            BotNotFoundError: If no bot has this id.
        """
        result = await self._supervisor(bot_id).stop(manual=True)
        self._persist()
        return result

    async def restart_bot(self, bot_id: str) -> bool:
        """Tear the session down and open a new one with fresh state.

        Raises:
            BotNotFoundError: If no bot has this id.
        """
        supervisor = self._supervisor(bot_id)
        if bot_id in self._initializing:
            logger.info("bot.init_in_progress", bot_id=bot_id)
            return False
        self._initializing.add(bot_id)
        try:
            restarted = await supervisor.restart()
        finally:
            self._initializing.discard(bot_id)
        self._persist()
        return restarted

    async def delete_bot(self, bot_id: str) -> bool:
        """Stop a bot, drop its actor and remove it from the store.

        Args:
            bot_id: Bot to delete.

        Returns:
            Always True; an unknown id raises instead.

        Raises:
            BotNotFoundError: If no bot has this id.
        """
        supervisor = self._supervisor(bot_id)
        await supervisor.stop(manual=True)
        await supervisor.shutdown()
        bot = self._bots.pop(bot_id)
        del self._supervisors[bot_id]
        if self._store is not None:
            self._store.remove_bot(bot_id)
        logger.info("bot.deleted", bot_id=bot_id)
        self.events.deleted(bot)
        return True

    def get_bot(self, bot_id: str) -> BotInstance | None:
        return self._bots.get(bot_id)

    def get_supervisor(self, bot_id: str) -> ConnectionSupervisor | None:
        return self._supervisors.get(bot_id)

    def list_bots(self, owner_id: str | None = None) -> list[dict[str, Any]]:
        """Summaries of registered bots, oldest first.

        Args:
            owner_id: Only include bots with this owner.

        Returns:
            ``BotInstance.summary()`` dicts.
        """
        bots = sorted(self._bots.values(), key=lambda b: b.created_at)
        return [b.summary() for b in bots if owner_id is None or b.owner_id == owner_id]

    def status(self) -> FleetStatus:
        """Fleet-wide counts plus every bot's summary."""
        bots = self.list_bots()
        return FleetStatus(
            total=len(bots),
            active=sum(1 for b in bots if b["is_active"]),
            bots=bots,
        )

    async def save(self) -> None:
        """Persist bot configs and every bot's conversations."""
        if self._store is None:
            return
        self._persist()
        for bot_id, supervisor in self._supervisors.items():
            try:
                await self._store.save_conversations(bot_id, supervisor.engine.snapshot())
            except OSError as e:
                logger.error("registry.save_conversations_failed", bot_id=bot_id, error=str(e))
