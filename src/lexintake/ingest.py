"""Inbound message pipeline.

Turns raw transport messages into ``(phone, text, display_name)`` for the
conversation engine, or into a direct fixed reply when the input cannot
enter the dialogue. Also owns the bot's duplicate, age and burst filters.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from . import prompts
from .logging import get_logger
from .media import AudioTranscriber, StorageUploader, is_pdf_mimetype, media_filename
from .model import BotInstance
from .settings import AdmissionSettings
from .transport import InboundMessage, MediaPayload, MessageKind, TransportSession

logger = get_logger(__name__)


class RecentIds:
    """Insertion-ordered set that forgets its oldest entries past ``capacity``."""

    def __init__(self, capacity: int = 100) -> None:
        self.capacity = capacity
        self._ids: dict[str, None] = {}

    def __contains__(self, key: object) -> bool:
        return key in self._ids

    def __len__(self) -> int:
        return len(self._ids)

    def add(self, key: str) -> bool:
        """Track ``key``; returns False if it was already tracked."""
        if key in self._ids:
            return False
        self._ids[key] = None
        while len(self._ids) > self.capacity:
            del self._ids[next(iter(self._ids))]
        return True

    def discard(self, key: str) -> None:
        self._ids.pop(key, None)


def admission_cutoff(
    settings: AdmissionSettings,
    *,
    now: float,
    first_connection: bool,
    last_activity: float | None,
) -> float:
    """Oldest message timestamp (epoch seconds) still worth answering.

    First connection: only the last few seconds, so the transport's
    history is not replayed. Reconnection: everything since the last
    activity (minus a buffer), unless the outage outlasted the recovery
    window, in which case only its most recent slice.
    """
    if first_connection:
        return now - settings.first_connection_window_s
    if last_activity is None or now - last_activity > settings.recovery_window_s:
        return now - settings.recovery_recent_s
    return last_activity - settings.reconnect_buffer_s


class ChatCooldowns:
    """Per-chat burst protection, bounded to the most recent chats."""

    def __init__(
        self,
        *,
        burst_window_s: float = 2.0,
        reply_cooldown_s: float = 3.0,
        capacity: int = 50,
    ) -> None:
        self.burst_window_s = burst_window_s
        self.reply_cooldown_s = reply_cooldown_s
        self.capacity = capacity
        self._last_message: dict[str, float] = {}
        self._last_reply: dict[str, float] = {}

    def _touch(self, table: dict[str, float], chat_id: str, now: float) -> None:
        table.pop(chat_id, None)
        table[chat_id] = now
        while len(table) > self.capacity:
            del table[next(iter(table))]

    def should_drop(self, chat_id: str, now: float) -> bool:
        last_message = self._last_message.get(chat_id)
        last_reply = self._last_reply.get(chat_id)
        too_fast = last_message is not None and now - last_message < self.burst_window_s
        just_replied = last_reply is not None and now - last_reply < self.reply_cooldown_s
        if too_fast and just_replied:
            return True
        self._touch(self._last_message, chat_id, now)
        return False

    def mark_replied(self, chat_id: str, now: float) -> None:
        self._touch(self._last_reply, chat_id, now)


@dataclass(frozen=True, slots=True)
class IngestResult:
    """What to do with one admitted message.

    Exactly one of ``text`` (feed the engine) or ``direct_reply`` (answer
    without touching the conversation) is set; neither means ignore.
    """

    message: InboundMessage
    phone: str
    display_name: str | None
    text: str | None = None
    direct_reply: str | None = None


class MessageIngestPipeline:
    """Turns raw transport messages into engine input for one bot.

    Admission drops duplicates, messages older than the connection's
    cutoff, and text bursts that arrive right after a reply. Normalization
    turns every admitted kind into text (transcribing audio, tagging
    attachments) or into a direct reply that bypasses the conversation.

    Args:
        bot: Bot whose traffic this pipeline filters; its activity
            counters are updated on every normalized message.
        settings: Age windows, dedup capacity and cooldown timings.
        transcriber: Speech-to-text backend; audio gets a canned reply
            when it is None.
        uploader: Archive for downloaded media, skipped when None.
        on_activity: Called with ``bot`` after each normalized message.
        clock: Wall-clock seconds, injectable for tests.
    """

    def __init__(
        self,
        bot: BotInstance,
        *,
        settings: AdmissionSettings | None = None,
        transcriber: AudioTranscriber | None = None,
        uploader: StorageUploader | None = None,
        on_activity: Callable[[BotInstance], None] | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.bot = bot
        self.settings = settings or AdmissionSettings()
        self._transcriber = transcriber
        self._uploader = uploader
        self._on_activity = on_activity
        self._clock = clock
        self._seen = RecentIds(self.settings.dedup_capacity)
        self.cooldowns = ChatCooldowns(
            burst_window_s=self.settings.burst_window_s,
            reply_cooldown_s=self.settings.reply_cooldown_s,
            capacity=self.settings.cooldown_capacity,
        )

    def admit(
        self,
        message: InboundMessage,
        *,
        first_connection: bool,
        last_activity: datetime | None,
    ) -> bool:
        """Dedup, age and burst filters.

        Args:
            message: Raw inbound message.
            first_connection: This is the bot's first connection since
                start, so only the first-connection window is accepted.
            last_activity: When the bot last saw traffic before this
                connection; bounds how far back a reconnect replays.

        Returns:
            True if the message should be processed. An admitted id is
            remembered, so a redelivery is dropped until ``forget``.
        """
        if message.from_me:
            return False
        if message.message_id in self._seen:
            logger.debug("ingest.duplicate", bot_id=self.bot.id, message_id=message.message_id)
            return False

        now = self._clock()
        if message.timestamp:
            cutoff = admission_cutoff(
                self.settings,
                now=now,
                first_connection=first_connection,
                last_activity=last_activity.timestamp() if last_activity else None,
            )
            if message.timestamp < cutoff:
                logger.info(
                    "ingest.too_old",
                    bot_id=self.bot.id,
                    message_id=message.message_id,
                    age_s=round(now - message.timestamp, 1),
                    first_connection=first_connection,
                )
                return False

        if not message.is_media and self.cooldowns.should_drop(message.chat_id, now):
            logger.info("ingest.cooldown_drop", bot_id=self.bot.id, chat_id=message.chat_id)
            return False

        self._seen.add(message.message_id)
        return True

    def forget(self, message_id: str) -> None:
        """Let a redelivery of ``message_id`` through again."""
        self._seen.discard(message_id)

    def mark_replied(self, chat_id: str) -> None:
        """Start the reply cooldown for ``chat_id``."""
        self.cooldowns.mark_replied(chat_id, self._clock())

    async def normalize(
        self, message: InboundMessage, session: TransportSession
    ) -> IngestResult:
        """Reduce an admitted message to text or a direct reply.

        Args:
            message: Message that passed ``admit``.
            session: Session to download media from.

        Returns:
            An IngestResult. Download or transcription failures become a
            canned text or direct reply rather than an exception.
        """
        self.bot.record_activity()
        if self._on_activity is not None:
            self._on_activity(self.bot)

        phone = message.phone
        name = message.display_name
        kind = message.kind

        if kind is MessageKind.TEXT:
            text = message.body.strip()
            return IngestResult(message, phone, name, text=text or None)

        if kind is MessageKind.AUDIO:
            return IngestResult(message, phone, name, text=await self._audio(message, session))

        if kind is MessageKind.DOCUMENT:
            if not is_pdf_mimetype(message.mimetype):
                logger.info(
                    "ingest.document_rejected",
                    bot_id=self.bot.id,
                    mimetype=message.mimetype,
                )
                return IngestResult(message, phone, name, direct_reply=prompts.PDF_ONLY)
            try:
                payload = await session.download_media(message)
            except Exception as e:
                logger.warning("ingest.document_failed", bot_id=self.bot.id, error=str(e))
                return IngestResult(message, phone, name, direct_reply=prompts.DOCUMENT_FAILED)
            await self._archive(message, payload)
            return IngestResult(message, phone, name, text=prompts.PDF_TAG)

        if kind in (MessageKind.IMAGE, MessageKind.VIDEO):
            if self._uploader is not None:
                try:
                    payload = await session.download_media(message)
                except Exception as e:
                    logger.warning("ingest.media_download_failed", bot_id=self.bot.id, error=str(e))
                else:
                    await self._archive(message, payload)
            tag = prompts.IMAGE_TAG if kind is MessageKind.IMAGE else prompts.VIDEO_TAG
            return IngestResult(message, phone, name, text=tag)

        logger.info("ingest.unsupported_kind", bot_id=self.bot.id, message_id=message.message_id)
        return IngestResult(message, phone, name, direct_reply=prompts.UNSUPPORTED_KIND)

    async def _audio(self, message: InboundMessage, session: TransportSession) -> str:
        try:
            payload = await session.download_media(message)
            await self._archive(message, payload)
            if self._transcriber is None:
                return prompts.AUDIO_NOT_UNDERSTOOD
            text = await self._transcriber.transcribe(payload.data, payload.mimetype)
        except Exception as e:
            logger.warning("ingest.audio_failed", bot_id=self.bot.id, error=str(e))
            return prompts.AUDIO_FAILED
        if not text:
            return prompts.AUDIO_NOT_UNDERSTOOD
        logger.info("ingest.audio_transcribed", bot_id=self.bot.id, length=len(text))
        return text

    async def _archive(self, message: InboundMessage, payload: MediaPayload) -> str | None:
        if self._uploader is None:
            return None
        filename = media_filename(
            message.kind.value, payload.mimetype or message.mimetype, now=self._clock()
        )
        try:
            return await self._uploader.upload(
                payload.data, filename, folder=f"{self.bot.id}/{message.phone}"
            )
        except Exception as e:
            logger.warning("ingest.upload_failed", bot_id=self.bot.id, filename=filename, error=str(e))
            return None
