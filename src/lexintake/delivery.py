"""Human-like pacing for outbound replies.

Replies are never sent instantly: the bot "reads" the incoming text,
shows a typing indicator, waits a random response delay and splits long
answers into numbered parts with pauses in between.
"""

from __future__ import annotations

import random

import anyio

from .logging import get_logger
from .scheduler import Sleep
from .settings import DelaySettings
from .transport import TransportSession

logger = get_logger(__name__)

_SENTENCE_BREAKS = (". ", ".\n", "? ", "?\n", "! ", "!\n")
_BREAK_THRESHOLD = 0.7
_CHARS_PER_WORD = 5


def split_message(text: str, max_length: int = 4000) -> list[str]:
    """Split ``text`` into chunks of at most ``max_length`` characters.

    Cuts prefer a sentence end past 70% of the limit; otherwise the chunk
    is cut hard at the limit.
    """
    if len(text) <= max_length:
        return [text]

    parts: list[str] = []
    remaining = text
    while remaining:
        if len(remaining) <= max_length:
            parts.append(remaining)
            break

        window = remaining[:max_length]
        cut = max_length
        best = max(window.rfind(mark) for mark in _SENTENCE_BREAKS)
        if best > max_length * _BREAK_THRESHOLD:
            cut = best + 1

        parts.append(remaining[:cut].strip())
        remaining = remaining[cut:].strip()
    return [part for part in parts if part]


def number_parts(text: str, max_length: int = 4000) -> list[str]:
    """Split ``text`` and suffix each part with `` (i/n)``.

    Room for the suffix is reserved up front, so every numbered part still
    fits in ``max_length``. A text that fits whole is returned unnumbered.
    """
    parts = split_message(text, max_length)
    if len(parts) == 1:
        return parts
    width = len(str(len(parts)))
    while True:
        reserve = len(f" ({'9' * width}/{'9' * width})")
        parts = split_message(text, max(max_length - reserve, 1))
        if len(str(len(parts))) <= width:
            break
        width = len(str(len(parts)))
    total = len(parts)
    return [f"{part} ({index}/{total})" for index, part in enumerate(parts, start=1)]


class DeliveryThrottle:
    """Computes and performs the delays around one outbound reply."""

    def __init__(
        self,
        settings: DelaySettings | None = None,
        *,
        sleep: Sleep = anyio.sleep,
        rng: random.Random | None = None,
    ) -> None:
        self.settings = settings or DelaySettings()
        self._sleep = sleep
        self._rng = rng or random.Random()

    def _uniform_ms(self, low: int, high: int) -> float:
        return self._rng.uniform(low, high)

    def response_delay(self) -> float:
        """Seconds to wait before answering."""
        s = self.settings
        return self._uniform_ms(s.response_min_ms, s.response_max_ms) / 1000

    def typing_delay(self) -> float:
        s = self.settings
        return self._uniform_ms(s.typing_min_ms, s.typing_max_ms) / 1000

    def reading_delay(self, length: int) -> float:
        """Seconds a person needs to read ``length`` characters.

        ``(chars / 5) / wpm`` minutes with +/-50% variance, clamped to the
        configured bounds.
        """
        s = self.settings
        words = length / _CHARS_PER_WORD
        base_ms = words / s.reading_wpm * 60 * 1000
        variance = base_ms * 0.5 * (self._rng.random() * 2 - 1)
        ms = min(max(base_ms + variance, s.reading_min_ms), s.reading_max_ms)
        return ms / 1000

    def part_pause(self) -> float:
        s = self.settings
        return self._uniform_ms(s.part_pause_min_ms, s.part_pause_max_ms) / 1000

    async def simulate_reading(self, length: int) -> None:
        await self._sleep(self.reading_delay(length))

    async def simulate_typing(self, session: TransportSession, chat_id: str) -> None:
        delay = self.typing_delay()
        try:
            await session.send_typing(chat_id, True)
            await self._sleep(delay)
            await session.send_typing(chat_id, False)
        except Exception as e:
            logger.debug("delivery.typing_failed", chat_id=chat_id, error=str(e))
            await self._sleep(delay)

    async def wait_before_response(self) -> None:
        await self._sleep(self.response_delay())

    async def send(self, session: TransportSession, chat_id: str, text: str) -> int:
        """Type, wait, and deliver ``text`` (split when long).

        Returns:
            Number of parts sent
        """
        await self.simulate_typing(session, chat_id)
        await self.wait_before_response()

        parts = number_parts(text, self.settings.max_message_length)
        if len(parts) == 1:
            await session.send_text(chat_id, parts[0])
            return 1

        total = len(parts)
        for index, part in enumerate(parts, start=1):
            await session.send_text(chat_id, part)
            if index < total:
                await self._sleep(self.part_pause())
        logger.debug("delivery.split_sent", chat_id=chat_id, parts=total)
        return total
