"""Tests for lexintake.delivery module."""

from __future__ import annotations

import random

import pytest

from factories import CLIENT_CHAT, RecordingSleep
from lexintake.delivery import DeliveryThrottle, number_parts, split_message
from lexintake.settings import DelaySettings
from lexintake.transports.memory import MemorySession


class TestSplitMessage:
    """Tests for split_message."""

    def test_short_text_unchanged(self) -> None:
        assert split_message("Olá!", 4000) == ["Olá!"]

    def test_prefers_sentence_break_past_threshold(self) -> None:
        text = "a" * 80 + ". " + "b" * 50
        parts = split_message(text, 100)
        assert parts == ["a" * 80 + ".", "b" * 50]

    def test_hard_cut_without_late_break(self) -> None:
        text = "a" * 10 + ". " + "b" * 200
        parts = split_message(text, 100)
        assert all(len(part) <= 100 for part in parts)
        assert "".join(parts).replace(" ", "") == text.replace(" ", "")

    def test_parts_never_exceed_limit(self) -> None:
        text = "Frase número um. " * 600
        parts = split_message(text, 4000)
        assert len(parts) > 1
        assert all(len(part) <= 4000 for part in parts)


class TestNumberParts:
    """Tests for number_parts."""

    def test_fitting_text_is_not_numbered(self) -> None:
        assert number_parts("Olá!", 100) == ["Olá!"]

    def test_numbered_parts_fit_the_limit(self) -> None:
        text = "x" * 1000
        parts = number_parts(text, 100)
        assert len(parts) == 11
        assert all(len(part) <= 100 for part in parts)
        assert parts[0].endswith(" (1/11)")
        assert parts[-1].endswith(" (11/11)")
        assert "".join(part.rsplit(" (", 1)[0] for part in parts) == text

    def test_exactly_full_parts_leave_room_for_suffix(self) -> None:
        parts = number_parts("y" * 200, 100)
        assert len(parts) == 3
        assert all(len(part) <= 100 for part in parts)


class TestDelays:
    """Delay computations, seeded for determinism."""

    def _throttle(self, **settings: int) -> DeliveryThrottle:
        return DeliveryThrottle(DelaySettings(**settings), rng=random.Random(7))

    def test_response_delay_within_bounds(self) -> None:
        throttle = self._throttle()
        for _ in range(50):
            assert 1.0 <= throttle.response_delay() <= 5.0

    def test_typing_delay_within_bounds(self) -> None:
        throttle = self._throttle()
        for _ in range(50):
            assert 0.5 <= throttle.typing_delay() <= 2.0

    def test_reading_delay_scales_with_length(self) -> None:
        throttle = self._throttle()
        # 1000 chars = 200 words = 1 minute at 200 wpm, +/-50%, clamped to 10 s
        assert throttle.reading_delay(1000) == 10.0
        # a few characters stay at the floor
        assert throttle.reading_delay(5) == 0.5

    def test_reading_delay_variance(self) -> None:
        throttle = self._throttle(reading_max_ms=600000)
        for _ in range(50):
            assert 30.0 <= throttle.reading_delay(1000) <= 90.0

    def test_zero_delays(self) -> None:
        throttle = self._throttle(
            response_min_ms=0, response_max_ms=0, typing_min_ms=0, typing_max_ms=0
        )
        assert throttle.response_delay() == 0.0
        assert throttle.typing_delay() == 0.0


class TestSend:
    """Tests for DeliveryThrottle.send."""

    @pytest.mark.anyio
    async def test_single_message_with_typing(self) -> None:
        sleep = RecordingSleep()
        session = MemorySession("bot-1")
        throttle = DeliveryThrottle(sleep=sleep, rng=random.Random(1))

        parts = await throttle.send(session, CLIENT_CHAT, "Olá!")

        assert parts == 1
        assert session.sent == [(CLIENT_CHAT, "Olá!")]
        assert session.typing == [(CLIENT_CHAT, True), (CLIENT_CHAT, False)]
        assert len(sleep.delays) == 2
        assert 0.5 <= sleep.delays[0] <= 2.0
        assert 1.0 <= sleep.delays[1] <= 5.0

    @pytest.mark.anyio
    async def test_long_message_numbered_parts(self) -> None:
        sleep = RecordingSleep()
        session = MemorySession("bot-1")
        throttle = DeliveryThrottle(
            DelaySettings(max_message_length=100), sleep=sleep, rng=random.Random(1)
        )

        parts = await throttle.send(session, CLIENT_CHAT, "a" * 80 + ". " + "b" * 150)

        assert parts == 3
        texts = [text for _, text in session.sent]
        assert texts[0] == "a" * 80 + ". (1/3)"
        assert texts[1].endswith(" (2/3)")
        assert texts[2].endswith(" (3/3)")
        assert all(len(text) <= 100 for text in texts)
        # typing, response, then a pause between each pair of parts
        assert len(sleep.delays) == 4

    @pytest.mark.anyio
    async def test_typing_failure_still_waits(self) -> None:
        class NoPresence(MemorySession):
            async def send_typing(self, chat_id: str, typing: bool) -> None:
                raise RuntimeError("presence unsupported")

        sleep = RecordingSleep()
        session = NoPresence("bot-1")
        await DeliveryThrottle(sleep=sleep).send(session, CLIENT_CHAT, "Olá!")
        assert session.sent == [(CLIENT_CHAT, "Olá!")]
        assert len(sleep.delays) == 2
