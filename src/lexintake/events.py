"""Fleet lifecycle notifications (created / updated / deleted)."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from .logging import get_logger
from .model import BotInstance

logger = get_logger(__name__)


class FleetEventKind(str, Enum):
    CREATED = "bot-created"
    UPDATED = "bot-updated"
    DELETED = "bot-deleted"


@dataclass(frozen=True, slots=True)
class FleetEvent:
    kind: FleetEventKind
    bot: dict[str, Any]


Subscriber = Callable[[FleetEvent], None]


class FleetEvents:
    """Fan-out of bot lifecycle events to any number of subscribers.

    Subscribers are called synchronously; one failing subscriber is logged
    and does not prevent delivery to the others.
    """

    def __init__(self) -> None:
        self._subscribers: list[Subscriber] = []

    def subscribe(self, subscriber: Subscriber) -> Callable[[], None]:
        """Register ``subscriber``; returns a function that unsubscribes it."""
        self._subscribers.append(subscriber)

        def unsubscribe() -> None:
            if subscriber in self._subscribers:
                self._subscribers.remove(subscriber)

        return unsubscribe

    def emit(self, kind: FleetEventKind, bot: BotInstance) -> FleetEvent:
        event = FleetEvent(kind=kind, bot=bot.summary())
        for subscriber in list(self._subscribers):
            try:
                subscriber(event)
            except Exception:
                logger.exception("events.subscriber_failed", kind=kind.value, bot_id=bot.id)
        return event

    def created(self, bot: BotInstance) -> FleetEvent:
        return self.emit(FleetEventKind.CREATED, bot)

    def updated(self, bot: BotInstance) -> FleetEvent:
        return self.emit(FleetEventKind.UPDATED, bot)

    def deleted(self, bot: BotInstance) -> FleetEvent:
        return self.emit(FleetEventKind.DELETED, bot)
