"""Core data model: bots, clients, conversations, messages and retries."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _parse_dt(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


class BotStatus(str, Enum):
    INITIALIZING = "initializing"
    WAITING_FOR_SCAN = "waiting_for_scan"
    AUTHENTICATED = "authenticated"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    DISCONNECTED = "disconnected"
    STOPPED = "stopped"
    ERROR = "error"

    @property
    def is_live(self) -> bool:
        return self in {
            BotStatus.INITIALIZING,
            BotStatus.WAITING_FOR_SCAN,
            BotStatus.AUTHENTICATED,
            BotStatus.CONNECTED,
            BotStatus.RECONNECTING,
        }


@dataclass(slots=True)
class BotInstance:
    """One tenant bot and its connection bookkeeping.

    Owned by the registry; only the bot's own supervisor mutates it.
    """

    id: str
    name: str
    assistant_name: str = "Ana"
    owner_id: str | None = None
    status: BotStatus = BotStatus.INITIALIZING
    phone_number: str | None = None
    is_active: bool = False
    message_count: int = 0
    last_activity: datetime | None = None
    qr_code: str | None = None
    reconnect_attempts: int = 0
    restore_attempts: int = 0
    manual_stop: bool = False
    has_connected_before: bool = False
    session_path: Path | None = None
    last_error: str | None = None
    created_at: datetime = field(default_factory=utcnow)

    def record_activity(self, now: datetime | None = None) -> None:
        self.message_count += 1
        self.last_activity = now or utcnow()

    def summary(self) -> dict[str, Any]:
        """Payload for lifecycle notifications and status queries."""
        return {
            "id": self.id,
            "name": self.name,
            "assistant_name": self.assistant_name,
            "owner_id": self.owner_id,
            "status": self.status.value,
            "phone_number": self.phone_number,
            "is_active": self.is_active,
            "message_count": self.message_count,
            "last_activity": _iso(self.last_activity),
            "created_at": _iso(self.created_at),
            "qr_code": self.qr_code,
            "error": self.last_error,
        }

    def to_record(self) -> dict[str, Any]:
        """Persistent fields (the QR payload is transient and never stored)."""
        return {
            "id": self.id,
            "name": self.name,
            "assistant_name": self.assistant_name,
            "owner_id": self.owner_id,
            "status": self.status.value,
            "phone_number": self.phone_number,
            "is_active": self.is_active,
            "message_count": self.message_count,
            "last_activity": _iso(self.last_activity),
            "manual_stop": self.manual_stop,
            "has_connected_before": self.has_connected_before,
            "session_path": str(self.session_path) if self.session_path else None,
            "error": self.last_error,
            "created_at": _iso(self.created_at),
        }

    @classmethod
    def from_record(cls, data: dict[str, Any]) -> "BotInstance":
        session_path = data.get("session_path")
        return cls(
            id=str(data["id"]),
            name=str(data.get("name") or data["id"]),
            assistant_name=str(data.get("assistant_name") or "Ana"),
            owner_id=data.get("owner_id"),
            status=BotStatus(data.get("status", BotStatus.STOPPED.value)),
            phone_number=data.get("phone_number"),
            is_active=bool(data.get("is_active", False)),
            message_count=int(data.get("message_count", 0)),
            last_activity=_parse_dt(data.get("last_activity")),
            manual_stop=bool(data.get("manual_stop", False)),
            has_connected_before=bool(data.get("has_connected_before", False)),
            session_path=Path(session_path) if session_path else None,
            last_error=data.get("error"),
            created_at=_parse_dt(data.get("created_at")) or utcnow(),
        )


class ConversationState(str, Enum):
    GREETING = "GREETING"
    COLLECTING_NAME = "COLLECTING_NAME"
    COLLECTING_EMAIL = "COLLECTING_EMAIL"
    ANALYZING_CASE = "ANALYZING_CASE"
    COLLECTING_DETAILS = "COLLECTING_DETAILS"
    COLLECTING_DOCUMENTS = "COLLECTING_DOCUMENTS"
    AWAITING_PREANALYSIS_DECISION = "AWAITING_PREANALYSIS_DECISION"
    GENERATING_PREANALYSIS = "GENERATING_PREANALYSIS"
    AWAITING_LAWYER = "AWAITING_LAWYER"
    COMPLETED = "COMPLETED"

    @property
    def is_terminal(self) -> bool:
        return self is ConversationState.COMPLETED


class MessageDirection(str, Enum):
    IN = "IN"
    OUT = "OUT"
    ANALYSIS = "ANALYSIS"


@dataclass(slots=True)
class Client:
    phone: str
    name: str | None = None
    email: str | None = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True, slots=True)
class TriageAnalysis:
    """Structured outcome of a legal triage pass."""

    category: str = "Outros"
    urgency: str = "media"
    description: str = ""
    documents: tuple[str, ...] = ()
    confidence: float = 0.5
    escalate: bool = True
    recommended_action: str = ""
    flags: tuple[str, ...] = ()
    raw: dict[str, Any] = field(default_factory=dict, compare=False)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["documents"] = list(self.documents)
        data["flags"] = list(self.flags)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TriageAnalysis":
        return cls(
            category=str(data.get("category", "Outros")),
            urgency=str(data.get("urgency", "media")),
            description=str(data.get("description", "")),
            documents=tuple(data.get("documents") or ()),
            confidence=float(data.get("confidence", 0.5)),
            escalate=bool(data.get("escalate", True)),
            recommended_action=str(data.get("recommended_action", "")),
            flags=tuple(data.get("flags") or ()),
            raw=dict(data.get("raw") or {}),
        )


@dataclass(slots=True)
class Conversation:
    id: str
    client_phone: str
    state: ConversationState = ConversationState.GREETING
    started_at: datetime = field(default_factory=utcnow)
    last_activity_at: datetime = field(default_factory=utcnow)
    history: list[str] = field(default_factory=list)
    analysis: TriageAnalysis | None = None
    completion_message: str | None = None
    preanalysis: str | None = None
    needs_more_info: bool = False


@dataclass(frozen=True, slots=True)
class Message:
    id: int
    conversation_id: str
    direction: MessageDirection
    body: str
    timestamp: datetime = field(default_factory=utcnow)


@dataclass(slots=True)
class RetryTask:
    """A failed turn waiting for another attempt."""

    key: str
    phone: str
    text: str
    display_name: str | None = None
    attempts: int = 0
    max_attempts: int = 3
