"""Public API for embedding LexIntake.

This module exports the stable surface for code that hosts the fleet
(a web dashboard, a different CLI) or plugs in its own transport or
collaborators. Anything not imported from `lexintake.api` should be
considered internal and subject to change.

Example:
    from lexintake.api import BotRegistry, BotServices, load_settings

    settings = load_settings()
    registry = BotRegistry(settings=settings, session_factory=..., services=...)
"""

from __future__ import annotations

# --- Fleet ---
from .events import FleetEvent, FleetEventKind, FleetEvents
from .registry import BotNotFoundError, BotRegistry, BotServices, FleetStatus
from .store import FleetStore
from .supervisor import ConnectionSupervisor

# --- Conversation ---
from .engine import ConversationEngine
from .llm import LLMError, LLMProvider, LLMUnavailableError
from .model import (
    BotInstance,
    BotStatus,
    Client,
    Conversation,
    ConversationState,
    Message,
    MessageDirection,
    TriageAnalysis,
)
from .triage import TriageCollaborator

# --- Media and delivery ---
from .delivery import DeliveryThrottle
from .ingest import IngestResult, MessageIngestPipeline
from .media import AudioTranscriber, StorageUploader

# --- Configuration ---
from .settings import ConfigError, FleetSettings, load_settings

# --- Transport backends ---
from .transport import (
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
    SessionFactory,
    TransportError,
    TransportSession,
)
from .transport_registry import SetupResult, TransportBackend

# API version for compatibility tracking
LEXINTAKE_API_VERSION = 1

__all__ = [
    # Version
    "LEXINTAKE_API_VERSION",
    # Fleet
    "BotRegistry",
    "BotServices",
    "BotNotFoundError",
    "FleetStatus",
    "FleetEvents",
    "FleetEvent",
    "FleetEventKind",
    "FleetStore",
    "ConnectionSupervisor",
    # Conversation
    "ConversationEngine",
    "LLMProvider",
    "LLMError",
    "LLMUnavailableError",
    "TriageCollaborator",
    "BotInstance",
    "BotStatus",
    "Client",
    "Conversation",
    "ConversationState",
    "Message",
    "MessageDirection",
    "TriageAnalysis",
    # Media and delivery
    "DeliveryThrottle",
    "MessageIngestPipeline",
    "IngestResult",
    "AudioTranscriber",
    "StorageUploader",
    # Config
    "ConfigError",
    "FleetSettings",
    "load_settings",
    # Transport types
    "TransportBackend",
    "TransportSession",
    "SessionFactory",
    "SetupResult",
    "SessionEvent",
    "AuthChallenge",
    "Authenticated",
    "Ready",
    "Disconnected",
    "DisconnectReason",
    "MessageReceived",
    "InboundMessage",
    "MediaPayload",
    "MessageKind",
    "TransportError",
]
