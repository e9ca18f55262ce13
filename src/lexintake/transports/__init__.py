"""Transport backends for WhatsApp sessions."""

from __future__ import annotations

from ..transport_registry import (
    SetupResult,
    TransportBackend,
    check_transport_setup,
    get_default_transport,
    get_transport,
    list_transports,
    session_factory,
)

__all__ = [
    "TransportBackend",
    "SetupResult",
    "get_transport",
    "list_transports",
    "check_transport_setup",
    "get_default_transport",
    "session_factory",
]
