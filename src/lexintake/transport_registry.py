"""Registry of transport backends.

Each backend lives in ``lexintake.transports.<id>`` and exports a
``TRANSPORT`` constant implementing ``TransportBackend``. A backend turns
fleet settings into per-bot ``TransportSession`` objects.
"""

from __future__ import annotations

import importlib
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from .logging import get_logger
from .settings import ConfigError

if TYPE_CHECKING:
    from .settings import FleetSettings
    from .transport import SessionFactory, TransportSession


logger = get_logger(__name__)

DEFAULT_TRANSPORT = "bridge"
KNOWN_TRANSPORTS = ("bridge", "memory")


@dataclass(frozen=True, slots=True)
class SetupResult:
    """Result of checking transport setup."""

    ready: bool
    message: str = ""
    details: dict[str, Any] | None = None


@runtime_checkable
class TransportBackend(Protocol):
    """Protocol for transport backend implementations."""

    id: str
    """Unique identifier for this transport (e.g., 'bridge')."""

    description: str
    """Human-readable description of this transport."""

    def check_setup(self, settings: "FleetSettings") -> SetupResult:
        """Check if this transport is properly configured."""
        ...

    def build_session(
        self,
        bot_id: str,
        session_path: Path,
        settings: "FleetSettings",
    ) -> "TransportSession":
        """Create a fresh, unconnected session for one bot.

        Args:
            bot_id: Bot identifier the session belongs to
            session_path: Directory where the session keeps its credentials
            settings: Fleet settings

        Returns:
            A new TransportSession; callers connect it themselves
        """
        ...


_registry: dict[str, TransportBackend] = {}


def _load_transport(transport_id: str) -> TransportBackend | None:
    if transport_id in _registry:
        return _registry[transport_id]

    module_name = f"lexintake.transports.{transport_id}"
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        logger.debug(
            "transport.load_failed",
            transport=transport_id,
            error=str(e),
        )
        return None

    transport = getattr(module, "TRANSPORT", None)
    if transport is None:
        logger.warning(
            "transport.no_backend",
            transport=transport_id,
            module=module_name,
        )
        return None

    if not isinstance(transport, TransportBackend):
        logger.warning(
            "transport.invalid_backend",
            transport=transport_id,
            module=module_name,
        )
        return None

    _registry[transport_id] = transport
    logger.debug("transport.loaded", transport=transport_id)
    return transport


def get_transport(transport_id: str) -> TransportBackend:
    """Get a transport backend by ID.

    Raises:
        ConfigError: If transport not found
    """
    transport = _load_transport(transport_id)
    if transport is None:
        available = list_transports()
        available_str = ", ".join(available) if available else "none"
        raise ConfigError(
            f"Unknown transport '{transport_id}'. Available: {available_str}"
        )
    return transport


def list_transports() -> list[str]:
    """List transport IDs that can be loaded."""
    return [tid for tid in KNOWN_TRANSPORTS if _load_transport(tid) is not None]


def check_transport_setup(transport_id: str, settings: "FleetSettings") -> SetupResult:
    try:
        transport = get_transport(transport_id)
    except ConfigError as e:
        return SetupResult(ready=False, message=str(e))

    return transport.check_setup(settings)


def session_factory(settings: "FleetSettings") -> "SessionFactory":
    """Bind the configured backend to the settings, for the registry."""
    backend = get_transport(settings.transport.backend)

    def build(bot_id: str, session_path: Path) -> "TransportSession":
        return backend.build_session(bot_id, session_path, settings)

    return build


def get_default_transport() -> str:
    return DEFAULT_TRANSPORT
