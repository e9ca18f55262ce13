"""Pydantic settings for the fleet.

This module provides:
- Environment variable support (LEXINTAKE__LLM__API_KEY, etc.)
- Validation with clear error messages
- SecretStr for API keys and bridge tokens to prevent accidental logging
- Every timing threshold of the supervisor and the intake flow as a setting
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

from pydantic import BaseModel, SecretStr, ValidationError, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .config_store import (
    FLEET_CONFIG_DIR,
    FLEET_CONFIG_FILE,
    get_config_path,
    read_raw_toml,
)
from .logging import get_logger

logger = get_logger(__name__)


class ConfigError(RuntimeError):
    """Configuration error."""

    pass


class TransportSettings(BaseModel):
    """Which transport backend carries the WhatsApp sessions."""

    backend: str = "bridge"
    bridge_url: str = "http://127.0.0.1:3000"
    bridge_token: SecretStr | None = None
    poll_timeout_s: int = 50


class LLMSettings(BaseModel):
    """OpenAI-compatible chat completion provider (Groq by default)."""

    api_key: SecretStr | None = None
    base_url: str = "https://api.groq.com/openai/v1"
    model: str = "openai/gpt-oss-120b"
    temperature: float = 0.7
    top_p: float = 0.9
    max_tokens: int = 200
    analysis_temperature: float = 0.3
    analysis_max_tokens: int = 8192
    timeout_s: float = 60.0


class TranscriptionSettings(BaseModel):
    enabled: bool = True
    model: str = "whisper-large-v3"
    language: str = "pt"


class StorageSettings(BaseModel):
    """Best-effort media archive."""

    enabled: bool = False
    root: Path | None = None


class DelaySettings(BaseModel):
    """Human-like delivery delays, in milliseconds."""

    response_min_ms: int = 1000
    response_max_ms: int = 5000
    typing_min_ms: int = 500
    typing_max_ms: int = 2000
    reading_wpm: int = 200
    reading_min_ms: int = 500
    reading_max_ms: int = 10000
    part_pause_min_ms: int = 1000
    part_pause_max_ms: int = 3000
    max_message_length: int = 4000

    @model_validator(mode="after")
    def _check_ranges(self) -> "DelaySettings":
        for low, high in (
            ("response_min_ms", "response_max_ms"),
            ("typing_min_ms", "typing_max_ms"),
            ("reading_min_ms", "reading_max_ms"),
            ("part_pause_min_ms", "part_pause_max_ms"),
        ):
            if getattr(self, low) > getattr(self, high):
                raise ValueError(f"{low} must not exceed {high}")
        return self


class AdmissionSettings(BaseModel):
    """Message age policy and per-chat burst protection."""

    first_connection_window_s: float = 60.0
    reconnect_buffer_s: float = 60.0
    recovery_window_s: float = 6 * 3600.0
    recovery_recent_s: float = 30 * 60.0
    dedup_capacity: int = 100
    burst_window_s: float = 2.0
    reply_cooldown_s: float = 3.0
    cooldown_capacity: int = 50


class SupervisorSettings(BaseModel):
    """Connection lifecycle timings."""

    reconnect_base_delay_s: float = 5.0
    reconnect_factor: float = 1.5
    reconnect_max_delay_s: float = 60.0
    max_reconnect_attempts: int = 10
    keepalive_interval_s: float = 120.0
    keepalive_timeout_s: float = 20.0
    connect_timeout_s: float = 120.0
    restore_timeout_base_s: float = 30.0
    restore_timeout_step_s: float = 10.0
    restore_attempts_before_wipe: int = 2
    restart_pause_s: float = 2.0


class ConversationSettings(BaseModel):
    """Intake dialogue limits."""

    max_case_turns: int = 6
    retry_max_attempts: int = 3
    retry_backoff_s: float = 30.0
    details_min_length: int = 50


class FleetSettings(BaseSettings):
    """Fleet configuration loaded from TOML and environment variables.

    Environment variables use LEXINTAKE__ prefix with __ as nested delimiter:
    - LEXINTAKE__LLM__API_KEY -> llm.api_key
    - LEXINTAKE__TRANSPORT__BRIDGE_URL -> transport.bridge_url
    - LEXINTAKE__CONVERSATION__MAX_CASE_TURNS -> conversation.max_case_turns
    """

    model_config = SettingsConfigDict(
        env_prefix="LEXINTAKE__",
        env_nested_delimiter="__",
        extra="ignore",
    )

    name: str = "lexintake"
    data_dir: Path = Path(FLEET_CONFIG_DIR)
    default_assistant_name: str = "Ana"

    transport: TransportSettings = TransportSettings()
    llm: LLMSettings = LLMSettings()
    transcription: TranscriptionSettings = TranscriptionSettings()
    storage: StorageSettings = StorageSettings()
    delays: DelaySettings = DelaySettings()
    admission: AdmissionSettings = AdmissionSettings()
    supervisor: SupervisorSettings = SupervisorSettings()
    conversation: ConversationSettings = ConversationSettings()

    @property
    def sessions_dir(self) -> Path:
        return self.data_dir / "sessions"


def find_fleet_root(start_path: Path | None = None) -> Path | None:
    """Walk up from start_path to find a directory holding .lexintake/fleet.toml."""
    if start_path is None:
        start_path = Path.cwd()

    current = start_path.resolve()
    for candidate in (current, *current.parents):
        if (candidate / FLEET_CONFIG_DIR / FLEET_CONFIG_FILE).exists():
            return candidate
    return None


def _resolve_paths(data: dict[str, Any], fleet_root: Path) -> dict[str, Any]:
    data = dict(data)
    data_dir = Path(data.get("data_dir", FLEET_CONFIG_DIR))
    if not data_dir.is_absolute():
        data["data_dir"] = fleet_root / data_dir
    storage = dict(data.get("storage", {}))
    root = storage.get("root")
    if root is not None and not Path(root).is_absolute():
        storage["root"] = fleet_root / root
        data["storage"] = storage
    return data


def load_settings(fleet_root: Path | None = None) -> FleetSettings:
    """Load fleet settings from .lexintake/fleet.toml plus the environment.

    A missing config file is not an error: defaults and environment
    variables still apply, rooted at ``fleet_root`` (or cwd).

    Raises:
        ConfigError: If the file cannot be parsed or fails validation
    """
    if fleet_root is None:
        fleet_root = find_fleet_root() or Path.cwd()

    config_path = get_config_path(fleet_root)
    data: dict[str, Any] = {}
    if config_path.exists():
        try:
            data = read_raw_toml(config_path)
        except Exception as e:
            logger.error("settings.load_failed", path=str(config_path), error=str(e))
            raise ConfigError(f"Failed to read {config_path}: {e}") from e

    try:
        return FleetSettings(**_resolve_paths(data, fleet_root))
    except ValidationError as e:
        logger.error(
            "settings.validation_failed",
            path=str(config_path),
            error=str(e),
        )
        raise ConfigError(f"Invalid configuration in {config_path}:\n{e}") from e
