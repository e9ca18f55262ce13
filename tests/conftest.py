import os
import sys
from pathlib import Path

import pytest
import structlog

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

from lexintake.transports import memory  # noqa: E402


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture(autouse=True)
def reset_structlog():
    """Reset structlog configuration so setup_logging can run per test."""
    structlog.reset_defaults()
    yield
    structlog.reset_defaults()


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep LEXINTAKE__* variables from the developer's shell out of settings."""
    for key in list(os.environ):
        if key.startswith("LEXINTAKE__"):
            monkeypatch.delenv(key)


@pytest.fixture(autouse=True)
def reset_memory_transport():
    yield
    memory.TRANSPORT.sessions.clear()
