"""Raw TOML I/O for the fleet config and the bot store.

Kept separate from validation so callers can inspect or rewrite raw data
before pydantic sees it.
"""

from __future__ import annotations

import shutil
import tomllib
from pathlib import Path
from typing import Any

import tomlkit

FLEET_CONFIG_DIR = ".lexintake"
FLEET_CONFIG_FILE = "fleet.toml"


def get_config_path(fleet_root: Path) -> Path:
    """Get the path to the fleet config file."""
    return fleet_root / FLEET_CONFIG_DIR / FLEET_CONFIG_FILE


def read_raw_toml(path: Path) -> dict[str, Any]:
    """Read raw TOML data from a file.

    Raises:
        FileNotFoundError: If the file does not exist
        tomllib.TOMLDecodeError: If the file is not valid TOML
    """
    with open(path, "rb") as f:
        return tomllib.load(f)


def _drop_none(value: Any) -> Any:
    # TOML has no null
    if isinstance(value, dict):
        return {k: _drop_none(v) for k, v in value.items() if v is not None}
    if isinstance(value, list):
        return [_drop_none(v) for v in value if v is not None]
    return value


def write_raw_toml(data: dict[str, Any], path: Path) -> None:
    """Write raw TOML data, dropping keys whose value is None."""
    path.parent.mkdir(parents=True, exist_ok=True)
    content = tomlkit.dumps(_drop_none(data))
    path.write_text(content, encoding="utf-8")


def backup_config(path: Path) -> Path | None:
    """Copy ``path`` next to itself with a ``.bak`` suffix.

    Returns:
        Path to the backup file, or None if there was nothing to back up
    """
    if not path.exists():
        return None

    backup_path = path.with_suffix(path.suffix + ".bak")
    shutil.copy2(path, backup_path)
    return backup_path
