"""Persistence collaborator for bot configs and conversation maps.

Layout under the fleet data directory::

    bots.toml                     one [bots.<id>] table per bot
    conversations/<bot_id>.json   ConversationEngine.snapshot() output

Saves are bulk and on demand (startup, lifecycle changes, shutdown);
nothing is written per message.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import anyio

from .config_store import backup_config, read_raw_toml, write_raw_toml
from .logging import get_logger
from .model import BotInstance

logger = get_logger(__name__)

BOTS_FILE = "bots.toml"
CONVERSATIONS_DIR = "conversations"


class FleetStore:
    def __init__(self, data_dir: Path) -> None:
        self.data_dir = data_dir

    @property
    def bots_path(self) -> Path:
        return self.data_dir / BOTS_FILE

    def conversations_path(self, bot_id: str) -> Path:
        return self.data_dir / CONVERSATIONS_DIR / f"{bot_id}.json"

    def load_bots(self) -> list[BotInstance]:
        if not self.bots_path.exists():
            return []
        data = read_raw_toml(self.bots_path)
        bots: list[BotInstance] = []
        for bot_id, record in data.get("bots", {}).items():
            if not isinstance(record, dict):
                continue
            try:
                bots.append(BotInstance.from_record({"id": bot_id, **record}))
            except (KeyError, ValueError) as e:
                logger.warning("store.bot_invalid", bot_id=bot_id, error=str(e))
        return bots

    def save_bots(self, bots: list[BotInstance]) -> None:
        backup_config(self.bots_path)
        records: dict[str, Any] = {}
        for bot in bots:
            record = bot.to_record()
            del record["id"]
            records[bot.id] = record
        write_raw_toml({"bots": records}, self.bots_path)
        logger.debug("store.bots_saved", count=len(bots))

    def upsert_bot(self, bot: BotInstance) -> None:
        bots = {b.id: b for b in self.load_bots()}
        bots[bot.id] = bot
        self.save_bots(list(bots.values()))

    def remove_bot(self, bot_id: str) -> bool:
        bots = self.load_bots()
        remaining = [b for b in bots if b.id != bot_id]
        if len(remaining) == len(bots):
            return False
        self.save_bots(remaining)
        path = self.conversations_path(bot_id)
        if path.exists():
            path.unlink()
        return True

    async def load_conversations(self, bot_id: str) -> dict[str, Any] | None:
        path = anyio.Path(self.conversations_path(bot_id))
        if not await path.exists():
            return None
        try:
            return json.loads(await path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            logger.error("store.conversations_corrupt", bot_id=bot_id, error=str(e))
            return None

    async def save_conversations(self, bot_id: str, snapshot: dict[str, Any]) -> None:
        path = anyio.Path(self.conversations_path(bot_id))
        await path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(".json.tmp")
        await tmp.write_text(json.dumps(snapshot, ensure_ascii=False, indent=2), encoding="utf-8")
        await tmp.replace(path)
