import asyncio
import json
import logging
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from pydantic import ValidationError

from config import settings
from models import WorldState
from world_map import ensure_integrity

logger = logging.getLogger(__name__)

_SAVE_ID_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


class SaveStore:
    """
    One JSON file per session id: save_<id>.json holding {id, state, timestamp}.

    The async methods run file I/O in a worker thread so a save never blocks
    the event loop serving other sessions.
    """
    def __init__(self, directory: Optional[Union[str, Path]] = None):
        self.directory = Path(directory) if directory is not None else settings.saves_directory

    def path_for(self, save_id: str) -> Optional[Path]:
        if not isinstance(save_id, str) or not _SAVE_ID_RE.match(save_id):
            return None
        return self.directory / f"save_{save_id}.json"

    async def save(self, save_id: str, state: WorldState) -> bool:
        filepath = self.path_for(save_id)
        if filepath is None:
            logger.error(f"Save error: invalid save id {save_id!r}")
            return False
        record = {
            "id": save_id,
            "state": state.model_dump(mode='json'),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        try:
            await asyncio.to_thread(self._write, filepath, record)
            return True
        except (OSError, TypeError, ValueError) as e:
            logger.error(f"Save error for {save_id}: {e}")
            return False

    async def load(self, save_id: str) -> Optional[WorldState]:
        filepath = self.path_for(save_id)
        if filepath is None:
            return None
        try:
            record = await asyncio.to_thread(self._read, filepath)
            state = WorldState.model_validate(record["state"])
        except FileNotFoundError:
            logger.info(f"No save found for {save_id}")
            return None
        except (OSError, ValueError, KeyError, TypeError, ValidationError) as e:
            logger.error(f"Load error for {save_id}: {e}")
            return None
        ensure_integrity(state)
        return state

    async def list(self) -> List[Dict[str, Any]]:
        """Summaries of every readable save, newest first."""
        return await asyncio.to_thread(self._scan)

    @staticmethod
    def _write(filepath: Path, record: Dict[str, Any]) -> None:
        filepath.parent.mkdir(parents=True, exist_ok=True)
        with open(filepath, 'w', encoding='utf-8') as f:
            json.dump(record, f, indent=2, ensure_ascii=False)

    @staticmethod
    def _read(filepath: Path) -> Any:
        with open(filepath, 'r', encoding='utf-8') as f:
            return json.load(f)

    def _scan(self) -> List[Dict[str, Any]]:
        if not self.directory.is_dir():
            return []
        saves = []
        for filepath in self.directory.glob("save_*.json"):
            try:
                record = self._read(filepath)
                state = record["state"]
                saves.append({
                    "sessionId": record["id"],
                    "name": state.get("name", ""),
                    "location": state.get("location", ""),
                    "day": (state.get("date") or {}).get("day_of_game"),
                    "timestamp": record.get("timestamp", ""),
                })
            except (OSError, ValueError, KeyError, TypeError, AttributeError) as e:
                logger.error(f"Error reading save file {filepath.name}: {e}")
        saves.sort(key=lambda s: s["timestamp"] or "", reverse=True)
        return saves
