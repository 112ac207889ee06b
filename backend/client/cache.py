# backend/client/cache.py
"""Persistent last-known trade records, kept in a JSON file between client runs."""
import json
import logging
import time
from pathlib import Path
from typing import Callable, Optional, Union

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from models.trade import TradeRecord

logger = logging.getLogger(__name__)

CACHE_KEY_PREFIX = "cs2_trade_details_"
DEFAULT_FRESHNESS_SECONDS = 5 * 60


class CacheEntry(BaseModel):
    value: TradeRecord
    stored_at: float


class TradeCache:
    """
    Key/value cache of trade records with a freshness window.

    ``get`` returns the record together with whether it is still fresh, so
    callers decide whether a stale value is good enough. With ``path`` set,
    every write is flushed to disk and the file is read back on startup.
    """

    def __init__(
        self,
        path: Optional[Union[str, Path]] = None,
        freshness_seconds: float = DEFAULT_FRESHNESS_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.path = Path(path) if path else None
        self.freshness_seconds = freshness_seconds
        self.clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._load()

    @staticmethod
    def key_for(trade_id: str) -> str:
        return f"{CACHE_KEY_PREFIX}{trade_id}"

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: str) -> tuple[Optional[TradeRecord], bool]:
        """Return ``(record, is_fresh)``; ``(None, False)`` when absent."""
        entry = self._entries.get(key)
        if entry is None:
            return None, False
        return entry.value, not self.is_expired(key)

    def put(self, key: str, value: TradeRecord) -> None:
        self._entries[key] = CacheEntry(value=value, stored_at=self.clock())
        self._save()

    def is_expired(self, key: str) -> bool:
        entry = self._entries.get(key)
        if entry is None:
            return True
        return self.clock() - entry.stored_at >= self.freshness_seconds

    def remove(self, key: str) -> None:
        if self._entries.pop(key, None) is not None:
            self._save()

    def get_trade(self, trade_id: str) -> tuple[Optional[TradeRecord], bool]:
        return self.get(self.key_for(trade_id))

    def put_trade(self, trade: TradeRecord) -> None:
        self.put(self.key_for(trade.trade_id), trade)

    def _load(self) -> None:
        if self.path is None or not self.path.exists():
            return
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning("Ignoring unreadable trade cache %s: %s", self.path, e)
            return

        if not isinstance(raw, dict):
            logger.warning("Ignoring trade cache %s: not a JSON object", self.path)
            return

        for key, data in raw.items():
            try:
                self._entries[key] = CacheEntry.model_validate(data)
            except PydanticValidationError:
                logger.warning("Dropping malformed cache entry %s", key)

    def _save(self) -> None:
        if self.path is None:
            return
        data = {key: entry.model_dump(mode="json") for key, entry in self._entries.items()}
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(json.dumps(data), encoding="utf-8")
        tmp.replace(self.path)
