"""Content-addressed cache of agent replies with TTL expiry."""

import asyncio
import hashlib
import json
import logging
import time
from dataclasses import dataclass
from typing import Callable

from .models import CacheEntry, Message
from .storage import ChatDatabase

logger = logging.getLogger(__name__)

DEFAULT_TTL_SEC = 604800  # 7 days
DEFAULT_SWEEP_INTERVAL = 60.0


def compute_cache_key(agent_id: str, prompt: str) -> str:
    """SHA-256 of the canonical JSON of agent id and lowercased prompt."""
    payload = json.dumps(
        {"model": agent_id, "prompt": prompt.lower()},
        separators=(",", ":"),
        ensure_ascii=False,
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


@dataclass
class CacheStats:
    """Cache statistics."""

    hit_count: int = 0
    miss_count: int = 0
    entry_count: int = 0
    evicted_count: int = 0


class ResponseCache:
    """Caches committed assistant messages by (agent, prompt) hash.

    Entries are read and written through the chat database's cache
    collection. Reads evict entries that have expired or whose payload is
    unusable, so a corrupt entry is never served twice.
    """

    def __init__(
        self,
        database: ChatDatabase,
        ttl_sec: int = DEFAULT_TTL_SEC,
        sweep_interval: float = DEFAULT_SWEEP_INTERVAL,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the cache.

        Args:
            database: Storage for the cache collection.
            ttl_sec: Default lifetime of new entries in seconds.
            sweep_interval: Seconds between background sweeps.
            clock: Time source in epoch seconds.
        """
        self.database = database
        self.ttl_sec = ttl_sec
        self.sweep_interval = sweep_interval
        self.clock = clock
        self._stats = CacheStats()
        self._sweep_task: asyncio.Task | None = None

    def _evict(self, key: str) -> None:
        entries = self.database.load_cache()
        if entries.pop(key, None) is not None:
            self.database.save_cache(entries)
            self._stats.evicted_count += 1

    def get(self, key: str) -> Message | None:
        """Return the cached message for ``key``, or None on a miss.

        Expired entries and entries whose payload cannot be parsed into a
        message with ``id``, ``content`` and ``chat_id`` are evicted.
        """
        entry = self.database.load_cache().get(key)
        if entry is None:
            self._stats.miss_count += 1
            return None

        if entry.is_expired(self.clock()):
            logger.debug(f"Cache entry expired: {key[:12]}")
            self._evict(key)
            self._stats.miss_count += 1
            return None

        try:
            payload = json.loads(entry.response_json)
            if not isinstance(payload, dict):
                raise ValueError("payload is not an object")
            for required in ("id", "content"):
                if not payload.get(required):
                    raise KeyError(required)
            message = Message.from_dict(payload)
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            logger.warning(f"Evicting invalid cache entry {key[:12]}: {e}")
            self._evict(key)
            self._stats.miss_count += 1
            return None

        self._stats.hit_count += 1
        return message

    def set(self, key: str, message: Message, ttl_sec: int | None = None) -> CacheEntry:
        """Store a committed message under ``key``, replacing any prior entry."""
        entry = CacheEntry(
            key_hash=key,
            response_json=json.dumps(message.to_dict(), ensure_ascii=False),
            created_at=self.clock(),
            ttl_sec=ttl_sec if ttl_sec is not None else self.ttl_sec,
        )
        entries = self.database.load_cache()
        entries[key] = entry
        self.database.save_cache(entries)
        return entry

    def invalidate(self, key: str) -> None:
        self._evict(key)

    def clear(self) -> None:
        """Remove every entry."""
        self.database.save_cache({})
        self._stats = CacheStats()
        logger.info("Response cache cleared")

    def sweep(self) -> int:
        """Remove every expired entry.

        Returns:
            Number of entries removed.
        """
        now = self.clock()
        entries = self.database.load_cache()
        live = {k: v for k, v in entries.items() if not v.is_expired(now)}
        removed = len(entries) - len(live)
        if removed:
            self.database.save_cache(live)
            self._stats.evicted_count += removed
            logger.debug(f"Swept {removed} expired cache entries")
        return removed

    def stats(self) -> CacheStats:
        return CacheStats(
            hit_count=self._stats.hit_count,
            miss_count=self._stats.miss_count,
            entry_count=len(self.database.load_cache()),
            evicted_count=self._stats.evicted_count,
        )

    async def _sweep_loop(self) -> None:
        """Background task for periodic expiry."""
        while True:
            try:
                await asyncio.sleep(self.sweep_interval)
                self.sweep()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.warning(f"Cache sweep failed: {e}")

    def start_sweeper(self) -> None:
        """Start the background sweep task."""
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.create_task(self._sweep_loop())

    def stop_sweeper(self) -> None:
        """Stop the background sweep task."""
        if self._sweep_task and not self._sweep_task.done():
            self._sweep_task.cancel()
        self._sweep_task = None
