"""
Tiered Click Cache.

WHAT:
    Answers "find a recent click of this creator carrying signal X" from the
    fastest tier that has it:
    1. Hot tier: in-process, per-user bounded ring buffer (no network hop)
    2. Shared tier: SharedCache (Redis) keyed by IP, tracker id, fingerprint

WHY:
    Sales frequently land seconds after the click on the same process. The
    shared tier covers the multi-process case. Neither tier is authoritative:
    any failure here is a cache miss and the correlation engine falls back to
    the durable store.

KEY FORMAT:
    {prefix}ip:{user_id}:{ip}
    {prefix}tracker:{user_id}:{tracker_id}
    {prefix}fp:{user_id}:{fingerprint}

    TTL is the remainder of the attribution window measured from the click
    timestamp, so re-putting the same click always yields the same expiry.

REFERENCES:
    - clickcredit/services/attribution/correlation_engine.py (consumer)
    - clickcredit/stores/redis_cache.py (shared tier implementation)
"""

from __future__ import annotations

import asyncio
import json
import logging
import threading
from collections import deque
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional

from .interfaces import SharedCache
from .types import ClickEvent, MatchTier, ensure_utc, utcnow

logger = logging.getLogger(__name__)


@dataclass
class ClickCacheConfig:
    """Configuration for the tiered click cache."""

    window: timedelta = timedelta(hours=24)
    hot_capacity: int = 100
    key_prefix: str = "click:v2:"
    timeout_seconds: float = 0.5


@dataclass
class CacheHit:
    click: ClickEvent
    tier: MatchTier


@dataclass
class CacheStats:
    hot_entries: int = 0
    hot_users: int = 0
    hot_hits: int = 0
    shared_hits: int = 0
    misses: int = 0
    shared_errors: int = 0
    shared_configured: bool = False
    shared_available: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class _HotEntry:
    click: ClickEvent
    claimed_by: Optional[str] = None


# =============================================================================
# HOT TIER
# =============================================================================

class HotClickTier:
    """
    Per-user ring buffers of recent clicks behind a single mutex.

    Every operation touches at most one user's ring (capacity N) plus an
    id index, so the lock is held for O(N) at worst.
    """

    def __init__(self, capacity: int = 100):
        self.capacity = capacity
        self._rings: Dict[str, Deque[_HotEntry]] = {}
        self._index: Dict[str, _HotEntry] = {}
        self._lock = threading.Lock()

    def put(self, click: ClickEvent, window: Optional[timedelta] = None) -> bool:
        """Add a click. Returns False when the click id is already present."""
        with self._lock:
            if click.click_id in self._index:
                return False

            ring = self._rings.get(click.user_id)
            if ring is None:
                ring = deque()
                self._rings[click.user_id] = ring

            if window is not None:
                self._drop_expired(ring, utcnow() - window)

            while len(ring) >= self.capacity:
                evicted = ring.popleft()
                self._index.pop(evicted.click.click_id, None)

            entry = _HotEntry(click=click)
            ring.append(entry)
            self._index[click.click_id] = entry
            return True

    def find(
        self,
        user_id: str,
        predicate: Callable[[ClickEvent], bool],
        before: datetime,
        window: timedelta,
    ) -> Optional[ClickEvent]:
        """Newest unclaimed click in [before - window, before] matching predicate."""
        earliest = before - window
        with self._lock:
            ring = self._rings.get(user_id)
            if not ring:
                return None
            for entry in reversed(ring):
                click = entry.click
                if entry.claimed_by is not None:
                    continue
                if click.clicked_at > before or click.clicked_at < earliest:
                    continue
                if predicate(click):
                    return click
        return None

    def claim(self, click_id: str, sale_id: str) -> bool:
        """Mark a click attributed. False only if another sale already holds it."""
        with self._lock:
            entry = self._index.get(click_id)
            if entry is None:
                return True
            if entry.claimed_by not in (None, sale_id):
                return False
            entry.claimed_by = sale_id
            return True

    def release(self, click_id: str) -> None:
        with self._lock:
            entry = self._index.get(click_id)
            if entry is not None:
                entry.claimed_by = None

    def unattributed(self, user_id: str) -> List[ClickEvent]:
        with self._lock:
            ring = self._rings.get(user_id) or ()
            return [entry.click for entry in reversed(ring) if entry.claimed_by is None]

    def prune(self, window: timedelta) -> int:
        """Drop clicks older than the window from every ring."""
        cutoff = utcnow() - window
        removed = 0
        with self._lock:
            for user_id in list(self._rings):
                ring = self._rings[user_id]
                removed += self._drop_expired(ring, cutoff)
                if not ring:
                    del self._rings[user_id]
        return removed

    def size(self) -> Dict[str, int]:
        with self._lock:
            return {"entries": len(self._index), "users": len(self._rings)}

    def _drop_expired(self, ring: Deque[_HotEntry], cutoff: datetime) -> int:
        removed = 0
        while ring and ring[0].click.clicked_at < cutoff:
            evicted = ring.popleft()
            self._index.pop(evicted.click.click_id, None)
            removed += 1
        return removed


# =============================================================================
# TIERED CACHE
# =============================================================================

class TieredClickCache:
    """
    Hot tier in front of an optional shared tier.

    Usage:
        cache = TieredClickCache(shared=RedisSharedCache(client))
        await cache.put(click)
        hit = await cache.find_by_ip(user_id, "1.2.3.4", before=sale.sold_at)
    """

    def __init__(
        self,
        shared: Optional[SharedCache] = None,
        config: Optional[ClickCacheConfig] = None,
    ):
        self.config = config or ClickCacheConfig()
        self._shared = shared
        self._hot = HotClickTier(self.config.hot_capacity)
        self._stats = CacheStats(shared_configured=shared is not None, shared_available=shared is not None)

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    async def put(self, click: ClickEvent) -> None:
        self._hot.put(click, window=self.config.window)

        if self._shared is None:
            return
        ttl = self._ttl_for(click)
        if ttl <= 0:
            logger.debug("[CACHE] Click %s already outside window, skipping shared tier", click.click_id)
            return

        payload = self._encode(click, claimed_by=None)
        for key in self._keys_for(click):
            await self._shared_call(lambda: self._shared.set_with_ttl(key, payload, ttl), "set")

    async def mark_attributed(self, click: ClickEvent, sale_id: str) -> bool:
        """Claim a click so no other sale can match it. Keeps remaining TTL."""
        if not self._hot.claim(click.click_id, sale_id):
            return False
        await self._rewrite_shared(click, claimed_by=sale_id)
        return True

    async def release(self, click: ClickEvent) -> None:
        self._hot.release(click.click_id)
        await self._rewrite_shared(click, claimed_by=None)

    def prune(self) -> int:
        return self._hot.prune(self.config.window)

    # -------------------------------------------------------------------------
    # Lookups
    # -------------------------------------------------------------------------

    async def find_by_ip(self, user_id: str, ip: Optional[str], before: datetime) -> Optional[CacheHit]:
        return await self._find(user_id, "ip", ip, before, lambda c: c.ip_address == ip)

    async def find_by_tracker(self, user_id: str, tracker_id: Optional[str], before: datetime) -> Optional[CacheHit]:
        return await self._find(user_id, "tracker", tracker_id, before, lambda c: c.tracker_id == tracker_id)

    async def find_by_fingerprint(self, user_id: str, fingerprint: Optional[str], before: datetime) -> Optional[CacheHit]:
        return await self._find(user_id, "fp", fingerprint, before, lambda c: c.fingerprint == fingerprint)

    def unattributed(self, user_id: str) -> List[ClickEvent]:
        """Hot-tier clicks of a creator that no sale has claimed yet."""
        return self._hot.unattributed(user_id)

    def stats(self) -> CacheStats:
        size = self._hot.size()
        self._stats.hot_entries = size["entries"]
        self._stats.hot_users = size["users"]
        return CacheStats(**asdict(self._stats))

    async def _find(
        self,
        user_id: str,
        index: str,
        value: Optional[str],
        before: datetime,
        predicate: Callable[[ClickEvent], bool],
    ) -> Optional[CacheHit]:
        if not value:
            return None
        before = ensure_utc(before)

        click = self._hot.find(user_id, predicate, before, self.config.window)
        if click is not None:
            self._stats.hot_hits += 1
            return CacheHit(click=click, tier=MatchTier.hot)

        if self._shared is not None:
            key = f"{self.config.key_prefix}{index}:{user_id}:{value}"
            raw = await self._shared_call(lambda: self._shared.get(key), "get")
            click = self._decode_candidate(raw, user_id, before)
            if click is not None:
                self._stats.shared_hits += 1
                return CacheHit(click=click, tier=MatchTier.shared)

        self._stats.misses += 1
        return None

    # -------------------------------------------------------------------------
    # Shared tier plumbing
    # -------------------------------------------------------------------------

    async def _shared_call(self, make_call: Callable[[], Awaitable[Any]], operation: str) -> Any:
        """Run one shared-tier call with a timeout. Any failure is a miss."""
        try:
            result = await asyncio.wait_for(make_call(), timeout=self.config.timeout_seconds)
        except Exception as e:
            self._stats.shared_errors += 1
            if self._stats.shared_available:
                logger.warning("[CACHE] Shared tier %s failed, degrading to hot tier: %s", operation, e)
            self._stats.shared_available = False
            return None
        self._stats.shared_available = True
        return result

    async def _rewrite_shared(self, click: ClickEvent, claimed_by: Optional[str]) -> None:
        if self._shared is None:
            return
        ttl = self._ttl_for(click)
        if ttl <= 0:
            return
        payload = self._encode(click, claimed_by=claimed_by)
        for key in self._keys_for(click):
            await self._shared_call(lambda: self._shared.set_with_ttl(key, payload, ttl), "set")

    def _keys_for(self, click: ClickEvent) -> List[str]:
        prefix = self.config.key_prefix
        keys = []
        if click.ip_address:
            keys.append(f"{prefix}ip:{click.user_id}:{click.ip_address}")
        if click.tracker_id:
            keys.append(f"{prefix}tracker:{click.user_id}:{click.tracker_id}")
        if click.fingerprint:
            keys.append(f"{prefix}fp:{click.user_id}:{click.fingerprint}")
        return keys

    def _ttl_for(self, click: ClickEvent) -> int:
        expires_at = ensure_utc(click.clicked_at) + self.config.window
        return int((expires_at - utcnow()).total_seconds())

    @staticmethod
    def _encode(click: ClickEvent, claimed_by: Optional[str]) -> bytes:
        return json.dumps({"click": click.to_dict(), "claimed_by": claimed_by}).encode("utf-8")

    def _decode_candidate(self, raw: Optional[bytes], user_id: str, before: datetime) -> Optional[ClickEvent]:
        if not raw:
            return None
        try:
            record = json.loads(raw)
            click = ClickEvent.from_dict(record["click"])
        except (ValueError, KeyError, TypeError) as e:
            logger.warning("[CACHE] Discarding unreadable shared entry: %s", e)
            return None

        if record.get("claimed_by") or click.user_id != user_id:
            return None
        if click.clicked_at > before or click.clicked_at < before - self.config.window:
            return None
        return click
