# SPDX-License-Identifier: Apache-2.0
# SPDX-FileCopyrightText: Copyright contributors to the SAGE project

"""
Cache cluster client: consistent hashing plus versioned, TTL-bound entries.

Keys are placed on a hash ring with virtual nodes, so adding or removing a
cache node only relocates the keys of the arcs it gains or loses. Every
write carries a version and a node only keeps the highest version it has
seen for a key, which makes concurrent writers converge no matter the
order in which their writes arrive. Invalidation writes a versioned
tombstone rather than deleting.
"""

from __future__ import annotations

import bisect
import hashlib
import json
import logging
import threading
import time
from collections.abc import Callable
from typing import Any

from .config import CacheConfig
from .exceptions import FleetControlError
from .protocols import CacheNode
from .types import CacheEntry

logger = logging.getLogger(__name__)

# In-memory nodes sweep expired entries once they hold more than this many keys
_EXPIRED_SWEEP_THRESHOLD = 1024


class VersionClock:
    """Process-wide monotonic version source (nanoseconds, never repeats)."""

    def __init__(self, clock: Callable[[], int] = time.time_ns):
        self._clock = clock
        self._last = 0
        self._lock = threading.Lock()

    def next(self) -> int:
        with self._lock:
            self._last = max(self._clock(), self._last + 1)
            return self._last


class ConsistentHashRing:
    """Hash ring mapping keys to node ids through virtual nodes."""

    def __init__(self, virtual_nodes: int = 160):
        self.virtual_nodes = virtual_nodes
        self._weights: dict[str, int] = {}
        self._points: list[int] = []
        self._owners: list[str] = []

    @staticmethod
    def _hash(value: str) -> int:
        return int(hashlib.md5(value.encode()).hexdigest()[:16], 16)

    def _rebuild(self) -> None:
        ring = sorted(
            (self._hash(f"{node_id}#{replica}"), node_id)
            for node_id, weight in self._weights.items()
            for replica in range(self.virtual_nodes * weight)
        )
        self._points = [point for point, _ in ring]
        self._owners = [owner for _, owner in ring]

    def add_node(self, node_id: str, weight: int = 1) -> None:
        if weight < 1:
            raise ValueError(f"weight must be >= 1, got {weight}")
        self._weights[node_id] = weight
        self._rebuild()

    def remove_node(self, node_id: str) -> bool:
        if self._weights.pop(node_id, None) is None:
            return False
        self._rebuild()
        return True

    def node_for(self, key: str) -> str:
        """Return the node owning ``key``.

        Raises:
            LookupError: If the ring is empty.
        """
        if not self._points:
            raise LookupError("hash ring has no nodes")
        index = bisect.bisect(self._points, self._hash(key)) % len(self._points)
        return self._owners[index]

    def ownership(self) -> dict[str, float]:
        """Fraction of the hash space owned by each node."""
        if not self._points:
            return {}
        space = 1 << 64
        shares = dict.fromkeys(self._weights, 0)
        previous = self._points[-1] - space
        for point, owner in zip(self._points, self._owners, strict=True):
            shares[owner] += point - previous
            previous = point
        return {node_id: share / space for node_id, share in shares.items()}

    def clone(self) -> ConsistentHashRing:
        other = ConsistentHashRing(self.virtual_nodes)
        other._weights = dict(self._weights)
        other._points = list(self._points)
        other._owners = list(self._owners)
        return other

    @property
    def nodes(self) -> list[str]:
        return sorted(self._weights)

    def __len__(self) -> int:
        return len(self._weights)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._weights


class InMemoryCacheNode:
    """Cache node held in process memory, with TTL checked against ``clock``."""

    def __init__(
        self,
        node_id: str,
        clock: Callable[[], float] = time.time,
        sweep_threshold: int = _EXPIRED_SWEEP_THRESHOLD,
    ):
        self.node_id = node_id
        self._clock = clock
        self._sweep_threshold = sweep_threshold
        self._entries: dict[str, CacheEntry] = {}

    async def fetch(self, key: str) -> CacheEntry | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.is_expired(self._clock()):
            del self._entries[key]
            return None
        return entry

    async def put(self, entry: CacheEntry, ttl: float | None) -> bool:
        now = self._clock()
        current = self._entries.get(entry.key)
        if current is not None and not current.is_expired(now) and current.version > entry.version:
            return False

        self._entries[entry.key] = CacheEntry(
            key=entry.key,
            value=entry.value,
            version=entry.version,
            expires_at=now + ttl if ttl else None,
            tombstone=entry.tombstone,
        )
        if len(self._entries) > self._sweep_threshold:
            self._entries = {
                key: kept for key, kept in self._entries.items() if not kept.is_expired(now)
            }
        return True

    async def close(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


# Versions are compared as zero-padded strings: nanosecond versions do not
# fit in a Lua number without losing precision.
_VERSION_WIDTH = 20

_PUT_SCRIPT = """
local current = redis.call('HGET', KEYS[1], 'version')
if current and current > ARGV[1] then
    return 0
end
redis.call('HSET', KEYS[1], 'version', ARGV[1], 'value', ARGV[2], 'tombstone', ARGV[3])
local ttl_ms = tonumber(ARGV[4])
if ttl_ms > 0 then
    redis.call('PEXPIRE', KEYS[1], ttl_ms)
else
    redis.call('PERSIST', KEYS[1])
end
return 1
"""


class RedisCacheNode:
    """Cache node backed by one Redis server.

    Each key is a hash with ``version``, ``value`` (JSON) and ``tombstone``
    fields. The version comparison and the write happen in one Lua script,
    and Redis key expiry enforces the TTL.
    """

    def __init__(
        self,
        node_id: str,
        redis_url: str = "redis://localhost:6379/0",
        client: Any | None = None,
        key_prefix: str = "fleet:",
    ):
        if client is None:
            import redis.asyncio as redis

            client = redis.Redis.from_url(redis_url, decode_responses=True)
        self.node_id = node_id
        self.client = client
        self.key_prefix = key_prefix
        self._put_script = client.register_script(_PUT_SCRIPT)

    def _key(self, key: str) -> str:
        return f"{self.key_prefix}{key}"

    async def fetch(self, key: str) -> CacheEntry | None:
        raw = await self.client.hgetall(self._key(key))
        if not raw:
            return None
        return CacheEntry(
            key=key,
            value=json.loads(raw["value"]) if raw.get("value") else None,
            version=int(raw["version"]),
            tombstone=raw.get("tombstone") == "1",
        )

    async def put(self, entry: CacheEntry, ttl: float | None) -> bool:
        applied = await self._put_script(
            keys=[self._key(entry.key)],
            args=[
                str(entry.version).zfill(_VERSION_WIDTH),
                json.dumps(entry.value, separators=(",", ":")),
                "1" if entry.tombstone else "0",
                int(ttl * 1000) if ttl else 0,
            ],
        )
        return bool(applied)

    async def close(self) -> None:
        await self.client.aclose()


class CacheRouter:
    """
    Routes cache operations to the node owning each key.

    Args:
        config: Ring size and TTL defaults.
        nodes: Initial cache nodes.
        version_clock: Source of versions for writes that do not bring one.
    """

    def __init__(
        self,
        config: CacheConfig | None = None,
        nodes: list[CacheNode] | None = None,
        version_clock: VersionClock | None = None,
    ):
        self.config = config or CacheConfig()
        self.version_clock = version_clock or VersionClock()
        self.ring = ConsistentHashRing(self.config.virtual_nodes)
        self._nodes: dict[str, CacheNode] = {}
        for node in nodes or []:
            self.add_node(node)

    def add_node(self, node: CacheNode, weight: int = 1) -> None:
        self._nodes[node.node_id] = node
        self.ring.add_node(node.node_id, weight)
        logger.info("Cache node %s joined the ring (%d nodes)", node.node_id, len(self.ring))

    def remove_node(self, node_id: str) -> CacheNode | None:
        node = self._nodes.pop(node_id, None)
        if node is not None:
            self.ring.remove_node(node_id)
            logger.info("Cache node %s left the ring (%d nodes)", node_id, len(self.ring))
        return node

    def shard_for(self, key: str) -> str:
        try:
            return self.ring.node_for(key)
        except LookupError as e:
            raise FleetControlError("cache cluster has no nodes") from e

    def shard_map(self) -> dict[str, float]:
        """Fraction of the key space owned by each node."""
        return self.ring.ownership()

    def _node(self, key: str) -> CacheNode:
        return self._nodes[self.shard_for(key)]

    async def get_entry(self, key: str) -> CacheEntry | None:
        """Return the live entry for ``key`` including tombstones."""
        return await self._node(key).fetch(key)

    async def get(self, key: str) -> Any | None:
        """Return the cached value, or None on a miss, expiry or invalidation."""
        entry = await self.get_entry(key)
        if entry is None or entry.tombstone:
            return None
        return entry.value

    async def set(
        self,
        key: str,
        value: Any,
        ttl: float | None = None,
        version: int | None = None,
    ) -> bool:
        """
        Store ``value`` unless the node already holds a higher version.

        Args:
            key: Cache key.
            value: Value to store.
            ttl: Seconds to live; defaults to the configured TTL.
            version: Write version; defaults to the version clock.

        Returns:
            True if the write was applied.
        """
        version = self.version_clock.next() if version is None else version
        ttl = self.config.default_ttl_sec if ttl is None else ttl
        applied = await self._node(key).put(CacheEntry(key, value, version), ttl)
        if not applied:
            logger.debug("Write to %s at version %d lost to a newer version", key, version)
        return applied

    async def invalidate(self, key: str, version: int | None = None) -> bool:
        """Replace ``key`` with a tombstone at ``version``."""
        version = self.version_clock.next() if version is None else version
        entry = CacheEntry(key, None, version, tombstone=True)
        return await self._node(key).put(entry, self.config.tombstone_ttl_sec)

    async def close(self) -> None:
        for node in self._nodes.values():
            try:
                await node.close()
            except Exception as e:
                logger.warning("Error closing cache node %s: %s", node.node_id, e)

    def get_status(self) -> dict[str, Any]:
        return {
            "nodes": self.ring.nodes,
            "virtual_nodes": self.ring.virtual_nodes,
            "shard_map": self.shard_map(),
        }
