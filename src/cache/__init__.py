# coding: utf-8
"""
Cache module for Redis integration

Counter snapshots, settlement locks and node probe data.
"""

from src.cache.redis_manager import RedisManager, get_redis_manager
from src.cache.cache_keys import (
    CacheKeyBuilder,
    traffic_snapshot_key,
    settlement_lock_key,
    node_probe_key,
)

__all__ = [
    "RedisManager",
    "get_redis_manager",
    "CacheKeyBuilder",
    "traffic_snapshot_key",
    "settlement_lock_key",
    "node_probe_key",
]
