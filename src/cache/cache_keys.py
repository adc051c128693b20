# coding: utf-8
"""
Cache key generation utilities

Provides consistent, namespaced key generation for Redis.
"""
from typing import Any

from config.cache_config import CacheConfig


class CacheKeyBuilder:
    """
    Utility class for building consistent cache keys

    Key format: {namespace}:{kind}[:{part}...]

    Examples:
        relay:node_traffic_last:7
        relay:order:lock:20250101120000-a1b2c3d4
        relay:node_probe:7
    """

    SEPARATOR = CacheConfig.CACHE_KEY_SEPARATOR
    NAMESPACE = CacheConfig.CACHE_NAMESPACE

    @classmethod
    def build(cls, *parts: Any) -> str:
        """
        Build a cache key from components

        Examples:
            >>> CacheKeyBuilder.build('node_probe', 7)
            'relay:node_probe:7'
        """
        return cls.SEPARATOR.join([cls.NAMESPACE, *(str(p) for p in parts)])


def traffic_snapshot_key(node_id: int) -> str:
    """Hash of last-seen cumulative counters for a node"""
    return CacheKeyBuilder.build("node_traffic_last", node_id)


def settlement_lock_key(trade_no: str) -> str:
    """Per-order settlement lock"""
    return CacheKeyBuilder.build("order", "lock", trade_no)


def node_probe_key(node_id: int) -> str:
    """Latest probe data reported by a node"""
    return CacheKeyBuilder.build("node_probe", node_id)
