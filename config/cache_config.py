# coding: utf-8
"""
Cache configuration for Redis TTL (Time To Live) settings

Redis holds three kinds of data for the metering backend:
- Per-node cumulative counter snapshots (diffing aid for traffic deltas)
- Settlement locks (one per trade_no)
- Node probe data (CPU/memory/network snapshots)
"""
import os


class CacheTTL:
    """
    Time-to-live (TTL) settings for different cache types in seconds
    """

    # ===========================
    # Metering
    # ===========================

    TRAFFIC_SNAPSHOT = int(os.getenv("CACHE_TTL_TRAFFIC_SNAPSHOT", str(7 * 24 * 3600)))
    """Last-seen cumulative counters per node - 7 days (dropped if node stops reporting)"""

    # ===========================
    # Settlement
    # ===========================

    SETTLEMENT_LOCK = int(os.getenv("CACHE_TTL_SETTLEMENT_LOCK", "10"))
    """Per-order settlement lock - 10s safety net against crash-without-release"""

    # ===========================
    # Nodes
    # ===========================

    NODE_PROBE = int(os.getenv("CACHE_TTL_NODE_PROBE", "300"))
    """Node probe data - 5 minutes"""

    # ===========================
    # Default TTL
    # ===========================

    DEFAULT = int(os.getenv("CACHE_TTL_DEFAULT", "300"))
    """Default TTL for unspecified data - 5 minutes"""


class CacheConfig:
    """
    Redis connection and behavior configuration
    """

    # Redis connection
    REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")
    """Redis connection URL"""

    REDIS_MAX_CONNECTIONS = int(os.getenv("REDIS_MAX_CONNECTIONS", "50"))
    """Maximum connections in pool"""

    REDIS_SOCKET_TIMEOUT = int(os.getenv("REDIS_SOCKET_TIMEOUT", "5"))
    """Socket timeout in seconds"""

    REDIS_SOCKET_CONNECT_TIMEOUT = int(os.getenv("REDIS_SOCKET_CONNECT_TIMEOUT", "5"))
    """Socket connect timeout in seconds"""

    # Cache behavior
    CACHE_ENABLED = os.getenv("CACHE_ENABLED", "true").lower() == "true"
    """Enable/disable Redis entirely (metering and locking then run degraded)"""

    CACHE_NAMESPACE = os.getenv("CACHE_NAMESPACE", "relay")
    """Namespace prefix for all cache keys"""

    CACHE_KEY_SEPARATOR = ":"
    """Separator for cache key components"""
