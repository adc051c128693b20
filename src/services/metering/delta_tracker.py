# coding: utf-8
"""
Delta Tracker

Turns cumulative per-rule counters pushed by nodes into increments since the
previous heartbeat.

Counter keys reported by a node:
    rule_<id>_in   - bytes received on the rule's listen port
    rule_<id>_out  - bytes sent back

The last-seen cumulative values live in a Redis hash per node
(relay:node_traffic_last:<node_id>, fields <id>_in / <id>_out, 7 day TTL).
The snapshot is not authoritative: losing it only means the next report is
counted from zero.
"""
from dataclasses import dataclass
from typing import Dict, Mapping, Optional, Tuple

from loguru import logger

from config.cache_config import CacheTTL
from src.cache.cache_keys import traffic_snapshot_key
from src.cache.redis_manager import RedisManager

DIRECTIONS = ("in", "out")


@dataclass(frozen=True)
class TrafficDelta:
    """Bytes transferred by one rule since the previous report"""

    bytes_in: int = 0
    bytes_out: int = 0

    @property
    def total(self) -> int:
        return self.bytes_in + self.bytes_out


def parse_counter_key(key: str) -> Optional[Tuple[int, str]]:
    """
    Parse a node counter key

    Examples:
        >>> parse_counter_key("rule_12_in")
        (12, 'in')
        >>> parse_counter_key("rule_x_in") is None
        True

    Returns:
        (rule_id, direction) or None for anything that is not rule_<id>_<in|out>
    """
    parts = key.split("_")
    if len(parts) != 3 or parts[0] != "rule":
        return None

    raw_id, direction = parts[1], parts[2]
    if not (raw_id.isascii() and raw_id.isdigit()):
        return None
    if direction not in DIRECTIONS:
        return None

    return int(raw_id), direction


def _snapshot_value(raw: Optional[str]) -> int:
    # Corrupt snapshot fields count as "never seen"
    if raw is None:
        return 0
    try:
        return int(raw)
    except (TypeError, ValueError):
        return 0


def group_counters(stats: Mapping[str, int]) -> Dict[int, Dict[str, int]]:
    """
    Group a raw counter batch by rule

    Unrecognised keys and non-integer or negative values are dropped.
    """
    grouped: Dict[int, Dict[str, int]] = {}
    for key, value in stats.items():
        parsed = parse_counter_key(key)
        if parsed is None:
            continue
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            continue

        rule_id, direction = parsed
        grouped.setdefault(rule_id, {})[direction] = value

    return grouped


class DeltaTracker:
    """
    Computes per-rule traffic deltas for a node

    Usage:
        >>> tracker = DeltaTracker(get_redis_manager())
        >>> deltas = await tracker.compute_deltas(7, {"rule_3_in": 1000, "rule_3_out": 2000})
        >>> deltas[3]
        TrafficDelta(bytes_in=1000, bytes_out=2000)
    """

    def __init__(self, redis: RedisManager, snapshot_ttl: int = CacheTTL.TRAFFIC_SNAPSHOT):
        self.redis = redis
        self.snapshot_ttl = snapshot_ttl

    async def compute_deltas(
        self, node_id: int, stats: Mapping[str, int]
    ) -> Dict[int, TrafficDelta]:
        """
        Compute deltas against the stored snapshot and store the new one

        A counter lower than its snapshot means the node restarted; the whole
        current value is taken as the delta. A direction absent from the
        batch yields 0 and keeps its stored value. Rules whose deltas are both
        zero are left out of the result.

        Args:
            node_id: Reporting node
            stats: Raw counter batch (malformed keys are ignored)

        Returns:
            {rule_id: TrafficDelta}

        Raises:
            CacheUnavailableError: Redis is down; nothing was computed or stored
        """
        current = group_counters(stats)
        if not current:
            return {}

        key = traffic_snapshot_key(node_id)
        last = await self.redis.hgetall(key)

        deltas: Dict[int, TrafficDelta] = {}
        snapshot: Dict[str, int] = {}

        for rule_id, counters in current.items():
            per_direction = {"in": 0, "out": 0}

            for direction, value in counters.items():
                field_name = f"{rule_id}_{direction}"
                delta = value - _snapshot_value(last.get(field_name))
                if delta < 0:
                    logger.debug(
                        f"Counter reset on node {node_id} rule {rule_id} {direction}: "
                        f"{last.get(field_name)} -> {value}"
                    )
                    delta = value

                per_direction[direction] = delta
                snapshot[field_name] = value

            if per_direction["in"] or per_direction["out"]:
                deltas[rule_id] = TrafficDelta(
                    bytes_in=per_direction["in"], bytes_out=per_direction["out"]
                )

        await self.redis.hset_many(key, snapshot, ttl=self.snapshot_ttl)

        logger.debug(
            f"Node {node_id}: {len(current)} rules reported, {len(deltas)} with traffic"
        )
        return deltas
