"""
Unit tests for traffic delta computation
"""

import pytest

from src.cache.cache_keys import traffic_snapshot_key
from src.core.exceptions import CacheUnavailableError
from src.services.metering.delta_tracker import (
    DeltaTracker,
    TrafficDelta,
    group_counters,
    parse_counter_key,
)


@pytest.mark.parametrize(
    "key, expected",
    [
        ("rule_3_in", (3, "in")),
        ("rule_42_out", (42, "out")),
        ("rule_0_in", (0, "in")),
        ("rule_3_x", None),
        ("rule_abc_in", None),
        ("rule_-1_in", None),
        ("rule_3_in_extra", None),
        ("rules_3_in", None),
        ("rule__in", None),
        ("bytes_total", None),
        ("", None),
    ],
)
def test_parse_counter_key(key, expected):
    """Only rule_<id>_<in|out> keys are recognised"""
    assert parse_counter_key(key) == expected


def test_group_counters_drops_malformed_values():
    """Non-integer, boolean and negative counters are ignored"""
    grouped = group_counters(
        {
            "rule_1_in": 10,
            "rule_1_out": "20",
            "rule_2_in": -5,
            "rule_2_out": True,
            "rule_3_in": 1.5,
            "junk": 100,
        }
    )

    assert grouped == {1: {"in": 10}}


@pytest.mark.asyncio
async def test_fresh_node_reports_full_counters(redis_manager, fake_redis):
    """First report from a node: whole counter values are the delta"""
    tracker = DeltaTracker(redis_manager)

    deltas = await tracker.compute_deltas(7, {"rule_3_in": 1000, "rule_3_out": 2000})

    assert deltas == {3: TrafficDelta(bytes_in=1000, bytes_out=2000)}
    assert deltas[3].total == 3000

    snapshot = await fake_redis.hgetall(traffic_snapshot_key(7))
    assert snapshot == {"3_in": "1000", "3_out": "2000"}


@pytest.mark.asyncio
async def test_deltas_are_increments(redis_manager):
    """Subsequent reports yield only the growth since the previous one"""
    tracker = DeltaTracker(redis_manager)

    await tracker.compute_deltas(7, {"rule_3_in": 1000, "rule_3_out": 2000})
    deltas = await tracker.compute_deltas(7, {"rule_3_in": 1500, "rule_3_out": 2600})

    assert deltas == {3: TrafficDelta(bytes_in=500, bytes_out=600)}


@pytest.mark.asyncio
async def test_counter_reset_counts_current_value(redis_manager):
    """A counter below its snapshot (node restart) counts in full"""
    tracker = DeltaTracker(redis_manager)

    await tracker.compute_deltas(7, {"rule_3_in": 1000, "rule_3_out": 2000})
    deltas = await tracker.compute_deltas(7, {"rule_3_in": 300, "rule_3_out": 2100})

    assert deltas == {3: TrafficDelta(bytes_in=300, bytes_out=100)}


@pytest.mark.asyncio
async def test_missing_direction_keeps_snapshot(redis_manager, fake_redis):
    """
    Worked example: only rule_3_in reported after (1000, 2000)

    The out counter is not touched, so a later out report is still measured
    against 2000.
    """
    tracker = DeltaTracker(redis_manager)

    await tracker.compute_deltas(7, {"rule_3_in": 1000, "rule_3_out": 2000})

    deltas = await tracker.compute_deltas(7, {"rule_3_in": 1500})
    assert deltas == {3: TrafficDelta(bytes_in=500, bytes_out=0)}

    deltas = await tracker.compute_deltas(7, {"rule_3_in": 700})
    assert deltas == {3: TrafficDelta(bytes_in=700, bytes_out=0)}

    snapshot = await fake_redis.hgetall(traffic_snapshot_key(7))
    assert snapshot == {"3_in": "700", "3_out": "2000"}

    deltas = await tracker.compute_deltas(7, {"rule_3_out": 2250})
    assert deltas == {3: TrafficDelta(bytes_in=0, bytes_out=250)}


@pytest.mark.asyncio
async def test_unchanged_rules_are_omitted(redis_manager, fake_redis):
    """Zero deltas are left out but the snapshot TTL is still refreshed"""
    tracker = DeltaTracker(redis_manager, snapshot_ttl=600)

    await tracker.compute_deltas(7, {"rule_3_in": 10, "rule_4_in": 10})
    await fake_redis.expire(traffic_snapshot_key(7), 5)

    deltas = await tracker.compute_deltas(7, {"rule_3_in": 10, "rule_4_in": 25})

    assert deltas == {4: TrafficDelta(bytes_in=15, bytes_out=0)}
    assert await fake_redis.ttl(traffic_snapshot_key(7)) > 5


@pytest.mark.asyncio
async def test_nodes_are_tracked_separately(redis_manager):
    """The same rule id on two nodes has independent snapshots"""
    tracker = DeltaTracker(redis_manager)

    await tracker.compute_deltas(1, {"rule_3_in": 1000})
    deltas = await tracker.compute_deltas(2, {"rule_3_in": 400})

    assert deltas == {3: TrafficDelta(bytes_in=400, bytes_out=0)}


@pytest.mark.asyncio
async def test_malformed_keys_ignored(redis_manager, fake_redis):
    """Garbage in the batch never raises and never reaches the snapshot"""
    tracker = DeltaTracker(redis_manager)

    deltas = await tracker.compute_deltas(
        7, {"rule_3_in": 100, "rule_x_in": 5, "rule_3_sideways": 9, "uptime": 12345}
    )

    assert deltas == {3: TrafficDelta(bytes_in=100, bytes_out=0)}
    assert await fake_redis.hgetall(traffic_snapshot_key(7)) == {"3_in": "100"}


@pytest.mark.asyncio
async def test_corrupt_snapshot_value_treated_as_zero(redis_manager, fake_redis):
    """A non-numeric snapshot field counts as never seen"""
    await fake_redis.hset(traffic_snapshot_key(7), mapping={"3_in": "garbage"})
    tracker = DeltaTracker(redis_manager)

    deltas = await tracker.compute_deltas(7, {"rule_3_in": 800})

    assert deltas == {3: TrafficDelta(bytes_in=800, bytes_out=0)}


@pytest.mark.asyncio
async def test_empty_batch_skips_redis(unavailable_redis):
    """Nothing recognisable in the batch: no Redis access at all"""
    tracker = DeltaTracker(unavailable_redis)

    assert await tracker.compute_deltas(7, {}) == {}
    assert await tracker.compute_deltas(7, {"junk": 1}) == {}


@pytest.mark.asyncio
async def test_redis_not_initialized_raises(unavailable_redis):
    """Redis down at startup surfaces as CacheUnavailableError"""
    tracker = DeltaTracker(unavailable_redis)

    with pytest.raises(CacheUnavailableError):
        await tracker.compute_deltas(7, {"rule_3_in": 1000})


@pytest.mark.asyncio
async def test_redis_connection_lost_raises(disconnected_redis):
    """Connection errors are wrapped in CacheUnavailableError"""
    tracker = DeltaTracker(disconnected_redis)

    with pytest.raises(CacheUnavailableError):
        await tracker.compute_deltas(7, {"rule_3_in": 1000})
