"""
Traffic metering

DeltaTracker -> QuotaLedger -> TrafficLog, driven by node heartbeats.
"""
from src.services.metering.delta_tracker import DeltaTracker, TrafficDelta, parse_counter_key
from src.services.metering.quota_ledger import QuotaLedger
from src.services.metering.heartbeat import HeartbeatProcessor, HeartbeatResult

__all__ = [
    "DeltaTracker",
    "TrafficDelta",
    "parse_counter_key",
    "QuotaLedger",
    "HeartbeatProcessor",
    "HeartbeatResult",
]
