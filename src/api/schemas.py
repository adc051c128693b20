"""
Node API Schemas - Pydantic models for node-facing endpoints.

Counter values in traffic_stats are not validated here: malformed entries are
dropped by the delta tracker instead of failing the whole heartbeat.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


# =============================================================================
# Probe data
# =============================================================================


class CPUInfo(BaseModel):
    usage_percent: float = 0.0
    cores: int = 0


class MemoryInfo(BaseModel):
    total: int = 0
    used: int = 0
    usage_percent: float = 0.0


class NetworkInfo(BaseModel):
    name: str
    rx_bytes: int = 0
    tx_bytes: int = 0
    rx_speed: int = 0
    tx_speed: int = 0


class ProbeData(BaseModel):
    """Host metrics reported by a node (cached, never persisted)"""

    timestamp: int = 0
    cpu: CPUInfo = Field(default_factory=CPUInfo)
    memory: MemoryInfo = Field(default_factory=MemoryInfo)
    network: List[NetworkInfo] = Field(default_factory=list)


# =============================================================================
# Requests
# =============================================================================


class NodeAuthRequest(BaseModel):
    node_id: int = Field(..., description="Node ID")
    secret: str = Field(..., min_length=1, description="Node secret")


class NodeHeartbeatRequest(NodeAuthRequest):
    probe: Optional[ProbeData] = None
    traffic_stats: Dict[str, Any] = Field(
        default_factory=dict,
        description="Cumulative counters: rule_<id>_in / rule_<id>_out -> bytes",
    )


class NodeReportRequest(NodeAuthRequest):
    report: Optional[ProbeData] = None


class NodeConfigRequest(NodeAuthRequest):
    pass


# =============================================================================
# Responses
# =============================================================================


class HeartbeatData(BaseModel):
    rules_updated: List[int] = Field(default_factory=list)
    rules_disabled: List[int] = Field(default_factory=list)
    accounting_skipped: bool = False


class HeartbeatResponse(BaseModel):
    code: int = 0
    message: str = "heartbeat ok"
    data: HeartbeatData


class NodeConfigResponse(BaseModel):
    code: int = 0
    data: Dict[str, Any]


class SimpleResponse(BaseModel):
    code: int = 0
    message: str
