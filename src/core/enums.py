"""
Core Enums - shared status and protocol types.

Defines:
- OrderStatus: order lifecycle states
- NodeStatus: node liveness
- RuleProtocol: forwarding implementation a rule is generated for
"""

from enum import Enum


class OrderStatus(str, Enum):
    """Order lifecycle.

    pending -> success happens exactly once and only through settlement
    (or a balance payment, which is created already settled).
    """

    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    REFUNDED = "refunded"


class NodeStatus(str, Enum):
    """Node liveness reported by heartbeats"""

    ONLINE = "online"
    OFFLINE = "offline"


class RuleProtocol(str, Enum):
    """Forwarding implementation on the node"""

    GOST = "gost"
    IPTABLES = "iptables"
