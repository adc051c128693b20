# coding: utf-8
"""
Node configuration payload

Builds the rule set a node pulls from POST /api/node/config.

Protocol-specific settings are a tagged variant keyed by rule protocol:
    gost      -> GostConfig      (serialized under "gost_config")
    iptables  -> IPTablesConfig  (serialized under "iptables_config")
A rule whose protocol has no stored settings carries no config key.
"""
from dataclasses import asdict, dataclass, field
from typing import List, Optional, Union

from sqlalchemy.ext.asyncio import AsyncSession

from config.config import NODE_REPORT_INTERVAL
from src.core.enums import RuleProtocol
from src.database.crud import (
    get_gost_rule,
    get_iptables_rule,
    get_targets,
    list_rules_by_node,
)
from src.database.models import ForwardingRule

CONFIG_VERSION = 1


@dataclass(frozen=True)
class GostConfig:
    transport: str = "tcp"
    tls: bool = False
    chain: str = ""
    timeout: int = 0

    protocol = RuleProtocol.GOST
    payload_key = "gost_config"


@dataclass(frozen=True)
class IPTablesConfig:
    proto: str = "tcp"
    snat: bool = False
    iface: str = ""

    protocol = RuleProtocol.IPTABLES
    payload_key = "iptables_config"


ProtocolConfig = Union[GostConfig, IPTablesConfig]


@dataclass(frozen=True)
class NodeTarget:
    host: str
    port: int
    weight: int = 1
    enabled: bool = True


@dataclass
class NodeRule:
    """One rule as the node agent sees it"""

    id: int
    name: str
    protocol: str
    listen_port: int
    mode: str
    speed_limit: int
    enabled: bool
    targets: List[NodeTarget] = field(default_factory=list)
    config: Optional[ProtocolConfig] = None

    def to_dict(self) -> dict:
        data = {
            "id": self.id,
            "name": self.name,
            "protocol": self.protocol,
            "listen_port": self.listen_port,
            "mode": self.mode,
            "targets": [asdict(t) for t in self.targets],
            "speed_limit": self.speed_limit,
            "enabled": self.enabled,
        }
        if self.config is not None:
            data[self.config.payload_key] = asdict(self.config)
        return data


async def load_protocol_config(
    session: AsyncSession, rule: ForwardingRule
) -> Optional[ProtocolConfig]:
    """Load the protocol variant for a rule (None if nothing is stored)"""
    if rule.protocol == RuleProtocol.GOST.value:
        gost = await get_gost_rule(session, rule.id)
        if gost is None:
            return None
        return GostConfig(
            transport=gost.transport,
            tls=gost.tls,
            chain=gost.chain or "",
            timeout=gost.timeout,
        )

    if rule.protocol == RuleProtocol.IPTABLES.value:
        ipt = await get_iptables_rule(session, rule.id)
        if ipt is None:
            return None
        return IPTablesConfig(proto=ipt.proto, snat=ipt.snat, iface=ipt.iface or "")

    return None


async def build_node_config(session: AsyncSession, node_id: int) -> dict:
    """
    Build the versioned rule payload for a node

    Only enabled rules and their enabled targets are included, so a rule
    disabled by the quota ledger disappears from the node on its next pull.

    Returns:
        {"version": int, "report_interval": seconds, "rules": [NodeRule.to_dict(), ...]}
    """
    rules = await list_rules_by_node(session, node_id, enabled_only=True)

    node_rules: List[NodeRule] = []
    for rule in rules:
        targets = await get_targets(session, rule.id, enabled_only=True)
        node_rules.append(
            NodeRule(
                id=rule.id,
                name=rule.name,
                protocol=rule.protocol,
                listen_port=rule.listen_port,
                mode=rule.mode,
                speed_limit=rule.speed_limit,
                enabled=rule.enabled,
                targets=[
                    NodeTarget(host=t.host, port=t.port, weight=t.weight, enabled=t.enabled)
                    for t in targets
                ],
                config=await load_protocol_config(session, rule),
            )
        )

    return {
        "version": CONFIG_VERSION,
        "report_interval": NODE_REPORT_INTERVAL,
        "rules": [r.to_dict() for r in node_rules],
    }
