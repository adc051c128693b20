"""
Database models for the relay metering backend

SQLAlchemy 2.0 models with full type hints
"""

from datetime import datetime, UTC
from typing import Optional

from sqlalchemy import (
    String,
    BigInteger,
    Text,
    Integer,
    Float,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from src.core.enums import OrderStatus, NodeStatus, RuleProtocol


class Base(DeclarativeBase):
    """Base class for all models"""

    pass


def _utcnow() -> datetime:
    return datetime.now(UTC)


# ===========================
# USERS
# ===========================


class UserGroup(Base):
    """User group - packages can move a buyer into a group"""

    __tablename__ = "user_groups"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(64), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False
    )

    def __repr__(self) -> str:
        return f"<UserGroup(id={self.id}, name={self.name})>"


class User(Base):
    """
    User model

    Tracks:
    - Money balance (cents) used for balance payments
    - Traffic balance (bytes) credited by settled orders
    - Current user group
    """

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    username: Mapped[str] = mapped_column(
        String(64), unique=True, index=True, nullable=False, comment="Login name"
    )
    password_hash: Mapped[str] = mapped_column(
        String(128), nullable=False, default="", comment="Password hash (auth is external)"
    )
    balance: Mapped[int] = mapped_column(
        BigInteger, default=0, nullable=False, comment="Account balance in cents"
    )
    traffic_balance: Mapped[int] = mapped_column(
        BigInteger, default=0, nullable=False, comment="Purchased traffic in bytes"
    )
    user_group_id: Mapped[int] = mapped_column(
        Integer, default=0, nullable=False, comment="User group ID (0 = none)"
    )
    role: Mapped[str] = mapped_column(
        String(20), default="user", nullable=False, comment="admin or user"
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    def __repr__(self) -> str:
        return f"<User(id={self.id}, username={self.username})>"


# ===========================
# NODES
# ===========================


class Node(Base):
    """
    Relay node

    Nodes authenticate heartbeats with their secret and push cumulative
    per-rule traffic counters.
    """

    __tablename__ = "nodes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    host: Mapped[str] = mapped_column(String(255), nullable=False)
    port: Mapped[int] = mapped_column(Integer, nullable=False)
    secret: Mapped[str] = mapped_column(String(128), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), default=NodeStatus.OFFLINE.value, nullable=False, comment="online, offline"
    )
    node_group_id: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    protocols: Mapped[Optional[str]] = mapped_column(
        Text, nullable=True, comment='JSON array, e.g. ["gost","iptables"]'
    )
    multiplier: Mapped[float] = mapped_column(Float, default=1.0, nullable=False)
    region: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    last_seen: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True, comment="Last heartbeat timestamp"
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False
    )

    def __repr__(self) -> str:
        return f"<Node(id={self.id}, name={self.name}, status={self.status})>"


# ===========================
# FORWARDING RULES
# ===========================


class ForwardingRule(Base):
    """
    Forwarding rule owned by a user and bound to one node

    traffic_used / traffic_limit / enabled form the quota ledger and are only
    written by QuotaLedger (and by admins editing the limit).
    """

    __tablename__ = "forwarding_rules"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    node_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("nodes.id", ondelete="CASCADE"), index=True, nullable=False
    )
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False
    )
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    protocol: Mapped[str] = mapped_column(
        String(20), default=RuleProtocol.GOST.value, nullable=False, comment="gost, iptables"
    )
    enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    traffic_used: Mapped[int] = mapped_column(
        BigInteger, default=0, nullable=False, comment="Bytes used"
    )
    traffic_limit: Mapped[int] = mapped_column(
        BigInteger, default=0, nullable=False, comment="Byte cap, 0 = unlimited"
    )
    speed_limit: Mapped[int] = mapped_column(
        BigInteger, default=0, nullable=False, comment="kbps, 0 = unlimited"
    )
    mode: Mapped[str] = mapped_column(
        String(20), default="direct", nullable=False, comment="direct, rr, lb"
    )
    listen_port: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )

    def __repr__(self) -> str:
        return (
            f"<ForwardingRule(id={self.id}, node_id={self.node_id}, "
            f"used={self.traffic_used}/{self.traffic_limit}, enabled={self.enabled})>"
        )


class Target(Base):
    """Upstream target of a forwarding rule"""

    __tablename__ = "targets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    rule_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("forwarding_rules.id", ondelete="CASCADE"), index=True, nullable=False
    )
    host: Mapped[str] = mapped_column(String(255), nullable=False)
    port: Mapped[int] = mapped_column(Integer, nullable=False)
    weight: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


class GostRule(Base):
    """gost-specific settings (one per rule)"""

    __tablename__ = "gost_rules"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    rule_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("forwarding_rules.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    transport: Mapped[str] = mapped_column(String(20), default="tcp", nullable=False)
    tls: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    chain: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    timeout: Mapped[int] = mapped_column(Integer, default=0, nullable=False, comment="seconds")


class IPTablesRule(Base):
    """iptables-specific settings (one per rule)"""

    __tablename__ = "iptables_rules"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    rule_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("forwarding_rules.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    proto: Mapped[str] = mapped_column(String(10), default="tcp", nullable=False)
    snat: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    iface: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)


class TrafficLog(Base):
    """
    Append-only audit row, one per applied non-zero delta
    """

    __tablename__ = "traffic_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    rule_id: Mapped[int] = mapped_column(Integer, index=True, nullable=False)
    node_id: Mapped[int] = mapped_column(Integer, index=True, nullable=False)
    bytes_in: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    bytes_out: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, index=True, nullable=False
    )

    def __repr__(self) -> str:
        return (
            f"<TrafficLog(rule_id={self.rule_id}, node_id={self.node_id}, "
            f"in={self.bytes_in}, out={self.bytes_out})>"
        )


# ===========================
# PACKAGES & ORDERS
# ===========================


class Package(Base):
    """Purchasable traffic package"""

    __tablename__ = "packages"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    traffic: Mapped[int] = mapped_column(BigInteger, nullable=False, comment="Bytes granted")
    price: Mapped[int] = mapped_column(BigInteger, nullable=False, comment="Price in cents")
    user_group_id: Mapped[int] = mapped_column(
        Integer, default=0, nullable=False, comment="Group assigned on purchase (0 = keep)"
    )
    visible: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    renewable: Mapped[bool] = mapped_column(
        Boolean, default=True, nullable=False, comment="Can be purchased more than once"
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False
    )


class Order(Base):
    """
    Payment order

    Created pending; moved to success exactly once by settlement.
    """

    __tablename__ = "orders"
    __table_args__ = (Index("ix_orders_user_status", "user_id", "status"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    trade_no: Mapped[str] = mapped_column(
        String(64), unique=True, index=True, nullable=False, comment="Merchant trade number"
    )
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False
    )
    package_id: Mapped[int] = mapped_column(Integer, index=True, nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False, comment="Amount in cents")
    status: Mapped[str] = mapped_column(
        String(20),
        default=OrderStatus.PENDING.value,
        nullable=False,
        index=True,
        comment="pending, success, failed, refunded",
    )
    pay_type: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )

    def __repr__(self) -> str:
        return f"<Order(trade_no={self.trade_no}, status={self.status}, amount={self.amount})>"


class PaymentConfig(Base):
    """Payment channel credentials (epay-compatible merchants)"""

    __tablename__ = "payment_configs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    provider: Mapped[str] = mapped_column(String(32), default="epay", nullable=False)
    merchant_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    merchant_key: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    api_url: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    notify_url: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
