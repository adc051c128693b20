"""
CRUD operations for the relay metering backend

Async database operations using SQLAlchemy 2.0
"""

import logging
import secrets
from datetime import datetime, UTC
from typing import List, Optional

from sqlalchemy import select, update, func, or_
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.enums import OrderStatus, NodeStatus
from src.core.exceptions import (
    InsufficientBalanceError,
    PackageNotFoundError,
)
from src.database.models import (
    User,
    Node,
    ForwardingRule,
    Target,
    GostRule,
    IPTablesRule,
    TrafficLog,
    Package,
    Order,
    PaymentConfig,
)

logger = logging.getLogger(__name__)


# ===========================
# USER OPERATIONS
# ===========================


async def get_user_by_id(session: AsyncSession, user_id: int) -> Optional[User]:
    """
    Get user by ID

    Args:
        session: Database session
        user_id: User ID

    Returns:
        User model or None
    """
    return await session.get(User, user_id)


async def create_user(
    session: AsyncSession,
    username: str,
    balance: int = 0,
    traffic_balance: int = 0,
    user_group_id: int = 0,
    role: str = "user",
) -> User:
    """
    Create new user

    Args:
        session: Database session
        username: Login name
        balance: Initial money balance in cents
        traffic_balance: Initial traffic balance in bytes
        user_group_id: Initial user group (0 = none)
        role: admin or user

    Returns:
        Created User model
    """
    user = User(
        username=username,
        balance=balance,
        traffic_balance=traffic_balance,
        user_group_id=user_group_id,
        role=role,
    )
    session.add(user)
    await session.commit()
    await session.refresh(user)

    logger.info(f"User created: {user.id} ({username})")
    return user


# ===========================
# NODE OPERATIONS
# ===========================


async def get_node_by_id(session: AsyncSession, node_id: int) -> Optional[Node]:
    """
    Get node by ID

    Args:
        session: Database session
        node_id: Node ID

    Returns:
        Node model or None
    """
    return await session.get(Node, node_id)


async def create_node(
    session: AsyncSession,
    name: str,
    host: str,
    port: int,
    secret: Optional[str] = None,
    protocols: Optional[str] = None,
    region: Optional[str] = None,
) -> Node:
    """
    Create relay node

    A random secret is generated when none is given.

    Returns:
        Created Node model
    """
    node = Node(
        name=name,
        host=host,
        port=port,
        secret=secret or secrets.token_hex(16),
        protocols=protocols,
        region=region,
    )
    session.add(node)
    await session.commit()
    await session.refresh(node)

    logger.info(f"Node created: {node.id} ({name} {host}:{port})")
    return node


async def update_node_status(
    session: AsyncSession, node_id: int, status: NodeStatus
) -> None:
    """
    Set node status and refresh last_seen

    Args:
        session: Database session
        node_id: Node ID
        status: New status
    """
    await session.execute(
        update(Node)
        .where(Node.id == node_id)
        .values(status=status.value, last_seen=datetime.now(UTC))
        .execution_options(synchronize_session=False)
    )
    await session.commit()


# ===========================
# RULE OPERATIONS
# ===========================


async def get_rule_by_id(
    session: AsyncSession, rule_id: int
) -> Optional[ForwardingRule]:
    """Get forwarding rule by ID"""
    return await session.get(ForwardingRule, rule_id)


async def create_rule(
    session: AsyncSession,
    node_id: int,
    user_id: int,
    name: str,
    listen_port: int,
    protocol: str = "gost",
    traffic_limit: int = 0,
    speed_limit: int = 0,
    mode: str = "direct",
    enabled: bool = True,
) -> ForwardingRule:
    """
    Create forwarding rule

    Args:
        session: Database session
        node_id: Node the rule runs on
        user_id: Owner
        name: Display name
        listen_port: Port the node listens on
        protocol: gost or iptables
        traffic_limit: Byte cap (0 = unlimited)
        speed_limit: kbps (0 = unlimited)
        mode: direct, rr or lb
        enabled: Initial state

    Returns:
        Created ForwardingRule model
    """
    rule = ForwardingRule(
        node_id=node_id,
        user_id=user_id,
        name=name,
        listen_port=listen_port,
        protocol=protocol,
        traffic_limit=traffic_limit,
        speed_limit=speed_limit,
        mode=mode,
        enabled=enabled,
    )
    session.add(rule)
    await session.commit()
    await session.refresh(rule)

    logger.info(f"Rule created: {rule.id} on node {node_id} for user {user_id}")
    return rule


async def list_rules_by_node(
    session: AsyncSession, node_id: int, enabled_only: bool = False
) -> List[ForwardingRule]:
    """
    List rules bound to a node

    Args:
        session: Database session
        node_id: Node ID
        enabled_only: Skip disabled rules

    Returns:
        Rules ordered by ID
    """
    stmt = select(ForwardingRule).where(ForwardingRule.node_id == node_id)
    if enabled_only:
        stmt = stmt.where(ForwardingRule.enabled.is_(True))
    stmt = stmt.order_by(ForwardingRule.id)

    result = await session.execute(stmt)
    return list(result.scalars().all())


async def add_target(
    session: AsyncSession,
    rule_id: int,
    host: str,
    port: int,
    weight: int = 1,
    enabled: bool = True,
) -> Target:
    """Attach an upstream target to a rule"""
    target = Target(rule_id=rule_id, host=host, port=port, weight=weight, enabled=enabled)
    session.add(target)
    await session.commit()
    await session.refresh(target)
    return target


async def get_targets(
    session: AsyncSession, rule_id: int, enabled_only: bool = False
) -> List[Target]:
    """List targets of a rule ordered by ID"""
    stmt = select(Target).where(Target.rule_id == rule_id)
    if enabled_only:
        stmt = stmt.where(Target.enabled.is_(True))
    stmt = stmt.order_by(Target.id)

    result = await session.execute(stmt)
    return list(result.scalars().all())


async def get_gost_rule(session: AsyncSession, rule_id: int) -> Optional[GostRule]:
    stmt = select(GostRule).where(GostRule.rule_id == rule_id)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def get_iptables_rule(
    session: AsyncSession, rule_id: int
) -> Optional[IPTablesRule]:
    stmt = select(IPTablesRule).where(IPTablesRule.rule_id == rule_id)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


# ===========================
# TRAFFIC OPERATIONS
# ===========================


def create_traffic_log(
    session: AsyncSession,
    rule_id: int,
    node_id: int,
    bytes_in: int,
    bytes_out: int,
    timestamp: Optional[datetime] = None,
) -> TrafficLog:
    """
    Stage a traffic log row in the session

    The caller commits.

    Returns:
        Pending TrafficLog model
    """
    log = TrafficLog(
        rule_id=rule_id,
        node_id=node_id,
        bytes_in=bytes_in,
        bytes_out=bytes_out,
        timestamp=timestamp or datetime.now(UTC),
    )
    session.add(log)
    return log


async def get_user_traffic_used(session: AsyncSession, user_id: int) -> int:
    """
    Total bytes used across all of a user's rules

    Returns:
        Sum of traffic_used (0 when the user has no rules)
    """
    stmt = select(func.coalesce(func.sum(ForwardingRule.traffic_used), 0)).where(
        ForwardingRule.user_id == user_id
    )
    result = await session.execute(stmt)
    return int(result.scalar_one())


async def get_user_traffic_stats(
    session: AsyncSession, user_id: int, since: datetime
) -> dict:
    """
    Inbound/outbound bytes logged for a user's rules since a timestamp

    Args:
        session: Database session
        user_id: Rule owner
        since: Lower bound (inclusive) on TrafficLog.timestamp

    Returns:
        Dict with bytes_in, bytes_out, total
    """
    rule_ids = select(ForwardingRule.id).where(ForwardingRule.user_id == user_id)
    stmt = select(
        func.coalesce(func.sum(TrafficLog.bytes_in), 0),
        func.coalesce(func.sum(TrafficLog.bytes_out), 0),
    ).where(TrafficLog.rule_id.in_(rule_ids), TrafficLog.timestamp >= since)

    result = await session.execute(stmt)
    bytes_in, bytes_out = result.one()

    return {
        "bytes_in": int(bytes_in),
        "bytes_out": int(bytes_out),
        "total": int(bytes_in) + int(bytes_out),
    }


# ===========================
# PACKAGE OPERATIONS
# ===========================


async def create_package(
    session: AsyncSession,
    name: str,
    traffic: int,
    price: int,
    user_group_id: int = 0,
    visible: bool = True,
    renewable: bool = True,
) -> Package:
    """
    Create traffic package

    Args:
        session: Database session
        name: Display name
        traffic: Bytes granted on purchase
        price: Price in cents
        user_group_id: Group assigned to the buyer (0 = keep current)
        visible: Listed to users
        renewable: Can be bought more than once

    Returns:
        Created Package model
    """
    package = Package(
        name=name,
        traffic=traffic,
        price=price,
        user_group_id=user_group_id,
        visible=visible,
        renewable=renewable,
    )
    session.add(package)
    await session.commit()
    await session.refresh(package)

    logger.info(f"Package created: {package.id} ({name})")
    return package


async def get_package_by_id(session: AsyncSession, package_id: int) -> Optional[Package]:
    """Get package by ID"""
    return await session.get(Package, package_id)


# ===========================
# ORDER OPERATIONS
# ===========================


def generate_trade_no() -> str:
    """
    Generate merchant trade number

    Format: YYYYmmddHHMMSS-<8 hex chars>
    """
    return f"{datetime.now(UTC).strftime('%Y%m%d%H%M%S')}-{secrets.token_hex(4)}"


async def create_order(
    session: AsyncSession,
    user_id: int,
    package_id: int,
    amount: int,
    pay_type: Optional[str] = None,
) -> Order:
    """
    Create pending order

    Args:
        session: Database session
        user_id: Buyer
        package_id: Package being bought
        amount: Amount in cents
        pay_type: Payment channel (config ID or name)

    Returns:
        Created Order model
    """
    order = Order(
        trade_no=generate_trade_no(),
        user_id=user_id,
        package_id=package_id,
        amount=amount,
        status=OrderStatus.PENDING.value,
        pay_type=pay_type,
    )
    session.add(order)
    await session.commit()
    await session.refresh(order)

    logger.info(f"Order created: {order.trade_no} (user {user_id}, package {package_id}, {amount} cents)")
    return order


async def get_order_by_trade_no(session: AsyncSession, trade_no: str) -> Optional[Order]:
    """
    Get order by merchant trade number

    Args:
        session: Database session
        trade_no: Merchant trade number

    Returns:
        Order model or None
    """
    stmt = select(Order).where(Order.trade_no == trade_no)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def mark_order_failed(session: AsyncSession, trade_no: str) -> bool:
    """
    Move a pending order to failed

    Orders in any other status are left untouched.

    Returns:
        True if the order was pending and is now failed
    """
    result = await session.execute(
        update(Order)
        .where(Order.trade_no == trade_no, Order.status == OrderStatus.PENDING.value)
        .values(status=OrderStatus.FAILED.value, updated_at=datetime.now(UTC))
        .execution_options(synchronize_session=False)
    )
    await session.commit()

    updated = result.rowcount > 0
    if updated:
        logger.info(f"Order {trade_no} marked failed")
    return updated


async def create_and_complete_order(
    session: AsyncSession, user_id: int, package_id: int, amount: int
) -> Order:
    """
    Buy a package with account balance

    Creates a successful order, deducts the balance, grants the package
    traffic and applies the package user group in one transaction.

    Args:
        session: Database session
        user_id: Buyer
        package_id: Package being bought
        amount: Amount in cents to deduct

    Returns:
        Created Order model (status success)

    Raises:
        PackageNotFoundError: Package does not exist
        InsufficientBalanceError: Balance below amount (or user missing)
    """
    package = await session.get(Package, package_id)
    if package is None:
        raise PackageNotFoundError(f"Package {package_id} not found")

    try:
        # Guarded deduction: no row matched means balance too low
        result = await session.execute(
            update(User)
            .where(User.id == user_id, User.balance >= amount)
            .values(balance=User.balance - amount)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            await session.rollback()
            raise InsufficientBalanceError(
                f"User {user_id} balance is below {amount} cents"
            )

        values = {}
        if package.traffic > 0:
            values["traffic_balance"] = User.traffic_balance + package.traffic
        if package.user_group_id > 0:
            values["user_group_id"] = package.user_group_id
        if values:
            await session.execute(
                update(User)
                .where(User.id == user_id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )

        order = Order(
            trade_no=generate_trade_no(),
            user_id=user_id,
            package_id=package_id,
            amount=amount,
            status=OrderStatus.SUCCESS.value,
            pay_type="balance",
        )
        session.add(order)
        await session.commit()

    except InsufficientBalanceError:
        raise
    except Exception:
        await session.rollback()
        raise

    await session.refresh(order)
    logger.info(
        f"Balance order completed: {order.trade_no} (user {user_id}, package {package_id}, "
        f"{amount} cents, +{package.traffic} bytes)"
    )
    return order


async def has_user_purchased_package(
    session: AsyncSession, user_id: int, package_id: int
) -> bool:
    """Check whether the user has a successful order for the package"""
    stmt = select(func.count(Order.id)).where(
        Order.user_id == user_id,
        Order.package_id == package_id,
        Order.status == OrderStatus.SUCCESS.value,
    )
    result = await session.execute(stmt)
    return result.scalar_one() > 0


async def get_order_stats(session: AsyncSession) -> dict:
    """
    Successful order statistics

    Returns:
        Dict with count and revenue (cents) of successful orders
    """
    stmt = select(
        func.count(Order.id), func.coalesce(func.sum(Order.amount), 0)
    ).where(Order.status == OrderStatus.SUCCESS.value)
    result = await session.execute(stmt)
    count, revenue = result.one()

    return {"count": int(count), "revenue": int(revenue)}


# ===========================
# PAYMENT CONFIG OPERATIONS
# ===========================


async def get_payment_config_by_type(
    session: AsyncSession, pay_type: str
) -> Optional[PaymentConfig]:
    """Payment config matched by ID or name"""
    conditions = [PaymentConfig.name == pay_type]
    if pay_type.isdigit():
        conditions.append(PaymentConfig.id == int(pay_type))
    stmt = select(PaymentConfig).where(or_(*conditions)).order_by(PaymentConfig.id).limit(1)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def get_payment_config_for_callback(
    session: AsyncSession, params: dict
) -> Optional[PaymentConfig]:
    """
    Locate the payment config a callback belongs to

    Lookup order:
    1. pay_type parameter, matched against config ID or name
    2. pid parameter, matched against an enabled config's merchant_id
    3. first enabled config

    Returns:
        PaymentConfig model or None
    """
    pay_type = params.get("pay_type")
    if pay_type:
        return await get_payment_config_by_type(session, pay_type)

    pid = params.get("pid")
    if pid:
        stmt = (
            select(PaymentConfig)
            .where(PaymentConfig.merchant_id == pid, PaymentConfig.enabled.is_(True))
            .order_by(PaymentConfig.id)
            .limit(1)
        )
        result = await session.execute(stmt)
        config = result.scalar_one_or_none()
        if config is not None:
            return config

    stmt = (
        select(PaymentConfig)
        .where(PaymentConfig.enabled.is_(True))
        .order_by(PaymentConfig.id)
        .limit(1)
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()
