# coding: utf-8
"""
Settlement Service

Credits a paid order exactly once, however many times (and however
concurrently) the provider repeats its notification.

Two layers:
1. Redis lock per trade_no (SET NX EX) - keeps concurrent callbacks from
   racing. Best effort: if Redis is down the settlement runs unlocked.
2. Status guard inside the transaction - the order moves pending -> success
   with UPDATE ... WHERE status = 'pending'. Only the writer that wins that
   UPDATE credits the user, so a missing lock can cause a duplicate attempt
   but never a duplicate credit.
"""
from datetime import datetime, UTC
from typing import Optional

from loguru import logger
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from config.cache_config import CacheTTL
from src.cache.cache_keys import settlement_lock_key
from src.cache.redis_manager import RedisManager, get_redis_manager
from src.core.enums import OrderStatus
from src.core.exceptions import CacheUnavailableError, OrderNotFoundError
from src.database.models import Order, Package, User


class SettlementCoordinator:
    """Exactly-once order settlement"""

    def __init__(self, redis: Optional[RedisManager] = None, lock_ttl: int = CacheTTL.SETTLEMENT_LOCK):
        self.redis = redis or get_redis_manager()
        self.lock_ttl = lock_ttl

    async def settle(
        self,
        session: AsyncSession,
        trade_no: str,
        user_id: int,
        traffic_grant: int,
    ) -> bool:
        """
        Settle a paid order

        Args:
            session: Database session
            trade_no: Merchant trade number
            user_id: User to credit
            traffic_grant: Bytes added to the user's traffic balance (<= 0 grants nothing)

        Returns:
            True if this call moved the order to success, False if it was a
            no-op (lock held elsewhere, order already settled/failed/refunded)

        Raises:
            OrderNotFoundError: No order with this trade_no
            SQLAlchemyError: Transaction failed; order stays pending
        """
        lock_key = settlement_lock_key(trade_no)

        try:
            acquired = await self.redis.acquire_lock(lock_key, self.lock_ttl)
        except CacheUnavailableError as e:
            logger.warning(f"Settlement lock unavailable for {trade_no}, settling unlocked: {e}")
            return await self._settle_locked(session, trade_no, user_id, traffic_grant)

        if not acquired:
            logger.info(f"Order {trade_no} is being settled by another worker, skipping")
            return False

        try:
            return await self._settle_locked(session, trade_no, user_id, traffic_grant)
        finally:
            await self.redis.release_lock(lock_key)

    async def _settle_locked(
        self,
        session: AsyncSession,
        trade_no: str,
        user_id: int,
        traffic_grant: int,
    ) -> bool:
        # populate_existing: the session may hold a stale copy from an earlier read
        result = await session.execute(
            select(Order)
            .where(Order.trade_no == trade_no)
            .execution_options(populate_existing=True)
        )
        order = result.scalar_one_or_none()
        if order is None:
            raise OrderNotFoundError(f"Order {trade_no} not found")

        if order.status != OrderStatus.PENDING.value:
            logger.info(f"Order {trade_no} already {order.status}, nothing to settle")
            return False

        package = await session.get(Package, order.package_id)

        try:
            status_update = await session.execute(
                update(Order)
                .where(Order.trade_no == trade_no, Order.status == OrderStatus.PENDING.value)
                .values(status=OrderStatus.SUCCESS.value, updated_at=datetime.now(UTC))
                .execution_options(synchronize_session=False)
            )
            if status_update.rowcount == 0:
                await session.rollback()
                logger.info(f"Order {trade_no} settled concurrently, skipping credit")
                return False

            values = {}
            if traffic_grant > 0:
                values["traffic_balance"] = User.traffic_balance + traffic_grant
            if package is not None and package.user_group_id > 0:
                values["user_group_id"] = package.user_group_id
            if values:
                await session.execute(
                    update(User)
                    .where(User.id == user_id)
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )

            await session.commit()

        except Exception:
            await session.rollback()
            raise

        await session.refresh(order)
        logger.info(f"Order {trade_no} settled: user {user_id} +{traffic_grant} bytes")
        return True


# Global coordinator instance
_settlement_coordinator: Optional[SettlementCoordinator] = None


def get_settlement_coordinator() -> SettlementCoordinator:
    """Get global SettlementCoordinator instance (singleton)"""
    global _settlement_coordinator
    if _settlement_coordinator is None:
        _settlement_coordinator = SettlementCoordinator()
    return _settlement_coordinator
