# coding: utf-8
"""
Payment Service

- Package purchase (balance payment or pending order + gateway URL)
- Gateway callback handling: verify -> load order -> amount check ->
  settle through SettlementCoordinator or mark failed
"""
from dataclasses import dataclass
from typing import Mapping, Optional

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.enums import OrderStatus
from src.core.exceptions import (
    InsufficientBalanceError,
    PackageNotFoundError,
    PackageUnavailableError,
    PaymentVerificationError,
)
from src.database.crud import (
    create_and_complete_order,
    create_order,
    get_order_by_trade_no,
    get_package_by_id,
    get_payment_config_by_type,
    get_payment_config_for_callback,
    get_user_by_id,
    has_user_purchased_package,
    mark_order_failed,
)
from src.database.models import Order
from src.services.epay_service import create_payment_provider
from src.services.settlement_service import SettlementCoordinator, get_settlement_coordinator

BALANCE_PAY_TYPES = ("balance", "", "1")


@dataclass
class CallbackOutcome:
    """
    Result of a gateway callback

    acknowledged decides the plain-text reply to the gateway
    ("success" stops its retries, "fail" asks for another attempt).
    """

    acknowledged: bool
    status_code: int
    message: str
    settled: bool = False


@dataclass
class PurchaseResult:
    order: Order
    pay_url: Optional[str] = None

    @property
    def completed(self) -> bool:
        return self.order.status == OrderStatus.SUCCESS.value


class PaymentService:
    """Orders and payment callbacks"""

    def __init__(self, settlement: Optional[SettlementCoordinator] = None):
        self.settlement = settlement or get_settlement_coordinator()

    async def purchase_package(
        self,
        session: AsyncSession,
        user_id: int,
        package_id: int,
        pay_type: str = "balance",
        return_url: str = "",
    ) -> PurchaseResult:
        """
        Buy a package

        Balance payments complete immediately. Any other pay_type creates a
        pending order and, when a matching gateway config exists, a pay URL.

        Raises:
            PackageNotFoundError: Unknown package
            PackageUnavailableError: Hidden package, or non-renewable and already bought
            InsufficientBalanceError: Balance payment without enough balance
        """
        package = await get_package_by_id(session, package_id)
        if package is None:
            raise PackageNotFoundError(f"Package {package_id} not found")
        if not package.visible:
            raise PackageUnavailableError(f"Package {package_id} is not for sale")

        if not package.renewable and await has_user_purchased_package(session, user_id, package_id):
            raise PackageUnavailableError(f"Package {package_id} can only be bought once")

        if pay_type in BALANCE_PAY_TYPES:
            user = await get_user_by_id(session, user_id)
            if user is None or user.balance < package.price:
                raise InsufficientBalanceError(f"User {user_id} cannot afford package {package_id}")

            order = await create_and_complete_order(session, user_id, package_id, package.price)
            return PurchaseResult(order=order)

        order = await create_order(session, user_id, package_id, package.price, pay_type=pay_type)

        pay_url = None
        config = await get_payment_config_by_type(session, pay_type)
        provider = create_payment_provider(config) if config is not None and config.enabled else None
        if provider is not None:
            pay_url = provider.create_pay_url(order.trade_no, order.amount, package.name, return_url)
        else:
            logger.warning(f"No usable payment config for pay_type={pay_type}, order {order.trade_no} left without pay URL")

        return PurchaseResult(order=order, pay_url=pay_url)

    async def handle_payment_callback(
        self, session: AsyncSession, params: Mapping[str, str]
    ) -> CallbackOutcome:
        """
        Process a gateway callback

        Args:
            session: Database session
            params: Query/form parameters of the callback

        Returns:
            CallbackOutcome
        """
        if not params:
            return CallbackOutcome(False, 400, "missing parameters")

        config = await get_payment_config_for_callback(session, dict(params))
        provider = create_payment_provider(config) if config is not None else None
        if provider is None:
            logger.warning("Payment callback: payment config not found")
            return CallbackOutcome(False, 404, "payment channel not found")

        try:
            callback = provider.verify_callback(params)
        except PaymentVerificationError as e:
            logger.warning(f"Payment callback verification failed: {e}")
            return CallbackOutcome(False, 400, str(e))

        order = await get_order_by_trade_no(session, callback.trade_no)
        if order is None:
            logger.warning(f"Payment callback: order {callback.trade_no} not found")
            return CallbackOutcome(False, 404, "order not found")

        if callback.amount != order.amount:
            logger.warning(
                f"Payment callback: amount mismatch for {order.trade_no} "
                f"(expected {order.amount}, received {callback.amount})"
            )
            return CallbackOutcome(False, 400, "amount mismatch")

        if order.status != OrderStatus.PENDING.value:
            logger.info(f"Payment callback: order {order.trade_no} already {order.status}")
            return CallbackOutcome(True, 200, "order already processed")

        if not callback.is_paid:
            logger.info(f"Payment callback: order {order.trade_no} not paid ({callback.status})")
            await mark_order_failed(session, order.trade_no)
            return CallbackOutcome(True, 200, "payment failed")

        package = await get_package_by_id(session, order.package_id)
        if package is None:
            logger.error(f"Payment callback: package {order.package_id} of order {order.trade_no} not found")
            return CallbackOutcome(False, 500, "package not found")

        # A failed settlement rolls back and expires order and package
        trade_no, user_id, amount = order.trade_no, order.user_id, order.amount
        traffic = package.traffic

        try:
            settled = await self.settlement.settle(session, trade_no, user_id, traffic)
        except Exception as e:
            logger.exception(f"Payment callback: failed to settle order {trade_no}: {e}")
            return CallbackOutcome(False, 500, "failed to complete order")

        if settled:
            logger.info(
                f"Payment callback: order {trade_no} completed "
                f"(user {user_id}, {amount} cents, +{traffic} bytes)"
            )
        return CallbackOutcome(True, 200, "ok", settled=settled)


# Global service instance
_payment_service: Optional[PaymentService] = None


def get_payment_service() -> PaymentService:
    """Get global PaymentService instance (singleton)"""
    global _payment_service
    if _payment_service is None:
        _payment_service = PaymentService()
    return _payment_service
