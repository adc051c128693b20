"""
Tests for package purchase and callback handling in PaymentService
"""

import pytest
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from src.core.exceptions import (
    InsufficientBalanceError,
    PackageNotFoundError,
    PackageUnavailableError,
)
from src.database import crud
from src.database.models import Order, PaymentConfig
from src.services.epay_service import EpayProvider
from src.services.payment_service import PaymentService
from src.services.settlement_service import SettlementCoordinator


@pytest.fixture
def service(redis_manager):
    return PaymentService(SettlementCoordinator(redis_manager))


@pytest.mark.asyncio
async def test_purchase_with_balance(db_session, service, user):
    package = await crud.create_package(db_session, name="1G", traffic=1024**3, price=800)

    result = await service.purchase_package(db_session, user.id, package.id, pay_type="balance")

    assert result.completed is True
    assert result.pay_url is None
    assert result.order.amount == 800


@pytest.mark.asyncio
async def test_purchase_with_balance_insufficient(db_session, service, user):
    package = await crud.create_package(db_session, name="huge", traffic=1, price=99_999)

    with pytest.raises(InsufficientBalanceError):
        await service.purchase_package(db_session, user.id, package.id)


@pytest.mark.asyncio
async def test_purchase_via_gateway(db_session, service, user):
    """Gateway purchase leaves a pending order and a signed pay URL"""
    db_session.add(
        PaymentConfig(
            name="epay",
            provider="epay",
            merchant_id="1001",
            merchant_key="k",
            api_url="https://pay.example.com",
            notify_url="https://relay.example.com/api/payment/callback",
        )
    )
    await db_session.commit()
    package = await crud.create_package(db_session, name="1G", traffic=1024**3, price=800)

    result = await service.purchase_package(db_session, user.id, package.id, pay_type="epay")

    assert result.completed is False
    assert result.order.status == "pending"
    assert result.pay_url.startswith("https://pay.example.com/submit.php?")
    assert result.order.trade_no in result.pay_url


@pytest.mark.asyncio
async def test_purchase_unknown_package(db_session, service, user):
    with pytest.raises(PackageNotFoundError):
        await service.purchase_package(db_session, user.id, 9999)


@pytest.mark.asyncio
async def test_purchase_hidden_package(db_session, service, user):
    package = await crud.create_package(db_session, name="hidden", traffic=1, price=1, visible=False)

    with pytest.raises(PackageUnavailableError):
        await service.purchase_package(db_session, user.id, package.id)


@pytest.mark.asyncio
async def test_non_renewable_package_bought_once(db_session, service, user):
    package = await crud.create_package(db_session, name="trial", traffic=1, price=1, renewable=False)

    await service.purchase_package(db_session, user.id, package.id)

    with pytest.raises(PackageUnavailableError):
        await service.purchase_package(db_session, user.id, package.id)


@pytest.mark.asyncio
async def test_callback_without_config(db_session, service):
    """No enabled payment config: rejected"""
    outcome = await service.handle_payment_callback(db_session, {"out_trade_no": "t1"})

    assert outcome.acknowledged is False
    assert outcome.status_code == 404


@pytest.mark.asyncio
async def test_callback_settles_with_package_traffic(db_session, service, user):
    db_session.add(PaymentConfig(name="epay", provider="epay", merchant_id="1001", merchant_key="k"))
    await db_session.commit()
    package = await crud.create_package(db_session, name="2G", traffic=2 * 1024**3, price=500)
    order = await crud.create_order(db_session, user.id, package.id, 500, pay_type="epay")

    params = {"pid": "1001", "out_trade_no": order.trade_no, "amount": "5.00", "trade_status": "TRADE_SUCCESS"}
    params["sign"] = EpayProvider("1001", "k").generate_sign(params)

    outcome = await service.handle_payment_callback(db_session, params)
    assert (outcome.acknowledged, outcome.settled) == (True, True)

    again = await service.handle_payment_callback(db_session, params)
    assert (again.acknowledged, again.settled) == (True, False)
    assert again.message == "order already processed"

    refreshed = await crud.get_user_by_id(db_session, user.id)
    await db_session.refresh(refreshed)
    assert refreshed.traffic_balance == 2 * 1024**3


@pytest.mark.asyncio
async def test_callback_settlement_failure_returns_fail(db_session, service, user, monkeypatch):
    """A store failure during settlement answers fail and keeps the order pending"""
    db_session.add(PaymentConfig(name="epay", provider="epay", merchant_id="1001", merchant_key="k"))
    await db_session.commit()
    package = await crud.create_package(db_session, name="2G", traffic=2 * 1024**3, price=500)
    order = await crud.create_order(db_session, user.id, package.id, 500, pay_type="epay")
    trade_no = order.trade_no

    params = {"pid": "1001", "out_trade_no": trade_no, "amount": "5.00", "trade_status": "TRADE_SUCCESS"}
    params["sign"] = EpayProvider("1001", "k").generate_sign(params)

    async def broken_commit():
        raise SQLAlchemyError("db down")

    monkeypatch.setattr(db_session, "commit", broken_commit)

    outcome = await service.handle_payment_callback(db_session, params)

    assert (outcome.acknowledged, outcome.status_code, outcome.settled) == (False, 500, False)

    monkeypatch.undo()
    result = await db_session.execute(
        select(Order).where(Order.trade_no == trade_no).execution_options(populate_existing=True)
    )
    assert result.scalar_one().status == "pending"
