"""
HTTP tests for node and payment endpoints
"""

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from api_server import app
from src.database import crud
from src.database.engine import get_session
from src.database.models import Order, PaymentConfig, User
from src.services.epay_service import EpayProvider
from src.services.node_service import NodeService, get_node_service
from src.services.payment_service import PaymentService, get_payment_service
from src.services.settlement_service import SettlementCoordinator

MERCHANT_KEY = "merchant-key"


@pytest.fixture
async def client(db_session, redis_manager):
    """API client with DB session and Redis swapped for test doubles"""

    async def override_session():
        yield db_session

    app.dependency_overrides[get_session] = override_session
    app.dependency_overrides[get_node_service] = lambda: NodeService(redis_manager)
    app.dependency_overrides[get_payment_service] = lambda: PaymentService(
        SettlementCoordinator(redis_manager)
    )

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
async def epay_config(db_session):
    config = PaymentConfig(name="epay", provider="epay", merchant_id="1001", merchant_key=MERCHANT_KEY)
    db_session.add(config)
    await db_session.commit()
    return config


@pytest.fixture
async def pending_order(db_session, user):
    package = await crud.create_package(db_session, name="5G", traffic=5 * 1024**3, price=1250)
    return await crud.create_order(db_session, user.id, package.id, package.price, pay_type="epay")


def _callback(trade_no, amount="12.50", status="TRADE_SUCCESS", key=MERCHANT_KEY):
    params = {
        "pid": "1001",
        "out_trade_no": trade_no,
        "amount": amount,
        "trade_status": status,
    }
    params["sign"] = EpayProvider("1001", key).generate_sign(params)
    params["sign_type"] = "MD5"
    return params


async def _reload(session, model, *where):
    result = await session.execute(
        select(model).where(*where).execution_options(populate_existing=True)
    )
    return result.scalar_one()


# ===========================
# NODE
# ===========================


@pytest.mark.asyncio
async def test_heartbeat_endpoint(client, db_session, node, rule_factory):
    rule = await rule_factory(traffic_limit=2500)

    response = await client.post(
        "/api/node/heartbeat",
        json={
            "node_id": node.id,
            "secret": "node-secret",
            "probe": {"timestamp": 1, "cpu": {"usage_percent": 5.0, "cores": 2}},
            "traffic_stats": {f"rule_{rule.id}_in": 1000, f"rule_{rule.id}_out": 2000},
        },
    )

    assert response.status_code == 200
    body = response.json()
    assert body["code"] == 0
    assert body["data"]["rules_updated"] == [rule.id]
    assert body["data"]["rules_disabled"] == [rule.id]


@pytest.mark.asyncio
async def test_heartbeat_ignores_malformed_counters(client, node, rule_factory):
    """Bad counter values never fail the heartbeat"""
    rule = await rule_factory()

    response = await client.post(
        "/api/node/heartbeat",
        json={
            "node_id": node.id,
            "secret": "node-secret",
            "traffic_stats": {f"rule_{rule.id}_in": "lots", "rule_x_out": 5, f"rule_{rule.id}_out": 10},
        },
    )

    assert response.status_code == 200
    assert response.json()["data"]["rules_updated"] == [rule.id]


@pytest.mark.asyncio
async def test_heartbeat_for_deleted_rule(client, node):
    """A counter for a rule that no longer exists still gets a 200"""
    response = await client.post(
        "/api/node/heartbeat",
        json={"node_id": node.id, "secret": "node-secret", "traffic_stats": {"rule_9999_in": 700}},
    )

    assert response.status_code == 200
    assert response.json()["data"]["rules_updated"] == []


@pytest.mark.asyncio
async def test_heartbeat_bad_secret(client, node):
    response = await client.post(
        "/api/node/heartbeat", json={"node_id": node.id, "secret": "wrong"}
    )

    assert response.status_code == 401
    assert response.json()["code"] == 401


@pytest.mark.asyncio
async def test_heartbeat_missing_fields(client):
    response = await client.post("/api/node/heartbeat", json={"node_id": 1})
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_report_endpoint(client, node, redis_manager):
    response = await client.post(
        "/api/node/report",
        json={"node_id": node.id, "secret": "node-secret", "report": {"timestamp": 42}},
    )

    assert response.status_code == 200
    probe = await NodeService(redis_manager).get_probe_data(node.id)
    assert probe["timestamp"] == 42


@pytest.mark.asyncio
async def test_config_endpoint(client, node, rule_factory):
    rule = await rule_factory()
    await rule_factory(enabled=False)

    response = await client.post(
        "/api/node/config", json={"node_id": node.id, "secret": "node-secret"}
    )

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["version"] == 1
    assert [r["id"] for r in data["rules"]] == [rule.id]


@pytest.mark.asyncio
async def test_config_endpoint_bad_secret(client, node):
    response = await client.post("/api/node/config", json={"node_id": node.id, "secret": "x"})
    assert response.status_code == 401


# ===========================
# PAYMENT CALLBACK
# ===========================


@pytest.mark.asyncio
async def test_payment_callback_settles(client, db_session, epay_config, pending_order, user):
    """Gateway POST: plain-text success, order settled, traffic credited"""
    response = await client.post(
        "/api/payment/callback", data=_callback(pending_order.trade_no)
    )

    assert response.status_code == 200
    assert response.text == "success"

    order = await _reload(db_session, Order, Order.trade_no == pending_order.trade_no)
    assert order.status == "success"
    refreshed = await _reload(db_session, User, User.id == user.id)
    assert refreshed.traffic_balance == 5 * 1024**3


@pytest.mark.asyncio
async def test_payment_callback_duplicate(client, db_session, epay_config, pending_order, user):
    """Repeated notification answers success and credits once"""
    params = _callback(pending_order.trade_no)

    first = await client.post("/api/payment/callback", data=params)
    second = await client.post("/api/payment/callback", data=params)

    assert first.text == second.text == "success"
    refreshed = await _reload(db_session, User, User.id == user.id)
    assert refreshed.traffic_balance == 5 * 1024**3


@pytest.mark.asyncio
async def test_payment_callback_bad_signature(client, db_session, epay_config, pending_order):
    response = await client.post(
        "/api/payment/callback", data=_callback(pending_order.trade_no, key="forged")
    )

    assert response.text == "fail"
    order = await _reload(db_session, Order, Order.trade_no == pending_order.trade_no)
    assert order.status == "pending"


@pytest.mark.asyncio
async def test_payment_callback_amount_mismatch(client, db_session, epay_config, pending_order):
    response = await client.post(
        "/api/payment/callback", data=_callback(pending_order.trade_no, amount="0.01")
    )

    assert response.text == "fail"
    order = await _reload(db_session, Order, Order.trade_no == pending_order.trade_no)
    assert order.status == "pending"


@pytest.mark.asyncio
async def test_payment_callback_unpaid_marks_failed(client, db_session, epay_config, pending_order):
    response = await client.post(
        "/api/payment/callback",
        data=_callback(pending_order.trade_no, status="TRADE_CLOSED"),
    )

    assert response.text == "success"
    order = await _reload(db_session, Order, Order.trade_no == pending_order.trade_no)
    assert order.status == "failed"


@pytest.mark.asyncio
async def test_payment_callback_unknown_order(client, epay_config):
    response = await client.post("/api/payment/callback", data=_callback("missing"))
    assert response.text == "fail"


@pytest.mark.asyncio
async def test_payment_callback_get_returns_json(client, db_session, epay_config, pending_order):
    """Browser redirect (GET) gets JSON"""
    response = await client.get(
        "/api/payment/callback", params=_callback(pending_order.trade_no)
    )

    assert response.status_code == 200
    assert response.json()["code"] == 0


@pytest.mark.asyncio
async def test_payment_callback_without_params(client):
    response = await client.get("/api/payment/callback")

    assert response.status_code == 400
    assert response.json()["code"] == 400


@pytest.mark.asyncio
async def test_payment_callback_settlement_failure(client, db_session, epay_config, pending_order, monkeypatch):
    """A store failure while settling answers the gateway with plain fail"""
    trade_no = pending_order.trade_no

    async def broken_commit():
        raise SQLAlchemyError("db down")

    monkeypatch.setattr(db_session, "commit", broken_commit)

    response = await client.post("/api/payment/callback", data=_callback(trade_no))

    assert response.text == "fail"
    monkeypatch.undo()
    order = await _reload(db_session, Order, Order.trade_no == trade_no)
    assert order.status == "pending"
