import pytest
from sqlalchemy import select

from config import settings
from conftest import auth_header
from models.transaction import TRANSACTION_PENDING, Transaction


BUYER_ID = "checkout-buyer"


async def _transactions(session_maker):
    async with session_maker() as db:
        return (await db.execute(select(Transaction))).scalars().all()


@pytest.mark.asyncio
async def test_one_time_checkout_records_pending_transaction(api_client, fake_gateway, session_maker, seed_user):
    await seed_user(BUYER_ID)

    resp = await api_client.post(
        "/billing/checkout-session",
        json={"plan_id": "starter", "pix_bonus": 5},
        headers=auth_header(BUYER_ID),
    )
    assert resp.status_code == 200
    assert resp.json() == {"sessionId": "cs_test_1", "url": "https://checkout.stripe.test/cs_test_1"}

    params = fake_gateway.created_sessions[0]
    assert params["mode"] == "payment"
    assert params["payment_method_types"] == ["card", "pix"]
    assert params["line_items"][0]["price_data"]["unit_amount"] == 1190
    assert params["line_items"][0]["price_data"]["currency"] == "brl"
    assert params["metadata"] == {
        "plan_id": "starter",
        "credits": "25",
        "user_id": BUYER_ID,
        "plan_type": "one-time",
        "pix_bonus": "5",
    }
    assert params["success_url"].endswith("?checkout=success")
    assert params["cancel_url"].endswith("?checkout=cancel")

    rows = await _transactions(session_maker)
    assert len(rows) == 1
    assert rows[0].stripe_session_id == "cs_test_1"
    assert rows[0].status == TRANSACTION_PENDING
    assert rows[0].user_id == BUYER_ID
    assert rows[0].credits == 25


@pytest.mark.asyncio
async def test_pix_bonus_is_clamped_and_amount_override_applied(api_client, fake_gateway, seed_user):
    await seed_user(BUYER_ID)

    resp = await api_client.post(
        "/billing/checkout-session",
        json={"plan_id": "genius", "pix_bonus": 999, "amount": 1790, "currency": "USD"},
        headers=auth_header(BUYER_ID),
    )
    assert resp.status_code == 200
    params = fake_gateway.created_sessions[0]
    assert params["metadata"]["credits"] == "120"
    assert params["metadata"]["pix_bonus"] == "20"
    assert params["line_items"][0]["price_data"]["unit_amount"] == 1790
    assert params["line_items"][0]["price_data"]["currency"] == "usd"


@pytest.mark.asyncio
async def test_yearly_subscription_always_bills_annual_total(api_client, fake_gateway, seed_user):
    await seed_user(BUYER_ID)

    resp = await api_client.post(
        "/billing/checkout-session",
        json={"plan_id": "subscription-yearly", "amount": 1490, "plan_type": "subscription", "interval": "year"},
        headers=auth_header(BUYER_ID),
    )
    assert resp.status_code == 200
    params = fake_gateway.created_sessions[0]
    assert params["mode"] == "subscription"
    assert params["payment_method_types"] == ["card"]
    price_data = params["line_items"][0]["price_data"]
    assert price_data["unit_amount"] == 17880
    assert price_data["recurring"] == {"interval": "year"}
    assert params["metadata"]["interval"] == "year"
    assert "pix_bonus" not in params["metadata"]
    assert params["subscription_data"]["metadata"] == {"user_id": BUYER_ID, "plan_id": "subscription-yearly"}


@pytest.mark.asyncio
async def test_unknown_plan_is_rejected_without_side_effects(api_client, fake_gateway, session_maker, seed_user):
    await seed_user(BUYER_ID)

    resp = await api_client.post(
        "/billing/checkout-session",
        json={"plan_id": "platinum"},
        headers=auth_header(BUYER_ID),
    )
    assert resp.status_code == 400
    assert resp.json()["error"] == "Invalid plan"
    assert fake_gateway.created_sessions == []
    assert await _transactions(session_maker) == []


@pytest.mark.asyncio
async def test_plan_type_contradicting_catalog_is_rejected(api_client, fake_gateway, seed_user):
    await seed_user(BUYER_ID)

    resp = await api_client.post(
        "/billing/checkout-session",
        json={"plan_id": "starter", "plan_type": "subscription"},
        headers=auth_header(BUYER_ID),
    )
    assert resp.status_code == 400
    assert fake_gateway.created_sessions == []


@pytest.mark.asyncio
async def test_checkout_requires_bearer_credential(api_client, fake_gateway):
    resp = await api_client.post("/billing/checkout-session", json={"plan_id": "starter"})
    assert resp.status_code == 401
    assert "error" in resp.json()

    resp = await api_client.post(
        "/billing/checkout-session",
        json={"plan_id": "starter"},
        headers={"Authorization": "Bearer not-a-token"},
    )
    assert resp.status_code == 401
    assert fake_gateway.created_sessions == []


@pytest.mark.asyncio
async def test_processor_failure_leaves_no_transaction(api_client, fake_gateway, session_maker, seed_user):
    await seed_user(BUYER_ID)
    fake_gateway.fail_checkout = True

    resp = await api_client.post(
        "/billing/checkout-session",
        json={"plan_id": "master"},
        headers=auth_header(BUYER_ID),
    )
    assert resp.status_code == 500
    assert resp.json()["error"] == "Could not create checkout session"
    assert await _transactions(session_maker) == []


@pytest.mark.asyncio
async def test_supplied_user_id_cannot_override_authenticated_identity(api_client, fake_gateway, session_maker, seed_user):
    await seed_user(BUYER_ID)

    resp = await api_client.post(
        "/billing/checkout-session",
        json={"plan_id": "starter", "user_id": "someone-else"},
        headers=auth_header(BUYER_ID),
    )
    assert resp.status_code == 200
    assert fake_gateway.created_sessions[0]["metadata"]["user_id"] == BUYER_ID
    rows = await _transactions(session_maker)
    assert rows[0].user_id == BUYER_ID


@pytest.mark.asyncio
async def test_malformed_body_is_rejected_with_error_envelope(api_client, fake_gateway, session_maker, seed_user, monkeypatch):
    await seed_user(BUYER_ID)

    missing_plan = await api_client.post("/billing/checkout-session", json={}, headers=auth_header(BUYER_ID))
    assert missing_plan.status_code == 400
    body = missing_plan.json()
    assert body["error"] == "Invalid request data"
    assert "detail" not in body
    assert any(item["field"] == "body.plan_id" for item in body["details"])

    monkeypatch.setattr(settings, "ENVIRONMENT", "production")
    negative_amount = await api_client.post(
        "/billing/checkout-session",
        json={"plan_id": "starter", "amount": -5},
        headers=auth_header(BUYER_ID),
    )
    assert negative_amount.status_code == 400
    assert negative_amount.json() == {"error": "Invalid request data"}

    assert fake_gateway.created_sessions == []
    assert await _transactions(session_maker) == []
