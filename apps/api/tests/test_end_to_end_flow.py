import pytest

from conftest import PNG_BASE64, auth_header, signed_webhook


BUYER_ID = "u1"


@pytest.mark.asyncio
async def test_purchase_settle_and_spend_credits(api_client, fake_gateway, seed_user):
    await seed_user(BUYER_ID, credits=0)
    headers = auth_header(BUYER_ID)

    # 1) Open checkout for the starter plan with the PIX bonus.
    checkout = await api_client.post(
        "/billing/checkout-session",
        json={"plan_id": "starter", "plan_type": "one-time", "pix_bonus": 5},
        headers=headers,
    )
    assert checkout.status_code == 200
    session = fake_gateway.created_sessions[0]
    session_id = checkout.json()["sessionId"]

    # 2) Processor reports the session paid with PIX.
    fake_gateway.pix_intents.add("pi_e2e")
    event = {
        "id": "evt_e2e",
        "object": "event",
        "type": "checkout.session.completed",
        "data": {
            "object": {
                "id": session_id,
                "object": "checkout.session",
                "metadata": session["metadata"],
                "client_reference_id": BUYER_ID,
                "payment_intent": "pi_e2e",
                "payment_status": "paid",
                "mode": "payment",
                "amount_total": 1190,
                "currency": "brl",
            }
        },
    }
    payload, webhook_headers = signed_webhook(event)
    settled = await api_client.post("/webhooks/stripe", content=payload, headers=webhook_headers)
    assert settled.status_code == 200
    assert settled.json() == {"received": True, "creditsAdded": 25}

    me = await api_client.get("/auth/me", headers=headers)
    assert me.json()["credits"] == 25

    # 3) Redelivery of the same event is a no-op.
    payload, webhook_headers = signed_webhook(event)
    replay = await api_client.post("/webhooks/stripe", content=payload, headers=webhook_headers)
    assert replay.status_code == 200
    assert replay.json()["message"] == "already processed"
    me = await api_client.get("/auth/me", headers=headers)
    assert me.json()["credits"] == 25

    # 4) Spend one credit on a generation.
    generated = await api_client.post(
        "/generate/image",
        json={"images": [{"data": PNG_BASE64, "mimeType": "image/png"}], "prompt": "Same fox, studio light"},
        headers=headers,
    )
    assert generated.status_code == 200
    assert generated.json()["creditsRemaining"] == 24

    summary = await api_client.get("/billing/credits", headers=headers)
    assert summary.json()["balance"] == 24
    assert {entry["entry_type"] for entry in summary.json()["recent_entries"]} == {"purchase", "debit"}
