"""Tests for POST /webhooks/payments.

Verifies:
  1. Missing / invalid Stripe signature → 400, nothing recorded
  2. Signed body that is not an event → 400
  3. checkout.session.completed → 200, contribution recorded
  4. Redelivery → 200 (duplicate), no second contribution
  5. Unattributed event → 200 so Stripe stops retrying
  6. Processing failure → 500 so Stripe retries
"""

import hashlib
import hmac
import json
import time
from decimal import Decimal

import pytest
from httpx import AsyncClient
from structlog.testing import capture_logs

from app.billing.accounts import open_billing_account
from app.core.db import SessionLocal
from app.core.models import Contribution

WEBHOOK_SECRET = "whsec_test_secret_1234567890abcdef"


# ── Helpers ────────────────────────────────────────────────────────────────────

def _fake_stripe_signature(payload: bytes, secret: str, timestamp: int | None = None) -> str:
    """Generate a valid Stripe-Signature header value for test payloads."""
    ts = timestamp or int(time.time())
    signed_payload = f"{ts}.{payload.decode()}"
    mac = hmac.new(secret.encode(), signed_payload.encode(), hashlib.sha256).hexdigest()
    return f"t={ts},v1={mac}"


def _checkout_event(event_id: str = "evt_checkout_1", account_id: str | None = "1") -> bytes:
    metadata = {"account_id": account_id, "tier": "custom"} if account_id else {}
    event = {
        "id": event_id,
        "object": "event",
        "type": "checkout.session.completed",
        "created": int(time.time()),
        "data": {
            "object": {
                "id": "cs_test_1",
                "object": "checkout.session",
                "mode": "payment",
                "amount_total": 2500,
                "payment_intent": "pi_test_1",
                "metadata": metadata,
            }
        },
    }
    return json.dumps(event).encode()


async def _post(client: AsyncClient, payload: bytes, signature: str | None = None):
    headers = {"Content-Type": "application/json"}
    if signature is not None:
        headers["stripe-signature"] = signature
    return await client.post("/webhooks/payments", content=payload, headers=headers)


def _contribution_count() -> int:
    db = SessionLocal()
    try:
        return db.query(Contribution).count()
    finally:
        db.close()


@pytest.fixture(autouse=True)
def account():
    return open_billing_account(1)


# ── Signature ──────────────────────────────────────────────────────────────────

@pytest.mark.anyio
async def test_missing_signature_rejected(client: AsyncClient) -> None:
    resp = await _post(client, _checkout_event())
    assert resp.status_code == 400
    assert _contribution_count() == 0


@pytest.mark.anyio
async def test_invalid_signature_rejected(client: AsyncClient) -> None:
    payload = _checkout_event()
    with capture_logs() as logs:
        resp = await _post(client, payload, _fake_stripe_signature(payload, "whsec_wrong_secret"))
    assert resp.status_code == 400
    assert "Webhook Error" in resp.json()["error"]
    assert _contribution_count() == 0
    rejected = [e for e in logs if e["event"] == "billing.webhook.signature_invalid"]
    assert [e["log_level"] for e in rejected] == ["warning"]


@pytest.mark.anyio
async def test_expired_signature_rejected(client: AsyncClient) -> None:
    payload = _checkout_event()
    old = int(time.time()) - 3600
    resp = await _post(client, payload, _fake_stripe_signature(payload, WEBHOOK_SECRET, timestamp=old))
    assert resp.status_code == 400


@pytest.mark.anyio
async def test_signed_garbage_rejected(client: AsyncClient) -> None:
    payload = b"not json at all"
    resp = await _post(client, payload, _fake_stripe_signature(payload, WEBHOOK_SECRET))
    assert resp.status_code == 400


# ── Processing ─────────────────────────────────────────────────────────────────

@pytest.mark.anyio
async def test_checkout_event_recorded(client: AsyncClient) -> None:
    payload = _checkout_event()
    resp = await _post(client, payload, _fake_stripe_signature(payload, WEBHOOK_SECRET))

    assert resp.status_code == 200
    assert resp.json() == {"received": True, "outcome": "processed"}

    db = SessionLocal()
    try:
        row = db.query(Contribution).one()
        assert row.gross_amount == Decimal("25.00")
        # 25.00 - (0.725 + 0.30) = 23.975 → 23.98
        assert row.net_amount == Decimal("23.98")
    finally:
        db.close()


@pytest.mark.anyio
async def test_redelivery_acknowledged_once(client: AsyncClient) -> None:
    payload = _checkout_event()
    first = await _post(client, payload, _fake_stripe_signature(payload, WEBHOOK_SECRET))
    second = await _post(client, payload, _fake_stripe_signature(payload, WEBHOOK_SECRET))

    assert first.status_code == 200
    assert second.status_code == 200
    assert second.json()["outcome"] == "duplicate"
    assert _contribution_count() == 1


@pytest.mark.anyio
async def test_unattributed_event_acknowledged(client: AsyncClient) -> None:
    payload = _checkout_event(account_id=None)
    resp = await _post(client, payload, _fake_stripe_signature(payload, WEBHOOK_SECRET))

    assert resp.status_code == 200
    assert resp.json()["outcome"] == "skipped_unattributed"
    assert _contribution_count() == 0


@pytest.mark.anyio
async def test_processing_failure_returns_500(client: AsyncClient, provider) -> None:
    provider.error = "API unavailable"
    event = {
        "id": "evt_invoice_1",
        "type": "invoice.payment_succeeded",
        "data": {"object": {"id": "in_1", "subscription": "sub_1", "amount_paid": 1000}},
    }
    payload = json.dumps(event).encode()
    resp = await _post(client, payload, _fake_stripe_signature(payload, WEBHOOK_SECRET))

    assert resp.status_code == 500
    assert _contribution_count() == 0


@pytest.mark.anyio
async def test_webhook_outcomes_exported_as_metrics(client: AsyncClient) -> None:
    payload = _checkout_event(event_id="evt_metrics")
    await _post(client, payload, _fake_stripe_signature(payload, WEBHOOK_SECRET))

    resp = await client.get("/metrics")
    assert resp.status_code == 200
    assert "handfull_webhook_events_total" in resp.text
