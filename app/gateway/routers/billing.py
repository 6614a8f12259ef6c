"""HandFull Billing – Payments Router.

Endpoints:
    POST /webhooks/payments             → Stripe webhook (HMAC-signed raw body)
    POST /billing/checkout-session      → Start a one-time or monthly contribution
    POST /billing/customer-portal       → Stripe customer portal for subscribers
    GET  /billing/fee-preview?amount=   → Gross/fee/net split of a contribution
    GET  /billing/contributions         → Contribution history of the caller

Stripe events handled (see app.billing.processor):
    checkout.session.completed, invoice.payment_succeeded, invoice.payment_failed,
    customer.subscription.updated, customer.subscription.deleted

Webhook responses: 200 for every event that was handled or deliberately
skipped, 400 for a bad signature or body, 500 when processing failed and
Stripe should retry.
"""
from __future__ import annotations

import json as _json
from datetime import datetime
from decimal import Decimal
from typing import Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel

from app.billing.checkout import Frequency, create_checkout_intent, create_portal_session
from app.billing.contributions import ContributionLedger
from app.billing.errors import CheckoutError, PayloadError, ProviderError, SignatureError
from app.billing.fees import calculate_fees
from app.billing.metering import track_api_request
from app.billing.processor import WebhookEventProcessor
from app.billing.provider import PaymentProvider
from app.core.auth import AuthContext
from app.core.db import SessionLocal
from app.gateway.dependencies import get_payment_provider, get_webhook_processor

logger = structlog.get_logger()

router = APIRouter()


# ── Webhook ────────────────────────────────────────────────────────────────────

@router.post("/webhooks/payments")
async def payments_webhook(
    request: Request,
    processor: WebhookEventProcessor = Depends(get_webhook_processor),
) -> Response:
    """Stripe webhook endpoint. The body must be read raw for signature verification."""
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")

    try:
        outcome = await run_in_threadpool(processor.handle, payload, sig_header)
    except SignatureError as exc:
        return Response(
            content=_json.dumps({"error": f"Webhook Error: {exc}"}),
            status_code=400,
            media_type="application/json",
        )
    except PayloadError as exc:
        return Response(
            content=_json.dumps({"error": f"Invalid payload: {exc}"}),
            status_code=400,
            media_type="application/json",
        )
    except Exception as exc:
        return Response(
            content=_json.dumps({"error": f"Webhook processing error: {exc}"}),
            status_code=500,
            media_type="application/json",
        )

    return Response(
        content=_json.dumps({"received": True, "outcome": outcome}),
        status_code=200,
        media_type="application/json",
    )


# ── Checkout & Portal ──────────────────────────────────────────────────────────

class CheckoutRequest(BaseModel):
    amount: Decimal
    frequency: Frequency = Frequency.ONE_TIME
    tier: Optional[str] = None


class UrlResponse(BaseModel):
    url: str


@router.post("/billing/checkout-session", response_model=UrlResponse)
async def create_checkout_session(
    req: CheckoutRequest,
    request: Request,
    user: AuthContext = Depends(track_api_request),
    provider: PaymentProvider = Depends(get_payment_provider),
) -> UrlResponse:
    """Create a Stripe Checkout Session for a contribution."""
    try:
        url = await run_in_threadpool(
            create_checkout_intent,
            provider,
            account_id=user.account_id,
            amount=req.amount,
            frequency=req.frequency,
            tier=req.tier,
            origin=request.headers.get("origin"),
        )
    except CheckoutError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except ProviderError as exc:
        raise HTTPException(status_code=502, detail=str(exc))
    return UrlResponse(url=url)


@router.post("/billing/customer-portal", response_model=UrlResponse)
async def create_customer_portal(
    request: Request,
    user: AuthContext = Depends(track_api_request),
    provider: PaymentProvider = Depends(get_payment_provider),
) -> UrlResponse:
    """Open the Stripe Customer Portal to manage or cancel a subscription."""
    try:
        url = await run_in_threadpool(
            create_portal_session,
            provider,
            account_id=user.account_id,
            origin=request.headers.get("origin"),
        )
    except CheckoutError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except ProviderError as exc:
        raise HTTPException(status_code=502, detail=str(exc))
    return UrlResponse(url=url)


# ── Fees & History ─────────────────────────────────────────────────────────────

class FeePreview(BaseModel):
    gross: Decimal
    fee: Decimal
    net: Decimal


@router.get("/billing/fee-preview", response_model=FeePreview)
async def fee_preview(amount: Decimal = Query(..., ge=0, decimal_places=2)) -> FeePreview:
    """What a contribution of ``amount`` nets after processor fees."""
    fees = calculate_fees(amount)
    return FeePreview(gross=fees.gross, fee=fees.fee, net=fees.net)


class ContributionOut(BaseModel):
    id: int
    gross_amount: Decimal
    net_amount: Decimal
    fee_amount: Decimal
    kind: str
    status: str
    created_at: Optional[datetime] = None


@router.get("/billing/contributions", response_model=list[ContributionOut])
def list_contributions(
    limit: int = Query(50, ge=1, le=200),
    user: AuthContext = Depends(track_api_request),
) -> list[ContributionOut]:
    db = SessionLocal()
    try:
        rows = ContributionLedger().list_for_account(db, user.account_id, limit=limit)
        return [
            ContributionOut(
                id=row.id,
                gross_amount=row.gross_amount,
                net_amount=row.net_amount,
                fee_amount=row.fee_amount,
                kind=row.kind,
                status=row.status,
                created_at=row.created_at,
            )
            for row in rows
        ]
    finally:
        db.close()
