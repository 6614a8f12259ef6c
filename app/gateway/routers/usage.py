"""HandFull Billing – Usage Router.

    GET /users/me/usage → {"data": CostEstimate} for the usage-cost widget
"""
from __future__ import annotations

import structlog
from fastapi import APIRouter, Depends
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse

from app.billing.costs import CostEstimator, get_cost_estimate
from app.billing.metering import track_api_request
from app.core.auth import AuthContext
from app.gateway.dependencies import get_cost_estimator

logger = structlog.get_logger()

router = APIRouter(tags=["usage"])


@router.get("/users/me/usage")
async def get_my_usage(
    user: AuthContext = Depends(track_api_request),
    estimator: CostEstimator = Depends(get_cost_estimator),
):
    try:
        estimate = await run_in_threadpool(get_cost_estimate, user.account_id, estimator)
    except Exception as exc:
        logger.error("billing.usage.estimate_failed", account_id=user.account_id, error=str(exc))
        return JSONResponse(status_code=500, content={"error": "Failed to calculate usage"})
    return {"data": estimate.model_dump(mode="json", by_alias=True)}
