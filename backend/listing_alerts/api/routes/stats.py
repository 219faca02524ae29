"""Operator statistics: delivery outcomes by period plus queue, endpoint and rate-limit state."""
from typing import Any, Literal

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from listing_alerts.api.deps import get_rate_limiter
from listing_alerts.db.session import get_db
from listing_alerts.services.push.rate_limiter import SlidingWindowRateLimiter
from listing_alerts.services.stats import operator_stats

router = APIRouter()


@router.get("/stats")
def get_stats(
    period: Literal["day", "week", "month"] = Query("day"),
    db: Session = Depends(get_db),
    limiter: SlidingWindowRateLimiter = Depends(get_rate_limiter),
) -> dict[str, Any]:
    return operator_stats(db, period=period, limiter=limiter)
