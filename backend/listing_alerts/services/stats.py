"""
Operator statistics: delivery outcomes over a period, plus queue, endpoint and rate-limit state.
"""
import logging
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import case, func
from sqlalchemy.orm import Session

from listing_alerts.core.clock import utcnow
from listing_alerts.core.constants import STATUS_FAILED, STATUS_SENT, STATUS_SKIPPED
from listing_alerts.models.delivery_log import DeliveryLogEntry
from listing_alerts.services import deferred_queue
from listing_alerts.services.push import endpoints as endpoint_registry
from listing_alerts.services.push import retry_queue

logger = logging.getLogger(__name__)

PERIOD_DAYS = {"day": 1, "week": 7, "month": 30}


def _status_sum(status: str):
    return func.sum(case((DeliveryLogEntry.status == status, 1), else_=0))


def delivery_stats(
    db: Session, period: str = "day", channel: str | None = None, now: datetime | None = None
) -> dict[str, Any]:
    """Totals and per-type counts for the delivery log over the last day / week / month."""
    if period not in PERIOD_DAYS:
        raise ValueError(f"Unknown period {period!r}; use one of {', '.join(PERIOD_DAYS)}")
    now = now or utcnow()
    filters = [DeliveryLogEntry.created_at >= now - timedelta(days=PERIOD_DAYS[period])]
    if channel:
        filters.append(DeliveryLogEntry.channel == channel)

    total, sent, failed, skipped = (
        db.query(
            func.count(DeliveryLogEntry.id),
            _status_sum(STATUS_SENT),
            _status_sum(STATUS_FAILED),
            _status_sum(STATUS_SKIPPED),
        )
        .filter(*filters)
        .one()
    )
    total, sent, failed, skipped = int(total or 0), int(sent or 0), int(failed or 0), int(skipped or 0)

    by_type_rows = (
        db.query(
            DeliveryLogEntry.notification_type,
            func.count(DeliveryLogEntry.id).label("total"),
            _status_sum(STATUS_SENT).label("sent"),
            _status_sum(STATUS_FAILED).label("failed"),
        )
        .filter(*filters)
        .group_by(DeliveryLogEntry.notification_type)
        .order_by(func.count(DeliveryLogEntry.id).desc(), DeliveryLogEntry.notification_type.asc())
        .all()
    )
    return {
        "period": period,
        "total": total,
        "sent": sent,
        "failed": failed,
        "skipped": skipped,
        "success_rate": round(sent / total * 100, 1) if total else 0,
        "by_type": [
            {
                "notification_type": r.notification_type,
                "total": int(r.total or 0),
                "sent": int(r.sent or 0),
                "failed": int(r.failed or 0),
            }
            for r in by_type_rows
        ],
    }


def operator_stats(db: Session, period: str = "day", limiter=None, now: datetime | None = None) -> dict[str, Any]:
    """Everything the /stats endpoint reports. Rate limiter stats only when a limiter is passed."""
    now = now or utcnow()
    out: dict[str, Any] = {
        "delivery": delivery_stats(db, period=period, now=now),
        "retry_queue": retry_queue.get_stats(db),
        "deferred": deferred_queue.get_stats(db),
        "endpoints": endpoint_registry.get_stats(db, now=now),
    }
    if limiter is not None:
        rate = limiter.stats()
        rate.pop("now", None)
        out["rate_limit"] = rate
    return out
