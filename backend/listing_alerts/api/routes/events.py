"""
Change-event intake. Ingestion posts listing changes here; the change-events job does the work.
Tour requests are pushed to the agent in a background task after the response.
"""
import logging
from datetime import datetime
from typing import Any, Literal

from fastapi import APIRouter, BackgroundTasks, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from listing_alerts.core.clock import utcnow
from listing_alerts.db.session import SessionLocal, get_db
from listing_alerts.models.listing_change_event import ListingChangeEvent
from listing_alerts.services.orchestrator import notify_tour_requested
from listing_alerts.services.push.factory import build_rate_limiter, build_transport

router = APIRouter()
logger = logging.getLogger(__name__)


class ChangeEventBody(BaseModel):
    listing_id: str = Field(..., min_length=1, max_length=64)
    change_kind: Literal["new_listing", "price_change", "status_change", "open_house"]
    previous_value: str | None = Field(default=None, max_length=128)
    current_value: str | None = Field(default=None, max_length=128)
    listing_snapshot: dict[str, Any] = Field(default_factory=dict)
    details: dict[str, Any] | None = None
    occurred_at: datetime | None = None


class TourRequestedBody(BaseModel):
    agent_user_id: str = Field(..., min_length=1, max_length=64)
    appointment_id: str = Field(..., min_length=1, max_length=64)
    client_id: str | None = None
    client_name: str | None = None
    listing_id: str | None = None
    listing_key: str | None = None
    address: str = ""
    requested_for: datetime | None = None


@router.post("/events", status_code=202)
def accept_change_event(body: ChangeEventBody, db: Session = Depends(get_db)) -> dict[str, Any]:
    """Store the change; notifications go out on the next change-events run."""
    event = ListingChangeEvent(
        listing_id=body.listing_id,
        change_kind=body.change_kind,
        previous_value=body.previous_value,
        current_value=body.current_value,
        listing_snapshot=body.listing_snapshot,
        details=body.details,
        occurred_at=body.occurred_at or utcnow(),
        attempts=0,
    )
    db.add(event)
    db.commit()
    db.refresh(event)
    logger.info("Accepted %s event %s for listing %s", body.change_kind, event.id, body.listing_id)
    return {"ok": True, "id": event.id}


def run_tour_requested_notification(body: TourRequestedBody) -> None:
    db = SessionLocal()
    try:
        with build_transport() as transport:
            notify_tour_requested(
                db,
                body.agent_user_id,
                body.appointment_id,
                transport,
                build_rate_limiter(),
                client_id=body.client_id,
                client_name=body.client_name,
                listing_id=body.listing_id,
                listing_key=body.listing_key,
                address=body.address,
                requested_for=body.requested_for,
            )
    finally:
        db.close()


@router.post("/events/tour-requested", status_code=202)
def accept_tour_requested(body: TourRequestedBody, background_tasks: BackgroundTasks) -> dict[str, Any]:
    background_tasks.add_task(run_tour_requested_notification, body)
    return {"ok": True}
