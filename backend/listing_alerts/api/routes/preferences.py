"""Notification preferences: per-type push/email switches and quiet hours."""
from typing import Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.orm import Session

from listing_alerts.api.deps import current_user_id
from listing_alerts.core.errors import domain_error_to_http
from listing_alerts.db.session import get_db
from listing_alerts.services import preferences

router = APIRouter()


class UpdatePreferencesBody(BaseModel):
    """Only the fields sent are changed."""

    new_listing_push: bool | None = None
    new_listing_email: bool | None = None
    price_change_push: bool | None = None
    price_change_email: bool | None = None
    status_change_push: bool | None = None
    status_change_email: bool | None = None
    open_house_push: bool | None = None
    open_house_email: bool | None = None
    saved_search_push: bool | None = None
    saved_search_email: bool | None = None
    quiet_hours_enabled: bool | None = None
    quiet_hours_start: str | None = None
    quiet_hours_end: str | None = None
    quiet_hours_timezone: str | None = None


@router.get("/preferences")
def get_preferences(db: Session = Depends(get_db), user_id: str = Depends(current_user_id)) -> dict[str, Any]:
    """Current settings; defaults (everything on, quiet hours off) until the user saves."""
    return preferences.preferences_to_dict(preferences.get_preferences(db, user_id))


@router.put("/preferences")
def update_preferences(
    body: UpdatePreferencesBody,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user_id),
) -> dict[str, Any]:
    try:
        prefs = preferences.update_preferences(db, user_id, body.model_dump(exclude_none=True))
    except ValueError as e:
        raise domain_error_to_http(e) from e
    return preferences.preferences_to_dict(prefs)
