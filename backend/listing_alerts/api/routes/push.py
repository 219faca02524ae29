"""Push registration: APNs device tokens per user."""
import logging
from typing import Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from listing_alerts.api.deps import current_user_id
from listing_alerts.config import settings
from listing_alerts.db.session import get_db
from listing_alerts.services.push import endpoints as endpoint_registry

router = APIRouter()
logger = logging.getLogger(__name__)


class RegisterPushBody(BaseModel):
    device_token: str = Field(..., min_length=1, max_length=256, description="APNs device token (hex string)")
    platform: str = Field(default="ios", pattern="^(ios|android)$")
    is_sandbox: bool | None = Field(default=None, description="Token issued by a development build (sandbox APNs host)")


class UnregisterPushBody(BaseModel):
    device_token: str = Field(..., min_length=1, max_length=256)


@router.post("/push/register")
def register_push_token(
    body: RegisterPushBody,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user_id),
) -> dict[str, Any]:
    """
    Register a device for listing alerts. Call from the app after APNs hands it a token.
    Idempotent; re-registering a deactivated token reactivates it.
    """
    is_sandbox = settings.apns_use_sandbox if body.is_sandbox is None else body.is_sandbox
    row = endpoint_registry.register(
        db, user_id, body.device_token, platform=body.platform, is_sandbox=is_sandbox
    )
    return {"ok": True, "id": row.id, "is_active": bool(row.is_active)}


@router.post("/push/unregister")
def unregister_push_token(
    body: UnregisterPushBody,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user_id),
) -> dict[str, Any]:
    """Stop pushes to this device (logout)."""
    removed = endpoint_registry.unregister(db, user_id, body.device_token)
    return {"ok": True, "removed": removed}
