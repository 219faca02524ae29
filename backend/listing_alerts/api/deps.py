"""Request dependencies shared by the routes."""
from fastapi import Header, HTTPException

from listing_alerts.services.push.factory import build_rate_limiter
from listing_alerts.services.push.rate_limiter import SlidingWindowRateLimiter


def current_user_id(x_user_id: str | None = Header(None, alias="X-User-Id")) -> str:
    """User id set by the identity layer in front of this service."""
    user_id = (x_user_id or "").strip()
    if not user_id:
        raise HTTPException(status_code=401, detail="X-User-Id header required")
    return user_id


def get_rate_limiter() -> SlidingWindowRateLimiter:
    return build_rate_limiter()
