"""
Notification payloads: one pydantic model per kind, discriminated by `kind`.

Each model carries only its own fields and knows its alert text and deep-link fields.
build_apns_payload() turns one into the APNs JSON body:
  {aps: {alert: {title, body}, badge, sound, category, thread-id, mutable-content}, <custom fields>}
Payloads are stored as JSON (model_dump(mode="json")) in the deferred queue and parsed back with
parse_payload().
"""
from datetime import datetime
from typing import Annotated, Any, ClassVar, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter

from listing_alerts.core.constants import (
    KIND_NEW_LISTING,
    KIND_OPEN_HOUSE,
    KIND_PRICE_CHANGE,
    KIND_STATUS_CHANGE,
    KIND_TOUR_REQUESTED,
)

CATEGORY_PROPERTY_ALERT = "PROPERTY_ALERT"
CATEGORY_CLIENT_ACTIVITY = "CLIENT_ACTIVITY"
THREAD_PROPERTY_ALERTS = "property-alerts"
THREAD_AGENT_NOTIFICATIONS = "agent-notifications"


def format_price(value: float | None) -> str:
    if value is None:
        return ""
    return f"${value:,.0f}"


class _ListingPayload(BaseModel):
    listing_id: str
    listing_key: str | None = None
    address: str = ""
    city: str = ""
    price: float | None = None
    image_url: str | None = None
    saved_search_id: int | None = None
    saved_search_name: str | None = None

    category: ClassVar[str] = CATEGORY_PROPERTY_ALERT
    thread_id: ClassVar[str] = THREAD_PROPERTY_ALERTS

    def _location(self) -> str:
        return ", ".join(p for p in (self.address, self.city) if p)

    def _with_search(self, body: str) -> str:
        if self.saved_search_name:
            return f'{body}\nMatches "{self.saved_search_name}"'
        return body

    def subject(self) -> str:
        """Listing id, or the title for notifications without one (dedup key part)."""
        return self.listing_id

    def custom_fields(self) -> dict[str, Any]:
        fields: dict[str, Any] = {"listing_id": self.listing_id}
        if self.listing_key:
            fields["listing_key"] = self.listing_key
        if self.saved_search_id is not None:
            fields["saved_search_id"] = self.saved_search_id
        if self.image_url:
            fields["image_url"] = self.image_url
        return fields


class NewListingPayload(_ListingPayload):
    kind: Literal["new_listing"] = KIND_NEW_LISTING
    bedrooms: float | None = None
    bathrooms: float | None = None
    match_score: float | None = None
    match_reasons: list[str] = Field(default_factory=list)

    def title(self) -> str:
        return "New Listing"

    def body(self) -> str:
        parts = [self._location()]
        if self.price is not None:
            parts.append(format_price(self.price))
        return self._with_search(" - ".join(p for p in parts if p))


class PriceChangePayload(_ListingPayload):
    kind: Literal["price_change"] = KIND_PRICE_CHANGE
    previous_price: float
    current_price: float

    @property
    def is_reduction(self) -> bool:
        return self.current_price < self.previous_price

    def title(self) -> str:
        return "Price Reduced!" if self.is_reduction else "Price Change"

    def body(self) -> str:
        diff = abs(self.previous_price - self.current_price)
        sign = "-" if self.is_reduction else "+"
        return self._with_search(
            f"{self._location()} - Now {format_price(self.current_price)} ({sign}{format_price(diff)})"
        )

    def custom_fields(self) -> dict[str, Any]:
        fields = super().custom_fields()
        fields["price_previous"] = self.previous_price
        fields["price_current"] = self.current_price
        return fields


class StatusChangePayload(_ListingPayload):
    kind: Literal["status_change"] = KIND_STATUS_CHANGE
    previous_status: str | None = None
    new_status: str

    def title(self) -> str:
        return f"Status: {self.new_status}"

    def body(self) -> str:
        return self._with_search(self._location())

    def custom_fields(self) -> dict[str, Any]:
        fields = super().custom_fields()
        fields["new_status"] = self.new_status
        if self.previous_status:
            fields["previous_status"] = self.previous_status
        return fields


class OpenHousePayload(_ListingPayload):
    kind: Literal["open_house"] = KIND_OPEN_HOUSE
    starts_at: datetime
    ends_at: datetime | None = None

    def _when(self) -> tuple[str, str]:
        date_str = self.starts_at.strftime("%a, %b %d").replace(" 0", " ")
        time_str = self.starts_at.strftime("%I:%M %p").lstrip("0")
        if self.ends_at:
            time_str = f"{time_str} - {self.ends_at.strftime('%I:%M %p').lstrip('0')}"
        return date_str, time_str

    def title(self) -> str:
        return "Open House Alert"

    def body(self) -> str:
        date_str, time_str = self._when()
        return self._with_search(f"{self._location()} - {date_str}, {time_str}")

    def custom_fields(self) -> dict[str, Any]:
        fields = super().custom_fields()
        date_str, time_str = self._when()
        fields["open_house_date"] = date_str
        fields["open_house_time"] = time_str
        return fields


class TourRequestedPayload(BaseModel):
    kind: Literal["tour_requested"] = KIND_TOUR_REQUESTED
    appointment_id: str
    client_id: str | None = None
    client_name: str = "A client"
    listing_id: str | None = None
    listing_key: str | None = None
    address: str = ""
    requested_for: datetime | None = None
    image_url: str | None = None

    category: ClassVar[str] = CATEGORY_CLIENT_ACTIVITY
    thread_id: ClassVar[str] = THREAD_AGENT_NOTIFICATIONS

    def title(self) -> str:
        return "Tour Requested"

    def body(self) -> str:
        text = f"{self.client_name} requested a tour"
        if self.address:
            text += f" of {self.address}"
        if self.requested_for:
            text += f" on {self.requested_for.strftime('%b %d at %I:%M %p').replace(' 0', ' ')}"
        return text

    def subject(self) -> str:
        # One alert per appointment, even when several clients tour the same listing
        return f"appointment:{self.appointment_id}"

    def custom_fields(self) -> dict[str, Any]:
        fields: dict[str, Any] = {"appointment_id": self.appointment_id}
        for key in ("client_id", "listing_id", "listing_key", "image_url"):
            value = getattr(self, key)
            if value:
                fields[key] = value
        return fields


NotificationPayload = Annotated[
    Union[NewListingPayload, PriceChangePayload, StatusChangePayload, OpenHousePayload, TourRequestedPayload],
    Field(discriminator="kind"),
]

_payload_adapter: TypeAdapter = TypeAdapter(NotificationPayload)


def parse_payload(data: dict[str, Any]) -> NotificationPayload:
    """Rebuild a payload from stored JSON. Raises pydantic.ValidationError on bad data."""
    return _payload_adapter.validate_python(data)


def dump_payload(payload: NotificationPayload) -> dict[str, Any]:
    return payload.model_dump(mode="json")


def build_apns_payload(payload: NotificationPayload, badge: int | None = None) -> dict[str, Any]:
    aps: dict[str, Any] = {
        "alert": {"title": payload.title(), "body": payload.body()},
        "sound": "default",
        "category": payload.category,
        "thread-id": payload.thread_id,
        "mutable-content": 1,
    }
    if badge is not None:
        aps["badge"] = badge
    return {"aps": aps, "notification_type": payload.kind, **payload.custom_fields()}
