"""
Typed views of the matcher's inputs.

ListingSnapshot: listing fields as delivered by ingestion (stored on listing_change_events).
SearchCriteria: a saved search's filters JSON. Single values and lists are both accepted for
city / zip_code / property_type / features, since the search UI stores either.
"""
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _as_list(value: Any) -> list[str]:
    if value is None or value == "":
        return []
    if isinstance(value, (list, tuple, set)):
        return [str(v).strip() for v in value if str(v).strip()]
    return [s.strip() for s in str(value).split(",") if s.strip()]


class ListingSnapshot(BaseModel):
    model_config = ConfigDict(extra="ignore")

    listing_id: str
    listing_key: str | None = None
    status: str | None = None
    list_price: float | None = None
    original_list_price: float | None = None
    address: str = ""
    city: str = ""
    postal_code: str = ""
    latitude: float | None = None
    longitude: float | None = None
    property_type: str | None = None
    property_sub_type: str | None = None
    living_area: float | None = None
    bedrooms_total: float | None = None
    bathrooms_total: float | None = None
    school_rating: float | None = None
    listed_at: datetime | None = None
    photo_url: str | None = None

    # Free-text feature fields searched for desired features
    features: str | None = None
    interior_features: str | None = None
    exterior_features: str | None = None
    appliances: str | None = None
    cooling: str | None = None
    heating: str | None = None
    parking_features: str | None = None
    pool_features: str | None = None
    public_remarks: str | None = None

    # Structured flags for the common features
    garage_spaces: int | None = None
    has_pool: bool | None = None
    has_basement: bool | None = None
    is_waterfront: bool | None = None
    has_view: bool | None = None

    # Area baselines supplied by ingestion for the "below market value" bonus
    area_average_price: float | None = None
    area_average_price_per_sqft: float | None = None

    @field_validator(
        "features",
        "interior_features",
        "exterior_features",
        "appliances",
        "cooling",
        "heating",
        "parking_features",
        "pool_features",
        mode="before",
    )
    @classmethod
    def join_lists(cls, v: Any) -> Any:
        if isinstance(v, (list, tuple)):
            return ", ".join(str(x) for x in v)
        return v


class SearchCriteria(BaseModel):
    model_config = ConfigDict(extra="ignore")

    min_price: float | None = None
    max_price: float | None = None
    city: list[str] = Field(default_factory=list)
    zip_code: list[str] = Field(default_factory=list)
    polygon_shapes: list[list[dict[str, float]]] = Field(default_factory=list)
    center_lat: float | None = None
    center_lng: float | None = None
    radius_miles: float | None = None
    property_type: list[str] = Field(default_factory=list)
    min_sqft: float | None = None
    max_sqft: float | None = None
    min_bedrooms: float | None = None
    min_bathrooms: float | None = None
    features: list[str] = Field(default_factory=list)
    min_school_rating: float | None = None

    @field_validator("city", "zip_code", "property_type", "features", mode="before")
    @classmethod
    def to_list(cls, v: Any) -> list[str]:
        return _as_list(v)

    @field_validator("polygon_shapes", mode="before")
    @classmethod
    def wrap_single_polygon(cls, v: Any) -> Any:
        # One polygon given as a flat list of points
        if isinstance(v, list) and v and isinstance(v[0], dict):
            return [v]
        return v or []

    @property
    def has_radius(self) -> bool:
        return self.center_lat is not None and self.center_lng is not None and bool(self.radius_miles)

    @property
    def has_location_filter(self) -> bool:
        return bool(self.city or self.zip_code or self.polygon_shapes or self.has_radius)
