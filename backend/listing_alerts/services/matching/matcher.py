"""
Smart matcher: score a listing against a saved search.

Hard filters run first and short-circuit to score 0:
  price outside [min_price, max_price]            -> "Price out of range"
  outside city / zip / polygon / radius (if set)  -> "Location mismatch"
  property type not in the wanted types (if set)  -> "Property type mismatch"
Passing a hard filter earns its full weight. Soft filters (size, bedrooms, bathrooms, features,
school rating) earn a fraction of their weight, with tolerance bands near the minimum. Bonuses for
fresh, reduced, premium or below-market listings are added on top; the total is clamped to 1.0 and
the listing matches when it is above MATCH_THRESHOLD.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy.orm import Session

from listing_alerts.core.clock import as_utc, utcnow
from listing_alerts.core.delivery_config import MARKET_PPSF_RATIO, MARKET_PRICE_RATIO
from listing_alerts.models.saved_search import SavedSearch
from listing_alerts.services.matching.criteria import ListingSnapshot, SearchCriteria
from listing_alerts.services.matching.geo import RegionPredicate, haversine_miles, point_in_any_region

logger = logging.getLogger(__name__)

WEIGHT_PRICE = 0.25
WEIGHT_LOCATION = 0.20
WEIGHT_SIZE = 0.15
WEIGHT_BEDROOMS = 0.10
WEIGHT_BATHROOMS = 0.10
WEIGHT_PROPERTY_TYPE = 0.10
WEIGHT_FEATURES = 0.05
WEIGHT_SCHOOL_RATING = 0.05

BONUS_NEW_LISTING = 0.05
BONUS_PRICE_REDUCED = 0.05
BONUS_PREMIUM_FEATURES = 0.03
BONUS_UNDER_MARKET = 0.07

MATCH_THRESHOLD = 0.3
NEW_LISTING_DAYS = 7

# Soft-filter tolerance bands
SIZE_PENALTY_FACTOR = 2.0
BEDROOM_SHORT_BY_ONE_CREDIT = 0.5
BATHROOM_TOLERANCE = 0.5
BATHROOM_SHORT_CREDIT = 0.7
SCHOOL_TOLERANCE = 1.0
SCHOOL_SHORT_CREDIT = 0.7
SCHOOL_UNKNOWN_CREDIT = 0.5

FEATURE_TEXT_FIELDS = (
    "features",
    "interior_features",
    "exterior_features",
    "appliances",
    "cooling",
    "heating",
    "parking_features",
    "pool_features",
    "public_remarks",
)

PREMIUM_KEYWORDS = (
    "renovated",
    "updated",
    "remodeled",
    "granite",
    "stainless",
    "hardwood",
    "pool",
    "spa",
    "view",
    "waterfront",
    "gated",
    "smart home",
    "solar",
    "wine cellar",
    "theater",
)

# Hourly and daily searches are served by the scheduled summary mailer, not per-listing pushes
INSTANT_FREQUENCY = "instant"


@dataclass
class MatchResult:
    score: float
    reasons: list[str] = field(default_factory=list)
    matches: bool = False

    @classmethod
    def rejected(cls, reason: str) -> "MatchResult":
        return cls(score=0.0, reasons=[reason], matches=False)


@dataclass
class SearchMatch:
    search: SavedSearch
    result: MatchResult


class SmartMatcher:
    def __init__(
        self,
        region_predicate: RegionPredicate = point_in_any_region,
        market_price_ratio: float = MARKET_PRICE_RATIO,
        market_ppsf_ratio: float = MARKET_PPSF_RATIO,
    ):
        self.region_predicate = region_predicate
        self.market_price_ratio = market_price_ratio
        self.market_ppsf_ratio = market_ppsf_ratio

    # --- Hard filters ---

    def matches_price(self, listing: ListingSnapshot, criteria: SearchCriteria) -> bool:
        price = listing.list_price or 0
        if criteria.min_price and price < criteria.min_price:
            return False
        if criteria.max_price and price > criteria.max_price:
            return False
        return True

    def matches_location(self, listing: ListingSnapshot, criteria: SearchCriteria) -> bool:
        if criteria.city:
            listing_city = (listing.city or "").lower()
            if not any(city.lower() in listing_city for city in criteria.city):
                return False
        if criteria.zip_code:
            listing_zip = listing.postal_code or ""
            if not any(z in listing_zip for z in criteria.zip_code):
                return False
        has_point = listing.latitude is not None and listing.longitude is not None
        if criteria.polygon_shapes:
            if not has_point or not self.region_predicate(listing.latitude, listing.longitude, criteria.polygon_shapes):
                return False
        if criteria.has_radius:
            if not has_point:
                return False
            distance = haversine_miles(listing.latitude, listing.longitude, criteria.center_lat, criteria.center_lng)
            if distance > criteria.radius_miles:
                return False
        return True

    def matches_property_type(self, listing: ListingSnapshot, criteria: SearchCriteria) -> bool:
        if not criteria.property_type:
            return True
        listing_type = " ".join(t for t in (listing.property_type, listing.property_sub_type) if t).lower()
        return any(t.lower() in listing_type for t in criteria.property_type)

    # --- Soft filters: each returns credit in [0, 1] ---

    def size_credit(self, listing: ListingSnapshot, criteria: SearchCriteria) -> float:
        if not criteria.min_sqft and not criteria.max_sqft:
            return 0.0
        size = listing.living_area or 0
        credit = 1.0
        if criteria.min_sqft and size < criteria.min_sqft:
            short = (criteria.min_sqft - size) / criteria.min_sqft
            credit = max(0.0, 1 - short * SIZE_PENALTY_FACTOR)
        if criteria.max_sqft and size > criteria.max_sqft:
            over = (size - criteria.max_sqft) / criteria.max_sqft
            credit = min(credit, max(0.0, 1 - over * SIZE_PENALTY_FACTOR))
        return credit

    def bedroom_credit(self, listing: ListingSnapshot, criteria: SearchCriteria) -> float:
        if not criteria.min_bedrooms:
            return 0.0
        bedrooms = listing.bedrooms_total or 0
        if bedrooms >= criteria.min_bedrooms:
            return 1.0
        if bedrooms >= criteria.min_bedrooms - 1:
            return BEDROOM_SHORT_BY_ONE_CREDIT
        return 0.0

    def bathroom_credit(self, listing: ListingSnapshot, criteria: SearchCriteria) -> float:
        if not criteria.min_bathrooms:
            return 0.0
        bathrooms = listing.bathrooms_total or 0
        if bathrooms >= criteria.min_bathrooms:
            return 1.0
        if bathrooms >= criteria.min_bathrooms - BATHROOM_TOLERANCE:
            return BATHROOM_SHORT_CREDIT
        return 0.0

    def has_feature(self, listing: ListingSnapshot, feature: str) -> bool:
        feature = feature.lower()
        for name in FEATURE_TEXT_FIELDS:
            value = getattr(listing, name)
            if value and feature in value.lower():
                return True
        if feature == "garage":
            return bool(listing.garage_spaces)
        if feature == "pool":
            return bool(listing.has_pool)
        if feature == "basement":
            return bool(listing.has_basement)
        if feature == "waterfront":
            return bool(listing.is_waterfront)
        if feature == "view":
            return bool(listing.has_view or listing.is_waterfront)
        return False

    def feature_credit(self, listing: ListingSnapshot, criteria: SearchCriteria) -> float:
        if not criteria.features:
            return 0.0
        found = sum(1 for f in criteria.features if self.has_feature(listing, f))
        return found / len(criteria.features)

    def school_credit(self, listing: ListingSnapshot, criteria: SearchCriteria) -> float:
        if not criteria.min_school_rating:
            return 0.0
        if listing.school_rating is None:
            return SCHOOL_UNKNOWN_CREDIT
        if listing.school_rating >= criteria.min_school_rating:
            return 1.0
        if listing.school_rating >= criteria.min_school_rating - SCHOOL_TOLERANCE:
            return SCHOOL_SHORT_CREDIT
        return 0.0

    # --- Bonuses ---

    def is_new_listing(self, listing: ListingSnapshot, now: datetime) -> bool:
        listed_at = as_utc(listing.listed_at)
        return listed_at is not None and listed_at > now - timedelta(days=NEW_LISTING_DAYS)

    def has_price_reduction(self, listing: ListingSnapshot) -> bool:
        return bool(listing.original_list_price) and (listing.list_price or 0) < listing.original_list_price

    def has_premium_features(self, listing: ListingSnapshot) -> bool:
        text = (listing.public_remarks or "").lower()
        return any(keyword in text for keyword in PREMIUM_KEYWORDS)

    def is_under_market_value(self, listing: ListingSnapshot) -> bool:
        price = listing.list_price or 0
        if listing.area_average_price and price < listing.area_average_price * self.market_price_ratio:
            return True
        if listing.living_area and listing.area_average_price_per_sqft:
            price_per_sqft = price / listing.living_area
            if price_per_sqft < listing.area_average_price_per_sqft * self.market_ppsf_ratio:
                return True
        return False

    def bonus(self, listing: ListingSnapshot, now: datetime) -> tuple[float, list[str]]:
        total = 0.0
        reasons: list[str] = []
        if self.is_new_listing(listing, now):
            total += BONUS_NEW_LISTING
            reasons.append("New this week")
        if self.has_price_reduction(listing):
            total += BONUS_PRICE_REDUCED
            reasons.append("Price reduced")
        if self.has_premium_features(listing):
            total += BONUS_PREMIUM_FEATURES
            reasons.append("Premium features")
        if self.is_under_market_value(listing):
            total += BONUS_UNDER_MARKET
            reasons.append("Below market value")
        return total, reasons

    # --- Scoring ---

    def evaluate(
        self,
        listing: ListingSnapshot,
        criteria: SearchCriteria | dict[str, Any],
        now: datetime | None = None,
    ) -> MatchResult:
        if not isinstance(criteria, SearchCriteria):
            criteria = SearchCriteria.model_validate(criteria or {})
        now = now or utcnow()

        if not self.matches_price(listing, criteria):
            return MatchResult.rejected("Price out of range")
        score = WEIGHT_PRICE
        reasons = ["Price within budget"]

        if criteria.has_location_filter:
            if not self.matches_location(listing, criteria):
                return MatchResult.rejected("Location mismatch")
            score += WEIGHT_LOCATION
            reasons.append("Location matches")

        if criteria.property_type:
            if not self.matches_property_type(listing, criteria):
                return MatchResult.rejected("Property type mismatch")
            score += WEIGHT_PROPERTY_TYPE
            reasons.append("Property type matches")

        soft = (
            (self.size_credit, WEIGHT_SIZE, "Size requirements met"),
            (self.bedroom_credit, WEIGHT_BEDROOMS, "Bedroom count matches"),
            (self.bathroom_credit, WEIGHT_BATHROOMS, "Bathroom count matches"),
            (self.feature_credit, WEIGHT_FEATURES, "Desired features present"),
            (self.school_credit, WEIGHT_SCHOOL_RATING, "Good school ratings"),
        )
        for credit_fn, weight, reason in soft:
            credit = credit_fn(listing, criteria)
            if credit > 0:
                score += weight * credit
                reasons.append(reason)

        bonus, bonus_reasons = self.bonus(listing, now)
        score = min(1.0, score + bonus)
        reasons.extend(bonus_reasons)
        return MatchResult(score=round(score, 2), reasons=reasons, matches=score > MATCH_THRESHOLD)

    def find_matching_searches(
        self, db: Session, listing: ListingSnapshot, now: datetime | None = None
    ) -> list[SearchMatch]:
        """Active instant-alert searches that match the listing, best score first."""
        searches = (
            db.query(SavedSearch)
            .filter(
                SavedSearch.is_active.is_(True),
                SavedSearch.notification_frequency == INSTANT_FREQUENCY,
            )
            .order_by(SavedSearch.created_at.asc(), SavedSearch.id.asc())
            .all()
        )
        matched: list[SearchMatch] = []
        for search in searches:
            try:
                criteria = SearchCriteria.model_validate(search.filters or {})
            except ValueError as e:
                logger.warning("Saved search %s has unreadable filters, skipping: %s", search.id, e)
                continue
            result = self.evaluate(listing, criteria, now=now)
            if result.matches:
                matched.append(SearchMatch(search=search, result=result))
        # Stable sort keeps creation order among equal scores
        matched.sort(key=lambda m: m.result.score, reverse=True)
        return matched
