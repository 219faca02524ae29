from listing_alerts.services.matching.criteria import ListingSnapshot, SearchCriteria
from listing_alerts.services.matching.matcher import MatchResult, SearchMatch, SmartMatcher

__all__ = ["ListingSnapshot", "SearchCriteria", "MatchResult", "SearchMatch", "SmartMatcher"]
