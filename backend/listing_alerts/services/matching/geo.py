"""Geographic predicates used by the matcher. Points are {lat, lng} dicts."""
import math
from typing import Callable

EARTH_RADIUS_MILES = 3959.0

# (lat, lng, shapes) -> inside any shape
RegionPredicate = Callable[[float, float, list[list[dict[str, float]]]], bool]


def haversine_miles(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    d_lat = math.radians(lat2 - lat1)
    d_lng = math.radians(lng2 - lng1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lng / 2) ** 2
    )
    return EARTH_RADIUS_MILES * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def point_in_polygon(lat: float, lng: float, polygon: list[dict[str, float]]) -> bool:
    """Ray casting. Polygons with fewer than 3 points contain nothing."""
    if len(polygon) < 3:
        return False
    inside = False
    j = len(polygon) - 1
    for i in range(len(polygon)):
        yi, xi = polygon[i]["lat"], polygon[i]["lng"]
        yj, xj = polygon[j]["lat"], polygon[j]["lng"]
        if (yi > lat) != (yj > lat) and lng < (xj - xi) * (lat - yi) / (yj - yi) + xi:
            inside = not inside
        j = i
    return inside


def point_in_any_region(lat: float, lng: float, shapes: list[list[dict[str, float]]]) -> bool:
    return any(point_in_polygon(lat, lng, shape) for shape in shapes)
