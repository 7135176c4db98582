"""
Distance and arrival estimation.
Uses Haversine formula to calculate distance between points.
"""
import math
from typing import Optional, Tuple

from ..config import settings

EARTH_RADIUS_M = 6371000
METERS_PER_MILE = 1609.344


def haversine_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Calculate the great circle distance between two points on Earth.

    Args:
        lat1: Latitude of first point
        lon1: Longitude of first point
        lat2: Latitude of second point
        lon2: Longitude of second point

    Returns:
        Distance in meters
    """
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    delta_phi = math.radians(lat2 - lat1)
    delta_lambda = math.radians(lon2 - lon1)

    a = (
        math.sin(delta_phi / 2) ** 2 +
        math.cos(phi1) * math.cos(phi2) * math.sin(delta_lambda / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return EARTH_RADIUS_M * c


def distance_miles(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    return haversine_distance(lat1, lon1, lat2, lon2) / METERS_PER_MILE


def estimate_eta_minutes(miles: float, avg_speed_mph: Optional[float] = None) -> int:
    """Whole minutes at an average urban driving speed, never below 1."""
    speed = avg_speed_mph or settings.eta_avg_speed_mph
    return max(1, round(miles / speed * 60))


def distance_and_eta(
    tech_lat: float,
    tech_lng: float,
    dest_lat: Optional[float],
    dest_lng: Optional[float],
) -> Tuple[Optional[float], Optional[int]]:
    """
    Returns:
        Tuple of (distance in miles rounded to 1 dp, eta minutes); both None
        when the destination is not geocoded
    """
    if dest_lat is None or dest_lng is None:
        return None, None
    miles = distance_miles(tech_lat, tech_lng, dest_lat, dest_lng)
    return round(miles, 1), estimate_eta_minutes(miles)


def is_low_accuracy(accuracy_m: Optional[float]) -> bool:
    return accuracy_m is not None and accuracy_m > settings.gps_accuracy_risk_m
