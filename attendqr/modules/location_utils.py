"""
Location utilities for geofenced check-in.

Great-circle distance between the scanning device and the registered
classroom, plus the helpers used to phrase geofence feedback.
"""

import math

EARTH_RADIUS_METERS = 6371000.0
DEFAULT_GEOFENCE_RADIUS_METERS = 100.0


def calculate_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Haversine distance between two coordinates.

    Args:
        lat1 (float): Latitude of the first point in degrees
        lon1 (float): Longitude of the first point in degrees
        lat2 (float): Latitude of the second point in degrees
        lon2 (float): Longitude of the second point in degrees

    Returns:
        float: Distance in meters
    """
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    delta_phi = math.radians(lat2 - lat1)
    delta_lambda = math.radians(lon2 - lon1)

    a = (math.sin(delta_phi / 2) ** 2 +
         math.cos(phi1) * math.cos(phi2) * math.sin(delta_lambda / 2) ** 2)
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return EARTH_RADIUS_METERS * c


def is_within_geofence(distance_meters: float,
                       radius_meters: float = DEFAULT_GEOFENCE_RADIUS_METERS) -> bool:
    """Boundary is inclusive: exactly the radius is still inside."""
    return distance_meters <= radius_meters


def format_distance(distance_meters: float) -> str:
    """Human readable distance, e.g. '500m' or '1.2km'."""
    meters = round(distance_meters)
    if meters >= 1000:
        return f"{distance_meters / 1000:.1f}km"
    return f"{meters}m"
