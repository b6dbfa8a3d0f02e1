# fleet-dispatch/fleetdispatch/utils.py
"""
Utility functions for the Fleet Dispatch engine.

Provides geographic calculations and time formatting utilities.
Includes OSRM integration for real road distance in straight-line estimates.

All points are (lon, lat) tuples, the order OSRM itself uses.
"""

from __future__ import annotations

import math
import logging
import threading
from typing import Any, Dict, Optional, Tuple
import requests

from . import config

# Configure logging
logger = logging.getLogger(__name__)

Point = Tuple[float, float]

# Module-level cache for OSRM results; ETA workers share it
_osrm_cache: Dict[Tuple[float, float, float, float], Tuple[float, float]] = {}
_osrm_cache_lock = threading.Lock()


def haversine_distance(a: Point, b: Point) -> float:
    """
    Calculate the great-circle distance between two points on Earth.

    Uses the Haversine formula to compute the distance between two GPS coordinates.

    Args:
        a: (lon, lat) of point 1 in decimal degrees
        b: (lon, lat) of point 2 in decimal degrees

    Returns:
        Distance in kilometers between the two points

    Example:
        >>> haversine_distance((116.4074, 39.9042), (116.4124, 39.9042))
        0.427  # ~427 meters
    """
    lon1, lat1, lon2, lat2 = map(math.radians, [a[0], a[1], b[0], b[1]])

    dlon = lon2 - lon1
    dlat = lat2 - lat1
    h = math.sin(dlat / 2)**2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2)**2
    c = 2 * math.asin(min(1.0, math.sqrt(h)))

    # Radius of Earth in kilometers
    r = 6371
    return c * r


def is_valid_point(value: Any) -> bool:
    """True for a (lon, lat) pair of finite numbers within WGS84 bounds."""
    if not isinstance(value, (tuple, list)) or len(value) != 2:
        return False
    lon, lat = value
    if isinstance(lon, bool) or isinstance(lat, bool):
        return False
    if not isinstance(lon, (int, float)) or not isinstance(lat, (int, float)):
        return False
    if not (math.isfinite(lon) and math.isfinite(lat)):
        return False
    return -180.0 <= lon <= 180.0 and -90.0 <= lat <= 90.0


def _get_cache_key(a: Point, b: Point) -> Tuple[float, float, float, float]:
    """Create a cache key with rounded coordinates (5 decimal places, about 1m)."""
    return (round(a[0], 5), round(a[1], 5), round(b[0], 5), round(b[1], 5))


def osrm_route(a: Point, b: Point) -> Optional[Tuple[float, float]]:
    """
    Get road distance and duration from the OSRM routing service.

    Results are cached in both directions to minimize API calls.

    Args:
        a: (lon, lat) of the origin
        b: (lon, lat) of the destination

    Returns:
        Tuple of (distance_km, duration_minutes) if successful, None if failed
    """
    cache_key = _get_cache_key(a, b)
    reverse_key = _get_cache_key(b, a)
    with _osrm_cache_lock:
        if cache_key in _osrm_cache:
            return _osrm_cache[cache_key]
        if reverse_key in _osrm_cache:
            return _osrm_cache[reverse_key]

    try:
        url = (
            f"{config.OSRM_SERVER_URL}/route/v1/driving/"
            f"{a[0]},{a[1]};{b[0]},{b[1]}"
            f"?overview=false"
        )

        response = requests.get(url, timeout=config.OSRM_TIMEOUT_SECONDS)
        response.raise_for_status()

        data = response.json()

        if data.get("code") != "Ok" or not data.get("routes"):
            logger.warning(f"OSRM returned no route: {data.get('code')}")
            return None

        route = data["routes"][0]
        result = (route["distance"] / 1000, route["duration"] / 60)

    except requests.exceptions.Timeout:
        logger.warning("OSRM request timed out")
        return None
    except requests.exceptions.RequestException as e:
        logger.warning(f"OSRM request failed: {e}")
        return None
    except (KeyError, ValueError, TypeError) as e:
        logger.warning(f"OSRM response parsing failed: {e}")
        return None

    with _osrm_cache_lock:
        if len(_osrm_cache) >= config.OSRM_CACHE_SIZE:
            # Drop the oldest 10% of entries
            for key in list(_osrm_cache.keys())[:max(1, config.OSRM_CACHE_SIZE // 10)]:
                del _osrm_cache[key]
        _osrm_cache[cache_key] = result
    return result


def get_distance(a: Point, b: Point, use_road_distance: Optional[bool] = None) -> float:
    """
    Get the straight-line estimate distance between two points.

    Uses OSRM road distance when road distance is enabled, with fallback to
    Haversine distance times a road-factor multiplier when the request fails.
    When disabled, returns plain Haversine distance.

    Args:
        a: (lon, lat) of point 1
        b: (lon, lat) of point 2
        use_road_distance: Per-call switch (default: ``config.USE_ROAD_DISTANCE``)

    Returns:
        Distance in kilometers between the two points
    """
    if use_road_distance is None:
        use_road_distance = config.USE_ROAD_DISTANCE
    if use_road_distance:
        result = osrm_route(a, b)
        if result is not None:
            return result[0]

        logger.debug("Falling back to Haversine distance with multiplier")
        return haversine_distance(a, b) * config.HAVERSINE_FALLBACK_MULTIPLIER

    return haversine_distance(a, b)


def clear_osrm_cache() -> int:
    """
    Clear the OSRM route cache.

    Returns:
        Number of cached entries that were cleared
    """
    with _osrm_cache_lock:
        count = len(_osrm_cache)
        _osrm_cache.clear()
    return count


def get_osrm_cache_stats() -> dict:
    """Get statistics about the OSRM cache."""
    size = len(_osrm_cache)
    return {
        "size": size,
        "max_size": config.OSRM_CACHE_SIZE,
        "utilization": size / config.OSRM_CACHE_SIZE if config.OSRM_CACHE_SIZE > 0 else 0
    }


def calculate_travel_time_minutes(distance_km: float, speed_kmh: float) -> float:
    """
    Calculate travel time for a distance at a constant average speed.

    Example:
        >>> calculate_travel_time_minutes(5.0, 30.0)
        10.0
    """
    if speed_kmh <= 0:
        return float('inf')
    return (distance_km / speed_kmh) * 60


def traffic_description(coefficient: float) -> str:
    """
    Map a traffic coefficient to a human-readable descriptor.

    Returns:
        "clear" (< 0.8), "normal" (< 1.2), "congested" (< 1.8) or "severe"
    """
    if coefficient < 0.8:
        return "clear"
    if coefficient < 1.2:
        return "normal"
    if coefficient < 1.8:
        return "congested"
    return "severe"


def format_time_duration(minutes: float) -> str:
    """
    Format a duration in minutes as a human-readable string.

    Args:
        minutes: Duration in minutes

    Returns:
        Formatted string like "1h 23m" or "45m"
    """
    if minutes < 60:
        return f"{minutes:.0f}m"
    hours = int(minutes // 60)
    mins = int(minutes % 60)
    return f"{hours}h {mins}m"


def format_distance(km: float) -> str:
    """Format a distance as meters below 1 km and kilometers above."""
    if km < 1:
        return f"{km * 1000:.0f}m"
    return f"{km:.1f}km"
