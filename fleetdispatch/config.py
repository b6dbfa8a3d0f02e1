# fleet-dispatch/fleetdispatch/config.py
"""
Configuration parameters for the Fleet Dispatch engine.

This module centralizes all tunable parameters, making it easy to:
- Adjust matching behavior (radius, weights, batching)
- Tune the road network and traffic simulation
- Configure the route planner (speed, caching, simplification)

Module-level constants are the defaults. ``DispatchConfig`` and
``RoutingConfig`` copy them so that each engine instance can be tuned
independently without touching module state.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Final, Tuple

# =============================================================================
# MATCHING LOOP
# =============================================================================

MATCHING_INTERVAL_SECONDS: float = 3.0
"""Time between two matching ticks in service mode."""

BATCH_SIZE: int = 10
"""Maximum number of queued orders considered in one matching tick."""

SMART_BATCHING: bool = True
"""
Use batched greedy matching over the full score matrix.
When False, orders are matched one at a time against the best driver.
"""

MAX_ORDERS_PER_DRIVER: int = 3
"""Upper bound on a driver's simultaneously active orders."""

# =============================================================================
# SCORING WEIGHTS
# =============================================================================
# Scores are in [0, 100]. Higher score = better driver for the order.
# A score of 0 means the pair is infeasible.

BASE_SCORE: Final[float] = 50.0
"""Starting score of every feasible order/driver pair."""

DISTANCE_WEIGHT: float = 0.5
"""Weight of the pickup-distance term (0-1). Higher = prefer closer drivers."""

RATING_WEIGHT: float = 0.3
"""Weight of the driver-rating term (0-1)."""

LOAD_WEIGHT: float = 0.2
"""Weight of the driver-load term (0-1). Higher = prefer idle drivers."""

URGENT_BONUS: Final[float] = 20.0
"""Flat bonus for urgent orders so they outrank routine work."""

EFFICIENT_DRIVER_BONUS: Final[float] = 10.0
"""Bonus for high-efficiency drivers on urgent orders."""

EFFICIENT_DRIVER_THRESHOLD: Final[float] = 0.8
"""Efficiency trait above which a driver earns the urgent-order bonus."""

RELIABILITY_FACTOR: Final[float] = 10.0
"""Multiplier applied to the reliability trait (0-1) and added to the score."""

# =============================================================================
# MATCHING RADIUS
# =============================================================================

DEFAULT_MATCHING_RADIUS_KM: float = 5.0
"""Maximum pickup distance for a driver to be considered for an order."""

URGENT_RADIUS_FACTOR: float = 1.5
"""Urgent orders search a wider area: radius × this factor."""

PEAK_RADIUS_FACTOR: float = 1.3
"""
Radius multiplier applied while the traffic model reports peak hours.
Applied to the configured default, so repeated peak ticks do not compound.
"""

# =============================================================================
# ACCEPT / REJECT SIMULATION
# =============================================================================

OUTCOME_DELAY_SECONDS: Tuple[float, float] = (1.0, 3.0)
"""Range of the delay before a driver answers an offered assignment."""

DEFAULT_RELIABILITY: float = 0.9
"""Acceptance probability for drivers without a reliability trait."""

REFUND_WINDOW_MINUTES: float = 5.0
"""Assigned orders cancelled within this window are fully refundable."""

# =============================================================================
# ROAD NETWORK AND TRAFFIC
# =============================================================================

BASE_SPEED_KMH: float = 40.0
"""Free-flow vehicle speed used to derive every edge's base traversal time."""

KM_PER_DEGREE: Final[float] = 111.32
"""Approximate length of one degree of latitude, in km."""

MIN_TRAFFIC_COEFFICIENT: Final[float] = 0.6
"""Lower bound of an edge's traffic coefficient."""

MAX_TRAFFIC_COEFFICIENT: Final[float] = 3.0
"""Upper bound of an edge's traffic coefficient."""

TRAFFIC_UPDATE_INTERVAL_SECONDS: float = 60.0
"""Time between two traffic ticks in service mode."""

TRAFFIC_DRIFT: float = 0.2
"""Each tick perturbs every coefficient by a uniform value in [-drift, +drift]."""

PEAK_MAIN_ROAD_LOAD: float = 0.3
"""Extra coefficient added to main roads on every tick during peak hours."""

PEAK_WINDOWS: Tuple[Tuple[int, int], ...] = ((7, 9), (17, 19))
"""Peak hour windows as inclusive (first_hour, last_hour) pairs."""

INITIAL_TRAFFIC_RANGES = {
    "main": (0.9, 1.4),
    "secondary": (0.8, 1.2),
    "local": (0.7, 1.4),
}
"""Initial coefficient range per road class. Main roads start slightly congested."""

CONGESTION_THRESHOLD: float = 1.5
"""Edges above this coefficient count as congested."""

# =============================================================================
# ROUTE PLANNER
# =============================================================================

CONGESTION_PENALTY_EXPONENT: float = 2.0
"""
Exponent applied to the traffic coefficient when ``avoid_congestion`` is set.
The default squares the penalty so heavily congested edges are strongly avoided.
"""

ROUTE_SIMPLIFICATION_TOLERANCE: float = 0.0005
"""Douglas-Peucker tolerance in degrees (~50 m). 0 disables simplification."""

ROUTE_CACHE_SIZE: int = 100
"""Maximum number of cached routes. The cache is cleared wholesale when full."""

REROUTE_MAX_PROBABILITY: float = 0.2
"""Upper bound of the reroute probability in ``adjust_route_for_traffic``."""

REROUTE_RATIO_SCALE: float = 0.5
"""Reroute probability = min(max probability, congested ratio × this scale)."""

REROUTE_SCOPE: str = "route"
"""
Which edges feed the congestion ratio of a reroute check:
- "route": only the edges the current route uses
- "global": every edge in the network
"""

GRID_SIZE: int = 20
"""Rows and columns of the default grid road network."""

GRID_SPACING_DEG: float = 0.005
"""Spacing between neighbouring grid nodes in degrees (~500 m)."""

GRID_CENTER: Tuple[float, float] = (116.4074, 39.9042)
"""(lon, lat) centre of the default grid road network."""

# =============================================================================
# ETA FALLBACK AND ROAD DISTANCE (OSRM)
# =============================================================================

FALLBACK_SPEED_KMH: float = 30.0
"""Average speed for straight-line ETA estimates when planning fails."""

ROUTE_WORKERS: int = 4
"""Worker threads used for off-critical-path route planning."""

USE_ROAD_DISTANCE: bool = False
"""
Enable real road distance for straight-line estimates via OSRM.
When False, uses Haversine (great-circle) distance.
"""

OSRM_SERVER_URL: str = "https://router.project-osrm.org"
"""
OSRM server URL. Options:
- "https://router.project-osrm.org" (public demo, rate-limited)
- "http://localhost:5000" (local Docker instance)
"""

OSRM_TIMEOUT_SECONDS: float = 5.0
"""Timeout for OSRM API requests. Fail fast to avoid blocking a worker."""

OSRM_CACHE_SIZE: int = 10000
"""Maximum number of road distance results to cache."""

HAVERSINE_FALLBACK_MULTIPLIER: float = 1.4
"""
Multiplier applied to Haversine distance when OSRM fails.
Typical city roads are 1.3-1.5x longer than straight-line distance.
"""


@dataclass
class DispatchConfig:
    """Per-engine matching settings. Defaults mirror the module constants."""
    matching_interval_seconds: float = MATCHING_INTERVAL_SECONDS
    batch_size: int = BATCH_SIZE
    smart_batching: bool = SMART_BATCHING
    max_orders_per_driver: int = MAX_ORDERS_PER_DRIVER
    distance_weight: float = DISTANCE_WEIGHT
    rating_weight: float = RATING_WEIGHT
    load_weight: float = LOAD_WEIGHT
    default_matching_radius_km: float = DEFAULT_MATCHING_RADIUS_KM
    urgent_radius_factor: float = URGENT_RADIUS_FACTOR
    peak_radius_factor: float = PEAK_RADIUS_FACTOR
    outcome_delay_seconds: Tuple[float, float] = OUTCOME_DELAY_SECONDS
    default_reliability: float = DEFAULT_RELIABILITY
    refund_window_minutes: float = REFUND_WINDOW_MINUTES
    traffic_update_interval_seconds: float = TRAFFIC_UPDATE_INTERVAL_SECONDS
    fallback_speed_kmh: float = FALLBACK_SPEED_KMH
    use_road_distance: bool = USE_ROAD_DISTANCE
    route_workers: int = ROUTE_WORKERS


@dataclass
class RoutingConfig:
    """Per-planner routing settings. Defaults mirror the module constants."""
    base_speed_kmh: float = BASE_SPEED_KMH
    congestion_penalty_exponent: float = CONGESTION_PENALTY_EXPONENT
    simplification_tolerance: float = ROUTE_SIMPLIFICATION_TOLERANCE
    cache_size: int = ROUTE_CACHE_SIZE
    congestion_threshold: float = CONGESTION_THRESHOLD
    reroute_max_probability: float = REROUTE_MAX_PROBABILITY
    reroute_ratio_scale: float = REROUTE_RATIO_SCALE
    reroute_scope: str = REROUTE_SCOPE
    peak_windows: Tuple[Tuple[int, int], ...] = field(default_factory=lambda: PEAK_WINDOWS)
