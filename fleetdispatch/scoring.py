# fleet-dispatch/fleetdispatch/scoring.py
"""
Scoring function for order-to-driver matching.

Every (order, driver) pair gets a score in [0, 100]:
- 0 means the pair is infeasible and must never be assigned
- Higher is better; matchers pick the highest-scoring driver

Feasibility checks (any failure → 0):
1. Cargo fits the vehicle (class rank and weight)
2. Driver is online and below the active-order limit
3. Pickup lies within the matching radius (wider for urgent orders)

Score composition for feasible pairs:
    50
    + distance term (100 at the driver's position, 0 at the radius edge) × distance weight
    + rating term ((rating - 3) × 20) × rating weight
    + load term ((1 - active / max) × 100) × load weight
    + 20 if urgent
    + 10 if urgent and the driver's efficiency is above 0.8
    + reliability × 10

Scoring never raises: malformed data scores 0.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from . import config
from .config import DispatchConfig
from .models import CargoClass, Driver, Order
from .utils import haversine_distance

logger = logging.getLogger(__name__)


@dataclass
class MatchingPolicy:
    """Radius, weights and capacity limits applied by the scoring function."""
    radius_km: float = config.DEFAULT_MATCHING_RADIUS_KM
    urgent_radius_factor: float = config.URGENT_RADIUS_FACTOR
    distance_weight: float = config.DISTANCE_WEIGHT
    rating_weight: float = config.RATING_WEIGHT
    load_weight: float = config.LOAD_WEIGHT
    max_orders_per_driver: int = config.MAX_ORDERS_PER_DRIVER

    @classmethod
    def from_config(cls, settings: DispatchConfig, radius_km: float = None) -> "MatchingPolicy":
        return cls(
            radius_km=settings.default_matching_radius_km if radius_km is None else radius_km,
            urgent_radius_factor=settings.urgent_radius_factor,
            distance_weight=settings.distance_weight,
            rating_weight=settings.rating_weight,
            load_weight=settings.load_weight,
            max_orders_per_driver=settings.max_orders_per_driver,
        )

    def radius_for(self, order: Order) -> float:
        return self.radius_km * (self.urgent_radius_factor if order.urgent else 1.0)


def cargo_fits(order: Order, driver: Driver) -> bool:
    """
    Check whether a driver's vehicle can carry an order's cargo.

    The cargo class must not rank above the vehicle class
    (small < medium < large) and the weight must not exceed the payload limit.
    """
    if CargoClass.parse(order.cargo_class).rank > CargoClass.parse(driver.vehicle_class).rank:
        return False
    return driver.capacity_kg is None or order.weight_kg <= driver.capacity_kg


def calculate_matching_score(
    order: Order,
    driver: Driver,
    policy: MatchingPolicy,
    extra_load: int = 0,
) -> float:
    """
    Score how well a driver fits an order.

    Args:
        order: The order to place
        driver: Candidate driver
        policy: Radius, weights and capacity limits
        extra_load: Orders tentatively given to this driver earlier in the
            same matching pass, counted as active load

    Returns:
        0 when infeasible, otherwise a score in (0, 100]
    """
    try:
        if not cargo_fits(order, driver):
            return 0.0
        if not driver.is_online:
            return 0.0

        load = len(driver.active_orders) + extra_load
        if load >= policy.max_orders_per_driver:
            return 0.0

        radius = policy.radius_for(order)
        distance = haversine_distance(driver.position, order.pickup)
        if radius <= 0 or distance > radius:
            return 0.0

        distance_term = (1 - distance / radius) * 100
        rating_term = (driver.rating - 3) * 20
        load_term = (1 - load / policy.max_orders_per_driver) * 100

        score = (
            config.BASE_SCORE
            + distance_term * policy.distance_weight
            + rating_term * policy.rating_weight
            + load_term * policy.load_weight
        )
        if order.urgent:
            score += config.URGENT_BONUS
            if driver.efficiency > config.EFFICIENT_DRIVER_THRESHOLD:
                score += config.EFFICIENT_DRIVER_BONUS
        score += driver.reliability * config.RELIABILITY_FACTOR

        # A feasible pair never scores 0
        return max(0.01, min(100.0, score))

    except (TypeError, ValueError, AttributeError, ZeroDivisionError) as e:
        logger.debug(f"Scoring {order.order_id} x {driver.driver_id} failed: {e}")
        return 0.0
