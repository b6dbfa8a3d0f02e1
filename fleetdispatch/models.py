# fleet-dispatch/fleetdispatch/models.py
"""
Core domain models for the Fleet Dispatch engine.

This module defines the fundamental data structures shared by the matching
engine and the route planner:
- Order: A delivery request from pickup to delivery point
- Driver: A courier with vehicle, traits and current state
- Assignment: The link between an order and the driver it was offered to
- Route / RouteSegment: The output of the route planner

Orders and drivers never hold references to each other. They refer to each
other by id and the engine resolves ids through the driver pool and the order
queue.

All positions are (longitude, latitude) tuples.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

Point = Tuple[float, float]
"""A (longitude, latitude) position in decimal degrees."""


class OrderStatus(Enum):
    """Lifecycle states for an order in the dispatch system."""
    PENDING = "pending"          # Queued, awaiting assignment
    ASSIGNED = "assigned"        # Offered to a driver, answer pending
    IN_TRANSIT = "in_transit"    # Driver accepted the order
    COMPLETED = "completed"      # Delivered
    CANCELLED = "cancelled"      # Cancelled by the customer or operator


class DriverStatus(Enum):
    """
    States for a driver in the fleet.

    - AVAILABLE: Online with no active orders
    - BUSY: Online with at least one active order (may still take more)
    - OFFLINE: Not taking work; holds no active orders
    """
    AVAILABLE = "available"
    BUSY = "busy"
    OFFLINE = "offline"


class CargoClass(Enum):
    """Cargo size class, also used as a vehicle class."""
    SMALL = "small"
    MEDIUM = "medium"
    LARGE = "large"

    @property
    def rank(self) -> int:
        return _CARGO_RANK[self]

    @classmethod
    def parse(cls, value: Any) -> "CargoClass":
        """Accept a CargoClass or its (case-insensitive) string value."""
        if isinstance(value, cls):
            return value
        return cls(str(value).strip().lower())


_CARGO_RANK: Dict[CargoClass, int] = {
    CargoClass.SMALL: 0,
    CargoClass.MEDIUM: 1,
    CargoClass.LARGE: 2,
}

VEHICLE_CAPACITY_KG: Dict[CargoClass, float] = {
    CargoClass.SMALL: 50.0,
    CargoClass.MEDIUM: 200.0,
    CargoClass.LARGE: 1000.0,
}
"""Default payload limit per vehicle class."""


class RoadClass(Enum):
    """Road classes of the network. Main roads load up during peak hours."""
    MAIN = "main"
    SECONDARY = "secondary"
    LOCAL = "local"


@dataclass
class Assignment:
    """
    An active offer of an order to a driver.

    Attributes:
        order_id: The assigned order
        driver_id: The driver the order was offered to
        score: Matching score that won the assignment
        assigned_at: When the assignment was made
        accepted_at: When the driver accepted (None while the answer is pending)
        token: Identifies this particular offer; late answers to an older
            offer of the same order carry a different token and are discarded
    """
    order_id: str
    driver_id: str
    score: float
    assigned_at: datetime
    accepted_at: Optional[datetime] = None
    token: int = 0


@dataclass
class TrackingInfo:
    """Live tracking estimate for an assigned order."""
    current_location: Optional[Point] = None
    updated_at: Optional[datetime] = None
    estimated_pickup_at: Optional[datetime] = None
    estimated_arrival_at: Optional[datetime] = None
    distance_to_pickup_km: Optional[float] = None
    distance_to_delivery_km: Optional[float] = None
    degraded: bool = False


@dataclass
class Order:
    """
    Represents a delivery order.

    Attributes:
        order_id: Unique identifier
        pickup: (lon, lat) pickup position
        delivery: (lon, lat) delivery position
        cargo_class: Size class of the cargo
        weight_kg: Cargo weight
        urgent: Urgent orders are matched first and search a wider radius
        created_at: When the order was placed; never changes on requeue
        status: Current lifecycle state
        assignment: Current assignment, if any
        tracking: Tracking estimate, if the order has been assigned
        rejection_count: How many times drivers rejected this order
    """
    order_id: str
    pickup: Point
    delivery: Point
    cargo_class: CargoClass = CargoClass.SMALL
    weight_kg: float = 0.0
    urgent: bool = False
    created_at: Optional[datetime] = None
    status: OrderStatus = OrderStatus.PENDING
    updated_at: Optional[datetime] = None
    assignment: Optional[Assignment] = None
    tracking: Optional[TrackingInfo] = None
    rejection_count: int = 0
    completion: Optional[Dict[str, Any]] = None

    # Carried opaquely for the UI layer
    pickup_address: Optional[str] = None
    delivery_address: Optional[str] = None
    notes: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.status not in (OrderStatus.COMPLETED, OrderStatus.CANCELLED)

    def __repr__(self) -> str:
        return f"Order({self.order_id}, {self.status.value}{', urgent' if self.urgent else ''})"


@dataclass
class Driver:
    """
    Represents a courier/driver in the delivery fleet.

    Attributes:
        driver_id: Unique identifier
        position: Current (lon, lat) position
        vehicle_class: Largest cargo class the vehicle can carry
        capacity_kg: Payload limit (defaults from the vehicle class)
        status: AVAILABLE, BUSY or OFFLINE
        rating: Customer rating in [3, 5]
        efficiency: Efficiency trait in [0, 1]
        reliability: Probability of accepting an offered order, in [0, 1]

    Dynamic State:
        active_orders: Ids of orders currently assigned to this driver
        completed_orders: Ids of orders this driver delivered
        last_update: Timestamp of the last position or status update
    """
    driver_id: str
    position: Point
    vehicle_class: CargoClass = CargoClass.MEDIUM
    capacity_kg: Optional[float] = None
    status: DriverStatus = DriverStatus.AVAILABLE
    rating: float = 4.0
    efficiency: float = 0.75
    reliability: float = 0.9

    active_orders: List[str] = field(default_factory=list)
    completed_orders: List[str] = field(default_factory=list)
    last_update: Optional[datetime] = None

    # Carried opaquely for the UI layer
    name: Optional[str] = None
    phone: Optional[str] = None
    plate_number: Optional[str] = None

    def __post_init__(self) -> None:
        self.vehicle_class = CargoClass.parse(self.vehicle_class)
        if self.capacity_kg is None:
            self.capacity_kg = VEHICLE_CAPACITY_KG[self.vehicle_class]
        self.rating = min(5.0, max(3.0, float(self.rating)))

    @property
    def is_online(self) -> bool:
        return self.status != DriverStatus.OFFLINE

    def __repr__(self) -> str:
        return f"Driver({self.driver_id}, {self.status.value}, orders={len(self.active_orders)})"


@dataclass
class RouteSegment:
    """One traversed edge of a planned route."""
    start: Point
    end: Point
    edge_id: str
    distance_km: float
    time_min: float
    traffic: str
    road_class: RoadClass
    description: str = ""


@dataclass
class Route:
    """
    A planned route.

    Attributes:
        points: Simplified polyline from start to end (first/last preserved)
        segments: Per-edge breakdown in travel order
        distance_km: Total distance
        duration_min: Total traffic-weighted travel time
        average_traffic: Mean traffic coefficient over the traversed edges
        edge_ids: Ids of the traversed edges
        legs: For multi-point routes, the route of each leg
        waypoint_order: For multi-point routes, the visiting order of the
            intermediate waypoints as indices into the input point list
    """
    points: List[Point]
    segments: List[RouteSegment] = field(default_factory=list)
    distance_km: float = 0.0
    duration_min: float = 0.0
    average_traffic: float = 1.0
    summary: str = ""
    edge_ids: List[str] = field(default_factory=list)
    legs: List["Route"] = field(default_factory=list)
    waypoint_order: List[int] = field(default_factory=list)

    @property
    def duration_seconds(self) -> float:
        return self.duration_min * 60

    def __repr__(self) -> str:
        return f"Route(points={len(self.points)}, dist={self.distance_km:.2f}km, eta={self.duration_min:.1f}min)"
