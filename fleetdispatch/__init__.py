# fleet-dispatch/fleetdispatch/__init__.py

from .models import (
    Order,
    Driver,
    Assignment,
    TrackingInfo,
    Route,
    RouteSegment,
    OrderStatus,
    DriverStatus,
    CargoClass,
    RoadClass,
)
from .config import DispatchConfig, RoutingConfig
from .errors import DispatchError, InvalidInput, NotFound, NoRouteFound
from .events import EventBus, EventType, Event
from .graph import RoadNetwork
from .traffic import TrafficModel, TrafficUpdate
from .routing import RoutePlanner, RouteOptions, simplify_route, estimate_arrival_time
from .drivers import DriverPool
from .order_queue import OrderQueue
from .scoring import MatchingPolicy, calculate_matching_score
from .dispatch import Matcher, BatchGreedyMatcher, SequentialMatcher, get_matcher
from .engine import Engine
from .simulation import Simulation

__version__ = "1.0.0"

__all__ = [
    # Models
    "Order",
    "Driver",
    "Assignment",
    "TrackingInfo",
    "Route",
    "RouteSegment",
    "OrderStatus",
    "DriverStatus",
    "CargoClass",
    "RoadClass",
    # Config
    "DispatchConfig",
    "RoutingConfig",
    # Errors
    "DispatchError",
    "InvalidInput",
    "NotFound",
    "NoRouteFound",
    # Events
    "EventBus",
    "EventType",
    "Event",
    # Routing
    "RoadNetwork",
    "TrafficModel",
    "TrafficUpdate",
    "RoutePlanner",
    "RouteOptions",
    "simplify_route",
    "estimate_arrival_time",
    # Matching
    "DriverPool",
    "OrderQueue",
    "MatchingPolicy",
    "calculate_matching_score",
    "Matcher",
    "BatchGreedyMatcher",
    "SequentialMatcher",
    "get_matcher",
    "Engine",
    "Simulation",
]
