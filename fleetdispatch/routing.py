# fleet-dispatch/fleetdispatch/routing.py
"""
Route planner for the Fleet Dispatch engine.

Plans traffic-aware routes over the road network:

1. Snap start and end to their nearest graph nodes
2. Run A* where an edge costs ``base_time × coefficient`` (or
   ``base_time × coefficient ** exponent`` when avoiding congestion)
3. Build the polyline raw start → path nodes → raw end and simplify it with
   Douglas-Peucker
4. Cache the result until the next traffic change

Multi-stop routes fix the first and last point and visit the intermediate
waypoints in nearest-neighbour order.

A* heuristic:
    straight-line distance / base speed × 60 × smallest possible cost factor

The smallest cost factor is the minimum traffic coefficient (raised to the
congestion exponent in avoidance mode). Coefficients can drop below 1.0, so
scaling by that floor is what keeps the heuristic admissible.
"""

from __future__ import annotations

import heapq
import itertools
import logging
import math
import random
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence, Tuple

from . import config
from .config import RoutingConfig
from .errors import InvalidInput, NoRouteFound
from .graph import RoadNetwork
from .models import Point, Route, RouteSegment
from .traffic import TrafficModel, TrafficUpdate
from .utils import (
    calculate_travel_time_minutes,
    format_distance,
    format_time_duration,
    get_distance,
    haversine_distance,
    is_valid_point,
    traffic_description,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RouteOptions:
    """Planning options. Part of the route cache key, so it must stay hashable."""
    avoid_congestion: bool = False


@dataclass
class PathResult:
    """Raw A* output: node ids, edge ids and weighted cost in minutes."""
    nodes: List[str]
    edges: List[str]
    cost: float


@dataclass
class RerouteDecision:
    rerouted: bool
    route: Route
    reason: str
    congestion_ratio: float
    probability: float = 0.0


@dataclass
class ArrivalEstimate:
    """Straight-line travel estimate along a polyline at a fixed speed."""
    distance_km: float
    duration_min: float
    arrival_time: datetime
    legs_km: List[float] = field(default_factory=list)


# =============================================================================
# GEOMETRY
# =============================================================================

def perpendicular_distance(point: Point, line_start: Point, line_end: Point) -> float:
    """
    Planar distance (in degrees) from a point to the line through two points.

    Falls back to point-to-point distance when the line is degenerate.
    """
    dx = line_end[0] - line_start[0]
    dy = line_end[1] - line_start[1]
    if dx == 0 and dy == 0:
        return math.hypot(point[0] - line_start[0], point[1] - line_start[1])
    cross = abs(dy * point[0] - dx * point[1] + line_end[0] * line_start[1] - line_end[1] * line_start[0])
    return cross / math.hypot(dx, dy)


def simplify_route(points: Sequence[Point], tolerance: float = config.ROUTE_SIMPLIFICATION_TOLERANCE) -> List[Point]:
    """
    Douglas-Peucker polyline simplification.

    Keeps the first and last point exactly and drops every interior point
    whose deviation from the simplified line stays within ``tolerance``.

    Args:
        points: Polyline as (lon, lat) tuples
        tolerance: Maximum allowed deviation in degrees; 0 disables simplification

    Returns:
        A new list, never longer than the input
    """
    points = list(points)
    if len(points) <= 2 or tolerance <= 0:
        return points

    keep = [False] * len(points)
    keep[0] = keep[-1] = True
    stack: List[Tuple[int, int]] = [(0, len(points) - 1)]

    while stack:
        first, last = stack.pop()
        max_dist = 0.0
        index = -1
        for i in range(first + 1, last):
            d = perpendicular_distance(points[i], points[first], points[last])
            if d > max_dist:
                max_dist, index = d, i
        if index != -1 and max_dist > tolerance:
            keep[index] = True
            stack.append((first, index))
            stack.append((index, last))

    return [p for p, k in zip(points, keep) if k]


def estimate_arrival_time(
    points: Sequence[Point],
    speed_kmh: float = config.FALLBACK_SPEED_KMH,
    now: Optional[datetime] = None,
    use_road_distance: Optional[bool] = None,
) -> ArrivalEstimate:
    """
    Estimate travel along a polyline at a constant average speed.

    Leg distances use ``utils.get_distance`` (road distance via OSRM when
    enabled, haversine otherwise).

    Args:
        points: Polyline to follow, at least one point
        speed_kmh: Average speed
        now: Departure time (default: wall clock)
        use_road_distance: Query OSRM for leg distances (default:
            ``config.USE_ROAD_DISTANCE``)

    Returns:
        ArrivalEstimate with total distance, duration and arrival time
    """
    if not points:
        raise InvalidInput("Cannot estimate arrival for an empty point list")
    if speed_kmh <= 0:
        raise InvalidInput(f"Speed must be positive, got {speed_kmh}")
    for p in points:
        if not is_valid_point(p):
            raise InvalidInput(f"Invalid point: {p!r}")

    legs = [get_distance(a, b, use_road_distance) for a, b in zip(points, points[1:])]
    distance = sum(legs)
    duration = calculate_travel_time_minutes(distance, speed_kmh)
    departure = now or datetime.now()
    return ArrivalEstimate(
        distance_km=distance,
        duration_min=duration,
        arrival_time=departure + timedelta(minutes=duration),
        legs_km=legs,
    )


# =============================================================================
# PLANNER
# =============================================================================

class RoutePlanner:
    """
    A* route planner with a traffic-invalidated cache.

    The planner subscribes to the traffic model at construction and clears
    its cache on every traffic change. A route computed against coefficients
    that changed mid-computation is returned but not cached.
    """

    def __init__(
        self,
        network: RoadNetwork,
        traffic: TrafficModel,
        routing_config: Optional[RoutingConfig] = None,
        rng: Optional[random.Random] = None,
    ):
        self.network = network
        self.traffic = traffic
        self.config = routing_config or RoutingConfig()
        self.rng = rng or random.Random()
        self._cache: Dict[Tuple[Point, Point, RouteOptions], Route] = {}
        self._cache_lock = threading.Lock()
        self.cache_hits = 0
        self.cache_misses = 0
        traffic.add_listener(self._on_traffic_update)

    # -------------------------------------------------------------------------
    # Cache
    # -------------------------------------------------------------------------

    def _on_traffic_update(self, update: TrafficUpdate) -> None:
        cleared = self.clear_cache()
        logger.debug(f"Traffic changed, dropped {cleared} cached routes")

    def clear_cache(self) -> int:
        with self._cache_lock:
            count = len(self._cache)
            self._cache.clear()
        return count

    def get_cache_stats(self) -> dict:
        with self._cache_lock:
            size = len(self._cache)
        return {
            "size": size,
            "max_size": self.config.cache_size,
            "hits": self.cache_hits,
            "misses": self.cache_misses,
        }

    # -------------------------------------------------------------------------
    # Search
    # -------------------------------------------------------------------------

    def _cost_factor(self, coefficient: float, options: RouteOptions) -> float:
        if options.avoid_congestion:
            return coefficient ** self.config.congestion_penalty_exponent
        return coefficient

    def find_path(
        self,
        start_node: str,
        end_node: str,
        options: Optional[RouteOptions] = None,
        coefficients: Optional[Dict[str, float]] = None,
    ) -> PathResult:
        """
        A* search between two graph nodes.

        Args:
            start_node: Source node id
            end_node: Target node id
            options: Planning options (congestion avoidance changes edge costs)
            coefficients: Traffic coefficients to cost edges with (default: a
                fresh snapshot). Edges missing from it cost their base time.

        Returns:
            PathResult with the node sequence, edge sequence and weighted cost

        Raises:
            NoRouteFound: If either node is unknown or the nodes are disconnected
        """
        options = options or RouteOptions()
        start = self.network.get_node(start_node)
        goal = self.network.get_node(end_node)
        if start is None or goal is None:
            raise NoRouteFound(f"Unknown node: {start_node if start is None else end_node}")

        if coefficients is None:
            coefficients = self.traffic.snapshot()
        min_factor = self._cost_factor(config.MIN_TRAFFIC_COEFFICIENT, options)
        minutes_per_km = 60 / self.network.base_speed_kmh

        def heuristic(node_id: str) -> float:
            node = self.network.get_node(node_id)
            return haversine_distance(node.position, goal.position) * minutes_per_km * min_factor

        tie = itertools.count()
        g_score: Dict[str, float] = {start_node: 0.0}
        came_from: Dict[str, Tuple[str, str]] = {}
        queue: List[Tuple[float, int, str]] = [(heuristic(start_node), next(tie), start_node)]
        closed = set()

        while queue:
            _, _, current = heapq.heappop(queue)
            if current in closed:
                continue
            if current == end_node:
                nodes, edges = [current], []
                while current in came_from:
                    current, edge_id = came_from[current]
                    nodes.append(current)
                    edges.append(edge_id)
                nodes.reverse()
                edges.reverse()
                return PathResult(nodes=nodes, edges=edges, cost=g_score[end_node])
            closed.add(current)

            for edge_id, neighbor in self.network.neighbors(current):
                if neighbor in closed:
                    continue
                edge = self.network.get_edge(edge_id)
                step = edge.base_time_min * self._cost_factor(coefficients.get(edge_id, 1.0), options)
                tentative = g_score[current] + step
                if tentative < g_score.get(neighbor, float('inf')):
                    g_score[neighbor] = tentative
                    came_from[neighbor] = (current, edge_id)
                    heapq.heappush(queue, (tentative + heuristic(neighbor), next(tie), neighbor))

        raise NoRouteFound(f"No path from node {start_node} to node {end_node}")

    # -------------------------------------------------------------------------
    # Planning
    # -------------------------------------------------------------------------

    def plan_route(self, start: Point, end: Point, options: Optional[RouteOptions] = None) -> Route:
        """
        Plan a traffic-aware route between two points.

        Args:
            start: (lon, lat) origin
            end: (lon, lat) destination
            options: Planning options

        Returns:
            The planned Route. Repeated calls with unchanged traffic return the
            same cached object.

        Raises:
            InvalidInput: If a point is malformed
            NoRouteFound: If the graph is empty or the snapped nodes are disconnected
        """
        if not is_valid_point(start) or not is_valid_point(end):
            raise InvalidInput(f"Invalid route endpoints: {start!r} -> {end!r}")
        options = options or RouteOptions()
        start = (float(start[0]), float(start[1]))
        end = (float(end[0]), float(end[1]))
        key = (start, end, options)

        with self._cache_lock:
            cached = self._cache.get(key)
            if cached is not None:
                self.cache_hits += 1
                return cached
            self.cache_misses += 1

        version = self.traffic.version
        start_node = self.network.nearest_node(start)
        end_node = self.network.nearest_node(end)
        if start_node is None or end_node is None:
            raise NoRouteFound("Road network is empty")

        coefficients = self.traffic.snapshot()
        path = self.find_path(start_node.node_id, end_node.node_id, options, coefficients)
        route = self._build_route(start, end, path, coefficients)

        with self._cache_lock:
            if self.traffic.version == version:
                if len(self._cache) >= self.config.cache_size:
                    self._cache.clear()
                self._cache[key] = route
        return route

    def _build_route(self, start: Point, end: Point, path: PathResult, coefficients: Dict[str, float]) -> Route:
        positions = [self.network.get_node(n).position for n in path.nodes]
        segments: List[RouteSegment] = []
        used: List[float] = []

        for i, edge_id in enumerate(path.edges):
            edge = self.network.get_edge(edge_id)
            coef = coefficients.get(edge_id, 1.0)
            used.append(coef)
            traffic = traffic_description(coef)
            segments.append(RouteSegment(
                start=positions[i],
                end=positions[i + 1],
                edge_id=edge_id,
                distance_km=edge.distance_km,
                time_min=edge.base_time_min * coef,
                traffic=traffic,
                road_class=edge.road_class,
                description=f"{edge.road_class.value} road, {format_distance(edge.distance_km)}, {traffic}",
            ))

        distance = sum(s.distance_km for s in segments)
        duration = sum(s.time_min for s in segments)
        average = sum(used) / len(used) if used else 1.0
        points = simplify_route([start] + positions + [end], self.config.simplification_tolerance)

        return Route(
            points=points,
            segments=segments,
            distance_km=distance,
            duration_min=duration,
            average_traffic=average,
            summary=_summarize(distance, duration, average),
            edge_ids=list(path.edges),
        )

    def plan_multi_point_route(self, points: Sequence[Point], options: Optional[RouteOptions] = None) -> Route:
        """
        Plan a route through several points.

        The first and last points are fixed; intermediate waypoints are
        visited in nearest-neighbour order (by straight-line distance).

        Args:
            points: At least two (lon, lat) points
            options: Planning options applied to every leg

        Returns:
            A Route with the concatenated polyline, per-leg routes and the
            visiting order of the intermediate waypoints

        Raises:
            InvalidInput: Fewer than two points, or a malformed point
            NoRouteFound: If any leg cannot be planned
        """
        points = list(points)
        if len(points) < 2:
            raise InvalidInput("Multi-point route needs at least two points")
        for p in points:
            if not is_valid_point(p):
                raise InvalidInput(f"Invalid point: {p!r}")
        if len(points) == 2:
            return self.plan_route(points[0], points[1], options)

        remaining = list(range(1, len(points) - 1))
        order: List[int] = []
        current = points[0]
        while remaining:
            nearest = min(remaining, key=lambda i: haversine_distance(current, points[i]))
            order.append(nearest)
            remaining.remove(nearest)
            current = points[nearest]

        sequence = [0] + order + [len(points) - 1]
        legs = [self.plan_route(points[a], points[b], options) for a, b in zip(sequence, sequence[1:])]

        polyline = list(legs[0].points)
        for leg in legs[1:]:
            polyline.extend(leg.points[1:])

        edge_count = sum(len(leg.edge_ids) for leg in legs)
        average = (
            sum(leg.average_traffic * len(leg.edge_ids) for leg in legs) / edge_count
            if edge_count else 1.0
        )
        distance = sum(leg.distance_km for leg in legs)
        duration = sum(leg.duration_min for leg in legs)

        return Route(
            points=polyline,
            segments=[s for leg in legs for s in leg.segments],
            distance_km=distance,
            duration_min=duration,
            average_traffic=average,
            summary=f"{len(points)} stops, " + _summarize(distance, duration, average),
            edge_ids=[e for leg in legs for e in leg.edge_ids],
            legs=legs,
            waypoint_order=order,
        )

    def adjust_route_for_traffic(
        self,
        route: Route,
        current_pos: Point,
        destination: Point,
        options: Optional[RouteOptions] = None,
    ) -> RerouteDecision:
        """
        Decide whether a route in progress should be replanned.

        The reroute probability is ``min(max_probability, congested_ratio ×
        ratio_scale)``. The congested ratio covers the route's own edges or the
        whole network depending on ``reroute_scope``. When the random draw
        falls below the probability, the route is replanned from the current
        position with congestion avoidance.

        Returns:
            RerouteDecision carrying either the new or the unchanged route
        """
        if self.config.reroute_scope == "global":
            ratio = self.traffic.congestion_ratio()
        else:
            ratio = self.traffic.congestion_ratio(route.edge_ids)
        probability = min(self.config.reroute_max_probability, ratio * self.config.reroute_ratio_scale)

        if self.rng.random() < probability:
            base = options or RouteOptions()
            new_route = self.plan_route(current_pos, destination, replace(base, avoid_congestion=True))
            logger.info(f"Rerouting: {ratio:.0%} of edges congested (p={probability:.2f})")
            return RerouteDecision(
                rerouted=True,
                route=new_route,
                reason=f"congestion on {ratio:.0%} of {self.config.reroute_scope} edges",
                congestion_ratio=ratio,
                probability=probability,
            )

        return RerouteDecision(
            rerouted=False,
            route=route,
            reason="traffic conditions stable",
            congestion_ratio=ratio,
            probability=probability,
        )

    def estimate_arrival_time(
        self,
        points: Sequence[Point],
        speed_kmh: float = config.FALLBACK_SPEED_KMH,
        now: Optional[datetime] = None,
        use_road_distance: Optional[bool] = None,
    ) -> ArrivalEstimate:
        return estimate_arrival_time(points, speed_kmh, now, use_road_distance)


def _summarize(distance_km: float, duration_min: float, average_traffic: float) -> str:
    return (
        f"{format_distance(distance_km)}, {format_time_duration(duration_min)}, "
        f"traffic {traffic_description(average_traffic)}"
    )
