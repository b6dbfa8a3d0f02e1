# fleet-dispatch/fleetdispatch/traffic.py
"""
Traffic model for the road network.

Every edge carries a traffic coefficient in [0.6, 3.0]; an edge's traversal
time is its free-flow time multiplied by the coefficient. The model:

1. Seeds coefficients by road class (main roads start slightly congested)
2. On every tick, drifts each coefficient by a uniform random amount
3. During peak hours, loads main roads further
4. Notifies listeners after every change (the route planner drops its cache,
   the matching engine adapts its search radius)

Randomness comes from an injected ``random.Random`` so runs are reproducible.
"""

from __future__ import annotations

import logging
import random
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional

from . import config
from .config import RoutingConfig
from .errors import NotFound
from .graph import RoadNetwork
from .models import RoadClass

logger = logging.getLogger(__name__)


@dataclass
class TrafficUpdate:
    """Notification sent to listeners after the coefficients changed."""
    timestamp: datetime
    is_peak_hour: bool
    congested_ratio: float
    scheduled: bool = True
    changed_edges: List[str] = field(default_factory=list)


TrafficListener = Callable[[TrafficUpdate], None]


def clamp_coefficient(value: float) -> float:
    return max(config.MIN_TRAFFIC_COEFFICIENT, min(config.MAX_TRAFFIC_COEFFICIENT, value))


class TrafficModel:
    """
    Owns the mutable traffic coefficient of every edge.

    ``version`` increases on every change, so readers can tell whether a
    result computed from the coefficients is still current.
    """

    def __init__(
        self,
        network: RoadNetwork,
        rng: Optional[random.Random] = None,
        routing_config: Optional[RoutingConfig] = None,
        randomize: bool = True,
    ):
        self.network = network
        self.rng = rng or random.Random()
        self.config = routing_config or RoutingConfig()
        self.version = 0
        self.peak = False
        self.last_update: Optional[datetime] = None
        self._lock = threading.RLock()
        self._listeners: List[TrafficListener] = []
        self._coefficients: Dict[str, float] = {}

        for edge in network.edges():
            if randomize:
                low, high = config.INITIAL_TRAFFIC_RANGES[edge.road_class.value]
                self._coefficients[edge.edge_id] = clamp_coefficient(self.rng.uniform(low, high))
            else:
                self._coefficients[edge.edge_id] = 1.0

    # -------------------------------------------------------------------------
    # Listeners
    # -------------------------------------------------------------------------

    def add_listener(self, listener: TrafficListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def remove_listener(self, listener: TrafficListener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def _notify(self, update: TrafficUpdate) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(update)
            except Exception:
                logger.exception(f"Traffic listener {listener!r} failed")

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def coefficient(self, edge_id: str) -> float:
        try:
            return self._coefficients[edge_id]
        except KeyError:
            raise NotFound(f"Unknown edge {edge_id}") from None

    def snapshot(self) -> Dict[str, float]:
        with self._lock:
            return dict(self._coefficients)

    def is_peak_hour(self, hour: int) -> bool:
        return any(first <= hour <= last for first, last in self.config.peak_windows)

    def congestion_ratio(self, edge_ids: Optional[Iterable[str]] = None) -> float:
        """
        Fraction of edges whose coefficient exceeds the congestion threshold.

        Args:
            edge_ids: Edges to consider (default: the whole network)

        Returns:
            Ratio in [0, 1]; 0 for an empty edge set
        """
        with self._lock:
            ids = list(edge_ids) if edge_ids is not None else list(self._coefficients)
            values = [self._coefficients[e] for e in ids if e in self._coefficients]
        if not values:
            return 0.0
        congested = sum(1 for v in values if v > self.config.congestion_threshold)
        return congested / len(values)

    # -------------------------------------------------------------------------
    # Mutation
    # -------------------------------------------------------------------------

    def tick(self, now: Optional[datetime] = None) -> TrafficUpdate:
        """
        Advance traffic by one step.

        Args:
            now: Current time, used for the peak-hour check (default: wall clock)

        Returns:
            The TrafficUpdate that was sent to listeners
        """
        now = now or datetime.now()
        peak = self.is_peak_hour(now.hour)
        drift = config.TRAFFIC_DRIFT

        with self._lock:
            for edge in self.network.edges():
                value = self._coefficients.get(edge.edge_id, 1.0)
                value += self.rng.uniform(-drift, drift)
                if peak and edge.road_class == RoadClass.MAIN:
                    value += config.PEAK_MAIN_ROAD_LOAD
                self._coefficients[edge.edge_id] = clamp_coefficient(value)
            self.version += 1
            self.peak = peak
            self.last_update = now

        update = TrafficUpdate(timestamp=now, is_peak_hour=peak, congested_ratio=self.congestion_ratio())
        logger.info(
            f"Traffic updated: peak={peak}, congested={update.congested_ratio:.1%} "
            f"of {len(self._coefficients)} edges"
        )
        self._notify(update)
        return update

    def set_coefficient(self, edge_id: str, value: float, now: Optional[datetime] = None) -> float:
        """
        Overwrite one edge's coefficient (clamped) and notify listeners.

        Returns:
            The stored (clamped) value
        """
        if edge_id not in self._coefficients:
            raise NotFound(f"Unknown edge {edge_id}")
        with self._lock:
            stored = clamp_coefficient(float(value))
            self._coefficients[edge_id] = stored
            self.version += 1
            peak = self.peak

        self._notify(TrafficUpdate(
            timestamp=now or datetime.now(),
            is_peak_hour=peak,
            congested_ratio=self.congestion_ratio(),
            scheduled=False,
            changed_edges=[edge_id],
        ))
        return stored
