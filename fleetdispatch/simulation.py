# fleet-dispatch/fleetdispatch/simulation.py
"""
Offline replay simulation for the Fleet Dispatch engine.

Replays a CSV scenario (orders with creation times, drivers with positions
and traits) through a real Engine in simulated time:
- Orders are submitted at their creation time
- The engine's matching loop (every 3 s) and traffic loop (every 60 s) run on
  a SimulatedScheduler
- Accepted orders become trips: the driver reaches the pickup after the
  driver→pickup travel time and delivers after the pickup→delivery time
- After every traffic update, trips past pickup are checked for rerouting

Everything is deterministic for a given seed: the clock, the scheduler, the
route workers (inline) and the random source are all injected.

KPIs compare matchers: deliveries, delivery times, rejections, matching rate,
reroutes and fleet distance.
"""

from __future__ import annotations

import csv
import logging
import os
import random
import statistics
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from . import utils
from .config import DispatchConfig, RoutingConfig
from .dispatch import get_matcher
from .engine import Engine
from .errors import DispatchError
from .events import Event, EventType
from .graph import RoadNetwork
from .models import CargoClass, Driver, DriverStatus, Order, Route
from .routing import estimate_arrival_time
from .runtime import InlineExecutor, SimulatedClock, SimulatedScheduler, TimerHandle

logger = logging.getLogger(__name__)

DEFAULT_START: datetime = datetime(2024, 1, 15, 17, 0, 0)
"""Scenario start. Times-of-day in the CSV files are placed on this date."""


@dataclass
class Trip:
    """An accepted order being carried out in the simulation."""
    order_id: str
    driver_id: str
    delivery_route: Optional[Route]
    distance_km: float
    picked_up: bool = False
    handle: Optional[TimerHandle] = None
    rerouted: int = 0


def _parse_time(value: str, day: datetime) -> datetime:
    """Parse 'YYYY-MM-DD HH:MM:SS' or 'HH:MM:SS' (placed on ``day``)."""
    value = value.strip()
    if ' ' in value:
        return datetime.strptime(value, '%Y-%m-%d %H:%M:%S')
    t = datetime.strptime(value, '%H:%M:%S').time()
    return datetime.combine(day.date(), t)


def _parse_bool(value: Optional[str]) -> bool:
    return str(value or '').strip().lower() in ('1', 'true', 'yes', 'y')


class Simulation:
    """
    Simulated-time replay of a dispatch scenario.

    Attributes:
        engine: The engine under test
        clock: Simulated clock shared by engine and scheduler
        scheduler: Drives the engine loops and trip events
        trips: Active trips by order id
        completed_missions: One record per delivered order
    """

    def __init__(
        self,
        drivers: List[Driver],
        orders: List[Order],
        matcher: str = "batch",
        seed: Optional[int] = None,
        start: datetime = DEFAULT_START,
        network: Optional[RoadNetwork] = None,
        dispatch_config: Optional[DispatchConfig] = None,
        routing_config: Optional[RoutingConfig] = None,
    ) -> None:
        self.rng = random.Random(seed)
        self.clock = SimulatedClock(start)
        self.scheduler = SimulatedScheduler(self.clock)
        self.start_time = start
        self.matcher_name = matcher

        self.engine = Engine(
            network=network,
            config=dispatch_config,
            routing_config=routing_config,
            clock=self.clock,
            rng=self.rng,
            scheduler=self.scheduler,
            executor=InlineExecutor(),
            matcher=get_matcher(matcher),
        )
        self.planner = self.engine.planner

        self.master_orders_list: List[Order] = sorted(orders, key=lambda o: o.created_at or start)
        self.orders_map: Dict[str, Order] = {o.order_id: o for o in orders}
        self.trips: Dict[str, Trip] = {}
        self.completed_missions: List[Dict[str, Any]] = []
        self.drivers_activated: set = set()
        self.total_distance_traveled: float = 0.0
        self.total_reroutes: int = 0
        self.degraded_etas: int = 0
        self.rejected_inputs: int = 0

        for driver in drivers:
            self.engine.add_driver(driver)

        self.engine.events.subscribe(EventType.DRIVER_ACCEPTED_ORDER, self._on_accepted)
        self.engine.events.subscribe(EventType.TRAFFIC_UPDATED, self._on_traffic_updated)
        self.engine.events.subscribe(EventType.ORDER_ETA_UPDATED, self._on_eta_updated)

    # -------------------------------------------------------------------------
    # Data loading
    # -------------------------------------------------------------------------

    @staticmethod
    def load_data(order_file: str, driver_file: str, start: datetime = DEFAULT_START) -> Tuple[List[Driver], List[Order]]:
        """
        Load a scenario from CSV files.

        Order columns: order_id, pickup_lon, pickup_lat, delivery_lon,
        delivery_lat, created_time, and optionally cargo_class, weight_kg, urgent.

        Driver columns: driver_id, lon, lat, and optionally vehicle_class,
        rating, efficiency, reliability, status.

        Returns:
            Tuple of (drivers, orders) lists

        Raises:
            FileNotFoundError: If a file doesn't exist
            ValueError: If a row is malformed
        """
        if not os.path.exists(order_file):
            raise FileNotFoundError(f"Order file not found: {order_file}")
        if not os.path.exists(driver_file):
            raise FileNotFoundError(f"Driver file not found: {driver_file}")

        orders: List[Order] = []
        with open(order_file, 'r', newline='') as f:
            for row in csv.DictReader(f):
                try:
                    orders.append(Order(
                        order_id=row['order_id'],
                        pickup=(float(row['pickup_lon']), float(row['pickup_lat'])),
                        delivery=(float(row['delivery_lon']), float(row['delivery_lat'])),
                        cargo_class=CargoClass.parse(row.get('cargo_class') or 'small'),
                        weight_kg=float(row.get('weight_kg') or 0),
                        urgent=_parse_bool(row.get('urgent')),
                        created_at=_parse_time(row['created_time'], start),
                    ))
                except (KeyError, ValueError) as e:
                    raise ValueError(f"Invalid order data in {order_file}: {e}")

        drivers: List[Driver] = []
        with open(driver_file, 'r', newline='') as f:
            for row in csv.DictReader(f):
                try:
                    drivers.append(Driver(
                        driver_id=row['driver_id'],
                        position=(float(row['lon']), float(row['lat'])),
                        vehicle_class=CargoClass.parse(row.get('vehicle_class') or 'medium'),
                        rating=float(row.get('rating') or 4.0),
                        efficiency=float(row.get('efficiency') or 0.75),
                        reliability=float(row.get('reliability') or 0.9),
                        status=DriverStatus(row.get('status') or 'available'),
                    ))
                except (KeyError, ValueError) as e:
                    raise ValueError(f"Invalid driver data in {driver_file}: {e}")

        return drivers, orders

    # -------------------------------------------------------------------------
    # Event handlers
    # -------------------------------------------------------------------------

    def _submit(self, order: Order) -> None:
        try:
            self.engine.add_order(order)
        except DispatchError as e:
            logger.warning(f"Scenario order {order.order_id} rejected: {e}")
            self.rejected_inputs += 1

    def _on_eta_updated(self, event: Event) -> None:
        if event.payload.get("degraded"):
            self.degraded_etas += 1

    def _on_accepted(self, event: Event) -> None:
        order_id = event.payload["order_id"]
        driver_id = event.payload["driver_id"]
        order = self.engine.get_order(order_id)
        driver = self.engine.drivers.get(driver_id)
        if order is None or driver is None:
            return

        try:
            to_pickup = self.planner.plan_route(driver.position, order.pickup)
            to_delivery = self.planner.plan_route(order.pickup, order.delivery)
            pickup_min, pickup_km = to_pickup.duration_min, to_pickup.distance_km
            delivery_min, delivery_km = to_delivery.duration_min, to_delivery.distance_km
        except DispatchError:
            settings = self.engine.config
            now = self.clock.now()
            first = estimate_arrival_time(
                [driver.position, order.pickup], settings.fallback_speed_kmh, now, settings.use_road_distance
            )
            second = estimate_arrival_time(
                [order.pickup, order.delivery], settings.fallback_speed_kmh, now, settings.use_road_distance
            )
            to_delivery = None
            pickup_min, pickup_km = first.duration_min, first.distance_km
            delivery_min, delivery_km = second.duration_min, second.distance_km

        trip = Trip(order_id, driver_id, to_delivery, pickup_km + delivery_km)
        self.trips[order_id] = trip
        self.drivers_activated.add(driver_id)
        self.scheduler.call_later(pickup_min * 60, self._pickup, order_id)
        trip.handle = self.scheduler.call_later((pickup_min + delivery_min) * 60, self._deliver, order_id)

    def _pickup(self, order_id: str) -> None:
        trip = self.trips.get(order_id)
        order = self.engine.get_order(order_id)
        if trip is None or order is None:
            return
        trip.picked_up = True
        self.engine.update_driver_position(trip.driver_id, order.pickup)

    def _deliver(self, order_id: str) -> None:
        trip = self.trips.pop(order_id, None)
        order = self.engine.get_order(order_id)
        if trip is None or order is None:
            return
        self.engine.update_driver_position(trip.driver_id, order.delivery)
        info = self.engine.complete_order(order_id, {"rating": round(self.rng.uniform(3.5, 5.0), 1)})
        self.total_distance_traveled += trip.distance_km
        self.completed_missions.append({
            "order_id": order_id,
            "driver_id": trip.driver_id,
            "created_at": order.created_at,
            "delivered_at": info.completed_at,
            "rerouted": trip.rerouted,
        })

    def _on_traffic_updated(self, event: Event) -> None:
        for order_id, trip in list(self.trips.items()):
            if not trip.picked_up or trip.delivery_route is None:
                continue
            order = self.engine.get_order(order_id)
            driver = self.engine.drivers.get(trip.driver_id)
            if order is None or driver is None:
                continue
            try:
                decision = self.planner.adjust_route_for_traffic(trip.delivery_route, driver.position, order.delivery)
            except DispatchError as e:
                logger.warning(f"Reroute check failed for order {order_id}: {e}")
                continue
            if decision.rerouted:
                trip.delivery_route = decision.route
                trip.rerouted += 1
                self.total_reroutes += 1
                if trip.handle is not None:
                    trip.handle.cancel()
                trip.handle = self.scheduler.call_later(decision.route.duration_min * 60, self._deliver, order_id)

    # -------------------------------------------------------------------------
    # Run
    # -------------------------------------------------------------------------

    def run(self, minutes: int = 180, verbose: bool = True) -> Dict[str, Any]:
        """
        Run the scenario.

        Args:
            minutes: Simulated time limit
            verbose: Whether to print progress every 10 simulated minutes

        Returns:
            Dictionary of KPI results
        """
        if verbose:
            print(f"======== Starting Simulation: {self.matcher_name.upper()} ========")

        for order in self.master_orders_list:
            delay = max(0.0, ((order.created_at or self.start_time) - self.clock.now()).total_seconds())
            self.scheduler.call_later(delay, self._submit, order)

        self.engine.start()
        end = self.start_time + timedelta(minutes=minutes)
        total_orders = len(self.master_orders_list)
        elapsed = 0

        while self.clock.now() < end and len(self.completed_missions) + self.rejected_inputs < total_orders:
            self.scheduler.advance(60)
            elapsed += 1
            if verbose and elapsed % 10 == 0:
                stats = self.engine.get_statistics()
                print(f"[{self.clock.now().strftime('%H:%M')}] "
                      f"Queue: {stats.queue_length}, "
                      f"Assigned: {stats.assigned_orders}, "
                      f"Completed: {len(self.completed_missions)}")

        self.engine.stop()
        if verbose:
            print("Simulation complete. Calculating results...")
            if self.engine.config.use_road_distance:
                print(f"Distance cache populated: {utils.get_osrm_cache_stats()['size']} entries")
        return self.get_results()

    def get_results(self) -> Dict[str, Any]:
        """
        Calculate KPI results.

        Returns:
            Dictionary with machine-readable KPIs plus display strings
        """
        stats = self.engine.get_statistics()
        total_orders = len(self.orders_map)
        delivered = len(self.completed_missions)

        delivery_times = [
            (m["delivered_at"] - m["created_at"]).total_seconds() / 60
            for m in self.completed_missions if m["created_at"] is not None
        ]
        avg_time = statistics.mean(delivery_times) if delivery_times else 0.0
        median_time = statistics.median(delivery_times) if delivery_times else 0.0
        sorted_times = sorted(delivery_times)
        p90_time = sorted_times[int(len(sorted_times) * 0.90)] if sorted_times else 0.0
        drivers_used = len(self.drivers_activated)

        return {
            "orders_delivered": delivered,
            "total_orders": total_orders,
            "delivery_success_rate_pct": round(delivered / total_orders * 100, 2) if total_orders else 0,
            "avg_delivery_time_min": round(avg_time, 2),
            "median_delivery_time_min": round(median_time, 2),
            "p90_delivery_time_min": round(p90_time, 2),
            "total_matched": stats.total_matched,
            "total_rejected": stats.total_rejected,
            "matching_rate": round(stats.matching_rate, 4),
            "avg_match_seconds": round(stats.avg_match_seconds, 2),
            "still_queued": stats.queue_length,
            "reroutes": self.total_reroutes,
            "degraded_etas": self.degraded_etas,
            "drivers_used": drivers_used,
            "total_fleet_distance_km": round(self.total_distance_traveled, 2),
            "orders_per_driver": round(delivered / drivers_used, 2) if drivers_used else 0,

            # Display format for the CLI table
            "Orders Delivered": f"{delivered}/{total_orders}",
            "Avg Delivery Time": f"{avg_time:.2f} min",
            "P90 Delivery Time": f"{p90_time:.2f} min",
            "Rejections": stats.total_rejected,
            "Matching Rate": f"{stats.matching_rate:.1%}",
            "Avg Time To Match": f"{stats.avg_match_seconds:.1f} s",
            "Reroutes": self.total_reroutes,
            "Drivers Used": drivers_used,
            "Total Fleet Distance": f"{self.total_distance_traveled:.2f} km",
        }
