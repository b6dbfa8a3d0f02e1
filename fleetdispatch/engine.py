# fleet-dispatch/fleetdispatch/engine.py
"""
Dispatch matching engine.

The engine owns the set of active orders and wires the stores together:

    add_order ──> OrderQueue ──(matching tick)──> Matcher ──> assign
                                                                │
         ┌──────────────────────────────────────────────────────┤
         │                                                      │
    ETA on a worker (RoutePlanner)          accept/reject outcome after 1-3 s
         │                                                      │
    ORDER_ETA_UPDATED                 DRIVER_ACCEPTED_ORDER / DRIVER_REJECTED_ORDER

Every command, tick and callback runs under one re-entrant engine lock.
Route planning is submitted to the executor after the lock is released; its
result is applied under the lock and only if the assignment it was computed
for is still current. Accept/reject outcomes are cancellable scheduled
tasks; an outcome for an order that was cancelled or re-assigned in the
meantime is discarded.

Clock, random source, scheduler and executor are injectable. Service mode
uses the wall clock, timer threads and a thread pool; tests and the offline
simulation use the deterministic variants from ``runtime``.
"""

from __future__ import annotations

import itertools
import logging
import math
import random
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from .config import DispatchConfig, RoutingConfig
from .dispatch import BatchGreedyMatcher, Matcher, SequentialMatcher
from .drivers import DriverPool
from .errors import DispatchError, InvalidInput, NotFound
from .events import EventBus, EventType
from .graph import RoadNetwork
from .models import (
    Assignment,
    CargoClass,
    Driver,
    DriverStatus,
    Order,
    OrderStatus,
    Point,
    TrackingInfo,
)
from .order_queue import OrderQueue
from .routing import RoutePlanner, estimate_arrival_time
from .runtime import SystemClock, TimerHandle, TimerScheduler
from .scoring import MatchingPolicy
from .traffic import TrafficModel, TrafficUpdate
from .utils import is_valid_point

logger = logging.getLogger(__name__)


# =============================================================================
# RESULT TYPES
# =============================================================================

@dataclass
class AddOrderResult:
    accepted: bool
    order_id: str
    queue_position: int
    estimated_wait_minutes: int


@dataclass
class CancelResult:
    order_id: str
    refund_eligible: bool
    previous_status: OrderStatus
    cancelled_at: datetime
    reason: Optional[str] = None
    driver_id: Optional[str] = None


@dataclass
class CompletionInfo:
    order_id: str
    driver_id: str
    completed_at: datetime
    delivery_minutes: float
    rating: Optional[float] = None
    signature: Optional[str] = None
    comments: Optional[str] = None


@dataclass
class TickResult:
    """Outcome of one matching tick."""
    skipped: bool = False
    considered: int = 0
    assigned: List[str] = field(default_factory=list)
    unmatched: List[str] = field(default_factory=list)
    elapsed_seconds: float = 0.0


@dataclass
class Statistics:
    queue_length: int
    assigned_orders: int
    available_drivers: int
    busy_drivers: int
    offline_drivers: int
    avg_wait_minutes: float
    matching_rate: float
    total_matched: int
    total_rejected: int
    total_completed: int
    total_cancelled: int
    avg_match_seconds: float
    matching_radius_km: float
    last_update: datetime


# =============================================================================
# ENGINE
# =============================================================================

class Engine:
    """
    Order/driver matching engine.

    All collaborators are optional; missing ones are built with defaults
    (a grid road network, seeded traffic, a thread pool of route workers).
    """

    def __init__(
        self,
        network: Optional[RoadNetwork] = None,
        traffic: Optional[TrafficModel] = None,
        planner: Optional[RoutePlanner] = None,
        drivers: Optional[DriverPool] = None,
        queue: Optional[OrderQueue] = None,
        config: Optional[DispatchConfig] = None,
        routing_config: Optional[RoutingConfig] = None,
        clock: Any = None,
        rng: Optional[random.Random] = None,
        scheduler: Any = None,
        executor: Any = None,
        matcher: Optional[Matcher] = None,
        events: Optional[EventBus] = None,
    ) -> None:
        self.config = config if config is not None else DispatchConfig()
        self.rng = rng if rng is not None else random.Random()
        self.clock = clock if clock is not None else SystemClock()

        if planner is not None:
            self.planner = planner
            self.traffic = planner.traffic
            self.network = planner.network
        else:
            if network is None:
                speed = (routing_config or RoutingConfig()).base_speed_kmh
                network = RoadNetwork.grid(base_speed_kmh=speed)
            self.network = network
            self.traffic = traffic if traffic is not None else TrafficModel(self.network, self.rng, routing_config)
            self.planner = RoutePlanner(self.network, self.traffic, routing_config, self.rng)

        self.drivers = drivers if drivers is not None else DriverPool(self.config.max_orders_per_driver)
        self.queue = queue if queue is not None else OrderQueue()
        self.scheduler = scheduler if scheduler is not None else TimerScheduler()
        self._owns_executor = executor is None
        self.executor = executor if executor is not None else self._build_executor()
        if matcher is None:
            matcher = BatchGreedyMatcher() if self.config.smart_batching else SequentialMatcher()
        self.matcher = matcher
        self.events = events if events is not None else EventBus()

        self.matching_radius_km = self.config.default_matching_radius_km
        self.running = False
        self._executor_closed = False

        self._orders: Dict[str, Order] = {}
        self._outcomes: Dict[str, TimerHandle] = {}
        self._loops: List[TimerHandle] = []
        self._tokens = itertools.count(1)
        self._lock = threading.RLock()
        self._tick_lock = threading.Lock()

        self.total_matched = 0
        self.total_rejected = 0
        self.total_completed = 0
        self.total_cancelled = 0
        self._match_seconds_total = 0.0
        self._match_count = 0

        self.traffic.add_listener(self._on_traffic_update)

    def _build_executor(self) -> ThreadPoolExecutor:
        return ThreadPoolExecutor(max_workers=self.config.route_workers, thread_name_prefix="route")

    # -------------------------------------------------------------------------
    # Lookups
    # -------------------------------------------------------------------------

    def get_order(self, order_id: str) -> Optional[Order]:
        """Active (not completed, not cancelled) order by id."""
        return self._orders.get(order_id)

    def active_orders(self) -> List[Order]:
        with self._lock:
            return list(self._orders.values())

    def add_driver(self, driver: Driver) -> Driver:
        with self._lock:
            driver.last_update = driver.last_update or self.clock.now()
            return self.drivers.add_driver(driver)

    # -------------------------------------------------------------------------
    # Order commands
    # -------------------------------------------------------------------------

    def add_order(self, order: Order) -> AddOrderResult:
        """
        Validate an order and put it in the queue.

        Args:
            order: New order; ``created_at`` defaults to now

        Returns:
            AddOrderResult with the queue position and estimated wait

        Raises:
            InvalidInput: Missing id, malformed coordinates or cargo, or an id
                that is already active
        """
        if not order.order_id or not isinstance(order.order_id, str):
            raise InvalidInput("Order id is required")
        if not is_valid_point(order.pickup) or not is_valid_point(order.delivery):
            raise InvalidInput(f"Order {order.order_id} has invalid coordinates")
        try:
            order.cargo_class = CargoClass.parse(order.cargo_class)
        except ValueError:
            raise InvalidInput(f"Order {order.order_id} has unknown cargo class {order.cargo_class!r}") from None
        if order.weight_kg is None or order.weight_kg < 0:
            raise InvalidInput(f"Order {order.order_id} has invalid weight {order.weight_kg!r}")

        with self._lock:
            if order.order_id in self._orders:
                raise InvalidInput(f"Order {order.order_id} is already active")
            now = self.clock.now()
            order.created_at = order.created_at or now
            order.updated_at = now
            order.status = OrderStatus.PENDING
            order.assignment = None
            self._orders[order.order_id] = order
            position = self.queue.enqueue(order)
            wait = self._estimate_wait_minutes()

        logger.info(f"Order {order.order_id} queued at position {position} (~{wait} min wait)")
        return AddOrderResult(
            accepted=True,
            order_id=order.order_id,
            queue_position=position,
            estimated_wait_minutes=wait,
        )

    def _estimate_wait_minutes(self) -> int:
        estimate = 2 + len(self.queue) / 10
        if self._match_count:
            estimate = (estimate + self._match_seconds_total / self._match_count / 60) / 2
        available = len(self.drivers.available_drivers())
        factor = 10 / (10 + available) if available else 2
        return math.ceil(estimate * factor)

    def cancel_order(self, order_id: str, reason: Optional[str] = None) -> CancelResult:
        """
        Cancel an active order.

        Queued orders are always refundable. Assigned or in-transit orders
        release their driver and are refundable only within the refund window
        after assignment.

        Raises:
            NotFound: If the order is not active
        """
        with self._lock:
            order = self._orders.get(order_id)
            if order is None:
                raise NotFound(f"Unknown order {order_id}")

            now = self.clock.now()
            previous = order.status
            driver_id = None
            if previous == OrderStatus.PENDING:
                self.queue.remove(order_id)
                refund = True
            else:
                assignment = order.assignment
                driver_id = assignment.driver_id
                self._cancel_outcome(order_id)
                self.drivers.detach_order(driver_id, order_id)
                window = timedelta(minutes=self.config.refund_window_minutes)
                refund = now - assignment.assigned_at <= window

            order.status = OrderStatus.CANCELLED
            order.updated_at = now
            order.assignment = None
            del self._orders[order_id]
            self.total_cancelled += 1

            logger.info(f"Order {order_id} cancelled ({previous.value}, refund={refund})")
            self.events.publish(EventType.ORDER_CANCELLED, {
                "order_id": order_id,
                "driver_id": driver_id,
                "reason": reason,
                "refund_eligible": refund,
            }, now)

        return CancelResult(
            order_id=order_id,
            refund_eligible=refund,
            previous_status=previous,
            cancelled_at=now,
            reason=reason,
            driver_id=driver_id,
        )

    def complete_order(self, order_id: str, completion_data: Optional[Dict[str, Any]] = None) -> CompletionInfo:
        """
        Mark an assigned order as delivered.

        Args:
            order_id: Order to complete
            completion_data: Optional ``rating`` (1-5), ``signature`` and ``comments``

        Raises:
            NotFound: If the order is not active
            InvalidInput: If the order has no active assignment or the rating is invalid
        """
        data = completion_data or {}
        rating = data.get("rating")
        if rating is not None:
            if isinstance(rating, bool) or not isinstance(rating, (int, float)) or not 1 <= rating <= 5:
                raise InvalidInput(f"Rating must be between 1 and 5, got {rating!r}")

        with self._lock:
            order = self._orders.get(order_id)
            if order is None:
                raise NotFound(f"Unknown order {order_id}")
            if order.assignment is None or order.status not in (OrderStatus.ASSIGNED, OrderStatus.IN_TRANSIT):
                raise InvalidInput(f"Order {order_id} has no active assignment")

            now = self.clock.now()
            driver_id = order.assignment.driver_id
            self._cancel_outcome(order_id)
            self.drivers.record_completion(driver_id, order_id, rating)

            info = CompletionInfo(
                order_id=order_id,
                driver_id=driver_id,
                completed_at=now,
                delivery_minutes=(now - order.assignment.assigned_at).total_seconds() / 60,
                rating=rating,
                signature=data.get("signature"),
                comments=data.get("comments"),
            )
            order.status = OrderStatus.COMPLETED
            order.updated_at = now
            order.completion = {
                "completed_at": now,
                "driver_id": driver_id,
                "rating": rating,
                "signature": info.signature,
                "comments": info.comments,
            }
            del self._orders[order_id]
            self.total_completed += 1

            logger.info(f"Order {order_id} completed by {driver_id} in {info.delivery_minutes:.1f} min")
            self.events.publish(EventType.ORDER_COMPLETED, {
                "order_id": order_id,
                "driver_id": driver_id,
                "rating": rating,
            }, now)
        return info

    # -------------------------------------------------------------------------
    # Driver commands
    # -------------------------------------------------------------------------

    def update_driver_position(self, driver_id: str, position: Point) -> bool:
        """
        Move a driver and refresh tracking of the orders it carries.

        Returns:
            False (with a warning) if the driver is unknown
        """
        with self._lock:
            now = self.clock.now()
            if not self.drivers.update_position(driver_id, position, now):
                return False
            driver = self.drivers.get(driver_id)
            for order_id in driver.active_orders:
                order = self._orders.get(order_id)
                if order is not None and order.tracking is not None:
                    order.tracking.current_location = driver.position
                    order.tracking.updated_at = now
        return True

    def update_driver_status(self, driver_id: str, status: Any) -> bool:
        """
        Change a driver's status. Going offline puts its active orders back
        at the head of the queue as pending.

        Returns:
            False (with a warning) if the driver is unknown
        """
        try:
            status = status if isinstance(status, DriverStatus) else DriverStatus(str(status).lower())
        except ValueError:
            raise InvalidInput(f"Unknown driver status {status!r}") from None

        with self._lock:
            if driver_id not in self.drivers:
                logger.warning(f"Status update for unknown driver {driver_id}")
                return False
            orphaned = self.drivers.update_status(driver_id, status, self.clock.now())
            requeue = []
            for order_id in orphaned:
                order = self._orders.get(order_id)
                if order is None:
                    continue
                self._cancel_outcome(order_id)
                self._revert_to_pending(order)
                requeue.append(order)
            self.queue.restore(requeue)
            if requeue:
                logger.info(f"Re-queued {len(requeue)} orders from offline driver {driver_id}")
        return True

    # -------------------------------------------------------------------------
    # Matching
    # -------------------------------------------------------------------------

    def matching_policy(self) -> MatchingPolicy:
        return MatchingPolicy.from_config(self.config, self.matching_radius_km)

    def run_matching_tick(self) -> TickResult:
        """
        Match one batch of queued orders.

        Returns immediately with ``skipped=True`` if another tick is in flight.
        """
        if not self._tick_lock.acquire(blocking=False):
            logger.debug("Matching tick already running, skipped")
            return TickResult(skipped=True)
        try:
            started = time.perf_counter()
            eta_requests: List[Tuple[Order, Point, int]] = []
            with self._lock:
                batch = self.queue.dequeue(self.config.batch_size)
                if not batch:
                    return TickResult()

                candidates = self.drivers.available_drivers()
                matches = self.matcher.match(batch, candidates, self.matching_policy())

                assigned: List[str] = []
                for match in matches:
                    if not self.drivers.has_capacity(match.driver) or match.order.order_id in assigned:
                        continue
                    assignment = self._assign(match.order, match.driver, match.score)
                    eta_requests.append((match.order, match.driver.position, assignment.token))
                    assigned.append(match.order.order_id)

                unmatched = [o for o in batch if o.order_id not in assigned]
                self.queue.restore(unmatched)

            for order, position, token in eta_requests:
                self._request_eta(order, position, token)

            result = TickResult(
                considered=len(batch),
                assigned=assigned,
                unmatched=[o.order_id for o in unmatched],
                elapsed_seconds=time.perf_counter() - started,
            )
            logger.debug(
                f"Matching tick: {len(assigned)}/{len(batch)} assigned "
                f"against {len(candidates)} drivers in {result.elapsed_seconds * 1000:.1f} ms"
            )
            return result
        finally:
            self._tick_lock.release()

    def assign(self, order: Order, driver: Driver, score: float) -> Assignment:
        """
        Assign an order to a driver.

        The order is confirmed immediately. The ETA is submitted to the
        executor after the engine lock is released and the driver's answer
        arrives after a random delay.

        Raises:
            InvalidInput: If the driver is offline or at capacity
        """
        assignment = self._assign(order, driver, score)
        self._request_eta(order, driver.position, assignment.token)
        return assignment

    def _assign(self, order: Order, driver: Driver, score: float) -> Assignment:
        with self._lock:
            now = self.clock.now()
            self.drivers.attach_order(driver.driver_id, order.order_id)
            self.queue.remove(order.order_id)

            token = next(self._tokens)
            assignment = Assignment(
                order_id=order.order_id,
                driver_id=driver.driver_id,
                score=score,
                assigned_at=now,
                token=token,
            )
            order.assignment = assignment
            order.status = OrderStatus.ASSIGNED
            order.updated_at = now
            order.tracking = TrackingInfo(current_location=driver.position, updated_at=now)
            self._orders.setdefault(order.order_id, order)

            self.total_matched += 1
            if order.created_at is not None:
                self._match_seconds_total += (now - order.created_at).total_seconds()
                self._match_count += 1

            logger.info(f"Order {order.order_id} assigned to {driver.driver_id} (score {score:.1f})")
            self.events.publish(EventType.ORDER_ASSIGNED, {
                "order_id": order.order_id,
                "driver_id": driver.driver_id,
                "score": score,
            }, now)

            delay = self.rng.uniform(*self.config.outcome_delay_seconds)
            self._outcomes[order.order_id] = self.scheduler.call_later(
                delay, self._resolve_outcome, order.order_id, token
            )
        return assignment

    def _resolve_outcome(self, order_id: str, token: int) -> None:
        with self._lock:
            order = self._orders.get(order_id)
            if (
                order is None
                or order.assignment is None
                or order.assignment.token != token
                or order.status != OrderStatus.ASSIGNED
            ):
                logger.debug(f"Discarding stale outcome for order {order_id}")
                return
            self._outcomes.pop(order_id, None)

            now = self.clock.now()
            driver_id = order.assignment.driver_id
            driver = self.drivers.get(driver_id)
            reliability = self.config.default_reliability
            if driver is not None and driver.reliability is not None:
                reliability = driver.reliability

            if self.rng.random() < reliability:
                order.status = OrderStatus.IN_TRANSIT
                order.assignment.accepted_at = now
                order.updated_at = now
                logger.info(f"Driver {driver_id} accepted order {order_id}")
                self.events.publish(EventType.DRIVER_ACCEPTED_ORDER, {
                    "order_id": order_id,
                    "driver_id": driver_id,
                }, now)
                return

            self.drivers.detach_order(driver_id, order_id)
            self._revert_to_pending(order)
            order.rejection_count += 1
            self.total_rejected += 1
            self.queue.requeue_at_head(order)
            logger.warning(f"Driver {driver_id} rejected order {order_id} (rejection #{order.rejection_count})")
            self.events.publish(EventType.DRIVER_REJECTED_ORDER, {
                "order_id": order_id,
                "driver_id": driver_id,
                "rejection_count": order.rejection_count,
            }, now)

    def _revert_to_pending(self, order: Order) -> None:
        order.status = OrderStatus.PENDING
        order.assignment = None
        order.tracking = None
        order.updated_at = self.clock.now()

    def _cancel_outcome(self, order_id: str) -> None:
        handle = self._outcomes.pop(order_id, None)
        if handle is not None:
            handle.cancel()

    # -------------------------------------------------------------------------
    # ETA
    # -------------------------------------------------------------------------

    def _request_eta(self, order: Order, driver_position: Point, token: int) -> None:
        try:
            future = self.executor.submit(
                self._compute_eta, order.order_id, token, driver_position, order.pickup, order.delivery
            )
        except RuntimeError as e:
            logger.warning(f"Cannot schedule ETA for order {order.order_id}: {e}")
            return
        future.add_done_callback(self._log_eta_failure)

    @staticmethod
    def _log_eta_failure(future: Future) -> None:
        if not future.cancelled() and future.exception() is not None:
            logger.error(f"ETA computation failed: {future.exception()!r}")

    def _compute_eta(self, order_id: str, token: int, driver_position: Point, pickup: Point, delivery: Point) -> None:
        started = self.clock.now()
        degraded = False
        try:
            to_pickup = self.planner.plan_route(driver_position, pickup)
            to_delivery = self.planner.plan_route(pickup, delivery)
            pickup_km, pickup_min = to_pickup.distance_km, to_pickup.duration_min
            delivery_km, delivery_min = to_delivery.distance_km, to_delivery.duration_min
        except DispatchError as e:
            logger.warning(f"Degraded ETA for order {order_id}, using straight-line estimate: {e}")
            speed = self.config.fallback_speed_kmh
            road = self.config.use_road_distance
            first = estimate_arrival_time([driver_position, pickup], speed, started, road)
            second = estimate_arrival_time([pickup, delivery], speed, started, road)
            pickup_km, pickup_min = first.distance_km, first.duration_min
            delivery_km, delivery_min = second.distance_km, second.duration_min
            degraded = True

        with self._lock:
            order = self._orders.get(order_id)
            if order is None or order.assignment is None or order.assignment.token != token:
                logger.debug(f"Discarding ETA for order {order_id}, assignment changed")
                return
            tracking = order.tracking or TrackingInfo()
            tracking.estimated_pickup_at = started + timedelta(minutes=pickup_min)
            tracking.estimated_arrival_at = started + timedelta(minutes=pickup_min + delivery_min)
            tracking.distance_to_pickup_km = pickup_km
            tracking.distance_to_delivery_km = delivery_km
            tracking.degraded = degraded
            tracking.updated_at = started
            order.tracking = tracking

            self.events.publish(EventType.ORDER_ETA_UPDATED, {
                "order_id": order_id,
                "estimated_pickup_at": tracking.estimated_pickup_at,
                "estimated_arrival_at": tracking.estimated_arrival_at,
                "degraded": degraded,
            }, started)

    # -------------------------------------------------------------------------
    # Traffic
    # -------------------------------------------------------------------------

    def traffic_tick(self) -> TrafficUpdate:
        return self.traffic.tick(self.clock.now())

    def _on_traffic_update(self, update: TrafficUpdate) -> None:
        with self._lock:
            if update.scheduled:
                default = self.config.default_matching_radius_km
                if update.is_peak_hour:
                    self.matching_radius_km = default * self.config.peak_radius_factor
                else:
                    self.matching_radius_km = default
            self.events.publish(EventType.TRAFFIC_UPDATED, {
                "is_peak_hour": update.is_peak_hour,
                "congested_ratio": update.congested_ratio,
                "matching_radius_km": self.matching_radius_km,
            }, update.timestamp)

    # -------------------------------------------------------------------------
    # Statistics
    # -------------------------------------------------------------------------

    def get_statistics(self) -> Statistics:
        with self._lock:
            now = self.clock.now()
            counts = self.drivers.count_by_status()
            queued = len(self.queue)
            total = self.total_matched + self.total_rejected + queued
            return Statistics(
                queue_length=queued,
                assigned_orders=sum(
                    1 for o in self._orders.values()
                    if o.status in (OrderStatus.ASSIGNED, OrderStatus.IN_TRANSIT)
                ),
                available_drivers=counts[DriverStatus.AVAILABLE],
                busy_drivers=counts[DriverStatus.BUSY],
                offline_drivers=counts[DriverStatus.OFFLINE],
                avg_wait_minutes=self.queue.wait_minutes(now),
                matching_rate=self.total_matched / total if total else 1.0,
                total_matched=self.total_matched,
                total_rejected=self.total_rejected,
                total_completed=self.total_completed,
                total_cancelled=self.total_cancelled,
                avg_match_seconds=self._match_seconds_total / self._match_count if self._match_count else 0.0,
                matching_radius_km=self.matching_radius_km,
                last_update=now,
            )

    # -------------------------------------------------------------------------
    # Service mode
    # -------------------------------------------------------------------------

    def start(self) -> None:
        """Start the periodic matching and traffic loops."""
        with self._lock:
            if self.running:
                return
            if self._owns_executor and self._executor_closed:
                self.executor = self._build_executor()
                self._executor_closed = False
            self._loops = [
                self.scheduler.call_every(self.config.matching_interval_seconds, self.run_matching_tick, "matching"),
                self.scheduler.call_every(self.config.traffic_update_interval_seconds, self.traffic_tick, "traffic"),
            ]
            self.running = True
        logger.info(
            f"Engine started: matching every {self.config.matching_interval_seconds}s, "
            f"traffic every {self.config.traffic_update_interval_seconds}s"
        )

    def stop(self) -> None:
        """
        Stop the loops, cancel pending outcomes and shut the route workers down.

        Route workers the engine built itself are rebuilt by the next ``start``;
        an injected executor is left to its owner.
        """
        with self._lock:
            for handle in self._loops:
                handle.cancel()
            self._loops = []
            for order_id in list(self._outcomes):
                self._cancel_outcome(order_id)
            self.running = False
        self.scheduler.shutdown()
        if self._owns_executor:
            self.executor.shutdown(wait=False)
            self._executor_closed = True
        logger.info("Engine stopped")
