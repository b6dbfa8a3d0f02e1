# fleet-dispatch/fleetdispatch/drivers.py
"""
Driver pool: the registry of every driver's position, status and load.

The pool keeps the status invariant of a driver in one place:
- OFFLINE drivers hold no active orders
- An online driver is BUSY iff it holds at least one active order,
  AVAILABLE otherwise

Drivers are referenced everywhere else by id only.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import Callable, Dict, List, Optional

from . import config
from .errors import InvalidInput, NotFound
from .models import Driver, DriverStatus, Point
from .utils import is_valid_point

logger = logging.getLogger(__name__)

RATING_DECAY: float = 0.8
"""Weight kept by the old rating when a customer rating comes in."""


class DriverPool:
    """Thread-safe, id-indexed store of drivers."""

    def __init__(self, max_orders_per_driver: int = config.MAX_ORDERS_PER_DRIVER):
        self.max_orders_per_driver = max_orders_per_driver
        self._drivers: Dict[str, Driver] = {}
        self._lock = threading.RLock()

    # -------------------------------------------------------------------------
    # Registry
    # -------------------------------------------------------------------------

    def add_driver(self, driver: Driver) -> Driver:
        if not driver.driver_id:
            raise InvalidInput("Driver id is required")
        if not is_valid_point(driver.position):
            raise InvalidInput(f"Invalid position for driver {driver.driver_id}: {driver.position!r}")
        with self._lock:
            if driver.driver_id in self._drivers:
                raise InvalidInput(f"Duplicate driver id {driver.driver_id}")
            self._drivers[driver.driver_id] = driver
            self._normalize(driver)
        return driver

    def get(self, driver_id: str) -> Optional[Driver]:
        return self._drivers.get(driver_id)

    def require(self, driver_id: str) -> Driver:
        driver = self._drivers.get(driver_id)
        if driver is None:
            raise NotFound(f"Unknown driver {driver_id}")
        return driver

    def all(self) -> List[Driver]:
        with self._lock:
            return list(self._drivers.values())

    def __len__(self) -> int:
        return len(self._drivers)

    def __contains__(self, driver_id: str) -> bool:
        return driver_id in self._drivers

    # -------------------------------------------------------------------------
    # Updates
    # -------------------------------------------------------------------------

    def update_position(self, driver_id: str, position: Point, now: Optional[datetime] = None) -> bool:
        """
        Move a driver.

        Returns:
            False (with a warning) if the driver is unknown
        """
        if not is_valid_point(position):
            raise InvalidInput(f"Invalid position for driver {driver_id}: {position!r}")
        with self._lock:
            driver = self._drivers.get(driver_id)
            if driver is None:
                logger.warning(f"Position update for unknown driver {driver_id}")
                return False
            driver.position = (float(position[0]), float(position[1]))
            driver.last_update = now
        return True

    def update_status(self, driver_id: str, status: DriverStatus, now: Optional[datetime] = None) -> List[str]:
        """
        Change a driver's status.

        Going OFFLINE drops every active order from the driver. Online
        statuses are normalized against the driver's load, so asking for
        AVAILABLE while holding orders leaves the driver BUSY.

        Args:
            driver_id: Driver to update
            status: Requested status
            now: Update timestamp

        Returns:
            Ids of the orders orphaned by going offline (empty otherwise)

        Raises:
            NotFound: If the driver is unknown
        """
        with self._lock:
            driver = self.require(driver_id)
            orphaned: List[str] = []
            if status == DriverStatus.OFFLINE:
                orphaned = list(driver.active_orders)
                driver.active_orders.clear()
                driver.status = DriverStatus.OFFLINE
                if orphaned:
                    logger.warning(f"Driver {driver_id} went offline holding {len(orphaned)} orders")
            else:
                driver.status = DriverStatus.AVAILABLE
                self._normalize(driver)
            driver.last_update = now
        return orphaned

    def attach_order(self, driver_id: str, order_id: str) -> Driver:
        with self._lock:
            driver = self.require(driver_id)
            if not driver.is_online:
                raise InvalidInput(f"Driver {driver_id} is offline")
            if len(driver.active_orders) >= self.max_orders_per_driver:
                raise InvalidInput(f"Driver {driver_id} is at capacity")
            if order_id not in driver.active_orders:
                driver.active_orders.append(order_id)
            self._normalize(driver)
        return driver

    def detach_order(self, driver_id: str, order_id: str) -> bool:
        """Remove an order from a driver's active list. False if it was not there."""
        with self._lock:
            driver = self._drivers.get(driver_id)
            if driver is None or order_id not in driver.active_orders:
                return False
            driver.active_orders.remove(order_id)
            self._normalize(driver)
        return True

    def record_completion(self, driver_id: str, order_id: str, rating: Optional[float] = None) -> Driver:
        """
        Release a delivered order and fold the customer rating into the driver's.

        The new rating is ``0.8 × old + 0.2 × customer rating``, kept within [3, 5].
        """
        with self._lock:
            driver = self.require(driver_id)
            if order_id in driver.active_orders:
                driver.active_orders.remove(order_id)
            driver.completed_orders.append(order_id)
            if rating is not None:
                blended = RATING_DECAY * driver.rating + (1 - RATING_DECAY) * float(rating)
                driver.rating = min(5.0, max(3.0, blended))
            self._normalize(driver)
        return driver

    def _normalize(self, driver: Driver) -> None:
        if driver.status == DriverStatus.OFFLINE:
            driver.active_orders.clear()
            return
        driver.status = DriverStatus.BUSY if driver.active_orders else DriverStatus.AVAILABLE

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def has_capacity(self, driver: Driver) -> bool:
        return driver.is_online and len(driver.active_orders) < self.max_orders_per_driver

    def available_drivers(self, predicate: Optional[Callable[[Driver], bool]] = None) -> List[Driver]:
        """
        Drivers that can take another order: available, or busy and under capacity.

        Args:
            predicate: Optional extra filter

        Returns:
            Matching drivers in registration order
        """
        with self._lock:
            return [
                d for d in self._drivers.values()
                if self.has_capacity(d) and (predicate is None or predicate(d))
            ]

    def count_by_status(self) -> Dict[DriverStatus, int]:
        counts = {status: 0 for status in DriverStatus}
        with self._lock:
            for d in self._drivers.values():
                counts[d.status] += 1
        return counts
