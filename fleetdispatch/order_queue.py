# fleet-dispatch/fleetdispatch/order_queue.py
"""
FIFO queue of pending orders.

Orders leave the queue in batches for a matching tick. Whatever the tick
could not place goes back to the head in its original order, and an order
rejected by its driver goes back to the head on its own. Urgency is not a
storage concern: matchers sort each batch urgent-first.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from datetime import datetime
from typing import Deque, Iterable, List, Optional

from .errors import InvalidInput
from .models import Order

logger = logging.getLogger(__name__)


class OrderQueue:
    """Thread-safe FIFO of pending orders with head re-insertion."""

    def __init__(self) -> None:
        self._orders: Deque[Order] = deque()
        self._lock = threading.Lock()

    def enqueue(self, order: Order) -> int:
        """
        Append an order at the tail.

        Returns:
            1-based queue position of the order
        """
        with self._lock:
            if any(o.order_id == order.order_id for o in self._orders):
                raise InvalidInput(f"Order {order.order_id} is already queued")
            self._orders.append(order)
            return len(self._orders)

    def dequeue(self, batch_size: int) -> List[Order]:
        """Remove and return up to ``batch_size`` orders from the head."""
        with self._lock:
            count = min(max(batch_size, 0), len(self._orders))
            return [self._orders.popleft() for _ in range(count)]

    def requeue_at_head(self, order: Order) -> None:
        """Put one order back at the head. Its ``created_at`` is left untouched."""
        with self._lock:
            if any(o.order_id == order.order_id for o in self._orders):
                logger.debug(f"Order {order.order_id} already queued, not requeued")
                return
            self._orders.appendleft(order)

    def restore(self, orders: Iterable[Order]) -> None:
        """Put a batch of orders back at the head, keeping their relative order."""
        with self._lock:
            queued = {o.order_id for o in self._orders}
            for order in reversed(list(orders)):
                if order.order_id not in queued:
                    self._orders.appendleft(order)

    def remove(self, order_id: str) -> Optional[Order]:
        with self._lock:
            for order in self._orders:
                if order.order_id == order_id:
                    self._orders.remove(order)
                    return order
        return None

    def get(self, order_id: str) -> Optional[Order]:
        with self._lock:
            for order in self._orders:
                if order.order_id == order_id:
                    return order
        return None

    def position(self, order_id: str) -> Optional[int]:
        """1-based position of an order, or None if it is not queued."""
        with self._lock:
            for i, order in enumerate(self._orders, start=1):
                if order.order_id == order_id:
                    return i
        return None

    def snapshot(self) -> List[Order]:
        with self._lock:
            return list(self._orders)

    def wait_minutes(self, now: datetime) -> float:
        """Mean time the queued orders have waited so far, in minutes."""
        with self._lock:
            waits = [(now - o.created_at).total_seconds() / 60 for o in self._orders if o.created_at]
        return sum(waits) / len(waits) if waits else 0.0

    def __len__(self) -> int:
        return len(self._orders)

    def __contains__(self, order_id: str) -> bool:
        return self.position(order_id) is not None
