# fleet-dispatch/fleetdispatch/dispatch.py
"""
Matchers for the Fleet Dispatch engine.

A matcher takes one batch of pending orders and the drivers that can still
take work, and decides which order goes to which driver. Two strategies are
available:

1. **BatchGreedy** (default): Scores the full order × driver matrix, sorts
   orders urgent-first then oldest-first, and gives each order its best
   driver not yet used in this batch. Single pass, not a global optimum.

2. **Sequential**: Takes orders in queue order and gives each its best
   driver. A driver stays eligible for further orders in the same batch
   until its tentative load reaches the per-driver limit.

Orders with no positive score are left unmatched; the engine puts them back
in the queue. Any class implementing ``Matcher.match`` (for example an
assignment-optimal solver) can replace these.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Tuple

from . import scoring
from .models import Driver, Order
from .scoring import MatchingPolicy

logger = logging.getLogger(__name__)


@dataclass
class Match:
    order: Order
    driver: Driver
    score: float


def _priority_key(order: Order) -> Tuple[int, datetime]:
    # Urgent first, then oldest first
    return (0 if order.urgent else 1, order.created_at or datetime.min)


class Matcher:
    """Interface for matching strategies."""

    name = "matcher"

    def match(self, orders: List[Order], drivers: List[Driver], policy: MatchingPolicy) -> List[Match]:
        raise NotImplementedError


class BatchGreedyMatcher(Matcher):
    """
    Greedy assignment over the full score matrix.

    Each driver receives at most one order per batch.
    """

    name = "batch"

    def match(self, orders: List[Order], drivers: List[Driver], policy: MatchingPolicy) -> List[Match]:
        if not orders or not drivers:
            return []

        scores: Dict[str, List[Tuple[float, int]]] = {}
        for order in orders:
            row = []
            for index, driver in enumerate(drivers):
                score = scoring.calculate_matching_score(order, driver, policy)
                if score > 0:
                    row.append((score, index))
            # Best score first; registration order breaks ties
            row.sort(key=lambda item: (-item[0], item[1]))
            scores[order.order_id] = row

        used: set = set()
        matches: List[Match] = []
        for order in sorted(orders, key=_priority_key):
            for score, index in scores[order.order_id]:
                if index not in used:
                    used.add(index)
                    matches.append(Match(order, drivers[index], score))
                    break

        logger.debug(f"Batch matcher placed {len(matches)}/{len(orders)} orders on {len(drivers)} drivers")
        return matches


class SequentialMatcher(Matcher):
    """
    One order at a time, in queue order.

    A driver can take several orders from one batch as long as its active
    plus tentative load stays below the per-driver limit.
    """

    name = "sequential"

    def match(self, orders: List[Order], drivers: List[Driver], policy: MatchingPolicy) -> List[Match]:
        extra_load: Dict[str, int] = {}
        matches: List[Match] = []

        for order in orders:
            best = None
            best_score = 0.0
            for driver in drivers:
                score = scoring.calculate_matching_score(
                    order, driver, policy, extra_load=extra_load.get(driver.driver_id, 0)
                )
                if score > best_score:
                    best, best_score = driver, score
            if best is not None:
                extra_load[best.driver_id] = extra_load.get(best.driver_id, 0) + 1
                matches.append(Match(order, best, best_score))

        logger.debug(f"Sequential matcher placed {len(matches)}/{len(orders)} orders")
        return matches


MATCHERS = {
    BatchGreedyMatcher.name: BatchGreedyMatcher,
    SequentialMatcher.name: SequentialMatcher,
}


def get_matcher(name: str) -> Matcher:
    """Build a matcher by name ("batch" or "sequential")."""
    try:
        return MATCHERS[name]()
    except KeyError:
        raise ValueError(f"Unknown matcher: {name}. Choose from {sorted(MATCHERS)}") from None
