# fleet-dispatch/fleetdispatch/errors.py
"""
Error taxonomy for the dispatch engine.

- InvalidInput: malformed request, rejected immediately and never retried
- NotFound: unknown order or driver id, surfaced to the caller
- NoRouteFound: the road graph cannot connect two points

An infeasible order (no driver scores above zero) is not an error: the order
stays queued and is retried on the next tick.
"""

from __future__ import annotations


class DispatchError(Exception):
    """Base class for all dispatch engine errors."""


class InvalidInput(DispatchError, ValueError):
    """Raised when a request is malformed."""


class NotFound(DispatchError, LookupError):
    """Raised when an order or driver id is unknown."""


class NoRouteFound(DispatchError):
    """Raised by the route planner when no path connects start and end."""
