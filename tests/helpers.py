import math
import random
from concurrent.futures import Future
from datetime import datetime

from fleetdispatch.config import DispatchConfig
from fleetdispatch.engine import Engine
from fleetdispatch.graph import RoadNetwork
from fleetdispatch.models import CargoClass, Driver, Order
from fleetdispatch.runtime import InlineExecutor, SimulatedClock, SimulatedScheduler
from fleetdispatch.scoring import MatchingPolicy

START = datetime(2024, 1, 15, 12, 0, 0)
CENTER = (116.4074, 39.9042)

TOP = ["A-B1", "B1-C1", "C1-D"]
BOTTOM = ["A-B2", "B2-C2", "C2-D"]

# Scores stay below the 100 cap (50 + 30 + 20 at most), so distance and load
# differences show up in the ranking.
GRADED = MatchingPolicy(distance_weight=0.3, rating_weight=0.0, load_weight=0.2)


def offset(dx_km, dy_km, origin=CENTER):
    """Point ``dx_km`` east and ``dy_km`` north of ``origin``."""
    lat = origin[1] + dy_km / 111.32
    lon = origin[0] + dx_km / (111.32 * math.cos(math.radians(origin[1])))
    return (lon, lat)


def diamond_network():
    """
    Two parallel three-edge paths from A to D, every edge 1 km
    (1.5 min at 40 km/h):

        A - B1 - C1 - D   (top)
        A - B2 - C2 - D   (bottom)
    """
    network = RoadNetwork(base_speed_kmh=40)
    for node_id, position in [
        ("A", (0.0, 0.0)),
        ("B1", (0.001, 0.001)),
        ("C1", (0.002, 0.001)),
        ("D", (0.003, 0.0)),
        ("B2", (0.001, -0.001)),
        ("C2", (0.002, -0.001)),
    ]:
        network.add_node(node_id, position)
    for source, target in [("A", "B1"), ("B1", "C1"), ("C1", "D"), ("A", "B2"), ("B2", "C2"), ("C2", "D")]:
        network.add_edge(source, target, distance_km=1.0)
    return network


def make_driver(driver_id="D1", position=CENTER, vehicle=CargoClass.MEDIUM, **kwargs):
    kwargs.setdefault("reliability", 1.0)
    kwargs.setdefault("rating", 4.5)
    return Driver(driver_id=driver_id, position=position, vehicle_class=vehicle, **kwargs)


def make_order(order_id="O1", pickup=None, delivery=None, **kwargs):
    return Order(
        order_id=order_id,
        pickup=pickup or offset(0.5, 0.5),
        delivery=delivery or offset(2.0, -1.0),
        **kwargs
    )


def make_engine(config=None, matcher=None, start=START, grid_size=10, seed=7, executor=None):
    clock = SimulatedClock(start)
    scheduler = SimulatedScheduler(clock)
    network = RoadNetwork.grid(size=grid_size, center=CENTER)
    engine = Engine(
        network=network,
        config=config or DispatchConfig(),
        clock=clock,
        rng=random.Random(seed),
        scheduler=scheduler,
        executor=executor or InlineExecutor(),
        matcher=matcher,
    )
    return engine, clock, scheduler


class EventRecorder:
    """Collects every event published on a bus."""

    def __init__(self, bus):
        self.events = []
        bus.subscribe_all(self.events.append)

    def types(self):
        return [e.type for e in self.events]

    def of(self, event_type):
        return [e for e in self.events if e.type == event_type]


class DeferredExecutor:
    """Executor that holds submitted work until ``run_all`` is called."""

    def __init__(self):
        self.calls = []

    def submit(self, fn, *args, **kwargs):
        future = Future()
        self.calls.append((future, fn, args, kwargs))
        return future

    def run_all(self):
        calls, self.calls = self.calls, []
        for future, fn, args, kwargs in calls:
            future.set_result(fn(*args, **kwargs))

    def shutdown(self, wait=True):
        pass
