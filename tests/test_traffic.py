import random
import unittest
from datetime import datetime

from fleetdispatch import config
from fleetdispatch.errors import NotFound
from fleetdispatch.graph import RoadNetwork
from fleetdispatch.models import RoadClass
from fleetdispatch.traffic import TrafficModel

from tests.helpers import TOP, diamond_network


class TrafficModelTest(unittest.TestCase):
    def setUp(self):
        self.network = RoadNetwork.grid(size=10)
        self.traffic = TrafficModel(self.network, random.Random(3))

    def test_initial_coefficients_follow_road_class(self):
        for edge in self.network.edges():
            low, high = config.INITIAL_TRAFFIC_RANGES[edge.road_class.value]
            value = self.traffic.coefficient(edge.edge_id)
            self.assertGreaterEqual(value, low)
            self.assertLessEqual(value, high)

    def test_tick_keeps_coefficients_in_bounds(self):
        for _ in range(50):
            self.traffic.tick(datetime(2024, 1, 15, 8, 0))
        for value in self.traffic.snapshot().values():
            self.assertGreaterEqual(value, config.MIN_TRAFFIC_COEFFICIENT)
            self.assertLessEqual(value, config.MAX_TRAFFIC_COEFFICIENT)

    def test_peak_hours_load_main_roads(self):
        off_peak = TrafficModel(self.network, random.Random(11))
        peak = TrafficModel(self.network, random.Random(11))
        for _ in range(5):
            off_peak.tick(datetime(2024, 1, 15, 12, 0))
            peak.tick(datetime(2024, 1, 15, 18, 0))

        main = [e.edge_id for e in self.network.edges() if e.road_class == RoadClass.MAIN]
        peak_mean = sum(peak.coefficient(e) for e in main) / len(main)
        off_peak_mean = sum(off_peak.coefficient(e) for e in main) / len(main)
        self.assertGreater(peak_mean, off_peak_mean)

    def test_is_peak_hour(self):
        self.assertTrue(self.traffic.is_peak_hour(7))
        self.assertTrue(self.traffic.is_peak_hour(9))
        self.assertTrue(self.traffic.is_peak_hour(19))
        self.assertFalse(self.traffic.is_peak_hour(10))
        self.assertFalse(self.traffic.is_peak_hour(16))

    def test_tick_notifies_listeners(self):
        updates = []
        self.traffic.add_listener(updates.append)
        update = self.traffic.tick(datetime(2024, 1, 15, 8, 30))
        self.assertEqual(updates, [update])
        self.assertTrue(update.is_peak_hour)
        self.assertTrue(update.scheduled)

    def test_failing_listener_does_not_stop_others(self):
        received = []

        def broken(update):
            raise RuntimeError("boom")

        self.traffic.add_listener(broken)
        self.traffic.add_listener(received.append)
        with self.assertLogs("fleetdispatch.traffic", level="ERROR"):
            self.traffic.tick(datetime(2024, 1, 15, 12, 0))
        self.assertEqual(len(received), 1)

    def test_version_increases_on_every_change(self):
        version = self.traffic.version
        self.traffic.tick(datetime(2024, 1, 15, 12, 0))
        self.traffic.set_coefficient(self.network.edge_ids()[0], 2.0)
        self.assertEqual(self.traffic.version, version + 2)


class CoefficientTest(unittest.TestCase):
    def setUp(self):
        self.traffic = TrafficModel(diamond_network(), random.Random(1), randomize=False)

    def test_uniform_start_when_not_randomized(self):
        self.assertEqual(set(self.traffic.snapshot().values()), {1.0})

    def test_set_coefficient_clamps(self):
        self.assertEqual(self.traffic.set_coefficient("A-B1", 10.0), config.MAX_TRAFFIC_COEFFICIENT)
        self.assertEqual(self.traffic.set_coefficient("A-B1", 0.1), config.MIN_TRAFFIC_COEFFICIENT)

    def test_set_coefficient_notifies_as_unscheduled(self):
        updates = []
        self.traffic.add_listener(updates.append)
        self.traffic.set_coefficient("A-B1", 2.0)
        self.assertFalse(updates[0].scheduled)
        self.assertEqual(updates[0].changed_edges, ["A-B1"])

    def test_unknown_edge(self):
        with self.assertRaises(NotFound):
            self.traffic.coefficient("nope")
        with self.assertRaises(NotFound):
            self.traffic.set_coefficient("nope", 1.0)

    def test_congestion_ratio(self):
        self.traffic.set_coefficient("A-B1", 2.0)
        self.traffic.set_coefficient("B1-C1", 1.6)
        self.assertAlmostEqual(self.traffic.congestion_ratio(), 2 / 6)
        self.assertAlmostEqual(self.traffic.congestion_ratio(TOP), 2 / 3)
        self.assertEqual(self.traffic.congestion_ratio([]), 0.0)

    def test_threshold_is_exclusive(self):
        self.traffic.set_coefficient("A-B1", config.CONGESTION_THRESHOLD)
        self.assertEqual(self.traffic.congestion_ratio(), 0.0)


if __name__ == "__main__":
    unittest.main()
