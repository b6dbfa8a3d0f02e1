import copy
import io
import os
import tempfile
import unittest
from contextlib import redirect_stdout
from unittest.mock import patch

import requests

import main
from fleetdispatch.config import DispatchConfig
from fleetdispatch.models import CargoClass, DriverStatus
from fleetdispatch.simulation import DEFAULT_START, Simulation

DATA_DIR = os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "data")
ORDERS = os.path.join(DATA_DIR, "sample_orders.csv")
DRIVERS = os.path.join(DATA_DIR, "sample_drivers.csv")


class LoadDataTest(unittest.TestCase):
    def test_load_sample_data(self):
        drivers, orders = Simulation.load_data(ORDERS, DRIVERS)
        self.assertEqual(len(orders), 12)
        self.assertEqual(len(drivers), 5)

        large = next(o for o in orders if o.order_id == "O005")
        self.assertEqual(large.cargo_class, CargoClass.LARGE)
        self.assertEqual(large.weight_kg, 300.0)
        self.assertEqual(large.created_at, DEFAULT_START.replace(minute=5, second=20))
        self.assertTrue(next(o for o in orders if o.order_id == "O003").urgent)

        d005 = next(d for d in drivers if d.driver_id == "D005")
        self.assertEqual(d005.vehicle_class, CargoClass.LARGE)
        self.assertEqual(d005.capacity_kg, 1000.0)
        self.assertEqual(d005.status, DriverStatus.AVAILABLE)

    def test_missing_file(self):
        with self.assertRaises(FileNotFoundError):
            Simulation.load_data("missing.csv", DRIVERS)
        with self.assertRaises(FileNotFoundError):
            Simulation.load_data(ORDERS, "missing.csv")

    def test_malformed_rows(self):
        with tempfile.TemporaryDirectory() as tmp:
            bad_orders = os.path.join(tmp, "orders.csv")
            with open(bad_orders, "w") as f:
                f.write("order_id,pickup_lon,pickup_lat,delivery_lon,delivery_lat,created_time\n")
                f.write("X1,abc,39.9,116.4,39.9,17:00:00\n")
            with self.assertRaises(ValueError):
                Simulation.load_data(bad_orders, DRIVERS)

            bad_drivers = os.path.join(tmp, "drivers.csv")
            with open(bad_drivers, "w") as f:
                f.write("driver_id,lon\n")
                f.write("D1,116.4\n")
            with self.assertRaises(ValueError):
                Simulation.load_data(ORDERS, bad_drivers)

    def test_optional_columns_default(self):
        with tempfile.TemporaryDirectory() as tmp:
            orders_file = os.path.join(tmp, "orders.csv")
            with open(orders_file, "w") as f:
                f.write("order_id,pickup_lon,pickup_lat,delivery_lon,delivery_lat,created_time\n")
                f.write("X1,116.40,39.90,116.41,39.91,2024-02-01 09:30:00\n")
            _, orders = Simulation.load_data(orders_file, DRIVERS)

        self.assertEqual(orders[0].cargo_class, CargoClass.SMALL)
        self.assertFalse(orders[0].urgent)
        self.assertEqual(orders[0].created_at.year, 2024)
        self.assertEqual(orders[0].created_at.hour, 9)


class SimulationRunTest(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls.drivers, cls.orders = Simulation.load_data(ORDERS, DRIVERS)

    def run_sim(self, matcher="batch", seed=42):
        sim = Simulation(copy.deepcopy(self.drivers), copy.deepcopy(self.orders), matcher=matcher, seed=seed)
        return sim, sim.run(minutes=180, verbose=False)

    def test_every_order_delivered(self):
        sim, results = self.run_sim()
        self.assertEqual(results["orders_delivered"], 12)
        self.assertEqual(results["Orders Delivered"], "12/12")
        self.assertEqual(results["still_queued"], 0)
        self.assertGreater(results["total_fleet_distance_km"], 0)
        self.assertFalse(sim.engine.running)

    def test_large_order_goes_to_large_vehicle(self):
        sim, _ = self.run_sim()
        mission = next(m for m in sim.completed_missions if m["order_id"] == "O005")
        self.assertEqual(mission["driver_id"], "D005")

    def test_run_is_deterministic(self):
        _, first = self.run_sim(seed=7)
        _, second = self.run_sim(seed=7)
        self.assertEqual(first, second)

    def test_sequential_matcher(self):
        _, results = self.run_sim(matcher="sequential")
        self.assertEqual(results["orders_delivered"], 12)

    def test_unknown_matcher(self):
        with self.assertRaises(ValueError):
            Simulation([], [], matcher="hungarian")

    @patch("fleetdispatch.utils.requests.get", side_effect=requests.exceptions.ConnectionError("offline"))
    def test_verbose_run_reports_road_distance_cache(self, _get):
        sim = Simulation(
            copy.deepcopy(self.drivers), copy.deepcopy(self.orders),
            seed=42, dispatch_config=DispatchConfig(use_road_distance=True),
        )
        out = io.StringIO()
        with redirect_stdout(out):
            sim.run(minutes=30, verbose=True)
        self.assertRegex(out.getvalue(), r"Distance cache populated: \d+ entries")


class CliTest(unittest.TestCase):
    def run_main(self, argv):
        out = io.StringIO()
        with redirect_stdout(out):
            code = main.main(argv)
        return code, out.getvalue()

    def test_compare_matchers(self):
        code, output = self.run_main(["--matchers", "batch", "sequential", "--minutes", "120"])
        self.assertEqual(code, 0)
        self.assertIn("FINAL RESULTS COMPARISON", output)
        self.assertIn("Orders Delivered", output)
        self.assertIn("Sequential", output)

    @patch("fleetdispatch.utils.requests.get", side_effect=requests.exceptions.ConnectionError("offline"))
    @patch("main.clear_osrm_cache")
    def test_road_distance_starts_each_run_cold(self, clear_cache, _get):
        code, _ = self.run_main(["--matchers", "batch", "sequential", "--minutes", "60", "--road-distance"])
        self.assertEqual(code, 0)
        self.assertEqual(clear_cache.call_count, 2)

    def test_unknown_matcher(self):
        code, output = self.run_main(["--matchers", "hungarian"])
        self.assertEqual(code, 1)
        self.assertIn("Unknown matcher", output)

    def test_missing_data(self):
        code, output = self.run_main(["--orders", "missing.csv"])
        self.assertEqual(code, 1)
        self.assertIn("Failed to load data", output)


if __name__ == "__main__":
    unittest.main()
