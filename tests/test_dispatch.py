import unittest
from datetime import timedelta

from fleetdispatch.dispatch import (
    MATCHERS,
    BatchGreedyMatcher,
    Matcher,
    SequentialMatcher,
    get_matcher,
)
from fleetdispatch.models import CargoClass
from fleetdispatch.scoring import MatchingPolicy

from tests.helpers import GRADED, START, make_driver, make_order, offset


class BatchGreedyMatcherTest(unittest.TestCase):
    def setUp(self):
        self.matcher = BatchGreedyMatcher()
        self.policy = MatchingPolicy()

    def test_urgent_order_goes_first(self):
        routine = make_order("O1", created_at=START)
        urgent = make_order("O2", created_at=START + timedelta(minutes=5), urgent=True)
        driver = make_driver()

        matches = self.matcher.match([routine, urgent], [driver], self.policy)
        self.assertEqual(len(matches), 1)
        self.assertEqual(matches[0].order.order_id, "O2")

    def test_oldest_order_first_among_equals(self):
        newer = make_order("O1", created_at=START + timedelta(minutes=2))
        older = make_order("O2", created_at=START)
        matches = self.matcher.match([newer, older], [make_driver()], self.policy)
        self.assertEqual(matches[0].order.order_id, "O2")

    def test_each_driver_used_once_per_batch(self):
        orders = [make_order(f"O{i}", created_at=START + timedelta(seconds=i)) for i in range(3)]
        drivers = [make_driver("D1"), make_driver("D2", position=offset(1.0, 1.0))]

        matches = self.matcher.match(orders, drivers, self.policy)
        self.assertEqual(len(matches), 2)
        self.assertEqual(len({m.driver.driver_id for m in matches}), 2)

    def test_best_driver_wins(self):
        order = make_order(pickup=offset(0, 0), created_at=START)
        far = make_driver("far", position=offset(3.0, 0), reliability=0.0)
        near = make_driver("near", position=offset(0.2, 0), reliability=0.0)
        matches = self.matcher.match([order], [far, near], GRADED)
        self.assertEqual(matches[0].driver.driver_id, "near")

    def test_ties_broken_by_registration_order(self):
        order = make_order(created_at=START)
        matches = self.matcher.match([order], [make_driver("D1"), make_driver("D2")], self.policy)
        self.assertEqual(matches[0].driver.driver_id, "D1")

    def test_infeasible_order_is_left_out(self):
        order = make_order(cargo_class=CargoClass.LARGE, created_at=START)
        driver = make_driver(vehicle=CargoClass.SMALL)
        self.assertEqual(self.matcher.match([order], [driver], self.policy), [])

    def test_scores_are_positive(self):
        orders = [make_order(f"O{i}", created_at=START) for i in range(4)]
        drivers = [make_driver(f"D{i}", position=offset(i * 0.5, 0)) for i in range(4)]
        for match in self.matcher.match(orders, drivers, self.policy):
            self.assertGreater(match.score, 0)

    def test_empty_inputs(self):
        self.assertEqual(self.matcher.match([], [make_driver()], self.policy), [])
        self.assertEqual(self.matcher.match([make_order()], [], self.policy), [])


class SequentialMatcherTest(unittest.TestCase):
    def test_driver_takes_orders_up_to_limit(self):
        orders = [make_order(f"O{i}", created_at=START) for i in range(4)]
        policy = MatchingPolicy(max_orders_per_driver=3)

        matches = SequentialMatcher().match(orders, [make_driver()], policy)
        self.assertEqual([m.order.order_id for m in matches], ["O0", "O1", "O2"])

    def test_load_spreads_work(self):
        orders = [make_order(f"O{i}", created_at=START) for i in range(2)]
        drivers = [make_driver("D1", reliability=0.0), make_driver("D2", reliability=0.0)]
        matches = SequentialMatcher().match(orders, drivers, GRADED)
        self.assertEqual([m.driver.driver_id for m in matches], ["D1", "D2"])


class MatcherRegistryTest(unittest.TestCase):
    def test_get_matcher(self):
        self.assertIsInstance(get_matcher("batch"), BatchGreedyMatcher)
        self.assertIsInstance(get_matcher("sequential"), SequentialMatcher)
        self.assertEqual(sorted(MATCHERS), ["batch", "sequential"])

    def test_unknown_matcher(self):
        with self.assertRaises(ValueError):
            get_matcher("hungarian")

    def test_base_matcher_is_abstract(self):
        with self.assertRaises(NotImplementedError):
            Matcher().match([], [], MatchingPolicy())


if __name__ == "__main__":
    unittest.main()
