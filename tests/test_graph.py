import unittest

from fleetdispatch import config
from fleetdispatch.errors import InvalidInput
from fleetdispatch.graph import RoadNetwork
from fleetdispatch.models import RoadClass

from tests.helpers import diamond_network


class RoadNetworkTest(unittest.TestCase):
    def setUp(self):
        self.network = diamond_network()

    def test_edges_are_bidirectional(self):
        self.assertIn(("A-B1", "A"), self.network.neighbors("B1"))
        self.assertIn(("A-B1", "B1"), self.network.neighbors("A"))

    def test_base_time_derives_from_base_speed(self):
        edge = self.network.get_edge("A-B1")
        self.assertAlmostEqual(edge.base_time_min, 1.0 / 40 * 60)

    def test_edge_distance_defaults_to_haversine(self):
        network = RoadNetwork()
        network.add_node("a", (116.40, 39.90))
        network.add_node("b", (116.40, 39.91))
        edge = network.add_edge("a", "b")
        self.assertAlmostEqual(edge.distance_km, 1.112, places=2)

    def test_edge_to_unknown_node_rejected(self):
        with self.assertRaises(InvalidInput):
            self.network.add_edge("A", "Z")

    def test_invalid_node_position_rejected(self):
        with self.assertRaises(InvalidInput):
            self.network.add_node("bad", (200.0, 0.0))

    def test_nearest_node(self):
        self.assertEqual(self.network.nearest_node((0.0029, 0.0001)).node_id, "D")

    def test_nearest_node_on_empty_graph(self):
        self.assertIsNone(RoadNetwork().nearest_node((0.0, 0.0)))

    def test_unknown_lookups_return_none(self):
        self.assertIsNone(self.network.get_node("Z"))
        self.assertIsNone(self.network.get_edge("Z-A"))
        self.assertEqual(self.network.neighbors("Z"), [])


class GridNetworkTest(unittest.TestCase):
    def test_grid_shape(self):
        network = RoadNetwork.grid(size=5)
        self.assertEqual(len(network), 25)
        self.assertEqual(len(network.edge_ids()), 2 * 5 * 4)

    def test_grid_edge_length(self):
        network = RoadNetwork.grid(size=3, spacing_deg=0.005)
        edge = network.get_edge("0_0-0_1")
        self.assertAlmostEqual(edge.distance_km, 0.005 * config.KM_PER_DEGREE)

    def test_grid_road_classes(self):
        network = RoadNetwork.grid(size=8)
        self.assertEqual(network.get_edge("0_1-0_2").road_class, RoadClass.MAIN)
        self.assertEqual(network.get_edge("3_1-3_2").road_class, RoadClass.SECONDARY)
        self.assertEqual(network.get_edge("1_1-1_2").road_class, RoadClass.LOCAL)

    def test_grid_is_centered(self):
        network = RoadNetwork.grid(size=20, center=(116.4074, 39.9042))
        node = network.get_node("10_10")
        self.assertAlmostEqual(node.position[0], 116.4074)
        self.assertAlmostEqual(node.position[1], 39.9042)


if __name__ == "__main__":
    unittest.main()
