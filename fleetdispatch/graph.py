# fleet-dispatch/fleetdispatch/graph.py
"""
Road network graph store.

Nodes are positioned intersections; edges are bidirectional road segments
with a static length and a free-flow traversal time. Traffic coefficients are
not stored here: the TrafficModel owns them, keyed by edge id.

``RoadNetwork.grid`` builds the square lattice network used for simulation.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional, Tuple

from . import config
from .errors import InvalidInput
from .models import Point, RoadClass
from .utils import haversine_distance, is_valid_point

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Node:
    node_id: str
    position: Point


@dataclass
class Edge:
    """
    A bidirectional road segment.

    Attributes:
        edge_id: Unique identifier
        source: One endpoint node id
        target: The other endpoint node id
        distance_km: Segment length
        base_time_min: Free-flow traversal time (distance / base speed)
        road_class: MAIN, SECONDARY or LOCAL
    """
    edge_id: str
    source: str
    target: str
    distance_km: float
    base_time_min: float
    road_class: RoadClass = RoadClass.LOCAL

    def other(self, node_id: str) -> str:
        return self.target if node_id == self.source else self.source


class RoadNetwork:
    """In-memory road graph with adjacency lists."""

    def __init__(self, base_speed_kmh: float = config.BASE_SPEED_KMH):
        if base_speed_kmh <= 0:
            raise InvalidInput(f"base speed must be positive, got {base_speed_kmh}")
        self.base_speed_kmh = base_speed_kmh
        self._nodes: Dict[str, Node] = {}
        self._edges: Dict[str, Edge] = {}
        self._adjacency: Dict[str, List[Tuple[str, str]]] = {}

    # -------------------------------------------------------------------------
    # Mutation
    # -------------------------------------------------------------------------

    def add_node(self, node_id: str, position: Point) -> Node:
        if not is_valid_point(position):
            raise InvalidInput(f"Invalid position for node {node_id}: {position!r}")
        if node_id in self._nodes:
            raise InvalidInput(f"Duplicate node id {node_id}")
        node = Node(node_id, (float(position[0]), float(position[1])))
        self._nodes[node_id] = node
        self._adjacency[node_id] = []
        return node

    def add_edge(
        self,
        source: str,
        target: str,
        edge_id: Optional[str] = None,
        distance_km: Optional[float] = None,
        road_class: RoadClass = RoadClass.LOCAL,
    ) -> Edge:
        """
        Connect two existing nodes with a bidirectional edge.

        Args:
            source: Node id of one endpoint
            target: Node id of the other endpoint
            edge_id: Optional id (defaults to "source-target")
            distance_km: Segment length (defaults to the haversine distance)
            road_class: Road class, drives peak-hour traffic

        Returns:
            The created Edge
        """
        if source not in self._nodes or target not in self._nodes:
            raise InvalidInput(f"Edge references unknown node: {source} -> {target}")
        if source == target:
            raise InvalidInput(f"Self-loop on node {source}")
        edge_id = edge_id or f"{source}-{target}"
        if edge_id in self._edges:
            raise InvalidInput(f"Duplicate edge id {edge_id}")

        if distance_km is None:
            distance_km = haversine_distance(self._nodes[source].position, self._nodes[target].position)
        if distance_km < 0:
            raise InvalidInput(f"Negative edge length on {edge_id}")

        edge = Edge(
            edge_id=edge_id,
            source=source,
            target=target,
            distance_km=distance_km,
            base_time_min=distance_km / self.base_speed_kmh * 60,
            road_class=road_class,
        )
        self._edges[edge_id] = edge
        self._adjacency[source].append((edge_id, target))
        self._adjacency[target].append((edge_id, source))
        return edge

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get_node(self, node_id: str) -> Optional[Node]:
        return self._nodes.get(node_id)

    def get_edge(self, edge_id: str) -> Optional[Edge]:
        return self._edges.get(edge_id)

    def neighbors(self, node_id: str) -> List[Tuple[str, str]]:
        """(edge_id, neighbor_id) pairs for every edge touching the node."""
        return list(self._adjacency.get(node_id, []))

    def nearest_node(self, point: Point) -> Optional[Node]:
        """Closest node by haversine distance (linear scan). None on an empty graph."""
        best: Optional[Node] = None
        best_dist = float('inf')
        for node in self._nodes.values():
            d = haversine_distance(point, node.position)
            if d < best_dist:
                best, best_dist = node, d
        return best

    def nodes(self) -> Iterator[Node]:
        return iter(list(self._nodes.values()))

    def edges(self) -> Iterator[Edge]:
        return iter(list(self._edges.values()))

    def edge_ids(self) -> List[str]:
        return list(self._edges)

    def __len__(self) -> int:
        return len(self._nodes)

    def __repr__(self) -> str:
        return f"RoadNetwork(nodes={len(self._nodes)}, edges={len(self._edges)})"

    # -------------------------------------------------------------------------
    # Builders
    # -------------------------------------------------------------------------

    @classmethod
    def grid(
        cls,
        size: int = config.GRID_SIZE,
        spacing_deg: float = config.GRID_SPACING_DEG,
        center: Point = config.GRID_CENTER,
        base_speed_kmh: float = config.BASE_SPEED_KMH,
    ) -> "RoadNetwork":
        """
        Build a square lattice road network.

        Node "i_j" sits at row i, column j. Every node connects to its right
        and lower neighbour. Each edge is ``spacing_deg × KM_PER_DEGREE`` long.
        Road classes follow the lattice: rows/columns divisible by 5 are main
        roads, by 3 secondary, everything else local.

        Args:
            size: Nodes per side
            spacing_deg: Degrees between neighbouring nodes
            center: (lon, lat) of the lattice centre
            base_speed_kmh: Free-flow speed for base traversal times

        Returns:
            A RoadNetwork with size² nodes and 2·size·(size-1) edges
        """
        if size < 1:
            raise InvalidInput(f"Grid size must be positive, got {size}")
        network = cls(base_speed_kmh=base_speed_kmh)
        half = size / 2
        for i in range(size):
            for j in range(size):
                lon = center[0] + (j - half) * spacing_deg
                lat = center[1] + (i - half) * spacing_deg
                network.add_node(f"{i}_{j}", (lon, lat))

        edge_km = spacing_deg * config.KM_PER_DEGREE
        for i in range(size):
            for j in range(size):
                road_class = _grid_road_class(i, j)
                if j + 1 < size:
                    network.add_edge(f"{i}_{j}", f"{i}_{j + 1}", distance_km=edge_km, road_class=road_class)
                if i + 1 < size:
                    network.add_edge(f"{i}_{j}", f"{i + 1}_{j}", distance_km=edge_km, road_class=road_class)

        logger.info(f"Built {size}x{size} grid network: {network}")
        return network


def _grid_road_class(i: int, j: int) -> RoadClass:
    if i % 5 == 0 or j % 5 == 0:
        return RoadClass.MAIN
    if i % 3 == 0 or j % 3 == 0:
        return RoadClass.SECONDARY
    return RoadClass.LOCAL
