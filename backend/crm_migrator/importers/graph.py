"""
Import graph - topological sorting for entity dependencies.

Parents (tables referenced through foreign keys) are always imported
before their children. Ties are broken by the order in which nodes were
added, so the resulting order is deterministic.
"""
from typing import List, Dict
from collections import defaultdict
import heapq
import logging

logger = logging.getLogger(__name__)


class ImportGraph:
    """Manages import order based on entity dependencies."""

    def __init__(self):
        self.nodes: Dict[str, int] = {}  # node -> insertion rank
        self.edges: Dict[str, List[str]] = defaultdict(list)

    def add_node(self, table: str):
        """Add a table to the graph."""
        if table not in self.nodes:
            self.nodes[table] = len(self.nodes)

    def add_edge(self, parent: str, child: str):
        """
        Add a dependency edge (parent must be imported before child).

        Args:
            parent: Referenced table (e.g., "organizations")
            child: Referencing table (e.g., "contacts")
        """
        self.add_node(parent)
        self.add_node(child)
        if child not in self.edges[parent]:
            self.edges[parent].append(child)

    def topological_sort(self) -> List[str]:
        """
        Return tables in topological order (parents before children).

        Returns:
            List of table names in import order

        Raises:
            ValueError: If graph contains cycles
        """
        # Calculate in-degree for each node
        in_degree = {node: 0 for node in self.nodes}
        for parent in self.edges:
            for child in self.edges[parent]:
                in_degree[child] += 1

        # Ready nodes ordered by insertion rank
        ready = [(self.nodes[node], node) for node, degree in in_degree.items() if degree == 0]
        heapq.heapify(ready)
        result = []

        while ready:
            _, node = heapq.heappop(ready)
            result.append(node)

            # Reduce in-degree for children
            for child in self.edges.get(node, []):
                in_degree[child] -= 1
                if in_degree[child] == 0:
                    heapq.heappush(ready, (self.nodes[child], child))

        # Check for cycles
        if len(result) != len(self.nodes):
            stuck = sorted(node for node, degree in in_degree.items() if degree > 0)
            logger.error(f"Import graph contains cycles between: {stuck}")
            raise ValueError("Graph contains cycles")

        return result

    def subgraph_order(self, tables: List[str]) -> List[str]:
        """
        Return only the given tables, in full-graph import order.

        Args:
            tables: Tables taking part in a run

        Returns:
            Those tables, parents first
        """
        wanted = set(tables)
        return [table for table in self.topological_sort() if table in wanted]
