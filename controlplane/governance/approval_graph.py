"""
Approval Graph

Directed graph of override grants (granter -> grantee). A new grant is
circular when the grantee already reaches the granter through grants whose
scope overlaps the new one.
"""

from typing import List, Optional
import threading

import networkx as nx


class ApprovalGraph:
    """Approver -> grantee edges, each carrying the scopes granted along it"""

    def __init__(self):
        self._lock = threading.Lock()
        self.graph = nx.DiGraph()

    def add_grant(self, granter_id: str, grantee_id: str, scope, override_id: str) -> None:
        with self._lock:
            if self.graph.has_edge(granter_id, grantee_id):
                self.graph[granter_id][grantee_id]["grants"].append((override_id, scope))
            else:
                self.graph.add_edge(granter_id, grantee_id, grants=[(override_id, scope)])

    def find_cycle(self, granter_id: str, grantee_id: str, scope) -> Optional[List[str]]:
        """
        Path grantee -> ... -> granter over overlapping-scope edges, or None.
        Adding granter -> grantee on top of such a path closes a cycle.
        """
        with self._lock:
            if grantee_id not in self.graph or granter_id not in self.graph:
                return None

            def overlaps(u: str, v: str) -> bool:
                return any(scope.overlaps(granted) for _, granted in self.graph[u][v]["grants"])

            view = nx.subgraph_view(self.graph, filter_edge=overlaps)
            try:
                return nx.shortest_path(view, grantee_id, granter_id)
            except nx.NetworkXNoPath:
                return None

    def would_create_cycle(self, granter_id: str, grantee_id: str, scope) -> bool:
        return self.find_cycle(granter_id, grantee_id, scope) is not None

    def grants_between(self, granter_id: str, grantee_id: str) -> List[str]:
        with self._lock:
            if not self.graph.has_edge(granter_id, grantee_id):
                return []
            return [oid for oid, _ in self.graph[granter_id][grantee_id]["grants"]]

    def clear(self) -> None:
        with self._lock:
            self.graph.clear()
