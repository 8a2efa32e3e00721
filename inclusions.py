"""
Removal of enclosed regions ("inclusions")

A region that cannot reach the volume border except through one other region
is topologically enclosed by it. Such regions are found with a biconnected
component decomposition of the region adjacency graph:

    - A synthetic anchor (id 0, the border) is adjacent to every region that
      touches the border, which joins all border regions under one root
    - An iterative depth-first search computes discovery depth and low-link
      per region; synthetic ``false_edge`` edges are not traversed unless a
      real boundary has been joined into them
    - When low(child) >= depth(node) for a tree edge (node, child), the edge
      stack down to that edge is one biconnected component and ``node`` is
      its articulation point
    - A component that does not contain the anchor is enclosed by its
      articulation point and is merged into it

Components come off the edge stack deepest first, so nested inclusions are
folded inward-out; a remap table resolves members that were already merged.
A component with any ``preserve`` edge on a non-articulation member is left
untouched. Running the pass again merges nothing.

Usage:
    removed = remove_inclusions(rag, features)
"""

import logging

from merge_combine import CombineMode, MergeCombiner
from region_graph import BACKGROUND_ID, NoBorderAnchor

logger = logging.getLogger(__name__)

BORDER_ANCHOR = BACKGROUND_ID


class InclusionRemover:
    """
    Biconnected-component inclusion pass over one graph.

    Attributes:
        rag (RegionAdjacencyGraph): Graph mutated in place
        combiner (MergeCombiner or None): Flat combiner used to fold feature
            caches and refresh weights; None merges structure only
        depth (dict): Discovery depth per visited node (anchor = 0)
        low (dict): Low-link per visited node
        components (list): (articulation id, [edge pairs]) in pop order
        remap (dict): Absorbed id -> id it was merged into during this pass
    """

    def __init__(self, rag, features=None):
        self.rag = rag
        self.combiner = None
        if features is not None:
            self.combiner = MergeCombiner(features, mode=CombineMode.FLAT)
        self.depth = {}
        self.low = {}
        self.components = []
        self.remap = {}

    def _reset(self):
        self.depth = {}
        self.low = {}
        self.components = []
        self.remap = {}

    def border_nodes(self):
        return [node.node_id for node in self.rag.iter_nodes() if node.border]

    def traversal_neighbors(self, node_id):
        """Neighbours used by the search: connected edges, plus the anchor for border nodes."""
        if node_id == BORDER_ANCHOR:
            return self.border_nodes()
        neighbors = [
            other for other in self.rag.neighbors(node_id)
            if self.rag.get_edge(node_id, other).connected
        ]
        if self.rag.nodes[node_id].border:
            neighbors.insert(0, BORDER_ANCHOR)
        return neighbors

    def find_components(self):
        """
        Iterative Tarjan biconnected components rooted at the border anchor.

        Each stack frame is (node, parent, neighbour iterator); a frame stays
        on the stack until its iterator is exhausted, so no recursion is
        needed however deep the graph is.
        """
        self.depth = {BORDER_ANCHOR: 0}
        self.low = {BORDER_ANCHOR: 0}
        self.components = []
        edge_stack = []
        frames = [(BORDER_ANCHOR, None, iter(self.traversal_neighbors(BORDER_ANCHOR)))]

        while frames:
            node, parent, children = frames[-1]
            descended = False
            for child in children:
                if child == parent:
                    continue
                if child not in self.depth:
                    self.depth[child] = self.low[child] = self.depth[node] + 1
                    edge_stack.append((node, child))
                    frames.append((child, node, iter(self.traversal_neighbors(child))))
                    descended = True
                    break
                if self.depth[child] < self.depth[node]:
                    # Back edge to an ancestor
                    self.low[node] = min(self.low[node], self.depth[child])
                    edge_stack.append((node, child))
            if descended:
                continue

            frames.pop()
            if parent is None:
                continue
            self.low[parent] = min(self.low[parent], self.low[node])
            if self.low[node] >= self.depth[parent]:
                component = []
                while True:
                    pair = edge_stack.pop()
                    component.append(pair)
                    if pair == (parent, node):
                        break
                self.components.append((parent, component))

        return self.components

    def resolve(self, node_id):
        root = node_id
        while root in self.remap:
            root = self.remap[root]
        while node_id != root:
            parent = self.remap[node_id]
            self.remap[node_id] = root
            node_id = parent
        return root

    def _is_protected(self, members, articulation):
        for member in members:
            if member == articulation:
                continue
            for edge in self.rag.incident_edges(member):
                if edge.preserve:
                    return True
        return False

    def merge_component(self, articulation, pairs):
        """
        Fold one enclosed component into its articulation region.

        Returns:
            int: Number of regions merged away (0 if the component is protected)
        """
        articulation = self.resolve(articulation)
        members = set()
        for region1, region2 in pairs:
            members.add(self.resolve(region1))
            members.add(self.resolve(region2))
        members.discard(articulation)
        members = sorted(m for m in members if m in self.rag.nodes)

        if not members:
            return 0
        if self._is_protected(members, articulation):
            logger.debug("Inclusion %s in %s is protected by a preserve edge",
                         members, articulation)
            return 0

        for member in members:
            self.rag.merge_node(articulation, member, self.combiner)
            self.remap[member] = articulation
        logger.debug("Merged inclusion %s into %s", members, articulation)
        return len(members)

    def run(self):
        """
        Merge every unprotected enclosed component.

        Returns:
            int: Number of regions merged away

        Raises:
            NoBorderAnchor: If the graph has regions but none touches the border
        """
        self._reset()
        if not self.rag.nodes:
            return 0
        if not self.border_nodes():
            raise NoBorderAnchor("No region touches the volume border")

        self.find_components()

        removed = 0
        for articulation, pairs in self.components:
            touches_border = any(BORDER_ANCHOR in pair for pair in pairs)
            if touches_border:
                continue
            removed += self.merge_component(articulation, pairs)

        logger.info("Removed %d enclosed regions (%d components, %d regions left)",
                    removed, len(self.components), self.rag.num_nodes)
        return removed


def remove_inclusions(rag, features=None):
    """Run one inclusion-removal pass; returns the number of regions merged away."""
    return InclusionRemover(rag, features).run()
