"""
Edge selection policies for agglomeration

A merge priority decides which edge of the region adjacency graph is merged
next. All variants share the same contract:

    priority.initialize(threshold, use_edge_weight)
    while not priority.empty():
        candidate = priority.get_top_edge()   # MergeCandidate or None
        ...

``get_top_edge`` returns None when the reference it popped is stale (the
edge was consumed or changed by an earlier merge). Stale references are never
searched for and removed; each queued entry carries the generation stamp of
the edge at push time and is compared against the edge when it surfaces.

Variants:
    probability  lowest-weight live edge first, merge while weight < threshold
    mito         probability ordering restricted to mito/tissue edges,
                 tissue node always survives
    queue        static snapshot heap with lazy invalidation, stops once a
                 popped weight exceeds the threshold
    flat         single sorted pass, never reordered after merges
"""

import enum
import heapq
import logging
from typing import NamedTuple

from region_graph import MitoType

logger = logging.getLogger(__name__)


class PriorityKind(str, enum.Enum):
    PROBABILITY = "probability"
    MITO = "mito"
    QUEUE = "queue"
    FLAT = "flat"


class MergeCandidate(NamedTuple):
    """Oriented merge request: ``absorb`` disappears into ``keep``."""

    keep: int
    absorb: int
    weight: float


class MergePriority:
    """Shared plumbing for the priority variants."""

    kind = None
    live_reordering = False

    def __init__(self, rag, features):
        self.rag = rag
        self.features = features
        self.threshold = 0.0
        self.heap = []

    def __len__(self):
        return len(self.heap)

    def admits(self, edge):
        return edge.is_mergeable()

    def initial_weight(self, edge, use_edge_weight):
        """Seed the edge weight from storage or from the feature capability."""
        if not use_edge_weight:
            edge.set_weight(self.features.get_probability(edge))
        return edge.weight

    def current_edge(self, node1, node2, generation):
        """The live edge behind a queued reference, or None if it is stale."""
        edge = self.rag.get_edge(node1, node2)
        if edge is None or edge.generation != generation or not self.admits(edge):
            return None
        return edge

    def candidate(self, edge):
        # Lower id survives
        return MergeCandidate(edge.node1, edge.node2, edge.weight)

    def initialize(self, threshold, use_edge_weight=False):
        raise NotImplementedError

    def empty(self):
        raise NotImplementedError

    def get_top_edge(self):
        raise NotImplementedError

    def push(self, edge):
        raise NotImplementedError

    def mark_dirty(self, edge):
        """Defer recomputing ``edge``; only live-reordering variants support it."""
        raise NotImplementedError(f"{type(self).__name__} cannot defer weight updates")


class ProbabilityPriority(MergePriority):
    """
    Merge the globally lowest-weight live edge while its weight < threshold.

    Heap entries are ``(weight, node1, node2, generation)`` so equal weights
    break ties on the node pair. Edges flagged dirty by the delayed combiner
    still sit in the heap at their old weight; when one surfaces its weight
    is recomputed, it is pushed again and the pop is reported as stale.
    """

    kind = PriorityKind.PROBABILITY
    live_reordering = True

    def __init__(self, rag, features):
        super().__init__(rag, features)
        self.dirty_keys = set()

    def initialize(self, threshold, use_edge_weight=False):
        self.threshold = threshold
        self.heap = []
        self.dirty_keys = set()
        for edge in self.rag.iter_edges():
            if not edge.is_mergeable():
                continue
            self.initial_weight(edge, use_edge_weight)
            if self.admits(edge):
                self.heap.append((edge.weight, edge.node1, edge.node2, edge.generation))
        heapq.heapify(self.heap)
        logger.debug("%s priority seeded with %d edges", self.kind.value, len(self.heap))

    def push(self, edge):
        if not self.admits(edge):
            return
        heapq.heappush(self.heap, (edge.weight, edge.node1, edge.node2, edge.generation))

    def mark_dirty(self, edge):
        edge.dirty = True
        edge.touch()
        self.dirty_keys.add(edge.pair)
        self.push(edge)

    def refresh(self, edge):
        edge.set_weight(self.features.get_probability(edge))
        self.dirty_keys.discard(edge.pair)
        self.push(edge)

    def revalidate(self):
        """
        Recompute every still-dirty edge before the queue is declared empty.

        Returns:
            int: Number of edges refreshed
        """
        refreshed = 0
        for key in sorted(self.dirty_keys):
            edge = self.rag.edges.get(key)
            if edge is not None and edge.dirty:
                edge.set_weight(self.features.get_probability(edge))
                self.push(edge)
                refreshed += 1
        self.dirty_keys = set()
        if refreshed:
            logger.debug("Revalidated %d deferred edges", refreshed)
        return refreshed

    def _discard_stale_top(self):
        while self.heap:
            _, node1, node2, generation = self.heap[0]
            if self.current_edge(node1, node2, generation) is not None:
                return
            heapq.heappop(self.heap)

    def empty(self):
        self._discard_stale_top()
        if self.heap:
            weight, node1, node2, _ = self.heap[0]
            if weight < self.threshold or self.rag.edges[(node1, node2)].dirty:
                return False
        # Deferred edges may have dropped below the threshold
        if self.revalidate():
            return self.empty()
        return True

    def get_top_edge(self):
        if not self.heap:
            return None
        weight, node1, node2, generation = heapq.heappop(self.heap)
        edge = self.current_edge(node1, node2, generation)
        if edge is None:
            return None
        if edge.dirty:
            self.refresh(edge)
            return None
        if weight >= self.threshold:
            heapq.heappush(self.heap, (weight, node1, node2, generation))
            return None
        return self.candidate(edge)


class MitoPriority(ProbabilityPriority):
    """
    Probability ordering over mitochondrion/tissue boundaries only.

    An edge is admitted when exactly one endpoint is MITO and the other is
    ordinary tissue (NONE). The tissue node is always the survivor. Every
    other edge stays out of the heap, so it can neither merge nor keep the
    pass from ending.
    """

    kind = PriorityKind.MITO

    def _endpoint_types(self, edge):
        return (self.rag.nodes[edge.node1].mito_type,
                self.rag.nodes[edge.node2].mito_type)

    def admits(self, edge):
        if not edge.is_mergeable():
            return False
        types = self._endpoint_types(edge)
        return sorted(types) == [MitoType.NONE, MitoType.MITO]

    def candidate(self, edge):
        type1, _ = self._endpoint_types(edge)
        if type1 == MitoType.MITO:
            return MergeCandidate(edge.node2, edge.node1, edge.weight)
        return MergeCandidate(edge.node1, edge.node2, edge.weight)


class QueuePriority(MergePriority):
    """
    Static min-heap snapshot with lazy invalidation.

    At initialisation every mergeable edge gets a ``qloc`` (its index in the
    snapshot) and one ``(weight, qloc, node1, node2, generation)`` entry.
    Updated edges are pushed again by the queue combiner; the superseded
    entries stay in the heap and are dropped when they surface because their
    generation no longer matches. The pass stops at the first valid entry
    whose weight exceeds the threshold.
    """

    kind = PriorityKind.QUEUE

    def __init__(self, rag, features):
        super().__init__(rag, features)
        self.next_qloc = 0
        self.stopped = False

    def initialize(self, threshold, use_edge_weight=False):
        self.threshold = threshold
        self.stopped = False
        self.heap = []
        count = 0
        for edge in self.rag.iter_edges():
            if not edge.is_mergeable():
                continue
            weight = self.initial_weight(edge, use_edge_weight)
            edge.qloc = count
            self.heap.append((weight, count, edge.node1, edge.node2, edge.generation))
            count += 1
        self.next_qloc = count
        heapq.heapify(self.heap)
        logger.debug("Queue snapshot holds %d edges", count)

    def push(self, edge):
        if not self.admits(edge):
            return
        if edge.qloc is None:
            edge.qloc = self.next_qloc
            self.next_qloc += 1
        heapq.heappush(self.heap, (edge.weight, edge.qloc, edge.node1, edge.node2,
                                   edge.generation))

    def empty(self):
        return self.stopped or not self.heap

    def get_top_edge(self):
        if not self.heap:
            return None
        weight, _, node1, node2, generation = heapq.heappop(self.heap)
        edge = self.current_edge(node1, node2, generation)
        if edge is None:
            return None
        if weight > self.threshold:
            self.stopped = True
            return None
        return self.candidate(edge)


class FlatPriority(MergePriority):
    """
    One-shot pass over a list sorted once at initialisation.

    Merges never reorder the list. An entry whose pair no longer resolves
    (one side was absorbed) is simply skipped, which makes this cheaper but
    only an approximation of the probability ordering.
    """

    kind = PriorityKind.FLAT

    def __init__(self, rag, features):
        super().__init__(rag, features)
        self.position = 0

    def __len__(self):
        return len(self.heap) - self.position

    def initialize(self, threshold, use_edge_weight=False):
        self.threshold = threshold
        self.position = 0
        entries = []
        for edge in self.rag.iter_edges():
            if not edge.is_mergeable():
                continue
            weight = self.initial_weight(edge, use_edge_weight)
            entries.append((weight, edge.node1, edge.node2))
        self.heap = sorted(entries)

    def push(self, edge):
        pass

    def empty(self):
        return self.position >= len(self.heap)

    def get_top_edge(self):
        if self.empty():
            return None
        _, node1, node2 = self.heap[self.position]
        self.position += 1
        edge = self.rag.get_edge(node1, node2)
        if edge is None or not self.admits(edge) or edge.weight > self.threshold:
            return None
        return self.candidate(edge)


PRIORITY_CLASSES = {
    PriorityKind.PROBABILITY: ProbabilityPriority,
    PriorityKind.MITO: MitoPriority,
    PriorityKind.QUEUE: QueuePriority,
    PriorityKind.FLAT: FlatPriority,
}


def make_priority(kind, rag, features):
    """Instantiate the priority variant named by ``kind`` (enum or string)."""
    try:
        kind = PriorityKind(kind)
    except ValueError:
        options = ", ".join(k.value for k in PriorityKind)
        raise ValueError(f"Unknown priority '{kind}'; expected one of: {options}") from None
    return PRIORITY_CLASSES[kind](rag, features)
