"""
Region Adjacency Graph (RAG) for over-segmented label volumes

This module holds the mutable graph that the agglomeration passes work on.
Each region of an over-segmentation is a node; two regions sharing at least
one voxel face are joined by an edge carrying the probability that the
boundary between them is real.

Key concepts:
- Arena layout: nodes and edges are stored in dicts keyed by stable integer
  ids / canonical (low, high) id pairs, so a merge is an ownership remap and
  never leaves dangling references
- Lazy invalidation: every structural or weight change bumps the edge's
  generation stamp; priority structures compare stamps at pop time
- Merge history: absorbed ids keep pointing at their survivor, so the
  original labels can always be resolved to the final body

Usage:
    rag = RegionAdjacencyGraph()
    rag.insert_node(1).size = 10
    rag.insert_node(2).size = 5
    rag.insert_edge(1, 2, weight=0.1, size=4)
    rag.merge_node(1, 2)
    rag.resolve(2)  # -> 1
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional, Tuple

logger = logging.getLogger(__name__)

# Background label; also used as the synthetic border anchor by the
# inclusion remover, so it is never a live node.
BACKGROUND_ID = 0


class AgglomerationError(Exception):
    """Base class for every error raised by the agglomeration engine."""


class NotFound(AgglomerationError, KeyError):
    """A node or edge lookup referenced an id that is not live."""


class DuplicateEdge(AgglomerationError, ValueError):
    """An edge already exists for the requested node pair."""


class NoBorderAnchor(AgglomerationError):
    """No border-touching node exists to seed the inclusion traversal."""


class FeatureMergeFailed(AgglomerationError):
    """The feature capability failed while combining two caches."""


class PriorityContractError(AgglomerationError):
    """A priority strategy kept returning stale candidates without emptying."""


class MitoType(enum.IntEnum):
    """Classification tag of a region."""

    NONE = 0
    MITO = 1
    NEAR_MITO = 2


@dataclass
class RagNode:
    """A region: accumulated voxel count plus the feature cache handle."""

    node_id: int
    size: int = 0
    border_size: int = 0
    border: bool = False
    mito_type: MitoType = MitoType.NONE
    features: Any = None


@dataclass
class RagEdge:
    """
    Adjacency between two live regions.

    The endpoints are always stored lower id first. ``weight`` is the
    probability that the boundary is real (high = keep apart). ``generation``
    is bumped on every change so that queued references to an older state of
    the edge can be recognised as stale without searching the queue.

    ``connected`` records whether any real voxel adjacency backs the edge. A
    synthetic edge starts disconnected; once a real edge is joined into it the
    pair is adjacent even though the ``false_edge`` flag is kept.
    """

    node1: int
    node2: int
    weight: float = 0.0
    size: int = 0
    preserve: bool = False
    false_edge: bool = False
    qloc: Optional[int] = None
    features: Any = None
    generation: int = 0
    dirty: bool = False
    connected: Optional[bool] = None

    def __post_init__(self):
        if self.connected is None:
            self.connected = not self.false_edge

    @property
    def pair(self) -> Tuple[int, int]:
        return (self.node1, self.node2)

    def other(self, node_id: int) -> int:
        if node_id == self.node1:
            return self.node2
        if node_id == self.node2:
            return self.node1
        raise NotFound(f"Node {node_id} is not an endpoint of edge {self.pair}")

    def is_mergeable(self) -> bool:
        """Protected and synthetic edges never become merge candidates."""
        return not (self.preserve or self.false_edge)

    def touch(self) -> None:
        self.generation += 1

    def set_weight(self, weight: float) -> None:
        self.weight = float(weight)
        self.dirty = False
        self.touch()

    def absorb(self, other: "RagEdge") -> None:
        """
        Fold a parallel edge into this one.

        Sizes add and flags OR-combine, ``connected`` included, so joining a
        real boundary into a constraint edge keeps the regions adjacent for
        the inclusion traversal. The weight becomes the size-weighted
        mean of the two real weights; the combiner normally overwrites it with
        a fresh probability right after the merge.
        """
        if self.false_edge and not other.false_edge:
            weight = other.weight
        elif other.false_edge and not self.false_edge:
            weight = self.weight
        else:
            total = self.size + other.size
            if total > 0:
                weight = (self.weight * self.size + other.weight * other.size) / total
            else:
                weight = (self.weight + other.weight) / 2.0

        self.weight = weight
        self.size += other.size
        self.preserve = self.preserve or other.preserve
        self.false_edge = self.false_edge or other.false_edge
        self.connected = self.connected or other.connected
        self.dirty = self.dirty or other.dirty
        self.touch()


def edge_key(a: int, b: int) -> Tuple[int, int]:
    """Canonical (low, high) key for an unordered node pair."""
    return (a, b) if a < b else (b, a)


class RegionAdjacencyGraph:
    """
    Mutable region adjacency graph.

    Attributes:
        nodes (dict): node id -> RagNode for every live region
        edges (dict): (low, high) -> RagEdge for every live adjacency
        adjacency (dict): node id -> set of neighbouring node ids
        merged_into (dict): absorbed id -> id it was merged into

    Iteration over nodes, edges and neighbours is always in ascending id
    order so that every pass over the graph is reproducible.
    """

    def __init__(self):
        self.nodes: Dict[int, RagNode] = {}
        self.edges: Dict[Tuple[int, int], RagEdge] = {}
        self.adjacency: Dict[int, set] = {}
        self.merged_into: Dict[int, int] = {}

    def __len__(self) -> int:
        return len(self.nodes)

    def __contains__(self, node_id: int) -> bool:
        return node_id in self.nodes

    @property
    def num_nodes(self) -> int:
        return len(self.nodes)

    @property
    def num_edges(self) -> int:
        return len(self.edges)

    def total_size(self) -> int:
        """Sum of live region sizes (background is never a node)."""
        return sum(node.size for node in self.nodes.values())

    def iter_nodes(self) -> Iterator[RagNode]:
        for node_id in sorted(self.nodes):
            yield self.nodes[node_id]

    def iter_edges(self) -> Iterator[RagEdge]:
        for key in sorted(self.edges):
            yield self.edges[key]

    def neighbors(self, node_id: int) -> List[int]:
        if node_id not in self.adjacency:
            raise NotFound(f"Node {node_id} not found")
        return sorted(self.adjacency[node_id])

    def incident_edges(self, node_id: int) -> List[RagEdge]:
        return [self.edges[edge_key(node_id, other)] for other in self.neighbors(node_id)]

    # ------------------------------------------------------------------
    # Lookup and insertion
    # ------------------------------------------------------------------

    def insert_node(self, node_id: int) -> RagNode:
        node_id = int(node_id)
        if node_id == BACKGROUND_ID:
            raise ValueError("Node id 0 is reserved for background")
        if node_id in self.nodes:
            return self.nodes[node_id]
        node = RagNode(node_id)
        self.nodes[node_id] = node
        self.adjacency[node_id] = set()
        return node

    def find_node(self, node_id: int) -> RagNode:
        try:
            return self.nodes[node_id]
        except KeyError:
            raise NotFound(f"Node {node_id} not found") from None

    def insert_edge(self, a: int, b: int, weight: float = 0.0, size: int = 0,
                    preserve: bool = False, false_edge: bool = False) -> RagEdge:
        """
        Create the edge between two live nodes.

        Raises:
            NotFound: If either endpoint is not a live node
            DuplicateEdge: If the pair already has an edge
            ValueError: For a self-loop
        """
        if a == b:
            raise ValueError(f"Cannot connect node {a} to itself")
        self.find_node(a)
        self.find_node(b)
        key = edge_key(a, b)
        if key in self.edges:
            raise DuplicateEdge(f"Edge {key} already exists")

        edge = RagEdge(key[0], key[1], weight=float(weight), size=int(size),
                       preserve=preserve, false_edge=false_edge)
        self.edges[key] = edge
        self.adjacency[a].add(b)
        self.adjacency[b].add(a)
        return edge

    def find_edge(self, a: int, b: int) -> RagEdge:
        try:
            return self.edges[edge_key(a, b)]
        except KeyError:
            raise NotFound(f"Edge ({a}, {b}) not found") from None

    def get_edge(self, a: int, b: int) -> Optional[RagEdge]:
        return self.edges.get(edge_key(a, b))

    def remove_node(self, node_id: int) -> RagNode:
        """Drop a node together with all of its edges (no merge bookkeeping)."""
        node = self.find_node(node_id)
        for other in list(self.adjacency[node_id]):
            del self.edges[edge_key(node_id, other)]
            self.adjacency[other].discard(node_id)
        del self.adjacency[node_id]
        del self.nodes[node_id]
        return node

    def add_edge_constraint(self, a: int, b: int) -> bool:
        """
        Pin the boundary between two regions so it is never merged.

        An existing edge is flagged ``preserve``. When the regions are not
        adjacent a synthetic ``false_edge`` is inserted (also preserved) which
        encodes the constraint without adding connectivity.

        Returns:
            bool: False when both ids name the same region
        """
        if a == b:
            return False
        edge = self.get_edge(a, b)
        if edge is None:
            edge = self.insert_edge(a, b, false_edge=True)
        edge.preserve = True
        edge.touch()
        return True

    # ------------------------------------------------------------------
    # Merging
    # ------------------------------------------------------------------

    def merge_node(self, keep: int, absorb: int, combiner=None) -> bool:
        """
        Merge region ``absorb`` into region ``keep``.

        Every edge of ``absorb`` (other than the one to ``keep``) is either
        joined into the existing parallel edge of ``keep`` or re-pointed to
        ``keep``. Afterwards ``absorb`` and its edge to ``keep`` are deleted.

        Args:
            keep (int): Surviving node id
            absorb (int): Node id that disappears
            combiner: Optional merge combiner; called once after the
                structural surgery with the joined and moved edges

        Returns:
            bool: True if a merge happened, False for a rejected self-merge

        Raises:
            NotFound: If either node is not live

        Notes:
            - Flags OR-combine on joined edges, so ``preserve``,
              ``false_edge`` and ``connected`` survive any merge order
            - Live node count drops by exactly one and the total size is
              conserved
        """
        if keep == absorb:
            logger.warning("SelfMergeRejected: refusing to merge node %s into itself", keep)
            return False

        keep_node = self.find_node(keep)
        absorb_node = self.find_node(absorb)

        joined: List[Tuple[RagEdge, RagEdge]] = []
        moved: List[RagEdge] = []

        for other in sorted(self.adjacency[absorb]):
            if other == keep:
                continue
            edge = self.edges.pop(edge_key(absorb, other))
            self.adjacency[other].discard(absorb)

            existing = self.edges.get(edge_key(keep, other))
            if existing is not None:
                existing.absorb(edge)
                joined.append((existing, edge))
            else:
                # Ownership transfer: the same edge object now links keep
                edge.node1, edge.node2 = edge_key(keep, other)
                edge.touch()
                self.edges[edge.pair] = edge
                self.adjacency[keep].add(other)
                self.adjacency[other].add(keep)
                moved.append(edge)

        shared = self.edges.pop(edge_key(keep, absorb), None)
        shared_size = shared.size if shared is not None else 0
        self.adjacency[keep].discard(absorb)

        keep_node.size += absorb_node.size
        keep_node.border_size = max(
            0, keep_node.border_size + absorb_node.border_size - 2 * shared_size
        )
        keep_node.border = keep_node.border or absorb_node.border

        del self.adjacency[absorb]
        del self.nodes[absorb]
        self.merged_into[absorb] = keep

        logger.debug("Merged node %s into %s (%d joined, %d moved edges)",
                     absorb, keep, len(joined), len(moved))

        if combiner is not None:
            combiner.combine(self, keep_node, absorb_node, joined, moved)
        return True

    # ------------------------------------------------------------------
    # Merge history
    # ------------------------------------------------------------------

    def resolve(self, node_id: int) -> int:
        """Follow the merge history of ``node_id`` to its current owner."""
        root = node_id
        while root in self.merged_into:
            root = self.merged_into[root]
        # Path compression
        while node_id != root:
            parent = self.merged_into[node_id]
            self.merged_into[node_id] = root
            node_id = parent
        return root

    def label_map(self) -> Dict[int, int]:
        """Map every id ever inserted to the id of its surviving region."""
        ids = set(self.nodes) | set(self.merged_into)
        return {node_id: self.resolve(node_id) for node_id in sorted(ids)}

    def snapshot(self) -> Tuple[tuple, tuple]:
        """Hashable view of the live structure, used to compare passes."""
        nodes = tuple((n.node_id, n.size) for n in self.iter_nodes())
        edges = tuple(
            (e.node1, e.node2, e.size, e.preserve, e.false_edge, e.connected,
             round(e.weight, 12))
            for e in self.iter_edges()
        )
        return nodes, edges
