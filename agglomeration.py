"""
Priority-driven agglomeration of a region adjacency graph

The controller repeatedly asks a merge priority for the next candidate edge
and merges its two regions until the priority reports that no candidate
satisfies the threshold:

    1. priority.initialize(threshold, use_edge_weight)
    2. While the priority is not empty:
       a. Pop the top candidate (None if the popped reference was stale)
       b. Optionally skip candidates touching a mitochondrion
       c. Merge ``absorb`` into ``keep``; the combiner refreshes features,
          weights and the ordering

Stale pops are expected (every merge invalidates older references), but an
unbounded run of them means the priority broke its contract. The controller
allows at most ``2 * pending entries + 16`` consecutive stale pops (or an
explicit ``max_stale_pops``) before raising ``PriorityContractError``.

The staged entry point runs a low-threshold prepass, removes inclusions,
reseeds every mergeable edge with a fresh probability and a sequential queue
location, then finishes at the requested threshold from those stored weights.

Usage:
    result = agglomerate(rag, features, priority="probability",
                         combiner="delayed", threshold=0.2)
    result = agglomerate_staged(rag, features, threshold=0.2)
"""

import logging
import time
from dataclasses import dataclass
from typing import Optional

from inclusions import remove_inclusions
from merge_combine import CombineMode, MergeCombiner
from merge_priority import PriorityKind, make_priority
from region_graph import MitoType, PriorityContractError

logger = logging.getLogger(__name__)


@dataclass
class AgglomerationOptions:
    """
    Attributes:
        use_mito: Never merge an edge with a MITO endpoint in the main pass
        use_edge_weight: Seed priorities from stored edge weights instead of
            asking the feature manager
        mito_mode: After the main pass, run a mito-aware pass that folds
            mitochondria into their surrounding tissue
        mito_threshold: Threshold of that mito-aware pass
    """

    use_mito: bool = False
    use_edge_weight: bool = False
    mito_mode: bool = False
    mito_threshold: float = 0.35


@dataclass
class AgglomerationResult:
    """Counters of one or more agglomeration passes."""

    merges: int = 0
    stale_pops: int = 0
    mito_skips: int = 0
    inclusions_removed: int = 0
    remaining_nodes: int = 0

    def add(self, other: "AgglomerationResult") -> None:
        self.merges += other.merges
        self.stale_pops += other.stale_pops
        self.mito_skips += other.mito_skips
        self.inclusions_removed += other.inclusions_removed
        self.remaining_nodes = other.remaining_nodes


class AgglomerationController:
    """
    Drives the select -> filter -> merge loop over one graph.

    Attributes:
        rag (RegionAdjacencyGraph): Graph mutated in place
        features: Feature manager shared with the priority and combiner
        priority (MergePriority): Edge selection policy
        combiner (MergeCombiner): Merge reconciliation policy
        threshold (float): Stopping threshold handed to the priority
        use_mito (bool): Skip candidates with a MITO endpoint (ignored by the
            mito-aware priority, which orients those edges itself)
        max_stale_pops (int or None): Override for the stale-pop bound
    """

    def __init__(self, rag, features, priority, combiner, threshold,
                 use_mito=False, max_stale_pops: Optional[int] = None):
        self.rag = rag
        self.features = features
        self.priority = priority
        self.combiner = combiner
        self.threshold = threshold
        self.use_mito = use_mito
        self.max_stale_pops = max_stale_pops

    def _touches_mito(self, candidate):
        return (self.rag.nodes[candidate.keep].mito_type == MitoType.MITO
                or self.rag.nodes[candidate.absorb].mito_type == MitoType.MITO)

    def run(self, use_edge_weight=False) -> AgglomerationResult:
        result = AgglomerationResult(remaining_nodes=self.rag.num_nodes)
        if self.threshold == 0:
            logger.info("Threshold is 0; skipping %s agglomeration", self.priority.kind.value)
            return result

        start = time.perf_counter()
        self.priority.initialize(self.threshold, use_edge_weight)
        filter_mito = self.use_mito and self.priority.kind != PriorityKind.MITO

        stale_run = 0
        stale_limit = 0
        while not self.priority.empty():
            candidate = self.priority.get_top_edge()

            if candidate is None:
                if stale_run == 0:
                    stale_limit = self.max_stale_pops or 2 * len(self.priority) + 16
                stale_run += 1
                result.stale_pops += 1
                if stale_run > stale_limit:
                    raise PriorityContractError(
                        f"{type(self.priority).__name__} returned {stale_run} stale "
                        f"candidates in a row without emptying"
                    )
                continue
            stale_run = 0

            if filter_mito and self._touches_mito(candidate):
                result.mito_skips += 1
                continue

            if self.rag.merge_node(candidate.keep, candidate.absorb, self.combiner):
                result.merges += 1

        result.remaining_nodes = self.rag.num_nodes
        logger.info(
            "%s agglomeration at %.3f: %d merges, %d stale pops, %d regions left (%.2fs)",
            self.priority.kind.value, self.threshold, result.merges, result.stale_pops,
            result.remaining_nodes, time.perf_counter() - start,
        )
        return result


def agglomerate(rag, features, priority=PriorityKind.PROBABILITY,
                combiner=CombineMode.DELAYED, threshold=0.2,
                options: Optional[AgglomerationOptions] = None,
                max_stale_pops: Optional[int] = None) -> AgglomerationResult:
    """
    Agglomerate ``rag`` in place.

    Args:
        rag (RegionAdjacencyGraph): Graph to coarsen
        features: Feature manager used for probabilities and cache merges
        priority (PriorityKind or str): probability, mito, queue or flat
        combiner (CombineMode or str): eager, delayed, queue or flat
        threshold (float): Merge threshold; 0 performs no work at all
        options (AgglomerationOptions): Mito handling and weight seeding
        max_stale_pops (int): Optional bound on consecutive stale pops

    Returns:
        AgglomerationResult: Counters summed over the main and mito passes

    Raises:
        ValueError: For unknown variants or a combiner that cannot drive
            the chosen priority
    """
    options = options or AgglomerationOptions()

    strategy = make_priority(priority, rag, features)
    merger = MergeCombiner(features, strategy, combiner)

    if threshold == 0:
        logger.info("Threshold is 0; graph left untouched")
        return AgglomerationResult(remaining_nodes=rag.num_nodes)

    controller = AgglomerationController(
        rag, features, strategy, merger, threshold,
        use_mito=options.use_mito, max_stale_pops=max_stale_pops,
    )
    result = controller.run(options.use_edge_weight)

    if options.mito_mode:
        mito_priority = make_priority(PriorityKind.MITO, rag, features)
        mode = merger.mode if merger.mode in (CombineMode.EAGER, CombineMode.DELAYED) \
            else CombineMode.DELAYED
        mito_controller = AgglomerationController(
            rag, features, mito_priority, MergeCombiner(features, mito_priority, mode),
            options.mito_threshold, max_stale_pops=max_stale_pops,
        )
        result.add(mito_controller.run())

    return result


def reseed_edge_weights(rag, features) -> int:
    """
    Refresh the weight of every mergeable edge and number them in order.

    Preserved and synthetic edges are left alone. Each remaining edge gets
    ``features.get_probability(edge)`` as its weight and the next sequential
    ``qloc``, in ascending (node1, node2) order.

    Returns:
        int: Number of edges reseeded
    """
    count = 0
    for edge in rag.iter_edges():
        if not edge.is_mergeable():
            continue
        edge.set_weight(features.get_probability(edge))
        edge.qloc = count
        count += 1
    logger.debug("Reseeded %d edge weights", count)
    return count


def agglomerate_staged(rag, features, priority=PriorityKind.PROBABILITY,
                       combiner=CombineMode.DELAYED, threshold=0.2,
                       options: Optional[AgglomerationOptions] = None,
                       prepass_threshold: float = 0.06,
                       max_stale_pops: Optional[int] = None) -> AgglomerationResult:
    """
    Prepass, inclusion removal, reseed, final pass.

    The prepass only merges very confident boundaries, which leaves enclosed
    fragments that the inclusion pass can fold into their surroundings. The
    final pass then starts from freshly computed weights and orders edges
    by them (``use_edge_weight``).

    Args:
        rag (RegionAdjacencyGraph): Graph to coarsen
        features: Feature manager used for probabilities and cache merges
        priority (PriorityKind or str): Priority of both passes
        combiner (CombineMode or str): Combiner of both passes
        threshold (float): Final threshold; 0 performs no work at all
        options (AgglomerationOptions): ``use_mito`` applies to both passes,
            ``mito_mode`` only to the final one
        prepass_threshold (float): Threshold of the prepass
        max_stale_pops (int): Optional bound on consecutive stale pops

    Returns:
        AgglomerationResult: Counters summed over every pass, including the
            number of regions removed as inclusions

    Raises:
        ValueError: For unknown variants or a combiner that cannot drive
            the chosen priority
        NoBorderAnchor: If the graph has regions but none touches the border
    """
    options = options or AgglomerationOptions()
    # Invalid pairings fail before any pass runs
    MergeCombiner(features, make_priority(priority, rag, features), combiner)

    if threshold == 0:
        logger.info("Threshold is 0; graph left untouched")
        return AgglomerationResult(remaining_nodes=rag.num_nodes)

    result = agglomerate(
        rag, features, priority, combiner, prepass_threshold,
        options=AgglomerationOptions(use_mito=options.use_mito),
        max_stale_pops=max_stale_pops,
    )
    if rag.num_nodes:
        result.inclusions_removed = remove_inclusions(rag, features)
    logger.info("Remaining regions after prepass: %d", rag.num_nodes)

    reseed_edge_weights(rag, features)

    final_options = AgglomerationOptions(
        use_mito=options.use_mito,
        use_edge_weight=True,
        mito_mode=options.mito_mode,
        mito_threshold=options.mito_threshold,
    )
    result.add(agglomerate(rag, features, priority, combiner, threshold,
                           options=final_options, max_stale_pops=max_stale_pops))
    result.remaining_nodes = rag.num_nodes
    return result
