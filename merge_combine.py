"""
Merge reconciliation for agglomeration

After the graph surgery of a merge, the survivor's feature cache and the
weights of its edges are stale. A ``MergeCombiner`` folds the caches together
through the feature manager and brings the edge weights (and the priority
structure that orders them) back in line.

Modes differ only in when weights are recomputed and how the ordering is told:
    eager    recompute every survivor edge now, re-stamp and push all of them
    delayed  flag survivor edges dirty; the priority recomputes on pop
    queue    recompute now, push only edges whose weight or key changed;
             older heap entries are left in place and fail the stamp check
    flat     recompute now, never touch the ordering
"""

import enum
import logging

from region_graph import FeatureMergeFailed

logger = logging.getLogger(__name__)


class CombineMode(str, enum.Enum):
    EAGER = "eager"
    DELAYED = "delayed"
    QUEUE = "queue"
    FLAT = "flat"


class MergeCombiner:
    """
    Keeps features and edge weights consistent across merges.

    Args:
        features: Feature manager (``merge_features``, ``get_probability``)
        priority: Priority the updated edges are pushed to; may be None only
            in flat mode
        mode (CombineMode or str): Update timing

    Raises:
        ValueError: If the mode cannot drive the given priority
    """

    def __init__(self, features, priority=None, mode=CombineMode.EAGER):
        try:
            mode = CombineMode(mode)
        except ValueError:
            options = ", ".join(m.value for m in CombineMode)
            raise ValueError(f"Unknown combiner '{mode}'; expected one of: {options}") from None

        if mode in (CombineMode.EAGER, CombineMode.DELAYED):
            if priority is None or not priority.live_reordering:
                raise ValueError(f"{mode.value} combiner needs a live-reordering priority")
        elif mode == CombineMode.QUEUE:
            if priority is None or getattr(priority, "kind", None) != "queue":
                raise ValueError("queue combiner needs the queue priority")

        self.features = features
        self.priority = priority
        self.mode = mode

    def merge_caches(self, target, source):
        try:
            self.features.merge_features(target, source)
        except Exception as err:
            raise FeatureMergeFailed(
                f"Could not merge features of {source!r} into {target!r}"
            ) from err

    def recompute(self, edge):
        """Refresh ``edge.weight``; returns True when the value changed."""
        if not edge.is_mergeable():
            return False
        weight = self.features.get_probability(edge)
        if weight == edge.weight:
            return False
        edge.set_weight(weight)
        return True

    def combine(self, rag, keep_node, absorb_node, joined, moved):
        """
        Reconcile one accepted merge.

        Args:
            rag: Graph the merge happened in
            keep_node (RagNode): Survivor, already holding the combined size
            absorb_node (RagNode): Removed node (still carries its cache)
            joined (list): (surviving edge, absorbed parallel edge) pairs
            moved (list): Edges re-pointed from the absorbed node to the survivor
        """
        self.merge_caches(keep_node, absorb_node)
        for surviving, absorbed in joined:
            self.merge_caches(surviving, absorbed)

        edges = rag.incident_edges(keep_node.node_id)

        if self.mode == CombineMode.DELAYED:
            for edge in edges:
                if edge.is_mergeable():
                    self.priority.mark_dirty(edge)

        elif self.mode == CombineMode.EAGER:
            for edge in edges:
                if not edge.is_mergeable():
                    continue
                edge.set_weight(self.features.get_probability(edge))
                self.priority.push(edge)

        elif self.mode == CombineMode.QUEUE:
            rekeyed = {edge.pair for edge, _ in joined} | {edge.pair for edge in moved}
            for edge in edges:
                changed = self.recompute(edge)
                if changed or edge.pair in rekeyed:
                    self.priority.push(edge)

        else:
            for edge in edges:
                self.recompute(edge)
