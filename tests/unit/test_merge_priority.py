"""Unit tests for merge priorities and combiners."""

import numpy as np
import pytest

from feature_manager import FeatureManager
from merge_combine import CombineMode, MergeCombiner
from merge_priority import (
    FlatPriority,
    MergeCandidate,
    MitoPriority,
    PriorityKind,
    ProbabilityPriority,
    QueuePriority,
    make_priority,
)
from region_graph import FeatureMergeFailed, MitoType
from tests.fixtures import make_rag


def drain(priority):
    """Pop until empty, collecting non-stale candidates."""
    out = []
    while not priority.empty():
        candidate = priority.get_top_edge()
        if candidate is not None:
            out.append(candidate)
    return out


class TestMakePriority:
    """Tests for the priority factory."""

    @pytest.mark.parametrize("kind,cls", [
        ("probability", ProbabilityPriority),
        ("mito", MitoPriority),
        ("queue", QueuePriority),
        (PriorityKind.FLAT, FlatPriority),
    ])
    def test_known_kinds(self, kind, cls, features):
        """Names and enum members select the matching class."""
        rag = make_rag({1: 1}, [])
        assert isinstance(make_priority(kind, rag, features), cls)

    def test_unknown_kind(self, features):
        """Unknown names raise ValueError."""
        with pytest.raises(ValueError, match="Unknown priority"):
            make_priority("greedy", make_rag({1: 1}, []), features)


class TestProbabilityPriority:
    """Tests for the probability-ordered priority."""

    def test_orders_by_weight(self, chain_rag, features):
        """Candidates come out lowest weight first and stop at the threshold."""
        priority = ProbabilityPriority(chain_rag, features)
        priority.initialize(0.3)
        assert drain(priority) == [
            MergeCandidate(1, 2, 0.05),
            MergeCandidate(2, 3, 0.20),
        ]

    def test_ties_break_on_pair(self, features):
        """Equal weights are ordered by node pair."""
        rag = make_rag({1: 1, 2: 1, 3: 1, 4: 1}, [(3, 4, 0.1), (1, 2, 0.1)])
        priority = ProbabilityPriority(rag, features)
        priority.initialize(0.5)
        assert priority.get_top_edge().keep == 1

    def test_protected_edges_never_queued(self, features):
        """preserve and false edges are not candidates at any threshold."""
        rag = make_rag({1: 1, 2: 1, 3: 1},
                       [(1, 2, 0.0, {"preserve": True}), (2, 3, 0.0, {"false_edge": True})])
        priority = ProbabilityPriority(rag, features)
        priority.initialize(10.0)
        assert len(priority) == 0
        assert priority.empty()

    def test_stale_entry_returns_none(self, chain_rag, features):
        """A popped reference to a changed edge is reported as stale."""
        priority = ProbabilityPriority(chain_rag, features)
        priority.initialize(0.3)
        chain_rag.find_edge(1, 2).touch()
        assert priority.get_top_edge() is None

    def test_dirty_edge_refreshed_at_pop(self):
        """A deferred edge is recomputed when it surfaces, then merged."""
        fm = FeatureManager()
        rag = make_rag({1: 1, 2: 1}, [(1, 2, 0.0)])
        edge = rag.find_edge(1, 2)
        edge.features = fm.cache_from_values([0.8])
        priority = ProbabilityPriority(rag, fm)
        priority.initialize(0.5)
        assert edge.weight == pytest.approx(0.8)
        assert priority.empty()

        edge.features = fm.cache_from_values([0.1])
        priority.mark_dirty(edge)
        assert not priority.empty()
        assert priority.get_top_edge() is None
        assert not edge.dirty
        assert not priority.empty()
        assert priority.get_top_edge() == MergeCandidate(1, 2, pytest.approx(0.1))

    def test_revalidate(self):
        """revalidate recomputes every still-dirty edge."""
        fm = FeatureManager()
        rag = make_rag({1: 1, 2: 1, 3: 1}, [(1, 2, 0.0), (2, 3, 0.0)])
        priority = ProbabilityPriority(rag, fm)
        priority.initialize(0.5)
        for edge in rag.iter_edges():
            edge.features = fm.cache_from_values([0.7])
            priority.mark_dirty(edge)
        assert priority.revalidate() == 2
        assert all(not e.dirty and e.weight == pytest.approx(0.7) for e in rag.iter_edges())
        assert priority.revalidate() == 0


class TestMitoPriority:
    """Tests for the mito-aware priority."""

    def test_only_mito_tissue_edges(self, mito_rag, features):
        """Only the MITO/NONE edge is admitted; tissue is kept."""
        priority = MitoPriority(mito_rag, features)
        priority.initialize(0.6)
        assert drain(priority) == [MergeCandidate(2, 1, 0.5)]

    def test_near_mito_excluded(self, mito_rag, features):
        """NEAR_MITO neighbours are not ordinary tissue."""
        mito_rag.nodes[2].mito_type = MitoType.NEAR_MITO
        priority = MitoPriority(mito_rag, features)
        priority.initialize(0.6)
        assert priority.empty()

    def test_mito_pair_excluded(self, features):
        """Two mitochondria are never merged by this priority."""
        rag = make_rag({1: 1, 2: 1}, [(1, 2, 0.1)],
                       mito={1: MitoType.MITO, 2: MitoType.MITO})
        priority = MitoPriority(rag, features)
        priority.initialize(0.6)
        assert priority.empty()


class TestQueuePriority:
    """Tests for the snapshot queue."""

    def test_qloc_assigned(self, chain_rag, features):
        """Snapshotted edges get consecutive qloc values in pair order."""
        priority = QueuePriority(chain_rag, features)
        priority.initialize(0.3)
        assert chain_rag.find_edge(1, 2).qloc == 0
        assert chain_rag.find_edge(2, 3).qloc == 1
        assert chain_rag.find_edge(3, 4).qloc is None
        assert chain_rag.find_edge(4, 5).qloc == 2
        assert len(priority) == 3

    def test_stops_above_threshold(self, chain_rag, features):
        """The first valid entry above the threshold ends the pass."""
        priority = QueuePriority(chain_rag, features)
        priority.initialize(0.1)
        assert priority.get_top_edge() == MergeCandidate(1, 2, 0.05)
        assert priority.get_top_edge() is None
        assert priority.empty()

    def test_weight_equal_to_threshold_merges(self, features):
        """Queue merges while weight <= threshold."""
        rag = make_rag({1: 1, 2: 1}, [(1, 2, 0.3)])
        priority = QueuePriority(rag, features)
        priority.initialize(0.3)
        assert drain(priority) == [MergeCandidate(1, 2, 0.3)]

    def test_use_edge_weight(self):
        """Stored weights are used instead of recomputed probabilities."""
        fm = FeatureManager()
        rag = make_rag({1: 1, 2: 1}, [(1, 2, 0.1)])
        rag.find_edge(1, 2).features = fm.cache_from_values([0.9])

        priority = QueuePriority(rag, fm)
        priority.initialize(0.5, use_edge_weight=True)
        assert drain(priority) == [MergeCandidate(1, 2, 0.1)]

        priority.initialize(0.5)
        assert drain(priority) == []


class TestFlatPriority:
    """Tests for the one-shot list."""

    def test_skips_consumed_pairs(self, chain_rag, features):
        """Entries whose pair is gone are skipped; nothing is reordered."""
        priority = FlatPriority(chain_rag, features)
        priority.initialize(0.3)
        assert priority.get_top_edge() == MergeCandidate(1, 2, 0.05)
        chain_rag.merge_node(1, 2)
        assert priority.get_top_edge() is None
        assert priority.get_top_edge() is None
        assert priority.empty()

    def test_push_is_ignored(self, chain_rag, features):
        """The flat list never grows after initialisation."""
        priority = FlatPriority(chain_rag, features)
        priority.initialize(0.3)
        priority.push(chain_rag.find_edge(1, 2))
        assert len(priority) == 3


class TestMergeCombiner:
    """Tests for combiner construction and reconciliation."""

    @pytest.mark.parametrize("kind,mode", [
        ("queue", "eager"),
        ("queue", "delayed"),
        ("flat", "eager"),
        ("flat", "delayed"),
        ("flat", "queue"),
        ("probability", "queue"),
    ])
    def test_invalid_pairings(self, kind, mode, features):
        """A combiner refuses a priority it cannot drive."""
        priority = make_priority(kind, make_rag({1: 1}, []), features)
        with pytest.raises(ValueError):
            MergeCombiner(features, priority, mode)

    def test_unknown_mode(self, features):
        """Unknown modes raise ValueError."""
        with pytest.raises(ValueError, match="Unknown combiner"):
            MergeCombiner(features, None, "lazy")

    def test_flat_needs_no_priority(self, features):
        """A flat combiner works without an ordering structure."""
        combiner = MergeCombiner(features, mode=CombineMode.FLAT)
        assert combiner.priority is None

    def test_feature_merge_failure_wrapped(self):
        """Errors from the feature manager surface as FeatureMergeFailed."""
        fm = FeatureManager()
        rag = make_rag({1: 1, 2: 1}, [(1, 2, 0.1)])
        rag.nodes[1].features = np.zeros((3, 1))
        rag.nodes[2].features = np.zeros((3, 2))
        combiner = MergeCombiner(fm, mode=CombineMode.FLAT)
        with pytest.raises(FeatureMergeFailed) as excinfo:
            rag.merge_node(1, 2, combiner)
        assert isinstance(excinfo.value.__cause__, ValueError)

    def test_queue_pushes_rekeyed_edges(self, chain_rag, features):
        """Moved edges get a fresh entry even when their weight is unchanged."""
        priority = QueuePriority(chain_rag, features)
        priority.initialize(0.3)
        combiner = MergeCombiner(features, priority, CombineMode.QUEUE)
        before = len(priority)
        chain_rag.merge_node(1, 2, combiner)
        # 2-3 moved to 1-3 and was pushed again; the old entry stays queued
        assert len(priority) == before + 1
        assert chain_rag.find_edge(1, 3).qloc == 1
