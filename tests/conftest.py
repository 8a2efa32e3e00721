"""Pytest configuration and shared fixtures for the agglomeration tests."""

import logging
import sys
from pathlib import Path

import numpy as np
import pytest

# Add project root to path
PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from agglo_config import ENGINE_LOGGERS
from feature_manager import FeatureManager
from region_graph import MitoType, RegionAdjacencyGraph
from tests.fixtures import make_label_volume, make_nested_rag, make_rag


# ============================================================================
# Logging
# ============================================================================


@pytest.fixture(autouse=True)
def restore_engine_log_levels():
    """Undo logger level changes made by StackAgglomerator."""
    saved = {name: logging.getLogger(name).level for name in ENGINE_LOGGERS}
    yield
    for name, level in saved.items():
        logging.getLogger(name).setLevel(level)


# ============================================================================
# Graph Fixtures
# ============================================================================


@pytest.fixture
def features() -> FeatureManager:
    """Single-channel feature manager; hand-built edges keep their weights."""
    return FeatureManager()


@pytest.fixture
def chain_rag() -> RegionAdjacencyGraph:
    """A-B-C-D-E chain (ids 1..5) with a preserved C-D boundary."""
    return make_rag(
        {1: 10, 2: 20, 3: 30, 4: 40, 5: 50},
        [
            (1, 2, 0.05),
            (2, 3, 0.20),
            (3, 4, 0.90, {"preserve": True}),
            (4, 5, 0.40),
        ],
        border=(1, 2, 3, 4, 5),
    )


@pytest.fixture
def mito_rag() -> RegionAdjacencyGraph:
    """Mitochondrion 1 inside tissue 2, plus an unrelated tissue pair 3-4."""
    return make_rag(
        {1: 5, 2: 50, 3: 30, 4: 30},
        [(1, 2, 0.5), (3, 4, 0.5)],
        border=(2, 3, 4),
        mito={1: MitoType.MITO},
    )


@pytest.fixture
def grid_rag() -> RegionAdjacencyGraph:
    """3x3 grid of regions (ids 1..9) with distinct weights; 5 is interior."""
    rag = RegionAdjacencyGraph()
    for node_id in range(1, 10):
        node = rag.insert_node(node_id)
        node.size = node_id
        node.border = node_id != 5
    weight = 0.01
    for row in range(3):
        for col in range(3):
            node_id = row * 3 + col + 1
            if col < 2:
                rag.insert_edge(node_id, node_id + 1, weight=weight, size=2)
                weight += 0.037
            if row < 2:
                rag.insert_edge(node_id, node_id + 3, weight=weight, size=3)
                weight += 0.037
    return rag


@pytest.fixture
def nested_rag() -> RegionAdjacencyGraph:
    """Border region 1 encloses 2, which encloses 3."""
    return make_nested_rag()


# ============================================================================
# Volume Fixtures
# ============================================================================


@pytest.fixture
def label_volume() -> np.ndarray:
    """Two slabs with an enclosed block of label 3."""
    return make_label_volume()


@pytest.fixture
def split_volume():
    """
    4x4x4 volume split in two halves along x.

    Returns:
        (labels, predictions): labels 1 (x < 2) and 2 (x >= 2); predictions
        0.1 everywhere except 0.9 in the last x column
    """
    labels = np.ones((4, 4, 4), dtype=np.int64)
    labels[:, :, 2:] = 2
    predictions = np.full(labels.shape, 0.1)
    predictions[:, :, 3] = 0.9
    return labels, predictions
