"""
Feature caches and boundary probabilities

The agglomeration engine never looks inside a feature cache. It only asks the
feature manager three things: merge two caches, turn an edge cache into a
boundary probability, and classify a region. This module provides the default
implementation used by the stack pipeline and the tests.

Cache layout:
    np.ndarray of shape (3, n_channels), float64
        row 0: number of samples
        row 1: sum of the prediction values
        row 2: sum of squared prediction values

These are sufficient statistics, so merging two caches is an element-wise
sum. The merge is commutative and associative: folding any number of regions
into one survivor yields the same aggregate regardless of merge order.
"""

import logging

import numpy as np

from region_graph import MitoType

logger = logging.getLogger(__name__)

COUNT, SUM, SUMSQ = 0, 1, 2


class FeatureManager:
    """
    Default feature/probability capability.

    Attributes:
        num_channels (int): Number of prediction channels per voxel
        classifier: Optional object with ``predict_proba(X)``; when present
            the boundary probability is its last-class output for the edge
            feature vector
        boundary_channel (int): Channel whose mean is the probability when
            no classifier is configured
        mito_channel (int or None): Channel holding the mitochondrion
            prediction used by ``classify``
        mito_cutoff (float): Mean mito prediction at/above which a region is MITO
        near_mito_cutoff (float or None): Mean at/above which a region is NEAR_MITO

    Notes:
        - Nodes or edges without statistics keep their stored tag/weight; this
          is what lets hand-built graphs and synthetic constraint edges flow
          through the same code path
    """

    def __init__(self, num_channels=1, classifier=None, boundary_channel=0,
                 mito_channel=None, mito_cutoff=0.5, near_mito_cutoff=None):
        if num_channels < 1:
            raise ValueError(f"num_channels must be >= 1, got {num_channels}")
        if not 0 <= boundary_channel < num_channels:
            raise ValueError(f"boundary_channel {boundary_channel} out of range")
        if mito_channel is not None and not 0 <= mito_channel < num_channels:
            raise ValueError(f"mito_channel {mito_channel} out of range")

        self.num_channels = num_channels
        self.classifier = classifier
        self.boundary_channel = boundary_channel
        self.mito_channel = mito_channel
        self.mito_cutoff = mito_cutoff
        self.near_mito_cutoff = near_mito_cutoff

    # ------------------------------------------------------------------
    # Cache construction
    # ------------------------------------------------------------------

    def empty_cache(self):
        return np.zeros((3, self.num_channels), dtype=np.float64)

    def cache_from_values(self, values):
        """
        Build a cache from raw prediction samples.

        Args:
            values (np.ndarray): Shape (n_samples,) for a single channel or
                (n_samples, n_channels)

        Returns:
            np.ndarray: Cache of shape (3, n_channels)
        """
        values = np.asarray(values, dtype=np.float64)
        if values.ndim == 1:
            values = values[:, np.newaxis]
        if values.shape[1] != self.num_channels:
            raise ValueError(
                f"Expected {self.num_channels} channels, got {values.shape[1]}"
            )
        cache = self.empty_cache()
        cache[COUNT] = values.shape[0]
        cache[SUM] = values.sum(axis=0)
        cache[SUMSQ] = (values ** 2).sum(axis=0)
        return cache

    def cache_from_moments(self, count, sums, sumsq):
        cache = self.empty_cache()
        cache[COUNT] = count
        cache[SUM] = sums
        cache[SUMSQ] = sumsq
        return cache

    # ------------------------------------------------------------------
    # Capability used by the engine
    # ------------------------------------------------------------------

    def merge_features(self, target, source):
        """
        Fold the cache of ``source`` into ``target`` (nodes or edges).

        Raises:
            ValueError: If the two caches have different shapes
        """
        if source.features is None:
            return
        if target.features is None:
            target.features = np.array(source.features, dtype=np.float64, copy=True)
            return
        if target.features.shape != source.features.shape:
            raise ValueError(
                f"Cache shape mismatch: {target.features.shape} vs {source.features.shape}"
            )
        target.features = target.features + source.features

    def feature_vector(self, cache):
        """Per channel: boundary mean, standard deviation and log1p(count)."""
        count = cache[COUNT]
        safe = np.where(count > 0, count, 1.0)
        mean = cache[SUM] / safe
        var = np.maximum(cache[SUMSQ] / safe - mean ** 2, 0.0)
        return np.concatenate([mean, np.sqrt(var), np.log1p(count)])

    def get_probability(self, edge):
        """Probability in [0, 1] that ``edge`` is a true boundary."""
        cache = edge.features
        if edge.false_edge or cache is None:
            return float(edge.weight)

        if self.classifier is not None:
            proba = self.classifier.predict_proba(self.feature_vector(cache)[np.newaxis, :])
            prob = float(np.asarray(proba)[0, -1])
        else:
            count = cache[COUNT, self.boundary_channel]
            if count <= 0:
                return float(edge.weight)
            prob = float(cache[SUM, self.boundary_channel] / count)

        return float(np.clip(prob, 0.0, 1.0))

    def classify(self, node):
        """Tag a region from the mean of the mito prediction channel."""
        cache = node.features
        if self.mito_channel is None or cache is None:
            return node.mito_type
        count = cache[COUNT, self.mito_channel]
        if count <= 0:
            return node.mito_type

        mean = cache[SUM, self.mito_channel] / count
        if mean >= self.mito_cutoff:
            return MitoType.MITO
        if self.near_mito_cutoff is not None and mean >= self.near_mito_cutoff:
            return MitoType.NEAR_MITO
        return MitoType.NONE
