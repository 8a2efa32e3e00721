from agglo_config import AgglomerationConfig, apply_log_level
from agglomeration import agglomerate, agglomerate_staged
from feature_manager import FeatureManager
from inclusions import remove_inclusions
from region_graph import BACKGROUND_ID, MitoType, RegionAdjacencyGraph
from skimage.util import map_array
from typing import Any, Dict, Optional, Tuple
import logging
import numpy as np

logger = logging.getLogger(__name__)


def _as_channels(predictions: np.ndarray, labels: np.ndarray) -> np.ndarray:
    """Return predictions as (Z, Y, X, C), checking they line up with the labels."""
    predictions = np.asarray(predictions, dtype=np.float64)
    if predictions.ndim == 3:
        predictions = predictions[..., np.newaxis]
    if predictions.ndim != 4 or predictions.shape[:3] != labels.shape:
        raise ValueError(
            f"Predictions of shape {predictions.shape} do not match labels {labels.shape}"
        )
    return predictions


def border_labels(labels: np.ndarray) -> np.ndarray:
    """
    Labels present on any face of the volume.

    Args:
        labels (np.ndarray): Label volume (Z, Y, X)

    Returns:
        np.ndarray: Sorted unique non-zero labels touching the border
    """
    faces = [
        labels[0], labels[-1],
        labels[:, 0], labels[:, -1],
        labels[:, :, 0], labels[:, :, -1],
    ]
    ids = np.unique(np.concatenate([face.ravel() for face in faces]))
    return ids[ids != 0]


def build_rag(labels: np.ndarray, predictions: Optional[np.ndarray] = None,
              features: Optional[FeatureManager] = None) -> RegionAdjacencyGraph:
    """
    Build the region adjacency graph of a label volume.

    Args:
        labels (np.ndarray): Integer label volume (Z, Y, X); 0 is background
        predictions (np.ndarray): Optional boundary/mito predictions, shape
            (Z, Y, X) or (Z, Y, X, C)
        features (FeatureManager): Receives the statistics and sets the
            initial edge weights; required when predictions are given

    Returns:
        RegionAdjacencyGraph: One node per non-zero label sized by voxel
            count, one edge per pair of 6-connected distinct non-zero labels
            sized by the number of shared faces

    Notes:
        - A node is flagged ``border`` when its label appears on a face of
          the volume
        - ``border_size`` counts faces shared with any other label,
          background included
        - Edge statistics use the mean prediction of the two voxels on each
          side of a shared face
    """
    labels = np.asarray(labels)
    if labels.ndim != 3:
        raise ValueError(f"Expected a 3D label volume, got shape {labels.shape}")
    if not np.issubdtype(labels.dtype, np.integer):
        raise ValueError(f"Labels must be integers, got {labels.dtype}")
    if predictions is not None and features is None:
        raise ValueError("A FeatureManager is required to use predictions")

    channels = _as_channels(predictions, labels) if predictions is not None else None

    rag = RegionAdjacencyGraph()
    ids, inverse, counts = np.unique(labels, return_inverse=True, return_counts=True)
    inverse = inverse.reshape(-1)
    for label, count in zip(ids, counts):
        if label != 0:
            rag.insert_node(int(label)).size = int(count)

    for label in border_labels(labels):
        rag.nodes[int(label)].border = True

    if channels is not None:
        flat = channels.reshape(-1, channels.shape[-1])
        n_ids = len(ids)
        sums = np.stack([np.bincount(inverse, weights=flat[:, c], minlength=n_ids)
                         for c in range(flat.shape[1])], axis=1)
        sumsq = np.stack([np.bincount(inverse, weights=flat[:, c] ** 2, minlength=n_ids)
                          for c in range(flat.shape[1])], axis=1)
        for i, label in enumerate(ids):
            if label != 0:
                rag.nodes[int(label)].features = features.cache_from_moments(
                    counts[i], sums[i], sumsq[i])

    pairs = []
    face_values = []
    border_faces = []
    for axis in range(3):
        lower = [slice(None)] * 3
        upper = [slice(None)] * 3
        lower[axis] = slice(None, -1)
        upper[axis] = slice(1, None)
        la = labels[tuple(lower)].ravel()
        lb = labels[tuple(upper)].ravel()

        diff = la != lb
        border_faces.append(la[diff])
        border_faces.append(lb[diff])

        real = diff & (la != 0) & (lb != 0)
        a, b = la[real], lb[real]
        pairs.append(np.stack([np.minimum(a, b), np.maximum(a, b)], axis=1))
        if channels is not None:
            pa = channels[tuple(lower)].reshape(-1, channels.shape[-1])[real]
            pb = channels[tuple(upper)].reshape(-1, channels.shape[-1])[real]
            face_values.append((pa + pb) / 2.0)

    faces = np.concatenate(border_faces)
    face_ids, face_counts = np.unique(faces[faces != 0], return_counts=True)
    for label, count in zip(face_ids, face_counts):
        rag.nodes[int(label)].border_size = int(count)

    pairs = np.concatenate(pairs)
    if len(pairs) == 0:
        logger.info("Built RAG with %d regions and no edges", rag.num_nodes)
        return rag

    unique_pairs, pair_inverse, pair_counts = np.unique(
        pairs, axis=0, return_inverse=True, return_counts=True)
    pair_inverse = pair_inverse.reshape(-1)

    edge_sums = edge_sumsq = None
    if channels is not None:
        values = np.concatenate(face_values)
        n_pairs = len(unique_pairs)
        edge_sums = np.stack([np.bincount(pair_inverse, weights=values[:, c], minlength=n_pairs)
                              for c in range(values.shape[1])], axis=1)
        edge_sumsq = np.stack([np.bincount(pair_inverse, weights=values[:, c] ** 2,
                                           minlength=n_pairs)
                               for c in range(values.shape[1])], axis=1)

    for i, (a, b) in enumerate(unique_pairs):
        edge = rag.insert_edge(int(a), int(b), size=int(pair_counts[i]))
        if edge_sums is not None:
            edge.features = features.cache_from_moments(pair_counts[i], edge_sums[i],
                                                        edge_sumsq[i])
            edge.set_weight(features.get_probability(edge))

    logger.info("Built RAG with %d regions and %d edges (%d on the border)",
                rag.num_nodes, rag.num_edges, len(border_labels(labels)))
    return rag


def classify_nodes(rag: RegionAdjacencyGraph, features: FeatureManager) -> int:
    """Tag every region through the feature manager; returns the mito count."""
    n_mito = 0
    for node in rag.iter_nodes():
        node.mito_type = features.classify(node)
        if node.mito_type == MitoType.MITO:
            n_mito += 1
    logger.debug("Classified %d of %d regions as mitochondria", n_mito, rag.num_nodes)
    return n_mito


def relabel_volume(labels: np.ndarray, rag: RegionAdjacencyGraph) -> np.ndarray:
    """
    Replace every original label by the id of the region it ended up in.

    Args:
        labels (np.ndarray): The label volume the RAG was built from
        rag (RegionAdjacencyGraph): Graph after agglomeration

    Returns:
        np.ndarray: Relabelled volume with the same shape and dtype
    """
    mapping = {BACKGROUND_ID: BACKGROUND_ID}
    mapping.update(rag.label_map())
    input_vals = np.fromiter(mapping.keys(), dtype=labels.dtype, count=len(mapping))
    output_vals = np.fromiter(mapping.values(), dtype=labels.dtype, count=len(mapping))
    return map_array(labels, input_vals, output_vals)


class StackAgglomerator:
    """
    Full pass over one label volume: build, agglomerate, remove inclusions,
    relabel. With ``config.staged`` the agglomeration step is the staged
    prepass / inclusion / reseed / final sequence.

    Attributes:
        config (AgglomerationConfig): Run settings
        classifier: Optional ``predict_proba`` model handed to the feature manager
        rag (RegionAdjacencyGraph): Graph of the last processed volume
    """

    def __init__(self, config: Optional[AgglomerationConfig] = None, classifier=None):
        self.config = (config or AgglomerationConfig()).check()
        apply_log_level(self.config.log_level)
        self.classifier = classifier
        self.rag = None

    def make_features(self, predictions: Optional[np.ndarray]) -> FeatureManager:
        num_channels = 1
        if predictions is not None and np.ndim(predictions) == 4:
            num_channels = np.shape(predictions)[-1]
        return FeatureManager(
            num_channels=num_channels,
            classifier=self.classifier,
            boundary_channel=self.config.boundary_channel,
            mito_channel=self.config.mito_channel,
            mito_cutoff=self.config.mito_cutoff,
        )

    def process_volume(self, labels: np.ndarray,
                       predictions: Optional[np.ndarray] = None
                       ) -> Tuple[np.ndarray, Dict[str, Any]]:
        """
        Agglomerate one volume.

        Args:
            labels (np.ndarray): Over-segmented label volume (Z, Y, X)
            predictions (np.ndarray): Prediction channels aligned with labels

        Returns:
            Tuple of (relabelled volume, summary dict)
        """
        config = self.config
        features = self.make_features(predictions)
        rag = build_rag(labels, predictions, features)
        self.rag = rag
        initial = rag.num_nodes

        if config.needs_classification:
            classify_nodes(rag, features)

        if config.staged:
            result = agglomerate_staged(
                rag, features,
                priority=config.priority,
                combiner=config.combiner,
                threshold=config.threshold,
                options=config.options(),
                prepass_threshold=config.prepass_threshold,
                max_stale_pops=config.max_stale_pops,
            )
        else:
            result = agglomerate(
                rag, features,
                priority=config.priority,
                combiner=config.combiner,
                threshold=config.threshold,
                options=config.options(),
                max_stale_pops=config.max_stale_pops,
            )

        removed = result.inclusions_removed
        if config.remove_inclusions and rag.num_nodes:
            removed += remove_inclusions(rag, features)

        summary = {
            "initial_regions": initial,
            "merges": result.merges,
            "stale_pops": result.stale_pops,
            "mito_skips": result.mito_skips,
            "inclusions_removed": removed,
            "final_regions": rag.num_nodes,
        }
        logger.info("Stack agglomeration: %d -> %d regions", initial, rag.num_nodes)
        return relabel_volume(labels, rag), summary
