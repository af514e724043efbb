"""
Sample distances and hierarchical clustering.

Samples are compared by the Euclidean distance between their columns of
a transformed (e.g. VST) matrix. The distance matrix is then clustered
agglomeratively with average (UPGMA, default) or complete linkage.

Tie-breaking is deterministic: among cluster pairs at the same linkage
distance, the pair whose smallest member sample positions are lowest
(compared as (first cluster, second cluster)) is merged first. The
resulting tree uses scipy's linkage conventions so it can be handed to
``scipy.cluster.hierarchy`` for dendrogram layout.
"""

import logging
from dataclasses import dataclass
from typing import List, Tuple

import numpy as np
import pandas as pd
from scipy.cluster.hierarchy import fcluster, leaves_list
from scipy.spatial.distance import pdist, squareform

from .exceptions import InsufficientSamplesError

logger = logging.getLogger(__name__)

__all__ = ['ClusterMerge', 'ClusterTree', 'sample_distances',
           'hierarchical_clustering', 'cluster_samples']

LINKAGE_METHODS = ('average', 'complete')


@dataclass(frozen=True)
class ClusterMerge:
    """
    One agglomeration step.

    ``left`` and ``right`` are node ids: 0..n-1 are samples, n + i is the
    cluster created by merge i.
    """

    left: int
    right: int
    height: float
    size: int


@dataclass(frozen=True)
class ClusterTree:
    """
    Binary merge tree over samples, ordered by non-decreasing height.

    Attributes
    ----------
    labels : tuple
        Sample identifiers, in the order of the distance matrix.
    merges : tuple of ClusterMerge
        n - 1 merges.
    method : str
        Linkage method used.
    """

    labels: Tuple
    merges: Tuple[ClusterMerge, ...]
    method: str = 'average'

    @property
    def n_leaves(self):
        return len(self.labels)

    @property
    def heights(self):
        return np.array([m.height for m in self.merges], dtype=float)

    def to_linkage(self):
        """scipy-compatible linkage matrix (n-1 x 4)."""
        return np.array([[m.left, m.right, m.height, m.size] for m in self.merges],
                        dtype=float).reshape(-1, 4)

    def leaf_order(self):
        """Sample identifiers in dendrogram leaf order."""
        return [self.labels[i] for i in leaves_list(self.to_linkage())]

    def cut(self, n_clusters):
        """
        Flat clustering into at most ``n_clusters`` groups.

        Returns
        -------
        pd.Series
            Cluster number (1-based) per sample.
        """
        if n_clusters < 1:
            raise ValueError(f"n_clusters must be >= 1, got {n_clusters}")
        labels = fcluster(self.to_linkage(), t=n_clusters, criterion='maxclust')
        return pd.Series(labels, index=pd.Index(self.labels), name="cluster")


def sample_distances(transformed):
    """
    Pairwise Euclidean distances between samples.

    Parameters
    ----------
    transformed : np.ndarray or pd.DataFrame
        Transformed matrix (features x samples).

    Returns
    -------
    pd.DataFrame
        Symmetric samples x samples distance matrix with zero diagonal,
        labelled by sample identifier (positions for plain arrays).

    Raises
    ------
    InsufficientSamplesError
        If fewer than two samples are given.
    """
    if isinstance(transformed, pd.DataFrame):
        labels = transformed.columns
        data = transformed.values
    else:
        data = np.asarray(transformed)
        labels = pd.RangeIndex(data.shape[1]) if data.ndim == 2 else None

    data = np.asarray(data, dtype=float)
    if data.ndim != 2:
        raise ValueError(f"expected a 2D features x samples matrix, got shape {data.shape}")
    if data.shape[1] < 2:
        raise InsufficientSamplesError(
            f"distances need at least 2 samples, got {data.shape[1]}")
    if not np.all(np.isfinite(data)):
        raise ValueError("transformed matrix contains NaN or infinite values")

    dist = squareform(pdist(data.T, metric='euclidean'))
    return pd.DataFrame(dist, index=labels, columns=labels)


def hierarchical_clustering(distances, method='average'):
    """
    Agglomerative clustering of a distance matrix.

    Parameters
    ----------
    distances : pd.DataFrame or np.ndarray
        Symmetric samples x samples distance matrix.
    method : {'average', 'complete'}
        Linkage rule. Average linkage uses the size-weighted mean of the
        merged clusters' distances, complete linkage the maximum.

    Returns
    -------
    ClusterTree

    Raises
    ------
    InsufficientSamplesError
        If fewer than two samples are given.
    """
    if method not in LINKAGE_METHODS:
        raise ValueError(f"Unknown linkage method: {method!r} (expected one of {LINKAGE_METHODS})")

    if isinstance(distances, pd.DataFrame):
        labels = tuple(distances.index)
        D = distances.values.astype(float)
    else:
        D = np.asarray(distances, dtype=float)
        labels = tuple(range(D.shape[0]))

    if D.ndim != 2 or D.shape[0] != D.shape[1]:
        raise ValueError(f"distance matrix must be square, got shape {D.shape}")
    n = D.shape[0]
    if n < 2:
        raise InsufficientSamplesError(f"clustering needs at least 2 samples, got {n}")
    if not np.allclose(D, D.T):
        raise ValueError("distance matrix must be symmetric")

    # active clusters: node id -> (smallest member position, size)
    active = {i: (i, 1) for i in range(n)}
    dist = {(i, j): D[i, j] for i in range(n) for j in range(i + 1, n)}

    def key(a, b):
        return (a, b) if a < b else (b, a)

    merges: List[ClusterMerge] = []
    last_height = 0.0
    for step in range(n - 1):
        best = None
        for (a, b), d in dist.items():
            order = tuple(sorted((active[a][0], active[b][0])))
            candidate = (d, order, a, b)
            if best is None or candidate[:2] < best[:2]:
                best = candidate
        d, _, a, b = best

        # left is the cluster holding the lower sample position
        if active[b][0] < active[a][0]:
            a, b = b, a
        size_a, size_b = active[a][1], active[b][1]
        new_id = n + step
        height = max(float(d), last_height)  # guards against rounding in the update
        merges.append(ClusterMerge(left=a, right=b, height=height, size=size_a + size_b))
        last_height = height

        del dist[key(a, b)]
        for c in list(active):
            if c in (a, b):
                continue
            d_ac = dist.pop(key(a, c))
            d_bc = dist.pop(key(b, c))
            if method == 'average':
                d_new = (size_a * d_ac + size_b * d_bc) / (size_a + size_b)
            else:
                d_new = max(d_ac, d_bc)
            dist[key(new_id, c)] = d_new

        active[new_id] = (min(active[a][0], active[b][0]), size_a + size_b)
        del active[a]
        del active[b]

    logger.debug(f"{method} linkage over {n} samples, max height {last_height:.4g}")
    return ClusterTree(labels=labels, merges=tuple(merges), method=method)


def cluster_samples(transformed, method='average'):
    """
    Distance matrix and clustering tree for the samples of a transformed matrix.

    Returns
    -------
    distances : pd.DataFrame
        Euclidean sample distance matrix.
    tree : ClusterTree
        Hierarchical clustering of the samples.
    """
    distances = sample_distances(transformed)
    logger.info(f"Clustering {distances.shape[0]} samples ({method} linkage)")
    tree = hierarchical_clustering(distances, method=method)
    return distances, tree
