"""
Consensus clustering of an embedding.

k-means is run over several dimensionalities and random starts; the fraction
of runs in which two cells share a cluster forms a consensus matrix, which is
then clustered hierarchically (Kiselev et al., Nature Methods 2017).
"""

import logging
from typing import Optional, Sequence, Tuple

import numpy as np
from scipy.cluster.hierarchy import fcluster, linkage
from scipy.spatial.distance import squareform
from sklearn.cluster import KMeans

logger = logging.getLogger(__name__)


def _default_dims(n_cells: int, n_dims: int) -> list:
    # 4-7% of the number of cells; when that exceeds the embedding width,
    # spread over every width from 2 up instead.
    low = max(2, int(np.floor(0.04 * n_cells)))
    high = max(low, int(np.ceil(0.07 * n_cells)))
    if n_dims < 2:
        return [n_dims]
    if high > n_dims:
        low, high = 2, n_dims
    dims = np.unique(np.round(np.linspace(low, high, min(15, high - low + 1))))
    return [int(d) for d in dims]


def consensus_matrix(
    embedding: np.ndarray,
    n_clusters: int,
    dims: Optional[Sequence[int]] = None,
    n_starts: int = 5,
    random_state: int = 0,
) -> np.ndarray:
    """
    Fraction of k-means runs in which each pair of cells is co-clustered.

    Parameters
    ----------
    embedding : np.ndarray
        Cells x dimensions coordinates (e.g. a corrected embedding).
    n_clusters : int
        Number of clusters for every k-means run.
    dims : sequence of int, optional
        Numbers of leading dimensions to cluster on.
    n_starts : int
        Random starts per dimensionality.
    random_state : int
        Base random seed.

    Returns
    -------
    np.ndarray
        Symmetric n_cells x n_cells matrix with values in [0, 1].
    """
    embedding = np.asarray(embedding, dtype=float)
    n_cells, n_dims = embedding.shape
    if not 1 <= n_clusters <= n_cells:
        raise ValueError(f"n_clusters must be between 1 and {n_cells}")
    if dims is None:
        dims = _default_dims(n_cells, n_dims)

    consensus = np.zeros((n_cells, n_cells))
    n_runs = 0
    for d in dims:
        for _ in range(n_starts):
            labels = KMeans(
                n_clusters=n_clusters,
                n_init=1,
                random_state=random_state + n_runs,
            ).fit_predict(embedding[:, : min(d, n_dims)])
            consensus += labels[:, None] == labels[None, :]
            n_runs += 1

    return consensus / n_runs


def consensus_clustering(
    embedding: np.ndarray,
    n_clusters: int,
    dims: Optional[Sequence[int]] = None,
    n_starts: int = 5,
    random_state: int = 0,
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Cluster cells by complete-linkage clustering of a k-means consensus.

    Parameters
    ----------
    embedding : np.ndarray
        Cells x dimensions coordinates.
    n_clusters : int
        Number of clusters.
    dims, n_starts, random_state
        Passed to :func:`consensus_matrix`.

    Returns
    -------
    tuple
        Cluster labels (0-based) and the consensus matrix.
    """
    consensus = consensus_matrix(
        embedding, n_clusters, dims=dims, n_starts=n_starts, random_state=random_state
    )
    if consensus.shape[0] == 1:
        return np.zeros(1, dtype=int), consensus

    distance = 1.0 - consensus
    np.fill_diagonal(distance, 0.0)
    tree = linkage(squareform(distance, checks=False), method="complete")
    labels = fcluster(tree, t=n_clusters, criterion="maxclust") - 1

    logger.info(
        "Consensus clustering: %d clusters over %d cells",
        len(np.unique(labels)),
        len(labels),
    )
    return labels, consensus
