"""
Mutual nearest neighbour (MNN) batch correction in a low-dimensional space.

Follows the fast MNN approach of Haghverdi et al. (Nature Biotechnology,
2018): batches are projected onto a PCA in which every batch is weighted
equally, MNN pairs between a growing reference and the next batch define
correction vectors, and these are smoothed onto all cells of the batch.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

import numpy as np
from scipy import sparse
from sklearn.decomposition import PCA
from sklearn.neighbors import NearestNeighbors

logger = logging.getLogger(__name__)


@dataclass
class MNNResult:
    """Output of :func:`fast_mnn`."""

    corrected: np.ndarray
    """Corrected embedding, cells of all batches in input order."""

    batch_indices: np.ndarray
    """Index of the batch each row comes from."""

    merge_order: List[int]
    """Order in which batches were merged."""

    n_pairs: List[int] = field(default_factory=list)
    """Number of MNN pairs found at each merge step."""

    lost_var: np.ndarray = None
    """Proportion of within-batch variance removed by the correction."""

    rotation: np.ndarray = None
    """Gene loadings of the multi-batch PCA (n_comps x n_genes)."""


def cosine_normalize(X: np.ndarray) -> np.ndarray:
    """Scale every row to unit L2 norm; all-zero rows are left as they are."""
    X = np.asarray(X, dtype=float)
    norms = np.linalg.norm(X, axis=1)
    norms[norms == 0] = 1.0
    return X / norms[:, None]


def multi_batch_pca(
    batches: Sequence[np.ndarray],
    n_comps: int = 50,
    svd_solver: str = "auto",
    random_state: int = 0,
) -> Tuple[List[np.ndarray], np.ndarray]:
    """
    PCA to which every batch contributes equally, regardless of its size.

    Each batch is centred on its own mean and down-weighted by the square
    root of its size before computing the rotation. All cells are then
    projected after centring on the average of the batch means, which keeps
    the differences between batches.

    Parameters
    ----------
    batches : sequence of np.ndarray
        Cells x genes matrices with the same genes.
    n_comps : int
        Number of components.
    svd_solver : str
        Solver passed to ``sklearn.decomposition.PCA``.
    random_state : int
        Random seed.

    Returns
    -------
    tuple
        List of per-batch coordinates and the rotation (n_comps x n_genes).
    """
    centers = [b.mean(axis=0) for b in batches]
    stacked = np.vstack(
        [(b - c) / np.sqrt(b.shape[0]) for b, c in zip(batches, centers)]
    )
    max_comps = min(stacked.shape)
    if n_comps > max_comps:
        raise ValueError(
            f"n_comps={n_comps} exceeds min(n_cells, n_genes)={max_comps}"
        )

    # The stacked matrix is already column-centred, so sklearn's own
    # centring leaves it unchanged.
    pca = PCA(n_components=n_comps, svd_solver=svd_solver, random_state=random_state)
    pca.fit(stacked)
    rotation = pca.components_

    grand_center = np.mean(centers, axis=0)
    coords = [(b - grand_center) @ rotation.T for b in batches]
    return coords, rotation


def find_mutual_nn(
    reference: np.ndarray,
    target: np.ndarray,
    k1: int = 20,
    k2: int = 20,
    n_jobs: Optional[int] = None,
    algorithm: str = "auto",
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Find mutual nearest neighbour pairs between two sets of cells.

    Parameters
    ----------
    reference : np.ndarray
        Reference cells x dimensions.
    target : np.ndarray
        Target cells x dimensions.
    k1 : int
        Neighbours searched in the reference for each target cell.
    k2 : int
        Neighbours searched in the target for each reference cell.
    n_jobs : int, optional
        Parallel jobs for the neighbour search.
    algorithm : str
        Neighbour search algorithm ('auto', 'ball_tree', 'kd_tree', 'brute').

    Returns
    -------
    tuple of np.ndarray
        Target indices and reference indices of the pairs.
    """
    k1 = min(k1, reference.shape[0])
    k2 = min(k2, target.shape[0])

    _, t2r = (
        NearestNeighbors(n_neighbors=k1, algorithm=algorithm, n_jobs=n_jobs)
        .fit(reference)
        .kneighbors(target)
    )
    _, r2t = (
        NearestNeighbors(n_neighbors=k2, algorithm=algorithm, n_jobs=n_jobs)
        .fit(target)
        .kneighbors(reference)
    )

    shape = (target.shape[0], reference.shape[0])
    forward = sparse.csr_matrix(
        (np.ones(t2r.size), (np.repeat(np.arange(shape[0]), k1), t2r.ravel())),
        shape=shape,
    )
    backward = sparse.csr_matrix(
        (np.ones(r2t.size), (r2t.ravel(), np.repeat(np.arange(shape[1]), k2))),
        shape=shape,
    )
    mutual = forward.multiply(backward).tocoo()
    order = np.lexsort((mutual.col, mutual.row))
    return mutual.row[order], mutual.col[order]


def _average_correction(
    reference: np.ndarray,
    target: np.ndarray,
    target_idx: np.ndarray,
    reference_idx: np.ndarray,
) -> Tuple[np.ndarray, np.ndarray]:
    """Mean correction vector of every target cell that has MNN partners."""
    paired, inverse = np.unique(target_idx, return_inverse=True)
    diffs = reference[reference_idx] - target[target_idx]
    sums = np.zeros((len(paired), reference.shape[1]))
    np.add.at(sums, inverse, diffs)
    return sums / np.bincount(inverse)[:, None], paired


def _center_along_batch_vector(X: np.ndarray, batch_vec: np.ndarray) -> np.ndarray:
    """Remove the spread of a batch along the overall batch vector."""
    norm = np.linalg.norm(batch_vec)
    if norm == 0:
        return X
    direction = batch_vec / norm
    location = X @ direction
    return X + np.outer(location.mean() - location, direction)


def _tricube_weighted_correction(
    target: np.ndarray,
    corrections: np.ndarray,
    paired: np.ndarray,
    k: int = 20,
    ndist: float = 3.0,
    n_jobs: Optional[int] = None,
    algorithm: str = "auto",
) -> np.ndarray:
    """Smooth the pairwise corrections onto every target cell."""
    k = min(k, len(paired))
    dist, idx = (
        NearestNeighbors(n_neighbors=k, algorithm=algorithm, n_jobs=n_jobs)
        .fit(target[paired])
        .kneighbors(target)
    )

    middle = int(np.ceil(k / 2)) - 1
    limit = dist[:, middle] * ndist
    rel = np.divide(
        dist,
        limit[:, None],
        out=np.zeros_like(dist),
        where=limit[:, None] > 0,
    )
    weights = (1 - np.clip(rel, 0, 1) ** 3) ** 3
    totals = weights.sum(axis=1)
    weights[totals == 0] = 1.0
    weights /= weights.sum(axis=1, keepdims=True)

    return np.einsum("ij,ijk->ik", weights, corrections[idx])


def _within_batch_variance(X: np.ndarray) -> float:
    return float(X.var(axis=0).sum())


def fast_mnn(
    batches: Sequence[np.ndarray],
    k: int = 20,
    n_comps: int = 50,
    ndist: float = 3.0,
    cos_norm: bool = True,
    center_along_batch: bool = True,
    merge_order: Optional[Sequence[int]] = None,
    n_jobs: Optional[int] = None,
    algorithm: str = "auto",
    svd_solver: str = "auto",
    random_state: int = 0,
) -> MNNResult:
    """
    Correct batch effects with mutual nearest neighbours in PC space.

    Parameters
    ----------
    batches : sequence of np.ndarray
        Cells x genes log-expression matrices with the same genes.
    k : int
        Number of nearest neighbours for MNN detection and smoothing.
    n_comps : int
        Number of dimensions of the corrected embedding.
    ndist : float
        Bandwidth of the tricube kernel, as a multiple of the distance to
        the median neighbour.
    cos_norm : bool
        Cosine-normalize cells before the PCA.
    center_along_batch : bool
        Remove the variation of each batch along the batch vector before
        applying the correction.
    merge_order : sequence of int, optional
        Order in which batches are merged into the reference.
        Defaults to the input order.
    n_jobs : int, optional
        Parallel jobs for the neighbour searches.
    algorithm : str
        Neighbour search algorithm.
    svd_solver : str
        PCA solver.
    random_state : int
        Random seed.

    Returns
    -------
    MNNResult
    """
    if len(batches) < 2:
        raise ValueError("fast_mnn needs at least two batches")
    n_genes = batches[0].shape[1]
    for batch in batches[1:]:
        if batch.shape[1] != n_genes:
            raise ValueError("All batches must have the same genes")

    if merge_order is None:
        merge_order = list(range(len(batches)))
    merge_order = [int(i) for i in merge_order]
    if sorted(merge_order) != list(range(len(batches))):
        raise ValueError("merge_order must be a permutation of the batch indices")

    data = [np.asarray(b, dtype=float) for b in batches]
    if cos_norm:
        data = [cosine_normalize(b) for b in data]

    coords, rotation = multi_batch_pca(
        data, n_comps=n_comps, svd_solver=svd_solver, random_state=random_state
    )
    original = [c.copy() for c in coords]

    first = merge_order[0]
    reference = coords[first]
    members = [first]
    corrected = {first: reference}
    n_pairs = []

    for current in merge_order[1:]:
        target = coords[current]
        target_idx, reference_idx = find_mutual_nn(
            reference, target, k1=k, k2=k, n_jobs=n_jobs, algorithm=algorithm
        )
        n_pairs.append(len(target_idx))
        logger.info(
            "Merging batch %d into reference %s: %d MNN pairs",
            current,
            members,
            len(target_idx),
        )

        averaged, paired = _average_correction(
            reference, target, target_idx, reference_idx
        )
        if center_along_batch:
            batch_vec = averaged.mean(axis=0)
            # The merged reference is centred as one block.
            reference = _center_along_batch_vector(reference, batch_vec)
            pieces = np.cumsum([0] + [corrected[m].shape[0] for m in members])
            for m, a, b in zip(members, pieces[:-1], pieces[1:]):
                corrected[m] = reference[a:b]
            target = _center_along_batch_vector(target, batch_vec)
            averaged, paired = _average_correction(
                reference, target, target_idx, reference_idx
            )

        target = target + _tricube_weighted_correction(
            target,
            averaged,
            paired,
            k=k,
            ndist=ndist,
            n_jobs=n_jobs,
            algorithm=algorithm,
        )
        corrected[current] = target
        members.append(current)
        reference = np.vstack([corrected[m] for m in members])

    lost_var = np.array(
        [
            1 - _within_batch_variance(corrected[i]) / _within_batch_variance(original[i])
            if _within_batch_variance(original[i]) > 0
            else 0.0
            for i in range(len(batches))
        ]
    )
    batch_indices = np.concatenate(
        [np.full(b.shape[0], i) for i, b in enumerate(batches)]
    )
    return MNNResult(
        corrected=np.vstack([corrected[i] for i in range(len(batches))]),
        batch_indices=batch_indices,
        merge_order=merge_order,
        n_pairs=n_pairs,
        lost_var=lost_var,
        rotation=rotation,
    )
