"""
Size-factor normalization for scRNA-seq count data.

Includes:
- Library-size factors
- Pooling/deconvolution size factors, robust to the many zeros of
  single-cell counts (Lun et al., Genome Biology 2016)
- Log-normalization with a pseudo-count
- Multi-batch rescaling of size factors to a common coverage
"""

import logging
from typing import Dict, List, Optional, Sequence, Union

import numpy as np
import scanpy as sc
from anndata import AnnData
from scipy import sparse
from scipy.sparse.linalg import lsqr
from sklearn.cluster import KMeans

logger = logging.getLogger(__name__)

DEFAULT_POOL_SIZES = tuple(range(21, 102, 5))

# Weight of the per-cell equations that keep the pooled system solvable.
LOW_WEIGHT = 1e-6


def _row_sums(X) -> np.ndarray:
    return np.asarray(X.sum(axis=1), dtype=float).ravel()


def _col_means(X) -> np.ndarray:
    return np.asarray(X.mean(axis=0), dtype=float).ravel()


def _as_csr(X) -> sparse.csr_matrix:
    return sparse.csr_matrix(X, dtype=float)


def library_size_factors(counts) -> np.ndarray:
    """
    Library-size factors scaled to unit mean.

    Parameters
    ----------
    counts : array-like or sparse matrix
        Cells x genes count matrix.

    Returns
    -------
    np.ndarray
        One factor per cell.
    """
    lib = _row_sums(counts)
    if lib.mean() <= 0:
        raise ValueError("All cells have zero library size")
    return lib / lib.mean()


def _ring_order(lib_sizes: np.ndarray) -> np.ndarray:
    # Odd ranks ascending then even ranks descending, so that every sliding
    # window holds cells of similar library size.
    order = np.argsort(lib_sizes, kind="stable")
    return np.concatenate([order[0::2], order[1::2][::-1]])


def _pool_membership(ring: np.ndarray, size: int) -> sparse.csr_matrix:
    # Row i sums the `size` cells that follow position i around the ring.
    n_cells = len(ring)
    ring2 = np.concatenate([ring, ring])
    cols = ring2[np.arange(n_cells)[:, None] + np.arange(size)].ravel()
    rows = np.repeat(np.arange(n_cells, dtype=np.int32), size)
    return sparse.csr_matrix(
        (np.ones(len(rows)), (rows, cols.astype(np.int32))), shape=(n_cells, n_cells)
    )


def _pool_size_factors(
    norm: sparse.csr_matrix,
    lib_sizes: np.ndarray,
    sizes: Sequence[int],
    max_block: int = 2 ** 18,
) -> np.ndarray:
    """Deconvolve per-cell factors (relative to library size) from pools."""
    n_cells, n_genes = norm.shape
    reference = _col_means(norm)
    ring = _ring_order(lib_sizes)
    # Pool rows are densified a block at a time to bound memory.
    chunk = max(1, max_block // max(n_genes, 1))

    blocks, rhs = [], []
    for size in sizes:
        membership = _pool_membership(ring, size)
        ratios = np.empty(n_cells)
        for start in range(0, n_cells, chunk):
            pooled = (membership[start:start + chunk] @ norm).toarray()
            ratios[start:start + chunk] = np.median(pooled / reference, axis=1)
        blocks.append(membership)
        rhs.append(ratios)

    weight = np.sqrt(LOW_WEIGHT)
    blocks.append(sparse.identity(n_cells, format="csr") * weight)
    rhs.append(np.full(n_cells, weight))

    design = sparse.vstack(blocks, format="csr")
    return lsqr(design, np.concatenate(rhs))[0]


def quick_cluster(
    counts,
    min_size: int = 100,
    n_comps: int = 20,
    random_state: int = 0,
) -> np.ndarray:
    """
    Coarse clustering of cells prior to size-factor estimation.

    Pools are then formed only within clusters, so that the pooled cells are
    not too different from each other. Counts are library-size normalized,
    log-transformed and reduced with scanpy on a sparse copy, then split by
    k-means.

    Parameters
    ----------
    counts : array-like or sparse matrix
        Cells x genes count matrix.
    min_size : int
        Minimum number of cells per cluster.
    n_comps : int
        Number of principal components used for clustering.
    random_state : int
        Random seed.

    Returns
    -------
    np.ndarray
        Integer cluster label per cell.
    """
    n_cells = counts.shape[0]
    if n_cells < 2 * min_size:
        return np.zeros(n_cells, dtype=int)

    adata = AnnData(X=sparse.csr_matrix(counts, dtype=np.float32))
    sc.pp.normalize_total(adata)
    sc.pp.log1p(adata)
    n_comps = min(n_comps, min(adata.shape) - 1)
    sc.tl.pca(adata, n_comps=n_comps, svd_solver="arpack", random_state=random_state)
    coords = adata.obsm["X_pca"]

    labels = KMeans(
        n_clusters=n_cells // min_size, n_init=10, random_state=random_state
    ).fit_predict(coords)

    # Fold clusters below min_size into the closest remaining cluster.
    while True:
        present, sizes = np.unique(labels, return_counts=True)
        if len(present) == 1 or sizes.min() >= min_size:
            break
        smallest = present[np.argmin(sizes)]
        others = present[present != smallest]
        centroids = np.vstack([coords[labels == c].mean(axis=0) for c in others])
        own = coords[labels == smallest].mean(axis=0)
        labels[labels == smallest] = others[
            np.argmin(((centroids - own) ** 2).sum(axis=1))
        ]

    _, labels = np.unique(labels, return_inverse=True)
    return labels


def compute_sum_factors(
    counts,
    sizes: Sequence[int] = DEFAULT_POOL_SIZES,
    clusters=None,
    min_mean: Optional[float] = None,
) -> np.ndarray:
    """
    Estimate size factors by pooling and deconvolution.

    The count matrix is never densified as a whole: genes are filtered on
    the sparse matrix and pooled profiles are built a block of pools at a
    time.

    Parameters
    ----------
    counts : array-like or sparse matrix
        Cells x genes count matrix.
    sizes : sequence of int
        Pool sizes. Sizes larger than a cluster are ignored for it.
    clusters : array-like, optional
        Cluster label per cell (see :func:`quick_cluster`). Pooling is done
        within clusters, which are then rescaled to a common reference.
    min_mean : float, optional
        Minimum average (library-size normalized) count for a gene to be used.

    Returns
    -------
    np.ndarray
        Size factors centred to unit mean.
    """
    counts = _as_csr(counts)
    n_cells = counts.shape[0]
    lib = _row_sums(counts)
    if np.any(lib <= 0):
        raise ValueError(
            f"{int((lib <= 0).sum())} cells have zero library size; "
            "remove them before computing size factors"
        )

    if clusters is None:
        clusters = np.zeros(n_cells, dtype=int)
    clusters = np.asarray(clusters)
    if len(clusters) != n_cells:
        raise ValueError("clusters must have one label per cell")

    sizes = sorted({int(s) for s in sizes})

    size_factors = np.empty(n_cells)
    profiles = {}
    for cluster in np.unique(clusters):
        idx = np.where(clusters == cluster)[0]
        cur_counts = counts[idx]
        cur_lib = lib[idx]
        norm = sparse.diags(1.0 / cur_lib) @ cur_counts

        gene_means = _col_means(norm)
        usable = gene_means > 0
        if min_mean is not None:
            usable &= gene_means * cur_lib.mean() >= min_mean

        cur_sizes = [s for s in sizes if s <= len(idx)]
        if not cur_sizes or not usable.any():
            logger.warning(
                "Cluster %s has %d cells (smallest pool size %d); "
                "using library size factors",
                cluster,
                len(idx),
                sizes[0],
            )
            relative = np.ones(len(idx))
        else:
            norm = sparse.csr_matrix(norm[:, np.flatnonzero(usable)])
            relative = _pool_size_factors(norm, cur_lib, cur_sizes)

        size_factors[idx] = relative * cur_lib
        profiles[cluster] = _col_means(sparse.diags(1.0 / size_factors[idx]) @ cur_counts)

    if len(profiles) > 1:
        # Rescale every cluster onto the cluster with the most expressed genes.
        reference = max(profiles, key=lambda c: (profiles[c] > 0).sum())
        for cluster, profile in profiles.items():
            shared = (profile > 0) & (profiles[reference] > 0)
            if cluster == reference or not shared.any():
                continue
            ratio = np.median(profile[shared] / profiles[reference][shared])
            size_factors[clusters == cluster] *= ratio

    bad = ~np.isfinite(size_factors) | (size_factors <= 0)
    if bad.any():
        logger.warning(
            "Encountered %d non-positive size factor estimates; "
            "replacing them with library size factors",
            int(bad.sum()),
        )
        scale = np.median(size_factors[~bad] / lib[~bad]) if (~bad).any() else 1.0
        size_factors[bad] = lib[bad] * scale

    return size_factors / size_factors.mean()


def normalize_counts(
    X,
    size_factors,
    log: bool = True,
    pseudo_count: float = 1.0,
):
    """
    Divide each cell by its size factor and optionally log2-transform.

    Parameters
    ----------
    X : array-like or sparse matrix
        Cells x genes count matrix.
    size_factors : array-like
        One positive factor per cell.
    log : bool
        Apply ``log2(x + pseudo_count)``.
    pseudo_count : float
        Pseudo-count added before the log.

    Returns
    -------
    np.ndarray or sparse matrix
        Normalized matrix. Sparse input stays sparse when the pseudo-count
        is 1.
    """
    sf = np.asarray(size_factors, dtype=float).ravel()
    if sf.shape[0] != X.shape[0]:
        raise ValueError(
            f"Got {sf.shape[0]} size factors for {X.shape[0]} cells"
        )
    if np.any(~np.isfinite(sf)) or np.any(sf <= 0):
        raise ValueError("Size factors must be positive and finite")

    if sparse.issparse(X):
        out = sparse.csr_matrix(sparse.diags(1.0 / sf) @ X, dtype=float)
        if log:
            if pseudo_count == 1:
                out.data = np.log2(out.data + 1)
            else:
                out = np.log2(out.toarray() + pseudo_count)
        return out

    out = np.asarray(X, dtype=float) / sf[:, None]
    if log:
        out = np.log2(out + pseudo_count)
    return out


def log_normalize(
    adata: AnnData,
    size_factors=None,
    center: bool = True,
    pseudo_count: float = 1.0,
    counts_layer: str = "counts",
) -> None:
    """
    Log-normalize counts in place.

    Raw counts are kept in ``layers[counts_layer]``, the factors in
    ``obs['size_factor']`` and the log-expression values in ``.X``.

    Parameters
    ----------
    adata : AnnData
        Annotated data matrix. If ``counts_layer`` is absent, ``.X`` is
        assumed to hold raw counts and is copied there first.
    size_factors : array-like, optional
        Factors to use. Defaults to ``obs['size_factor']`` if present,
        otherwise deconvolution factors.
    center : bool
        Centre the factors to unit mean before use.
    pseudo_count : float
        Pseudo-count of the log transform.
    counts_layer : str
        Layer holding raw counts.
    """
    if counts_layer not in adata.layers:
        adata.layers[counts_layer] = adata.X.copy()
    counts = adata.layers[counts_layer]

    if size_factors is None:
        if "size_factor" in adata.obs.columns:
            size_factors = adata.obs["size_factor"].values
        else:
            size_factors = compute_sum_factors(counts)

    sf = np.asarray(size_factors, dtype=float).ravel()
    if center:
        sf = sf / sf.mean()

    adata.X = normalize_counts(counts, sf, log=True, pseudo_count=pseudo_count)
    adata.obs["size_factor"] = sf


def multi_batch_norm(
    adatas: Union[Dict[str, AnnData], List[AnnData]],
    min_mean: float = 1.0,
    pseudo_count: float = 1.0,
    counts_layer: str = "counts",
) -> np.ndarray:
    """
    Rescale size factors across batches to remove coverage differences.

    Each batch's factors are scaled so that its average normalized expression
    matches that of the lowest-coverage batch, then log-expression values are
    recomputed. Batches are modified in place.

    Parameters
    ----------
    adatas : dict or list of AnnData
        Batches with identical genes, raw counts in ``layers[counts_layer]``
        and (optionally) size factors in ``obs['size_factor']``.
    min_mean : float
        Minimum grand average count for a gene to be used in the ratio.
    pseudo_count : float
        Pseudo-count of the log transform.
    counts_layer : str
        Layer holding raw counts.

    Returns
    -------
    np.ndarray
        The rescaling factor applied to each batch.
    """
    batches = list(adatas.values()) if isinstance(adatas, dict) else list(adatas)
    if len(batches) < 2:
        raise ValueError("multi_batch_norm needs at least two batches")

    genes = batches[0].var_names
    for adata in batches[1:]:
        if not adata.var_names.equals(genes):
            raise ValueError("All batches must have identical genes in the same order")

    factors, averages = [], []
    for adata in batches:
        if counts_layer not in adata.layers:
            raise KeyError(f"Layer '{counts_layer}' with raw counts not found")
        counts = adata.layers[counts_layer]
        if "size_factor" in adata.obs.columns:
            sf = adata.obs["size_factor"].values.astype(float)
        else:
            sf = library_size_factors(counts)
        sf = sf / sf.mean()
        factors.append(sf)
        norm = normalize_counts(counts, sf, log=False)
        averages.append(np.asarray(norm.mean(axis=0)).ravel())

    averages = np.vstack(averages)
    positive = (averages > 0).all(axis=0)
    keep = positive & (averages.mean(axis=0) >= min_mean)
    if not keep.any():
        logger.warning(
            "No genes with average count >= %s in all batches; "
            "using all genes with non-zero averages",
            min_mean,
        )
        keep = positive
    if not keep.any():
        raise ValueError("No gene is expressed in every batch")

    reference = int(np.argmin(averages.sum(axis=1)))
    rescale = np.median(averages[:, keep] / averages[reference, keep], axis=1)

    for adata, sf, factor in zip(batches, factors, rescale):
        log_normalize(
            adata,
            size_factors=sf * factor,
            center=False,
            pseudo_count=pseudo_count,
            counts_layer=counts_layer,
        )
        adata.uns["multi_batch_norm"] = {
            "rescale_factor": float(factor),
            "reference_batch": reference,
        }

    logger.info(
        "Multi-batch rescaling factors: %s (reference batch %d, %d genes)",
        np.round(rescale, 3).tolist(),
        reference,
        int(keep.sum()),
    )
    return rescale
