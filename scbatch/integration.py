"""
Integration strategies for multi-batch scRNA-seq data.

Includes:
- No correction (PCA on the combined matrix)
- Linear batch-effect removal followed by PCA
- Fast mutual nearest neighbours (MNN) correction

All strategies take a normalized, HVG-restricted AnnData with a batch column
and return an n_cells x n_comps coordinate table, also stored in ``.obsm``.
Downstream helpers compute neighbour graphs, UMAP/t-SNE and Leiden clusters.
"""

import logging
from typing import Callable, Dict, Optional, Sequence

import numpy as np
import pandas as pd
import scanpy as sc
from anndata import AnnData
from scipy import sparse
from sklearn.decomposition import PCA

from .mnn import fast_mnn

logger = logging.getLogger(__name__)


def _dense_matrix(adata: AnnData, layer: Optional[str] = None) -> np.ndarray:
    X = adata.layers[layer] if layer is not None else adata.X
    if sparse.issparse(X):
        return X.toarray().astype(float)
    return np.asarray(X, dtype=float)


def _check_batch_key(adata: AnnData, batch_key: str) -> None:
    if batch_key not in adata.obs.columns:
        raise ValueError(f"Batch key '{batch_key}' not found in adata.obs")


def _check_n_comps(n_comps: int, shape) -> None:
    if n_comps > min(shape):
        raise ValueError(
            f"n_comps={n_comps} exceeds min(n_cells, n_genes)={min(shape)}"
        )


def run_pca(
    adata: AnnData,
    n_comps: int = 20,
    layer: Optional[str] = None,
    key_added: str = "X_pca",
    svd_solver: str = "auto",
    random_state: int = 0,
) -> np.ndarray:
    """
    Run PCA on all genes of ``adata``.

    Parameters
    ----------
    adata : AnnData
        Annotated data matrix (log-normalized, restricted to HVGs).
    n_comps : int
        Number of principal components to compute.
    layer : str, optional
        Layer to use instead of ``.X``.
    key_added : str
        Key in .obsm for the coordinates.
    svd_solver : str
        Solver passed to ``sklearn.decomposition.PCA``.
    random_state : int
        Random seed for reproducibility.

    Returns
    -------
    np.ndarray
        PC coordinates (n_cells x n_comps).
    """
    X = _dense_matrix(adata, layer)
    _check_n_comps(n_comps, X.shape)

    pca = PCA(n_components=n_comps, svd_solver=svd_solver, random_state=random_state)
    coords = pca.fit_transform(X)

    adata.obsm[key_added] = coords
    adata.uns[f"{key_added}_variance_ratio"] = pca.explained_variance_ratio_
    return coords


def run_uncorrected_pca(
    adata: AnnData,
    batch_key: Optional[str] = None,
    n_comps: int = 20,
    key_added: str = "X_pca_uncorrected",
    svd_solver: str = "auto",
    random_state: int = 0,
) -> np.ndarray:
    """
    PCA on the combined matrix without any batch correction.

    ``batch_key`` is only checked for presence, so that all strategies share
    the same call signature.
    """
    if batch_key is not None:
        _check_batch_key(adata, batch_key)
    return run_pca(
        adata,
        n_comps=n_comps,
        key_added=key_added,
        svd_solver=svd_solver,
        random_state=random_state,
    )


def remove_batch_effect(X, batches, covariates=None) -> np.ndarray:
    """
    Remove a per-batch linear effect from every gene.

    A linear model with an intercept, sum-to-zero batch contrasts and any
    extra covariates is fitted to each gene; only the batch term is
    subtracted, so the grand mean and covariate effects are kept.

    Parameters
    ----------
    X : array-like or sparse matrix
        Cells x genes log-expression matrix.
    batches : array-like
        Batch label per cell.
    covariates : array-like, optional
        Cells x p matrix of effects to preserve.

    Returns
    -------
    np.ndarray
        Corrected matrix.
    """
    X = X.toarray().astype(float) if sparse.issparse(X) else np.asarray(X, dtype=float)
    labels = pd.Categorical(np.asarray(batches))
    if len(labels) != X.shape[0]:
        raise ValueError("batches must have one label per cell")
    if (labels.codes < 0).any():
        raise ValueError("Batch labels contain missing values")

    n_levels = len(labels.categories)
    if n_levels < 2:
        return X.copy()

    codes = labels.codes
    contrasts = np.zeros((len(codes), n_levels - 1))
    for level in range(n_levels - 1):
        contrasts[codes == level, level] = 1.0
    contrasts[codes == n_levels - 1, :] = -1.0

    design = [np.ones((len(codes), 1)), contrasts]
    if covariates is not None:
        design.append(np.asarray(covariates, dtype=float).reshape(len(codes), -1))
    design = np.hstack(design)

    coef = np.linalg.lstsq(design, X, rcond=None)[0]
    return X - contrasts @ coef[1:n_levels]


def run_linear_correction(
    adata: AnnData,
    batch_key: str,
    n_comps: int = 20,
    key_added: str = "X_pca_linear",
    layer_added: str = "linear_corrected",
    covariate_keys: Optional[Sequence[str]] = None,
    svd_solver: str = "auto",
    random_state: int = 0,
) -> np.ndarray:
    """
    Linear batch-effect removal followed by PCA.

    Parameters
    ----------
    adata : AnnData
        Annotated data matrix (log-normalized, restricted to HVGs).
    batch_key : str
        Column in .obs containing batch labels.
    n_comps : int
        Number of principal components.
    key_added : str
        Key in .obsm for the coordinates.
    layer_added : str
        Layer receiving the corrected expression matrix.
    covariate_keys : list of str, optional
        Columns in .obs whose effects are preserved.
    svd_solver : str
        PCA solver.
    random_state : int
        Random seed.

    Returns
    -------
    np.ndarray
        PC coordinates of the corrected matrix.
    """
    _check_batch_key(adata, batch_key)

    covariates = None
    if covariate_keys:
        missing = [k for k in covariate_keys if k not in adata.obs.columns]
        if missing:
            raise ValueError(f"Variables not found in adata.obs: {missing}")
        covariates = pd.get_dummies(
            adata.obs[list(covariate_keys)], drop_first=True, dtype=float
        ).values

    adata.layers[layer_added] = remove_batch_effect(
        adata.X, adata.obs[batch_key].values, covariates=covariates
    )
    return run_pca(
        adata,
        n_comps=n_comps,
        layer=layer_added,
        key_added=key_added,
        svd_solver=svd_solver,
        random_state=random_state,
    )


def run_fast_mnn(
    adata: AnnData,
    batch_key: str,
    n_comps: int = 20,
    k: int = 20,
    key_added: str = "X_mnn",
    ndist: float = 3.0,
    cos_norm: bool = True,
    merge_order: Optional[Sequence[str]] = None,
    n_jobs: Optional[int] = None,
    algorithm: str = "auto",
    svd_solver: str = "auto",
    random_state: int = 0,
) -> np.ndarray:
    """
    Fast MNN correction, producing a corrected low-dimensional embedding.

    No corrected expression matrix is produced; only representations derived
    from the embedding (neighbours, clusters, UMAP) should be used downstream.

    Parameters
    ----------
    adata : AnnData
        Annotated data matrix (log-normalized, restricted to HVGs).
    batch_key : str
        Column in .obs containing batch labels.
    n_comps : int
        Dimensionality of the corrected embedding.
    k : int
        Number of nearest neighbours.
    key_added : str
        Key in .obsm for the corrected embedding.
    ndist : float
        Bandwidth of the smoothing kernel.
    cos_norm : bool
        Cosine-normalize cells first.
    merge_order : list of str, optional
        Batch labels in merge order. Defaults to the order of appearance.
    n_jobs : int, optional
        Parallel jobs for the neighbour search.
    algorithm : str
        Neighbour search algorithm.
    svd_solver : str
        PCA solver.
    random_state : int
        Random seed.

    Returns
    -------
    np.ndarray
        Corrected embedding (n_cells x n_comps).
    """
    _check_batch_key(adata, batch_key)

    labels = adata.obs[batch_key].astype(str).values
    levels = list(pd.unique(labels))
    if len(levels) < 2:
        raise ValueError(f"Need at least two batches in '{batch_key}', found {levels}")

    order = None
    if merge_order is not None:
        unknown = [b for b in merge_order if str(b) not in levels]
        if unknown:
            raise ValueError(f"Unknown batches in merge_order: {unknown}")
        order = [levels.index(str(b)) for b in merge_order]

    X = _dense_matrix(adata)
    positions = [np.where(labels == level)[0] for level in levels]
    result = fast_mnn(
        [X[idx] for idx in positions],
        k=k,
        n_comps=n_comps,
        ndist=ndist,
        cos_norm=cos_norm,
        merge_order=order,
        n_jobs=n_jobs,
        algorithm=algorithm,
        svd_solver=svd_solver,
        random_state=random_state,
    )

    # Put rows back in the original cell order.
    corrected = np.empty_like(result.corrected)
    corrected[np.concatenate(positions)] = result.corrected

    adata.obsm[key_added] = corrected
    adata.uns["mnn"] = {
        "batches": np.array(levels),
        "merge_order": np.array([levels[i] for i in result.merge_order]),
        "n_pairs": np.array(result.n_pairs),
        "lost_var": result.lost_var,
    }
    return corrected


INTEGRATION_METHODS: Dict[str, Callable[..., np.ndarray]] = {
    "uncorrected": run_uncorrected_pca,
    "linear": run_linear_correction,
    "mnn": run_fast_mnn,
}

EMBEDDING_KEYS = {
    "uncorrected": "X_pca_uncorrected",
    "linear": "X_pca_linear",
    "mnn": "X_mnn",
}


def integrate(
    adata: AnnData,
    method: str,
    batch_key: str,
    n_comps: int = 20,
    **kwargs,
) -> np.ndarray:
    """
    Run one of the integration strategies by name.

    Parameters
    ----------
    adata : AnnData
        Annotated data matrix (log-normalized, restricted to HVGs).
    method : str
        One of 'uncorrected', 'linear' or 'mnn'.
    batch_key : str
        Column in .obs containing batch labels.
    n_comps : int
        Number of output dimensions.
    **kwargs
        Passed to the strategy.

    Returns
    -------
    np.ndarray
        Coordinate table (n_cells x n_comps).
    """
    if method not in INTEGRATION_METHODS:
        raise ValueError(
            f"Unknown integration method '{method}'. "
            f"Choose from {sorted(INTEGRATION_METHODS)}"
        )
    _check_batch_key(adata, batch_key)
    logger.info("Running %s integration on %d cells", method, adata.n_obs)
    return INTEGRATION_METHODS[method](
        adata, batch_key=batch_key, n_comps=n_comps, **kwargs
    )


def compute_neighbors_and_umap(
    adata: AnnData,
    use_rep: str,
    n_neighbors: int = 30,
    metric: str = "euclidean",
    random_state: int = 0,
    key_added_suffix: Optional[str] = None,
) -> None:
    """
    Compute neighbors graph and UMAP embedding on a given representation.

    Parameters
    ----------
    adata : AnnData
        Annotated data matrix.
    use_rep : str
        Key in .obsm to use for neighbor computation.
    n_neighbors : int
        Number of neighbors for the graph. Capped at n_cells - 1.
    metric : str
        Distance metric ('euclidean', 'cosine', etc.).
    random_state : int
        Random seed.
    key_added_suffix : str, optional
        Suffix for storing results. If provided, stores neighbors in
        'neighbors_{suffix}' and UMAP in 'X_umap_{suffix}'.
    """
    if use_rep not in adata.obsm:
        raise ValueError(f"Embedding '{use_rep}' not found in adata.obsm")

    neighbors_key = (
        f"neighbors_{key_added_suffix}" if key_added_suffix else "neighbors"
    )
    sc.pp.neighbors(
        adata,
        use_rep=use_rep,
        n_neighbors=min(n_neighbors, adata.n_obs - 1),
        metric=metric,
        random_state=random_state,
        key_added=neighbors_key if key_added_suffix else None,
    )
    sc.tl.umap(adata, neighbors_key=neighbors_key, random_state=random_state)

    if key_added_suffix:
        adata.obsm[f"X_umap_{key_added_suffix}"] = adata.obsm["X_umap"].copy()


def run_tsne(
    adata: AnnData,
    use_rep: str,
    perplexity: float = 30,
    key_added: Optional[str] = None,
    random_state: int = 0,
) -> np.ndarray:
    """
    t-SNE embedding of a given representation.

    The perplexity is lowered for very small datasets, where t-SNE requires
    it to stay below the number of cells.
    """
    if use_rep not in adata.obsm:
        raise ValueError(f"Embedding '{use_rep}' not found in adata.obsm")

    perplexity = min(perplexity, max(1.0, (adata.n_obs - 1) / 3))
    sc.tl.tsne(
        adata, use_rep=use_rep, perplexity=perplexity, random_state=random_state
    )
    if key_added is not None:
        adata.obsm[key_added] = adata.obsm["X_tsne"].copy()
    return adata.obsm[key_added or "X_tsne"]


def run_leiden_clustering(
    adata: AnnData,
    resolutions: Sequence[float] = (0.2, 0.5, 0.8, 1.0),
    neighbors_key: Optional[str] = None,
    key_prefix: str = "leiden",
    random_state: int = 0,
) -> None:
    """
    Run Leiden clustering at multiple resolutions.

    Parameters
    ----------
    adata : AnnData
        Annotated data matrix with neighbors computed.
    resolutions : list of float
        Resolution parameters to test.
    neighbors_key : str, optional
        Key for neighbors graph. If None, uses default.
    key_prefix : str
        Prefix for cluster column names in .obs.
    random_state : int
        Random seed.
    """
    for res in resolutions:
        sc.tl.leiden(
            adata,
            resolution=res,
            neighbors_key=neighbors_key,
            key_added=f"{key_prefix}_{res}",
            random_state=random_state,
            flavor="igraph",
            n_iterations=2,
            directed=False,
        )
