"""
Preprocessing utilities for multi-batch scRNA-seq integration.

Aligns gene sets, filters low-quality cells, normalizes each batch, rescales
batches to a common coverage and selects shared highly variable genes.
"""

import logging
from typing import Dict, List, Optional, Sequence, Union

import anndata as ad
import numpy as np
import pandas as pd
from anndata import AnnData

from .feature_selection import select_shared_hvgs
from .normalization import (
    DEFAULT_POOL_SIZES,
    compute_sum_factors,
    log_normalize,
    multi_batch_norm,
    quick_cluster,
)
from .quality import filter_low_quality_cells

logger = logging.getLogger(__name__)

QC_FLAG_COLUMNS = ["pct_counts_mito", "low_lib_size", "low_n_features", "high_mito", "discard"]


def _as_named(adatas: Union[Dict[str, AnnData], List[AnnData]]) -> Dict[str, AnnData]:
    if isinstance(adatas, dict):
        return dict(adatas)
    return {f"batch{i + 1}": adata for i, adata in enumerate(adatas)}


def intersect_genes(
    adatas: Union[Dict[str, AnnData], List[AnnData]],
) -> Union[Dict[str, AnnData], List[AnnData]]:
    """
    Restrict datasets to the genes they all share.

    Parameters
    ----------
    adatas : dict or list of AnnData
        Datasets to align.

    Returns
    -------
    dict or list of AnnData
        Copies restricted to the common genes, in the order of the first
        dataset. Same container type as the input.
    """
    named = _as_named(adatas)
    if not named:
        raise ValueError("No datasets given")

    for name, adata in named.items():
        if not adata.var_names.is_unique:
            raise ValueError(
                f"Dataset '{name}' has duplicated gene identifiers; "
                "make them unique first"
            )

    first = next(iter(named.values()))
    shared = set(first.var_names)
    for adata in named.values():
        shared &= set(adata.var_names)
    common = [g for g in first.var_names if g in shared]
    if not common:
        raise ValueError("Datasets share no genes")

    logger.info(
        "Gene intersection: %d shared genes (%s)",
        len(common),
        ", ".join(f"{name}={adata.n_vars}" for name, adata in named.items()),
    )

    aligned = {name: adata[:, common].copy() for name, adata in named.items()}
    if isinstance(adatas, dict):
        return aligned
    return list(aligned.values())


def store_raw_counts(adata: AnnData, layer_name: str = "counts") -> None:
    """
    Store raw counts in a layer before normalization.

    Multi-batch rescaling recomputes log-expression values from these.

    Parameters
    ----------
    adata : AnnData
        Annotated data matrix with raw counts in .X.
    layer_name : str
        Name of the layer to store counts in.
    """
    adata.layers[layer_name] = adata.X.copy()


def concatenate_batches(
    adatas: Union[Dict[str, AnnData], List[AnnData]],
    batch_key: str = "batch",
) -> AnnData:
    """
    Merge aligned batches into one AnnData.

    Parameters
    ----------
    adatas : dict or list of AnnData
        Batches with identical genes in the same order.
    batch_key : str
        Column name for batch labels.

    Returns
    -------
    AnnData
        Merged dataset with a categorical batch column.
    """
    named = _as_named(adatas)
    batches = list(named.values())
    genes = batches[0].var_names
    for name, adata in named.items():
        if not adata.var_names.equals(genes):
            raise ValueError(
                f"Genes of batch '{name}' do not match the first batch; "
                "run intersect_genes() first"
            )

    merged = ad.concat(
        batches,
        join="inner",
        label=batch_key,
        keys=list(named.keys()),
        index_unique="_",
        merge="same",
    )
    merged.obs[batch_key] = pd.Categorical(
        merged.obs[batch_key], categories=list(named.keys())
    )

    logger.info(
        "Merged %d batches: %d cells x %d genes",
        len(batches),
        merged.n_obs,
        merged.n_vars,
    )
    return merged


def subset_to_hvgs(adata: AnnData, copy: bool = True) -> AnnData:
    """
    Subset AnnData to only highly variable genes.

    Parameters
    ----------
    adata : AnnData
        Annotated data matrix with highly_variable column in .var.
    copy : bool
        If True (default), return a copy.

    Returns
    -------
    AnnData
        Subsetted AnnData object.
    """
    if "highly_variable" not in adata.var.columns:
        raise ValueError(
            "Run select_shared_hvgs() first to identify highly variable genes."
        )

    if copy:
        return adata[:, adata.var["highly_variable"].values].copy()
    else:
        return adata[:, adata.var["highly_variable"].values]


def preprocess_batches(
    adatas: Union[Dict[str, AnnData], List[AnnData]],
    batch_key: str = "batch",
    nmads: float = 3.0,
    mito_prefix: Optional[str] = None,
    pool_sizes: Sequence[int] = DEFAULT_POOL_SIZES,
    cluster_min_size: Optional[int] = 100,
    rescale_min_mean: float = 1.0,
    min_bio: float = 0.0,
    n_top_genes: Optional[int] = None,
    fdr_threshold: Optional[float] = None,
    random_state: int = 0,
) -> AnnData:
    """
    Full preprocessing of raw count batches ahead of integration.

    Steps: gene intersection, QC filtering, deconvolution size factors and
    log-normalization per batch, multi-batch rescaling, shared HVG selection,
    concatenation.

    Parameters
    ----------
    adatas : dict or list of AnnData
        Raw count batches, keyed by batch name.
    batch_key : str
        Column name for batch labels.
    nmads : float
        QC outlier threshold in MADs.
    mito_prefix : str, optional
        Prefix of mitochondrial genes; enables the mitochondrial QC test.
    pool_sizes : sequence of int
        Pool sizes for deconvolution.
    cluster_min_size : int, optional
        Minimum cluster size for pre-clustering; None disables it.
    rescale_min_mean : float
        Minimum average count of genes used for multi-batch rescaling.
    min_bio, n_top_genes, fdr_threshold
        HVG selection parameters.
    random_state : int
        Random seed for pre-clustering.

    Returns
    -------
    AnnData
        Merged batches over the shared genes, with log-expression in .X, raw
        counts in layers['counts'], the combined variance decomposition and
        'highly_variable' in .var.

    Example
    -------
    >>> merged = preprocess_batches({"pbmc3k": pbmc3k, "pbmc4k": pbmc4k})
    >>> hvg = subset_to_hvgs(merged)
    """
    named = intersect_genes(_as_named(adatas))

    processed = {}
    qc_tables = []
    for name, adata in named.items():
        adata.obs[batch_key] = name
        store_raw_counts(adata)

        filtered = filter_low_quality_cells(adata, nmads=nmads, mito_prefix=mito_prefix)
        qc = adata.obs[
            [batch_key, "total_counts", "n_genes_by_counts"]
            + [c for c in QC_FLAG_COLUMNS if c in adata.obs.columns]
        ].copy()
        qc.index = [f"{cell}_{name}" for cell in qc.index]
        qc_tables.append(qc)
        if filtered.n_obs == 0:
            raise ValueError(f"All cells of batch '{name}' failed QC")

        counts = filtered.layers["counts"]
        clusters = None
        if cluster_min_size is not None:
            clusters = quick_cluster(
                counts, min_size=cluster_min_size, random_state=random_state
            )
        size_factors = compute_sum_factors(counts, sizes=pool_sizes, clusters=clusters)
        log_normalize(filtered, size_factors=size_factors)
        processed[name] = filtered
        logger.info("Batch '%s': %d cells after QC", name, filtered.n_obs)

    rescale = multi_batch_norm(processed, min_mean=rescale_min_mean)
    hvgs, combined = select_shared_hvgs(
        processed, min_bio=min_bio, n_top=n_top_genes, fdr_threshold=fdr_threshold
    )
    per_batch = {
        name: adata.var[list(combined.columns)].copy()
        for name, adata in processed.items()
    }

    merged = concatenate_batches(processed, batch_key=batch_key)
    for column in combined.columns:
        merged.var[column] = combined[column].values
    merged.var["highly_variable"] = merged.var_names.isin(hvgs)
    merged.uns["hvgs"] = np.array(hvgs, dtype=str)
    merged.uns["qc_metrics"] = pd.concat(qc_tables)
    merged.uns["variance_per_batch"] = per_batch
    merged.uns["rescale_factors"] = dict(zip(processed.keys(), rescale.tolist()))
    return merged
