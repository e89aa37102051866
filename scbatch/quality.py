"""
Per-cell quality control for scRNA-seq count data.

Cells are flagged as low quality when their library size or number of detected
genes falls far below the rest of the batch, measured in median absolute
deviations (MADs) on a log scale.
"""

import logging
from typing import Optional

import numpy as np
import pandas as pd
import scanpy as sc
from anndata import AnnData
from scipy.stats import median_abs_deviation

logger = logging.getLogger(__name__)


def add_qc_metrics(
    adata: AnnData,
    mito_prefix: Optional[str] = None,
    layer: Optional[str] = None,
) -> pd.DataFrame:
    """
    Compute per-cell QC metrics and store them in ``adata.obs``.

    Parameters
    ----------
    adata : AnnData
        Annotated data matrix with raw counts.
    mito_prefix : str, optional
        Prefix identifying mitochondrial genes (e.g. 'MT-'). Matched
        case-insensitively against ``var_names``.
    layer : str, optional
        Layer holding the counts. Defaults to ``.X``.

    Returns
    -------
    pd.DataFrame
        The QC columns: 'total_counts', 'n_genes_by_counts' and, when
        ``mito_prefix`` is given, 'pct_counts_mito'.
    """
    qc_vars = []
    if mito_prefix is not None:
        adata.var["mito"] = adata.var_names.str.upper().str.startswith(
            mito_prefix.upper()
        )
        qc_vars.append("mito")

    sc.pp.calculate_qc_metrics(
        adata,
        qc_vars=qc_vars,
        percent_top=None,
        log1p=False,
        layer=layer,
        inplace=True,
    )

    columns = ["total_counts", "n_genes_by_counts"]
    if mito_prefix is not None:
        columns.append("pct_counts_mito")
    return adata.obs[columns].copy()


def is_outlier(
    values,
    nmads: float = 3.0,
    log: bool = False,
    type: str = "both",
    batch=None,
) -> np.ndarray:
    """
    Flag values lying more than ``nmads`` MADs away from the median.

    Parameters
    ----------
    values : array-like
        Metric to test, one value per cell.
    nmads : float
        Number of MADs defining the outlier threshold.
    log : bool
        Whether to test on ``log1p`` scale.
    type : str
        Which tail to test: 'lower', 'higher' or 'both'.
    batch : array-like, optional
        Batch label per cell. Thresholds are computed within each batch.

    Returns
    -------
    np.ndarray
        Boolean mask, True for outliers.
    """
    if type not in ("lower", "higher", "both"):
        raise ValueError(f"type must be 'lower', 'higher' or 'both', got '{type}'")

    x = np.asarray(values, dtype=float)
    if log:
        x = np.log1p(x)

    if batch is None:
        groups = np.zeros(len(x), dtype=int)
    else:
        groups = np.asarray(batch)
        if len(groups) != len(x):
            raise ValueError("batch must have one label per value")

    outliers = np.zeros(len(x), dtype=bool)
    for level in pd.unique(groups):
        idx = groups == level
        cur = x[idx]
        median = np.median(cur)
        mad = median_abs_deviation(cur, scale="normal")
        if mad == 0:
            # No spread to measure against; nothing is an outlier.
            continue

        flagged = np.zeros(len(cur), dtype=bool)
        if type in ("lower", "both"):
            flagged |= cur < median - nmads * mad
        if type in ("higher", "both"):
            flagged |= cur > median + nmads * mad
        outliers[idx] = flagged

    return outliers


def flag_low_quality_cells(
    qc: pd.DataFrame,
    nmads: float = 3.0,
    batch=None,
) -> pd.DataFrame:
    """
    Flag low-quality cells from a table of QC metrics.

    Library size and number of detected genes are tested independently on the
    lower tail, on log scale. If 'pct_counts_mito' is present it is tested on
    the upper tail, on the linear scale.

    Parameters
    ----------
    qc : pd.DataFrame
        Output of :func:`add_qc_metrics`.
    nmads : float
        Outlier threshold in MADs.
    batch : array-like, optional
        Batch label per cell, for batch-wise thresholds.

    Returns
    -------
    pd.DataFrame
        Boolean columns per test and a combined 'discard' column.
    """
    missing = [c for c in ("total_counts", "n_genes_by_counts") if c not in qc.columns]
    if missing:
        raise KeyError(f"QC metrics not found: {missing}")

    flags = pd.DataFrame(index=qc.index)
    flags["low_lib_size"] = is_outlier(
        qc["total_counts"], nmads=nmads, log=True, type="lower", batch=batch
    )
    flags["low_n_features"] = is_outlier(
        qc["n_genes_by_counts"], nmads=nmads, log=True, type="lower", batch=batch
    )
    if "pct_counts_mito" in qc.columns:
        flags["high_mito"] = is_outlier(
            qc["pct_counts_mito"], nmads=nmads, type="higher", batch=batch
        )

    flags["discard"] = flags.any(axis=1)
    return flags


def filter_low_quality_cells(
    adata: AnnData,
    nmads: float = 3.0,
    mito_prefix: Optional[str] = None,
    batch_key: Optional[str] = None,
) -> AnnData:
    """
    Compute QC metrics, flag outliers and drop the flagged cells.

    The flags are kept in ``.obs`` of the returned object for reference.

    Parameters
    ----------
    adata : AnnData
        Annotated data matrix with raw counts.
    nmads : float
        Outlier threshold in MADs.
    mito_prefix : str, optional
        Prefix of mitochondrial genes; enables the mitochondrial test.
    batch_key : str, optional
        Column in .obs; if given, thresholds are computed per batch.

    Returns
    -------
    AnnData
        Copy holding only the retained cells.
    """
    batch = None
    if batch_key is not None:
        if batch_key not in adata.obs.columns:
            raise ValueError(f"Batch key '{batch_key}' not found in adata.obs")
        batch = adata.obs[batch_key].values

    qc = add_qc_metrics(adata, mito_prefix=mito_prefix)
    flags = flag_low_quality_cells(qc, nmads=nmads, batch=batch)
    for column in flags.columns:
        adata.obs[column] = flags[column].values

    keep = ~flags["discard"].values
    logger.info(
        "QC: discarding %d of %d cells (%s)",
        int((~keep).sum()),
        adata.n_obs,
        ", ".join(f"{c}={int(flags[c].sum())}" for c in flags.columns if c != "discard"),
    )
    return adata[keep].copy()
