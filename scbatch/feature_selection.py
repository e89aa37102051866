"""
Highly variable gene selection by variance decomposition.

The variance of each gene's log-expression is split into a technical
component, read off a mean-variance trend fitted across all genes, and a
biological component (the residual). Across batches the components are
averaged and genes with positive average biological variance are kept.
"""

import logging
from typing import Callable, Dict, List, Optional, Tuple, Union

import numpy as np
import pandas as pd
from anndata import AnnData
from scipy import sparse
from scipy.stats import chi2, combine_pvalues
from statsmodels.nonparametric.smoothers_lowess import lowess
from statsmodels.stats.multitest import multipletests

logger = logging.getLogger(__name__)

VARIANCE_COLUMNS = ["mean", "total", "tech", "bio"]


def _mean_var(X) -> Tuple[np.ndarray, np.ndarray]:
    n = X.shape[0]
    if n < 2:
        raise ValueError("At least two cells are needed to estimate variances")
    if sparse.issparse(X):
        mean = np.asarray(X.mean(axis=0)).ravel()
        sq = np.asarray(X.multiply(X).mean(axis=0)).ravel()
        var = (sq - mean**2) * n / (n - 1)
        return mean, np.clip(var, 0, None)
    X = np.asarray(X, dtype=float)
    return X.mean(axis=0), X.var(axis=0, ddof=1)


def fit_trend_var(
    means,
    variances,
    span: float = 0.3,
    min_mean: float = 0.1,
    robust_iterations: int = 3,
) -> Callable[[np.ndarray], np.ndarray]:
    """
    Fit a mean-variance trend to the log-expression values of all genes.

    A robust LOWESS curve is fitted to genes with mean above ``min_mean``.
    Below the fitted range the trend goes linearly to zero at the origin,
    above it the trend stays at its last value. The trend is never negative.
    With fewer than four genes above ``min_mean`` no local fit is possible and
    the trend is zero everywhere.

    Parameters
    ----------
    means : array-like
        Mean log-expression per gene.
    variances : array-like
        Variance of log-expression per gene.
    span : float
        Fraction of genes used in each local fit.
    min_mean : float
        Genes with lower mean are not used for fitting.
    robust_iterations : int
        Number of robustifying iterations of LOWESS.

    Returns
    -------
    callable
        Function mapping mean log-expression to fitted variance.
    """
    means = np.asarray(means, dtype=float)
    variances = np.asarray(variances, dtype=float)

    use = (means >= min_mean) & np.isfinite(variances)
    if use.sum() < 4:
        logger.warning(
            "Only %d genes above min_mean=%s; using a zero variance trend",
            int(use.sum()),
            min_mean,
        )
        return lambda x: np.zeros(np.atleast_1d(x).shape)

    x, y = means[use], variances[use]
    frac = min(1.0, max(span, 4.0 / len(x)))
    fitted = lowess(y, x, frac=frac, it=robust_iterations, return_sorted=False)
    if not np.all(np.isfinite(fitted)):
        fitted = lowess(y, x, frac=frac, it=0, return_sorted=False)

    grid, inverse = np.unique(x, return_inverse=True)
    values = np.bincount(inverse, weights=fitted) / np.bincount(inverse)
    values = np.clip(values, 0, None)
    left_x, left_y = grid[0], values[0]

    def trend(query):
        query = np.atleast_1d(np.asarray(query, dtype=float))
        out = np.interp(query, grid, values)
        below = query < left_x
        if left_x > 0:
            out[below] = query[below] * left_y / left_x
        return np.clip(out, 0, None)

    return trend


def model_gene_var(
    adata: AnnData,
    layer: Optional[str] = None,
    span: float = 0.3,
    min_mean: float = 0.1,
) -> pd.DataFrame:
    """
    Decompose per-gene variance into technical and biological components.

    Parameters
    ----------
    adata : AnnData
        Annotated data matrix with log-expression values.
    layer : str, optional
        Layer to use instead of ``.X``.
    span : float
        LOWESS span of the trend.
    min_mean : float
        Minimum mean for genes used in trend fitting.

    Returns
    -------
    pd.DataFrame
        Indexed by gene, with columns 'mean', 'total', 'tech', 'bio',
        'p_value' and 'FDR'.
    """
    X = adata.layers[layer] if layer is not None else adata.X
    mean, total = _mean_var(X)
    trend = fit_trend_var(mean, total, span=span, min_mean=min_mean)
    tech = trend(mean)

    # One-sided test of total > technical variance.
    df = adata.n_obs - 1
    with np.errstate(divide="ignore", invalid="ignore"):
        p_value = chi2.sf(total / tech * df, df)
    p_value = np.where(np.isnan(p_value), 1.0, p_value)

    table = pd.DataFrame(
        {
            "mean": mean,
            "total": total,
            "tech": tech,
            "bio": total - tech,
            "p_value": p_value,
        },
        index=adata.var_names.copy(),
    )
    table["FDR"] = multipletests(table["p_value"].values, method="fdr_bh")[1]
    return table


def combine_var(
    tables: Union[Dict[str, pd.DataFrame], List[pd.DataFrame]],
    method: str = "fisher",
) -> pd.DataFrame:
    """
    Combine variance decompositions from several batches.

    Components are averaged across batches and p-values combined.

    Parameters
    ----------
    tables : dict or list of pd.DataFrame
        Outputs of :func:`model_gene_var` with identical gene index.
    method : str
        Method passed to ``scipy.stats.combine_pvalues``.

    Returns
    -------
    pd.DataFrame
        Combined table with the same columns as the inputs.
    """
    tables = list(tables.values()) if isinstance(tables, dict) else list(tables)
    if not tables:
        raise ValueError("No variance tables to combine")

    index = tables[0].index
    for table in tables[1:]:
        if not table.index.equals(index):
            raise ValueError("Variance tables must share the same genes in the same order")

    combined = pd.DataFrame(index=index.copy())
    for column in VARIANCE_COLUMNS:
        combined[column] = np.mean([t[column].values for t in tables], axis=0)

    p_values = np.column_stack([t["p_value"].values for t in tables])
    with np.errstate(divide="ignore"):
        combined["p_value"] = [
            combine_pvalues(row, method=method)[1] for row in p_values
        ]
    combined["FDR"] = multipletests(combined["p_value"].values, method="fdr_bh")[1]
    return combined


def get_top_hvgs(
    table: pd.DataFrame,
    min_bio: float = 0.0,
    n_top: Optional[int] = None,
    fdr_threshold: Optional[float] = None,
) -> List[str]:
    """
    Pick highly variable genes from a variance decomposition.

    Parameters
    ----------
    table : pd.DataFrame
        Output of :func:`model_gene_var` or :func:`combine_var`.
    min_bio : float
        Genes must have biological variance strictly above this value.
    n_top : int, optional
        Keep at most this many genes.
    fdr_threshold : float, optional
        Also require FDR at or below this value.

    Returns
    -------
    list of str
        Gene identifiers by decreasing biological variance.
    """
    selected = table[table["bio"] > min_bio]
    if fdr_threshold is not None:
        selected = selected[selected["FDR"] <= fdr_threshold]
    selected = selected.sort_values("bio", ascending=False, kind="stable")
    if n_top is not None:
        selected = selected.iloc[:n_top]
    return list(selected.index)


def select_shared_hvgs(
    adatas: Union[Dict[str, AnnData], List[AnnData]],
    min_bio: float = 0.0,
    n_top: Optional[int] = None,
    fdr_threshold: Optional[float] = None,
    span: float = 0.3,
    min_mean: float = 0.1,
) -> Tuple[List[str], pd.DataFrame]:
    """
    Select highly variable genes shared by all batches.

    The decomposition of each batch is written to its ``.var``, together
    with a boolean 'highly_variable' column for the shared selection.

    Parameters
    ----------
    adatas : dict or list of AnnData
        Log-normalized batches with identical genes.
    min_bio, n_top, fdr_threshold
        Passed to :func:`get_top_hvgs`.
    span, min_mean
        Passed to :func:`model_gene_var`.

    Returns
    -------
    tuple
        Selected gene identifiers and the combined variance table.
    """
    batches = list(adatas.values()) if isinstance(adatas, dict) else list(adatas)

    tables = []
    for adata in batches:
        table = model_gene_var(adata, span=span, min_mean=min_mean)
        for column in table.columns:
            adata.var[column] = table[column].values
        tables.append(table)

    combined = combine_var(tables)
    hvgs = get_top_hvgs(
        combined, min_bio=min_bio, n_top=n_top, fdr_threshold=fdr_threshold
    )
    if not hvgs:
        logger.warning("No gene has positive average biological variance")

    for adata in batches:
        adata.var["highly_variable"] = adata.var_names.isin(hvgs)

    logger.info("Selected %d of %d genes as highly variable", len(hvgs), len(combined))
    return hvgs, combined
