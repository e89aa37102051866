"""
Diagnostics for how well a corrected embedding merges batches.

Two families of checks are computed per embedding:

- batch mixing: silhouette of batch labels and the entropy of batch labels
  in each cell's neighbourhood; both are oriented so that higher is better.
- structure preservation: agreement between the merged clusters and known
  labels, overall and within each batch, plus the cluster-by-batch
  contingency table with a per-cluster chi-squared test of batch balance.
"""

import logging
from typing import Dict, Optional

import numpy as np
import pandas as pd
from anndata import AnnData
from scipy.stats import chisquare, entropy
from sklearn.metrics import adjusted_rand_score, silhouette_score
from sklearn.neighbors import NearestNeighbors

logger = logging.getLogger(__name__)


def _embedding(adata: AnnData, use_rep: str) -> np.ndarray:
    if use_rep not in adata.obsm:
        raise ValueError(f"Embedding '{use_rep}' not found in adata.obsm")
    return np.asarray(adata.obsm[use_rep])


def _subsample(n: int, sample_size: Optional[int], random_state: int) -> np.ndarray:
    if sample_size is None or sample_size >= n:
        return np.arange(n)
    rng = np.random.default_rng(random_state)
    return np.sort(rng.choice(n, sample_size, replace=False))


def compute_batch_mixing_silhouette(
    adata: AnnData,
    batch_key: str,
    use_rep: str,
    sample_size: Optional[int] = None,
    random_state: int = 0,
) -> float:
    """
    One minus the silhouette width of the batch labels.

    Batches that sit apart in ``obsm[use_rep]`` have a silhouette near 1, so
    the returned score runs from 0 (separate) to 2, with values around 1 for
    batches that are fully interleaved.
    """
    embedding = _embedding(adata, use_rep)
    idx = _subsample(adata.n_obs, sample_size, random_state)
    batches = np.asarray(adata.obs[batch_key].values)[idx]
    return float(1 - silhouette_score(embedding[idx], batches))


def compute_batch_entropy(
    adata: AnnData,
    batch_key: str,
    use_rep: str,
    n_neighbors: int = 50,
    sample_size: Optional[int] = 5000,
    random_state: int = 0,
) -> float:
    """
    Mean Shannon entropy of batch labels among each cell's nearest neighbours.

    Parameters
    ----------
    adata : AnnData
        Cells with an embedding in ``obsm``.
    batch_key : str
        Column in ``obs`` with batch labels.
    use_rep : str
        Key in ``obsm`` of the embedding to search.
    n_neighbors : int
        Neighbourhood size, excluding the cell itself; capped at
        ``n_obs - 1``.
    sample_size : int, optional
        Number of query cells; neighbours are always searched among all cells.
    random_state : int
        Seed for choosing the query cells.

    Returns
    -------
    float
        Entropy divided by ``log2(n_batches)``, so 1 means every
        neighbourhood holds all batches in equal shares. A single batch
        gives 0.
    """
    embedding = _embedding(adata, use_rep)
    labels = pd.Categorical(np.asarray(adata.obs[batch_key]))
    n_batches = len(labels.categories)
    if n_batches < 2:
        return 0.0

    k = min(n_neighbors, adata.n_obs - 1)
    query = _subsample(adata.n_obs, sample_size, random_state)
    nn = NearestNeighbors(n_neighbors=k + 1).fit(embedding)
    _, neighbors = nn.kneighbors(embedding[query])

    # Column 0 is the query cell itself.
    codes = labels.codes[neighbors[:, 1:]]
    counts = np.stack([(codes == b).sum(axis=1) for b in range(n_batches)], axis=1)
    per_cell = entropy(counts.T, base=2)
    return float(per_cell.mean() / np.log2(n_batches))


def compute_cluster_purity(adata: AnnData, cluster_key: str, label_key: str) -> float:
    """Fraction of cells carrying the majority label of their cluster."""
    table = pd.crosstab(adata.obs[cluster_key], adata.obs[label_key])
    return float(table.max(axis=1).sum() / adata.n_obs)


def compute_ari(adata: AnnData, cluster_key: str, label_key: str) -> float:
    """Adjusted Rand index between ``obs[cluster_key]`` and ``obs[label_key]``."""
    return float(
        adjusted_rand_score(adata.obs[label_key].values, adata.obs[cluster_key].values)
    )


def compute_within_batch_ari(
    adata: AnnData, batch_key: str, cluster_key: str, label_key: str
) -> pd.Series:
    """
    Adjusted Rand index between merged clusters and labels, batch by batch.

    A correction that collapses distinct populations within one batch scores
    low here even when the batches look well mixed.

    Returns
    -------
    pd.Series
        ARI indexed by batch.
    """
    scores = {}
    for batch, obs in adata.obs.groupby(batch_key, observed=True):
        scores[batch] = adjusted_rand_score(
            obs[label_key].values, obs[cluster_key].values
        )
    return pd.Series(scores, name="ari", dtype=float)


def cluster_batch_table(adata: AnnData, cluster_key: str, batch_key: str) -> pd.DataFrame:
    """
    Count cells of each batch in every cluster.

    Each row also carries a chi-squared test of the cluster's batch counts
    against the overall batch proportions. Clusters made up of a single batch
    have small p-values; after a good correction most clusters hold cells
    from every batch in roughly the global ratio.

    Returns
    -------
    pd.DataFrame
        One row per cluster: one count column per batch, then ``chi2`` and
        ``pvalue``.
    """
    table = pd.crosstab(adata.obs[cluster_key], adata.obs[batch_key])
    # Unused categories show up as empty rows or columns.
    table = table.loc[table.sum(axis=1) > 0, table.sum(axis=0) > 0]
    proportions = table.sum(axis=0) / table.values.sum()

    stats, pvalues = [], []
    for _, row in table.iterrows():
        expected = proportions.values * row.sum()
        stat, pvalue = chisquare(row.values, f_exp=expected)
        stats.append(stat)
        pvalues.append(pvalue)

    result = table.copy()
    result.columns = result.columns.astype(str)
    result["chi2"] = stats
    result["pvalue"] = pvalues
    return result


def summarize_integration_metrics(
    adata: AnnData,
    batch_key: str,
    label_key: Optional[str] = None,
    cluster_key: Optional[str] = None,
    use_rep: str = "X_pca_uncorrected",
    sample_size: int = 5000,
) -> Dict[str, float]:
    """
    Compute every applicable metric for one embedding.

    Mixing metrics are always reported. Purity, ARI and the mean
    within-batch ARI need both ``label_key`` and ``cluster_key`` present in
    ``obs``; the fraction of clusters with a batch-balance p-value below 0.05
    needs only ``cluster_key``.
    """
    metrics = {
        "batch_silhouette": compute_batch_mixing_silhouette(
            adata, batch_key, use_rep, sample_size=sample_size
        ),
        "batch_entropy": compute_batch_entropy(
            adata, batch_key, use_rep, sample_size=sample_size
        ),
    }

    if cluster_key is None or cluster_key not in adata.obs.columns:
        return metrics

    balance = cluster_batch_table(adata, cluster_key, batch_key)
    metrics["imbalanced_clusters"] = float((balance["pvalue"] < 0.05).mean())

    if label_key is not None and label_key in adata.obs.columns:
        metrics["cluster_purity"] = compute_cluster_purity(adata, cluster_key, label_key)
        metrics["ari"] = compute_ari(adata, cluster_key, label_key)
        metrics["within_batch_ari"] = float(
            compute_within_batch_ari(adata, batch_key, cluster_key, label_key).mean()
        )
    return metrics


def compare_integration_methods(
    adata: AnnData,
    batch_key: str,
    embeddings: Dict[str, str],
    label_key: Optional[str] = None,
    cluster_keys: Optional[Dict[str, str]] = None,
    sample_size: int = 5000,
) -> pd.DataFrame:
    """
    Tabulate :func:`summarize_integration_metrics` for several embeddings.

    Parameters
    ----------
    adata : AnnData
        Cells carrying every embedding to compare.
    batch_key : str
        Column in ``obs`` with batch labels.
    embeddings : dict
        Method name to ``obsm`` key, e.g. ``{"mnn": "X_mnn"}``. Methods whose
        embedding is missing are skipped with a warning.
    label_key : str, optional
        Column in ``obs`` with known cell labels.
    cluster_keys : dict, optional
        Method name to the ``obs`` column holding its clusters.
    sample_size : int
        Number of cells used by the sampled metrics.

    Returns
    -------
    pd.DataFrame
        One row per method, indexed by ``method``. When MNN correction
        recorded its lost variance in ``uns["mnn"]``, the ``mnn`` row also
        carries the mean of ``lost_var`` over merge steps and batches.
    """
    rows = {}
    for method, embed_key in embeddings.items():
        if embed_key not in adata.obsm:
            logger.warning("%s not found, skipping %s", embed_key, method)
            continue
        cluster_key = cluster_keys.get(method) if cluster_keys else None
        rows[method] = summarize_integration_metrics(
            adata,
            batch_key=batch_key,
            label_key=label_key,
            cluster_key=cluster_key,
            use_rep=embed_key,
            sample_size=sample_size,
        )

    df = pd.DataFrame.from_dict(rows, orient="index")
    df.index.name = "method"

    lost_var = adata.uns.get("mnn", {}).get("lost_var")
    if "mnn" in df.index and lost_var is not None:
        df.loc["mnn", "lost_var"] = float(np.mean(lost_var))
    return df
