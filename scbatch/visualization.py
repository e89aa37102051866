"""
Plots for inspecting multi-batch preprocessing and integration.

Every function returns the figure and, given ``save_path``, also writes it
to disk, creating parent directories as needed.
"""

from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import matplotlib
import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import scanpy as sc
from anndata import AnnData

from .evaluation import cluster_batch_table


def _save_figure(fig: plt.Figure, save_path: Optional[str]) -> None:
    if save_path:
        Path(save_path).parent.mkdir(parents=True, exist_ok=True)
        fig.savefig(save_path, dpi=150, bbox_inches="tight")


def _grid(n_plots: int, ncols: int, figsize, panel: float):
    nrows = int(np.ceil(n_plots / ncols))
    if figsize is None:
        figsize = (panel * ncols, panel * nrows)
    fig, axes = plt.subplots(nrows, ncols, figsize=figsize, squeeze=False)
    return fig, axes.flatten()


def _level_colors(levels: Sequence, palette: Optional[Dict[str, str]] = None) -> dict:
    if palette:
        return {level: palette.get(level, "#999999") for level in levels}
    cmap = matplotlib.colormaps["tab10" if len(levels) <= 10 else "tab20"]
    return {level: cmap(i % cmap.N) for i, level in enumerate(levels)}


def _sort_clusters(index: pd.Index) -> list:
    # Leiden and consensus labels are integers stored as strings.
    try:
        return sorted(index, key=int)
    except (ValueError, TypeError):
        return sorted(index, key=str)


def plot_embedding_grid(
    adata: AnnData,
    color_keys: List[str],
    basis: str = "X_umap",
    ncols: int = 3,
    figsize: Optional[Tuple[float, float]] = None,
    title_prefix: str = "",
    save_path: Optional[str] = None,
    palette: Optional[Dict[str, str]] = None,
    **kwargs,
) -> plt.Figure:
    """
    Draw one embedding several times, coloured by each of ``color_keys``.

    Panels are drawn with :func:`scanpy.pl.embedding`; extra keyword
    arguments go straight to it. Unused grid cells are hidden.
    """
    fig, axes = _grid(len(color_keys), ncols, figsize, panel=4)

    for ax, color in zip(axes, color_keys):
        sc.pl.embedding(
            adata,
            basis=basis,
            color=color,
            ax=ax,
            show=False,
            palette=palette,
            title=f"{title_prefix}{color}",
            **kwargs,
        )
    for ax in axes[len(color_keys):]:
        ax.axis("off")

    fig.tight_layout()
    _save_figure(fig, save_path)
    return fig


def plot_method_comparison(
    adata: AnnData,
    embeddings: Dict[str, str],
    color_by: str,
    ncols: int = 3,
    figsize: Optional[Tuple[float, float]] = None,
    save_path: Optional[str] = None,
    palette: Optional[Dict[str, str]] = None,
    point_size: float = 1,
    axis_label: str = "UMAP",
    random_state: int = 0,
) -> plt.Figure:
    """
    Show the same cells under several integration strategies.

    All panels share one colour assignment for ``obs[color_by]`` and one
    legend (or colorbar, for numeric columns), so that the position of a
    batch can be followed from the uncorrected panel to the corrected ones.
    Cells are drawn in one random order shared by all panels, which keeps
    the last batch from hiding the others.

    Parameters
    ----------
    adata : AnnData
        Cells with one 2-d embedding per method in ``obsm``.
    embeddings : dict
        Method name to ``obsm`` key, e.g.
        ``{"uncorrected": "X_umap_uncorrected", "mnn": "X_umap_mnn"}``.
        Methods with a missing key get an empty, labelled panel.
    color_by : str
        Column in ``obs`` used for colouring.
    ncols : int
        Panels per row.
    figsize : tuple, optional
        Figure size; five inches per panel by default.
    save_path : str, optional
        Where to write the figure.
    palette : dict, optional
        Category to colour, for categorical columns.
    point_size : float
        Marker size.
    axis_label : str
        Prefix for the axis labels.
    random_state : int
        Seed for the drawing order.

    Returns
    -------
    matplotlib.figure.Figure
    """
    methods = list(embeddings)
    fig, axes = _grid(len(methods), ncols, figsize, panel=5)

    values = adata.obs[color_by]
    numeric = pd.api.types.is_numeric_dtype(values) and not isinstance(
        values.dtype, pd.CategoricalDtype
    )
    order = np.random.default_rng(random_state).permutation(adata.n_obs)

    if numeric:
        colors = np.asarray(values, dtype=float)[order]
        scatter_kwargs = dict(
            c=colors, cmap="viridis", vmin=np.nanmin(colors), vmax=np.nanmax(colors)
        )
        level_colors = {}
    else:
        labels = np.asarray(values.astype(str))
        level_colors = _level_colors(list(pd.unique(labels)), palette)
        scatter_kwargs = dict(c=[level_colors[v] for v in labels[order]])

    mappable = None
    for ax, method in zip(axes, methods):
        key = embeddings[method]
        if key not in adata.obsm:
            ax.set_title(f"{method}\n(embedding not found)")
            ax.axis("off")
            continue

        coords = np.asarray(adata.obsm[key])[order]
        mappable = ax.scatter(
            coords[:, 0], coords[:, 1], s=point_size, alpha=0.6, **scatter_kwargs
        )
        ax.set_title(method)
        ax.set_xlabel(f"{axis_label} 1")
        ax.set_ylabel(f"{axis_label} 2")
        ax.set_xticks([])
        ax.set_yticks([])

    for ax in axes[len(methods):]:
        ax.axis("off")

    fig.tight_layout()
    if numeric and mappable is not None:
        fig.colorbar(mappable, ax=list(axes), label=color_by, shrink=0.6)
    elif level_colors:
        handles = [
            plt.Line2D([], [], marker="o", linestyle="", color=color, label=level)
            for level, color in level_colors.items()
        ]
        fig.legend(
            handles=handles, title=color_by, loc="upper left", bbox_to_anchor=(1.0, 1.0)
        )
    _save_figure(fig, save_path)
    return fig


def plot_batch_distribution(
    adata: AnnData,
    batch_key: str,
    cluster_key: str,
    normalize: bool = True,
    figsize: Tuple[float, float] = (10, 6),
    save_path: Optional[str] = None,
    palette: Optional[Dict[str, str]] = None,
    mark_imbalanced: float = 0.05,
) -> plt.Figure:
    """
    Stacked bars of batch composition in each cluster.

    Clusters whose batch counts deviate from the overall batch proportions
    (chi-squared p-value below ``mark_imbalanced``, see
    :func:`scbatch.evaluation.cluster_batch_table`) are marked with an
    asterisk. Pass ``mark_imbalanced=0`` to turn the marks off.
    """
    table = cluster_batch_table(adata, cluster_key, batch_key)
    table = table.loc[_sort_clusters(table.index)]
    counts = table.drop(columns=["chi2", "pvalue"])
    heights = counts.div(counts.sum(axis=1), axis=0) if normalize else counts

    fig, ax = plt.subplots(figsize=figsize)
    colors = _level_colors(list(counts.columns), palette)
    bottom = np.zeros(len(heights))
    positions = np.arange(len(heights))
    for batch in heights.columns:
        ax.bar(positions, heights[batch], bottom=bottom, color=colors[batch], label=batch)
        bottom += heights[batch].values

    for pos, (top, pvalue) in enumerate(zip(bottom, table["pvalue"])):
        if pvalue < mark_imbalanced:
            ax.text(pos, top, "*", ha="center", va="bottom")

    ax.set_xticks(positions)
    ax.set_xticklabels([str(c) for c in heights.index])
    ax.set_xlabel(cluster_key)
    ax.set_ylabel("Proportion" if normalize else "Count")
    ax.set_title(f"Batch composition per {cluster_key}")
    ax.legend(title=batch_key, bbox_to_anchor=(1.02, 1), loc="upper left")

    fig.tight_layout()
    _save_figure(fig, save_path)
    return fig


def plot_metrics_comparison(
    metrics_df: pd.DataFrame,
    figsize: Optional[Tuple[float, float]] = None,
    save_path: Optional[str] = None,
) -> plt.Figure:
    """
    One horizontal bar chart per metric, methods on the y-axis.

    Methods without a value for a metric (for instance ``lost_var`` for
    anything but MNN) are left out of that panel.
    """
    metrics = list(metrics_df.columns)
    if figsize is None:
        figsize = (3 * len(metrics), 0.5 * len(metrics_df) + 1.5)
    fig, axes = plt.subplots(1, len(metrics), figsize=figsize, squeeze=False, sharey=True)

    methods = list(metrics_df.index)
    for ax, metric in zip(axes[0], metrics):
        values = metrics_df[metric]
        present = values.notna().values
        ax.barh(np.flatnonzero(present), values[present], color="#377EB8")
        ax.set_yticks(range(len(methods)))
        ax.set_yticklabels(methods)
        ax.set_title(metric)
        ax.invert_yaxis()

    fig.tight_layout()
    _save_figure(fig, save_path)
    return fig


def plot_qc_metrics(
    qc: pd.DataFrame,
    metrics: Sequence[str] = ("total_counts", "n_genes_by_counts"),
    group_key: Optional[str] = None,
    discard_key: str = "discard",
    log: bool = True,
    figsize: Optional[Tuple[float, float]] = None,
    save_path: Optional[str] = None,
) -> plt.Figure:
    """
    Strip plots of QC metrics, with discarded cells highlighted.

    Parameters
    ----------
    qc : pd.DataFrame
        Per-cell QC metrics taken before filtering, so that discarded cells
        are still present (e.g. ``uns['qc_metrics']`` of a preprocessed
        dataset).
    metrics : sequence of str
        Columns to plot.
    group_key : str, optional
        Column defining the x-axis groups (e.g. batch).
    discard_key : str
        Boolean column marking discarded cells.
    log : bool
        Use a log scale on the y-axis.
    figsize : tuple, optional
        Figure size.
    save_path : str, optional
        Path to save figure.

    Returns
    -------
    matplotlib.figure.Figure
    """
    if figsize is None:
        figsize = (4 * len(metrics), 4)
    fig, axes = plt.subplots(1, len(metrics), figsize=figsize, squeeze=False)

    n_cells = len(qc)
    if group_key is not None:
        groups = qc[group_key].astype(str).values
    else:
        groups = np.full(n_cells, "all")
    levels = list(pd.unique(groups))

    if discard_key in qc.columns:
        discard = qc[discard_key].values.astype(bool)
    else:
        discard = np.zeros(n_cells, dtype=bool)

    rng = np.random.default_rng(0)
    jitter = rng.uniform(-0.2, 0.2, n_cells)
    x = np.array([levels.index(g) for g in groups]) + jitter

    for ax, metric in zip(axes[0], metrics):
        values = qc[metric].values
        ax.scatter(x[~discard], values[~discard], s=2, c="#999999", label="kept")
        ax.scatter(x[discard], values[discard], s=4, c="#E41A1C", label="discarded")
        ax.set_xticks(range(len(levels)))
        ax.set_xticklabels(levels)
        ax.set_title(metric)
        if log:
            ax.set_yscale("log")

    axes[0][-1].legend(loc="best")
    fig.tight_layout()
    _save_figure(fig, save_path)
    return fig


def plot_mean_variance(
    table: pd.DataFrame,
    hvgs: Optional[Sequence[str]] = None,
    title: str = "",
    figsize: Tuple[float, float] = (5, 5),
    save_path: Optional[str] = None,
) -> plt.Figure:
    """
    Plot per-gene variance against mean with the fitted technical trend.

    Parameters
    ----------
    table : pd.DataFrame
        Variance decomposition with 'mean', 'total' and 'tech' columns.
    hvgs : sequence of str, optional
        Genes to highlight.
    title : str
        Plot title.
    figsize : tuple
        Figure size.
    save_path : str, optional
        Path to save figure.

    Returns
    -------
    matplotlib.figure.Figure
    """
    fig, ax = plt.subplots(figsize=figsize)

    ax.scatter(table["mean"], table["total"], s=3, c="#999999")
    if hvgs is not None:
        selected = table.loc[table.index.isin(hvgs)]
        ax.scatter(selected["mean"], selected["total"], s=4, c="#E41A1C", label="HVG")
        ax.legend(loc="upper right")

    order = np.argsort(table["mean"].values)
    ax.plot(table["mean"].values[order], table["tech"].values[order], c="#377EB8")

    ax.set_xlabel("Mean log-expression")
    ax.set_ylabel("Variance of log-expression")
    ax.set_title(title)

    fig.tight_layout()
    _save_figure(fig, save_path)
    return fig
