"""Smoke tests for plotting functions."""

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import pytest

from scbatch.visualization import (
    plot_batch_distribution,
    plot_embedding_grid,
    plot_mean_variance,
    plot_method_comparison,
    plot_metrics_comparison,
    plot_qc_metrics,
)


@pytest.fixture(autouse=True)
def close_figures():
    yield
    plt.close("all")


def test_method_comparison_saves(tmp_path, embedded_adata):
    path = tmp_path / "figures" / "comparison.png"
    fig = plot_method_comparison(
        embedded_adata,
        {"separated": "X_separated", "mixed": "X_mixed", "mnn": "X_mnn"},
        color_by="batch",
        save_path=path,
    )
    assert path.exists()
    assert fig.axes[2].get_title().startswith("mnn")


def test_batch_distribution(embedded_adata):
    embedded_adata.obs["cluster"] = pd.Categorical(
        np.where(embedded_adata.obsm["X_separated"][:, 0] > 3, "1", "0")
    )
    fig = plot_batch_distribution(embedded_adata, "batch", "cluster")
    assert fig.axes[0].get_ylabel() == "Proportion"


def test_metrics_comparison():
    df = pd.DataFrame(
        {"batch_silhouette": [0.2, 0.9], "batch_entropy": [0.1, 0.8]},
        index=pd.Index(["uncorrected", "mnn"], name="method"),
    )
    fig = plot_metrics_comparison(df)
    assert len(fig.axes) == 2


def test_qc_metrics_highlights_discarded(tmp_path):
    qc = pd.DataFrame(
        {
            "batch": ["a"] * 5 + ["b"] * 5,
            "total_counts": np.arange(1, 11) * 100.0,
            "n_genes_by_counts": np.arange(1, 11) * 10.0,
            "discard": [True] + [False] * 9,
        }
    )
    path = tmp_path / "qc.png"
    fig = plot_qc_metrics(qc, group_key="batch", save_path=path)
    assert path.exists()
    assert len(fig.axes) == 2
    assert [t.get_text() for t in fig.axes[0].get_xticklabels()] == ["a", "b"]


def test_mean_variance():
    table = pd.DataFrame(
        {
            "mean": [0.5, 1.0, 2.0, 3.0],
            "total": [0.4, 0.9, 2.5, 0.6],
            "tech": [0.4, 0.6, 0.7, 0.6],
        },
        index=["g0", "g1", "g2", "g3"],
    )
    fig = plot_mean_variance(table, hvgs=["g2"], title="batch1")
    assert fig.axes[0].get_title() == "batch1"


def test_embedding_grid_hides_unused_axes(tmp_path, embedded_adata):
    path = tmp_path / "grid.png"
    fig = plot_embedding_grid(
        embedded_adata,
        ["batch", "cell_type"],
        basis="X_mixed",
        ncols=3,
        save_path=path,
    )
    assert path.exists()
    assert len(fig.axes) >= 3
    assert not fig.axes[2].axison
