"""Tests for per-cell quality control."""

import numpy as np
import pandas as pd
import pytest

from scbatch.quality import (
    add_qc_metrics,
    filter_low_quality_cells,
    flag_low_quality_cells,
    is_outlier,
)

from conftest import make_counts


class TestIsOutlier:
    def test_lower_tail(self):
        values = np.array([100, 102, 98, 101, 99, 5])
        flags = is_outlier(values, nmads=3, type="lower")
        assert flags.tolist() == [False] * 5 + [True]

    def test_higher_tail_ignores_low_values(self):
        values = np.array([100, 102, 98, 101, 99, 5])
        assert not is_outlier(values, nmads=3, type="higher").any()

    def test_both_tails(self):
        values = np.array([100, 102, 98, 101, 99, 5, 500])
        flags = is_outlier(values, nmads=3, type="both")
        assert flags.tolist() == [False] * 5 + [True, True]

    def test_zero_mad_flags_nothing(self):
        values = np.array([10, 10, 10, 10, 3])
        assert not is_outlier(values, nmads=3).any()

    def test_log_scale(self):
        values = np.array([12, 10, 11, 9, 10, 1])
        assert is_outlier(values, nmads=3, log=True, type="lower")[-1]

    def test_batch_wise_thresholds(self):
        values = np.array([10, 10, 11, 9, 1, 100, 100, 101, 99, 10])
        batch = ["a"] * 5 + ["b"] * 5
        flags = is_outlier(values, nmads=3, type="lower", batch=batch)
        expected = [False] * 4 + [True] + [False] * 4 + [True]
        assert flags.tolist() == expected

    def test_invalid_type(self):
        with pytest.raises(ValueError, match="type"):
            is_outlier([1, 2, 3], type="upper")

    def test_batch_length_mismatch(self):
        with pytest.raises(ValueError):
            is_outlier([1, 2, 3], batch=["a", "b"])


def test_add_qc_metrics_columns(counts_adata):
    qc = add_qc_metrics(counts_adata)
    assert list(qc.columns) == ["total_counts", "n_genes_by_counts"]
    expected = np.asarray(counts_adata.X.sum(axis=1)).ravel()
    np.testing.assert_allclose(qc["total_counts"].values, expected)


def test_add_qc_metrics_mito():
    adata = make_counts(n_cells=40, mito_genes=3, seed=3)
    qc = add_qc_metrics(adata, mito_prefix="mt-")
    assert "pct_counts_mito" in qc.columns
    assert adata.var["mito"].sum() == 3
    assert ((qc["pct_counts_mito"] >= 0) & (qc["pct_counts_mito"] <= 100)).all()


def test_flag_low_quality_cells_requires_metrics():
    with pytest.raises(KeyError):
        flag_low_quality_cells(pd.DataFrame({"total_counts": [1.0, 2.0]}))


def test_flag_low_quality_cells_discard_is_union():
    qc = pd.DataFrame(
        {
            "total_counts": [1000, 1100, 900, 1050, 950, 20, 1000],
            "n_genes_by_counts": [500, 520, 480, 510, 490, 500, 10],
        }
    )
    flags = flag_low_quality_cells(qc, nmads=3)
    assert flags["low_lib_size"].tolist() == [False] * 5 + [True, False]
    assert flags["low_n_features"].tolist() == [False] * 6 + [True]
    assert flags["discard"].tolist() == [False] * 5 + [True, True]


def test_filter_removes_damaged_cells():
    adata = make_counts(n_cells=80, seed=4)
    X = adata.X.toarray()
    X[:3] = np.floor(X[:3] / 50)
    X[:3, :5] += 1
    adata.X = X

    filtered = filter_low_quality_cells(adata, nmads=3)
    for cell in adata.obs_names[:3]:
        assert cell not in filtered.obs_names
    assert adata.obs["discard"].iloc[:3].all()


def test_filter_count_invariant():
    adata = make_counts(n_cells=100, mito_genes=2, seed=5)
    filtered = filter_low_quality_cells(adata, nmads=2, mito_prefix="MT-")
    discarded = adata.obs["discard"].sum()
    assert filtered.n_obs == adata.n_obs - discarded
    flags = adata.obs[["low_lib_size", "low_n_features", "high_mito"]]
    assert (adata.obs["discard"] == flags.any(axis=1)).all()


def test_filter_lenient_threshold_keeps_everything(counts_adata):
    filtered = filter_low_quality_cells(counts_adata, nmads=50)
    assert filtered.n_obs == counts_adata.n_obs


def test_filter_missing_batch_key(counts_adata):
    with pytest.raises(ValueError, match="Batch key"):
        filter_low_quality_cells(counts_adata, batch_key="sample")
