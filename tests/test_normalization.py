"""Tests for size factors, log-normalization and multi-batch rescaling."""

import tracemalloc

import numpy as np
import pytest
from scipy import sparse

from scbatch.normalization import (
    _ring_order,
    compute_sum_factors,
    library_size_factors,
    log_normalize,
    multi_batch_norm,
    normalize_counts,
    quick_cluster,
)

from conftest import make_counts


def test_library_size_factors_unit_mean():
    counts = np.array([[1, 1], [2, 2], [3, 3]])
    sf = library_size_factors(counts)
    np.testing.assert_allclose(sf, [0.5, 1.0, 1.5])


def test_ring_order_keeps_neighbours_similar():
    lib = np.array([5.0, 1.0, 4.0, 2.0, 3.0, 6.0])
    order = _ring_order(lib)
    assert sorted(order.tolist()) == list(range(6))
    np.testing.assert_array_equal(lib[order], [1, 3, 5, 6, 4, 2])


class TestComputeSumFactors:
    def test_positive_and_centred(self, counts_adata):
        sf = compute_sum_factors(counts_adata.X)
        assert sf.shape == (counts_adata.n_obs,)
        assert np.all(sf > 0)
        assert sf.mean() == pytest.approx(1.0)

    def test_tracks_library_size(self, counts_adata):
        sf = compute_sum_factors(counts_adata.X)
        lib = library_size_factors(counts_adata.X)
        same_type = (counts_adata.obs["cell_type"] == "A").values
        assert np.corrcoef(sf[same_type], lib[same_type])[0, 1] > 0.8

    def test_recovers_scaling(self):
        adata = make_counts(n_cells=100, seed=9)
        X = adata.X.toarray()
        X[50:] *= 3
        sf = compute_sum_factors(X)
        ratio = sf[50:].mean() / sf[:50].mean()
        assert ratio == pytest.approx(3.0, rel=0.2)

    def test_zero_library_raises(self):
        counts = np.ones((30, 5))
        counts[3] = 0
        with pytest.raises(ValueError, match="zero library size"):
            compute_sum_factors(counts)

    def test_few_cells_fall_back_to_library_size(self):
        counts = np.array([[1, 3], [2, 6], [4, 4]], dtype=float)
        sf = compute_sum_factors(counts)
        np.testing.assert_allclose(sf, library_size_factors(counts))

    def test_with_clusters(self):
        adata = make_counts(n_cells=120, seed=10)
        clusters = np.repeat([0, 1], 60)
        sf = compute_sum_factors(adata.X, clusters=clusters)
        assert np.all(np.isfinite(sf)) and np.all(sf > 0)
        assert sf.mean() == pytest.approx(1.0)

    def test_cluster_length_mismatch(self, counts_adata):
        with pytest.raises(ValueError):
            compute_sum_factors(counts_adata.X, clusters=[0, 1])

    def test_sparse_input_is_not_densified(self):
        n_cells, n_genes = 600, 20000
        rng = np.random.default_rng(12)
        counts = sparse.random(
            n_cells, n_genes, density=0.02, format="csr", random_state=rng,
            data_rvs=lambda n: rng.integers(1, 10, n),
        )
        dense_bytes = n_cells * n_genes * 8

        tracemalloc.start()
        try:
            sf = compute_sum_factors(counts)
            _, peak = tracemalloc.get_traced_memory()
        finally:
            tracemalloc.stop()

        assert np.all(np.isfinite(sf)) and sf.mean() == pytest.approx(1.0)
        assert peak < dense_bytes


def test_quick_cluster_small_input_is_one_cluster(counts_adata):
    labels = quick_cluster(counts_adata.X, min_size=100)
    assert (labels == 0).all()


def test_quick_cluster_respects_min_size():
    adata = make_counts(n_cells=200, seed=11)
    labels = quick_cluster(adata.X, min_size=40)
    _, sizes = np.unique(labels, return_counts=True)
    assert sizes.min() >= 40
    assert labels.max() == len(sizes) - 1


class TestNormalizeCounts:
    def test_unit_factors_without_log_is_identity(self):
        X = np.array([[0, 2, 5], [1, 0, 3]], dtype=float)
        np.testing.assert_array_equal(normalize_counts(X, [1, 1], log=False), X)

    def test_log2_transform(self):
        X = np.array([[0, 2], [4, 6]], dtype=float)
        out = normalize_counts(X, [1.0, 2.0])
        np.testing.assert_allclose(out, np.log2([[1, 3], [3, 4]]))

    def test_sparse_input_stays_sparse(self):
        X = sparse.csr_matrix(np.array([[0, 2], [4, 0]], dtype=float))
        out = normalize_counts(X, [1.0, 2.0])
        assert sparse.issparse(out)
        np.testing.assert_allclose(out.toarray(), np.log2([[1, 3], [3, 1]]))

    def test_wrong_length(self):
        with pytest.raises(ValueError, match="size factors"):
            normalize_counts(np.ones((3, 2)), [1, 1])

    @pytest.mark.parametrize("bad", [0.0, -1.0, np.nan, np.inf])
    def test_invalid_factors(self, bad):
        with pytest.raises(ValueError, match="positive"):
            normalize_counts(np.ones((2, 2)), [1.0, bad])


def test_log_normalize_keeps_counts(counts_adata):
    raw = counts_adata.X.copy()
    log_normalize(counts_adata)
    assert "counts" in counts_adata.layers
    assert (counts_adata.layers["counts"] != raw).nnz == 0
    assert counts_adata.obs["size_factor"].mean() == pytest.approx(1.0)
    assert counts_adata.X.max() < np.log2(raw.max() * 10 + 1)


def test_log_normalize_uses_given_factors():
    adata = make_counts(n_cells=30, seed=12)
    sf = np.full(adata.n_obs, 2.0)
    log_normalize(adata, size_factors=sf, center=False)
    expected = np.log2(adata.layers["counts"].toarray() / 2 + 1)
    np.testing.assert_allclose(adata.X.toarray(), expected, rtol=1e-6)


class TestMultiBatchNorm:
    def test_equalizes_coverage(self, batches):
        for adata in batches.values():
            log_normalize(adata, size_factors=library_size_factors(adata.X))

        rescale = multi_batch_norm(batches)
        assert rescale.shape == (2,)
        # batch1 has the lowest coverage and is the reference
        assert rescale[0] == pytest.approx(1.0)
        assert rescale[1] > 1.5

        means = [
            np.asarray(
                normalize_counts(
                    a.layers["counts"], a.obs["size_factor"].values, log=False
                ).mean(axis=0)
            ).ravel()
            for a in batches.values()
        ]
        ratio = np.median(means[1] / means[0])
        assert ratio == pytest.approx(1.0, rel=0.1)

    def test_records_reference(self, batches):
        for adata in batches.values():
            log_normalize(adata)
        multi_batch_norm(list(batches.values()))
        assert batches["batch2"].uns["multi_batch_norm"]["reference_batch"] == 0

    def test_needs_two_batches(self, batches):
        with pytest.raises(ValueError, match="two batches"):
            multi_batch_norm([batches["batch1"]])

    def test_gene_mismatch(self, batches):
        genes = list(batches["batch2"].var_names)[::-1]
        other = batches["batch2"][:, genes].copy()
        with pytest.raises(ValueError, match="identical genes"):
            multi_batch_norm([batches["batch1"], other])

    def test_missing_counts_layer(self, batches):
        with pytest.raises(KeyError):
            multi_batch_norm(batches)
