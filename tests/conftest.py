"""
Shared fixtures: small synthetic count matrices.

Counts are Poisson draws around a per-gene baseline. Two cell types differ in
a block of marker genes, batches differ in sequencing coverage and in a
gene-specific multiplicative shift.
"""

import matplotlib

matplotlib.use("Agg")

import numpy as np
import pandas as pd
import pytest
from anndata import AnnData
from scipy import sparse


def make_counts(
    n_cells: int = 150,
    n_genes: int = 60,
    n_markers: int = 10,
    coverage: float = 1.0,
    shift=None,
    mito_genes: int = 0,
    seed: int = 0,
    prefix: str = "cell",
) -> AnnData:
    """Synthetic raw-count AnnData with two cell types."""
    rng = np.random.default_rng(seed)
    base = np.random.default_rng(12345).gamma(2.0, 2.0, n_genes) + 0.5
    if shift is not None:
        base = base * shift

    cell_type = rng.integers(0, 2, n_cells)
    means = np.tile(base, (n_cells, 1))
    means[cell_type == 0, :n_markers] *= 8
    means[cell_type == 1, n_markers:2 * n_markers] *= 8

    lib = rng.lognormal(0.0, 0.2, n_cells) * coverage
    counts = rng.poisson(means * lib[:, None]).astype(np.float32)

    genes = [f"Gene{i}" for i in range(n_genes - mito_genes)]
    genes += [f"MT-{i}" for i in range(mito_genes)]
    obs = pd.DataFrame(
        {"cell_type": pd.Categorical(np.where(cell_type == 0, "A", "B"))},
        index=[f"{prefix}{i}" for i in range(n_cells)],
    )
    return AnnData(
        X=sparse.csr_matrix(counts),
        obs=obs,
        var=pd.DataFrame(index=genes),
    )


@pytest.fixture
def counts_adata():
    return make_counts(seed=1)


@pytest.fixture
def batches():
    """Two batches sharing 60 genes, with different coverage."""
    shift = np.random.default_rng(7).uniform(0.7, 1.4, 60)
    return {
        "batch1": make_counts(n_cells=150, coverage=1.0, seed=1),
        "batch2": make_counts(n_cells=120, coverage=2.5, shift=shift, seed=2),
    }


@pytest.fixture
def toy_batches():
    """
    Two tiny batches of 10 genes with 5 and 7 cells.

    Gene0 and Gene1 are switched on in alternating cells; the remaining genes
    are not expressed.
    """

    def _toy(n_cells, high, prefix):
        X = np.zeros((n_cells, 10), dtype=np.float32)
        on = np.arange(n_cells) % 2 == 0
        X[on, 0], X[~on, 0] = high, 1
        X[on, 1], X[~on, 1] = 1, high
        return AnnData(
            X=X,
            obs=pd.DataFrame(index=[f"{prefix}{i}" for i in range(n_cells)]),
            var=pd.DataFrame(index=[f"Gene{i}" for i in range(10)]),
        )

    return {"batch1": _toy(5, 100, "a"), "batch2": _toy(7, 200, "b")}


@pytest.fixture
def embedded_adata():
    """Two batches of cells in a 5-d space, batch 2 offset along dimension 0."""
    rng = np.random.default_rng(0)
    n = 60
    X = rng.normal(size=(2 * n, 5))
    X[n:, 0] += 6
    obs = pd.DataFrame(
        {
            "batch": pd.Categorical(["b1"] * n + ["b2"] * n),
            "cell_type": pd.Categorical(list("AB" * n)),
        },
        index=[f"cell{i}" for i in range(2 * n)],
    )
    adata = AnnData(X=np.zeros((2 * n, 3), dtype=np.float32), obs=obs)
    adata.obsm["X_separated"] = X
    mixed = X.copy()
    mixed[n:, 0] -= 6
    adata.obsm["X_mixed"] = mixed
    return adata
