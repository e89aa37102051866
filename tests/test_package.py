"""Tests for the top-level package namespace."""

import pytest

import scbatch


@pytest.mark.parametrize("name", scbatch.__all__)
def test_exported_names_resolve(name):
    assert getattr(scbatch, name) is not None


@pytest.mark.parametrize(
    "name",
    [
        "compute_ari",
        "store_raw_counts",
        "cosine_normalize",
        "multi_batch_pca",
        "consensus_matrix",
    ],
)
def test_helpers_are_exported(name):
    assert name in scbatch.__all__
