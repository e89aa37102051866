"""End-to-end tests of the preprocessing and integration pipeline."""

import numpy as np
import pandas as pd
import pytest

from scbatch.config import load_config
from scbatch.integration import EMBEDDING_KEYS
from scbatch.pipeline import integrate_batches, load_datasets, run_integration_pipeline
from scbatch.preprocessing import preprocess_batches


class TestToyScenario:
    """Two batches of 10 genes with 5 and 7 cells."""

    @pytest.fixture
    def merged(self, toy_batches):
        return preprocess_batches(toy_batches, nmads=10, cluster_min_size=None)

    def test_lenient_qc_keeps_all_cells(self, merged):
        assert merged.n_obs == 12
        assert not merged.uns["qc_metrics"]["discard"].any()

    def test_selected_genes(self, merged):
        assert set(merged.uns["hvgs"]) == {"Gene0", "Gene1"}
        assert (merged.var.loc[list(merged.uns["hvgs"]), "bio"] > 0).all()

    def test_each_strategy_returns_one_row_per_cell(self, merged):
        integrated = integrate_batches(merged, n_comps=2)
        assert integrated.n_obs == 12
        assert set(integrated.var_names) == set(merged.uns["hvgs"])
        for key in EMBEDDING_KEYS.values():
            assert integrated.obsm[key].shape == (12, 2)

    def test_n_comps_capped_at_hvg_count(self, merged):
        integrated = integrate_batches(merged, methods=["uncorrected"], n_comps=20)
        assert integrated.obsm["X_pca_uncorrected"].shape == (12, 2)


def test_integrate_batches_without_hvgs(toy_batches):
    merged = preprocess_batches(toy_batches, nmads=10, cluster_min_size=None)
    merged.var["highly_variable"] = False
    with pytest.raises(ValueError, match="No highly variable genes"):
        integrate_batches(merged)


def test_integrate_batches_records_methods(batches):
    merged = preprocess_batches(batches, cluster_min_size=None)
    integrated = integrate_batches(
        merged, methods=["uncorrected", "mnn"], n_comps=5, mnn_kwargs={"k": 10}
    )
    assert list(integrated.uns["integration_methods"]) == ["uncorrected", "mnn"]
    assert "X_pca_linear" not in integrated.obsm
    assert integrated.obsm["X_mnn"].shape == (merged.n_obs, 5)


@pytest.fixture
def h5ad_inputs(tmp_path, batches):
    files = []
    for name, adata in batches.items():
        path = tmp_path / "data" / f"{name}.h5ad"
        path.parent.mkdir(exist_ok=True)
        adata.write_h5ad(path)
        files.append({"name": name, "path": str(path)})
    return files


def test_load_datasets(h5ad_inputs):
    adatas = load_datasets(
        [f["path"] for f in h5ad_inputs], [f["name"] for f in h5ad_inputs]
    )
    assert list(adatas) == ["batch1", "batch2"]
    assert adatas["batch1"].n_obs == 150


def test_load_datasets_length_mismatch(h5ad_inputs):
    with pytest.raises(ValueError, match="Number of files"):
        load_datasets([h5ad_inputs[0]["path"]], ["a", "b"])


def test_run_integration_pipeline(tmp_path, h5ad_inputs):
    pytest.importorskip("igraph")
    output = tmp_path / "results"
    config = load_config(
        overrides={
            "input": {"files": h5ad_inputs, "label_key": "cell_type"},
            "integration": {"n_comps": 5, "mnn": {"k": 10}},
            "clustering": {"n_neighbors": 15, "resolutions": [0.5], "consensus_k": 2},
            "output": {"dir": str(output)},
        }
    )
    adata = run_integration_pipeline(config)

    assert (output / "preprocessed.h5ad").exists()
    assert (output / "integrated.h5ad").exists()
    assert (output / "cell_metadata.tsv").exists()
    assert (output / "figures" / "umap_by_batch.png").exists()
    assert (output / "figures" / "qc_metrics.png").exists()
    assert (output / "figures" / "umap_mnn.png").exists()

    metrics = pd.read_csv(output / "metrics" / "integration_metrics.csv", index_col=0)
    assert set(metrics.index) == {"uncorrected", "linear", "mnn"}
    assert "ari" in metrics.columns
    assert (output / "metrics" / "cluster_batch_mnn.csv").exists()

    for method in ("uncorrected", "linear", "mnn"):
        assert adata.obsm[f"X_umap_{method}"].shape == (adata.n_obs, 2)
        assert f"leiden_{method}_0.5" in adata.obs.columns
        assert f"consensus_{method}" in adata.obs.columns
    assert np.isfinite(adata.obsm["X_mnn"]).all()


def test_pipeline_reuses_preprocessed_checkpoint(tmp_path, h5ad_inputs, monkeypatch):
    pytest.importorskip("igraph")
    config = load_config(
        overrides={
            "input": {"files": h5ad_inputs},
            "integration": {"methods": ["uncorrected"], "n_comps": 5},
            "clustering": {"n_neighbors": 15, "resolutions": [0.5]},
            "output": {"dir": str(tmp_path / "results"), "figures": False},
        }
    )
    run_integration_pipeline(config)

    def fail(*args, **kwargs):
        raise AssertionError("preprocessing should not run again")

    monkeypatch.setattr("scbatch.pipeline.preprocess_batches", fail)
    adata = run_integration_pipeline(config)
    assert "X_umap_uncorrected" in adata.obsm


def test_pipeline_recomputes_when_methods_change(tmp_path, h5ad_inputs):
    pytest.importorskip("igraph")
    overrides = {
        "input": {"files": h5ad_inputs},
        "integration": {"methods": ["uncorrected"], "n_comps": 5, "mnn": {"k": 10}},
        "clustering": {"n_neighbors": 15, "resolutions": [0.5]},
        "output": {"dir": str(tmp_path / "results"), "figures": False},
    }
    run_integration_pipeline(load_config(overrides=overrides))

    overrides["integration"]["methods"] = ["uncorrected", "mnn"]
    adata = run_integration_pipeline(load_config(overrides=overrides))
    assert "X_mnn" in adata.obsm
    assert "X_umap_mnn" in adata.obsm
    assert list(adata.uns["integration_methods"]) == ["uncorrected", "mnn"]
