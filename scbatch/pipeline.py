"""
End-to-end multi-batch integration pipeline.

Loads the batches, preprocesses them (checkpoint), runs the configured
integration strategies (checkpoint), then computes UMAPs, clusters, metrics
and figures for each strategy.
"""

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import numpy as np
import pandas as pd
import scanpy as sc
from anndata import AnnData

from .checkpoint import INTEGRATED, PREPROCESSED, load_or_compute, write_checkpoint
from .clustering import consensus_clustering
from .evaluation import cluster_batch_table, compare_integration_methods
from .integration import (
    EMBEDDING_KEYS,
    compute_neighbors_and_umap,
    integrate,
    run_leiden_clustering,
)
from .normalization import DEFAULT_POOL_SIZES
from .preprocessing import preprocess_batches, subset_to_hvgs
from .visualization import (
    plot_batch_distribution,
    plot_embedding_grid,
    plot_mean_variance,
    plot_method_comparison,
    plot_metrics_comparison,
    plot_qc_metrics,
)

logger = logging.getLogger(__name__)


def load_datasets(files: List[str], names: List[str]) -> Dict[str, AnnData]:
    """
    Load count matrices into a dictionary keyed by dataset name.

    Parameters
    ----------
    files : list
        Paths to .h5ad files or 10x Genomics .h5 files.
    names : list
        Dataset names (same length as files).

    Returns
    -------
    dict
        Dictionary of AnnData objects keyed by name.
    """
    if len(files) != len(names):
        raise ValueError("Number of files must match number of names")

    adatas = {}
    for path, name in zip(files, names):
        logger.info("Loading %s from %s", name, path)
        if Path(path).suffix == ".h5":
            adata = sc.read_10x_h5(path)
            adata.var_names_make_unique()
        else:
            adata = sc.read_h5ad(path)
        adatas[name] = adata
        logger.info("  %s: %d cells x %d genes", name, adata.n_obs, adata.n_vars)

    return adatas


def integrate_batches(
    adata: AnnData,
    batch_key: str = "batch",
    methods: Sequence[str] = ("uncorrected", "linear", "mnn"),
    n_comps: int = 20,
    mnn_kwargs: Optional[Dict[str, Any]] = None,
    random_state: int = 0,
) -> AnnData:
    """
    Run integration strategies on the highly variable genes.

    Parameters
    ----------
    adata : AnnData
        Output of :func:`scbatch.preprocessing.preprocess_batches`.
    batch_key : str
        Column in .obs containing batch labels.
    methods : sequence of str
        Strategies to run.
    n_comps : int
        Number of dimensions of every coordinate table, capped at the
        number of HVGs and of cells.
    mnn_kwargs : dict, optional
        Extra arguments of the MNN strategy.
    random_state : int
        Random seed.

    Returns
    -------
    AnnData
        Copy restricted to the HVGs, with one coordinate table per strategy
        in .obsm (see ``EMBEDDING_KEYS``).
    """
    hvg = subset_to_hvgs(adata)
    if hvg.n_vars == 0:
        raise ValueError("No highly variable genes selected; nothing to integrate")

    max_comps = min(hvg.n_obs, hvg.n_vars)
    if n_comps > max_comps:
        logger.warning(
            "Only %d HVGs for %d cells; reducing n_comps from %d to %d",
            hvg.n_vars,
            hvg.n_obs,
            n_comps,
            max_comps,
        )
        n_comps = max_comps

    for method in methods:
        kwargs = dict(mnn_kwargs or {}) if method == "mnn" else {}
        integrate(
            hvg,
            method,
            batch_key=batch_key,
            n_comps=n_comps,
            random_state=random_state,
            **kwargs,
        )

    hvg.uns["integration_methods"] = np.array(list(methods), dtype=str)
    return hvg


def run_integration_pipeline(config: Dict[str, Any]) -> AnnData:
    """
    Run the full pipeline described by a configuration.

    Parameters
    ----------
    config : dict
        Output of :func:`scbatch.config.load_config`.

    Returns
    -------
    AnnData
        Integrated dataset with UMAPs, clusters and integration results.
    """
    output_path = Path(config["output"]["dir"])
    output_path.mkdir(parents=True, exist_ok=True)
    (output_path / "figures").mkdir(exist_ok=True)
    (output_path / "metrics").mkdir(exist_ok=True)

    batch_key = config["input"]["batch_key"]
    overwrite = config["output"]["overwrite"]
    random_state = config["random_state"]
    methods = list(config["integration"]["methods"])

    def _preprocess() -> AnnData:
        files = config["input"]["files"]
        adatas = load_datasets([f["path"] for f in files], [f["name"] for f in files])
        pool_sizes = config["normalization"]["pool_sizes"] or DEFAULT_POOL_SIZES
        return preprocess_batches(
            adatas,
            batch_key=batch_key,
            nmads=config["qc"]["nmads"],
            mito_prefix=config["qc"]["mito_prefix"],
            pool_sizes=pool_sizes,
            cluster_min_size=config["normalization"]["cluster_min_size"],
            rescale_min_mean=config["normalization"]["rescale_min_mean"],
            min_bio=config["feature_selection"]["min_bio"],
            n_top_genes=config["feature_selection"]["n_top_genes"],
            fdr_threshold=config["feature_selection"]["fdr_threshold"],
            random_state=random_state,
        )

    preprocess_params = {
        "files": config["input"]["files"],
        "batch_key": batch_key,
        "qc": config["qc"],
        "normalization": config["normalization"],
        "feature_selection": config["feature_selection"],
        "random_state": random_state,
    }
    preprocessed = load_or_compute(
        output_path / PREPROCESSED,
        _preprocess,
        overwrite=overwrite,
        params=preprocess_params,
    )

    integrated = load_or_compute(
        output_path / INTEGRATED,
        lambda: integrate_batches(
            preprocessed,
            batch_key=batch_key,
            methods=methods,
            n_comps=config["integration"]["n_comps"],
            mnn_kwargs=config["integration"]["mnn"],
            random_state=random_state,
        ),
        overwrite=overwrite,
        params={"preprocessing": preprocess_params, **config["integration"]},
    )

    clustering = config["clustering"]
    resolutions = list(clustering["resolutions"])
    embeddings = {m: EMBEDDING_KEYS[m] for m in methods}
    for method, embed_key in embeddings.items():
        compute_neighbors_and_umap(
            integrated,
            use_rep=embed_key,
            n_neighbors=clustering["n_neighbors"],
            random_state=random_state,
            key_added_suffix=method,
        )
        run_leiden_clustering(
            integrated,
            resolutions=resolutions,
            neighbors_key=f"neighbors_{method}",
            key_prefix=f"leiden_{method}",
            random_state=random_state,
        )
        if clustering["consensus_k"]:
            labels, _ = consensus_clustering(
                integrated.obsm[embed_key],
                n_clusters=clustering["consensus_k"],
                random_state=random_state,
            )
            integrated.obs[f"consensus_{method}"] = pd.Categorical(labels.astype(str))

    cluster_keys = None
    if resolutions:
        cluster_keys = {m: f"leiden_{m}_{resolutions[0]}" for m in methods}

    metrics_df = compare_integration_methods(
        integrated,
        batch_key=batch_key,
        embeddings=embeddings,
        label_key=config["input"]["label_key"],
        cluster_keys=cluster_keys,
    )
    metrics_df.to_csv(output_path / "metrics" / "integration_metrics.csv")
    logger.info("Integration metrics:\n%s", metrics_df)
    for method, cluster_key in (cluster_keys or {}).items():
        cluster_batch_table(integrated, cluster_key, batch_key).to_csv(
            output_path / "metrics" / f"cluster_batch_{method}.csv"
        )

    if config["output"]["figures"]:
        _write_figures(
            preprocessed, integrated, metrics_df, methods, batch_key, cluster_keys,
            output_path / "figures",
        )

    write_checkpoint(integrated, output_path / INTEGRATED)
    integrated.obs.to_csv(output_path / "cell_metadata.tsv", sep="\t")
    return integrated


def _write_figures(
    preprocessed: AnnData,
    integrated: AnnData,
    metrics_df: pd.DataFrame,
    methods: List[str],
    batch_key: str,
    cluster_keys: Optional[Dict[str, str]],
    figure_dir: Path,
) -> None:
    import matplotlib.pyplot as plt

    figures = []
    if "qc_metrics" in preprocessed.uns:
        figures.append(
            plot_qc_metrics(
                preprocessed.uns["qc_metrics"],
                group_key=batch_key,
                save_path=figure_dir / "qc_metrics.png",
            )
        )
    hvgs = list(preprocessed.uns.get("hvgs", []))
    for name, table in preprocessed.uns.get("variance_per_batch", {}).items():
        figures.append(
            plot_mean_variance(
                table,
                hvgs=hvgs,
                title=name,
                save_path=figure_dir / f"mean_variance_{name}.png",
            )
        )

    figures.append(
        plot_method_comparison(
            integrated,
            {m: f"X_umap_{m}" for m in methods},
            color_by=batch_key,
            save_path=figure_dir / "umap_by_batch.png",
        )
    )
    for method in methods:
        color_keys = [batch_key]
        if cluster_keys and method in cluster_keys:
            color_keys.append(cluster_keys[method])
        figures.append(
            plot_embedding_grid(
                integrated,
                color_keys,
                basis=f"X_umap_{method}",
                ncols=len(color_keys),
                title_prefix=f"{method}: ",
                save_path=figure_dir / f"umap_{method}.png",
            )
        )
    if cluster_keys:
        for method, cluster_key in cluster_keys.items():
            figures.append(
                plot_batch_distribution(
                    integrated,
                    batch_key=batch_key,
                    cluster_key=cluster_key,
                    save_path=figure_dir / f"batch_distribution_{method}.png",
                )
            )
    if not metrics_df.empty:
        figures.append(
            plot_metrics_comparison(
                metrics_df, save_path=figure_dir / "integration_metrics.png"
            )
        )

    for fig in figures:
        plt.close(fig)
