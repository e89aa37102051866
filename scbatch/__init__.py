"""
scRNA-seq Multi-batch Integration

Reusable functions for quality control, normalization, feature selection,
batch correction, evaluation and visualization of multi-batch single-cell
RNA-seq data.
"""

from .preprocessing import (
    intersect_genes,
    store_raw_counts,
    concatenate_batches,
    preprocess_batches,
    subset_to_hvgs,
)

from .quality import (
    add_qc_metrics,
    is_outlier,
    flag_low_quality_cells,
    filter_low_quality_cells,
)

from .normalization import (
    library_size_factors,
    quick_cluster,
    compute_sum_factors,
    normalize_counts,
    log_normalize,
    multi_batch_norm,
)

from .feature_selection import (
    fit_trend_var,
    model_gene_var,
    combine_var,
    get_top_hvgs,
    select_shared_hvgs,
)

from .integration import (
    run_pca,
    run_uncorrected_pca,
    remove_batch_effect,
    run_linear_correction,
    run_fast_mnn,
    integrate,
    compute_neighbors_and_umap,
    run_tsne,
    run_leiden_clustering,
)

from .mnn import (
    MNNResult,
    cosine_normalize,
    multi_batch_pca,
    fast_mnn,
    find_mutual_nn,
)

from .clustering import (
    consensus_matrix,
    consensus_clustering,
)

from .evaluation import (
    compute_batch_mixing_silhouette,
    compute_batch_entropy,
    compute_cluster_purity,
    compute_ari,
    compute_within_batch_ari,
    cluster_batch_table,
    summarize_integration_metrics,
    compare_integration_methods,
)

from .visualization import (
    plot_embedding_grid,
    plot_method_comparison,
    plot_batch_distribution,
    plot_metrics_comparison,
    plot_qc_metrics,
    plot_mean_variance,
)

from .checkpoint import (
    write_checkpoint,
    read_checkpoint,
    load_or_compute,
)

from .pipeline import (
    load_datasets,
    integrate_batches,
    run_integration_pipeline,
)

__version__ = "0.1.0"

__all__ = [
    # Preprocessing
    "intersect_genes",
    "store_raw_counts",
    "concatenate_batches",
    "preprocess_batches",
    "subset_to_hvgs",
    # Quality control
    "add_qc_metrics",
    "is_outlier",
    "flag_low_quality_cells",
    "filter_low_quality_cells",
    # Normalization
    "library_size_factors",
    "quick_cluster",
    "compute_sum_factors",
    "normalize_counts",
    "log_normalize",
    "multi_batch_norm",
    # Feature selection
    "fit_trend_var",
    "model_gene_var",
    "combine_var",
    "get_top_hvgs",
    "select_shared_hvgs",
    # Integration
    "run_pca",
    "run_uncorrected_pca",
    "remove_batch_effect",
    "run_linear_correction",
    "run_fast_mnn",
    "integrate",
    "compute_neighbors_and_umap",
    "run_tsne",
    "run_leiden_clustering",
    "MNNResult",
    "cosine_normalize",
    "multi_batch_pca",
    "fast_mnn",
    "find_mutual_nn",
    # Clustering
    "consensus_matrix",
    "consensus_clustering",
    # Evaluation
    "compute_batch_mixing_silhouette",
    "compute_batch_entropy",
    "compute_cluster_purity",
    "compute_ari",
    "compute_within_batch_ari",
    "cluster_batch_table",
    "summarize_integration_metrics",
    "compare_integration_methods",
    # Visualization
    "plot_embedding_grid",
    "plot_method_comparison",
    "plot_batch_distribution",
    "plot_metrics_comparison",
    "plot_qc_metrics",
    "plot_mean_variance",
    # Checkpoints
    "write_checkpoint",
    "read_checkpoint",
    "load_or_compute",
    # Pipeline
    "load_datasets",
    "integrate_batches",
    "run_integration_pipeline",
]
