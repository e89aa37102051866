"""
Command-line entry point for multi-batch integration.

Usage:
    scbatch-integrate --config config.yaml
    scbatch-integrate --files pbmc3k.h5ad pbmc4k.h5ad --names pbmc3k pbmc4k --output results/
"""

import argparse
import logging
from typing import List, Optional

from .config import load_config
from .pipeline import run_integration_pipeline


def _overrides_from_args(args: argparse.Namespace) -> dict:
    overrides = {}

    def _set(section, key, value):
        if value is not None:
            overrides.setdefault(section, {})[key] = value

    if args.files:
        names = args.names or [f"batch{i + 1}" for i in range(len(args.files))]
        if len(names) != len(args.files):
            raise ValueError("--names must have one entry per --files entry")
        _set("input", "files", [{"name": n, "path": p} for n, p in zip(names, args.files)])
    _set("input", "batch_key", args.batch_key)
    _set("input", "label_key", args.label_key)
    _set("qc", "nmads", args.nmads)
    _set("qc", "mito_prefix", args.mito_prefix)
    _set("feature_selection", "n_top_genes", args.n_top_genes)
    _set("integration", "methods", args.methods)
    _set("integration", "n_comps", args.n_comps)
    if args.k is not None:
        overrides.setdefault("integration", {})["mnn"] = {"k": args.k}
    _set("clustering", "n_neighbors", args.n_neighbors)
    _set("clustering", "resolutions", args.resolutions)
    _set("output", "dir", args.output)
    if args.overwrite:
        _set("output", "overwrite", True)
    if args.no_figures:
        _set("output", "figures", False)
    if args.seed is not None:
        overrides["random_state"] = args.seed
    return overrides


def main(argv: Optional[List[str]] = None):
    parser = argparse.ArgumentParser(
        description="Multi-batch scRNA-seq preprocessing and integration"
    )
    parser.add_argument("--config", type=str, help="Path to YAML config file")
    parser.add_argument("--files", nargs="+", help="Input .h5ad or 10x .h5 files")
    parser.add_argument("--names", nargs="+", help="Dataset names (one per file)")
    parser.add_argument("--batch-key", type=str, help="Column name for batch labels")
    parser.add_argument("--label-key", type=str, help="Cell type column for metrics")
    parser.add_argument("--output", type=str, help="Output directory")
    parser.add_argument(
        "--methods",
        nargs="+",
        choices=["uncorrected", "linear", "mnn"],
    )
    parser.add_argument("--nmads", type=float, help="QC outlier threshold in MADs")
    parser.add_argument("--mito-prefix", type=str, help="Mitochondrial gene prefix")
    parser.add_argument("--n-top-genes", type=int, help="Maximum number of HVGs")
    parser.add_argument("--n-comps", type=int, help="Dimensions of each embedding")
    parser.add_argument("--k", type=int, help="Nearest neighbours for MNN")
    parser.add_argument("--n-neighbors", type=int, help="Number of neighbors")
    parser.add_argument("--resolutions", nargs="+", type=float)
    parser.add_argument("--seed", type=int)
    parser.add_argument("--overwrite", action="store_true", help="Ignore checkpoints")
    parser.add_argument("--no-figures", action="store_true")
    parser.add_argument("-v", "--verbose", action="store_true")

    args = parser.parse_args(argv)

    if not args.config and not args.files:
        parser.error("Either --config or --files required")

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(name)s %(levelname)s: %(message)s",
    )

    try:
        config = load_config(args.config, overrides=_overrides_from_args(args))
    except ValueError as e:
        parser.error(str(e))

    print("=" * 60)
    print("Multi-batch integration")
    print("=" * 60)
    for entry in config["input"]["files"]:
        print(f"  {entry['name']}: {entry['path']}")
    print(f"Methods: {', '.join(config['integration']['methods'])}")
    print(f"Output: {config['output']['dir']}")

    adata = run_integration_pipeline(config)

    print("\n" + "=" * 60)
    print(f"Integrated {adata.n_obs} cells x {adata.n_vars} HVGs")
    print(f"Results in {config['output']['dir']}")
    print("=" * 60)
    print("\nDone!")


if __name__ == "__main__":
    main()
