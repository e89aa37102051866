"""
Pipeline configuration.

A YAML file is read and merged onto ``DEFAULT_CONFIG``, so a config only
needs to list the values it changes. Example::

    input:
      batch_key: batch
      files:
        - {name: pbmc3k, path: data/pbmc3k.h5ad}
        - {name: pbmc4k, path: data/pbmc4k.h5ad}
    integration:
      methods: [uncorrected, linear, mnn]
      n_comps: 20
    output:
      dir: results/pbmc
"""

import copy
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from .integration import INTEGRATION_METHODS

DEFAULT_CONFIG: Dict[str, Any] = {
    "input": {
        "files": [],
        "batch_key": "batch",
        "label_key": None,
    },
    "qc": {
        "nmads": 3.0,
        "mito_prefix": None,
    },
    "normalization": {
        "pool_sizes": None,
        "cluster_min_size": 100,
        "rescale_min_mean": 1.0,
    },
    "feature_selection": {
        "min_bio": 0.0,
        "n_top_genes": None,
        "fdr_threshold": None,
    },
    "integration": {
        "methods": ["uncorrected", "linear", "mnn"],
        "n_comps": 20,
        "mnn": {
            "k": 20,
            "ndist": 3.0,
            "cos_norm": True,
            "merge_order": None,
            "n_jobs": None,
            "algorithm": "auto",
        },
    },
    "clustering": {
        "n_neighbors": 30,
        "resolutions": [0.5, 1.0],
        "consensus_k": None,
    },
    "output": {
        "dir": "./results",
        "overwrite": False,
        "figures": True,
    },
    "random_state": 0,
}


def merge_config(base: Dict[str, Any], updates: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively merge ``updates`` onto a copy of ``base``."""
    merged = copy.deepcopy(base)
    for key, value in (updates or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = merge_config(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def load_config(
    config_path: Optional[str] = None,
    overrides: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """
    Load configuration from YAML file.

    Parameters
    ----------
    config_path : str, optional
        YAML file. If None, only defaults and overrides are used.
    overrides : dict, optional
        Values taking precedence over the file (e.g. from the command line).

    Returns
    -------
    dict
        Validated configuration.
    """
    config = copy.deepcopy(DEFAULT_CONFIG)
    if config_path is not None:
        with open(config_path) as f:
            config = merge_config(config, yaml.safe_load(f) or {})
    if overrides:
        config = merge_config(config, overrides)
    validate_config(config)
    return config


def validate_config(config: Dict[str, Any]) -> None:
    """Raise ValueError if the configuration cannot be run."""
    files = config["input"]["files"]
    if len(files) < 2:
        raise ValueError("At least two input files are required")
    for entry in files:
        if "path" not in entry or "name" not in entry:
            raise ValueError(f"Input entries need 'path' and 'name': {entry}")
        if not Path(entry["path"]).exists():
            raise ValueError(f"Input file not found: {entry['path']}")
    names = [entry["name"] for entry in files]
    if len(set(names)) != len(names):
        raise ValueError(f"Dataset names must be unique: {names}")

    methods = config["integration"]["methods"]
    unknown = [m for m in methods if m not in INTEGRATION_METHODS]
    if unknown:
        raise ValueError(
            f"Unknown integration methods {unknown}; "
            f"choose from {sorted(INTEGRATION_METHODS)}"
        )
    if int(config["integration"]["n_comps"]) < 1:
        raise ValueError("integration.n_comps must be positive")
    if float(config["qc"]["nmads"]) <= 0:
        raise ValueError("qc.nmads must be positive")
