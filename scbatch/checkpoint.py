"""
Checkpoints of the dataset between long-running stages.

Snapshots are plain .h5ad files, so any stage can be resumed (or inspected)
without recomputing the stages before it.
"""

import logging
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Union

import anndata as ad
import yaml
from anndata import AnnData

logger = logging.getLogger(__name__)

PREPROCESSED = "preprocessed.h5ad"
INTEGRATED = "integrated.h5ad"

# uns key holding the parameters a checkpoint was computed with.
PARAMS_KEY = "checkpoint_params"


def write_checkpoint(adata: AnnData, path: Union[str, Path]) -> Path:
    """Write ``adata`` to ``path``, creating parent directories."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    adata.write_h5ad(path)
    logger.info("Wrote checkpoint %s (%d cells x %d genes)", path, adata.n_obs, adata.n_vars)
    return path


def read_checkpoint(path: Union[str, Path], stage: str = "the preceding stage") -> AnnData:
    """
    Read a checkpoint written by :func:`write_checkpoint`.

    Parameters
    ----------
    path : str or Path
        Checkpoint file.
    stage : str
        Name of the stage producing the checkpoint, used in the error message.

    Returns
    -------
    AnnData
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Checkpoint {path} not found; re-run {stage}")
    logger.info("Reading checkpoint %s", path)
    return ad.read_h5ad(path)


def _encode_params(params: Dict[str, Any]) -> str:
    return yaml.safe_dump(params, sort_keys=True)


def load_or_compute(
    path: Union[str, Path],
    compute: Callable[[], AnnData],
    overwrite: bool = False,
    params: Optional[Dict[str, Any]] = None,
) -> AnnData:
    """
    Return the checkpoint at ``path`` if present, otherwise compute and store it.

    Parameters
    ----------
    path : str or Path
        Checkpoint file.
    compute : callable
        Function returning the AnnData to store.
    overwrite : bool
        Recompute even if the checkpoint exists.
    params : dict, optional
        Parameters the stage depends on. They are stored in
        ``uns["checkpoint_params"]``; an existing checkpoint written with
        other parameters (or none) is recomputed with a warning.

    Returns
    -------
    AnnData
    """
    path = Path(path)
    if path.exists() and not overwrite:
        adata = read_checkpoint(path)
        if params is None or adata.uns.get(PARAMS_KEY) == _encode_params(params):
            return adata
        logger.warning(
            "Checkpoint %s was written with different parameters; recomputing", path
        )

    adata = compute()
    if params is not None:
        adata.uns[PARAMS_KEY] = _encode_params(params)
    write_checkpoint(adata, path)
    return adata
