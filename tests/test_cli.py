"""Tests for the command-line entry point."""

import argparse

import pytest

from scbatch.cli import _overrides_from_args, main


def _args(**kwargs):
    defaults = dict(
        files=None,
        names=None,
        batch_key=None,
        label_key=None,
        nmads=None,
        mito_prefix=None,
        n_top_genes=None,
        methods=None,
        n_comps=None,
        k=None,
        n_neighbors=None,
        resolutions=None,
        output=None,
        overwrite=False,
        no_figures=False,
        seed=None,
    )
    defaults.update(kwargs)
    return argparse.Namespace(**defaults)


def test_overrides_only_contain_given_flags():
    assert _overrides_from_args(_args()) == {}
    overrides = _overrides_from_args(_args(n_comps=10, k=5, no_figures=True))
    assert overrides == {
        "integration": {"n_comps": 10, "mnn": {"k": 5}},
        "output": {"figures": False},
    }


def test_files_get_default_names():
    overrides = _overrides_from_args(_args(files=["x.h5ad", "y.h5ad"]))
    assert overrides["input"]["files"] == [
        {"name": "batch1", "path": "x.h5ad"},
        {"name": "batch2", "path": "y.h5ad"},
    ]


def test_names_must_match_files():
    with pytest.raises(ValueError, match="--names"):
        _overrides_from_args(_args(files=["x.h5ad", "y.h5ad"], names=["x"]))


def test_requires_config_or_files():
    with pytest.raises(SystemExit):
        main([])


def test_invalid_inputs_exit(tmp_path):
    with pytest.raises(SystemExit):
        main(["--files", str(tmp_path / "missing.h5ad"), str(tmp_path / "other.h5ad")])


def test_main_runs_pipeline(tmp_path, batches, capsys):
    pytest.importorskip("igraph")
    paths = []
    for name, adata in batches.items():
        path = tmp_path / f"{name}.h5ad"
        adata.write_h5ad(path)
        paths.append(str(path))

    output = tmp_path / "results"
    main(
        [
            "--files", *paths,
            "--names", "batch1", "batch2",
            "--output", str(output),
            "--methods", "uncorrected", "mnn",
            "--n-comps", "5",
            "--k", "10",
            "--n-neighbors", "15",
            "--resolutions", "0.5",
            "--no-figures",
        ]
    )
    assert (output / "integrated.h5ad").exists()
    assert "Done!" in capsys.readouterr().out
