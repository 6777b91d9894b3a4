from __future__ import annotations

import logging
import re
from pathlib import Path

import anndata as ad
import numpy as np
import pandas as pd
import scipy.sparse as sp

from .contrasts import ContrastRun

LOGGER = logging.getLogger(__name__)

DEFAULT_RESULT_SUFFIX = "_STIM_vs_CTRL.csv"


# =====================================================================
# Inputs
# =====================================================================
def load_dataset(path: Path) -> ad.AnnData:
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Dataset not found: {path}")

    if path.suffix == ".zarr" or path.is_dir():
        adata = ad.read_zarr(str(path))
    elif path.suffix == ".h5ad":
        adata = ad.read_h5ad(str(path))
    else:
        raise ValueError(f"Unsupported dataset format {path.suffix!r} (expected .h5ad or .zarr)")

    LOGGER.info("Loaded %s: %d cells x %d genes", path, adata.n_obs, adata.n_vars)
    return adata


def load_counts_csv(counts_csv: Path, obs_csv: Path) -> ad.AnnData:
    """
    Build an AnnData from a genes x cells counts CSV (first column = gene id)
    and a per-cell metadata CSV (first column = cell id).
    """
    counts = pd.read_csv(counts_csv, index_col=0)
    obs = pd.read_csv(obs_csv, index_col=0, dtype=str)

    counts.index = counts.index.astype(str)
    counts.columns = counts.columns.astype(str)
    obs.index = obs.index.astype(str)

    missing = counts.columns.difference(obs.index)
    if len(missing) > 0:
        raise KeyError(
            f"{len(missing)} cells in {counts_csv} have no row in {obs_csv} "
            f"(e.g. {list(missing[:5])})"
        )

    obs = obs.loc[counts.columns]
    X = sp.csr_matrix(counts.to_numpy().T)
    adata = ad.AnnData(
        X=X,
        obs=obs,
        var=pd.DataFrame(index=pd.Index(counts.index, name="gene")),
    )
    LOGGER.info("Loaded %s + %s: %d cells x %d genes", counts_csv, obs_csv, adata.n_obs, adata.n_vars)
    return adata


# =====================================================================
# Outputs
# =====================================================================
def write_counts(counts_df: pd.DataFrame, out_path: Path) -> None:
    out_path = Path(out_path)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    counts_df.astype(np.int64).to_csv(out_path, index=True, index_label="gene")
    LOGGER.info("Wrote pseudobulk counts (%d genes x %d pseudo-samples) → %s", *counts_df.shape, out_path)


def write_metadata(meta_df: pd.DataFrame, out_path: Path) -> None:
    out_path = Path(out_path)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    meta_df.to_csv(out_path, index=True, index_label="sample")
    LOGGER.info("Wrote pseudobulk metadata → %s", out_path)


def contrast_filename(cell_type: str, suffix: str = DEFAULT_RESULT_SUFFIX) -> str:
    """``CD14 Mono`` -> ``CD14_Mono_STIM_vs_CTRL.csv``"""
    token = re.sub(r"[\s/\\:]+", "_", str(cell_type).strip())
    if not token:
        raise ValueError(f"Cannot build a file name from cell type {cell_type!r}")
    return f"{token}{suffix}"


class CsvContrastWriter:
    """Write one ranked contrast table per cell type into ``out_dir``."""

    def __init__(self, out_dir: Path, suffix: str = DEFAULT_RESULT_SUFFIX):
        self.out_dir = Path(out_dir)
        self.suffix = suffix
        self.written: dict[str, Path] = {}

    def __call__(self, cell_type: str, table: pd.DataFrame) -> Path:
        out_path = self.out_dir / contrast_filename(cell_type, self.suffix)
        prev = next((ct for ct, p in self.written.items() if p == out_path and ct != cell_type), None)
        if prev is not None:
            raise ValueError(
                f"cell types {prev!r} and {cell_type!r} map to the same file {out_path.name!r}"
            )

        self.out_dir.mkdir(parents=True, exist_ok=True)
        table.to_csv(out_path, index=False)
        self.written[cell_type] = out_path
        LOGGER.info("Wrote %s contrast table → %s", cell_type, out_path)
        return out_path


def write_run_summary(run: ContrastRun, out_path: Path) -> None:
    out_path = Path(out_path)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    run.summary().to_csv(out_path, sep="\t", index=False)
    LOGGER.info("Wrote contrast summary → %s", out_path)


def write_settings(out_dir: Path, name: str, lines: list[str]) -> None:
    out_dir.mkdir(parents=True, exist_ok=True)
    out_path = out_dir / name
    with out_path.open("w", encoding="utf-8") as f:
        f.write("\n".join(lines).rstrip() + "\n")
