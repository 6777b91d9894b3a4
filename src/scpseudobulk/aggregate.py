# src/scpseudobulk/aggregate.py
from __future__ import annotations

import logging
from typing import Optional, Tuple

import anndata as ad
import numpy as np
import pandas as pd
import scipy.sparse as sp

from .errors import DataFormatError

LOGGER = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Counts access helpers
# -----------------------------------------------------------------------------
def _get_counts_matrix(
    adata: ad.AnnData,
    *,
    counts_layer: Optional[str],
) -> sp.csr_matrix:
    """
    Return counts matrix as CSR (cells x genes).
    Never densifies.
    """
    if counts_layer:
        if counts_layer not in adata.layers:
            raise KeyError(
                f"counts_layer={counts_layer!r} not found in adata.layers. "
                f"Available: {list(adata.layers.keys())}"
            )
        X = adata.layers[counts_layer]
    else:
        X = adata.X

    if X is None:
        raise RuntimeError("Counts matrix is None (no .X and no counts layer).")

    if sp.issparse(X):
        return sp.csr_matrix(X)
    return sp.csr_matrix(np.asarray(X))


def _check_counts(X: sp.csr_matrix, cell_names: pd.Index) -> None:
    """Counts must be finite, non-negative and integral."""
    data = X.data
    if data.size == 0:
        return

    bad = ~np.isfinite(data) | (data < 0) | (data != np.round(data))
    if not bad.any():
        return

    # Map the first offending stored value back to its cell (CSR row).
    first = int(np.flatnonzero(bad)[0])
    row = int(np.searchsorted(X.indptr, first, side="right") - 1)
    cell = str(cell_names[row])
    raise DataFormatError(
        f"cell {cell!r} has a count value {data[first]!r}; "
        "pseudobulk needs non-negative integer counts",
        label=cell,
    )


def _grouping_values(obs: pd.DataFrame, key: str) -> np.ndarray:
    if key not in obs:
        raise KeyError(f"{key!r} not in adata.obs")

    col = obs[key]
    missing = col.isna().to_numpy()
    if missing.any():
        cell = str(obs.index[int(np.flatnonzero(missing)[0])])
        raise DataFormatError(
            f"cell {cell!r} has no value for grouping key {key!r}",
            label=cell,
        )
    return col.astype(str).to_numpy()


def sample_identifiers(
    obs: pd.DataFrame,
    *,
    sample_key: str,
    condition_key: Optional[str] = None,
    sep: str = "_",
) -> np.ndarray:
    """
    Per-cell sample identifier. With a condition key the condition is
    prefixed, so sample 101 under CTRL becomes ``CTRL_101``.
    """
    sample = _grouping_values(obs, sample_key)
    if condition_key is None:
        return sample
    cond = _grouping_values(obs, condition_key)
    return np.array([f"{c}{sep}{s}" for c, s in zip(cond, sample)], dtype=object)


# -----------------------------------------------------------------------------
# Pseudobulk aggregation (sparse indicator matrix)
# -----------------------------------------------------------------------------
def pseudobulk_counts(
    adata: ad.AnnData,
    *,
    cell_type_key: str,
    sample_key: str,
    condition_key: Optional[str] = None,
    counts_layer: Optional[str] = None,
    min_cells: int = 1,
    sep: str = "_",
) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """
    Sum raw counts per (cell type, sample) pair.

    Returns:
      counts_df: DataFrame (n_genes x n_pseudo_samples), int64 counts.
                 Columns are ``<celltype><sep><sample identifier>``.
      libs_df:   DataFrame indexed like counts_df.columns with
                 cell_type, sample, n_cells.

    Aggregation is PB = G.T @ X with G the (cells x libs) indicator matrix,
    so only observed (cell type, sample) pairs get a column. Columns are
    sorted by cell type, then sample identifier.
    """
    X = _get_counts_matrix(adata, counts_layer=counts_layer)
    obs = adata.obs

    ct = _grouping_values(obs, cell_type_key)
    sid = sample_identifiers(obs, sample_key=sample_key, condition_key=condition_key, sep=sep)

    _check_counts(X, adata.obs_names)

    genes = pd.Index(adata.var_names.astype(str), name="gene")

    if obs.shape[0] == 0:
        counts_df = pd.DataFrame(index=genes, columns=pd.Index([], name="pb_id"), dtype=np.int64)
        libs_df = pd.DataFrame(
            {"cell_type": [], "sample": [], "n_cells": []},
            index=pd.Index([], name="pb_id"),
        )
        return counts_df, libs_df

    # Factorize the (cell type, sample) pair; the tuple index keeps the two
    # parts separate even if either contains the label separator.
    combo = pd.MultiIndex.from_arrays([ct, sid])
    lib_codes, lib_uniques = combo.factorize(sort=True)
    n_libs = int(len(lib_uniques))

    rows = np.arange(obs.shape[0], dtype=np.int64)
    cols = lib_codes.astype(np.int64, copy=False)
    data = np.ones(rows.shape[0], dtype=np.int64)
    G = sp.csr_matrix((data, (rows, cols)), shape=(obs.shape[0], n_libs))

    # libs x genes
    PB = (G.T @ X).toarray()
    n_cells_lib = np.asarray(G.sum(axis=0)).ravel().astype(np.int64)

    lib_ct = [str(a) for a, _ in lib_uniques]
    lib_sid = [str(b) for _, b in lib_uniques]
    pb_id = pd.Index([f"{a}{sep}{b}" for a, b in zip(lib_ct, lib_sid)], name="pb_id")

    if pb_id.has_duplicates:
        dup = pb_id[pb_id.duplicated()][0]
        raise DataFormatError(
            f"pseudo-sample label {dup!r} is produced by more than one "
            f"({cell_type_key}, {sample_key}) pair",
            label=str(dup),
        )

    libs_df = pd.DataFrame(
        {"cell_type": lib_ct, "sample": lib_sid, "n_cells": n_cells_lib},
        index=pb_id,
    )

    keep = libs_df["n_cells"].to_numpy() >= int(min_cells)
    if not keep.all():
        LOGGER.info(
            "Dropping %d pseudo-samples with < %d cells: %s",
            int((~keep).sum()),
            int(min_cells),
            ", ".join(pb_id[~keep]),
        )
    libs_df = libs_df.loc[keep].copy()
    PB = PB[keep, :]

    counts_df = pd.DataFrame(
        np.rint(PB).astype(np.int64).T,
        index=genes,
        columns=libs_df.index,
    )

    LOGGER.info(
        "Aggregated %d cells into %d pseudo-samples across %d cell types",
        int(obs.shape[0]),
        int(counts_df.shape[1]),
        int(libs_df["cell_type"].nunique()),
    )
    return counts_df, libs_df
