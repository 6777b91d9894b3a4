# tests/conftest.py

import numpy as np
import pandas as pd
import pytest
import scipy.sparse as sp
import anndata as ad


# -----------------------------------------------------------------------------
# Synthetic AnnData: cell types x individuals x CTRL/STIM
# -----------------------------------------------------------------------------
def make_stim_adata(
    cell_types=("Mono", "DC"),
    samples=("101", "1015"),
    conditions=("CTRL", "STIM"),
    cells_per_combo=12,
    n_genes=25,
    seed=0,
    sparse=True,
):
    """
    Poisson counts with a cell-type baseline and a STIM effect on gene0/gene1.
    obs columns: cell_type, sample, condition.
    """
    rng = np.random.default_rng(seed)

    blocks = []
    obs_rows = []
    for ct_i, ct in enumerate(cell_types):
        base = rng.uniform(2.0, 6.0, size=n_genes) * (1.0 + 0.5 * ct_i)
        for s in samples:
            for cond in conditions:
                lam = base.copy()
                if cond == "STIM":
                    lam[0] *= 4.0
                    lam[1] *= 0.25
                blocks.append(rng.poisson(lam, size=(cells_per_combo, n_genes)))
                for _ in range(cells_per_combo):
                    obs_rows.append({"cell_type": ct, "sample": s, "condition": cond})

    X = np.vstack(blocks).astype(np.int64)
    obs = pd.DataFrame(obs_rows)
    obs.index = [f"cell{i}" for i in range(obs.shape[0])]
    var = pd.DataFrame(index=[f"gene{i}" for i in range(n_genes)])

    return ad.AnnData(X=sp.csr_matrix(X) if sparse else X, obs=obs, var=var)


@pytest.fixture
def stim_adata():
    return make_stim_adata()
