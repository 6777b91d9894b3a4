# tests/test_contrasts.py

import numpy as np
import pandas as pd
import pytest

from conftest import make_stim_adata
from scpseudobulk.aggregate import pseudobulk_counts
from scpseudobulk.contrasts import (
    ContrastRun,
    PyDESeq2Engine,
    SkippedContrast,
    check_alignment,
    contrast_pair,
    rank_results,
    run_contrasts,
)
from scpseudobulk.errors import DataAlignmentError
from scpseudobulk.labels import build_metadata


# -----------------------------------------------------------------------------
# Deterministic stand-in for the DE engine
# -----------------------------------------------------------------------------
class FakeEngine:
    """
    log2 ratio of group means; p-values from the ratio magnitude.
    Genes listed in nan_genes get padj = NaN; cell types in fail_types raise.
    """

    def __init__(self, nan_genes=(), fail_types=()):
        self.nan_genes = set(nan_genes)
        self.fail_types = set(fail_types)
        self.n_fits = 0

    def fit(self, counts, metadata, factor):
        self.n_fits += 1
        return {"counts": counts, "groups": metadata[factor].astype(str).to_numpy()}

    def contrast(self, model, factor, test, reference):
        cell_type = test.rsplit("_", 1)[0]
        if cell_type in self.fail_types:
            raise RuntimeError(f"model did not converge for {cell_type}")

        counts = model["counts"]
        groups = model["groups"]
        a = counts.loc[:, groups == test].mean(axis=1)
        b = counts.loc[:, groups == reference].mean(axis=1)
        lfc = np.log2((a + 1.0) / (b + 1.0))
        pvalue = np.exp(-np.abs(lfc.to_numpy()) * 3.0)
        padj = np.minimum(pvalue * len(pvalue), 1.0)

        res = pd.DataFrame(
            {
                "baseMean": (a + b) / 2.0,
                "log2FoldChange": lfc,
                "lfcSE": 0.1,
                "stat": lfc / 0.1,
                "pvalue": pvalue,
                "padj": padj,
            },
            index=counts.index,
        )
        res.loc[res.index.isin(self.nan_genes), "padj"] = np.nan
        return res


def _pseudobulk(adata):
    counts, _ = pseudobulk_counts(
        adata, cell_type_key="cell_type", sample_key="sample", condition_key="condition"
    )
    return counts, build_metadata(counts.columns)


@pytest.fixture
def pb(stim_adata):
    return _pseudobulk(stim_adata)


# -----------------------------------------------------------------------------
# Alignment
# -----------------------------------------------------------------------------
def test_check_alignment_accepts_matching(pb):
    counts, meta = pb
    check_alignment(counts, meta)


def test_check_alignment_detects_reordering(pb):
    counts, meta = pb
    meta = meta.iloc[[1, 0] + list(range(2, meta.shape[0]))]
    with pytest.raises(DataAlignmentError) as exc:
        check_alignment(counts, meta)
    assert exc.value.position == 0


def test_check_alignment_detects_length_mismatch(pb):
    counts, meta = pb
    with pytest.raises(DataAlignmentError) as exc:
        check_alignment(counts, meta.iloc[:-1])
    assert exc.value.position == meta.shape[0] - 1


def test_run_contrasts_refuses_misaligned_input(pb):
    counts, meta = pb
    engine = FakeEngine()
    with pytest.raises(DataAlignmentError):
        run_contrasts(counts, meta.iloc[::-1], engine=engine)
    assert engine.n_fits == 0


# -----------------------------------------------------------------------------
# Ranking
# -----------------------------------------------------------------------------
def test_rank_results_drops_nan_and_sorts():
    res = pd.DataFrame(
        {
            "log2FoldChange": [1.0, -2.0, 0.5, 0.1],
            "pvalue": [0.01, 0.001, 0.2, 0.01],
            "padj": [0.02, 0.004, np.nan, 0.02],
        },
        index=pd.Index(["b", "a", "c", "d"], name="gene"),
    )
    out = rank_results(res)
    assert list(out["gene"]) == ["a", "b", "d"]
    assert list(out["rank"]) == [1, 2, 3]
    assert out["padj"].notna().all()
    assert list(out.columns) == ["gene", "log2FoldChange", "pvalue", "padj", "rank"]


def test_contrast_pair():
    assert contrast_pair("Mono", "STIM", "CTRL") == ("Mono_STIM", "Mono_CTRL")


# -----------------------------------------------------------------------------
# Runner
# -----------------------------------------------------------------------------
def test_scenario_two_ranked_tables(pb):
    counts, meta = pb
    engine = FakeEngine()
    written = {}

    run = run_contrasts(counts, meta, engine=engine, writer=lambda ct, df: written.setdefault(ct, df))

    assert engine.n_fits == 1
    assert run.processed == ["DC", "Mono"]
    assert run.skipped == {}
    assert set(written) == {"DC", "Mono"}

    for ct, table in run.results.items():
        assert set(table["gene"]) == set(counts.index)
        assert table["padj"].notna().all()
        assert table["padj"].is_monotonic_increasing
        assert list(table["rank"]) == list(range(1, table.shape[0] + 1))


def test_effect_direction_is_test_over_reference(pb):
    counts, meta = pb
    run = run_contrasts(counts, meta, engine=FakeEngine())
    mono = run.results["Mono"].set_index("gene")
    assert mono.loc["gene0", "log2FoldChange"] > 0
    assert mono.loc["gene1", "log2FoldChange"] < 0


def test_undefined_padj_rows_dropped(pb):
    counts, meta = pb
    run = run_contrasts(counts, meta, engine=FakeEngine(nan_genes={"gene3", "gene4"}))
    for table in run.results.values():
        assert "gene3" not in set(table["gene"])
        assert table.shape[0] == counts.shape[0] - 2


def test_cell_type_with_one_condition_is_skipped():
    adata = make_stim_adata(cell_types=("Mono", "DC", "Bcell"))
    obs = adata.obs
    adata = adata[~((obs["cell_type"] == "Bcell") & (obs["condition"] == "STIM")).to_numpy()].copy()
    counts, meta = _pseudobulk(adata)

    run = run_contrasts(counts, meta, engine=FakeEngine())

    assert run.processed == ["DC", "Mono"]
    assert set(run.skipped) == {"Bcell"}
    sk = run.skipped["Bcell"]
    assert sk.error == "MissingContrastGroupError"
    assert "Bcell_STIM" in sk.reason


def test_engine_failure_is_isolated(pb):
    counts, meta = pb
    written = []
    run = run_contrasts(
        counts, meta,
        engine=FakeEngine(fail_types={"DC"}),
        writer=lambda ct, df: written.append(ct),
    )
    assert run.processed == ["Mono"]
    assert run.skipped["DC"].error == "RuntimeError"
    assert written == ["Mono"]


def test_writer_failure_is_isolated(pb):
    counts, meta = pb
    written = []

    def writer(ct, df):
        if ct == "DC":
            raise OSError("disk full for DC")
        written.append(ct)

    run = run_contrasts(counts, meta, engine=FakeEngine(), writer=writer)

    assert run.processed == ["Mono"]
    assert "DC" not in run.results
    assert run.skipped["DC"].error == "OSError"
    assert "disk full" in run.skipped["DC"].reason
    assert written == ["Mono"]


def test_requested_cell_types_only(pb):
    counts, meta = pb
    run = run_contrasts(counts, meta, engine=FakeEngine(), cell_types=["Mono", "NK"])
    assert run.processed == ["Mono"]
    assert run.skipped["NK"].error == "MissingContrastGroupError"


def test_no_resolvable_cell_type_skips_fit():
    adata = make_stim_adata(conditions=("CTRL",))
    counts, meta = _pseudobulk(adata)
    engine = FakeEngine()

    run = run_contrasts(counts, meta, engine=engine)

    assert engine.n_fits == 0
    assert run.results == {}
    assert set(run.skipped) == {"DC", "Mono"}


def test_missing_metadata_column_raises(pb):
    counts, meta = pb
    with pytest.raises(KeyError):
        run_contrasts(counts, meta.drop(columns=["cell_type"]), engine=FakeEngine())


def test_parallel_matches_sequential(pb):
    counts, meta = pb
    seq = run_contrasts(counts, meta, engine=FakeEngine(), n_jobs=1)
    par = run_contrasts(counts, meta, engine=FakeEngine(), n_jobs=2)

    assert par.processed == seq.processed
    for ct in seq.processed:
        pd.testing.assert_frame_equal(par.results[ct], seq.results[ct])


def test_run_summary_reports_processed_and_skipped():
    run = ContrastRun(test="STIM", reference="CTRL")
    run.results["Mono"] = pd.DataFrame({"gene": ["a", "b"], "padj": [0.1, 0.2]})
    run.skipped["DC"] = SkippedContrast("DC", "MissingContrastGroupError", "no DC_STIM")

    summ = run.summary()
    assert list(summ["cell_type"]) == ["DC", "Mono"]
    assert list(summ["status"]) == ["skipped", "ok"]
    assert list(summ["n_genes"]) == [0, 2]


# -----------------------------------------------------------------------------
# PyDESeq2 (real engine)
# -----------------------------------------------------------------------------
def test_pydeseq2_engine_end_to_end():
    pytest.importorskip("pydeseq2")

    adata = make_stim_adata(cells_per_combo=30, n_genes=40, seed=7)
    counts, meta = _pseudobulk(adata)

    run = run_contrasts(counts, meta, engine=PyDESeq2Engine(alpha=0.05, n_cpus=1))

    assert run.processed == ["DC", "Mono"]
    for ct, table in run.results.items():
        assert table.shape[0] > 0
        assert set(table["gene"]) <= set(counts.index)
        assert table["padj"].notna().all()
        assert table["padj"].is_monotonic_increasing
        top = table.set_index("gene")
        if "gene0" in top.index:
            assert top.loc["gene0", "log2FoldChange"] > 0
