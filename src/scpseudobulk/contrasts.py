# src/scpseudobulk/contrasts.py
from __future__ import annotations

import logging
import multiprocessing as mp
from concurrent.futures import ProcessPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence, Tuple

import numpy as np
import pandas as pd

from .errors import DataAlignmentError, MissingContrastGroupError
from .labels import composite_group

LOGGER = logging.getLogger(__name__)

RESULT_COLUMNS = ["gene", "baseMean", "log2FoldChange", "lfcSE", "stat", "pvalue", "padj", "rank"]

ContrastWriter = Callable[[str, pd.DataFrame], Any]


# -----------------------------------------------------------------------------
# Statistical engine (black box: counts + metadata in, per-gene table out)
# -----------------------------------------------------------------------------
class ContrastEngine(Protocol):
    def fit(self, counts: pd.DataFrame, metadata: pd.DataFrame, factor: str) -> Any:
        """Fit once on genes x samples counts; return an opaque model."""

    def contrast(self, model: Any, factor: str, test: str, reference: str) -> pd.DataFrame:
        """
        Per-gene results for ``test`` vs ``reference``, indexed by gene, with
        baseMean, log2FoldChange, lfcSE, stat, pvalue, padj.
        """


@dataclass
class FittedDeseq:
    dds: Any
    level_codes: Dict[str, str]


def _require_pydeseq2():
    try:
        import pydeseq2  # noqa: F401
    except ImportError as e:
        raise ImportError(
            "PyDESeq2 is required for pseudobulk DE in scpseudobulk. "
            "Install it (and its deps) in your environment."
        ) from e


@dataclass
class PyDESeq2Engine:
    """
    Negative binomial GLM via PyDESeq2.

    The design is ``~<factor>`` over composite group labels. Group labels are
    recoded to plain tokens (g0, g1, ...) before the fit so that spaces or
    punctuation in cell type names never reach the formula machinery.
    """
    alpha: float = 0.05
    n_cpus: int = 1
    refit_cooks: bool = True

    def fit(self, counts: pd.DataFrame, metadata: pd.DataFrame, factor: str) -> FittedDeseq:
        _require_pydeseq2()
        from pydeseq2.dds import DeseqDataSet
        from pydeseq2.default_inference import DefaultInference

        levels = sorted(metadata[factor].astype(str).unique())
        level_codes = {lvl: f"g{i}" for i, lvl in enumerate(levels)}

        design_meta = pd.DataFrame(
            {factor: metadata[factor].astype(str).map(level_codes).to_numpy()},
            index=metadata.index.astype(str),
        )
        # PyDESeq2 wants samples x genes
        counts_sg = counts.T.astype(np.int64)
        counts_sg.index = counts_sg.index.astype(str)

        dds = DeseqDataSet(
            counts=counts_sg,
            metadata=design_meta,
            design=f"~{factor}",
            refit_cooks=bool(self.refit_cooks),
            inference=DefaultInference(n_cpus=int(self.n_cpus)),
            quiet=True,
        )
        LOGGER.info(
            "Fitting DESeq2: %d pseudo-samples x %d genes, %d levels of %r",
            counts_sg.shape[0],
            counts_sg.shape[1],
            len(levels),
            factor,
        )
        dds.deseq2()
        return FittedDeseq(dds=dds, level_codes=level_codes)

    def contrast(self, model: FittedDeseq, factor: str, test: str, reference: str) -> pd.DataFrame:
        from pydeseq2.default_inference import DefaultInference
        from pydeseq2.ds import DeseqStats

        stat = DeseqStats(
            model.dds,
            contrast=[factor, model.level_codes[test], model.level_codes[reference]],
            alpha=float(self.alpha),
            inference=DefaultInference(n_cpus=1),
            quiet=True,
        )
        stat.summary()
        return stat.results_df.copy()


# -----------------------------------------------------------------------------
# Run bookkeeping
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class SkippedContrast:
    cell_type: str
    error: str
    reason: str


@dataclass
class ContrastRun:
    """Per-cell-type outcome of one contrast run."""
    test: str
    reference: str
    results: Dict[str, pd.DataFrame] = field(default_factory=dict)
    skipped: Dict[str, SkippedContrast] = field(default_factory=dict)

    @property
    def processed(self) -> List[str]:
        return sorted(self.results)

    def summary(self) -> pd.DataFrame:
        rows = []
        for ct in sorted(set(self.results) | set(self.skipped)):
            if ct in self.results:
                rows.append({"cell_type": ct, "status": "ok", "n_genes": int(self.results[ct].shape[0]),
                             "error": "", "reason": ""})
            else:
                sk = self.skipped[ct]
                rows.append({"cell_type": ct, "status": "skipped", "n_genes": 0,
                             "error": sk.error, "reason": sk.reason})
        return pd.DataFrame(rows, columns=["cell_type", "status", "n_genes", "error", "reason"])


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------
def check_alignment(counts: pd.DataFrame, metadata: pd.DataFrame) -> None:
    """Count columns and metadata rows must be the same labels in the same order."""
    cols = [str(c) for c in counts.columns]
    rows = [str(r) for r in metadata.index]

    for i, (c, r) in enumerate(zip(cols, rows)):
        if c != r:
            raise DataAlignmentError(
                f"count column {i} is {c!r} but metadata row {i} is {r!r}",
                position=i,
            )
    if len(cols) != len(rows):
        i = min(len(cols), len(rows))
        extra = cols[i] if len(cols) > len(rows) else rows[i]
        raise DataAlignmentError(
            f"count matrix has {len(cols)} columns but metadata has {len(rows)} rows "
            f"(first unmatched label {extra!r})",
            position=i,
        )


def rank_results(res: pd.DataFrame) -> pd.DataFrame:
    """
    Drop genes without an adjusted p-value, sort ascending by padj
    (ties broken by gene id) and number the rows from 1.
    """
    out = res.copy()
    if "gene" not in out.columns:
        out.insert(0, "gene", out.index.astype(str))
    out = out.reset_index(drop=True)
    out["padj"] = pd.to_numeric(out["padj"], errors="coerce")
    out = out.loc[out["padj"].notna()]
    out = out.sort_values(["padj", "gene"], kind="mergesort").reset_index(drop=True)
    out["rank"] = np.arange(1, out.shape[0] + 1, dtype=np.int64)

    cols = [c for c in RESULT_COLUMNS if c in out.columns]
    return out[cols]


def contrast_pair(cell_type: str, test: str, reference: str) -> Tuple[str, str]:
    return composite_group(cell_type, test), composite_group(cell_type, reference)


def _require_groups(cell_type: str, pair: Tuple[str, str], groups: Sequence[str]) -> None:
    present = set(groups)
    for g in pair:
        if g not in present:
            raise MissingContrastGroupError(cell_type, g)


def _contrast_worker(payload: dict) -> Tuple[str, Optional[pd.DataFrame], Optional[Tuple[str, str]]]:
    """
    Worker: run one cell type's contrast against the shared fitted model.
    Returns (cell_type, ranked_table, None) or (cell_type, None, (error, reason)).
    """
    ct = payload["cell_type"]
    try:
        res = payload["engine"].contrast(
            payload["model"],
            payload["factor"],
            payload["test_group"],
            payload["reference_group"],
        )
        return ct, rank_results(res), None
    except Exception as e:
        return ct, None, (type(e).__name__, str(e))


# -----------------------------------------------------------------------------
# Public API
# -----------------------------------------------------------------------------
def run_contrasts(
    counts: pd.DataFrame,
    metadata: pd.DataFrame,
    *,
    engine: Optional[ContrastEngine] = None,
    factor: str = "group",
    test: str = "STIM",
    reference: str = "CTRL",
    cell_types: Optional[Sequence[str]] = None,
    n_jobs: int = 1,
    writer: Optional[ContrastWriter] = None,
) -> ContrastRun:
    """
    Fit the GLM once over all pseudo-samples, then extract
    ``<ct>_<test>`` vs ``<ct>_<reference>`` for each cell type.

    counts:   genes x pseudo-samples
    metadata: one row per pseudo-sample (same order), with ``factor`` and
              ``cell_type`` columns (see labels.build_metadata)

    A cell type missing one side of the contrast, or whose contrast fails in
    the engine, is logged and recorded in ``run.skipped``; the remaining cell
    types still run. ``writer(cell_type, table)`` is called as soon as each
    table is ready.
    """
    check_alignment(counts, metadata)
    for col in (factor, "cell_type"):
        if col not in metadata.columns:
            raise KeyError(f"metadata is missing column {col!r}")

    engine = engine or PyDESeq2Engine()
    run = ContrastRun(test=str(test), reference=str(reference))

    all_types = list(pd.unique(metadata["cell_type"].astype(str)))
    if cell_types is None:
        targets = sorted(all_types)
    else:
        targets = [str(c) for c in cell_types]

    groups = metadata[factor].astype(str).tolist()

    # Resolve contrast groups before the (expensive) fit.
    payloads = []
    for ct in targets:
        pair = contrast_pair(ct, str(test), str(reference))
        try:
            _require_groups(ct, pair, groups)
        except MissingContrastGroupError as e:
            LOGGER.warning("Skipping cell type %r: %s", ct, e)
            run.skipped[ct] = SkippedContrast(ct, type(e).__name__, str(e))
            continue
        payloads.append({"cell_type": ct, "test_group": pair[0], "reference_group": pair[1]})

    if not payloads:
        LOGGER.warning("No cell type has both %r and %r pseudo-samples; nothing to test.", test, reference)
        _log_run(run)
        return run

    model = engine.fit(counts, metadata, factor)
    for p in payloads:
        p.update(engine=engine, model=model, factor=factor)

    def _collect(ct: str, table: Optional[pd.DataFrame], err: Optional[Tuple[str, str]]) -> None:
        if err is not None:
            LOGGER.warning("Skipping cell type %r: %s: %s", ct, err[0], err[1])
            run.skipped[ct] = SkippedContrast(ct, err[0], err[1])
            return
        if writer is not None:
            try:
                writer(ct, table)
            except Exception as e:
                LOGGER.warning("Skipping cell type %r: writing results failed: %s: %s", ct, type(e).__name__, e)
                run.skipped[ct] = SkippedContrast(ct, type(e).__name__, str(e))
                return
        run.results[ct] = table
        LOGGER.info(
            "%s: %s vs %s -> %d genes with adjusted p-values",
            ct, test, reference, int(table.shape[0]),
        )

    n_jobs = int(max(1, n_jobs))
    if n_jobs == 1 or len(payloads) == 1:
        for p in payloads:
            _collect(*_contrast_worker(p))
    else:
        ctx = mp.get_context("spawn")
        with ProcessPoolExecutor(max_workers=min(n_jobs, len(payloads)), mp_context=ctx) as ex:
            futs = {ex.submit(_contrast_worker, p): p["cell_type"] for p in payloads}
            for fut in as_completed(futs):
                _collect(*fut.result())

    _log_run(run)
    return run


def _log_run(run: ContrastRun) -> None:
    LOGGER.info(
        "Contrasts finished: %d processed [%s], %d skipped [%s]",
        len(run.results),
        ", ".join(run.processed),
        len(run.skipped),
        ", ".join(sorted(run.skipped)),
    )
