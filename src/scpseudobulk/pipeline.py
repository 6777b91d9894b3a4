# src/scpseudobulk/pipeline.py
from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional, Tuple

import anndata as ad
import pandas as pd

from scpseudobulk import __version__
from . import io_utils
from .aggregate import pseudobulk_counts
from .config import PseudobulkConfig
from .contrasts import ContrastEngine, ContrastRun, PyDESeq2Engine, run_contrasts
from .errors import DataFormatError
from .labels import SampleLabelParser, build_metadata
from .logging_utils import init_logging

LOGGER = logging.getLogger(__name__)


def _load_input(cfg: PseudobulkConfig) -> ad.AnnData:
    if cfg.input_path is not None:
        return io_utils.load_dataset(cfg.input_path)
    return io_utils.load_counts_csv(cfg.counts_csv, cfg.obs_csv)


def build_pseudobulk(
    adata: ad.AnnData,
    cfg: PseudobulkConfig,
) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """Aggregate counts and derive the pseudo-sample metadata table."""
    counts_df, libs_df = pseudobulk_counts(
        adata,
        cell_type_key=cfg.cell_type_key,
        sample_key=cfg.sample_key,
        condition_key=cfg.condition_key,
        counts_layer=cfg.counts_layer,
        min_cells=cfg.min_cells,
    )

    meta_df = build_metadata(counts_df.columns, SampleLabelParser(cfg.conditions))
    meta_df["n_cells"] = libs_df.loc[meta_df.index, "n_cells"].to_numpy()

    # Grammar-derived cell type must agree with the aggregation key.
    disagree = meta_df["cell_type"] != libs_df.loc[meta_df.index, "cell_type"]
    if disagree.any():
        label = str(meta_df.index[disagree.to_numpy()][0])
        raise DataFormatError(
            f"sample label {label!r} parses to cell type {meta_df.loc[label, 'cell_type']!r} "
            f"but was aggregated from {libs_df.loc[label, 'cell_type']!r}",
            label=label,
        )

    return counts_df, meta_df


def run_aggregate(cfg: PseudobulkConfig) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """Aggregation + metadata only; writes both tables."""
    init_logging(cfg.logfile)
    LOGGER.info("Starting pseudobulk aggregation...")

    adata = _load_input(cfg)
    counts_df, meta_df = build_pseudobulk(adata, cfg)

    io_utils.write_counts(counts_df, cfg.counts_path)
    io_utils.write_metadata(meta_df, cfg.metadata_path)

    LOGGER.info("Finished pseudobulk aggregation")
    return counts_df, meta_df


def run_pseudobulk(
    cfg: PseudobulkConfig,
    *,
    engine: Optional[ContrastEngine] = None,
) -> ContrastRun:
    """
    Full pipeline: aggregate -> metadata -> shared DESeq2 fit ->
    one ranked table per cell type.

    Outputs (under cfg.output_dir):
      pseudobulk_counts.csv, pseudobulk_metadata.csv,
      contrasts/<celltype><suffix>, contrast_summary.tsv, settings.txt
    """
    counts_df, meta_df = run_aggregate(cfg)

    LOGGER.info("Starting pseudobulk contrasts (%s vs %s)...", cfg.test, cfg.reference)

    engine = engine or PyDESeq2Engine(alpha=cfg.alpha, n_cpus=cfg.n_cpus)
    writer = io_utils.CsvContrastWriter(cfg.results_dir, suffix=cfg.result_suffix)

    run = run_contrasts(
        counts_df,
        meta_df,
        engine=engine,
        factor=cfg.group_factor,
        test=cfg.test,
        reference=cfg.reference,
        cell_types=cfg.cell_types,
        n_jobs=cfg.n_jobs,
        writer=writer,
    )

    io_utils.write_run_summary(run, cfg.summary_path)
    io_utils.write_settings(
        cfg.output_dir,
        "settings.txt",
        [
            f"scpseudobulk_version: {__version__}",
            f"timestamp: {datetime.now().isoformat(timespec='seconds')}",
            f"input: {cfg.input_path or f'{cfg.counts_csv} + {cfg.obs_csv}'}",
            f"cell_type_key: {cfg.cell_type_key}",
            f"sample_key: {cfg.sample_key}",
            f"condition_key: {cfg.condition_key}",
            f"counts_layer: {cfg.counts_layer}",
            f"min_cells: {cfg.min_cells}",
            f"design: ~{cfg.group_factor}",
            f"contrast: {cfg.test} vs {cfg.reference}",
            f"alpha: {cfg.alpha}",
            f"n_pseudo_samples: {counts_df.shape[1]}",
            f"n_genes: {counts_df.shape[0]}",
            f"processed: {', '.join(run.processed)}",
            f"skipped: {', '.join(sorted(run.skipped))}",
        ],
    )

    if run.skipped:
        for ct, sk in sorted(run.skipped.items()):
            LOGGER.warning("Skipped %s (%s): %s", ct, sk.error, sk.reason)
    LOGGER.info(
        "Finished pseudobulk contrasts: %d processed, %d skipped",
        len(run.results),
        len(run.skipped),
    )
    return run
