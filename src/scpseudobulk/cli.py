from __future__ import annotations
from typing import Optional, List
import typer
from pathlib import Path
import warnings

from .pipeline import run_aggregate, run_pseudobulk
from .config import PseudobulkConfig
from .errors import DataFormatError
from .labels import SampleLabelParser, build_metadata


app = typer.Typer(help="scPseudobulk CLI — cell-type-wise pseudobulk differential expression (DESeq2).")

# Globally suppress noisy warnings
warnings.filterwarnings("ignore", message="Variable names are not unique", category=UserWarning, module="anndata")
warnings.filterwarnings("ignore", message=".*Transforming to str index.*", category=UserWarning)


# ---------------------------------------------------------------------
# Helper functions
# ---------------------------------------------------------------------
def _split_csv_option(values: Optional[List[str]]) -> Optional[List[str]]:
    """
    Normalize repeatable comma-separated options.
    Supports e.g. --cell-types A,B --cell-types C.
    """
    if values is None:
        return None

    expanded = []
    for v in values:
        expanded.extend([x.strip() for x in v.split(",") if x.strip()])
    return expanded or None


def _common_kwargs(
    *,
    input_path: Optional[Path],
    counts_csv: Optional[Path],
    obs_csv: Optional[Path],
    output_dir: Path,
    cell_type_key: str,
    sample_key: str,
    condition_key: Optional[str],
    counts_layer: Optional[str],
    min_cells: int,
    conditions: Optional[List[str]],
    logfile: Path,
) -> dict:
    kwargs = dict(
        input_path=input_path,
        counts_csv=counts_csv,
        obs_csv=obs_csv,
        output_dir=output_dir,
        cell_type_key=cell_type_key,
        sample_key=sample_key,
        condition_key=condition_key or None,
        counts_layer=counts_layer,
        min_cells=min_cells,
        logfile=logfile,
    )
    conds = _split_csv_option(conditions)
    if conds is not None:
        kwargs["conditions"] = conds
    return kwargs


def _build_config(**kwargs) -> PseudobulkConfig:
    try:
        return PseudobulkConfig(**kwargs)
    except ValueError as e:
        raise typer.BadParameter(str(e))


# ======================================================================
#  run
# ======================================================================
@app.command("run", help="Aggregate pseudobulk counts and run per-cell-type STIM vs CTRL DE.")
def run(
    # -------------------------------------------------------------
    # I/O
    # -------------------------------------------------------------
    input_path: Optional[Path] = typer.Option(
        None, "--input", "-i",
        help="[I/O] AnnData with raw counts (.h5ad or .zarr).",
    ),
    counts_csv: Optional[Path] = typer.Option(
        None, "--counts-csv",
        help="[I/O] Genes x cells counts CSV (alternative to --input).",
    ),
    obs_csv: Optional[Path] = typer.Option(
        None, "--obs-csv",
        help="[I/O] Per-cell metadata CSV (with --counts-csv).",
    ),
    output_dir: Path = typer.Option(
        ..., "--out", "-o",
        help="[I/O] Output directory (required).",
    ),
    counts_layer: Optional[str] = typer.Option(
        None, "--counts-layer",
        help="[I/O] Layer holding raw counts (default: .X).",
    ),

    # -------------------------------------------------------------
    # Keys
    # -------------------------------------------------------------
    cell_type_key: str = typer.Option("cell_type", "--cell-type-key", "-c"),
    sample_key: str = typer.Option("sample", "--sample-key", "-s"),
    condition_key: Optional[str] = typer.Option(
        "condition", "--condition-key",
        help="Condition column; prefixed to the sample id. Pass '' if sample ids already carry it.",
    ),

    # -------------------------------------------------------------
    # Contrast
    # -------------------------------------------------------------
    conditions: Optional[List[str]] = typer.Option(
        None, "--conditions",
        help="Recognized condition tokens (default: CTRL,STIM).",
    ),
    test: str = typer.Option("STIM", "--test", help="Numerator condition."),
    reference: str = typer.Option("CTRL", "--reference", help="Denominator condition."),
    cell_types: Optional[List[str]] = typer.Option(
        None, "--cell-types",
        help="Restrict contrasts to these cell types (comma-separated or repeated).",
    ),
    min_cells: int = typer.Option(1, "--min-cells", help="Minimum cells per pseudo-sample."),
    alpha: float = typer.Option(0.05, "--alpha", help="FDR level for independent filtering."),
    result_suffix: str = typer.Option("_STIM_vs_CTRL.csv", "--result-suffix"),

    # -------------------------------------------------------------
    # Compute
    # -------------------------------------------------------------
    n_jobs: int = typer.Option(1, "--n-jobs", help="Parallel cell-type contrasts."),
    n_cpus: int = typer.Option(1, "--n-cpus", help="CPUs for the shared DESeq2 fit."),
):
    logfile = output_dir / "pseudobulk.log"

    kwargs = _common_kwargs(
        input_path=input_path,
        counts_csv=counts_csv,
        obs_csv=obs_csv,
        output_dir=output_dir,
        cell_type_key=cell_type_key,
        sample_key=sample_key,
        condition_key=condition_key,
        counts_layer=counts_layer,
        min_cells=min_cells,
        conditions=conditions,
        logfile=logfile,
    )
    cfg = _build_config(
        **kwargs,
        test=test,
        reference=reference,
        cell_types=_split_csv_option(cell_types),
        alpha=alpha,
        result_suffix=result_suffix,
        n_jobs=n_jobs,
        n_cpus=n_cpus,
    )

    run_pseudobulk(cfg)


# ======================================================================
#  aggregate
# ======================================================================
@app.command("aggregate", help="Write pseudobulk counts + metadata only (no DE).")
def aggregate(
    input_path: Optional[Path] = typer.Option(None, "--input", "-i"),
    counts_csv: Optional[Path] = typer.Option(None, "--counts-csv"),
    obs_csv: Optional[Path] = typer.Option(None, "--obs-csv"),
    output_dir: Path = typer.Option(..., "--out", "-o", help="[I/O] Output directory (required)."),
    counts_layer: Optional[str] = typer.Option(None, "--counts-layer"),
    cell_type_key: str = typer.Option("cell_type", "--cell-type-key", "-c"),
    sample_key: str = typer.Option("sample", "--sample-key", "-s"),
    condition_key: Optional[str] = typer.Option("condition", "--condition-key"),
    conditions: Optional[List[str]] = typer.Option(None, "--conditions"),
    min_cells: int = typer.Option(1, "--min-cells"),
):
    logfile = output_dir / "aggregate.log"

    cfg = _build_config(
        **_common_kwargs(
            input_path=input_path,
            counts_csv=counts_csv,
            obs_csv=obs_csv,
            output_dir=output_dir,
            cell_type_key=cell_type_key,
            sample_key=sample_key,
            condition_key=condition_key,
            counts_layer=counts_layer,
            min_cells=min_cells,
            conditions=conditions,
            logfile=logfile,
        )
    )
    run_aggregate(cfg)


# ======================================================================
#  parse-labels
# ======================================================================
@app.command("parse-labels", help="Decompose pseudo-sample labels into group, condition and cell type.")
def parse_labels(
    labels: List[str] = typer.Argument(..., help="Labels such as Mono_CTRL_101."),
    conditions: Optional[List[str]] = typer.Option(None, "--conditions"),
):
    conds = _split_csv_option(conditions) or ["CTRL", "STIM"]
    try:
        meta = build_metadata(labels, SampleLabelParser(conds))
    except DataFormatError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=1)

    typer.echo(meta.to_csv(sep="\t"), nl=False)


if __name__ == "__main__":
    app()
