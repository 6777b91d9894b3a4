from __future__ import annotations

from pydantic import BaseModel, Field, field_validator, model_validator
from pathlib import Path
from typing import Optional, List


class PseudobulkConfig(BaseModel):

    # ---- Input ----
    # Either a single AnnData file (.h5ad / .zarr) ...
    input_path: Optional[Path] = None
    # ... or a genes x cells counts CSV plus a per-cell metadata CSV.
    counts_csv: Optional[Path] = None
    obs_csv: Optional[Path] = None
    counts_layer: Optional[str] = None

    # ---- Output ----
    output_dir: Path
    counts_name: str = "pseudobulk_counts.csv"
    metadata_name: str = "pseudobulk_metadata.csv"
    results_dirname: str = "contrasts"
    result_suffix: str = "_STIM_vs_CTRL.csv"
    summary_name: str = "contrast_summary.tsv"

    # ---- Keys in .obs ----
    cell_type_key: str = "cell_type"
    sample_key: str = "sample"
    condition_key: Optional[str] = Field(
        "condition",
        description="If set, the condition is prefixed to the sample id (CTRL_101). "
                    "Set to None when sample ids already carry the condition.",
    )

    # ---- Aggregation ----
    min_cells: int = Field(1, ge=1, description="Minimum cells per pseudo-sample.")

    # ---- Contrast ----
    conditions: List[str] = Field(default_factory=lambda: ["CTRL", "STIM"])
    test: str = "STIM"
    reference: str = "CTRL"
    cell_types: Optional[List[str]] = None
    group_factor: str = "group"
    alpha: float = 0.05

    # ---- Compute ----
    n_jobs: int = Field(1, ge=1, description="Parallel cell-type contrasts.")
    n_cpus: int = Field(1, ge=1, description="CPUs for the shared DESeq2 fit.")

    # ---- Logging ----
    logfile: Optional[Path] = None

    @property
    def counts_path(self) -> Path:
        return self.output_dir / self.counts_name

    @property
    def metadata_path(self) -> Path:
        return self.output_dir / self.metadata_name

    @property
    def results_dir(self) -> Path:
        return self.output_dir / self.results_dirname

    @property
    def summary_path(self) -> Path:
        return self.output_dir / self.summary_name

    # ---- Validators ----
    @field_validator("conditions")
    @classmethod
    def normalize_conditions(cls, v: List[str]) -> List[str]:
        out = [str(c).strip() for c in v if str(c).strip()]
        if len(out) < 2:
            raise ValueError("conditions must name at least two condition tokens")
        if len(set(out)) != len(out):
            raise ValueError(f"conditions contain duplicates: {out}")
        bad = [c for c in out if "_" in c]
        if bad:
            raise ValueError(f"condition tokens may not contain '_': {bad}")
        return out

    @model_validator(mode="after")
    def check_inputs(self):
        has_h5ad = self.input_path is not None
        has_csv = self.counts_csv is not None or self.obs_csv is not None

        if has_h5ad and has_csv:
            raise ValueError("input_path cannot be combined with counts_csv/obs_csv")
        if not has_h5ad and not has_csv:
            raise ValueError("Must provide input_path or counts_csv + obs_csv")
        if has_csv and (self.counts_csv is None or self.obs_csv is None):
            raise ValueError("counts_csv and obs_csv must be given together")
        return self

    @model_validator(mode="after")
    def check_contrast(self):
        if self.test == self.reference:
            raise ValueError("test and reference conditions must differ")
        for name in (self.test, self.reference):
            if name not in self.conditions:
                raise ValueError(
                    f"condition {name!r} is not one of conditions={self.conditions}"
                )
        if not (0 < self.alpha < 1):
            raise ValueError("alpha must be in (0, 1)")
        return self
