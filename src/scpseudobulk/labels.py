# src/scpseudobulk/labels.py
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Iterable, Optional, Sequence

import pandas as pd

from .errors import DataFormatError

LOGGER = logging.getLogger(__name__)

DEFAULT_CONDITIONS = ("CTRL", "STIM")

# <group>_<3 or 4 digits> anchored at the end. The underscore must precede
# the numeral, so "_1016" can only be read as a 4-digit suffix and "_101"
# only as a 3-digit one; longer or shorter numerals do not match.
_SAMPLE_SUFFIX = re.compile(r"^(?P<group>.+)_(?P<number>[0-9]{3,4})$")


@dataclass(frozen=True)
class SampleLabel:
    """One decomposed pseudo-sample label, e.g. ``CD14_Mono_STIM_1016``."""
    label: str
    group: str
    condition: str
    cell_type: str
    sample_number: str


def composite_group(cell_type: str, condition: str, sep: str = "_") -> str:
    return f"{cell_type}{sep}{condition}"


class SampleLabelParser:
    """
    Parse ``<celltype>_<CONDITION>_<digits>`` labels.

    Condition tokens may not contain underscores, so the condition is always
    the segment between the last two underscores; the cell type is everything
    before it and may itself contain underscores (``CD14_Mono``).
    """

    def __init__(self, conditions: Sequence[str] = DEFAULT_CONDITIONS):
        conds = [str(c) for c in conditions]
        if not conds:
            raise ValueError("At least one condition token is required")
        for c in conds:
            if not c or "_" in c:
                raise ValueError(f"Invalid condition token {c!r}")
        self.conditions = tuple(dict.fromkeys(conds))

    def parse(self, label: str) -> SampleLabel:
        label = str(label)
        m = _SAMPLE_SUFFIX.match(label)
        if m is None:
            raise DataFormatError(
                f"sample label {label!r} does not end in '_' + a 3- or 4-digit sample number",
                label=label,
            )

        group = m.group("group")
        cell_type, _, cond = group.rpartition("_")
        if not cell_type or cond not in self.conditions:
            raise DataFormatError(
                f"sample label {label!r}: group {group!r} is not '<celltype>_<condition>' "
                f"with condition in {list(self.conditions)}",
                label=label,
            )

        return SampleLabel(
            label=label,
            group=group,
            condition=cond,
            cell_type=cell_type,
            sample_number=m.group("number"),
        )


def build_metadata(
    labels: Iterable[str],
    parser: Optional[SampleLabelParser] = None,
) -> pd.DataFrame:
    """
    One metadata record per pseudo-sample label.

    Returns a DataFrame indexed by sample label (in input order) with
    columns group, condition, cell_type. Raises DataFormatError on the first
    unparseable or duplicated label.
    """
    parser = parser or SampleLabelParser()

    records = []
    seen: set[str] = set()
    for label in labels:
        parsed = parser.parse(label)
        if parsed.label in seen:
            raise DataFormatError(f"duplicate sample label {parsed.label!r}", label=parsed.label)
        seen.add(parsed.label)
        records.append(parsed)

    meta = pd.DataFrame(
        {
            "group": [r.group for r in records],
            "condition": [r.condition for r in records],
            "cell_type": [r.cell_type for r in records],
        },
        index=pd.Index([r.label for r in records], name="sample"),
    )

    LOGGER.info(
        "Built metadata for %d pseudo-samples (%d groups, %d cell types)",
        meta.shape[0],
        meta["group"].nunique(),
        meta["cell_type"].nunique(),
    )
    return meta
