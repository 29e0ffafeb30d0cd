"""
LSOA 2011 → 2021 boundary change classification.

Partitions the ONS change lookup into the four apportionment categories.
No numbers are touched here; this is filtering only.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional, Tuple

import pandas as pd

from pcn_ethnicity import config

log = logging.getLogger("boundary_changes")


class ChangeKind(str, Enum):
    """ONS CHGIND codes"""

    UNCHANGED = "U"
    SPLIT = "S"
    MERGED = "M"
    IRREGULAR = "X"


@dataclass(frozen=True)
class BoundaryChanges:
    unchanged: pd.DataFrame
    split: pd.DataFrame
    merged: pd.DataFrame
    irregular: pd.DataFrame
    unrecognised: int = 0

    def counts(self) -> dict:
        return {
            "unchanged": len(self.unchanged),
            "split": len(self.split),
            "merged": len(self.merged),
            "irregular": len(self.irregular),
            "unrecognised": self.unrecognised,
        }


def irregular_frame(overrides: Iterable[Tuple[str, str]]) -> pd.DataFrame:
    """Override pairs as lookup rows, forced to Unchanged"""
    frame = pd.DataFrame(list(overrides), columns=["lsoa11cd", "lsoa21cd"], dtype=object)
    frame["chgind"] = ChangeKind.UNCHANGED.value

    dups = frame.duplicated(subset=["lsoa11cd"], keep=False)
    if dups.any():
        raise ValueError(
            f"Irregular override list maps an LSOA11 more than once: "
            f"{frame.loc[dups, 'lsoa11cd'].unique().tolist()}"
        )
    return frame[config.LOOKUP_COLUMNS]


def classify_boundary_changes(
    lookup: pd.DataFrame,
    overrides: Iterable[Tuple[str, str]] = config.IRREGULAR_OVERRIDES,
    jurisdiction_prefix: Optional[str] = config.JURISDICTION_PREFIX,
) -> BoundaryChanges:
    """
    Split the change lookup into unchanged / split / merged / irregular rows.

    Args:
        lookup: lsoa11cd, lsoa21cd, chgind rows
        overrides: hand-curated (lsoa11cd, lsoa21cd) pairs replacing the
            source mapping for those LSOA11; not jurisdiction filtered
        jurisdiction_prefix: only LSOA11 codes starting with this prefix take
            part in the U/S/M categories (None keeps everything)

    Returns:
        BoundaryChanges with one frame per category
    """
    missing = [c for c in config.LOOKUP_COLUMNS if c not in lookup.columns]
    if missing:
        raise ValueError(f"Lookup missing columns: {missing}")

    irregular = irregular_frame(overrides)

    rows = lookup[config.LOOKUP_COLUMNS].copy()
    rows["chgind"] = rows["chgind"].astype(str).str.strip().str.upper()

    recognised = rows["chgind"].isin([kind.value for kind in ChangeKind])
    unrecognised = int((~recognised).sum())
    if unrecognised:
        bad = sorted(rows.loc[~recognised, "chgind"].unique().tolist())
        log.warning(f"Dropped {unrecognised} lookup rows with unrecognised change indicator: {bad}")

    if jurisdiction_prefix:
        in_jurisdiction = rows["lsoa11cd"].astype(str).str.startswith(jurisdiction_prefix)
    else:
        in_jurisdiction = pd.Series(True, index=rows.index)

    overridden = rows["lsoa11cd"].isin(irregular["lsoa11cd"])
    eligible = rows[recognised & in_jurisdiction & ~overridden]

    def _of_kind(kind: ChangeKind) -> pd.DataFrame:
        return eligible[eligible["chgind"] == kind.value].reset_index(drop=True)

    uncovered = _of_kind(ChangeKind.IRREGULAR)
    if not uncovered.empty:
        log.warning(
            f"Dropped {len(uncovered)} irregular (X) lookup rows with no manual override: "
            f"{sorted(uncovered['lsoa11cd'].unique().tolist())[:10]}"
        )

    changes = BoundaryChanges(
        unchanged=_of_kind(ChangeKind.UNCHANGED),
        split=_of_kind(ChangeKind.SPLIT),
        merged=_of_kind(ChangeKind.MERGED),
        irregular=irregular.reset_index(drop=True),
        unrecognised=unrecognised,
    )

    log.info(
        "Classified lookup: " + ", ".join(f"{k}={v}" for k, v in changes.counts().items())
    )
    return changes
