"""
Apportion Census 2021 (LSOA21) ethnicity counts onto 2011 LSOAs.

Category rules:
- unchanged / irregular: 1:1 copy of the LSOA21 counts
- split: every LSOA11 linked to an LSOA21 receives that LSOA21's full counts,
  summed over all LSOA21 linked to it (not normalised by group size)
- merged: LSOA21 counts are split across the LSOA11 that were merged into it,
  in proportion to each LSOA11's GP registered population

pct_non_white = 1 - total_white / total_popn is derived once, after the four
categories are combined.
"""

import logging
from typing import List

import pandas as pd

from pcn_ethnicity import config
from pcn_ethnicity.transform.boundary_changes import BoundaryChanges

log = logging.getLogger("apportion")

VALUE_COLUMNS = ["total_popn", "total_white"]
RECORD_COLUMNS = ["lsoa11cd", "chgind", "category"] + VALUE_COLUMNS


class DegenerateMergeError(ValueError):
    """A merged LSOA21 whose constituent LSOA11 have no registered patients."""

    def __init__(self, lsoa21_codes: List[str], lsoa11_codes: List[str]):
        self.lsoa21_codes = lsoa21_codes
        self.lsoa11_codes = lsoa11_codes
        super().__init__(
            f"Merged LSOA21 with zero registered population, share undefined: "
            f"{lsoa21_codes} (LSOA11: {lsoa11_codes})"
        )


def non_white_share(total_white: pd.Series, total_popn: pd.Series) -> pd.Series:
    """1 - white / total, undefined (NaN) where total is zero"""
    return 1 - total_white / total_popn.where(total_popn > 0)


def apportion_identity(ethnicity: pd.DataFrame, mapping: pd.DataFrame, category: str) -> pd.DataFrame:
    """Unchanged / irregular: LSOA11 takes the LSOA21 counts as they are (inner join)."""
    joined = ethnicity.merge(mapping, on="lsoa21cd", how="inner")
    joined["category"] = category
    return joined[RECORD_COLUMNS]


def apportion_split(ethnicity: pd.DataFrame, mapping: pd.DataFrame) -> pd.DataFrame:
    """Split: inner join on LSOA21, then sum the joined counts per LSOA11."""
    joined = ethnicity.merge(mapping, on="lsoa21cd", how="inner")
    summed = joined.groupby(["lsoa11cd", "chgind"], as_index=False)[VALUE_COLUMNS].sum()
    summed["category"] = "split"
    return summed[RECORD_COLUMNS]


def registered_by_lsoa(registrations: pd.DataFrame) -> pd.DataFrame:
    """Total GP registered patients per LSOA11 across all practices"""
    return registrations.groupby("lsoa11cd", as_index=False)["reg_popn"].sum()


def merged_shares(registrations: pd.DataFrame, mapping: pd.DataFrame) -> pd.DataFrame:
    """
    Each merged LSOA11's share of the registered population of its LSOA21.

    LSOA11 with no registered patients at all drop out (inner join). Where
    the whole LSOA21 group has zero registered patients the share is NaN.
    """
    reg = registered_by_lsoa(registrations).merge(mapping, on="lsoa11cd", how="inner")
    reg["group_reg_popn"] = reg.groupby("lsoa21cd")["reg_popn"].transform("sum")
    reg["share"] = reg["reg_popn"] / reg["group_reg_popn"].where(reg["group_reg_popn"] > 0)
    return reg[["lsoa11cd", "lsoa21cd", "chgind", "reg_popn", "group_reg_popn", "share"]]


def apportion_merged(
    ethnicity: pd.DataFrame,
    mapping: pd.DataFrame,
    registrations: pd.DataFrame,
    on_degenerate: str = "propagate",
) -> pd.DataFrame:
    """Merged: scale the LSOA21 counts by each LSOA11's registered population share."""
    shares = merged_shares(registrations, mapping)
    joined = ethnicity.merge(
        shares[["lsoa11cd", "lsoa21cd", "chgind", "share"]], on="lsoa21cd", how="inner"
    )

    degenerate = joined[joined["share"].isna()]
    if not degenerate.empty:
        lsoa21_codes = sorted(degenerate["lsoa21cd"].unique().tolist())
        lsoa11_codes = sorted(degenerate["lsoa11cd"].unique().tolist())
        if on_degenerate == "abort":
            raise DegenerateMergeError(lsoa21_codes, lsoa11_codes)
        log.warning(
            f"{len(lsoa21_codes)} merged LSOA21 have zero registered population; "
            f"counts left undefined for LSOA11 {lsoa11_codes[:10]}"
        )

    for col in VALUE_COLUMNS:
        joined[col] = joined[col] * joined["share"]
    joined["category"] = "merged"
    return joined[RECORD_COLUMNS]


def apportion_ethnicity(
    ethnicity: pd.DataFrame,
    changes: BoundaryChanges,
    registrations: pd.DataFrame,
    on_degenerate: str = config.ON_DEGENERATE_MERGE,
) -> pd.DataFrame:
    """
    Map LSOA21 ethnicity counts onto LSOA11.

    Args:
        ethnicity: lsoa21cd, total_popn, total_white
        changes: classified boundary changes
        registrations: practice_code, lsoa11cd, reg_popn (merged-group weights)
        on_degenerate: 'propagate' leaves zero-weight merged groups as NaN,
            'abort' raises DegenerateMergeError

    Returns:
        One row per LSOA11: lsoa11cd, chgind, category, total_popn,
        total_white, pct_non_white
    """
    if on_degenerate not in config.DEGENERATE_MERGE_POLICIES:
        raise ValueError(f"Unknown degenerate merge policy: {on_degenerate!r}")

    parts = [
        apportion_identity(ethnicity, changes.unchanged, "unchanged"),
        apportion_split(ethnicity, changes.split),
        apportion_identity(ethnicity, changes.irregular, "irregular"),
        apportion_merged(ethnicity, changes.merged, registrations, on_degenerate),
    ]
    for part in parts:
        if not part.empty:
            log.info(f"  {part['category'].iloc[0]}: {len(part)} LSOA11")

    parts = [part for part in parts if not part.empty]
    if parts:
        apportioned = pd.concat(parts, ignore_index=True)
    else:
        apportioned = pd.DataFrame(columns=RECORD_COLUMNS)
    apportioned[VALUE_COLUMNS] = apportioned[VALUE_COLUMNS].astype("float64")

    dups = apportioned.duplicated(subset=["lsoa11cd"], keep=False)
    if dups.any():
        offenders = apportioned.loc[dups, ["lsoa11cd", "category"]].drop_duplicates()
        log.error(f"{offenders['lsoa11cd'].nunique()} LSOA11 apportioned more than once")
        raise ValueError(
            "LSOA11 apportioned more than once: "
            + ", ".join(f"{r.lsoa11cd} ({r.category})" for r in offenders.head(10).itertuples())
        )

    apportioned["pct_non_white"] = non_white_share(apportioned["total_white"], apportioned["total_popn"])

    undefined = int(apportioned["pct_non_white"].isna().sum())
    if undefined:
        log.warning(f"{undefined} LSOA11 have an undefined non-white share (zero or missing population)")

    log.info(f"✓ Apportioned ethnicity to {len(apportioned)} LSOA11")
    return apportioned[config.APPORTIONED_COLUMNS]
