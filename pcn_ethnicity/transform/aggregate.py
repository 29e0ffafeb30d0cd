"""
Registration-weighted non-white share for GP practices and PCNs.

Practice share = Σ(reg_popn_i × pct_non_white_i) / Σ(reg_popn_i) over the
LSOA11 its patients live in; PCN share repeats the same sum over the
practice totals of its current members. Shares are never averaged directly.
"""

import logging

import numpy as np
import pandas as pd

from pcn_ethnicity import config

log = logging.getLogger("weighted_aggregation")


def _sum_with_missing(values: pd.Series) -> float:
    """Sum that stays NaN if any contribution is missing"""
    return values.sum(skipna=False)


def _weighted_sum_by(detail: pd.DataFrame, key: str) -> pd.DataFrame:
    agg = detail.groupby(key, as_index=False).agg(
        non_white_popn=("non_white_popn", _sum_with_missing),
        reg_popn=("reg_popn", "sum"),
    )
    agg["non_white_popn"] = agg["non_white_popn"].astype("float64")
    agg["pct_non_white"] = agg["non_white_popn"] / agg["reg_popn"].where(agg["reg_popn"] > 0)
    return agg


def practice_ethnicity(registrations: pd.DataFrame, apportioned: pd.DataFrame) -> pd.DataFrame:
    """
    Distribute-then-resum at practice level.

    Args:
        registrations: practice_code, lsoa11cd, reg_popn
        apportioned: LSOA11 table with pct_non_white

    Returns:
        practice_code, non_white_popn, reg_popn, pct_non_white
    """
    # Keyed lookup, left semantics: LSOA11 without an apportioned share stay NaN
    share_by_lsoa = apportioned.set_index("lsoa11cd")["pct_non_white"]
    detail = registrations[config.REGISTRATION_COLUMNS].copy()
    detail["pct_non_white"] = detail["lsoa11cd"].map(share_by_lsoa)
    detail["non_white_popn"] = detail["reg_popn"] * detail["pct_non_white"]

    unmatched = detail["pct_non_white"].isna()
    if unmatched.any():
        log.warning(
            f"{int(unmatched.sum())} registration rows ({int(detail.loc[unmatched, 'reg_popn'].sum()):,} patients) "
            f"have no LSOA11 share; {detail.loc[unmatched, 'practice_code'].nunique()} practices affected"
        )

    summary = _weighted_sum_by(detail, "practice_code")
    log.info(f"✓ Practice ethnicity: {len(summary)} practices, {int(summary['reg_popn'].sum()):,} patients")
    return summary[config.PRACTICE_SUMMARY_COLUMNS]


def pcn_ethnicity(practice_summary: pd.DataFrame, pcn_members: pd.DataFrame) -> pd.DataFrame:
    """
    Roll practice totals up to PCNs through current memberships.

    Inner join: practices with no current PCN do not contribute to any PCN.

    Returns:
        pcn_code, non_white_popn, reg_popn, pct_non_white
    """
    members = pcn_members[config.MEMBER_COLUMNS].dropna(subset=["pcn_code"])
    # Repeated membership rows would count a practice twice in the same PCN
    members = members.drop_duplicates(subset=config.MEMBER_COLUMNS)

    multi = members[members.duplicated(subset=["practice_code"], keep=False)]
    if not multi.empty:
        log.warning(
            f"{multi['practice_code'].nunique()} practices are current members of more than one PCN "
            f"and count towards each: {sorted(multi['practice_code'].unique().tolist())[:10]}"
        )

    detail = practice_summary.merge(members, on="practice_code", how="inner")

    orphans = np.setdiff1d(practice_summary["practice_code"].unique(), members["practice_code"].unique())
    if len(orphans):
        log.info(f"  {len(orphans)} practices have no current PCN membership (practice level only)")

    summary = _weighted_sum_by(detail, "pcn_code")
    log.info(f"✓ PCN ethnicity: {len(summary)} PCNs")
    return summary[config.PCN_SUMMARY_COLUMNS]
