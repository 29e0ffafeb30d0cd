"""
Apportionment & Rollup QA
=========================

Gate run after the transform, before anything is exported.

CHECKS:
  - Identity conservation: unchanged / irregular LSOA11 carry their LSOA21
    counts exactly
  - Merged conservation: Σ LSOA11 counts = LSOA21 counts for every merged
    group (shares sum to 1)
  - Share bounds: every defined pct_non_white within [0, 1]
  - Coverage: registered patients living in an LSOA11 with no share. They leave
    their practice share undefined; a warning unless a max_unmatched_share
    gate is set
  - Rollup consistency: PCN totals = Σ totals of current member practices

Split groups are not checked for conservation: each LSOA11 receives the full
LSOA21 counts by construction.

Exit codes:
    0: All critical checks passed
    1: Critical issues, do NOT export
"""

from typing import Dict, Optional

import numpy as np
import pandas as pd

from pcn_ethnicity.transform.apportion import VALUE_COLUMNS
from pcn_ethnicity.transform.boundary_changes import BoundaryChanges


class ApportionmentQA:
    """QA gate over the apportioned LSOA11 table and the practice / PCN rollups."""

    def __init__(self,
                 ethnicity: pd.DataFrame,
                 changes: BoundaryChanges,
                 registrations: pd.DataFrame,
                 apportioned: pd.DataFrame,
                 practice_summary: pd.DataFrame,
                 pcn_summary: pd.DataFrame,
                 pcn_members: pd.DataFrame,
                 tolerance: float = 1e-9,
                 max_unmatched_share: Optional[float] = None):
        self.ethnicity = ethnicity
        self.changes = changes
        self.registrations = registrations
        self.apportioned = apportioned
        self.practice_summary = practice_summary
        self.pcn_summary = pcn_summary
        self.pcn_members = pcn_members
        self.tolerance = tolerance
        self.max_unmatched_share = max_unmatched_share
        self.issues = []
        self.warnings = []
        self.metrics: Dict[str, float] = {}
        self.exit_code: Optional[int] = None

    # ==========================================================================
    # CONSERVATION
    # ==========================================================================

    def check_identity_conservation(self) -> None:
        """Unchanged / irregular rows must equal their LSOA21 source"""

        print("\n" + "=" * 80)
        print("IDENTITY CONSERVATION (unchanged / irregular)")
        print("=" * 80)

        mapping = pd.concat([self.changes.unchanged, self.changes.irregular], ignore_index=True)
        identity = self.apportioned[self.apportioned["category"].isin(["unchanged", "irregular"])]
        check = identity.merge(mapping[["lsoa11cd", "lsoa21cd"]], on="lsoa11cd", how="left").merge(
            self.ethnicity, on="lsoa21cd", how="left", suffixes=("", "_source")
        )

        bad = np.zeros(len(check), dtype=bool)
        for col in VALUE_COLUMNS:
            bad |= ~np.isclose(check[col], check[f"{col}_source"], rtol=0, atol=self.tolerance)

        print(f"\n📊 Identity LSOA11: {len(check)}")
        if bad.any():
            offenders = check.loc[bad, "lsoa11cd"].tolist()
            self.issues.append(f"CRITICAL: {len(offenders)} identity LSOA11 differ from source: {offenders[:10]}")
            print(f"  ❌ {len(offenders)} rows differ from their LSOA21 source")
        else:
            print("  ✅ All identity rows match source")

    def check_merged_conservation(self) -> None:
        """Σ apportioned counts per merged LSOA21 = LSOA21 counts"""

        print("\n" + "=" * 80)
        print("MERGED CONSERVATION")
        print("=" * 80)

        merged = self.apportioned[self.apportioned["category"] == "merged"]
        if merged.empty:
            print("\n  ℹ️  No merged LSOA11 apportioned")
            return

        lsoa21_by_lsoa11 = self.changes.merged.drop_duplicates("lsoa11cd").set_index("lsoa11cd")["lsoa21cd"]
        merged = merged.assign(lsoa21cd=merged["lsoa11cd"].map(lsoa21_by_lsoa11))
        sums = merged.groupby("lsoa21cd")[VALUE_COLUMNS].sum(min_count=1)
        source = self.ethnicity.set_index("lsoa21cd").loc[sums.index, VALUE_COLUMNS]

        undefined = sums["total_popn"].isna()
        if undefined.any():
            self.warnings.append(f"{int(undefined.sum())} merged LSOA21 undefined (zero registered population)")
            print(f"  ⚠️  {int(undefined.sum())} merged LSOA21 left undefined")

        defined = sums[~undefined]
        diff = (defined - source[~undefined]).abs()
        rel = diff / source[~undefined].where(source[~undefined] > 0, 1)
        worst = float(rel.max().max()) if len(rel) else 0.0
        self.metrics["merged_max_rel_diff"] = worst

        print(f"\n📊 Merged LSOA21: {len(sums)} | max relative difference: {worst:.2e}")
        failing = rel[(rel > 1e-6).any(axis=1)]
        if not failing.empty:
            self.issues.append(
                f"CRITICAL: {len(failing)} merged LSOA21 not conserved: {failing.index.tolist()[:10]}"
            )
            print(f"  ❌ {len(failing)} merged groups not conserved")
        else:
            print("  ✅ All merged groups conserve population")

    # ==========================================================================
    # BOUNDS & COVERAGE
    # ==========================================================================

    def check_share_bounds(self) -> None:
        """Every defined pct_non_white lies in [0, 1]"""

        print("\n" + "=" * 80)
        print("NON-WHITE SHARE BOUNDS")
        print("=" * 80)

        for label, df in [
            ("LSOA11", self.apportioned),
            ("practice", self.practice_summary),
            ("PCN", self.pcn_summary),
        ]:
            share = df["pct_non_white"]
            n_undefined = int(share.isna().sum())
            out = share.notna() & ((share < -self.tolerance) | (share > 1 + self.tolerance))

            if out.any():
                self.issues.append(f"CRITICAL: {int(out.sum())} {label} shares outside [0, 1]")
                print(f"  ❌ {label}: {int(out.sum())} shares outside [0, 1]")
            else:
                print(f"  ✅ {label}: all defined shares within [0, 1]")

            if n_undefined:
                self.warnings.append(f"{n_undefined} {label} shares undefined")
                print(f"  ⚠️  {label}: {n_undefined} undefined shares")

    def check_coverage(self) -> None:
        """Registered patients whose LSOA11 has no apportioned share"""

        print("\n" + "=" * 80)
        print("REGISTRATION COVERAGE")
        print("=" * 80)

        total = self.registrations["reg_popn"].sum()
        defined = self.apportioned.loc[self.apportioned["pct_non_white"].notna(), "lsoa11cd"]
        covered = self.registrations["lsoa11cd"].isin(defined)
        unmatched = self.registrations.loc[~covered, "reg_popn"].sum()
        share = float(unmatched / total) if total else 0.0
        self.metrics["unmatched_patient_share"] = share

        print(f"\n📊 Patients without an LSOA11 share: {int(unmatched):,} of {int(total):,} ({share:.3%})")
        if self.max_unmatched_share is not None and share > self.max_unmatched_share:
            self.issues.append(f"CRITICAL: {share:.2%} of registered patients have no LSOA11 share")
            print(f"  ❌ Above {self.max_unmatched_share:.2%} threshold")
        elif unmatched:
            self.warnings.append(f"{share:.3%} of registered patients have no LSOA11 share")
            print("  ⚠️  Some patients unmatched (their practice shares are undefined)")
        else:
            print("  ✅ Every registered patient has an LSOA11 share")

    # ==========================================================================
    # ROLLUP
    # ==========================================================================

    def check_rollup_consistency(self) -> None:
        """PCN totals equal the sum over current member practices"""

        print("\n" + "=" * 80)
        print("PCN ROLLUP CONSISTENCY")
        print("=" * 80)

        members = self.pcn_members.dropna(subset=["pcn_code"]).drop_duplicates(subset=["practice_code", "pcn_code"])
        expected = self.practice_summary.merge(members, on="practice_code", how="inner").groupby("pcn_code").agg(
            reg_popn=("reg_popn", "sum"),
            non_white_popn=("non_white_popn", lambda s: s.sum(skipna=False)),
        )
        actual = self.pcn_summary.set_index("pcn_code")

        missing = expected.index.difference(actual.index)
        extra = actual.index.difference(expected.index)
        if len(missing) or len(extra):
            self.issues.append(f"CRITICAL: PCN set mismatch (missing {len(missing)}, unexpected {len(extra)})")
            print(f"  ❌ PCN set mismatch: missing {list(missing)[:5]}, unexpected {list(extra)[:5]}")
            return

        actual = actual.loc[expected.index]
        reg_ok = np.isclose(actual["reg_popn"], expected["reg_popn"], rtol=0, atol=self.tolerance)
        mass_ok = np.isclose(
            actual["non_white_popn"], expected["non_white_popn"], rtol=1e-12, atol=self.tolerance, equal_nan=True
        )
        bad = expected.index[~(reg_ok & mass_ok)]

        print(f"\n📊 PCNs checked: {len(expected)}")
        if len(bad):
            self.issues.append(f"CRITICAL: {len(bad)} PCN totals differ from member sums: {list(bad)[:10]}")
            print(f"  ❌ {len(bad)} PCNs inconsistent")
        else:
            print("  ✅ All PCN totals equal member practice sums")

    # ==========================================================================
    # REPORT
    # ==========================================================================

    def generate_report(self) -> int:
        print("\n" + "=" * 80)
        print("QA SUMMARY")
        print("=" * 80)

        print(f"\nCritical Issues: {len(self.issues)}")
        for issue in self.issues:
            print(f"  ❌ {issue}")

        print(f"\nWarnings: {len(self.warnings)}")
        for warning in self.warnings:
            print(f"  ⚠️  {warning}")

        if self.issues:
            print("\n❌ QA FAILED — do not export")
            return 1

        print("\n✅ QA PASSED")
        return 0

    def run_all_checks(self) -> int:
        self.check_identity_conservation()
        self.check_merged_conservation()
        self.check_share_bounds()
        self.check_coverage()
        self.check_rollup_consistency()
        self.exit_code = self.generate_report()
        return self.exit_code


def run_qa(transform_result, sources, **kwargs) -> ApportionmentQA:
    """Build and run the gate for one pipeline run"""
    qa = ApportionmentQA(
        ethnicity=sources.ethnicity,
        changes=transform_result.changes,
        registrations=sources.registrations,
        apportioned=transform_result.apportioned,
        practice_summary=transform_result.practice_summary,
        pcn_summary=transform_result.pcn_summary,
        pcn_members=sources.pcn_members,
        **kwargs,
    )
    qa.run_all_checks()
    return qa
