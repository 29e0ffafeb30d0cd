"""Tests for LSOA21 → LSOA11 apportionment."""

from __future__ import annotations

import logging

import numpy as np
import pandas as pd
import pytest

from conftest import (
    LSOA21_A,
    LSOA21_D,
    LSOA_A,
    LSOA_B,
    LSOA_C,
    make_ethnicity,
    make_lookup,
    make_registrations,
)
from pcn_ethnicity import config
from pcn_ethnicity.transform.apportion import (
    DegenerateMergeError,
    apportion_ethnicity,
    apportion_split,
    merged_shares,
    non_white_share,
)
from pcn_ethnicity.transform.boundary_changes import classify_boundary_changes


def _apportion(lookup, ethnicity, registrations, overrides=(), **kwargs) -> pd.DataFrame:
    changes = classify_boundary_changes(lookup, overrides=overrides, jurisdiction_prefix="E")
    out = apportion_ethnicity(ethnicity, changes, registrations, **kwargs)
    return out.set_index("lsoa11cd")


@pytest.fixture
def worked_example() -> pd.DataFrame:
    """A unchanged from A21; B and C merged into D21 weighted 40 / 60."""
    lookup = make_lookup([
        (LSOA_A, LSOA21_A, "U"),
        (LSOA_B, LSOA21_D, "M"),
        (LSOA_C, LSOA21_D, "M"),
    ])
    ethnicity = make_ethnicity([(LSOA21_A, 100, 80), (LSOA21_D, 300, 150)])
    registrations = make_registrations([
        ("X", LSOA_A, 40),
        ("X", LSOA_B, 40),
        ("Y", LSOA_C, 60),
    ])
    return _apportion(lookup, ethnicity, registrations)


# ---------------------------------------------------------------------------
# Worked example


def test_unchanged_copies_counts(worked_example: pd.DataFrame) -> None:
    row = worked_example.loc[LSOA_A]
    assert row["total_popn"] == 100
    assert row["total_white"] == 80
    assert row["pct_non_white"] == pytest.approx(0.2)
    assert row["category"] == "unchanged"


def test_merged_counts_follow_registered_share(worked_example: pd.DataFrame) -> None:
    b = worked_example.loc[LSOA_B]
    c = worked_example.loc[LSOA_C]

    assert b["total_popn"] == pytest.approx(120)
    assert b["total_white"] == pytest.approx(60)
    assert c["total_popn"] == pytest.approx(180)
    assert c["total_white"] == pytest.approx(90)
    assert b["pct_non_white"] == pytest.approx(0.5)
    assert c["pct_non_white"] == pytest.approx(0.5)


def test_output_schema(worked_example: pd.DataFrame) -> None:
    assert list(worked_example.reset_index().columns) == config.APPORTIONED_COLUMNS
    assert worked_example.index.is_unique


def test_merged_shares_sum_to_one() -> None:
    mapping = make_lookup([(LSOA_B, LSOA21_D, "M"), (LSOA_C, LSOA21_D, "M")])
    registrations = make_registrations([("X", LSOA_B, 25), ("Y", LSOA_B, 15), ("Y", LSOA_C, 60)])

    shares = merged_shares(registrations, mapping).set_index("lsoa11cd")["share"]

    assert shares[LSOA_B] == pytest.approx(0.4)
    assert shares[LSOA_C] == pytest.approx(0.6)
    assert shares.sum() == pytest.approx(1.0)


def test_merged_conserves_lsoa21_totals() -> None:
    lookup = make_lookup([
        ("E01000011", "E01100009", "M"),
        ("E01000012", "E01100009", "M"),
        ("E01000013", "E01100009", "M"),
    ])
    ethnicity = make_ethnicity([("E01100009", 1234, 977)])
    registrations = make_registrations([
        ("X", "E01000011", 7),
        ("Y", "E01000012", 311),
        ("Z", "E01000013", 52),
    ])

    out = _apportion(lookup, ethnicity, registrations)

    assert out["total_popn"].sum() == pytest.approx(1234)
    assert out["total_white"].sum() == pytest.approx(977)


# ---------------------------------------------------------------------------
# Split and irregular


def test_split_accumulates_every_linked_lsoa21() -> None:
    mapping = make_lookup([("E01000010", "E01100010", "S"), ("E01000010", "E01100011", "S")])
    ethnicity = make_ethnicity([("E01100010", 100, 90), ("E01100011", 50, 20)])

    out = apportion_split(ethnicity, mapping)

    assert len(out) == 1
    assert out["total_popn"].iloc[0] == 150
    assert out["total_white"].iloc[0] == 110


def test_split_replicates_shared_lsoa21_without_normalising() -> None:
    lookup = make_lookup([("E01000010", "E01100010", "S"), ("E01000011", "E01100010", "S")])
    ethnicity = make_ethnicity([("E01100010", 200, 150)])

    out = _apportion(lookup, ethnicity, make_registrations([]))

    assert out["total_popn"].tolist() == [200, 200]
    assert out["total_popn"].sum() == 200 * 2
    assert (out["category"] == "split").all()


def test_irregular_override_is_identity() -> None:
    lookup = make_lookup([("E01008187", "E01099999", "X")])
    ethnicity = make_ethnicity([("E01035624", 40, 10), ("E01099999", 1, 1)])

    out = _apportion(lookup, ethnicity, make_registrations([]), overrides=(("E01008187", "E01035624"),))

    row = out.loc["E01008187"]
    assert row["category"] == "irregular"
    assert row["chgind"] == "U"
    assert row["total_popn"] == 40
    assert row["pct_non_white"] == pytest.approx(0.75)


def test_lsoa21_missing_from_census_drops_out() -> None:
    lookup = make_lookup([(LSOA_A, LSOA21_A, "U"), (LSOA_B, "E01100077", "U")])
    ethnicity = make_ethnicity([(LSOA21_A, 100, 80)])

    out = _apportion(lookup, ethnicity, make_registrations([]))

    assert out.index.tolist() == [LSOA_A]


# ---------------------------------------------------------------------------
# Degenerate and invalid input


def _zero_weight_inputs():
    lookup = make_lookup([(LSOA_B, LSOA21_D, "M"), (LSOA_C, LSOA21_D, "M"), (LSOA_A, LSOA21_A, "U")])
    ethnicity = make_ethnicity([(LSOA21_D, 300, 150), (LSOA21_A, 100, 80)])
    registrations = make_registrations([("X", LSOA_B, 0), ("Y", LSOA_C, 0), ("X", LSOA_A, 5)])
    return lookup, ethnicity, registrations


def test_degenerate_merge_propagates_undefined(caplog: pytest.LogCaptureFixture) -> None:
    lookup, ethnicity, registrations = _zero_weight_inputs()

    with caplog.at_level(logging.WARNING, logger="apportion"):
        out = _apportion(lookup, ethnicity, registrations, on_degenerate="propagate")

    assert out.loc[[LSOA_B, LSOA_C], "total_popn"].isna().all()
    assert out.loc[[LSOA_B, LSOA_C], "pct_non_white"].isna().all()
    assert out.loc[LSOA_A, "pct_non_white"] == pytest.approx(0.2)
    assert LSOA_B in caplog.text


def test_degenerate_merge_abort_names_offenders() -> None:
    lookup, ethnicity, registrations = _zero_weight_inputs()

    with pytest.raises(DegenerateMergeError) as excinfo:
        _apportion(lookup, ethnicity, registrations, on_degenerate="abort")

    assert excinfo.value.lsoa21_codes == [LSOA21_D]
    assert excinfo.value.lsoa11_codes == [LSOA_B, LSOA_C]
    assert isinstance(excinfo.value, ValueError)


def test_unknown_policy_rejected() -> None:
    lookup, ethnicity, registrations = _zero_weight_inputs()
    with pytest.raises(ValueError, match="policy"):
        _apportion(lookup, ethnicity, registrations, on_degenerate="ignore")


def test_lsoa11_in_two_categories_is_fatal() -> None:
    # Same LSOA11 listed unchanged and split: the partition is broken upstream
    lookup = make_lookup([(LSOA_A, LSOA21_A, "U"), (LSOA_A, LSOA21_D, "S")])
    ethnicity = make_ethnicity([(LSOA21_A, 100, 80), (LSOA21_D, 300, 150)])

    with pytest.raises(ValueError, match=LSOA_A):
        _apportion(lookup, ethnicity, make_registrations([]))


def test_zero_total_population_gives_undefined_share() -> None:
    lookup = make_lookup([(LSOA_A, LSOA21_A, "U")])
    ethnicity = make_ethnicity([(LSOA21_A, 0, 0)])

    out = _apportion(lookup, ethnicity, make_registrations([]))

    assert np.isnan(out.loc[LSOA_A, "pct_non_white"])


def test_non_white_share_formula() -> None:
    share = non_white_share(pd.Series([80.0, 0.0, 150.0]), pd.Series([100.0, 0.0, 300.0]))
    assert share.iloc[0] == pytest.approx(0.2)
    assert np.isnan(share.iloc[1])
    assert share.iloc[2] == pytest.approx(0.5)


# ---------------------------------------------------------------------------
# Randomised bounds


@pytest.mark.parametrize("seed", [0, 1, 2])
def test_shares_stay_within_bounds_for_random_inputs(seed: int) -> None:
    rng = np.random.default_rng(seed)
    n_lsoa21 = 30

    lsoa21 = [f"E0120{i:04d}" for i in range(n_lsoa21)]
    totals = rng.integers(1, 5000, size=n_lsoa21)
    whites = rng.integers(0, totals + 1)
    ethnicity = make_ethnicity(list(zip(lsoa21, totals, whites)))

    rows = []
    registrations = []
    next_lsoa11 = 0
    for code in lsoa21:
        kind = rng.choice(["U", "S", "M"])
        n_old = 1 if kind == "U" else int(rng.integers(2, 5))
        for _ in range(n_old):
            old = f"E0110{next_lsoa11:04d}"
            next_lsoa11 += 1
            rows.append((old, code, kind))
            registrations.append(("P", old, int(rng.integers(1, 1000))))

    out = _apportion(make_lookup(rows), ethnicity, make_registrations(registrations))

    share = out["pct_non_white"]
    assert share.notna().all()
    assert ((share >= -1e-12) & (share <= 1 + 1e-12)).all()
    assert out.index.is_unique
