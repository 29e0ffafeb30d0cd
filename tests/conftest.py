"""Shared fixtures: a small synthetic LSOA / practice / PCN world."""

from __future__ import annotations

import sys
from pathlib import Path

import pandas as pd
import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from pcn_ethnicity import config
from pcn_ethnicity.ingest.sources import SourceTables

# LSOA 2011 codes
LSOA_A = "E01000001"   # unchanged
LSOA_B = "E01000002"   # merged into D21
LSOA_C = "E01000003"   # merged into D21
LSOA_WALES = "W01000001"

# LSOA 2021 codes
LSOA21_A = "E01100001"
LSOA21_D = "E01100004"
LSOA21_WALES = "W01100001"


def make_lookup(rows) -> pd.DataFrame:
    return pd.DataFrame(rows, columns=config.LOOKUP_COLUMNS)


def make_ethnicity(rows) -> pd.DataFrame:
    return pd.DataFrame(rows, columns=config.ETHNICITY_COLUMNS)


def make_registrations(rows) -> pd.DataFrame:
    return pd.DataFrame(rows, columns=config.REGISTRATION_COLUMNS)


@pytest.fixture
def scenario_sources() -> SourceTables:
    """
    A (U) from A21: 100 residents, 80 White.
    B, C (M) from D21: 300 residents, 150 White; registered 60 / 90 → 0.4 / 0.6.
    Practice X: 40 patients in A, 60 in B. Practice Y: 90 in C.
    Practice Z: 10 in A, no PCN.  PCN P1 = {X, Y}.
    """
    lookup = make_lookup([
        (LSOA_A, LSOA21_A, "U"),
        (LSOA_B, LSOA21_D, "M"),
        (LSOA_C, LSOA21_D, "M"),
        (LSOA_WALES, LSOA21_WALES, "U"),
    ])
    ethnicity = make_ethnicity([
        (LSOA21_A, 100, 80),
        (LSOA21_D, 300, 150),
        (LSOA21_WALES, 50, 50),
    ])
    registrations = make_registrations([
        ("X", LSOA_A, 40),
        ("X", LSOA_B, 60),
        ("Y", LSOA_C, 90),
        ("Z", LSOA_A, 10),
    ])
    practices = pd.DataFrame(
        [
            ("X", "Riverside Surgery", "AB1 2CD", "15N"),
            ("Y", "Hillview Practice", "AB3 4EF", "15N"),
        ],
        columns=config.PRACTICE_COLUMNS,
    )
    pcns = pd.DataFrame([("P1", "Riverside PCN", "15N", "AB1 2CD")], columns=config.PCN_COLUMNS)
    pcn_members = pd.DataFrame([("X", "P1"), ("Y", "P1")], columns=config.MEMBER_COLUMNS)

    return SourceTables(
        lookup=lookup,
        practices=practices,
        pcns=pcns,
        pcn_members=pcn_members,
        registrations=registrations,
        ethnicity=ethnicity,
    )


# ---------------------------------------------------------------------------
# On-disk sources in the published layouts


def _padded(values: dict, width: int, fill=""):
    row = [fill] * width
    for position, value in values.items():
        row[position] = value
    return row


def write_source_files(data_dir: Path, sources: SourceTables) -> Path:
    """Write sources to data_dir using the published file layouts"""
    data_dir.mkdir(parents=True, exist_ok=True)

    lookup = pd.DataFrame({
        "LSOA11CD": sources.lookup["lsoa11cd"],
        "LSOA11NM": "name 2011",
        "LSOA21CD": sources.lookup["lsoa21cd"],
        "LSOA21NM": "name 2021",
        "CHGIND": sources.lookup["chgind"],
        "LAD22CD": "E06000001",
    })
    lookup.to_csv(data_dir / config.LOOKUP_FILE, index=False)

    practice_rows = [
        _padded({0: r.practice_code, 1: r.practice_name, 9: r.postcode, 12: "A", 14: r.subicb_code, 25: "4"}, 27)
        for r in sources.practices.itertuples()
    ]
    # Closed practice and a non-GP prescribing setting, both filtered out
    practice_rows.append(_padded({0: "CLOSED", 1: "Old Surgery", 9: "ZZ1 1ZZ", 12: "C", 14: "15N", 25: "4"}, 27))
    practice_rows.append(_padded({0: "OOH", 1: "Out of Hours", 9: "ZZ2 2ZZ", 12: "A", 14: "15N", 25: "8"}, 27))
    pd.DataFrame(practice_rows).to_csv(data_dir / config.PRACTICE_FILE, index=False, header=False)

    pcn_columns = [f"pcn_col_{i}" for i in range(12)]
    pcn_rows = [
        _padded({0: r.pcn_code, 1: r.pcn_name, 2: r.subicb_code, 5: None, 11: r.postcode}, 12, fill=None)
        for r in sources.pcns.itertuples()
    ]
    pcn_rows.append(_padded({0: "P_CLOSED", 1: "Closed PCN", 2: "15N", 5: "2022-03-31", 11: "ZZ1 1ZZ"}, 12, fill=None))
    member_columns = [f"member_col_{i}" for i in range(10)]
    member_rows = [
        _padded({0: r.practice_code, 4: r.pcn_code, 9: None}, 10, fill=None)
        for r in sources.pcn_members.itertuples()
    ]
    member_rows.append(_padded({0: "Z", 4: "P_OLD", 9: "2021-06-30"}, 10, fill=None))
    with pd.ExcelWriter(data_dir / config.PCN_FILE) as writer:
        pd.DataFrame(pcn_rows, columns=pcn_columns).to_excel(
            writer, sheet_name=config.PCN_DETAILS_SHEET, index=False
        )
        pd.DataFrame(member_rows, columns=member_columns).to_excel(
            writer, sheet_name=config.PCN_MEMBER_SHEET, index=False
        )

    registrations = pd.DataFrame({
        "PUBLICATION": "GP_PRAC_PAT_LIST",
        "EXTRACT_DATE": "01JUN2023",
        "PRACTICE_CODE": sources.registrations["practice_code"],
        "PRACTICE_NAME": "practice",
        "LSOA_CODE": sources.registrations["lsoa11cd"],
        "SEX": "ALL",
        "NUMBER_OF_PATIENTS": sources.registrations["reg_popn"],
    })
    no_lsoa = pd.DataFrame([{
        "PUBLICATION": "GP_PRAC_PAT_LIST", "EXTRACT_DATE": "01JUN2023", "PRACTICE_CODE": "X",
        "PRACTICE_NAME": "practice", "LSOA_CODE": config.NO_LSOA_CODE, "SEX": "ALL", "NUMBER_OF_PATIENTS": 5,
    }])
    pd.concat([registrations, no_lsoa], ignore_index=True).to_csv(data_dir / config.REGISTRATION_FILE, index=False)

    census_columns = ["date", "geography", "geography code"] + [f"Ethnic group: {i}" for i in range(3, 24)]
    census_rows = [
        _padded({0: 2021, 1: "area", 2: r.lsoa21cd, 3: r.total_popn, 19: r.total_white}, len(census_columns))
        for r in sources.ethnicity.itertuples()
    ]
    pd.DataFrame(census_rows, columns=census_columns).to_csv(data_dir / config.CENSUS_FILE, index=False)

    return data_dir


@pytest.fixture
def source_dir(tmp_path: Path, scenario_sources: SourceTables) -> Path:
    return write_source_files(tmp_path / "data", scenario_sources)


@pytest.fixture
def settings(tmp_path: Path, source_dir: Path) -> config.Settings:
    return config.Settings(
        data_dir=source_dir,
        output_dir=tmp_path / "outputs",
        lake_dir=tmp_path / "lake",
        log_dir=tmp_path / "logs",
        jurisdiction_prefix="E",
        irregular_overrides=(),
        on_degenerate_merge="propagate",
        write_warehouse=True,
    )
