"""
Source ingest for the ethnicity converter.

Loads the five published inputs, selects and renames the fields the
converter needs and applies the source-level filters:

- ONS LSOA (2011) → LSOA (2021) lookup, English LSOAs handled downstream
- NHS ODS epraccur (active GP practices only)
- NHS ODS ePCN workbook (open PCNs, current core partner memberships)
- NHS Digital GP registrations by practice and LSOA 2011
- Census 2021 TS021 ethnic group by LSOA 2021 (total and White)

Any missing file, missing column or non-numeric count is fatal: the core
transform assumes fully typed inputs.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Sequence

import pandas as pd

from pcn_ethnicity import config
from pcn_ethnicity.warehouse import write_duck

log = logging.getLogger("source_ingest")

# Published column positions (0-based) for files whose headers are absent or unwieldy
PRACTICE_POSITIONS = (0, 1, 9, 12, 14, 25)
PCN_DETAIL_POSITIONS = (0, 1, 2, 5, 11)
PCN_MEMBER_POSITIONS = (0, 4, 9)
CENSUS_POSITIONS = (2, 3, 19)

LOOKUP_SOURCE_COLUMNS = {"LSOA11CD": "lsoa11cd", "LSOA21CD": "lsoa21cd", "CHGIND": "chgind"}
REGISTRATION_SOURCE_COLUMNS = {
    "PRACTICE_CODE": "practice_code",
    "LSOA_CODE": "lsoa11cd",
    "NUMBER_OF_PATIENTS": "reg_popn",
}


@dataclass(frozen=True)
class SourceTables:
    lookup: pd.DataFrame
    practices: pd.DataFrame
    pcns: pd.DataFrame
    pcn_members: pd.DataFrame
    registrations: pd.DataFrame
    ethnicity: pd.DataFrame


# -----------------------------
# Helper Functions
# -----------------------------

def _require_file(path: Path, source: str):
    if not path.exists():
        log.error(f"{source} file not found: {path}")
        raise FileNotFoundError(f"Required {source} file missing: {path}")


def _clean_headers(df: pd.DataFrame) -> pd.DataFrame:
    """Strip BOM and whitespace from column names"""
    df.columns = [str(col).replace('\ufeff', '').strip() for col in df.columns]
    return df


def _select_named(df: pd.DataFrame, columns: dict, source: str) -> pd.DataFrame:
    missing = [c for c in columns if c not in df.columns]
    if missing:
        log.error(f"{source} missing columns: {missing}")
        raise ValueError(f"{source} file incomplete: missing {missing}")
    return df[list(columns)].rename(columns=columns)


def _select_positional(df: pd.DataFrame, positions: Sequence[int], names: List[str], source: str) -> pd.DataFrame:
    if df.shape[1] <= max(positions):
        raise ValueError(
            f"{source} has {df.shape[1]} columns, expected at least {max(positions) + 1}"
        )
    selected = df.iloc[:, list(positions)].copy()
    selected.columns = names
    return selected


def _strip_codes(df: pd.DataFrame, columns: List[str]) -> pd.DataFrame:
    for col in columns:
        codes = df[col]
        df[col] = codes.where(codes.isna(), codes.astype(str).str.strip())
    return df


def _to_count(df: pd.DataFrame, value_col: str, key_col: str, source: str) -> pd.DataFrame:
    """Coerce a count column to int64, failing loudly on anything non-numeric"""
    values = pd.to_numeric(df[value_col], errors="coerce")
    bad = values.isna() | (values < 0)
    if bad.any():
        offenders = df.loc[bad, key_col].astype(str).unique().tolist()
        log.error(f"{source}: {int(bad.sum())} invalid {value_col} values")
        raise ValueError(
            f"{source} has missing, non-numeric or negative {value_col} for: {offenders[:10]}"
        )
    df[value_col] = values.astype("int64")
    return df


# -----------------------------
# Loaders
# -----------------------------

def load_lookup(path: Path) -> pd.DataFrame:
    """Load the ONS LSOA11 → LSOA21 change lookup"""
    _require_file(path, "LSOA lookup")

    lookup = _clean_headers(pd.read_csv(path, dtype=str))
    lookup = _select_named(lookup, LOOKUP_SOURCE_COLUMNS, "LSOA lookup")
    lookup = _strip_codes(lookup, config.LOOKUP_COLUMNS)
    lookup = lookup.dropna(subset=["lsoa11cd", "lsoa21cd"]).reset_index(drop=True)

    log.info(f"Loaded lookup: {len(lookup)} LSOA11 → LSOA21 rows")
    return lookup


def load_practices(path: Path) -> pd.DataFrame:
    """Load current English GP practices (active, prescribing setting GP practice)"""
    _require_file(path, "GP practice")

    raw = pd.read_csv(path, header=None, dtype=str)
    practices = _select_positional(
        raw,
        PRACTICE_POSITIONS,
        ["practice_code", "practice_name", "postcode", "status_code", "subicb_code", "prescribing_code"],
        "GP practice",
    )
    practices = _strip_codes(practices, ["practice_code", "status_code"])
    prescribing = pd.to_numeric(practices["prescribing_code"], errors="coerce")

    active = (practices["status_code"] == config.ACTIVE_PRACTICE_STATUS) & (
        prescribing == config.GP_PRESCRIBING_SETTING
    )
    practices = practices[active].drop(columns=["status_code", "prescribing_code"])
    practices = practices.drop_duplicates(subset=["practice_code"]).reset_index(drop=True)

    log.info(f"Loaded {len(practices)} active GP practices ({len(raw) - len(practices)} filtered out)")
    return practices[config.PRACTICE_COLUMNS]


def load_pcns(path: Path, sheet: str = config.PCN_DETAILS_SHEET) -> pd.DataFrame:
    """Load open PCNs"""
    _require_file(path, "ePCN")

    raw = pd.read_excel(path, sheet_name=sheet)
    pcns = _select_positional(
        raw,
        PCN_DETAIL_POSITIONS,
        ["pcn_code", "pcn_name", "subicb_code", "close_date", "postcode"],
        f"ePCN sheet '{sheet}'",
    )
    pcns = pcns[pcns["close_date"].isna()].drop(columns=["close_date"])
    pcns = _strip_codes(pcns, ["pcn_code"])
    pcns = pcns.drop_duplicates(subset=["pcn_code"]).reset_index(drop=True)

    log.info(f"Loaded {len(pcns)} open PCNs")
    return pcns[config.PCN_COLUMNS]


def load_pcn_members(path: Path, sheet: str = config.PCN_MEMBER_SHEET) -> pd.DataFrame:
    """Load practices that are a current member of a PCN"""
    _require_file(path, "ePCN")

    raw = pd.read_excel(path, sheet_name=sheet)
    members = _select_positional(
        raw,
        PCN_MEMBER_POSITIONS,
        ["practice_code", "pcn_code", "depart_date"],
        f"ePCN sheet '{sheet}'",
    )
    members = members[members["depart_date"].isna()].drop(columns=["depart_date"])
    members = _strip_codes(members, config.MEMBER_COLUMNS)
    members = members.drop_duplicates(subset=config.MEMBER_COLUMNS).reset_index(drop=True)

    log.info(f"Loaded {len(members)} current PCN memberships")
    return members[config.MEMBER_COLUMNS]


def load_registrations(path: Path) -> pd.DataFrame:
    """Load GP registered patients by practice and LSOA 2011"""
    _require_file(path, "GP registration")

    raw = _clean_headers(pd.read_csv(path, dtype=str))
    registrations = _select_named(raw, REGISTRATION_SOURCE_COLUMNS, "GP registration")
    registrations = _strip_codes(registrations, ["practice_code", "lsoa11cd"])

    registrations = registrations.dropna(subset=["practice_code", "lsoa11cd"])

    # Only patients with a valid LSOA code
    registrations = registrations[registrations["lsoa11cd"] != config.NO_LSOA_CODE].copy()
    registrations = _to_count(registrations, "reg_popn", "practice_code", "GP registration")

    log.info(
        f"Loaded {len(registrations)} registration rows "
        f"({registrations['practice_code'].nunique()} practices, "
        f"{registrations['reg_popn'].sum():,} patients)"
    )
    return registrations.reset_index(drop=True)[config.REGISTRATION_COLUMNS]


def load_census(path: Path) -> pd.DataFrame:
    """Load Census 2021 TS021 total and White residents by LSOA 2021"""
    _require_file(path, "Census TS021")

    raw = pd.read_csv(path, dtype=str)
    ethnicity = _select_positional(raw, CENSUS_POSITIONS, config.ETHNICITY_COLUMNS, "Census TS021")
    ethnicity = _strip_codes(ethnicity, ["lsoa21cd"])
    ethnicity = _to_count(ethnicity, "total_popn", "lsoa21cd", "Census TS021")
    ethnicity = _to_count(ethnicity, "total_white", "lsoa21cd", "Census TS021")

    dups = ethnicity.duplicated(subset=["lsoa21cd"], keep=False)
    if dups.any():
        raise ValueError(
            f"Census TS021 has duplicate LSOA21 codes: {ethnicity.loc[dups, 'lsoa21cd'].unique().tolist()[:10]}"
        )

    over = ethnicity["total_white"] > ethnicity["total_popn"]
    if over.any():
        log.warning(f"{int(over.sum())} LSOA21 report more White residents than total residents")

    log.info(f"Loaded Census ethnicity for {len(ethnicity)} LSOA21")
    return ethnicity.reset_index(drop=True)


def load_sources(settings: config.Settings) -> SourceTables:
    """Load every input table for one run"""
    return SourceTables(
        lookup=load_lookup(settings.lookup_path),
        practices=load_practices(settings.practice_path),
        pcns=load_pcns(settings.pcn_path),
        pcn_members=load_pcn_members(settings.pcn_path),
        registrations=load_registrations(settings.registration_path),
        ethnicity=load_census(settings.census_path),
    )


def write_bronze(sources: SourceTables, duck_path: Path):
    """Persist the selected source tables to the bronze schema"""
    for name in ("lookup", "practices", "pcns", "pcn_members", "registrations", "ethnicity"):
        write_duck(f"bronze.{name}", getattr(sources, name), duck_path)
