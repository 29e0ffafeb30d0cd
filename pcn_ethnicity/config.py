"""
Configuration for the practice / PCN ethnicity converter.

Module-level defaults can be overridden from the process environment or a
.env file in the working directory. Use Settings.from_env() to snapshot the
effective configuration for one run.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Tuple

from dotenv import load_dotenv

load_dotenv()

# -----------------------------
# Paths
# -----------------------------
DATA_DIR = Path(os.getenv("PCN_ETHNICITY_DATA_DIR", "data"))
OUTPUT_DIR = Path(os.getenv("PCN_ETHNICITY_OUTPUT_DIR", "outputs"))
LAKE_DIR = Path(os.getenv("PCN_ETHNICITY_LAKE_DIR", "data/lake"))
LOG_DIR = Path(os.getenv("PCN_ETHNICITY_LOG_DIR", "data/logs"))

LOOKUP_FILE = "LSOA_(2011)_to_LSOA_(2021)_to_Local_Authority_District_(2022)_Lookup_for_England_and_Wales.csv"
PRACTICE_FILE = "epraccur.csv"
PCN_FILE = "ePCN.xlsx"
REGISTRATION_FILE = "gp-reg-pat-prac-lsoa-all.csv"
CENSUS_FILE = "census2021-ts021-lsoa.csv"

PCN_DETAILS_SHEET = "PCNDetails"
PCN_MEMBER_SHEET = "PCN Core Partner Details"

# -----------------------------
# Boundary changes
# -----------------------------
JURISDICTION_PREFIX = os.getenv("PCN_ETHNICITY_JURISDICTION", "E")

# Nine LSOAs have irregular (X) mappings. A manual review leaves these six as
# the best fit; all are effectively 1:1 even though the boundaries moved.
IRREGULAR_OVERRIDES: Tuple[Tuple[str, str], ...] = (
    ("E01008187", "E01035624"),
    ("E01023508", "E01035609"),
    ("E01023679", "E01035581"),
    ("E01023768", "E01035582"),
    ("E01023964", "E01035608"),
    ("E01027506", "E01035637"),
)

ON_DEGENERATE_MERGE = os.getenv("PCN_ETHNICITY_ON_DEGENERATE_MERGE", "propagate")
DEGENERATE_MERGE_POLICIES = ("propagate", "abort")

# -----------------------------
# Source filters
# -----------------------------
ACTIVE_PRACTICE_STATUS = "A"
GP_PRESCRIBING_SETTING = 4
NO_LSOA_CODE = "NO2011"

# -----------------------------
# Output defaults
# -----------------------------
UNKNOWN = "Unknown"
UNKNOWN_REGION = "UNK"

# -----------------------------
# Column schemas
# -----------------------------
LOOKUP_COLUMNS = ["lsoa11cd", "lsoa21cd", "chgind"]
ETHNICITY_COLUMNS = ["lsoa21cd", "total_popn", "total_white"]
REGISTRATION_COLUMNS = ["practice_code", "lsoa11cd", "reg_popn"]
PRACTICE_COLUMNS = ["practice_code", "practice_name", "postcode", "subicb_code"]
PCN_COLUMNS = ["pcn_code", "pcn_name", "subicb_code", "postcode"]
MEMBER_COLUMNS = ["practice_code", "pcn_code"]
APPORTIONED_COLUMNS = ["lsoa11cd", "chgind", "category", "total_popn", "total_white", "pct_non_white"]
PRACTICE_SUMMARY_COLUMNS = ["practice_code", "non_white_popn", "reg_popn", "pct_non_white"]
PCN_SUMMARY_COLUMNS = ["pcn_code", "non_white_popn", "reg_popn", "pct_non_white"]
PRACTICE_OUTPUT_COLUMNS = [
    "practice_code", "practice_name", "postcode", "subicb_code",
    "non_white_popn", "reg_popn", "pct_non_white",
]
PCN_OUTPUT_COLUMNS = [
    "pcn_code", "pcn_name", "postcode", "subicb_code",
    "non_white_popn", "reg_popn", "pct_non_white",
]


def _env_fraction(name: str) -> Optional[float]:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return None
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number between 0 and 1, got {raw!r}") from None


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    """Effective configuration for one pipeline run."""

    data_dir: Path = DATA_DIR
    output_dir: Path = OUTPUT_DIR
    lake_dir: Path = LAKE_DIR
    log_dir: Path = LOG_DIR
    jurisdiction_prefix: Optional[str] = JURISDICTION_PREFIX
    irregular_overrides: Tuple[Tuple[str, str], ...] = field(default=IRREGULAR_OVERRIDES)
    on_degenerate_merge: str = ON_DEGENERATE_MERGE
    write_warehouse: bool = True
    # QA gate on the share of registered patients with no LSOA11 share; None only warns
    max_unmatched_share: Optional[float] = None

    def __post_init__(self):
        if self.on_degenerate_merge not in DEGENERATE_MERGE_POLICIES:
            raise ValueError(
                f"on_degenerate_merge must be one of {DEGENERATE_MERGE_POLICIES}, "
                f"got {self.on_degenerate_merge!r}"
            )
        if self.max_unmatched_share is not None and not 0 <= self.max_unmatched_share <= 1:
            raise ValueError(f"max_unmatched_share must be between 0 and 1, got {self.max_unmatched_share}")

    @classmethod
    def from_env(cls, **overrides) -> "Settings":
        prefix = os.getenv("PCN_ETHNICITY_JURISDICTION", JURISDICTION_PREFIX)
        values = dict(
            data_dir=Path(os.getenv("PCN_ETHNICITY_DATA_DIR", str(DATA_DIR))),
            output_dir=Path(os.getenv("PCN_ETHNICITY_OUTPUT_DIR", str(OUTPUT_DIR))),
            lake_dir=Path(os.getenv("PCN_ETHNICITY_LAKE_DIR", str(LAKE_DIR))),
            log_dir=Path(os.getenv("PCN_ETHNICITY_LOG_DIR", str(LOG_DIR))),
            jurisdiction_prefix=prefix or None,
            on_degenerate_merge=os.getenv("PCN_ETHNICITY_ON_DEGENERATE_MERGE", ON_DEGENERATE_MERGE),
            write_warehouse=_env_flag("PCN_ETHNICITY_WRITE_WAREHOUSE", True),
            max_unmatched_share=_env_fraction("PCN_ETHNICITY_MAX_UNMATCHED_SHARE"),
        )
        values.update(overrides)
        return cls(**values)

    @property
    def duck_path(self) -> Path:
        return self.lake_dir / "warehouse.duckdb"

    @property
    def lookup_path(self) -> Path:
        return self.data_dir / LOOKUP_FILE

    @property
    def practice_path(self) -> Path:
        return self.data_dir / PRACTICE_FILE

    @property
    def pcn_path(self) -> Path:
        return self.data_dir / PCN_FILE

    @property
    def registration_path(self) -> Path:
        return self.data_dir / REGISTRATION_FILE

    @property
    def census_path(self) -> Path:
        return self.data_dir / CENSUS_FILE
