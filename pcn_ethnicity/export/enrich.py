"""
Attach practice / PCN details to the aggregated tables and write outputs.

Outputs:
- outputs/practice_ethnicity.csv
- outputs/pcn_ethnicity.csv
- warehouse.duckdb: gold.practice_ethnicity, gold.pcn_ethnicity
"""

import logging
from pathlib import Path
from typing import Dict

import pandas as pd

from pcn_ethnicity import config
from pcn_ethnicity.warehouse import write_duck

log = logging.getLogger("enrich_export")

PRACTICE_DEFAULTS = {"practice_name": config.UNKNOWN, "postcode": config.UNKNOWN, "subicb_code": config.UNKNOWN_REGION}
PCN_DEFAULTS = {"pcn_name": config.UNKNOWN, "postcode": config.UNKNOWN, "subicb_code": config.UNKNOWN_REGION}


def _enrich(summary: pd.DataFrame, details: pd.DataFrame, key: str, columns, defaults: Dict[str, str]) -> pd.DataFrame:
    details = details.drop_duplicates(subset=[key])
    enriched = summary.merge(details, on=key, how="left")

    unmatched = enriched[list(defaults)].isna().all(axis=1).sum()
    if unmatched:
        log.warning(f"{unmatched} {key} values have no current details; defaulted to '{config.UNKNOWN}'")

    return enriched[columns].fillna(defaults)


def enrich_practices(practice_summary: pd.DataFrame, practices: pd.DataFrame) -> pd.DataFrame:
    """Add practice name, postcode and sub-ICB code (left join)"""
    return _enrich(
        practice_summary,
        practices[config.PRACTICE_COLUMNS],
        "practice_code",
        config.PRACTICE_OUTPUT_COLUMNS,
        PRACTICE_DEFAULTS,
    )


def enrich_pcns(pcn_summary: pd.DataFrame, pcns: pd.DataFrame) -> pd.DataFrame:
    """Add PCN name, postcode and sub-ICB code (left join)"""
    return _enrich(
        pcn_summary,
        pcns[config.PCN_COLUMNS],
        "pcn_code",
        config.PCN_OUTPUT_COLUMNS,
        PCN_DEFAULTS,
    )


def write_outputs(practice_out: pd.DataFrame, pcn_out: pd.DataFrame, output_dir: Path) -> Dict[str, Path]:
    """Write the practice and PCN tables as CSV"""
    output_dir.mkdir(parents=True, exist_ok=True)

    paths = {
        "practice": output_dir / "practice_ethnicity.csv",
        "pcn": output_dir / "pcn_ethnicity.csv",
    }
    practice_out.to_csv(paths["practice"], index=False)
    log.info(f"✓ Saved CSV → {paths['practice']} ({len(practice_out)} rows)")
    pcn_out.to_csv(paths["pcn"], index=False)
    log.info(f"✓ Saved CSV → {paths['pcn']} ({len(pcn_out)} rows)")
    return paths


def write_gold(practice_out: pd.DataFrame, pcn_out: pd.DataFrame, duck_path: Path):
    write_duck("gold.practice_ethnicity", practice_out, duck_path)
    write_duck("gold.pcn_ethnicity", pcn_out, duck_path)
