"""DuckDB warehouse helpers (bronze / silver / gold / metadata schemas)."""

import logging
from pathlib import Path

import duckdb
import pandas as pd

log = logging.getLogger("warehouse")


def _split_table_name(table_fullname: str):
    return table_fullname.split(".", 1) if "." in table_fullname else ("main", table_fullname)


def write_duck(table_fullname: str, df: pd.DataFrame, duck_path: Path):
    """Write dataframe to DuckDB with schema support"""
    schema, table = _split_table_name(table_fullname)

    duck_path.parent.mkdir(parents=True, exist_ok=True)
    con = duckdb.connect(str(duck_path))
    try:
        if schema != "main":
            con.execute(f"CREATE SCHEMA IF NOT EXISTS {schema}")
        con.register("df_tmp", df)
        con.execute(f"CREATE OR REPLACE TABLE {schema}.{table} AS SELECT * FROM df_tmp")
        con.unregister("df_tmp")
        log.info(f"✓ Wrote {len(df)} rows to {schema}.{table}")
    finally:
        con.close()


def read_duck(table_fullname: str, duck_path: Path) -> pd.DataFrame:
    """Read a whole warehouse table"""
    schema, table = _split_table_name(table_fullname)

    if not duck_path.exists():
        raise FileNotFoundError(f"Warehouse not found: {duck_path}")

    con = duckdb.connect(str(duck_path), read_only=True)
    try:
        return con.execute(f"SELECT * FROM {schema}.{table}").fetchdf()
    finally:
        con.close()
