"""Per-stage status summaries written next to the pipeline log."""

import json
import logging
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List

import pandas as pd

log = logging.getLogger("pipeline_reporter")

SHARE_COLUMN = "pct_non_white"


class PipelineReporter:
    """
    Collects what one stage produced: table sizes, undefined shares, metrics,
    warnings and critical errors.

    Status is derived, never set: failed if any critical error was raised,
    warning if anything was flagged, success otherwise.
    """

    def __init__(self, stage_name: str):
        self.stage = stage_name
        self.start_time = time.time()
        self.warnings: List[str] = []
        self.critical_errors: List[str] = []
        self.metrics: Dict[str, object] = {}
        self.tables: Dict[str, Dict[str, int]] = {}

    @property
    def status(self) -> str:
        if self.critical_errors:
            return "failed"
        return "warning" if self.warnings else "success"

    def add_warning(self, message: str):
        self.warnings.append(message)
        log.warning(f"⚠️  [{self.stage}] {message}")

    def add_critical_error(self, message: str):
        self.critical_errors.append(message)
        log.error(f"❌ CRITICAL [{self.stage}]: {message}")

    def add_metric(self, key: str, value):
        self.metrics[key] = value

    def record_table(self, name: str, df: pd.DataFrame) -> Dict[str, int]:
        """Row count, plus undefined non-white shares for tables that carry one"""
        entry = {"rows": len(df)}
        if SHARE_COLUMN in df.columns:
            entry["undefined_shares"] = int(df[SHARE_COLUMN].isna().sum())
        self.tables[name] = entry
        return entry

    def finalize(self) -> Dict:
        return {
            "stage": self.stage,
            "status": self.status,
            "finished_at": datetime.now(timezone.utc).isoformat(),
            "duration_seconds": round(time.time() - self.start_time, 2),
            "tables": self.tables,
            "metrics": self.metrics,
            "warnings": self.warnings,
            "critical_errors": self.critical_errors,
        }

    def save(self, log_dir: Path, filename: str) -> Path:
        """Write the stage summary as JSON and return its path"""
        log_dir.mkdir(parents=True, exist_ok=True)
        output_path = log_dir / filename
        with open(output_path, 'w') as f:
            json.dump(self.finalize(), f, indent=2, default=str)

        log.info(f"✓ {self.stage} summary → {output_path}")
        return output_path
