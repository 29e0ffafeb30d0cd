"""
Core transform: classify → apportion → aggregate.

Each step returns new frames; nothing produced here is modified afterwards.
"""

import logging
from dataclasses import dataclass

import pandas as pd

from pcn_ethnicity.config import Settings
from pcn_ethnicity.ingest.sources import SourceTables
from pcn_ethnicity.reporting import PipelineReporter
from pcn_ethnicity.transform.aggregate import pcn_ethnicity, practice_ethnicity
from pcn_ethnicity.transform.apportion import apportion_ethnicity
from pcn_ethnicity.transform.boundary_changes import BoundaryChanges, classify_boundary_changes

log = logging.getLogger("ethnicity_transform")


@dataclass(frozen=True)
class TransformResult:
    changes: BoundaryChanges
    apportioned: pd.DataFrame
    practice_summary: pd.DataFrame
    pcn_summary: pd.DataFrame


def run_transform(sources: SourceTables, settings: Settings, reporter: PipelineReporter = None) -> TransformResult:
    """Run the boundary reconciliation and the practice / PCN rollup"""
    log.info("\n--- Classifying LSOA boundary changes ---")
    changes = classify_boundary_changes(
        sources.lookup,
        overrides=settings.irregular_overrides,
        jurisdiction_prefix=settings.jurisdiction_prefix,
    )

    log.info("\n--- Apportioning LSOA21 ethnicity to LSOA11 ---")
    apportioned = apportion_ethnicity(
        sources.ethnicity,
        changes,
        sources.registrations,
        on_degenerate=settings.on_degenerate_merge,
    )

    log.info("\n--- Aggregating to practices and PCNs ---")
    practice_summary = practice_ethnicity(sources.registrations, apportioned)
    pcn_summary = pcn_ethnicity(practice_summary, sources.pcn_members)

    if reporter is not None:
        for key, value in changes.counts().items():
            reporter.add_metric(f"lookup_{key}", value)
        if changes.unrecognised:
            reporter.add_warning(f"{changes.unrecognised} lookup rows with unrecognised change indicator dropped")

        for name, label, frame in [
            ("lsoa11_ethnicity", "LSOA11", apportioned),
            ("practice_summary", "practices", practice_summary),
            ("pcn_summary", "PCNs", pcn_summary),
        ]:
            undefined = reporter.record_table(name, frame)["undefined_shares"]
            if undefined:
                reporter.add_warning(f"{undefined} {label} with undefined non-white share")

    return TransformResult(
        changes=changes,
        apportioned=apportioned,
        practice_summary=practice_summary,
        pcn_summary=pcn_summary,
    )
