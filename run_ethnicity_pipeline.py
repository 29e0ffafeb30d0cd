#!/usr/bin/env python3
"""
Practice & PCN Ethnicity Pipeline Orchestrator
==============================================

Converts Census 2021 ethnicity (LSOA 2021) to GP practice and PCN level via
LSOA 2011, GP registrations by LSOA and current PCN membership:

  Vintage → Ingest → Transform → QA → Export

- Fail-fast: any stage error or critical QA issue halts the run
- Logs and stage summaries persisted under data/logs/pipeline_<run_id>
- Input file hashes recorded so reruns show whether the sources changed

Usage:
    python3 run_ethnicity_pipeline.py
    python3 run_ethnicity_pipeline.py --stop-at qa
    python3 run_ethnicity_pipeline.py --on-degenerate-merge abort --no-warehouse
    python3 run_ethnicity_pipeline.py --data-dir ./data --output-dir ./outputs
    python3 run_ethnicity_pipeline.py --max-unmatched-share 0.02
"""

import argparse
import json
import logging
import sys
import time
from dataclasses import asdict, dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, List, Optional

from pcn_ethnicity import config
from pcn_ethnicity.export.enrich import enrich_pcns, enrich_practices, write_gold, write_outputs
from pcn_ethnicity.ingest.sources import SourceTables, load_sources, write_bronze
from pcn_ethnicity.manifest.data_vintage import InputVintageTracker
from pcn_ethnicity.qa.apportionment_qa import run_qa
from pcn_ethnicity.reporting import PipelineReporter
from pcn_ethnicity.transform.pipeline import TransformResult, run_transform
from pcn_ethnicity.warehouse import write_duck

log = logging.getLogger("ethnicity_pipeline")

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(message)s"


# -------------------------------------------------------------------
# ANSI COLORS
# -------------------------------------------------------------------

class Colors:
    HEADER = '\033[95m'
    BLUE = '\033[94m'
    CYAN = '\033[96m'
    GREEN = '\033[92m'
    YELLOW = '\033[93m'
    RED = '\033[91m'
    BOLD = '\033[1m'
    END = '\033[0m'


# -------------------------------------------------------------------
# STAGE RESULT DATACLASS
# -------------------------------------------------------------------

@dataclass
class StageResult:
    name: str
    status: str      # success / failed / skipped
    duration_seconds: float
    error_message: Optional[str] = None
    warnings: int = 0
    critical_issues: int = 0


# -------------------------------------------------------------------
# MAIN ORCHESTRATOR CLASS
# -------------------------------------------------------------------

class EthnicityPipeline:
    """Runs the ethnicity conversion stages in order with QA gating."""

    STAGE_ORDER = ['vintage', 'ingest', 'transform', 'qa', 'export']

    def __init__(self, settings: Optional[config.Settings] = None, stop_at: Optional[str] = None,
                 run_id: Optional[str] = None):
        self.stop_at = stop_at or 'export'
        if self.stop_at not in self.STAGE_ORDER:
            raise ValueError(f"Invalid stop stage: {self.stop_at}")

        self.settings = settings or config.Settings.from_env()
        self.results: List[StageResult] = []
        self.run_id = run_id or datetime.now().strftime("%Y%m%d_%H%M%S")

        self.log_dir = self.settings.log_dir / f"pipeline_{self.run_id}"
        self.log_dir.mkdir(parents=True, exist_ok=True)

        self.vintage_summary: Optional[dict] = None
        self.sources: Optional[SourceTables] = None
        self.transform: Optional[TransformResult] = None
        self.qa = None
        self.output_paths: dict = {}
        self.vintage_tracker: Optional[InputVintageTracker] = None

    # -------------------------------------------------------------------

    def _print_header(self):
        print(f"\n{Colors.HEADER}{'=' * 90}{Colors.END}")
        print(f"{Colors.HEADER}{Colors.BOLD}PRACTICE & PCN ETHNICITY PIPELINE{Colors.END}")
        print(f"{Colors.HEADER}{'=' * 90}{Colors.END}")
        print(f"{Colors.CYAN}Run ID: {self.run_id}{Colors.END}")

        stop_idx = self.STAGE_ORDER.index(self.stop_at)
        stages = " → ".join(s.upper() for s in self.STAGE_ORDER[:stop_idx + 1])

        print(f"{Colors.CYAN}Execution Chain: {stages}{Colors.END}")
        print(f"{Colors.CYAN}Logs stored at: {self.log_dir}{Colors.END}")
        print(f"{Colors.HEADER}{'=' * 90}{Colors.END}\n")

    # -------------------------------------------------------------------
    # STAGES
    # -------------------------------------------------------------------

    def _stage_vintage(self, reporter: PipelineReporter):
        if not self.settings.write_warehouse:
            log.info("Warehouse disabled; input vintage not tracked")
            return
        self.vintage_tracker = InputVintageTracker(self.settings.duck_path)
        self.vintage_summary = self.vintage_tracker.check_all(self.settings)
        reporter.add_metric("inputs_changed", self.vintage_summary["inputs_changed"])
        if not self.vintage_summary["new_data_detected"]:
            log.info("No input changed since the last exported run")

    def _stage_ingest(self, reporter: PipelineReporter):
        self.sources = load_sources(self.settings)
        for name in ("lookup", "practices", "pcns", "pcn_members", "registrations", "ethnicity"):
            reporter.record_table(name, getattr(self.sources, name))
        if self.settings.write_warehouse:
            write_bronze(self.sources, self.settings.duck_path)

    def _stage_transform(self, reporter: PipelineReporter):
        self.transform = run_transform(self.sources, self.settings, reporter)
        if self.settings.write_warehouse:
            write_duck("silver.lsoa11_ethnicity", self.transform.apportioned, self.settings.duck_path)

    def _stage_qa(self, reporter: PipelineReporter):
        self.qa = run_qa(self.transform, self.sources, max_unmatched_share=self.settings.max_unmatched_share)
        for key, value in self.qa.metrics.items():
            reporter.add_metric(key, value)
        for warning in self.qa.warnings:
            reporter.add_warning(warning)
        for issue in self.qa.issues:
            reporter.add_critical_error(issue)

    def _stage_export(self, reporter: PipelineReporter):
        practice_out = enrich_practices(self.transform.practice_summary, self.sources.practices)
        pcn_out = enrich_pcns(self.transform.pcn_summary, self.sources.pcns)

        self.output_paths = write_outputs(practice_out, pcn_out, self.settings.output_dir)
        if self.settings.write_warehouse:
            write_gold(practice_out, pcn_out, self.settings.duck_path)

        reporter.record_table("practice_ethnicity", practice_out)
        reporter.record_table("pcn_ethnicity", pcn_out)

        # Inputs count as seen only once they have produced outputs
        if self.vintage_tracker is not None:
            reporter.add_metric("inputs_recorded", self.vintage_tracker.commit())

    # -------------------------------------------------------------------

    def _run_stage(self, stage: str, fn: Callable[[PipelineReporter], None]) -> StageResult:
        print(f"\n{Colors.BLUE}{Colors.BOLD}{stage.upper()}{Colors.END}")
        print(f"{Colors.BLUE}{'-' * 60}{Colors.END}")

        reporter = PipelineReporter(stage)
        start = time.time()
        error_message = None
        try:
            fn(reporter)
        except Exception as e:
            log.exception(f"Stage {stage} failed")
            reporter.add_critical_error(f"{type(e).__name__}: {e}")
            error_message = f"{type(e).__name__}: {e}"

        reporter.save(self.log_dir, f"{stage}_summary.json")

        return StageResult(
            name=stage,
            status="failed" if reporter.status == "failed" else "success",
            duration_seconds=time.time() - start,
            error_message=error_message,
            warnings=len(reporter.warnings),
            critical_issues=len(reporter.critical_errors),
        )

    def run(self) -> bool:
        """Run the stages up to stop_at, halting on the first failure."""

        self._print_header()
        pipeline_start = time.time()

        stages = {
            'vintage': self._stage_vintage,
            'ingest': self._stage_ingest,
            'transform': self._stage_transform,
            'qa': self._stage_qa,
            'export': self._stage_export,
        }

        for stage in self.STAGE_ORDER[:self.STAGE_ORDER.index(self.stop_at) + 1]:
            res = self._run_stage(stage, stages[stage])
            self.results.append(res)

            if res.status == "failed":
                self._print_failure_summary(res)
                self._save_summary(False)
                return False

            print(f"\n{Colors.GREEN}✔ {stage.upper()} COMPLETE{Colors.END}")

        self._print_success_summary(time.time() - pipeline_start)
        self._save_summary(True)
        return True

    # -------------------------------------------------------------------

    def _print_failure_summary(self, result: StageResult):
        print(f"\n{Colors.RED}{'=' * 90}{Colors.END}")
        print(f"{Colors.RED}{Colors.BOLD}❌ PIPELINE HALTED — CRITICAL FAILURE{Colors.END}")
        print(f"{Colors.RED}{'=' * 90}{Colors.END}")
        print(f"{Colors.RED}Stage: {result.name}{Colors.END}")
        print(f"{Colors.RED}Critical issues: {result.critical_issues}{Colors.END}")
        if result.error_message:
            print(f"{Colors.RED}Error: {result.error_message}{Colors.END}")

    def _print_success_summary(self, total_seconds):
        print(f"\n{Colors.GREEN}{'=' * 90}{Colors.END}")
        print(f"{Colors.GREEN}{Colors.BOLD}PIPELINE COMPLETE — ALL STAGES PASSED{Colors.END}")
        print(f"{Colors.GREEN}{'=' * 90}{Colors.END}")

        print(f"\n{Colors.CYAN}Stage Results:{Colors.END}")
        for r in self.results:
            icon = "✔" if r.status == "success" else "✖"
            print(f"  {icon} {r.name:30s} {r.duration_seconds:6.1f}s  warnings: {r.warnings}")

        print(f"\n{Colors.CYAN}Total time: {total_seconds:.1f}s{Colors.END}")
        for label, path in self.output_paths.items():
            print(f"  {label}: {path}")

    def _save_summary(self, success: bool):
        summary = {
            "run_id": self.run_id,
            "timestamp": datetime.now().isoformat(),
            "success": success,
            "inputs": self.vintage_summary,
            "outputs": {k: str(v) for k, v in self.output_paths.items()},
            "stages": [asdict(r) for r in self.results]
        }

        out = self.log_dir / "pipeline_summary.json"
        with open(out, "w") as f:
            json.dump(summary, f, indent=2, default=str)

        print(f"{Colors.CYAN}Summary JSON: {out}{Colors.END}")


# -------------------------------------------------------------------
# CLI ENTRYPOINT
# -------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Census 2021 ethnicity at GP practice and PCN level")

    parser.add_argument(
        "--stop-at",
        choices=EthnicityPipeline.STAGE_ORDER,
        default="export"
    )
    parser.add_argument(
        "--on-degenerate-merge",
        choices=config.DEGENERATE_MERGE_POLICIES,
        default=None,
        help="Merged LSOA21 with zero registered patients: leave undefined or abort"
    )
    parser.add_argument(
        "--max-unmatched-share",
        type=float,
        default=None,
        help="Fail QA when more than this share of registered patients has no LSOA11 share (default: warn only)"
    )
    parser.add_argument("--no-warehouse", action="store_true", help="Skip DuckDB writes")
    parser.add_argument("--data-dir", type=Path, default=None)
    parser.add_argument("--output-dir", type=Path, default=None)
    parser.add_argument("--run-id", default=None)

    return parser


def settings_from_args(args: argparse.Namespace) -> config.Settings:
    overrides = {}
    if args.on_degenerate_merge:
        overrides["on_degenerate_merge"] = args.on_degenerate_merge
    if args.no_warehouse:
        overrides["write_warehouse"] = False
    if args.data_dir:
        overrides["data_dir"] = args.data_dir
    if args.output_dir:
        overrides["output_dir"] = args.output_dir
    if args.max_unmatched_share is not None:
        overrides["max_unmatched_share"] = args.max_unmatched_share
    return config.Settings.from_env(**overrides)


def main(argv=None):
    args = build_parser().parse_args(argv)

    try:
        settings = settings_from_args(args)
    except ValueError as e:
        print(f"{Colors.RED}Configuration error: {e}{Colors.END}", file=sys.stderr)
        sys.exit(1)

    try:
        pipeline = EthnicityPipeline(
            settings=settings,
            stop_at=args.stop_at,
            run_id=args.run_id,
        )
        logging.basicConfig(
            level=logging.INFO,
            format=LOG_FORMAT,
            handlers=[
                logging.StreamHandler(),
                logging.FileHandler(pipeline.log_dir / "pipeline.log"),
            ],
        )
        ok = pipeline.run()
        sys.exit(0 if ok else 1)

    except KeyboardInterrupt:
        print(f"{Colors.YELLOW}Interrupted by user.{Colors.END}")
        sys.exit(130)


if __name__ == "__main__":
    main()
