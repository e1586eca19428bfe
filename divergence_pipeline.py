#!/usr/bin/env python3
"""
Longitudinal copy-number divergence pipeline.

Loads a binned copy-number call table (plus optional segment log2-ratios) and
per-sample clinical metadata, compares every pair of samples within each
patient, summarises divergence over adjacent-timepoint intervals and PGA
change per next-timepoint interval, and runs the cohort-level tests.

Outputs (under --output-dir, overwritten on rerun):
- comparisons.csv                    one row per within-patient sample pair
- adjacent_timepoint_divergence.csv  mean divergence per adjacent interval
- pga_change_per_interval.csv        mean signed PGA change per interval
- hypothesis_tests.csv               mixed models / ANOVA / Mann-Whitney, FDR
- metrics.json, config.json, divergence_report.txt, figures/*.pdf
"""

import argparse
import json
import logging
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Optional

import numpy as np
import pandas as pd

from clinical_metadata import load_metadata, metadata_records, parse_treated, samples_by_patient
from cn_store import CopyNumberStore, setup_logging
from cohort_aggregate import (annotate_comparisons, cohort_median, concatenate_patients,
                              mean_adjacent_timepoint_divergence, mean_pga_change_per_interval)
from divergence_figures import make_figures
from divergence_metrics import DISTANCE_METHODS, EXPECTED_MEDIAN_L2R_DISTANCE, DistanceOptions
from divergence_models import run_hypothesis_tests
from pairwise_divergence import compare_cohort

logger = logging.getLogger(__name__)


# ============================================================================
# Configuration
# ============================================================================

@dataclass
class Config:
    """Pipeline configuration with sensible defaults."""
    # Inputs
    calls_path: Optional[str] = None
    metadata_path: Optional[str] = None
    log_ratio_path: Optional[str] = None

    # Distance
    method: str = "state_difference"
    options: DistanceOptions = field(default_factory=DistanceOptions)
    saturate: bool = True

    # Stages
    make_figures: bool = True
    run_models: bool = True

    # Output
    output_dir: Path = Path("output")
    verbosity: int = 1

    def __post_init__(self):
        if self.method not in DISTANCE_METHODS:
            raise ValueError(f"Unknown distance method '{self.method}'. "
                             f"Choose from: {sorted(DISTANCE_METHODS)}")
        if self.method == "log2ratio" and not self.log_ratio_path:
            raise ValueError("Method 'log2ratio' needs a segment log2-ratio table (log_ratio_path)")
        self.output_dir = Path(self.output_dir)
        self.output_dir.mkdir(parents=True, exist_ok=True)

    def to_dict(self) -> dict:
        return asdict(self)


# ============================================================================
# Pipeline
# ============================================================================

class Pipeline:
    """Main pipeline orchestrator."""

    def __init__(self, config: Config):
        self.config = config

    def load_and_validate_data(self) -> dict:
        """Load and validate all inputs before any comparison runs."""
        logger.info("=" * 80)
        logger.info("LOADING DATA")
        logger.info("=" * 80)
        cfg = self.config
        if not cfg.calls_path or not cfg.metadata_path:
            raise ValueError("Both a copy-number call table and a metadata table are required")

        store = CopyNumberStore.from_files(cfg.calls_path, cfg.log_ratio_path,
                                           saturate=cfg.saturate, ploidy=cfg.options.ploidy)
        meta = load_metadata(cfg.metadata_path)
        sample_table = samples_by_patient(meta, store.samples)
        if not sample_table:
            raise ValueError("No metadata sample matches a copy-number sample column")

        n_samples = sum(len(v) for v in sample_table.values())
        logger.info(f"Sample overlap: {n_samples:,} samples across {len(sample_table):,} patients")
        return {
            "store": store,
            "metadata": meta,
            "records": metadata_records(meta),
            "samples": sample_table,
        }

    def compute_comparisons(self, data: dict) -> dict:
        """Pairwise and next-timepoint comparison tables for the whole cohort."""
        logger.info("=" * 80)
        logger.info(f"COMPARING SAMPLES ({self.config.method})")
        logger.info("=" * 80)
        cfg = self.config
        pairwise = compare_cohort(data["store"], data["samples"], data["records"],
                                  method=cfg.method, options=cfg.options)
        intervals = compare_cohort(data["store"], data["samples"], data["records"],
                                   method=cfg.method, options=cfg.options, intervals=True)
        return {
            "cohort": annotate_comparisons(concatenate_patients(pairwise)),
            "intervals": concatenate_patients(intervals),
        }

    def compute_summaries(self, tables: dict) -> dict:
        """Per-interval means and cohort-level medians."""
        logger.info("=" * 80)
        logger.info("SUMMARISING INTERVALS")
        logger.info("=" * 80)
        adjacent = mean_adjacent_timepoint_divergence(tables["cohort"])
        pga_change = mean_pga_change_per_interval(tables["intervals"])

        metrics = {
            "method": self.config.method,
            "n_patients": int(tables["cohort"]["patient"].nunique()) if len(tables["cohort"]) else 0,
            "n_comparisons": int(len(tables["cohort"])),
            "n_interval_comparisons": int(len(tables["intervals"])),
            "median_distance": _median(tables["cohort"], "distance"),
            "median_adjacent_divergence": cohort_median(adjacent, "mean_divergence"),
            "median_pga_change": cohort_median(pga_change, "mean_pga_change"),
        }
        for label, flag in [("treated", True), ("untreated", False)]:
            metrics[f"median_adjacent_divergence_{label}"] = cohort_median(
                _with_flag(adjacent, flag), "mean_divergence")
            metrics[f"median_pga_change_{label}"] = cohort_median(
                _with_flag(pga_change, flag), "mean_pga_change")
        logger.info(f"Median adjacent-timepoint divergence: {metrics['median_adjacent_divergence']:.4f}; "
                    f"median PGA change: {metrics['median_pga_change']:.4f}")
        return {"adjacent": adjacent, "pga_change": pga_change, "metrics": metrics}

    def run_models(self, tables: dict, summaries: dict) -> pd.DataFrame:
        logger.info("=" * 80)
        logger.info("HYPOTHESIS TESTS")
        logger.info("=" * 80)
        return run_hypothesis_tests(tables["cohort"], summaries["adjacent"], summaries["pga_change"])

    def write_outputs(self, tables: dict, summaries: dict, tests: Optional[pd.DataFrame]) -> dict:
        """Write all tables, JSON files, figures and the text report."""
        out = self.config.output_dir
        paths = {
            "comparisons": out / "comparisons.csv",
            "adjacent": out / "adjacent_timepoint_divergence.csv",
            "pga_change": out / "pga_change_per_interval.csv",
        }
        tables["cohort"].to_csv(paths["comparisons"], index=False)
        summaries["adjacent"].to_csv(paths["adjacent"], index=False)
        summaries["pga_change"].to_csv(paths["pga_change"], index=False)
        if tests is not None:
            paths["tests"] = out / "hypothesis_tests.csv"
            tests.to_csv(paths["tests"], index=False)

        paths["metrics"] = out / "metrics.json"
        with open(paths["metrics"], "w") as f:
            json.dump(summaries["metrics"], f, indent=2, default=str)
        paths["config"] = out / "config.json"
        with open(paths["config"], "w") as f:
            json.dump(self.config.to_dict(), f, indent=2, default=str)

        if self.config.make_figures:
            pga_label = "PGA change (%)" if self.config.options.as_percentage else "PGA change"
            figures = make_figures(tables["cohort"], summaries["adjacent"], summaries["pga_change"],
                                   out / "figures", pga_label=pga_label)
            paths["figures"] = figures

        paths["report"] = self._generate_report(tables, summaries, tests)
        logger.info(f"Saved outputs to {out}")
        return paths

    def run(self) -> dict:
        """Execute every stage in order."""
        data = self.load_and_validate_data()
        tables = self.compute_comparisons(data)
        summaries = self.compute_summaries(tables)
        summaries["metrics"]["n_samples"] = int(sum(len(v) for v in data["samples"].values()))
        tests = self.run_models(tables, summaries) if self.config.run_models else None
        paths = self.write_outputs(tables, summaries, tests)
        return {**tables, **summaries, "tests": tests, "paths": paths}

    def _generate_report(self, tables: dict, summaries: dict, tests: Optional[pd.DataFrame]) -> Path:
        """Human-readable summary of the run."""
        cfg = self.config
        metrics = summaries["metrics"]
        report_path = cfg.output_dir / "divergence_report.txt"
        with open(report_path, "w") as f:
            f.write("=" * 80 + "\n")
            f.write("COPY-NUMBER DIVERGENCE PIPELINE - REPORT\n")
            f.write("=" * 80 + "\n\n")

            f.write("Configuration:\n")
            f.write(f"  Distance method: {cfg.method}\n")
            f.write(f"  Only altered bins: {cfg.options.only_altered_bins}\n")
            f.write(f"  Ploidy: {cfg.options.ploidy}\n")
            f.write(f"  PGA as percentage: {cfg.options.as_percentage}\n")
            if cfg.method == "log2ratio":
                f.write(f"  Purity search: {cfg.options.min_purity}-1.0 step {cfg.options.purity_step}, "
                        f"reference distance {cfg.options.expected_median_distance}\n")
            if cfg.method == "breakpoint":
                f.write(f"  Breakpoint max gap: {cfg.options.max_gap:,}bp\n")
            f.write("\n")

            f.write("Data:\n")
            f.write(f"  Patients compared: {metrics['n_patients']:,}\n")
            f.write(f"  Samples: {metrics.get('n_samples', 0):,}\n")
            f.write(f"  Pairwise comparisons: {metrics['n_comparisons']:,}\n")
            f.write(f"  Next-timepoint comparisons: {metrics['n_interval_comparisons']:,}\n")

            f.write("\n" + "=" * 80 + "\n")
            f.write("DIVERGENCE\n")
            f.write("=" * 80 + "\n\n")
            f.write(f"Median pairwise distance: {_fmt(metrics['median_distance'])}\n")
            f.write(f"Median adjacent-timepoint divergence: {_fmt(metrics['median_adjacent_divergence'])} "
                    f"(treated {_fmt(metrics['median_adjacent_divergence_treated'])}, "
                    f"untreated {_fmt(metrics['median_adjacent_divergence_untreated'])})\n")
            f.write(f"Median PGA change per interval: {_fmt(metrics['median_pga_change'])} "
                    f"(treated {_fmt(metrics['median_pga_change_treated'])}, "
                    f"untreated {_fmt(metrics['median_pga_change_untreated'])})\n")

            cohort = tables["cohort"]
            if len(cohort):
                f.write("\nBy organ pair:\n")
                f.write("-" * 40 + "\n")
                by_pair = cohort.groupby("organ_pair")["distance"].agg(["count", "median"])
                for pair, row in by_pair.iterrows():
                    f.write(f"  {pair:<30} n={int(row['count']):<5} median={row['median']:.4f}\n")

            if tests is not None:
                f.write("\n" + "=" * 80 + "\n")
                f.write("HYPOTHESIS TESTS\n")
                f.write("=" * 80 + "\n\n")
                for row in tests.itertuples(index=False):
                    if pd.notna(row.p_value):
                        f.write(f"  {row.hypothesis:<22} {row.test:<13} {str(row.term):<30} "
                                f"p={row.p_value:.3g} q={row.q_value:.3g}\n")
                    else:
                        f.write(f"  {row.hypothesis:<22} {row.test:<13} skipped ({row.note})\n")

            f.write("\nOutputs written under: {}\n".format(cfg.output_dir.resolve()))

        logger.info(f"Wrote report: {report_path}")
        return report_path


def _median(df: pd.DataFrame, column: str) -> float:
    if df.empty:
        return np.nan
    values = pd.to_numeric(df[column], errors="coerce").dropna()
    return float(values.median()) if len(values) else np.nan


def _with_flag(summary: pd.DataFrame, flag: bool) -> pd.DataFrame:
    if summary.empty:
        return summary
    return summary[summary["treated_flag"].map(lambda v: parse_treated(v) is flag).astype(bool)]


def _fmt(x) -> str:
    return "NA" if x is None or np.isnan(x) else f"{x:.4f}"


# ============================================================================
# CLI
# ============================================================================

def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        description="Within-patient copy-number divergence across longitudinal tumour samples",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter
    )
    p.add_argument("--calls", required=True,
                   help="Binned copy-number calls: chrom,start,end,<sample...> (CSV/TSV/Parquet)")
    p.add_argument("--metadata", required=True,
                   help="Sample metadata with patient,sample,organ,timepoint[,organ_description,time,treated]")
    p.add_argument("--log-ratios", default=None,
                   help="Segment log2-ratios in the same wide layout (needed for --method log2ratio)")

    p.add_argument("--method", choices=sorted(DISTANCE_METHODS), default="state_difference")
    p.add_argument("--all-bins", action="store_true",
                   help="State difference over all bins instead of bins altered in either sample")
    p.add_argument("--absolute-number", action="store_true",
                   help="State difference as a count of differing bins")
    p.add_argument("--no-normalise", action="store_true", help="Genetic distance as a raw sum")
    p.add_argument("--percentage", action="store_true", help="Report PGA differences x100")
    p.add_argument("--ploidy", type=int, default=2)
    p.add_argument("--no-saturate", action="store_true", help="Keep raw copy-number states")
    p.add_argument("--min-purity", type=float, default=0.2)
    p.add_argument("--purity-step", type=float, default=0.01)
    p.add_argument("--expected-median-distance", type=float, default=EXPECTED_MEDIAN_L2R_DISTANCE)
    p.add_argument("--no-normalise-to-expected", action="store_true",
                   help="Report the raw minimum log2-ratio distance")
    p.add_argument("--max-gap", type=int, default=0, help="Breakpoint edge tolerance (bp)")
    p.add_argument("--report-max", action="store_true",
                   help="Run-length difference reports the longest differing run")

    p.add_argument("--no-figures", action="store_true")
    p.add_argument("--no-models", action="store_true", help="Skip hypothesis tests")
    p.add_argument("--output-dir", default="output", help="Directory to write outputs")
    p.add_argument("-v", "--verbosity", type=int, default=1, help="0=warnings, 1=info, 2=debug")
    return p


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.verbosity)

    options = DistanceOptions(
        only_altered_bins=not args.all_bins,
        absolute_number=args.absolute_number,
        normalise=not args.no_normalise,
        as_percentage=args.percentage,
        ploidy=args.ploidy,
        min_purity=args.min_purity,
        purity_step=args.purity_step,
        expected_median_distance=args.expected_median_distance,
        normalise_to_expected=not args.no_normalise_to_expected,
        max_gap=args.max_gap,
        report_max=args.report_max,
    )
    cfg = Config(
        calls_path=args.calls,
        metadata_path=args.metadata,
        log_ratio_path=args.log_ratios,
        method=args.method,
        options=options,
        saturate=not args.no_saturate,
        make_figures=not args.no_figures,
        run_models=not args.no_models,
        output_dir=Path(args.output_dir),
        verbosity=args.verbosity,
    )
    Pipeline(cfg).run()


if __name__ == "__main__":
    main()
