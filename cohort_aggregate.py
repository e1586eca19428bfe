#!/usr/bin/env python3
"""
Cohort aggregation - combine per-patient comparisons and summarise intervals.

The cohort table is the row-concatenation of every patient's comparison
records. Interval summaries group comparisons by (patient, unordered
timepoint pair) and average a value across all sample pairs spanning that
interval; the cohort-level statistic is the median of those means.
"""
import logging
from dataclasses import asdict, dataclass
from typing import Iterable, List, Mapping, Optional, Union

import numpy as np
import pandas as pd

from pairwise_divergence import (COMPARISON_COLUMNS, ComparisonRecord, flag_key,
                                 check_interval_consistency, records_to_frame)

logger = logging.getLogger(__name__)

SUMMARY_COLUMNS = ["treated_flag", "interval_label", "patient",
                   "timepoint_from", "timepoint_to", "n_pairs"]


@dataclass(frozen=True)
class IntervalSummaryRecord:
    patient: str
    interval_label: str
    timepoint_from: int
    timepoint_to: int
    mean_value: float
    treated_flag: Optional[bool]
    n_pairs: int


def interval_label(tp_a: int, tp_b: int) -> str:
    lo, hi = sorted((int(tp_a), int(tp_b)))
    return f"{lo}-{hi}"


def organ_pair_label(organ_a, organ_b, sep: str = "-") -> str:
    """Order-independent label for the two organs of a comparison."""
    return sep.join(sorted([str(organ_a), str(organ_b)]))


def concatenate_patients(tables: Mapping[str, Union[pd.DataFrame, Iterable[ComparisonRecord]]]) -> pd.DataFrame:
    """Row-bind per-patient comparison tables, tagging each row with its patient."""
    frames = []
    for patient, table in tables.items():
        df = table.copy() if isinstance(table, pd.DataFrame) else records_to_frame(table)
        if df.empty:
            continue
        df["patient"] = patient
        frames.append(df)
    if not frames:
        return pd.DataFrame(columns=COMPARISON_COLUMNS)
    cohort = pd.concat(frames, ignore_index=True)
    logger.info(f"Cohort table: {len(cohort):,} comparisons from {len(frames):,} patients")
    return cohort


def annotate_comparisons(cohort: pd.DataFrame) -> pd.DataFrame:
    """Add organ/type pair labels, same-organ flag, timepoint gap and interval label."""
    df = cohort.copy()
    if df.empty:
        for c in ["organ_pair", "type_pair", "same_organ", "timepoint_gap", "interval_label"]:
            df[c] = pd.Series(dtype=object)
        return df
    df["organ_pair"] = [organ_pair_label(a, b) for a, b in zip(df["organ_i"], df["organ_j"])]
    df["type_pair"] = [organ_pair_label(a, b) for a, b in zip(df["type_i"], df["type_j"])]
    df["same_organ"] = df["organ_i"] == df["organ_j"]
    tp_i = df["timepoint_i"].astype(int)
    tp_j = df["timepoint_j"].astype(int)
    df["timepoint_gap"] = (tp_i - tp_j).abs()
    df["interval_label"] = [interval_label(a, b) for a, b in zip(tp_i, tp_j)]
    return df


def summarise_intervals(frame: pd.DataFrame, value_column: str,
                        flag_column: str = "treated") -> List[IntervalSummaryRecord]:
    """
    One IntervalSummaryRecord per (patient, unordered timepoint pair).

    Raises IntegrityViolationError if rows of one interval disagree on the
    treatment flag.
    """
    if frame.empty:
        return []
    df = frame.copy()
    tp_i = df["timepoint_i"].astype(int)
    tp_j = df["timepoint_j"].astype(int)
    df["timepoint_from"] = np.minimum(tp_i, tp_j)
    df["timepoint_to"] = np.maximum(tp_i, tp_j)
    if flag_column not in df.columns:
        df[flag_column] = None
    check_interval_consistency(df, keys=("patient", "timepoint_from", "timepoint_to"),
                               flag_column=flag_column)

    out = []
    for (patient, lo, hi), sub in df.groupby(["patient", "timepoint_from", "timepoint_to"], sort=True):
        values = pd.to_numeric(sub[value_column], errors="coerce")
        out.append(IntervalSummaryRecord(
            patient=str(patient),
            interval_label=interval_label(lo, hi),
            timepoint_from=int(lo),
            timepoint_to=int(hi),
            mean_value=float(values.mean()) if values.notna().any() else np.nan,
            treated_flag=flag_key(sub[flag_column].iloc[0]),
            n_pairs=int(len(sub)),
        ))
    return out


def summaries_to_frame(records: Iterable[IntervalSummaryRecord], value_name: str) -> pd.DataFrame:
    rows = [asdict(r) for r in records]
    columns = [value_name] + SUMMARY_COLUMNS
    if not rows:
        return pd.DataFrame(columns=columns)
    df = pd.DataFrame(rows).rename(columns={"mean_value": value_name})
    df["treated_flag"] = df["treated_flag"].astype(object)
    return df[columns]


def mean_adjacent_timepoint_divergence(cohort: pd.DataFrame) -> pd.DataFrame:
    """
    Mean divergence per (patient, adjacent timepoint pair).

    Uses the symmetric cohort table restricted to |tp_i - tp_j| == 1; the
    interval's treatment flag comes from whichever sample has the later
    timepoint.
    """
    if cohort.empty:
        return summaries_to_frame([], "mean_divergence")
    adj = cohort[(cohort["timepoint_i"].astype(int) - cohort["timepoint_j"].astype(int)).abs() == 1].copy()
    if adj.empty:
        return summaries_to_frame([], "mean_divergence")
    if {"treated_i", "treated_j"}.issubset(adj.columns):
        later_i = adj["timepoint_i"].astype(int) > adj["timepoint_j"].astype(int)
        adj["treated"] = [ti if li else tj for li, ti, tj in zip(later_i, adj["treated_i"], adj["treated_j"])]
    else:
        adj["treated"] = None
    records = summarise_intervals(adj, "distance", "treated")
    logger.info(f"Adjacent-timepoint divergence: {len(records):,} intervals from {len(adj):,} comparisons")
    return summaries_to_frame(records, "mean_divergence")


def mean_pga_change_per_interval(intervals: Union[pd.DataFrame, Mapping[str, Iterable]]) -> pd.DataFrame:
    """Mean signed PGA change per (patient, next-timepoint interval)."""
    if not isinstance(intervals, pd.DataFrame):
        intervals = concatenate_patients(intervals)
    records = summarise_intervals(intervals, "pga_difference", "treated")
    logger.info(f"PGA change: {len(records):,} intervals from {len(intervals):,} comparisons")
    return summaries_to_frame(records, "mean_pga_change")


def cohort_median(summary: pd.DataFrame, column: str) -> float:
    """Median of the per-interval means, ignoring undefined values."""
    if summary.empty or column not in summary.columns:
        return np.nan
    values = pd.to_numeric(summary[column], errors="coerce").dropna()
    return float(values.median()) if len(values) else np.nan
