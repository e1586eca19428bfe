#!/usr/bin/env python3
"""
Pairwise divergence - all within-patient sample comparisons.

For each patient, every ordered pair (i, j) of that patient's samples is
visited in i-major, j-minor order. Only the i > j triangle is kept, so a
pair and its mirror appear once and self-comparisons never appear. Each
kept pair yields one immutable ComparisonRecord with the chosen distance,
the absolute PGA difference and both samples' annotation.

The interval mode instead keeps directional pairs where sample j sits at the
next timepoint after sample i, reports the signed PGA change and carries the
treatment flag of the later sample.
"""
import logging
from dataclasses import asdict, dataclass, fields
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

import numpy as np
import pandas as pd

from clinical_metadata import SampleMetadata, parse_treated
from divergence_metrics import DistanceOptions, get_distance_method, scale_pga_change

logger = logging.getLogger(__name__)


class IntegrityViolationError(RuntimeError):
    """Samples grouped into one nominal interval disagree on treatment status."""


@dataclass(frozen=True)
class ComparisonRecord:
    distance: float
    pga_difference: float
    organ_i: str
    organ_j: str
    timepoint_i: int
    timepoint_j: int
    type_i: str
    type_j: str
    code_i: str
    code_j: str
    time_i: float
    time_j: float
    patient: str
    treated_i: Optional[bool] = None
    treated_j: Optional[bool] = None


@dataclass(frozen=True)
class IntervalRecord(ComparisonRecord):
    # treatment in the interval, taken from the later sample
    treated: Optional[bool] = None


COMPARISON_COLUMNS = [f.name for f in fields(ComparisonRecord)]
INTERVAL_COLUMNS = [f.name for f in fields(IntervalRecord)]


def _is_undefined(value) -> bool:
    return value is None or (isinstance(value, float) and np.isnan(value))


def flag_key(value) -> Optional[bool]:
    """Hashable key for a treatment flag; undefined values share one key."""
    return parse_treated(value)


def _measure_pair(patient: str, a: str, b: str, measure, store, options: DistanceOptions,
                  method: str) -> float:
    try:
        return measure(store, a, b, options)
    except ValueError as err:
        raise type(err)(f"patient {patient}: {method} {a} vs {b}: {err}") from err


def _pga_change(store, pre: str, post: str, options: DistanceOptions, absolute: bool) -> float:
    per_sample = store.pga(options.ploidy)
    return scale_pga_change(per_sample[pre], per_sample[post],
                            as_percentage=options.as_percentage, absolute=absolute)


def _require_metadata(patient: str, samples: Sequence[str], metadata: Mapping[str, SampleMetadata]) -> None:
    missing = [s for s in samples if s not in metadata]
    if missing:
        raise ValueError(f"patient {patient}: no metadata for sample(s) {missing}")


def _record_kwargs(patient: str, mi: SampleMetadata, mj: SampleMetadata) -> dict:
    return dict(
        organ_i=mi.organ, organ_j=mj.organ,
        timepoint_i=mi.timepoint, timepoint_j=mj.timepoint,
        type_i=mi.organ_description, type_j=mj.organ_description,
        code_i=mi.sample, code_j=mj.sample,
        time_i=mi.time, time_j=mj.time,
        patient=patient,
        treated_i=mi.treated, treated_j=mj.treated,
    )


def compare_patient(patient: str, samples: Sequence[str], store,
                    metadata: Mapping[str, SampleMetadata],
                    method: str = "state_difference",
                    options: Optional[DistanceOptions] = None) -> List[ComparisonRecord]:
    """
    All unique within-patient comparisons for one patient.

    Returns:
        M*(M-1)/2 records for M samples, minus pairs whose distance or PGA
        difference is undefined
    """
    options = options or DistanceOptions()
    measure = get_distance_method(method)
    _require_metadata(patient, samples, metadata)

    records = []
    n_undefined = 0
    for i, si in enumerate(samples):
        for j, sj in enumerate(samples):
            if i <= j:
                continue
            d = _measure_pair(patient, si, sj, measure, store, options, method)
            pga_diff = _pga_change(store, sj, si, options, absolute=options.absolute)
            if _is_undefined(d) or _is_undefined(pga_diff):
                n_undefined += 1
                continue
            records.append(ComparisonRecord(
                distance=float(d), pga_difference=float(pga_diff),
                **_record_kwargs(patient, metadata[si], metadata[sj])))

    if n_undefined:
        logger.debug(f"patient {patient}: dropped {n_undefined} comparison(s) with undefined values")
    return records


def check_interval_consistency(frame: pd.DataFrame, keys: Sequence[str] = ("patient", "timepoint_i", "timepoint_j"),
                               flag_column: str = "treated") -> None:
    """
    Raise IntegrityViolationError when one interval carries more than one treatment flag.
    Undefined counts as its own value.
    """
    if frame.empty:
        return
    for key, sub in frame.groupby(list(keys), sort=False):
        flags = {flag_key(v) for v in sub[flag_column]}
        if len(flags) > 1:
            label = dict(zip(keys, key if isinstance(key, tuple) else (key,)))
            codes = sorted(set(sub.get("code_i", pd.Series(dtype=str))) | set(sub.get("code_j", pd.Series(dtype=str))))
            raise IntegrityViolationError(
                f"Inconsistent treatment flags {sorted(flags, key=str)} within interval {label} "
                f"(samples: {codes})")


def compare_patient_intervals(patient: str, samples: Sequence[str], store,
                              metadata: Mapping[str, SampleMetadata],
                              method: str = "state_difference",
                              options: Optional[DistanceOptions] = None) -> List[IntervalRecord]:
    """
    Directional next-timepoint comparisons for one patient.

    Keeps (i, j) only when timepoint(j) == timepoint(i) + 1. The PGA change is
    signed, PGA(j) - PGA(i).
    """
    options = options or DistanceOptions()
    measure = get_distance_method(method)
    _require_metadata(patient, samples, metadata)
    records = []
    for si in samples:
        for sj in samples:
            mi, mj = metadata[si], metadata[sj]
            if mj.timepoint != mi.timepoint + 1:
                continue
            d = _measure_pair(patient, si, sj, measure, store, options, method)
            change = _pga_change(store, si, sj, options, absolute=False)
            records.append(IntervalRecord(
                distance=float(d), pga_difference=float(change),
                treated=mj.treated,
                **_record_kwargs(patient, mi, mj)))

    check_interval_consistency(records_to_frame(records))
    return records


def records_to_frame(records: Iterable[ComparisonRecord]) -> pd.DataFrame:
    """Named-column table; IntervalRecords keep their extra treated column."""
    records = list(records)
    if not records:
        return pd.DataFrame(columns=COMPARISON_COLUMNS)
    columns = INTERVAL_COLUMNS if isinstance(records[0], IntervalRecord) else COMPARISON_COLUMNS
    df = pd.DataFrame([asdict(r) for r in records], columns=columns)
    for c in ("treated_i", "treated_j", "treated"):
        if c in df.columns:
            df[c] = df[c].astype(object)
    return df


def compare_cohort(store, sample_table: Mapping[str, Sequence[str]],
                   metadata: Mapping[str, SampleMetadata],
                   method: str = "state_difference",
                   options: Optional[DistanceOptions] = None,
                   intervals: bool = False) -> Dict[str, list]:
    """
    Run the per-patient comparison for every patient.

    Args:
        sample_table: patient -> ordered sample ids
        intervals: use the directional next-timepoint mode
    """
    compare = compare_patient_intervals if intervals else compare_patient
    out = {}
    n_skipped = 0
    for patient, samples in sample_table.items():
        if len(samples) < 2:
            n_skipped += 1
            continue
        out[patient] = compare(patient, list(samples), store, metadata, method=method, options=options)
        logger.debug(f"patient {patient}: {len(samples)} samples -> {len(out[patient])} comparisons")
    if n_skipped:
        logger.info(f"Skipped {n_skipped} patient(s) with fewer than two samples")
    mode = "interval" if intervals else "pairwise"
    logger.info(f"Computed {sum(len(v) for v in out.values()):,} {mode} comparisons "
                f"({method}) across {len(out):,} patients")
    return out
