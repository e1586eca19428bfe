#!/usr/bin/env python3
"""
Tests for within-patient pairwise and next-timepoint comparisons.
"""
import dataclasses

import pytest
import sys
from pathlib import Path

import numpy as np
import pandas as pd

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from clinical_metadata import SampleMetadata
from cn_store import CopyNumberStore
from divergence_metrics import DistanceOptions, EmptyInputError
from pairwise_divergence import (COMPARISON_COLUMNS, IntegrityViolationError, compare_cohort,
                                 compare_patient, compare_patient_intervals, records_to_frame)


def _store(profiles):
    n = len(next(iter(profiles.values())))
    bins = pd.DataFrame({"chrom": ["chr1"] * n,
                         "start": [1 + 1000 * k for k in range(n)],
                         "end": [1000 * (k + 1) for k in range(n)]})
    return CopyNumberStore(bins=bins, calls=pd.DataFrame(profiles))


def _meta(sample, timepoint, organ="liver", treated=None, patient="P1"):
    return SampleMetadata(patient=patient, sample=sample, organ=organ,
                          organ_description="Primary" if timepoint == 0 else "Metastasis",
                          timepoint=timepoint, time=float(timepoint * 100), treated=treated)


PROFILES = {
    "s0": [2, 2, 1, 3, 2, 2],
    "s1": [2, 1, 1, 3, 3, 2],
    "s2": [3, 1, 1, 3, 2, 2],
    "s3": [3, 1, 1, 1, 3, 2],
}


def test_three_samples_give_three_comparisons():
    """Timepoints [1, 1, 2]: three pairs, two adjacent, one same-timepoint"""
    store = _store(PROFILES)
    meta = {"s0": _meta("s0", 1), "s1": _meta("s1", 1, "lung"), "s2": _meta("s2", 2)}
    recs = compare_patient("P1", ["s0", "s1", "s2"], store, meta)
    assert len(recs) == 3
    gaps = [abs(r.timepoint_i - r.timepoint_j) for r in recs]
    assert gaps.count(1) == 2
    assert gaps.count(0) == 1


def test_pair_order_and_no_self_comparison():
    store = _store(PROFILES)
    meta = {s: _meta(s, k) for k, s in enumerate(PROFILES)}
    recs = compare_patient("P1", list(PROFILES), store, meta)
    assert len(recs) == 4 * 3 // 2
    assert [(r.code_i, r.code_j) for r in recs] == [
        ("s1", "s0"), ("s2", "s0"), ("s2", "s1"), ("s3", "s0"), ("s3", "s1"), ("s3", "s2")]
    assert all(r.code_i != r.code_j for r in recs)


def test_record_values():
    store = _store(PROFILES)
    meta = {"s0": _meta("s0", 0, "breast"), "s1": _meta("s1", 1, "liver", treated=True)}
    (rec,) = compare_patient("P1", ["s0", "s1"], store, meta)
    assert rec.code_i == "s1" and rec.code_j == "s0"
    assert rec.distance == pytest.approx(0.5)
    assert rec.pga_difference == pytest.approx(abs(4 / 6 - 2 / 6))
    assert rec.organ_i == "liver" and rec.organ_j == "breast"
    assert rec.treated_i is True and rec.treated_j is None
    assert rec.patient == "P1"


def test_records_are_immutable():
    store = _store(PROFILES)
    meta = {"s0": _meta("s0", 0), "s1": _meta("s1", 1)}
    (rec,) = compare_patient("P1", ["s0", "s1"], store, meta)
    with pytest.raises(dataclasses.FrozenInstanceError):
        rec.distance = 0.0


def test_undefined_distance_dropped():
    """All-neutral pairs have no altered bins and are left out"""
    store = _store({"n0": [2, 2, 2], "n1": [2, 2, 2], "g": [2, 3, 2]})
    meta = {"n0": _meta("n0", 0), "n1": _meta("n1", 1), "g": _meta("g", 2)}
    recs = compare_patient("P1", ["n0", "n1", "g"], store, meta)
    assert len(recs) == 2
    assert all("g" in (r.code_i, r.code_j) for r in recs)


def test_alternative_method():
    store = _store(PROFILES)
    meta = {"s0": _meta("s0", 0), "s1": _meta("s1", 1)}
    (rec,) = compare_patient("P1", ["s0", "s1"], store, meta, method="genetic_distance",
                             options=DistanceOptions(normalise=False))
    assert rec.distance == pytest.approx(2.0)


def test_missing_metadata():
    store = _store(PROFILES)
    with pytest.raises(ValueError, match="no metadata"):
        compare_patient("P1", ["s0", "s1"], store, {"s0": _meta("s0", 0)})


def test_missing_log_ratios_name_patient_and_pair():
    store = _store({"a": [2, 3, 2], "b": [2, 2, 1]})
    store.log_ratios = pd.DataFrame({"a": [0.0, 0.5, 0.0]})
    meta = {"a": _meta("a", 0, patient="P7"), "b": _meta("b", 1, patient="P7")}
    with pytest.raises(ValueError, match=r"patient P7: log2ratio b vs a") as err:
        compare_patient("P7", ["a", "b"], store, meta, method="log2ratio")
    assert "No log2-ratios for sample 'b'" in str(err.value)


def test_empty_profiles_name_patient_and_pair():
    store = CopyNumberStore(bins=pd.DataFrame({"chrom": [], "start": [], "end": []}),
                            calls=pd.DataFrame({"a": [], "b": []}))
    meta = {"a": _meta("a", 0, patient="P7"), "b": _meta("b", 1, patient="P7")}
    with pytest.raises(EmptyInputError, match=r"patient P7: state_difference b vs a"):
        compare_patient("P7", ["a", "b"], store, meta)


def test_pga_difference_uses_options_ploidy():
    store = _store({"a": [3, 3, 3, 2], "b": [3, 3, 2, 2]})
    meta = {"a": _meta("a", 0), "b": _meta("b", 1)}
    (rec,) = compare_patient_intervals("P1", ["a", "b"], store, meta,
                                       options=DistanceOptions(ploidy=3, as_percentage=True))
    assert rec.pga_difference == pytest.approx(100 * (2 / 4 - 1 / 4))


def test_interval_mode_next_timepoint_only():
    """Directional pairs with timepoint j == timepoint i + 1 and signed PGA change"""
    store = _store(PROFILES)
    meta = {"s0": _meta("s0", 0), "s1": _meta("s1", 1, treated=True),
            "s2": _meta("s2", 1, "lung", treated=True), "s3": _meta("s3", 2, treated=False)}
    recs = compare_patient_intervals("P1", list(PROFILES), store, meta)
    assert [(r.code_i, r.code_j) for r in recs] == [("s0", "s1"), ("s0", "s2"), ("s1", "s3"), ("s2", "s3")]
    assert all(r.timepoint_j == r.timepoint_i + 1 for r in recs)
    first = recs[0]
    assert first.pga_difference == pytest.approx(4 / 6 - 2 / 6)
    assert first.treated is True
    assert recs[-1].treated is False


def test_interval_mode_signed_change_can_be_negative():
    store = _store({"a": [1, 1, 3, 3], "b": [2, 2, 3, 2]})
    meta = {"a": _meta("a", 0), "b": _meta("b", 1, treated=False)}
    (rec,) = compare_patient_intervals("P1", ["a", "b"], store, meta)
    assert rec.pga_difference == pytest.approx(0.25 - 1.0)


def test_interval_mode_mixed_treatment_raises():
    store = _store(PROFILES)
    meta = {"s0": _meta("s0", 0), "s1": _meta("s1", 1, treated=True),
            "s2": _meta("s2", 1, "lung", treated=False)}
    with pytest.raises(IntegrityViolationError, match="P1"):
        compare_patient_intervals("P1", ["s0", "s1", "s2"], store, meta)


def test_records_to_frame():
    assert list(records_to_frame([]).columns) == COMPARISON_COLUMNS
    store = _store(PROFILES)
    meta = {"s0": _meta("s0", 0), "s1": _meta("s1", 1, treated=True)}
    df = records_to_frame(compare_patient_intervals("P1", ["s0", "s1"], store, meta))
    assert list(df.columns[:len(COMPARISON_COLUMNS)]) == COMPARISON_COLUMNS
    assert df["treated"].tolist() == [True]


def test_compare_cohort_skips_single_sample_patients():
    store = _store(PROFILES)
    meta = {"s0": _meta("s0", 0), "s1": _meta("s1", 1),
            "s2": _meta("s2", 0, patient="P2"), "s3": _meta("s3", 0, patient="P3")}
    out = compare_cohort(store, {"P1": ["s0", "s1"], "P2": ["s2"]}, meta)
    assert list(out) == ["P1"]
    assert len(out["P1"]) == 1
    assert np.isfinite(out["P1"][0].distance)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
