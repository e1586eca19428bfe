#!/usr/bin/env python3
"""
Tests for clinical metadata validation.
"""
import pytest
import sys
from pathlib import Path

import numpy as np
import pandas as pd

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from clinical_metadata import (load_metadata, metadata_records, parse_treated,
                               samples_by_patient, validate_metadata)


def _meta(**overrides):
    df = pd.DataFrame({
        "patient": ["P1", "P1", "P1", "P2", "P2"],
        "sample": ["a", "b", "c", "d", "e"],
        "organ": ["breast", "liver", "lung", "breast", "bone"],
        "organ_description": ["Primary", "Metastasis", "Metastasis", "Primary", "Metastasis"],
        "timepoint": [0, 1, 1, 0, 1],
        "treated": ["yes", "yes", "yes", "no", "no"],
    })
    for k, v in overrides.items():
        df[k] = v
    return df


@pytest.mark.parametrize("value,expected", [
    ("yes", True), ("No", False), ("TRUE", True), ("0", False), (1, True), (0.0, False),
    (True, True), (np.nan, None), (None, None), ("NA", None), ("", None),
])
def test_parse_treated(value, expected):
    assert parse_treated(value) is expected


def test_first_timepoint_treated_flag_cleared():
    """No interval precedes a patient's first sample"""
    df = validate_metadata(_meta())
    first = df[df["timepoint"] == 0]
    assert first["treated"].isna().all()
    assert df.loc[df["sample"] == "b", "treated"].iloc[0] is True
    assert df.loc[df["sample"] == "e", "treated"].iloc[0] is False


def test_column_aliases():
    df = _meta().rename(columns={"patient": "Patient_ID", "sample": "code",
                                 "organ_description": "type", "treated": "Treatment"})
    out = validate_metadata(df)
    assert list(out.columns) == ["patient", "sample", "organ", "organ_description",
                                 "timepoint", "time", "treated"]
    assert out["organ_description"].tolist()[0] == "Primary"


def test_missing_required_column():
    with pytest.raises(ValueError, match="Metadata must contain"):
        validate_metadata(_meta().drop(columns=["timepoint"]))


def test_negative_timepoint_rejected():
    with pytest.raises(ValueError, match="non-negative"):
        validate_metadata(_meta(timepoint=[0, 1, -1, 0, 1]))


def test_duplicate_samples_rejected():
    with pytest.raises(ValueError, match="Duplicated"):
        validate_metadata(_meta(sample=["a", "b", "b", "d", "e"]))


def test_rows_without_timepoint_dropped():
    df = validate_metadata(_meta(timepoint=[0, 1, None, 0, 1]))
    assert "c" not in set(df["sample"])
    assert len(df) == 4


def test_optional_columns_defaulted():
    df = validate_metadata(_meta().drop(columns=["organ_description", "treated"]))
    assert (df["organ_description"] == "Unknown").all()
    assert df["treated"].isna().all()
    assert df["time"].isna().all()


def test_metadata_records():
    recs = metadata_records(validate_metadata(_meta()))
    assert recs["b"].patient == "P1"
    assert recs["b"].timepoint == 1
    assert recs["b"].treated is True
    assert recs["a"].treated is None
    assert np.isnan(recs["a"].time)


def test_samples_by_patient_order_and_filter():
    """Samples are ordered by timepoint and restricted to those with calls"""
    df = validate_metadata(_meta(timepoint=[1, 0, 1, 0, 1]))
    table = samples_by_patient(df, ["a", "b", "c", "e", "zz"])
    assert table == {"P1": ["b", "a", "c"], "P2": ["e"]}


def test_load_metadata(tmp_path):
    path = tmp_path / "meta.csv"
    _meta().to_csv(path, index=False)
    df = load_metadata(path)
    assert len(df) == 5
    assert df["timepoint"].dtype == np.int64


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
