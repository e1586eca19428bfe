#!/usr/bin/env python3
"""
Clinical metadata - per-sample patient, organ, timepoint and treatment annotation.

Expected columns (case-insensitive):
    patient, sample, organ, timepoint            required
    organ_description (or type), time, treated   optional

`treated` records whether the patient was treated in the interval leading up
to the sample; it is undefined for the first timepoint of each patient.
"""
import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

import numpy as np
import pandas as pd

from cn_store import load_table

logger = logging.getLogger(__name__)

REQUIRED_COLUMNS = {"patient", "sample", "organ", "timepoint"}

_COLUMN_ALIASES = {
    "patient_id": "patient",
    "sample_id": "sample",
    "code": "sample",
    "type": "organ_description",
    "tissue": "organ",
    "tp": "timepoint",
    "days": "time",
    "treatment": "treated",
}

_TRUE = {"1", "true", "t", "yes", "y", "treated"}
_FALSE = {"0", "false", "f", "no", "n", "untreated"}


@dataclass(frozen=True)
class SampleMetadata:
    patient: str
    sample: str
    organ: str
    organ_description: str
    timepoint: int
    time: float
    treated: Optional[bool]


def parse_treated(value) -> Optional[bool]:
    """yes/no/true/false/1/0 -> bool; anything else (NA, blank) -> None."""
    if value is None or value is pd.NA:
        return None
    if isinstance(value, (bool, np.bool_)):
        return bool(value)
    if isinstance(value, (int, float, np.integer, np.floating)):
        return None if np.isnan(value) else bool(value)
    s = str(value).strip().lower()
    if s in _TRUE:
        return True
    if s in _FALSE:
        return False
    return None


def validate_metadata(df: pd.DataFrame) -> pd.DataFrame:
    """Validate and normalize sample metadata."""
    df = df.copy()
    df.columns = [str(c).strip().lower().replace(" ", "_") for c in df.columns]
    df = df.rename(columns={k: v for k, v in _COLUMN_ALIASES.items()
                            if k in df.columns and v not in df.columns})
    if not REQUIRED_COLUMNS.issubset(df.columns):
        raise ValueError(f"Metadata must contain: {sorted(REQUIRED_COLUMNS)}. Got: {list(df.columns)}")

    for c in ["patient", "sample", "organ"]:
        df[c] = df[c].astype("string").str.strip()
    if "organ_description" not in df.columns:
        df["organ_description"] = "Unknown"
    df["organ_description"] = df["organ_description"].astype("string").str.strip().fillna("Unknown")
    df["timepoint"] = pd.to_numeric(df["timepoint"], errors="coerce")
    df["time"] = pd.to_numeric(df["time"], errors="coerce") if "time" in df.columns else np.nan
    if "treated" not in df.columns:
        df["treated"] = None
    df["treated"] = df["treated"].map(parse_treated).astype(object)

    initial_len = len(df)
    df = df.dropna(subset=["patient", "sample", "timepoint"])
    df = df[(df["patient"].str.len() > 0) & (df["sample"].str.len() > 0)]
    if len(df) < initial_len:
        logger.warning(f"Dropped {initial_len - len(df)} metadata rows without patient/sample/timepoint")

    if (df["timepoint"] < 0).any() or (df["timepoint"] != df["timepoint"].round()).any():
        bad = df.loc[(df["timepoint"] < 0) | (df["timepoint"] != df["timepoint"].round()), "sample"].tolist()
        raise ValueError(f"Timepoints must be non-negative integers; offending samples: {bad[:10]}")
    df["timepoint"] = df["timepoint"].astype("int64")
    df["organ"] = df["organ"].fillna("Unknown")

    dups = df["sample"][df["sample"].duplicated()].tolist()
    if dups:
        raise ValueError(f"Duplicated sample ids in metadata: {dups[:10]}")

    # no previous interval before the first timepoint
    first_tp = df.groupby("patient")["timepoint"].transform("min")
    n_reset = int((df["treated"].notna() & (df["timepoint"] == first_tp)).sum())
    if n_reset:
        logger.debug(f"Cleared treated flag on {n_reset} first-timepoint sample(s)")
    df.loc[df["timepoint"] == first_tp, "treated"] = None

    df = df.reset_index(drop=True)
    logger.info(f"Validated metadata: {len(df):,} samples, {df['patient'].nunique():,} patients")
    return df[["patient", "sample", "organ", "organ_description", "timepoint", "time", "treated"]]


def load_metadata(path) -> pd.DataFrame:
    return validate_metadata(load_table(path))


def metadata_records(df: pd.DataFrame) -> Dict[str, SampleMetadata]:
    """Map sample id -> SampleMetadata."""
    out = {}
    for row in df.itertuples(index=False):
        out[str(row.sample)] = SampleMetadata(
            patient=str(row.patient),
            sample=str(row.sample),
            organ=str(row.organ),
            organ_description=str(row.organ_description),
            timepoint=int(row.timepoint),
            time=float(row.time) if pd.notna(row.time) else np.nan,
            treated=parse_treated(row.treated),
        )
    return out


def samples_by_patient(df: pd.DataFrame, available: Iterable[str]) -> Dict[str, List[str]]:
    """
    Ordered patient -> samples mapping restricted to samples with copy-number data.
    Samples are ordered by timepoint, then by their order in the metadata.
    """
    available = set(available)
    known = set(df["sample"].astype(str))
    no_calls = sorted(known - available)
    no_meta = sorted(available - known)
    if no_calls:
        logger.warning(f"{len(no_calls)} metadata sample(s) have no copy-number calls: {no_calls[:5]}")
    if no_meta:
        logger.warning(f"{len(no_meta)} copy-number sample(s) have no metadata: {no_meta[:5]}")

    kept = df[df["sample"].astype(str).isin(available)].copy()
    kept["_order"] = np.arange(len(kept))
    kept = kept.sort_values(["timepoint", "_order"], kind="stable")
    out: Dict[str, List[str]] = {}
    for patient, sub in kept.groupby("patient", sort=True):
        out[str(patient)] = sub["sample"].astype(str).tolist()
    return out
