#!/usr/bin/env python3
"""
Copy-number store - load binned copy-number calls and segment log2-ratios.

Input tables are wide: one row per genomic bin (or segment), coordinate
columns chrom/start/end followed by one column per sample. All samples of a
cohort share the same bins, so bin k in sample A is the same interval as bin k
in sample B. Calls are saturated to {loss, neutral, gain} = {1, 2, 3}.
"""
import logging
import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import numpy as np
import pandas as pd

from divergence_metrics import ShapeMismatchError, pga

logger = logging.getLogger(__name__)

# Chromosome normalization
_CHR_REMAP = {
    "M": "chrM", "MT": "chrM", "X": "chrX", "Y": "chrY"
}

_COORD_ALIASES = {
    "chrom": ("chrom", "chr", "chromosome", "seqnames"),
    "start": ("start", "start_pos", "begin"),
    "end": ("end", "end_pos", "stop"),
}


def setup_logging(verbosity: int = 1):
    """Setup logging with verbosity control."""
    level = logging.WARNING if verbosity <= 0 else (logging.INFO if verbosity == 1 else logging.DEBUG)
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)s | %(message)s",
        datefmt="%H:%M:%S",
        handlers=[logging.StreamHandler(sys.stderr)],
        force=True,
    )


def normalize_chrom(ch) -> str:
    """
    Normalize chromosome names to chr1, chr2, ..., chrX, chrY, chrM format.
    Drops alt/random scaffolds.
    """
    if ch is None:
        return ""
    s = str(ch).strip()
    s = s.replace("chr", "").replace("CHR", "").replace("Chr", "")
    s = s.upper()
    if s.endswith(".0") and s[:-2].isdigit():
        s = s[:-2]
    if s in _CHR_REMAP:
        return _CHR_REMAP[s]
    if s.isdigit():
        return f"chr{s}"
    if "_" in s or "RANDOM" in s or "ALT" in s or not s:
        return ""
    return f"chr{s}"


def saturate_states(values, ploidy: int = 2) -> np.ndarray:
    """
    Collapse copy-number states into loss/neutral/gain.

    States <= ploidy-1 become ploidy-1, states >= ploidy+1 become ploidy+1.
    NaN is kept as NaN (the caller decides whether that is acceptable).
    """
    arr = np.asarray(values, dtype=float)
    return np.clip(arr, ploidy - 1, ploidy + 1)


def load_table(pth) -> pd.DataFrame:
    """Load table from Parquet (with CSV fallback), TSV or CSV."""
    p = Path(pth)
    if p.suffix in (".parquet", ".parq"):
        try:
            return pd.read_parquet(p)
        except ImportError:
            csv_path = p.with_suffix(".csv")
            logger.warning(f"Parquet engine not available; falling back to CSV: {csv_path}")
            return pd.read_csv(csv_path)
    sep = "\t" if p.suffix in (".tsv", ".txt", ".bed", ".seg") else ","
    try:
        return pd.read_csv(p, sep=sep, encoding="utf-8")
    except UnicodeDecodeError:
        return pd.read_csv(p, sep=sep, encoding="latin1")


def save_table(df: pd.DataFrame, out_path) -> Path:
    """
    Save df to Parquet if an engine is available; otherwise to CSV.
    Returns the path actually written.
    """
    out = Path(out_path)
    os.makedirs(out.parent or Path("."), exist_ok=True)
    if out.suffix in (".parquet", ".parq"):
        try:
            df.to_parquet(out, index=False)
            logger.info("Saved Parquet to %s", out)
            return out
        except ImportError:
            out = out.with_suffix(".csv")
            logger.warning("Parquet engine not available; saving CSV to %s", out)
    sep = "\t" if out.suffix in (".tsv", ".txt") else ","
    df.to_csv(out, index=False, sep=sep)
    logger.info("Saved table to %s", out)
    return out


def _split_coordinates(df: pd.DataFrame, source: str) -> Tuple[pd.DataFrame, List[str]]:
    """Find chrom/start/end columns (case-insensitive aliases) and return (bins, sample columns)."""
    lower = {str(c).strip().lower(): c for c in df.columns}
    found: Dict[str, str] = {}
    for key, aliases in _COORD_ALIASES.items():
        for alias in aliases:
            if alias in lower:
                found[key] = lower[alias]
                break
    missing = [k for k in _COORD_ALIASES if k not in found]
    if missing:
        raise ValueError(f"{source}: missing coordinate column(s) {missing}. Got: {list(df.columns)}")

    bins = pd.DataFrame({
        "chrom": df[found["chrom"]].map(normalize_chrom),
        "start": pd.to_numeric(df[found["start"]], errors="coerce"),
        "end": pd.to_numeric(df[found["end"]], errors="coerce"),
    })
    bad = bins["start"].isna() | bins["end"].isna() | (bins["chrom"] == "")
    if bad.any():
        raise ValueError(f"{source}: {int(bad.sum())} row(s) with unparseable coordinates")
    bins["start"] = bins["start"].astype("int64")
    bins["end"] = bins["end"].astype("int64")

    sample_cols = [c for c in df.columns if c not in found.values()]
    if not sample_cols:
        raise ValueError(f"{source}: no sample columns after {list(found.values())}")
    return bins.reset_index(drop=True), sample_cols


def _sample_matrix(df: pd.DataFrame, sample_cols: List[str], source: str) -> pd.DataFrame:
    values = df[sample_cols].apply(pd.to_numeric, errors="coerce").reset_index(drop=True)
    values.columns = [str(c).strip() for c in sample_cols]
    dups = values.columns[values.columns.duplicated()].tolist()
    if dups:
        raise ValueError(f"{source}: duplicated sample column(s) {dups}")
    n_missing = values.isna().sum()
    n_missing = n_missing[n_missing > 0]
    if len(n_missing):
        detail = ", ".join(f"{s}={int(n)}" for s, n in n_missing.items())
        raise ValueError(f"{source}: missing/non-numeric values in sample column(s): {detail}")
    return values


def load_bin_calls(path, saturate: bool = True, ploidy: int = 2) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """
    Load a binned copy-number call table.

    Returns:
        (bins, calls) - bins has chrom/start/end, calls is bins x samples (int)
    """
    raw = load_table(path)
    bins, sample_cols = _split_coordinates(raw, str(path))
    calls = _sample_matrix(raw, sample_cols, str(path))
    fractional = (calls != calls.round()).sum()
    fractional = fractional[fractional > 0]
    if len(fractional):
        detail = ", ".join(f"{s}={int(n)}" for s, n in fractional.items())
        raise ValueError(f"{path}: non-integer copy-number states in sample column(s): {detail}")
    if saturate:
        before = calls.copy()
        calls = pd.DataFrame(saturate_states(calls.to_numpy(), ploidy=ploidy),
                             columns=calls.columns)
        n_changed = int((before.to_numpy() != calls.to_numpy()).sum())
        if n_changed:
            logger.info(f"Saturated {n_changed:,} bin call(s) into {{{ploidy - 1},{ploidy},{ploidy + 1}}}")
    calls = calls.astype("int64")
    logger.info(f"Loaded calls: {len(bins):,} bins x {calls.shape[1]:,} samples from {path}")
    return bins, calls


def load_segment_log_ratios(path) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """Load a segment log2-ratio table (same wide layout as the call table)."""
    raw = load_table(path)
    segments, sample_cols = _split_coordinates(raw, str(path))
    lrr = _sample_matrix(raw, sample_cols, str(path)).astype(float)
    logger.info(f"Loaded log2-ratios: {len(segments):,} segments x {lrr.shape[1]:,} samples from {path}")
    return segments, lrr


@dataclass
class CopyNumberStore:
    """Per-sample bin call vectors (and optional segment log2-ratios) over shared coordinates."""
    bins: pd.DataFrame
    calls: pd.DataFrame
    log_ratios: Optional[pd.DataFrame] = None
    segments: Optional[pd.DataFrame] = None
    ploidy: int = 2
    _pga: Dict[int, pd.Series] = field(default_factory=dict, init=False, repr=False)

    @classmethod
    def from_files(cls, calls_path, log_ratio_path=None, saturate: bool = True,
                   ploidy: int = 2) -> "CopyNumberStore":
        bins, calls = load_bin_calls(calls_path, saturate=saturate, ploidy=ploidy)
        segments = lrr = None
        if log_ratio_path:
            segments, lrr = load_segment_log_ratios(log_ratio_path)
        store = cls(bins=bins, calls=calls, log_ratios=lrr, segments=segments, ploidy=ploidy)
        store.validate()
        return store

    @property
    def samples(self) -> List[str]:
        return list(self.calls.columns)

    @property
    def n_bins(self) -> int:
        return len(self.bins)

    def validate(self) -> "CopyNumberStore":
        """Reject shape problems at load time rather than per pair."""
        if len(self.calls) != len(self.bins):
            raise ShapeMismatchError(
                f"Call matrix has {len(self.calls)} rows but {len(self.bins)} bins")
        if self.calls.columns.duplicated().any():
            raise ValueError(f"Duplicated sample ids: {self.calls.columns[self.calls.columns.duplicated()].tolist()}")
        for chrom, sub in self.bins.groupby("chrom", sort=False):
            if not sub["start"].is_monotonic_increasing:
                raise ShapeMismatchError(f"Bins on {chrom} are not sorted by start")
        if self.log_ratios is not None:
            if self.segments is not None and len(self.segments) != len(self.log_ratios):
                raise ShapeMismatchError(
                    f"Log2-ratio matrix has {len(self.log_ratios)} rows but {len(self.segments)} segments")
            missing = sorted(set(self.samples) - set(self.log_ratios.columns))
            if missing:
                logger.warning(f"{len(missing)} sample(s) have calls but no log2-ratios: {missing[:5]}")
        return self

    def vector(self, sample: str) -> np.ndarray:
        if sample not in self.calls.columns:
            raise ValueError(f"Unknown sample '{sample}'")
        return self.calls[sample].to_numpy()

    def log_ratio_vector(self, sample: str) -> np.ndarray:
        if self.log_ratios is None:
            raise ValueError("No segment log2-ratio table loaded")
        if sample not in self.log_ratios.columns:
            raise ValueError(f"No log2-ratios for sample '{sample}'")
        return self.log_ratios[sample].to_numpy(dtype=float)

    def chromosomes(self) -> np.ndarray:
        return self.bins["chrom"].to_numpy()

    def pga(self, ploidy: Optional[int] = None) -> pd.Series:
        """Fraction of genome aberrated per sample, cached per ploidy."""
        ploidy = self.ploidy if ploidy is None else ploidy
        if ploidy not in self._pga:
            self._pga[ploidy] = pd.Series({s: pga(self.calls[s].to_numpy(), ploidy=ploidy)
                                           for s in self.samples}, name="pga")
        return self._pga[ploidy]
