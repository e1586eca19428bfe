#!/usr/bin/env python3
"""
Generate a small synthetic longitudinal cohort for smoke runs.

Writes to --out-dir:
- calls.tsv        chrom,start,end,<sample...> integer copy-number states
- log_ratios.tsv   same bins with segment log2-ratios
- metadata.csv     patient,sample,organ,organ_description,timepoint,time,treated

Each patient starts from a primary profile; every later timepoint inherits the
previous profile and gains a few new events (more when treated), and each
sample adds a couple of private events.
"""
import argparse
import logging
import sys
from pathlib import Path

import numpy as np
import pandas as pd

sys.path.insert(0, str(Path(__file__).parent.parent))

from cn_store import setup_logging

logger = logging.getLogger(__name__)

ORGANS = ["liver", "lung", "lymph_node", "bone", "brain"]


def make_bins(chroms=("chr1", "chr2", "chr3"), n_per_chrom: int = 50, bin_size: int = 1_000_000) -> pd.DataFrame:
    rows = []
    for chrom in chroms:
        for k in range(n_per_chrom):
            rows.append((chrom, k * bin_size + 1, (k + 1) * bin_size))
    return pd.DataFrame(rows, columns=["chrom", "start", "end"])


def _add_events(profile: np.ndarray, rng: np.random.Generator, n_events: int, max_len: int = 8) -> np.ndarray:
    out = profile.copy()
    for _ in range(n_events):
        start = int(rng.integers(0, len(out)))
        length = int(rng.integers(1, max_len + 1))
        out[start:start + length] = rng.choice([1, 3, 4])
    return out


def make_cohort(n_patients: int = 6, seed: int = 42, n_per_chrom: int = 50):
    """
    Returns:
        (calls, log_ratios, metadata) DataFrames
    """
    rng = np.random.default_rng(seed)
    bins = make_bins(n_per_chrom=n_per_chrom)
    n_bins = len(bins)
    profiles = {}
    meta_rows = []

    for p in range(n_patients):
        patient = f"P{p + 1:02d}"
        n_timepoints = int(rng.integers(2, 4))
        clone = _add_events(np.full(n_bins, 2), rng, n_events=int(rng.integers(3, 8)))
        for tp in range(n_timepoints):
            treated = None if tp == 0 else bool(rng.random() < 0.5)
            if tp > 0:
                clone = _add_events(clone, rng, n_events=4 if treated else 1)
            n_samples = 1 if tp == 0 else int(rng.integers(1, 4))
            organs = ["breast"] if tp == 0 else list(rng.choice(ORGANS, size=n_samples, replace=False))
            for s, organ in enumerate(organs):
                sample = f"{patient}_T{tp}_{s + 1}"
                profiles[sample] = _add_events(clone, rng, n_events=2, max_len=3)
                meta_rows.append({
                    "patient": patient,
                    "sample": sample,
                    "organ": organ,
                    "organ_description": "Primary" if tp == 0 else "Metastasis",
                    "timepoint": tp,
                    "time": float(tp * 180 + int(rng.integers(0, 30))),
                    "treated": "NA" if treated is None else ("yes" if treated else "no"),
                })

    calls = pd.concat([bins, pd.DataFrame(profiles)], axis=1)
    purity = {s: float(rng.uniform(0.4, 0.9)) for s in profiles}
    lrr = {s: np.log2((purity[s] * v + 2 * (1 - purity[s])) / 2) + rng.normal(0, 0.05, n_bins)
           for s, v in profiles.items()}
    log_ratios = pd.concat([bins, pd.DataFrame(lrr).round(4)], axis=1)
    metadata = pd.DataFrame(meta_rows)
    return calls, log_ratios, metadata


def write_cohort(out_dir, n_patients: int = 6, seed: int = 42) -> dict:
    out = Path(out_dir)
    out.mkdir(parents=True, exist_ok=True)
    calls, log_ratios, metadata = make_cohort(n_patients=n_patients, seed=seed)
    paths = {
        "calls": out / "calls.tsv",
        "log_ratios": out / "log_ratios.tsv",
        "metadata": out / "metadata.csv",
    }
    calls.to_csv(paths["calls"], sep="\t", index=False)
    log_ratios.to_csv(paths["log_ratios"], sep="\t", index=False)
    metadata.to_csv(paths["metadata"], index=False)
    logger.info(f"Wrote {metadata['patient'].nunique()} patients, {len(metadata)} samples, "
                f"{len(calls):,} bins to {out}")
    return paths


def main():
    ap = argparse.ArgumentParser(description="Write a synthetic longitudinal copy-number cohort")
    ap.add_argument("--out-dir", default="test_data")
    ap.add_argument("--patients", type=int, default=6)
    ap.add_argument("--seed", type=int, default=42)
    args = ap.parse_args()
    setup_logging(1)
    write_cohort(args.out_dir, n_patients=args.patients, seed=args.seed)


if __name__ == "__main__":
    main()
