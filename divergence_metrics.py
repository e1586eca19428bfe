#!/usr/bin/env python3
"""
Divergence metrics - pairwise distances between copy-number profiles.

Bin-level measures (state difference, PGA difference, genetic distance,
ploidy-normalised event divergence, breakpoint concordance, run-length
difference) compare two call vectors over the same bins. The log2-ratio
measure compares two segment log2-ratio vectors after a purity search.

Every pairwise function rejects vectors of different length
(ShapeMismatchError) and zero-length vectors (EmptyInputError). Zero
denominators give NaN so that downstream aggregation can drop them.
"""
import logging
from dataclasses import dataclass
from typing import Callable, Dict, Tuple, Union

import numpy as np
import pandas as pd

logger = logging.getLogger(__name__)

# Reference median distance for non-same-patient log2-ratio comparisons
EXPECTED_MEDIAN_L2R_DISTANCE = 1848.691


class ShapeMismatchError(ValueError):
    """Two profiles being compared do not share the same bins."""


class EmptyInputError(ValueError):
    """A profile has no bins."""


@dataclass(frozen=True)
class DistanceOptions:
    """
    Every optional knob of the distance measures.

    only_altered_bins: state difference is divided by bins aberrant in either
        sample (True) or by all bins (False).
    absolute_number: state difference returns the raw count of differing bins.
    normalise: genetic distance is divided by the number of bins.
    as_percentage: PGA differences are reported x100.
    absolute: PGA differences in the comparison table are absolute values.
    ploidy: neutral copy-number state.
    min_purity / purity_step: lower bound and step of the purity grid.
    expected_median_distance: reference distance for log2-ratio normalisation.
    normalise_to_expected: divide log2-ratio distance by the reference and cap at 1.
    max_gap: bp tolerance when matching breakpoint edges.
    report_max: run-length difference reports the longest run instead of the mean.
    """
    only_altered_bins: bool = True
    absolute_number: bool = False
    normalise: bool = True
    as_percentage: bool = False
    absolute: bool = True
    ploidy: int = 2
    min_purity: float = 0.2
    purity_step: float = 0.01
    expected_median_distance: float = EXPECTED_MEDIAN_L2R_DISTANCE
    normalise_to_expected: bool = True
    max_gap: int = 0
    report_max: bool = False


def _check_pair(x, y, dtype=float) -> Tuple[np.ndarray, np.ndarray]:
    a = np.asarray(x, dtype=dtype).ravel()
    b = np.asarray(y, dtype=dtype).ravel()
    if len(a) != len(b):
        raise ShapeMismatchError(f"Profiles differ in length: {len(a)} vs {len(b)}")
    if len(a) == 0:
        raise EmptyInputError("Cannot compare zero-length profiles")
    return a, b


def state_difference_fraction(x, y, only_altered_bins: bool = True,
                              absolute_number: bool = False, ploidy: int = 2) -> float:
    """
    Fraction of bins whose copy-number state differs between two samples.

    With only_altered_bins the denominator is the number of bins aberrant in
    at least one of the samples; otherwise it is the number of bins. Returns
    NaN when no bin is aberrant in either sample.
    """
    a, b = _check_pair(x, y)
    n_diff = int(np.count_nonzero(a != b))
    if absolute_number:
        return float(n_diff)
    if only_altered_bins:
        denom = int(np.count_nonzero((a != ploidy) | (b != ploidy)))
    else:
        denom = len(a)
    if denom == 0:
        return np.nan
    return n_diff / denom


def pga(v, ploidy: int = 2) -> float:
    """Fraction of bins departing from the neutral state."""
    arr = np.asarray(v, dtype=float).ravel()
    if len(arr) == 0:
        raise EmptyInputError("Cannot compute PGA of a zero-length profile")
    return float(np.count_nonzero(arr != ploidy)) / len(arr)


def pga_difference(pre, post, as_percentage: bool = False, absolute: bool = False,
                   ploidy: int = 2) -> float:
    """PGA(post) - PGA(pre); positive means more aberration after."""
    a, b = _check_pair(pre, post)
    return scale_pga_change(pga(a, ploidy=ploidy), pga(b, ploidy=ploidy),
                            as_percentage=as_percentage, absolute=absolute)


def scale_pga_change(pga_pre: float, pga_post: float, as_percentage: bool = False,
                     absolute: bool = False) -> float:
    """PGA change from two precomputed PGA values."""
    diff = float(pga_post) - float(pga_pre)
    if as_percentage:
        diff *= 100
    if absolute:
        diff = abs(diff)
    return diff


def genetic_distance(x, y, normalise: bool = True) -> float:
    """Sum of absolute state differences, optionally per bin."""
    a, b = _check_pair(x, y)
    dist = float(np.sum(np.abs(a - b)))
    if normalise:
        dist /= len(a)
    return dist


def ploidy_normalised_divergence(x, y, ploidy: int = 2) -> float:
    """
    Event divergence normalised by the total aneuploidy of the pair.

    Counts bins lost in exactly one of the two samples plus bins gained in
    exactly one of them, divided by the number of aberrant sample-bins
    across both samples.
    """
    a, b = _check_pair(x, y)
    score_loss = int(np.count_nonzero((a < ploidy) ^ (b < ploidy)))
    score_gain = int(np.count_nonzero((a > ploidy) ^ (b > ploidy)))
    aneuploidy = int(np.count_nonzero(a != ploidy) + np.count_nonzero(b != ploidy))
    if aneuploidy == 0:
        return np.nan
    return (score_loss + score_gain) / aneuploidy


def continuous_copy_number(lrrs, rho, psi_target: float = 2.0, gamma: float = 1.0) -> np.ndarray:
    """
    Continuous copy number from log2-ratios at tumour purity rho.

    rho may be a scalar or a column vector (one purity per row) for
    broadcasting over a purity grid.
    """
    rho = np.asarray(rho, dtype=float)
    psi = 2 * (1 - rho) + rho * psi_target
    return (psi * np.power(2.0, np.asarray(lrrs, dtype=float) / gamma) - 2 * (1 - rho)) / rho


def _descending_steps(start: float, stop: float, step: float) -> np.ndarray:
    n = int(np.floor((start - stop) / step + 1e-9)) + 1
    return np.round(start - step * np.arange(n), 10)


def purity_search_grid(min_purity: float = 0.2, step: float = 0.01) -> np.ndarray:
    """
    Path of (rho_a, rho_b) pairs searched by the log2-ratio distance.

    First leg sweeps sample A from min_purity to 0.99 with B fixed at 1,
    second leg fixes A at 1 and sweeps B from 1 down to min_purity.
    """
    if not 0 < min_purity <= 0.99:
        raise ValueError(f"min_purity must be in (0, 0.99], got {min_purity}")
    if step <= 0:
        raise ValueError(f"purity step must be positive, got {step}")
    n_up = int(np.floor((0.99 - min_purity) / step + 1e-9)) + 1
    sweep_a = np.round(min_purity + step * np.arange(n_up), 10)
    sweep_b = _descending_steps(1.0, min_purity, step)
    first = np.column_stack([sweep_a, np.ones_like(sweep_a)])
    second = np.column_stack([np.ones_like(sweep_b), sweep_b])
    return np.vstack([first, second])


def purity_search_distance(seg_a, seg_b,
                           expected_median_distance: float = EXPECTED_MEDIAN_L2R_DISTANCE,
                           normalise_to_expected: bool = True, min_purity: float = 0.2,
                           step: float = 0.01,
                           return_purities: bool = False) -> Union[float, Tuple[float, float, float]]:
    """
    Purity-invariant distance between two segment log2-ratio profiles.

    Reconstructs continuous copy number for each sample along the purity
    grid and keeps the minimum sum of squared differences. With
    normalise_to_expected the minimum is divided by the reference median
    distance and capped at 1.

    Returns:
        distance, or (distance, rho_a, rho_b) with return_purities
    """
    a, b = _check_pair(seg_a, seg_b)
    grid = purity_search_grid(min_purity, step)
    cn_a = continuous_copy_number(a[None, :], grid[:, [0]])
    cn_b = continuous_copy_number(b[None, :], grid[:, [1]])
    ssd = np.sum((cn_a - cn_b) ** 2, axis=1)
    best = int(np.argmin(ssd))
    d = float(ssd[best])
    if normalise_to_expected:
        if expected_median_distance <= 0:
            raise ValueError(f"expected_median_distance must be positive, got {expected_median_distance}")
        d = min(d / expected_median_distance, 1.0)
    if return_purities:
        return d, float(grid[best, 0]), float(grid[best, 1])
    return d


def breakpoint_indicators(cn) -> np.ndarray:
    """1 at bin k when the state changes between bin k-1 and k, else 0."""
    arr = np.asarray(cn, dtype=float).ravel()
    out = np.zeros(len(arr), dtype=int)
    if len(arr) > 1:
        out[1:] = (np.diff(arr) != 0).astype(int)
    return out


def _edge_hits(query: pd.DataFrame, subject: pd.DataFrame, column: str, max_gap: int) -> int:
    """Number of query rows with a subject row on the same chromosome within max_gap at one edge."""
    hits = 0
    for chrom, q in query.groupby("chrom", sort=False):
        s = subject.loc[subject["chrom"] == chrom, column].to_numpy()
        if len(s) == 0:
            continue
        gaps = np.abs(q[column].to_numpy()[:, None] - s[None, :])
        hits += int(np.count_nonzero((gaps <= max_gap).any(axis=1)))
    return hits


def breakpoint_concordance_score(bins: pd.DataFrame, cn_a, cn_b, max_gap: int = 0) -> float:
    """
    Breakpoint discordance between two profiles over the same bins.

    0 means every breakpoint is shared (start-to-start and end-to-end within
    max_gap), values approaching 1 mean no shared breakpoints. Returns 0 when
    either sample has no breakpoint bins with non-zero coordinates.
    """
    a, b = _check_pair(cn_a, cn_b)
    if len(bins) != len(a):
        raise ShapeMismatchError(f"Profiles have {len(a)} bins but coordinates have {len(bins)}")
    coords = bins[["chrom", "start", "end"]].reset_index(drop=True)
    nonzero = (coords["start"] != 0) & (coords["end"] != 0)
    rows_a = coords[(breakpoint_indicators(a) == 1) & nonzero]
    rows_b = coords[(breakpoint_indicators(b) == 1) & nonzero]
    if rows_a.empty or rows_b.empty:
        return 0.0

    concordant = (
        _edge_hits(rows_a, rows_b, "start", max_gap) + _edge_hits(rows_a, rows_b, "end", max_gap)
        + _edge_hits(rows_b, rows_a, "start", max_gap) + _edge_hits(rows_b, rows_a, "end", max_gap)
    )
    total = 2 * len(rows_a) + 2 * len(rows_b)
    return (total - concordant) / total


def segment_run_length_difference(chroms, profile_a, profile_b, report_max: bool = False) -> float:
    """
    Mean (or maximum) length of runs where two profiles disagree.

    Runs are taken per chromosome over the paired state (a, b); a run counts
    when a != b throughout. Returns 0 when the profiles never disagree.
    """
    a, b = _check_pair(profile_a, profile_b)
    chroms = np.asarray(chroms).ravel()
    if len(chroms) != len(a):
        raise ShapeMismatchError(f"Profiles have {len(a)} bins but {len(chroms)} chromosome labels")

    lengths = []
    for chrom in pd.unique(chroms):
        mask = chroms == chrom
        sa, sb = a[mask], b[mask]
        # run boundaries: either state changes
        change = np.flatnonzero((sa[1:] != sa[:-1]) | (sb[1:] != sb[:-1])) + 1
        starts = np.concatenate([[0], change])
        ends = np.concatenate([change, [len(sa)]])
        disagree = sa[starts] != sb[starts]
        lengths.extend((ends - starts)[disagree].tolist())

    if not lengths:
        return 0.0
    return float(np.max(lengths)) if report_max else float(np.mean(lengths))


def arm_level_copy_number(segments: pd.DataFrame, arms, value_col: str = "log2ratio",
                          method: str = "median", report_na: bool = False) -> pd.Series:
    """
    Summarise a numeric column per chromosome arm.

    Returns:
        Series indexed "<chrom>p", "<chrom>q" in chromosome order
    """
    if method not in ("median", "mean"):
        raise ValueError(f"method must be 'median' or 'mean', got '{method}'")
    arms = np.asarray(arms).ravel()
    if len(arms) != len(segments):
        raise ShapeMismatchError(f"{len(segments)} segments but {len(arms)} arm labels")

    values = pd.to_numeric(segments[value_col], errors="coerce").to_numpy()
    chroms = segments["chrom"].to_numpy()
    out = {}
    for chrom in pd.unique(chroms):
        for arm in ("p", "q"):
            sel = values[(chroms == chrom) & (arms == arm)]
            sel = sel[~np.isnan(sel)]
            if len(sel) == 0:
                out[f"{chrom}{arm}"] = np.nan
            else:
                out[f"{chrom}{arm}"] = float(np.median(sel) if method == "median" else np.mean(sel))
    result = pd.Series(out, name=f"{method}_{value_col}")
    if not report_na:
        result = result.dropna()
    return result


# ============================================================================
# Strategy registry: (store, sample_a, sample_b, options) -> distance
# ============================================================================

def _state_difference(store, a, b, opts: DistanceOptions) -> float:
    return state_difference_fraction(store.vector(a), store.vector(b),
                                     only_altered_bins=opts.only_altered_bins,
                                     absolute_number=opts.absolute_number,
                                     ploidy=opts.ploidy)


def _genetic_distance(store, a, b, opts: DistanceOptions) -> float:
    return genetic_distance(store.vector(a), store.vector(b), normalise=opts.normalise)


def _ploidy_divergence(store, a, b, opts: DistanceOptions) -> float:
    return ploidy_normalised_divergence(store.vector(a), store.vector(b), ploidy=opts.ploidy)


def _log2ratio(store, a, b, opts: DistanceOptions) -> float:
    return purity_search_distance(store.log_ratio_vector(a), store.log_ratio_vector(b),
                                  expected_median_distance=opts.expected_median_distance,
                                  normalise_to_expected=opts.normalise_to_expected,
                                  min_purity=opts.min_purity, step=opts.purity_step)


def _breakpoint(store, a, b, opts: DistanceOptions) -> float:
    return breakpoint_concordance_score(store.bins, store.vector(a), store.vector(b),
                                        max_gap=opts.max_gap)


def _segment_length(store, a, b, opts: DistanceOptions) -> float:
    return segment_run_length_difference(store.chromosomes(), store.vector(a), store.vector(b),
                                         report_max=opts.report_max)


DISTANCE_METHODS: Dict[str, Callable] = {
    "state_difference": _state_difference,
    "genetic_distance": _genetic_distance,
    "ploidy_divergence": _ploidy_divergence,
    "log2ratio": _log2ratio,
    "breakpoint": _breakpoint,
    "segment_length": _segment_length,
}


def get_distance_method(name: str) -> Callable:
    try:
        return DISTANCE_METHODS[name]
    except KeyError:
        raise ValueError(f"Unknown distance method '{name}'. "
                         f"Choose from: {sorted(DISTANCE_METHODS)}") from None
