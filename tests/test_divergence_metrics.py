#!/usr/bin/env python3
"""
Unit tests for the pairwise copy-number distance measures.
"""
import pytest
import sys
from pathlib import Path

import numpy as np
import pandas as pd

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from divergence_metrics import (
    EmptyInputError, ShapeMismatchError, arm_level_copy_number, breakpoint_concordance_score,
    breakpoint_indicators, continuous_copy_number, genetic_distance, get_distance_method,
    pga, pga_difference, ploidy_normalised_divergence, purity_search_distance,
    purity_search_grid, segment_run_length_difference, state_difference_fraction,
)

A = [2, 2, 1, 3, 2]
B = [2, 1, 1, 3, 3]


def _bins(n, chrom="chr1", size=1000):
    return pd.DataFrame({"chrom": [chrom] * n,
                         "start": [1 + k * size for k in range(n)],
                         "end": [(k + 1) * size for k in range(n)]})


def test_state_difference_worked_example():
    """Two differing bins out of four altered in either sample"""
    assert state_difference_fraction(A, B) == pytest.approx(0.5)
    assert state_difference_fraction(A, B, only_altered_bins=False) == pytest.approx(0.4)
    assert state_difference_fraction(A, B, absolute_number=True) == 2.0


def test_state_difference_all_neutral_is_undefined():
    assert np.isnan(state_difference_fraction([2, 2, 2], [2, 2, 2]))


def test_pga_and_pga_difference():
    """PGA counts non-neutral bins; the difference is post minus pre"""
    assert pga(A) == pytest.approx(0.4)
    assert pga(B) == pytest.approx(0.8)
    assert pga_difference(A, B) == pytest.approx(0.4)
    assert pga_difference(B, A) == pytest.approx(-0.4)
    assert pga_difference(B, A, absolute=True) == pytest.approx(0.4)
    assert pga_difference(A, B, as_percentage=True) == pytest.approx(40.0)


def test_genetic_distance():
    assert genetic_distance(A, B) == pytest.approx(0.4)
    assert genetic_distance(A, B, normalise=False) == pytest.approx(2.0)


def test_ploidy_normalised_divergence():
    """One private loss plus one private gain over six aberrant sample-bins"""
    assert ploidy_normalised_divergence(A, B) == pytest.approx(2 / 6)
    assert np.isnan(ploidy_normalised_divergence([2, 2], [2, 2]))


@pytest.mark.parametrize("fn", [state_difference_fraction, genetic_distance, ploidy_normalised_divergence])
def test_symmetry_and_self_distance(fn):
    assert fn(A, B) == pytest.approx(fn(B, A))
    assert fn(A, A) == pytest.approx(0.0)


@pytest.mark.parametrize("fn", [state_difference_fraction, genetic_distance, ploidy_normalised_divergence,
                                pga_difference])
def test_shape_and_empty_errors(fn):
    with pytest.raises(ShapeMismatchError):
        fn([2, 2, 3], [2, 2])
    with pytest.raises(EmptyInputError):
        fn([], [])


def test_shape_mismatch_is_value_error():
    """Callers catching ValueError also see shape problems"""
    with pytest.raises(ValueError):
        genetic_distance([1], [1, 2])


def test_purity_grid_path():
    """Sweep A up to 0.99 with B pure, then B down from 1 with A pure"""
    grid = purity_search_grid(0.2, 0.01)
    assert grid.shape == (161, 2)
    assert tuple(grid[0]) == pytest.approx((0.2, 1.0))
    assert tuple(grid[79]) == pytest.approx((0.99, 1.0))
    assert tuple(grid[80]) == pytest.approx((1.0, 1.0))
    assert tuple(grid[-1]) == pytest.approx((1.0, 0.2))


def test_purity_grid_rejects_bad_bounds():
    with pytest.raises(ValueError):
        purity_search_grid(0.0)
    with pytest.raises(ValueError):
        purity_search_grid(0.2, step=0)


def test_continuous_copy_number_pure_sample():
    cn = continuous_copy_number([0.0, 1.0, -1.0], 1.0)
    assert cn == pytest.approx([2.0, 4.0, 1.0])


def test_continuous_copy_number_neutral_at_any_purity():
    for rho in (0.2, 0.5, 0.9):
        assert continuous_copy_number([0.0], rho)[0] == pytest.approx(2.0)


def test_purity_search_identical_profiles():
    seg = [0.3, -0.5, 0.0, 0.8]
    assert purity_search_distance(seg, seg) == pytest.approx(0.0)


def test_purity_search_symmetric():
    a = [0.4, -0.2, 0.0, 0.6, -0.8]
    b = [0.1, -0.6, 0.2, 0.3, -0.1]
    assert purity_search_distance(a, b) == pytest.approx(purity_search_distance(b, a))


def test_purity_search_raw_distance():
    """A flat profile reads copy number 2 at every purity"""
    d = purity_search_distance([1.0, 0.0], [0.0, 0.0], normalise_to_expected=False)
    assert d == pytest.approx(4.0)


def test_purity_search_recovers_diluted_purity():
    """B is A's gain seen at 50% purity: copy number 4 only at rho_b = 0.5"""
    a = [1.0, 0.0]
    b = [np.log2(1.5), 0.0]
    d, rho_a, rho_b = purity_search_distance(a, b, normalise_to_expected=False, return_purities=True)
    assert d == pytest.approx(0.0, abs=1e-9)
    assert rho_a == pytest.approx(1.0)
    assert rho_b == pytest.approx(0.5)

    d, rho_a, rho_b = purity_search_distance(b, a, normalise_to_expected=False, return_purities=True)
    assert d == pytest.approx(0.0, abs=1e-9)
    assert (rho_a, rho_b) == pytest.approx((0.5, 1.0))


def test_purity_search_capped_at_one():
    assert purity_search_distance([3.0] * 20, [-3.0] * 20) == 1.0


def test_breakpoint_indicators():
    assert breakpoint_indicators([2, 2, 3, 3, 2]).tolist() == [0, 0, 1, 0, 1]
    assert breakpoint_indicators([2]).tolist() == [0]


def test_breakpoint_concordance_identical_and_partial():
    bins = _bins(6)
    a = [2, 2, 3, 3, 2, 2]
    assert breakpoint_concordance_score(bins, a, a) == 0.0
    b = [2, 3, 3, 3, 2, 2]
    # one of two breakpoints shared in each sample
    assert breakpoint_concordance_score(bins, a, b) == pytest.approx(0.5)
    assert breakpoint_concordance_score(bins, b, a) == pytest.approx(0.5)


def test_breakpoint_concordance_tolerance():
    bins = _bins(6)
    a = [2, 2, 3, 3, 2, 2]
    b = [2, 3, 3, 3, 2, 2]
    assert breakpoint_concordance_score(bins, a, b, max_gap=1000) == 0.0


def test_breakpoint_concordance_no_breakpoints():
    bins = _bins(4)
    assert breakpoint_concordance_score(bins, [2, 2, 2, 2], [2, 3, 3, 2]) == 0.0


def test_breakpoint_concordance_bins_must_match():
    with pytest.raises(ShapeMismatchError):
        breakpoint_concordance_score(_bins(3), [2, 2, 3, 3], [2, 3, 3, 3])


def test_run_length_difference_mean_and_max():
    chroms = ["chr1"] * 6
    a = [1, 1, 1, 2, 2, 3]
    b = [2, 2, 2, 2, 3, 3]
    assert segment_run_length_difference(chroms, a, b) == pytest.approx(2.0)
    assert segment_run_length_difference(chroms, a, b, report_max=True) == pytest.approx(3.0)


def test_run_length_difference_splits_on_chromosome():
    chroms = ["chr1"] * 3 + ["chr2"] * 3
    a = [1, 1, 1, 1, 1, 2]
    b = [2] * 6
    assert segment_run_length_difference(chroms, a, b) == pytest.approx(2.5)


def test_run_length_difference_identical_is_zero():
    assert segment_run_length_difference(["chr1"] * 3, [1, 2, 3], [1, 2, 3]) == 0.0


def test_arm_level_copy_number():
    seg = pd.DataFrame({"chrom": ["chr1"] * 4 + ["chr2"],
                        "log2ratio": [0.1, 0.3, -0.2, -0.4, 0.5]})
    arms = ["p", "p", "q", "q", "p"]
    med = arm_level_copy_number(seg, arms)
    assert list(med.index) == ["chr1p", "chr1q", "chr2p"]
    assert med["chr1p"] == pytest.approx(0.2)
    assert med["chr1q"] == pytest.approx(-0.3)
    with_na = arm_level_copy_number(seg, arms, method="mean", report_na=True)
    assert "chr2q" in with_na.index and np.isnan(with_na["chr2q"])


def test_arm_level_rejects_unknown_method():
    seg = pd.DataFrame({"chrom": ["chr1"], "log2ratio": [0.1]})
    with pytest.raises(ValueError):
        arm_level_copy_number(seg, ["p"], method="mode")


def test_unknown_distance_method():
    with pytest.raises(ValueError, match="Unknown distance method"):
        get_distance_method("euclidean")


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
