#!/usr/bin/env python3
"""
Divergence models - hypothesis tests on the cohort comparison tables.

Mixed models (random intercept per patient) test whether within-patient
divergence depends on organ, disease stage or timepoint gap; a one-way ANOVA
tests organ-pair differences; Mann-Whitney U tests compare treated and
untreated intervals. P-values are FDR-adjusted across all tests.
"""
import logging
import warnings
from typing import Optional

import numpy as np
import pandas as pd
import statsmodels.api as sm
import statsmodels.formula.api as smf
from scipy import stats
from statsmodels.stats.multitest import multipletests

from clinical_metadata import parse_treated

logger = logging.getLogger(__name__)

RESULT_COLUMNS = ["hypothesis", "test", "term", "estimate", "statistic", "p_value", "n", "note"]


def adjust_pvalues(pvals, method: str = "fdr_bh") -> np.ndarray:
    """Multiple-testing adjustment; undefined p-values stay undefined."""
    p = np.asarray(pvals, dtype=float)
    q = np.full(len(p), np.nan)
    ok = np.isfinite(p)
    if ok.any():
        q[ok] = multipletests(p[ok], method=method)[1]
    return q


def fit_mixed_model(df: pd.DataFrame, formula: str, groups: str = "patient") -> pd.DataFrame:
    """
    Fit a random-intercept linear mixed model.

    Returns:
        fixed-effect table: term, coef, se, z, p, n, n_groups
    """
    model = smf.mixedlm(formula, data=df, groups=groups, missing="drop")
    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always")
        result = model.fit(reml=True)
    for w in caught:
        logger.warning(f"mixedlm [{formula}]: {w.message}")

    fe = result.fe_params
    se = result.bse_fe.reindex(fe.index)
    return pd.DataFrame({
        "term": fe.index,
        "coef": fe.values,
        "se": se.values,
        "z": (fe / se).values,
        "p": result.pvalues.reindex(fe.index).values,
        "n": int(result.nobs),
        "n_groups": int(len(model.group_labels)),
    })


def anova_by_factor(df: pd.DataFrame, value: str, factor: str) -> pd.DataFrame:
    """Type-II one-way ANOVA of value on a categorical factor."""
    data = df[[value, factor]].dropna()
    if data[factor].nunique() < 2:
        raise ValueError(f"ANOVA needs at least two levels of '{factor}'")
    fitted = smf.ols(f"{value} ~ C({factor})", data=data).fit()
    return sm.stats.anova_lm(fitted, typ=2)


def compare_treated_intervals(summary: pd.DataFrame, value_column: str) -> dict:
    """Mann-Whitney U test of per-interval means, treated vs untreated."""
    values = pd.to_numeric(summary[value_column], errors="coerce")
    flags = summary["treated_flag"].map(parse_treated)
    treated = values[flags.map(lambda v: v is True).astype(bool)].dropna()
    untreated = values[flags.map(lambda v: v is False).astype(bool)].dropna()
    out = {
        "n_treated": int(len(treated)),
        "n_untreated": int(len(untreated)),
        "median_treated": float(treated.median()) if len(treated) else np.nan,
        "median_untreated": float(untreated.median()) if len(untreated) else np.nan,
        "statistic": np.nan,
        "p_value": np.nan,
    }
    if len(treated) == 0 or len(untreated) == 0:
        return out
    res = stats.mannwhitneyu(treated, untreated, alternative="two-sided")
    out["statistic"] = float(res.statistic)
    out["p_value"] = float(res.pvalue)
    return out


def _enough_groups(df: pd.DataFrame, column: str, groups: str = "patient") -> Optional[str]:
    """Reason a mixed model cannot be fitted, or None."""
    if df.empty:
        return "no comparisons"
    if df[groups].nunique() < 2:
        return "fewer than two patients"
    if df[column].nunique() < 2:
        return f"'{column}' has a single level"
    return None


def _mixed_rows(hypothesis: str, df: pd.DataFrame, formula: str, column: str) -> list:
    reason = _enough_groups(df, column)
    if reason:
        logger.warning(f"Skipping {hypothesis} model: {reason}")
        return [dict(hypothesis=hypothesis, test="mixedlm", term=formula, note=reason)]
    try:
        table = fit_mixed_model(df, formula)
    except (ValueError, np.linalg.LinAlgError) as e:
        logger.warning(f"{hypothesis} model failed: {e}")
        return [dict(hypothesis=hypothesis, test="mixedlm", term=formula, note=f"fit failed: {e}")]
    rows = []
    for r in table.itertuples(index=False):
        if r.term == "Intercept":
            continue
        rows.append(dict(hypothesis=hypothesis, test="mixedlm", term=r.term, estimate=r.coef,
                         statistic=r.z, p_value=r.p, n=r.n, note=""))
    return rows


def run_hypothesis_tests(cohort: pd.DataFrame, adjacent: pd.DataFrame,
                         intervals: pd.DataFrame) -> pd.DataFrame:
    """
    Run every cohort-level test and return one tidy table with FDR q-values.

    `cohort` must already carry organ_pair/type_pair/same_organ/timepoint_gap
    (see cohort_aggregate.annotate_comparisons).
    """
    rows = []
    data = cohort.copy()
    if not data.empty:
        data["distance"] = pd.to_numeric(data["distance"], errors="coerce")
        data["same_organ"] = data["same_organ"].astype(str)

    rows += _mixed_rows("organ", data, "distance ~ C(same_organ)", "same_organ")
    rows += _mixed_rows("stage", data, "distance ~ C(type_pair)", "type_pair")
    rows += _mixed_rows("timepoint", data, "distance ~ timepoint_gap", "timepoint_gap")

    try:
        table = anova_by_factor(data, "distance", "organ_pair")
        term = "C(organ_pair)"
        rows.append(dict(hypothesis="organ_pair", test="anova", term=term,
                         statistic=float(table.loc[term, "F"]), p_value=float(table.loc[term, "PR(>F)"]),
                         n=int(data["distance"].notna().sum()), note=""))
    except (KeyError, ValueError, np.linalg.LinAlgError) as e:
        logger.warning(f"Skipping organ-pair ANOVA: {e}")
        rows.append(dict(hypothesis="organ_pair", test="anova", term="C(organ_pair)", note=str(e)))

    for hypothesis, summary, column in [("treatment_divergence", adjacent, "mean_divergence"),
                                        ("treatment_pga_change", intervals, "mean_pga_change")]:
        if summary.empty:
            rows.append(dict(hypothesis=hypothesis, test="mannwhitneyu", term="treated", note="no intervals"))
            continue
        res = compare_treated_intervals(summary, column)
        note = "" if np.isfinite(res["p_value"]) else "needs treated and untreated intervals"
        rows.append(dict(hypothesis=hypothesis, test="mannwhitneyu", term="treated",
                         estimate=res["median_treated"] - res["median_untreated"],
                         statistic=res["statistic"], p_value=res["p_value"],
                         n=res["n_treated"] + res["n_untreated"], note=note))

    out = pd.DataFrame(rows).reindex(columns=RESULT_COLUMNS)
    out["q_value"] = adjust_pvalues(out["p_value"])
    n_tested = int(out["p_value"].notna().sum())
    logger.info(f"Ran {n_tested} test(s); {int((out['q_value'] < 0.05).sum())} with q < 0.05")
    return out
