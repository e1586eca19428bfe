#!/usr/bin/env python3
"""Figures for the divergence analysis (PDF, non-interactive backend)."""
import logging
from pathlib import Path
from typing import List

import matplotlib
matplotlib.use("Agg")  # Non-interactive backend
import matplotlib.pyplot as plt
import pandas as pd
import seaborn as sns

logger = logging.getLogger(__name__)


def plot_divergence_by_group(cohort: pd.DataFrame, group: str, out_path: Path,
                             value: str = "distance", ylabel: str = "Divergence") -> Path:
    order = sorted(cohort[group].astype(str).unique())
    data = cohort.assign(**{group: cohort[group].astype(str)})
    fig, ax = plt.subplots(figsize=(max(4, 0.9 * len(order) + 2), 4.5))
    sns.boxplot(data=data, x=group, y=value, order=order, color="white", showfliers=False, ax=ax)
    sns.stripplot(data=data, x=group, y=value, order=order, hue="patient", size=4,
                  alpha=0.7, jitter=0.2, ax=ax, legend=False)
    ax.set_xlabel(group.replace("_", " "))
    ax.set_ylabel(ylabel)
    ax.tick_params(axis="x", rotation=45)
    fig.tight_layout()
    fig.savefig(out_path)
    plt.close(fig)
    return out_path


def plot_interval_summary(summary: pd.DataFrame, value: str, out_path: Path, ylabel: str) -> Path:
    """Per-interval means, one line per patient, points coloured by treatment."""
    data = summary.assign(treated=summary["treated_flag"].map({True: "treated", False: "untreated"})
                          .fillna("undefined"))
    order = sorted(data["interval_label"].unique(), key=lambda s: tuple(int(x) for x in s.split("-")))
    fig, ax = plt.subplots(figsize=(max(4, 0.8 * len(order) + 2), 4.5))
    for _, sub in data.groupby("patient"):
        sub = sub.set_index("interval_label").reindex(order)
        ax.plot(range(len(order)), sub[value], color="grey", alpha=0.4, linewidth=1)
    data = data.assign(_x=data["interval_label"].map({lab: i for i, lab in enumerate(order)}))
    sns.scatterplot(data=data, x="_x", y=value, hue="treated",
                    hue_order=["treated", "untreated", "undefined"], ax=ax)
    ax.set_xticks(range(len(order)))
    ax.set_xticklabels(order)
    ax.set_xlabel("Timepoint interval")
    ax.set_ylabel(ylabel)
    fig.tight_layout()
    fig.savefig(out_path)
    plt.close(fig)
    return out_path


def make_figures(cohort: pd.DataFrame, adjacent: pd.DataFrame, intervals: pd.DataFrame,
                 out_dir: Path, pga_label: str = "PGA change") -> List[Path]:
    """Write all figures that the available tables support; returns paths written."""
    out_dir = Path(out_dir)
    out_dir.mkdir(parents=True, exist_ok=True)
    written = []
    try:
        if not cohort.empty:
            written.append(plot_divergence_by_group(cohort, "organ_pair", out_dir / "divergence_by_organ_pair.pdf"))
            written.append(plot_divergence_by_group(cohort, "type_pair", out_dir / "divergence_by_stage.pdf"))
            written.append(plot_divergence_by_group(cohort, "timepoint_gap", out_dir / "divergence_by_timepoint_gap.pdf"))
        if not adjacent.empty:
            written.append(plot_interval_summary(adjacent, "mean_divergence",
                                                 out_dir / "adjacent_timepoint_divergence.pdf",
                                                 "Mean divergence"))
        if not intervals.empty:
            written.append(plot_interval_summary(intervals, "mean_pga_change",
                                                 out_dir / "pga_change_per_interval.pdf", pga_label))
    except (ValueError, TypeError) as e:
        logger.warning(f"Could not generate plots: {e}")
    for p in written:
        logger.info(f"Saved figure {p}")
    return written
