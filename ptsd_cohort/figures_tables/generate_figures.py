"""Generate report figures.

Figure 1: CAPS distributions by group (pre / post)
Figure 2: Paired means with 95% CI across time points
Figure 3: Reliable change scatter (pre vs post)
Figure 4: Bayes factor prior-scale sensitivity
Figure 5: Covariate balance (love plot)
Figure 6: Propensity score overlap before / after matching
"""

from __future__ import annotations

from pathlib import Path
from typing import Dict, Optional

import matplotlib
matplotlib.use("Agg")  # Headless backend
import matplotlib.pyplot as plt
from matplotlib.lines import Line2D
import numpy as np
import pandas as pd
import seaborn as sns

from ptsd_cohort.analysis.utils import mean_ci
from ptsd_cohort.preprocessing.constants import (
    CHANGE_CLASSES,
    CHANGE_PALETTE,
    COVARIATE_LABELS,
    FIGURE_DPI,
    GROUP_ORDER,
    GROUP_PALETTE,
    SMD_THRESHOLD,
    get_output_dir,
)

plt.rcParams["font.family"] = ["DejaVu Sans", "Arial", "sans-serif"]
plt.rcParams["font.size"] = 10

TIMEPOINTS = [
    ("caps_pre", "Pre"),
    ("caps_post", "Post"),
    ("caps_followup", "Follow-up"),
]

# Lee & Wagenmakers evidence bands on the BF10 scale
EVIDENCE_BANDS = [
    (1 / 3, 3, "#f2f2f2", "Anecdotal"),
    (3, 10, "#e3efe3", "Moderate H1"),
    (10, 100, "#c8e0c8", "Strong H1"),
    (1 / 10, 1 / 3, "#f7e6e6", "Moderate H0"),
]


def _save(fig, path: Path, dpi: int) -> Path:
    fig.tight_layout()
    fig.savefig(path, dpi=dpi, bbox_inches="tight", facecolor="white", edgecolor="none")
    plt.close(fig)
    return path


def plot_distributions(df: pd.DataFrame, figures_dir: Path, dpi: int = FIGURE_DPI) -> Path:
    """Figure 1: CAPS density per group at pre and post."""
    fig, axes = plt.subplots(1, 2, figsize=(10, 4), sharey=True)
    plot_df = df.assign(group=df["group"].astype(str))

    for ax, (col, label) in zip(axes, TIMEPOINTS[:2]):
        sns.kdeplot(
            data=plot_df, x=col, hue="group", hue_order=GROUP_ORDER,
            palette=GROUP_PALETTE, common_norm=False, fill=True, alpha=0.3, ax=ax,
        )
        for group in GROUP_ORDER:
            mean = plot_df.loc[plot_df["group"] == group, col].mean()
            ax.axvline(mean, color=GROUP_PALETTE[group], linestyle="--", lw=1)
        ax.set_title(f"CAPS {label.lower()}-treatment")
        ax.set_xlabel("CAPS total score")

    axes[0].set_ylabel("Density")
    return _save(fig, figures_dir / "fig1_caps_distributions.png", dpi)


def plot_paired_means(df: pd.DataFrame, figures_dir: Path, dpi: int = FIGURE_DPI) -> Path:
    """Figure 2: mean CAPS +/- 95% CI per group at each available time point."""
    timepoints = [(c, l) for c, l in TIMEPOINTS if c in df.columns and df[c].notna().any()]
    x = np.arange(len(timepoints))
    offsets = {GROUP_ORDER[0]: -0.06, GROUP_ORDER[1]: 0.06}

    fig, ax = plt.subplots(figsize=(6, 4.5))
    for group in GROUP_ORDER:
        sub = df[df["group"] == group]
        means, lows, highs, ns = [], [], [], []
        for col, _ in timepoints:
            values = sub[col].dropna()
            low, high = mean_ci(values)
            means.append(values.mean())
            lows.append(low)
            highs.append(high)
            ns.append(len(values))
        means = np.array(means, dtype=float)
        yerr = np.vstack([means - np.array(lows, dtype=float), np.array(highs, dtype=float) - means])
        ax.errorbar(
            x + offsets[group], means, yerr=yerr, fmt="o-", capsize=4, lw=1.5,
            color=GROUP_PALETTE[group], label=f"{group} (n = {ns[0]})",
        )

    ax.set_xticks(x)
    ax.set_xticklabels([label for _, label in timepoints])
    ax.set_ylabel("CAPS total score (mean, 95% CI)")
    ax.set_title("CAPS severity over time")
    ax.legend(frameon=False)
    ax.grid(True, axis="y", alpha=0.2)
    return _save(fig, figures_dir / "fig2_paired_means.png", dpi)


def plot_reliable_change(
    df: pd.DataFrame,
    critical_change: float,
    figures_dir: Path,
    dpi: int = FIGURE_DPI,
) -> Path:
    """Figure 3: pre vs post with identity line and the reliable-change band."""
    if "change_class" not in df.columns:
        raise KeyError("Reliable change scatter needs 'change_class'; classify the data first")

    fig, ax = plt.subplots(figsize=(5.5, 5.5))
    lo = float(np.nanmin([df["caps_pre"].min(), df["caps_post"].min()])) - 5
    hi = float(np.nanmax([df["caps_pre"].max(), df["caps_post"].max()])) + 5
    line = np.array([lo, hi])

    ax.fill_between(line, line - critical_change, line + critical_change, color="#eeeeee", zorder=0)
    ax.plot(line, line, color="black", lw=1)
    ax.plot(line, line - critical_change, color="gray", lw=0.8, linestyle="--")
    ax.plot(line, line + critical_change, color="gray", lw=0.8, linestyle="--")

    markers = {GROUP_ORDER[0]: "o", GROUP_ORDER[1]: "s"}
    for group in GROUP_ORDER:
        sub = df[df["group"] == group]
        ax.scatter(
            sub["caps_pre"], sub["caps_post"], marker=markers[group], s=28,
            c=sub["change_class"].astype(str).map(CHANGE_PALETTE), edgecolor="white", linewidth=0.4,
        )

    handles = [Line2D([0], [0], marker="o", color="w", markerfacecolor=CHANGE_PALETTE[c], markersize=8, label=c)
               for c in CHANGE_CLASSES]
    handles += [Line2D([0], [0], marker=markers[g], color="w", markerfacecolor="gray", markersize=7, label=g)
                for g in GROUP_ORDER]
    ax.legend(handles=handles, loc="upper left", fontsize=8, frameon=False)

    ax.set_xlim(lo, hi)
    ax.set_ylim(lo, hi)
    ax.set_xlabel("CAPS pre-treatment")
    ax.set_ylabel("CAPS post-treatment")
    ax.set_title(f"Reliable change (band = +/- {critical_change:.1f} points)")
    return _save(fig, figures_dir / "fig3_reliable_change.png", dpi)


def plot_bf_sensitivity(
    table: pd.DataFrame,
    figures_dir: Path,
    reference_scale: Optional[float] = None,
    dpi: int = FIGURE_DPI,
) -> Path:
    """Figure 4: BF10 against prior scale on a log axis with evidence bands."""
    fig, ax = plt.subplots(figsize=(7, 4.5))

    for low, high, color, label in EVIDENCE_BANDS:
        ax.axhspan(low, high, color=color, zorder=0)
        ax.text(1.01, np.sqrt(low * high), label, transform=ax.get_yaxis_transform(),
                va="center", fontsize=7, color="gray")
    ax.axhline(1, color="black", lw=0.8)

    series = [
        ("ancova_bf10", "ANCOVA group BF10", "#1f4e79", "-"),
        ("rm_interaction_bf_incl", "RM-ANOVA time x group BF_incl", "#c55a11", "-"),
        ("external_bf10", "Precomputed table", "black", ":"),
    ]
    for col, label, color, style in series:
        if col not in table.columns:
            continue
        sub = table[["prior_scale", col]].dropna()
        if sub.empty:
            continue
        ax.plot(sub["prior_scale"], sub[col], linestyle=style, color=color, lw=1.8, label=label,
                marker="o" if style == ":" else None, markersize=3)

    if reference_scale is not None:
        ax.axvline(reference_scale, color="gray", linestyle="--", lw=1)

    ax.set_yscale("log")
    ax.set_xlabel("Cauchy prior scale r")
    ax.set_ylabel("Bayes factor (log scale)")
    ax.set_title("Prior sensitivity")
    ax.legend(fontsize=8, frameon=False)
    return _save(fig, figures_dir / "fig4_bf_sensitivity.png", dpi)


def plot_love(balance: pd.DataFrame, figures_dir: Path, dpi: int = FIGURE_DPI) -> Path:
    """Figure 5: |SMD| before and after matching per covariate."""
    labels = [COVARIATE_LABELS.get(c, c) for c in balance["Column"]]
    y = np.arange(len(balance))[::-1]

    fig, ax = plt.subplots(figsize=(6.5, 0.6 * len(balance) + 1.5))
    for i in range(len(balance)):
        ax.plot([balance["abs_SMD_before"].iloc[i], balance["abs_SMD_after"].iloc[i]], [y[i], y[i]],
                color="lightgray", lw=1.5, zorder=1)
    ax.scatter(balance["abs_SMD_before"], y, s=50, facecolor="white", edgecolor="#c00000", label="Before matching", zorder=2)
    ax.scatter(balance["abs_SMD_after"], y, s=50, color="#1f4e79", label="After matching", zorder=3)
    ax.axvline(SMD_THRESHOLD, color="gray", linestyle="--", lw=1)

    ax.set_yticks(y)
    ax.set_yticklabels(labels)
    ax.set_xlabel("|Standardized mean difference|")
    ax.set_xlim(left=0)
    ax.set_title("Covariate balance")
    ax.legend(fontsize=8, frameon=False, loc="lower right")
    ax.grid(True, axis="x", alpha=0.2)
    return _save(fig, figures_dir / "fig5_love_plot.png", dpi)


def plot_propensity_overlap(
    propensity: pd.Series,
    eligible: pd.DataFrame,
    matched: pd.DataFrame,
    figures_dir: Path,
    dpi: int = FIGURE_DPI,
) -> Path:
    """Figure 6: propensity score distributions before and after matching."""
    before = eligible[["patient_id", "group"]].assign(group=lambda d: d["group"].astype(str))
    before["propensity_score"] = before["patient_id"].map(propensity)
    after = matched[["group", "propensity_score"]].assign(group=lambda d: d["group"].astype(str))

    fig, axes = plt.subplots(1, 2, figsize=(10, 4))
    for ax, (frame, title) in zip(axes, [(before, "Before matching"), (after, "After matching")]):
        sns.histplot(
            data=frame, x="propensity_score", hue="group", hue_order=GROUP_ORDER,
            palette=GROUP_PALETTE, stat="density", common_norm=False, element="step",
            bins=30, ax=ax,
        )
        ax.set_title(title)
        ax.set_xlabel("Propensity score")

    return _save(fig, figures_dir / "fig6_propensity_overlap.png", dpi)


def run(
    data: pd.DataFrame,
    eligible: pd.DataFrame,
    propensity: pd.Series,
    balance: pd.DataFrame,
    critical_change: float,
    sensitivity: Optional[pd.DataFrame] = None,
    reference_scale: Optional[float] = None,
    figures_dir: Optional[Path] = None,
    dpi: int = FIGURE_DPI,
    verbose: bool = True,
) -> Dict[str, Path]:
    """Generate all figures; returns figure name -> PNG path."""
    if figures_dir is None:
        figures_dir = get_output_dir("figures")
    figures_dir = Path(figures_dir)
    figures_dir.mkdir(parents=True, exist_ok=True)

    if verbose:
        print("=" * 60)
        print("Generating figures")
        print("=" * 60)

    paths = {
        "distributions": plot_distributions(data, figures_dir, dpi),
        "paired_means": plot_paired_means(data, figures_dir, dpi),
        "reliable_change": plot_reliable_change(data, critical_change, figures_dir, dpi),
        "love_plot": plot_love(balance, figures_dir, dpi),
        "propensity_overlap": plot_propensity_overlap(propensity, eligible, data, figures_dir, dpi),
    }
    if sensitivity is not None and not sensitivity.empty:
        paths["bf_sensitivity"] = plot_bf_sensitivity(sensitivity, figures_dir, reference_scale, dpi)
    elif verbose:
        print("  [SKIP] BF sensitivity figure: no sensitivity table")

    if verbose:
        for name, path in paths.items():
            print(f"  [OK] {name}: {path}")

    return paths
