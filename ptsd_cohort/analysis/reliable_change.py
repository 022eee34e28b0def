"""
Reliable Change Index (Jacobson & Truax)
========================================

Classifies each record's pre -> post CAPS change as reliable improvement,
reliable deterioration or no reliable change.

    SE_measurement = SD_pre * sqrt(1 - r_xx)
    S_diff         = sqrt(2 * SE_measurement^2)
    RCI            = (post - pre) / S_diff

SD_pre is the pooled SD of pre scores over the analysed sample. Lower CAPS
is better, so RCI < -z is 'improved' and RCI > z is 'deteriorated'.

Usage:
    from ptsd_cohort.analysis.reliable_change import ReliableChangeConfig, classify
    df = classify(df, ReliableChangeConfig(reliability=0.78))
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional

import numpy as np
import pandas as pd
from scipy import stats

from ptsd_cohort.preprocessing.constants import (
    CHANGE_CLASSES,
    GROUP_ORDER,
    RCI_RELIABILITY,
    RCI_Z_CRITICAL,
)
from .utils import format_pvalue, print_section_header, save_table


@dataclass
class ReliableChangeConfig:
    reliability: float = RCI_RELIABILITY
    z_critical: float = RCI_Z_CRITICAL
    pre_col: str = "caps_pre"
    post_col: str = "caps_post"

    def __post_init__(self):
        if not 0 <= self.reliability < 1:
            raise ValueError("reliability must be in [0, 1)")
        if self.z_critical <= 0:
            raise ValueError("z_critical must be positive")


@dataclass
class ReliableChangeParameters:
    sd_pre: float
    se_measurement: float
    s_diff: float
    critical_change: float
    reliability: float
    z_critical: float

    def as_dict(self) -> dict:
        return dict(self.__dict__)


def compute_parameters(pre: pd.Series, config: Optional[ReliableChangeConfig] = None) -> ReliableChangeParameters:
    if config is None:
        config = ReliableChangeConfig()
    sd_pre = float(pd.to_numeric(pre, errors="coerce").dropna().std(ddof=1))
    if not sd_pre > 0:
        raise ValueError("Pre-treatment scores have no variance; RCI is undefined.")
    se = sd_pre * np.sqrt(1 - config.reliability)
    s_diff = np.sqrt(2 * se ** 2)
    return ReliableChangeParameters(
        sd_pre=sd_pre,
        se_measurement=float(se),
        s_diff=float(s_diff),
        critical_change=float(config.z_critical * s_diff),
        reliability=config.reliability,
        z_critical=config.z_critical,
    )


def compute_reliable_change(
    df: pd.DataFrame,
    config: Optional[ReliableChangeConfig] = None,
) -> tuple[pd.Series, ReliableChangeParameters]:
    """RCI per record. Raises ValueError if any record lacks a pre or post score."""
    if config is None:
        config = ReliableChangeConfig()
    for col in (config.pre_col, config.post_col):
        if col not in df.columns:
            raise KeyError(f"Column '{col}' not found")

    pre = pd.to_numeric(df[config.pre_col], errors="coerce")
    post = pd.to_numeric(df[config.post_col], errors="coerce")
    incomplete = pre.isna() | post.isna()
    if incomplete.any():
        raise ValueError(f"{int(incomplete.sum())} record(s) lack pre or post scores; RCI needs both.")

    params = compute_parameters(pre, config)
    rci = (post - pre) / params.s_diff
    return rci.rename("rci"), params


def classify(
    df: pd.DataFrame,
    config: Optional[ReliableChangeConfig] = None,
) -> tuple[pd.DataFrame, ReliableChangeParameters]:
    """Add 'rci' and 'change_class' (ordered categorical) columns."""
    if config is None:
        config = ReliableChangeConfig()
    rci, params = compute_reliable_change(df, config)

    labels = np.select(
        [rci < -config.z_critical, rci > config.z_critical],
        ["improved", "deteriorated"],
        default="unchanged",
    )
    out = df.copy()
    out["rci"] = rci
    out["change_class"] = pd.Categorical(labels, categories=CHANGE_CLASSES, ordered=True)
    return out, params


def change_class_table(df: pd.DataFrame, group_col: str = "group") -> tuple[pd.DataFrame, dict]:
    """Group x change class counts/percentages and the chi-square test of independence."""
    counts = pd.crosstab(df[group_col].astype(str), df["change_class"].astype(str))
    counts = counts.reindex(index=GROUP_ORDER, columns=CHANGE_CLASSES, fill_value=0)

    rows = []
    for group, row in counts.iterrows():
        total = int(row.sum())
        for cls in CHANGE_CLASSES:
            rows.append({
                "group": group,
                "change_class": cls,
                "n": int(row[cls]),
                "percent": row[cls] / total * 100 if total else np.nan,
            })
    table = pd.DataFrame(rows)

    # chi-square is undefined for empty rows/columns
    nonempty = counts.loc[counts.sum(axis=1) > 0, counts.sum(axis=0) > 0]
    if nonempty.shape[0] >= 2 and nonempty.shape[1] >= 2:
        chi2, p, dof, expected = stats.chi2_contingency(nonempty)
        test = {"chi2": chi2, "df": dof, "p": p, "min_expected": float(expected.min())}
    else:
        test = {"chi2": np.nan, "df": np.nan, "p": np.nan, "min_expected": np.nan}
    return table, test


def remission_table(df: pd.DataFrame, group_col: str = "group") -> pd.DataFrame:
    """Diagnostic remission (PTSD diagnosis pre -> no diagnosis post) per group."""
    rows = []
    for group in GROUP_ORDER:
        sub = df.loc[df[group_col] == group, "dx_remitted"].dropna()
        rows.append({
            "group": group,
            "n_assessed": len(sub),
            "n_remitted": int(sub.sum()),
            "percent_remitted": sub.mean() * 100 if len(sub) else np.nan,
        })
    return pd.DataFrame(rows)


def run(
    df: pd.DataFrame,
    config: Optional[ReliableChangeConfig] = None,
    output_dir: Optional[Path] = None,
    verbose: bool = True,
) -> Dict[str, object]:
    """
    Classify reliable change and tabulate it by group.

    Returns
    -------
    dict
        'data' (input with rci/change_class), 'parameters', 'classes',
        'chi2', 'remission'
    """
    if verbose:
        print_section_header("RELIABLE CHANGE INDEX")

    classified, params = classify(df, config)
    classes, test = change_class_table(classified)
    remission = remission_table(classified) if "dx_remitted" in classified.columns else pd.DataFrame()

    if verbose:
        print(f"\n  r_xx = {params.reliability}, SD_pre = {params.sd_pre:.2f}, "
              f"S_diff = {params.s_diff:.2f}, critical change = {params.critical_change:.2f} points")
        for group in GROUP_ORDER:
            sub = classes[classes["group"] == group]
            parts = ", ".join(f"{r.change_class} {r.n} ({r.percent:.1f}%)" for r in sub.itertuples())
            print(f"    {group:<10} {parts}")
        print(f"  Group x class: chi2({test['df']}) = {test['chi2']:.2f}, p = {format_pvalue(test['p'])}")
        if np.isfinite(test["min_expected"]) and test["min_expected"] < 5:
            print("  [WARN] Expected cell count < 5; chi-square approximation is unreliable")
        for _, row in remission.iterrows():
            print(f"    {row['group']:<10} remitted {row['n_remitted']}/{row['n_assessed']}")

    save_table(classes, output_dir, "reliable_change_classes.csv", verbose=verbose)
    save_table(pd.DataFrame([{**params.as_dict(), **test}]), output_dir, "reliable_change_parameters.csv", verbose=verbose)
    if not remission.empty:
        save_table(remission, output_dir, "diagnostic_remission.csv", verbose=verbose)

    return {
        "data": classified,
        "parameters": params,
        "classes": classes,
        "chi2": test,
        "remission": remission,
    }
