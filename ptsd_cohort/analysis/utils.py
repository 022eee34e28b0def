"""
Common Utilities for Analysis Scripts
=====================================

Shared effect-size helpers, formatting and output handling.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional
import warnings

import numpy as np
import pandas as pd
from scipy import stats

from ptsd_cohort.preprocessing.constants import get_output_dir as _get_output_dir


# =============================================================================
# EFFECT SIZES
# =============================================================================

def standardized_mean_difference(a: pd.Series, b: pd.Series, binary: bool = False) -> float:
    """
    SMD between two samples with a pooled (average-variance) denominator.

    Continuous: (m1 - m0) / sqrt((s1^2 + s0^2) / 2)
    Binary:     (p1 - p0) / sqrt((p1(1-p1) + p0(1-p0)) / 2)

    Returns NaN when either sample has fewer than 2 values or the
    denominator is zero.
    """
    a = pd.to_numeric(pd.Series(a), errors="coerce").dropna()
    b = pd.to_numeric(pd.Series(b), errors="coerce").dropna()
    if len(a) < 2 or len(b) < 2:
        return np.nan

    if binary:
        p1, p0 = a.mean(), b.mean()
        denom = np.sqrt((p1 * (1 - p1) + p0 * (1 - p0)) / 2.0)
        diff = p1 - p0
    else:
        s1, s0 = a.std(ddof=1), b.std(ddof=1)
        denom = np.sqrt((s1 ** 2 + s0 ** 2) / 2.0)
        diff = a.mean() - b.mean()

    if not np.isfinite(denom) or denom == 0:
        return np.nan
    return float(diff / denom)


def is_binary(series: pd.Series) -> bool:
    values = pd.to_numeric(pd.Series(series), errors="coerce").dropna().unique()
    return len(values) > 0 and set(values).issubset({0, 1})


def mean_ci(values: pd.Series, confidence: float = 0.95) -> tuple[float, float]:
    """t-based confidence interval of the mean."""
    values = pd.to_numeric(pd.Series(values), errors="coerce").dropna()
    n = len(values)
    if n < 2:
        return np.nan, np.nan
    se = values.std(ddof=1) / np.sqrt(n)
    half = stats.t.ppf((1 + confidence) / 2, n - 1) * se
    return float(values.mean() - half), float(values.mean() + half)


# =============================================================================
# BAYES FACTOR LABELS
# =============================================================================

def interpret_bf(bf10: float) -> str:
    """Evidence category for BF10 (Lee & Wagenmakers bands)."""
    if pd.isna(bf10):
        return "NA"
    if bf10 > 100:
        return "Extreme evidence for H1"
    elif bf10 > 30:
        return "Very strong evidence for H1"
    elif bf10 > 10:
        return "Strong evidence for H1"
    elif bf10 > 3:
        return "Moderate evidence for H1"
    elif bf10 > 1:
        return "Anecdotal evidence for H1"
    elif bf10 == 1:
        return "No evidence"
    elif bf10 > 1 / 3:
        return "Anecdotal evidence for H0"
    elif bf10 > 1 / 10:
        return "Moderate evidence for H0"
    elif bf10 > 1 / 30:
        return "Strong evidence for H0"
    elif bf10 > 1 / 100:
        return "Very strong evidence for H0"
    else:
        return "Extreme evidence for H0"


# =============================================================================
# FORMATTING / OUTPUT
# =============================================================================

def format_pvalue(p: float, threshold: float = 0.001) -> str:
    """Format p-value for publication."""
    if pd.isna(p):
        return "NA"
    if p < threshold:
        return f"< {threshold}"
    return f"{p:.3f}"


def format_bf(bf: float) -> str:
    if pd.isna(bf):
        return "NA"
    if bf >= 1000 or bf < 0.001:
        return f"{bf:.2e}"
    return f"{bf:.2f}"


def print_section_header(title: str, width: int = 70) -> None:
    """Print formatted section header."""
    print("\n" + "=" * width)
    print(title)
    print("=" * width)


def get_output_dir(base_dir: Optional[Path] = None) -> Path:
    """Return the statistics output directory."""
    return _get_output_dir("stats", base_dir)


def save_table(df: pd.DataFrame, output_dir: Optional[Path], filename: str, verbose: bool = False) -> Optional[Path]:
    """Write a results table as utf-8-sig CSV; skipped when output_dir is None."""
    if output_dir is None:
        return None
    path = Path(output_dir) / filename
    path.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(path, index=False, encoding="utf-8-sig")
    if verbose:
        print(f"    - {path}")
    return path


def warn_zero_variance(label: str) -> None:
    warnings.warn(f"{label}: zero variance, statistic undefined (NaN).", UserWarning)


def warn_too_few(label: str, n: int, unit: str = "observation") -> None:
    warnings.warn(f"{label}: only {n} {unit}(s), statistic undefined (NaN).", UserWarning)
