"""
Descriptive Statistics and Group Comparison
===========================================

Table-1 style summaries of the eligible sample (before matching) and the
matched cohort, with standardized mean differences between veterans and
civilians.

Tables:
    - Continuous variables: N, Mean, SD, Min, Max, Median, Skewness, Kurtosis
    - Categorical variables: counts / percentages per group
    - Group comparison: Welch t-test + SMD, imbalance flag (|SMD| > 0.5)
    - Covariate balance before vs after matching
    - Trauma exposure by group (chi-square)

Output:
    outputs/stats/descriptives_*.csv

Usage:
    from ptsd_cohort.analysis import descriptive_statistics
    results = descriptive_statistics.run(eligible, matched)
"""

from __future__ import annotations

from pathlib import Path
from typing import Dict, List, Optional

import numpy as np
import pandas as pd
from scipy import stats

from ptsd_cohort.preprocessing.constants import (
    CATEGORICAL_VARS,
    CONTINUOUS_VARS,
    COVARIATE_LABELS,
    FOCAL_GROUP,
    GROUP_ORDER,
    MATCH_COVARIATES,
    POOL_GROUP,
    SMD_THRESHOLD,
    TRAUMA_COLUMNS,
    TRAUMA_LABELS,
)
from .utils import (
    is_binary,
    print_section_header,
    save_table,
    standardized_mean_difference,
)


def compute_descriptive_stats(
    df: pd.DataFrame,
    variables: list[tuple[str, str]],
    group_label: str = "Total"
) -> pd.DataFrame:
    """
    Compute descriptive statistics for specified variables.

    Parameters
    ----------
    df : pd.DataFrame
        Input dataframe
    variables : list of (column_name, display_label) tuples
        Variables to analyze
    group_label : str
        Label for this group (e.g., "Total", "veteran", "civilian")

    Returns
    -------
    pd.DataFrame
        Descriptive statistics table
    """
    results = []

    for col, label in variables:
        if col not in df.columns:
            print(f"  [WARN] Variable '{col}' not found in dataset")
            continue

        series = pd.to_numeric(df[col], errors="coerce").dropna()

        results.append({
            'Group': group_label,
            'Variable': label,
            'Column': col,
            'N': len(series),
            'Mean': series.mean(),
            'SD': series.std(),
            'Min': series.min(),
            'Max': series.max(),
            'Median': series.median(),
            'Skewness': stats.skew(series) if len(series) > 2 else np.nan,
            'Kurtosis': stats.kurtosis(series) if len(series) > 2 else np.nan,
        })

    return pd.DataFrame(results)


def compute_categorical_stats(
    df: pd.DataFrame,
    variables: list[tuple[str, str]],
    group_col: str = "group",
) -> pd.DataFrame:
    """
    Counts and percentages per group for categorical variables.

    Percentages are over non-missing values; missing values get their own
    row with Percent = NaN.
    """
    results = []
    groups = [g for g in GROUP_ORDER if (df[group_col] == g).any()]

    for col, label in variables:
        if col not in df.columns:
            continue
        for group in groups:
            values = df.loc[df[group_col] == group, col]
            n_missing = int(values.isna().sum())
            counts = values.dropna().astype(str).value_counts().sort_index()
            n_total = int(counts.sum())
            for category, n in counts.items():
                results.append({
                    'Variable': label,
                    'Column': col,
                    'Group': group,
                    'Category': category,
                    'N': int(n),
                    'Percent': n / n_total * 100 if n_total else np.nan,
                })
            if n_missing > 0:
                results.append({
                    'Variable': label,
                    'Column': col,
                    'Group': group,
                    'Category': 'Missing',
                    'N': n_missing,
                    'Percent': np.nan,
                })

    return pd.DataFrame(results, columns=['Variable', 'Column', 'Group', 'Category', 'N', 'Percent'])


def compute_group_comparison(
    df: pd.DataFrame,
    variables: list[tuple[str, str]],
    group_col: str = "group",
) -> pd.DataFrame:
    """
    Veteran vs civilian comparison with Welch's t-test and SMD.

    Returns
    -------
    pd.DataFrame
        One row per variable; 'imbalanced' marks |SMD| > SMD_THRESHOLD.
    """
    results = []

    for col, label in variables:
        if col not in df.columns:
            continue

        focal = pd.to_numeric(df.loc[df[group_col] == FOCAL_GROUP, col], errors="coerce").dropna()
        pool = pd.to_numeric(df.loc[df[group_col] == POOL_GROUP, col], errors="coerce").dropna()

        if len(focal) < 2 or len(pool) < 2:
            continue

        binary = is_binary(pd.concat([focal, pool]))
        smd = standardized_mean_difference(focal, pool, binary=binary)

        # Welch's t-test (unequal variance); undefined when both samples are constant
        if focal.std() == 0 and pool.std() == 0:
            t_stat, p_value = np.nan, np.nan
        else:
            t_stat, p_value = stats.ttest_ind(focal, pool, equal_var=False)

        results.append({
            'Variable': label,
            'Column': col,
            f'{FOCAL_GROUP}_N': len(focal),
            f'{FOCAL_GROUP}_Mean': focal.mean(),
            f'{FOCAL_GROUP}_SD': focal.std(),
            f'{POOL_GROUP}_N': len(pool),
            f'{POOL_GROUP}_Mean': pool.mean(),
            f'{POOL_GROUP}_SD': pool.std(),
            't': t_stat,
            'p': p_value,
            'SMD': smd,
            'binary': binary,
            'imbalanced': bool(pd.notna(smd) and abs(smd) > SMD_THRESHOLD),
        })

    return pd.DataFrame(results)


def compute_balance_table(
    before: pd.DataFrame,
    after: pd.DataFrame,
    covariates: Optional[List[str]] = None,
    group_col: str = "group",
) -> pd.DataFrame:
    """
    Covariate balance before and after matching.

    'reduced' is True when |SMD after| <= |SMD before|.
    """
    covariates = list(MATCH_COVARIATES if covariates is None else covariates)
    rows = []

    for col in covariates:
        if col not in before.columns or col not in after.columns:
            raise KeyError(f"Balance covariate '{col}' not found")

        smd = {}
        for stage, frame in (("before", before), ("after", after)):
            focal = frame.loc[frame[group_col] == FOCAL_GROUP, col]
            pool = frame.loc[frame[group_col] == POOL_GROUP, col]
            smd[stage] = standardized_mean_difference(focal, pool, binary=is_binary(frame[col]))

        rows.append({
            'Variable': COVARIATE_LABELS.get(col, col),
            'Column': col,
            'SMD_before': smd['before'],
            'SMD_after': smd['after'],
            'abs_SMD_before': abs(smd['before']),
            'abs_SMD_after': abs(smd['after']),
            'imbalanced_before': bool(pd.notna(smd['before']) and abs(smd['before']) > SMD_THRESHOLD),
            'imbalanced_after': bool(pd.notna(smd['after']) and abs(smd['after']) > SMD_THRESHOLD),
            'reduced': bool(abs(smd['after']) <= abs(smd['before']))
            if pd.notna(smd['before']) and pd.notna(smd['after']) else np.nan,
        })

    return pd.DataFrame(rows)


def compute_trauma_comparison(df: pd.DataFrame, group_col: str = "group") -> pd.DataFrame:
    """Trauma exposure percentages by group with chi-square tests."""
    results = []

    for col in TRAUMA_COLUMNS:
        if col not in df.columns:
            continue
        sub = df[[group_col, col]].dropna()
        table = pd.crosstab(sub[group_col], sub[col].astype(int))

        row = {'Variable': TRAUMA_LABELS.get(col, col), 'Column': col}
        for group in GROUP_ORDER:
            g = sub.loc[sub[group_col] == group, col].astype(int)
            row[f'{group}_N'] = len(g)
            row[f'{group}_pct'] = g.mean() * 100 if len(g) else np.nan

        if table.shape == (2, 2) and (table.to_numpy().sum(axis=0) > 0).all():
            chi2, p, dof, _ = stats.chi2_contingency(table)
            row.update({'chi2': chi2, 'df': dof, 'p': p})
        else:
            row.update({'chi2': np.nan, 'df': np.nan, 'p': np.nan})
        results.append(row)

    return pd.DataFrame(results)


def print_apa_table(comparison: pd.DataFrame, title: str) -> None:
    """Print a group comparison in APA-style format."""
    print(f"\n  {title}")
    print("  " + "-" * 78)
    print(f"  {'Variable':<30} {FOCAL_GROUP + ' M (SD)':>18} {POOL_GROUP + ' M (SD)':>18} {'SMD':>8}")
    print("  " + "-" * 78)

    for _, row in comparison.iterrows():
        focal = f"{row[f'{FOCAL_GROUP}_Mean']:.2f} ({row[f'{FOCAL_GROUP}_SD']:.2f})"
        pool = f"{row[f'{POOL_GROUP}_Mean']:.2f} ({row[f'{POOL_GROUP}_SD']:.2f})"
        flag = " *" if row['imbalanced'] else ""
        print(f"  {row['Variable']:<30} {focal:>18} {pool:>18} {row['SMD']:>8.2f}{flag}")

    print("  " + "-" * 78)
    print(f"  Note. * |SMD| > {SMD_THRESHOLD}")


def run(
    eligible: pd.DataFrame,
    matched: pd.DataFrame,
    output_dir: Optional[Path] = None,
    verbose: bool = True,
) -> Dict[str, pd.DataFrame]:
    """
    Run descriptive statistics for the eligible sample and the matched cohort.

    Returns
    -------
    dict
        'descriptives', 'categorical_before', 'categorical' (matched),
        'comparison_before', 'comparison_after', 'balance', 'trauma_before'
        and 'trauma' (matched)
    """
    if verbose:
        print_section_header("DESCRIPTIVE STATISTICS")
        print(f"\n  Eligible sample: N = {len(eligible)}")
        print(f"  Matched cohort:  N = {len(matched)}")

    comparison_vars = [(c, COVARIATE_LABELS.get(c, c)) for c in MATCH_COVARIATES] + \
        [v for v in CONTINUOUS_VARS if v[0] not in MATCH_COVARIATES]

    frames = [compute_descriptive_stats(matched, CONTINUOUS_VARS, group_label="Total")]
    for group in GROUP_ORDER:
        frames.append(compute_descriptive_stats(matched[matched["group"] == group], CONTINUOUS_VARS, group_label=group))
    descriptives = pd.concat(frames, ignore_index=True)

    categorical_before = compute_categorical_stats(eligible, CATEGORICAL_VARS)
    categorical = compute_categorical_stats(matched, CATEGORICAL_VARS)
    comparison_before = compute_group_comparison(eligible, comparison_vars)
    comparison_after = compute_group_comparison(matched, comparison_vars)
    balance = compute_balance_table(eligible, matched, MATCH_COVARIATES)
    trauma_before = compute_trauma_comparison(eligible)
    trauma = compute_trauma_comparison(matched)

    if verbose:
        print_apa_table(comparison_before, "Table 1a. Eligible sample (before matching)")
        print_apa_table(comparison_after, "Table 1b. Matched cohort")

        print("\n  Covariate balance")
        print("  " + "-" * 60)
        for _, row in balance.iterrows():
            print(f"  {row['Variable']:<30} {row['SMD_before']:>8.3f} -> {row['SMD_after']:>8.3f}")

        if len(trauma):
            sig = trauma[trauma['p'] < 0.05]
            if len(sig):
                for _, row in sig.iterrows():
                    print(f"  [INFO] {row['Variable']}: chi2({int(row['df'])}) = {row['chi2']:.2f}, p = {row['p']:.3f}")
            else:
                print("  [INFO] No trauma type differs between groups (p < .05)")

    outputs = {
        'descriptives': descriptives,
        'categorical_before': categorical_before,
        'categorical': categorical,
        'comparison_before': comparison_before,
        'comparison_after': comparison_after,
        'balance': balance,
        'trauma_before': trauma_before,
        'trauma': trauma,
    }

    if output_dir is not None and verbose:
        print("\n  Output files:")
    for name, table in outputs.items():
        save_table(table, output_dir, f"descriptives_{name}.csv", verbose=verbose)

    return outputs
