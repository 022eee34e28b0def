"""
Follow-up Missingness Diagnostics
=================================

CAPS follow-up scores are missing for part of the cohort. These diagnostics
describe who is missing and whether missingness depends on observed data:

    1. Missing rate overall and by stratifier (chi-square where valid)
    2. Completers vs non-completers on baseline and post-treatment variables
    3. Logistic selection model for followup_missing

Significant predictors in the selection model mean follow-up is not missing
completely at random (MCAR); the observed-data dependence is compatible
with MAR. MNAR cannot be tested from observed data.

Usage:
    from ptsd_cohort.analysis import missingness
    results = missingness.run(matched)
"""

from __future__ import annotations

from pathlib import Path
from typing import Dict, List, Optional
import warnings

import numpy as np
import pandas as pd
import statsmodels.formula.api as smf
from statsmodels.tools.sm_exceptions import (
    ConvergenceWarning,
    PerfectSeparationError,
    PerfectSeparationWarning,
)
from scipy import stats

from ptsd_cohort.preprocessing.constants import (
    COVARIATE_LABELS,
    MIN_EXPECTED_COUNT,
    MAX_IDENTIFIED_SE,
    MISSING_RATE_WARN,
    SELECTION_MODEL_TERMS,
)
from .utils import (
    format_pvalue,
    is_binary,
    print_section_header,
    save_table,
    standardized_mean_difference,
)

DEFAULT_STRATIFIERS = ["group", "sex", "change_class"]
COMPARISON_VARS = ["male", "age", "enrollment_year", "treatment_days", "caps_pre", "caps_post", "caps_diff"]


def build_missingness_table(
    df: pd.DataFrame,
    indicator: str = "followup_missing",
    stratifiers: Optional[List[str]] = None,
) -> pd.DataFrame:
    """
    Missing rate overall and per stratifier level.

    chi2_p is filled only when the stratifier x missing table has two
    columns and every expected count reaches MIN_EXPECTED_COUNT.
    """
    if indicator not in df.columns:
        raise KeyError(f"Missingness indicator '{indicator}' not found")
    stratifiers = DEFAULT_STRATIFIERS if stratifiers is None else stratifiers

    rows = [pd.DataFrame({
        "stratifier": ["overall"],
        "level": ["overall"],
        "n_total": [int(len(df))],
        "n_missing": [int(df[indicator].sum())],
    })]
    rows[0]["chi2_p"] = np.nan

    for strat in stratifiers:
        if strat not in df.columns:
            continue
        tmp = (
            df.groupby(strat, observed=True)
            .agg(n_total=(indicator, "size"), n_missing=(indicator, "sum"))
            .reset_index()
            .rename(columns={strat: "level"})
        )
        tmp["stratifier"] = strat
        tmp["level"] = tmp["level"].astype(str)
        tmp["chi2_p"] = np.nan

        contingency = pd.crosstab(df[strat], df[indicator])
        if len(tmp) >= 2 and contingency.shape[1] == 2:
            _, p, _, expected = stats.chi2_contingency(contingency)
            if expected.min() >= MIN_EXPECTED_COUNT:
                tmp["chi2_p"] = p
        rows.append(tmp)

    table = pd.concat(rows, ignore_index=True)
    table["n_observed"] = table["n_total"] - table["n_missing"]
    table["missing_rate"] = table["n_missing"] / table["n_total"]
    return table[["stratifier", "level", "n_total", "n_observed", "n_missing", "missing_rate", "chi2_p"]]


def compare_completers(
    df: pd.DataFrame,
    indicator: str = "followup_missing",
    variables: Optional[List[str]] = None,
) -> pd.DataFrame:
    """Completers vs non-completers: Welch t (continuous) or chi-square (binary), with SMD."""
    variables = COMPARISON_VARS if variables is None else variables
    completers = df[df[indicator] == 0]
    dropouts = df[df[indicator] == 1]
    results = []

    for col in variables:
        if col not in df.columns:
            continue
        a = pd.to_numeric(completers[col], errors="coerce").dropna()
        b = pd.to_numeric(dropouts[col], errors="coerce").dropna()
        if len(a) < 2 or len(b) < 2:
            continue

        binary = is_binary(pd.concat([a, b]))
        if binary:
            table = pd.crosstab(
                np.r_[np.zeros(len(a)), np.ones(len(b))],
                np.r_[a.to_numpy(), b.to_numpy()],
            )
            if table.shape == (2, 2):
                stat, p, _, _ = stats.chi2_contingency(table)
            else:
                stat, p = np.nan, np.nan
            test = "chi2"
        else:
            if a.std() == 0 and b.std() == 0:
                stat, p = np.nan, np.nan
            else:
                stat, p = stats.ttest_ind(a, b, equal_var=False)
            test = "welch_t"

        results.append({
            "Variable": COVARIATE_LABELS.get(col, col),
            "Column": col,
            "completers_N": len(a),
            "completers_mean": a.mean(),
            "dropouts_N": len(b),
            "dropouts_mean": b.mean(),
            "test": test,
            "statistic": stat,
            "p": p,
            "SMD": standardized_mean_difference(a, b, binary=binary),
        })

    return pd.DataFrame(results)


def _fit_logit_with_warnings(formula: str, df: pd.DataFrame) -> tuple[object, list[str]]:
    """Fit the logit, collecting separation/convergence warnings. fit is None when it fails."""
    problems: list[str] = []
    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always", ConvergenceWarning)
        warnings.simplefilter("always", PerfectSeparationWarning)
        try:
            fit = smf.logit(formula, data=df).fit(disp=False)
        except (PerfectSeparationError, np.linalg.LinAlgError) as exc:
            return None, [str(exc)]
    for warn in caught:
        if issubclass(warn.category, (ConvergenceWarning, PerfectSeparationWarning)):
            problems.append(str(warn.message))
    return fit, problems


def fit_selection_model(
    df: pd.DataFrame,
    indicator: str = "followup_missing",
    terms: Optional[List[str]] = None,
) -> pd.DataFrame:
    """
    Logistic regression of the missingness indicator on observed variables.

    Returns one row per coefficient with odds ratios and 95% CIs. Empty when
    the indicator does not vary (nothing to model). Under separation or
    non-convergence the rows are flagged identified=False and a UserWarning
    is raised.
    """
    terms = SELECTION_MODEL_TERMS if terms is None else terms
    missing = [c for c in [indicator] + terms if c not in df.columns]
    if missing:
        raise KeyError(f"Selection model columns not found: {missing}")

    model_df = df[[indicator] + terms].apply(pd.to_numeric, errors="coerce").dropna()
    if model_df[indicator].nunique() < 2:
        return pd.DataFrame()

    formula = f"{indicator} ~ " + " + ".join(terms)
    fit, problems = _fit_logit_with_warnings(formula, model_df)
    if fit is None:
        converged = False
        identified = False
    else:
        converged = bool(fit.mle_retvals.get("converged", True))
        bse = np.asarray(fit.bse, dtype=float)
        finite_se = np.all(np.isfinite(bse)) and np.all(bse < MAX_IDENTIFIED_SE)
        identified = converged and not problems and bool(finite_se)
    if not identified:
        warnings.warn(
            f"Selection model for {indicator} is not identifiable (separation or "
            f"non-convergence, converged={converged}); coefficients and p-values are unreliable.",
            UserWarning,
        )

    if fit is None:
        table = pd.DataFrame({"term": ["Intercept"] + list(terms)})
        for col in ["coef", "se", "z", "p", "odds_ratio", "or_ci_lower", "or_ci_upper",
                    "pseudo_r2", "llr_p"]:
            table[col] = np.nan
        table["n"] = int(len(model_df))
        table["converged"] = converged
        table["identified"] = identified
        return table

    ci = fit.conf_int()
    table = pd.DataFrame({
        "term": fit.params.index,
        "coef": fit.params.values,
        "se": fit.bse.values,
        "z": fit.tvalues.values,
        "p": fit.pvalues.values,
        "odds_ratio": np.exp(fit.params.values),
        "or_ci_lower": np.exp(ci[0].values),
        "or_ci_upper": np.exp(ci[1].values),
    })
    table["n"] = int(fit.nobs)
    table["pseudo_r2"] = fit.prsquared
    table["llr_p"] = fit.llr_pvalue
    table["converged"] = converged
    table["identified"] = identified
    return table


def interpret_selection_model(model: pd.DataFrame, alpha: float = 0.05) -> str:
    """One-sentence interpretation of the selection model."""
    if model.empty:
        return "Follow-up missingness does not vary; no selection model was fitted."
    if "identified" in model.columns and not model["identified"].all():
        return ("The selection model is not identifiable (separation or non-convergence); "
                "missingness may depend on observed variables and no MCAR conclusion is drawn.")
    predictors = model[(model["term"] != "Intercept") & (model["p"] < alpha)]
    if predictors.empty:
        return ("No observed variable predicts missing follow-up (all p >= "
                f"{alpha}); the data are consistent with MCAR.")
    names = ", ".join(COVARIATE_LABELS.get(t, t) for t in predictors["term"])
    return (f"Missing follow-up is predicted by {names} (p < {alpha}); the data are not "
            "MCAR, and analyses of follow-up scores assume MAR given these variables.")


def run(
    df: pd.DataFrame,
    output_dir: Optional[Path] = None,
    verbose: bool = True,
) -> Dict[str, object]:
    """
    Run follow-up missingness diagnostics on the matched cohort.

    Returns
    -------
    dict
        'rates', 'completers', 'selection_model' DataFrames and the
        'interpretation' string.
    """
    if verbose:
        print_section_header("FOLLOW-UP MISSINGNESS")

    rates = build_missingness_table(df)
    overall_rate = float(rates.loc[0, "missing_rate"])
    if overall_rate > MISSING_RATE_WARN:
        warnings.warn(
            f"Follow-up missing for {overall_rate:.0%} of the matched cohort; "
            "follow-up analyses rest on a minority of records.",
            UserWarning,
        )

    completers = compare_completers(df)
    model = fit_selection_model(df)
    interpretation = interpret_selection_model(model)

    if verbose:
        print(f"\n  Overall missing rate: {overall_rate:.1%} "
              f"({int(rates.loc[0, 'n_missing'])}/{int(rates.loc[0, 'n_total'])})")
        for _, row in rates.iloc[1:].iterrows():
            print(f"    {row['stratifier']:<14} {row['level']:<14} {row['missing_rate']:>7.1%}"
                  f"   p = {format_pvalue(row['chi2_p'])}")
        if model.empty:
            print("  [SKIP] Selection model: no variation in follow-up missingness")
        else:
            print(f"\n  Selection model (N = {int(model['n'].iloc[0])}, "
                  f"pseudo-R2 = {model['pseudo_r2'].iloc[0]:.3f})")
            for _, row in model.iterrows():
                print(f"    {row['term']:<16} OR = {row['odds_ratio']:.3f} "
                      f"[{row['or_ci_lower']:.3f}, {row['or_ci_upper']:.3f}], p = {format_pvalue(row['p'])}")
        print(f"\n  [INFO] {interpretation}")

    save_table(rates, output_dir, "missingness_rates.csv", verbose=verbose)
    save_table(completers, output_dir, "missingness_completers.csv", verbose=verbose)
    if not model.empty:
        save_table(model, output_dir, "missingness_selection_model.csv", verbose=verbose)

    return {
        "rates": rates,
        "completers": completers,
        "selection_model": model,
        "interpretation": interpretation,
    }
