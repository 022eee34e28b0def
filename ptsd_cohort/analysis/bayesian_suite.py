"""
Bayesian Model Comparison Suite
===============================

Default Bayes factors for the treatment-outcome questions:

Analyses:
---------
1. rm_anova: time (pre/post) x group, JZS Bayes factors for the five models
   under the principle of marginality, posterior model probabilities and
   inclusion Bayes factors
2. rm_anova_bic: the same five models as random-intercept MixedLM fits,
   BIC-approximated Bayes factors (cross-check)
3. ancova: caps_post ~ caps_pre vs caps_post ~ caps_pre + group
4. sensitivity: ANCOVA and interaction Bayes factors across prior scales
5. ancova_posterior: PyMC ANCOVA with Savage-Dickey Bayes factors for the
   group coefficient under several normal priors

JZS prior
---------
Standardized effects get a Cauchy(0, r) prior, written as a normal prior
with variance g mixed over g ~ InvGamma(1/2, n r^2 / 2). Marginal
likelihood ratios reduce to a one-dimensional integral over g, evaluated
with scipy.integrate.quad on u = log(g).

Two time points
---------------
With a random subject intercept and two measurements per subject, the
likelihood factorises into a within-subject stratum (change score
d = post - pre) and a between-subject stratum (subject mean). Time
effects live in the mean of d, the interaction in the group effect on d,
and the group main effect in the subject means:

    model            within stratum      between stratum
    null             d ~ 0               m ~ 1
    time             d ~ 1               m ~ 1
    group            d ~ 0               m ~ 1 + group
    time + group     d ~ 1               m ~ 1 + group
    full             d ~ 1 + group       m ~ 1 + group

Usage:
    from ptsd_cohort.analysis import bayesian_suite
    results = bayesian_suite.run(matched)
    results = bayesian_suite.run(matched, analyses=["ancova"])
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence
import warnings

import arviz as az
import numpy as np
import pandas as pd
import pymc as pm
import statsmodels.formula.api as smf
from scipy import integrate, stats
from scipy.special import gammaln, logsumexp
from statsmodels.tools.sm_exceptions import ConvergenceWarning

from ptsd_cohort.preprocessing.constants import (
    ANCOVA_PRIOR_SCALE,
    MATCH_SEED,
    POSTERIOR_CHAINS,
    POSTERIOR_DRAWS,
    POSTERIOR_PRIOR_SDS,
    POSTERIOR_TUNE,
    RM_ANOVA_PRIOR_SCALE,
    SENSITIVITY_PRIOR_SCALES,
)
from .utils import format_bf, interpret_bf, print_section_header, save_table

# Integration grid over u = log(g)
_U_GRID = np.linspace(-60.0, 80.0, 7001)
_LOG_TAIL = 60.0


# =============================================================================
# CONFIG
# =============================================================================

@dataclass
class BayesConfig:
    """Prior scales and sampler settings."""
    rm_anova_scale: float = RM_ANOVA_PRIOR_SCALE
    ancova_scale: float = ANCOVA_PRIOR_SCALE
    sensitivity_scales: Sequence[float] = field(default_factory=lambda: list(SENSITIVITY_PRIOR_SCALES))
    posterior_prior_sds: Sequence[float] = POSTERIOR_PRIOR_SDS
    draws: int = POSTERIOR_DRAWS
    tune: int = POSTERIOR_TUNE
    chains: int = POSTERIOR_CHAINS
    seed: int = MATCH_SEED
    run_posterior: bool = True
    sensitivity_table: Optional[pd.DataFrame] = field(default=None, repr=False)

    def __post_init__(self):
        scales = [self.rm_anova_scale, self.ancova_scale, *self.sensitivity_scales, *self.posterior_prior_sds]
        if any(not s > 0 for s in scales):
            raise ValueError("prior scales must be positive")
        if self.draws < 1 or self.tune < 0 or self.chains < 1:
            raise ValueError("invalid sampler settings")


# =============================================================================
# ANALYSIS REGISTRY
# =============================================================================

@dataclass
class AnalysisSpec:
    """A registered analysis."""
    name: str
    description: str
    function: Callable


ANALYSES: Dict[str, AnalysisSpec] = {}


def register_analysis(name: str, description: str):
    """Decorator to register an analysis function."""
    def decorator(func: Callable):
        ANALYSES[name] = AnalysisSpec(
            name=name,
            description=description,
            function=func
        )
        return func
    return decorator


# =============================================================================
# JZS BAYES FACTORS
# =============================================================================

def _log_invgamma_half(g_log: np.ndarray, scale: float) -> np.ndarray:
    """log density of InvGamma(1/2, scale) at g = exp(g_log)."""
    return 0.5 * np.log(scale) - gammaln(0.5) - 1.5 * g_log - scale * np.exp(-g_log)


def _integrate_log(log_f: Callable[[np.ndarray], np.ndarray]) -> float:
    """log of the integral of exp(log_f(u)) du over the real line."""
    values = log_f(_U_GRID)
    peak = int(np.nanargmax(values))
    log_max = values[peak]
    inside = np.flatnonzero(values > log_max - _LOG_TAIL)
    lo, hi = _U_GRID[inside[0]], _U_GRID[inside[-1]]
    lo, hi = lo - 1.0, hi + 1.0

    def integrand(u):
        return np.exp(log_f(np.asarray(u, dtype=float)) - log_max)

    value, _ = integrate.quad(integrand, lo, hi, points=[_U_GRID[peak]], limit=200)
    return float(np.log(value) + log_max)


def jzs_ttest_log_bf(t: float, n: int, r: float = RM_ANOVA_PRIOR_SCALE) -> float:
    """
    log BF10 of the one-sample (or paired) t-test under a Cauchy(0, r)
    prior on the standardized effect.

    Parameters
    ----------
    t : float
        t statistic
    n : int
        number of observations (pairs)
    r : float
        prior scale
    """
    if n < 2:
        raise ValueError("JZS t-test needs at least 2 observations")
    nu = n - 1
    scale = n * r ** 2 / 2.0
    t2 = float(t) ** 2

    def log_f(u):
        log1pg = np.logaddexp(0.0, u)
        return (-0.5 * log1pg
                - (nu + 1) / 2.0 * np.log1p(t2 / (np.exp(log1pg) * nu))
                + (nu + 1) / 2.0 * np.log1p(t2 / nu)
                + _log_invgamma_half(u, scale) + u)

    return _integrate_log(log_f)


def jzs_regression_log_bf(
    r2: float,
    n: int,
    p: int = 1,
    n_nuisance: int = 1,
    r: float = ANCOVA_PRIOR_SCALE,
) -> float:
    """
    log BF10 for adding p predictors to a linear model with n_nuisance
    nuisance columns (intercept included).

    r2 is the R^2 of the added predictors partial to the nuisance model.
    """
    if not 0 <= r2 < 1:
        raise ValueError(f"R^2 must be in [0, 1), got {r2}")
    if n - n_nuisance - p < 1:
        raise ValueError("Not enough observations for the regression Bayes factor")
    scale = n * r ** 2 / 2.0
    a = (n - n_nuisance - p) / 2.0
    b = (n - n_nuisance) / 2.0

    def log_f(u):
        g = np.exp(u)
        return (a * np.logaddexp(0.0, u)
                - b * np.log1p(g * (1.0 - r2))
                + _log_invgamma_half(u, scale) + u)

    return _integrate_log(log_f)


def posterior_probabilities(log_bf: pd.Series) -> pd.Series:
    """Posterior model probabilities from log BFs vs a common reference, equal prior odds."""
    values = log_bf.to_numpy(dtype=float)
    return pd.Series(np.exp(values - logsumexp(values)), index=log_bf.index)


# =============================================================================
# DATA
# =============================================================================

def prepare_wide(df: pd.DataFrame) -> pd.DataFrame:
    """One row per patient with pre/post scores and the veteran indicator."""
    needed = ["patient_id", "is_veteran", "caps_pre", "caps_post"]
    missing = [c for c in needed if c not in df.columns]
    if missing:
        raise KeyError(f"Columns needed for Bayesian analyses not found: {missing}")
    wide = df[needed].copy()
    wide["is_veteran"] = wide["is_veteran"].astype(int)
    wide[["caps_pre", "caps_post"]] = wide[["caps_pre", "caps_post"]].astype(float)
    wide = wide.dropna().reset_index(drop=True)
    if wide["is_veteran"].nunique() < 2:
        raise ValueError("Both groups are needed for the Bayesian comparisons")
    wide["caps_diff"] = wide["caps_post"] - wide["caps_pre"]
    wide["caps_mean"] = (wide["caps_post"] + wide["caps_pre"]) / 2.0
    return wide


def prepare_long(wide: pd.DataFrame) -> pd.DataFrame:
    long = wide.melt(
        id_vars=["patient_id", "is_veteran"],
        value_vars=["caps_pre", "caps_post"],
        var_name="timepoint",
        value_name="caps",
    )
    long["time"] = (long["timepoint"] == "caps_post").astype(int)
    return long.sort_values(["patient_id", "time"]).reset_index(drop=True)


# =============================================================================
# RM-ANOVA
# =============================================================================

RM_MODELS = ["null", "time", "group", "time + group", "time + group + time:group"]
RM_EFFECTS = {
    "time": ["time", "time + group", "time + group + time:group"],
    "group": ["group", "time + group", "time + group + time:group"],
    "time:group": ["time + group + time:group"],
}


def rm_anova_log_bfs(wide: pd.DataFrame, r: float) -> pd.Series:
    """log BF vs the null model for each of the five RM-ANOVA models."""
    d = wide["caps_diff"]
    n = len(wide)
    if not d.std(ddof=1) > 0:
        raise ValueError("Change scores have no variance; time effects are undefined.")

    t_time = stats.ttest_1samp(d, 0.0).statistic
    log_time = jzs_ttest_log_bf(t_time, n, r)

    r2_interaction = smf.ols("caps_diff ~ is_veteran", data=wide).fit().rsquared
    log_interaction = jzs_regression_log_bf(r2_interaction, n, p=1, n_nuisance=1, r=r)

    r2_group = smf.ols("caps_mean ~ is_veteran", data=wide).fit().rsquared
    log_group = jzs_regression_log_bf(r2_group, n, p=1, n_nuisance=1, r=r)

    return pd.Series({
        "null": 0.0,
        "time": log_time,
        "group": log_group,
        "time + group": log_time + log_group,
        "time + group + time:group": log_time + log_interaction + log_group,
    })[RM_MODELS]


def inclusion_bayes_factors(probs: pd.Series) -> pd.DataFrame:
    """Inclusion BFs: posterior inclusion odds / prior inclusion odds, equal model priors."""
    rows = []
    n_models = len(probs)
    for effect, models in RM_EFFECTS.items():
        prior_incl = len(models) / n_models
        post_incl = float(probs[models].sum())
        post_odds = post_incl / (1 - post_incl) if post_incl < 1 else np.inf
        bf = post_odds / (prior_incl / (1 - prior_incl))
        rows.append({
            "effect": effect,
            "prior_incl_prob": prior_incl,
            "posterior_incl_prob": post_incl,
            "bf_inclusion": bf,
            "interpretation": interpret_bf(bf),
        })
    return pd.DataFrame(rows)


@register_analysis(
    name="rm_anova",
    description="JZS repeated-measures ANOVA, time x group"
)
def analyze_rm_anova(data: pd.DataFrame, config: BayesConfig, verbose: bool = True) -> Dict[str, pd.DataFrame]:
    wide = prepare_wide(data)
    log_bf = rm_anova_log_bfs(wide, config.rm_anova_scale)
    probs = posterior_probabilities(log_bf)

    models = pd.DataFrame({
        "model": RM_MODELS,
        "log_bf10": log_bf.values,
        "bf10": np.exp(log_bf.values),
        "posterior_prob": probs.values,
        "prior_scale": config.rm_anova_scale,
        "n": len(wide),
    })
    models["interpretation"] = models["bf10"].map(interpret_bf)
    inclusion = inclusion_bayes_factors(probs)

    if verbose:
        print(f"\n  N = {len(wide)} patients x 2 time points, r = {config.rm_anova_scale}")
        print(f"  {'Model':<28} {'BF10':>10} {'P(M|data)':>10}")
        for _, row in models.iterrows():
            print(f"  {row['model']:<28} {format_bf(row['bf10']):>10} {row['posterior_prob']:>10.3f}")
        print(f"\n  {'Effect':<14} {'BF_incl':>10}")
        for _, row in inclusion.iterrows():
            print(f"  {row['effect']:<14} {format_bf(row['bf_inclusion']):>10}  {row['interpretation']}")

    return {"models": models, "inclusion": inclusion}


@register_analysis(
    name="rm_anova_bic",
    description="MixedLM (random intercept) BIC approximation of the RM-ANOVA Bayes factors"
)
def analyze_rm_anova_bic(data: pd.DataFrame, config: BayesConfig, verbose: bool = True) -> Dict[str, pd.DataFrame]:
    long = prepare_long(prepare_wide(data))
    formulas = {
        "null": "caps ~ 1",
        "time": "caps ~ time",
        "group": "caps ~ is_veteran",
        "time + group": "caps ~ time + is_veteran",
        "time + group + time:group": "caps ~ time * is_veteran",
    }

    rows = []
    for name, formula in formulas.items():
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", ConvergenceWarning)
            fit = smf.mixedlm(formula, data=long, groups=long["patient_id"]).fit(reml=False)
        rows.append({
            "model": name,
            "formula": formula,
            "llf": fit.llf,
            "bic": fit.bic,
            "converged": bool(fit.converged),
        })

    table = pd.DataFrame(rows)
    table["log_bf10"] = (table.loc[0, "bic"] - table["bic"]) / 2.0
    table["bf10"] = np.exp(table["log_bf10"])
    table["posterior_prob"] = posterior_probabilities(table["log_bf10"]).values

    if verbose:
        print(f"\n  {'Model':<28} {'BIC':>10} {'BF10':>10} {'P(M|data)':>10}")
        for _, row in table.iterrows():
            flag = "" if row["converged"] else "  [WARN] not converged"
            print(f"  {row['model']:<28} {row['bic']:>10.1f} {format_bf(row['bf10']):>10} "
                  f"{row['posterior_prob']:>10.3f}{flag}")

    return {"models": table}


# =============================================================================
# ANCOVA
# =============================================================================

def ancova_log_bf(wide: pd.DataFrame, r: float) -> tuple[float, dict]:
    """log BF10 for the group term in caps_post ~ caps_pre + group."""
    null_fit = smf.ols("caps_post ~ caps_pre", data=wide).fit()
    full_fit = smf.ols("caps_post ~ caps_pre + is_veteran", data=wide).fit()
    partial_r2 = (full_fit.rsquared - null_fit.rsquared) / (1.0 - null_fit.rsquared)
    log_bf = jzs_regression_log_bf(max(partial_r2, 0.0), len(wide), p=1, n_nuisance=2, r=r)
    details = {
        "b_group": full_fit.params["is_veteran"],
        "se_group": full_fit.bse["is_veteran"],
        "p_group": full_fit.pvalues["is_veteran"],
        "b_pre": full_fit.params["caps_pre"],
        "r2_null": null_fit.rsquared,
        "r2_full": full_fit.rsquared,
        "partial_r2": partial_r2,
    }
    return log_bf, details


@register_analysis(
    name="ancova",
    description="JZS ANCOVA, post scores adjusted for pre scores"
)
def analyze_ancova(data: pd.DataFrame, config: BayesConfig, verbose: bool = True) -> Dict[str, pd.DataFrame]:
    wide = prepare_wide(data)
    log_bf, details = ancova_log_bf(wide, config.ancova_scale)
    bf10 = float(np.exp(log_bf))

    result = pd.DataFrame([{
        "n": len(wide),
        "prior_scale": config.ancova_scale,
        "log_bf10": log_bf,
        "bf10": bf10,
        "bf01": 1.0 / bf10,
        "p_h1": bf10 / (1.0 + bf10),
        "p_h0": 1.0 / (1.0 + bf10),
        "bf_inclusion_group": bf10,
        "interpretation": interpret_bf(bf10),
        **details,
    }])

    if verbose:
        print(f"\n  caps_post ~ caps_pre [+ group], N = {len(wide)}, r = {config.ancova_scale}")
        print(f"  Group effect b = {details['b_group']:.2f} (SE {details['se_group']:.2f}), "
              f"partial R2 = {details['partial_r2']:.4f}")
        print(f"  BF10 = {format_bf(bf10)}, BF01 = {format_bf(1.0 / bf10)}  -> {interpret_bf(bf10)}")

    return {"result": result}


# =============================================================================
# PRIOR SENSITIVITY
# =============================================================================

def sensitivity_sweep(wide: pd.DataFrame, scales: Sequence[float]) -> pd.DataFrame:
    rows = []
    for r in scales:
        ancova_bf = float(np.exp(ancova_log_bf(wide, r)[0]))
        probs = posterior_probabilities(rm_anova_log_bfs(wide, r))
        inclusion = inclusion_bayes_factors(probs).set_index("effect")
        rows.append({
            "prior_scale": round(float(r), 3),
            "ancova_bf10": ancova_bf,
            "rm_interaction_bf_incl": float(inclusion.loc["time:group", "bf_inclusion"]),
        })
    return pd.DataFrame(rows)


def merge_external_table(sweep: pd.DataFrame, external: Optional[pd.DataFrame]) -> pd.DataFrame:
    """Outer-join a precomputed prior_scale/bf10 table onto the sweep."""
    if external is None or external.empty:
        out = sweep.copy()
        out["external_bf10"] = np.nan
        return out
    ext = external[["prior_scale", "bf10"]].rename(columns={"bf10": "external_bf10"}).copy()
    ext["prior_scale"] = ext["prior_scale"].astype(float).round(3)
    merged = sweep.merge(ext, on="prior_scale", how="outer")
    return merged.sort_values("prior_scale").reset_index(drop=True)


@register_analysis(
    name="sensitivity",
    description="Prior-scale sensitivity of the ANCOVA and interaction Bayes factors"
)
def analyze_sensitivity(data: pd.DataFrame, config: BayesConfig, verbose: bool = True) -> Dict[str, pd.DataFrame]:
    wide = prepare_wide(data)
    sweep = sensitivity_sweep(wide, config.sensitivity_scales)
    table = merge_external_table(sweep, config.sensitivity_table)

    if verbose:
        bfs = sweep["ancova_bf10"]
        print(f"\n  {len(sweep)} prior scales in [{sweep['prior_scale'].min()}, {sweep['prior_scale'].max()}]")
        print(f"  ANCOVA BF10 range: {format_bf(bfs.min())} - {format_bf(bfs.max())}")
        labels = bfs.map(interpret_bf).unique()
        if len(labels) == 1:
            print(f"  [INFO] Conclusion stable across scales: {labels[0]}")
        else:
            print(f"  [INFO] Evidence category changes across scales: {', '.join(labels)}")
        n_ext = int(table["external_bf10"].notna().sum())
        if n_ext:
            print(f"  [INFO] Precomputed table merged ({n_ext} rows)")

    return {"table": table}


# =============================================================================
# POSTERIOR ANCOVA (PyMC)
# =============================================================================

def savage_dickey_bf01(samples: np.ndarray, prior_sd: float) -> float:
    """BF01 = posterior density at 0 / prior density at 0 for a Normal(0, prior_sd) prior."""
    s = np.asarray(samples).ravel()
    s = s[np.isfinite(s)]
    if len(s) < 10:
        raise ValueError("Too few posterior samples for a Savage-Dickey Bayes factor")
    post_pdf0 = float(stats.gaussian_kde(s).evaluate([0.0])[0])
    prior_pdf0 = stats.norm.pdf(0.0, loc=0.0, scale=prior_sd)
    return post_pdf0 / prior_pdf0


def fit_posterior_ancova(wide: pd.DataFrame, prior_sd: float, config: BayesConfig) -> az.InferenceData:
    """
    caps_post ~ Normal(alpha + b_pre * (caps_pre - mean) + b_group * is_veteran, sigma)
    with b_group ~ Normal(0, prior_sd) on the CAPS scale.
    """
    y = wide["caps_post"].to_numpy()
    pre_c = (wide["caps_pre"] - wide["caps_pre"].mean()).to_numpy()
    group = wide["is_veteran"].to_numpy(dtype=float)

    with pm.Model():
        alpha = pm.Normal("alpha", 0.0, 100.0)
        b_pre = pm.Normal("b_pre", 0.0, 5.0)
        b_group = pm.Normal("b_group", 0.0, prior_sd)
        sigma = pm.HalfNormal("sigma", 50.0)
        mu = alpha + b_pre * pre_c + b_group * group
        pm.Normal("obs", mu, sigma, observed=y)
        idata = pm.sample(
            draws=config.draws,
            tune=config.tune,
            chains=config.chains,
            cores=1,
            random_seed=config.seed,
            progressbar=False,
            return_inferencedata=True,
        )
    return idata


@register_analysis(
    name="ancova_posterior",
    description="PyMC ANCOVA with Savage-Dickey Bayes factors across priors"
)
def analyze_ancova_posterior(data: pd.DataFrame, config: BayesConfig, verbose: bool = True) -> Dict[str, pd.DataFrame]:
    if not config.run_posterior:
        if verbose:
            print("  [SKIP] posterior sampling disabled")
        return {}

    wide = prepare_wide(data)
    summaries = []
    bf_rows = []

    for prior_sd in config.posterior_prior_sds:
        idata = fit_posterior_ancova(wide, prior_sd, config)
        summary = az.summary(idata, var_names=["alpha", "b_pre", "b_group", "sigma"])
        summary = summary.reset_index().rename(columns={"index": "term"})
        summary.insert(0, "prior_sd", prior_sd)
        summaries.append(summary)

        samples = idata.posterior["b_group"].values.ravel()
        bf01 = savage_dickey_bf01(samples, prior_sd)
        bf10 = 1.0 / bf01 if bf01 > 0 else np.inf
        bf_rows.append({
            "prior_sd": prior_sd,
            "post_mean": float(samples.mean()),
            "post_sd": float(samples.std(ddof=1)),
            "prob_direction": float(max((samples > 0).mean(), (samples < 0).mean())),
            "bf01": bf01,
            "bf10": bf10,
            "interpretation": interpret_bf(bf10),
        })

        if verbose:
            row = bf_rows[-1]
            print(f"  prior SD {prior_sd:>5.1f}: b_group = {row['post_mean']:.2f} "
                  f"(SD {row['post_sd']:.2f}), BF10 = {format_bf(bf10)}")

    return {
        "summary": pd.concat(summaries, ignore_index=True),
        "bayes_factors": pd.DataFrame(bf_rows),
    }


# =============================================================================
# MAIN RUNNER
# =============================================================================

def run(
    data: pd.DataFrame,
    config: Optional[BayesConfig] = None,
    analyses: Optional[List[str]] = None,
    output_dir: Optional[Path] = None,
    verbose: bool = True,
) -> Dict[str, Dict[str, pd.DataFrame]]:
    """Run the registered Bayesian analyses (all by default)."""
    if config is None:
        config = BayesConfig()
    names = list(ANALYSES) if analyses is None else list(analyses)
    unknown = [name for name in names if name not in ANALYSES]
    if unknown:
        raise ValueError(f"Unknown analysis: {unknown}. Available: {list(ANALYSES.keys())}")

    if verbose:
        print_section_header("BAYESIAN MODEL COMPARISON")

    results = {}
    for name in names:
        spec = ANALYSES[name]
        if verbose:
            print(f"\n--- Running: {spec.description} ---")
        results[name] = spec.function(data, config, verbose=verbose)
        for table_name, table in results[name].items():
            save_table(table, output_dir, f"bayes_{name}_{table_name}.csv", verbose=verbose)

    return results


def list_analyses():
    """List available analyses."""
    print("\nAvailable Bayesian analyses:")
    print("-" * 60)
    for name, spec in ANALYSES.items():
        print(f"  {name}")
        print(f"    {spec.description}")
