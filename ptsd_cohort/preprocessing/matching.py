"""
Covariate-based 1:1 nearest-neighbour matching
==============================================

Greedy matching of the focal group (veterans) to a larger comparison pool
(civilians) without replacement.

Procedure:
    1. Estimate propensity scores with a binomial GLM of group membership on
       the matching covariates.
    2. Build the focal x pool distance matrix, either |ps_i - ps_j|
       ("propensity") or the Mahalanobis distance on the covariates
       ("mahalanobis").
    3. Process focal records from hardest to easiest to match ("largest
       first": highest propensity score, or furthest from the pool centroid
       for Mahalanobis matching).
    4. Each focal record takes the nearest still-available pool record;
       optional caliper and exact-match constraints restrict candidates.

Ties (in processing order and among equidistant candidates) are broken by a
seeded random permutation, so a fixed seed reproduces the pairing exactly.

Usage:
    from ptsd_cohort.preprocessing.matching import MatchingConfig, match_cohort
    result = match_cohort(records, MatchingConfig(seed=42))
    result.matched      # 2 rows per pair, 'pair_id' shared within a pair
    result.pairs        # 1 row per pair
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional
import warnings

import numpy as np
import pandas as pd
import statsmodels.api as sm
from scipy.spatial.distance import cdist

from .constants import (
    MATCH_COVARIATES,
    MATCH_DISTANCE,
    MATCH_SEED,
    VALID_DISTANCES,
)

TIE_TOLERANCE = 1e-12


# =============================================================================
# CONFIG / RESULT
# =============================================================================

@dataclass
class MatchingConfig:
    """Matching settings."""
    covariates: List[str] = field(default_factory=lambda: list(MATCH_COVARIATES))
    distance: str = MATCH_DISTANCE
    caliper: Optional[float] = None     # SD units of the propensity score; raw units for Mahalanobis
    exact: List[str] = field(default_factory=list)
    seed: int = MATCH_SEED

    def __post_init__(self):
        if self.distance not in VALID_DISTANCES:
            raise ValueError(f"Unknown distance: {self.distance}. Valid: {sorted(VALID_DISTANCES)}")
        if self.caliper is not None and self.caliper <= 0:
            raise ValueError("caliper must be positive")
        if not self.covariates:
            raise ValueError("at least one matching covariate is required")


@dataclass
class MatchResult:
    matched: pd.DataFrame
    pairs: pd.DataFrame
    unmatched: pd.DataFrame
    propensity: pd.Series
    config: MatchingConfig
    n_focal: int
    n_pool: int

    @property
    def n_pairs(self) -> int:
        return len(self.pairs)

    @property
    def n_unmatched(self) -> int:
        return len(self.unmatched)

    def summary(self) -> dict:
        dist = self.pairs["distance"] if len(self.pairs) else pd.Series(dtype=float)
        return {
            "distance": self.config.distance,
            "covariates": ", ".join(self.config.covariates),
            "caliper": self.config.caliper,
            "exact": ", ".join(self.config.exact) or None,
            "seed": self.config.seed,
            "n_focal": self.n_focal,
            "n_pool": self.n_pool,
            "n_pairs": self.n_pairs,
            "n_unmatched_focal": self.n_unmatched,
            "n_pool_discarded": self.n_pool - self.n_pairs,
            "mean_distance": float(dist.mean()) if len(dist) else np.nan,
            "max_distance": float(dist.max()) if len(dist) else np.nan,
        }


# =============================================================================
# DISTANCES
# =============================================================================

def estimate_propensity_scores(df: pd.DataFrame, covariates: List[str], treatment: str = "is_veteran") -> pd.Series:
    """P(focal | covariates) from a binomial GLM with logit link."""
    X = sm.add_constant(df[covariates].astype(float), has_constant="add")
    y = df[treatment].astype(float)
    model = sm.GLM(y, X, family=sm.families.Binomial()).fit()
    return pd.Series(np.asarray(model.predict(X)), index=df.index, name="propensity_score")


def _inverse_covariance(X: np.ndarray) -> np.ndarray:
    cov = np.atleast_2d(np.cov(X, rowvar=False))
    return np.linalg.pinv(cov)


def propensity_distance_matrix(ps_focal: np.ndarray, ps_pool: np.ndarray) -> np.ndarray:
    return np.abs(np.subtract.outer(ps_focal, ps_pool))


def mahalanobis_distance_matrix(X_focal: np.ndarray, X_pool: np.ndarray, VI: np.ndarray) -> np.ndarray:
    return cdist(X_focal, X_pool, metric="mahalanobis", VI=VI)


# =============================================================================
# MATCHING
# =============================================================================

def match_cohort(
    df: pd.DataFrame,
    config: Optional[MatchingConfig] = None,
    verbose: bool = False,
) -> MatchResult:
    """
    Greedy 1:1 nearest-neighbour matching without replacement.

    Parameters
    ----------
    df : pd.DataFrame
        One row per record with 'patient_id', 'is_veteran' and the
        covariates named in ``config.covariates``. No missing covariates.
    config : MatchingConfig
        Distance, caliper, exact-match covariates, seed.
    verbose : bool
        Print a matching summary.

    Returns
    -------
    MatchResult
        Matched records (focal + partner, sharing 'pair_id'), pairs table,
        unmatched focal records and full-sample propensity scores. Pool
        records without a partner are discarded.
    """
    if config is None:
        config = MatchingConfig()

    needed = ["patient_id", "is_veteran"] + config.covariates + config.exact
    missing = [c for c in dict.fromkeys(needed) if c not in df.columns]
    if missing:
        raise KeyError(f"Columns needed for matching not found: {missing}")
    if df[config.covariates].isna().any().any():
        raise ValueError("Matching covariates contain missing values; apply list-wise deletion first.")
    if df["patient_id"].duplicated().any():
        raise ValueError("patient_id must be unique before matching.")

    data = df.reset_index(drop=True)
    focal_mask = data["is_veteran"].astype(int) == 1
    focal = data[focal_mask].reset_index(drop=True)
    pool = data[~focal_mask].reset_index(drop=True)
    n_focal, n_pool = len(focal), len(pool)

    if n_focal == 0:
        raise ValueError("No focal records to match.")
    if n_focal > n_pool:
        warnings.warn(
            f"Focal group ({n_focal}) is larger than the pool ({n_pool}); "
            f"at least {n_focal - n_pool} focal record(s) will stay unmatched.",
            UserWarning,
        )

    propensity = estimate_propensity_scores(data, config.covariates)
    ps_focal = propensity[focal_mask].to_numpy()
    ps_pool = propensity[~focal_mask].to_numpy()

    if config.distance == "propensity":
        D = propensity_distance_matrix(ps_focal, ps_pool)
        difficulty = ps_focal
        caliper_width = None if config.caliper is None else config.caliper * float(propensity.std(ddof=1))
    else:
        X_all = data[config.covariates].to_numpy(dtype=float)
        VI = _inverse_covariance(X_all)
        X_focal = focal[config.covariates].to_numpy(dtype=float)
        X_pool = pool[config.covariates].to_numpy(dtype=float)
        D = mahalanobis_distance_matrix(X_focal, X_pool, VI)
        centroid = X_pool.mean(axis=0, keepdims=True)
        difficulty = mahalanobis_distance_matrix(X_focal, centroid, VI)[:, 0]
        caliper_width = config.caliper

    rng = np.random.default_rng(config.seed)
    pool_rank = np.empty(n_pool, dtype=int)
    pool_rank[rng.permutation(n_pool)] = np.arange(n_pool)
    focal_tiebreak = rng.random(n_focal)
    # largest difficulty first, random key breaks ties
    order = np.lexsort((focal_tiebreak, -difficulty))

    if config.exact:
        focal_exact = focal[config.exact].to_numpy()
        pool_exact = pool[config.exact].to_numpy()

    available = np.ones(n_pool, dtype=bool)
    pair_rows = []
    unmatched_rows = []

    for match_order, i in enumerate(order, start=1):
        candidates = available.copy()
        if config.exact:
            candidates &= (pool_exact == focal_exact[i]).all(axis=1)
        if caliper_width is not None:
            candidates &= D[i] <= caliper_width

        if not candidates.any():
            reason = "pool exhausted" if not available.any() else "no candidate within constraints"
            unmatched_rows.append({"patient_id": focal.at[i, "patient_id"], "reason": reason})
            continue

        d = np.where(candidates, D[i], np.inf)
        d_min = d.min()
        ties = np.flatnonzero(d <= d_min + TIE_TOLERANCE)
        j = int(ties[np.argmin(pool_rank[ties])])
        available[j] = False

        pair_rows.append({
            "pair_id": len(pair_rows) + 1,
            "focal_id": focal.at[i, "patient_id"],
            "pool_id": pool.at[j, "patient_id"],
            "distance": float(D[i, j]),
            "focal_propensity": float(ps_focal[i]),
            "pool_propensity": float(ps_pool[j]),
            "match_order": match_order,
            "n_ties": int(len(ties)),
        })

    pairs = pd.DataFrame(
        pair_rows,
        columns=["pair_id", "focal_id", "pool_id", "distance", "focal_propensity",
                 "pool_propensity", "match_order", "n_ties"],
    )
    unmatched = pd.DataFrame(unmatched_rows, columns=["patient_id", "reason"])

    if len(unmatched):
        warnings.warn(
            f"Matching shortfall: {len(unmatched)} of {n_focal} focal record(s) unmatched "
            f"({unmatched['reason'].value_counts().to_dict()}).",
            UserWarning,
        )

    matched = _assemble_matched(data, propensity, pairs)
    validate_pairs(matched)

    result = MatchResult(
        matched=matched,
        pairs=pairs,
        unmatched=unmatched,
        propensity=pd.Series(propensity.to_numpy(), index=data["patient_id"], name="propensity_score"),
        config=config,
        n_focal=n_focal,
        n_pool=n_pool,
    )

    if verbose:
        s = result.summary()
        print(f"  [MATCH] distance={s['distance']}, covariates=[{s['covariates']}], seed={s['seed']}")
        print(f"  [MATCH] focal={n_focal}, pool={n_pool} -> pairs={s['n_pairs']}, "
              f"unmatched focal={s['n_unmatched_focal']}, pool discarded={s['n_pool_discarded']}")

    return result


def _assemble_matched(data: pd.DataFrame, propensity: pd.Series, pairs: pd.DataFrame) -> pd.DataFrame:
    indexed = data.assign(propensity_score=propensity.to_numpy()).set_index("patient_id")
    focal_part = pairs[["pair_id", "focal_id", "distance"]].rename(columns={"focal_id": "patient_id"})
    pool_part = pairs[["pair_id", "pool_id", "distance"]].rename(columns={"pool_id": "patient_id"})
    long = pd.concat([focal_part, pool_part], ignore_index=True)
    long = long.rename(columns={"distance": "match_distance"})

    matched = long.join(indexed, on="patient_id")
    matched = matched.sort_values(["pair_id", "is_veteran"], ascending=[True, False])
    return matched.reset_index(drop=True)


def validate_pairs(matched: pd.DataFrame) -> None:
    """Raise ValueError unless every pair has one focal and one pool member and no record repeats."""
    if matched.empty:
        return
    if matched["patient_id"].duplicated().any():
        dup = matched.loc[matched["patient_id"].duplicated(), "patient_id"].tolist()
        raise ValueError(f"Records reused across pairs: {dup[:5]}")
    sizes = matched.groupby("pair_id")["is_veteran"].agg(["size", "sum"])
    bad = sizes[(sizes["size"] != 2) | (sizes["sum"] != 1)]
    if len(bad):
        raise ValueError(f"Pairs without exactly one member per group: {bad.index.tolist()[:5]}")
