"""
Derived fields for matching and outcome analyses.
"""

from __future__ import annotations

from typing import List, Optional

import numpy as np
import pandas as pd

from .constants import (
    FOCAL_GROUP,
    GROUP_ORDER,
    MATCH_COVARIATES,
    TRAUMA_COLUMNS,
)
from .core import decimal_year


def derive_matching_covariates(df: pd.DataFrame) -> pd.DataFrame:
    """Add numeric covariates used by the matcher (is_veteran, male, enrollment_year)."""
    out = df.copy()
    out["is_veteran"] = (out["group"] == FOCAL_GROUP).astype(int)
    out["male"] = (out["sex"] == "male").astype(int)
    out["enrollment_year"] = decimal_year(out["enrollment_date"])
    return out


def select_matching_frame(df: pd.DataFrame, covariates: Optional[List[str]] = None) -> pd.DataFrame:
    """Lean frame handed to the matcher: id, group indicator, covariates."""
    covariates = list(MATCH_COVARIATES if covariates is None else covariates)
    missing = [c for c in covariates if c not in df.columns]
    if missing:
        raise KeyError(f"Matching covariates not found: {missing}")
    cols = ["patient_id", "group", "is_veteran"] + [c for c in covariates if c not in ("is_veteran",)]
    return df[cols].copy()


def attach_auxiliary_fields(matched: pd.DataFrame, records: pd.DataFrame) -> pd.DataFrame:
    """
    Join the remaining record fields (scores, diagnoses, trauma flags) onto
    the matched frame by patient_id. Matched rows are never added or dropped.
    """
    extra = [c for c in records.columns if c not in matched.columns or c == "patient_id"]
    merged = matched.merge(records[extra], on="patient_id", how="left", validate="one_to_one")
    if len(merged) != len(matched):
        raise ValueError("Auxiliary merge changed the number of matched records.")
    return merged


def recode_categoricals(df: pd.DataFrame) -> pd.DataFrame:
    """Ordered categoricals for group and sex, integer coding for binary flags."""
    out = df.copy()
    out["group"] = pd.Categorical(out["group"], categories=GROUP_ORDER)
    out["sex"] = pd.Categorical(out["sex"], categories=["female", "male"])
    for col in ["ptsd_dx_pre", "ptsd_dx_post"] + [c for c in TRAUMA_COLUMNS if c in out.columns]:
        if col in out.columns:
            out[col] = out[col].astype("Int64")
    return out


def derive_outcome_features(df: pd.DataFrame) -> pd.DataFrame:
    """Score differences, follow-up missingness, trauma count, remission."""
    out = df.copy()
    out["caps_diff"] = out["caps_post"] - out["caps_pre"]
    out["caps_followup_diff"] = out["caps_followup"] - out["caps_pre"]
    out["followup_missing"] = out["caps_followup"].isna().astype(int)

    trauma_cols = [c for c in TRAUMA_COLUMNS if c in out.columns]
    if trauma_cols:
        out["trauma_count"] = out[trauma_cols].astype(float).sum(axis=1, min_count=1)
    else:
        out["trauma_count"] = np.nan

    pre = out["ptsd_dx_pre"].astype(float)
    post = out["ptsd_dx_post"].astype(float)
    out["dx_remitted"] = np.where(post.isna(), np.nan, ((pre == 1) & (post == 0)).astype(float))
    return out
