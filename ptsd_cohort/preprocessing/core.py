"""
Core helpers for preprocessing.
"""

from __future__ import annotations

import re
from typing import Optional
import warnings

import numpy as np
import pandas as pd

from .constants import (
    PATIENT_ID_ALIASES,
    TRUE_TOKENS,
    FALSE_TOKENS,
    MALE_TOKENS,
    FEMALE_TOKENS,
)


def ensure_patient_id(df: pd.DataFrame, warn_threshold: float = 1.0) -> pd.DataFrame:
    """
    Ensure there is exactly one 'patient_id' column.
    Prefers an existing patient_id column, otherwise renames common aliases.
    """
    canonical = "patient_id"
    if canonical not in df.columns:
        for col in df.columns:
            if col in PATIENT_ID_ALIASES and col != canonical:
                df = df.rename(columns={col: canonical})
                break
    if canonical not in df.columns:
        raise KeyError("No patient id column found in dataframe.")

    missing_count = df[canonical].isna().sum()
    missing_pct = missing_count / len(df) * 100 if len(df) > 0 else 0

    if missing_pct > warn_threshold:
        warnings.warn(
            f"patient_id column has {missing_pct:.1f}% missing values ({missing_count}/{len(df)} rows). "
            "These rows are dropped by list-wise deletion.",
            UserWarning,
        )

    aliases = [col for col in df.columns if col in PATIENT_ID_ALIASES and col != canonical]
    if aliases:
        df = df.drop(columns=aliases)

    ids = df[canonical]
    # numeric IDs with blanks are read as float (1004 -> 1004.0)
    if pd.api.types.is_float_dtype(ids) and (ids.dropna() % 1 == 0).all():
        ids = ids.astype("Int64")
    text = ids.astype(str).str.strip().astype("object")
    df[canonical] = text.where(ids.notna(), np.nan)
    return df


def _normalize_token(value: object) -> str:
    if value is None or pd.isna(value):
        return ""
    cleaned = str(value).strip().lower()
    return re.sub(r"\s+", " ", cleaned)


def normalize_sex_value(value: object) -> Optional[str]:
    """Map free-text sex codes to 'male'/'female'; None when unmappable."""
    token = _normalize_token(value)
    if not token:
        return None
    if token.endswith(".0"):
        token = token[:-2]
    if token in FEMALE_TOKENS:
        return "female"
    if token in MALE_TOKENS:
        return "male"
    return None


def normalize_sex_series(series: pd.Series) -> pd.Series:
    mapped = series.apply(normalize_sex_value)
    return pd.Series(mapped, index=series.index, dtype="object")


def normalize_binary_value(value: object) -> float:
    """Map yes/no style codes to 1.0/0.0; NaN when unmappable."""
    token = _normalize_token(value)
    if token in TRUE_TOKENS:
        return 1.0
    if token in FALSE_TOKENS:
        return 0.0
    return np.nan


def normalize_binary_series(series: pd.Series, name: str | None = None) -> pd.Series:
    mapped = series.apply(normalize_binary_value).astype(float)
    filled = series.apply(_normalize_token) != ""
    n_bad = int((filled & mapped.isna()).sum())
    if n_bad > 0:
        warnings.warn(
            f"{name or series.name}: {n_bad} value(s) could not be read as yes/no and were set to missing.",
            UserWarning,
        )
    return mapped


def coerce_numeric(series: pd.Series, name: str | None = None) -> pd.Series:
    """pd.to_numeric with a warning for malformed (non-empty, non-numeric) entries."""
    if pd.api.types.is_numeric_dtype(series):
        return series.astype(float)
    cleaned = series.astype("string").str.strip().str.replace(",", ".", regex=False)
    cleaned = cleaned.replace("", pd.NA)
    numeric = pd.to_numeric(cleaned, errors="coerce")
    n_bad = int(numeric.isna().sum() - cleaned.isna().sum())
    if n_bad > 0:
        warnings.warn(
            f"{name or series.name}: {n_bad} malformed value(s) set to missing.",
            UserWarning,
        )
    return numeric.astype(float)


def coerce_dates(series: pd.Series, name: str | None = None, dayfirst: bool = True) -> pd.Series:
    if pd.api.types.is_datetime64_any_dtype(series):
        return series
    parsed = pd.to_datetime(series, errors="coerce", dayfirst=dayfirst)
    n_bad = int(parsed.isna().sum() - series.isna().sum())
    if n_bad > 0:
        warnings.warn(
            f"{name or series.name}: {n_bad} unparseable date(s) set to missing.",
            UserWarning,
        )
    return parsed


def decimal_year(dates: pd.Series) -> pd.Series:
    """Convert datetimes to decimal years (2019-07-02 -> ~2019.5)."""
    dates = pd.to_datetime(dates)
    year = dates.dt.year
    start = pd.to_datetime(year.astype("Int64").astype(str) + "-01-01", errors="coerce")
    days_in_year = np.where(dates.dt.is_leap_year, 366.0, 365.0)
    return year + (dates - start).dt.days / days_in_year
