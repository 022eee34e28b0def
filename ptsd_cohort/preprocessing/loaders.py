"""
Raw record and auxiliary table loaders.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import numpy as np
import pandas as pd

from .constants import (
    RAW_COLUMN_MAP,
    RAW_RECORDS_FILE,
    SENSITIVITY_TABLE_FILE,
    TRAUMA_COLUMNS,
    FOCAL_GROUP,
    POOL_GROUP,
)
from .core import (
    ensure_patient_id,
    normalize_sex_series,
    normalize_binary_series,
    coerce_numeric,
    coerce_dates,
)

NUMERIC_COLUMNS = ["age", "caps_pre", "caps_post", "caps_followup", "treatment_days"]
BINARY_COLUMNS = ["ptsd_dx_pre", "ptsd_dx_post"] + TRAUMA_COLUMNS

SENSITIVITY_SCALE_ALIASES = {"prior_scale", "r", "r_scale", "prior_width", "cauchy_scale", "scale"}
SENSITIVITY_BF10_ALIASES = {"bf10", "BF10", "bf_10", "BF"}
SENSITIVITY_BF01_ALIASES = {"bf01", "BF01", "bf_01"}


def _read_table(path: Path) -> pd.DataFrame:
    if path.suffix.lower() == ".parquet":
        return pd.read_parquet(path)
    return pd.read_csv(path, encoding="utf-8-sig")


def _group_from_veteran_flag(flag: pd.Series) -> pd.Series:
    group = pd.Series(pd.NA, index=flag.index, dtype="object")
    group[flag == 1.0] = FOCAL_GROUP
    group[flag == 0.0] = POOL_GROUP
    return group


def standardize_columns(raw: pd.DataFrame) -> pd.DataFrame:
    """
    Rename raw export columns to canonical names, keep only known fields, and
    coerce every field to its analysis type.
    """
    df = raw.rename(columns={k: v for k, v in RAW_COLUMN_MAP.items() if k in raw.columns}).copy()
    df = ensure_patient_id(df)

    if "group" not in df.columns:
        if "veteran" not in df.columns:
            raise KeyError("Records need either a 'group' column or a veteran flag column.")
        df["group"] = _group_from_veteran_flag(normalize_binary_series(df["veteran"], "veteran"))
    else:
        labels = df["group"].astype("string").str.strip().str.lower()
        df["group"] = labels.where(labels.isin([FOCAL_GROUP, POOL_GROUP]), pd.NA).astype("object")

    keep = ["patient_id", "group", "enrollment_date", "sex"] + NUMERIC_COLUMNS + BINARY_COLUMNS
    missing = [c for c in keep if c not in df.columns]
    for col in missing:
        df[col] = np.nan
    df = df[keep].copy()

    df["enrollment_date"] = coerce_dates(df["enrollment_date"], "enrollment_date")
    df["sex"] = normalize_sex_series(df["sex"])
    for col in NUMERIC_COLUMNS:
        df[col] = coerce_numeric(df[col], col)
    for col in BINARY_COLUMNS:
        df[col] = normalize_binary_series(df[col], col)

    return df


def load_raw_records(path: Optional[Path] = None, verbose: bool = False) -> pd.DataFrame:
    """
    Load patient-level treatment records in canonical form.

    Args:
        path: CSV or Parquet export (default: RAW_RECORDS_FILE)
        verbose: print row counts

    Returns:
        One row per record with canonical columns (see RAW_COLUMN_MAP).
    """
    if path is None:
        path = RAW_RECORDS_FILE
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Records file not found: {path}")

    raw = _read_table(path)
    df = standardize_columns(raw)

    if verbose:
        counts = df["group"].value_counts(dropna=False)
        print(f"[INFO] Loaded {len(df)} records from {path.name}")
        print(f"       {FOCAL_GROUP}: {int(counts.get(FOCAL_GROUP, 0))}, "
              f"{POOL_GROUP}: {int(counts.get(POOL_GROUP, 0))}")
    return df


def load_sensitivity_table(path: Optional[Path] = None, verbose: bool = False) -> pd.DataFrame:
    """
    Load a precomputed prior-scale vs Bayes factor table.

    Returns a frame with columns 'prior_scale' and 'bf10', sorted by scale.
    BF01 columns are inverted. A missing file yields an empty frame.
    """
    if path is None:
        path = SENSITIVITY_TABLE_FILE
    path = Path(path)
    if not path.exists():
        if verbose:
            print(f"[WARN] sensitivity table not found: {path}")
        return pd.DataFrame(columns=["prior_scale", "bf10"])

    table = _read_table(path)
    scale_col = next((c for c in table.columns if c in SENSITIVITY_SCALE_ALIASES), None)
    if scale_col is None:
        raise KeyError(f"No prior-scale column in {path.name}; expected one of {sorted(SENSITIVITY_SCALE_ALIASES)}")

    bf10_col = next((c for c in table.columns if c in SENSITIVITY_BF10_ALIASES), None)
    bf01_col = next((c for c in table.columns if c in SENSITIVITY_BF01_ALIASES), None)
    if bf10_col is not None:
        bf10 = coerce_numeric(table[bf10_col], bf10_col)
    elif bf01_col is not None:
        bf10 = 1.0 / coerce_numeric(table[bf01_col], bf01_col)
    else:
        raise KeyError(f"No Bayes factor column in {path.name}")

    out = pd.DataFrame({
        "prior_scale": coerce_numeric(table[scale_col], scale_col),
        "bf10": bf10,
    }).dropna()
    out = out[(out["prior_scale"] > 0) & (out["bf10"] > 0)]
    out = out.sort_values("prior_scale").reset_index(drop=True)

    if verbose:
        print(f"[INFO] Loaded sensitivity table: {len(out)} prior scales from {path.name}")
    return out
