"""
Cohort eligibility criteria and record filtering.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional, Tuple

import pandas as pd

from .constants import EXCLUDED_PATIENT_IDS, REQUIRED_FIELDS


# =============================================================================
# Criteria Dataclass
# =============================================================================

@dataclass
class CohortCriteria:
    """Eligibility rules for the analysis set."""
    require_pre_diagnosis: bool = True
    excluded_ids: frozenset = field(default_factory=lambda: frozenset(EXCLUDED_PATIENT_IDS))
    required_fields: List[str] = field(default_factory=lambda: list(REQUIRED_FIELDS))
    drop_duplicate_ids: bool = True

    def __post_init__(self):
        self.excluded_ids = frozenset(str(pid) for pid in self.excluded_ids)


# =============================================================================
# Filtering
# =============================================================================

def _flow_row(step: str, before: int, after: int) -> dict:
    return {"step": step, "n_remaining": after, "n_removed": before - after}


def apply_cohort_criteria(
    df: pd.DataFrame,
    criteria: Optional[CohortCriteria] = None,
    verbose: bool = False,
) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """Apply exclusion rules in a fixed order.

    Args:
        df: canonical records (see loaders.load_raw_records)
        criteria: eligibility rules (default: CohortCriteria())
        verbose: print per-step counts

    Returns:
        (eligible records, flow table with one row per step)
    """
    if criteria is None:
        criteria = CohortCriteria()

    missing_cols = [c for c in criteria.required_fields if c not in df.columns]
    if missing_cols:
        raise KeyError(f"Required fields missing from records: {missing_cols}")

    flow = [{"step": "Records loaded", "n_remaining": len(df), "n_removed": 0}]
    out = df.copy()

    # 1. Hard-coded disqualified records
    if criteria.excluded_ids:
        n0 = len(out)
        out = out[~out["patient_id"].astype(str).isin(criteria.excluded_ids)]
        flow.append(_flow_row("Disqualified identifier removed", n0, len(out)))

    # 2. PTSD diagnosis before treatment
    if criteria.require_pre_diagnosis:
        if "ptsd_dx_pre" not in out.columns:
            raise KeyError("Column 'ptsd_dx_pre' is needed to apply the diagnosis criterion.")
        n0 = len(out)
        out = out[out["ptsd_dx_pre"] == 1]
        flow.append(_flow_row("No pre-treatment PTSD diagnosis", n0, len(out)))

    # 3. List-wise deletion on required fields
    n0 = len(out)
    out = out.dropna(subset=criteria.required_fields)
    flow.append(_flow_row("Missing required field (list-wise deletion)", n0, len(out)))

    # 4. Duplicate identifiers
    if criteria.drop_duplicate_ids:
        n0 = len(out)
        out = out.drop_duplicates(subset=["patient_id"], keep="first")
        flow.append(_flow_row("Duplicate patient_id", n0, len(out)))

    out = out.reset_index(drop=True)
    flow_df = pd.DataFrame(flow)

    if verbose:
        for _, row in flow_df.iterrows():
            removed = f" (-{row['n_removed']})" if row["n_removed"] else ""
            print(f"  [FILTER] {row['step']}: {row['n_remaining']}{removed}")

    return out, flow_df
