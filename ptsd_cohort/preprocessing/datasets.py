"""
Matched analysis dataset builder.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional

import pandas as pd

from .constants import (
    FOCAL_GROUP,
    POOL_GROUP,
    PROCESSED_CSV_NAME,
    PROCESSED_PARQUET_NAME,
    get_output_dir,
)
from .features import (
    attach_auxiliary_fields,
    derive_matching_covariates,
    derive_outcome_features,
    recode_categoricals,
    select_matching_frame,
)
from .filters import CohortCriteria, apply_cohort_criteria
from .loaders import load_raw_records
from .matching import MatchingConfig, MatchResult, match_cohort


@dataclass
class AnalysisDataset:
    """Everything downstream analyses need from preprocessing."""
    records: pd.DataFrame     # all loaded records (canonical columns)
    eligible: pd.DataFrame    # after eligibility rules, before matching
    matched: pd.DataFrame     # matched pairs with auxiliary + derived fields
    match_result: MatchResult
    flow: pd.DataFrame


def prepare_eligible(
    records: pd.DataFrame,
    criteria: Optional[CohortCriteria] = None,
    verbose: bool = False,
) -> tuple[pd.DataFrame, pd.DataFrame]:
    eligible, flow = apply_cohort_criteria(records, criteria, verbose=verbose)
    eligible = derive_matching_covariates(eligible)
    eligible = derive_outcome_features(eligible)
    return eligible, flow


def build_matched_dataset(
    records: pd.DataFrame,
    criteria: Optional[CohortCriteria] = None,
    matching: Optional[MatchingConfig] = None,
    verbose: bool = True,
) -> AnalysisDataset:
    """Run eligibility, matching and feature derivation on loaded records."""
    if matching is None:
        matching = MatchingConfig()

    if verbose:
        print("=" * 60)
        print("Matched cohort build")
        print("=" * 60)

    eligible, flow = prepare_eligible(records, criteria, verbose=verbose)
    counts = eligible["group"].value_counts()
    if verbose:
        print(f"\n  Eligible: {FOCAL_GROUP}={int(counts.get(FOCAL_GROUP, 0))}, "
              f"{POOL_GROUP}={int(counts.get(POOL_GROUP, 0))}")

    lean = select_matching_frame(eligible, list(dict.fromkeys(matching.covariates + matching.exact)))
    result = match_cohort(lean, matching, verbose=verbose)

    matched = attach_auxiliary_fields(result.matched, eligible)
    matched = recode_categoricals(matched)

    flow = pd.concat(
        [flow, pd.DataFrame([{
            "step": "Matched (unmatched pool records discarded)",
            "n_remaining": len(matched),
            "n_removed": len(eligible) - len(matched),
        }])],
        ignore_index=True,
    )

    if verbose:
        print(f"  [OK] matched dataset: {result.n_pairs} pairs, {len(matched)} records")

    return AnalysisDataset(
        records=records,
        eligible=recode_categoricals(eligible),
        matched=matched,
        match_result=result,
        flow=flow,
    )


def load_matched_dataset(
    data_path: Optional[Path] = None,
    criteria: Optional[CohortCriteria] = None,
    matching: Optional[MatchingConfig] = None,
    verbose: bool = True,
) -> AnalysisDataset:
    records = load_raw_records(data_path, verbose=verbose)
    return build_matched_dataset(records, criteria, matching, verbose=verbose)


def save_processed_dataset(
    df: pd.DataFrame,
    output_dir: Optional[Path] = None,
    verbose: bool = True,
) -> Dict[str, Path]:
    """Write the processed dataset as CSV (utf-8-sig) and Parquet."""
    if output_dir is None:
        output_dir = get_output_dir("data")
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    csv_path = output_dir / PROCESSED_CSV_NAME
    parquet_path = output_dir / PROCESSED_PARQUET_NAME

    df.to_csv(csv_path, index=False, encoding="utf-8-sig")
    df.to_parquet(parquet_path, index=False)

    if verbose:
        print(f"  [OK] processed dataset: {csv_path}")
        print(f"  [OK] processed dataset: {parquet_path}")
    return {"csv": csv_path, "parquet": parquet_path}
