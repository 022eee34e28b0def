"""
Preprocessing Module
====================

Loading, eligibility filtering, 1:1 matching and feature derivation for the
veteran / civilian PTSD treatment cohort.

    from ptsd_cohort.preprocessing import load_matched_dataset
    dataset = load_matched_dataset("data/raw/ptsd_treatment_records.csv")
    dataset.matched        # 2 records per pair

CLI:
    python -m ptsd_cohort.preprocessing --build
    python -m ptsd_cohort.preprocessing --info
"""

# Constants
from .constants import (
    RAW_DIR,
    DATA_DIR,
    OUTPUTS_DIR,
    RAW_RECORDS_FILE,
    SENSITIVITY_TABLE_FILE,
    FOCAL_GROUP,
    POOL_GROUP,
    GROUP_ORDER,
    MATCH_COVARIATES,
    SMD_THRESHOLD,
    TRAUMA_COLUMNS,
    get_output_dir,
)

# Loaders
from .loaders import (
    load_raw_records,
    load_sensitivity_table,
    standardize_columns,
)

# Core helpers
from .core import (
    ensure_patient_id,
    normalize_sex_value,
    normalize_sex_series,
    normalize_binary_series,
    decimal_year,
)

# Filters
from .filters import (
    CohortCriteria,
    apply_cohort_criteria,
)

# Features
from .features import (
    derive_matching_covariates,
    derive_outcome_features,
    attach_auxiliary_fields,
    recode_categoricals,
    select_matching_frame,
)

# Matching
from .matching import (
    MatchingConfig,
    MatchResult,
    match_cohort,
    estimate_propensity_scores,
    validate_pairs,
)

# Dataset builder
from .datasets import (
    AnalysisDataset,
    prepare_eligible,
    build_matched_dataset,
    load_matched_dataset,
    save_processed_dataset,
)

__all__ = [
    # Constants
    'RAW_DIR',
    'DATA_DIR',
    'OUTPUTS_DIR',
    'RAW_RECORDS_FILE',
    'SENSITIVITY_TABLE_FILE',
    'FOCAL_GROUP',
    'POOL_GROUP',
    'GROUP_ORDER',
    'MATCH_COVARIATES',
    'SMD_THRESHOLD',
    'TRAUMA_COLUMNS',
    'get_output_dir',
    # Loaders
    'load_raw_records',
    'load_sensitivity_table',
    'standardize_columns',
    # Core
    'ensure_patient_id',
    'normalize_sex_value',
    'normalize_sex_series',
    'normalize_binary_series',
    'decimal_year',
    # Filters
    'CohortCriteria',
    'apply_cohort_criteria',
    # Features
    'derive_matching_covariates',
    'derive_outcome_features',
    'attach_auxiliary_fields',
    'recode_categoricals',
    'select_matching_frame',
    # Matching
    'MatchingConfig',
    'MatchResult',
    'match_cohort',
    'estimate_propensity_scores',
    'validate_pairs',
    # Dataset builder
    'AnalysisDataset',
    'prepare_eligible',
    'build_matched_dataset',
    'load_matched_dataset',
    'save_processed_dataset',
]
