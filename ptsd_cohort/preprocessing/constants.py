"""Shared constants for preprocessing and analysis."""

from __future__ import annotations

from pathlib import Path

import numpy as np

# Directory paths
REPO_DIR = Path(__file__).resolve().parents[2]
DATA_DIR = REPO_DIR / "data"
RAW_DIR = DATA_DIR / "raw"

OUTPUTS_DIR = REPO_DIR / "outputs"
OUTPUT_DATA_DIR = OUTPUTS_DIR / "data"
OUTPUT_STATS_DIR = OUTPUTS_DIR / "stats"
OUTPUT_FIGURES_DIR = OUTPUTS_DIR / "figures"
OUTPUT_REPORT_DIR = OUTPUTS_DIR / "report"

# Input files
RAW_RECORDS_FILE = RAW_DIR / "ptsd_treatment_records.csv"
SENSITIVITY_TABLE_FILE = RAW_DIR / "bf_prior_sensitivity.csv"

# Output files
PROCESSED_CSV_NAME = "matched_cohort.csv"
PROCESSED_PARQUET_NAME = "matched_cohort.parquet"
REPORT_HTML_NAME = "analysis_report.html"

# Raw export column -> canonical column
RAW_COLUMN_MAP = {
    "PatientID": "patient_id",
    "Veteran": "veteran",
    "StartDate": "enrollment_date",
    "Age": "age",
    "Gender": "sex",
    "CAPS_Pre": "caps_pre",
    "CAPS_Post": "caps_post",
    "CAPS_FU": "caps_followup",
    "PTSD_Pre": "ptsd_dx_pre",
    "PTSD_Post": "ptsd_dx_post",
    "TreatmentDays": "treatment_days",
    "Trauma_Combat": "trauma_combat",
    "Trauma_Sexual": "trauma_sexual",
    "Trauma_Physical": "trauma_physical",
    "Trauma_Accident": "trauma_accident",
    "Trauma_Witness": "trauma_witness",
}

# Patient ID aliases
PATIENT_ID_ALIASES = {"patient_id", "PatientID", "patientId", "patientid", "client_id", "ID", "id"}

TRAUMA_COLUMNS = [
    "trauma_combat",
    "trauma_sexual",
    "trauma_physical",
    "trauma_accident",
    "trauma_witness",
]

TRAUMA_LABELS = {
    "trauma_combat": "Combat exposure",
    "trauma_sexual": "Sexual violence",
    "trauma_physical": "Physical violence",
    "trauma_accident": "Accident / disaster",
    "trauma_witness": "Witnessed trauma",
}

# Fields that must be present for a record to enter the analysis set
REQUIRED_FIELDS = [
    "patient_id",
    "group",
    "enrollment_date",
    "age",
    "sex",
    "caps_pre",
    "caps_post",
    "treatment_days",
]

# Records disqualified after data collection (removed by identifier)
EXCLUDED_PATIENT_IDS: frozenset = frozenset()

# Group labels
FOCAL_GROUP = "veteran"
POOL_GROUP = "civilian"
GROUP_ORDER = [FOCAL_GROUP, POOL_GROUP]

# Veteran / binary / sex normalization tokens
TRUE_TOKENS = {"1", "1.0", "true", "t", "yes", "y", "ja", "veteran"}
FALSE_TOKENS = {"0", "0.0", "false", "f", "no", "n", "nee", "civilian"}
MALE_TOKENS = {"m", "male", "man", "men", "1"}
FEMALE_TOKENS = {"f", "female", "woman", "women", "v", "vrouw", "2"}

# Matching
MATCH_COVARIATES = ["male", "age", "enrollment_year", "treatment_days"]
MATCH_DISTANCE = "propensity"
VALID_DISTANCES = {"propensity", "mahalanobis"}
MATCH_SEED = 42

# Balance
SMD_THRESHOLD = 0.5

# Missingness diagnostics
MISSING_RATE_WARN = 0.5
MIN_EXPECTED_COUNT = 5
# selection model SEs above this (log-odds scale) indicate separation
MAX_IDENTIFIED_SE = 100.0
SELECTION_MODEL_TERMS = ["is_veteran", "age", "male", "caps_pre", "caps_post"]

# Reliable change (CAPS-5 test-retest reliability)
RCI_RELIABILITY = 0.78
RCI_Z_CRITICAL = 1.96
CHANGE_CLASSES = ["deteriorated", "unchanged", "improved"]

# Bayesian model comparison (Cauchy prior scales on standardized effects)
RM_ANOVA_PRIOR_SCALE = 0.5
ANCOVA_PRIOR_SCALE = 0.354
SENSITIVITY_PRIOR_SCALES = np.round(np.arange(0.05, 1.5001, 0.05), 3)

# PyMC ANCOVA posterior
POSTERIOR_PRIOR_SDS = (5.0, 10.0, 20.0)  # CAPS points
POSTERIOR_DRAWS = 1000
POSTERIOR_TUNE = 1000
POSTERIOR_CHAINS = 2

# Descriptive variables (column, display label)
CONTINUOUS_VARS = [
    ("age", "Age (years)"),
    ("enrollment_year", "Enrollment year"),
    ("treatment_days", "Treatment duration (days)"),
    ("caps_pre", "CAPS pre-treatment"),
    ("caps_post", "CAPS post-treatment"),
    ("caps_followup", "CAPS follow-up"),
    ("trauma_count", "Trauma types endorsed"),
]

COVARIATE_LABELS = {
    "male": "Male sex",
    "age": "Age (years)",
    "enrollment_year": "Enrollment year",
    "treatment_days": "Treatment duration (days)",
    "caps_pre": "CAPS pre-treatment",
    "trauma_count": "Trauma types endorsed",
}

CATEGORICAL_VARS = [
    ("sex", "Sex"),
    ("ptsd_dx_post", "PTSD diagnosis post-treatment"),
]

# Figures
FIGURE_DPI = 300
GROUP_PALETTE = {FOCAL_GROUP: "#1f4e79", POOL_GROUP: "#c55a11"}
CHANGE_PALETTE = {"deteriorated": "#c00000", "unchanged": "#7f7f7f", "improved": "#2e7d32"}


def get_output_dir(kind: str, base_dir: Path | None = None) -> Path:
    """Return (and create) an output subdirectory.

    Args:
        kind: 'data', 'stats', 'figures', or 'report'
        base_dir: alternative root for outputs (default: OUTPUTS_DIR)
    """
    subdirs = {
        "data": OUTPUT_DATA_DIR.name,
        "stats": OUTPUT_STATS_DIR.name,
        "figures": OUTPUT_FIGURES_DIR.name,
        "report": OUTPUT_REPORT_DIR.name,
    }
    if kind not in subdirs:
        raise ValueError(f"Unknown output kind: {kind}. Valid kinds: {sorted(subdirs)}")
    root = OUTPUTS_DIR if base_dir is None else Path(base_dir)
    path = root / subdirs[kind]
    path.mkdir(parents=True, exist_ok=True)
    return path
