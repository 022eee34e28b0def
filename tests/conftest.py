"""Shared fixtures for the ptsd_cohort test suite.

Synthetic cohorts mimic the real data layout: a small veteran group that is
older, mostly male, enrolled later and treated longer than a large civilian
pool. All fixtures are generated, no real records are used.

Key fixtures:
- cohort_records: canonical records, 43 veterans / 3848 civilians
- matched_dataset: AnalysisDataset built from cohort_records (session-scoped)
- classified: matched records with rci / change_class
"""

from typing import Any

import numpy as np
import pandas as pd
import pytest

from ptsd_cohort.analysis.reliable_change import classify
from ptsd_cohort.preprocessing import build_matched_dataset
from ptsd_cohort.preprocessing.constants import RAW_COLUMN_MAP, TRAUMA_COLUMNS


def pytest_configure(config: Any) -> None:
    config.addinivalue_line(
        "markers",
        "slow: Tests that take more than a few seconds to run",
    )


def pytest_addoption(parser: Any) -> None:
    parser.addoption(
        "--run-slow",
        action="store_true",
        default=False,
        help="Run slow tests (default: skip)",
    )


def pytest_runtest_setup(item: Any) -> None:
    # Skip slow tests unless explicitly requested
    if "slow" in item.keywords and not item.config.getoption("--run-slow"):
        pytest.skip("Slow test skipped (use --run-slow to run)")


# ============================================================================
# Synthetic cohort
# ============================================================================


def make_cohort(
    n_veterans: int = 43,
    n_civilians: int = 3848,
    seed: int = 0,
    n_ineligible: int = 0,
    followup_missing_rate: float = 0.3,
) -> pd.DataFrame:
    """Canonical records (see preprocessing.loaders.standardize_columns).

    All veterans are eligible. ``n_ineligible`` extra civilians are added
    without a pre-treatment diagnosis.
    """
    rng = np.random.default_rng(seed)

    def block(n: int, veteran: bool, start_id: int) -> pd.DataFrame:
        if veteran:
            age = rng.normal(46, 9, n)
            male = rng.random(n) < 0.85
            start = pd.Timestamp("2017-01-01")
            span_days = 5 * 365
            days = rng.normal(62, 12, n)
            effect = 12.0
        else:
            age = rng.normal(38, 11, n)
            male = rng.random(n) < 0.30
            start = pd.Timestamp("2012-01-01")
            span_days = 10 * 365
            days = rng.normal(45, 14, n)
            effect = 18.0

        pre = np.clip(rng.normal(52, 10, n), 25, 90).round()
        post = np.clip(pre - effect + rng.normal(0, 11, n), 0, 90).round()
        followup = np.clip(post + rng.normal(0, 6, n), 0, 90).round()
        followup[rng.random(n) < followup_missing_rate] = np.nan

        frame = pd.DataFrame({
            "patient_id": [f"P{start_id + i:05d}" for i in range(n)],
            "group": "veteran" if veteran else "civilian",
            "enrollment_date": start + pd.to_timedelta(rng.integers(0, span_days, n), unit="D"),
            "sex": np.where(male, "male", "female"),
            "age": np.clip(age, 18, 80).round(),
            "caps_pre": pre,
            "caps_post": post,
            "caps_followup": followup,
            "treatment_days": np.clip(days, 10, 120).round(),
            "ptsd_dx_pre": 1.0,
            "ptsd_dx_post": (post >= 33).astype(float),
        })
        for col in TRAUMA_COLUMNS:
            p = (0.8 if veteran else 0.05) if col == "trauma_combat" else 0.3
            frame[col] = (rng.random(n) < p).astype(float)
        return frame

    parts = [block(n_veterans, True, 0), block(n_civilians, False, n_veterans)]
    if n_ineligible:
        extra = block(n_ineligible, False, n_veterans + n_civilians)
        extra["ptsd_dx_pre"] = 0.0
        parts.append(extra)
    return pd.concat(parts, ignore_index=True)


def to_raw_export(records: pd.DataFrame) -> pd.DataFrame:
    """Records as the treatment centre exports them (raw column names, free text)."""
    raw = pd.DataFrame({
        "PatientID": records["patient_id"],
        "Veteran": np.where(records["group"] == "veteran", "yes", "no"),
        "StartDate": pd.to_datetime(records["enrollment_date"]).dt.strftime("%d-%m-%Y"),
        "Age": records["age"],
        "Gender": records["sex"].map({"male": "M", "female": "V"}),
        "CAPS_Pre": records["caps_pre"],
        "CAPS_Post": records["caps_post"],
        "CAPS_FU": records["caps_followup"],
        "PTSD_Pre": records["ptsd_dx_pre"].map({1.0: "ja", 0.0: "nee"}),
        "PTSD_Post": records["ptsd_dx_post"].map({1.0: "ja", 0.0: "nee"}),
        "TreatmentDays": records["treatment_days"],
    })
    raw_names = {canonical: raw_name for raw_name, canonical in RAW_COLUMN_MAP.items()}
    for col in TRAUMA_COLUMNS:
        raw[raw_names[col]] = records[col]
    return raw


@pytest.fixture(scope="session")
def cohort_records() -> pd.DataFrame:
    return make_cohort()


@pytest.fixture(scope="session")
def matched_dataset(cohort_records: pd.DataFrame):
    return build_matched_dataset(cohort_records, verbose=False)


@pytest.fixture
def matched(matched_dataset) -> pd.DataFrame:
    return matched_dataset.matched.copy()


@pytest.fixture
def classified(matched: pd.DataFrame) -> pd.DataFrame:
    data, _ = classify(matched)
    return data


@pytest.fixture
def small_cohort() -> pd.DataFrame:
    """40 / 400 cohort for tests that rebuild the matched set."""
    return make_cohort(n_veterans=40, n_civilians=400, seed=1)
