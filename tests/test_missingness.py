"""Tests for follow-up missingness diagnostics."""

import numpy as np
import pandas as pd
import pytest

from conftest import make_cohort
from ptsd_cohort.analysis import missingness
from ptsd_cohort.analysis.missingness import (
    build_missingness_table,
    fit_selection_model,
    interpret_selection_model,
)
from ptsd_cohort.preprocessing.datasets import prepare_eligible


@pytest.fixture
def eligible() -> pd.DataFrame:
    df, _ = prepare_eligible(make_cohort(n_veterans=60, n_civilians=240, seed=4))
    return df


def test_rates_table(eligible) -> None:
    table = build_missingness_table(eligible, stratifiers=["group", "sex"])
    overall = table.iloc[0]
    assert overall["stratifier"] == "overall"
    assert overall["n_missing"] == eligible["followup_missing"].sum()
    assert overall["n_observed"] + overall["n_missing"] == len(eligible)
    by_group = table[table["stratifier"] == "group"]
    assert set(by_group["level"]) == {"veteran", "civilian"}
    assert by_group["n_total"].sum() == len(eligible)


def test_missing_indicator_raises(eligible) -> None:
    with pytest.raises(KeyError):
        build_missingness_table(eligible.drop(columns=["followup_missing"]))


def test_selection_model_detects_dependence() -> None:
    rng = np.random.default_rng(12)
    n = 400
    df = pd.DataFrame({
        "is_veteran": rng.integers(0, 2, n),
        "age": rng.normal(40, 10, n),
        "male": rng.integers(0, 2, n),
        "caps_pre": rng.normal(50, 10, n),
        "caps_post": rng.normal(35, 10, n),
    })
    logit = -0.5 + 0.12 * (df["caps_post"] - 35)
    df["followup_missing"] = (rng.random(n) < 1 / (1 + np.exp(-logit))).astype(int)

    model = fit_selection_model(df)
    assert set(model["term"]) == {"Intercept", "is_veteran", "age", "male", "caps_pre", "caps_post"}
    row = model.set_index("term").loc["caps_post"]
    assert row["p"] < 0.001
    assert row["odds_ratio"] > 1
    assert "not MCAR" in interpret_selection_model(model)


def test_selection_model_without_variation(eligible) -> None:
    df = eligible.assign(followup_missing=0)
    model = fit_selection_model(df)
    assert model.empty
    assert "no selection model" in interpret_selection_model(model)


def test_high_missing_rate_warns(eligible, tmp_path) -> None:
    df = eligible.copy()
    df.loc[df.index[: int(len(df) * 0.8)], "followup_missing"] = 1
    with pytest.warns(UserWarning, match="Follow-up missing"):
        results = missingness.run(df, output_dir=tmp_path, verbose=False)
    assert set(results) == {"rates", "completers", "selection_model", "interpretation"}
    assert (tmp_path / "missingness_rates.csv").exists()


def test_separated_selection_model_is_not_called_mcar() -> None:
    rng = np.random.default_rng(5)
    n = 300
    df = pd.DataFrame({
        "is_veteran": (np.arange(n) < 40).astype(int),
        "age": rng.normal(40, 10, n),
        "male": rng.integers(0, 2, n),
        "caps_pre": rng.normal(50, 10, n),
        "caps_post": rng.normal(35, 10, n),
    })
    # every veteran misses follow-up: quasi-complete separation on is_veteran
    df["followup_missing"] = np.where(df["is_veteran"] == 1, 1, (rng.random(n) < 0.3).astype(int))

    with pytest.warns(UserWarning, match="not identifiable"):
        model = fit_selection_model(df)
    assert not model["identified"].any()
    text = interpret_selection_model(model)
    assert "not identifiable" in text
    assert "consistent with MCAR" not in text


def test_converged_model_is_flagged_identified(eligible) -> None:
    model = fit_selection_model(eligible)
    assert model["converged"].all()
    assert model["identified"].all()
