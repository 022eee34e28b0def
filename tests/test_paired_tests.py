"""Tests for paired pre/post tests."""

import numpy as np
import pandas as pd
import pytest

from ptsd_cohort.analysis import paired_tests
from ptsd_cohort.analysis.paired_tests import compare_change_between_groups, paired_test, run_paired_tests


def test_strong_improvement_is_significant() -> None:
    rng = np.random.default_rng(0)
    pre = pd.Series(rng.normal(50, 8, 40))
    post = pre - 15 + rng.normal(0, 5, 40)

    result = paired_test(pre, post)
    assert result["n"] == 40
    assert result["t"] < 0
    assert result["p_one_sided"] < 0.001
    assert result["wilcoxon_p"] < 0.001
    assert result["ci_upper"] < 0


def test_effect_sizes_hand_computed() -> None:
    pre = pd.Series([50.0, 40.0, 60.0, 45.0])
    post = pd.Series([40.0, 35.0, 48.0, 41.0])
    diff = post - pre   # -10, -5, -12, -4

    result = paired_test(pre, post)
    assert result["mean_diff"] == pytest.approx(diff.mean())
    assert result["d_z"] == pytest.approx(diff.mean() / diff.std(ddof=1))
    sd_av = (pre.std(ddof=1) + post.std(ddof=1)) / 2
    assert result["d_av"] == pytest.approx(diff.mean() / sd_av)
    assert result["df"] == 3


def test_constant_difference_warns_and_returns_nan() -> None:
    pre = pd.Series([50.0, 40.0, 60.0])
    post = pre - 5
    with pytest.warns(UserWarning, match="zero variance"):
        result = paired_test(pre, post, label="constant")
    assert np.isnan(result["t"])
    assert np.isnan(result["d_z"])
    assert result["mean_diff"] == pytest.approx(-5.0)


def test_single_pair_reports_too_few_pairs() -> None:
    pre = pd.Series([50.0, 40.0, np.nan])
    post = pd.Series([41.0, np.nan, 30.0])
    with pytest.warns(UserWarning, match="only 1 complete pair") as record:
        result = paired_test(pre, post, label="single")
    assert not any("zero variance" in str(w.message) for w in record)
    assert result["n"] == 1
    assert np.isnan(result["t"])


def test_between_groups_with_one_veteran_reports_too_few() -> None:
    df = pd.DataFrame({"group": ["veteran", "civilian", "civilian"], "caps_diff": [-10.0, -12.0, -8.0]})
    with pytest.warns(UserWarning, match="only 1 change score"):
        out = compare_change_between_groups(df)
    assert np.isnan(out["t"].iloc[0])


def test_incomplete_pairs_dropped() -> None:
    pre = pd.Series([50.0, 40.0, 60.0, 55.0, 47.0])
    post = pd.Series([41.0, np.nan, 52.0, 44.0, 45.0])
    assert paired_test(pre, post)["n"] == 4


def test_unknown_timepoint_raises(matched) -> None:
    with pytest.raises(ValueError):
        run_paired_tests(matched, timepoint="baseline")


def test_followup_uses_available_records(matched) -> None:
    table = run_paired_tests(matched, "followup").set_index("group")
    for group in ["veteran", "civilian"]:
        expected = matched.loc[(matched["group"] == group), "caps_followup"].notna().sum()
        assert table.loc[group, "n"] == expected


def test_between_groups_change(matched) -> None:
    out = compare_change_between_groups(matched)
    assert out.loc[0, "veteran_N"] == 43
    assert np.isfinite(out.loc[0, "t"])


def test_run_writes_tables(matched, tmp_path) -> None:
    results = paired_tests.run(matched, output_dir=tmp_path, verbose=False)
    assert set(results) == {"post", "followup", "between_groups"}
    assert len(results["post"]) == 2
    assert (results["post"]["p_one_sided"] < 0.05).all()
    assert (tmp_path / "paired_tests_post.csv").exists()
