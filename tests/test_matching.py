"""Tests for greedy 1:1 matching."""

import numpy as np
import pandas as pd
import pytest

from conftest import make_cohort
from ptsd_cohort.analysis.descriptive_statistics import compute_balance_table
from ptsd_cohort.preprocessing import MatchingConfig, build_matched_dataset, match_cohort, validate_pairs
from ptsd_cohort.preprocessing.datasets import prepare_eligible
from ptsd_cohort.preprocessing.features import select_matching_frame
from ptsd_cohort.preprocessing.matching import _inverse_covariance, mahalanobis_distance_matrix


def _lean(records: pd.DataFrame) -> pd.DataFrame:
    eligible, _ = prepare_eligible(records)
    return select_matching_frame(eligible)


class TestMatchCohort:
    def test_one_partner_each_no_reuse(self, small_cohort) -> None:
        result = match_cohort(_lean(small_cohort), MatchingConfig(seed=3))

        assert result.n_pairs == 40
        assert result.pairs["focal_id"].is_unique
        assert result.pairs["pool_id"].is_unique
        assert result.matched["patient_id"].is_unique
        sizes = result.matched.groupby("pair_id")["is_veteran"].agg(["size", "sum"])
        assert (sizes["size"] == 2).all()
        assert (sizes["sum"] == 1).all()

    def test_same_seed_reproduces_pairs(self, small_cohort) -> None:
        lean = _lean(small_cohort)
        first = match_cohort(lean, MatchingConfig(seed=11))
        second = match_cohort(lean, MatchingConfig(seed=11))
        pd.testing.assert_frame_equal(first.pairs, second.pairs)

    def test_balance_improves(self, small_cohort) -> None:
        eligible, _ = prepare_eligible(small_cohort)
        result = match_cohort(select_matching_frame(eligible))
        balance = compute_balance_table(eligible, result.matched)
        assert balance["reduced"].all()

    def test_mahalanobis_distance(self, small_cohort) -> None:
        result = match_cohort(_lean(small_cohort), MatchingConfig(distance="mahalanobis", seed=5))
        assert result.n_pairs == 40
        assert (result.pairs["distance"] >= 0).all()

    def test_exact_matching_on_sex(self, small_cohort) -> None:
        result = match_cohort(_lean(small_cohort), MatchingConfig(exact=["male"]))
        per_pair = result.matched.groupby("pair_id")["male"].nunique()
        assert (per_pair == 1).all()

    def test_tight_caliper_leaves_focal_unmatched(self, small_cohort) -> None:
        with pytest.warns(UserWarning, match="shortfall"):
            result = match_cohort(_lean(small_cohort), MatchingConfig(caliper=1e-6))
        assert result.n_unmatched > 0
        assert result.n_pairs + result.n_unmatched == 40
        assert set(result.unmatched["reason"]) == {"no candidate within constraints"}

    def test_pool_smaller_than_focal(self) -> None:
        records = make_cohort(n_veterans=30, n_civilians=20, seed=9)
        with pytest.warns(UserWarning):
            result = match_cohort(_lean(records))
        assert result.n_pairs == 20
        assert (result.unmatched["reason"] == "pool exhausted").all()

    def test_missing_covariate_column_raises(self, small_cohort) -> None:
        with pytest.raises(KeyError):
            match_cohort(_lean(small_cohort).drop(columns=["age"]))

    def test_invalid_config(self) -> None:
        with pytest.raises(ValueError):
            MatchingConfig(distance="euclidean")
        with pytest.raises(ValueError):
            MatchingConfig(caliper=0)

    def test_propensity_mode_matches_highest_score_first(self, small_cohort) -> None:
        result = match_cohort(_lean(small_cohort), MatchingConfig(distance="propensity", seed=5))
        scores = result.pairs.sort_values("match_order")["focal_propensity"].to_numpy()
        assert len(scores) == 40
        assert (np.diff(scores) <= 0).all()

    def test_mahalanobis_mode_matches_furthest_from_pool_centroid_first(self, small_cohort) -> None:
        lean = _lean(small_cohort)
        config = MatchingConfig(distance="mahalanobis", seed=5)
        result = match_cohort(lean, config)

        VI = _inverse_covariance(lean[config.covariates].to_numpy(dtype=float))
        focal = lean[lean["is_veteran"] == 1]
        pool = lean[lean["is_veteran"] == 0]
        centroid = pool[config.covariates].to_numpy(dtype=float).mean(axis=0, keepdims=True)
        to_centroid = pd.Series(
            mahalanobis_distance_matrix(focal[config.covariates].to_numpy(dtype=float), centroid, VI)[:, 0],
            index=focal["patient_id"],
        )
        ordered = to_centroid.loc[result.pairs.sort_values("match_order")["focal_id"]].to_numpy()
        assert (np.diff(ordered) <= 1e-12).all()

    def test_tied_focal_records_are_consecutive_and_seeded(self, small_cohort) -> None:
        lean = _lean(small_cohort)
        original = lean[lean["is_veteran"] == 1].iloc[[0]]
        lean = pd.concat([lean, original.assign(patient_id="twin")], ignore_index=True)
        ids = [original["patient_id"].iloc[0], "twin"]

        first = match_cohort(lean, MatchingConfig(seed=8)).pairs.set_index("focal_id").loc[ids, "match_order"]
        second = match_cohort(lean, MatchingConfig(seed=8)).pairs.set_index("focal_id").loc[ids, "match_order"]
        assert abs(int(first.iloc[0]) - int(first.iloc[1])) == 1
        assert first.tolist() == second.tolist()


class TestValidatePairs:
    def test_reused_record_raises(self) -> None:
        matched = pd.DataFrame({
            "pair_id": [1, 1, 2, 2],
            "patient_id": ["a", "b", "c", "b"],
            "is_veteran": [1, 0, 1, 0],
        })
        with pytest.raises(ValueError, match="reused"):
            validate_pairs(matched)

    def test_pair_with_two_focal_raises(self) -> None:
        matched = pd.DataFrame({
            "pair_id": [1, 1],
            "patient_id": ["a", "b"],
            "is_veteran": [1, 1],
        })
        with pytest.raises(ValueError):
            validate_pairs(matched)


class TestMatchedDataset:
    def test_full_cohort_yields_43_pairs(self, matched_dataset) -> None:
        matched = matched_dataset.matched
        assert matched_dataset.match_result.n_pairs == 43
        assert len(matched) == 86
        assert matched["patient_id"].is_unique
        assert (matched["group"] == "veteran").sum() == 43

    def test_auxiliary_fields_attached(self, matched_dataset) -> None:
        matched = matched_dataset.matched
        for col in ["caps_pre", "caps_post", "caps_followup", "caps_diff", "followup_missing", "trauma_count"]:
            assert col in matched.columns
        assert (matched["caps_diff"] == matched["caps_post"] - matched["caps_pre"]).all()

    def test_flow_ends_with_matched_count(self, matched_dataset) -> None:
        assert matched_dataset.flow.iloc[-1]["n_remaining"] == 86

    def test_propensity_indexed_by_patient(self, matched_dataset) -> None:
        propensity = matched_dataset.match_result.propensity
        assert propensity.index.name == "patient_id"
        assert len(propensity) == len(matched_dataset.eligible)
        assert propensity.between(0, 1).all()
