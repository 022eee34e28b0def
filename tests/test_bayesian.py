"""Tests for the Bayesian model comparison suite."""

import numpy as np
import pandas as pd
import pytest
from scipy import integrate, stats

from ptsd_cohort.analysis import bayesian_suite
from ptsd_cohort.analysis.bayesian_suite import (
    BayesConfig,
    inclusion_bayes_factors,
    jzs_regression_log_bf,
    jzs_ttest_log_bf,
    merge_external_table,
    posterior_probabilities,
    prepare_long,
    prepare_wide,
    savage_dickey_bf01,
)


def _cauchy_prior_bf10(t: float, n: int, r: float) -> float:
    """BF10 by direct integration over the effect size delta ~ Cauchy(0, r)."""
    nu = n - 1

    def integrand(delta):
        return stats.nct.pdf(t, nu, delta * np.sqrt(n)) * stats.cauchy.pdf(delta, 0, r)

    # the likelihood is negligible beyond |delta| = 10 for these t and n
    marginal, _ = integrate.quad(integrand, -10.0, 10.0, points=[t / np.sqrt(n)], limit=200)
    return marginal / stats.t.pdf(t, nu)


class TestJZSIntegrals:
    @pytest.mark.parametrize("t,n,r", [(2.5, 20, 0.707), (0.8, 40, 0.5), (-3.1, 15, 1.0)])
    def test_ttest_matches_effect_size_integral(self, t, n, r) -> None:
        bf = np.exp(jzs_ttest_log_bf(t, n, r))
        assert bf == pytest.approx(_cauchy_prior_bf10(t, n, r), rel=1e-3)

    def test_regression_with_one_predictor_equals_ttest(self) -> None:
        t, n, r = 2.2, 30, 0.5
        nu = n - 1
        r2 = t ** 2 / (nu + t ** 2)
        via_t = jzs_ttest_log_bf(t, n, r)
        via_r2 = jzs_regression_log_bf(r2, n, p=1, n_nuisance=0, r=r)
        assert via_r2 == pytest.approx(via_t, rel=1e-4, abs=1e-6)

    def test_bf_increases_with_t(self) -> None:
        bfs = [jzs_ttest_log_bf(t, 30, 0.5) for t in (0.0, 1.0, 2.0, 3.0, 5.0)]
        assert all(a < b for a, b in zip(bfs, bfs[1:]))

    def test_null_effect_favours_h0(self) -> None:
        assert jzs_ttest_log_bf(0.0, 50, 0.707) < 0
        assert jzs_regression_log_bf(0.0, 50, p=1, n_nuisance=2, r=0.354) < 0

    def test_huge_effect_stays_finite(self) -> None:
        log_bf = jzs_ttest_log_bf(25.0, 86, 0.5)
        assert np.isfinite(log_bf)
        assert log_bf > 50

    def test_invalid_inputs(self) -> None:
        with pytest.raises(ValueError):
            jzs_regression_log_bf(1.2, 30)
        with pytest.raises(ValueError):
            jzs_regression_log_bf(0.1, 3, p=2, n_nuisance=2)
        with pytest.raises(ValueError):
            jzs_ttest_log_bf(1.0, 1)


class TestModelProbabilities:
    def test_probabilities_sum_to_one(self) -> None:
        probs = posterior_probabilities(pd.Series({"a": 0.0, "b": 800.0, "c": 799.0}))
        assert probs.sum() == pytest.approx(1.0)
        assert probs["b"] > probs["c"] > probs["a"]

    def test_inclusion_with_equal_evidence(self) -> None:
        probs = pd.Series(0.2, index=bayesian_suite.RM_MODELS)
        inclusion = inclusion_bayes_factors(probs).set_index("effect")
        np.testing.assert_allclose(inclusion["bf_inclusion"], 1.0)


class TestData:
    def test_prepare_wide_needs_both_groups(self, matched) -> None:
        with pytest.raises(ValueError):
            prepare_wide(matched[matched["group"] == "veteran"])

    def test_prepare_wide_missing_column(self, matched) -> None:
        with pytest.raises(KeyError):
            prepare_wide(matched.drop(columns=["caps_post"]))

    def test_prepare_long_two_rows_per_patient(self, matched) -> None:
        long = prepare_long(prepare_wide(matched))
        assert len(long) == 2 * len(matched)
        assert long.groupby("patient_id")["time"].agg(lambda s: sorted(s) == [0, 1]).all()


class TestAnalyses:
    def test_rm_anova_detects_time_effect(self, matched) -> None:
        out = bayesian_suite.analyze_rm_anova(matched, BayesConfig(), verbose=False)
        models = out["models"]
        assert list(models["model"]) == bayesian_suite.RM_MODELS
        assert models.loc[0, "bf10"] == pytest.approx(1.0)
        assert models["posterior_prob"].sum() == pytest.approx(1.0)
        inclusion = out["inclusion"].set_index("effect")
        assert inclusion.loc["time", "bf_inclusion"] > 100

    def test_rm_anova_bic_cross_check(self, matched) -> None:
        models = bayesian_suite.analyze_rm_anova_bic(matched, BayesConfig(), verbose=False)["models"]
        assert len(models) == 5
        assert models.loc[0, "log_bf10"] == pytest.approx(0.0)
        assert models.set_index("model").loc["time", "bf10"] > 100

    def test_ancova_result(self, matched) -> None:
        result = bayesian_suite.analyze_ancova(matched, BayesConfig(), verbose=False)["result"].iloc[0]
        assert result["n"] == 86
        assert result["bf01"] == pytest.approx(1.0 / result["bf10"])
        assert result["p_h1"] + result["p_h0"] == pytest.approx(1.0)
        assert 0 <= result["partial_r2"] < 1

    def test_sensitivity_merges_external_table(self, matched) -> None:
        external = pd.DataFrame({"prior_scale": [0.5, 2.0], "bf10": [0.3, 0.1]})
        config = BayesConfig(sensitivity_scales=[0.25, 0.5, 1.0], sensitivity_table=external)
        table = bayesian_suite.analyze_sensitivity(matched, config, verbose=False)["table"]

        assert table["prior_scale"].tolist() == [0.25, 0.5, 1.0, 2.0]
        row = table.set_index("prior_scale")
        assert row.loc[0.5, "external_bf10"] == pytest.approx(0.3)
        assert np.isnan(row.loc[2.0, "ancova_bf10"])
        assert np.isnan(row.loc[0.25, "external_bf10"])

    def test_merge_without_external(self) -> None:
        sweep = pd.DataFrame({"prior_scale": [0.5], "ancova_bf10": [1.0], "rm_interaction_bf_incl": [1.0]})
        out = merge_external_table(sweep, None)
        assert "external_bf10" in out.columns
        assert out["external_bf10"].isna().all()

    def test_posterior_skipped_when_disabled(self, matched) -> None:
        assert bayesian_suite.analyze_ancova_posterior(matched, BayesConfig(run_posterior=False), verbose=False) == {}

    def test_run_selected_analyses(self, matched, tmp_path) -> None:
        results = bayesian_suite.run(matched, BayesConfig(), analyses=["ancova", "rm_anova"],
                                     output_dir=tmp_path, verbose=False)
        assert set(results) == {"ancova", "rm_anova"}
        assert (tmp_path / "bayes_ancova_result.csv").exists()
        assert (tmp_path / "bayes_rm_anova_inclusion.csv").exists()

    def test_unknown_analysis(self, matched) -> None:
        with pytest.raises(ValueError):
            bayesian_suite.run(matched, analyses=["bogus"], verbose=False)

    def test_registry_contents(self) -> None:
        assert set(bayesian_suite.ANALYSES) == {
            "rm_anova", "rm_anova_bic", "ancova", "sensitivity", "ancova_posterior"
        }


class TestConfig:
    def test_negative_scale_rejected(self) -> None:
        with pytest.raises(ValueError):
            BayesConfig(ancova_scale=-1.0)

    def test_invalid_sampler_settings(self) -> None:
        with pytest.raises(ValueError):
            BayesConfig(chains=0)


class TestSavageDickey:
    def test_posterior_far_from_zero(self) -> None:
        samples = np.random.default_rng(0).normal(10.0, 1.0, 4000)
        assert savage_dickey_bf01(samples, prior_sd=5.0) < 0.01

    def test_posterior_centred_on_zero(self) -> None:
        samples = np.random.default_rng(1).normal(0.0, 0.5, 4000)
        # posterior much narrower than the prior at zero -> evidence for H0
        assert savage_dickey_bf01(samples, prior_sd=10.0) > 5

    def test_too_few_samples(self) -> None:
        with pytest.raises(ValueError):
            savage_dickey_bf01(np.array([0.1, 0.2]), prior_sd=1.0)

    @pytest.mark.slow
    def test_posterior_ancova_per_prior(self, matched) -> None:
        config = BayesConfig(posterior_prior_sds=(5.0, 20.0), draws=300, tune=300, chains=1)
        out = bayesian_suite.analyze_ancova_posterior(matched, config, verbose=False)
        bfs = out["bayes_factors"]
        assert bfs["prior_sd"].tolist() == [5.0, 20.0]
        assert np.isfinite(bfs["bf01"]).all()
        assert set(out["summary"]["term"]) == {"alpha", "b_pre", "b_group", "sigma"}
