"""End-to-end tests: raw export -> matched cohort -> tables, figures, report."""

import pandas as pd
import pytest

from conftest import make_cohort, to_raw_export
from ptsd_cohort.analysis.bayesian_suite import BayesConfig
from ptsd_cohort.figures_tables import report
from ptsd_cohort.preprocessing import cli as preprocessing_cli
from ptsd_cohort.run_report import main, run_pipeline


@pytest.fixture
def raw_csv(tmp_path):
    path = tmp_path / "records.csv"
    to_raw_export(make_cohort(n_veterans=40, n_civilians=400, seed=21, n_ineligible=5)).to_csv(
        path, index=False, encoding="utf-8-sig"
    )
    return path


@pytest.fixture
def sensitivity_csv(tmp_path):
    path = tmp_path / "sensitivity.csv"
    pd.DataFrame({"r": [0.25, 0.5, 1.0], "BF10": [0.4, 0.3, 0.2]}).to_csv(path, index=False)
    return path


def test_run_pipeline_writes_all_outputs(raw_csv, sensitivity_csv, tmp_path) -> None:
    out = tmp_path / "outputs"
    results = run_pipeline(
        data_path=raw_csv,
        sensitivity_path=sensitivity_csv,
        output_dir=out,
        bayes_config=BayesConfig(run_posterior=False, sensitivity_scales=[0.25, 0.5, 1.0]),
        verbose=False,
    )

    assert results["match_summary"]["n_pairs"] == 40
    assert len(results["data"]) == 80
    assert {"rci", "change_class"} <= set(results["data"].columns)

    assert (out / "data" / "matched_cohort.csv").exists()
    assert (out / "data" / "matched_cohort.parquet").exists()
    assert (out / "stats" / "descriptives_balance.csv").exists()
    assert (out / "stats" / "paired_tests_post.csv").exists()
    assert (out / "stats" / "bayes_sensitivity_table.csv").exists()
    assert not (out / "stats" / "bayes_ancova_posterior_summary.csv").exists()

    for path in results["figures"].values():
        assert path.exists()
    assert "bf_sensitivity" in results["figures"]

    sensitivity = results["bayes"]["sensitivity"]["table"]
    assert sensitivity["external_bf10"].notna().all()

    page = results["report_path"].read_text(encoding="utf-8")
    assert "Cohort flow and matching" in page
    assert "Bayesian model comparison" in page
    assert "fig4_bf_sensitivity.png" in page
    assert "Trauma exposure (before matching)" in page


def test_saved_dataset_roundtrip(raw_csv, tmp_path) -> None:
    out = tmp_path / "outputs"
    results = run_pipeline(
        data_path=raw_csv,
        output_dir=out,
        sensitivity_path=tmp_path / "missing.csv",
        bayes_config=BayesConfig(run_posterior=False, sensitivity_scales=[0.5]),
        make_figures=False,
        verbose=False,
    )
    saved = pd.read_parquet(out / "data" / "matched_cohort.parquet")
    assert len(saved) == len(results["data"])
    assert saved["patient_id"].is_unique
    assert results["figures"] == {}


def test_missing_records_file_raises(tmp_path) -> None:
    with pytest.raises(FileNotFoundError):
        run_pipeline(data_path=tmp_path / "absent.csv", output_dir=tmp_path, verbose=False)


def test_preprocessing_cli_build(raw_csv, tmp_path) -> None:
    out = tmp_path / "outputs"
    preprocessing_cli.main(["--build", "--data", str(raw_csv), "--output-dir", str(out), "--quiet"])
    saved = pd.read_csv(out / "data" / "matched_cohort.csv")
    assert len(saved) == 80


def test_preprocessing_cli_info(raw_csv, capsys) -> None:
    preprocessing_cli.main(["--info", "--data", str(raw_csv), "--quiet"])
    printed = capsys.readouterr().out
    assert "Cohort flow" in printed
    assert "n_pairs" in printed


@pytest.mark.slow
def test_report_cli(raw_csv, tmp_path) -> None:
    out = tmp_path / "outputs"
    main(["--data", str(raw_csv), "--output-dir", str(out), "--skip-posterior", "--quiet",
          "--sensitivity", str(tmp_path / "none.csv")])
    assert (out / "report" / "analysis_report.html").exists()


def test_report_template_escapes_text_but_keeps_tables(tmp_path) -> None:
    sections = [{
        "title": "Flow & balance",
        "blocks": [
            report._table(pd.DataFrame({"x": [1.5]})),
            report._p("p < 0.001 for <b>all</b>"),
            report._figure(tmp_path / "figures" / "fig1.png", "Love plot", tmp_path / "report"),
            report._figure(None, "absent", tmp_path / "report"),
        ],
    }]
    page = report.render_html(sections, "Heading", generated="2024-01-01 00:00")

    assert "<h1>Heading</h1>" in page
    assert "<h2>Flow &amp; balance</h2>" in page
    assert "p &lt; 0.001 for &lt;b&gt;all&lt;/b&gt;" in page
    assert "<table" in page and "1.500" in page
    assert 'src="../figures/fig1.png"' in page
    assert "absent" not in page


def test_report_cli_lists_analyses(tmp_path, capsys) -> None:
    main(["--list-analyses", "--output-dir", str(tmp_path / "outputs")])
    printed = capsys.readouterr().out
    assert "Available Bayesian analyses" in printed
    for name in ("rm_anova", "rm_anova_bic", "ancova", "sensitivity", "ancova_posterior"):
        assert name in printed
    assert not (tmp_path / "outputs").exists()
