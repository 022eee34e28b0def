"""Build the matched cohort and run the full treatment-outcome report.

Usage:
    python -m ptsd_cohort.run_report
    python -m ptsd_cohort.run_report --data data/raw/records.csv --output-dir outputs --seed 7
    python -m ptsd_cohort.run_report --distance mahalanobis --skip-posterior --quiet
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import Optional

from ptsd_cohort.analysis import (
    bayesian_suite,
    descriptive_statistics,
    missingness,
    paired_tests,
    reliable_change,
)
from ptsd_cohort.analysis.bayesian_suite import BayesConfig
from ptsd_cohort.analysis.reliable_change import ReliableChangeConfig
from ptsd_cohort.figures_tables import generate_figures, report
from ptsd_cohort.preprocessing import (
    CohortCriteria,
    MatchingConfig,
    build_matched_dataset,
    load_raw_records,
    load_sensitivity_table,
    save_processed_dataset,
)
from ptsd_cohort.preprocessing.constants import (
    MATCH_SEED,
    RAW_RECORDS_FILE,
    SENSITIVITY_TABLE_FILE,
    VALID_DISTANCES,
    get_output_dir,
)


def run_pipeline(
    data_path: Optional[Path] = None,
    sensitivity_path: Optional[Path] = None,
    output_dir: Optional[Path] = None,
    criteria: Optional[CohortCriteria] = None,
    matching: Optional[MatchingConfig] = None,
    rci_config: Optional[ReliableChangeConfig] = None,
    bayes_config: Optional[BayesConfig] = None,
    make_figures: bool = True,
    verbose: bool = True,
) -> dict:
    """
    Run every step once: load, match, classify, analyse, plot, report.

    Any failure propagates; there is no partial report.
    """
    records = load_raw_records(data_path, verbose=verbose)
    dataset = build_matched_dataset(records, criteria, matching, verbose=verbose)

    stats_dir = get_output_dir("stats", output_dir)

    rci = reliable_change.run(dataset.matched, rci_config, output_dir=stats_dir, verbose=verbose)
    data = rci["data"]
    dataset_paths = save_processed_dataset(data, get_output_dir("data", output_dir), verbose=verbose)

    descriptives = descriptive_statistics.run(dataset.eligible, data, output_dir=stats_dir, verbose=verbose)
    missing = missingness.run(data, output_dir=stats_dir, verbose=verbose)
    paired = paired_tests.run(data, output_dir=stats_dir, verbose=verbose)

    if bayes_config is None:
        bayes_config = BayesConfig()
    if bayes_config.sensitivity_table is None:
        bayes_config.sensitivity_table = load_sensitivity_table(sensitivity_path, verbose=verbose)
    bayes = bayesian_suite.run(data, bayes_config, output_dir=stats_dir, verbose=verbose)

    results = {
        "dataset": dataset,
        "data": data,
        "dataset_paths": dataset_paths,
        "flow": dataset.flow,
        "match_summary": dataset.match_result.summary(),
        "descriptives": descriptives,
        "missingness": missing,
        "paired": paired,
        "reliable_change": rci,
        "bayes": bayes,
    }

    figures = {}
    if make_figures:
        sensitivity = bayes.get("sensitivity", {}).get("table")
        figures = generate_figures.run(
            data=data,
            eligible=dataset.eligible,
            propensity=dataset.match_result.propensity,
            balance=descriptives["balance"],
            critical_change=rci["parameters"].critical_change,
            sensitivity=sensitivity,
            reference_scale=bayes_config.ancova_scale,
            figures_dir=get_output_dir("figures", output_dir),
            verbose=verbose,
        )
    results["figures"] = figures
    results["report_path"] = report.write_report(results, figures, get_output_dir("report", output_dir), verbose=verbose)

    if verbose:
        print("\n" + "=" * 70)
        print("REPORT COMPLETE")
        print(f"Report: {results['report_path']}")
        print("=" * 70)

    return results


def main(argv=None) -> None:
    if sys.platform.startswith("win") and hasattr(sys.stdout, "reconfigure"):
        sys.stdout.reconfigure(encoding="utf-8")

    parser = argparse.ArgumentParser(description="Matched veteran / civilian PTSD treatment-outcome report.")
    parser.add_argument("--data", type=Path, default=RAW_RECORDS_FILE, help="Patient records file (CSV/Parquet).")
    parser.add_argument("--sensitivity", type=Path, default=SENSITIVITY_TABLE_FILE,
                        help="Precomputed prior-scale / BF table (CSV).")
    parser.add_argument("--output-dir", type=Path, default=None, help="Root output directory (default: outputs/).")
    parser.add_argument("--seed", type=int, default=MATCH_SEED, help="Seed for matching tie-breaks and sampling.")
    parser.add_argument("--distance", choices=sorted(VALID_DISTANCES), default="propensity",
                        help="Matching distance.")
    parser.add_argument("--caliper", type=float, default=None, help="Matching caliper.")
    parser.add_argument("--skip-posterior", action="store_true", help="Skip PyMC posterior sampling.")
    parser.add_argument("--quiet", action="store_true", help="Suppress console output.")
    parser.add_argument("--list-analyses", action="store_true", help="List the Bayesian analyses and exit.")
    args = parser.parse_args(argv)

    if args.list_analyses:
        bayesian_suite.list_analyses()
        return

    run_pipeline(
        data_path=args.data,
        sensitivity_path=args.sensitivity,
        output_dir=args.output_dir,
        matching=MatchingConfig(distance=args.distance, caliper=args.caliper, seed=args.seed),
        bayes_config=BayesConfig(seed=args.seed, run_posterior=not args.skip_posterior),
        verbose=not args.quiet,
    )


if __name__ == "__main__":
    main()
