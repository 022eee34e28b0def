"""
Preprocessing CLI for building the matched cohort dataset.

Usage:
    python -m ptsd_cohort.preprocessing --build
    python -m ptsd_cohort.preprocessing --build --data data/raw/records.csv --seed 7
    python -m ptsd_cohort.preprocessing --info
"""

import argparse
import sys
from pathlib import Path

from .constants import MATCH_SEED, RAW_RECORDS_FILE, VALID_DISTANCES, get_output_dir
from .datasets import load_matched_dataset, save_processed_dataset
from .matching import MatchingConfig


if sys.platform.startswith("win") and hasattr(sys.stdout, "reconfigure"):
    sys.stdout.reconfigure(encoding="utf-8")


def _print_info(dataset) -> None:
    print("\nCohort flow")
    print("-" * 60)
    for _, row in dataset.flow.iterrows():
        print(f"  {row['step']:<45} {row['n_remaining']:>7} (-{row['n_removed']})")
    print("\nMatching")
    print("-" * 60)
    for key, value in dataset.match_result.summary().items():
        print(f"  {key:<20} {value}")


def main(argv=None):
    parser = argparse.ArgumentParser(
        description="Build the matched veteran / civilian cohort",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    python -m ptsd_cohort.preprocessing --build
    python -m ptsd_cohort.preprocessing --build --distance mahalanobis
    python -m ptsd_cohort.preprocessing --info
        """,
    )
    parser.add_argument("--build", action="store_true", help="Build and save the matched dataset")
    parser.add_argument("--info", action="store_true", help="Show cohort flow and matching summary")
    parser.add_argument("--data", type=Path, default=RAW_RECORDS_FILE, help="Patient records file (CSV/Parquet)")
    parser.add_argument("--output-dir", type=Path, default=None, help="Root output directory")
    parser.add_argument("--seed", type=int, default=MATCH_SEED, help="Tie-breaking seed")
    parser.add_argument("--distance", choices=sorted(VALID_DISTANCES), default="propensity")
    parser.add_argument("--caliper", type=float, default=None, help="Matching caliper")
    parser.add_argument("--no-save", action="store_true", help="Build without writing files")
    parser.add_argument("--quiet", action="store_true", help="Suppress verbose output")

    args = parser.parse_args(argv)

    if not (args.build or args.info):
        parser.print_help()
        return

    verbose = not args.quiet
    config = MatchingConfig(distance=args.distance, caliper=args.caliper, seed=args.seed)
    dataset = load_matched_dataset(args.data, matching=config, verbose=verbose and args.build)

    if args.build and not args.no_save:
        save_processed_dataset(dataset.matched, get_output_dir("data", args.output_dir), verbose=verbose)

    if args.info:
        _print_info(dataset)


if __name__ == "__main__":
    main()
