"""
Treatment-Outcome Analysis Suite
================================

Statistical analyses of the matched veteran / civilian cohort.

Modules:
    descriptive_statistics.py   - Table-1 summaries, SMD, covariate balance
    missingness.py              - Follow-up missingness diagnostics
    paired_tests.py             - One-sided paired pre/post tests with effect sizes
    reliable_change.py          - Reliable change index classification
    bayesian_suite.py           - JZS RM-ANOVA / ANCOVA Bayes factors, PyMC ANCOVA

Usage:
    from ptsd_cohort.analysis import descriptive_statistics, paired_tests
    descriptive_statistics.run(eligible, matched)
"""

from . import (
    bayesian_suite,
    descriptive_statistics,
    missingness,
    paired_tests,
    reliable_change,
)
from .utils import (
    format_bf,
    format_pvalue,
    get_output_dir,
    interpret_bf,
    print_section_header,
    standardized_mean_difference,
)

__all__ = [
    'bayesian_suite',
    'descriptive_statistics',
    'missingness',
    'paired_tests',
    'reliable_change',
    'format_bf',
    'format_pvalue',
    'get_output_dir',
    'interpret_bf',
    'print_section_header',
    'standardized_mean_difference',
]
