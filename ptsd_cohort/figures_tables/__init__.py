"""
Figures and HTML report.

Modules:
    generate_figures.py  - PNG figures (distributions, paired means, reliable change,
                           BF sensitivity, love plot, propensity overlap)
    report.py            - HTML report with tables, narrative and figure references
"""

from . import generate_figures, report

__all__ = ["generate_figures", "report"]
