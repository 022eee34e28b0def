"""
HTML analysis report.

Assembles the cohort flow, matching summary, result tables, narrative
sentences and figure references into a single self-contained HTML page,
rendered through a jinja2 template.
"""

from __future__ import annotations

import os
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

import numpy as np
import pandas as pd
from jinja2 import Template

from ptsd_cohort import __version__
from ptsd_cohort.analysis.utils import format_bf, format_pvalue, interpret_bf
from ptsd_cohort.preprocessing.constants import (
    FOCAL_GROUP,
    GROUP_ORDER,
    POOL_GROUP,
    REPORT_HTML_NAME,
    SMD_THRESHOLD,
    get_output_dir,
)

CSS = """
body { font-family: 'DejaVu Sans', Arial, sans-serif; max-width: 1100px; margin: 2em auto; color: #222; }
h1 { border-bottom: 2px solid #1f4e79; padding-bottom: 0.3em; }
h2 { color: #1f4e79; margin-top: 2em; }
table.dataframe { border-collapse: collapse; font-size: 0.85em; margin: 0.8em 0; }
table.dataframe th, table.dataframe td { border: 1px solid #ccc; padding: 3px 8px; text-align: right; }
table.dataframe th { background: #f0f4f8; }
p.narrative { background: #f7f7f7; border-left: 4px solid #1f4e79; padding: 0.6em 1em; }
figure img { max-width: 100%; }
figcaption { font-size: 0.85em; color: #555; }
"""


REPORT_TEMPLATE = Template("""<!DOCTYPE html>
<html lang="en">
<head>
<meta charset="utf-8">
<title>{{ title }}</title>
<style>{{ css|safe }}</style>
</head>
<body>
<h1>{{ heading }}</h1>
<p>Generated {{ generated }} (ptsd_cohort {{ version }}).</p>
{% for section in sections %}
<h2>{{ section.title }}</h2>
{% for block in section.blocks %}
{% if block.kind == "table" %}{{ block.html|safe }}
{% elif block.kind == "subheading" %}<h3>{{ block.text }}</h3>
{% elif block.kind == "text" %}<p class="narrative">{{ block.text }}</p>
{% elif block.kind == "figure" %}<figure><img src="{{ block.src }}" alt="{{ block.caption }}"><figcaption>{{ block.caption }}</figcaption></figure>
{% endif %}
{% endfor %}
{% endfor %}
</body>
</html>
""", autoescape=True)


def _table(df: pd.DataFrame, decimals: int = 3) -> dict:
    if df is None or df.empty:
        return {"kind": "table", "html": "<p><em>No data.</em></p>"}
    return {
        "kind": "table",
        "html": df.to_html(index=False, float_format=lambda v: f"{v:.{decimals}f}", na_rep="NA", border=0),
    }


def _p(text: str) -> dict:
    return {"kind": "text", "text": text}


def _h3(text: str) -> dict:
    return {"kind": "subheading", "text": text}


def _figure(path: Optional[Path], caption: str, report_dir: Path) -> Optional[dict]:
    if path is None:
        return None
    src = Path(os.path.relpath(path, report_dir)).as_posix()
    return {"kind": "figure", "src": src, "caption": caption}


def render_html(sections: List[dict], heading: str, generated: Optional[str] = None) -> str:
    """
    Render report sections into one HTML page.

    Each section is {"title": str, "blocks": [...]}; blocks come from
    _table / _p / _h3 / _figure (None blocks are skipped). Text is escaped,
    table HTML is inserted as-is.
    """
    if generated is None:
        generated = f"{datetime.now():%Y-%m-%d %H:%M}"
    sections = [
        {"title": s["title"], "blocks": [b for b in s["blocks"] if b is not None]}
        for s in sections
    ]
    return REPORT_TEMPLATE.render(
        title="PTSD treatment outcome report",
        css=CSS,
        heading=heading,
        generated=generated,
        version=__version__,
        sections=sections,
    )


# =============================================================================
# NARRATIVE
# =============================================================================

def narrate_matching(summary: dict, balance: pd.DataFrame) -> str:
    text = (f"{summary['n_pairs']} of {summary['n_focal']} veterans were matched 1:1 to civilians "
            f"({summary['distance']} distance, seed {summary['seed']}); "
            f"{summary['n_pool_discarded']} civilians were not used.")
    if not balance.empty:
        worst = balance["abs_SMD_after"].max()
        status = "all below" if not balance["imbalanced_after"].any() else "not all below"
        text += (f" After matching the largest |SMD| was {worst:.2f}, "
                 f"{status} the {SMD_THRESHOLD} threshold.")
    return text


def narrate_paired(table: pd.DataFrame) -> str:
    parts = []
    for _, row in table.iterrows():
        if row["n"] == 0:
            continue
        parts.append(
            f"{row['group']}s changed by {row['mean_diff']:.1f} points "
            f"(t({int(row['df'])}) = {row['t']:.2f}, one-sided p {_p_text(row['p_one_sided'])}, "
            f"d_z = {row['d_z']:.2f})"
        )
    return "Pre to post, " + "; ".join(parts) + "." if parts else "No complete pre/post pairs."


def _p_text(p: float) -> str:
    formatted = format_pvalue(p)
    return formatted if formatted.startswith("<") else f"= {formatted}"


def narrate_reliable_change(classes: pd.DataFrame, test: dict) -> str:
    parts = []
    for group in GROUP_ORDER:
        row = classes[(classes["group"] == group) & (classes["change_class"] == "improved")]
        if len(row):
            parts.append(f"{row['percent'].iloc[0]:.1f}% of {group}s")
    text = "Reliable improvement was seen in " + " and ".join(parts) + "."
    if np.isfinite(test.get("chi2", np.nan)):
        text += (f" Change class distribution by group: chi2({int(test['df'])}) = {test['chi2']:.2f}, "
                 f"p {_p_text(test['p'])}.")
    return text


def narrate_bayes(bayes: Dict[str, Dict[str, pd.DataFrame]]) -> List[str]:
    sentences = []
    if "rm_anova" in bayes:
        inclusion = bayes["rm_anova"]["inclusion"].set_index("effect")
        models = bayes["rm_anova"]["models"]
        best = models.loc[models["posterior_prob"].idxmax()]
        bf_int = inclusion.loc["time:group", "bf_inclusion"]
        sentences.append(
            f"The most probable RM-ANOVA model was '{best['model']}' "
            f"(P = {best['posterior_prob']:.2f}). The time x group interaction had an inclusion "
            f"BF of {format_bf(bf_int)} ({interpret_bf(bf_int).lower()})."
        )
    if "ancova" in bayes:
        row = bayes["ancova"]["result"].iloc[0]
        sentences.append(
            f"Adjusting post scores for pre scores, the group BF10 was {format_bf(row['bf10'])} "
            f"(BF01 = {format_bf(row['bf01'])}; {row['interpretation'].lower()})."
        )
    if "sensitivity" in bayes:
        table = bayes["sensitivity"]["table"].dropna(subset=["ancova_bf10"])
        labels = table["ancova_bf10"].map(interpret_bf).unique()
        if len(labels) == 1:
            sentences.append(f"This conclusion held across all {len(table)} prior scales.")
        elif len(labels):
            sentences.append(f"The evidence category varied with the prior scale ({', '.join(labels)}).")
    return sentences


# =============================================================================
# REPORT
# =============================================================================

def build_report(results: dict, figures: Dict[str, Path], report_dir: Path) -> str:
    """Render the report HTML from pipeline results."""
    descriptives = results["descriptives"]
    missingness = results["missingness"]
    paired = results["paired"]
    rci = results["reliable_change"]
    bayes = results.get("bayes", {})

    match_summary = pd.DataFrame(
        [{"setting": k, "value": v} for k, v in results["match_summary"].items()]
    ).astype({"value": str})
    cohort = [
        _table(results["flow"], decimals=0),
        _table(match_summary),
        _p(narrate_matching(results["match_summary"], descriptives["balance"])),
        _table(descriptives["balance"]),
        _figure(figures.get("love_plot"), "Covariate balance before and after matching", report_dir),
        _figure(figures.get("propensity_overlap"), "Propensity score overlap", report_dir),
    ]

    descriptive = [
        _h3("Eligible sample (before matching)"),
        _table(descriptives["comparison_before"]),
        _table(descriptives.get("categorical_before"), decimals=1),
        _h3("Matched cohort"),
        _table(descriptives["comparison_after"]),
        _table(descriptives["categorical"], decimals=1),
        _h3("Trauma exposure (before matching)"),
        _table(descriptives.get("trauma_before")),
        _h3("Trauma exposure (matched cohort)"),
        _table(descriptives["trauma"]),
        _figure(figures.get("distributions"), "CAPS distributions by group", report_dir),
    ]

    missing = [
        _table(missingness["rates"]),
        _table(missingness["completers"]),
        _table(missingness["selection_model"]),
        _p(missingness["interpretation"]),
    ]

    change = [
        _table(paired["post"]),
        _p(narrate_paired(paired["post"])),
        _h3("Follow-up"),
        _table(paired["followup"]),
        _h3("Change scores between groups"),
        _table(paired["between_groups"]),
        _figure(figures.get("paired_means"), "Mean CAPS with 95% CI", report_dir),
    ]

    params = rci["parameters"]
    reliable = [
        _p(f"Reliability {params.reliability}, SD_pre {params.sd_pre:.2f}, S_diff {params.s_diff:.2f}; "
           f"a change of more than {params.critical_change:.1f} CAPS points is reliable."),
        _table(rci["classes"], decimals=1),
        _table(rci["remission"], decimals=1),
        _p(narrate_reliable_change(rci["classes"], rci["chi2"])),
        _figure(figures.get("reliable_change"), "Reliable change (pre vs post)", report_dir),
    ]

    bayesian = []
    for name, tables in bayes.items():
        if not tables:
            continue
        bayesian.append(_h3(name))
        bayesian.extend(_table(table) for table in tables.values())
    bayesian.extend(_p(sentence) for sentence in narrate_bayes(bayes))
    bayesian.append(_figure(figures.get("bf_sensitivity"), "Bayes factor prior sensitivity", report_dir))

    sections = [
        {"title": "1. Cohort flow and matching", "blocks": cohort},
        {"title": "2. Descriptive statistics", "blocks": descriptive},
        {"title": "3. Follow-up missingness", "blocks": missing},
        {"title": "4. Pre/post change (paired, one-sided)", "blocks": change},
        {"title": "5. Reliable change", "blocks": reliable},
        {"title": "6. Bayesian model comparison", "blocks": bayesian},
    ]
    heading = f"PTSD treatment outcomes: matched {FOCAL_GROUP} / {POOL_GROUP} cohort"
    return render_html(sections, heading)


def write_report(
    results: dict,
    figures: Dict[str, Path],
    report_dir: Optional[Path] = None,
    verbose: bool = True,
) -> Path:
    if report_dir is None:
        report_dir = get_output_dir("report")
    report_dir = Path(report_dir)
    report_dir.mkdir(parents=True, exist_ok=True)

    path = report_dir / REPORT_HTML_NAME
    path.write_text(build_report(results, figures, report_dir), encoding="utf-8")
    if verbose:
        print(f"  [OK] report: {path}")
    return path
