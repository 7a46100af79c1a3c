"""
Report Module
=============

Plain-text and HTML renderings of pipeline results. Nothing in the
pipeline calls these; they are for printing results in scripts and
notebooks.
"""
from __future__ import annotations

from typing import List, Optional, Sequence

import pandas as pd

from .analysis import MetaAnalysisResult, model_estimates
from .prepare import NormalizedDataset
from .registry import ModelFamily
from .subgroup import SubgroupResult


MODEL_TITLES = {
    "overall": "Overall",
    "combined": "Combined",
    "lowest": "One ES/study (lowest)",
    "highest": "One ES/study (highest)",
    "outliers": "Outliers removed",
    "influence": "Influence analysis",
    "rob": "Only: low risk of bias",
    "threelevel": "Three-level model",
}


def format_diagnostics(ds: NormalizedDataset) -> str:
    """
    Render the diagnostics of a dataset, one line each.

    Passed checks are prefixed "[OK]", failed checks "[!]".
    """
    lines = []
    for diag in ds["diagnostics"]:
        mark = "[OK]" if diag["ok"] else "[!]"
        lines.append(f"- {mark} {diag['message']}")
    return "\n".join(lines)


def print_diagnostics(ds: NormalizedDataset) -> None:
    """Print the diagnostics of a dataset."""
    print(format_diagnostics(ds))


def format_summary_table(
    summary: pd.DataFrame,
    columns: Optional[Sequence[str]] = None,
    titles: bool = True,
) -> str:
    """
    Render a summary table as fixed-width text.

    :param summary: Summary DataFrame of a meta-analysis or subgroup result
    :param columns: Columns to show (None = all)
    :param titles: Replace model names with readable titles
    """
    table = summary.copy()
    if titles and "model" in table.columns:
        table["model"] = table["model"].map(lambda m: MODEL_TITLES.get(m, m))
    if columns is not None:
        table = table[list(columns)]
    return table.to_string(index=False)


def summary_to_html(summary: pd.DataFrame, titles: bool = True) -> str:
    """Render a summary table as an HTML table."""
    table = summary.copy()
    if titles and "model" in table.columns:
        table["model"] = table["model"].map(lambda m: MODEL_TITLES.get(m, m))
    return table.to_html(index=False, na_rep="-", classes="trialmeta-summary")


def summarize_meta_analysis(result: MetaAnalysisResult) -> str:
    """
    Generate summary string for a meta-analysis result.

    :param result: MetaAnalysisResult dictionary
    :returns: Human-readable summary string
    """
    settings = result["settings"]
    model_type = "fixed-effect" if settings["fixed"] else f"random-effects ({settings['method_tau']})"
    lines: List[str] = [
        "Meta-Analysis Result",
        f"  Comparisons: {len(result['data'])}, "
        f"studies: {result['data'][settings['study_var']].nunique()}",
        f"  Pooling: {model_type}"
        + (", Knapp-Hartung" if settings["hakn"] else ""),
        f"  NNT control event rate: {settings['nnt_cer']}",
        "",
    ]
    for name, model in result["models"].items():
        est = model_estimates(model)
        line = (
            f"  {MODEL_TITLES.get(name, name)}: k = {est['k']}, g = {est['estimate']:.2f} "
            f"[{est['ci_lower']:.2f}; {est['ci_upper']:.2f}], p = {est['p']:.4f}"
        )
        if model["family"] == ModelFamily.MULTILEVEL:
            fit = model["fit"]
            line += (
                f", I2 = {fit['i2_total']:.1f}% "
                f"(between {fit['i2_between']:.1f}%, within {fit['i2_within']:.1f}%)"
            )
        else:
            line += f", I2 = {est['i2']:.1f}%"
        lines.append(line)
        if model["excluded"]:
            lines.append(f"    excluded: {', '.join(model['excluded'])}")
    if result["warnings"]:
        lines.append(f"  Warnings: {len(result['warnings'])}")
    return "\n".join(lines)


def summarize_subgroup_result(result: SubgroupResult) -> str:
    """
    Generate summary string for a subgroup analysis.

    :param result: SubgroupResult dictionary
    :returns: Human-readable summary string
    """
    lines = [f"Subgroup Analysis (model: {MODEL_TITLES.get(result['model'], result['model'])})"]
    summary = result["summary"]
    for _, test in result["tests"].iterrows():
        variable = test["variable"]
        lines.append(f"  {variable}: test for subgroup differences p = {test['p']:.4f}")
        for _, row in summary[summary["variable"] == variable].iterrows():
            lines.append(
                f"    {row['group']}: k = {row['n_comp']}, g = {row['g']} {row['g_ci']}, "
                f"NNT = {row['nnt']}"
            )
    return "\n".join(lines)
