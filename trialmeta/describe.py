"""
Descriptive Module
==================

Descriptions of trial datasets: counts, effect-size summaries,
missingness of the outcome-data fields and a per-comparison study table.

Key functions:
- describe_dataset: Row, study and schema counts
- summarize_effect_sizes: Distribution of the computed effect sizes
- missingness_report: Missing outcome data by field and by study
- create_study_table: One readable row per comparison
"""
from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence

import numpy as np
import pandas as pd
from scipy import stats

from .prepare import (
    NormalizedDataset,
    arm_column,
    as_dataset,
    get_n_rows,
    get_n_studies,
    get_rows_per_study,
)
from .registry import SCHEMA_FIELDS, DataFormat, get_arm_fields


# =============================================================================
# Dataset description
# =============================================================================

def describe_dataset(ds: NormalizedDataset, study_var: str = "study") -> Dict[str, Any]:
    """
    Count rows, studies and multi-comparison studies.

    :param ds: NormalizedDataset dictionary
    :param study_var: Column identifying studies
    :returns: Dict with format, n_rows, n_studies, rows_per_study,
        n_studies_multiple_rows and schema_counts (wide data with effect sizes)
    """
    ds = as_dataset(ds, "describe_dataset")
    per_study = get_rows_per_study(ds, study_var)
    out = {
        "format": ds["format"].value,
        "n_rows": get_n_rows(ds),
        "n_studies": get_n_studies(ds, study_var),
        "rows_per_study": per_study,
        "n_studies_multiple_rows": int((per_study > 1).sum()),
        "schema_counts": None,
    }
    if "es_schema" in ds["data"].columns:
        out["schema_counts"] = ds["data"]["es_schema"].fillna("none").value_counts()
    return out


def summarize_effect_sizes(
    ds: NormalizedDataset,
    by: Optional[str] = None,
) -> pd.DataFrame:
    """
    Descriptive statistics of the computed effect sizes.

    :param ds: Dataset annotated by calculate_effect_sizes
    :param by: Optional grouping column (e.g., "es_schema")
    :returns: DataFrame with n, n_missing, mean, std, min, median, max, skewness
    """
    ds = as_dataset(ds, "summarize_effect_sizes")
    df = ds["data"]
    if "es" not in df.columns:
        raise ValueError("Dataset has no effect sizes. Run calculate_effect_sizes() first.")

    if by is None:
        return pd.DataFrame([_es_stats(df["es"])])

    rows = []
    for value, group in df.groupby(by, sort=False, dropna=False):
        row = _es_stats(group["es"])
        rows.append({by: value, **row})
    return pd.DataFrame(rows)


def _es_stats(values: pd.Series) -> Dict[str, Any]:
    present = values.dropna()
    n = len(present)
    if n == 0:
        return {"n": 0, "n_missing": len(values)}
    return {
        "n": n,
        "n_missing": len(values) - n,
        "mean": present.mean(),
        "std": present.std(),
        "min": present.min(),
        "median": present.median(),
        "max": present.max(),
        "skewness": stats.skew(present) if n >= 3 else np.nan,
    }


# =============================================================================
# Missingness Reporting
# =============================================================================

def _outcome_columns(ds: NormalizedDataset) -> List[str]:
    """Outcome-data columns present in the dataset."""
    fields = [f for schema_fields in SCHEMA_FIELDS.values() for f in schema_fields]
    fields += ["precalc_se", "precalc_var"]
    columns = []
    for field in dict.fromkeys(fields):
        if ds["format"] == DataFormat.WIDE and field in get_arm_fields():
            candidates = [arm_column(ds["schema"], field, 1), arm_column(ds["schema"], field, 2)]
        else:
            candidates = [field]
        columns += [c for c in candidates if c in ds["data"].columns]
    return columns


def missingness_report(
    ds: NormalizedDataset,
    columns: Optional[Sequence[str]] = None,
    study_var: str = "study",
) -> Dict[str, Any]:
    """
    Generate missingness report.

    :param ds: NormalizedDataset dictionary
    :param columns: Columns to check (None = all outcome-data columns present)
    :param study_var: Column identifying studies
    :returns: Dictionary with by_column, by_study and summary
    """
    ds = as_dataset(ds, "missingness_report")
    df = ds["data"]
    columns = list(columns) if columns is not None else _outcome_columns(ds)
    columns = [c for c in columns if c in df.columns]

    by_column = pd.DataFrame({
        "column": columns,
        "n_missing": [int(df[c].isna().sum()) for c in columns],
        "n_total": [len(df) for _ in columns],
        "pct_missing": [100.0 * df[c].isna().sum() / len(df) if len(df) else 0.0 for c in columns],
    })

    if columns and study_var in df.columns:
        study_missing = df.groupby(study_var, sort=False)[columns].apply(
            lambda x: int(x.isna().sum().sum())
        ).rename("total_missing")
        by_study = pd.DataFrame({
            "study": study_missing.index,
            "total_missing": study_missing.values,
            "n_rows": get_rows_per_study(ds, study_var).values,
        })
    else:
        by_study = pd.DataFrame(columns=["study", "total_missing", "n_rows"])

    return {
        "by_column": by_column,
        "by_study": by_study,
        "summary": {
            "total_cells": len(df) * len(columns),
            "total_missing": int(by_column["n_missing"].sum()),
            "pct_missing": float(by_column["pct_missing"].mean()) if columns else 0.0,
            "columns_with_missing": int((by_column["n_missing"] > 0).sum()),
            "studies_with_missing": int((by_study["total_missing"] > 0).sum()),
        },
    }


def print_missingness_summary(ds: NormalizedDataset) -> None:
    """Print a human-readable missingness summary."""
    report = missingness_report(ds)
    summary = report["summary"]

    print("=" * 50)
    print("MISSINGNESS SUMMARY")
    print("=" * 50)
    print(f"Total cells: {summary['total_cells']}")
    print(f"Total missing: {summary['total_missing']} ({summary['pct_missing']:.1f}%)")
    print(f"Columns with missing: {summary['columns_with_missing']} / {len(report['by_column'])}")
    print(f"Studies with missing: {summary['studies_with_missing']} / {len(report['by_study'])}")

    by_column = report["by_column"]
    by_column = by_column[by_column["n_missing"] > 0].sort_values("pct_missing", ascending=False)
    if len(by_column) > 0:
        print("\nMost missing columns:")
        for _, row in by_column.head(5).iterrows():
            print(f"  {row['column']}: {row['n_missing']} ({row['pct_missing']:.1f}%)")


# =============================================================================
# Study table
# =============================================================================

def create_study_table(
    ds: NormalizedDataset,
    variables: Optional[Sequence[str]] = None,
    study_var: str = "study",
    round_digits: int = 2,
) -> pd.DataFrame:
    """
    One readable row per comparison, sorted by study.

    Columns: study, the two arms (cond_spec), sample sizes and the effect
    size with its confidence interval, followed by any extra variables.

    :param ds: Dataset annotated by calculate_effect_sizes
    :param variables: Extra columns to include (e.g., "country", "rob")
    :param study_var: Column identifying studies
    :param round_digits: Digits for effect sizes
    :returns: DataFrame
    """
    ds = as_dataset(ds, "create_study_table")
    if ds["format"] != DataFormat.WIDE:
        raise ValueError("create_study_table expects a wide dataset")
    df = ds["data"]
    if "es" not in df.columns:
        raise ValueError("Dataset has no effect sizes. Run calculate_effect_sizes() first.")
    variables = list(variables) if variables is not None else []
    missing = [v for v in variables if v not in df.columns]
    if missing:
        raise ValueError(f"Variables not found in data: {missing}")

    z = stats.norm.ppf(0.975)
    table = pd.DataFrame({"study": df[study_var].to_numpy()})
    for arm in (1, 2):
        column = arm_column(ds["schema"], "cond_spec", arm)
        if column in df.columns:
            table[f"arm{arm}"] = df[column].to_numpy()
    table["n_arm1"] = df["es_n_trt1"].to_numpy()
    table["n_arm2"] = df["es_n_trt2"].to_numpy()
    table["g"] = df["es"].round(round_digits).to_numpy()
    lower = (df["es"] - z * df["se_es"]).to_numpy()
    upper = (df["es"] + z * df["se_es"]).to_numpy()
    table["g_ci"] = [
        f"[{lo:.{round_digits}f}; {hi:.{round_digits}f}]" if np.isfinite(lo) and np.isfinite(hi) else "-"
        for lo, hi in zip(lower, upper)
    ]
    for var in variables:
        table[var] = df[var].to_numpy()

    return table.sort_values("study", kind="stable").reset_index(drop=True)
