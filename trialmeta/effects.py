"""
Effect Size Module
==================

Computes standardized mean differences (Hedges' g) for each comparison
row of a wide dataset. Every row uses the first outcome-data schema, in
precedence order, whose fields are all present:

- PRECOMPUTED: an effect size supplied with its SE or variance
- POST_MEANS: post-test means, SDs and Ns of both arms
- CHANGE: change-score means, SDs and Ns of both arms
- BINARY: responder counts and randomized Ns of both arms

Positive g means the first arm (suffix "_trt1") scored higher or had
more responders.

Note: g is always small-sample corrected with J = 1 - 3 / (4 * df - 1),
df = n1 + n2 - 2. Dichotomous outcomes are converted from the log odds
ratio with the logit method (d = lnOR * sqrt(3) / pi).
"""
from __future__ import annotations

from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from .prepare import (
    Diagnostic,
    NormalizedDataset,
    arm_column,
    as_dataset,
    create_diagnostic,
    replace_data,
)
from .registry import (
    DEFAULT_PRECEDENCE,
    SCHEMA_FIELDS,
    DataFormat,
    EffectSizeSchema,
)


ES_COLUMNS = ("es", "se_es", "es_schema", "es_n_trt1", "es_n_trt2", "log_or", "se_log_or", "es_id")


# =============================================================================
# Formulas
# =============================================================================

def hedges_correction(df) -> np.ndarray:
    """
    Small-sample correction factor J = 1 - 3 / (4 * df - 1).

    :param df: Degrees of freedom (n1 + n2 - 2); scalar or array
    :returns: J (NaN where df <= 0)
    """
    df = np.asarray(df, dtype=float)
    with np.errstate(divide="ignore", invalid="ignore"):
        j = 1.0 - 3.0 / (4.0 * df - 1.0)
    return np.where(df > 0, j, np.nan)


def pooled_sd(sd1, n1, sd2, n2) -> np.ndarray:
    """Pooled standard deviation of two groups."""
    sd1, n1, sd2, n2 = (np.asarray(x, dtype=float) for x in (sd1, n1, sd2, n2))
    with np.errstate(divide="ignore", invalid="ignore"):
        return np.sqrt(((n1 - 1) * sd1 ** 2 + (n2 - 1) * sd2 ** 2) / (n1 + n2 - 2))


def smd_from_means(m1, sd1, n1, m2, sd2, n2) -> Tuple[np.ndarray, np.ndarray]:
    """
    Hedges' g and its standard error from group means.

    d = (m1 - m2) / s_pooled
    var_d = (n1 + n2) / (n1 * n2) + d^2 / (2 * (n1 + n2))
    g = d * J, se_g = J * sqrt(var_d)

    Invalid inputs (SD <= 0, N <= 0, df <= 0) yield NaN.

    :returns: (g, se_g) arrays
    """
    m1, sd1, n1, m2, sd2, n2 = (np.asarray(x, dtype=float) for x in (m1, sd1, n1, m2, sd2, n2))
    valid = (sd1 > 0) & (sd2 > 0) & (n1 > 0) & (n2 > 0) & (n1 + n2 - 2 > 0)

    with np.errstate(divide="ignore", invalid="ignore"):
        d = (m1 - m2) / pooled_sd(sd1, n1, sd2, n2)
        var_d = (n1 + n2) / (n1 * n2) + d ** 2 / (2 * (n1 + n2))
        j = hedges_correction(n1 + n2 - 2)
        g = d * j
        se = j * np.sqrt(var_d)

    return np.where(valid, g, np.nan), np.where(valid, se, np.nan)


def log_odds_ratio(e1, n1, e2, n2) -> Tuple[np.ndarray, np.ndarray]:
    """
    Log odds ratio of responding (first vs second group) and its SE.

    Rows with a zero cell get 0.5 added to all four cells. Invalid inputs
    (N <= 0, responders outside [0, N]) yield NaN.

    :returns: (log OR, SE) arrays
    """
    e1, n1, e2, n2 = (np.asarray(x, dtype=float) for x in (e1, n1, e2, n2))
    valid = (n1 > 0) & (n2 > 0) & (e1 >= 0) & (e2 >= 0) & (e1 <= n1) & (e2 <= n2)

    a, b, c, d = e1, n1 - e1, e2, n2 - e2
    zero = (a == 0) | (b == 0) | (c == 0) | (d == 0)
    correction = np.where(zero, 0.5, 0.0)
    a, b, c, d = a + correction, b + correction, c + correction, d + correction

    with np.errstate(divide="ignore", invalid="ignore"):
        lor = np.log((a * d) / (b * c))
        se = np.sqrt(1 / a + 1 / b + 1 / c + 1 / d)

    return np.where(valid, lor, np.nan), np.where(valid, se, np.nan)


def smd_from_binary(e1, n1, e2, n2) -> Tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
    """
    Hedges' g from responder counts via the logit conversion.

    d = lnOR * sqrt(3) / pi, var_d = var_lnOR * 3 / pi^2, then g = d * J.

    :returns: (g, se_g, log OR, SE of log OR) arrays
    """
    lor, se_lor = log_odds_ratio(e1, n1, e2, n2)
    n1 = np.asarray(n1, dtype=float)
    n2 = np.asarray(n2, dtype=float)

    d = lor * np.sqrt(3) / np.pi
    var_d = se_lor ** 2 * 3 / np.pi ** 2
    j = hedges_correction(n1 + n2 - 2)
    return d * j, j * np.sqrt(var_d), lor, se_lor


# =============================================================================
# Effect-Size Calculator
# =============================================================================

def _schema_available(df: pd.DataFrame, ds: NormalizedDataset, schema: EffectSizeSchema) -> pd.Series:
    """Rows whose fields for a schema are all present."""
    if schema == EffectSizeSchema.PRECOMPUTED:
        if "precalc_es" not in df.columns:
            return pd.Series(False, index=df.index)
        has_se = pd.Series(False, index=df.index)
        for column in ("precalc_se", "precalc_var"):
            if column in df.columns:
                has_se |= df[column].notna()
        return df["precalc_es"].notna() & has_se

    mask = pd.Series(True, index=df.index)
    for field in SCHEMA_FIELDS[schema]:
        for arm in (1, 2):
            column = arm_column(ds["schema"], field, arm)
            if column not in df.columns:
                return pd.Series(False, index=df.index)
            mask &= df[column].notna()
    return mask


def _arm_values(df: pd.DataFrame, ds: NormalizedDataset, field: str) -> Tuple[np.ndarray, np.ndarray]:
    return (
        pd.to_numeric(df[arm_column(ds["schema"], field, 1)], errors="coerce").to_numpy(dtype=float),
        pd.to_numeric(df[arm_column(ds["schema"], field, 2)], errors="coerce").to_numpy(dtype=float),
    )


def _compute_schema(
    rows: pd.DataFrame,
    ds: NormalizedDataset,
    schema: EffectSizeSchema,
) -> Dict[str, np.ndarray]:
    """Effect sizes for the rows assigned to one schema."""
    n = len(rows)
    out = {
        "log_or": np.full(n, np.nan),
        "se_log_or": np.full(n, np.nan),
        "es_n_trt1": np.full(n, np.nan),
        "es_n_trt2": np.full(n, np.nan),
    }

    if schema == EffectSizeSchema.PRECOMPUTED:
        es = pd.to_numeric(rows["precalc_es"], errors="coerce").to_numpy(dtype=float)
        se = np.full(n, np.nan)
        if "precalc_var" in rows.columns:
            var = pd.to_numeric(rows["precalc_var"], errors="coerce").to_numpy(dtype=float)
            se = np.sqrt(np.where(var > 0, var, np.nan))
        if "precalc_se" in rows.columns:
            given = pd.to_numeric(rows["precalc_se"], errors="coerce").to_numpy(dtype=float)
            se = np.where(np.isfinite(given), np.where(given > 0, given, np.nan), se)
        out["es"], out["se_es"] = es, se

    elif schema in (EffectSizeSchema.POST_MEANS, EffectSizeSchema.CHANGE):
        m_field, sd_field, n_field = SCHEMA_FIELDS[schema]
        m1, m2 = _arm_values(rows, ds, m_field)
        sd1, sd2 = _arm_values(rows, ds, sd_field)
        n1, n2 = _arm_values(rows, ds, n_field)
        out["es"], out["se_es"] = smd_from_means(m1, sd1, n1, m2, sd2, n2)
        out["es_n_trt1"], out["es_n_trt2"] = n1, n2

    elif schema == EffectSizeSchema.BINARY:
        e1, e2 = _arm_values(rows, ds, "improved_n")
        n1, n2 = _arm_values(rows, ds, "rand_n")
        g, se, lor, se_lor = smd_from_binary(e1, n1, e2, n2)
        out["es"], out["se_es"] = g, se
        out["log_or"], out["se_log_or"] = lor, se_lor
        out["es_n_trt1"], out["es_n_trt2"] = n1, n2

    else:
        raise ValueError(f"Unknown effect size schema {schema}")

    return out


def calculate_effect_sizes(
    ds: NormalizedDataset,
    precedence: Sequence[EffectSizeSchema] = DEFAULT_PRECEDENCE,
    lower_is_better: bool = False,
    change_sign: Optional[str] = None,
) -> NormalizedDataset:
    """
    Calculate Hedges' g for every comparison row.

    Appends the columns es, se_es, es_schema, es_n_trt1, es_n_trt2,
    log_or, se_log_or (dichotomous rows only) and es_id.

    :param ds: Wide NormalizedDataset (see expand_multiarm_trials)
    :param precedence: Schemas in order of preference
    :param lower_is_better: Flip the sign of mean-based effect sizes, so
        that lower scores in the first arm give positive g
    :param change_sign: Column whose truthy rows get their sign flipped
    :returns: New wide NormalizedDataset with the effect size columns
    :raises ValueError: If the dataset is not wide, or no row yields an effect size

    Example:
        >>> es = calculate_effect_sizes(wide, lower_is_better=True)
        >>> es["data"][["study", "es", "se_es", "es_schema"]]
    """
    ds = as_dataset(ds, "calculate_effect_sizes")
    if ds["format"] != DataFormat.WIDE:
        raise ValueError(
            "Effect sizes can only be calculated for wide data. "
            "Run expand_multiarm_trials() first."
        )
    if change_sign is not None and change_sign not in ds["data"].columns:
        raise ValueError(f"Column '{change_sign}' not found in data")

    df = ds["data"].copy()
    for column in ES_COLUMNS:
        if column in df.columns:
            df = df.drop(columns=column)

    n = len(df)
    results = {
        "es": np.full(n, np.nan),
        "se_es": np.full(n, np.nan),
        "es_n_trt1": np.full(n, np.nan),
        "es_n_trt2": np.full(n, np.nan),
        "log_or": np.full(n, np.nan),
        "se_log_or": np.full(n, np.nan),
    }
    schema_used = np.full(n, None, dtype=object)
    assigned = np.zeros(n, dtype=bool)
    diagnostics: List[Diagnostic] = []

    for schema in precedence:
        available = _schema_available(df, ds, schema).to_numpy() & ~assigned
        if not available.any():
            continue
        values = _compute_schema(df[available], ds, schema)
        if lower_is_better and schema in (EffectSizeSchema.POST_MEANS, EffectSizeSchema.CHANGE):
            values["es"] = -values["es"]
        for key, array in values.items():
            results[key][available] = array
        schema_used[available] = schema.name.lower()
        assigned |= available

        n_valid = int(np.isfinite(values["es"] + values["se_es"]).sum())
        diagnostics.append(create_diagnostic(
            "calculate_effect_sizes",
            f"{n_valid} of {int(available.sum())} row(s) computed from "
            f"{schema.name.lower()} data.",
        ))

    if change_sign is not None:
        flip = df[change_sign].fillna(False).astype(bool).to_numpy()
        results["es"] = np.where(flip, -results["es"], results["es"])
        results["log_or"] = np.where(flip, -results["log_or"], results["log_or"])

    valid = np.isfinite(results["es"]) & np.isfinite(results["se_es"])
    if not valid.any():
        raise ValueError(
            "No effect size could be calculated. Each row needs complete data "
            "for at least one schema (pre-computed, post-test means, change "
            "scores or dichotomous)."
        )

    label = df["study"].astype(str).to_numpy() if "study" in df.columns else np.arange(n).astype(str)
    if (~assigned).any():
        diagnostics.append(create_diagnostic(
            "calculate_effect_sizes",
            f"{int((~assigned).sum())} row(s) lack the data of every schema: "
            f"{', '.join(label[~assigned])}.",
            ok=False,
        ))
    invalid = assigned & ~valid
    if invalid.any():
        diagnostics.append(create_diagnostic(
            "calculate_effect_sizes",
            f"{int(invalid.sum())} row(s) have invalid outcome data "
            f"(e.g., SD <= 0 or more responders than randomized): "
            f"{', '.join(label[invalid])}.",
            ok=False,
        ))

    for key in ("es", "se_es"):
        results[key] = np.where(valid, results[key], np.nan)

    df["es"] = results["es"]
    df["se_es"] = results["se_es"]
    df["es_schema"] = pd.Series(schema_used, index=df.index, dtype=object)
    df["es_n_trt1"] = results["es_n_trt1"]
    df["es_n_trt2"] = results["es_n_trt2"]
    df["log_or"] = results["log_or"]
    df["se_log_or"] = results["se_log_or"]
    df["es_id"] = np.arange(1, n + 1)

    return replace_data(ds, df, diagnostics=diagnostics)
