"""
Meta-Analysis Runner
====================

Runs a set of pooling models on an effect-size annotated dataset and
collects them into one summary table.

Models (ModelKind):
- overall: all comparisons, treated as independent
- combined: effects aggregated within studies, then pooled
- lowest / highest: only the lowest or highest effect per study
- outliers: comparisons whose CI does not overlap the pooled CI removed
- influence: influential comparisons (leave-one-out diagnostics) removed
- rob: only the comparisons passing a risk-of-bias filter
- threelevel: comparisons nested in studies (three-level model)

Architecture Note:
    Each model is a PoolingModel TypedDict tagged with its ModelKind and
    ModelFamily. Univariate fits are PooledEstimate dicts, multilevel fits
    are ThreeLevelResult dicts; model_estimates() is the single place that
    reads a fit of either family.
"""
from __future__ import annotations

from typing import Any, Callable, Dict, List, Optional, Sequence, TypedDict, Union
import warnings

import numpy as np
import pandas as pd

from .multilevel import ThreeLevelResult, fit_three_level
from .nnt import metapsy_nnt
from .pooling import (
    PooledEstimate,
    aggregate_effects,
    find_outliers,
    influence_diagnostics,
    pool_effects,
)
from .prepare import NormalizedDataset, as_dataset, condition_mask
from .registry import ModelFamily, ModelKind, parse_model_kind


DEFAULT_WHICH_RUN = ("overall", "combined", "lowest", "highest", "outliers", "influence", "threelevel")

SUMMARY_COLUMNS = [
    "model", "k", "n_studies", "g", "g_lower", "g_upper", "g_ci", "p",
    "i2", "i2_ci", "prediction_ci", "nnt", "excluded",
]


# =============================================================================
# PoolingModel and MetaAnalysisResult TypedDicts
# =============================================================================

class PoolingModel(TypedDict):
    """
    One fitted pooling model.

    Keys:
        kind: Which model this is
        family: UNIVARIATE (fit is a PooledEstimate) or MULTILEVEL
            (fit is a ThreeLevelResult)
        fit: Fitted model
        data: Rows entering the model (aggregated rows for "combined")
        excluded: Labels of the comparisons left out
    """
    kind: ModelKind
    family: ModelFamily
    fit: Union[PooledEstimate, ThreeLevelResult]
    data: pd.DataFrame
    excluded: List[str]


class MetaAnalysisResult(TypedDict):
    """
    Result of run_meta_analysis.

    Keys:
        data: Comparisons used (rows with missing effect sizes removed)
        summary: One row per model (see SUMMARY_COLUMNS)
        models: PoolingModel per model name, in which_run order
        which_run: Model names in run order; the first is the default for
            subgroup analyses
        influence: Leave-one-out diagnostics (None unless "influence" ran)
        outliers: Comparisons flagged as outliers (None unless "outliers" ran)
        variance_components: Three-level variance components (None unless
            "threelevel" ran)
        settings: Arguments used (method_tau, hakn, fixed, nnt_cer, ...)
        warnings: Warnings generated while running the models
    """
    data: pd.DataFrame
    summary: pd.DataFrame
    models: Dict[str, PoolingModel]
    which_run: List[str]
    influence: Optional[pd.DataFrame]
    outliers: Optional[pd.DataFrame]
    variance_components: Optional[pd.DataFrame]
    settings: Dict[str, Any]
    warnings: List[str]


def create_pooling_model(
    kind: ModelKind,
    fit: Union[PooledEstimate, ThreeLevelResult],
    data: pd.DataFrame,
    excluded: Optional[List[str]] = None,
) -> PoolingModel:
    """Create a PoolingModel dictionary; the family follows from the kind."""
    family = ModelFamily.MULTILEVEL if kind == ModelKind.THREELEVEL else ModelFamily.UNIVARIATE
    return {
        "kind": kind,
        "family": family,
        "fit": fit,
        "data": data,
        "excluded": excluded if excluded is not None else [],
    }


def is_meta_analysis_result(obj: Any) -> bool:
    """Check whether obj was returned by run_meta_analysis."""
    return isinstance(obj, dict) and {"models", "summary", "which_run", "settings"} <= set(obj)


def get_model(result: MetaAnalysisResult, which: Union[str, ModelKind]) -> PoolingModel:
    """
    Get one fitted model from a MetaAnalysisResult.

    :raises ValueError: If the model was not run
    """
    kind = parse_model_kind(which)
    if kind.value not in result["models"]:
        raise ValueError(
            f"Model '{kind.value}' was not run. Available: {list(result['models'])}"
        )
    return result["models"][kind.value]


# =============================================================================
# Reading fits
# =============================================================================

def model_estimates(model: PoolingModel) -> Dict[str, Any]:
    """
    Extract the reported quantities of a fitted model.

    :param model: PoolingModel dictionary
    :returns: Dict with k, n_studies, estimate, ci_lower, ci_upper, p, i2,
        i2_lower, i2_upper, pi_lower, pi_upper
    """
    fit = model["fit"]
    if model["family"] == ModelFamily.UNIVARIATE:
        return {
            "k": fit["k"],
            "estimate": fit["estimate"],
            "ci_lower": fit["ci_lower"],
            "ci_upper": fit["ci_upper"],
            "p": fit["p"],
            "i2": fit["i2"],
            "i2_lower": fit["i2_lower"],
            "i2_upper": fit["i2_upper"],
            "pi_lower": fit["pi_lower"],
            "pi_upper": fit["pi_upper"],
        }
    if model["family"] == ModelFamily.MULTILEVEL:
        coef = fit["coefficients"].iloc[0]
        return {
            "k": fit["k"],
            "estimate": float(coef["estimate"]),
            "ci_lower": float(coef["ci_lower"]),
            "ci_upper": float(coef["ci_upper"]),
            "p": float(coef["p_value"]),
            "i2": fit["i2_total"],
            "i2_lower": np.nan,
            "i2_upper": np.nan,
            "pi_lower": fit["pi_lower"],
            "pi_upper": fit["pi_upper"],
        }
    raise ValueError(f"Unknown model family {model['family']}")


def format_interval(lower: float, upper: float, digits: int = 2) -> str:
    """Format an interval as "[lower; upper]" ("-" if undefined)."""
    if not (np.isfinite(lower) and np.isfinite(upper)):
        return "-"
    return f"[{lower:.{digits}f}; {upper:.{digits}f}]"


def summary_row(
    name: str,
    model: PoolingModel,
    n_studies: int,
    nnt_cer: float,
    digits: int = 2,
) -> Dict[str, Any]:
    """One summary table row for a fitted model."""
    est = model_estimates(model)
    nnt = abs(metapsy_nnt(est["estimate"], nnt_cer)) if est["estimate"] != 0 else np.inf
    return {
        "model": name,
        "k": est["k"],
        "n_studies": n_studies,
        "g": round(est["estimate"], digits),
        "g_lower": round(est["ci_lower"], digits),
        "g_upper": round(est["ci_upper"], digits),
        "g_ci": format_interval(est["ci_lower"], est["ci_upper"], digits),
        "p": round(est["p"], 3),
        "i2": round(est["i2"], 1) if np.isfinite(est["i2"]) else np.nan,
        "i2_ci": format_interval(est["i2_lower"], est["i2_upper"], 1),
        "prediction_ci": format_interval(est["pi_lower"], est["pi_upper"], digits),
        "nnt": round(nnt, digits),
        "excluded": ", ".join(model["excluded"]) if model["excluded"] else "none",
    }


# =============================================================================
# Helpers
# =============================================================================

def comparison_labels(df: pd.DataFrame, study_var: str = "study") -> List[str]:
    """
    Readable label of each comparison.

    The study name, extended with the first arm's cond_spec when a study
    contributes several comparisons.
    """
    studies = df[study_var].astype(str)
    labels = studies.copy()
    repeated = studies.duplicated(keep=False)
    if "cond_spec_trt1" in df.columns:
        spec = df["cond_spec_trt1"].astype(str).where(df["cond_spec_trt1"].notna(), "")
        labels = labels.where(~repeated | (spec == ""), studies + " (" + spec + ")")
    # Still ambiguous: number the rows
    dup = labels.duplicated(keep=False)
    if dup.any():
        counter = labels.groupby(labels).cumcount() + 1
        labels = labels.where(~dup, labels + " #" + counter.astype(str))
    return list(labels)


def _extreme_per_study(df: pd.DataFrame, es_var: str, study_var: str, highest: bool) -> pd.DataFrame:
    # Positional, df may carry duplicated index labels
    values = pd.Series(df[es_var].to_numpy(dtype=float))
    grouped = values.groupby(df[study_var].to_numpy(), sort=False)
    pos = grouped.idxmax() if highest else grouped.idxmin()
    return df.iloc[sorted(pos.values)]


def _pool(df: pd.DataFrame, es_var: str, se_var: str, settings: Dict[str, Any]) -> PooledEstimate:
    return pool_effects(
        df[es_var].to_numpy(dtype=float),
        df[se_var].to_numpy(dtype=float) ** 2,
        method_tau=settings["method_tau"],
        hakn=settings["hakn"],
        fixed=settings["fixed"],
        alpha=settings["alpha"],
        labels=list(df["_label"]),
    )


# =============================================================================
# Analysis Runner
# =============================================================================

def run_meta_analysis(
    ds: Union[NormalizedDataset, pd.DataFrame],
    which_run: Sequence[str] = DEFAULT_WHICH_RUN,
    es_var: str = "es",
    se_var: str = "se_es",
    study_var: str = "study",
    method_tau: str = "REML",
    hakn: bool = False,
    fixed: bool = False,
    rho_within_study: float = 0.5,
    nnt_cer: float = 0.2,
    low_rob_filter: Optional[Union[str, Callable[[pd.DataFrame], pd.Series]]] = None,
    alpha: float = 0.05,
    round_digits: int = 2,
) -> MetaAnalysisResult:
    """
    Run the selected pooling models.

    :param ds: Dataset annotated by calculate_effect_sizes (or a DataFrame
        holding es_var, se_var and study_var)
    :param which_run: Models to run; the first is the default model for
        subgroup analyses
    :param es_var: Effect size column
    :param se_var: Standard error column
    :param study_var: Study column
    :param method_tau: Tau^2 estimator ("REML", "DL" or "PM")
    :param hakn: Apply the Knapp-Hartung adjustment (t-based tests for the
        three-level model)
    :param fixed: Report fixed-effect instead of random-effects estimates
    :param rho_within_study: Assumed correlation of effects within a study
        for the "combined" model
    :param nnt_cer: Control event rate for the NNT
    :param low_rob_filter: Query string or callable selecting the
        low risk-of-bias comparisons; required for the "rob" model
    :param alpha: 1 - confidence level
    :param round_digits: Digits for effect sizes in the summary
    :returns: MetaAnalysisResult dictionary
    :raises ValueError: If required columns are missing, no comparison has
        an effect size, or "rob" is requested without low_rob_filter

    Example:
        >>> res = run_meta_analysis(es_ds, which_run=["overall", "combined"])
        >>> res["summary"][["model", "k", "g", "g_ci", "i2"]]
    """
    if isinstance(ds, pd.DataFrame):
        df = ds.copy()
    else:
        df = as_dataset(ds, "run_meta_analysis")["data"].copy()

    missing = [c for c in (es_var, se_var, study_var) if c not in df.columns]
    if missing:
        raise ValueError(
            f"Columns {missing} not found. Run calculate_effect_sizes() first."
        )

    kinds = [parse_model_kind(w) for w in which_run]
    if not kinds:
        raise ValueError("which_run must name at least one model")
    kinds = list(dict.fromkeys(kinds))
    if ModelKind.ROB in kinds and low_rob_filter is None:
        raise ValueError("The 'rob' model requires a low_rob_filter")

    run_warnings: List[str] = []

    # Missing-data mask
    usable = df[es_var].notna() & df[se_var].notna() & (df[se_var] > 0)
    if not usable.all():
        msg = f"{int((~usable).sum())} comparison(s) without effect size removed."
        warnings.warn(msg)
        run_warnings.append(msg)
    df = df[usable].reset_index(drop=True)
    if df.empty:
        raise ValueError("No comparison has a usable effect size")
    df["_label"] = comparison_labels(df, study_var)

    settings = {
        "es_var": es_var, "se_var": se_var, "study_var": study_var,
        "method_tau": method_tau.upper(), "hakn": hakn, "fixed": fixed,
        "rho_within_study": rho_within_study, "nnt_cer": nnt_cer,
        "low_rob_filter": low_rob_filter, "alpha": alpha,
        "round_digits": round_digits,
    }

    models: Dict[str, PoolingModel] = {}
    influence_table = None
    outlier_table = None
    variance_components = None
    overall: Optional[PooledEstimate] = None

    def overall_fit() -> PooledEstimate:
        nonlocal overall
        if overall is None:
            overall = _pool(df, es_var, se_var, settings)
        return overall

    for kind in kinds:
        if kind == ModelKind.OVERALL:
            model = create_pooling_model(kind, overall_fit(), df)

        elif kind == ModelKind.COMBINED:
            agg = aggregate_effects(
                df[es_var].to_numpy(dtype=float),
                df[se_var].to_numpy(dtype=float) ** 2,
                df[study_var],
                rho=rho_within_study,
            )
            agg_df = pd.DataFrame({
                study_var: agg["cluster"],
                es_var: agg["es"],
                se_var: np.sqrt(agg["var"]),
                "n_comp": agg["n_comp"],
                "_label": agg["cluster"].astype(str),
            })
            model = create_pooling_model(kind, _pool(agg_df, es_var, se_var, settings), agg_df)

        elif kind in (ModelKind.LOWEST, ModelKind.HIGHEST):
            sub = _extreme_per_study(df, es_var, study_var, highest=kind == ModelKind.HIGHEST)
            kept = set(sub["_label"])
            excluded = [label for label in df["_label"] if label not in kept]
            model = create_pooling_model(kind, _pool(sub, es_var, se_var, settings), sub, excluded)

        elif kind == ModelKind.OUTLIERS:
            flags = find_outliers(
                df[es_var].to_numpy(dtype=float),
                df[se_var].to_numpy(dtype=float) ** 2,
                overall_fit(),
                alpha=alpha,
            )
            outlier_table = df[flags].drop(columns="_label")
            sub = df[~flags]
            if sub.empty:
                raise ValueError("All comparisons were flagged as outliers")
            model = create_pooling_model(
                kind, _pool(sub, es_var, se_var, settings), sub, list(df.loc[flags, "_label"])
            )

        elif kind == ModelKind.INFLUENCE:
            if len(df) < 3:
                msg = "Influence analysis needs at least 3 comparisons; no comparison removed."
                warnings.warn(msg)
                run_warnings.append(msg)
                model = create_pooling_model(kind, overall_fit(), df)
            else:
                influence_table = influence_diagnostics(
                    df[es_var].to_numpy(dtype=float),
                    df[se_var].to_numpy(dtype=float) ** 2,
                    method_tau=settings["method_tau"],
                    labels=list(df["_label"]),
                )
                flags = influence_table["influential"].to_numpy()
                sub = df[~flags]
                model = create_pooling_model(
                    kind, _pool(sub, es_var, se_var, settings), sub, list(df.loc[flags, "_label"])
                )

        elif kind == ModelKind.ROB:
            mask = condition_mask(df, low_rob_filter).to_numpy()
            sub = df[mask]
            if sub.empty:
                raise ValueError("No comparison passes the low_rob_filter")
            model = create_pooling_model(
                kind, _pool(sub, es_var, se_var, settings), sub, list(df.loc[~mask, "_label"])
            )

        elif kind == ModelKind.THREELEVEL:
            fit = fit_three_level(
                df[es_var].to_numpy(dtype=float),
                df[se_var].to_numpy(dtype=float) ** 2,
                df[study_var],
                test="t" if hakn else "z",
                alpha=alpha,
            )
            run_warnings.extend(fit["warnings"])
            variance_components = pd.DataFrame({
                "level": ["between studies", "within studies"],
                "sigma2": [fit["sigma2_between"], fit["sigma2_within"]],
                "i2": [fit["i2_between"], fit["i2_within"]],
            })
            model = create_pooling_model(kind, fit, df)

        else:
            raise ValueError(f"Unhandled model {kind}")

        models[kind.value] = model

    rows = [
        summary_row(
            name,
            model,
            model["data"][study_var].nunique(),
            nnt_cer,
            round_digits,
        )
        for name, model in models.items()
    ]
    summary = pd.DataFrame(rows, columns=SUMMARY_COLUMNS)

    return {
        "data": df.drop(columns="_label"),
        "summary": summary,
        "models": models,
        "which_run": list(models),
        "influence": influence_table,
        "outliers": outlier_table,
        "variance_components": variance_components,
        "settings": settings,
        "warnings": run_warnings,
    }
