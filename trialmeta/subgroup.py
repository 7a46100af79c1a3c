"""
Subgroup Analysis and Meta-Regression
=====================================

Tests whether effects differ between groups of comparisons, or change
with continuous moderators, using a model fitted by run_meta_analysis().

Subgroup analyses:
- Univariate models: one pooled fit per group, separate or common tau^2,
  and a Q-between test of subgroup differences (chi-square, G - 1 df)
- Three-level model: one cell-means three-level fit per variable and a
  Wald test of equal group means

Meta-regression:
- Univariate models: mixed-effects weighted least squares via
  statsmodels' formula API, tau^2 estimated with the moderators
- Three-level model: moderators entered in the three-level REML fit
"""
from __future__ import annotations

import re
from typing import Any, Dict, List, Optional, Sequence, TypedDict, Union
import warnings

import numpy as np
import pandas as pd
from scipy import stats
import statsmodels.formula.api as smf

from .analysis import (
    MetaAnalysisResult,
    PoolingModel,
    format_interval,
    get_model,
    is_meta_analysis_result,
)
from .multilevel import contrast_test, fit_three_level, wald_test
from .nnt import metapsy_nnt
from .pooling import PooledEstimate, estimate_tau2, pool_effects, residual_q
from .registry import ModelFamily, ModelKind


SUBGROUP_COLUMNS = [
    "variable", "group", "n_comp", "g", "g_lower", "g_upper", "g_ci",
    "i2", "i2_ci", "nnt", "p",
]


# =============================================================================
# Result TypedDicts
# =============================================================================

class SubgroupResult(TypedDict):
    """
    Result of subgroup_analysis.

    Keys:
        model: Name of the model the analysis is based on
        family: ModelFamily of that model
        summary: One row per variable and group (see SUBGROUP_COLUMNS)
        tests: One row per variable with the test of subgroup differences
            (variable, statistic, df, p)
        fits: variable -> group -> PooledEstimate (univariate), or
            variable -> ThreeLevelResult (multilevel)
        tau_common: Whether a common tau^2 was used across groups
        nnt_cer: Control event rate used for the NNTs
    """
    model: str
    family: ModelFamily
    summary: pd.DataFrame
    tests: pd.DataFrame
    fits: Dict[str, Any]
    tau_common: bool
    nnt_cer: float


class MetaRegressionResult(TypedDict):
    """
    Result of meta_regression.

    Keys:
        model: Name of the model the regression is based on
        formula: Moderator formula (right-hand side)
        k: Number of comparisons used
        coefficients: DataFrame with term, estimate, std_error, z_value,
            p_value, ci_lower, ci_upper
        tau2: Residual heterogeneity (sum of both levels for three-level fits)
        r2: Heterogeneity explained by the moderators, in percent
        qe, qe_df, qe_p: Test of residual heterogeneity
        qm, qm_df, qm_p: Omnibus test of the moderators
        fit: statsmodels WLS results, or ThreeLevelResult
    """
    model: str
    formula: str
    k: int
    coefficients: pd.DataFrame
    tau2: float
    r2: float
    qe: float
    qe_df: int
    qe_p: float
    qm: float
    qm_df: int
    qm_p: float
    fit: Any


def summarize_meta_regression(result: MetaRegressionResult) -> str:
    """
    Generate summary string for a meta-regression.

    :param result: MetaRegressionResult dictionary
    :returns: Human-readable summary string
    """
    lines = [
        f"Meta-regression ({result['model']}): ~ {result['formula']}",
        f"  k = {result['k']}, tau2 = {result['tau2']:.4f}, R2 = {result['r2']:.1f}%",
        f"  QM({result['qm_df']}) = {result['qm']:.2f}, p = {result['qm_p']:.4f}",
        f"  QE({result['qe_df']}) = {result['qe']:.2f}, p = {result['qe_p']:.4f}",
    ]
    for _, row in result["coefficients"].iterrows():
        lines.append(
            f"  {row['term']}: {row['estimate']:.3f} (SE {row['std_error']:.3f}), "
            f"p = {row['p_value']:.4f}"
        )
    return "\n".join(lines)


# =============================================================================
# Helpers
# =============================================================================

def _selected_model(result: Any, which_run: Optional[str], caller: str) -> PoolingModel:
    if not is_meta_analysis_result(result):
        raise TypeError(
            f"{caller} expects the result of run_meta_analysis(), got {type(result).__name__}"
        )
    name = which_run if which_run is not None else result["which_run"][0]
    model = get_model(result, name)
    if len(model["data"]) < 2:
        raise ValueError(
            f"The '{model['kind'].value}' model contains only one comparison (k = 1); "
            f"subgroup analyses and meta-regressions are not possible."
        )
    return model


def _model_data(result: MetaAnalysisResult, model: PoolingModel, variables: Sequence[str]) -> pd.DataFrame:
    """
    Rows of a model with the requested variables.

    Rows of the "combined" model are studies, so variables are taken from
    the comparisons and must be constant within each study.
    """
    data = model["data"]
    if model["kind"] != ModelKind.COMBINED:
        missing = [v for v in variables if v not in data.columns]
        if missing:
            raise ValueError(f"Variable(s) {missing} not found in the model data")
        return data

    study_var = result["settings"]["study_var"]
    source = result["data"]
    missing = [v for v in variables if v not in source.columns]
    if missing:
        raise ValueError(f"Variable(s) {missing} not found in the model data")
    grouped = source.groupby(study_var, sort=False)
    varying = [v for v in variables if (grouped[v].nunique(dropna=False) > 1).any()]
    if varying:
        raise ValueError(
            f"Variable(s) {varying} vary within studies and cannot be used with "
            f"the 'combined' model"
        )
    per_study = grouped[list(variables)].first()
    return data.merge(per_study.reset_index(), on=study_var, how="left")


def _drop_missing(data: pd.DataFrame, columns: Sequence[str], what: str) -> pd.DataFrame:
    mask = data[list(columns)].notna().all(axis=1)
    if not mask.all():
        warnings.warn(f"{int((~mask).sum())} comparison(s) with missing {what} omitted.")
    return data[mask]


def _nnt(g: float, cer: float) -> float:
    return abs(metapsy_nnt(g, cer))


def _q_between(estimates: np.ndarray, ses: np.ndarray) -> float:
    """Q statistic of subgroup estimates around their inverse-variance mean."""
    w = 1.0 / ses ** 2
    mean = np.sum(w * estimates) / np.sum(w)
    return float(np.sum(w * (estimates - mean) ** 2))


# =============================================================================
# Subgroup analysis
# =============================================================================

def subgroup_analysis(
    result: MetaAnalysisResult,
    variables: Union[str, Sequence[str]],
    which_run: Optional[str] = None,
    nnt_cer: Optional[float] = None,
    tau_common: bool = False,
    round_digits: Optional[int] = None,
) -> SubgroupResult:
    """
    Run subgroup analyses for one or more variables.

    :param result: Result of run_meta_analysis()
    :param variables: Subgroup variable(s)
    :param which_run: Model to use (None = first model of the result)
    :param nnt_cer: Control event rate for the NNTs (None = as in result)
    :param tau_common: Assume a common tau^2 across groups (univariate models)
    :param round_digits: Digits for effect sizes (None = as in result)
    :returns: SubgroupResult dictionary
    :raises TypeError: If result was not returned by run_meta_analysis()
    :raises ValueError: If the model has k = 1 or a variable is missing

    Example:
        >>> sg = subgroup_analysis(res, ["country", "format"])
        >>> sg["summary"]
    """
    model = _selected_model(result, which_run, "subgroup_analysis")
    if isinstance(variables, str):
        variables = [variables]
    if not variables:
        raise ValueError("At least one subgroup variable is required")

    settings = result["settings"]
    es_var, se_var, study_var = settings["es_var"], settings["se_var"], settings["study_var"]
    nnt_cer = nnt_cer if nnt_cer is not None else settings["nnt_cer"]
    digits = round_digits if round_digits is not None else settings["round_digits"]

    data = _model_data(result, model, variables)

    rows: List[Dict[str, Any]] = []
    tests: List[Dict[str, Any]] = []
    fits: Dict[str, Any] = {}

    for variable in sorted(variables):
        vdata = _drop_missing(data, [variable], f"'{variable}'")
        groups = list(pd.unique(vdata[variable]))
        y = vdata[es_var].to_numpy(dtype=float)
        v = vdata[se_var].to_numpy(dtype=float) ** 2
        labels = vdata[variable].to_numpy()

        if model["family"] == ModelFamily.UNIVARIATE:
            group_rows, test, fit = _univariate_subgroups(
                y, v, labels, groups, settings, tau_common
            )
        elif model["family"] == ModelFamily.MULTILEVEL:
            group_rows, test, fit = _multilevel_subgroups(
                y, v, vdata[study_var], labels, groups, settings
            )
        else:
            raise ValueError(f"Unknown model family {model['family']}")

        fits[variable] = fit
        tests.append({"variable": variable, **test})
        for group, est in zip(groups, group_rows):
            rows.append({
                "variable": variable,
                "group": group,
                "n_comp": est["k"],
                "g": round(est["estimate"], digits),
                "g_lower": round(est["ci_lower"], digits),
                "g_upper": round(est["ci_upper"], digits),
                "g_ci": format_interval(est["ci_lower"], est["ci_upper"], digits),
                "i2": round(est["i2"], 1) if np.isfinite(est["i2"]) else np.nan,
                "i2_ci": format_interval(est["i2_lower"], est["i2_upper"], 1),
                "nnt": round(_nnt(est["estimate"], nnt_cer), digits),
                "p": round(test["p"], 3) if np.isfinite(test["p"]) else np.nan,
            })

    return {
        "model": model["kind"].value,
        "family": model["family"],
        "summary": pd.DataFrame(rows, columns=SUBGROUP_COLUMNS),
        "tests": pd.DataFrame(tests, columns=["variable", "statistic", "df", "p"]),
        "fits": fits,
        "tau_common": tau_common,
        "nnt_cer": nnt_cer,
    }


def _univariate_subgroups(y, v, labels, groups, settings, tau_common):
    """Per-group pooled fits and the Q-between test."""
    common_tau2 = None
    if tau_common and len(groups) > 1:
        X = np.column_stack([(labels == g).astype(float) for g in groups])
        common_tau2 = estimate_tau2(y, v, settings["method_tau"], X)

    fits: Dict[Any, PooledEstimate] = {}
    estimates = []
    for group in groups:
        mask = labels == group
        fit = pool_effects(
            y[mask], v[mask],
            method_tau=settings["method_tau"],
            hakn=settings["hakn"],
            fixed=settings["fixed"],
            alpha=settings["alpha"],
            tau2=common_tau2,
        )
        fits[group] = fit
        estimates.append(fit)

    if len(groups) > 1:
        q = _q_between(
            np.array([f["estimate"] for f in estimates]),
            np.array([f["se"] for f in estimates]),
        )
        df = len(groups) - 1
        test = {"statistic": q, "df": df, "p": float(stats.chi2.sf(q, df))}
    else:
        test = {"statistic": np.nan, "df": 0, "p": np.nan}
    return estimates, test, fits


def _multilevel_subgroups(y, v, study, labels, groups, settings):
    """Cell-means three-level fit and the Wald test of equal group means."""
    X = np.column_stack([(labels == g).astype(float) for g in groups])
    fit = fit_three_level(
        y, v, study,
        X=X,
        term_names=[str(g) for g in groups],
        intercept=False,
        test="t" if settings["hakn"] else "z",
        alpha=settings["alpha"],
    )
    coefs = fit["coefficients"]
    estimates = []
    for i, group in enumerate(groups):
        estimates.append({
            "k": int((labels == group).sum()),
            "estimate": float(coefs["estimate"].iloc[i]),
            "ci_lower": float(coefs["ci_lower"].iloc[i]),
            "ci_upper": float(coefs["ci_upper"].iloc[i]),
            "i2": np.nan,
            "i2_lower": np.nan,
            "i2_upper": np.nan,
        })

    G = len(groups)
    if G > 1:
        beta = coefs["estimate"].to_numpy()
        L = np.zeros((G - 1, G))
        L[:, 0] = -1.0
        L[np.arange(G - 1), np.arange(1, G)] = 1.0
        df_resid = fit["k"] - G if settings["hakn"] else None
        stat, df, p = contrast_test(beta, fit["cov"], L, df_resid=df_resid)
        test = {"statistic": stat, "df": df, "p": p}
    else:
        test = {"statistic": np.nan, "df": 0, "p": np.nan}
    return estimates, test, fit


# =============================================================================
# Meta-regression
# =============================================================================

def meta_regression(
    result: MetaAnalysisResult,
    formula: str,
    which_run: Optional[str] = None,
) -> MetaRegressionResult:
    """
    Mixed-effects meta-regression on the comparisons of a fitted model.

    :param result: Result of run_meta_analysis()
    :param formula: Moderators as a formula right-hand side (e.g.,
        "year + C(format)"; a leading "~" is allowed)
    :param which_run: Model to use (None = first model of the result)
    :returns: MetaRegressionResult dictionary
    :raises TypeError: If result was not returned by run_meta_analysis()
    :raises ValueError: If the model has k = 1, or too few comparisons
        remain for the moderators

    Example:
        >>> reg = meta_regression(res, "year", which_run="overall")
        >>> reg["coefficients"]
    """
    model = _selected_model(result, which_run, "meta_regression")
    settings = result["settings"]
    es_var, se_var, study_var = settings["es_var"], settings["se_var"], settings["study_var"]

    rhs = formula.strip()
    if rhs.startswith("~"):
        rhs = rhs[1:].strip()
    if not rhs:
        raise ValueError("formula must name at least one moderator")
    full_formula = f"{es_var} ~ {rhs}"

    source = model["data"]
    if model["kind"] == ModelKind.COMBINED:
        tokens = set(re.findall(r"[A-Za-z_][A-Za-z0-9_]*", rhs))
        design_vars = [c for c in result["data"].columns if c in tokens and c not in source.columns]
        source = _model_data(result, model, design_vars)

    # Design matrix (rows with missing moderators are dropped by patsy)
    design = smf.ols(full_formula, data=source)
    row_labels = design.data.row_labels
    data = source.loc[row_labels]
    if len(data) < len(source):
        warnings.warn(f"{len(source) - len(data)} comparison(s) with missing moderators omitted.")

    X = np.asarray(design.exog, dtype=float)
    names = list(design.exog_names)
    y = data[es_var].to_numpy(dtype=float)
    v = data[se_var].to_numpy(dtype=float) ** 2
    k, p = X.shape
    if k - p < 1:
        raise ValueError(f"Too few comparisons (k = {k}) for {p} coefficients")
    moderators = [i for i, n in enumerate(names) if n != "Intercept"]
    has_intercept = "Intercept" in names

    if model["family"] == ModelFamily.UNIVARIATE:
        method_tau = settings["method_tau"]
        tau2 = estimate_tau2(y, v, method_tau, X)
        tau2_null = estimate_tau2(y, v, method_tau)
        weights = 1.0 / (v + tau2)
        if settings["hakn"]:
            fit = smf.wls(full_formula, data=data, weights=weights).fit()
        else:
            fit = smf.wls(full_formula, data=data, weights=weights).fit(cov_type="fixed scale")

        ci = fit.conf_int(alpha=settings["alpha"])
        coefficients = pd.DataFrame({
            "term": names,
            "estimate": fit.params.to_numpy(),
            "std_error": fit.bse.to_numpy(),
            "z_value": fit.tvalues.to_numpy(),
            "p_value": fit.pvalues.to_numpy(),
            "ci_lower": ci.iloc[:, 0].to_numpy(),
            "ci_upper": ci.iloc[:, 1].to_numpy(),
        })
        qm, qm_df, qm_p = wald_test(
            fit.params.to_numpy(), fit.cov_params().to_numpy(), moderators,
            df_resid=k - p if settings["hakn"] else None,
        )

    elif model["family"] == ModelFamily.MULTILEVEL:
        fit = fit_three_level(
            y, v, data[study_var],
            X=X,
            term_names=names,
            intercept=has_intercept,
            test="t" if settings["hakn"] else "z",
            alpha=settings["alpha"],
        )
        null = fit_three_level(y, v, data[study_var], alpha=settings["alpha"])
        coefficients = fit["coefficients"]
        tau2 = fit["sigma2_between"] + fit["sigma2_within"]
        tau2_null = null["sigma2_between"] + null["sigma2_within"]
        qm, qm_df, qm_p = fit["qm"], fit["qm_df"], fit["qm_p"]

    else:
        raise ValueError(f"Unknown model family {model['family']}")

    qe = residual_q(y, v, X, 0.0)
    r2 = max(0.0, (tau2_null - tau2) / tau2_null) * 100 if tau2_null > 0 else 0.0

    return {
        "model": model["kind"].value,
        "formula": rhs,
        "k": k,
        "coefficients": coefficients,
        "tau2": float(tau2),
        "r2": float(r2),
        "qe": qe,
        "qe_df": k - p,
        "qe_p": float(stats.chi2.sf(qe, k - p)),
        "qm": qm,
        "qm_df": qm_df,
        "qm_p": qm_p,
        "fit": fit,
    }
